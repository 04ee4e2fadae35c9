"""
Database Connection Manager.

This module handles the low-level details of connecting to the database.
It exposes the SQLModel engine which will be used by the Repositories.
"""

from functools import lru_cache

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from ...config import get_settings


@lru_cache()
def get_engine() -> Engine:
    # echo=False in production to avoid leaking sensitive data in logs
    return create_engine(get_settings().DATABASE_URL, echo=False)


def init_db(engine: Engine = None):
    """
    Idempotent initialization.
    Creates tables if they do not exist.
    Useful for local dev or simple deployments.
    """
    from . import tables  # noqa: F401  (registers the models on SQLModel.metadata)

    SQLModel.metadata.create_all(engine or get_engine())
