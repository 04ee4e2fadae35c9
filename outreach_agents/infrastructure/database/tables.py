"""
Database Table Definitions.

This module defines the SQL schema using SQLModel.
We use the 'DBModel' suffix to distinguish these persistence models
from the Pydantic domain models (AgentSession, WorkflowRun, WorkflowTemplate).

Each record's full state lives in a JSON column (JSONB on PostgreSQL); the
scalar columns next to it exist for indexing, filtering, status-precondition
writes and leases.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel


def _json_column(nullable: bool = False) -> Column:
    return Column(JSON().with_variant(JSONB(), "postgresql"), nullable=nullable)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionDBModel(SQLModel, table=True):
    """
    Persistence model for agent sessions.
    lease_token/lease_expires_at (epoch seconds) mark the one in-flight call.
    """

    __tablename__ = "agent_sessions"

    session_id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    status: str = Field(index=True)

    state: Dict[str, Any] = Field(sa_column=_json_column())

    lease_token: Optional[str] = Field(default=None)
    lease_expires_at: Optional[float] = Field(default=None)
    cancel_requested: bool = Field(default=False)

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class WorkflowTemplateDBModel(SQLModel, table=True):
    """
    Persistence model for workflow templates. One row per version.
    """

    __tablename__ = "workflow_templates"

    workflow_id: str = Field(primary_key=True)
    version: int = Field(primary_key=True)
    account_id: Optional[str] = Field(default=None, index=True)
    title: str

    # Store the entire template definition (steps included) as JSON.
    workflow_data: Dict[str, Any] = Field(sa_column=_json_column())

    created_at: datetime = Field(default_factory=_now)


class WorkflowRunDBModel(SQLModel, table=True):
    __tablename__ = "workflow_runs"

    run_id: str = Field(primary_key=True)
    workflow_id: str = Field(index=True)
    account_id: str = Field(index=True)
    status: str = Field(index=True)

    state: Dict[str, Any] = Field(sa_column=_json_column())

    lease_token: Optional[str] = Field(default=None)
    lease_expires_at: Optional[float] = Field(default=None)

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ConversationEntryDBModel(SQLModel, table=True):
    """
    Append-only conversation thread. `sequence` is the insertion order and
    breaks ties between entries sharing a timestamp.
    """

    __tablename__ = "conversation_entries"

    sequence: Optional[int] = Field(default=None, primary_key=True)
    entry_id: str = Field(index=True, unique=True)
    owner_id: str = Field(index=True)
    role: str
    content: str
    evaluation: Optional[Dict[str, Any]] = Field(default=None, sa_column=_json_column(nullable=True))
    created_at: datetime
