"""
Database Seeder.

Run this script to populate the database with the built-in system
templates defined in data/builtin_templates.py.

Usage:
    python -m outreach_agents.scripts.db_seed_templates

A template that already exists gets a new version only when its definition
changed, so running the seeder repeatedly is safe.
"""

import logging

from outreach_agents.config import get_settings
from outreach_agents.data.builtin_templates import BUILTIN_TEMPLATES
from outreach_agents.infrastructure.database.connection import get_engine, init_db
from outreach_agents.repositories.workflow import SqlWorkflowRepository, template_to_json
from outreach_agents.services.exceptions import NotFoundError

logger = logging.getLogger("outreach_agents.scripts.db_seed_templates")


def _definition(data: dict) -> dict:
    return {key: value for key, value in data.items() if key != "version"}


def seed_templates(engine=None):
    logger.info("Initializing Database Connection...")
    engine = engine or get_engine()
    init_db(engine)
    repository = SqlWorkflowRepository(engine)

    logger.info(f"Found {len(BUILTIN_TEMPLATES)} templates to seed.")
    for template_id, template in BUILTIN_TEMPLATES.items():
        try:
            existing = repository.get_workflow(template_id)
        except NotFoundError:
            stored = repository.add(template)
            logger.info(f"--> Created {template_id} v{stored.version}")
            continue

        if _definition(template_to_json(existing)) == _definition(template_to_json(template)):
            logger.info(f"--> {template_id} is up to date (v{existing.version})")
        else:
            stored = repository.add_version(template)
            logger.info(f"--> Updated {template_id} to v{stored.version}")

    logger.info("Template seeding complete.")


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().LOG_LEVEL, format="%(message)s")
    seed_templates()
