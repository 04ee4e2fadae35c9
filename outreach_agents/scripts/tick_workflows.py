"""
Workflow Timeout Sweep.

Invoke on a fixed schedule (cron, a scheduled job) to time out workflow runs
whose deadline has passed. The sweep is idempotent; overlapping invocations
are safe.

Usage:
    python -m outreach_agents.scripts.tick_workflows
"""

import asyncio
import logging

from outreach_agents.app.dependencies import (
    get_conversation_repository,
    get_decision_evaluator,
    get_llm_provider,
    get_message_sender,
    get_owner_notifier,
    get_run_repository,
    get_workflow_engine,
    get_workflow_repository,
)
from outreach_agents.config import get_settings

logger = logging.getLogger("outreach_agents.scripts.tick_workflows")


async def tick():
    llm = get_llm_provider()
    engine = get_workflow_engine(
        workflows=get_workflow_repository(),
        runs=get_run_repository(),
        conversations=get_conversation_repository(),
        llm=llm,
        evaluator=get_decision_evaluator(llm),
        sender=get_message_sender(),
        notifier=get_owner_notifier(),
    )
    report = await engine.tick_workflows()
    logger.info(f"Timed out {len(report.timed_out)} run(s); {len(report.skipped_busy)} busy")
    return report


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().LOG_LEVEL, format="%(message)s")
    asyncio.run(tick())
