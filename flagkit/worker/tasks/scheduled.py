"""
Scheduled/periodic tasks.
"""

import asyncio
from typing import Any

import structlog
from celery import shared_task

from flagkit.core.features import (
    DatabaseFeatureBackend,
    ExecutionReport,
    FlagCache,
    build_feature_service,
)
from flagkit.core.features.dependencies import build_generation_store
from flagkit.models import database

logger = structlog.get_logger()


async def run_rollout_schedules() -> ExecutionReport:
    """
    One driver pass against the database.

    The worker keeps no cached definitions (ttl 0). Its cache only
    publishes generation bumps, so API processes drop the flags a step
    changed.
    """
    generations = build_generation_store()
    try:
        async with database.session_scope() as session:
            service = build_feature_service(
                DatabaseFeatureBackend(session),
                cache=FlagCache(ttl=0, generations=generations),
            )
            return await service.execute_pending_schedules()
    finally:
        # clients and pooled connections belong to this event loop
        await generations.close()
        await database.engine.dispose()


@shared_task(name="flagkit.worker.tasks.scheduled.execute_rollout_schedules")
def execute_rollout_schedules() -> dict[str, Any]:
    """Apply every due rollout schedule step."""
    logger.info("Running rollout schedule driver...")
    report = asyncio.run(run_rollout_schedules())
    return {
        "status": "completed",
        "executed_steps": report.executed_steps,
        "completed_schedules": [str(sid) for sid in report.completed_schedules],
        "errors": [
            {
                "schedule_id": str(failure.schedule_id),
                "feature_name": failure.feature_name,
                "error": failure.error,
            }
            for failure in report.errors
        ],
    }
