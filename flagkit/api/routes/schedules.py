"""
Rollout schedule API routes.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter

from flagkit.core.features import Feature, ScheduleStatus
from flagkit.schemas.schedule import (
    ExecutionReportResponse,
    ScheduleCreate,
    ScheduleResponse,
    ScheduleStatusUpdate,
)

router = APIRouter()


@router.post("", status_code=201)
async def create_schedule(
    data: ScheduleCreate,
    feature: Feature,
) -> ScheduleResponse:
    """
    Create a gradual rollout schedule.

    Steps must be in the future and strictly increasing in time.
    """
    schedule = await feature.create_schedule(
        data.feature_name,
        data.schedule_name,
        [step.model_dump() for step in data.steps],
    )
    return ScheduleResponse.from_schedule(schedule)


@router.get("")
async def list_schedules(
    feature: Feature,
    feature_name: Optional[str] = None,
    status: Optional[ScheduleStatus] = None,
) -> list[ScheduleResponse]:
    schedules = await feature.list_schedules(feature_name, status)
    return [ScheduleResponse.from_schedule(s) for s in schedules]


@router.post("/execute")
async def execute_pending(feature: Feature) -> ExecutionReportResponse:
    """Run the schedule driver now (same as one beat tick)."""
    report = await feature.execute_pending_schedules()
    return ExecutionReportResponse.from_report(report)


@router.get("/{schedule_id}")
async def get_schedule(
    schedule_id: UUID,
    feature: Feature,
) -> ScheduleResponse:
    schedule = await feature.get_schedule(schedule_id)
    return ScheduleResponse.from_schedule(schedule)


@router.patch("/{schedule_id}/status")
async def update_schedule_status(
    schedule_id: UUID,
    data: ScheduleStatusUpdate,
    feature: Feature,
) -> ScheduleResponse:
    """Pause, resume or cancel a schedule."""
    schedule = await feature.update_schedule_status(schedule_id, data.status)
    return ScheduleResponse.from_schedule(schedule)
