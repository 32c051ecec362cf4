"""Rollout schedule schemas."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from flagkit.core.features import ExecutionReport, RolloutSchedule, ScheduleStatus


class ScheduleStepIn(BaseModel):
    percentage: int
    execute_at: datetime


class ScheduleCreate(BaseModel):
    feature_name: str = Field(..., min_length=1, max_length=100)
    schedule_name: str = Field(..., min_length=1, max_length=200)
    steps: list[ScheduleStepIn] = Field(..., min_length=1)


class ScheduleStatusUpdate(BaseModel):
    status: ScheduleStatus


class ScheduleStepResponse(BaseModel):
    percentage: int
    execute_at: datetime
    executed: bool

    model_config = {"from_attributes": True}


class ScheduleResponse(BaseModel):
    """Schedule with its steps and progress."""

    id: UUID
    feature_name: str
    schedule_name: str
    status: ScheduleStatus
    current_step: int
    steps: list[ScheduleStepResponse]
    progress: int
    next_execute_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_schedule(cls, schedule: RolloutSchedule) -> "ScheduleResponse":
        next_step = schedule.next_step
        return cls(
            id=schedule.id,
            feature_name=schedule.feature_name,
            schedule_name=schedule.schedule_name,
            status=schedule.status,
            current_step=schedule.current_step,
            steps=[ScheduleStepResponse.model_validate(s) for s in schedule.steps],
            progress=schedule.progress,
            next_execute_at=next_step.execute_at if next_step else None,
            completed_at=schedule.completed_at,
            created_at=schedule.created_at,
            updated_at=schedule.updated_at,
        )


class ScheduleFailureResponse(BaseModel):
    schedule_id: UUID
    feature_name: str
    error: str

    model_config = {"from_attributes": True}


class ExecutionReportResponse(BaseModel):
    executed_steps: int
    completed_schedules: list[UUID]
    errors: list[ScheduleFailureResponse]

    @classmethod
    def from_report(cls, report: ExecutionReport) -> "ExecutionReportResponse":
        return cls(
            executed_steps=report.executed_steps,
            completed_schedules=report.completed_schedules,
            errors=[ScheduleFailureResponse.model_validate(e) for e in report.errors],
        )
