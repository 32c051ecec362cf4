"""
Scheduled gradual rollouts.

State machine:

    active ──pause──> paused ──resume──> active
    active ──cancel──> cancelled          (terminal)
    paused ──cancel──> cancelled          (terminal)
    active ──last step executed──> completed   (terminal)

`execute_pending()` is the driver. For each active schedule it applies due
steps one at a time, in order, until none is due. Each step is claimed
with a conditional update on (current_step, status) before the flag is
touched, so concurrent drivers never apply the same step twice.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable
from uuid import UUID

import structlog

from flagkit.utils.timezone import utc_now

from .exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from .interfaces import FeatureBackend, RolloutSchedule, ScheduleStatus
from .validation import parse_enum, validate_feature_name, validate_schedule_steps
from .writer import FlagWriter

logger = structlog.get_logger()

ALLOWED_TRANSITIONS: dict[ScheduleStatus, frozenset[ScheduleStatus]] = {
    ScheduleStatus.ACTIVE: frozenset({ScheduleStatus.PAUSED, ScheduleStatus.CANCELLED}),
    ScheduleStatus.PAUSED: frozenset({ScheduleStatus.ACTIVE, ScheduleStatus.CANCELLED}),
    ScheduleStatus.COMPLETED: frozenset(),
    ScheduleStatus.CANCELLED: frozenset(),
}


@dataclass
class ScheduleFailure:
    schedule_id: UUID
    feature_name: str
    error: str


@dataclass
class ExecutionReport:
    """Outcome of one driver pass."""
    executed_steps: int = 0
    completed_schedules: list[UUID] = field(default_factory=list)
    errors: list[ScheduleFailure] = field(default_factory=list)


class RolloutScheduler:
    def __init__(
        self,
        backend: FeatureBackend,
        writer: FlagWriter,
        clock: Callable[[], datetime] = utc_now,
        max_retries: int = 3,
    ):
        self.backend = backend
        self.writer = writer
        self.clock = clock
        self.max_retries = max_retries

    # ============================================================
    # CREATE / QUERY
    # ============================================================

    async def create_schedule(
        self,
        feature_name: str,
        schedule_name: str,
        steps: Iterable[Any],
    ) -> RolloutSchedule:
        """
        Create an active schedule for a flag.

        Steps must execute in the future at strictly increasing times.
        """
        validate_feature_name(feature_name)
        if not isinstance(schedule_name, str) or not schedule_name.strip():
            raise ValidationError("Schedule name must not be empty")

        now = self.clock()
        validated = validate_schedule_steps(steps, now)

        async with self.backend.transaction():
            if await self.backend.get_flag(feature_name) is None:
                raise NotFoundError(f"Feature flag '{feature_name}' not found")

            schedule = await self.backend.create_schedule(
                RolloutSchedule(
                    feature_name=feature_name,
                    schedule_name=schedule_name.strip(),
                    steps=validated,
                    created_at=now,
                    updated_at=now,
                )
            )

        logger.info(
            "Rollout schedule created",
            schedule_id=str(schedule.id),
            feature_name=feature_name,
            steps=len(validated),
        )
        return schedule

    async def get_schedule(self, schedule_id: UUID) -> RolloutSchedule:
        schedule = await self.backend.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Rollout schedule {schedule_id} not found")
        return schedule

    async def list_schedules(
        self,
        feature_name: str | None = None,
        status: ScheduleStatus | str | None = None,
    ) -> list[RolloutSchedule]:
        if status is not None:
            status = parse_enum(ScheduleStatus, status, "schedule status")
        return await self.backend.list_schedules(feature_name=feature_name, status=status)

    # ============================================================
    # STATE MACHINE
    # ============================================================

    async def update_status(
        self,
        schedule_id: UUID,
        new_status: ScheduleStatus | str,
    ) -> RolloutSchedule:
        """Pause, resume or cancel a schedule."""
        target = parse_enum(ScheduleStatus, new_status, "schedule status")
        attempt = 0

        while True:
            schedule = await self.get_schedule(schedule_id)
            current = schedule.status

            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Cannot change schedule from '{current.value}' to '{target.value}'"
                )

            schedule.status = target
            schedule.updated_at = self.clock()
            try:
                async with self.backend.transaction():
                    updated = await self.backend.update_schedule(
                        schedule,
                        expected_step=schedule.current_step,
                        expected_status=current,
                    )
            except ConflictError:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                continue

            logger.info(
                "Rollout schedule status changed",
                schedule_id=str(schedule_id),
                old=current.value,
                new=target.value,
            )
            return updated

    # ============================================================
    # DRIVER
    # ============================================================

    async def execute_pending(self) -> ExecutionReport:
        """
        Apply every due step of every active schedule.

        A failing schedule is logged and reported; the others still run.
        """
        report = ExecutionReport()
        schedules = await self.backend.list_schedules(status=ScheduleStatus.ACTIVE)

        for schedule in schedules:
            try:
                executed, completed = await self._advance(schedule.id)
            except Exception as e:
                logger.exception(
                    "Rollout schedule execution failed",
                    schedule_id=str(schedule.id),
                    feature_name=schedule.feature_name,
                )
                report.errors.append(
                    ScheduleFailure(schedule.id, schedule.feature_name, str(e))
                )
                continue

            report.executed_steps += executed
            if completed:
                report.completed_schedules.append(schedule.id)

        logger.info(
            "Rollout schedules executed",
            schedules=len(schedules),
            executed_steps=report.executed_steps,
            completed=len(report.completed_schedules),
            errors=len(report.errors),
        )
        return report

    async def _advance(self, schedule_id: UUID) -> tuple[int, bool]:
        """Run due steps of one schedule. Returns (steps executed, completed)."""
        executed = 0

        while True:
            now = self.clock()

            async with self.writer.transaction():
                schedule = await self.backend.get_schedule(schedule_id)
                if schedule is None or schedule.status != ScheduleStatus.ACTIVE:
                    return executed, False

                index = schedule.current_step
                step = schedule.next_step
                # an already executed step only needs the pointer moved
                apply = step is not None and not step.executed
                if apply and step.execute_at > now:
                    return executed, False

                if step is not None:
                    step.executed = True
                    schedule.current_step = index + 1
                completed = schedule.current_step >= len(schedule.steps)
                if completed:
                    schedule.status = ScheduleStatus.COMPLETED
                    schedule.completed_at = now
                schedule.updated_at = now

                try:
                    await self.backend.update_schedule(
                        schedule,
                        expected_step=index,
                        expected_status=ScheduleStatus.ACTIVE,
                    )
                except ConflictError:
                    logger.info(
                        "Schedule step claimed by another executor",
                        schedule_id=str(schedule_id),
                        step=index,
                    )
                    return executed, False

                if apply:
                    await self.writer.set_percentage(
                        schedule.feature_name,
                        step.percentage,
                        reason=(
                            f"Scheduled rollout '{schedule.schedule_name}' "
                            f"step {index + 1}/{len(schedule.steps)}"
                        ),
                        skip_unchanged=False,
                    )

            if apply:
                executed += 1
                logger.info(
                    "Rollout step executed",
                    schedule_id=str(schedule_id),
                    feature_name=schedule.feature_name,
                    step=index + 1,
                    percentage=step.percentage,
                )
            if completed:
                logger.info(
                    "Rollout schedule completed",
                    schedule_id=str(schedule_id),
                    feature_name=schedule.feature_name,
                )
                return executed, True
