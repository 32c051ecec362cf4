"""
Tests for scheduled gradual rollouts.
"""

import asyncio
from datetime import timedelta

import pytest

from flagkit.core.features import (
    FeatureService,
    InvalidTransitionError,
    MemoryFeatureBackend,
    NotFoundError,
    ScheduleStatus,
    UserContext,
    ValidationError,
    bucket,
)

pytestmark = pytest.mark.asyncio


def steps(clock, *pairs):
    """[(percentage, hours from now), ...] -> step dicts."""
    return [
        {"percentage": pct, "execute_at": clock() + timedelta(hours=hours)}
        for pct, hours in pairs
    ]


async def history_pairs(service: FeatureService, name: str) -> list[tuple[int, int]]:
    return [(e.old_percentage, e.new_percentage) for e in await service.get_rollout_history(name)]


# ============ Creation ============


async def test_create_schedule(service: FeatureService, clock):
    await service.upsert_flag("f", rollout_percentage=0)

    schedule = await service.create_schedule("f", " Q3 rollout ", steps(clock, (25, 1), (100, 2)))

    assert schedule.status == ScheduleStatus.ACTIVE
    assert schedule.schedule_name == "Q3 rollout"
    assert schedule.current_step == 0
    assert schedule.progress == 0
    assert schedule.next_step.percentage == 25
    assert [s.executed for s in schedule.steps] == [False, False]


@pytest.mark.parametrize(
    "pairs",
    [
        [],
        [(25, -1)],
        [(25, 2), (50, 1)],
        [(25, 1), (50, 1)],
        [(150, 1)],
    ],
)
async def test_create_schedule_validation(service: FeatureService, clock, pairs):
    await service.upsert_flag("f")

    with pytest.raises(ValidationError):
        await service.create_schedule("f", "bad", steps(clock, *pairs))

    assert await service.list_schedules() == []


async def test_create_schedule_requires_flag_and_name(service: FeatureService, clock):
    with pytest.raises(NotFoundError):
        await service.create_schedule("missing", "s", steps(clock, (10, 1)))

    await service.upsert_flag("f")
    with pytest.raises(ValidationError):
        await service.create_schedule("f", "  ", steps(clock, (10, 1)))


async def test_percentages_may_go_down(service: FeatureService, clock):
    await service.upsert_flag("f", rollout_percentage=0)
    await service.create_schedule("f", "dip", steps(clock, (50, 1), (25, 2), (100, 3)))

    clock.advance(hours=3)
    await service.execute_pending_schedules()

    assert await history_pairs(service, "f") == [(0, 50), (50, 25), (25, 100)]


# ============ Driver ============


async def test_nothing_due(service: FeatureService, clock):
    await service.upsert_flag("f", rollout_percentage=0)
    await service.create_schedule("f", "s", steps(clock, (25, 1)))

    report = await service.execute_pending_schedules()

    assert report.executed_steps == 0
    assert (await service.get_flag("f")).rollout_percentage == 0


async def test_steps_run_in_order(service: FeatureService, clock):
    """A late driver pass still applies every step, one history entry each."""
    await service.upsert_flag("f", rollout_percentage=0)
    schedule = await service.create_schedule(
        "f", "ramp", steps(clock, (10, 1), (50, 2), (100, 3))
    )

    clock.advance(hours=4)
    report = await service.execute_pending_schedules()

    assert report.executed_steps == 3
    assert report.completed_schedules == [schedule.id]
    assert await history_pairs(service, "f") == [(0, 10), (10, 50), (50, 100)]

    stored = await service.get_schedule(schedule.id)
    assert stored.current_step == 3
    assert stored.status == ScheduleStatus.COMPLETED
    assert stored.completed_at == clock()
    assert stored.progress == 100
    assert all(step.executed for step in stored.steps)


async def test_step_history_reason(service: FeatureService, clock):
    await service.upsert_flag("f", rollout_percentage=0)
    await service.create_schedule("f", "ramp", steps(clock, (10, 1), (20, 2)))

    clock.advance(hours=1)
    await service.execute_pending_schedules()

    entry = (await service.get_rollout_history("f"))[0]
    assert entry.change_reason == "Scheduled rollout 'ramp' step 1/2"


async def test_execution_is_idempotent(service: FeatureService, clock):
    await service.upsert_flag("f", rollout_percentage=0)
    await service.create_schedule("f", "s", steps(clock, (25, 1), (50, 2)))

    clock.advance(hours=1)
    first = await service.execute_pending_schedules()
    second = await service.execute_pending_schedules()

    assert first.executed_steps == 1
    assert second.executed_steps == 0
    assert await history_pairs(service, "f") == [(0, 25)]


async def test_step_at_current_percentage_is_still_recorded(service: FeatureService, clock):
    await service.upsert_flag("f", rollout_percentage=25)
    await service.create_schedule("f", "s", steps(clock, (25, 1)))

    clock.advance(hours=1)
    report = await service.execute_pending_schedules()

    assert report.executed_steps == 1
    assert await history_pairs(service, "f") == [(25, 25)]


async def test_concurrent_drivers_apply_each_step_once(
    backend: MemoryFeatureBackend,
    service: FeatureService,
    clock,
):
    await service.upsert_flag("f", rollout_percentage=0)
    await service.create_schedule("f", "s", steps(clock, (10, 1), (40, 2), (70, 3)))
    other = FeatureService(backend, clock=clock)

    clock.advance(hours=5)
    reports = await asyncio.gather(
        service.execute_pending_schedules(),
        other.execute_pending_schedules(),
        service.execute_pending_schedules(),
    )

    assert sum(r.executed_steps for r in reports) == 3
    assert not any(r.errors for r in reports)
    assert await history_pairs(service, "f") == [(0, 10), (10, 40), (40, 70)]


async def test_failing_schedule_does_not_stop_others(
    backend: MemoryFeatureBackend,
    service: FeatureService,
    clock,
):
    await service.upsert_flag("doomed", rollout_percentage=0)
    await service.upsert_flag("healthy", rollout_percentage=0)
    broken = await service.create_schedule("doomed", "s", steps(clock, (10, 1)))
    await service.create_schedule("healthy", "s", steps(clock, (10, 1)))

    # the flag vanishes underneath its schedule
    await backend.delete_flag("doomed")

    clock.advance(hours=1)
    report = await service.execute_pending_schedules()

    assert report.executed_steps == 1
    assert len(report.errors) == 1
    assert report.errors[0].schedule_id == broken.id
    assert report.errors[0].feature_name == "doomed"
    assert (await service.get_flag("healthy")).rollout_percentage == 10
    assert (await service.get_schedule(broken.id)).current_step == 0


async def test_scheduled_step_invalidates_cache(backend: MemoryFeatureBackend, clock):
    from flagkit.core.features import FlagCache

    service = FeatureService(backend, cache=FlagCache(ttl=3600), clock=clock)
    await service.upsert_flag("f", is_enabled=True, rollout_percentage=0)
    await service.create_schedule("f", "s", steps(clock, (100, 1)))
    user = UserContext("u")
    assert not await service.is_enabled("f", user)

    clock.advance(hours=1)
    await service.execute_pending_schedules()

    assert await service.is_enabled("f", user)


# ============ State machine ============


async def test_pause_and_resume(service: FeatureService, clock):
    await service.upsert_flag("f", rollout_percentage=0)
    schedule = await service.create_schedule("f", "s", steps(clock, (25, 1), (50, 2)))

    paused = await service.update_schedule_status(schedule.id, "paused")
    assert paused.status == ScheduleStatus.PAUSED

    clock.advance(hours=3)
    report = await service.execute_pending_schedules()
    assert report.executed_steps == 0
    assert (await service.get_flag("f")).rollout_percentage == 0

    await service.update_schedule_status(schedule.id, ScheduleStatus.ACTIVE)
    report = await service.execute_pending_schedules()
    assert report.executed_steps == 2


async def test_cancelled_is_terminal(service: FeatureService, clock):
    await service.upsert_flag("f")
    schedule = await service.create_schedule("f", "s", steps(clock, (25, 1)))

    await service.update_schedule_status(schedule.id, "cancelled")

    for target in ("active", "paused", "cancelled", "completed"):
        with pytest.raises(InvalidTransitionError):
            await service.update_schedule_status(schedule.id, target)


async def test_completed_is_terminal(service: FeatureService, clock):
    await service.upsert_flag("f")
    schedule = await service.create_schedule("f", "s", steps(clock, (25, 1)))
    clock.advance(hours=1)
    await service.execute_pending_schedules()

    with pytest.raises(InvalidTransitionError):
        await service.update_schedule_status(schedule.id, "paused")


async def test_cannot_complete_by_hand(service: FeatureService, clock):
    await service.upsert_flag("f")
    schedule = await service.create_schedule("f", "s", steps(clock, (25, 1)))

    with pytest.raises(InvalidTransitionError):
        await service.update_schedule_status(schedule.id, "completed")
    with pytest.raises(ValidationError):
        await service.update_schedule_status(schedule.id, "finished")


async def test_unknown_schedule(service: FeatureService):
    from uuid import uuid4

    with pytest.raises(NotFoundError):
        await service.get_schedule(uuid4())
    with pytest.raises(NotFoundError):
        await service.update_schedule_status(uuid4(), "paused")


async def test_list_schedules(service: FeatureService, clock):
    await service.upsert_flag("a")
    await service.upsert_flag("b")
    first = await service.create_schedule("a", "one", steps(clock, (10, 1)))
    second = await service.create_schedule("a", "two", steps(clock, (20, 1)))
    third = await service.create_schedule("b", "three", steps(clock, (30, 1)))
    await service.update_schedule_status(second.id, "paused")

    assert [s.id for s in await service.list_schedules()] == [first.id, second.id, third.id]
    assert [s.id for s in await service.list_schedules("a")] == [first.id, second.id]
    assert [s.id for s in await service.list_schedules(status="paused")] == [second.id]
    with pytest.raises(ValidationError):
        await service.list_schedules(status="sleeping")


# ============ End to end ============


async def test_gradual_rollout_scenario(service: FeatureService, clock):
    await service.upsert_flag("f", is_enabled=True, rollout_percentage=0)
    users = [UserContext(f"user-{i}") for i in range(300)]
    schedule = await service.create_schedule(
        "f", "launch", steps(clock, (25, 1), (75, 2), (100, 3))
    )

    assert not any([await service.is_enabled("f", u) for u in users])

    clock.advance(hours=1)
    await service.execute_pending_schedules()

    assert (await service.get_flag("f")).rollout_percentage == 25
    for u in users:
        assert await service.is_enabled("f", u) is (bucket(u.user_id, "f") < 25)
    assert await history_pairs(service, "f") == [(0, 25)]

    clock.advance(hours=2)
    await service.execute_pending_schedules()

    assert await history_pairs(service, "f") == [(0, 25), (25, 75), (75, 100)]
    assert (await service.get_schedule(schedule.id)).status == ScheduleStatus.COMPLETED
    assert all([await service.is_enabled("f", u) for u in users])
