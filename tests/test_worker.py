"""
Tests for the Celery rollout schedule task.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from flagkit.core.features import (
    DatabaseFeatureBackend,
    FeatureFlag,
    FeatureService,
    FlagCache,
    LocalGenerationStore,
    RolloutSchedule,
    ScheduleStatus,
    ScheduleStep,
    UserContext,
)
from flagkit.models import database
from flagkit.models.base import Base
from flagkit.utils.timezone import utc_now
from flagkit.worker.celery_app import app as celery_app
from flagkit.worker.tasks import scheduled
from flagkit.worker.tasks.scheduled import execute_rollout_schedules


@pytest.fixture
def generations(monkeypatch) -> LocalGenerationStore:
    """Generation store the worker shares with API-side caches."""
    store = LocalGenerationStore()
    monkeypatch.setattr(scheduled, "build_generation_store", lambda: store)
    return store


@pytest.fixture
def worker_db(tmp_path, monkeypatch, generations):
    """File-backed SQLite the task opens its own sessions against."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}",
        poolclass=NullPool,
    )
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def create_tables():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create_tables())
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "async_session_factory", factory)
    return factory


def run(factory, operation):
    async def inner():
        async with factory() as session:
            return await operation(DatabaseFeatureBackend(session))

    return asyncio.run(inner())


def test_beat_schedule_registered():
    entry = celery_app.conf.beat_schedule["execute-rollout-schedules"]
    assert entry["task"] == execute_rollout_schedules.name


def test_task_executes_due_steps(worker_db):
    now = utc_now()
    schedule = RolloutSchedule(
        feature_name="f",
        schedule_name="launch",
        steps=[
            ScheduleStep(25, now - timedelta(hours=2)),
            ScheduleStep(50, now - timedelta(hours=1)),
            ScheduleStep(100, now + timedelta(days=1)),
        ],
        created_at=now,
        updated_at=now,
    )

    async def seed(backend: DatabaseFeatureBackend):
        async with backend.transaction():
            await backend.create_flag(
                FeatureFlag("f", is_enabled=True, rollout_percentage=0, created_at=now, updated_at=now)
            )
            await backend.create_schedule(schedule)

    run(worker_db, seed)

    result = execute_rollout_schedules()

    assert result["status"] == "completed"
    assert result["executed_steps"] == 2
    assert result["completed_schedules"] == []
    assert result["errors"] == []

    async def check(backend: DatabaseFeatureBackend):
        flag = await backend.get_flag("f")
        stored = await backend.get_schedule(schedule.id)
        history = await backend.list_history("f")
        return flag, stored, history

    flag, stored, history = run(worker_db, check)
    assert flag.rollout_percentage == 50
    assert stored.current_step == 2
    assert stored.status == ScheduleStatus.ACTIVE
    assert [(e.old_percentage, e.new_percentage) for e in history] == [(0, 25), (25, 50)]

    assert execute_rollout_schedules()["executed_steps"] == 0


def test_task_reports_failures(worker_db):
    now = utc_now()
    orphan = RolloutSchedule(
        feature_name="deleted_flag",
        schedule_name="orphan",
        steps=[ScheduleStep(10, now - timedelta(minutes=5))],
        created_at=now,
        updated_at=now,
    )

    async def seed(backend: DatabaseFeatureBackend):
        async with backend.transaction():
            await backend.create_schedule(orphan)

    run(worker_db, seed)

    result = execute_rollout_schedules()

    assert result["executed_steps"] == 0
    assert result["errors"][0]["schedule_id"] == str(orphan.id)
    assert result["errors"][0]["feature_name"] == "deleted_flag"


def test_worker_step_is_visible_to_cached_api_service(worker_db, generations):
    now = utc_now()
    api_cache = FlagCache(ttl=3600, generations=generations)
    user = UserContext("user-1")

    async def seed(backend: DatabaseFeatureBackend):
        async with backend.transaction():
            await backend.create_flag(
                FeatureFlag("f", is_enabled=True, rollout_percentage=0, created_at=now, updated_at=now)
            )
            await backend.create_schedule(
                RolloutSchedule(
                    feature_name="f",
                    schedule_name="launch",
                    steps=[ScheduleStep(100, now - timedelta(minutes=1))],
                    created_at=now,
                    updated_at=now,
                )
            )

    async def evaluate(backend: DatabaseFeatureBackend):
        return await FeatureService(backend, cache=api_cache).evaluate("f", user)

    run(worker_db, seed)
    assert not run(worker_db, evaluate).enabled
    assert len(api_cache) == 1

    assert execute_rollout_schedules()["executed_steps"] == 1

    assert run(worker_db, evaluate).enabled
