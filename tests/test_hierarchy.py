"""
Tests for parent/child flags.
"""

from uuid import uuid4

import pytest

from flagkit.core.features import (
    ChangeType,
    CycleError,
    FeatureFlag,
    FeatureService,
    MemoryFeatureBackend,
    NotFoundError,
    UserContext,
)


async def make_family(service: FeatureService) -> None:
    await service.upsert_flag("parent", is_enabled=True)
    await service.upsert_flag("child_a", is_enabled=True, parent_feature="parent")
    await service.upsert_flag("child_b", is_enabled=True, parent_feature="parent")


@pytest.mark.asyncio
async def test_disabled_parent_disables_children(service: FeatureService, user: UserContext):
    """Children stay enabled in storage but evaluate as disabled."""
    await make_family(service)

    await service.toggle_flag("parent", False)

    assert (await service.get_flag("child_a")).is_enabled
    result = await service.evaluate("child_a", user)
    assert not result.enabled
    assert result.reason == "Parent 'parent' disabled"


@pytest.mark.asyncio
async def test_cascade_toggle(service: FeatureService, user: UserContext):
    await make_family(service)

    updated = await service.toggle_parent_and_children("parent", False)

    assert [f.feature_name for f in updated] == ["parent", "child_a", "child_b"]
    for name in ("parent", "child_a", "child_b"):
        assert not (await service.get_flag(name)).is_enabled
        assert not await service.is_enabled(name, user)

    child_history = await service.get_rollout_history("child_a")
    assert child_history[-1].change_type == ChangeType.STATE
    assert child_history[-1].change_reason == "Cascaded from parent 'parent'"


@pytest.mark.asyncio
async def test_cascade_enable(service: FeatureService, user: UserContext):
    await service.upsert_flag("parent")
    await service.upsert_flag("child", parent_feature="parent")

    await service.toggle_parent_and_children("parent", True)

    assert await service.is_enabled("child", user)


@pytest.mark.asyncio
async def test_cascade_missing_parent(service: FeatureService):
    with pytest.raises(NotFoundError):
        await service.toggle_parent_and_children("missing", True)


class FailingBackend(MemoryFeatureBackend):
    """Fails every write to one flag."""

    def __init__(self, fail_on: str):
        super().__init__()
        self.fail_on = fail_on

    async def update_flag(self, flag, expected_version):
        if flag.feature_name == self.fail_on:
            raise RuntimeError("disk full")
        return await super().update_flag(flag, expected_version)


@pytest.mark.asyncio
async def test_cascade_is_all_or_nothing(clock):
    service = FeatureService(FailingBackend(fail_on="child_b"), clock=clock)
    await make_family(service)

    with pytest.raises(RuntimeError):
        await service.toggle_parent_and_children("parent", False)

    for name in ("parent", "child_a", "child_b"):
        assert (await service.get_flag(name)).is_enabled
        assert await service.get_rollout_history(name) == []


@pytest.mark.asyncio
async def test_reparenting_cannot_create_cycle(service: FeatureService):
    await service.upsert_flag("a")
    await service.upsert_flag("b", parent_feature="a")
    await service.upsert_flag("c", parent_feature="b")

    with pytest.raises(CycleError):
        await service.upsert_flag("a", parent_feature="c")

    assert (await service.get_flag("a")).parent_feature_id is None


@pytest.mark.asyncio
async def test_grandparent_disables_grandchild(service: FeatureService, user: UserContext):
    await service.upsert_flag("a", is_enabled=True)
    await service.upsert_flag("b", is_enabled=True, parent_feature="a")
    await service.upsert_flag("c", is_enabled=True, parent_feature="b")
    assert await service.is_enabled("c", user)

    await service.toggle_flag("a", False)

    result = await service.evaluate("c", user)
    assert not result.enabled
    assert result.reason == "Parent 'a' disabled"


@pytest.mark.asyncio
async def test_stored_cycle_evaluates_disabled(
    backend: MemoryFeatureBackend,
    service: FeatureService,
    user: UserContext,
):
    a = FeatureFlag("a", is_enabled=True)
    b = FeatureFlag("b", is_enabled=True, parent_feature_id=a.id)
    a.parent_feature_id = b.id
    backend.seed([a, b])

    result = await service.evaluate("a", user)

    assert not result.enabled
    assert result.reason == "Parent chain could not be resolved"
    with pytest.raises(CycleError):
        await service.hierarchy.get_ancestors(a)


@pytest.mark.asyncio
async def test_dangling_parent_ends_chain(
    backend: MemoryFeatureBackend,
    service: FeatureService,
    user: UserContext,
):
    backend.seed([FeatureFlag("orphan", is_enabled=True, parent_feature_id=uuid4())])

    assert await service.is_enabled("orphan", user)
