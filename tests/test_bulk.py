"""
Tests for bulk operations.
"""

import pytest

from flagkit.core.features import FeatureService, MemoryFeatureBackend, ValidationError


@pytest.mark.asyncio
async def test_bulk_rollout_isolates_failures(service: FeatureService):
    await service.upsert_flag("a", rollout_percentage=0)
    await service.upsert_flag("b", rollout_percentage=0)

    result = await service.bulk_set_rollout_percentage(["a", "missing", "b"], 25)

    assert result.succeeded == ["a", "b"]
    assert len(result.failed) == 1
    assert result.failed[0].name == "missing"
    assert result.failed[0].error_code == "not_found"
    assert not result.all_succeeded
    assert (await service.get_flag("a")).rollout_percentage == 25
    assert (await service.get_flag("b")).rollout_percentage == 25


@pytest.mark.asyncio
async def test_bulk_rollout_validates_once(service: FeatureService):
    await service.upsert_flag("a", rollout_percentage=0)

    with pytest.raises(ValidationError):
        await service.bulk_set_rollout_percentage(["a"], 101)

    assert (await service.get_flag("a")).rollout_percentage == 0


@pytest.mark.asyncio
async def test_bulk_deduplicates_names(service: FeatureService):
    await service.upsert_flag("a", rollout_percentage=0)

    result = await service.bulk_set_rollout_percentage(["a", "a", "a"], 10, reason="dupes")

    assert result.succeeded == ["a"]
    assert len(await service.get_rollout_history("a")) == 1


@pytest.mark.asyncio
async def test_bulk_toggle(service: FeatureService):
    await service.upsert_flag("a")
    await service.upsert_flag("b")

    result = await service.bulk_toggle(["a", "missing", "b"], True)

    assert result.succeeded == ["a", "b"]
    assert result.failed[0].name == "missing"
    assert result.failed[0].error_code == "not_found"
    assert (await service.get_flag("a")).is_enabled
    assert (await service.get_flag("b")).is_enabled


class ExplodingBackend(MemoryFeatureBackend):
    async def update_flag(self, flag, expected_version):
        if flag.feature_name == "boom":
            raise RuntimeError("connection reset")
        return await super().update_flag(flag, expected_version)


@pytest.mark.asyncio
async def test_unexpected_errors_are_collected(clock):
    service = FeatureService(ExplodingBackend(), clock=clock)
    await service.upsert_flag("boom")
    await service.upsert_flag("fine")

    result = await service.bulk_toggle(["boom", "fine"], True)

    assert result.succeeded == ["fine"]
    assert result.failed[0].name == "boom"
    assert result.failed[0].error == "connection reset"
    assert result.failed[0].error_code == "internal_error"
