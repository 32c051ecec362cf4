"""
Tests for route gating decorators.
"""

import pytest
from fastapi import HTTPException
from fastapi.responses import RedirectResponse

from flagkit.core.features import (
    FeatureService,
    UserContext,
    feature_variant,
    require_feature,
)


@require_feature("beta_feature")
async def beta_endpoint(feature: FeatureService, user: UserContext):
    return {"beta": True}


@require_feature("new_ui", redirect_url="/old-ui")
async def new_ui(feature: FeatureService, user: UserContext):
    return {"ui": "new"}


@pytest.mark.asyncio
async def test_require_feature_enabled(service: FeatureService, user: UserContext):
    await service.upsert_flag("beta_feature", is_enabled=True)

    assert await beta_endpoint(feature=service, user=user) == {"beta": True}


@pytest.mark.asyncio
async def test_require_feature_disabled(service: FeatureService, user: UserContext):
    await service.upsert_flag("beta_feature", is_enabled=False)

    with pytest.raises(HTTPException) as exc_info:
        await beta_endpoint(feature=service, user=user)

    assert exc_info.value.status_code == 404
    assert exc_info.value.detail == "Feature 'beta_feature' is not available"


@pytest.mark.asyncio
async def test_require_feature_fails_closed_without_service(user: UserContext):
    with pytest.raises(HTTPException):
        await beta_endpoint(feature=None, user=user)


@pytest.mark.asyncio
async def test_require_feature_redirect(service: FeatureService, user: UserContext):
    response = await new_ui(feature=service, user=user)

    assert isinstance(response, RedirectResponse)
    assert response.headers["location"] == "/old-ui"


@pytest.mark.asyncio
async def test_require_feature_respects_override(service: FeatureService, user: UserContext):
    await service.upsert_flag("beta_feature", is_enabled=False)
    await service.set_user_override(user.user_id, "beta_feature", True)

    assert await beta_endpoint(feature=service, user=user) == {"beta": True}


async def variant_a(feature: FeatureService, user: UserContext):
    return {"version": "variantA"}


async def disabled(feature: FeatureService, user: UserContext):
    return {"version": "legacy"}


@feature_variant("checkout", variants={"variantA": variant_a}, disabled_handler=disabled)
async def checkout(feature: FeatureService, user: UserContext):
    return {"version": "control"}


@pytest.mark.asyncio
async def test_feature_variant_routes_by_variant(service: FeatureService):
    await service.upsert_flag(
        "checkout", is_enabled=True, ab_test_config={"variants": ["control", "variantA"]}
    )

    seen = set()
    for i in range(50):
        user = UserContext(f"user-{i}")
        response = await checkout(feature=service, user=user)
        expected = await service.get_variant("checkout", user)
        assert response["version"] == expected
        seen.add(response["version"])

    assert seen == {"control", "variantA"}


@pytest.mark.asyncio
async def test_feature_variant_disabled(service: FeatureService, user: UserContext):
    await service.upsert_flag("checkout", is_enabled=False)

    assert await checkout(feature=service, user=user) == {"version": "legacy"}
