"""
Feature flag decorators for route handlers.

The handler must receive the service (the `Feature` dependency) and,
for per-user decisions, a `user: UserContext` keyword argument. Without
a service the feature is treated as disabled.

Usage:
    from flagkit.core.features import Feature, require_feature

    @router.get("/new-dashboard")
    @require_feature("new_dashboard")
    async def new_dashboard(feature: Feature, user: UserContext):
        return {"dashboard": "new"}
"""

from functools import wraps
from typing import Any, Callable

from fastapi import HTTPException
from fastapi.responses import RedirectResponse

from .interfaces import EvaluationResult, UserContext
from .service import FeatureService


def _find_service(kwargs: dict[str, Any]) -> FeatureService | None:
    for value in kwargs.values():
        if isinstance(value, FeatureService):
            return value
    return None


def _find_user(kwargs: dict[str, Any]) -> UserContext | None:
    user = kwargs.get("user")
    if isinstance(user, UserContext):
        return user
    for value in kwargs.values():
        if isinstance(value, UserContext):
            return value
    return None


async def _evaluate(feature_name: str, kwargs: dict[str, Any]) -> EvaluationResult | None:
    service = _find_service(kwargs)
    if service is None:
        return None
    return await service.evaluate(feature_name, _find_user(kwargs))


def require_feature(
    feature_name: str,
    *,
    status_code: int = 404,
    detail: str | None = None,
    redirect_url: str | None = None,
):
    """
    Decorator to require a feature flag to be enabled.

    Args:
        feature_name: The feature flag to check
        status_code: HTTP status code if disabled (default: 404)
        detail: Custom error message
        redirect_url: Redirect URL if disabled (instead of error)

    Usage:
        @router.get("/new-ui")
        @require_feature("new_ui", redirect_url="/old-ui")
        async def new_ui(feature: Feature, user: UserContext):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            result = await _evaluate(feature_name, kwargs)

            if result is None or not result.enabled:
                if redirect_url:
                    return RedirectResponse(url=redirect_url, status_code=302)

                error_detail = detail or f"Feature '{feature_name}' is not available"
                raise HTTPException(status_code=status_code, detail=error_detail)

            return await func(*args, **kwargs)

        return wrapper
    return decorator


def feature_variant(
    feature_name: str,
    *,
    variants: dict[str, Callable] | None = None,
    enabled_handler: Callable | None = None,
    disabled_handler: Callable | None = None,
):
    """
    Decorator for A/B testing - route to different handlers.

    Args:
        feature_name: The feature flag
        variants: Handler per A/B variant name
        enabled_handler: Handler when enabled and no variant handler matches
        disabled_handler: Handler when feature is disabled

    Usage:
        async def new_checkout(feature: Feature, user: UserContext):
            return {"version": "new"}

        @router.post("/checkout")
        @feature_variant("checkout_flow", variants={"variantA": new_checkout})
        async def checkout(feature: Feature, user: UserContext):
            return {"version": "control"}
    """
    variants = variants or {}

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            result = await _evaluate(feature_name, kwargs)
            enabled = result is not None and result.enabled

            if enabled and result.variant in variants:
                return await variants[result.variant](*args, **kwargs)
            elif enabled and enabled_handler:
                return await enabled_handler(*args, **kwargs)
            elif not enabled and disabled_handler:
                return await disabled_handler(*args, **kwargs)
            else:
                # Fall through to decorated function
                return await func(*args, **kwargs)

        return wrapper
    return decorator
