"""
Bulk operations over many flags (or many users).

Each item runs on its own: one failure never aborts the rest, and every
input appears exactly once in either `succeeded` or `failed`.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

import structlog

from .exceptions import FeatureFlagError
from .validation import validate_percentage
from .writer import FlagWriter

logger = structlog.get_logger()


@dataclass
class BulkFailure:
    name: str
    error: str
    error_code: str = "internal_error"


@dataclass
class BulkResult:
    succeeded: list[str] = field(default_factory=list)
    failed: list[BulkFailure] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


def _unique(names: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(names))


class BulkOperationCoordinator:
    def __init__(self, writer: FlagWriter):
        self.writer = writer

    async def apply_to_many(
        self,
        names: Iterable[str],
        operation: Callable[[str], Awaitable[Any]],
    ) -> BulkResult:
        """Run `operation` once per distinct name, collecting outcomes."""
        result = BulkResult()

        for name in _unique(names):
            try:
                await operation(name)
            except FeatureFlagError as e:
                logger.warning("Bulk item failed", name=name, error=e.message)
                result.failed.append(BulkFailure(name, e.message, e.error_code))
            except Exception as e:
                logger.exception("Bulk item failed unexpectedly", name=name)
                result.failed.append(BulkFailure(name, str(e)))
            else:
                result.succeeded.append(name)

        logger.info(
            "Bulk operation finished",
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        return result

    async def set_rollout_percentage(
        self,
        feature_names: Iterable[str],
        percentage: int,
        reason: str = "",
    ) -> BulkResult:
        """Percentage is validated once, before any flag is touched."""
        validate_percentage(percentage)

        async def apply(name: str) -> None:
            await self.writer.set_percentage(name, percentage, reason)

        return await self.apply_to_many(feature_names, apply)

    async def set_enabled(
        self,
        feature_names: Iterable[str],
        enabled: bool,
        reason: str | None = None,
    ) -> BulkResult:
        async def apply(name: str) -> None:
            await self.writer.set_enabled(name, enabled, reason)

        return await self.apply_to_many(feature_names, apply)
