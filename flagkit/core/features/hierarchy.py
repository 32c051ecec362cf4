"""
Parent/child relationships between flags.

The data model only uses one level of nesting, but ancestor walks handle
any depth and stop with CycleError instead of looping on bad data.
"""

from typing import Awaitable, Callable
from uuid import UUID

import structlog

from .exceptions import CycleError, NotFoundError
from .interfaces import FeatureBackend, FeatureFlag
from .writer import FlagWriter

logger = structlog.get_logger()

FlagLookup = Callable[[UUID], Awaitable[FeatureFlag | None]]


class HierarchyManager:
    def __init__(self, backend: FeatureBackend, writer: FlagWriter):
        self.backend = backend
        self.writer = writer

    # ============================================================
    # QUERIES
    # ============================================================

    async def get_children(self, parent_id: UUID) -> list[FeatureFlag]:
        return await self.backend.list_children(parent_id)

    async def get_children_by_name(self, parent_name: str) -> list[FeatureFlag]:
        parent = await self.backend.get_flag(parent_name)
        if parent is None:
            raise NotFoundError(f"Feature flag '{parent_name}' not found")
        return await self.backend.list_children(parent.id)

    async def has_children(self, feature_name: str) -> bool:
        return bool(await self.get_children_by_name(feature_name))

    async def get_parent_features(self) -> list[FeatureFlag]:
        """Flags without a parent."""
        flags = await self.backend.list_flags()
        return [flag for flag in flags if flag.parent_feature_id is None]

    async def get_ancestors(
        self,
        flag: FeatureFlag,
        lookup: FlagLookup | None = None,
    ) -> list[FeatureFlag]:
        """
        Parent chain from the direct parent up to the root.

        A dangling parent reference ends the chain.
        Raises CycleError if the chain loops.
        """
        lookup = lookup or self.backend.get_flag_by_id
        ancestors: list[FeatureFlag] = []
        visited = {flag.id}
        parent_id = flag.parent_feature_id

        while parent_id is not None:
            if parent_id in visited:
                raise CycleError(
                    f"Feature flag '{flag.feature_name}' is its own ancestor"
                )
            visited.add(parent_id)

            parent = await lookup(parent_id)
            if parent is None:
                logger.warning(
                    "Dangling parent reference",
                    feature_name=flag.feature_name,
                    parent_id=str(parent_id),
                )
                break

            ancestors.append(parent)
            parent_id = parent.parent_feature_id

        return ancestors

    # ============================================================
    # VALIDATION
    # ============================================================

    async def validate_parent(self, flag_id: UUID | None, parent_id: UUID) -> FeatureFlag:
        """
        Check that `parent_id` may become the parent of `flag_id`.

        `flag_id` is None for a flag that does not exist yet, which can
        never close a cycle. Returns the parent flag.
        """
        parent = await self.backend.get_flag_by_id(parent_id)
        if parent is None:
            raise NotFoundError(f"Parent feature flag {parent_id} not found")
        if flag_id is None:
            return parent
        if parent_id == flag_id:
            raise CycleError("A feature flag cannot be its own parent")

        for ancestor in await self.get_ancestors(parent):
            if ancestor.id == flag_id:
                raise CycleError(
                    f"Making '{parent.feature_name}' the parent would create a cycle"
                )
        return parent

    # ============================================================
    # CASCADE
    # ============================================================

    async def toggle_parent_and_children(
        self,
        parent_name: str,
        enabled: bool,
    ) -> list[FeatureFlag]:
        """
        Set the parent's switch and every direct child's switch to `enabled`.

        All or nothing: if any child write fails, every flag (and its
        history) is left as it was.
        """
        async with self.writer.transaction():
            parent = await self.writer.set_enabled(parent_name, enabled)
            children = await self.backend.list_children(parent.id)
            updated = [parent]
            for child in children:
                updated.append(
                    await self.writer.set_enabled(
                        child.feature_name,
                        enabled,
                        reason=f"Cascaded from parent '{parent_name}'",
                    )
                )

        logger.info(
            "Cascade toggle applied",
            feature_name=parent_name,
            enabled=enabled,
            children=len(updated) - 1,
        )
        return updated
