"""
Read-through cache for flag definitions.

Only the evaluation path reads through the cache. Writes invalidate the
names they touched once their transaction has closed, which bumps the
flag's generation in the shared `GenerationStore`.

An entry is served only while the generation it was loaded under is
still current. The generation is read before the definition is loaded,
so a load that races a commit is cached under the old generation and
discarded on the next read. Entries also expire after `ttl` seconds,
which bounds writes made behind the engine's back.
"""

import time
from dataclasses import dataclass
from typing import Awaitable, Callable
from uuid import UUID

from .interfaces import FeatureFlag
from .invalidation import GenerationStore, LocalGenerationStore

FlagLoader = Callable[[], Awaitable[FeatureFlag | None]]


@dataclass
class _Entry:
    expires_at: float
    generation: int
    flag: FeatureFlag


class FlagCache:
    """Per-process TTL cache keyed by feature name, checked against shared generations."""

    def __init__(
        self,
        ttl: float = 60,
        clock: Callable[[], float] = time.monotonic,
        generations: GenerationStore | None = None,
    ):
        self.ttl = ttl
        self.generations = generations if generations is not None else LocalGenerationStore()
        self._clock = clock
        self._flags: dict[str, _Entry] = {}
        self._names_by_id: dict[UUID, str] = {}

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    async def get_or_load(self, feature_name: str, loader: FlagLoader) -> FeatureFlag | None:
        if not self.enabled:
            return await loader()

        generation = await self.generations.current(feature_name)
        entry = self._flags.get(feature_name)
        if (
            entry is not None
            and entry.generation == generation
            and self._clock() < entry.expires_at
        ):
            return entry.flag

        flag = await loader()
        if flag is None or generation is None:
            self._drop(feature_name)
            return flag

        self._flags[feature_name] = _Entry(self._clock() + self.ttl, generation, flag)
        self._names_by_id[flag.id] = feature_name
        return flag

    async def get_or_load_by_id(
        self,
        flag_id: UUID,
        load_by_id: Callable[[], Awaitable[FeatureFlag | None]],
        load_by_name: Callable[[str], Awaitable[FeatureFlag | None]],
    ) -> FeatureFlag | None:
        """Ancestor lookups; the id is resolved to a name once, then cached by name."""
        name = self._names_by_id.get(flag_id)
        if name is None or not self.enabled:
            flag = await load_by_id()
            if flag is not None and self.enabled:
                self._names_by_id[flag.id] = flag.feature_name
            return flag

        flag = await self.get_or_load(name, lambda: load_by_name(name))
        if flag is None or flag.id != flag_id:
            # deleted, or deleted and recreated under the same name
            self._names_by_id.pop(flag_id, None)
            return None
        return flag

    async def invalidate(self, *feature_names: str) -> None:
        if not feature_names:
            return
        for name in feature_names:
            self._drop(name)
        await self.generations.bump(*feature_names)

    def _drop(self, feature_name: str) -> None:
        entry = self._flags.pop(feature_name, None)
        if entry is not None:
            self._names_by_id.pop(entry.flag.id, None)

    def __len__(self) -> int:
        return len(self._flags)
