"""
Persistence layer: declarative base, column mixins and the async engine.

The flag tables live in `flagkit.core.features.models`.
"""

from .base import Base, TimestampMixin, UUIDMixin, VersionMixin

__all__ = ["Base", "TimestampMixin", "UUIDMixin", "VersionMixin"]
