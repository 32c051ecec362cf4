"""
Tests for settings validation and engine options.
"""

import pytest
from pydantic import ValidationError

from flagkit.core.config import DatabaseSettings, FeatureSettings, Settings, settings
from flagkit.core.features import LocalGenerationStore, RedisGenerationStore
from flagkit.core.features.dependencies import build_generation_store
from flagkit.models.database import engine_options


def test_database_url_accepts_supported_drivers():
    assert DatabaseSettings(url="sqlite+aiosqlite:///:memory:").url.startswith("sqlite")
    assert DatabaseSettings(url="postgresql+asyncpg://u:p@db/flags").url.startswith("postgresql")


def test_database_url_rejects_sync_driver():
    with pytest.raises(ValidationError):
        DatabaseSettings(url="postgresql://u:p@db/flags")


def test_feature_backend_must_be_known():
    with pytest.raises(ValidationError):
        FeatureSettings(backend="redis")


def test_environment_must_be_known():
    with pytest.raises(ValidationError):
        Settings(environment="qa")


def test_sqlite_engine_has_no_pool_sizing():
    options = engine_options("sqlite+aiosqlite:///:memory:")

    assert "pool_size" not in options
    assert "max_overflow" not in options


def test_postgres_engine_is_pooled():
    options = engine_options("postgresql+asyncpg://u:p@db/flags")

    assert options["pool_size"] >= 1
    assert options["pool_pre_ping"] is True


def test_cache_invalidation_must_be_known():
    with pytest.raises(ValidationError):
        FeatureSettings(cache_invalidation="memcached")


def test_generation_store_follows_settings(monkeypatch):
    monkeypatch.setattr(settings.features, "backend", "database")
    monkeypatch.setattr(settings.features, "cache_invalidation", "redis")
    assert isinstance(build_generation_store(), RedisGenerationStore)

    monkeypatch.setattr(settings.features, "cache_invalidation", "local")
    assert isinstance(build_generation_store(), LocalGenerationStore)


def test_memory_backend_keeps_generations_local(monkeypatch):
    monkeypatch.setattr(settings.features, "backend", "memory")
    monkeypatch.setattr(settings.features, "cache_invalidation", "redis")

    assert isinstance(build_generation_store(), LocalGenerationStore)
