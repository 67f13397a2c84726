"""
Shared pytest fixtures and configuration for dagrun tests.

This module provides:
- Logging and settings isolation between tests
- Secret providers backed by in-memory stores
- Store fixtures (in-memory and SQLite)
"""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
import structlog

from dagrun.core.secrets import DictSecretBackend, SecretProvider
from dagrun.core.settings import reset_settings
from dagrun.orchestration.sqlite_store import SqliteRunStateStore
from dagrun.orchestration.state import InMemoryRunStateStore


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolate_logging_and_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Each test starts from default structlog config and fresh settings."""
    for key in ("DAGRUN_LOG_LEVEL", "DAGRUN_MAX_CONCURRENCY", "DAGRUN_DATABASE", "DAGRUN_SKIPPED_OUTPUT_POLICY"):
        monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    reset_settings()


# =============================================================================
# Secrets
# =============================================================================


@pytest.fixture
def secret_backend() -> DictSecretBackend:
    return DictSecretBackend({"db-password": "hunter2"})


@pytest.fixture
def secrets(secret_backend: DictSecretBackend) -> SecretProvider:
    """Provider with a single in-memory ``vault`` store."""
    return SecretProvider({"vault": secret_backend})


# =============================================================================
# Stores
# =============================================================================


@pytest.fixture
def memory_store() -> InMemoryRunStateStore:
    return InMemoryRunStateStore()


@pytest.fixture
def sqlite_store(tmp_path: Path) -> Generator[SqliteRunStateStore, None, None]:
    store = SqliteRunStateStore(tmp_path / "runs.db")
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    """Both store implementations, for contract tests."""
    if request.param == "memory":
        yield InMemoryRunStateStore()
    else:
        sqlite = SqliteRunStateStore(tmp_path / "contract.db")
        yield sqlite
        sqlite.close()
