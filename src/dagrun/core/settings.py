"""Engine settings for dagrun.

Configuration is explicit, validated, and environment-driven: every field
can be set through a ``DAGRUN_``-prefixed environment variable or a ``.env``
file, and the CLI flags override what the environment provides.

Features:
    - **DagrunSettings:** pydantic-settings model with engine defaults
    - **env_prefix:** ``DAGRUN_LOG_LEVEL``, ``DAGRUN_MAX_CONCURRENCY``, ...
    - **.env file support:** automatic loading via pydantic-settings
    - **Extra ignore:** unknown env vars don't cause startup failures

Examples:
    >>> from dagrun.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.max_workers
    32

Tags:
    settings, configuration, pydantic, environment, dagrun
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DagrunSettings(BaseSettings):
    """Settings shared by the scheduler, the runners and the CLI.

    Fields
    ──────
    log_level                  : Structlog log level
    log_json                   : Force JSON (True) / console (False) logs
    max_concurrency            : Global cap on concurrently running leaf units
    max_workers                : Worker pool size when no global cap is set
    database                   : SQLite path for the durable run state store
    skipped_output_policy      : How gates read the output of a skipped step
    runner_inherit_env         : Child processes inherit the parent env
    runner_kill_timeout_seconds: Grace period between SIGTERM and SIGKILL
    secrets_dir                : Root directory of the ``file`` secret store
    """

    model_config = SettingsConfigDict(
        env_prefix="DAGRUN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Scheduling ───────────────────────────────────────────────
    max_concurrency: int | None = Field(default=None, ge=1)
    max_workers: int = Field(default=32, ge=1)
    skipped_output_policy: Literal["false", "empty", "error"] = "false"

    # ── Storage ──────────────────────────────────────────────────
    database: str | None = Field(
        default=None,
        description="SQLite file for run state; in-memory store when unset",
    )

    # ── Runner ───────────────────────────────────────────────────
    runner_inherit_env: bool = True
    runner_kill_timeout_seconds: float = Field(default=5.0, ge=0)

    # ── Secrets ──────────────────────────────────────────────────
    secrets_dir: Path = Path("/run/secrets")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


@lru_cache(maxsize=1)
def get_settings() -> DagrunSettings:
    """Return the process-wide settings (read once from the environment)."""
    return DagrunSettings()


def reset_settings() -> None:
    """Forget cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()


__all__ = ["DagrunSettings", "get_settings", "reset_settings"]
