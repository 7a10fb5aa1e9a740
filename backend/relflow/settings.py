"""Runtime and engine settings loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float | None) -> float | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip()
    return normalized or default


RuntimeMode = Literal["single_process", "distributed"]


class FailureMode(str, Enum):
    """What the scheduler does once a node fails terminally."""

    DRAIN = "drain"
    CONTINUE = "continue"


@dataclass(frozen=True)
class RuntimeSettings:
    """Storage and lease configuration for single vs distributed deployments."""

    mode: RuntimeMode = "single_process"
    data_dir: Path = field(default_factory=lambda: Path("data") / "workflows")
    redis_url: str | None = None
    redis_key_prefix: str = "relflow:"
    run_lease_ttl_seconds: int = 30

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        raw_mode = (_env_str("RELFLOW_MODE", "single_process") or "single_process").lower()
        mode: RuntimeMode = "distributed" if raw_mode == "distributed" else "single_process"
        data_dir = _env_str("RELFLOW_DATA_DIR")
        return cls(
            mode=mode,
            data_dir=Path(data_dir) if data_dir else Path("data") / "workflows",
            redis_url=_env_str("REDIS_URL"),
            redis_key_prefix=_env_str("RELFLOW_REDIS_PREFIX", "relflow:") or "relflow:",
            run_lease_ttl_seconds=max(5, _env_int("RELFLOW_LEASE_TTL_SECONDS", 30)),
        )


@dataclass(frozen=True)
class EngineSettings:
    """Retry, timeout and scheduling knobs for the execution engine."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    attempt_timeout_seconds: float | None = None
    failure_mode: FailureMode = FailureMode.DRAIN
    listener_warn_seconds: float = 1.0
    lease_refresh_seconds: float = 10.0
    approval_poll_seconds: float = 2.0
    log_outputs: bool = True

    @classmethod
    def from_env(cls) -> "EngineSettings":
        raw_mode = (_env_str("RELFLOW_FAILURE_MODE", "drain") or "drain").lower()
        failure_mode = (
            FailureMode.CONTINUE if raw_mode == FailureMode.CONTINUE.value else FailureMode.DRAIN
        )
        timeout = _env_float("RELFLOW_ATTEMPT_TIMEOUT_SECONDS", None)
        return cls(
            max_attempts=max(1, _env_int("RELFLOW_MAX_ATTEMPTS", 3)),
            backoff_seconds=max(0.0, _env_float("RELFLOW_BACKOFF_SECONDS", 1.0) or 0.0),
            max_backoff_seconds=max(
                0.0, _env_float("RELFLOW_MAX_BACKOFF_SECONDS", 30.0) or 0.0
            ),
            attempt_timeout_seconds=timeout if timeout and timeout > 0 else None,
            failure_mode=failure_mode,
            listener_warn_seconds=max(
                0.0, _env_float("RELFLOW_LISTENER_WARN_SECONDS", 1.0) or 0.0
            ),
            lease_refresh_seconds=max(
                1.0, _env_float("RELFLOW_LEASE_REFRESH_SECONDS", 10.0) or 1.0
            ),
            approval_poll_seconds=max(
                0.1, _env_float("RELFLOW_APPROVAL_POLL_SECONDS", 2.0) or 0.1
            ),
            log_outputs=_env_bool("RELFLOW_LOG_OUTPUTS", True),
        )


class Settings:
    """Container for application settings."""

    def __init__(self, *, runtime: RuntimeSettings, engine: EngineSettings) -> None:
        self.runtime = runtime
        self.engine = engine

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(runtime=RuntimeSettings.from_env(), engine=EngineSettings.from_env())


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    """Return a cached Settings instance built from the current environment."""

    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""

    global _SETTINGS
    _SETTINGS = None
