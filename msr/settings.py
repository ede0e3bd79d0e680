from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("MSR_DB_PATH", "msr.db")
    catalog_path: str | None = os.getenv("MSR_CATALOG_PATH")
    platform_container: str = os.getenv("MSR_PLATFORM_CONTAINER", "arrmematey")
    log_level: str = os.getenv("MSR_LOG_LEVEL", "INFO")

    # Polling cadences
    status_poll_s: float = _env_float("MSR_STATUS_POLL_S", 30.0)
    version_poll_s: float = _env_float("MSR_VERSION_POLL_S", 60.0)

    # Upgrade workflow
    upgrade_settle_s: float = _env_float("MSR_UPGRADE_SETTLE_S", 3.0)
    global_settle_s: float = _env_float("MSR_GLOBAL_SETTLE_S", 5.0)
    fanout_workers: int = _env_int("MSR_FANOUT_WORKERS", 12)

    # Container control
    stop_grace_s: int = _env_int("MSR_STOP_GRACE_S", 10)
    log_tail_lines: int = _env_int("MSR_LOG_TAIL_LINES", 100)

    # Version feed (optional). Without it the catalog baselines are reported.
    version_feed_url: str | None = os.getenv("MSR_VERSION_FEED_URL")
    version_feed_timeout_s: float = _env_float("MSR_VERSION_FEED_TIMEOUT_S", 5.0)

    # Basic auth for mutating endpoints; disabled unless a password is set.
    admin_user: str = os.getenv("MSR_ADMIN_USER", "admin")
    admin_password: str | None = os.getenv("MSR_ADMIN_PASSWORD")
    allow_anonymous_reads: bool = _env_bool("MSR_ALLOW_ANONYMOUS_READS", True)


settings = Settings()
