from __future__ import annotations

from typing import Any, Mapping, Protocol

from . import db
from .models import UpgradeStatus
from .store import ServiceViewStore


class VersionSource(Protocol):
    def check_versions(self) -> Mapping[str, Any]: ...


def _version(entry: Any, key: str) -> str | None:
    if not isinstance(entry, Mapping):
        return None
    value = entry.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()


def normalize_entry(entry: Any, known_current: str) -> tuple[str, str]:
    """(current, latest) for one feed entry.

    Anything missing or malformed collapses to "no known update": latest
    equals current, and current falls back to what we already knew.
    """
    current = _version(entry, "currentVersion") or known_current
    latest = _version(entry, "latestVersion") or current
    return current, latest


def any_service_updates(statuses: Mapping[str, UpgradeStatus]) -> bool:
    return any(st.needs_update and not st.is_upgrading for st in statuses.values())


class VersionTracker:
    """Keeps per-service upgrade eligibility fresh, on its own cadence."""

    def __init__(self, store: ServiceViewStore, source: VersionSource):
        self.store = store
        self.source = source
        self.last_error: str | None = None

    def check_for_updates(self) -> dict[str, UpgradeStatus]:
        try:
            response = self.source.check_versions()
            if not isinstance(response, Mapping):
                raise TypeError(f"expected a mapping, got {type(response).__name__}")
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            db.log_event("WARN", f"Version check failed: {self.last_error}")
            return self.store.upgrade_statuses()

        self.last_error = None
        for identity, known in self.store.upgrade_statuses().items():
            current, latest = normalize_entry(response.get(identity), known.current_version)
            st = self.store.set_versions(identity, current, latest)
            if st.needs_update and not known.needs_update:
                db.log_event("INFO", f"Update available: {current} -> {latest}", service_name=identity)

        platform = self.store.catalog.platform
        known_platform = self.store.platform_status()
        current, latest = normalize_entry(response.get(platform.identity), known_platform.current_version)
        self.store.set_platform_versions(current, latest)
        return self.store.upgrade_statuses()

    @property
    def has_service_updates(self) -> bool:
        return any_service_updates(self.store.upgrade_statuses())

    @property
    def platform_needs_update(self) -> bool:
        return self.store.platform_status().needs_update

    @property
    def has_any_updates(self) -> bool:
        return self.has_service_updates or self.platform_needs_update
