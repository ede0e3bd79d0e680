from __future__ import annotations

from typing import Any, Mapping

from .catalog import Category
from .models import AggregatedServiceView, FleetStats, LifecycleState, MappingStatus
from .store import ServiceViewStore
from .versions import any_service_updates


def compute_stats(views: Mapping[str, AggregatedServiceView]) -> FleetStats:
    items = list(views.values())
    return FleetStats(
        total=len(items),
        running=sum(1 for v in items if v.status == LifecycleState.RUNNING),
        unhealthy=sum(1 for v in items if v.status == LifecycleState.UNHEALTHY),
        needs_update=sum(1 for v in items if v.upgrade.needs_update and not v.upgrade.is_upgrading),
        total_mappings=sum(len(v.volume_mappings) for v in items),
        mapped_volumes=sum(1 for v in items for m in v.volume_mappings if m.status == MappingStatus.MAPPED),
    )


class ViewPublisher:
    """Read-only face of the view store for the presentation layer."""

    def __init__(self, store: ServiceViewStore):
        self._store = store

    def snapshot(self, category: Category | str | None = None) -> dict[str, AggregatedServiceView]:
        views = self._store.snapshot()
        if category is None or category == "all":
            return views
        cat = Category(category)
        return {k: v for k, v in views.items() if v.descriptor.category == cat}

    def get(self, identity: str) -> AggregatedServiceView:
        return self._store.get(identity)

    def stats(self) -> FleetStats:
        # Always derived from the current snapshot, never cached.
        return compute_stats(self._store.snapshot())

    def versions(self, is_upgrading_global: bool = False) -> dict[str, Any]:
        statuses = self._store.upgrade_statuses()
        platform = self._store.platform_status()
        has_service_updates = any_service_updates(statuses)
        return {
            "services": {k: st.to_dict() for k, st in statuses.items()},
            self._store.catalog.platform.identity: platform.to_dict(),
            "hasServiceUpdates": has_service_updates,
            "platformNeedsUpdate": platform.needs_update,
            "hasAnyUpdates": has_service_updates or platform.needs_update,
            "isUpgradingGlobal": is_upgrading_global,
        }
