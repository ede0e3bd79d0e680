from __future__ import annotations

from dataclasses import replace
from threading import Lock
from typing import Mapping

from .catalog import Catalog, PlatformRecord, ServiceDescriptor, UnknownService
from .models import (
    AggregatedServiceView,
    LifecycleState,
    MappingStatus,
    RuntimeSection,
    UpgradeStatus,
    VolumeMappingStatus,
)


def unobserved_section(desc: ServiceDescriptor) -> RuntimeSection:
    """Runtime half of a view before the first successful poll."""
    return RuntimeSection(
        fact=None,
        state=LifecycleState.UNKNOWN,
        health="unknown",
        mappings=tuple(
            VolumeMappingStatus(m.host_path, m.container_path, MappingStatus.WARNING) for m in desc.volume_mappings
        ),
    )


def baseline_upgrade(desc: ServiceDescriptor | PlatformRecord) -> UpgradeStatus:
    return UpgradeStatus(current_version=desc.current_version, latest_version=desc.latest_version)


class ServiceViewStore:
    """The aggregated service view, one entry per catalog identity.

    Runtime fields and upgrade fields live in separate maps with separate
    writers: the Reconciler replaces ``RuntimeSection``s, the Version Tracker
    and Orchestrator replace ``UpgradeStatus``es. Views are composed on read.
    """

    def __init__(self, catalog: Catalog) -> None:
        self.catalog = catalog
        self.lock = Lock()
        self._runtime: dict[str, RuntimeSection] = {d.identity: unobserved_section(d) for d in catalog}
        self._upgrade: dict[str, UpgradeStatus] = {d.identity: baseline_upgrade(d) for d in catalog}
        self._platform: UpgradeStatus = baseline_upgrade(catalog.platform)

    def _check(self, identity: str) -> None:
        if identity not in self._runtime:
            raise UnknownService(identity)

    def _view(self, identity: str) -> AggregatedServiceView:
        return AggregatedServiceView(
            descriptor=self.catalog.get(identity),
            runtime=self._runtime[identity],
            upgrade=self._upgrade[identity],
        )

    # --- reads ---

    def snapshot(self) -> dict[str, AggregatedServiceView]:
        with self.lock:
            return {identity: self._view(identity) for identity in self._runtime}

    def get(self, identity: str) -> AggregatedServiceView:
        with self.lock:
            self._check(identity)
            return self._view(identity)

    def runtime_section(self, identity: str) -> RuntimeSection:
        with self.lock:
            self._check(identity)
            return self._runtime[identity]

    def upgrade_status(self, identity: str) -> UpgradeStatus:
        with self.lock:
            self._check(identity)
            return self._upgrade[identity]

    def upgrade_statuses(self) -> dict[str, UpgradeStatus]:
        with self.lock:
            return dict(self._upgrade)

    def platform_status(self) -> UpgradeStatus:
        with self.lock:
            return self._platform

    # --- runtime writer (Reconciler) ---

    def publish_runtime(self, sections: Mapping[str, RuntimeSection]) -> dict[str, RuntimeSection]:
        """Replace the runtime half of every given identity in one step.

        Returns the sections that were replaced, read under the same lock.
        """
        for identity, section in sections.items():
            desc = self.catalog.get(identity)
            if len(section.mappings) != len(desc.volume_mappings):
                raise ValueError(
                    f"'{identity}' declares {len(desc.volume_mappings)} mappings, section has {len(section.mappings)}"
                )
        with self.lock:
            previous = {identity: self._runtime[identity] for identity in sections}
            self._runtime.update(sections)
        return previous

    # --- upgrade writers (Version Tracker / Orchestrator) ---

    def set_versions(self, identity: str, current: str, latest: str) -> UpgradeStatus:
        with self.lock:
            self._check(identity)
            st = self._upgrade[identity].with_versions(current, latest)
            self._upgrade[identity] = st
            return st

    def set_platform_versions(self, current: str, latest: str) -> UpgradeStatus:
        with self.lock:
            self._platform = self._platform.with_versions(current, latest)
            return self._platform

    def try_begin_upgrade(self, identity: str) -> bool:
        """Test-and-set ``is_upgrading``. False if an upgrade is already in flight."""
        with self.lock:
            self._check(identity)
            st = self._upgrade[identity]
            if st.is_upgrading:
                return False
            self._upgrade[identity] = replace(st, is_upgrading=True, last_error=None)
            return True

    def finish_upgrade(self, identity: str, error: str | None = None) -> UpgradeStatus:
        with self.lock:
            self._check(identity)
            st = replace(self._upgrade[identity], is_upgrading=False, last_error=error)
            self._upgrade[identity] = st
            return st
