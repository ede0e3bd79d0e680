from __future__ import annotations

from dataclasses import dataclass, field

from . import db
from .catalog import ServiceDescriptor
from .docker_ops import ContainerRuntime
from .models import (
    AggregatedServiceView,
    LifecycleState,
    MappingStatus,
    RuntimeFact,
    RuntimeSection,
    VolumeMappingStatus,
)
from .store import ServiceViewStore


def _mapping_status(fact: RuntimeFact | None, container_path: str) -> MappingStatus:
    if fact is None:
        return MappingStatus.WARNING
    if fact.mounts is None:
        return MappingStatus.ERROR
    return MappingStatus.MAPPED if container_path in fact.mount_destinations() else MappingStatus.WARNING


def derive_mappings(desc: ServiceDescriptor, fact: RuntimeFact | None) -> tuple[VolumeMappingStatus, ...]:
    """Status of every declared mapping against the container's actual mounts.

    No fact means "not known to be mapped" (warning). A fact without a mount
    list means the mounts themselves could not be read (error).
    """
    return tuple(
        VolumeMappingStatus(m.host_path, m.container_path, _mapping_status(fact, m.container_path))
        for m in desc.volume_mappings
    )


def section_for(desc: ServiceDescriptor, fact: RuntimeFact | None) -> RuntimeSection:
    if fact is None:
        return RuntimeSection(
            fact=None,
            state=LifecycleState.STOPPED,
            health="Container not found",
            mappings=derive_mappings(desc, None),
        )
    return RuntimeSection(fact=fact, state=fact.state, health=fact.health, mappings=derive_mappings(desc, fact))


def failed_section(desc: ServiceDescriptor, error: str) -> RuntimeSection:
    return RuntimeSection(
        fact=None,
        state=LifecycleState.UNKNOWN,
        health=f"Status unavailable: {error}",
        mappings=derive_mappings(desc, None),
    )


@dataclass
class ReconcileResult:
    views: dict[str, AggregatedServiceView]
    error: str | None = None
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


class Reconciler:
    """Merges the catalog with live container facts into the view store."""

    def __init__(self, store: ServiceViewStore, runtime: ContainerRuntime):
        self.store = store
        self.runtime = runtime
        self.last_error: str | None = None

    def reconcile(self) -> ReconcileResult:
        catalog = self.store.catalog
        sections: dict[str, RuntimeSection] = {}
        failed: dict[str, str] = {}

        for desc in catalog:
            try:
                fact = self.runtime.fetch_runtime_state(desc.identity)
            except Exception as e:
                failed[desc.identity] = f"{type(e).__name__}: {e}"
                sections[desc.identity] = failed_section(desc, str(e))
                continue
            sections[desc.identity] = section_for(desc, fact)

        if len(catalog) and len(failed) == len(catalog):
            # Whole fleet unreachable: keep the last good snapshot.
            first = next(iter(failed.values()))
            self.last_error = f"Runtime unreachable for all {len(catalog)} services ({first})"
            db.log_event("ERROR", self.last_error)
            return ReconcileResult(views=self.store.snapshot(), error=self.last_error, failed=failed)

        replaced = self.store.publish_runtime(sections)
        previous = {identity: section.state for identity, section in replaced.items()}
        self.last_error = None

        for identity, msg in failed.items():
            db.log_event("WARN", f"Runtime fetch failed: {msg}", service_name=identity)
        self._log_transitions(previous, sections)
        return ReconcileResult(views=self.store.snapshot(), failed=failed)

    def _log_transitions(self, previous: dict[str, LifecycleState], sections: dict[str, RuntimeSection]) -> None:
        for identity, section in sections.items():
            prev = previous.get(identity)
            # unknown -> x is a first observation, not a change
            if prev is None or prev == section.state or prev == LifecycleState.UNKNOWN:
                continue
            level = "WARN" if section.state in {LifecycleState.UNHEALTHY, LifecycleState.STOPPED} else "INFO"
            db.log_event(level, f"State changed {prev.value} -> {section.state.value}", service_name=identity)
