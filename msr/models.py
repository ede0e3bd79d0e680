from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .catalog import ServiceDescriptor


class LifecycleState(str, Enum):
    RUNNING = "running"
    STARTING = "starting"
    STOPPING = "stopping"
    STOPPED = "stopped"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class MappingStatus(str, Enum):
    MAPPED = "mapped"
    WARNING = "warning"
    ERROR = "error"


class UpgradeAction(str, Enum):
    PULL_IMAGE = "pull_image"
    REBUILD_CONTAINER = "rebuild_container"
    RESTART_SERVICE = "restart_service"
    FULL_UPGRADE = "full_upgrade"


@dataclass(frozen=True)
class Mount:
    source: str
    destination: str
    type: str = "bind"
    read_write: bool = True


@dataclass(frozen=True)
class RuntimeFact:
    """What the container engine reported for one service on the last poll.

    ``mounts`` is None when the engine could not report mounts for the
    container; an empty tuple means it reported none.
    """

    state: LifecycleState
    health: str
    image: str
    mounts: tuple[Mount, ...] | None = ()

    def mount_destinations(self) -> frozenset[str]:
        return frozenset(m.destination for m in self.mounts or ())

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.state.value,
            "health": self.health,
            "image": self.image,
            "volumes": [m.destination for m in self.mounts] if self.mounts is not None else None,
            "mounts": [
                {"source": m.source, "destination": m.destination, "type": m.type, "rw": m.read_write}
                for m in self.mounts
            ]
            if self.mounts is not None
            else None,
        }


@dataclass(frozen=True)
class VolumeMappingStatus:
    host_path: str
    container_path: str
    status: MappingStatus

    def to_dict(self) -> dict[str, str]:
        return {"hostPath": self.host_path, "containerPath": self.container_path, "status": self.status.value}


@dataclass(frozen=True)
class RuntimeSection:
    """Reconciler-owned half of an aggregated view.

    Replaced wholesale each pass so the fact and the mapping statuses derived
    from it are always observed together.
    """

    fact: RuntimeFact | None
    state: LifecycleState
    health: str
    mappings: tuple[VolumeMappingStatus, ...] = ()


@dataclass(frozen=True)
class UpgradeStatus:
    """Version Tracker / Orchestrator owned half of an aggregated view."""

    current_version: str
    latest_version: str
    is_upgrading: bool = False
    last_error: str | None = None

    @property
    def needs_update(self) -> bool:
        return self.current_version != self.latest_version

    def with_versions(self, current: str, latest: str) -> UpgradeStatus:
        return replace(self, current_version=current, latest_version=latest)

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentVersion": self.current_version,
            "latestVersion": self.latest_version,
            "needsUpdate": self.needs_update,
            "isUpgrading": self.is_upgrading,
            "lastError": self.last_error,
        }


@dataclass(frozen=True)
class AggregatedServiceView:
    descriptor: ServiceDescriptor
    runtime: RuntimeSection
    upgrade: UpgradeStatus

    @property
    def identity(self) -> str:
        return self.descriptor.identity

    @property
    def status(self) -> LifecycleState:
        return self.runtime.state

    @property
    def volume_mappings(self) -> tuple[VolumeMappingStatus, ...]:
        return self.runtime.mappings

    def to_dict(self) -> dict[str, Any]:
        d = self.descriptor
        fact = self.runtime.fact
        out: dict[str, Any] = {
            "key": d.identity,
            "name": d.name,
            "description": d.description,
            "category": d.category.value,
            "port": d.port,
            "url": f"http://localhost:{d.port}",
            "containerName": d.container_name,
            "status": self.runtime.state.value,
            "health": self.runtime.health,
            "image": fact.image if fact else None,
            "volumeMappings": [m.to_dict() for m in self.runtime.mappings],
        }
        out.update(self.upgrade.to_dict())
        return out


@dataclass(frozen=True)
class FleetStats:
    total: int
    running: int
    unhealthy: int
    needs_update: int
    total_mappings: int
    mapped_volumes: int

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "running": self.running,
            "unhealthy": self.unhealthy,
            "needsUpdate": self.needs_update,
            "totalMappings": self.total_mappings,
            "mappedVolumes": self.mapped_volumes,
        }


@dataclass(frozen=True)
class ActionResult:
    success: bool
    error: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **detail: Any) -> ActionResult:
        return cls(success=True, detail=detail)

    @classmethod
    def failed(cls, error: str, **detail: Any) -> ActionResult:
        return cls(success=False, error=error, detail=detail)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            out["error"] = self.error
        if self.detail:
            out.update(self.detail)
        return out
