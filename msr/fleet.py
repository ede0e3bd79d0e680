from __future__ import annotations

from typing import Any, Callable

from . import db
from .catalog import Catalog, default_catalog, load_catalog
from .docker_ops import ContainerRuntime, DockerRuntime
from .models import RuntimeFact
from .orchestrator import UpgradeOrchestrator
from .publisher import ViewPublisher
from .reconciler import Reconciler
from .scheduler import Handle, ThreadScheduler
from .settings import Settings, settings as default_settings
from .store import ServiceViewStore
from .version_source import HttpVersionSource, StaticVersionSource
from .versions import VersionSource, VersionTracker

CONTROL_ACTIONS = ("start", "stop", "restart")


class Fleet:
    """Wires catalog, runtime, store, timers and the upgrade machinery together."""

    def __init__(
        self,
        catalog: Catalog,
        runtime: ContainerRuntime,
        version_source: VersionSource,
        scheduler: Any | None = None,
        settings: Settings = default_settings,
    ):
        self.catalog = catalog
        self.runtime = runtime
        self.settings = settings
        self.scheduler = scheduler or ThreadScheduler()
        self.store = ServiceViewStore(catalog)
        self.reconciler = Reconciler(self.store, runtime)
        self.tracker = VersionTracker(self.store, version_source)
        self.orchestrator = UpgradeOrchestrator(
            self.store,
            runtime,
            self.tracker,
            self.scheduler,
            settle_s=settings.upgrade_settle_s,
            global_settle_s=settings.global_settle_s,
            fanout_workers=settings.fanout_workers,
        )
        self.publisher = ViewPublisher(self.store)
        self._timers: list[Handle] = []

    @classmethod
    def from_settings(cls, settings: Settings = default_settings) -> Fleet:
        if settings.catalog_path:
            catalog = load_catalog(settings.catalog_path, platform_container=settings.platform_container)
        else:
            catalog = default_catalog(platform_container=settings.platform_container)
        runtime = DockerRuntime(catalog, stop_grace_s=settings.stop_grace_s)
        source: VersionSource
        if settings.version_feed_url:
            source = HttpVersionSource(settings.version_feed_url, timeout_s=settings.version_feed_timeout_s)
        else:
            source = StaticVersionSource(catalog)
        return cls(catalog, runtime, source, settings=settings)

    # --- timers ---

    def start(self) -> None:
        if self._timers:
            return
        self._timers = [
            self.scheduler.every(self.settings.status_poll_s, self.reconciler.reconcile, "status-poll"),
            self.scheduler.every(self.settings.version_poll_s, self.tracker.check_for_updates, "version-poll"),
        ]

    def stop(self) -> None:
        """Cancel the poll loops and any pending settle or verify timers."""
        for h in self._timers:
            h.cancel()
        self._timers = []
        shutdown = getattr(self.scheduler, "shutdown", None)
        if shutdown is not None:
            shutdown()

    @property
    def running(self) -> bool:
        return bool(self._timers)

    # --- container control ---

    def control(self, identity: str, action: str) -> None:
        """start / stop / restart one container, then refresh the view."""
        self.catalog.get(identity)
        ops: dict[str, Callable[[], None]] = {
            "start": lambda: self.runtime.start_container(identity),
            "stop": lambda: self.runtime.stop_container(identity, self.settings.stop_grace_s),
            "restart": lambda: self.runtime.restart_container(identity),
        }
        if action not in ops:
            raise ValueError(f"Invalid action '{action}'. Use one of: {', '.join(CONTROL_ACTIONS)}.")
        ops[action]()
        db.log_event("INFO", f"Container {action} requested", service_name=identity)
        self.scheduler.call_later(0, self.reconciler.reconcile)

    def logs(self, identity: str, tail_lines: int | None = None) -> str:
        self.catalog.get(identity)
        return self.runtime.fetch_logs(identity, tail_lines or self.settings.log_tail_lines)

    def container_status(self) -> dict[str, RuntimeFact]:
        return self.runtime.fetch_all_runtime_states()
