from __future__ import annotations

from threading import Lock
from typing import Any, Callable

import pytest

from msr import db
from msr.catalog import Catalog, Category, PlatformRecord, ServiceDescriptor, VolumeMapping
from msr.docker_ops import RuntimeUnavailable
from msr.fleet import Fleet
from msr.models import ActionResult, LifecycleState, Mount, RuntimeFact, UpgradeAction
from msr.scheduler import Handle
from msr.settings import Settings


@pytest.fixture(autouse=True)
def event_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite journal."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "events.db")))
    db.init_db()
    yield


class ManualScheduler:
    """Scheduler driven by virtual time: nothing runs until ``advance``."""

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = 0
        self._lock = Lock()
        self.shut_down = False
        self.pending: list[tuple[float, int, Callable[[], Any], Handle]] = []
        self.periodic: list[tuple[str, float, Callable[[], Any], Handle]] = []

    def call_later(self, delay_s: float, fn: Callable[[], Any]) -> Handle:
        handle = Handle(lambda: None)
        # called from fan-out worker threads
        with self._lock:
            self._seq += 1
            self.pending.append((self.now + delay_s, self._seq, fn, handle))
        return handle

    def every(self, period_s: float, fn: Callable[[], Any], name: str) -> Handle:
        handle = Handle(lambda: None)
        self.periodic.append((name, period_s, fn, handle))
        return handle

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = sorted(p for p in self.pending if p[0] <= target)
            if not due:
                break
            item = due[0]
            self.pending.remove(item)
            self.now = item[0]
            if not item[3].cancelled:
                item[2]()
        self.now = target

    def shutdown(self) -> None:
        with self._lock:
            pending, self.pending = self.pending, []
        for *_rest, handle in pending:
            handle.cancel()
        for *_rest, handle in self.periodic:
            handle.cancel()
        self.shut_down = True

    def tick(self, name: str) -> Any:
        for n, _period, fn, handle in self.periodic:
            if n == name and not handle.cancelled:
                return fn()
        raise KeyError(name)


class FakeRuntime:
    """In-memory stand-in for the Docker-backed runtime.

    ``facts`` values may be a RuntimeFact, None (no container) or an
    exception instance to raise. ``upgrade_results`` works the same way.
    """

    def __init__(self, catalog: Catalog):
        self.catalog = catalog
        self.facts: dict[str, Any] = {}
        self.upgrade_results: dict[str, Any] = {}
        self.platform_result: Any = ActionResult.ok()
        self.restart_result: Any = ActionResult.ok()
        self.engine_error: BaseException | None = None
        self.calls: list[tuple] = []
        self._lock = Lock()

    def _record(self, *call: Any) -> None:
        with self._lock:
            self.calls.append(call)

    def calls_named(self, name: str) -> list[tuple]:
        with self._lock:
            return [c for c in self.calls if c[0] == name]

    def fetch_runtime_state(self, identity: str) -> RuntimeFact | None:
        self.catalog.get(identity)
        self._record("fetch", identity)
        value = self.facts.get(identity)
        if isinstance(value, BaseException):
            raise value
        return value

    def fetch_all_runtime_states(self) -> dict[str, RuntimeFact]:
        return {k: v for k, v in self.facts.items() if isinstance(v, RuntimeFact)}

    def start_container(self, identity: str) -> None:
        self.catalog.get(identity)
        self._record("start", identity)

    def stop_container(self, identity: str, grace_period_s: int = 10) -> None:
        self.catalog.get(identity)
        self._record("stop", identity, grace_period_s)

    def restart_container(self, identity: str) -> None:
        self.catalog.get(identity)
        if isinstance(self.facts.get(identity), BaseException):
            raise RuntimeUnavailable("engine down")
        self._record("restart", identity)

    def fetch_logs(self, identity: str, tail_lines: int = 100) -> str:
        self.catalog.get(identity)
        self._record("logs", identity, tail_lines)
        return f"{identity} log line\n"

    def upgrade_platform(self, action: UpgradeAction) -> ActionResult:
        self._record("upgrade_platform", action)
        if isinstance(self.platform_result, BaseException):
            raise self.platform_result
        return self.platform_result

    def upgrade_service(self, identity: str, action: UpgradeAction) -> ActionResult:
        self._record("upgrade_service", identity, action)
        value = self.upgrade_results.get(identity, ActionResult.ok())
        if isinstance(value, BaseException):
            raise value
        return value

    def restart_all_services(self) -> ActionResult:
        self._record("restart_all")
        if isinstance(self.restart_result, BaseException):
            raise self.restart_result
        return self.restart_result

    def system_info(self) -> dict[str, Any]:
        if self.engine_error is not None:
            raise self.engine_error
        return {
            "docker": {"version": "27.1.1", "containers": len(self.facts), "running": 0, "images": 0},
            "services": [k for k, v in self.facts.items() if isinstance(v, RuntimeFact)],
        }


class FakeVersionSource:
    def __init__(self, response: Any = None):
        self.response: Any = response if response is not None else {}
        self.calls = 0

    def check_versions(self) -> Any:
        self.calls += 1
        if isinstance(self.response, BaseException):
            raise self.response
        return self.response


def running(*destinations: str, health: str = "healthy") -> RuntimeFact:
    return RuntimeFact(
        state=LifecycleState.RUNNING,
        health=health,
        image="lscr.io/linuxserver/app:latest",
        mounts=tuple(Mount(source=f"/host{d}", destination=d) for d in destinations),
    )


@pytest.fixture
def catalog() -> Catalog:
    return Catalog(
        [
            ServiceDescriptor(
                "radarr",
                "Radarr",
                Category.MEDIA,
                7878,
                (VolumeMapping("/root/Media/Movies", "/movies"),),
                current_version="5.3.6",
                latest_version="5.3.6",
            ),
            ServiceDescriptor(
                "emby",
                "Emby",
                Category.SERVER,
                8096,
                (
                    VolumeMapping("/root/Media/Movies", "/data/movies"),
                    VolumeMapping("/root/Media/TV", "/data/tvshows"),
                ),
                current_version="4.8.0.40",
                latest_version="4.8.0.40",
            ),
            ServiceDescriptor("prowlarr", "Prowlarr", Category.INDEXER, 9696, current_version="1.8.0", latest_version="1.8.0"),
        ],
        PlatformRecord("arrmematey", "arrmematey", "2.20.10", "2.20.10"),
    )


@pytest.fixture
def runtime(catalog) -> FakeRuntime:
    return FakeRuntime(catalog)


@pytest.fixture
def version_source() -> FakeVersionSource:
    return FakeVersionSource()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def fleet_settings(tmp_path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "events.db"),
        upgrade_settle_s=3.0,
        global_settle_s=5.0,
        fanout_workers=4,
        admin_password=None,
    )


@pytest.fixture
def fleet(catalog, runtime, version_source, scheduler, fleet_settings) -> Fleet:
    return Fleet(catalog, runtime, version_source, scheduler=scheduler, settings=fleet_settings)
