from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from threading import Lock
from typing import Any, Protocol

from . import db
from .docker_ops import ContainerRuntime
from .fanout import fan_out
from .models import UpgradeAction
from .store import ServiceViewStore
from .versions import VersionTracker


class Scheduler(Protocol):
    def call_later(self, delay_s: float, fn: Any) -> Any: ...


class UpgradeState(str, Enum):
    IDLE = "idle"
    UPGRADING = "upgrading"
    FAILED = "failed"


@dataclass(frozen=True)
class UpgradeOutcome:
    identity: str
    action: UpgradeAction
    success: bool
    error: str | None = None
    rejected: bool = False
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "service": self.identity,
            "action": self.action.value,
            "success": self.success,
            "rejected": self.rejected,
        }
        if self.error is not None:
            out["error"] = self.error
        if self.detail:
            out["detail"] = self.detail
        return out


@dataclass
class GlobalUpgradeResult:
    accepted: bool
    action: UpgradeAction
    message: str
    platform_error: str | None = None
    outcomes: dict[str, UpgradeOutcome] = field(default_factory=dict)
    restart_error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.accepted and self.platform_error is None

    @property
    def failed_services(self) -> list[str]:
        return [k for k, o in self.outcomes.items() if not o.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "success": self.succeeded,
            "action": self.action.value,
            "message": self.message,
            "platformError": self.platform_error,
            "restartError": self.restart_error,
            "failedServices": self.failed_services,
            "services": {k: o.to_dict() for k, o in self.outcomes.items()},
        }


class UpgradeOrchestrator:
    """Runs single-service upgrades and the fleet-wide upgrade workflow.

    Per service: idle -> upgrading -> idle (after the settle delay) or
    upgrading -> failed -> idle (immediately, so a retry is possible).

    Fleet-wide: pull platform -> fan-out per-service pulls -> restart all ->
    verify after a settle delay. Only one fleet-wide upgrade at a time.
    """

    def __init__(
        self,
        store: ServiceViewStore,
        runtime: ContainerRuntime,
        tracker: VersionTracker,
        scheduler: Scheduler,
        settle_s: float = 3.0,
        global_settle_s: float = 5.0,
        fanout_workers: int = 12,
    ):
        self.store = store
        self.runtime = runtime
        self.tracker = tracker
        self.scheduler = scheduler
        self.settle_s = settle_s
        self.global_settle_s = global_settle_s
        self.fanout_workers = fanout_workers
        self._global_lock = Lock()
        self._lock = Lock()
        self._states: dict[str, UpgradeState] = {i: UpgradeState.IDLE for i in store.catalog.identities()}
        self.transitions: deque[tuple[str, UpgradeState]] = deque(maxlen=1000)

    # --- per-service state machine ---

    def state(self, identity: str) -> UpgradeState:
        self.store.catalog.get(identity)
        with self._lock:
            return self._states[identity]

    def _transition(self, identity: str, state: UpgradeState) -> None:
        with self._lock:
            self._states[identity] = state
            self.transitions.append((identity, state))

    def upgrade_service(self, identity: str, action: UpgradeAction | str = UpgradeAction.PULL_IMAGE) -> UpgradeOutcome:
        self.store.catalog.get(identity)
        action = UpgradeAction(action)

        if not self.store.try_begin_upgrade(identity):
            return UpgradeOutcome(identity, action, False, error="Upgrade already in progress", rejected=True)

        # True while this call still owns the is_upgrading flag. Handed off
        # to _fail or to the settle timer, which release it themselves.
        owned = True
        try:
            self._transition(identity, UpgradeState.UPGRADING)
            db.log_event("INFO", f"Upgrade started ({action.value})", service_name=identity)
            try:
                result = self.runtime.upgrade_service(identity, action)
                error = None if result.success else (result.error or "Upgrade failed")
                detail = dict(result.detail)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                detail = {}
            if error is not None:
                owned = False
                return self._fail(identity, action, error)

            db.record_upgrade(identity, action.value, "success")
            db.log_event("INFO", f"Upgrade action {action.value} succeeded", service_name=identity)
            self.scheduler.call_later(self.settle_s, partial(self._settle, identity))
            owned = False
            return UpgradeOutcome(identity, action, True, detail=detail)
        finally:
            if owned:
                self._transition(identity, UpgradeState.IDLE)
                self.store.finish_upgrade(identity, error="Upgrade aborted")

    def _fail(self, identity: str, action: UpgradeAction, error: str) -> UpgradeOutcome:
        # The store flag goes last: once it is clear another request may start.
        try:
            self._transition(identity, UpgradeState.FAILED)
            db.record_upgrade(identity, action.value, "failed", error)
            db.log_event("ERROR", f"Upgrade failed: {error}", service_name=identity)
        finally:
            self._transition(identity, UpgradeState.IDLE)
            self.store.finish_upgrade(identity, error=error)
        return UpgradeOutcome(identity, action, False, error=error)

    def _settle(self, identity: str) -> None:
        # The flag is cleared whether or not the re-check confirms anything.
        try:
            self.tracker.check_for_updates()
        except Exception as e:
            db.log_event("WARN", f"Post-upgrade version check failed: {type(e).__name__}: {e}", service_name=identity)
        finally:
            self._transition(identity, UpgradeState.IDLE)
            self.store.finish_upgrade(identity)

    # --- fleet-wide workflow ---

    @property
    def is_global_upgrading(self) -> bool:
        return self._global_lock.locked()

    def global_upgrade(self, action: UpgradeAction | str = UpgradeAction.FULL_UPGRADE) -> GlobalUpgradeResult:
        action = UpgradeAction(action)
        if not self._global_lock.acquire(blocking=False):
            return GlobalUpgradeResult(accepted=False, action=action, message="Global upgrade already in progress")

        verify_scheduled = False
        try:
            db.log_event("INFO", f"Global upgrade started ({action.value})")

            # 1. platform
            try:
                res = self.runtime.upgrade_platform(action)
                platform_error = None if res.success else (res.error or "Platform upgrade failed")
            except Exception as e:
                platform_error = f"{type(e).__name__}: {e}"
            if platform_error is not None:
                db.log_event("ERROR", f"Global upgrade aborted, platform upgrade failed: {platform_error}")
                return GlobalUpgradeResult(
                    accepted=True,
                    action=action,
                    message="Platform upgrade failed; no services were upgraded",
                    platform_error=platform_error,
                )

            # 2. every service, independently
            results = fan_out(
                self.store.catalog.identities(),
                lambda identity: self.upgrade_service(identity, UpgradeAction.PULL_IMAGE),
                max_workers=self.fanout_workers,
            )
            outcomes: dict[str, UpgradeOutcome] = {}
            for identity, r in results.items():
                if r.ok and r.value is not None:
                    outcomes[identity] = r.value
                    continue
                err = f"{type(r.error).__name__}: {r.error}"
                db.log_event("ERROR", f"Upgrade crashed: {err}", service_name=identity)
                outcomes[identity] = UpgradeOutcome(identity, UpgradeAction.PULL_IMAGE, False, error=err)

            # 3. restart regardless of individual outcomes
            restart_error: str | None = None
            try:
                rr = self.runtime.restart_all_services()
                if not rr.success:
                    restart_error = rr.error or "Restart failed"
            except Exception as e:
                restart_error = f"{type(e).__name__}: {e}"
            if restart_error is not None:
                db.log_event("WARN", f"Fleet restart reported errors: {restart_error}")

            # 4. verify later; the lock is released there
            self.scheduler.call_later(self.global_settle_s, self._verify_global)
            verify_scheduled = True

            failed = [k for k, o in outcomes.items() if not o.success]
            message = (
                f"Upgraded {len(outcomes) - len(failed)}/{len(outcomes)} services"
                + (f"; failed: {', '.join(failed)}" if failed else "")
            )
            db.log_event("WARN" if failed else "INFO", message)
            return GlobalUpgradeResult(
                accepted=True,
                action=action,
                message=message,
                outcomes=outcomes,
                restart_error=restart_error,
            )
        finally:
            if not verify_scheduled:
                self._global_lock.release()

    def _verify_global(self) -> None:
        try:
            self.tracker.check_for_updates()
            db.log_event("INFO", "Global upgrade verification complete")
        except Exception as e:
            db.log_event("ERROR", f"Global upgrade verification failed: {type(e).__name__}: {e}")
        finally:
            self._global_lock.release()
