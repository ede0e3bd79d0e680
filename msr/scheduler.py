from __future__ import annotations

from threading import Event, Lock, Thread, Timer
from typing import Callable

from . import db


class Handle:
    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self.cancelled = False
        self.done = False

    def cancel(self) -> None:
        if not self.cancelled:
            self.cancelled = True
            self._cancel()

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.done)


class ThreadScheduler:
    """Periodic loops on daemon threads and one-shot delayed calls.

    Anything that needs a timer takes a scheduler so tests can swap in one
    driven by virtual time.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._handles: list[Handle] = []

    def _track(self, handle: Handle) -> Handle:
        with self._lock:
            self._handles = [h for h in self._handles if h.active]
            self._handles.append(handle)
        return handle

    @property
    def pending(self) -> int:
        """Loops and timers that have neither fired nor been cancelled."""
        with self._lock:
            self._handles = [h for h in self._handles if h.active]
            return len(self._handles)

    def every(self, period_s: float, fn: Callable[[], object], name: str) -> Handle:
        """Run ``fn`` now and then every ``period_s`` seconds until cancelled."""
        stop = Event()

        def _loop() -> None:
            db.log_event("INFO", f"{name} started (every {period_s:g}s)")
            while not stop.is_set():
                try:
                    fn()
                except Exception as e:
                    db.log_event("ERROR", f"{name} tick failed: {type(e).__name__}: {e}")
                stop.wait(max(0.1, period_s))

        Thread(target=_loop, name=name, daemon=True).start()
        return self._track(Handle(stop.set))

    def call_later(self, delay_s: float, fn: Callable[[], object]) -> Handle:
        def _fire() -> None:
            try:
                fn()
            except Exception as e:
                db.log_event("ERROR", f"Delayed call failed: {type(e).__name__}: {e}")
            finally:
                handle.done = True

        t = Timer(max(0.0, delay_s), _fire)
        t.daemon = True
        handle = Handle(t.cancel)
        self._track(handle)
        t.start()
        return handle

    def shutdown(self) -> None:
        with self._lock:
            handles, self._handles = self._handles, []
        for h in handles:
            h.cancel()
