from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Iterable, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(frozen=True)
class TaskResult(Generic[V]):
    value: V | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def fan_out(items: Iterable[K], fn: Callable[[K], V], max_workers: int = 8) -> dict[K, TaskResult[V]]:
    """Run ``fn(item)`` for every item concurrently and wait for all of them.

    A failing item never cancels its siblings: its exception is captured in
    its own ``TaskResult``. Results come back in input order.
    """
    keys = list(dict.fromkeys(items))
    if not keys:
        return {}

    workers = max(1, min(int(max_workers), len(keys)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fanout") as pool:
        futures = {k: pool.submit(fn, k) for k in keys}

    out: dict[K, TaskResult[V]] = {}
    for k, fut in futures.items():
        err = fut.exception()
        out[k] = TaskResult(error=err) if err is not None else TaskResult(value=fut.result())
    return out
