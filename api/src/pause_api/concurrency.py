"""
Thread-pool helpers behind the request path's timeouts and background effects.

* ``call_with_timeout`` races an operation against a deadline; the loser is
  abandoned, never cancelled. Store calls and model calls run on separate
  pools so abandoned model work never holds a store worker.
* ``fire_and_forget`` starts an effect nobody joins; failures are only logged.
* ``run_settled`` fans tasks out and waits for every one of them to settle.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import ALL_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_call_pool = ThreadPoolExecutor(max_workers=16, thread_name_prefix="pause-call")
llm_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="pause-llm")
_effect_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="pause-effect")

_pending: set[Future] = set()
_pending_lock = threading.Lock()


class OperationTimedOut(TimeoutError):
    pass


def call_with_timeout(
    fn: Callable[..., T],
    timeout: float,
    *args: Any,
    executor: ThreadPoolExecutor | None = None,
    **kwargs: Any,
) -> T:
    future = (executor or _call_pool).submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        if future.done():
            raise
        raise OperationTimedOut(f"Operation timed out after {timeout:g}s") from None


def _run_effect(label: str, fn: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
    # Logged on the worker so the record exists before the future settles.
    try:
        return fn(*args, **kwargs)
    except Exception as exc:
        logger.warning("%s failed: %s", label, exc, exc_info=True)
        return None


def _forget(future: Future) -> None:
    with _pending_lock:
        _pending.discard(future)


def fire_and_forget(fn: Callable[..., Any], *args: Any, label: str, **kwargs: Any) -> Future:
    future = _effect_pool.submit(_run_effect, label, fn, args, kwargs)
    with _pending_lock:
        _pending.add(future)
    future.add_done_callback(_forget)
    return future


def wait_for_pending(timeout: float | None = None) -> bool:
    """Block until every in-flight fire-and-forget effect settles. Returns False on timeout."""
    with _pending_lock:
        snapshot = set(_pending)
    if not snapshot:
        return True
    _, not_done = wait(snapshot, timeout=timeout, return_when=ALL_COMPLETED)
    return not not_done


@dataclass(frozen=True)
class Settled:
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_settled(tasks: Mapping[str, Callable[[], Any]]) -> dict[str, Settled]:
    futures = {name: _effect_pool.submit(task) for name, task in tasks.items()}
    wait(list(futures.values()), return_when=ALL_COMPLETED)

    results: dict[str, Settled] = {}
    for name, future in futures.items():
        exc = future.exception()
        results[name] = Settled(error=exc) if exc is not None else Settled(value=future.result())
    return results
