"""Serialized mutation of shared client-side state."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any, TypeVar

T = TypeVar("T")


def _run(future: Future, fn: Callable[..., Any], args: tuple, kwargs: dict) -> None:
    if not future.set_running_or_notify_cancel():
        return
    try:
        result = fn(*args, **kwargs)
    except BaseException as exc:
        future.set_exception(exc)
    else:
        future.set_result(result)


class UpdateQueue:
    """FIFO of mutations drained by one thread at a time.

    The first submitter becomes the drainer and runs queued work until the
    queue is empty; other threads only enqueue. Work submitted by the drainer
    itself runs inline, so a mutation may call back into code that mutates.
    """

    def __init__(self) -> None:
        self._pending: deque[tuple[Future, Callable[..., Any], tuple, dict]] = deque()
        self._lock = threading.Lock()
        self._drainer: int | None = None

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        me = threading.get_ident()
        with self._lock:
            if self._drainer == me:
                inline = True
            else:
                inline = False
                self._pending.append((future, fn, args, kwargs))
                if self._drainer is not None:
                    return future
                self._drainer = me
        if inline:
            _run(future, fn, args, kwargs)
            return future
        self._drain()
        return future

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Submit ``fn`` and wait for its result."""

        return self.submit(fn, *args, **kwargs).result()

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._pending:
                    self._drainer = None
                    return
                future, fn, args, kwargs = self._pending.popleft()
            _run(future, fn, args, kwargs)

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)


__all__ = ["UpdateQueue"]
