"""Bounded work queue served by a fixed pool of worker threads.

The queue holds at most `workers` items, so a producer pushing faster than
the pool converts blocks in `submit()` and only O(workers) external
processes ever exist at once, however large the tree.
"""
from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional

from loguru import logger

from .config import DEFAULT_WORKERS
from .errors import ConversionError, OperationCancelled
from .logging import log_event


@dataclass(frozen=True)
class WorkItem:
    path: Path


class CompletionTracker:
    """Count of outstanding items; `wait()` returns once it drops to zero."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._count = 0

    @property
    def outstanding(self) -> int:
        with self._cond:
            return self._count

    def add(self, n: int = 1) -> None:
        with self._cond:
            self._count += n

    def done(self) -> None:
        with self._cond:
            if self._count <= 0:
                raise ValueError("CompletionTracker.done() called more times than add()")
            self._count -= 1
            if self._count == 0:
                self._cond.notify_all()

    def wait(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout)


_STOP = object()


class WorkerPool:
    def __init__(
        self,
        handler: Callable[[WorkItem], Any],
        workers: int = DEFAULT_WORKERS,
        *,
        name_prefix: str = "flac2mp3-worker",
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._handler = handler
        self._workers = workers
        self._name_prefix = name_prefix
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=workers)
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._closed = False
        self.tracker = CompletionTracker()
        self.succeeded = 0
        self.failed = 0
        self.cancelled = 0

    @property
    def capacity(self) -> int:
        return self._workers

    @property
    def pending(self) -> int:
        """Items queued but not yet taken by a worker."""
        return self._queue.qsize()

    def start(self) -> None:
        if self._threads:
            return
        for i in range(self._workers):
            t = threading.Thread(target=self._worker, name=f"{self._name_prefix}-{i}", daemon=True)
            self._threads.append(t)
            t.start()
        logger.debug(f"worker pool: {self._workers} workers, queue capacity {self._workers}")

    def submit(self, item: WorkItem) -> None:
        """Enqueue `item`, blocking while the queue is full."""
        if self._closed:
            raise RuntimeError("cannot submit to a closed pool")
        self.tracker.add()
        try:
            self._queue.put(item)
        except BaseException:
            # Interrupted before the item made it in; it will never be worked.
            self.tracker.done()
            raise

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._run_one(item)
            finally:
                self.tracker.done()

    def _tally(self, field: str) -> None:
        with self._lock:
            setattr(self, field, getattr(self, field) + 1)

    def _run_one(self, item: WorkItem) -> None:
        try:
            self._handler(item)
        except OperationCancelled as exc:
            self._tally("cancelled")
            log_event("convert", msg=f"{item.path}: {exc}", level="WARNING", file=str(item.path), status="cancelled")
        except ConversionError as exc:
            self._tally("failed")
            log_event("convert", msg=f"{item.path}: {exc}", level="ERROR", file=str(item.path), status="error")
        except Exception as exc:
            self._tally("failed")
            logger.opt(exception=exc).error(f"{item.path}: unexpected error: {exc}")
        else:
            self._tally("succeeded")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.tracker.wait(timeout)

    def close(self) -> None:
        """Stop accepting items; workers exit once the queue is drained."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for _ in self._threads:
            self._queue.put(_STOP)

    def join(self) -> None:
        for t in self._threads:
            t.join()

    def shutdown(self) -> None:
        self.close()
        self.join()

    def __enter__(self) -> "WorkerPool":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.shutdown()
        return False
