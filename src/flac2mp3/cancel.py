"""Cooperative cancellation for external processes.

A `CancellationScope` owns the processes started through it. Cancelling it
terminates those processes, cancels its child scopes and refuses to start
anything new. An `OperationGroup` runs several operations under one child
scope so the first failure tears down its siblings (decode | encode pairs).
`CancellationController` turns SIGINT/SIGTERM into a scope cancellation and
keeps the main thread waiting until in-flight work has drained.
"""
from __future__ import annotations

import shlex
import signal
import subprocess
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from loguru import logger

from .errors import ExternalOperationError, OperationCancelled


def cmd_to_string(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(p)) for p in cmd)


def _describe_exit(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"terminated by {name}"
    return f"exited with status {returncode}"


class CancellationScope:
    def __init__(self, parent: Optional["CancellationScope"] = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._procs: Set[subprocess.Popen] = set()
        self._children: Set["CancellationScope"] = set()
        self._parent = parent
        if parent is not None:
            parent._adopt(self)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or `timeout` elapses; return the cancelled state."""
        return self._event.wait(timeout)

    def child(self) -> "CancellationScope":
        return CancellationScope(parent=self)

    def _adopt(self, child: "CancellationScope") -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.add(child)
                return
        child.cancel()

    def close(self) -> None:
        """Detach from the parent scope once no more work will run here."""
        if self._parent is not None:
            with self._parent._lock:
                self._parent._children.discard(self)

    def cancel(self) -> None:
        """Cancel once; later calls are no-ops."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            procs = list(self._procs)
            children = list(self._children)
            self._children.clear()
        for proc in procs:
            if proc.poll() is None:
                proc.terminate()
        for child in children:
            child.cancel()

    def spawn(self, cmd: Sequence[str], **popen_kwargs: Any) -> subprocess.Popen:
        """Start `cmd` under this scope.

        Raises OperationCancelled if the scope is already cancelled and
        ExternalOperationError if the process cannot be started.
        """
        cmd = [str(c) for c in cmd]
        logger.debug("Running: {}", cmd_to_string(cmd))
        # Own process group: a terminal Ctrl-C reaches only this process.
        popen_kwargs.setdefault("process_group", 0)
        with self._lock:
            if self._event.is_set():
                raise OperationCancelled(f"{cmd[0]}: not started, run cancelled", cmd=cmd)
            try:
                proc = subprocess.Popen(cmd, **popen_kwargs)
            except (OSError, ValueError) as exc:
                raise ExternalOperationError(f"{cmd[0]}: failed to start: {exc}", cmd=cmd) from exc
            self._procs.add(proc)
        return proc

    def finish(self, proc: subprocess.Popen, *, capture: bool = False) -> Optional[bytes]:
        """Wait for a process started by `spawn` and check its exit status.

        With capture=True the process must have been started with
        stdout=PIPE; its output is returned.
        """
        out: Optional[bytes] = None
        try:
            if capture:
                out, _ = proc.communicate()
            else:
                proc.wait()
        finally:
            with self._lock:
                self._procs.discard(proc)
        rc = proc.returncode
        if rc != 0:
            cmd = proc.args if isinstance(proc.args, list) else [str(proc.args)]
            msg = f"{cmd[0]}: {_describe_exit(rc)}"
            if self.cancelled:
                raise OperationCancelled(msg, cmd=cmd, returncode=rc)
            raise ExternalOperationError(msg, cmd=cmd, returncode=rc)
        return out


class OperationGroup:
    """Run operations concurrently under a shared child scope.

    The first operation to fail cancels the group; the group re-raises that
    first failure when it is left. Use as a context manager:

        with OperationGroup(scope) as group:
            group.start(decode_cmd, stdout=w)
            group.start(encode_cmd, stdin=r)
    """

    def __init__(self, scope: CancellationScope) -> None:
        self.scope = scope.child()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._error: Optional[Exception] = None

    def go(self, fn: Callable[[CancellationScope], Any]) -> None:
        t = threading.Thread(target=self._run, args=(fn,), daemon=True)
        self._threads.append(t)
        t.start()

    def start(self, cmd: Sequence[str], **popen_kwargs: Any) -> subprocess.Popen:
        """Spawn `cmd` in the group scope and wait for it in the background."""
        proc = self.scope.spawn(cmd, **popen_kwargs)
        self.go(lambda scope: scope.finish(proc))
        return proc

    def _run(self, fn: Callable[[CancellationScope], Any]) -> None:
        try:
            fn(self.scope)
        except Exception as exc:
            with self._lock:
                if self._error is None:
                    self._error = exc
            self.scope.cancel()

    def wait(self) -> None:
        for t in self._threads:
            t.join()
        self.scope.close()
        if self._error is not None:
            raise self._error

    def __enter__(self) -> "OperationGroup":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None:
            # The body failed half-way; tear down what was started and keep its error.
            self.scope.cancel()
            for t in self._threads:
                t.join()
            self.scope.close()
            return False
        self.wait()
        return False


class Interrupted(Exception):
    """Raised in the main thread when a handled signal arrives."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"received {signal.Signals(signum).name}")
        self.signum = signum


class CancellationController:
    """Bridge SIGINT/SIGTERM to a scope and gate exit on drain.

    Only the first signal counts: the handler ignores both signals before
    raising, and the previous handlers come back when the context exits.
    """

    def __init__(
        self,
        scope: CancellationScope,
        signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        self.scope = scope
        self._signals = tuple(signals)
        self._previous: Dict[int, Any] = {}
        self.signum: Optional[int] = None

    def install(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            raise RuntimeError("signal handlers can only be installed from the main thread")
        for sig in self._signals:
            self._previous[sig] = signal.signal(sig, self._on_signal)

    def restore(self) -> None:
        for sig, handler in self._previous.items():
            signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
        self._previous.clear()

    def _on_signal(self, signum: int, frame: Any) -> None:
        for sig in self._signals:
            signal.signal(sig, signal.SIG_IGN)
        raise Interrupted(signum)

    @property
    def interrupted(self) -> bool:
        return self.signum is not None

    def wait_for_drain(
        self,
        enumerated: threading.Event,
        tracker: Any,
        *,
        start: Optional[Callable[[], None]] = None,
    ) -> bool:
        """Run `start`, then block until enumeration is over and `tracker` drained.

        On a signal the scope is cancelled and the wait continues until the
        in-flight items have unwound. Returns True if a signal was handled.
        """
        try:
            if start is not None:
                start()
            enumerated.wait()
            tracker.wait()
            return False
        except Interrupted as exc:
            self.signum = exc.signum
            logger.warning(f"{exc}; cancelling {tracker.outstanding} outstanding item(s)")
            self.scope.cancel()
            enumerated.wait()
            tracker.wait()
            return True

    def __enter__(self) -> "CancellationController":
        self.install()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.restore()
        return False
