from __future__ import annotations

import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

_HANDLED_SIGNALS = tuple(
    getattr(signal, name)
    for name in ("SIGINT", "SIGTERM", "SIGHUP", "SIGQUIT")
    if hasattr(signal, name)
)


def terminate_process_tree(proc: subprocess.Popen, grace_s: float = 2.0) -> None:
    """
    Stop a child process and its descendants: SIGTERM first, SIGKILL after grace_s.

    The child must have been started with start_new_session=True so that its
    process group id equals its pid (POSIX only; elsewhere only the child is signalled).
    """
    if proc.poll() is not None:
        return
    use_group = os.name == "posix"

    def _send(sig: int) -> None:
        try:
            if use_group:
                os.killpg(proc.pid, sig)
            elif sig == getattr(signal, "SIGKILL", None):
                proc.kill()
            else:
                proc.terminate()
        except (ProcessLookupError, PermissionError):
            pass

    _send(signal.SIGTERM)
    deadline = time.monotonic() + max(0.0, float(grace_s))
    while proc.poll() is None and time.monotonic() < deadline:
        time.sleep(0.05)
    if proc.poll() is None:
        _send(getattr(signal, "SIGKILL", signal.SIGTERM))
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        pass


class ResourceRegistry:
    """
    Tracks every temporary resource of one run and releases them exactly once.

    Processes are always stopped before any path is removed; within each group
    resources are released newest-first. release_all() is safe to call from a
    signal handler and again from an error handler.
    """

    def __init__(self, *, kill_grace_s: float = 2.0, verbose: bool = False) -> None:
        self.kill_grace_s = kill_grace_s
        self.verbose = verbose
        self._lock = threading.RLock()
        self._processes: list[subprocess.Popen] = []
        self._releasers: list[tuple[str, Callable[[], None]]] = []

    def __enter__(self) -> "ResourceRegistry":
        return self

    def __exit__(self, *exc) -> None:
        self.release_all()

    def register(self, label: str, release: Callable[[], None]) -> None:
        with self._lock:
            self._releasers.append((label, release))

    def mkdtemp(self, prefix: str = "pdfmd-") -> Path:
        path = Path(tempfile.mkdtemp(prefix=prefix))
        self.register(f"dir {path}", lambda: shutil.rmtree(path, ignore_errors=True))
        return path

    def mkstemp(self, prefix: str = "pdfmd-", suffix: str = "") -> Path:
        fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix)
        os.close(fd)
        path = Path(name)
        self.register(f"file {path}", lambda: path.unlink(missing_ok=True))
        return path

    def track_process(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._processes.append(proc)

    def forget_process(self, proc: subprocess.Popen) -> None:
        with self._lock:
            if proc in self._processes:
                self._processes.remove(proc)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._processes) + len(self._releasers)

    def release_all(self) -> None:
        with self._lock:
            processes = list(reversed(self._processes))
            releasers = list(reversed(self._releasers))
            self._processes.clear()
            self._releasers.clear()

        for proc in processes:
            if proc.poll() is None:
                if self.verbose:
                    print(f"Stopping engine process {proc.pid}", flush=True)
                terminate_process_tree(proc, self.kill_grace_s)

        for label, release in releasers:
            try:
                release()
            except OSError as e:
                print(f"[WARN] cleanup of {label} failed: {e}", flush=True)


@contextmanager
def signal_teardown(registry: ResourceRegistry) -> Iterator[None]:
    """
    Release the registry on SIGINT/SIGTERM/SIGHUP/SIGQUIT, then exit with 128 + signum.

    Only installs handlers from the main thread; elsewhere this is a no-op wrapper.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous: dict[int, object] = {}

    def _handler(signum, _frame) -> None:
        registry.release_all()
        raise SystemExit(128 + int(signum))

    for sig in _HANDLED_SIGNALS:
        try:
            previous[sig] = signal.signal(sig, _handler)
        except (OSError, ValueError):
            continue
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)
