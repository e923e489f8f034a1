from __future__ import annotations
from dataclasses import dataclass
import threading
from typing import Optional
from .utils import get_logger

_log = get_logger()


@dataclass(frozen=True)
class ProgressSnapshot:
    phase: str
    progress: int
    target: int

    def ratio(self) -> float:
        return self.progress / self.target if self.target > 0 else float(self.progress)


class Progress:
    """Progress counter for long running operations.

    One worker increments while another thread reads. Increments and reads
    are serialised by a lock; ``target`` may be zero when the amount of work
    is unknown, in which case ``ratio()`` reports the raw count.
    """

    def __init__(self, phase: str = "", target: int = 0) -> None:
        self._lock = threading.Lock()
        self._phase = phase
        self._target = int(target)
        self._progress = 0

    def begin(self, phase: str, target: int = 0) -> None:
        self.reset(phase, target)

    def reset(self, phase: str = "", target: int = 0) -> None:
        with self._lock:
            self._phase = phase
            self._target = int(target)
            self._progress = 0

    @property
    def phase(self) -> str:
        with self._lock:
            return self._phase

    @property
    def target(self) -> int:
        with self._lock:
            return self._target

    @property
    def progress(self) -> int:
        with self._lock:
            return self._progress

    def set_progress(self, value: int) -> None:
        with self._lock:
            self._progress = int(value)

    def increment(self, step: int = 1) -> None:
        with self._lock:
            self._progress += int(step)

    def ratio(self) -> float:
        return self.snapshot().ratio()

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return ProgressSnapshot(self._phase, self._progress, self._target)


class ProgressThread:
    """Logs a Progress from a background thread until stopped."""

    def __init__(self, progress: Progress, interval_s: float = 1.0) -> None:
        self.progress = progress
        self.interval_s = float(interval_s)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="raycloud-progress", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self._report()

    def _report(self) -> None:
        snap = self.progress.snapshot()
        if snap.target > 0:
            _log.info("%s: %d/%d (%.1f%%)", snap.phase or "progress", snap.progress, snap.target, 100.0 * snap.ratio())
        else:
            _log.info("%s: %d", snap.phase or "progress", snap.progress)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            self._report()

    def __enter__(self) -> "ProgressThread":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
