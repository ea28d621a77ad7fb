"""Decimated progress logging for transfers and signature builds."""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger("azsync.progress")


def format_seconds(s: float) -> str:
    if s <= 0:
        return "--:--"
    s = int(s)
    h, rem = divmod(s, 3600)
    m, sec = divmod(rem, 60)
    if h:
        return f"{h}h{m:02d}m{sec:02d}s"
    if m:
        return f"{m}m{sec:02d}s"
    return f"{sec}s"


def format_rate(bytes_per_second: float) -> str:
    if bytes_per_second < 1024:
        return f"{bytes_per_second:,.0f} B/s"
    if bytes_per_second < 1024 ** 2:
        return f"{bytes_per_second / 1024:,.2f} KB/s"
    if bytes_per_second < 1024 ** 3:
        return f"{bytes_per_second / 1024 ** 2:,.2f} MB/s"
    return f"{bytes_per_second / 1024 ** 3:,.2f} GB/s"


class ProgressReporter:
    """Logs a byte counter once per 10% of ``total``, with rate and ETA."""

    steps = 10

    def __init__(
        self,
        total: int,
        label: str,
        log: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.total = total
        self.label = label
        self.logger = log or logger
        self.clock = clock
        self.started = clock()
        self.done = 0
        self.mark = 0
        self._lock = threading.Lock()

    def report(self, done: int) -> bool:
        """Update the counter. Returns True when a line was logged."""
        with self._lock:
            self.done = done
            if self.total <= 0 or done <= 0:
                return False
            reached = min(self.steps, done * self.steps // self.total)
            if reached <= self.mark:
                return False
            self.mark = reached
            elapsed = max(self.clock() - self.started, 0.001)
            rate = done / elapsed
            eta = (self.total - done) / rate if rate else 0
            pct = done / self.total * 100
            self.logger.info(
                f"[{pct:5.1f}%] {self.label}: {done:,}/{self.total:,} bytes  "
                f"rate={format_rate(rate)}  eta={format_seconds(eta)}"
            )
            return True

    def advance(self, nbytes: int) -> bool:
        return self.report(self.done + nbytes)


class SignatureProgressReporter:
    """Announces hashing, then logs each 10% of signature building."""

    def __init__(self, file_name: str, log: Optional[logging.Logger] = None) -> None:
        self.file_name = file_name
        self.logger = log or logger
        self._reporter: Optional[ProgressReporter] = None

    def __call__(self, operation: str, position: int, total: int) -> None:
        if operation.startswith("Hashing file") and position == 0:
            self.logger.info(f"Hashing file {self.file_name} ({total:,} bytes).")
            self._reporter = ProgressReporter(total, f"signature {self.file_name}", self.logger)
        elif operation.startswith("Building signatures") and self._reporter is not None:
            self._reporter.report(position)
