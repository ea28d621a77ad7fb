"""Cooperative cancellation shared by every task of a transfer."""

import logging
import os
import signal
import sys
import threading
from typing import Dict, Optional

from .errors import Cancelled

CTRL_Q = "\x11"


class CancellationToken:
    """A cancellation flag that can be linked to a parent.

    A child is cancelled when it or any ancestor is cancelled, which lets the
    engine stop its own tasks after a fatal error without looking like the
    user asked for it.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_cancelled

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise Cancelled("Operation cancelled.")

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True early if cancelled."""
        if self._parent is None:
            return self._event.wait(timeout)
        step = min(timeout, 0.1)
        waited = 0.0
        while waited < timeout:
            if self.is_cancelled:
                return True
            self._event.wait(step)
            waited += step
        return self.is_cancelled

    def child(self) -> "CancellationToken":
        return CancellationToken(self)


def install_signal_handlers(token: CancellationToken, logger: logging.Logger) -> Dict[int, object]:
    """Route SIGINT/SIGTERM to ``token``. Returns the handlers that were replaced."""

    def _handle_interrupt(signum, frame):
        logger.warning(
            "Interrupt received. Saving progress and exiting gracefully..."
        )
        token.cancel()

    previous = {signal.SIGINT: signal.signal(signal.SIGINT, _handle_interrupt)}
    if hasattr(signal, "SIGTERM"):
        previous[signal.SIGTERM] = signal.signal(signal.SIGTERM, _handle_interrupt)
    return previous


def restore_signal_handlers(previous: Dict[int, object]) -> None:
    for signum, handler in previous.items():
        if handler is not None:
            signal.signal(signum, handler)


class KeyWatcher(threading.Thread):
    """Reads single keystrokes from the terminal and cancels on Ctrl-Q."""

    def __init__(self, token: CancellationToken, logger: logging.Logger) -> None:
        super().__init__(name="azsync-keys", daemon=True)
        self.token = token
        self.logger = logger
        self._halt = threading.Event()

    def stop(self) -> None:
        self._halt.set()

    def run(self) -> None:
        if not sys.stdin or not sys.stdin.isatty():
            return
        if os.name == "nt":
            self._run_windows()
        else:
            self._run_posix()

    def _fire(self) -> None:
        self.logger.warning("Ctrl-Q pressed. Stopping transfer...")
        self.token.cancel()

    def _run_windows(self) -> None:
        import msvcrt

        while not self._halt.is_set() and not self.token.is_cancelled:
            if msvcrt.kbhit() and msvcrt.getwch() == CTRL_Q:
                self._fire()
                return
            self._halt.wait(0.1)

    def _run_posix(self) -> None:
        import select
        import termios
        import tty

        fd = sys.stdin.fileno()
        try:
            saved = termios.tcgetattr(fd)
        except termios.error:
            return
        try:
            tty.setcbreak(fd)
            # Ctrl-Q is XON while flow control is on
            mode = termios.tcgetattr(fd)
            mode[0] &= ~termios.IXON
            termios.tcsetattr(fd, termios.TCSANOW, mode)
            while not self._halt.is_set() and not self.token.is_cancelled:
                ready, _, _ = select.select([fd], [], [], 0.1)
                if ready and os.read(fd, 1).decode("latin-1") == CTRL_Q:
                    self._fire()
                    return
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)
