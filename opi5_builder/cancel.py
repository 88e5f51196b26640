"""Cooperative cancellation driven by process signals.

Signal handlers never tear anything down and never log. They set the token
and terminate the process group currently being waited on, so control
returns to the pipeline, which reports the signal and unwinds its resource
scopes before the process exits.
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from types import FrameType

CANCEL_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)

# Seconds a terminated child gets before its group is killed
KILL_GRACE_PERIOD = 10.0


def signal_group(process: subprocess.Popen[str], sig: int) -> None:
    """Send sig to the child's process group, or to the child alone.

    Children spawned with ``start_new_session=True`` lead their own group,
    which also holds any grandchildren sharing their output pipe.
    """
    if process.poll() is not None:
        return
    try:
        if os.getpgid(process.pid) == process.pid:
            os.killpg(process.pid, sig)
        else:
            process.send_signal(sig)
    except ProcessLookupError:
        # exited between poll() and the signal
        return


class CancellationToken:
    """Process-wide cancellation flag checked at stage and retry boundaries.

    Args:
        grace_period: Seconds between SIGTERM and SIGKILL for a tracked child.
    """

    def __init__(self, grace_period: float = KILL_GRACE_PERIOD) -> None:
        self._event = threading.Event()
        self.grace_period = grace_period
        self.signum: int | None = None
        self.reported = False
        self._active: subprocess.Popen[str] | None = None
        self._kill_timer: threading.Timer | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        """Name of the signal that requested cancellation."""
        if self.signum is None:
            return "cancellation request"
        return signal.Signals(self.signum).name

    def cancel(self, signum: int | None = None) -> None:
        """Request cancellation and stop the tracked child process, if any."""
        if self.signum is None:
            self.signum = signum
        self._event.set()
        process = self._active
        if process is not None:
            self._stop(process)

    def wait(self, timeout: float) -> bool:
        """Sleep for up to timeout seconds; return True if cancelled meanwhile."""
        return self._event.wait(timeout)

    @contextmanager
    def track(self, process: subprocess.Popen[str]) -> Iterator[None]:
        """Register the child process a cancellation should terminate."""
        self._active = process
        try:
            if self.cancelled:
                self._stop(process)
            yield
        finally:
            self._active = None
            timer, self._kill_timer = self._kill_timer, None
            if timer is not None:
                timer.cancel()

    def _stop(self, process: subprocess.Popen[str]) -> None:
        signal_group(process, signal.SIGTERM)
        if self._kill_timer is None and process.poll() is None:
            timer = threading.Timer(self.grace_period, signal_group, args=(process, signal.SIGKILL))
            timer.daemon = True
            self._kill_timer = timer
            timer.start()


@contextmanager
def handle_signals(token: CancellationToken) -> Iterator[CancellationToken]:
    """Route SIGINT/SIGTERM/SIGQUIT to the token for the duration of the block.

    Previous handlers are restored on exit.
    """

    def _handler(signum: int, frame: FrameType | None) -> None:
        token.cancel(signum)

    previous = {sig: signal.signal(sig, _handler) for sig in CANCEL_SIGNALS}
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


__all__ = ["CANCEL_SIGNALS", "KILL_GRACE_PERIOD", "CancellationToken", "handle_signals", "signal_group"]
