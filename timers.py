"""
Timers — cancellable callbacks on the hub's event loop.

Keepalive pings and post-completion removals are both Timer handles, kept
next to the entity they serve and cancelled when that entity goes away.
Scheduling and cancelling are safe from any thread; callbacks always run
on the loop.
"""

import asyncio
import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


def running_loop() -> asyncio.AbstractEventLoop | None:
    """Return the loop running in this thread, or None outside of one."""
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class Timer:
    """Run ``callback`` after ``delay`` seconds, once or every ``delay`` seconds."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        delay: float,
        callback: Callable[[], None],
        repeat: bool = False,
    ):
        self.delay = delay
        self.repeat = repeat
        self._loop = loop
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._done = False
        self._lock = threading.Lock()
        self._in_loop(self._arm)

    @property
    def done(self) -> bool:
        """True once cancelled, or once a one-shot timer has fired."""
        return self._done

    def cancel(self) -> None:
        """Cancel the timer. Safe to call more than once."""
        with self._lock:
            if self._done:
                return
            self._done = True
            handle, self._handle = self._handle, None
        if handle is not None:
            self._in_loop(handle.cancel)

    def _in_loop(self, fn: Callable[[], None]) -> None:
        if running_loop() is self._loop:
            fn()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(fn)

    def _arm(self) -> None:
        with self._lock:
            if self._done:
                return
            self._handle = self._loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        with self._lock:
            if self._done:
                return
            self._handle = None
            if not self.repeat:
                self._done = True
        try:
            self._callback()
        except Exception:
            logger.exception("[Timer] Callback %r failed", self._callback)
        if self.repeat:
            self._arm()
