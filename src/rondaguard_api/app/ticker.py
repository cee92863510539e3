"""Cancellable repeating tick that drives a round's elapsed-time clock.

Beginner terms:
- Tick: one callback invocation after a full interval has passed.
- Daemon thread: background thread that never blocks interpreter exit.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)

TickCallback = Callable[[], None]


class Ticker(Protocol):
    @property
    def running(self) -> bool: ...

    def start(self) -> None: ...

    def cancel(self) -> None: ...


TickerFactory = Callable[[TickCallback], Ticker]


class IntervalTicker:
    """Call ``callback`` once per ``interval_s`` on a daemon thread until cancelled."""

    def __init__(self, interval_s: float, callback: TickCallback) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.interval_s = interval_s
        self._callback = callback
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("ticker already started")
        self._thread = threading.Thread(target=self._run, name="round-ticker", daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()
        thread = self._thread
        # The callback itself may cancel the ticker; never join the current thread.
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(self.interval_s, 1.0))

    def _run(self) -> None:
        # wait() returns True as soon as cancel() sets the event.
        while not self._stop.wait(self.interval_s):
            try:
                self._callback()
            except Exception:  # noqa: BLE001
                logger.exception("ticker event=callback_failed interval_s=%s", self.interval_s)
                self._stop.set()
                return


class ManualTicker:
    """Ticker driven explicitly by the host; ticks after cancel() are dropped."""

    def __init__(self, callback: TickCallback) -> None:
        self._callback = callback
        self._started = False
        self._cancelled = False
        self.delivered = 0

    @property
    def running(self) -> bool:
        return self._started and not self._cancelled

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        if self._started:
            raise RuntimeError("ticker already started")
        self._started = True

    def cancel(self) -> None:
        self._cancelled = True

    def tick(self, count: int = 1) -> int:
        """Deliver up to ``count`` ticks and return how many were delivered."""
        delivered = 0
        for _ in range(count):
            if not self.running:
                break
            self._callback()
            delivered += 1
        self.delivered += delivered
        return delivered


def interval_ticker_factory(interval_s: float) -> TickerFactory:
    def _factory(callback: TickCallback) -> Ticker:
        return IntervalTicker(interval_s, callback)

    return _factory
