"""A shared ticker aligned to interval boundaries that fans ticks out to subscribers."""

from __future__ import annotations

import itertools
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Optional


class TickerChannel:
    """A subscription that keeps at most one pending tick."""

    def __init__(self, ticker: "Ticker", channel_id: int) -> None:
        self._ticker = ticker
        self._id = channel_id
        self._queue: "queue.Queue[datetime]" = queue.Queue(maxsize=1)

    def _offer(self, when: datetime) -> None:
        try:
            self._queue.put_nowait(when)
        except queue.Full:
            pass

    def get(self, timeout: Optional[float] = None) -> datetime:
        """Wait for the next tick; raise TimeoutError if none comes in time."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no tick received") from None

    def stop(self) -> None:
        self._ticker._unsubscribe(self._id)


class Ticker:
    """Ticks at multiples of the interval (in seconds) and notifies subscribers."""

    def __init__(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError("ticker interval must be positive")
        self._lock = threading.Lock()
        self._interval = interval
        self._subscribers: dict[int, TickerChannel] = {}
        self._ids = itertools.count(1)
        self._last_time: Optional[datetime] = None
        self._cancelled = threading.Event()
        self._start(interval)

    def __enter__(self) -> "Ticker":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def _start(self, interval: float) -> None:
        cancelled = threading.Event()
        self._cancelled = cancelled
        threading.Thread(target=self._run, args=(cancelled, interval), daemon=True).start()

    def subscribe(self) -> TickerChannel:
        with self._lock:
            channel = TickerChannel(self, next(self._ids))
            self._subscribers[channel._id] = channel
            return channel

    def _unsubscribe(self, channel_id: int) -> None:
        with self._lock:
            self._subscribers.pop(channel_id, None)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def last_time(self) -> Optional[datetime]:
        """Time of the latest tick, or None before the first one."""
        with self._lock:
            return self._last_time

    def reset(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError("ticker interval must be positive")
        if interval == self._interval:
            return
        self.stop()
        self._interval = interval
        self._start(interval)

    def stop(self) -> None:
        self._cancelled.set()

    def _run(self, cancelled: threading.Event, interval: float) -> None:
        delay = interval - (time.time() % interval)
        if cancelled.wait(delay):
            return
        self._notify(datetime.now(timezone.utc))
        next_at = time.monotonic() + interval
        while not cancelled.wait(max(0.0, next_at - time.monotonic())):
            self._notify(datetime.now(timezone.utc))
            next_at += interval
            now = time.monotonic()
            while next_at <= now:
                next_at += interval

    def _notify(self, when: datetime) -> None:
        with self._lock:
            self._last_time = when
            for channel in self._subscribers.values():
                channel._offer(when)