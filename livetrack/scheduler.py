"""
Cooperative, single-threaded timer loop with keyed coalescing.

Every timer in the live tracking layer (reconnect backoff, recompute debounce,
outbox flush, simulation tick, stream pumping) is a keyed entry on one
``CoalescingScheduler``. Scheduling a key that is already pending replaces the
pending entry, so bursts collapse into a single invocation.
"""
from __future__ import annotations

import logging
import sched
import time
from typing import Callable, Dict, Optional, Tuple

LOGGER = logging.getLogger(__name__)


class SystemClock:
    def time(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class CoalescingScheduler:
    def __init__(self, clock=None):
        self.clock = clock or SystemClock()
        self._scheduler = sched.scheduler(self.clock.time, self.clock.sleep)
        self._handles: Dict[str, Tuple[object, sched.Event]] = {}

    def now(self) -> float:
        return self.clock.time()

    def schedule(self, key: str, delay: float, fn: Callable[[], None]) -> None:
        """Arm ``fn`` after ``delay`` seconds, replacing any pending ``key``."""
        self.cancel(key)
        token = object()
        event = self._scheduler.enter(max(delay, 0.0), 0, self._fire, argument=(key, token, fn))
        self._handles[key] = (token, event)

    def every(self, key: str, interval: float, fn: Callable[[], None], immediate: bool = False) -> None:
        """Run ``fn`` every ``interval`` seconds until ``key`` is cancelled."""

        def run_and_rearm() -> None:
            # Re-arm first so fn may cancel its own key.
            self.schedule(key, interval, run_and_rearm)
            fn()

        self.schedule(key, 0.0 if immediate else interval, run_and_rearm)

    def cancel(self, key: str) -> bool:
        entry = self._handles.pop(key, None)
        if entry is None:
            return False
        try:
            self._scheduler.cancel(entry[1])
        except ValueError:
            # Already popped off the queue by the running loop.
            pass
        return True

    def cancel_prefix(self, prefix: str) -> int:
        keys = [key for key in self._handles if key.startswith(prefix)]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def pending(self, key: str) -> bool:
        return key in self._handles

    def due_in(self, key: str) -> Optional[float]:
        entry = self._handles.get(key)
        if entry is None:
            return None
        return max(entry[1].time - self.now(), 0.0)

    def run_pending(self) -> int:
        """
        Run the entries that are due now without waiting.

        Entries armed while this batch runs wait for the next call, even at
        zero delay, so a task that keeps re-arming itself cannot hold the
        caller.
        """
        return self._run_due(self.now())

    def advance(self, seconds: float) -> None:
        """Drive the loop for ``seconds``, firing entries in time order."""
        target = self.now() + seconds
        while True:
            queue = self._scheduler.queue
            if not queue or queue[0].time > target:
                break
            wait = queue[0].time - self.now()
            if wait > 0:
                self.clock.sleep(wait)
            self._run_due(self.now())
        remaining = target - self.now()
        if remaining > 0:
            self.clock.sleep(remaining)

    def run_forever(self) -> None:
        self._scheduler.run(blocking=True)

    def _run_due(self, until: float) -> int:
        batch = [event for event in self._scheduler.queue if event.time <= until]
        ran = 0
        for event in batch:
            try:
                self._scheduler.cancel(event)
            except ValueError:
                # Cancelled or replaced by an earlier entry of this batch.
                continue
            event.action(*event.argument, **event.kwargs)
            ran += 1
        return ran

    def _fire(self, key: str, token: object, fn: Callable[[], None]) -> None:
        entry = self._handles.get(key)
        if entry is not None and entry[0] is token:
            del self._handles[key]
        LOGGER.debug("Running scheduled task %s", key)
        fn()
