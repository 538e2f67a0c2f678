"""
Time-step driven code refresh.

Entries sharing a step length share one timer. Each timer fires on the
wall-clock boundaries of its step (t = k * step), recomputing the delay
from the clock every time so timer jitter never accumulates. A separate
frame tick only moves the countdown of each entry between boundaries.

Subscriptions follow presence: `sync()` is given the entries that are
currently active and adds or drops subscriptions to match.
"""
import asyncio
import logging
import time
from functools import partial
from typing import Awaitable, Callable, Iterable, Optional

from ..config.config_vault import FRAME_INTERVAL
from ..config.logging_config import timestamp
from .Entry import Entry, EntryRuntime
from .totp_utils import generate_for, elapsed_fraction

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


def next_boundary_delay(now: float, step: int) -> float:
    """Seconds from `now` until the next multiple of `step`, in (0, step]."""
    return step - (now % step)


class StepTimer:
    """One shared timer for every subscriber using the same step length."""

    def __init__(self, step: int, clock: Clock, sleep: Sleep):
        self.step = step
        self._clock = clock
        self._sleep = sleep
        self.subscribers: dict[str, Callable[[float], None]] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, key: str, callback: Callable[[float], None]) -> None:
        """Add a subscriber and fire it once immediately with the current time."""
        self.subscribers[key] = callback
        callback(self._clock())
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name=f"step-timer-{self.step}"
            )

    def unsubscribe(self, key: str) -> None:
        self.subscribers.pop(key, None)
        if not self.subscribers and self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            now = self._clock()
            boundary = now - (now % self.step) + self.step
            await self._sleep(next_boundary_delay(now, self.step))
            fired = self._clock()
            if fired < boundary:
                # woke early or the clock stepped back, wait for the boundary again
                continue
            for key, callback in list(self.subscribers.items()):
                try:
                    callback(fired)
                except Exception as e:
                    logger.error(f"[{timestamp()}] step {self.step}: subscriber {key} failed: {e!r}")


class ClockScheduler:
    """
    Drives code generation for the active entries.

    Args:
        runtime: Runtime cache keyed by entry id. Written by this class.
        clock: Returns the current unix time.
        sleep: Awaitable sleep, replaceable in tests.
        frame_interval: Seconds between countdown frames.
    """

    def __init__(self, runtime: dict[str, EntryRuntime], clock: Clock = time.time,
                 sleep: Sleep = asyncio.sleep, frame_interval: float = FRAME_INTERVAL):
        self.runtime = runtime
        self._clock = clock
        self._sleep = sleep
        self.frame_interval = frame_interval
        self._timers: dict[int, StepTimer] = {}
        self._subscriptions: dict[str, Entry] = {}
        self._frame_task: Optional[asyncio.Task] = None

    @property
    def active_steps(self) -> list[int]:
        return sorted(self._timers)

    @property
    def subscribed(self) -> list[str]:
        return list(self._subscriptions)

    def now(self) -> float:
        return self._clock()

    def timer(self, step: int) -> Optional[StepTimer]:
        return self._timers.get(step)

    def sync(self, entries: Iterable[Entry]) -> None:
        """
        Make the subscriptions match `entries`.

        New entries are subscribed (and get a code at once), missing ones
        are dropped together with their runtime state. An entry whose
        record changed is re-subscribed so its code is recomputed.
        """
        wanted = {entry.id: entry for entry in entries}

        for eid in list(self._subscriptions):
            if eid not in wanted:
                self._unsubscribe(eid)

        for eid, entry in wanted.items():
            current = self._subscriptions.get(eid)
            if current is entry:
                continue
            if current is not None:
                self._unsubscribe(eid)
            self._subscribe(entry)

        if self._subscriptions and self._frame_task is None:
            self._frame_task = asyncio.get_running_loop().create_task(
                self._animate(), name="frame-tick"
            )
        elif not self._subscriptions and self._frame_task is not None:
            self._frame_task.cancel()
            self._frame_task = None

    def close(self) -> None:
        self.sync(())

    def _subscribe(self, entry: Entry) -> None:
        self._subscriptions[entry.id] = entry
        self.runtime[entry.id] = EntryRuntime()
        timer = self._timers.get(entry.step)
        if timer is None:
            timer = self._timers[entry.step] = StepTimer(entry.step, self._clock, self._sleep)
        timer.subscribe(entry.id, partial(self._on_step, entry.id))

    def _unsubscribe(self, eid: str) -> None:
        entry = self._subscriptions.pop(eid)
        timer = self._timers[entry.step]
        timer.unsubscribe(eid)
        if not timer.subscribers:
            del self._timers[entry.step]
        self.runtime.pop(eid, None)

    def _on_step(self, eid: str, now: float) -> None:
        entry = self._subscriptions.get(eid)
        state = self.runtime.get(eid)
        if entry is None or state is None:
            return
        try:
            state.code = generate_for(entry, now)
        except ValueError as e:
            logger.error(f"[{timestamp()}] Could not generate code for entry {eid}: {e}")
            state.code = None
        state.computed_at = now
        state.frame_at = now
        state.fraction = elapsed_fraction(now, entry.step)

    async def _animate(self) -> None:
        while True:
            await self._sleep(self.frame_interval)
            now = self._clock()
            for eid, entry in self._subscriptions.items():
                state = self.runtime.get(eid)
                if state is None:
                    continue
                state.frame_at = now
                state.fraction = elapsed_fraction(now, entry.step)
