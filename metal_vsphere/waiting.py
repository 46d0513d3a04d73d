"""Time budgets and polling.

remaining_wait_time() is the single source of truth for how long a machine
may still be waited on. Poller re-evaluates it on every tick instead of
computing a deadline once, and returns a WaitOutcome rather than raising,
so callers decide what a timeout means.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from .exceptions import DriverError, WaitCancelled
from .schemas import MachineOptions, MachineSpec

POLL_INTERVAL = 5.0


class Clock:
    """Wall clock. Tests substitute a fake that advances on sleep()."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float, cancel_event: Optional[threading.Event] = None) -> None:
        if cancel_event is not None:
            cancel_event.wait(seconds)
        else:
            time.sleep(seconds)


def remaining_wait_time(spec: MachineSpec, options: MachineOptions, now: datetime) -> float:
    """Seconds left in the machine's current wait budget.

    Once the machine has been restarted the budget is start_timeout counted
    from started_at, otherwise create_timeout counted from allocated_at.
    Zero or less means the budget is exhausted.
    """
    location = spec.location
    if location is None:
        raise ValueError(f"machine {spec.name} has no location; it was never allocated")
    if location.started_at is not None:
        return options.start_timeout - (now - location.started_at).total_seconds()
    return options.create_timeout - (now - location.allocated_at).total_seconds()


class WaitStatus(Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class WaitOutcome:
    status: WaitStatus
    error: Optional[BaseException] = None

    @classmethod
    def ready(cls) -> "WaitOutcome":
        return cls(WaitStatus.READY)

    @classmethod
    def timed_out(cls) -> "WaitOutcome":
        return cls(WaitStatus.TIMED_OUT)

    @classmethod
    def failed(cls, error: BaseException) -> "WaitOutcome":
        return cls(WaitStatus.FAILED, error)

    @property
    def is_ready(self) -> bool:
        return self.status is WaitStatus.READY

    @property
    def is_timed_out(self) -> bool:
        return self.status is WaitStatus.TIMED_OUT


class Poller:
    """Probe a condition every `interval` seconds until it holds, the budget
    runs out, or cancel() is called.

    Pollers sharing one `cancel_event` are cancelled together, including
    pollers created after the event was set.
    """

    def __init__(self, clock: Optional[Clock] = None, interval: float = POLL_INTERVAL,
                 cancel_event: Optional[threading.Event] = None):
        self.clock = clock or Clock()
        self.interval = interval
        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def poll(self, probe: Callable[[], bool], remaining: Callable[[datetime], float],
             on_tick: Optional[Callable[[float], None]] = None) -> WaitOutcome:
        """Run `probe` until it returns true.

        `remaining(now)` is consulted before every sleep; `on_tick` receives
        the remaining seconds each time the poller is about to sleep. A
        DriverError raised by the probe ends the wait as FAILED.
        """
        while True:
            if self.cancelled:
                return WaitOutcome.failed(WaitCancelled("wait cancelled"))
            try:
                if probe():
                    return WaitOutcome.ready()
            except DriverError as e:
                return WaitOutcome.failed(e)
            left = remaining(self.clock.now())
            if left <= 0:
                return WaitOutcome.timed_out()
            if on_tick is not None:
                on_tick(left)
            self.clock.sleep(min(self.interval, left), self._cancel_event)
