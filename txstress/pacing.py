"""
Rate control for the sending phase.

Two scheduling policies turn a target rate into a stream of dispatch windows:

- Fixed-interval: one window of `tick_size` requests every
  `tick_size / rate` seconds. Before each window the controller sleeps only
  for whatever is left of the interval since the previous dispatch, so time
  spent waiting on the target is absorbed instead of added.
- Round-based: windows of `batch_size * concurrency` requests back to back,
  with an optional fixed delay between rounds. The realized rate is measured
  and reported, not enforced.

Usage:
    async for window in controller.windows():
        await submitter.dispatch(window)
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from .errors import ConfigError

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class Window:
    """One dispatch window: a group of requests sent concurrently."""
    index: int
    size: int
    groups: int = 1
    started_at: float = 0
    finished_at: float = 0

    @property
    def duration(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def group_sizes(self) -> List[int]:
        """Split `size` into `groups` concurrent batches (last one may be short)."""
        if self.groups <= 1:
            return [self.size]
        per_group = -(-self.size // self.groups)
        sizes = []
        remaining = self.size
        while remaining > 0:
            sizes.append(min(per_group, remaining))
            remaining -= per_group
        return sizes


@dataclass
class RoundRecord:
    index: int
    size: int
    duration: float

    @property
    def rate(self) -> float:
        return self.size / self.duration if self.duration > 0 else 0


class RateController:
    """
    Base class: stop condition, counters and the window loop.
    Subclasses decide window sizes and the pause before each window.
    """

    policy = "base"

    def __init__(
        self,
        duration: Optional[float] = None,
        total: Optional[int] = None,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        if duration is None and total is None:
            raise ConfigError("A duration or a total request count is required")
        if duration is not None and duration <= 0:
            raise ConfigError(f"duration must be > 0, got {duration}")
        if total is not None and total < 0:
            raise ConfigError(f"total must be >= 0, got {total}")

        self.duration = duration
        self.total = total
        self._clock = clock
        self._sleep = sleep
        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None
        self._cancel_event = asyncio.Event()
        self.issued = 0
        self.rounds: List[RoundRecord] = []

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------
    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._stopped_at if self._stopped_at is not None else self._clock()
        return end - self._started_at

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def realized_rate(self) -> float:
        return self.issued / self.elapsed if self.elapsed > 0 else 0

    def remaining(self) -> Optional[int]:
        if self.total is None:
            return None
        return max(self.total - self.issued, 0)

    def should_stop(self) -> bool:
        """Duration expired OR total reached OR caller cancellation."""
        if self.cancelled:
            return True
        if self.total is not None and self.issued >= self.total:
            return True
        if self.duration is not None and self.elapsed >= self.duration:
            return True
        return False

    def stop(self):
        """Cancel the schedule. No window is opened after this call."""
        self._cancel_event.set()

    # -------------------------------------------------------------------------
    # Schedule
    # -------------------------------------------------------------------------
    def window_size(self) -> int:
        raise NotImplementedError

    async def before_window(self, index: int):
        """Pause (if any) before window `index` opens."""

    async def after_window(self, window: Window):
        """Hook run once the window's dispatches have all resolved."""

    def window_groups(self) -> int:
        return 1

    async def windows(self) -> AsyncIterator[Window]:
        """
        Yield dispatch windows until the stop condition holds.
        The caller resolves every dispatch of a window before asking for the next.
        """
        self._started_at = self._clock()
        self._stopped_at = None
        index = 0
        try:
            while not self.should_stop():
                await self.before_window(index)
                if self.should_stop():
                    break

                size = self.window_size()
                remaining = self.remaining()
                if remaining is not None:
                    size = min(size, remaining)
                if size <= 0:
                    break

                window = Window(
                    index=index,
                    size=size,
                    groups=self.window_groups(),
                    started_at=self._clock(),
                )
                self.issued += size
                yield window

                window.finished_at = self._clock()
                self.rounds.append(RoundRecord(index=index, size=size, duration=window.duration))
                await self.after_window(window)
                index += 1
        finally:
            self._stopped_at = self._clock()

    async def _pause(self, seconds: float):
        """Sleep, waking early if the schedule is cancelled."""
        if self.duration is not None and self._started_at is not None:
            # never sleep past the end of the run
            left = self._started_at + self.duration - self._clock()
            seconds = min(seconds, max(left, 0))
        if seconds <= 0:
            return
        if self._sleep is asyncio.sleep:
            try:
                await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        else:
            await self._sleep(seconds)


# =============================================================================
# POLICY: Fixed Interval
# =============================================================================

class FixedIntervalController(RateController):
    """
    Closed-loop pacing at `rate` requests/second.

    Each tick dispatches `tick_size` requests; the interval between tick starts
    is tick_size / rate seconds. Negative remainders are never slept.
    """

    policy = "fixed-interval"

    def __init__(self, rate: float, tick_size: int = 1, **kwargs):
        if rate is None or rate <= 0:
            raise ConfigError(f"Fixed-interval pacing needs a rate > 0, got {rate}")
        if tick_size < 1:
            raise ConfigError(f"tick_size must be >= 1, got {tick_size}")
        super().__init__(**kwargs)
        self.rate = rate
        self.tick_size = tick_size
        self._last_dispatch: Optional[float] = None

    @property
    def interval(self) -> float:
        """Seconds between tick starts (1000/R ms for one request per tick)."""
        return self.tick_size / self.rate

    def window_size(self) -> int:
        return self.tick_size

    async def before_window(self, index: int):
        if self._last_dispatch is not None:
            since_last = self._clock() - self._last_dispatch
            await self._pause(self.interval - since_last)
        self._last_dispatch = self._clock()


# =============================================================================
# POLICY: Round Based
# =============================================================================

class RoundBasedController(RateController):
    """
    Open-loop bursts of batch_size x concurrency requests per round.
    """

    policy = "round-based"

    def __init__(
        self,
        batch_size: int,
        concurrency: int = 1,
        round_delay: float = 0.0,
        **kwargs,
    ):
        if batch_size is None or batch_size < 1:
            raise ConfigError(f"Round-based pacing needs batch_size >= 1, got {batch_size}")
        if concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {concurrency}")
        if round_delay < 0:
            raise ConfigError(f"round_delay must be >= 0, got {round_delay}")
        super().__init__(**kwargs)
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.round_delay = round_delay

    @property
    def round_size(self) -> int:
        return self.batch_size * self.concurrency

    def window_size(self) -> int:
        return self.round_size

    def window_groups(self) -> int:
        return self.concurrency

    async def after_window(self, window: Window):
        if self.round_delay > 0 and not self.should_stop():
            await self._pause(self.round_delay)


def build_controller(config, clock: Clock = time.monotonic, sleep: Sleeper = asyncio.sleep) -> RateController:
    """Create the controller matching `config.policy`."""
    common = {
        "duration": config.duration,
        "total": config.total,
        "clock": clock,
        "sleep": sleep,
    }
    if config.policy == FixedIntervalController.policy:
        return FixedIntervalController(rate=config.target_rate, tick_size=config.tick_size, **common)
    if config.policy == RoundBasedController.policy:
        return RoundBasedController(
            batch_size=config.batch_size,
            concurrency=config.concurrency,
            round_delay=config.round_delay,
            **common,
        )
    raise ConfigError(f"Unknown pacing policy: {config.policy!r}")
