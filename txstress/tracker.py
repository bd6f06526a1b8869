"""
Confirmation tracking for accepted requests.

Every accepted handle gets exactly one terminal ConfirmationResult. Waits run
in batches of `batch_size`, each batch joined with gather(return_exceptions=True)
so a slow or timed-out handle never delays counting of the others.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Hashable, Iterable, List, Optional

from .errors import ConfirmationFailure, ConfirmationTimeout, FatalError
from .models import Accepted, Confirmed, ConfirmationResult, RunCounters, TimedOut, TrackingError, truncate

logger = logging.getLogger(__name__)

_CLOSE = object()


class ConfirmationTracker:
    """
    Waits for the target's asynchronous acknowledgment of each pending handle.

    Classification, in priority order:
      1. acknowledged with success  -> Confirmed, grouping histogram updated
      2. acknowledged with failure  -> counted as confirm-failed
      3. no acknowledgment in time  -> TimedOut, never retried here
    Any other wait error becomes a TrackingError and is counted as confirm-failed.

    Terminal results are kept for the life of the tracker so that tracking a
    handle twice never counts it twice: memory grows with the number of accepted
    handles (one small frozen record each), while in-flight waits are dropped as
    soon as they finish. Use one tracker per run.
    """

    def __init__(
        self,
        target,
        counters: RunCounters,
        timeout: float = 180.0,
        confirmations_required: int = 1,
        batch_size: int = 50,
        progress_every: int = 500,
        on_progress: Optional[Callable[[RunCounters], None]] = None,
        error_truncate: int = 100,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.target = target
        self.counters = counters
        self.timeout = timeout
        self.confirmations_required = confirmations_required
        self.batch_size = batch_size
        self.progress_every = progress_every
        self.on_progress = on_progress
        self.error_truncate = error_truncate

        self._results: Dict[Hashable, ConfirmationResult] = {}
        self._waits: Dict[Hashable, asyncio.Task] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._last_progress = 0
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

    # -------------------------------------------------------------------------
    # Single handle
    # -------------------------------------------------------------------------
    def result(self, handle: Hashable) -> Optional[ConfirmationResult]:
        return self._results.get(handle)

    async def track(self, handle: Hashable) -> ConfirmationResult:
        """
        Wait for `handle` to reach a terminal result. Calling this again for the
        same handle returns the recorded result without touching the counters.
        """
        if handle in self._results:
            return self._results[handle]
        wait = self._waits.get(handle)
        if wait is None:
            wait = asyncio.ensure_future(self._wait(handle))
            self._waits[handle] = wait
            wait.add_done_callback(lambda _, h=handle: self._waits.pop(h, None))
        return await asyncio.shield(wait)

    async def _wait(self, handle: Hashable) -> ConfirmationResult:
        try:
            receipt = await asyncio.wait_for(
                self.target.await_confirmation(handle, self.confirmations_required, self.timeout),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, ConfirmationTimeout):
            self.counters.record_timed_out(handle)
            result = TimedOut(handle=handle, timeout=self.timeout)
        except ConfirmationFailure as e:
            self.counters.record_confirm_failed(handle, truncate(str(e), self.error_truncate))
            result = Confirmed(handle=handle, grouping_key=e.grouping_key, confirmed_at=time.time(), status_ok=False)
        except FatalError:
            raise
        except Exception as e:
            reason = truncate(f"{type(e).__name__}: {e}", self.error_truncate)
            self.counters.record_confirm_failed(handle, reason)
            result = TrackingError(handle=handle, reason=reason)
        else:
            if receipt is None:
                self.counters.record_confirm_failed(handle, "no receipt")
                result = TrackingError(handle=handle, reason="no receipt")
            elif receipt.status_ok:
                self.counters.record_confirmed(receipt.grouping_key)
                result = Confirmed(handle=handle, grouping_key=receipt.grouping_key, confirmed_at=time.time())
            else:
                self.counters.record_confirm_failed(handle, f"failed status in group {receipt.grouping_key}")
                result = Confirmed(
                    handle=handle,
                    grouping_key=receipt.grouping_key,
                    confirmed_at=time.time(),
                    status_ok=False,
                )

        self._results[handle] = result
        self._maybe_report()
        return result

    def _maybe_report(self):
        confirmed = self.counters.total_confirmed
        if self.progress_every and confirmed - self._last_progress >= self.progress_every:
            self._last_progress = confirmed
            if self.on_progress is not None:
                self.on_progress(self.counters)
            else:
                logger.info("%d/%d confirmed", confirmed, self.counters.total_accepted)

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------
    async def track_batch(self, handles: Iterable[Hashable]) -> List[ConfirmationResult]:
        """
        Wait for a batch concurrently and collect every outcome.
        A FatalError is raised once the whole batch has settled.
        """
        results = await asyncio.gather(*[self.track(h) for h in handles], return_exceptions=True)
        fatal = next((r for r in results if isinstance(r, BaseException)), None)
        if fatal is not None:
            raise fatal
        return results

    async def track_all(self, handles: Iterable[Hashable]) -> List[ConfirmationResult]:
        """Track `handles` in consecutive batches of `batch_size`."""
        handles = list(handles)
        results: List[ConfirmationResult] = []
        for i in range(0, len(handles), self.batch_size):
            results.extend(await self.track_batch(handles[i:i + self.batch_size]))
        return results

    # -------------------------------------------------------------------------
    # Queue consumer (runs alongside the sending phase)
    # -------------------------------------------------------------------------
    def enqueue(self, outcome: Accepted):
        """Submitter callback: queue an accepted handle for tracking."""
        self._queue.put_nowait(outcome.handle)

    def close(self):
        """No more handles will be queued; run() returns once the queue drains."""
        self._queue.put_nowait(_CLOSE)

    def cancel(self):
        """Abandon every outstanding wait."""
        for wait in list(self._waits.values()):
            wait.cancel()

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    @property
    def waiting(self) -> int:
        return len(self._waits)

    @property
    def tracked(self) -> int:
        """Handles holding a terminal result."""
        return len(self._results)

    async def run(self):
        """Consume queued handles in batches until close() is called."""
        self.started_at = time.time()
        closing = False
        try:
            while not closing:
                item = await self._queue.get()
                if item is _CLOSE:
                    break
                batch = [item]
                while len(batch) < self.batch_size and not self._queue.empty():
                    item = self._queue.get_nowait()
                    if item is _CLOSE:
                        closing = True
                        break
                    batch.append(item)
                await self.track_batch(batch)
        finally:
            self.finished_at = time.time()
