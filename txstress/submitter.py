"""Submission of requests to the target, one call per sequence number."""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .errors import FatalError, SubmissionError
from .models import Accepted, Rejected, Request, RunCounters, SubmissionOutcome, truncate
from .pacing import Window
from .sequence import SenderPool, SequenceAllocator

logger = logging.getLogger(__name__)

SAMPLE_HANDLES = 10


class Submitter:
    """
    Issues one submit() per allocated sequence number and classifies the result.

    The submitter itself has no concurrency cap: everything inside a window is
    in flight at once. Accepted outcomes are handed to `on_accepted` as soon as
    they resolve, so confirmation tracking never waits for the window.
    """

    def __init__(
        self,
        target,
        allocator: Union[SequenceAllocator, SenderPool],
        counters: RunCounters,
        destinations: Sequence[Any] = (None,),
        payload: Any = None,
        resource_limit: int = 21000,
        pricing: Optional[Dict[str, Any]] = None,
        on_accepted: Optional[Callable[[Accepted], None]] = None,
        error_truncate: int = 100,
        warn_limit: int = 10,
    ):
        self.target = target
        # a bare allocator is a pool of one default sender
        self.senders = allocator if isinstance(allocator, SenderPool) else SenderPool({None: allocator})
        self.counters = counters
        self.destinations = list(destinations) or [None]
        self.payload = payload
        self.resource_limit = resource_limit
        self.pricing = dict(pricing or {})
        self.on_accepted = on_accepted
        self.error_truncate = error_truncate
        self.warn_limit = warn_limit
        self.sample_handles: List[Any] = []
        self._made = 0

    def make_request(self, sequence: int, sender: Any = None) -> Request:
        """Build the next request; destinations rotate in dispatch order."""
        destination = self.destinations[self._made % len(self.destinations)]
        self._made += 1
        return Request(sequence=sequence, destination=destination, payload=self.payload, sender=sender)

    async def submit_one(self, request: Request) -> SubmissionOutcome:
        """Call the target exactly once for `request`. Never retries."""
        self.counters.record_attempt()
        dispatched_at = time.time()

        try:
            handle = await self.target.submit(request, self.resource_limit, self.pricing)
        except SubmissionError as e:
            return self._reject(request, e.reason, dispatched_at)
        except FatalError as e:
            # still resolve the attempt so attempted == accepted + rejected
            self._reject(request, f"fatal: {e.reason}", dispatched_at)
            raise
        except Exception as e:
            return self._reject(request, f"{type(e).__name__}: {e}", dispatched_at)

        self.counters.record_accepted()
        outcome = Accepted(request=request, handle=handle, dispatched_at=dispatched_at)
        if len(self.sample_handles) < SAMPLE_HANDLES:
            self.sample_handles.append(handle)
        logger.debug("seq %d accepted as %s", request.sequence, handle)
        if self.on_accepted is not None:
            self.on_accepted(outcome)
        return outcome

    def _reject(self, request: Request, reason: str, dispatched_at: float) -> Rejected:
        reason = truncate(reason, self.error_truncate)
        self.counters.record_rejected(request.sequence, reason, request.sender)
        if self.counters.total_rejected <= self.warn_limit:
            logger.warning("Error sending seq %d: %s", request.sequence, reason)
        return Rejected(request=request, reason=reason, dispatched_at=dispatched_at)

    async def _send_batch(self, requests: List[Request]) -> list:
        return await asyncio.gather(*[self.submit_one(r) for r in requests], return_exceptions=True)

    async def dispatch(self, window: Window) -> List[SubmissionOutcome]:
        """
        Allocate `window.size` (sender, sequence) pairs and submit them all concurrently,
        split into `window.groups` batches. Waits for every outcome; a FatalError
        is raised only after the whole window has resolved.
        """
        assigned = self.senders.next(window.size)
        requests = [self.make_request(seq, sender) for sender, seq in assigned]

        batches = []
        start = 0
        for size in window.group_sizes:
            batches.append(requests[start:start + size])
            start += size

        grouped = await asyncio.gather(*[self._send_batch(b) for b in batches], return_exceptions=True)

        outcomes: List[SubmissionOutcome] = []
        fatal: Optional[BaseException] = None
        for results in grouped:
            if isinstance(results, BaseException):
                fatal = fatal or results
                continue
            for result in results:
                # submit_one only lets FatalError and cancellation escape
                if isinstance(result, BaseException):
                    fatal = fatal or result
                else:
                    outcomes.append(result)

        if fatal is not None:
            raise fatal
        return outcomes
