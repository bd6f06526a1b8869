"""
In-process target system for dry runs and tests.

Behaviour is scripted per sequence number: synchronous rejection, confirmation
delay, failed status, grouping key. By default a request confirms after
`confirm_delay` seconds into the group (block) of `group_interval` seconds
it lands in.
"""

import asyncio
import random
from collections import defaultdict
from typing import Any, Callable, Dict, Hashable, List, Optional

from .errors import ConfirmationTimeout, FatalError, SubmissionError
from .models import Receipt, Request


def _key(request: Request):
    return request.sequence if request.sender is None else (request.sender, request.sequence)


class SimulatedTarget:
    """
    Scriptable stand-in for the transaction-processing system.

    Args:
        starting_sequence: value returned by get_starting_sequence, or a dict
            of sender -> starting sequence
        reject: predicate on sequence numbers -> rejection reason (str) or None
        reject_probability: random rejection rate, used when `reject` is None
        confirm_delay: seconds, or callable(sequence) -> seconds
        fail: predicate on sequence numbers -> True if processed with failed status
        grouping: callable(sequence) -> grouping key; defaults to time buckets
        group_interval: bucket width for the default grouping, in seconds
        submit_latency: seconds spent inside submit()
        fatal_after: raise FatalError on every submit once this many were received
        seed: seed for the random rejection draw
        accounts: what get_accounts returns; defaults to 20 generated addresses
    """

    def __init__(
        self,
        starting_sequence: Any = 0,
        reject: Optional[Callable[[int], Optional[str]]] = None,
        reject_probability: float = 0.0,
        confirm_delay: Any = 0.0,
        fail: Optional[Callable[[int], bool]] = None,
        grouping: Optional[Callable[[int], Hashable]] = None,
        group_interval: float = 1.0,
        submit_latency: float = 0.0,
        fatal_after: Optional[int] = None,
        seed: Optional[int] = None,
        accounts: Optional[List[str]] = None,
    ):
        self.starting_sequence = starting_sequence
        self.reject = reject
        self.reject_probability = reject_probability
        self.confirm_delay = confirm_delay
        self.fail = fail
        self.grouping = grouping
        self.group_interval = group_interval
        self.submit_latency = submit_latency
        self.fatal_after = fatal_after
        self._random = random.Random(seed)
        self.accounts = accounts if accounts is not None else [f"0x{i:040x}" for i in range(1, 21)]

        self.received: List[Request] = []
        self.accepted: Dict[str, Request] = {}
        self.rejected: Dict[Any, str] = {}
        self.confirmation_calls: Dict[str, int] = defaultdict(int)
        self._started_at: Optional[float] = None

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def _elapsed(self) -> float:
        if self._started_at is None:
            self._started_at = self._now()
        return self._now() - self._started_at

    @property
    def received_sequences(self) -> List[int]:
        return [request.sequence for request in self.received]

    # =========================================================================
    # TARGET OPERATIONS
    # =========================================================================
    async def get_accounts(self) -> List[str]:
        return list(self.accounts)

    async def get_starting_sequence(self, sender: Any = None) -> int:
        self._elapsed()
        if isinstance(self.starting_sequence, dict):
            return self.starting_sequence[sender]
        return self.starting_sequence

    async def submit(self, request: Request, resource_limit: int = 0, pricing: Optional[Dict[str, Any]] = None) -> Hashable:
        self._elapsed()
        if self.fatal_after is not None and len(self.received) >= self.fatal_after:
            raise FatalError("simulated target unreachable")
        self.received.append(request)

        if self.submit_latency > 0:
            await asyncio.sleep(self.submit_latency)

        reason = None
        if self.reject is not None:
            reason = self.reject(request.sequence)
        elif self.reject_probability > 0 and self._random.random() < self.reject_probability:
            reason = "replacement transaction underpriced"
        if reason:
            self.rejected[_key(request)] = reason
            raise SubmissionError(reason)

        if request.sender is None:
            handle = f"0x{request.sequence:064x}"
        else:
            handle = f"{request.sender}:{request.sequence}"
        self.accepted[handle] = request
        return handle

    async def await_confirmation(self, handle: Hashable, confirmations_required: int = 1, timeout: float = 180.0) -> Receipt:
        self.confirmation_calls[handle] += 1
        request = self.accepted.get(handle)
        if request is None:
            raise KeyError(f"Unknown handle {handle}")

        delay = self.confirm_delay(request.sequence) if callable(self.confirm_delay) else self.confirm_delay
        if delay > timeout:
            await asyncio.sleep(timeout)
            raise ConfirmationTimeout(handle, timeout)
        await asyncio.sleep(delay)

        if self.grouping is not None:
            key = self.grouping(request.sequence)
        else:
            key = int(self._elapsed() // self.group_interval) + 1
        status_ok = not (self.fail is not None and self.fail(request.sequence))
        return Receipt(grouping_key=key, status_ok=status_ok)

    async def get_current_group_number(self) -> int:
        return int(self._elapsed() // self.group_interval) + 1
