"""Gap-free sequence number allocation."""

import logging
import threading
from typing import Any, Dict, List, Sequence, Tuple

logger = logging.getLogger(__name__)


class SequenceAllocator:
    """
    Hands out strictly increasing, contiguous sequence numbers from `base`.

    Allocation never looks at submission outcomes: a rejected request still
    consumes its number.
    """

    def __init__(self, base: int):
        if base < 0:
            raise ValueError(f"Starting sequence must be >= 0, got {base}")
        self._base = base
        self._next = base
        self._lock = threading.Lock()

    @classmethod
    async def from_target(cls, target, sender: Any = None) -> "SequenceAllocator":
        """Fetch the starting sequence once from the target system."""
        base = await target.get_starting_sequence(sender)
        logger.info("Starting sequence for %s: %d", sender or "default sender", base)
        return cls(base)

    def base(self) -> int:
        return self._base

    def next(self, n: int = 1) -> List[int]:
        """Reserve the next `n` numbers in one atomic step."""
        if n < 0:
            raise ValueError(f"Cannot allocate a negative count ({n})")
        with self._lock:
            start = self._next
            self._next += n
        return list(range(start, start + n))

    @property
    def issued(self) -> int:
        """How many numbers have been handed out so far."""
        with self._lock:
            return self._next - self._base

    @property
    def last(self) -> int:
        """Last issued number, or base - 1 when nothing was issued."""
        with self._lock:
            return self._next - 1


class SenderPool:
    """
    One SequenceAllocator per sender, with requests assigned round-robin.

    Each sender's numbers stay contiguous from its own base; with N senders
    every sender carries 1/N of the paced rate.
    """

    def __init__(self, allocators: Dict[Any, SequenceAllocator]):
        if not allocators:
            raise ValueError("At least one sender is required")
        self._allocators = dict(allocators)
        self._senders = list(self._allocators)
        self._cursor = 0
        self._lock = threading.Lock()

    @classmethod
    async def from_target(cls, target, senders: Sequence[Any]) -> "SenderPool":
        """Fetch each sender's starting sequence once."""
        allocators = {}
        for sender in senders or [None]:
            allocators[sender] = await SequenceAllocator.from_target(target, sender)
        return cls(allocators)

    @property
    def senders(self) -> List[Any]:
        return list(self._senders)

    def allocator(self, sender: Any) -> SequenceAllocator:
        return self._allocators[sender]

    @property
    def primary(self) -> SequenceAllocator:
        return self._allocators[self._senders[0]]

    def next(self, n: int = 1) -> List[Tuple[Any, int]]:
        """Reserve `n` (sender, sequence) pairs, rotating over the senders."""
        if n < 0:
            raise ValueError(f"Cannot allocate a negative count ({n})")
        with self._lock:
            picks = [self._senders[(self._cursor + i) % len(self._senders)] for i in range(n)]
            self._cursor += n
            numbers = {
                sender: iter(self._allocators[sender].next(picks.count(sender)))
                for sender in self._senders
            }
        return [(sender, next(numbers[sender])) for sender in picks]

    @property
    def issued(self) -> int:
        return sum(a.issued for a in self._allocators.values())

    def ranges(self) -> List[Dict[str, Any]]:
        """Per-sender [base, last] ranges of issued numbers."""
        return [
            {
                "sender": sender,
                "base_sequence": allocator.base(),
                "last_sequence": allocator.last,
                "issued": allocator.issued,
            }
            for sender, allocator in self._allocators.items()
        ]
