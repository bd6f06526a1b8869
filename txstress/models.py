"""
Data model for a single stress run: requests, outcomes, confirmation results
and the shared RunCounters accumulator.
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, List, Optional, Union


# =============================================================================
# REQUESTS & OUTCOMES
# =============================================================================

@dataclass(frozen=True)
class Request:
    """One unit of work. Immutable once created."""
    sequence: int
    destination: Any
    payload: Any
    sender: Any = None
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Accepted:
    request: Request
    handle: Hashable
    dispatched_at: float

    accepted = True


@dataclass(frozen=True)
class Rejected:
    request: Request
    reason: str
    dispatched_at: float

    accepted = False


SubmissionOutcome = Union[Accepted, Rejected]


@dataclass(frozen=True)
class Receipt:
    """What the target reports once a request has been processed."""
    grouping_key: Hashable
    status_ok: bool = True


@dataclass(frozen=True)
class Confirmed:
    handle: Hashable
    grouping_key: Hashable
    confirmed_at: float
    status_ok: bool = True


@dataclass(frozen=True)
class TimedOut:
    handle: Hashable
    timeout: float


@dataclass(frozen=True)
class TrackingError:
    handle: Hashable
    reason: str


ConfirmationResult = Union[Confirmed, TimedOut, TrackingError]


# =============================================================================
# RUN COUNTERS
# =============================================================================

class RunCounters:
    """
    Accumulator for one run, shared by Submitter and ConfirmationTracker.

    Every mutation goes through a method holding the lock. The error log keeps
    only the first `error_log_limit` entries; later ones are counted in
    `errors_dropped`.
    """

    def __init__(self, error_log_limit: int = 100):
        self.error_log_limit = error_log_limit
        self.total_attempted = 0
        self.total_accepted = 0
        self.total_rejected = 0
        self.total_confirmed = 0
        self.total_confirm_failed = 0
        self.total_timed_out = 0
        self.errors: List[Dict[str, Any]] = []
        self.errors_dropped = 0
        self.group_counts: Dict[Hashable, int] = defaultdict(int)
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Submission side
    # -------------------------------------------------------------------------
    def record_attempt(self):
        with self._lock:
            self.total_attempted += 1

    def record_accepted(self):
        with self._lock:
            self.total_accepted += 1

    def record_rejected(self, sequence: int, reason: str, sender: Any = None):
        entry = {"sequence": sequence, "stage": "submit", "error": reason}
        if sender is not None:
            entry["sender"] = sender
        with self._lock:
            self.total_rejected += 1
            self._log_error(entry)

    # -------------------------------------------------------------------------
    # Confirmation side
    # -------------------------------------------------------------------------
    def record_confirmed(self, grouping_key: Hashable):
        with self._lock:
            self.total_confirmed += 1
            self.group_counts[grouping_key] += 1

    def record_confirm_failed(self, handle: Hashable, reason: str):
        with self._lock:
            self.total_confirm_failed += 1
            self._log_error({"handle": str(handle), "stage": "confirm", "error": reason})

    def record_timed_out(self, handle: Hashable):
        with self._lock:
            self.total_timed_out += 1

    def _log_error(self, entry: Dict[str, Any]):
        if len(self.errors) < self.error_log_limit:
            self.errors.append(entry)
        else:
            self.errors_dropped += 1

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------
    @property
    def total_terminal(self) -> int:
        """Accepted requests that reached a terminal confirmation result."""
        return self.total_confirmed + self.total_confirm_failed + self.total_timed_out

    @property
    def in_flight(self) -> int:
        return self.total_accepted - self.total_terminal

    @property
    def unresolved_submissions(self) -> int:
        return self.total_attempted - self.total_accepted - self.total_rejected

    def snapshot(self) -> Dict[str, Any]:
        """Consistent copy of every counter, for display and aggregation."""
        with self._lock:
            return {
                "total_attempted": self.total_attempted,
                "total_accepted": self.total_accepted,
                "total_rejected": self.total_rejected,
                "total_confirmed": self.total_confirmed,
                "total_confirm_failed": self.total_confirm_failed,
                "total_timed_out": self.total_timed_out,
                "total_in_flight": self.total_accepted - (
                    self.total_confirmed + self.total_confirm_failed + self.total_timed_out
                ),
                "group_counts": dict(self.group_counts),
                "errors": list(self.errors),
                "errors_dropped": self.errors_dropped,
            }

    def __repr__(self) -> str:
        return (
            f"RunCounters(attempted={self.total_attempted}, accepted={self.total_accepted}, "
            f"rejected={self.total_rejected}, confirmed={self.total_confirmed}, "
            f"confirm_failed={self.total_confirm_failed}, timed_out={self.total_timed_out})"
        )


def truncate(reason: Optional[str], limit: int = 100) -> str:
    """Error text as stored in the error log."""
    text = str(reason) if reason is not None else ""
    return text[:limit]
