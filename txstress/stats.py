"""
Summary statistics for a finished run.

`aggregate()` is a pure function of the counters and the phase timings; it
never mutates its inputs. The error log is passed through unmodified.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Hashable, List, Optional, Sequence

from .models import RunCounters
from .pacing import RoundRecord


@dataclass
class GroupStats:
    """Distribution of confirmations over grouping keys (blocks)."""
    groups: int = 0
    avg_per_group: float = 0
    max_per_group: int = 0
    avg_group_time: float = 0
    theoretical_max_throughput: float = 0

    @classmethod
    def from_histogram(cls, histogram: Dict[Hashable, int], sending_duration: float) -> "GroupStats":
        if not histogram:
            return cls()
        counts = list(histogram.values())
        groups = len(counts)
        max_per_group = max(counts)
        avg_group_time = sending_duration / groups
        return cls(
            groups=groups,
            avg_per_group=sum(counts) / groups,
            max_per_group=max_per_group,
            avg_group_time=avg_group_time,
            theoretical_max_throughput=max_per_group / avg_group_time if avg_group_time > 0 else 0,
        )


@dataclass
class RoundStats:
    """Per-round timings; meaningful for round-based pacing."""
    count: int = 0
    avg_duration: float = 0
    min_duration: float = 0
    max_duration: float = 0
    avg_rate: float = 0

    @classmethod
    def from_records(cls, rounds: Sequence[RoundRecord]) -> "RoundStats":
        if not rounds:
            return cls()
        durations = [r.duration for r in rounds]
        rates = [r.rate for r in rounds]
        return cls(
            count=len(rounds),
            avg_duration=sum(durations) / len(durations),
            min_duration=min(durations),
            max_duration=max(durations),
            avg_rate=sum(rates) / len(rates),
        )


@dataclass
class RunSummary:
    """Flat record handed to the result sink."""
    test_type: str
    total_attempted: int
    total_accepted: int
    total_confirmed: int
    total_rejected: int
    total_timed_out: int
    total_confirm_failed: int
    total_in_flight: int
    throughput_attempted: float
    throughput_confirmed: float
    success_rate: Optional[float]
    per_group_histogram: Dict[Hashable, int]
    timestamp: str
    sending_duration: float = 0
    tracking_duration: float = 0
    total_duration: float = 0
    group_stats: GroupStats = field(default_factory=GroupStats)
    rounds: RoundStats = field(default_factory=RoundStats)
    target_rate: Optional[float] = None
    rate_deviation_percent: Optional[float] = None
    base_sequence: Optional[int] = None
    last_sequence: Optional[int] = None
    sender_ranges: List[Dict[str, Any]] = field(default_factory=list)
    start_group: Optional[int] = None
    end_group: Optional[int] = None
    sample_handles: List[Any] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    errors_dropped: int = 0
    complete: bool = True
    fatal_error: Optional[str] = None

    @property
    def sequences_issued(self) -> int:
        if self.sender_ranges:
            return sum(r["issued"] for r in self.sender_ranges)
        if self.base_sequence is None or self.last_sequence is None:
            return 0
        return self.last_sequence - self.base_sequence + 1

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready dict; histogram keys become strings."""
        data = asdict(self)
        data["per_group_histogram"] = {str(k): v for k, v in _sorted_items(self.per_group_histogram)}
        data["sample_handles"] = [str(h) for h in self.sample_handles]
        for key in ("throughput_attempted", "throughput_confirmed", "sending_duration",
                    "tracking_duration", "total_duration"):
            data[key] = round(data[key], 4)
        if self.success_rate is not None:
            data["success_rate"] = round(self.success_rate, 4)
        return data


def _sorted_items(histogram: Dict[Hashable, int]):
    try:
        return sorted(histogram.items())
    except TypeError:
        return sorted(histogram.items(), key=lambda item: str(item[0]))


def aggregate(
    counters: RunCounters,
    sending_duration: float,
    total_duration: float,
    test_type: str = "custom",
    rounds: Sequence[RoundRecord] = (),
    target_rate: Optional[float] = None,
    base_sequence: Optional[int] = None,
    last_sequence: Optional[int] = None,
    sender_ranges: Sequence[Dict[str, Any]] = (),
    sample_handles: Sequence[Any] = (),
    start_group: Optional[int] = None,
    end_group: Optional[int] = None,
    fatal_error: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> RunSummary:
    """Derive throughput, success rate and grouping statistics from raw counters."""
    snap = counters.snapshot()
    attempted = snap["total_attempted"]
    histogram = dict(_sorted_items(snap["group_counts"]))

    throughput_attempted = attempted / sending_duration if sending_duration > 0 else 0
    throughput_confirmed = snap["total_confirmed"] / total_duration if total_duration > 0 else 0

    deviation = None
    if target_rate:
        deviation = (throughput_attempted - target_rate) / target_rate * 100

    return RunSummary(
        test_type=test_type,
        total_attempted=attempted,
        total_accepted=snap["total_accepted"],
        total_confirmed=snap["total_confirmed"],
        total_rejected=snap["total_rejected"],
        total_timed_out=snap["total_timed_out"],
        total_confirm_failed=snap["total_confirm_failed"],
        total_in_flight=snap["total_in_flight"],
        throughput_attempted=throughput_attempted,
        throughput_confirmed=throughput_confirmed,
        success_rate=snap["total_accepted"] / attempted if attempted > 0 else None,
        per_group_histogram=histogram,
        timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
        sending_duration=sending_duration,
        tracking_duration=max(total_duration - sending_duration, 0.0),
        total_duration=total_duration,
        group_stats=GroupStats.from_histogram(histogram, sending_duration),
        rounds=RoundStats.from_records(rounds),
        target_rate=target_rate,
        rate_deviation_percent=deviation,
        base_sequence=base_sequence,
        last_sequence=last_sequence,
        sender_ranges=[dict(r) for r in sender_ranges],
        start_group=start_group,
        end_group=end_group,
        sample_handles=list(sample_handles),
        errors=snap["errors"],
        errors_dropped=snap["errors_dropped"],
        complete=fatal_error is None,
        fatal_error=fatal_error,
    )
