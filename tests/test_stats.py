import json

import pytest

from txstress.models import RunCounters
from txstress.pacing import RoundRecord
from txstress.stats import GroupStats, RoundStats, aggregate


def make_counters(attempted=0, accepted=0, rejected=0, confirmed_groups=None, failed=0, timed_out=0):
    counters = RunCounters()
    for _ in range(attempted):
        counters.record_attempt()
    for _ in range(accepted):
        counters.record_accepted()
    for seq in range(rejected):
        counters.record_rejected(seq, "rejected")
    for key, count in (confirmed_groups or {}).items():
        for _ in range(count):
            counters.record_confirmed(key)
    for n in range(failed):
        counters.record_confirm_failed(f"0x{n}", "failed status")
    for n in range(timed_out):
        counters.record_timed_out(f"0x{n}")
    return counters


def test_no_attempts_gives_undefined_success_rate():
    summary = aggregate(RunCounters(), sending_duration=0, total_duration=0)

    assert summary.success_rate is None
    assert summary.throughput_attempted == 0
    assert summary.throughput_confirmed == 0
    assert summary.group_stats.groups == 0
    assert summary.to_dict()["success_rate"] is None


def test_counts_and_rates():
    counters = make_counters(attempted=5, accepted=4, rejected=1, confirmed_groups={3: 2, 4: 1}, timed_out=1)

    summary = aggregate(counters, sending_duration=2.0, total_duration=4.0, test_type="unit")

    assert summary.test_type == "unit"
    assert summary.total_attempted == 5
    assert summary.total_accepted == 4
    assert summary.total_rejected == 1
    assert summary.total_confirmed == 3
    assert summary.total_timed_out == 1
    assert summary.total_in_flight == 0
    assert summary.success_rate == pytest.approx(0.8)
    assert summary.throughput_attempted == pytest.approx(2.5)
    assert summary.throughput_confirmed == pytest.approx(0.75)
    assert summary.tracking_duration == pytest.approx(2.0)
    assert summary.per_group_histogram == {3: 2, 4: 1}
    assert summary.complete


def test_group_statistics():
    stats = GroupStats.from_histogram({1: 10, 2: 30, 3: 20}, sending_duration=6.0)

    assert stats.groups == 3
    assert stats.avg_per_group == pytest.approx(20.0)
    assert stats.max_per_group == 30
    assert stats.avg_group_time == pytest.approx(2.0)
    assert stats.theoretical_max_throughput == pytest.approx(15.0)


def test_round_statistics():
    stats = RoundStats.from_records([
        RoundRecord(index=0, size=10, duration=0.5),
        RoundRecord(index=1, size=10, duration=1.0),
    ])

    assert stats.count == 2
    assert stats.avg_duration == pytest.approx(0.75)
    assert stats.min_duration == pytest.approx(0.5)
    assert stats.max_duration == pytest.approx(1.0)
    assert stats.avg_rate == pytest.approx(15.0)


def test_rate_deviation():
    counters = make_counters(attempted=90, accepted=90)

    summary = aggregate(counters, sending_duration=10.0, total_duration=10.0, target_rate=10)

    assert summary.rate_deviation_percent == pytest.approx(-10.0)


def test_aggregate_does_not_mutate_counters():
    counters = make_counters(attempted=3, accepted=3, confirmed_groups={1: 1})
    before = counters.snapshot()

    summary = aggregate(counters, sending_duration=1.0, total_duration=1.0)
    summary.per_group_histogram[99] = 1
    summary.errors.append({"stage": "x"})

    assert counters.snapshot() == before


def test_fatal_error_marks_summary_incomplete():
    summary = aggregate(RunCounters(), sending_duration=1.0, total_duration=1.0, fatal_error="unreachable")

    assert not summary.complete
    assert summary.fatal_error == "unreachable"


def test_to_dict_is_json_ready():
    counters = make_counters(attempted=3, accepted=3, confirmed_groups={12: 2, 11: 1})

    summary = aggregate(
        counters,
        sending_duration=1.0,
        total_duration=3.0,
        base_sequence=10,
        last_sequence=12,
        sample_handles=["0xa", "0xb"],
        timestamp="2024-01-01T00:00:00+00:00",
    )
    data = json.loads(json.dumps(summary.to_dict()))

    assert data["per_group_histogram"] == {"11": 1, "12": 2}
    assert list(data["per_group_histogram"]) == ["11", "12"]
    assert data["timestamp"] == "2024-01-01T00:00:00+00:00"
    assert data["throughput_confirmed"] == pytest.approx(1.0)
    assert data["group_stats"]["groups"] == 2
    assert data["sample_handles"] == ["0xa", "0xb"]
    assert summary.sequences_issued == 3
    for key in ("test_type", "total_attempted", "total_accepted", "total_confirmed", "total_rejected",
                "total_timed_out", "total_confirm_failed", "throughput_attempted", "success_rate"):
        assert key in data
