import pytest

from txstress.errors import FatalError
from txstress.models import Accepted, Rejected, RunCounters
from txstress.pacing import Window
from txstress.sequence import SequenceAllocator
from txstress.simulated import SimulatedTarget
from txstress.submitter import SAMPLE_HANDLES, Submitter


class BrokenTarget(SimulatedTarget):
    """Raises an unexpected error for one sequence number."""

    def __init__(self, broken_sequence, **kwargs):
        super().__init__(**kwargs)
        self.broken_sequence = broken_sequence

    async def submit(self, request, resource_limit=0, pricing=None):
        if request.sequence == self.broken_sequence:
            self.received.append(request)
            raise RuntimeError("boom")
        return await super().submit(request, resource_limit, pricing)


def make_submitter(target, counters, base=0, **kwargs):
    return Submitter(target, SequenceAllocator(base), counters, **kwargs)


@pytest.mark.asyncio
async def test_accepted_outcome(counters):
    target = SimulatedTarget()
    seen = []
    submitter = make_submitter(target, counters, base=3, on_accepted=seen.append)

    outcomes = await submitter.dispatch(Window(index=0, size=2))

    assert all(isinstance(o, Accepted) for o in outcomes)
    assert [o.request.sequence for o in outcomes] == [3, 4]
    assert seen == outcomes
    assert counters.total_attempted == 2
    assert counters.total_accepted == 2
    assert submitter.sample_handles == [o.handle for o in outcomes]


@pytest.mark.asyncio
async def test_rejection_consumes_sequence_without_retry(counters):
    target = SimulatedTarget(reject=lambda seq: "nonce too low" if seq == 1 else None)
    submitter = make_submitter(target, counters)

    outcomes = await submitter.dispatch(Window(index=0, size=3))

    rejected = [o for o in outcomes if isinstance(o, Rejected)]
    assert len(rejected) == 1
    assert rejected[0].request.sequence == 1
    assert rejected[0].reason == "nonce too low"
    assert target.received_sequences.count(1) == 1
    assert counters.errors == [{"sequence": 1, "stage": "submit", "error": "nonce too low"}]
    # next window continues after the rejected number
    outcomes = await submitter.dispatch(Window(index=1, size=1))
    assert outcomes[0].request.sequence == 3


@pytest.mark.asyncio
async def test_unexpected_error_is_a_rejection(counters):
    submitter = make_submitter(BrokenTarget(broken_sequence=0), counters)

    outcomes = await submitter.dispatch(Window(index=0, size=2))

    assert isinstance(outcomes[0], Rejected)
    assert outcomes[0].reason == "RuntimeError: boom"
    assert isinstance(outcomes[1], Accepted)


@pytest.mark.asyncio
async def test_reason_truncated_and_error_log_bounded():
    counters = RunCounters(error_log_limit=3)
    target = SimulatedTarget(reject=lambda seq: "x" * 300)
    submitter = make_submitter(target, counters, error_truncate=100)

    await submitter.dispatch(Window(index=0, size=5))

    assert counters.total_rejected == 5
    assert len(counters.errors) == 3
    assert counters.errors_dropped == 2
    assert all(len(entry["error"]) == 100 for entry in counters.errors)


@pytest.mark.asyncio
async def test_fatal_error_raised_after_window_resolves(counters):
    target = SimulatedTarget(fatal_after=3)
    submitter = make_submitter(target, counters)

    with pytest.raises(FatalError):
        await submitter.dispatch(Window(index=0, size=5))

    assert counters.total_attempted == 5
    assert counters.total_accepted == 3
    assert counters.total_rejected == 2
    assert counters.unresolved_submissions == 0
    assert all(e["error"].startswith("fatal:") for e in counters.errors)


@pytest.mark.asyncio
async def test_destinations_rotate(counters):
    submitter = make_submitter(SimulatedTarget(), counters, base=10, destinations=["a", "b", "c"])

    outcomes = await submitter.dispatch(Window(index=0, size=4))

    assert [o.request.destination for o in outcomes] == ["a", "b", "c", "a"]


@pytest.mark.asyncio
async def test_grouped_window_keeps_order(counters):
    submitter = make_submitter(SimulatedTarget(), counters)

    outcomes = await submitter.dispatch(Window(index=0, size=10, groups=3))

    assert [o.request.sequence for o in outcomes] == list(range(10))


@pytest.mark.asyncio
async def test_sample_handles_capped(counters):
    submitter = make_submitter(SimulatedTarget(), counters)

    await submitter.dispatch(Window(index=0, size=SAMPLE_HANDLES + 5))

    assert len(submitter.sample_handles) == SAMPLE_HANDLES


@pytest.mark.asyncio
async def test_random_rejections_keep_sequences_gap_free(counters):
    target = SimulatedTarget(starting_sequence=50, reject_probability=0.3, seed=7)
    submitter = make_submitter(target, counters, base=50)

    for index, size in enumerate([1, 7, 20, 50, 2, 120]):
        await submitter.dispatch(Window(index=index, size=size, groups=2))

    assert sorted(target.received_sequences) == list(range(50, 250))
    assert counters.total_attempted == 200
    assert counters.total_accepted + counters.total_rejected == 200
    assert counters.total_rejected == len(target.rejected)
    assert counters.total_rejected > 0
