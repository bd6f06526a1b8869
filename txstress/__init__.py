"""
Transaction throughput stress harness.

Generates a gap-free sequence of requests against a transaction-processing
target at a controlled rate, tracks every accepted request to a terminal
confirmation result and summarises throughput and per-block distribution.
"""

from .config import PRESETS, LoadConfig
from .engine import LoadTestEngine, run_preset
from .errors import (
    ConfigError,
    ConfirmationFailure,
    ConfirmationTimeout,
    FatalError,
    StressTestError,
    SubmissionError,
)
from .models import Accepted, Confirmed, Receipt, Rejected, Request, RunCounters, TimedOut, TrackingError
from .pacing import FixedIntervalController, RoundBasedController, build_controller
from .report import HandleLog
from .sequence import SenderPool, SequenceAllocator
from .simulated import SimulatedTarget
from .stats import RunSummary, aggregate
from .submitter import Submitter
from .target import JsonRpcTarget, TargetSystem
from .tracker import ConfirmationTracker

__version__ = "0.1.0"

__all__ = [
    "Accepted",
    "ConfigError",
    "ConfirmationFailure",
    "ConfirmationTimeout",
    "ConfirmationTracker",
    "Confirmed",
    "FatalError",
    "FixedIntervalController",
    "HandleLog",
    "JsonRpcTarget",
    "LoadConfig",
    "LoadTestEngine",
    "PRESETS",
    "Receipt",
    "Rejected",
    "Request",
    "RoundBasedController",
    "RunCounters",
    "RunSummary",
    "SenderPool",
    "SequenceAllocator",
    "SimulatedTarget",
    "StressTestError",
    "SubmissionError",
    "Submitter",
    "TargetSystem",
    "TimedOut",
    "TrackingError",
    "aggregate",
    "build_controller",
    "run_preset",
]
