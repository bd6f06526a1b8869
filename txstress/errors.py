"""
Error taxonomy for transaction stress runs.

Per-request errors (SubmissionError, ConfirmationTimeout, ConfirmationFailure)
are caught where they happen and tallied into RunCounters. FatalError is the
only class that leaves the Submitter/ConfirmationTracker boundary.
"""

from typing import Any, Optional


class StressTestError(Exception):
    """Base class for every error raised by txstress."""


class ConfigError(StressTestError, ValueError):
    """Invalid load configuration."""


class SubmissionError(StressTestError):
    """
    The target rejected a request synchronously.
    Underpriced, malformed, sequence conflict, insufficient resources...
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ConfirmationTimeout(StressTestError):
    """No terminal signal arrived within the confirmation window."""

    def __init__(self, handle: Any = None, timeout: Optional[float] = None):
        message = "confirmation timed out"
        if handle is not None:
            message = f"confirmation of {handle} timed out"
        if timeout is not None:
            message += f" after {timeout:.3f}s"
        super().__init__(message)
        self.handle = handle
        self.timeout = timeout


class ConfirmationFailure(StressTestError):
    """The target processed the request but marked it unsuccessful."""

    def __init__(self, handle: Any = None, grouping_key: Any = None):
        super().__init__(f"{handle} processed in group {grouping_key} with failed status")
        self.handle = handle
        self.grouping_key = grouping_key


class FatalError(StressTestError):
    """
    The target system could not be reached at all.
    Terminates the run. The engine attaches the partial summary before re-raising.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
        self.summary = None
