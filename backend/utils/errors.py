"""Error taxonomy for the codebase time machine.

Validation and lookup errors are raised synchronously to callers. Acquisition
and timeout errors are recorded on the job by the background worker. Partial
extraction and collaborator errors are recovered locally.
"""


class TimeMachineError(Exception):
    """Base class for all time machine errors."""


class ValidationError(TimeMachineError):
    """Request input is missing or unsupported (e.g. repo URL host)."""


class NotFoundError(TimeMachineError):
    """Unknown job or result id."""


class ResultsUnavailableError(NotFoundError):
    """Job exists but has no results (still running, failed, or superseded)."""

    def __init__(self, message: str, status: str | None = None):
        super().__init__(message)
        self.status = status


class InvalidTransitionError(TimeMachineError):
    """A job status write did not match the expected current state."""


# Acquisition causes recorded on failed jobs
CAUSE_NOT_FOUND = "not_found"
CAUSE_NETWORK = "network"
CAUSE_EMPTY = "empty"
CAUSE_TIMEOUT = "timeout"
CAUSE_SUPERSEDED = "superseded"
CAUSE_INTERNAL = "internal"


class AcquisitionError(TimeMachineError):
    """Repository could not be listed or cloned.

    Attributes:
        cause: One of the CAUSE_* constants.
        attempts: Human-readable list of clone strategies that were tried.
    """

    def __init__(self, message: str, cause: str, attempts: list[str] | None = None):
        super().__init__(message)
        self.cause = cause
        self.attempts = list(attempts or [])


class AnalysisTimeoutError(TimeMachineError):
    """Acquisition or history walking exceeded the configured deadline."""

    cause = CAUSE_TIMEOUT


class PartialExtractionError(TimeMachineError):
    """A single commit could not be processed; it is skipped."""

    def __init__(self, commit_hash: str, reason: str):
        super().__init__(f"Failed to process commit {commit_hash}: {reason}")
        self.commit_hash = commit_hash


class CollaboratorError(TimeMachineError):
    """Insight generator failed, timed out, or returned a malformed response.

    Attributes:
        unavailable: True when the generator is not configured or timed out,
            so further calls in the same job are not worth waiting for.
    """

    def __init__(self, message: str, unavailable: bool = False):
        super().__init__(message)
        self.unavailable = unavailable
