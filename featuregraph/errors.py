"""Exception hierarchy for the feature graph pipeline.

Errors are split by how the job queue and batch services treat them:

- `RetryableError`: transient failures (oracle hiccups, timeouts). The oracle
  scheduler backs off and retries them, and the job queue re-queues the job
  until `max_retries` is exhausted.
- `NonRetryableError`: structural problems (malformed oracle output, missing
  records). Batch services log and skip the affected unit; the job queue
  fails the job immediately.
- `CycleDetectedError`: a parent cycle in the feature tree. Always fatal to the
  hierarchy build and never repaired automatically.
"""


class FeatureGraphError(Exception):
    """Base class for all feature graph errors."""


class RetryableError(FeatureGraphError):
    """A transient failure that may succeed if attempted again."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class OracleTimeoutError(RetryableError):
    """An embedding or inference oracle call exceeded its timeout."""


class JobTimeoutError(RetryableError):
    """A queued job's work function exceeded the queue timeout."""

    def __init__(self, job_id: str, timeout_seconds: float):
        super().__init__(f"Job {job_id} timed out after {timeout_seconds:g}s")
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds


class NonRetryableError(FeatureGraphError):
    """A failure that will not go away on retry."""


class OracleValidationError(NonRetryableError):
    """Oracle output was not valid JSON or did not match the expected schema."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class DocumentNotFoundError(NonRetryableError):
    """Referenced document does not exist."""


class EvidenceNotFoundError(NonRetryableError):
    """Referenced evidence item does not exist."""


class FeatureNotFoundError(NonRetryableError):
    """Referenced feature does not exist."""


class CycleDetectedError(NonRetryableError):
    """Parent links form a cycle; the feature tree is corrupt."""

    def __init__(self, cycles: list[list[str]]):
        super().__init__(f"Circular references found: {len(cycles)} features affected")
        self.cycles = cycles
