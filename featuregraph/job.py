"""Processing jobs and the documents they belong to."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Timezone-aware current time used for all job timestamps."""
    return datetime.now(timezone.utc)


class JobType(str, Enum):
    """Unit of work a processing job performs."""

    EXTRACT = "extract"
    EMBED = "embed"
    INFER = "infer"


class JobStatus(str, Enum):
    """Lifecycle status of a processing job.

    Transitions are monotonic (pending → processing → completed | failed)
    except for retries, which move a job from processing back to pending
    while `retry_count` is below `max_retries`.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentStatus(str, Enum):
    """Processing status of an uploaded document."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Document(BaseModel):
    """An uploaded source document.

    Only the status lifecycle matters to the pipeline; file contents are the
    extraction collaborator's concern.
    """

    model_config = {"frozen": True}

    document_id: str
    filename: str
    file_type: str = "unknown"
    status: DocumentStatus = DocumentStatus.UPLOADED
    error_message: str | None = None
    uploaded_at: datetime = Field(default_factory=utc_now)
    processed_at: datetime | None = None


class ProcessingJob(BaseModel):
    """A durable unit of work in the job queue."""

    model_config = {"frozen": True}

    job_id: str
    document_id: str
    job_type: JobType = JobType.EXTRACT
    status: JobStatus = JobStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries
