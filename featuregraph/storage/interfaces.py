"""Storage interface definitions for the feature graph."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Mapping, Sequence

from featuregraph.evidence import Evidence
from featuregraph.feature import Feature, FeatureEvidence, FeatureStatus, FeatureType
from featuregraph.job import Document, JobType, ProcessingJob
from featuregraph.plan import HierarchyPlan


class EvidenceStorageInterface(ABC):
    """Abstract interface for evidence storage operations."""

    @abstractmethod
    async def add(self, evidence: Evidence) -> str:
        """Store an evidence item and return its ID."""

    @abstractmethod
    async def add_batch(self, evidence: Sequence[Evidence]) -> int:
        """Store several evidence items; return how many were stored."""

    @abstractmethod
    async def get(self, evidence_id: str) -> Evidence | None:
        """Retrieve an evidence item by ID, or None if not found."""

    @abstractmethod
    async def get_batch(self, evidence_ids: Sequence[str]) -> list[Evidence | None]:
        """Retrieve multiple evidence items.

        Returns a list in the same order as input IDs, with None for missing items.
        """

    @abstractmethod
    async def list_with_embeddings(self) -> list[Evidence]:
        """Return non-obsolete evidence that has an embedding, sorted by ID."""

    @abstractmethod
    async def list_missing_embeddings(self, limit: int | None = None) -> list[Evidence]:
        """Return non-obsolete evidence without an embedding, sorted by ID."""

    @abstractmethod
    async def set_embeddings(self, embeddings: Mapping[str, Sequence[float]]) -> int:
        """Attach embeddings by evidence ID; return how many rows were updated."""

    @abstractmethod
    async def mark_document_obsolete(self, document_id: str) -> int:
        """Flag all current evidence of a document as obsolete; return the count."""

    @abstractmethod
    async def count(self) -> int:
        """Return total number of stored evidence items."""


class FeatureStorageInterface(ABC):
    """Abstract interface for features and feature-evidence links.

    `merge` and `apply_hierarchy` each run as a single all-or-nothing
    transaction; a failure leaves storage exactly as it was.
    """

    @abstractmethod
    async def add_with_links(self, feature: Feature, links: Sequence[FeatureEvidence]) -> str:
        """Store a new feature together with its evidence links.

        Links whose (feature_id, evidence_id) pair already exists are skipped.
        """

    @abstractmethod
    async def get(self, feature_id: str) -> Feature | None:
        """Retrieve a feature by ID, or None if not found."""

    @abstractmethod
    async def list_all(
        self,
        status: FeatureStatus | None = None,
        feature_type: FeatureType | None = None,
    ) -> list[Feature]:
        """List features ordered by (inferred_at, feature_id), optionally filtered."""

    @abstractmethod
    async def get_children(self, parent_id: str) -> list[Feature]:
        """Return the direct children of a feature, ordered by name."""

    @abstractmethod
    async def parent_map(self) -> dict[str, str | None]:
        """Return {feature_id: parent_id} for every feature in one read."""

    @abstractmethod
    async def get_links(self, feature_id: str) -> list[FeatureEvidence]:
        """Return the evidence links of a feature."""

    @abstractmethod
    async def get_links_for_evidence(self, evidence_id: str) -> list[FeatureEvidence]:
        """Return all links that point at an evidence item."""

    @abstractmethod
    async def merge(self, keep_id: str, remove_id: str, provenance: Mapping[str, Any]) -> bool:
        """Merge `remove_id` into `keep_id` in one transaction.

        Re-points the loser's evidence links to the keeper (skipping pairs the
        keeper already has), deletes the loser and its remaining links, and
        appends `provenance` values to the keeper's metadata lists.
        Returns False if either feature is missing.
        """

    @abstractmethod
    async def apply_hierarchy(self, plan: HierarchyPlan, now: datetime | None = None) -> dict[str, str]:
        """Apply a hierarchy plan in one transaction.

        Inserts the plan's pending epics first, then writes type, level and
        parent for every classified feature. Returns {pending_key: new_id}.
        """

    @abstractmethod
    async def count(self) -> int:
        """Return total number of stored features."""


class JobStorageInterface(ABC):
    """Abstract interface for processing jobs and document status."""

    @abstractmethod
    async def add_document(self, document: Document) -> str:
        """Store a document record and return its ID."""

    @abstractmethod
    async def get_document(self, document_id: str) -> Document | None:
        """Retrieve a document by ID, or None if not found."""

    @abstractmethod
    async def update_document(self, document_id: str, **fields: Any) -> Document | None:
        """Update a document's status fields; return it, or None if not found."""

    @abstractmethod
    async def create_job(self, document_id: str, job_type: JobType, max_retries: int) -> ProcessingJob:
        """Insert a pending job and return it."""

    @abstractmethod
    async def get_job(self, job_id: str) -> ProcessingJob | None:
        """Retrieve a job by ID, or None if not found."""

    @abstractmethod
    async def claim_next_pending(self, now: datetime) -> ProcessingJob | None:
        """Atomically move the oldest pending job to processing and return it.

        Must be safe against any number of concurrent callers, including
        callers in other processes sharing the same store: a job is returned
        to exactly one caller. Returns None when nothing is pending.
        """

    @abstractmethod
    async def update_job(self, job_id: str, **fields: Any) -> ProcessingJob | None:
        """Update a job; return it, or None if not found."""

    @abstractmethod
    async def reset_processing_jobs(self) -> int:
        """Move every job in processing back to pending; return the count."""

    @abstractmethod
    async def count_jobs_by_status(self) -> dict[str, int]:
        """Return job counts keyed by every JobStatus value."""
