"""In-memory storage implementations for testing and development.

This module provides dictionary-based implementations of the storage interfaces
that keep all data in memory. These implementations are suitable for:

- **Unit testing**: Fast, isolated tests without a database
- **Development**: Quick iteration on the pipeline services
- **Small datasets**: Demos with a handful of documents

State is guarded by an `asyncio.Lock`, so concurrent coroutines in one event
loop see atomic claims and transactions. Nothing is shared across processes;
use the SQL backend for that.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from featuregraph.evidence import Evidence
from featuregraph.feature import Feature, FeatureEvidence, FeatureStatus, FeatureType
from featuregraph.job import Document, JobStatus, JobType, ProcessingJob
from featuregraph.plan import HierarchyPlan
from featuregraph.storage.interfaces import (
    EvidenceStorageInterface,
    FeatureStorageInterface,
    JobStorageInterface,
)
from featuregraph.storage.merging import merged_keeper_fields


class InMemoryEvidenceStorage(EvidenceStorageInterface):
    """In-memory evidence storage keyed by evidence_id."""

    def __init__(self) -> None:
        self._evidence: dict[str, Evidence] = {}

    async def add(self, evidence: Evidence) -> str:
        self._evidence[evidence.evidence_id] = evidence
        return evidence.evidence_id

    async def add_batch(self, evidence: Sequence[Evidence]) -> int:
        for item in evidence:
            self._evidence[item.evidence_id] = item
        return len(evidence)

    async def get(self, evidence_id: str) -> Evidence | None:
        return self._evidence.get(evidence_id)

    async def get_batch(self, evidence_ids: Sequence[str]) -> list[Evidence | None]:
        return [self._evidence.get(eid) for eid in evidence_ids]

    async def list_with_embeddings(self) -> list[Evidence]:
        items = [e for e in self._evidence.values() if e.embedding is not None and not e.obsolete]
        return sorted(items, key=lambda e: e.evidence_id)

    async def list_missing_embeddings(self, limit: int | None = None) -> list[Evidence]:
        items = sorted(
            (e for e in self._evidence.values() if e.embedding is None and not e.obsolete),
            key=lambda e: e.evidence_id,
        )
        return items if limit is None else items[:limit]

    async def set_embeddings(self, embeddings: Mapping[str, Sequence[float]]) -> int:
        updated = 0
        for evidence_id, vector in embeddings.items():
            existing = self._evidence.get(evidence_id)
            if existing is None:
                continue
            self._evidence[evidence_id] = existing.model_copy(update={"embedding": tuple(float(x) for x in vector)})
            updated += 1
        return updated

    async def mark_document_obsolete(self, document_id: str) -> int:
        marked = 0
        for evidence_id, item in list(self._evidence.items()):
            if item.document_id == document_id and not item.obsolete:
                self._evidence[evidence_id] = item.model_copy(update={"obsolete": True})
                marked += 1
        return marked

    async def count(self) -> int:
        return len(self._evidence)


class InMemoryFeatureStorage(FeatureStorageInterface):
    """In-memory feature and link storage.

    Multi-step writes (`merge`, `apply_hierarchy`) snapshot both dictionaries
    first and restore them if anything raises, so callers never observe a
    half-applied change.
    """

    def __init__(self) -> None:
        self._features: dict[str, Feature] = {}
        self._links: dict[tuple[str, str], FeatureEvidence] = {}
        self._lock = asyncio.Lock()

    def _snapshot(self) -> tuple[dict, dict]:
        return dict(self._features), dict(self._links)

    def _restore(self, snapshot: tuple[dict, dict]) -> None:
        self._features, self._links = snapshot

    async def add_with_links(self, feature: Feature, links: Sequence[FeatureEvidence]) -> str:
        async with self._lock:
            self._features[feature.feature_id] = feature
            for link in links:
                key = (link.feature_id, link.evidence_id)
                if key not in self._links:
                    self._links[key] = link
        return feature.feature_id

    async def get(self, feature_id: str) -> Feature | None:
        return self._features.get(feature_id)

    async def list_all(
        self,
        status: FeatureStatus | None = None,
        feature_type: FeatureType | None = None,
    ) -> list[Feature]:
        items = [
            f
            for f in self._features.values()
            if (status is None or f.status == status) and (feature_type is None or f.feature_type == feature_type)
        ]
        return sorted(items, key=lambda f: (f.inferred_at, f.feature_id))

    async def get_children(self, parent_id: str) -> list[Feature]:
        children = [f for f in self._features.values() if f.parent_id == parent_id]
        return sorted(children, key=lambda f: (f.name, f.feature_id))

    async def parent_map(self) -> dict[str, str | None]:
        return {fid: f.parent_id for fid, f in self._features.items()}

    async def get_links(self, feature_id: str) -> list[FeatureEvidence]:
        return [link for (fid, _), link in self._links.items() if fid == feature_id]

    async def get_links_for_evidence(self, evidence_id: str) -> list[FeatureEvidence]:
        return [link for (_, eid), link in self._links.items() if eid == evidence_id]

    async def merge(self, keep_id: str, remove_id: str, provenance: Mapping[str, Any]) -> bool:
        async with self._lock:
            keeper = self._features.get(keep_id)
            loser = self._features.get(remove_id)
            if keeper is None or loser is None or keep_id == remove_id:
                return False
            parent_ids = {fid: f.parent_id for fid, f in self._features.items()}
            snapshot = self._snapshot()
            try:
                for key in [k for k in self._links if k[0] == remove_id]:
                    link = self._links.pop(key)
                    new_key = (keep_id, link.evidence_id)
                    if new_key not in self._links:
                        self._links[new_key] = link.model_copy(update={"feature_id": keep_id})
                for child_id, child in list(self._features.items()):
                    if child.parent_id == remove_id and child_id != keep_id:
                        self._features[child_id] = child.model_copy(update={"parent_id": keep_id})
                self._features[keep_id] = keeper.model_copy(update=merged_keeper_fields(keeper, loser, provenance, parent_ids))
                del self._features[remove_id]
            except Exception:
                self._restore(snapshot)
                raise
        return True

    async def apply_hierarchy(self, plan: HierarchyPlan, now: datetime | None = None) -> dict[str, str]:
        stamp = now or datetime.now(timezone.utc)
        async with self._lock:
            snapshot = self._snapshot()
            try:
                created: dict[str, str] = {}
                for pending in plan.pending_epics:
                    if pending.key in created:
                        continue
                    epic = Feature(
                        feature_id=str(uuid.uuid4()),
                        name=pending.name,
                        description=pending.description,
                        confidence_score=0.0,
                        feature_type=FeatureType.EPIC,
                        hierarchy_level=0,
                        metadata={"synthetic": True, "synthesized_at": stamp.isoformat()},
                        inferred_at=stamp,
                    )
                    self._features[epic.feature_id] = epic
                    created[pending.key] = epic.feature_id

                updates, _ = plan.resolve_updates(created, now=stamp)
                for update in updates:
                    feature = self._features.get(update.feature_id)
                    if feature is None:
                        continue
                    self._features[update.feature_id] = Feature.model_validate(
                        {
                            **feature.model_dump(),
                            "feature_type": update.feature_type,
                            "hierarchy_level": update.hierarchy_level,
                            "parent_id": update.parent_id,
                            "metadata": {**feature.metadata, **update.metadata_patch},
                        }
                    )
            except Exception:
                self._restore(snapshot)
                raise
        return created

    async def count(self) -> int:
        return len(self._features)


class InMemoryJobStorage(JobStorageInterface):
    """In-memory job and document storage.

    `claim_next_pending` holds the lock across select-and-update, so concurrent
    claimers in the same event loop never receive the same job.
    """

    def __init__(self) -> None:
        self._documents: dict[str, Document] = {}
        self._jobs: dict[str, ProcessingJob] = {}
        self._lock = asyncio.Lock()

    async def add_document(self, document: Document) -> str:
        self._documents[document.document_id] = document
        return document.document_id

    async def get_document(self, document_id: str) -> Document | None:
        return self._documents.get(document_id)

    async def update_document(self, document_id: str, **fields: Any) -> Document | None:
        document = self._documents.get(document_id)
        if document is None:
            return None
        allowed = {"status", "error_message", "processed_at"}
        updated = document.model_copy(update={k: v for k, v in fields.items() if k in allowed})
        self._documents[document_id] = updated
        return updated

    async def create_job(self, document_id: str, job_type: JobType, max_retries: int) -> ProcessingJob:
        job = ProcessingJob(
            job_id=uuid.uuid4().hex,
            document_id=document_id,
            job_type=job_type,
            max_retries=max_retries,
        )
        async with self._lock:
            self._jobs[job.job_id] = job
        return job

    async def get_job(self, job_id: str) -> ProcessingJob | None:
        return self._jobs.get(job_id)

    async def claim_next_pending(self, now: datetime) -> ProcessingJob | None:
        async with self._lock:
            pending = [j for j in self._jobs.values() if j.status == JobStatus.PENDING]
            if not pending:
                return None
            oldest = min(pending, key=lambda j: (j.created_at, j.job_id))
            claimed = oldest.model_copy(update={"status": JobStatus.PROCESSING, "started_at": now})
            self._jobs[claimed.job_id] = claimed
            return claimed

    async def update_job(self, job_id: str, **fields: Any) -> ProcessingJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            allowed = {"status", "retry_count", "error_message", "started_at", "completed_at"}
            updated = job.model_copy(update={k: v for k, v in fields.items() if k in allowed})
            self._jobs[job_id] = updated
            return updated

    async def reset_processing_jobs(self) -> int:
        async with self._lock:
            reset = 0
            for job_id, job in list(self._jobs.items()):
                if job.status == JobStatus.PROCESSING:
                    self._jobs[job_id] = job.model_copy(update={"status": JobStatus.PENDING, "started_at": None})
                    reset += 1
            return reset

    async def count_jobs_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[JobStatus(job.status).value] += 1
        return counts

