"""
SQL implementation of the storage interfaces (SQLite or PostgreSQL).

Every operation opens its own `Session` on a shared engine and runs in a
worker thread via `asyncio.to_thread`, so the async services never block the
event loop on database I/O. Multi-step writes commit once at the end of their
session; an exception leaves the session uncommitted and it rolls back on close.
An in-memory SQLite engine shares one connection, so its stores run one
operation at a time.
"""

import asyncio
import threading
import uuid
import weakref
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence, TypeVar

from sqlalchemy import Engine, func
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, select

from featuregraph.evidence import Evidence, EvidenceType
from featuregraph.feature import Feature, FeatureEvidence, FeatureStatus, FeatureType
from featuregraph.job import Document, DocumentStatus, JobStatus, JobType, ProcessingJob, utc_now
from featuregraph.plan import HierarchyPlan
from featuregraph.storage.interfaces import (
    EvidenceStorageInterface,
    FeatureStorageInterface,
    JobStorageInterface,
)
from featuregraph.storage.merging import merged_keeper_fields
from featuregraph.storage.models import (
    DocumentRow,
    EvidenceRow,
    FeatureEvidenceRow,
    FeatureRow,
    ProcessingJobRow,
)

T = TypeVar("T")


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything here is stored as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _evidence_from_row(row: EvidenceRow) -> Evidence:
    return Evidence(
        evidence_id=row.id,
        document_id=row.document_id,
        evidence_type=EvidenceType(row.evidence_type),
        content=row.content,
        embedding=tuple(row.embedding) if row.embedding is not None else None,
        obsolete=row.obsolete,
        raw_data=dict(row.raw_data or {}),
        extracted_at=_aware(row.extracted_at),
    )


def _feature_from_row(row: FeatureRow) -> Feature:
    return Feature(
        feature_id=row.id,
        name=row.name,
        description=row.description,
        confidence_score=row.confidence_score,
        status=FeatureStatus(row.status),
        feature_type=FeatureType(row.feature_type),
        parent_id=row.parent_id,
        hierarchy_level=row.hierarchy_level,
        metadata=dict(row.feature_metadata or {}),
        inferred_at=_aware(row.inferred_at),
    )


def _feature_to_row(feature: Feature) -> FeatureRow:
    return FeatureRow(
        id=feature.feature_id,
        name=feature.name,
        description=feature.description,
        confidence_score=feature.confidence_score,
        status=feature.status.value,
        feature_type=feature.feature_type.value,
        parent_id=feature.parent_id,
        hierarchy_level=feature.hierarchy_level,
        feature_metadata=feature.model_dump(mode="json")["metadata"],
        inferred_at=feature.inferred_at,
    )


def _link_from_row(row: FeatureEvidenceRow) -> FeatureEvidence:
    return FeatureEvidence(
        feature_id=row.feature_id,
        evidence_id=row.evidence_id,
        relationship_type=row.relationship_type,
        strength=row.strength,
        reasoning=row.reasoning,
    )


def _document_from_row(row: DocumentRow) -> Document:
    return Document(
        document_id=row.id,
        filename=row.filename,
        file_type=row.file_type,
        status=DocumentStatus(row.status),
        error_message=row.error_message,
        uploaded_at=_aware(row.uploaded_at),
        processed_at=_aware(row.processed_at),
    )


def _job_from_row(row: ProcessingJobRow) -> ProcessingJob:
    return ProcessingJob(
        job_id=row.id,
        document_id=row.document_id,
        job_type=JobType(row.job_type),
        status=JobStatus(row.status),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        error_message=row.error_message,
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
    )


def _plain(value: Any) -> Any:
    """Enum members become their values before they reach a column."""
    return getattr(value, "value", value)


# StaticPool engines hand one connection to every thread; calls on them are serialized.
_SHARED_CONNECTION_LOCKS: "weakref.WeakKeyDictionary[Engine, threading.Lock]" = weakref.WeakKeyDictionary()


class _SQLStorageBase:
    def __init__(self, engine: Engine, create_tables: bool = True):
        self.engine = engine
        self._lock: threading.Lock | None = None
        if isinstance(engine.pool, StaticPool):
            self._lock = _SHARED_CONNECTION_LOCKS.setdefault(engine, threading.Lock())
        if create_tables:
            SQLModel.metadata.create_all(self.engine)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        lock = self._lock
        if lock is None:
            return await asyncio.to_thread(fn, *args)

        def _locked() -> T:
            with lock:
                return fn(*args)

        return await asyncio.to_thread(_locked)


class SQLEvidenceStorage(_SQLStorageBase, EvidenceStorageInterface):
    """Evidence stored in the `evidence` table."""

    async def add(self, evidence: Evidence) -> str:
        await self.add_batch([evidence])
        return evidence.evidence_id

    async def add_batch(self, evidence: Sequence[Evidence]) -> int:
        def _add() -> int:
            with Session(self.engine) as session:
                for item in evidence:
                    session.merge(
                        EvidenceRow(
                            id=item.evidence_id,
                            document_id=item.document_id,
                            evidence_type=item.evidence_type.value,
                            content=item.content,
                            embedding=list(item.embedding) if item.embedding is not None else None,
                            obsolete=item.obsolete,
                            raw_data=item.model_dump(mode="json")["raw_data"],
                            extracted_at=item.extracted_at,
                        )
                    )
                session.commit()
            return len(evidence)

        return await self._run(_add)

    async def get(self, evidence_id: str) -> Evidence | None:
        def _get() -> Evidence | None:
            with Session(self.engine) as session:
                row = session.get(EvidenceRow, evidence_id)
                return _evidence_from_row(row) if row is not None else None

        return await self._run(_get)

    async def get_batch(self, evidence_ids: Sequence[str]) -> list[Evidence | None]:
        def _get_batch() -> list[Evidence | None]:
            with Session(self.engine) as session:
                rows = session.exec(select(EvidenceRow).where(EvidenceRow.id.in_(list(evidence_ids)))).all()
                by_id = {row.id: _evidence_from_row(row) for row in rows}
            return [by_id.get(eid) for eid in evidence_ids]

        return await self._run(_get_batch)

    async def list_with_embeddings(self) -> list[Evidence]:
        def _list() -> list[Evidence]:
            with Session(self.engine) as session:
                stmt = (
                    select(EvidenceRow)
                    .where(EvidenceRow.obsolete == False)  # noqa: E712
                    .where(EvidenceRow.embedding.is_not(None))
                    .order_by(EvidenceRow.id)
                )
                rows = session.exec(stmt).all()
                return [_evidence_from_row(row) for row in rows if row.embedding is not None]

        return await self._run(_list)

    async def list_missing_embeddings(self, limit: int | None = None) -> list[Evidence]:
        def _list() -> list[Evidence]:
            with Session(self.engine) as session:
                stmt = select(EvidenceRow).where(EvidenceRow.obsolete == False).order_by(EvidenceRow.id)  # noqa: E712
                rows = [row for row in session.exec(stmt).all() if row.embedding is None]
                items = [_evidence_from_row(row) for row in rows]
            return items if limit is None else items[:limit]

        return await self._run(_list)

    async def set_embeddings(self, embeddings: Mapping[str, Sequence[float]]) -> int:
        def _set() -> int:
            updated = 0
            with Session(self.engine) as session:
                for evidence_id, vector in embeddings.items():
                    row = session.get(EvidenceRow, evidence_id)
                    if row is None:
                        continue
                    row.embedding = [float(x) for x in vector]
                    session.add(row)
                    updated += 1
                session.commit()
            return updated

        return await self._run(_set)

    async def mark_document_obsolete(self, document_id: str) -> int:
        def _mark() -> int:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(EvidenceRow)
                    .where(EvidenceRow.document_id == document_id)
                    .where(EvidenceRow.obsolete == False)  # noqa: E712
                ).all()
                for row in rows:
                    row.obsolete = True
                    session.add(row)
                session.commit()
                return len(rows)

        return await self._run(_mark)

    async def count(self) -> int:
        def _count() -> int:
            with Session(self.engine) as session:
                return session.exec(select(func.count()).select_from(EvidenceRow)).one()

        return await self._run(_count)


class SQLFeatureStorage(_SQLStorageBase, FeatureStorageInterface):
    """Features in `features`, links in `feature_evidence`."""

    async def add_with_links(self, feature: Feature, links: Sequence[FeatureEvidence]) -> str:
        def _add() -> str:
            with Session(self.engine) as session:
                session.merge(_feature_to_row(feature))
                existing = set(
                    session.exec(select(FeatureEvidenceRow.evidence_id).where(FeatureEvidenceRow.feature_id == feature.feature_id)).all()
                )
                for link in links:
                    if link.evidence_id in existing:
                        continue
                    existing.add(link.evidence_id)
                    session.add(
                        FeatureEvidenceRow(
                            feature_id=link.feature_id,
                            evidence_id=link.evidence_id,
                            relationship_type=_plain(link.relationship_type),
                            strength=link.strength,
                            reasoning=link.reasoning,
                        )
                    )
                session.commit()
            return feature.feature_id

        return await self._run(_add)

    async def get(self, feature_id: str) -> Feature | None:
        def _get() -> Feature | None:
            with Session(self.engine) as session:
                row = session.get(FeatureRow, feature_id)
                return _feature_from_row(row) if row is not None else None

        return await self._run(_get)

    async def list_all(
        self,
        status: FeatureStatus | None = None,
        feature_type: FeatureType | None = None,
    ) -> list[Feature]:
        def _list() -> list[Feature]:
            with Session(self.engine) as session:
                stmt = select(FeatureRow)
                if status is not None:
                    stmt = stmt.where(FeatureRow.status == _plain(status))
                if feature_type is not None:
                    stmt = stmt.where(FeatureRow.feature_type == _plain(feature_type))
                stmt = stmt.order_by(FeatureRow.inferred_at, FeatureRow.id)
                return [_feature_from_row(row) for row in session.exec(stmt).all()]

        return await self._run(_list)

    async def get_children(self, parent_id: str) -> list[Feature]:
        def _children() -> list[Feature]:
            with Session(self.engine) as session:
                stmt = select(FeatureRow).where(FeatureRow.parent_id == parent_id).order_by(FeatureRow.name, FeatureRow.id)
                return [_feature_from_row(row) for row in session.exec(stmt).all()]

        return await self._run(_children)

    async def parent_map(self) -> dict[str, str | None]:
        def _parents() -> dict[str, str | None]:
            with Session(self.engine) as session:
                rows = session.exec(select(FeatureRow.id, FeatureRow.parent_id)).all()
                return {fid: parent_id for fid, parent_id in rows}

        return await self._run(_parents)

    async def get_links(self, feature_id: str) -> list[FeatureEvidence]:
        def _links() -> list[FeatureEvidence]:
            with Session(self.engine) as session:
                stmt = select(FeatureEvidenceRow).where(FeatureEvidenceRow.feature_id == feature_id).order_by(FeatureEvidenceRow.id)
                return [_link_from_row(row) for row in session.exec(stmt).all()]

        return await self._run(_links)

    async def get_links_for_evidence(self, evidence_id: str) -> list[FeatureEvidence]:
        def _links() -> list[FeatureEvidence]:
            with Session(self.engine) as session:
                stmt = select(FeatureEvidenceRow).where(FeatureEvidenceRow.evidence_id == evidence_id).order_by(FeatureEvidenceRow.id)
                return [_link_from_row(row) for row in session.exec(stmt).all()]

        return await self._run(_links)

    async def merge(self, keep_id: str, remove_id: str, provenance: Mapping[str, Any]) -> bool:
        def _merge() -> bool:
            if keep_id == remove_id:
                return False
            with Session(self.engine) as session:
                keeper_row = session.get(FeatureRow, keep_id)
                loser_row = session.get(FeatureRow, remove_id)
                if keeper_row is None or loser_row is None:
                    return False
                keeper = _feature_from_row(keeper_row)
                loser = _feature_from_row(loser_row)
                parent_ids = dict(session.execute(sa_select(FeatureRow.id, FeatureRow.parent_id)).tuples().all())

                kept_evidence = set(session.exec(select(FeatureEvidenceRow.evidence_id).where(FeatureEvidenceRow.feature_id == keep_id)).all())
                for link in session.exec(select(FeatureEvidenceRow).where(FeatureEvidenceRow.feature_id == remove_id)).all():
                    if link.evidence_id in kept_evidence:
                        session.delete(link)
                    else:
                        kept_evidence.add(link.evidence_id)
                        link.feature_id = keep_id
                        session.add(link)

                children = session.exec(select(FeatureRow).where(FeatureRow.parent_id == remove_id).where(FeatureRow.id != keep_id)).all()
                for child in children:
                    child.parent_id = keep_id
                    session.add(child)

                updated = keeper.model_copy(update=merged_keeper_fields(keeper, loser, provenance, parent_ids))
                keeper_row.parent_id = updated.parent_id
                keeper_row.feature_type = updated.feature_type.value
                keeper_row.hierarchy_level = updated.hierarchy_level
                keeper_row.feature_metadata = updated.model_dump(mode="json")["metadata"]
                session.add(keeper_row)
                session.delete(loser_row)
                session.commit()
            return True

        return await self._run(_merge)

    async def apply_hierarchy(self, plan: HierarchyPlan, now: datetime | None = None) -> dict[str, str]:
        stamp = now or utc_now()

        def _apply() -> dict[str, str]:
            created: dict[str, str] = {}
            with Session(self.engine) as session:
                for pending in plan.pending_epics:
                    if pending.key in created:
                        continue
                    epic = Feature(
                        feature_id=str(uuid.uuid4()),
                        name=pending.name,
                        description=pending.description,
                        feature_type=FeatureType.EPIC,
                        hierarchy_level=0,
                        metadata={"synthetic": True, "synthesized_at": stamp.isoformat()},
                        inferred_at=stamp,
                    )
                    session.add(_feature_to_row(epic))
                    created[pending.key] = epic.feature_id
                session.flush()

                updates, _ = plan.resolve_updates(created, now=stamp)
                for update in updates:
                    row = session.get(FeatureRow, update.feature_id)
                    if row is None:
                        continue
                    current = _feature_from_row(row)
                    validated = Feature.model_validate(
                        {
                            **current.model_dump(),
                            "feature_type": update.feature_type,
                            "hierarchy_level": update.hierarchy_level,
                            "parent_id": update.parent_id,
                            "metadata": {**current.metadata, **update.metadata_patch},
                        }
                    )
                    row.feature_type = validated.feature_type.value
                    row.hierarchy_level = validated.hierarchy_level
                    row.parent_id = validated.parent_id
                    row.feature_metadata = validated.model_dump(mode="json")["metadata"]
                    session.add(row)
                session.commit()
            return created

        return await self._run(_apply)

    async def count(self) -> int:
        def _count() -> int:
            with Session(self.engine) as session:
                return session.exec(select(func.count()).select_from(FeatureRow)).one()

        return await self._run(_count)


class SQLJobStorage(_SQLStorageBase, JobStorageInterface):
    """Jobs in `processing_jobs`, documents in `documents`."""

    async def add_document(self, document: Document) -> str:
        def _add() -> str:
            with Session(self.engine) as session:
                session.merge(
                    DocumentRow(
                        id=document.document_id,
                        filename=document.filename,
                        file_type=document.file_type,
                        status=document.status.value,
                        error_message=document.error_message,
                        uploaded_at=document.uploaded_at,
                        processed_at=document.processed_at,
                    )
                )
                session.commit()
            return document.document_id

        return await self._run(_add)

    async def get_document(self, document_id: str) -> Document | None:
        def _get() -> Document | None:
            with Session(self.engine) as session:
                row = session.get(DocumentRow, document_id)
                return _document_from_row(row) if row is not None else None

        return await self._run(_get)

    async def update_document(self, document_id: str, **fields: Any) -> Document | None:
        def _update() -> Document | None:
            with Session(self.engine) as session:
                row = session.get(DocumentRow, document_id)
                if row is None:
                    return None
                allowed = {"status", "error_message", "processed_at"}
                for key, value in fields.items():
                    if key in allowed:
                        setattr(row, key, _plain(value))
                session.add(row)
                session.commit()
                session.refresh(row)
                return _document_from_row(row)

        return await self._run(_update)

    async def create_job(self, document_id: str, job_type: JobType, max_retries: int) -> ProcessingJob:
        def _create() -> ProcessingJob:
            with Session(self.engine) as session:
                row = ProcessingJobRow(
                    id=uuid.uuid4().hex,
                    document_id=document_id,
                    job_type=_plain(job_type),
                    status=JobStatus.PENDING.value,
                    max_retries=max_retries,
                    created_at=utc_now(),
                )
                session.add(row)
                session.commit()
                session.refresh(row)
                return _job_from_row(row)

        return await self._run(_create)

    async def get_job(self, job_id: str) -> ProcessingJob | None:
        def _get() -> ProcessingJob | None:
            with Session(self.engine) as session:
                row = session.get(ProcessingJobRow, job_id)
                return _job_from_row(row) if row is not None else None

        return await self._run(_get)

    async def claim_next_pending(self, now: datetime) -> ProcessingJob | None:
        """Claim with a single UPDATE ... WHERE id = (SELECT ... FOR UPDATE SKIP LOCKED).

        PostgreSQL skips rows locked by other claimers; SQLite serialises
        writers on its database lock, and the `status = 'pending'` guard makes
        a lost race update zero rows.
        """

        def _claim() -> ProcessingJob | None:
            oldest = (
                sa_select(ProcessingJobRow.id)
                .where(ProcessingJobRow.status == JobStatus.PENDING.value)
                .order_by(ProcessingJobRow.created_at, ProcessingJobRow.id)
                .limit(1)
                .with_for_update(skip_locked=True)
                .scalar_subquery()
            )
            stmt = (
                sa_update(ProcessingJobRow)
                .where(ProcessingJobRow.id == oldest)
                .where(ProcessingJobRow.status == JobStatus.PENDING.value)
                .values(status=JobStatus.PROCESSING.value, started_at=now)
                .returning(ProcessingJobRow.id)
                .execution_options(synchronize_session=False)
            )
            with Session(self.engine) as session:
                claimed_id = session.execute(stmt).scalar_one_or_none()
                session.commit()
                if claimed_id is None:
                    return None
                row = session.get(ProcessingJobRow, claimed_id)
                return _job_from_row(row) if row is not None else None

        return await self._run(_claim)

    async def update_job(self, job_id: str, **fields: Any) -> ProcessingJob | None:
        def _update() -> ProcessingJob | None:
            with Session(self.engine) as session:
                row = session.get(ProcessingJobRow, job_id)
                if row is None:
                    return None
                allowed = {"status", "retry_count", "error_message", "started_at", "completed_at"}
                for key, value in fields.items():
                    if key in allowed:
                        setattr(row, key, _plain(value))
                session.add(row)
                session.commit()
                session.refresh(row)
                return _job_from_row(row)

        return await self._run(_update)

    async def reset_processing_jobs(self) -> int:
        def _reset() -> int:
            stmt = (
                sa_update(ProcessingJobRow)
                .where(ProcessingJobRow.status == JobStatus.PROCESSING.value)
                .values(status=JobStatus.PENDING.value, started_at=None)
                .execution_options(synchronize_session=False)
            )
            with Session(self.engine) as session:
                result = session.execute(stmt)
                session.commit()
                return result.rowcount or 0

        return await self._run(_reset)

    async def count_jobs_by_status(self) -> dict[str, int]:
        def _counts() -> dict[str, int]:
            counts = {status.value: 0 for status in JobStatus}
            with Session(self.engine) as session:
                rows = session.exec(select(ProcessingJobRow.status, func.count()).group_by(ProcessingJobRow.status)).all()
            for status, count in rows:
                counts[status] = count
            return counts

        return await self._run(_counts)
