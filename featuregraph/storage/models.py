"""
SQLModel tables for the SQL storage backend.

Rows mirror the frozen domain models one-to-one; `featuregraph.storage.sql`
converts between them. Structured fields (embeddings, metadata, raw extractor
payloads) are stored as JSON columns so SQLite and PostgreSQL share one schema.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class DocumentRow(SQLModel, table=True):
    """An uploaded document and its processing status."""

    __tablename__ = "documents"

    id: str = Field(primary_key=True)
    filename: str = Field()
    file_type: str = Field(default="unknown")
    status: str = Field(default="uploaded", index=True, description="uploaded | processing | completed | failed")
    error_message: Optional[str] = Field(default=None)
    uploaded_at: datetime = Field()
    processed_at: Optional[datetime] = Field(default=None)


class ProcessingJobRow(SQLModel, table=True):
    """A durable queue entry (pending, processing, completed, or failed)."""

    __tablename__ = "processing_jobs"

    id: str = Field(primary_key=True, description="UUID string for the job")
    document_id: str = Field(index=True)
    job_type: str = Field(default="extract")
    status: str = Field(default="pending", index=True, description="pending | processing | completed | failed")
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(index=True, description="When the job was created; claim order")
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)


class EvidenceRow(SQLModel, table=True):
    """One extracted fact."""

    __tablename__ = "evidence"

    id: str = Field(primary_key=True)
    document_id: str = Field(index=True)
    evidence_type: str = Field()
    content: str = Field()
    embedding: Optional[list[float]] = Field(default=None, sa_column=Column(JSON(none_as_null=True), nullable=True))
    obsolete: bool = Field(default=False, index=True)
    raw_data: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    extracted_at: datetime = Field()


class FeatureRow(SQLModel, table=True):
    """An inferred feature node."""

    __tablename__ = "features"

    id: str = Field(primary_key=True)
    name: str = Field(index=True)
    description: str = Field(default="")
    confidence_score: float = Field(default=0.0)
    status: str = Field(default="candidate", index=True)
    feature_type: str = Field(default="epic", index=True)
    parent_id: Optional[str] = Field(default=None, index=True)
    hierarchy_level: int = Field(default=0)
    feature_metadata: dict = Field(default_factory=dict, sa_column=Column("metadata", JSON, nullable=False))
    inferred_at: datetime = Field(index=True)


class FeatureEvidenceRow(SQLModel, table=True):
    """A feature-evidence link; at most one per pair."""

    __tablename__ = "feature_evidence"
    __table_args__ = (UniqueConstraint("feature_id", "evidence_id", name="uq_feature_evidence"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    feature_id: str = Field(index=True)
    evidence_id: str = Field(index=True)
    relationship_type: str = Field(default="implements")
    strength: float = Field(default=0.5)
    reasoning: Optional[str] = Field(default=None)
