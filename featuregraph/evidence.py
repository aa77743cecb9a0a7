"""Evidence records for the feature graph.

Evidence is the atomic unit the inference pipeline consumes: a single fact
extracted from a source document (a UI element seen in a screenshot, an API
endpoint from a spec, a requirement sentence from a PDF, ...).

**Evidence Lifecycle:**

1. **Extraction**: An external extractor turns a document into `Evidence`
   records. This package never parses documents itself.

2. **Embedding**: The similarity index attaches a semantic vector to each
   record so it can be clustered and searched.

3. **Obsolescence**: When a document is reprocessed, its old evidence is
   flagged `obsolete` instead of deleted, so existing feature links stay
   intact. Obsolete evidence is ignored by search and clustering.

Evidence records are immutable (frozen Pydantic models). Storage backends
create updated copies with `model_copy(update={...})`.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class EvidenceType(str, Enum):
    """Kind of fact an evidence item records."""

    UI_ELEMENT = "ui_element"
    FLOW = "flow"
    ENDPOINT = "endpoint"
    PAYLOAD = "payload"
    REQUIREMENT = "requirement"
    EDGE_CASE = "edge_case"
    ACCEPTANCE_CRITERIA = "acceptance_criteria"
    BUG = "bug"
    CONSTRAINT = "constraint"


class Evidence(BaseModel):
    """A single extracted fact, owned by one document.

    Key fields:
        - `evidence_id`: Unique identifier
        - `document_id`: The owning document
        - `evidence_type`: One of the fixed `EvidenceType` values
        - `content`: The text that gets embedded and shown to the oracle
        - `embedding`: Semantic vector, None until computed
        - `obsolete`: Soft-delete flag set on reprocessing
    """

    model_config = {"frozen": True}

    evidence_id: str = Field(description="Unique evidence identifier.")
    document_id: str = Field(description="Identifier of the document this evidence came from.")
    evidence_type: EvidenceType = Field(description="Kind of fact this evidence records.")
    content: str = Field(min_length=1, description="Text content of the evidence.")
    embedding: tuple[float, ...] | None = Field(
        default=None,
        description="Semantic vector embedding, None until computed.",
    )
    obsolete: bool = Field(default=False, description="Soft-delete flag.")
    raw_data: dict = Field(
        default_factory=dict,
        description="Extractor-specific structured payload.",
    )
    extracted_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the evidence was extracted.",
    )

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Evidence content must not be blank")
        return value
