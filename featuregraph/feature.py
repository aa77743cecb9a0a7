"""Feature nodes and feature-evidence links.

Features are the nodes of the feature graph: named capabilities inferred from
clusters of evidence. They form a three-level tree (epic → story → task)
whose structure is assigned by the hierarchy builder.

Invariants the storage backends and services maintain:

- only epics may have `parent_id = None`;
- `hierarchy_level` matches `feature_type` (0 epic, 1 story, 2 task);
- following `parent_id` links never returns to the starting feature;
- a `(feature_id, evidence_id)` link exists at most once.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class FeatureStatus(str, Enum):
    """Review status of a feature."""

    CANDIDATE = "candidate"
    """Inferred by the pipeline and awaiting human review."""

    CONFIRMED = "confirmed"
    """Accepted by a reviewer."""

    REJECTED = "rejected"
    """Dismissed by a reviewer."""


class FeatureType(str, Enum):
    """Level of a feature in the epic/story/task hierarchy."""

    EPIC = "epic"
    STORY = "story"
    TASK = "task"


HIERARCHY_LEVELS: dict[FeatureType, int] = {
    FeatureType.EPIC: 0,
    FeatureType.STORY: 1,
    FeatureType.TASK: 2,
}


def hierarchy_level_for(feature_type: FeatureType) -> int:
    """Return the hierarchy level (0, 1 or 2) for a feature type."""
    return HIERARCHY_LEVELS[FeatureType(feature_type)]


class RelationshipType(str, Enum):
    """How a piece of evidence relates to a feature."""

    IMPLEMENTS = "implements"
    SUPPORTS = "supports"
    CONSTRAINS = "constrains"
    EXTENDS = "extends"


class Feature(BaseModel):
    """A named product capability inferred from evidence.

    Features are frozen; use `model_copy(update={...})` to derive a changed
    instance. New features start as candidate epics with no parent.
    """

    model_config = {"frozen": True}

    feature_id: str = Field(description="Unique feature identifier.")
    name: str = Field(min_length=1, description="Short, user-facing feature name.")
    description: str = Field(default="", description="What users can do with this feature.")
    confidence_score: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Oracle confidence in the hypothesis.",
    )
    status: FeatureStatus = Field(default=FeatureStatus.CANDIDATE)
    feature_type: FeatureType = Field(default=FeatureType.EPIC)
    parent_id: str | None = Field(default=None, description="Parent feature, None for epics.")
    hierarchy_level: int = Field(default=0, ge=0, le=2)
    metadata: dict = Field(
        default_factory=dict,
        description="Provenance such as reasoning, merge history and parent-detection confidence.",
    )
    inferred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def level_matches_type(self) -> "Feature":
        if self.hierarchy_level != hierarchy_level_for(self.feature_type):
            raise ValueError(f"hierarchy_level {self.hierarchy_level} does not match feature_type {self.feature_type.value}")
        if self.parent_id is not None and self.parent_id == self.feature_id:
            raise ValueError("A feature cannot be its own parent")
        return self


class FeatureEvidence(BaseModel):
    """Link between a feature and one evidence item."""

    model_config = {"frozen": True}

    feature_id: str
    evidence_id: str
    relationship_type: RelationshipType = RelationshipType.IMPLEMENTS
    strength: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str | None = None
