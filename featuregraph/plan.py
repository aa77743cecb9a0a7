"""Hierarchy plan: the call-scoped context passed from the builder to storage.

The hierarchy builder never stages pending inserts on itself. It assembles a
`HierarchyPlan` (classifications, parent assignments, epics to create) and
hands it to `FeatureStorageInterface.apply_hierarchy`, which inserts the new
epics inside one transaction and then writes the updates returned by
`HierarchyPlan.resolve_updates`.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from featuregraph.feature import FeatureType, hierarchy_level_for

PENDING_PREFIX = "__pending__:"


def pending_key(epic_name: str) -> str:
    """Placeholder parent id for an epic that does not exist yet."""
    return f"{PENDING_PREFIX}{epic_name}"


class FeatureClassification(BaseModel, frozen=True):
    """Type decided for one feature, with the evidence for the decision."""

    feature_id: str
    feature_name: str
    feature_type: FeatureType
    reasoning: str = ""
    indicators: tuple[str, ...] = ()
    source: str = Field(default="oracle", description="'oracle' or 'heuristic'.")


class ParentAssignment(BaseModel, frozen=True):
    """Proposed parent for a child feature.

    `parent_id` is either a real feature id or a `pending_key(...)` marker.
    """

    child_id: str
    parent_id: str
    confidence: float = Field(ge=0.0, le=1.0)


class PendingEpic(BaseModel, frozen=True):
    """An epic proposed by the oracle that must be created during apply."""

    name: str
    description: str = ""

    @property
    def key(self) -> str:
        return pending_key(self.name)


class FeatureUpdate(BaseModel, frozen=True):
    """The single write applied to one feature: type, level and parent together."""

    feature_id: str
    feature_type: FeatureType
    hierarchy_level: int
    parent_id: str | None = None
    metadata_patch: dict = Field(default_factory=dict)


class HierarchyPlan(BaseModel, frozen=True):
    """Everything apply_hierarchy needs, computed before any write happens."""

    classifications: tuple[FeatureClassification, ...] = ()
    assignments: tuple[ParentAssignment, ...] = ()
    pending_epics: tuple[PendingEpic, ...] = ()

    def resolve_updates(self, created_ids: dict[str, str], now: datetime | None = None) -> tuple[list[FeatureUpdate], int]:
        """Turn the plan into per-feature updates once pending epics have ids.

        Args:
            created_ids: Map from `PendingEpic.key` to the id it was inserted as.
            now: Timestamp recorded as `parent_detected_at`.

        Returns:
            (updates, relationships) where relationships counts features that
            received a parent. Stories and tasks left without a resolvable
            parent are promoted to epic.
        """
        stamp = (now or datetime.now(timezone.utc)).isoformat()
        child_to_parent: dict[str, ParentAssignment] = {}
        for assignment in self.assignments:
            parent_id = assignment.parent_id
            if parent_id.startswith(PENDING_PREFIX):
                resolved = created_ids.get(parent_id)
                if resolved is None:
                    continue
                assignment = assignment.model_copy(update={"parent_id": resolved})
            if assignment.parent_id == assignment.child_id:
                continue
            child_to_parent[assignment.child_id] = assignment

        updates: list[FeatureUpdate] = []
        relationships = 0
        for classification in self.classifications:
            effective = classification.feature_type
            parent = child_to_parent.get(classification.feature_id)
            if effective == FeatureType.EPIC:
                parent = None
            elif parent is None:
                effective = FeatureType.EPIC

            patch: dict = {}
            if parent is not None:
                relationships += 1
                patch = {
                    "parent_detected_confidence": parent.confidence,
                    "parent_detected_at": stamp,
                }
            if classification.feature_type != effective:
                patch["promoted_from"] = classification.feature_type.value
            updates.append(
                FeatureUpdate(
                    feature_id=classification.feature_id,
                    feature_type=effective,
                    hierarchy_level=hierarchy_level_for(effective),
                    parent_id=parent.parent_id if parent is not None else None,
                    metadata_patch=patch,
                )
            )
        return updates, relationships
