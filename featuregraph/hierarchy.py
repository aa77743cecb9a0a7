"""Epic / story / task hierarchy for inferred features.

`FeatureHierarchyService.build_hierarchy_for_all_features` runs five steps:

1. **Classify** each unplaced feature (default type epic, no parent) as an
   epic, story or task. The oracle decides; when it fails or answers with an
   unknown type, keyword heuristics decide instead.
2. **Synthesize** parents: one oracle call assigns every story to an existing
   epic or to a newly proposed one. If that call fails, each story is judged
   pairwise against each epic and keeps its most confident parent.
3. **Resolve** proposed epics by fuzzy name match against existing epics, so
   "Auth System" reuses "Authentication System" instead of duplicating it.
4. **Apply** the resulting `HierarchyPlan` in one storage transaction. New
   epics are inserted first; stories and tasks left without a parent are
   promoted to epic, so only epics ever have no parent.
5. **Validate** that no parent chain loops back on itself. A cycle raises
   `CycleDetectedError` and is never repaired automatically.
"""

import logging
from datetime import datetime
from typing import Sequence

from pydantic import BaseModel

from featuregraph.config import HierarchyConfig
from featuregraph.errors import CycleDetectedError, FeatureGraphError, FeatureNotFoundError
from featuregraph.feature import Feature, FeatureType
from featuregraph.job import utc_now
from featuregraph.pipeline.llm_client import LLMClientInterface
from featuregraph.pipeline.prompts import (
    build_classification_prompt,
    build_epic_synthesis_prompt,
    build_hierarchy_prompt,
)
from featuregraph.pipeline.scheduler import OracleScheduler
from featuregraph.pipeline.schemas import (
    ClassificationJudgement,
    EpicSynthesis,
    ParentChildJudgement,
    validate_response,
)
from featuregraph.plan import (
    FeatureClassification,
    HierarchyPlan,
    ParentAssignment,
    PendingEpic,
    pending_key,
)
from featuregraph.storage.interfaces import FeatureStorageInterface
from featuregraph.text_similarity import find_best_match, resolve_name

logger = logging.getLogger(__name__)

DOMAIN_KEYWORDS = ("management", "system", "service", "platform", "authentication")
ACTION_VERBS = ("manage", "create", "update", "delete", "view", "search", "filter")
UI_WORDS = ("button", "click", "form")
HIGH_CONFIDENCE = 0.85


class HierarchyCounts(BaseModel):
    """Summary of one hierarchy build."""

    model_config = {"frozen": True}

    classified: int = 0
    relationships: int = 0
    epics: int = 0
    stories: int = 0
    tasks: int = 0
    synthesized_epics: int = 0


class HierarchyTree(BaseModel):
    """A feature with its parent, direct children and ancestors (root first)."""

    model_config = {"frozen": True}

    feature: Feature
    parent: Feature | None = None
    children: tuple[Feature, ...] = ()
    ancestors: tuple[Feature, ...] = ()


def classify_with_heuristics(feature: Feature) -> FeatureClassification:
    """Deterministic fallback classification from the feature's name.

    - a domain keyword, or two or more action verbs: epic
    - at most three words mentioning a UI element: task
    - confidence >= 0.85 with at least three words: epic
    - otherwise: story
    """
    name = feature.name.lower()
    word_count = len(name.split())
    verb_count = sum(1 for verb in ACTION_VERBS if verb in name)
    has_domain_keyword = any(keyword in name for keyword in DOMAIN_KEYWORDS)

    indicators: list[str] = []
    feature_type = FeatureType.STORY
    if has_domain_keyword or verb_count >= 2:
        feature_type = FeatureType.EPIC
        if has_domain_keyword:
            indicators.append("Domain keyword present")
        indicators.append(f"{verb_count} action verbs")
    elif word_count <= 3 and any(word in name for word in UI_WORDS):
        feature_type = FeatureType.TASK
        indicators.append("Very specific UI element")
    elif feature.confidence_score >= HIGH_CONFIDENCE and word_count >= 3:
        feature_type = FeatureType.EPIC
        indicators.append("High confidence + broad scope")

    reasoning = "Heuristic classification based on: " + (", ".join(indicators) or "default story")
    return FeatureClassification(
        feature_id=feature.feature_id,
        feature_name=feature.name,
        feature_type=feature_type,
        reasoning=reasoning,
        indicators=tuple(indicators),
        source="heuristic",
    )


def find_cycles(parent_map: dict[str, str | None], max_depth: int = 10) -> list[list[str]]:
    """Return the parent chains that lead back to their starting feature.

    Each chain starts at a feature and lists the ancestors visited until the
    start reappears. Walks stop after `max_depth` steps.
    """
    cycles: list[list[str]] = []
    for feature_id, parent_id in parent_map.items():
        if parent_id is None:
            continue
        path = [feature_id]
        current: str | None = parent_id
        depth = 0
        while current is not None and depth < max_depth:
            if current == feature_id:
                cycles.append(path + [current])
                break
            path.append(current)
            current = parent_map.get(current)
            depth += 1
    return cycles


class FeatureHierarchyService:
    """Classify features and link them into an epic/story/task tree."""

    def __init__(
        self,
        features: FeatureStorageInterface,
        llm: LLMClientInterface,
        scheduler: OracleScheduler | None = None,
        config: HierarchyConfig | None = None,
    ):
        self.features = features
        self.llm = llm
        self.scheduler = scheduler or OracleScheduler()
        self.config = config or HierarchyConfig()

    async def _ask(self, prompt: str):
        return await self.scheduler.run(self.llm.generate_json, prompt, self.config.temperature)

    async def build_hierarchy_for_all_features(self, now: datetime | None = None) -> HierarchyCounts:
        """Classify, link and validate every unplaced feature.

        Raises:
            CycleDetectedError: If a parent chain loops after the plan is applied.
        """
        unplaced = [f for f in await self.features.list_all(feature_type=FeatureType.EPIC) if f.parent_id is None]
        if not unplaced:
            logger.info("No features to classify")
            await self.validate_no_cycles()
            return HierarchyCounts()

        logger.info("Building hierarchy for %d features", len(unplaced))
        classifications = await self.classify_features(unplaced)
        assignments, pending_epics = await self.synthesize_missing_epics(classifications)

        plan = HierarchyPlan(
            classifications=tuple(classifications),
            assignments=tuple(assignments),
            pending_epics=tuple(pending_epics),
        )
        stamp = now or utc_now()
        created = await self.features.apply_hierarchy(plan, now=stamp)
        updates, relationships = plan.resolve_updates(created, now=stamp)

        await self.validate_no_cycles()

        counts = HierarchyCounts(
            classified=len(classifications),
            relationships=relationships,
            epics=sum(1 for u in updates if u.feature_type == FeatureType.EPIC) + len(created),
            stories=sum(1 for u in updates if u.feature_type == FeatureType.STORY),
            tasks=sum(1 for u in updates if u.feature_type == FeatureType.TASK),
            synthesized_epics=len(created),
        )
        logger.info("Hierarchy built: %s", counts.model_dump())
        return counts

    async def classify_feature(self, feature: Feature) -> FeatureClassification:
        """Classify one feature with the oracle, falling back to heuristics."""
        try:
            raw = await self._ask(build_classification_prompt(feature.name, feature.description))
            judgement = validate_response(ClassificationJudgement, raw)
        except FeatureGraphError as e:
            logger.warning("Classification of '%s' failed, using heuristics: %s", feature.name, e)
            return classify_with_heuristics(feature)
        return FeatureClassification(
            feature_id=feature.feature_id,
            feature_name=feature.name,
            feature_type=judgement.feature_type,
            reasoning=judgement.reasoning,
            indicators=tuple(judgement.indicators),
        )

    async def classify_features(self, features: Sequence[Feature]) -> list[FeatureClassification]:
        classifications = [await self.classify_feature(feature) for feature in features]
        by_type = {t.value: sum(1 for c in classifications if c.feature_type == t) for t in FeatureType}
        logger.info("Classified %d features: %s", len(classifications), by_type)
        return classifications

    async def synthesize_missing_epics(
        self, classifications: Sequence[FeatureClassification]
    ) -> tuple[list[ParentAssignment], list[PendingEpic]]:
        """Assign stories to existing or newly proposed epics.

        Returns (assignments, pending_epics). Assignments to proposed epics
        use `pending_key(name)` as the parent id until the epic is inserted.
        Falls back to pairwise detection if the synthesis call fails.
        """
        epics = [c for c in classifications if c.feature_type == FeatureType.EPIC]
        stories = [c for c in classifications if c.feature_type == FeatureType.STORY]
        if not stories:
            logger.info("No stories found, skipping epic synthesis")
            return [], []

        try:
            raw = await self._ask(build_epic_synthesis_prompt([e.feature_name for e in epics], [s.feature_name for s in stories]))
            synthesis = validate_response(EpicSynthesis, raw)
        except FeatureGraphError as e:
            logger.error("Epic synthesis failed, falling back to pairwise detection: %s", e)
            return await self.detect_parent_child_relationships(classifications), []

        epic_name_to_id = {e.feature_name: e.feature_id for e in epics}
        story_name_to_id = {s.feature_name: s.feature_id for s in stories}
        proposed_name_to_key: dict[str, str] = {}
        pending_epics: list[PendingEpic] = []

        for proposed in synthesis.new_epics:
            existing_id = find_best_match(proposed.name, epic_name_to_id, self.config.epic_match_threshold)
            if existing_id is not None:
                logger.info("Proposed epic '%s' matches existing epic %s, reusing", proposed.name, existing_id)
                epic_name_to_id[proposed.name] = existing_id
                continue
            if resolve_name(proposed.name, proposed_name_to_key) is not None:
                continue
            pending = PendingEpic(name=proposed.name, description=proposed.description)
            pending_epics.append(pending)
            proposed_name_to_key[proposed.name] = pending.key
            logger.info("Queued synthetic epic '%s'", proposed.name)

        assignments: list[ParentAssignment] = []
        for assignment in synthesis.assignments:
            child_id = resolve_name(assignment.story, story_name_to_id)
            parent_id = resolve_name(assignment.parent_epic, epic_name_to_id) or resolve_name(
                assignment.parent_epic, proposed_name_to_key
            )
            if child_id is None or parent_id is None:
                logger.warning("Could not resolve assignment '%s' -> '%s'", assignment.story, assignment.parent_epic)
                continue
            assignments.append(
                ParentAssignment(
                    child_id=child_id,
                    parent_id=parent_id,
                    confidence=self.config.synthesized_assignment_confidence,
                )
            )

        logger.info("Epic synthesis: %d assignments, %d new epics", len(assignments), len(pending_epics))
        return assignments, pending_epics

    async def analyze_hierarchy_relationship(self, candidate_name: str, parent_name: str) -> ParentChildJudgement | None:
        """Pairwise judgement; None if the oracle answer is unusable."""
        try:
            raw = await self._ask(build_hierarchy_prompt(candidate_name, parent_name))
            return validate_response(ParentChildJudgement, raw)
        except FeatureGraphError as e:
            logger.warning("Could not judge '%s' under '%s': %s", candidate_name, parent_name, e)
            return None

    async def detect_parent_child_relationships(self, classifications: Sequence[FeatureClassification]) -> list[ParentAssignment]:
        """Give each story its most confident epic parent above the threshold."""
        epics = [c for c in classifications if c.feature_type == FeatureType.EPIC]
        stories = [c for c in classifications if c.feature_type == FeatureType.STORY]
        if not epics or not stories:
            logger.info("No epic-story pairs to analyze")
            return []

        assignments: list[ParentAssignment] = []
        for story in stories:
            best: ParentAssignment | None = None
            for epic in epics:
                if epic.feature_id == story.feature_id:
                    continue
                judgement = await self.analyze_hierarchy_relationship(story.feature_name, epic.feature_name)
                if judgement is None or not judgement.is_child_of:
                    continue
                if judgement.confidence < self.config.parent_confidence_threshold:
                    continue
                if best is None or judgement.confidence > best.confidence:
                    best = ParentAssignment(child_id=story.feature_id, parent_id=epic.feature_id, confidence=judgement.confidence)
            if best is not None:
                assignments.append(best)
        logger.info("Pairwise detection found %d parent relationships", len(assignments))
        return assignments

    async def validate_no_cycles(self) -> None:
        """Raise CycleDetectedError if any parent chain returns to its start."""
        cycles = find_cycles(await self.features.parent_map(), self.config.max_ancestor_depth)
        if cycles:
            logger.error("Circular references detected: %s", cycles)
            raise CycleDetectedError(cycles)

    async def get_children(self, feature_id: str) -> list[Feature]:
        if await self.features.get(feature_id) is None:
            raise FeatureNotFoundError(f"Feature {feature_id} not found")
        return await self.features.get_children(feature_id)

    async def get_hierarchy_tree(self, feature_id: str) -> HierarchyTree:
        """Return the feature, its parent, children, and ancestors ordered root first."""
        feature = await self.features.get(feature_id)
        if feature is None:
            raise FeatureNotFoundError(f"Feature {feature_id} not found")

        parent_map = await self.features.parent_map()
        chain: list[str] = []
        seen = {feature_id}
        current = feature.parent_id
        while current is not None and current not in seen and len(chain) < self.config.max_ancestor_depth:
            chain.append(current)
            seen.add(current)
            current = parent_map.get(current)

        ancestors = [a for a in [await self.features.get(fid) for fid in reversed(chain)] if a is not None]
        parent = ancestors[-1] if ancestors and ancestors[-1].feature_id == feature.parent_id else None
        children = await self.features.get_children(feature_id)
        return HierarchyTree(feature=feature, parent=parent, children=tuple(children), ancestors=tuple(ancestors))
