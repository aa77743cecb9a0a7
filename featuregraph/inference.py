"""Feature hypothesis generation and cross-cluster deduplication.

`FeatureInferenceService` turns each evidence cluster into one candidate
feature by asking the inference oracle what user-facing capability the
evidence describes, then compares candidates pairwise to merge features that
different clusters inferred twice ("User Login" and "Account Sign-In").
"""

import uuid
from typing import Sequence

from pydantic import BaseModel, Field

from featuregraph.clustering import EvidenceCluster
from featuregraph.config import InferenceConfig
from featuregraph.errors import FeatureGraphError
from featuregraph.evidence import Evidence
from featuregraph.feature import Feature, FeatureEvidence, FeatureStatus, FeatureType, RelationshipType
from featuregraph.logging import setup_logging
from featuregraph.pipeline.llm_client import LLMClientInterface
from featuregraph.pipeline.prompts import build_feature_hypothesis_prompt, build_feature_similarity_prompt
from featuregraph.pipeline.scheduler import OracleScheduler
from featuregraph.pipeline.schemas import DuplicateJudgement, FeatureHypothesis, validate_response
from featuregraph.storage.interfaces import FeatureStorageInterface

logger = setup_logging()


class GenerationResult(BaseModel):
    """Outcome of generating features for a batch of clusters."""

    model_config = {"frozen": True}

    feature_ids: tuple[str, ...] = Field(default=(), description="Features created, in cluster order.")
    failed_clusters: tuple[int, ...] = Field(default=(), description="cluster_id of every skipped cluster.")

    @property
    def generated(self) -> int:
        return len(self.feature_ids)

    @property
    def failed(self) -> int:
        return len(self.failed_clusters)


class FeatureInferenceService:
    """Generate candidate features from clusters and merge duplicates."""

    def __init__(
        self,
        features: FeatureStorageInterface,
        llm: LLMClientInterface,
        scheduler: OracleScheduler | None = None,
        config: InferenceConfig | None = None,
    ):
        self.features = features
        self.llm = llm
        self.scheduler = scheduler or OracleScheduler()
        self.config = config or InferenceConfig()

    async def _ask(self, prompt: str, temperature: float):
        return await self.scheduler.run(self.llm.generate_json, prompt, temperature)

    async def generate_feature_from_cluster(self, evidence_items: Sequence[Evidence]) -> str:
        """Infer one candidate feature from a cluster and store it with its links.

        The feature starts as a candidate epic; every evidence item is linked
        with relationship `implements` at the default strength.

        Raises:
            ValueError: If `evidence_items` is empty.
            OracleValidationError: If the oracle's answer is malformed.
            RetryableError: If the oracle stayed unreachable through all retries.
        """
        if not evidence_items:
            raise ValueError("Evidence cluster cannot be empty")

        prompt = build_feature_hypothesis_prompt([item.content for item in evidence_items])
        raw = await self._ask(prompt, self.config.hypothesis_temperature)
        hypothesis = validate_response(FeatureHypothesis, raw)

        feature = Feature(
            feature_id=str(uuid.uuid4()),
            name=hypothesis.feature_name,
            description=hypothesis.description,
            confidence_score=round(hypothesis.confidence, 2),
            status=FeatureStatus.CANDIDATE,
            feature_type=FeatureType.EPIC,
            hierarchy_level=0,
            metadata={"reasoning": hypothesis.reasoning},
        )
        links = [
            FeatureEvidence(
                feature_id=feature.feature_id,
                evidence_id=item.evidence_id,
                relationship_type=RelationshipType.IMPLEMENTS,
                strength=self.config.default_link_strength,
            )
            for item in evidence_items
        ]
        await self.features.add_with_links(feature, links)
        logger.info(
            {
                "feature_id": feature.feature_id,
                "feature_name": feature.name,
                "confidence": feature.confidence_score,
                "evidence_count": len(links),
            }
        )
        return feature.feature_id

    async def generate_features(self, clusters: Sequence[EvidenceCluster]) -> GenerationResult:
        """Generate one feature per cluster; failing clusters are logged and skipped."""
        feature_ids: list[str] = []
        failed: list[int] = []
        for cluster in clusters:
            try:
                feature_ids.append(await self.generate_feature_from_cluster(cluster.items))
            except FeatureGraphError as e:
                logger.warning(f"Skipping cluster {cluster.cluster_id} ({cluster.size} items): {e}")
                failed.append(cluster.cluster_id)
        result = GenerationResult(feature_ids=tuple(feature_ids), failed_clusters=tuple(failed))
        logger.info(f"Generated {result.generated} features from {len(clusters)} clusters ({result.failed} failed)")
        return result

    async def compare_features(self, first: Feature, second: Feature) -> DuplicateJudgement:
        """Ask the oracle whether two features describe the same capability."""
        prompt = build_feature_similarity_prompt(first.name, first.description, second.name, second.description)
        raw = await self._ask(prompt, self.config.comparison_temperature)
        return validate_response(DuplicateJudgement, raw)

    async def validate_and_merge_duplicates(self) -> int:
        """Compare every pair of candidate features and merge duplicates.

        Pairs are taken in (inferred_at, feature_id) order and the earlier
        feature of a pair is always kept. Features without a description are
        not compared, a feature merged away is skipped in later pairs, and a
        pair whose judgement fails is logged and skipped.

        Returns:
            Number of merges performed.
        """
        candidates = await self.features.list_all(status=FeatureStatus.CANDIDATE)
        if len(candidates) < 2:
            logger.info("Less than 2 candidate features, skipping validation")
            return 0

        merged_away: set[str] = set()
        merges = 0
        for i, first in enumerate(candidates):
            if first.feature_id in merged_away or not first.description:
                continue
            for second in candidates[i + 1 :]:
                if second.feature_id in merged_away or not second.description:
                    continue
                try:
                    judgement = await self.compare_features(first, second)
                except FeatureGraphError as e:
                    logger.warning(f"Could not compare '{first.name}' and '{second.name}': {e}")
                    continue
                if not judgement.is_duplicate or judgement.similarity_score < self.config.similarity_threshold:
                    continue

                provenance = {"merged_from": second.feature_id, "merge_reasoning": judgement.reasoning}
                if await self.features.merge(first.feature_id, second.feature_id, provenance):
                    merged_away.add(second.feature_id)
                    merges += 1
                    logger.info(
                        {
                            "kept": first.name,
                            "merged": second.name,
                            "similarity_score": judgement.similarity_score,
                        }
                    )
        logger.info(f"Cross-cluster validation completed: {merges} merges")
        return merges
