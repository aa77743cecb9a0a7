"""Tests for feature hypothesis generation and cross-cluster deduplication.

This module verifies:
- A cluster becomes one candidate epic linked to every evidence item
- Malformed oracle answers store nothing
- Duplicate features are merged into the earlier one with links unioned
- Pairs below the similarity threshold, without descriptions, or whose
  comparison fails are left alone
"""

import pytest

from featuregraph.clustering import EvidenceCluster
from featuregraph.errors import OracleValidationError, RetryableError
from featuregraph.feature import FeatureEvidence, FeatureStatus, FeatureType, RelationshipType
from featuregraph.inference import FeatureInferenceService
from featuregraph.storage.memory import InMemoryFeatureStorage

from tests.conftest import HYPOTHESIS, SIMILARITY, ScriptedLLMClient, evidence_section, hypothesis, make_evidence, make_feature

LOGIN_EVIDENCE = [
    make_evidence("ev-1", "Login button on the landing page"),
    make_evidence("ev-2", "POST /auth/login accepts email and password"),
    make_evidence("ev-3", "Users must login before watching"),
]


def judge(pairs: dict[frozenset, float]):
    """Similarity responder scoring the pair of names found in the prompt."""

    def respond(prompt: str) -> dict:
        for names, score in pairs.items():
            if all(f"Name: {name}\n" in prompt for name in names):
                return {"is_duplicate": score >= 0.5, "similarity_score": score, "reasoning": "same capability"}
        return {"is_duplicate": False, "similarity_score": 0.1, "reasoning": "unrelated"}

    return respond


async def store_candidates(storage: InMemoryFeatureStorage, *specs: tuple[str, str, str, tuple[str, ...]]) -> None:
    for order, (feature_id, name, description, evidence_ids) in enumerate(specs):
        await storage.add_with_links(
            make_feature(feature_id, name, description, order=order),
            [FeatureEvidence(feature_id=feature_id, evidence_id=eid) for eid in evidence_ids],
        )


class TestGenerateFeature:
    async def test_cluster_becomes_candidate_epic(
        self,
        inference_service: FeatureInferenceService,
        feature_storage: InMemoryFeatureStorage,
        llm: ScriptedLLMClient,
    ) -> None:
        llm.on(HYPOTHESIS, hypothesis("User Login", "Users sign in", confidence=0.876, reasoning="login form + endpoint"))

        feature_id = await inference_service.generate_feature_from_cluster(LOGIN_EVIDENCE)

        feature = await feature_storage.get(feature_id)
        assert feature is not None
        assert feature.name == "User Login"
        assert feature.confidence_score == 0.88
        assert feature.status == FeatureStatus.CANDIDATE
        assert feature.feature_type == FeatureType.EPIC
        assert feature.parent_id is None
        assert feature.metadata["reasoning"] == "login form + endpoint"

        links = await feature_storage.get_links(feature_id)
        assert sorted(link.evidence_id for link in links) == ["ev-1", "ev-2", "ev-3"]
        assert all(link.relationship_type == RelationshipType.IMPLEMENTS for link in links)
        assert all(link.strength == 0.5 for link in links)

    async def test_prompt_lists_evidence(self, inference_service: FeatureInferenceService, llm: ScriptedLLMClient) -> None:
        llm.on(HYPOTHESIS, hypothesis("User Login"))

        await inference_service.generate_feature_from_cluster(LOGIN_EVIDENCE)

        section = evidence_section(llm.prompts[0])
        assert "1. login button on the landing page" in section
        assert "3. users must login before watching" in section

    async def test_empty_cluster_rejected(self, inference_service: FeatureInferenceService, llm: ScriptedLLMClient) -> None:
        with pytest.raises(ValueError):
            await inference_service.generate_feature_from_cluster([])
        assert llm.prompts == []

    async def test_invalid_answer_stores_nothing(
        self,
        inference_service: FeatureInferenceService,
        feature_storage: InMemoryFeatureStorage,
        llm: ScriptedLLMClient,
    ) -> None:
        llm.on(HYPOTHESIS, {"feature_name": "User Login", "confidence": 3})

        with pytest.raises(OracleValidationError):
            await inference_service.generate_feature_from_cluster(LOGIN_EVIDENCE)
        assert await feature_storage.count() == 0

    async def test_failing_cluster_is_skipped(
        self,
        inference_service: FeatureInferenceService,
        feature_storage: InMemoryFeatureStorage,
        llm: ScriptedLLMClient,
    ) -> None:
        def respond(prompt: str) -> dict:
            if "payment" in evidence_section(prompt):
                raise RetryableError("oracle overloaded")
            return hypothesis("User Login")

        llm.on(HYPOTHESIS, respond)
        clusters = [
            EvidenceCluster(cluster_id=0, evidence_ids=("ev-1", "ev-2", "ev-3"), items=tuple(LOGIN_EVIDENCE)),
            EvidenceCluster(
                cluster_id=1,
                evidence_ids=("pay-1",),
                items=(make_evidence("pay-1", "Payment with a saved card"),),
            ),
        ]

        result = await inference_service.generate_features(clusters)

        assert result.generated == 1
        assert result.failed_clusters == (1,)
        assert await feature_storage.count() == 1
        # Retried by the scheduler before the cluster was given up.
        assert len([p for p in llm.prompts_for(HYPOTHESIS) if "payment" in evidence_section(p)]) == 3


class TestDeduplication:
    async def test_duplicates_are_merged_into_earlier_feature(
        self,
        inference_service: FeatureInferenceService,
        feature_storage: InMemoryFeatureStorage,
        llm: ScriptedLLMClient,
    ) -> None:
        await store_candidates(
            feature_storage,
            ("f-login", "User Login", "Users sign in with email", ("ev-1", "ev-2")),
            ("f-signin", "Account Sign-In", "Sign in to an account", ("ev-2", "ev-3")),
            ("f-play", "Video Playback", "Watch videos", ("ev-9",)),
        )
        llm.on(SIMILARITY, judge({frozenset({"User Login", "Account Sign-In"}): 0.92}))

        assert await inference_service.validate_and_merge_duplicates() == 1

        assert await feature_storage.get("f-signin") is None
        keeper = await feature_storage.get("f-login")
        assert keeper is not None
        assert keeper.metadata["merged_from"] == ["f-signin"]
        assert keeper.metadata["merge_reasoning"] == ["same capability"]
        links = await feature_storage.get_links("f-login")
        assert sorted(link.evidence_id for link in links) == ["ev-1", "ev-2", "ev-3"]
        # f-signin was merged away before its pair with f-play came up.
        assert len(llm.prompts_for(SIMILARITY)) == 2

    async def test_below_threshold_is_not_merged(
        self,
        inference_service: FeatureInferenceService,
        feature_storage: InMemoryFeatureStorage,
        llm: ScriptedLLMClient,
    ) -> None:
        await store_candidates(
            feature_storage,
            ("f-login", "User Login", "Users sign in", ("ev-1",)),
            ("f-reset", "Password Reset", "Users reset passwords", ("ev-2",)),
        )
        llm.on(SIMILARITY, judge({frozenset({"User Login", "Password Reset"}): 0.6}))

        assert await inference_service.validate_and_merge_duplicates() == 0
        assert await feature_storage.count() == 2

    async def test_features_without_description_are_not_compared(
        self,
        inference_service: FeatureInferenceService,
        feature_storage: InMemoryFeatureStorage,
        llm: ScriptedLLMClient,
    ) -> None:
        await store_candidates(
            feature_storage,
            ("f-login", "User Login", "", ("ev-1",)),
            ("f-signin", "Account Sign-In", "Sign in", ("ev-2",)),
        )

        assert await inference_service.validate_and_merge_duplicates() == 0
        assert llm.prompts == []

    async def test_failed_comparison_is_skipped(
        self,
        inference_service: FeatureInferenceService,
        feature_storage: InMemoryFeatureStorage,
        llm: ScriptedLLMClient,
    ) -> None:
        await store_candidates(
            feature_storage,
            ("f-login", "User Login", "Users sign in", ("ev-1",)),
            ("f-signin", "Account Sign-In", "Sign in", ("ev-2",)),
            ("f-auth", "Sign In", "Sign in again", ("ev-3",)),
        )

        def respond(prompt: str) -> dict:
            if "Name: Account Sign-In\n" in prompt and "Name: User Login\n" in prompt:
                raise OracleValidationError("garbled")
            return {"is_duplicate": True, "similarity_score": 0.9, "reasoning": "same"}

        llm.on(SIMILARITY, respond)

        # (login, signin) fails; (login, auth) merges; signin is then compared with nothing left.
        assert await inference_service.validate_and_merge_duplicates() == 1
        assert await feature_storage.get("f-auth") is None
        assert await feature_storage.get("f-signin") is not None

    async def test_fewer_than_two_candidates(
        self, inference_service: FeatureInferenceService, feature_storage: InMemoryFeatureStorage
    ) -> None:
        await store_candidates(feature_storage, ("f-login", "User Login", "Users sign in", ("ev-1",)))
        assert await inference_service.validate_and_merge_duplicates() == 0
