"""Test fixtures and test doubles for the feature graph pipeline.

This module provides:
- A keyword-driven mock embedding generator, so texts about the same topic
  land on the same axis and cluster together deterministically
- A scripted LLM client that answers each prompt kind from rules keyed on
  text the prompt builders always emit
- Pytest fixtures for in-memory storage, fast oracle schedulers and the
  pipeline services
- Helper factory functions for creating evidence, features and plans

Topic axes used by the mock embedder: login/password/sign-in (0),
playback/video (1), payment/billing (2), search (3), profile (4),
subtitle (5). Anything else lands on axis 7.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence

import pytest

from featuregraph.config import ClusteringConfig, HierarchyConfig, InferenceConfig
from featuregraph.errors import OracleValidationError, RetryableError
from featuregraph.evidence import Evidence, EvidenceType
from featuregraph.feature import Feature, FeatureType, hierarchy_level_for
from featuregraph.hierarchy import FeatureHierarchyService
from featuregraph.inference import FeatureInferenceService
from featuregraph.pipeline.embedding import EmbeddingGeneratorInterface
from featuregraph.pipeline.llm_client import LLMClientInterface
from featuregraph.pipeline.scheduler import OracleScheduler
from featuregraph.plan import HierarchyPlan
from featuregraph.similarity import SimilarityIndex
from featuregraph.storage.memory import (
    InMemoryEvidenceStorage,
    InMemoryFeatureStorage,
    InMemoryJobStorage,
)

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)

# Text every prompt builder of the given kind emits.
HYPOTHESIS = "identify the user-facing feature"
SIMILARITY = "determine if they represent the same capability"
CLASSIFY = "Classify this OTT platform feature"
SYNTHESIS = "Every story MUST have a parent epic"
PAIRWISE = "Analyze if Feature A is a CHILD"

TOPIC_AXES = {
    "login": 0,
    "password": 0,
    "sign-in": 0,
    "playback": 1,
    "video": 1,
    "payment": 2,
    "billing": 2,
    "search": 3,
    "profile": 4,
    "subtitle": 5,
}


class MockEmbeddingGenerator(EmbeddingGeneratorInterface):
    """Deterministic embeddings that put texts about one topic on one axis.

    A small length-dependent component on axis 6 keeps vectors of the same
    topic distinct but with cosine similarity above 0.99. Any text containing
    a `fail_on` marker makes the whole batch raise `RetryableError`.
    """

    def __init__(self, dim: int = 8, fail_on: Optional[str] = None) -> None:
        self._dim = dim
        self.fail_on = fail_on
        self.batch_calls = 0

    @property
    def dimension(self) -> int:
        return self._dim

    def vector_for(self, text: str) -> tuple[float, ...]:
        lowered = text.lower()
        axis = next((a for word, a in TOPIC_AXES.items() if word in lowered), 7)
        vector = [0.0] * self._dim
        vector[axis] = 1.0
        vector[6] = (len(text) % 5) * 0.02
        return tuple(vector)

    async def generate(self, text: str) -> tuple[float, ...]:
        return (await self.generate_batch([text]))[0]

    async def generate_batch(self, texts: Sequence[str]) -> list[tuple[float, ...]]:
        self.batch_calls += 1
        if self.fail_on is not None and any(self.fail_on in t for t in texts):
            raise RetryableError("embedding service unavailable")
        return [self.vector_for(t) for t in texts]


class ScriptedLLMClient(LLMClientInterface):
    """LLM double answering prompts from (marker, response) rules.

    The first rule whose marker occurs in the prompt wins. A response may be
    a dict, an exception instance (raised), or a callable taking the prompt.
    Prompts with no matching rule raise `OracleValidationError`.
    """

    def __init__(self) -> None:
        self.rules: list[tuple[str, Any]] = []
        self.prompts: list[str] = []

    def on(self, marker: str, response: Any) -> "ScriptedLLMClient":
        self.rules.append((marker, response))
        return self

    def prompts_for(self, marker: str) -> list[str]:
        return [p for p in self.prompts if marker in p]

    async def generate_json(self, prompt: str, temperature: float = 0.1):
        self.prompts.append(prompt)
        for marker, response in self.rules:
            if marker not in prompt:
                continue
            if isinstance(response, BaseException):
                raise response
            if callable(response):
                return response(prompt)
            return response
        raise OracleValidationError("no scripted response for prompt")


def evidence_section(prompt: str) -> str:
    """The numbered evidence list of a hypothesis prompt, lowercased."""
    start = prompt.index("Evidence:") + len("Evidence:")
    end = prompt.index("Analyze the evidence")
    return prompt[start:end].lower()


def hypothesis(name: str, description: str = "", confidence: float = 0.8, reasoning: str = "Shared evidence") -> dict:
    return {
        "feature_name": name,
        "description": description or f"Users can use {name.lower()}",
        "confidence": confidence,
        "reasoning": reasoning,
    }


def classify_by_name(types: dict[str, str]) -> Callable[[str], dict]:
    """Classification responder keyed on the quoted feature name in the prompt."""

    def respond(prompt: str) -> dict:
        for name, feature_type in types.items():
            if f'Name: "{name}"' in prompt:
                return {"feature_type": feature_type, "reasoning": f"{name} is a {feature_type}", "indicators": []}
        raise OracleValidationError("unknown feature in classification prompt")

    return respond


def make_evidence(
    evidence_id: str,
    content: str,
    document_id: str = "doc-1",
    evidence_type: EvidenceType = EvidenceType.REQUIREMENT,
    embedding: Optional[Sequence[float]] = None,
    obsolete: bool = False,
) -> Evidence:
    """Create an evidence item with sensible defaults."""
    return Evidence(
        evidence_id=evidence_id,
        document_id=document_id,
        evidence_type=evidence_type,
        content=content,
        embedding=tuple(embedding) if embedding is not None else None,
        obsolete=obsolete,
    )


def make_feature(
    feature_id: str,
    name: str,
    description: str = "",
    feature_type: FeatureType = FeatureType.EPIC,
    parent_id: Optional[str] = None,
    confidence: float = 0.5,
    order: int = 0,
    metadata: Optional[dict] = None,
) -> Feature:
    """Create a feature; `order` spaces inferred_at one second apart."""
    return Feature(
        feature_id=feature_id,
        name=name,
        description=description,
        confidence_score=confidence,
        feature_type=feature_type,
        hierarchy_level=hierarchy_level_for(feature_type),
        parent_id=parent_id,
        metadata=metadata or {},
        inferred_at=BASE_TIME + timedelta(seconds=order),
    )


class ExplodingPlan(HierarchyPlan, frozen=True):
    """A plan whose update step fails after the pending epics are inserted."""

    def resolve_updates(self, created_ids, now=None):
        raise RuntimeError("write failed")


def chain_features() -> list[Feature]:
    """An epic, a story under it, and a story under that: root <- middle <- leaf."""
    return [
        make_feature("root", "Authentication", order=0),
        make_feature("middle", "Login", feature_type=FeatureType.STORY, parent_id="root", order=1),
        make_feature("leaf", "Login Form", feature_type=FeatureType.STORY, parent_id="middle", order=2),
    ]


def recorded_sleep(delays: list[float]) -> Callable:
    """An async sleep that only records the delays it was asked for."""

    async def sleep(delay: float) -> None:
        delays.append(delay)

    return sleep


# --- Fixtures ---


@pytest.fixture
def evidence_storage() -> InMemoryEvidenceStorage:
    """Provide a fresh in-memory evidence storage instance."""
    return InMemoryEvidenceStorage()


@pytest.fixture
def feature_storage() -> InMemoryFeatureStorage:
    """Provide a fresh in-memory feature storage instance."""
    return InMemoryFeatureStorage()


@pytest.fixture
def job_storage() -> InMemoryJobStorage:
    """Provide a fresh in-memory job and document storage instance."""
    return InMemoryJobStorage()


@pytest.fixture
def embedder() -> MockEmbeddingGenerator:
    return MockEmbeddingGenerator()


@pytest.fixture
def llm() -> ScriptedLLMClient:
    """Provide an LLM double with no rules; tests add the ones they need."""
    return ScriptedLLMClient()


@pytest.fixture
def scheduler() -> OracleScheduler:
    """A scheduler that retries without real backoff delays."""
    return OracleScheduler(max_concurrent=5, max_attempts=3, base_delay=0.0)


@pytest.fixture
def similarity_index(
    evidence_storage: InMemoryEvidenceStorage,
    embedder: MockEmbeddingGenerator,
    scheduler: OracleScheduler,
) -> SimilarityIndex:
    return SimilarityIndex(evidence_storage, embedder, scheduler, batch_size=2)


@pytest.fixture
def clustering_config() -> ClusteringConfig:
    return ClusteringConfig(eps=0.3, min_samples=3)


@pytest.fixture
def inference_service(
    feature_storage: InMemoryFeatureStorage,
    llm: ScriptedLLMClient,
    scheduler: OracleScheduler,
) -> FeatureInferenceService:
    return FeatureInferenceService(feature_storage, llm, scheduler, InferenceConfig())


@pytest.fixture
def hierarchy_service(
    feature_storage: InMemoryFeatureStorage,
    llm: ScriptedLLMClient,
    scheduler: OracleScheduler,
) -> FeatureHierarchyService:
    return FeatureHierarchyService(feature_storage, llm, scheduler, HierarchyConfig())
