"""
Feature Graph - Evidence-to-Feature Inference Pipeline.

Turns evidence extracted from product documents (requirements, screenshots,
API specs) into a deduplicated epic/story/task hierarchy of product features:
a durable job queue drives extraction, evidence is embedded and clustered,
and each cluster becomes one feature hypothesis.

This module uses lazy imports to avoid loading heavy dependencies (numpy, sklearn)
when only lightweight components are needed. For example:

    # This does NOT import numpy:
    from featuregraph import Evidence, Feature, FeatureType

    # This DOES import numpy (when the symbol is accessed):
    from featuregraph import InferencePipeline
"""

from typing import TYPE_CHECKING

# Lightweight imports that don't pull in numpy/sklearn
from featuregraph.evidence import Evidence, EvidenceType
from featuregraph.feature import (
    Feature,
    FeatureEvidence,
    FeatureStatus,
    FeatureType,
    RelationshipType,
)
from featuregraph.job import Document, DocumentStatus, JobStatus, JobType, ProcessingJob
from featuregraph.config import PipelineConfig, load_config

# Type checking imports for IDE support (not executed at runtime)
if TYPE_CHECKING:
    from featuregraph.clustering import ClusteringEngine, EvidenceCluster
    from featuregraph.orchestrator import InferencePipeline, InferenceRunResult
    from featuregraph.similarity import SimilarityIndex

__all__ = [
    "Evidence",
    "EvidenceType",
    "Feature",
    "FeatureEvidence",
    "FeatureStatus",
    "FeatureType",
    "RelationshipType",
    "Document",
    "DocumentStatus",
    "JobStatus",
    "JobType",
    "ProcessingJob",
    "PipelineConfig",
    "load_config",
    "ClusteringEngine",
    "EvidenceCluster",
    "InferencePipeline",
    "InferenceRunResult",
    "SimilarityIndex",
]

__version__ = "0.1.0"

_LAZY = {
    "ClusteringEngine": "featuregraph.clustering",
    "EvidenceCluster": "featuregraph.clustering",
    "InferencePipeline": "featuregraph.orchestrator",
    "InferenceRunResult": "featuregraph.orchestrator",
    "SimilarityIndex": "featuregraph.similarity",
}


def __getattr__(name: str):
    """Lazy import for heavy modules to avoid loading numpy/sklearn on light imports."""
    if name in _LAZY:
        import importlib

        return getattr(importlib.import_module(_LAZY[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
