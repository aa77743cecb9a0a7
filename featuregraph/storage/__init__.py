"""Storage interfaces and implementations for the feature graph."""

from featuregraph.storage.interfaces import (
    EvidenceStorageInterface,
    FeatureStorageInterface,
    JobStorageInterface,
)
from featuregraph.storage.memory import (
    InMemoryEvidenceStorage,
    InMemoryFeatureStorage,
    InMemoryJobStorage,
)

__all__ = [
    "EvidenceStorageInterface",
    "FeatureStorageInterface",
    "JobStorageInterface",
    "InMemoryEvidenceStorage",
    "InMemoryFeatureStorage",
    "InMemoryJobStorage",
]
