"""Density-based clustering of evidence embeddings.

DBSCAN groups evidence whose embeddings sit within `eps` cosine distance of
each other, with at least `min_samples` items per dense region. With the
defaults (eps 0.3, min_samples 3) a cluster is a group of three or more items
that are pairwise connected through neighbours with similarity above 0.7.

Noise points (items that fall in no dense region) are not returned; they stay
available for a later run once more related evidence arrives.
"""

import logging
from collections import Counter

import numpy as np
from pydantic import BaseModel, Field
from sklearn.cluster import DBSCAN  # type: ignore

from featuregraph.config import ClusteringConfig
from featuregraph.evidence import Evidence
from featuregraph.storage.interfaces import EvidenceStorageInterface

logger = logging.getLogger(__name__)


class EvidenceCluster(BaseModel):
    """One group of related evidence found by DBSCAN."""

    model_config = {"frozen": True}

    cluster_id: int = Field(description="DBSCAN label, >= 0.")
    evidence_ids: tuple[str, ...] = Field(description="Member ids, sorted.")
    items: tuple[Evidence, ...] = Field(default=(), description="Member records, in evidence_ids order.")

    @property
    def size(self) -> int:
        return len(self.evidence_ids)


def cluster_embeddings(embeddings: np.ndarray, eps: float, min_samples: int) -> np.ndarray:
    """Return DBSCAN labels for row vectors under cosine distance; -1 marks noise."""
    if len(embeddings) == 0:
        return np.array([], dtype=int)
    model = DBSCAN(eps=eps, min_samples=min_samples, metric="cosine")
    return model.fit_predict(embeddings)


class ClusteringEngine:
    """Cluster all current, embedded evidence."""

    def __init__(self, evidence: EvidenceStorageInterface, config: ClusteringConfig | None = None):
        self.evidence = evidence
        self.config = config or ClusteringConfig()

    async def cluster_evidence(self) -> list[EvidenceCluster]:
        """Cluster every non-obsolete evidence item with an embedding.

        Rows are ordered by evidence id before fitting, so identical inputs
        always give identical clusters. Clusters are returned in label order.
        """
        items = sorted(await self.evidence.list_with_embeddings(), key=lambda e: e.evidence_id)
        if not items:
            logger.info("No embedded evidence to cluster")
            return []

        # Most common dimension wins; ties go to the first item by evidence id.
        dimension = Counter(len(e.embedding or ()) for e in items).most_common(1)[0][0]
        usable = [e for e in items if e.embedding is not None and len(e.embedding) == dimension]
        if len(usable) != len(items):
            logger.warning("Skipping %d evidence items with mismatched embedding dimension", len(items) - len(usable))

        matrix = np.array([e.embedding for e in usable], dtype=float)
        labels = cluster_embeddings(matrix, self.config.eps, self.config.min_samples)

        members: dict[int, list[Evidence]] = {}
        noise = 0
        for item, label in zip(usable, labels):
            if label < 0:
                noise += 1
                continue
            members.setdefault(int(label), []).append(item)

        clusters = [
            EvidenceCluster(
                cluster_id=label,
                evidence_ids=tuple(e.evidence_id for e in group),
                items=tuple(group),
            )
            for label, group in sorted(members.items())
        ]
        logger.info(
            "Clustered %d evidence items into %d clusters (%d noise points)",
            len(usable),
            len(clusters),
            noise,
        )
        return clusters
