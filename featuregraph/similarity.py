"""Embedding and similarity search over stored evidence.

`SimilarityIndex` owns the evidence side of the embedding oracle: it computes
vectors in batches, persists them on the evidence records, and answers
nearest-neighbour queries by cosine similarity over every non-obsolete item
that has an embedding.
"""

import logging
from typing import Sequence

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity  # type: ignore

from featuregraph.errors import EvidenceNotFoundError, FeatureGraphError
from featuregraph.evidence import Evidence
from featuregraph.pipeline.embedding import EmbeddingGeneratorInterface
from featuregraph.pipeline.scheduler import OracleScheduler
from featuregraph.storage.interfaces import EvidenceStorageInterface

logger = logging.getLogger(__name__)

DEFAULT_K = 20


def _batches(items: Sequence, size: int):
    for start in range(0, len(items), size):
        yield items[start : start + size]


class SimilarityIndex:
    """Compute, persist and search evidence embeddings."""

    def __init__(
        self,
        evidence: EvidenceStorageInterface,
        embedder: EmbeddingGeneratorInterface,
        scheduler: OracleScheduler | None = None,
        batch_size: int = 100,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.evidence = evidence
        self.embedder = embedder
        self.scheduler = scheduler or OracleScheduler()
        self.batch_size = batch_size

    async def embed(self, text: str) -> tuple[float, ...]:
        """Embed one text. Oracle errors propagate after the scheduler's retries."""
        return await self.scheduler.run(self.embedder.generate, text)

    async def embed_batch(self, texts: Sequence[str]) -> list[tuple[float, ...] | None]:
        """Embed many texts in `batch_size` chunks.

        A chunk whose request fails (after retries) is logged and yields None
        for each of its texts; the remaining chunks still run.
        """
        results: list[tuple[float, ...] | None] = []
        for number, chunk in enumerate(_batches(list(texts), self.batch_size)):
            try:
                vectors = await self.scheduler.run(self.embedder.generate_batch, chunk)
            except FeatureGraphError as e:
                logger.error("Embedding batch %d (%d texts) failed: %s", number, len(chunk), e)
                results.extend([None] * len(chunk))
                continue
            results.extend(tuple(v) for v in vectors)
        return results

    async def embed_evidence(self, evidence_id: str) -> tuple[float, ...]:
        """Compute and store the embedding of one evidence item."""
        item = await self.evidence.get(evidence_id)
        if item is None:
            raise EvidenceNotFoundError(f"Evidence {evidence_id} not found")
        vector = await self.embed(item.content)
        await self.evidence.set_embeddings({evidence_id: vector})
        return vector

    async def embed_pending(self, limit: int | None = None) -> int:
        """Embed every non-obsolete evidence item that lacks a vector.

        Returns the number of embeddings stored. Items in failed batches stay
        unembedded and are picked up by the next call.
        """
        pending = await self.evidence.list_missing_embeddings(limit=limit)
        if not pending:
            return 0
        stored = 0
        for chunk in _batches(pending, self.batch_size):
            vectors = await self.embed_batch([item.content for item in chunk])
            embeddings = {item.evidence_id: vec for item, vec in zip(chunk, vectors) if vec is not None}
            if embeddings:
                stored += await self.evidence.set_embeddings(embeddings)
        logger.info("Stored %d of %d pending embeddings", stored, len(pending))
        return stored

    async def find_similar(self, query_text: str, k: int = DEFAULT_K) -> list[tuple[str, float]]:
        """Return up to k (evidence_id, similarity) pairs, most similar first."""
        query = await self.embed(query_text)
        return self._rank(query, await self.evidence.list_with_embeddings(), k)

    async def find_similar_by_evidence_id(self, evidence_id: str, k: int = DEFAULT_K) -> list[tuple[str, float]]:
        """Like find_similar, seeded by a stored item; the item itself is excluded."""
        source = await self.evidence.get(evidence_id)
        if source is None:
            raise EvidenceNotFoundError(f"Evidence {evidence_id} not found")
        query = source.embedding if source.embedding is not None else await self.embed(source.content)
        candidates = [e for e in await self.evidence.list_with_embeddings() if e.evidence_id != evidence_id]
        return self._rank(query, candidates, k)

    @staticmethod
    def _rank(query: Sequence[float], candidates: list[Evidence], k: int) -> list[tuple[str, float]]:
        if k <= 0:
            return []
        usable = [e for e in candidates if e.embedding is not None and len(e.embedding) == len(query)]
        if not usable:
            return []
        matrix = np.array([e.embedding for e in usable], dtype=float)
        scores = cosine_similarity(np.array([query], dtype=float), matrix)[0]
        ranked = sorted(zip(usable, scores), key=lambda pair: (-pair[1], pair[0].evidence_id))
        return [(item.evidence_id, float(score)) for item, score in ranked[:k]]
