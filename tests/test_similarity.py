"""Tests for SimilarityIndex embedding bookkeeping and nearest-neighbour search."""

import pytest

from featuregraph.errors import EvidenceNotFoundError
from featuregraph.similarity import SimilarityIndex
from featuregraph.storage.memory import InMemoryEvidenceStorage

from tests.conftest import MockEmbeddingGenerator, make_evidence


async def seed(storage: InMemoryEvidenceStorage) -> None:
    await storage.add_batch(
        [
            make_evidence("ev-1", "Login button on the landing page"),
            make_evidence("ev-2", "POST /auth/login"),
            make_evidence("ev-3", "Video playback must resume"),
            make_evidence("ev-4", "Payment with a saved card"),
            make_evidence("ev-5", "Old login requirement", obsolete=True),
        ]
    )


class TestEmbedding:
    async def test_embed_pending_stores_vectors(
        self, similarity_index: SimilarityIndex, evidence_storage: InMemoryEvidenceStorage
    ) -> None:
        await seed(evidence_storage)

        assert await similarity_index.embed_pending() == 4
        assert await evidence_storage.list_missing_embeddings() == []
        assert await similarity_index.embed_pending() == 0

    async def test_failed_batch_is_skipped(self, evidence_storage: InMemoryEvidenceStorage, scheduler) -> None:
        await seed(evidence_storage)
        index = SimilarityIndex(evidence_storage, MockEmbeddingGenerator(fail_on="Payment"), scheduler, batch_size=2)

        # ev-1/ev-2 embed; the ev-3/ev-4 batch fails on every attempt.
        assert await index.embed_pending() == 2
        assert [e.evidence_id for e in await evidence_storage.list_missing_embeddings()] == ["ev-3", "ev-4"]

    async def test_embed_batch_marks_failed_chunk(self, scheduler) -> None:
        index = SimilarityIndex(InMemoryEvidenceStorage(), MockEmbeddingGenerator(fail_on="Payment"), scheduler, batch_size=1)
        vectors = await index.embed_batch(["Login", "Payment", "Playback"])
        assert vectors[0] is not None
        assert vectors[1] is None
        assert vectors[2] is not None

    async def test_batches_are_chunked(self, embedder: MockEmbeddingGenerator, scheduler) -> None:
        index = SimilarityIndex(InMemoryEvidenceStorage(), embedder, scheduler, batch_size=2)
        assert len(await index.embed_batch(["a", "b", "c", "d", "e"])) == 5
        assert embedder.batch_calls == 3

    async def test_embed_evidence_missing(self, similarity_index: SimilarityIndex) -> None:
        with pytest.raises(EvidenceNotFoundError):
            await similarity_index.embed_evidence("missing")

    def test_batch_size_must_be_positive(self, evidence_storage, embedder) -> None:
        with pytest.raises(ValueError):
            SimilarityIndex(evidence_storage, embedder, batch_size=0)


class TestSearch:
    async def test_find_similar_ranks_topic_first(
        self, similarity_index: SimilarityIndex, evidence_storage: InMemoryEvidenceStorage
    ) -> None:
        await seed(evidence_storage)
        await similarity_index.embed_pending()

        results = await similarity_index.find_similar("Users sign in with their login", k=3)

        assert {eid for eid, _ in results[:2]} == {"ev-1", "ev-2"}
        assert results[0][1] > 0.99
        assert results[2][1] < 0.1
        assert all(eid != "ev-5" for eid, _ in results)

    async def test_exact_text_matches_itself(
        self, similarity_index: SimilarityIndex, evidence_storage: InMemoryEvidenceStorage
    ) -> None:
        await seed(evidence_storage)
        await similarity_index.embed_pending()

        results = await similarity_index.find_similar("POST /auth/login", k=1)

        assert results[0][0] == "ev-2"
        assert results[0][1] == pytest.approx(1.0)

    async def test_find_similar_by_evidence_excludes_source(
        self, similarity_index: SimilarityIndex, evidence_storage: InMemoryEvidenceStorage
    ) -> None:
        await seed(evidence_storage)
        await similarity_index.embed_pending()

        results = await similarity_index.find_similar_by_evidence_id("ev-1", k=10)

        assert results[0][0] == "ev-2"
        assert "ev-1" not in [eid for eid, _ in results]
        assert len(results) == 3

    async def test_find_similar_by_missing_evidence(self, similarity_index: SimilarityIndex) -> None:
        with pytest.raises(EvidenceNotFoundError):
            await similarity_index.find_similar_by_evidence_id("missing")

    async def test_k_zero_and_empty_store(self, similarity_index: SimilarityIndex) -> None:
        assert await similarity_index.find_similar("login", k=0) == []
        assert await similarity_index.find_similar("login") == []
