"""Tests for the in-memory storage backends.

This module verifies:
- Evidence embedding bookkeeping and soft-delete on reprocessing
- Feature link de-duplication, merge semantics and hierarchy application
- That a failing merge or hierarchy apply leaves storage unchanged
- Exactly-once job claims under concurrent claimers
"""

import asyncio
from datetime import timedelta

import pytest

from featuregraph.feature import FeatureEvidence, FeatureType
from featuregraph.hierarchy import find_cycles
from featuregraph.job import Document, DocumentStatus, JobStatus, JobType
from featuregraph.plan import FeatureClassification, HierarchyPlan, ParentAssignment, PendingEpic
from featuregraph.storage.memory import (
    InMemoryEvidenceStorage,
    InMemoryFeatureStorage,
    InMemoryJobStorage,
)
from featuregraph.storage.merging import append_provenance, is_ancestor

from tests.conftest import BASE_TIME, ExplodingPlan, chain_features, make_evidence, make_feature


def link(feature_id: str, evidence_id: str) -> FeatureEvidence:
    return FeatureEvidence(feature_id=feature_id, evidence_id=evidence_id)


class TestEvidenceStorage:
    async def test_embedding_bookkeeping(self, evidence_storage: InMemoryEvidenceStorage) -> None:
        await evidence_storage.add_batch(
            [
                make_evidence("ev-2", "Login button"),
                make_evidence("ev-1", "POST /auth/login"),
                make_evidence("ev-3", "Old requirement", obsolete=True),
            ]
        )
        missing = await evidence_storage.list_missing_embeddings()
        assert [e.evidence_id for e in missing] == ["ev-1", "ev-2"]
        assert len(await evidence_storage.list_missing_embeddings(limit=1)) == 1

        updated = await evidence_storage.set_embeddings({"ev-1": [1.0, 0.0], "unknown": [0.0, 1.0]})
        assert updated == 1
        embedded = await evidence_storage.list_with_embeddings()
        assert [e.evidence_id for e in embedded] == ["ev-1"]
        assert embedded[0].embedding == (1.0, 0.0)

    async def test_get_batch_keeps_order(self, evidence_storage: InMemoryEvidenceStorage) -> None:
        await evidence_storage.add(make_evidence("ev-1", "Login"))
        results = await evidence_storage.get_batch(["missing", "ev-1"])
        assert results[0] is None
        assert results[1] is not None and results[1].evidence_id == "ev-1"

    async def test_mark_document_obsolete(self, evidence_storage: InMemoryEvidenceStorage) -> None:
        await evidence_storage.add_batch(
            [
                make_evidence("ev-1", "Login", document_id="doc-1"),
                make_evidence("ev-2", "Playback", document_id="doc-2"),
            ]
        )
        assert await evidence_storage.mark_document_obsolete("doc-1") == 1
        assert await evidence_storage.mark_document_obsolete("doc-1") == 0
        item = await evidence_storage.get("ev-1")
        assert item is not None and item.obsolete
        assert await evidence_storage.count() == 2


class TestFeatureStorage:
    async def test_add_with_links_skips_duplicate_pairs(self, feature_storage: InMemoryFeatureStorage) -> None:
        feature = make_feature("f-1", "User Login")
        await feature_storage.add_with_links(feature, [link("f-1", "ev-1"), link("f-1", "ev-1"), link("f-1", "ev-2")])
        assert sorted(l.evidence_id for l in await feature_storage.get_links("f-1")) == ["ev-1", "ev-2"]
        assert len(await feature_storage.get_links_for_evidence("ev-1")) == 1

    async def test_list_all_ordering_and_filters(self, feature_storage: InMemoryFeatureStorage) -> None:
        await feature_storage.add_with_links(make_feature("b", "Second", order=2), [])
        await feature_storage.add_with_links(make_feature("a", "First", order=1), [])
        await feature_storage.add_with_links(make_feature("c", "Story", feature_type=FeatureType.STORY, parent_id="a", order=0), [])

        assert [f.feature_id for f in await feature_storage.list_all()] == ["c", "a", "b"]
        assert [f.feature_id for f in await feature_storage.list_all(feature_type=FeatureType.EPIC)] == ["a", "b"]
        assert [f.feature_id for f in await feature_storage.get_children("a")] == ["c"]
        assert await feature_storage.parent_map() == {"a": None, "b": None, "c": "a"}

    async def test_merge_unions_links_and_records_provenance(self, feature_storage: InMemoryFeatureStorage) -> None:
        await feature_storage.add_with_links(make_feature("keep", "User Login", order=0), [link("keep", "ev-1"), link("keep", "ev-2")])
        await feature_storage.add_with_links(make_feature("drop", "Account Sign-In", order=1), [link("drop", "ev-2"), link("drop", "ev-3")])
        await feature_storage.add_with_links(
            make_feature("child", "Remember Me", feature_type=FeatureType.STORY, parent_id="drop", order=2), []
        )

        merged = await feature_storage.merge("keep", "drop", {"merged_from": "drop", "merge_reasoning": "same capability"})

        assert merged is True
        assert await feature_storage.get("drop") is None
        assert sorted(l.evidence_id for l in await feature_storage.get_links("keep")) == ["ev-1", "ev-2", "ev-3"]
        assert len(await feature_storage.get_links_for_evidence("ev-2")) == 1
        keeper = await feature_storage.get("keep")
        assert keeper is not None
        assert keeper.metadata["merged_from"] == ["drop"]
        assert keeper.metadata["merge_reasoning"] == ["same capability"]
        child = await feature_storage.get("child")
        assert child is not None and child.parent_id == "keep"

    async def test_merge_keeper_under_loser_takes_loser_parent(self, feature_storage: InMemoryFeatureStorage) -> None:
        await feature_storage.add_with_links(make_feature("loser", "Authentication", order=0), [])
        await feature_storage.add_with_links(
            make_feature("keeper", "Login", feature_type=FeatureType.STORY, parent_id="loser", order=1), []
        )

        assert await feature_storage.merge("keeper", "loser", {"merged_from": "loser"})

        keeper = await feature_storage.get("keeper")
        assert keeper is not None
        assert keeper.parent_id is None
        assert keeper.feature_type == FeatureType.EPIC

    async def test_merge_grandparent_into_grandchild_stays_acyclic(self, feature_storage: InMemoryFeatureStorage) -> None:
        for feature in chain_features():
            await feature_storage.add_with_links(feature, [])

        assert await feature_storage.merge("leaf", "root", {"merged_from": "root"})

        parent_map = await feature_storage.parent_map()
        assert find_cycles(parent_map) == []
        assert parent_map == {"leaf": None, "middle": "leaf"}
        leaf = await feature_storage.get("leaf")
        assert leaf is not None
        assert leaf.feature_type == FeatureType.EPIC
        assert leaf.hierarchy_level == 0

    async def test_merge_rolls_back_on_failure(
        self, feature_storage: InMemoryFeatureStorage, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        for feature in chain_features():
            await feature_storage.add_with_links(feature, [link(feature.feature_id, f"ev-{feature.feature_id}")])
        before = {f.feature_id: f for f in await feature_storage.list_all()}

        def explode(*args, **kwargs):
            raise RuntimeError("write failed")

        monkeypatch.setattr("featuregraph.storage.memory.merged_keeper_fields", explode)
        with pytest.raises(RuntimeError):
            await feature_storage.merge("root", "middle", {"merged_from": "middle"})

        assert {f.feature_id: f for f in await feature_storage.list_all()} == before
        assert [l.evidence_id for l in await feature_storage.get_links("middle")] == ["ev-middle"]
        assert [l.evidence_id for l in await feature_storage.get_links("root")] == ["ev-root"]
        assert [f.feature_id for f in await feature_storage.get_children("middle")] == ["leaf"]

    async def test_merge_missing_feature(self, feature_storage: InMemoryFeatureStorage) -> None:
        await feature_storage.add_with_links(make_feature("keep", "User Login"), [])
        assert await feature_storage.merge("keep", "missing", {}) is False
        assert await feature_storage.merge("keep", "keep", {}) is False

    async def test_apply_hierarchy_creates_epics_then_links(self, feature_storage: InMemoryFeatureStorage) -> None:
        await feature_storage.add_with_links(make_feature("story", "Video Playback"), [])
        pending = PendingEpic(name="Media Streaming", description="Watching content")
        plan = HierarchyPlan(
            classifications=(FeatureClassification(feature_id="story", feature_name="Video Playback", feature_type=FeatureType.STORY),),
            assignments=(ParentAssignment(child_id="story", parent_id=pending.key, confidence=0.8),),
            pending_epics=(pending, pending),
        )

        created = await feature_storage.apply_hierarchy(plan, now=BASE_TIME)

        assert list(created) == [pending.key]
        epic = await feature_storage.get(created[pending.key])
        assert epic is not None
        assert epic.name == "Media Streaming"
        assert epic.metadata["synthetic"] is True
        story = await feature_storage.get("story")
        assert story is not None
        assert story.feature_type == FeatureType.STORY
        assert story.hierarchy_level == 1
        assert story.parent_id == epic.feature_id
        assert story.metadata["parent_detected_confidence"] == 0.8

    async def test_apply_hierarchy_rolls_back_on_failure(self, feature_storage: InMemoryFeatureStorage) -> None:
        await feature_storage.add_with_links(make_feature("story", "Video Playback"), [])
        plan = ExplodingPlan(pending_epics=(PendingEpic(name="Media Streaming"),))

        with pytest.raises(RuntimeError):
            await feature_storage.apply_hierarchy(plan)

        assert await feature_storage.count() == 1
        assert (await feature_storage.get("story")) == make_feature("story", "Video Playback")


class TestMergingHelpers:
    def test_append_provenance(self) -> None:
        merged = append_provenance({"merged_from": "a", "reasoning": "r"}, {"merged_from": "b", "merge_reasoning": "x"})
        assert merged == {"merged_from": ["a", "b"], "reasoning": "r", "merge_reasoning": ["x"]}

    def test_is_ancestor(self) -> None:
        parent_ids = {"root": None, "middle": "root", "leaf": "middle"}
        assert is_ancestor("root", "leaf", parent_ids)
        assert is_ancestor("middle", "leaf", parent_ids)
        assert not is_ancestor("leaf", "root", parent_ids)
        assert not is_ancestor("leaf", "leaf", parent_ids)

    def test_is_ancestor_stops_on_existing_cycle(self) -> None:
        assert not is_ancestor("other", "a", {"a": "b", "b": "a"})


class TestJobStorage:
    async def test_claim_oldest_first(self, job_storage: InMemoryJobStorage) -> None:
        first = await job_storage.create_job("doc-1", JobType.EXTRACT, 3)
        second = await job_storage.create_job("doc-2", JobType.EXTRACT, 3)

        claimed = await job_storage.claim_next_pending(BASE_TIME)
        assert claimed is not None
        assert claimed.job_id == min((first, second), key=lambda j: (j.created_at, j.job_id)).job_id
        assert claimed.status == JobStatus.PROCESSING
        assert claimed.started_at == BASE_TIME

    async def test_claim_none_when_empty(self, job_storage: InMemoryJobStorage) -> None:
        assert await job_storage.claim_next_pending(BASE_TIME) is None

    async def test_concurrent_claims_are_exclusive(self, job_storage: InMemoryJobStorage) -> None:
        jobs = [await job_storage.create_job(f"doc-{i}", JobType.EXTRACT, 3) for i in range(5)]

        results = await asyncio.gather(*(job_storage.claim_next_pending(BASE_TIME) for _ in range(12)))

        claimed = [job.job_id for job in results if job is not None]
        assert len(claimed) == 5
        assert sorted(claimed) == sorted(job.job_id for job in jobs)

    async def test_reset_and_counts(self, job_storage: InMemoryJobStorage) -> None:
        await job_storage.create_job("doc-1", JobType.EXTRACT, 3)
        await job_storage.create_job("doc-2", JobType.EXTRACT, 3)
        await job_storage.claim_next_pending(BASE_TIME)

        assert await job_storage.count_jobs_by_status() == {"pending": 1, "processing": 1, "completed": 0, "failed": 0}
        assert await job_storage.reset_processing_jobs() == 1
        assert (await job_storage.count_jobs_by_status())["pending"] == 2

    async def test_document_updates(self, job_storage: InMemoryJobStorage) -> None:
        await job_storage.add_document(Document(document_id="doc-1", filename="spec.pdf"))
        updated = await job_storage.update_document("doc-1", status=DocumentStatus.COMPLETED, processed_at=BASE_TIME + timedelta(hours=1))
        assert updated is not None
        assert updated.status == DocumentStatus.COMPLETED
        assert await job_storage.update_document("missing", status=DocumentStatus.FAILED) is None
