"""End-to-end orchestration of the evidence-to-feature pipeline.

`InferencePipeline` wires the services together and runs a full inference
pass over whatever evidence is currently stored:

    embed pending evidence -> cluster -> one feature per cluster
        -> merge duplicates -> build hierarchy

It also builds the job-queue processor that runs extraction for a document
and stores (and optionally embeds) the evidence it returns.
"""

from pydantic import BaseModel, ConfigDict

from featuregraph.clustering import ClusteringEngine
from featuregraph.config import PipelineConfig
from featuregraph.errors import DocumentNotFoundError
from featuregraph.hierarchy import FeatureHierarchyService, HierarchyCounts
from featuregraph.inference import FeatureInferenceService
from featuregraph.logging import setup_logging
from featuregraph.pipeline.embedding import EmbeddingGeneratorInterface
from featuregraph.pipeline.interfaces import EvidenceExtractorInterface
from featuregraph.pipeline.llm_client import LLMClientInterface
from featuregraph.pipeline.scheduler import OracleScheduler
from featuregraph.queue import JobProcessor, JobQueue
from featuregraph.similarity import SimilarityIndex
from featuregraph.storage.interfaces import (
    EvidenceStorageInterface,
    FeatureStorageInterface,
    JobStorageInterface,
)

logger = setup_logging()


class InferenceRunResult(BaseModel):
    """Aggregate counts from one inference run.

    Attributes:
        embeddings_generated: Evidence items embedded at the start of the run.
        clusters_found: Clusters DBSCAN produced.
        features_generated: Candidate features created from clusters.
        features_failed: Clusters skipped because the oracle answer failed.
        features_merged: Duplicate features merged away.
        hierarchy: Counts from the hierarchy build.
    """

    model_config = {"frozen": True}

    embeddings_generated: int = 0
    clusters_found: int = 0
    features_generated: int = 0
    features_failed: int = 0
    features_merged: int = 0
    hierarchy: HierarchyCounts = HierarchyCounts()


class InferencePipeline(BaseModel):
    """The wired-up pipeline services over one set of stores.

    Build one with `InferencePipeline.build(...)` rather than by hand; the
    services share a single oracle scheduler per oracle.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    evidence_storage: EvidenceStorageInterface
    feature_storage: FeatureStorageInterface
    job_storage: JobStorageInterface
    queue: JobQueue
    similarity: SimilarityIndex
    clustering: ClusteringEngine
    inference: FeatureInferenceService
    hierarchy: FeatureHierarchyService

    @classmethod
    def build(
        cls,
        config: PipelineConfig,
        evidence_storage: EvidenceStorageInterface,
        feature_storage: FeatureStorageInterface,
        job_storage: JobStorageInterface,
        embedder: EmbeddingGeneratorInterface,
        llm: LLMClientInterface,
    ) -> "InferencePipeline":
        oracle = config.oracle
        embedding_scheduler = OracleScheduler(
            max_concurrent=oracle.max_concurrent,
            min_interval=oracle.min_interval_seconds,
            max_attempts=oracle.max_attempts,
            base_delay=oracle.backoff_base_seconds,
        )
        llm_scheduler = OracleScheduler(
            max_concurrent=oracle.max_concurrent,
            min_interval=oracle.min_interval_seconds,
            max_attempts=oracle.max_attempts,
            base_delay=oracle.backoff_base_seconds,
        )
        return cls(
            evidence_storage=evidence_storage,
            feature_storage=feature_storage,
            job_storage=job_storage,
            queue=JobQueue(job_storage, config.queue),
            similarity=SimilarityIndex(evidence_storage, embedder, embedding_scheduler, oracle.embedding_batch_size),
            clustering=ClusteringEngine(evidence_storage, config.clustering),
            inference=FeatureInferenceService(feature_storage, llm, llm_scheduler, config.inference),
            hierarchy=FeatureHierarchyService(feature_storage, llm, llm_scheduler, config.hierarchy),
        )

    async def run_inference(self) -> InferenceRunResult:
        """Run embed, cluster, generate, dedup and hierarchy over current evidence.

        Per-cluster and per-pair oracle failures are counted and skipped;
        `CycleDetectedError` and storage failures abort the run.
        """
        embedded = await self.similarity.embed_pending()
        clusters = await self.clustering.cluster_evidence()
        if not clusters:
            logger.info("No clusters found; nothing to infer")
            return InferenceRunResult(embeddings_generated=embedded)

        generation = await self.inference.generate_features(clusters)
        merged = await self.inference.validate_and_merge_duplicates()
        hierarchy = await self.hierarchy.build_hierarchy_for_all_features()

        result = InferenceRunResult(
            embeddings_generated=embedded,
            clusters_found=len(clusters),
            features_generated=generation.generated,
            features_failed=generation.failed,
            features_merged=merged,
            hierarchy=hierarchy,
        )
        logger.info(result)
        return result

    def make_extraction_processor(self, extractor: EvidenceExtractorInterface, embed: bool = True) -> JobProcessor:
        """Return a queue processor that extracts and stores a document's evidence.

        Evidence from earlier runs over the same document is marked obsolete
        first. With `embed=True` the new evidence is embedded right away;
        items whose embedding batch fails are left for `embed_pending`.
        """

        async def process(document_id: str, job_id: str) -> int:
            document = await self.job_storage.get_document(document_id)
            if document is None:
                raise DocumentNotFoundError(f"Document {document_id} not found")

            items = await extractor.extract(document)
            items = [item if item.document_id == document_id else item.model_copy(update={"document_id": document_id}) for item in items]
            superseded = await self.evidence_storage.mark_document_obsolete(document_id)
            await self.evidence_storage.add_batch(items)
            logger.info(f"Job {job_id}: stored {len(items)} evidence items for {document.filename} ({superseded} superseded)")

            if embed and items:
                vectors = await self.similarity.embed_batch([item.content for item in items])
                embeddings = {item.evidence_id: vec for item, vec in zip(items, vectors) if vec is not None}
                if embeddings:
                    await self.evidence_storage.set_embeddings(embeddings)
            return len(items)

        return process
