"""Command-line entry point for the feature graph pipeline.

Examples:
  # Register a document and queue its extraction job
  featuregraph add-document specs/login.pdf --file-type pdf

  # Drain up to 10 queued jobs with a custom extractor
  featuregraph process --extractor mypackage.extractors:PdfExtractor

  # Run embed -> cluster -> infer -> dedup -> hierarchy
  featuregraph infer

  # Show where a feature sits in the hierarchy
  featuregraph tree 3f1c...
"""

import argparse
import asyncio
import importlib
import json
import os
import sys
import uuid
from pathlib import Path

from featuregraph.config import PipelineConfig, load_config
from featuregraph.errors import FeatureGraphError
from featuregraph.job import Document
from featuregraph.logging import setup_logging
from featuregraph.orchestrator import InferencePipeline
from featuregraph.pipeline.embedding import OllamaEmbeddingGenerator
from featuregraph.pipeline.interfaces import EvidenceExtractorInterface
from featuregraph.pipeline.llm_client import OllamaLLMClient
from featuregraph.storage.factory import Stores, create_stores

logger = setup_logging()


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="featuregraph",
        description="Infer a hierarchy of product features from extracted evidence",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to featuregraph.toml")
    parser.add_argument("--database-url", type=str, default=None, help="Override DATABASE_URL (memory:// for in-memory)")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add-document", help="Register a document and queue an extraction job")
    add.add_argument("filename", type=str)
    add.add_argument("--file-type", type=str, default="unknown")
    add.add_argument("--document-id", type=str, default=None)

    sub.add_parser("jobs", help="Show job counts by status")
    sub.add_parser("resume", help="Return interrupted jobs to pending")

    process = sub.add_parser("process", help="Process queued jobs with an extractor")
    process.add_argument("--extractor", type=str, required=True, help="Extractor class as 'module:ClassName'")
    process.add_argument("--max-jobs", type=int, default=10)
    process.add_argument("--no-embed", action="store_true", help="Store evidence without embedding it")

    sub.add_parser("embed", help="Embed evidence that has no embedding yet")
    sub.add_parser("cluster", help="Cluster embedded evidence and print the clusters")
    sub.add_parser("infer", help="Run the full inference pipeline")

    similar = sub.add_parser("similar", help="Find evidence similar to a text")
    similar.add_argument("text", type=str)
    similar.add_argument("-k", type=int, default=20)

    tree = sub.add_parser("tree", help="Show a feature's parent, children and ancestors")
    tree.add_argument("feature_id", type=str)

    children = sub.add_parser("children", help="List a feature's direct children")
    children.add_argument("feature_id", type=str)

    return parser.parse_args(argv)


def load_extractor(spec: str) -> EvidenceExtractorInterface:
    """Instantiate an extractor from a 'module:ClassName' string."""
    module_name, _, class_name = spec.partition(":")
    if not module_name or not class_name:
        raise ValueError(f"Extractor must be given as 'module:ClassName', got {spec!r}")
    extractor_cls = getattr(importlib.import_module(module_name), class_name)
    extractor = extractor_cls()
    if not isinstance(extractor, EvidenceExtractorInterface):
        raise TypeError(f"{spec} is not an EvidenceExtractorInterface")
    return extractor


def build_pipeline(config: PipelineConfig, stores: Stores) -> InferencePipeline:
    """Wire the Ollama oracles and the given stores into a pipeline."""
    oracle = config.oracle
    return InferencePipeline.build(
        config,
        evidence_storage=stores.evidence,
        feature_storage=stores.features,
        job_storage=stores.jobs,
        embedder=OllamaEmbeddingGenerator(
            model=oracle.embedding_model,
            ollama_host=oracle.ollama_host,
            timeout=oracle.request_timeout_seconds,
        ),
        llm=OllamaLLMClient(
            model=oracle.llm_model,
            host=oracle.ollama_host,
            timeout=oracle.request_timeout_seconds,
        ),
    )


def _emit(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def run_command(args: argparse.Namespace, pipeline: InferencePipeline) -> None:
    """Execute one parsed subcommand against a pipeline."""
    if args.command == "add-document":
        document = Document(
            document_id=args.document_id or str(uuid.uuid4()),
            filename=args.filename,
            file_type=args.file_type,
        )
        await pipeline.job_storage.add_document(document)
        job_id = await pipeline.queue.create_job(document.document_id)
        _emit({"document_id": document.document_id, "job_id": job_id})
    elif args.command == "jobs":
        _emit(await pipeline.queue.job_counts())
    elif args.command == "resume":
        _emit({"resumed": await pipeline.queue.resume_jobs()})
    elif args.command == "process":
        processor = pipeline.make_extraction_processor(load_extractor(args.extractor), embed=not args.no_embed)
        processed = await pipeline.queue.process_available(processor, max_jobs=args.max_jobs)
        _emit({"processed": processed, "counts": await pipeline.queue.job_counts()})
    elif args.command == "embed":
        _emit({"embedded": await pipeline.similarity.embed_pending()})
    elif args.command == "cluster":
        clusters = await pipeline.clustering.cluster_evidence()
        _emit([{"cluster_id": c.cluster_id, "size": c.size, "evidence_ids": list(c.evidence_ids)} for c in clusters])
    elif args.command == "infer":
        _emit((await pipeline.run_inference()).model_dump(mode="json"))
    elif args.command == "similar":
        results = await pipeline.similarity.find_similar(args.text, k=args.k)
        _emit([{"evidence_id": eid, "similarity": round(score, 4)} for eid, score in results])
    elif args.command == "tree":
        _emit((await pipeline.hierarchy.get_hierarchy_tree(args.feature_id)).model_dump(mode="json"))
    elif args.command == "children":
        children = await pipeline.hierarchy.get_children(args.feature_id)
        _emit([child.model_dump(mode="json") for child in children])


def main(argv: list[str] | None = None) -> int:
    args = parse_arguments(argv)
    environ = dict(os.environ)
    if args.database_url:
        environ["DATABASE_URL"] = args.database_url
    config = load_config(args.config, environ=environ)

    stores = create_stores(config.database_url)
    try:
        asyncio.run(run_command(args, build_pipeline(config, stores)))
    except FeatureGraphError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    finally:
        stores.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
