"""Oracle clients, pacing, prompts and response schemas."""

from featuregraph.pipeline.embedding import EmbeddingGeneratorInterface, OllamaEmbeddingGenerator
from featuregraph.pipeline.llm_client import LLMClientInterface, OllamaLLMClient
from featuregraph.pipeline.scheduler import OracleScheduler

__all__ = [
    "EmbeddingGeneratorInterface",
    "OllamaEmbeddingGenerator",
    "LLMClientInterface",
    "OllamaLLMClient",
    "OracleScheduler",
]
