"""Load pipeline configuration from TOML (e.g. featuregraph.toml).

Config file is looked up in order:
  1. Path in FEATUREGRAPH_CONFIG env var (if set)
  2. featuregraph.toml in the current working directory

Environment variables override file values:
  DATABASE_URL, EXTRACTION_TIMEOUT_MS, MAX_RETRIES, QUEUE_CONCURRENCY,
  OLLAMA_HOST, FEATUREGRAPH_LLM_MODEL, FEATUREGRAPH_EMBEDDING_MODEL.

If no file is found, built-in defaults are used.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

CONFIG_ENV = "FEATUREGRAPH_CONFIG"
CONFIG_FILENAME = "featuregraph.toml"


class QueueConfig(BaseModel, frozen=True):
    """Job queue limits."""

    concurrency_limit: int = Field(default=3, ge=1, description="Max jobs in flight per queue instance.")
    timeout_seconds: float = Field(default=60.0, gt=0, description="Wall-clock limit for one job attempt.")
    max_retries: int = Field(default=3, ge=0, description="Retries allowed before a job fails permanently.")
    poll_interval_seconds: float = Field(default=5.0, gt=0, description="Worker sleep when the queue is empty.")


class ClusteringConfig(BaseModel, frozen=True):
    """DBSCAN parameters. eps is a cosine distance, so 0.3 means similarity > 0.7."""

    eps: float = Field(default=0.3, gt=0.0, le=2.0)
    min_samples: int = Field(default=3, ge=1)


class OracleConfig(BaseModel, frozen=True):
    """Oracle endpoints and pacing."""

    ollama_host: str = "http://localhost:11434"
    llm_model: str = "llama3.1:8b"
    embedding_model: str = "nomic-embed-text"
    request_timeout_seconds: float = Field(default=300.0, gt=0)
    embedding_batch_size: int = Field(default=100, ge=1)
    max_concurrent: int = Field(default=5, ge=1)
    min_interval_seconds: float = Field(default=0.0, ge=0.0)
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0.0)


class InferenceConfig(BaseModel, frozen=True):
    """Hypothesis generation and deduplication settings."""

    hypothesis_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    comparison_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    similarity_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    default_link_strength: float = Field(default=0.5, ge=0.0, le=1.0)


class HierarchyConfig(BaseModel, frozen=True):
    """Hierarchy builder settings."""

    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    parent_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    synthesized_assignment_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    epic_match_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    max_ancestor_depth: int = Field(default=10, ge=1)


class PipelineConfig(BaseModel, frozen=True):
    """Top-level configuration for the evidence-to-feature pipeline."""

    database_url: str = "sqlite:///./featuregraph.db"
    queue: QueueConfig = Field(default_factory=QueueConfig)
    clustering: ClusteringConfig = Field(default_factory=ClusteringConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    hierarchy: HierarchyConfig = Field(default_factory=HierarchyConfig)


def _default_config_paths() -> list[Path]:
    """Return paths to check for featuregraph.toml (first existing wins)."""
    paths: list[Path] = []
    if os.environ.get(CONFIG_ENV):
        paths.append(Path(os.environ[CONFIG_ENV]))
    paths.append(Path.cwd() / CONFIG_FILENAME)
    return paths


def _read_toml(paths: list[Path]) -> dict[str, Any]:
    for path in paths:
        if path.is_file():
            with open(path, "rb") as f:
                return tomllib.load(f)
    return {}


def _apply_env_overrides(data: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    out = {key: (dict(value) if isinstance(value, dict) else value) for key, value in data.items()}
    queue = out.setdefault("queue", {})
    oracle = out.setdefault("oracle", {})
    if environ.get("DATABASE_URL"):
        out["database_url"] = environ["DATABASE_URL"]
    if environ.get("EXTRACTION_TIMEOUT_MS"):
        queue["timeout_seconds"] = int(environ["EXTRACTION_TIMEOUT_MS"]) / 1000.0
    if environ.get("MAX_RETRIES"):
        queue["max_retries"] = int(environ["MAX_RETRIES"])
    if environ.get("QUEUE_CONCURRENCY"):
        queue["concurrency_limit"] = int(environ["QUEUE_CONCURRENCY"])
    if environ.get("OLLAMA_HOST"):
        oracle["ollama_host"] = environ["OLLAMA_HOST"]
    if environ.get("FEATUREGRAPH_LLM_MODEL"):
        oracle["llm_model"] = environ["FEATUREGRAPH_LLM_MODEL"]
    if environ.get("FEATUREGRAPH_EMBEDDING_MODEL"):
        oracle["embedding_model"] = environ["FEATUREGRAPH_EMBEDDING_MODEL"]
    return out


def load_config(path: Path | None = None, environ: dict[str, str] | None = None) -> PipelineConfig:
    """Load the pipeline config.

    Args:
        path: Explicit TOML file. When None, the default lookup order applies.
        environ: Environment mapping for overrides (defaults to os.environ).

    Returns:
        A validated, frozen PipelineConfig.

    Raises:
        pydantic.ValidationError: If the file or overrides hold invalid values.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
    """
    paths = [path] if path is not None else _default_config_paths()
    data = _read_toml(paths)
    data = _apply_env_overrides(data, dict(os.environ) if environ is None else environ)
    return PipelineConfig.model_validate(data)
