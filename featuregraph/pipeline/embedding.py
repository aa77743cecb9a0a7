"""Embedding generation for evidence text.

The similarity index turns evidence content into dense vectors so related
facts (a "Login" button, a POST /auth/login endpoint, a "users must sign in"
requirement) land close together and cluster into one feature.

`OllamaEmbeddingGenerator` uses Ollama's /api/embed endpoint, which accepts a
single text or a batch of texts in one request.
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

import httpx

from featuregraph.errors import OracleTimeoutError, OracleValidationError, RetryableError


class EmbeddingGeneratorInterface(ABC):
    """Generate semantic vector embeddings for text.

    Vectors are immutable tuples of floats. Implementations should be
    stateless apart from caching the model dimension.
    """

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the dimensionality of generated embeddings."""

    @abstractmethod
    async def generate(self, text: str) -> tuple[float, ...]:
        """Generate an embedding vector for a single text string.

        Raises:
            RetryableError: If the embedding service is unreachable or times out.
            OracleValidationError: If the service returns a malformed response.
        """

    @abstractmethod
    async def generate_batch(self, texts: Sequence[str]) -> list[tuple[float, ...]]:
        """Generate embeddings for multiple texts, in input order."""


class OllamaEmbeddingGenerator(EmbeddingGeneratorInterface):
    """Embedding generator backed by Ollama.

    Default model is nomic-embed-text (768 dimensions).
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        ollama_host: str = "http://localhost:11434",
        timeout: float = 30.0,
    ):
        self.model = model
        self.ollama_host = ollama_host
        self.timeout = timeout
        self._dimension: Optional[int] = None

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            raise RuntimeError("Dimension not yet determined. Call generate() at least once first.")
        return self._dimension

    def _url(self) -> str:
        return f"{self.ollama_host.rstrip('/')}/api/embed"

    async def generate(self, text: str) -> tuple[float, ...]:
        result = await self._request_batch([text])
        return result[0]

    async def generate_batch(self, texts: Sequence[str]) -> list[tuple[float, ...]]:
        if not texts:
            return []
        return await self._request_batch(list(texts))

    async def _request_batch(self, texts: list[str]) -> list[tuple[float, ...]]:
        """One HTTP request for one or more texts. Response order matches input order."""
        payload: dict = {"model": self.model, "input": texts[0] if len(texts) == 1 else texts}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self._url(), json=payload)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise OracleTimeoutError(f"Embedding request timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429 or e.response.status_code >= 500:
                raise RetryableError(f"Embedding service returned {e.response.status_code}") from e
            raise OracleValidationError(f"Embedding request rejected: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise RetryableError(f"Embedding request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise OracleValidationError(f"Embedding response is not JSON: {response.text[:200]}", field="embeddings") from e

        emb_list = data.get("embeddings") if isinstance(data, dict) else None
        if not emb_list or not isinstance(emb_list, list):
            raise OracleValidationError(f"Unexpected response format: {str(data)[:200]}", field="embeddings")
        if len(emb_list) != len(texts):
            raise OracleValidationError(f"Embedding count {len(emb_list)} does not match input count {len(texts)}", field="embeddings")
        try:
            vectors = [tuple(float(x) for x in e) for e in emb_list]
        except (TypeError, ValueError) as e:
            raise OracleValidationError(f"Embedding vectors must be lists of numbers: {e}", field="embeddings") from e
        if self._dimension is None:
            self._dimension = len(vectors[0])
        return vectors
