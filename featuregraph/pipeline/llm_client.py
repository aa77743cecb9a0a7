"""LLM client abstraction for feature inference.

The inference oracle answers three kinds of questions: "what feature does this
cluster describe", "are these two features duplicates", and "where does this
feature sit in the hierarchy". Every answer is requested as JSON; this module
extracts the JSON from the raw model text and leaves schema validation to the
call site.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any

import httpx
import ollama

from featuregraph.errors import OracleTimeoutError, OracleValidationError, RetryableError

SYSTEM_PROMPT = (
    "You are an expert product analyst who infers product features from evidence. "
    "Return ONLY valid JSON in the exact format requested."
)


class LLMClientInterface(ABC):
    """Abstract interface for LLM clients."""

    @abstractmethod
    async def generate_json(
        self,
        prompt: str,
        temperature: float = 0.1,
    ) -> dict[str, Any] | list[Any]:
        """Generate structured JSON response from a prompt.

        Raises:
            OracleValidationError: If the response holds no valid JSON.
            RetryableError: If the model could not be reached or timed out.
        """


def find_matching_bracket(text: str, start: int, open_char: str, close_char: str) -> int:
    """Return the index just past the bracket closing `text[start]`, or -1."""
    count = 1
    i = start + 1
    in_string = False
    while i < len(text) and count > 0:
        ch = text[i]
        if in_string:
            if ch == "\\":
                i += 1
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == open_char:
            count += 1
        elif ch == close_char:
            count -= 1
        i += 1
    return i if count == 0 else -1


def parse_json_from_text(response_text: str) -> dict[str, Any] | list[Any]:
    """Extract and parse the first complete JSON structure from model output.

    Handles markdown code fences and leading prose. Whichever of `{` or `[`
    appears first is tried first, so an object containing arrays parses as
    the object.

    Raises:
        OracleValidationError: If no valid JSON is found.
    """
    response_text = response_text.strip()
    if response_text.startswith("```"):
        lines = response_text.split("\n")
        response_text = "\n".join(lines[1:-1] if lines[-1].strip().startswith("```") else lines[1:])

    starts = sorted(
        (pos, open_char, close_char)
        for open_char, close_char in (("{", "}"), ("[", "]"))
        if (pos := response_text.find(open_char)) != -1
    )
    for json_start, open_char, close_char in starts:
        json_end = find_matching_bracket(response_text, json_start, open_char, close_char)
        if json_end == -1:
            continue
        try:
            return json.loads(response_text[json_start:json_end])
        except json.JSONDecodeError:
            continue

    raise OracleValidationError(f"No valid JSON found in response: {response_text[:200]}")


class OllamaLLMClient(LLMClientInterface):
    """Ollama LLM client implementation."""

    def __init__(
        self,
        model: str = "llama3.1:8b",
        host: str = "http://localhost:11434",
        timeout: float = 300.0,
    ):
        """Initialize Ollama client.

        Args:
            model: Ollama model name (e.g., "llama3.1:8b")
            host: Ollama server URL
            timeout: Request timeout in seconds (default: 300)
        """
        self.model = model
        self.host = host
        self.timeout = timeout
        self._client = ollama.Client(host=host, timeout=timeout)

    async def _run(self, fn) -> Any:
        # The ollama client is synchronous; keep it off the event loop.
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise OracleTimeoutError(f"Ollama request timed out after {self.timeout}s") from e
        except ollama.ResponseError as e:
            if e.status_code == 429 or e.status_code >= 500:
                raise RetryableError(f"Ollama returned {e.status_code}: {e.error}") from e
            raise OracleValidationError(f"Ollama rejected the request: {e.error}") from e
        except (httpx.HTTPError, ConnectionError) as e:
            raise RetryableError(f"Ollama request failed: {e}") from e

    async def generate_json(
        self,
        prompt: str,
        temperature: float = 0.1,
    ) -> dict[str, Any] | list[Any]:
        def _chat():
            response = self._client.chat(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                options={"temperature": temperature},
            )
            return response["message"]["content"]

        response_text = await self._run(_chat)
        return parse_json_from_text(response_text or "")
