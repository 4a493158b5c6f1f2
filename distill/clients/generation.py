"""Generation and embedding services.

The language model is an untrusted, fallible oracle: text in, text out. The
pipeline never assumes a reply is well-formed; parsing happens in the stage
that asked the question.

Usage:
    ollama = OllamaClient("http://localhost:11434", model="qwen2.5-coder:7b")
    reply = ollama.generate("Score this chunk 0-10 ...")
    vector = ollama.embed("some text")
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx

from ..errors import SoftParseFailure
from .http import probe, request_json

logger = logging.getLogger(__name__)


@runtime_checkable
class GenerationService(Protocol):
    """Text-in, text-out model.

    Raises ServiceUnavailable when unreachable and a SoftFailure subclass for
    timeouts and error responses.
    """

    def generate(self, prompt: str) -> str: ...


@runtime_checkable
class EmbeddingService(Protocol):
    """Maps text to a fixed-dimensional vector."""

    def embed(self, text: str) -> list[float]: ...


class OllamaClient:
    """Generation and embedding backed by a local Ollama server.

    Args:
        url: Base URL of the Ollama API.
        model: Model used by ``generate``.
        embedding_model: Model used by ``embed``.
        timeout: Timeout in seconds for a generation call.
        embed_timeout: Timeout in seconds for an embedding call.
        health_timeout: Timeout for the start-up health probe.
        temperature: Sampling temperature.
        max_tokens: Upper bound on generated tokens (``num_predict``).
        client: Optional preconfigured httpx.Client.
    """

    service = "ollama"

    def __init__(
        self,
        url: str = "http://localhost:11434",
        model: str = "qwen2.5-coder:7b",
        embedding_model: str = "nomic-embed-text",
        timeout: float = 120.0,
        embed_timeout: float = 30.0,
        health_timeout: float = 3.0,
        temperature: float = 0.3,
        max_tokens: int = 500,
        client: httpx.Client | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self.model = model
        self.embedding_model = embedding_model
        self._timeout = httpx.Timeout(timeout)
        self._embed_timeout = httpx.Timeout(embed_timeout)
        self._health_timeout = health_timeout
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client = client or httpx.Client()

    def close(self) -> None:
        self._client.close()

    def health(self) -> bool:
        return probe(self._client, f"{self._url}/api/tags", self._health_timeout)

    def generate(self, prompt: str) -> str:
        data = request_json(
            self._client,
            self.service,
            "POST",
            f"{self._url}/api/generate",
            json={
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": self._temperature,
                    "num_predict": self._max_tokens,
                },
            },
            timeout=self._timeout,
        )
        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise SoftParseFailure("ollama generate reply has no 'response' field")
        return text.strip()

    def embed(self, text: str) -> list[float]:
        data = request_json(
            self._client,
            self.service,
            "POST",
            f"{self._url}/api/embeddings",
            json={"model": self.embedding_model, "prompt": text},
            timeout=self._embed_timeout,
        )
        vector = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(vector, list) or not vector:
            raise SoftParseFailure("ollama embeddings reply has no 'embedding' vector")
        return [float(v) for v in vector]
