"""Embedding providers used by the indexing worker.

A provider turns fragment texts into vectors of a fixed, known width. The
worker checks every returned vector against `dimensions` before storing it,
and records whether a failure is worth retrying on the failed job.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import struct
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from knowledge_store.core.settings import Settings

logger = logging.getLogger(__name__)

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"

OPENAI_MODEL_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
}

# Fragment text beyond this is cut off before sending (about 5000 tokens)
MAX_INPUT_CHARS = 20000

# Backoff for 429 responses
MAX_ATTEMPTS = 5
INITIAL_DELAY = 2.0
MAX_DELAY = 60.0


class EmbeddingError(Exception):
    """Provider could not produce embeddings.

    `retriable` tells the caller whether the same request may succeed later
    (rate limits, outages) or needs operator action (bad key, exhausted quota).
    """

    def __init__(self, message: str, provider: str, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class EmbeddingProvider(ABC):
    """Source of fixed-width embedding vectors."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Model identifier recorded on each stored embedding."""
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Width every returned vector must have."""
        ...

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts, one vector per input in input order.

        Raises:
            EmbeddingError: the provider failed.
        """
        ...


class OpenAIProvider(EmbeddingProvider):
    """OpenAI embeddings API, requesting base64-packed float32 vectors."""

    def __init__(self, api_key: str, model: str = DEFAULT_OPENAI_MODEL, timeout: float = 120.0):
        if model not in OPENAI_MODEL_DIMENSIONS:
            raise ValueError(
                f"Unknown OpenAI model: {model}. Available: {sorted(OPENAI_MODEL_DIMENSIONS)}"
            )
        self._api_key = api_key
        self._model = model
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "OpenAI"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return OPENAI_MODEL_DIMENSIONS[self._model]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if not self._api_key:
            raise EmbeddingError("OPENAI_API_KEY is not set", provider=self.name)

        payload = {
            "model": self._model,
            "input": [t[:MAX_INPUT_CHARS] for t in texts],
            "encoding_format": "base64",
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            body = await self._post_with_backoff(client, payload)
        return self._vectors_in_order(body.get("data", []), len(texts))

    async def _post_with_backoff(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> dict:
        delay = INITIAL_DELAY
        last_error: httpx.HTTPStatusError | None = None

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = await client.post(
                    OPENAI_EMBEDDINGS_URL,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json=payload,
                )
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                error = self._error_for(e.response)
                if error is not None:
                    raise error from e
                last_error = e
                logger.warning(
                    f"OpenAI rate limit ({attempt}/{MAX_ATTEMPTS}), retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_DELAY)
            except httpx.TransportError as e:
                raise EmbeddingError(
                    f"OpenAI API unreachable: {e}", provider=self.name, retriable=True
                ) from e

        raise EmbeddingError(
            f"Rate limit not cleared after {MAX_ATTEMPTS} attempts",
            provider=self.name,
            retriable=True,
        ) from last_error

    def _error_for(self, response: httpx.Response) -> EmbeddingError | None:
        """Map an error response to an EmbeddingError, or None to back off and retry."""
        status = response.status_code
        if status == 429:
            if "quota" in response.text.lower():
                return EmbeddingError("OpenAI quota exhausted", provider=self.name)
            return None
        if status in (401, 403):
            return EmbeddingError("OpenAI API key rejected", provider=self.name)
        return EmbeddingError(
            f"OpenAI API error: {status} - {response.text}",
            provider=self.name,
            retriable=status >= 500,
        )

    def _vectors_in_order(self, items: list[dict[str, Any]], expected: int) -> list[list[float]]:
        vectors: list[list[float] | None] = [None] * expected
        for item in items:
            vectors[item["index"]] = _decode(item["embedding"])
        if any(v is None for v in vectors):
            raise EmbeddingError(
                f"OpenAI returned {len(items)} embeddings for {expected} inputs",
                provider=self.name,
                retriable=True,
            )
        return vectors  # type: ignore[return-value]


def _decode(embedding: str | list[float]) -> list[float]:
    if isinstance(embedding, list):
        return embedding
    raw = base64.b64decode(embedding)
    return list(struct.unpack(f"<{len(raw) // 4}f", raw))


def get_provider(settings: "Settings") -> EmbeddingProvider:
    """Build the embedding provider selected by settings."""
    if settings.embedding_provider == "openai":
        return OpenAIProvider(settings.openai_api_key, model=settings.embedding_model)
    raise ValueError(f"Unknown embedding provider: {settings.embedding_provider}. Available: openai")
