"""Tests for embedding providers."""

import base64
import os
import struct
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import sqlite_vec

from knowledge_store.core.embedding_providers import (
    MAX_ATTEMPTS,
    EmbeddingError,
    OpenAIProvider,
    get_provider,
)
from knowledge_store.core.settings import Settings


def ok_response(data):
    response = MagicMock()
    response.json.return_value = {"data": data}
    response.raise_for_status = MagicMock()
    return response


def error_response(status, text=""):
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.raise_for_status.side_effect = httpx.HTTPStatusError(
        f"HTTP {status}", request=MagicMock(), response=response
    )
    return response


def test_serialize_float32_for_storage():
    """Vectors are stored as packed float32."""
    result = sqlite_vec.serialize_float32([1.0, 2.0, 3.0])
    assert isinstance(result, bytes)
    assert len(result) == 12


def test_unknown_model():
    with pytest.raises(ValueError, match="Unknown OpenAI model"):
        OpenAIProvider("test-key", model="text-embedding-9")


def test_get_provider_from_settings():
    env = {"OPENAI_API_KEY": " sk-test ", "EMBEDDING_MODEL": "text-embedding-3-large"}
    with patch.dict(os.environ, env, clear=True):
        provider = get_provider(Settings.from_env())
    assert provider.model_id == "text-embedding-3-large"
    assert provider.dimensions == 3072


def test_get_provider_unknown():
    with patch.dict(os.environ, {"EMBEDDING_PROVIDER": "ollama"}, clear=True):
        with pytest.raises(ValueError, match="ollama"):
            get_provider(Settings.from_env())


@pytest.mark.asyncio
async def test_embed_empty_list():
    assert await OpenAIProvider(api_key="test-key").embed([]) == []


@pytest.mark.asyncio
async def test_embed_no_api_key():
    with patch.dict(os.environ, {}, clear=True):
        provider = get_provider(Settings.from_env())
    with pytest.raises(EmbeddingError, match="OPENAI_API_KEY") as exc:
        await provider.embed(["text"])
    assert exc.value.retriable is False


@pytest.mark.asyncio
async def test_embed_orders_by_index():
    response = ok_response(
        [
            {"embedding": [0.2, 0.2], "index": 1},
            {"embedding": [0.1, 0.1], "index": 0},
        ]
    )

    async def mock_post(*args, **kwargs):
        return response

    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        result = await OpenAIProvider(api_key="test-key").embed(["a", "b"])

    assert result == [[0.1, 0.1], [0.2, 0.2]]


@pytest.mark.asyncio
async def test_embed_decodes_base64():
    vector = [0.5, -0.25, 1.0]
    encoded = base64.b64encode(struct.pack("3f", *vector)).decode()

    async def mock_post(*args, **kwargs):
        return ok_response([{"embedding": encoded, "index": 0}])

    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        result = await OpenAIProvider(api_key="test-key").embed(["text"])

    assert result == [vector]


@pytest.mark.asyncio
async def test_embed_auth_error_not_retriable():
    async def mock_post(*args, **kwargs):
        return error_response(401)

    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        with pytest.raises(EmbeddingError) as exc:
            await OpenAIProvider(api_key="bad").embed(["text"])

    assert exc.value.retriable is False
    assert exc.value.provider == "OpenAI"


@pytest.mark.asyncio
async def test_embed_retries_rate_limit():
    responses = [error_response(429, "slow down"), ok_response([{"embedding": [1.0], "index": 0}])]

    async def mock_post(*args, **kwargs):
        return responses.pop(0)

    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        with patch("knowledge_store.core.embedding_providers.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await OpenAIProvider(api_key="test-key").embed(["text"])

    assert result == [[1.0]]
    sleep.assert_awaited_once()


@pytest.mark.asyncio
async def test_embed_quota_exhausted():
    async def mock_post(*args, **kwargs):
        return error_response(429, "You exceeded your current quota")

    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        with pytest.raises(EmbeddingError, match="quota"):
            await OpenAIProvider(api_key="test-key").embed(["text"])


@pytest.mark.asyncio
async def test_embed_server_error_is_retriable():
    async def mock_post(*args, **kwargs):
        return error_response(503, "upstream overloaded")

    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        with pytest.raises(EmbeddingError, match="503") as exc:
            await OpenAIProvider(api_key="test-key").embed(["text"])

    assert exc.value.retriable is True


@pytest.mark.asyncio
async def test_embed_missing_vectors():
    async def mock_post(*args, **kwargs):
        return ok_response([{"embedding": [1.0], "index": 0}])

    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        with pytest.raises(EmbeddingError, match="1 embeddings for 2 inputs"):
            await OpenAIProvider(api_key="test-key").embed(["a", "b"])


@pytest.mark.asyncio
async def test_embed_gives_up_after_repeated_rate_limits():
    calls = []

    async def mock_post(*args, **kwargs):
        calls.append(kwargs["json"]["model"])
        return error_response(429, "slow down")

    with patch("httpx.AsyncClient.post", side_effect=mock_post):
        with patch("knowledge_store.core.embedding_providers.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(EmbeddingError, match="Rate limit") as exc:
                await OpenAIProvider(api_key="test-key").embed(["text"])

    assert exc.value.retriable is True
    assert len(calls) == MAX_ATTEMPTS
