import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from site_ingest.config import settings
from site_ingest.core.embedder import (
    BaseEmbedder,
    Embedder,
    OpenAIEmbedder,
    generate_embeddings_in_batches,
)
from site_ingest.core.errors import EmbeddingError


class SlowEmbedder(BaseEmbedder):
    """Finishes later batches first and records peak concurrency."""

    def __init__(self):
        self.in_flight = 0
        self.peak = 0

    async def embed_documents(self, texts):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        # Batches starting with a higher number sleep less
        await asyncio.sleep(0.01 / (1 + int(texts[0].split("-")[1])))
        self.in_flight -= 1
        return [[float(t.split("-")[1])] for t in texts]


@pytest.mark.asyncio
async def test_vectors_keep_input_order_with_concurrency():
    texts = [f"text-{i}" for i in range(10)]
    embedder = SlowEmbedder()
    vectors = await generate_embeddings_in_batches(texts, embedder, batch_size=3, max_concurrency=2)
    assert vectors == [[float(i)] for i in range(10)]
    assert embedder.peak == 2


@pytest.mark.asyncio
async def test_sequential_batches(make_embedder):
    embedder = make_embedder()
    texts = ["a", "bb", "ccc", "dddd", "eeeee"]
    vectors = await generate_embeddings_in_batches(texts, embedder, batch_size=2, max_concurrency=1)
    assert embedder.calls == [["a", "bb"], ["ccc", "dddd"], ["eeeee"]]
    assert [v[0] for v in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_empty_input_makes_no_calls(make_embedder):
    embedder = make_embedder()
    assert await generate_embeddings_in_batches([], embedder) == []
    assert embedder.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("max_concurrency", [1, 3])
async def test_failing_batch_fails_whole_call(make_embedder, max_concurrency):
    embedder = make_embedder(fail_when=lambda texts: "bad" in texts)
    with pytest.raises(EmbeddingError):
        await generate_embeddings_in_batches(
            ["ok", "fine", "bad", "ok"], embedder, batch_size=2, max_concurrency=max_concurrency
        )


@pytest.mark.asyncio
async def test_wrong_vector_count_is_an_error():
    class ShortEmbedder(BaseEmbedder):
        async def embed_documents(self, texts):
            return [[0.1]] * (len(texts) - 1)

    with pytest.raises(EmbeddingError, match="returned 1 vectors for 2 texts"):
        await generate_embeddings_in_batches(["a", "b"], ShortEmbedder(), batch_size=2)


@pytest.mark.asyncio
async def test_empty_vector_is_an_error():
    class EmptyEmbedder(BaseEmbedder):
        async def embed_documents(self, texts):
            return [[] for _ in texts]

    with pytest.raises(EmbeddingError, match="empty vectors"):
        await generate_embeddings_in_batches(["a"], EmptyEmbedder())


@pytest.mark.asyncio
async def test_invalid_batch_size(make_embedder):
    with pytest.raises(ValueError):
        await generate_embeddings_in_batches(["a"], make_embedder(), batch_size=0)


def test_credentials_configured_follows_provider_keys(monkeypatch):
    monkeypatch.setattr(settings, "OPENAI_API_KEY", None)
    monkeypatch.setattr(settings, "GEMINI_API_KEY", "gm-key")
    assert not Embedder("openai").credentials_configured()
    assert Embedder("gemini").credentials_configured()
    assert Embedder("local").credentials_configured()
    assert not Embedder("unknown").credentials_configured()

    monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")
    assert Embedder("OpenAI").credentials_configured()


def test_openai_embedder_requires_key(monkeypatch):
    monkeypatch.setattr(settings, "OPENAI_API_KEY", None)
    with pytest.raises(EmbeddingError):
        OpenAIEmbedder()


@pytest.mark.asyncio
async def test_openai_embedder_orders_by_index():
    embedder = OpenAIEmbedder(api_key="sk-test")
    response = SimpleNamespace(data=[
        SimpleNamespace(index=1, embedding=[0.2, 0.2]),
        SimpleNamespace(index=0, embedding=[0.1, 0.1]),
    ])
    create = AsyncMock(return_value=response)
    embedder.client = SimpleNamespace(embeddings=SimpleNamespace(create=create))

    vectors = await embedder.embed_documents(["first", "second"])
    assert vectors == [[0.1, 0.1], [0.2, 0.2]]
    create.assert_awaited_once_with(input=["first", "second"], model=embedder.model)


@pytest.mark.asyncio
async def test_unsupported_provider_raises_on_use():
    embedder = Embedder("word2vec")
    with pytest.raises(ValueError):
        await embedder.embed_documents(["text"])
