"""Tests for the batched, retrying embedding client."""
import httpx
import pytest

from docqa.errors import EmbeddingServiceUnavailable, InvalidConfiguration
from docqa.rag.embedder import EmbeddingClient


async def test_embed_preserves_order_across_batches(embedder, embedding_server, embed_text):
    texts = [f"text number {i}" for i in range(10)]

    vectors = await embedder.embed(texts)

    assert vectors == [embed_text(t) for t in texts]
    assert sorted(len(r["input"]) for r in embedding_server.requests) == [2, 4, 4]
    assert all(r["model"] == "fake-embed" for r in embedding_server.requests)


async def test_embed_reorders_by_response_index(embedder, embedding_server, embed_text):
    embedding_server.reverse_order = True
    texts = ["alpha", "beta gamma", "delta"]

    assert await embedder.embed(texts) == [embed_text(t) for t in texts]


async def test_empty_input_makes_no_requests(embedder, embedding_server):
    assert await embedder.embed([]) == []
    assert embedding_server.requests == []


async def test_rate_limited_twice_then_success(embedder, embedding_server, embed_text):
    embedding_server.failures = [429, 429]

    vectors = await embedder.embed(["hello world"])

    assert vectors == [embed_text("hello world")]
    assert len(embedding_server.requests) == 3


async def test_transport_errors_are_retried(embedder, embedding_server, embed_text):
    request = httpx.Request("POST", "http://embed.test/v1/embeddings")
    embedding_server.failures = [httpx.ConnectError("refused", request=request)]

    assert await embedder.embed(["hi"]) == [embed_text("hi")]
    assert len(embedding_server.requests) == 2


async def test_timeout_is_retried(embedder, embedding_server, embed_text):
    request = httpx.Request("POST", "http://embed.test/v1/embeddings")
    embedding_server.failures = [httpx.ReadTimeout("timed out", request=request)]

    assert await embedder.embed(["hi"]) == [embed_text("hi")]
    assert len(embedding_server.requests) == 2


async def test_repeated_timeouts_exhaust_the_budget(embedder, embedding_server):
    request = httpx.Request("POST", "http://embed.test/v1/embeddings")
    embedding_server.failures = [httpx.ConnectTimeout("timed out", request=request)] * 3

    with pytest.raises(EmbeddingServiceUnavailable) as excinfo:
        await embedder.embed(["hello"])

    assert excinfo.value.attempts == 3
    assert excinfo.value.status_code is None
    assert len(embedding_server.requests) == 3


async def test_retry_budget_exhausted(embedder, embedding_server):
    embedding_server.failures = [503, 503, 503]

    with pytest.raises(EmbeddingServiceUnavailable) as excinfo:
        await embedder.embed(["hello"])

    assert excinfo.value.batch_indices == [0]
    assert excinfo.value.attempts == 3
    assert excinfo.value.status_code == 503
    assert len(embedding_server.requests) == 3


async def test_failed_batch_is_identified(embedder, embedding_server):
    embedding_server.fail_when = lambda inputs: any("bad" in t for t in inputs)
    texts = ["ok one", "ok two", "ok three", "ok four", "ok five", "bad six"]

    with pytest.raises(EmbeddingServiceUnavailable) as excinfo:
        await embedder.embed(texts)

    assert excinfo.value.batch_indices == [1]
    assert "batches=[1]" in str(excinfo.value)


async def test_client_errors_are_not_retried(embedder, embedding_server):
    embedding_server.failures = [400]

    with pytest.raises(EmbeddingServiceUnavailable) as excinfo:
        await embedder.embed(["hello"])

    assert excinfo.value.status_code == 400
    assert len(embedding_server.requests) == 1


async def test_dimension_mismatch_is_a_configuration_error(embedder_factory, embedding_server):
    client = embedder_factory(embedding_server, dimension=16)

    with pytest.raises(InvalidConfiguration):
        await client.embed(["hello"])


async def test_detect_dimension(embedder):
    assert await embedder.detect_dimension() == 8


def test_invalid_batch_size_rejected(embedding_server, retry_policy):
    with pytest.raises(InvalidConfiguration):
        EmbeddingClient(base_url="http://embed.test/v1", max_batch_size=-1, retry_policy=retry_policy)
