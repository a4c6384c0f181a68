"""Shared fixtures: fake model servers behind httpx.MockTransport."""
import json
from typing import Callable, List, Optional

import httpx
import pytest
import pytest_asyncio

from docqa.llm_client import GenerationClient
from docqa.rag.chunker import TextChunker
from docqa.rag.embedder import EmbeddingClient
from docqa.rag.orchestrator import RetrievalOrchestrator
from docqa.rag.store_faiss import FAISSVectorStore
from docqa.retry import RetryPolicy

DIMENSION = 8
EMBED_URL = "http://embed.test/v1"
CHAT_URL = "http://chat.test/v1"


def fake_embedding(text: str, dimension: int = DIMENSION) -> List[float]:
    """Bag-of-words vector: identical word sets give identical vectors."""
    vector = [0.0] * dimension
    for word in text.lower().split():
        vector[sum(word.encode("utf-8")) % dimension] += 1.0
    return vector


class FakeEmbeddingServer:
    """Answers ``POST /embeddings``; ``failures`` are served first, in order."""

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.requests: List[dict] = []
        self.failures: list = []
        self.fail_when: Optional[Callable[[List[str]], bool]] = None
        self.reverse_order = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.path.endswith("/models"):
            return httpx.Response(200, json={"data": [{"id": "fake-embed"}]})

        payload = json.loads(request.content)
        self.requests.append(payload)

        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return httpx.Response(failure, json={"error": "unavailable"})

        if self.fail_when is not None and self.fail_when(payload["input"]):
            return httpx.Response(500, json={"error": "boom"})

        data = [
            {"index": i, "embedding": fake_embedding(text, self.dimension)}
            for i, text in enumerate(payload["input"])
        ]
        if self.reverse_order:
            data.reverse()
        return httpx.Response(200, json={"data": data, "model": payload["model"]})

    @property
    def texts_embedded(self) -> int:
        return sum(len(r["input"]) for r in self.requests)


class FakeChatServer:
    """Answers ``/chat/completions`` (plain and SSE) and ``/models``; ``failures`` are served first."""

    def __init__(self):
        self.requests: List[dict] = []
        self.failures: list = []
        self.reply = "  The answer, verbatim.\n"
        self.fragments = ["The ", "answer", "."]
        self.models = ["fake-chat", "fake-embed"]
        self.raw_body: Optional[str] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.path.endswith("/models"):
            return httpx.Response(200, json={"data": [{"id": m} for m in self.models]})

        payload = json.loads(request.content)
        self.requests.append(payload)

        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return httpx.Response(failure, json={"error": "unavailable"})

        if self.raw_body is not None:
            return httpx.Response(200, content=self.raw_body.encode("utf-8"))

        if payload.get("stream"):
            events = [{"choices": [{"index": 0, "delta": {"role": "assistant"}}]}]
            events += [
                {"choices": [{"index": 0, "delta": {"content": f}}]} for f in self.fragments
            ]
            lines = [f"data: {json.dumps(e)}" for e in events] + ["data: [DONE]"]
            return httpx.Response(
                200,
                content=("\n\n".join(lines) + "\n\n").encode("utf-8"),
                headers={"content-type": "text/event-stream"},
            )

        return httpx.Response(
            200,
            json={
                "model": payload["model"],
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": self.reply},
                        "finish_reason": "stop",
                    }
                ],
            },
        )

    @property
    def last_messages(self) -> List[dict]:
        return self.requests[-1]["messages"]


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff=0, backoff_max=0)


@pytest.fixture
def embedding_server() -> FakeEmbeddingServer:
    return FakeEmbeddingServer()


@pytest.fixture
def chat_server() -> FakeChatServer:
    return FakeChatServer()


def make_embedder(server: FakeEmbeddingServer, retry_policy: RetryPolicy, **kwargs) -> EmbeddingClient:
    options = {"max_batch_size": 4, "max_concurrency": 2, "dimension": 0}
    options.update(kwargs)
    return EmbeddingClient(
        base_url=EMBED_URL,
        model="fake-embed",
        retry_policy=retry_policy,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(server.handler)),
        **options,
    )


def make_generator(server: FakeChatServer, retry_policy: RetryPolicy) -> GenerationClient:
    return GenerationClient(
        base_url=CHAT_URL,
        model="fake-chat",
        retry_policy=retry_policy,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(server.handler)),
    )


@pytest.fixture
def embed_text() -> Callable[[str], List[float]]:
    return fake_embedding


@pytest_asyncio.fixture
async def embedder_factory(retry_policy):
    """Build extra embedding clients; all are closed after the test."""
    clients = []

    def factory(server: FakeEmbeddingServer, **kwargs) -> EmbeddingClient:
        client = make_embedder(server, retry_policy, **kwargs)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.aclose()


@pytest_asyncio.fixture
async def embedder(embedding_server, retry_policy):
    client = make_embedder(embedding_server, retry_policy)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def generator(chat_server, retry_policy):
    client = make_generator(chat_server, retry_policy)
    yield client
    await client.aclose()


@pytest.fixture
def vector_store(tmp_path) -> FAISSVectorStore:
    return FAISSVectorStore(index_dir=tmp_path / "index")


@pytest.fixture
def orchestrator(embedder, vector_store, generator) -> RetrievalOrchestrator:
    return RetrievalOrchestrator(
        chunker=TextChunker(chunk_size=5, chunk_overlap=1),
        embedder=embedder,
        vector_store=vector_store,
        generator=generator,
        collection="docs",
        top_k=3,
        min_score=0.5,
        document_concurrency=1,
    )
