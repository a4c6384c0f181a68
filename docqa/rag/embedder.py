"""Embedding client for the OpenAI-compatible ``/embeddings`` endpoint.

Handles:
- Splitting input into bounded batches
- Bounded concurrency across batches and callers
- Retry with exponential backoff on transient failures
- Output order and dimensionality checks
"""
import asyncio
from typing import List, Optional, Sequence

import httpx
import structlog
from pydantic import ValidationError

from docqa import config
from docqa.errors import EmbeddingServiceUnavailable, InvalidConfiguration
from docqa.llm_client import OpenAICompatClient
from docqa.models import EmbeddingVector
from docqa.retry import async_retrying
from docqa.schemas import EmbeddingResponse

logger = structlog.get_logger()


class EmbeddingClient(OpenAICompatClient):
    """Batched, retrying embedding client."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        max_batch_size: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        dimension: Optional[int] = None,
        **kwargs,
    ):
        """Initialize the embedding client.

        Args:
            base_url: Embedding API base URL (default from config)
            model: Embedding model name (default from config)
            max_batch_size: Max texts per request (default from config)
            max_concurrency: Max batches in flight across all callers (default from config)
            dimension: Expected vector length; 0 or None disables the check
            **kwargs: timeout, retry_policy and http_client for OpenAICompatClient
        """
        super().__init__(base_url or config.EMBEDDING_BASE_URL, **kwargs)
        self.model = model or config.EMBEDDING_MODEL
        self.max_batch_size = max_batch_size or config.EMBEDDING_BATCH_SIZE
        self.max_concurrency = max_concurrency or config.EMBEDDING_CONCURRENCY
        self.dimension = dimension if dimension is not None else config.EMBEDDING_DIMENSION

        if self.max_batch_size < 1 or self.max_concurrency < 1:
            raise InvalidConfiguration(
                "Embedding batch size and concurrency must be positive "
                f"(batch_size={self.max_batch_size}, concurrency={self.max_concurrency})"
            )

        self._semaphore = asyncio.Semaphore(self.max_concurrency)

        logger.info(
            "embedding_client_initialized",
            base_url=self.base_url,
            model=self.model,
            max_batch_size=self.max_batch_size,
            max_concurrency=self.max_concurrency,
        )

    async def embed(self, texts: Sequence[str]) -> List[EmbeddingVector]:
        """Embed texts, preserving input length and order.

        Args:
            texts: Texts to embed (empty strings are embedded too)

        Returns:
            One vector per input text

        Raises:
            EmbeddingServiceUnavailable: If any batch fails after retries; no
                partial result is returned
            InvalidConfiguration: If a vector has the wrong dimensionality
        """
        texts = list(texts)
        if not texts:
            return []

        batches = [
            texts[i : i + self.max_batch_size]
            for i in range(0, len(texts), self.max_batch_size)
        ]

        results = await asyncio.gather(
            *(self._embed_batch(index, batch) for index, batch in enumerate(batches)),
            return_exceptions=True,
        )

        failed = [
            index
            for index, result in enumerate(results)
            if isinstance(result, EmbeddingServiceUnavailable)
        ]
        for result in results:
            if isinstance(result, BaseException) and not isinstance(
                result, EmbeddingServiceUnavailable
            ):
                raise result
        if failed:
            first = results[failed[0]]
            raise EmbeddingServiceUnavailable(
                f"Embedding failed for {len(failed)} of {len(batches)} batches",
                batch_indices=failed,
                attempts=first.attempts,
                status_code=first.status_code,
            ) from first

        embeddings = [vector for batch_vectors in results for vector in batch_vectors]

        logger.debug(
            "texts_embedded",
            text_count=len(texts),
            batch_count=len(batches),
        )

        return embeddings

    async def embed_query(self, text: str) -> EmbeddingVector:
        """Embed a single query string."""
        return (await self.embed([text]))[0]

    async def detect_dimension(self) -> int:
        """Detect embedding dimension by embedding a test string.

        Returns:
            Embedding dimension
        """
        logger.info("detecting_embedding_dimension", model=self.model)
        dimension = len(await self.embed_query("test"))
        logger.info("embedding_dimension_detected", dimension=dimension)
        return dimension

    async def _embed_batch(self, batch_index: int, batch: List[str]) -> List[EmbeddingVector]:
        payload = {"model": self.model, "input": batch}
        retrying = async_retrying(self.retry_policy)

        async with self._semaphore:
            logger.debug(
                "embedding_batch_request",
                batch_index=batch_index,
                batch_size=len(batch),
            )
            try:
                async with self._client() as client:
                    async for attempt in retrying:
                        with attempt:
                            response = await client.post(
                                f"{self.base_url}/embeddings",
                                json=payload,
                            )
                            response.raise_for_status()
                            data = response.json()
            except httpx.HTTPError as e:
                attempts = retrying.statistics.get("attempt_number", 1)
                status_code = getattr(getattr(e, "response", None), "status_code", None)
                logger.error(
                    "embedding_batch_failed",
                    batch_index=batch_index,
                    attempts=attempts,
                    status_code=status_code,
                    error=str(e),
                )
                raise EmbeddingServiceUnavailable(
                    f"Embedding request failed: {e}",
                    batch_indices=[batch_index],
                    attempts=attempts,
                    status_code=status_code,
                ) from e
            except ValueError as e:
                raise EmbeddingServiceUnavailable(
                    f"Embedding response is not valid JSON: {e}",
                    batch_indices=[batch_index],
                ) from e

        try:
            vectors = EmbeddingResponse.model_validate(data).ordered_vectors()
        except ValidationError as e:
            raise EmbeddingServiceUnavailable(
                f"Malformed embedding response: {e}",
                batch_indices=[batch_index],
            ) from e

        if len(vectors) != len(batch):
            raise EmbeddingServiceUnavailable(
                f"Expected {len(batch)} embeddings, got {len(vectors)}",
                batch_indices=[batch_index],
            )

        if self.dimension:
            for vector in vectors:
                if len(vector) != self.dimension:
                    raise InvalidConfiguration(
                        f"Embedding dimension mismatch: model {self.model} returned "
                        f"{len(vector)}, expected {self.dimension}"
                    )

        return vectors
