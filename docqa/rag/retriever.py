"""Retriever for semantic search over indexed documents.

Handles:
- Query embedding generation
- Vector search with relevance threshold
- Augmented prompt assembly
"""
from typing import List, Optional

import structlog

from docqa import config
from docqa.models import AugmentedPrompt, RetrievalResult
from docqa.rag.embedder import EmbeddingClient
from docqa.rag.store_faiss import FAISSVectorStore

logger = structlog.get_logger()


class Retriever:
    """Semantic retriever for RAG pipeline."""

    def __init__(
        self,
        embedder: EmbeddingClient,
        vector_store: FAISSVectorStore,
        collection: Optional[str] = None,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
    ):
        """Initialize the retriever.

        Args:
            embedder: Embedding client used for queries
            vector_store: Vector store to search
            collection: Default collection (default from config)
            top_k: Number of results to retrieve (default from config)
            min_score: Minimum cosine similarity (default from config)
        """
        self.embedder = embedder
        self.vector_store = vector_store
        self.collection = collection or config.DEFAULT_COLLECTION
        self.top_k = config.RETRIEVAL_TOP_K if top_k is None else top_k
        self.min_score = config.MIN_SCORE if min_score is None else min_score

    async def retrieve(
        self,
        query: str,
        collection: Optional[str] = None,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> List[RetrievalResult]:
        """Retrieve relevant chunks for a query.

        Args:
            query: User query text
            collection: Collection to search (overrides default)
            top_k: Number of results to return (overrides default)
            min_score: Minimum score to include results (overrides default)

        Returns:
            List of RetrievalResult objects, best first

        Raises:
            EmbeddingServiceUnavailable: If the query cannot be embedded
        """
        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return []

        collection = collection or self.collection
        top_k = self.top_k if top_k is None else top_k
        min_score = self.min_score if min_score is None else min_score

        if self.vector_store.count(collection) == 0:
            logger.info("empty_collection_no_results", collection=collection)
            return []

        query_embedding = await self.embedder.embed_query(query)

        results = await self.vector_store.search(
            collection, query_embedding, limit=top_k, min_score=min_score
        )

        logger.info(
            "retrieval_completed",
            collection=collection,
            query_length=len(query),
            results_returned=len(results),
            top_score=results[0].score if results else None,
        )

        return results


def build_prompt(query: str, results: List[RetrievalResult]) -> AugmentedPrompt:
    """Assemble an augmented prompt with context in descending-score order."""
    ordered = sorted(results, key=lambda r: r.rank)
    return AugmentedPrompt(context=[r.chunk.text for r in ordered], query=query)
