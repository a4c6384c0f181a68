"""Retrieval orchestrator tying chunking, embedding, the index and generation together.

Every collaborator is passed in explicitly; ``from_config`` builds the
default local setup.
"""
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, Optional

import structlog

from docqa import config
from docqa.llm_client import GenerationClient
from docqa.models import (
    AugmentedPrompt,
    BatchIngestReport,
    ChunkingConfig,
    IngestReport,
    QueryAnswer,
    SourceDocument,
    StreamingAnswer,
)
from docqa.rag.chunker import TextChunker
from docqa.rag.embedder import EmbeddingClient
from docqa.rag.ingest import IngestPipeline, ProgressCallback
from docqa.rag.retriever import Retriever, build_prompt
from docqa.rag.store_faiss import FAISSVectorStore
from docqa.retry import RetryPolicy

logger = structlog.get_logger()


class RetrievalOrchestrator:
    """Ingests documents and answers questions over one vector store."""

    def __init__(
        self,
        chunker: TextChunker,
        embedder: EmbeddingClient,
        vector_store: FAISSVectorStore,
        generator: GenerationClient,
        collection: Optional[str] = None,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
        document_concurrency: Optional[int] = None,
    ):
        self.chunker = chunker
        self.embedder = embedder
        self.vector_store = vector_store
        self.generator = generator
        self.collection = collection or config.DEFAULT_COLLECTION

        self.pipeline = IngestPipeline(
            embedder=embedder,
            vector_store=vector_store,
            chunker=chunker,
            collection=self.collection,
            document_concurrency=document_concurrency,
        )
        self.retriever = Retriever(
            embedder=embedder,
            vector_store=vector_store,
            collection=self.collection,
            top_k=top_k,
            min_score=min_score,
        )

    @classmethod
    def from_config(
        cls,
        index_dir: Optional[Path] = None,
        collection: Optional[str] = None,
        strict: bool = False,
    ) -> "RetrievalOrchestrator":
        """Build an orchestrator for the configured local model server."""
        retry_policy = RetryPolicy()
        return cls(
            chunker=TextChunker(),
            embedder=EmbeddingClient(retry_policy=retry_policy),
            vector_store=FAISSVectorStore(
                index_dir=index_dir,
                strict=strict,
                dimension=config.EMBEDDING_DIMENSION,
            ),
            generator=GenerationClient(retry_policy=retry_policy),
            collection=collection,
        )

    async def aclose(self) -> None:
        await self.embedder.aclose()
        await self.generator.aclose()

    async def ingest_document(
        self,
        source_id: str,
        text: str,
        chunking: Optional[ChunkingConfig] = None,
        collection: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> IngestReport:
        """Chunk, embed and upsert one document (all chunks or none)."""
        return await self.pipeline.ingest_document(
            source_id, text, chunking=chunking, collection=collection, metadata=metadata
        )

    async def ingest_documents(
        self,
        documents: Iterable[SourceDocument],
        chunking: Optional[ChunkingConfig] = None,
        collection: Optional[str] = None,
        cancel_event=None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BatchIngestReport:
        """Bulk ingestion with per-document outcome counts."""
        return await self.pipeline.ingest_documents(
            documents,
            chunking=chunking,
            collection=collection,
            cancel_event=cancel_event,
            progress_callback=progress_callback,
        )

    async def prepare_query(
        self,
        query: str,
        collection: Optional[str] = None,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> AugmentedPrompt:
        """Retrieve context and assemble the prompt without calling the model."""
        results = await self.retriever.retrieve(
            query, collection=collection, top_k=top_k, min_score=min_score
        )
        return build_prompt(query, results)

    async def answer_query(
        self,
        query: str,
        collection: Optional[str] = None,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> QueryAnswer:
        """Answer a question from the indexed documents.

        With no result above ``min_score`` the model is still asked, using a
        prompt that states no relevant context was found.

        Returns:
            QueryAnswer holding the model output unmodified

        Raises:
            EmbeddingServiceUnavailable: If the query cannot be embedded
            GenerationServiceUnavailable: If the chat endpoint keeps failing
        """
        results = await self.retriever.retrieve(
            query, collection=collection, top_k=top_k, min_score=min_score
        )
        prompt = build_prompt(query, results)

        if not prompt.has_context:
            logger.info("no_relevant_context_found", collection=collection or self.collection)

        answer = await self.generator.chat(prompt.to_messages())

        logger.info(
            "query_answered",
            collection=collection or self.collection,
            context_chunks=len(prompt.context),
            answer_length=len(answer),
        )

        return QueryAnswer(
            prompt=prompt,
            answer=answer,
            results=results,
            model=self.generator.model,
        )

    async def stream_answer(
        self,
        query: str,
        collection: Optional[str] = None,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> StreamingAnswer:
        """Like answer_query, but the answer arrives as text fragments.

        Retrieval happens before this returns; the model is only contacted
        once the fragments are iterated.
        """
        results = await self.retriever.retrieve(
            query, collection=collection, top_k=top_k, min_score=min_score
        )
        prompt = build_prompt(query, results)
        fragments: AsyncIterator[str] = self.generator.stream_chat(prompt.to_messages())
        return StreamingAnswer(prompt=prompt, results=results, fragments=fragments)
