"""Ingest pipeline for indexing documents.

Orchestrates:
- Text chunking
- Embedding generation (buffered per document)
- Vector and record storage
- Removal of chunks left over from a longer previous version
"""
import asyncio
from typing import Callable, Dict, Iterable, Optional

import structlog

from docqa import config
from docqa.errors import DocQAError, InvalidConfiguration
from docqa.models import (
    BatchIngestReport,
    ChunkingConfig,
    IndexRecord,
    IngestReport,
    SourceDocument,
)
from docqa.rag.chunker import TextChunker
from docqa.rag.embedder import EmbeddingClient
from docqa.rag.store_faiss import FAISSVectorStore

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int, str], None]


class IngestPipeline:
    """Pipeline for ingesting documents into one or more collections."""

    def __init__(
        self,
        embedder: EmbeddingClient,
        vector_store: FAISSVectorStore,
        chunker: Optional[TextChunker] = None,
        collection: Optional[str] = None,
        document_concurrency: Optional[int] = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            embedder: Embedding client
            vector_store: Vector store receiving the records
            chunker: Default chunker (default from config)
            collection: Default collection name (default from config)
            document_concurrency: Documents processed at once in bulk runs
        """
        self.embedder = embedder
        self.vector_store = vector_store
        self.chunker = chunker or TextChunker()
        self.collection = collection or config.DEFAULT_COLLECTION
        self.document_concurrency = document_concurrency or config.INGEST_CONCURRENCY

        logger.info(
            "ingest_pipeline_initialized",
            collection=self.collection,
            embedding_model=self.embedder.model,
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
            document_concurrency=self.document_concurrency,
        )

    def _chunker_for(self, chunking: Optional[ChunkingConfig]) -> TextChunker:
        if chunking is None or chunking == self.chunker.config:
            return self.chunker
        return TextChunker.from_config(chunking)

    async def ingest_document(
        self,
        source_id: str,
        text: str,
        chunking: Optional[ChunkingConfig] = None,
        collection: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> IngestReport:
        """Ingest a single document as one all-or-nothing unit.

        Every chunk is embedded before anything is written, so an embedding
        failure leaves the collection untouched for this document.

        Args:
            source_id: Stable document identifier (chunk ids derive from it)
            text: Extracted plain text
            chunking: Window parameters (default: the pipeline's chunker)
            collection: Target collection (default: the pipeline's collection)
            metadata: Stored with every chunk record

        Returns:
            IngestReport with the number of chunks written

        Raises:
            EmbeddingServiceUnavailable: If embedding fails after retries
            InvalidConfiguration: Bad chunking parameters or dimension mismatch
            StorageIOError: If the store cannot persist the records
        """
        collection = collection or self.collection
        chunks = self._chunker_for(chunking).chunk_text(text, source_document=source_id)
        previous_ids = self.vector_store.ids_for_source(collection, source_id)
        stale_ids = previous_ids - {c.id for c in chunks}

        logger.info(
            "ingesting_document",
            source_id=source_id,
            collection=collection,
            chunk_count=len(chunks),
        )

        records = []
        if chunks:
            embeddings = await self.embedder.embed([c.text for c in chunks])

            records = [
                IndexRecord(
                    chunk=chunk,
                    vector=vector,
                    collection=collection,
                    metadata=dict(metadata or {}),
                )
                for chunk, vector in zip(chunks, embeddings)
            ]
        else:
            logger.warning("no_chunks_created", source_id=source_id)

        # New chunks and the removal of leftovers commit together
        written, removed = await self.vector_store.replace_records(
            collection, records, stale_ids, embedding_model=self.embedder.model
        )

        logger.info(
            "document_ingested",
            source_id=source_id,
            collection=collection,
            chunks_written=written,
            stale_chunks_removed=removed,
        )

        return IngestReport(
            source_id=source_id,
            collection=collection,
            chunks_written=written,
            stale_chunks_removed=removed,
        )

    async def remove_document(self, source_id: str, collection: Optional[str] = None) -> int:
        """Delete every chunk of a document.

        Returns:
            Number of records removed
        """
        collection = collection or self.collection
        ids = self.vector_store.ids_for_source(collection, source_id)
        if not ids:
            logger.debug("no_chunks_found_for_document", source_id=source_id)
            return 0
        return await self.vector_store.delete(collection, ids)

    async def ingest_documents(
        self,
        documents: Iterable[SourceDocument],
        chunking: Optional[ChunkingConfig] = None,
        collection: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BatchIngestReport:
        """Ingest many documents, reporting per-document outcomes.

        A failing document is counted and the run continues. Cancellation is
        cooperative: once ``cancel_event`` is set, documents already in
        flight finish and the rest are skipped.

        Args:
            documents: Documents to ingest
            chunking: Window parameters for every document
            collection: Target collection
            cancel_event: Set to stop starting new documents
            progress_callback: Called as (done, total, source_id) after each document

        Returns:
            BatchIngestReport with success, failure and skip counts

        Raises:
            InvalidConfiguration: Configuration errors abort the whole run
        """
        documents = list(documents)
        collection = collection or self.collection
        report = BatchIngestReport()
        semaphore = asyncio.Semaphore(self.document_concurrency)
        total = len(documents)
        done = 0

        logger.info("starting_ingest_batch", collection=collection, document_count=total)

        async def run(document: SourceDocument) -> None:
            nonlocal done
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    report.documents_skipped += 1
                    return

                try:
                    result = await self.ingest_document(
                        document.source_id,
                        document.text,
                        chunking=chunking,
                        collection=collection,
                        metadata=document.metadata,
                    )
                except InvalidConfiguration:
                    raise
                except DocQAError as e:
                    report.documents_failed += 1
                    report.failures[document.source_id] = str(e)
                    logger.error(
                        "document_ingestion_failed",
                        source_id=document.source_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                else:
                    report.documents_succeeded += 1
                    report.chunks_written += result.chunks_written

                done += 1
                if progress_callback:
                    progress_callback(done, total, document.source_id)

        tasks = [asyncio.create_task(run(document)) for document in documents]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        report.cancelled = cancel_event is not None and cancel_event.is_set()

        logger.info(
            "ingest_batch_completed",
            collection=collection,
            succeeded=report.documents_succeeded,
            failed=report.documents_failed,
            skipped=report.documents_skipped,
            chunks_written=report.chunks_written,
            cancelled=report.cancelled,
        )

        return report
