"""File watcher for automatic document reindexing.

Monitors a documents directory and re-ingests created or modified files,
removing the records of deleted ones.
"""
import asyncio
import concurrent.futures
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Set

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from docqa import config
from docqa.errors import DocQAError
from docqa.rag.ingest import IngestPipeline
from docqa.rag.loader import DocumentLoader

logger = structlog.get_logger()


class DocumentFileHandler(FileSystemEventHandler):
    """Handler for document file system events.

    Watchdog calls these methods from its observer thread; all index work is
    scheduled onto the event loop that owns the pipeline.
    """

    def __init__(
        self,
        ingest_pipeline: IngestPipeline,
        loader: DocumentLoader,
        loop: asyncio.AbstractEventLoop,
        collection: Optional[str] = None,
        debounce_seconds: Optional[float] = None,
    ):
        """Initialize the file handler.

        Args:
            ingest_pipeline: Pipeline for ingesting files
            loader: Loader that reads files and derives their source ids
            loop: Event loop to use for scheduling async tasks
            collection: Target collection (default: the pipeline's)
            debounce_seconds: Quiet period before processing changes
        """
        super().__init__()
        self.ingest_pipeline = ingest_pipeline
        self.loader = loader
        self.loop = loop
        self.collection = collection
        self.debounce_seconds = (
            config.WATCH_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        )

        self._pending_changes: Set[Path] = set()
        self._last_change_time: Optional[datetime] = None
        self._processing: Optional[concurrent.futures.Future] = None
        # Guards the fields above; watchdog events arrive on the observer thread
        self._lock = threading.Lock()
        self._shutdown = False

    def _is_document(self, event: FileSystemEvent) -> bool:
        return not event.is_directory and self.loader.is_supported(Path(event.src_path))

    def on_created(self, event: FileSystemEvent):
        if self._is_document(event):
            logger.info("file_created", path=event.src_path)
            self._schedule_reindex(Path(event.src_path))

    def on_modified(self, event: FileSystemEvent):
        if self._is_document(event):
            logger.info("file_modified", path=event.src_path)
            self._schedule_reindex(Path(event.src_path))

    def on_deleted(self, event: FileSystemEvent):
        if self._is_document(event):
            logger.info("file_deleted", path=event.src_path)
            self._schedule_deletion(Path(event.src_path))

    def on_moved(self, event: FileSystemEvent):
        if event.is_directory:
            return
        src, dest = Path(event.src_path), Path(event.dest_path)
        if self.loader.is_supported(src):
            self._schedule_deletion(src)
        if self.loader.is_supported(dest):
            self._schedule_reindex(dest)

    def _schedule_reindex(self, file_path: Path):
        """Queue a file and start the debounce loop if it is idle."""
        with self._lock:
            self._pending_changes.add(file_path)
            self._last_change_time = datetime.now()

            if self._processing is None or self._processing.done():
                self._processing = asyncio.run_coroutine_threadsafe(
                    self._debounced_process(), self.loop
                )

    def _schedule_deletion(self, file_path: Path):
        # Deletions are applied immediately
        with self._lock:
            self._pending_changes.discard(file_path)
        asyncio.run_coroutine_threadsafe(self._handle_deletion(file_path), self.loop)

    async def _debounced_process(self):
        """Process pending changes until none are left.

        Changes that arrive while a batch is being reindexed are picked up
        by the next pass of the loop.
        """
        while not self._shutdown:
            await asyncio.sleep(self.debounce_seconds)

            with self._lock:
                if self._last_change_time:
                    quiet_for = datetime.now() - self._last_change_time
                    if quiet_for < timedelta(seconds=self.debounce_seconds):
                        continue

                if not self._pending_changes:
                    # Lets the next event start a fresh loop
                    self._processing = None
                    return

                changes = self._pending_changes.copy()
                self._pending_changes.clear()
                self._last_change_time = None

            await self._reindex_files(changes)

    async def _reindex_files(self, file_paths: Set[Path]):
        """Re-ingest a set of files; stale chunks are replaced by the pipeline."""
        logger.info(
            "reindexing_files",
            count=len(file_paths),
            files=sorted(str(p) for p in file_paths),
        )

        for file_path in sorted(file_paths):
            if not file_path.exists():
                logger.warning("file_disappeared", path=str(file_path))
                continue

            try:
                document = self.loader.load_file(file_path)
                await self.ingest_pipeline.ingest_document(
                    document.source_id,
                    document.text,
                    collection=self.collection,
                    metadata=document.metadata,
                )
                logger.info("file_reindexed", source_id=document.source_id)
            except (DocQAError, OSError, UnicodeDecodeError) as e:
                logger.error(
                    "reindex_failed",
                    path=str(file_path),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        logger.info("reindex_batch_completed", count=len(file_paths))

    async def _handle_deletion(self, file_path: Path):
        source_id = self.loader.source_id_for(file_path)
        try:
            removed = await self.ingest_pipeline.remove_document(
                source_id, collection=self.collection
            )
            logger.info("file_removed_from_index", source_id=source_id, chunk_count=removed)
        except DocQAError as e:
            logger.error("deletion_handling_failed", source_id=source_id, error=str(e))

    def shutdown(self):
        """Stop processing and cancel the pending debounce loop."""
        self._shutdown = True
        if self._processing is not None and not self._processing.done():
            self._processing.cancel()


class DocumentWatcher:
    """Watcher for a documents directory."""

    def __init__(
        self,
        ingest_pipeline: IngestPipeline,
        documents_dir: Optional[Path] = None,
        collection: Optional[str] = None,
        debounce_seconds: Optional[float] = None,
    ):
        """Initialize the document watcher.

        Args:
            ingest_pipeline: Pipeline receiving changed documents
            documents_dir: Directory to watch (default from config)
            collection: Target collection (default: the pipeline's)
            debounce_seconds: Debounce period for file changes
        """
        self.ingest_pipeline = ingest_pipeline
        self.loader = DocumentLoader(documents_dir)
        self.collection = collection
        self.debounce_seconds = debounce_seconds

        self.event_handler: Optional[DocumentFileHandler] = None
        self.observer: Optional[Observer] = None
        self._started = False

    @property
    def documents_dir(self) -> Path:
        return self.loader.root_dir

    async def start(self):
        """Start watching for file changes."""
        if self._started:
            logger.warning("watcher_already_started")
            return

        self.event_handler = DocumentFileHandler(
            ingest_pipeline=self.ingest_pipeline,
            loader=self.loader,
            loop=asyncio.get_running_loop(),
            collection=self.collection,
            debounce_seconds=self.debounce_seconds,
        )

        self.observer = Observer()
        self.observer.schedule(self.event_handler, str(self.documents_dir), recursive=True)
        self.observer.start()
        self._started = True

        logger.info("document_watcher_started", documents_dir=str(self.documents_dir))

    def stop(self):
        """Stop watching for file changes."""
        if not self._started:
            return

        if self.observer:
            self.observer.stop()
            self.observer.join(timeout=5.0)

        if self.event_handler:
            self.event_handler.shutdown()

        self._started = False
        logger.info("document_watcher_stopped")

    def is_alive(self) -> bool:
        return self._started and self.observer is not None and self.observer.is_alive()
