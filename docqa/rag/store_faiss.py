"""FAISS vector store for semantic search.

Handles:
- Named collections with a fixed embedding dimension
- Upsert by chunk id with whole-record replacement
- Cosine similarity search (inner product over unit vectors)
- Persistence: SQLite holds the records, FAISS snapshots speed up loading
"""
import asyncio
import hashlib
import json
import os
import re
import sqlite3
import weakref
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import faiss
import numpy as np
import structlog

from docqa import config, db
from docqa.errors import CollectionNotFound, InvalidConfiguration, StorageIOError
from docqa.models import Chunk, EmbeddingVector, IndexRecord, RetrievalResult

logger = structlog.get_logger()


def normalize_rows(vectors: np.ndarray) -> np.ndarray:
    """Scale each row to unit length; zero rows stay zero."""
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (vectors / norms).astype(np.float32)


def _snapshot_stem(collection: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_.-]", "_", collection)[:64]
    digest = hashlib.sha1(collection.encode("utf-8")).hexdigest()[:10]
    return f"{safe}-{digest}"


@dataclass
class _Collection:
    """In-memory state of one collection."""

    name: str
    dimension: int
    embedding_model: Optional[str]
    index: faiss.Index
    revision: int = 0
    records: Dict[str, IndexRecord] = field(default_factory=dict)
    vector_ids: Dict[str, int] = field(default_factory=dict)
    chunk_ids: Dict[int, str] = field(default_factory=dict)
    next_vector_id: int = 0


def _new_faiss_index(dimension: int) -> faiss.Index:
    # Exact inner-product search; with unit vectors this is cosine similarity
    return faiss.IndexIDMap2(faiss.IndexFlatIP(dimension))


class FAISSVectorStore:
    """Persistent, collection-scoped vector index."""

    def __init__(
        self,
        index_dir: Optional[Path] = None,
        strict: bool = False,
        dimension: Optional[int] = None,
    ):
        """Initialize the vector store.

        Args:
            index_dir: Directory for the SQLite database and FAISS snapshots
                (default: config.INDEX_DIR)
            strict: If True, upsert/delete on an unknown collection raise
                CollectionNotFound instead of auto-creating / ignoring
            dimension: Expected dimensionality for new collections; 0 or None
                takes the dimension of the first upserted vector
        """
        self.index_dir = Path(index_dir or config.INDEX_DIR)
        self.db_path = self.index_dir / db.DB_FILENAME
        self.strict = strict
        self.dimension = dimension or None

        self._collections: Dict[str, _Collection] = {}
        # Entries disappear once no coroutine holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._loaded = False

        logger.info(
            "faiss_store_initialized",
            index_dir=str(self.index_dir),
            strict=strict,
        )

    # ------------------------------------------------------------------
    # Loading and persistence
    # ------------------------------------------------------------------

    async def init_or_load(self) -> None:
        """Load all collections from disk, creating the database if needed.

        Raises:
            StorageIOError: If the database or a snapshot cannot be read
        """
        self._ensure_loaded()

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return

        try:
            db.init_database(self.db_path)
            rows = db.get_collections(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise StorageIOError(str(e), collection="*", operation="load") from e

        for row in rows:
            self._collections[row["name"]] = self._load_collection(row)

        self._loaded = True

        logger.info(
            "faiss_store_loaded",
            collections=len(self._collections),
            vector_count=sum(c.index.ntotal for c in self._collections.values()),
        )

    def _load_collection(self, row: Dict[str, Any]) -> _Collection:
        name = row["name"]
        col = _Collection(
            name=name,
            dimension=row["dimension"],
            embedding_model=row["embedding_model"],
            index=_new_faiss_index(row["dimension"]),
            revision=row["revision"],
        )

        try:
            stored = db.load_records(self.db_path, name)
        except sqlite3.Error as e:
            raise StorageIOError(str(e), collection=name, operation="load") from e

        for item in stored:
            record = IndexRecord(
                chunk=Chunk(
                    id=item["chunk_id"],
                    source_document=item["source_document"],
                    sequence_number=item["sequence_number"],
                    text=item["content"],
                    token_count=item["token_count"],
                    char_start=item["char_start"],
                    char_end=item["char_end"],
                ),
                vector=np.frombuffer(item["vector"], dtype=np.float64).tolist(),
                collection=name,
                metadata=item["metadata"],
            )
            col.records[record.id] = record
            col.vector_ids[record.id] = item["vector_id"]
            col.chunk_ids[item["vector_id"]] = record.id

        col.next_vector_id = max(col.chunk_ids, default=-1) + 1

        snapshot = self._read_snapshot(col)
        if snapshot is not None:
            col.index = snapshot
            logger.debug("faiss_snapshot_loaded", collection=name, revision=col.revision)
        elif col.records:
            ids = list(col.records)
            vectors = np.array([col.records[i].vector for i in ids], dtype=np.float32)
            col.index.add_with_ids(
                normalize_rows(vectors),
                np.array([col.vector_ids[i] for i in ids], dtype=np.int64),
            )
            self._write_snapshot(col.name, col.index, col.revision, col.dimension)
            logger.info("faiss_index_rebuilt", collection=name, vector_count=len(ids))

        return col

    def _snapshot_paths(self, collection: str):
        stem = _snapshot_stem(collection)
        return self.index_dir / f"{stem}.index", self.index_dir / f"{stem}.json"

    def _read_snapshot(self, col: _Collection) -> Optional[faiss.Index]:
        """Return the saved FAISS index if it matches the database revision."""
        index_path, meta_path = self._snapshot_paths(col.name)
        if not index_path.exists() or not meta_path.exists():
            return None

        try:
            with open(meta_path, "r") as f:
                meta = json.load(f)
            if (
                meta.get("revision") != col.revision
                or meta.get("embedding_dimension") != col.dimension
                or meta.get("vector_count") != len(col.records)
            ):
                return None
            return faiss.read_index(str(index_path))
        except (OSError, ValueError, RuntimeError) as e:
            logger.warning("faiss_snapshot_unreadable", collection=col.name, error=str(e))
            return None

    def _write_snapshot(
        self, collection: str, index: faiss.Index, revision: int, dimension: int
    ) -> None:
        """Save the FAISS index and its metadata next to the database.

        Snapshots are a cache; failures are logged and the index is rebuilt
        from SQLite on the next load.
        """
        index_path, meta_path = self._snapshot_paths(collection)
        tmp_index = index_path.with_suffix(".index.tmp")
        tmp_meta = meta_path.with_suffix(".json.tmp")

        try:
            faiss.write_index(index, str(tmp_index))
            with open(tmp_meta, "w") as f:
                json.dump(
                    {
                        "collection": collection,
                        "embedding_dimension": dimension,
                        "index_type": "IndexIDMap2(IndexFlatIP)",
                        "vector_count": index.ntotal,
                        "revision": revision,
                    },
                    f,
                    indent=2,
                )
            os.replace(tmp_index, index_path)
            os.replace(tmp_meta, meta_path)
        except (OSError, RuntimeError) as e:
            logger.warning("faiss_snapshot_save_failed", collection=collection, error=str(e))

    async def _save_snapshot(self, col: _Collection) -> None:
        # Serialize a copy so later in-memory writes cannot race the file write
        index_copy = faiss.clone_index(col.index)
        await asyncio.to_thread(
            self._write_snapshot, col.name, index_copy, col.revision, col.dimension
        )

    def _remove_snapshot(self, collection: str) -> None:
        for path in self._snapshot_paths(collection):
            path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def create_collection(
        self, name: str, dimension: int, embedding_model: Optional[str] = None
    ) -> None:
        """Create an empty collection explicitly.

        Raises:
            InvalidConfiguration: If the collection exists with another
                dimension or model, or dimension is not positive
        """
        self._ensure_loaded()
        async with self._lock_for(name):
            await self._get_or_create(name, dimension, embedding_model)

    def _lock_for(self, collection: str) -> asyncio.Lock:
        lock = self._locks.get(collection)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[collection] = lock
        return lock

    async def _get_or_create(
        self, name: str, dimension: int, embedding_model: Optional[str]
    ) -> _Collection:
        col = self._collections.get(name)
        if col is not None:
            self._check_compatible(col, dimension, embedding_model)
            return col

        if dimension <= 0:
            raise InvalidConfiguration(f"Embedding dimension must be positive, got {dimension}")
        if self.dimension and dimension != self.dimension:
            raise InvalidConfiguration(
                f"Embedding dimension mismatch: expected {self.dimension}, got {dimension}"
            )

        try:
            await asyncio.to_thread(
                db.insert_collection, self.db_path, name, dimension, embedding_model
            )
        except sqlite3.Error as e:
            raise StorageIOError(str(e), collection=name, operation="create") from e

        col = _Collection(
            name=name,
            dimension=dimension,
            embedding_model=embedding_model,
            index=_new_faiss_index(dimension),
        )
        self._collections[name] = col
        return col

    @staticmethod
    def _check_compatible(
        col: _Collection, dimension: int, embedding_model: Optional[str]
    ) -> None:
        if dimension != col.dimension:
            raise InvalidConfiguration(
                f"Dimension mismatch: collection '{col.name}' holds {col.dimension}-d "
                f"vectors (model {col.embedding_model}), got {dimension}. "
                "Rebuild the collection to change embedding models."
            )
        if embedding_model and col.embedding_model and embedding_model != col.embedding_model:
            raise InvalidConfiguration(
                f"Collection '{col.name}' was built with {col.embedding_model}, "
                f"refusing to mix in vectors from {embedding_model}"
            )

    def list_collections(self) -> List[str]:
        self._ensure_loaded()
        return sorted(self._collections)

    def has_collection(self, name: str) -> bool:
        self._ensure_loaded()
        return name in self._collections

    def count(self, collection: str) -> int:
        """Number of records in a collection (0 if it does not exist)."""
        self._ensure_loaded()
        col = self._collections.get(collection)
        return len(col.records) if col else 0

    async def drop_collection(self, collection: str) -> int:
        """Delete a collection with all of its records.

        Returns:
            Number of records removed
        """
        self._ensure_loaded()
        async with self._lock_for(collection):
            if collection not in self._collections:
                if self.strict:
                    raise CollectionNotFound(collection)
                return 0
            try:
                count = await asyncio.to_thread(db.delete_collection, self.db_path, collection)
            except sqlite3.Error as e:
                raise StorageIOError(str(e), collection=collection, operation="drop") from e
            del self._collections[collection]
            self._remove_snapshot(collection)

        logger.warning("collection_dropped", collection=collection, records=count)
        return count

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def upsert(
        self,
        collection: str,
        records: Sequence[IndexRecord],
        embedding_model: Optional[str] = None,
    ) -> int:
        """Insert or replace records by chunk id.

        The durable write happens first; the in-memory index is updated only
        after it succeeds, in one step, so searches see each record either
        before or after the write.

        Args:
            collection: Target collection (auto-created unless strict)
            records: Records to write; later duplicates of an id win
            embedding_model: Model that produced the vectors, checked against
                the collection's model

        Returns:
            Number of records inserted or updated

        Raises:
            CollectionNotFound: Strict mode and the collection does not exist
            InvalidConfiguration: Vector dimensionality or model mismatch
            StorageIOError: If the database write fails
        """
        written, _ = await self.replace_records(
            collection, records, delete_ids=(), embedding_model=embedding_model
        )
        return written

    async def replace_records(
        self,
        collection: str,
        records: Sequence[IndexRecord],
        delete_ids: Iterable[str],
        embedding_model: Optional[str] = None,
    ) -> Tuple[int, int]:
        """Upsert ``records`` and delete ``delete_ids`` as one atomic write.

        Both changes land in a single SQLite transaction and a single
        in-memory swap; a failure leaves the collection as it was.

        Returns:
            (records written, records deleted)

        Raises:
            CollectionNotFound: Strict mode and the collection does not exist
            InvalidConfiguration: Vector dimensionality or model mismatch
            StorageIOError: If the database write fails
        """
        self._ensure_loaded()
        delete_ids = set(delete_ids)
        if not records:
            if not delete_ids:
                return 0, 0
            return 0, await self.delete(collection, delete_ids)

        # The store keeps its own copy of every vector
        latest: Dict[str, IndexRecord] = {}
        for record in records:
            latest[record.id] = replace(
                record,
                collection=collection,
                vector=[float(x) for x in record.vector],
                metadata=dict(record.metadata),
            )
        batch = list(latest.values())

        dimensions = {len(r.vector) for r in batch}
        if len(dimensions) != 1:
            raise InvalidConfiguration(
                f"Records for '{collection}' have mixed dimensions: {sorted(dimensions)}"
            )
        dimension = dimensions.pop()

        async with self._lock_for(collection):
            col = self._collections.get(collection)
            if col is None:
                if self.strict:
                    raise CollectionNotFound(collection)
                col = await self._get_or_create(collection, dimension, embedding_model)
            else:
                self._check_compatible(col, dimension, embedding_model)

            stale = sorted((delete_ids - set(latest)) & set(col.records))

            next_vector_id = col.next_vector_id
            vector_ids = []
            for record in batch:
                vector_id = col.vector_ids.get(record.id)
                if vector_id is None:
                    vector_id = next_vector_id
                    next_vector_id += 1
                vector_ids.append(vector_id)

            rows = [
                {
                    "chunk_id": record.id,
                    "vector_id": vector_id,
                    "source_document": record.chunk.source_document,
                    "sequence_number": record.chunk.sequence_number,
                    "content": record.chunk.text,
                    "token_count": record.chunk.token_count,
                    "char_start": record.chunk.char_start,
                    "char_end": record.chunk.char_end,
                    "metadata": record.metadata,
                    "vector": np.asarray(record.vector, dtype=np.float64).tobytes(),
                }
                for record, vector_id in zip(batch, vector_ids)
            ]

            try:
                await asyncio.to_thread(
                    db.upsert_records, self.db_path, collection, rows, stale
                )
            except sqlite3.Error as e:
                raise StorageIOError(str(e), collection=collection, operation="upsert") from e

            # In-memory swap: no awaits between here and the revision bump
            vectors = np.array([r.vector for r in batch], dtype=np.float32)
            replaced = [vid for record, vid in zip(batch, vector_ids) if record.id in col.records]
            stale_vector_ids = [col.vector_ids.pop(i) for i in stale]
            if replaced or stale_vector_ids:
                col.index.remove_ids(np.array(replaced + stale_vector_ids, dtype=np.int64))
            col.index.add_with_ids(normalize_rows(vectors), np.array(vector_ids, dtype=np.int64))
            for chunk_id, vector_id in zip(stale, stale_vector_ids):
                del col.records[chunk_id]
                del col.chunk_ids[vector_id]
            for record, vector_id in zip(batch, vector_ids):
                col.records[record.id] = record
                col.vector_ids[record.id] = vector_id
                col.chunk_ids[vector_id] = record.id
            col.next_vector_id = next_vector_id
            col.revision += 1

            await self._save_snapshot(col)

        logger.info(
            "records_upserted",
            collection=collection,
            count=len(batch),
            replaced=len(replaced),
            deleted=len(stale),
            total_vectors=col.index.ntotal,
        )

        return len(batch), len(stale)

    async def delete(self, collection: str, ids: Iterable[str]) -> int:
        """Delete records by chunk id; unknown ids are ignored.

        Returns:
            Number of records deleted

        Raises:
            CollectionNotFound: Strict mode and the collection does not exist
            StorageIOError: If the database write fails
        """
        self._ensure_loaded()
        ids = set(ids)

        async with self._lock_for(collection):
            col = self._collections.get(collection)
            if col is None:
                if self.strict:
                    raise CollectionNotFound(collection)
                return 0

            present = sorted(i for i in ids if i in col.records)
            if not present:
                return 0

            try:
                await asyncio.to_thread(db.delete_records, self.db_path, collection, present)
            except sqlite3.Error as e:
                raise StorageIOError(str(e), collection=collection, operation="delete") from e

            vector_ids = [col.vector_ids.pop(i) for i in present]
            col.index.remove_ids(np.array(vector_ids, dtype=np.int64))
            for chunk_id, vector_id in zip(present, vector_ids):
                del col.records[chunk_id]
                del col.chunk_ids[vector_id]
            col.revision += 1

            await self._save_snapshot(col)

        logger.info("records_deleted", collection=collection, count=len(present))
        return len(present)

    def get(self, collection: str, ids: Iterable[str]) -> List[IndexRecord]:
        """Return copies of stored records for ``ids`` in the given order, skipping unknown ones."""
        self._ensure_loaded()
        col = self._collections.get(collection)
        if col is None:
            return []
        return [
            replace(col.records[i], vector=list(col.records[i].vector))
            for i in ids
            if i in col.records
        ]

    def ids_for_source(self, collection: str, source_document: str) -> Set[str]:
        """Chunk ids currently stored for one source document."""
        self._ensure_loaded()
        col = self._collections.get(collection)
        if col is None:
            return set()
        return {
            chunk_id
            for chunk_id, record in col.records.items()
            if record.chunk.source_document == source_document
        }

    async def search(
        self,
        collection: str,
        query_vector: EmbeddingVector,
        limit: Optional[int] = None,
        min_score: float = 0.0,
    ) -> List[RetrievalResult]:
        """Search for the records most similar to a query vector.

        Args:
            collection: Collection to search; unknown collections yield []
            query_vector: Query embedding
            limit: Max results (default config.RETRIEVAL_TOP_K)
            min_score: Minimum cosine similarity to include

        Returns:
            Results by descending score, ties broken by ascending sequence
            number then chunk id; ranks start at 1

        Raises:
            InvalidConfiguration: If the query dimension does not match the collection
        """
        self._ensure_loaded()
        limit = config.RETRIEVAL_TOP_K if limit is None else limit

        col = self._collections.get(collection)
        if col is None or col.index.ntotal == 0 or limit <= 0:
            logger.debug("search_empty_collection", collection=collection)
            return []

        query = np.array([query_vector], dtype=np.float32)
        if query.ndim != 2 or query.shape[1] != col.dimension:
            raise InvalidConfiguration(
                f"Query dimension mismatch: expected {col.dimension}, "
                f"got {query.shape[-1] if query.ndim == 2 else 'non-vector input'}"
            )

        # Full scan so ties at the cut-off are resolved by our ordering, not FAISS's
        scores, vector_ids = col.index.search(normalize_rows(query), col.index.ntotal)

        candidates = []
        for score, vector_id in zip(scores[0].tolist(), vector_ids[0].tolist()):
            if vector_id < 0 or score < min_score:
                continue
            record = col.records[col.chunk_ids[vector_id]]
            candidates.append((score, record))

        candidates.sort(
            key=lambda pair: (-pair[0], pair[1].chunk.sequence_number, pair[1].id)
        )

        results = [
            RetrievalResult(
                chunk=record.chunk,
                score=score,
                rank=rank,
                metadata=record.metadata,
            )
            for rank, (score, record) in enumerate(candidates[:limit], 1)
        ]

        logger.info(
            "vector_search_completed",
            collection=collection,
            limit=limit,
            min_score=min_score,
            results_found=len(results),
        )

        return results

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the vector store.

        Returns:
            Dictionary with store statistics
        """
        self._ensure_loaded()
        return {
            "index_dir": str(self.index_dir),
            "strict": self.strict,
            "collections": {
                name: {
                    "vector_count": col.index.ntotal,
                    "dimension": col.dimension,
                    "embedding_model": col.embedding_model,
                    "revision": col.revision,
                }
                for name, col in sorted(self._collections.items())
            },
        }

