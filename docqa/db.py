"""SQLite persistence for the vector index.

SQLite database for storing:
- Collections with their embedding dimension and model
- Index records (chunk text, position, metadata and float64 vector)
- Mapping between FAISS vector IDs and chunk IDs
"""
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

logger = structlog.get_logger()

DB_FILENAME = "records.sqlite"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _bump_revision(conn: sqlite3.Connection, collection: str) -> None:
    conn.execute(
        "UPDATE collections SET revision = revision + 1 WHERE name = ?", (collection,)
    )


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Get a connection to the SQLite database.

    Returns:
        sqlite3.Connection with row_factory set to sqlite3.Row
    """
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_database(db_path: Path) -> None:
    """Initialize the database schema.

    Creates tables if they don't exist:
    - collections: one row per collection, fixing its dimension
    - records: one row per chunk id within a collection
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS collections (
                name TEXT PRIMARY KEY,
                dimension INTEGER NOT NULL,
                embedding_model TEXT,
                revision INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS records (
                collection TEXT NOT NULL,
                chunk_id TEXT NOT NULL,
                vector_id INTEGER NOT NULL,
                source_document TEXT NOT NULL,
                sequence_number INTEGER NOT NULL,
                content TEXT NOT NULL,
                token_count INTEGER NOT NULL,
                char_start INTEGER NOT NULL,
                char_end INTEGER NOT NULL,
                metadata_json TEXT,
                vector BLOB NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (collection, chunk_id),
                UNIQUE (collection, vector_id)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_source
            ON records(collection, source_document)
        """)

        conn.commit()
        logger.debug("database_initialized", db_path=str(db_path))

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("database_init_failed", error=str(e))
        raise
    finally:
        conn.close()


def insert_collection(
    db_path: Path, name: str, dimension: int, embedding_model: Optional[str] = None
) -> None:
    """Record a new collection and its fixed dimension."""
    conn = get_connection(db_path)

    try:
        conn.execute(
            """
            INSERT INTO collections (name, dimension, embedding_model, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (name, dimension, embedding_model, _utcnow()),
        )
        conn.commit()
        logger.info("collection_created", collection=name, dimension=dimension)

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("collection_insert_failed", collection=name, error=str(e))
        raise
    finally:
        conn.close()


def get_collections(db_path: Path) -> List[Dict[str, Any]]:
    """Return all collections with their dimension and model."""
    conn = get_connection(db_path)

    try:
        rows = conn.execute(
            "SELECT name, dimension, embedding_model, revision, created_at "
            "FROM collections ORDER BY name"
        ).fetchall()
        return [dict(row) for row in rows]

    except sqlite3.Error as e:
        logger.error("collections_retrieval_failed", error=str(e))
        raise
    finally:
        conn.close()


def delete_collection(db_path: Path, name: str) -> int:
    """Delete a collection and all of its records.

    Returns:
        Number of records deleted
    """
    conn = get_connection(db_path)

    try:
        cursor = conn.execute("DELETE FROM records WHERE collection = ?", (name,))
        count = cursor.rowcount
        conn.execute("DELETE FROM collections WHERE name = ?", (name,))
        conn.commit()
        logger.info("collection_deleted", collection=name, records=count)
        return count

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("collection_delete_failed", collection=name, error=str(e))
        raise
    finally:
        conn.close()


def upsert_records(
    db_path: Path,
    collection: str,
    rows: Sequence[Dict[str, Any]],
    delete_ids: Iterable[str] = (),
) -> int:
    """Insert or replace records, and delete others, in a single transaction.

    Args:
        db_path: Database file
        collection: Collection name
        rows: Dicts with chunk_id, vector_id, source_document, sequence_number,
            content, token_count, char_start, char_end, metadata, vector (bytes)
        delete_ids: Chunk ids removed in the same transaction

    Returns:
        Number of rows written
    """
    conn = get_connection(db_path)
    now = _utcnow()

    try:
        conn.executemany(
            "DELETE FROM records WHERE collection = ? AND chunk_id = ?",
            [(collection, chunk_id) for chunk_id in delete_ids],
        )
        conn.executemany(
            """
            INSERT OR REPLACE INTO records (
                collection, chunk_id, vector_id, source_document, sequence_number,
                content, token_count, char_start, char_end, metadata_json,
                vector, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    collection,
                    row["chunk_id"],
                    row["vector_id"],
                    row["source_document"],
                    row["sequence_number"],
                    row["content"],
                    row["token_count"],
                    row["char_start"],
                    row["char_end"],
                    json.dumps(row["metadata"]) if row.get("metadata") else None,
                    row["vector"],
                    now,
                )
                for row in rows
            ],
        )
        _bump_revision(conn, collection)
        conn.commit()
        return len(rows)

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("records_upsert_failed", collection=collection, error=str(e))
        raise
    finally:
        conn.close()


def delete_records(db_path: Path, collection: str, chunk_ids: Iterable[str]) -> int:
    """Delete records by chunk id.

    Returns:
        Number of rows deleted
    """
    chunk_ids = list(chunk_ids)
    if not chunk_ids:
        return 0

    conn = get_connection(db_path)

    try:
        cursor = conn.executemany(
            "DELETE FROM records WHERE collection = ? AND chunk_id = ?",
            [(collection, chunk_id) for chunk_id in chunk_ids],
        )
        count = cursor.rowcount
        _bump_revision(conn, collection)
        conn.commit()
        return count

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("records_delete_failed", collection=collection, error=str(e))
        raise
    finally:
        conn.close()


def load_records(db_path: Path, collection: str) -> List[Dict[str, Any]]:
    """Load every record of a collection, ordered by vector id."""
    conn = get_connection(db_path)

    try:
        rows = conn.execute(
            """
            SELECT chunk_id, vector_id, source_document, sequence_number, content,
                   token_count, char_start, char_end, metadata_json, vector
            FROM records
            WHERE collection = ?
            ORDER BY vector_id
            """,
            (collection,),
        ).fetchall()

        records = []
        for row in rows:
            record = dict(row)
            record["metadata"] = (
                json.loads(record["metadata_json"]) if record["metadata_json"] else {}
            )
            records.append(record)
        return records

    except sqlite3.Error as e:
        logger.error("records_retrieval_failed", collection=collection, error=str(e))
        raise
    finally:
        conn.close()
