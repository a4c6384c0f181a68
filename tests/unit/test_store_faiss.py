"""Tests for the collection-scoped FAISS vector store."""
import asyncio
import gc
import sqlite3
import threading

import pytest

from docqa import db
from docqa.errors import CollectionNotFound, InvalidConfiguration, StorageIOError
from docqa.models import Chunk, IndexRecord, make_chunk_id
from docqa.rag.store_faiss import FAISSVectorStore


def make_record(seq, vector, text=None, source="doc.txt", collection="docs", metadata=None):
    return IndexRecord(
        chunk=Chunk(
            id=make_chunk_id(source, seq),
            source_document=source,
            sequence_number=seq,
            text=text if text is not None else f"chunk {seq}",
            token_count=2,
        ),
        vector=vector,
        collection=collection,
        metadata=metadata or {},
    )


@pytest.fixture
async def populated_store(vector_store):
    await vector_store.upsert(
        "docs",
        [
            make_record(0, [1.0, 0.0, 0.0, 0.0]),
            make_record(1, [0.8, 0.6, 0.0, 0.0]),
            make_record(2, [2.0, 0.0, 0.0, 0.0]),
            make_record(3, [0.0, 1.0, 0.0, 0.0]),
        ],
    )
    return vector_store


async def test_search_orders_by_score_then_sequence(populated_store):
    results = await populated_store.search("docs", [1.0, 0.0, 0.0, 0.0], limit=10)

    assert [r.chunk.sequence_number for r in results] == [0, 2, 1, 3]
    assert [r.rank for r in results] == [1, 2, 3, 4]
    assert results[0].score == pytest.approx(1.0, abs=1e-5)
    assert results[1].score == pytest.approx(1.0, abs=1e-5)
    assert results[2].score == pytest.approx(0.8, abs=1e-5)
    assert results[3].score == pytest.approx(0.0, abs=1e-5)


async def test_search_respects_limit_and_min_score(populated_store):
    limited = await populated_store.search("docs", [1.0, 0.0, 0.0, 0.0], limit=2)
    thresholded = await populated_store.search(
        "docs", [1.0, 0.0, 0.0, 0.0], limit=10, min_score=0.5
    )

    assert [r.chunk.sequence_number for r in limited] == [0, 2]
    assert [r.chunk.sequence_number for r in thresholded] == [0, 2, 1]
    assert all(r.score >= 0.5 for r in thresholded)
    assert await populated_store.search("docs", [1.0, 0.0, 0.0, 0.0], limit=0) == []


async def test_search_unknown_or_empty_collection_returns_nothing(vector_store):
    assert await vector_store.search("missing", [1.0, 0.0]) == []
    await vector_store.create_collection("empty", dimension=2)
    assert await vector_store.search("empty", [1.0, 0.0]) == []


async def test_search_with_wrong_dimension_is_rejected(populated_store):
    with pytest.raises(InvalidConfiguration):
        await populated_store.search("docs", [1.0, 0.0])


async def test_upsert_replaces_existing_record(vector_store):
    await vector_store.upsert("docs", [make_record(0, [1.0, 0.0], text="old")])
    await vector_store.upsert("docs", [make_record(0, [0.0, 1.0], text="new")])

    assert vector_store.count("docs") == 1
    (stored,) = vector_store.get("docs", [make_chunk_id("doc.txt", 0)])
    assert stored.chunk.text == "new"
    assert stored.vector == [0.0, 1.0]

    results = await vector_store.search("docs", [0.0, 1.0], limit=5)
    assert len(results) == 1
    assert results[0].chunk.text == "new"
    assert results[0].score == pytest.approx(1.0, abs=1e-5)


async def test_duplicate_ids_in_one_batch_keep_the_last(vector_store):
    written = await vector_store.upsert(
        "docs",
        [make_record(0, [1.0, 0.0], text="first"), make_record(0, [0.0, 1.0], text="second")],
    )

    assert written == 1
    assert vector_store.get("docs", [make_chunk_id("doc.txt", 0)])[0].chunk.text == "second"


async def test_collections_are_isolated(vector_store):
    await vector_store.upsert("a", [make_record(0, [1.0, 0.0], text="in a", collection="a")])
    await vector_store.upsert("b", [make_record(0, [1.0, 0.0], text="in b", collection="b")])

    assert vector_store.list_collections() == ["a", "b"]
    assert (await vector_store.search("a", [1.0, 0.0]))[0].chunk.text == "in a"
    assert (await vector_store.search("b", [1.0, 0.0]))[0].chunk.text == "in b"

    await vector_store.drop_collection("a")
    assert not vector_store.has_collection("a")
    assert vector_store.count("b") == 1


async def test_delete_ignores_unknown_ids(populated_store):
    ids = [make_chunk_id("doc.txt", 0), make_chunk_id("doc.txt", 3), "no-such-id"]

    assert await populated_store.delete("docs", ids) == 2
    assert populated_store.count("docs") == 2
    assert await populated_store.delete("missing", ids) == 0

    results = await populated_store.search("docs", [1.0, 0.0, 0.0, 0.0], limit=10)
    assert [r.chunk.sequence_number for r in results] == [2, 1]


async def test_dimension_mismatch_on_upsert(vector_store):
    await vector_store.upsert("docs", [make_record(0, [1.0, 0.0, 0.0])])

    with pytest.raises(InvalidConfiguration):
        await vector_store.upsert("docs", [make_record(1, [1.0, 0.0])])
    assert vector_store.count("docs") == 1


async def test_mixed_dimensions_in_one_batch(vector_store):
    with pytest.raises(InvalidConfiguration):
        await vector_store.upsert(
            "docs", [make_record(0, [1.0, 0.0]), make_record(1, [1.0, 0.0, 0.0])]
        )


async def test_embedding_model_mismatch(vector_store):
    await vector_store.upsert("docs", [make_record(0, [1.0, 0.0])], embedding_model="model-a")

    with pytest.raises(InvalidConfiguration):
        await vector_store.upsert("docs", [make_record(1, [1.0, 0.0])], embedding_model="model-b")


async def test_configured_dimension_is_enforced(tmp_path):
    store = FAISSVectorStore(index_dir=tmp_path, dimension=3)

    with pytest.raises(InvalidConfiguration):
        await store.upsert("docs", [make_record(0, [1.0, 0.0])])


async def test_strict_mode_requires_existing_collection(tmp_path):
    store = FAISSVectorStore(index_dir=tmp_path, strict=True)

    with pytest.raises(CollectionNotFound):
        await store.upsert("docs", [make_record(0, [1.0, 0.0])])
    with pytest.raises(CollectionNotFound):
        await store.delete("docs", ["x"])

    await store.create_collection("docs", dimension=2)
    assert await store.upsert("docs", [make_record(0, [1.0, 0.0])]) == 1


async def test_records_survive_reload(tmp_path):
    store = FAISSVectorStore(index_dir=tmp_path)
    await store.upsert(
        "docs",
        [make_record(0, [1.0, 0.0], metadata={"title": "One"}), make_record(1, [0.0, 1.0])],
        embedding_model="fake-embed",
    )
    await store.delete("docs", [make_chunk_id("doc.txt", 1)])

    reloaded = FAISSVectorStore(index_dir=tmp_path)
    await reloaded.init_or_load()

    assert reloaded.count("docs") == 1
    results = await reloaded.search("docs", [1.0, 0.0])
    assert results[0].chunk.text == "chunk 0"
    assert results[0].metadata == {"title": "One"}
    assert reloaded.get_stats()["collections"]["docs"]["embedding_model"] == "fake-embed"


async def test_index_is_rebuilt_without_snapshot(tmp_path):
    store = FAISSVectorStore(index_dir=tmp_path)
    await store.upsert("docs", [make_record(0, [1.0, 0.0]), make_record(1, [0.0, 1.0])])

    for path in tmp_path.glob("*.index"):
        path.unlink()

    reloaded = FAISSVectorStore(index_dir=tmp_path)
    results = await reloaded.search("docs", [0.0, 1.0], limit=1)

    assert results[0].chunk.sequence_number == 1
    assert list(tmp_path.glob("*.index"))


async def test_stale_snapshot_is_ignored(tmp_path):
    store = FAISSVectorStore(index_dir=tmp_path)
    await store.upsert("docs", [make_record(0, [1.0, 0.0])])
    snapshot = {p: p.read_bytes() for p in tmp_path.glob("*.index")}
    meta = {p: p.read_text() for p in tmp_path.glob("*.json")}

    await store.upsert("docs", [make_record(1, [0.0, 1.0])])

    # Put back the snapshot from before the second write
    for path, content in snapshot.items():
        path.write_bytes(content)
    for path, content in meta.items():
        path.write_text(content)

    reloaded = FAISSVectorStore(index_dir=tmp_path)
    assert reloaded.count("docs") == 2
    results = await reloaded.search("docs", [0.0, 1.0], limit=1)
    assert results[0].chunk.sequence_number == 1


async def test_concurrent_writes_and_searches_see_whole_records(vector_store):
    record_id = make_chunk_id("doc.txt", 0)
    await vector_store.upsert("docs", [make_record(0, [1.0, 0.0], text="A")])
    observed = []

    async def writer():
        for i in range(20):
            if i % 2:
                record = make_record(0, [1.0, 0.0], text="A")
            else:
                record = make_record(0, [0.0, 1.0], text="B")
            await vector_store.upsert("docs", [record])
        await vector_store.upsert("docs", [make_record(0, [0.0, 1.0], text="final")])

    async def reader():
        for _ in range(40):
            results = await vector_store.search("docs", [1.0, 0.0], limit=1)
            observed.extend(results)
            await asyncio.sleep(0)

    await asyncio.gather(writer(), reader(), reader())

    assert observed
    for result in observed:
        expected = 1.0 if result.chunk.text == "A" else 0.0
        assert result.score == pytest.approx(expected, abs=1e-5)

    (final,) = vector_store.get("docs", [record_id])
    assert final.chunk.text == "final"
    assert final.vector == [0.0, 1.0]
    assert vector_store.count("docs") == 1


async def test_vectors_read_back_exactly_after_reload(tmp_path):
    record_id = make_chunk_id("doc.txt", 0)
    store = FAISSVectorStore(index_dir=tmp_path)
    await store.upsert("docs", [make_record(0, [0.1, 0.2])])

    reloaded = FAISSVectorStore(index_dir=tmp_path)

    assert store.get("docs", [record_id])[0].vector == [0.1, 0.2]
    assert reloaded.get("docs", [record_id])[0].vector == [0.1, 0.2]


async def test_stored_records_do_not_share_caller_vectors(vector_store):
    record_id = make_chunk_id("doc.txt", 0)
    vector = [1.0, 0.0]
    await vector_store.upsert("docs", [make_record(0, vector)])

    vector[:] = [0.0, 1.0]
    (returned,) = vector_store.get("docs", [record_id])
    returned.vector[:] = [5.0, 5.0]

    assert vector_store.get("docs", [record_id])[0].vector == [1.0, 0.0]
    results = await vector_store.search("docs", [1.0, 0.0])
    assert results[0].score == pytest.approx(1.0, abs=1e-5)


async def test_replace_records_writes_and_deletes_together(populated_store):
    stale = [make_chunk_id("doc.txt", 2), make_chunk_id("doc.txt", 3), "no-such-id"]

    written, deleted = await populated_store.replace_records(
        "docs", [make_record(0, [0.0, 0.0, 1.0, 0.0], text="new")], delete_ids=stale
    )

    assert (written, deleted) == (1, 2)
    assert populated_store.count("docs") == 2
    results = await populated_store.search("docs", [0.0, 0.0, 1.0, 0.0], limit=10)
    assert [r.chunk.text for r in results] == ["new", "chunk 1"]


async def test_failed_replace_changes_nothing(populated_store, monkeypatch):
    def failing(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "upsert_records", failing)

    with pytest.raises(StorageIOError):
        await populated_store.replace_records(
            "docs",
            [make_record(0, [0.0, 0.0, 1.0, 0.0], text="new")],
            delete_ids=[make_chunk_id("doc.txt", 3)],
        )

    assert populated_store.count("docs") == 4
    assert populated_store.get("docs", [make_chunk_id("doc.txt", 0)])[0].chunk.text == "chunk 0"


async def test_database_writes_run_off_the_event_loop(vector_store, monkeypatch):
    loop_thread = threading.get_ident()
    write_threads = []
    original = db.upsert_records

    def recording(*args, **kwargs):
        write_threads.append(threading.get_ident())
        return original(*args, **kwargs)

    monkeypatch.setattr(db, "upsert_records", recording)
    await vector_store.upsert("docs", [make_record(0, [1.0, 0.0])])

    assert write_threads
    assert loop_thread not in write_threads


async def test_collection_lock_is_released_after_drop(vector_store):
    await vector_store.upsert("a", [make_record(0, [1.0, 0.0], collection="a")])
    await vector_store.drop_collection("a")
    gc.collect()

    assert "a" not in vector_store._locks
    assert await vector_store.upsert("a", [make_record(0, [1.0, 0.0], collection="a")]) == 1
