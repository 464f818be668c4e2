"""
Tests for the upload/delete pipeline.
"""

import pytest
import tempfile
from datetime import datetime, timezone
from unittest.mock import Mock

from ..content import compute_content_hash
from ..error_tracker import RecordStoreError
from ..models import (
    ChangeKind, DeleteOperation, RecordKey, SourceType, SyncedRecord, UploadOperation,
)
from ..pipeline import OperationPipeline
from ..rate_limiter import RateLimiter
from ..record_store import SQLiteRecordStore
from ..resilience import RetryPolicy
from .fakes import FakeIndexWriter, FakeReader, notion_item

SEEN_AT = datetime(2025, 3, 1, tzinfo=timezone.utc)
CREATED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield SQLiteRecordStore(state_directory=temp_dir)


def make_pipeline(store, writer, reader=None, concurrency=10, max_retries=2):
    return OperationPipeline(
        reader=reader or FakeReader([]),
        index_writer=writer,
        record_store=store,
        limiter=RateLimiter(1000, 1.0),
        retry_policy=RetryPolicy(max_retries=max_retries, initial_delay_seconds=0),
        concurrency=concurrency,
    )


def upload(source_id, kind=ChangeKind.NEW, previous=None, content=None, marker="2025-02-01T00:00:00.000Z"):
    return UploadOperation(
        source_type=SourceType.NOTION,
        item=notion_item(source_id, marker),
        kind=kind,
        seen_at=SEEN_AT,
        previous=previous,
        rendered_content=content,
    )


def record(source_id, artifact_id, content_hash, marker="2025-01-01T00:00:00.000Z"):
    return SyncedRecord(
        source_type=SourceType.NOTION,
        source_id=source_id,
        external_artifact_id=artifact_id,
        content_hash=content_hash,
        last_modified_marker=marker,
        last_seen_at=CREATED_AT,
        created_at=CREATED_AT,
        updated_at=CREATED_AT,
    )


class TestUploads:

    @pytest.mark.asyncio
    async def test_new_upload_writes_record(self, store):
        writer = FakeIndexWriter()
        pipeline = make_pipeline(store, writer)

        results = await pipeline.run([upload("A", content="hello")])

        assert len(results) == 1
        assert results[0].success
        assert results[0].external_artifact_id == "file-1"
        assert writer.filenames["file-1"] == "notion_A.txt"
        saved = store.get(RecordKey(SourceType.NOTION, "A"))
        assert saved.external_artifact_id == "file-1"
        assert saved.content_hash == compute_content_hash("hello")
        assert saved.last_seen_at == SEEN_AT
        assert saved.title == "Page A"

    @pytest.mark.asyncio
    async def test_content_is_rendered_lazily(self, store):
        reader = FakeReader([], contents={"A": "rendered A"})
        writer = FakeIndexWriter()

        await make_pipeline(store, writer, reader=reader).run([upload("A")])

        assert reader.detail_calls == ["A"]
        assert writer.files["file-1"] == "rendered A"

    @pytest.mark.asyncio
    async def test_update_replaces_previous_artifact(self, store):
        previous = record("A", "file-old", "old-hash")
        store.put(previous)
        writer = FakeIndexWriter()

        results = await make_pipeline(store, writer).run(
            [upload("A", ChangeKind.UPDATED, previous=previous, content="new text")]
        )

        assert results[0].success
        assert not results[0].metadata_only
        assert writer.deleted == ["file-old"]
        saved = store.get(previous.key)
        assert saved.external_artifact_id == "file-1"
        assert saved.created_at == CREATED_AT

    @pytest.mark.asyncio
    async def test_same_content_updates_metadata_only(self, store):
        previous = record("A", "file-a", compute_content_hash("same"))
        store.put(previous)
        writer = FakeIndexWriter()

        results = await make_pipeline(store, writer).run(
            [upload("A", ChangeKind.UPDATED, previous=previous, content="same")]
        )

        assert results[0].success
        assert results[0].metadata_only
        assert results[0].external_artifact_id == "file-a"
        assert writer.created == []
        assert writer.deleted == []
        saved = store.get(previous.key)
        assert saved.last_modified_marker == "2025-02-01T00:00:00.000Z"
        assert saved.last_seen_at == SEEN_AT

    @pytest.mark.asyncio
    async def test_incomplete_record_is_reuploaded_even_with_same_hash(self, store):
        previous = record("A", "", compute_content_hash("same"))
        store.put(previous)
        writer = FakeIndexWriter()

        results = await make_pipeline(store, writer).run(
            [upload("A", ChangeKind.INCOMPLETE, previous=previous, content="same")]
        )

        assert not results[0].metadata_only
        assert writer.created == ["file-1"]
        assert writer.deleted == []

    @pytest.mark.asyncio
    async def test_failed_upload_leaves_incomplete_record(self, store):
        writer = FakeIndexWriter(fail_filenames={"notion_A.txt"})

        results = await make_pipeline(store, writer).run([upload("A", content="text")])

        assert not results[0].success
        assert "rejected" in results[0].error
        saved = store.get(RecordKey(SourceType.NOTION, "A"))
        assert saved is not None
        assert saved.external_artifact_id == ""

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, store):
        writer = FakeIndexWriter(transient_failures=2)

        results = await make_pipeline(store, writer).run([upload("A", content="text")])

        assert results[0].success
        assert writer.create_attempts == 3

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, store):
        writer = FakeIndexWriter(transient_failures=5)

        results = await make_pipeline(store, writer, max_retries=1).run([upload("A", content="text")])

        assert not results[0].success
        assert writer.create_attempts == 2

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store):
        writer = FakeIndexWriter(delay=0.01)
        operations = [upload(str(i), content=f"text {i}") for i in range(8)]

        results = await make_pipeline(store, writer, concurrency=2).run(operations)

        assert all(result.success for result in results)
        assert len(writer.created) == 8
        assert writer.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_record_store_failure_propagates(self, store):
        broken = Mock(wraps=store)
        broken.put.side_effect = RecordStoreError("disk full")
        pipeline = make_pipeline(broken, FakeIndexWriter())

        with pytest.raises(RecordStoreError):
            await pipeline.run([upload("A", content="text")])

    @pytest.mark.asyncio
    async def test_empty_batch(self, store):
        assert await make_pipeline(store, FakeIndexWriter()).run([]) == []


class TestDeletes:

    @pytest.mark.asyncio
    async def test_delete_removes_artifact_and_record(self, store):
        existing = record("A", "file-a", "hash")
        store.put(existing)
        writer = FakeIndexWriter()

        results = await make_pipeline(store, writer).run([DeleteOperation.for_record(existing)])

        assert results[0].success
        assert writer.deleted == ["file-a"]
        assert store.get(existing.key) is None

    @pytest.mark.asyncio
    async def test_delete_of_incomplete_record_skips_index(self, store):
        existing = record("A", "", "hash")
        store.put(existing)
        writer = FakeIndexWriter()

        results = await make_pipeline(store, writer).run([DeleteOperation.for_record(existing)])

        assert results[0].success
        assert writer.deleted == []
        assert store.get(existing.key) is None

    def test_invalid_concurrency(self, store):
        with pytest.raises(ValueError):
            make_pipeline(store, FakeIndexWriter(), concurrency=0)
