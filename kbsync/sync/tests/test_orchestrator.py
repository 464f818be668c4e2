"""
Tests for the resumable sync orchestrator.
"""

import pytest
import tempfile
from datetime import datetime, timezone

from ..error_tracker import SyncInProgressError
from ..models import (
    SourceType, SyncPhase, SyncState, SyncStats, SyncStatus, SyncedRecord, RecordKey,
)
from ..orchestrator import (
    ITEM_LIMIT_REASON, STOP_REASON, TIMEOUT_REASON, SyncOrchestrator, SyncStateController,
)
from ..pipeline import OperationPipeline
from ..rate_limiter import RateLimiter
from ..record_store import SQLiteRecordStore
from ..resilience import RetryPolicy
from .fakes import Crash, FakeClock, FakeIndexWriter, FakeReader, notion_item

OLD_EDIT = "2024-12-01T00:00:00.000Z"
NEW_EDIT = "2025-01-01T00:00:00.000Z"
LONG_AGO = datetime(2024, 6, 1, tzinfo=timezone.utc)


def make_orchestrator(store, reader, writer, clock, chunk_size=2, **kwargs):
    pipeline = OperationPipeline(
        reader=reader,
        index_writer=writer,
        record_store=store,
        limiter=RateLimiter(1000, 1.0),
        retry_policy=RetryPolicy(max_retries=2, initial_delay_seconds=0),
        concurrency=4,
    )
    return SyncOrchestrator(
        source_type=SourceType.NOTION,
        reader=reader,
        record_store=store,
        pipeline=pipeline,
        chunk_size=chunk_size,
        clock=clock,
        **kwargs,
    )


def seed(store, source_id, marker, artifact_id, content_hash="stale-hash"):
    store.put(SyncedRecord(
        source_type=SourceType.NOTION,
        source_id=source_id,
        external_artifact_id=artifact_id,
        content_hash=content_hash,
        last_modified_marker=marker,
        last_seen_at=LONG_AGO,
        created_at=LONG_AGO,
        updated_at=LONG_AGO,
    ))


def key(source_id):
    return RecordKey(SourceType.NOTION, source_id)


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield SQLiteRecordStore(state_directory=temp_dir)


@pytest.fixture
def clock():
    return FakeClock()


def five_items():
    return [notion_item(source_id) for source_id in "ABCDE"]


class TestIncrementalRun:
    """Classification and stats over full runs."""

    @pytest.mark.asyncio
    async def test_new_unchanged_and_updated_items(self, store, clock):
        seed(store, "B", NEW_EDIT, "file-b")
        seed(store, "C", OLD_EDIT, "file-c")
        items = [notion_item("A"), notion_item("B"), notion_item("C")]
        reader = FakeReader(items)
        writer = FakeIndexWriter()

        result = await make_orchestrator(store, reader, writer, clock).run()

        assert result.status == SyncStatus.COMPLETED
        assert result.stats.processed == 3
        assert result.stats.added == 1
        assert result.stats.unchanged == 1
        assert result.stats.updated == 1
        assert result.stats.deleted == 0
        assert result.stats.errored == 0
        assert set(reader.detail_calls) == {"A", "C"}
        assert writer.deleted == ["file-c"]
        assert store.get(key("C")).external_artifact_id in writer.created
        assert store.get(key("C")).last_modified_marker == NEW_EDIT
        assert store.get(key("B")).external_artifact_id == "file-b"
        assert store.get(key("B")).last_seen_at > LONG_AGO

        state = store.get_state(SourceType.NOTION)
        assert state.status == SyncStatus.COMPLETED
        assert state.cursor is None
        assert state.run_started_at is None
        assert state.total_documents == 3

        second = await make_orchestrator(store, FakeReader(items), writer, clock).run()

        assert second.status == SyncStatus.COMPLETED
        assert second.stats.unchanged == 3
        assert second.stats.added == 0
        assert second.stats.updated == 0
        assert len(writer.created) == 2

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, store, clock):
        writer = FakeIndexWriter()
        await make_orchestrator(store, FakeReader(five_items()), writer, clock).run()
        created = list(writer.created)

        reader = FakeReader(five_items())
        result = await make_orchestrator(store, reader, writer, clock).run()

        assert result.stats.unchanged == 5
        assert result.stats.processed == 5
        assert writer.created == created
        assert writer.deleted == []
        assert reader.detail_calls == []

    @pytest.mark.asyncio
    async def test_marker_change_with_same_content_is_metadata_only(self, store, clock):
        writer = FakeIndexWriter()
        await make_orchestrator(store, FakeReader([notion_item("A", OLD_EDIT)]), writer, clock).run()

        result = await make_orchestrator(store, FakeReader([notion_item("A", NEW_EDIT)]), writer, clock).run()

        assert result.stats.unchanged == 1
        assert result.stats.updated == 0
        assert writer.created == ["file-1"]
        assert store.get(key("A")).last_modified_marker == NEW_EDIT

    @pytest.mark.asyncio
    async def test_stale_records_are_deleted(self, store, clock):
        seed(store, "gone", OLD_EDIT, "file-gone")
        writer = FakeIndexWriter()

        result = await make_orchestrator(store, FakeReader([notion_item("A")]), writer, clock).run()

        assert result.status == SyncStatus.COMPLETED
        assert result.stats.deleted == 1
        assert writer.deleted == ["file-gone"]
        assert store.get(key("gone")) is None
        assert store.count(SourceType.NOTION) == 1

    @pytest.mark.asyncio
    async def test_incomplete_upload_is_retried(self, store, clock):
        seed(store, "A", NEW_EDIT, "")
        writer = FakeIndexWriter()

        result = await make_orchestrator(store, FakeReader([notion_item("A")]), writer, clock).run()

        assert result.stats.added == 1
        assert writer.deleted == []
        assert store.get(key("A")).external_artifact_id == "file-1"

    @pytest.mark.asyncio
    async def test_item_failure_is_counted_and_recovered_next_run(self, store, clock):
        items = [notion_item("A"), notion_item("B"), notion_item("C")]
        failing = FakeIndexWriter(fail_filenames={"notion_B.txt"})

        result = await make_orchestrator(store, FakeReader(items), failing, clock).run()

        assert result.status == SyncStatus.COMPLETED
        assert result.stats.added == 2
        assert result.stats.errored == 1
        assert len(result.errors) == 1
        assert "notion_B.txt" in result.errors[0]
        assert store.get(key("B")).external_artifact_id == ""

        second = await make_orchestrator(store, FakeReader(items), FakeIndexWriter(), clock).run()

        assert second.stats.added == 1
        assert second.stats.unchanged == 2
        assert store.get(key("B")).external_artifact_id == "file-1"

    @pytest.mark.asyncio
    async def test_failed_render_keeps_existing_document(self, store, clock):
        seed(store, "A", OLD_EDIT, "file-a")
        seed(store, "gone", OLD_EDIT, "file-gone")
        reader = FakeReader([notion_item("A", NEW_EDIT), notion_item("B")], fail_details={"A"})
        writer = FakeIndexWriter()

        result = await make_orchestrator(store, reader, writer, clock).run()

        assert result.status == SyncStatus.COMPLETED
        assert result.stats.processed == 2
        assert result.stats.added == 1
        assert result.stats.errored == 1
        assert result.stats.deleted == 1
        assert writer.deleted == ["file-gone"]
        record = store.get(key("A"))
        assert record.external_artifact_id == "file-a"
        assert record.last_modified_marker == OLD_EDIT
        assert record.last_seen_at > LONG_AGO

        second = await make_orchestrator(store, FakeReader([notion_item("A", NEW_EDIT), notion_item("B")]),
                                         writer, clock).run()

        assert second.stats.updated == 1
        assert second.stats.deleted == 0
        assert "file-a" in writer.deleted
        assert store.get(key("A")).last_modified_marker == NEW_EDIT

    @pytest.mark.asyncio
    async def test_failed_replace_keeps_existing_document(self, store, clock):
        seed(store, "A", OLD_EDIT, "file-a")
        writer = FakeIndexWriter(fail_deletes={"file-a"})

        result = await make_orchestrator(store, FakeReader([notion_item("A", NEW_EDIT)]), writer, clock).run()

        assert result.status == SyncStatus.COMPLETED
        assert result.stats.errored == 1
        assert result.stats.deleted == 0
        assert writer.created == []
        record = store.get(key("A"))
        assert record.external_artifact_id == "file-a"
        assert record.last_modified_marker == OLD_EDIT
        assert record.last_seen_at > LONG_AGO

    @pytest.mark.asyncio
    async def test_duplicate_items_in_a_chunk_are_processed_once(self, store, clock):
        reader = FakeReader([notion_item("A"), notion_item("A")])
        writer = FakeIndexWriter()

        result = await make_orchestrator(store, reader, writer, clock).run()

        assert result.stats.processed == 1
        assert writer.created == ["file-1"]


class TestResumption:
    """Checkpoints, pauses and failures."""

    @pytest.mark.asyncio
    async def test_crash_resumes_from_persisted_cursor(self, store, clock):
        writer = FakeIndexWriter()
        crashing = FakeReader(five_items(), crash_on_fetch=2)

        with pytest.raises(Crash):
            await make_orchestrator(store, crashing, writer, clock).run()

        state = store.get_state(SourceType.NOTION)
        assert state.status == SyncStatus.RUNNING
        assert state.cursor == "2"
        assert state.stats.processed == 2
        watermark = state.run_started_at

        reader = FakeReader(five_items())
        result = await make_orchestrator(store, reader, writer, clock).run()

        assert result.resumed
        assert result.status == SyncStatus.COMPLETED
        assert reader.fetch_calls[0][0] == "2"
        assert result.stats.processed == 5
        assert result.stats.added == 5
        assert result.stats.deleted == 0
        assert len(writer.created) == 5
        assert all(record.last_seen_at == watermark for record in store.list_records(SourceType.NOTION))

    @pytest.mark.asyncio
    async def test_failure_keeps_checkpoint(self, store, clock):
        reader = FakeReader(five_items(), fail_on_fetch=2)

        result = await make_orchestrator(store, reader, FakeIndexWriter(), clock).run()

        assert result.status == SyncStatus.FAILED
        assert result.last_error == "source unavailable"
        state = store.get_state(SourceType.NOTION)
        assert state.status == SyncStatus.FAILED
        assert state.last_error == "source unavailable"
        assert state.cursor == "2"
        assert state.run_started_at is not None
        assert state.stats.processed == 2

        retry = await make_orchestrator(store, FakeReader(five_items()), FakeIndexWriter(), clock).run()

        assert retry.resumed
        assert retry.status == SyncStatus.COMPLETED
        assert retry.stats.processed == 5
        assert store.get_state(SourceType.NOTION).last_error is None

    @pytest.mark.asyncio
    async def test_fatal_index_error_fails_run(self, store, clock):
        writer = FakeIndexWriter(fatal=True)

        result = await make_orchestrator(store, FakeReader(five_items()), writer, clock).run()

        assert result.status == SyncStatus.FAILED
        assert result.last_error == "invalid api key"
        assert store.get_state(SourceType.NOTION).status == SyncStatus.FAILED

    @pytest.mark.asyncio
    async def test_max_runtime_pauses_run(self, store, clock):
        ticks = [0.0]

        def monotonic():
            return ticks.pop(0) if ticks else 1000.0

        orchestrator = make_orchestrator(
            store, FakeReader(five_items()), FakeIndexWriter(), clock,
            max_runtime_seconds=60, monotonic=monotonic,
        )
        result = await orchestrator.run()

        assert result.status == SyncStatus.TIMEOUT
        assert result.paused
        assert result.pause_reason == TIMEOUT_REASON
        assert result.stats.processed == 2
        state = store.get_state(SourceType.NOTION)
        assert state.status == SyncStatus.TIMEOUT
        assert state.cursor == "2"

        resumed = await make_orchestrator(store, FakeReader(five_items()), FakeIndexWriter(), clock).run()

        assert resumed.resumed
        assert resumed.status == SyncStatus.COMPLETED
        assert resumed.stats.processed == 5

    @pytest.mark.asyncio
    async def test_stop_request_pauses_at_checkpoint(self, store, clock):
        controller = SyncStateController(SourceType.NOTION, store)
        requested = []

        def on_fetch(call):
            if call == 1:
                requested.append(controller.request_stop())

        reader = FakeReader(five_items(), on_fetch=on_fetch)
        result = await make_orchestrator(store, reader, FakeIndexWriter(), clock).run()

        assert requested == [True]
        assert result.status == SyncStatus.TIMEOUT
        assert result.pause_reason == STOP_REASON
        assert len(reader.fetch_calls) == 1
        state = store.get_state(SourceType.NOTION)
        assert state.stop_requested is False
        assert state.cursor == "2"

    @pytest.mark.asyncio
    async def test_item_limit_pauses_and_resumes(self, store, clock):
        reader = FakeReader(five_items())

        result = await make_orchestrator(store, reader, FakeIndexWriter(), clock).run(max_items=3)

        assert result.status == SyncStatus.TIMEOUT
        assert result.pause_reason == ITEM_LIMIT_REASON
        assert [limit for _, limit in reader.fetch_calls] == [2, 1]
        assert result.stats.processed == 3

        next_reader = FakeReader(five_items())
        resumed = await make_orchestrator(store, next_reader, FakeIndexWriter(), clock).run()

        assert next_reader.fetch_calls[0] == ("3", 2)
        assert resumed.status == SyncStatus.COMPLETED
        assert resumed.stats.processed == 5

    @pytest.mark.asyncio
    async def test_invalid_item_limit(self, store, clock):
        with pytest.raises(ValueError):
            await make_orchestrator(store, FakeReader([]), FakeIndexWriter(), clock).run(max_items=0)

    @pytest.mark.asyncio
    async def test_resume_in_delete_phase_skips_stream(self, store, clock):
        seed(store, "gone", OLD_EDIT, "file-gone")
        store.put_state(SyncState(
            source_type=SourceType.NOTION,
            status=SyncStatus.TIMEOUT,
            run_started_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            phase=SyncPhase.DELETE,
            stats=SyncStats(processed=4, added=4),
        ))
        reader = FakeReader([notion_item("A")])
        writer = FakeIndexWriter()

        result = await make_orchestrator(store, reader, writer, clock).run()

        assert reader.fetch_calls == []
        assert result.status == SyncStatus.COMPLETED
        assert result.stats.deleted == 1
        assert result.stats.processed == 4
        assert writer.deleted == ["file-gone"]

    @pytest.mark.asyncio
    async def test_completed_state_starts_fresh(self, store, clock):
        await make_orchestrator(store, FakeReader(five_items()), FakeIndexWriter(), clock).run()

        result = await make_orchestrator(store, FakeReader(five_items()), FakeIndexWriter(), clock).run()

        assert not result.resumed
        assert result.stats.processed == 5


class TestStateController:
    """Operator operations."""

    def test_stop_without_running_sync(self, store):
        controller = SyncStateController(SourceType.SLACK, store)

        assert controller.request_stop() is False
        assert store.get_state(SourceType.SLACK) is None

    def test_status_of_never_run_source(self, store):
        state = SyncStateController(SourceType.SLACK, store).get_status()

        assert state.status == SyncStatus.IDLE
        assert state.cursor is None

    def test_reset_refuses_running_sync(self, store):
        store.put_state(SyncState(
            source_type=SourceType.NOTION,
            status=SyncStatus.RUNNING,
            cursor="4",
            run_started_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        ))
        controller = SyncStateController(SourceType.NOTION, store)

        with pytest.raises(SyncInProgressError):
            controller.reset()

        state = controller.reset(force=True)
        assert state.status == SyncStatus.IDLE
        assert store.get_state(SourceType.NOTION).cursor is None
        assert store.get_state(SourceType.NOTION).run_started_at is None

    def test_reset_keeps_records(self, store):
        seed(store, "A", NEW_EDIT, "file-a")
        store.put_state(SyncState(
            source_type=SourceType.NOTION,
            status=SyncStatus.FAILED,
            cursor="2",
            run_started_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            last_error="boom",
            total_documents=1,
        ))

        state = SyncStateController(SourceType.NOTION, store).reset()

        assert state.status == SyncStatus.IDLE
        assert state.last_error is None
        assert state.total_documents == 1
        assert store.get(key("A")) is not None
