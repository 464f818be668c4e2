"""
Incremental Sync Orchestration

This module provides the resumable sync loop that runs once per source:
- Initialize a fresh run, or resume from the persisted checkpoint
- Stream chunks from the source, classify each item and apply the result
- Checkpoint after every chunk and honour stop conditions (runtime limit,
  operator stop request, item cap)
- Delete records the run did not see, then finalize

Operator operations (stop, reset, status) act on the same persisted state.
"""

import time
from dataclasses import replace
from typing import Callable, List, Optional, Tuple

from .classifier import ChangeClassifier, classifier_for
from .error_tracker import ErrorTracker, ErrorSeverity, RecordStoreError, SyncInProgressError
from .logging_manager import LoggingManager
from .models import (
    ChangeKind, DeleteOperation, OperationResult, RecordKey, SourceItem, SourceType,
    SyncPhase, SyncRunResult, SyncState, SyncStats, SyncStatus, UploadOperation, utc_now,
)
from .pipeline import OperationPipeline
from .record_store import RecordStore
from .source_reader import SourceReader

logger = LoggingManager.get_logger(__name__)

TIMEOUT_REASON = "max runtime reached"
STOP_REASON = "stop requested"
ITEM_LIMIT_REASON = "item limit reached"


class SyncStateController:
    """
    Operator-facing operations on a source's persisted sync state.

    These need only the record store, so they work without source or index
    credentials.
    """

    def __init__(self, source_type: SourceType, record_store: RecordStore):
        self.source_type = source_type
        self.record_store = record_store

    @property
    def name(self) -> str:
        return self.source_type.value

    def request_stop(self) -> bool:
        """Ask a running sync to pause at its next checkpoint."""
        state = self.record_store.get_state(self.source_type)
        if state is None or state.status != SyncStatus.RUNNING:
            logger.info(f"No running {self.name} sync to stop")
            return False
        self.record_store.update_state(self.source_type, stop_requested=True)
        logger.info(f"Stop requested for {self.name} sync")
        return True

    def reset(self, force: bool = False) -> SyncState:
        """
        Return the source to idle, discarding any checkpoint.

        Synced records are kept, so the next run re-checks every item
        instead of re-uploading everything.
        """
        current = self.record_store.get_state(self.source_type)
        if current is not None and current.status == SyncStatus.RUNNING and not force:
            raise SyncInProgressError(
                f"A {self.name} sync is running",
                recovery_suggestion="Request a stop first, or reset with force if the run is known to be dead.",
            )
        state = SyncState(
            source_type=self.source_type,
            status=SyncStatus.IDLE,
            last_run_at=current.last_run_at if current else None,
            last_completed_at=current.last_completed_at if current else None,
            total_documents=current.total_documents if current else 0,
        )
        self.record_store.put_state(state)
        logger.info(f"{self.name} sync state reset")
        return state

    def get_status(self) -> SyncState:
        """Current persisted state (idle when the source never ran)."""
        return self.record_store.get_state(self.source_type) or SyncState(source_type=self.source_type)


class SyncOrchestrator(SyncStateController):
    """
    Resumable incremental sync of one source into the index.

    Args:
        source_type: The source this orchestrator owns
        reader: Source reader for that source
        record_store: Persistence for records and sync state
        pipeline: Applies upload/delete operations
        classifier: Change classifier (defaults to the source's canonical rule)
        chunk_size: Items fetched, applied and checkpointed together
        max_runtime_seconds: Wall-clock budget of one invocation
        max_reported_errors: Error messages kept in the run result
        clock: Wall clock used for watermarks and timestamps
        monotonic: Clock used to measure elapsed time
    """

    def __init__(
        self,
        source_type: SourceType,
        reader: SourceReader,
        record_store: RecordStore,
        pipeline: OperationPipeline,
        classifier: Optional[ChangeClassifier] = None,
        chunk_size: int = 20,
        max_runtime_seconds: float = 55 * 60,
        max_reported_errors: int = 50,
        clock: Callable = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        super().__init__(source_type, record_store)
        self.reader = reader
        self.pipeline = pipeline
        self.classifier = classifier or classifier_for(source_type)
        self.chunk_size = chunk_size
        self.max_runtime_seconds = max_runtime_seconds
        self.max_reported_errors = max_reported_errors
        self.clock = clock
        self.monotonic = monotonic

    async def run(self, max_items: Optional[int] = None) -> SyncRunResult:
        """
        Run (or resume) a sync of the source.

        Args:
            max_items: Optional cap on items fetched by this invocation. When
                reached the run pauses with a resumable checkpoint.

        Returns:
            SyncRunResult; failures are reported in the result, not raised.
        """
        if max_items is not None and max_items <= 0:
            raise ValueError("max_items must be positive")
        started = self.monotonic()
        tracker = ErrorTracker(max_errors=self.max_reported_errors)
        state: Optional[SyncState] = None
        resumed = False

        try:
            state, resumed = self._initialize()

            if state.phase == SyncPhase.STREAM:
                pause_reason = await self._stream(state, tracker, started, max_items)
                if pause_reason:
                    return self._pause(state, pause_reason, tracker, started, resumed)
                state.phase = SyncPhase.DELETE
                state.cursor = None
                self._checkpoint(state)

            pause_reason = await self._delete_stale(state, tracker, started)
            if pause_reason:
                return self._pause(state, pause_reason, tracker, started, resumed)

            return self._finalize(state, tracker, started, resumed)

        except Exception as e:
            return self._fail(state, e, tracker, started, resumed)

    def _initialize(self) -> Tuple[SyncState, bool]:
        existing = self.record_store.get_state(self.source_type)
        if existing is not None and existing.is_resumable:
            logger.info(
                f"Resuming {self.name} sync from {existing.status.value} checkpoint "
                f"(phase: {existing.phase.value}, started: {existing.run_started_at.isoformat()})",
                extra={'details': {'source': self.name, 'cursor': existing.cursor, 'stats': existing.stats.to_dict()}},
            )
            state = self.record_store.update_state(
                self.source_type,
                status=SyncStatus.RUNNING,
                stop_requested=False,
                pause_reason=None,
                last_error=None,
            )
            return state, True

        state = SyncState(
            source_type=self.source_type,
            status=SyncStatus.RUNNING,
            run_started_at=self.clock(),
            phase=SyncPhase.STREAM,
            stats=SyncStats(),
            last_run_at=existing.last_run_at if existing else None,
            last_completed_at=existing.last_completed_at if existing else None,
            total_documents=existing.total_documents if existing else 0,
        )
        self.record_store.put_state(state)
        logger.info(f"Starting fresh {self.name} sync", extra={'details': {'source': self.name}})
        return state, False

    async def _stream(self, state: SyncState, tracker: ErrorTracker, started: float,
                      max_items: Optional[int]) -> Optional[str]:
        """Process chunks until the source is exhausted or a stop condition hits."""
        fetched = 0
        while True:
            limit = self.chunk_size
            if max_items is not None:
                limit = min(limit, max_items - fetched)

            chunk = await self.reader.fetch_chunk(state.cursor, limit)
            await self._process_chunk(state, chunk.items, tracker)
            fetched += len(chunk.items)
            state.cursor = chunk.next_cursor

            if not chunk.has_more:
                logger.info(f"{self.name}: source exhausted after {state.stats.processed} items")
                return None

            self._checkpoint(state)

            reason = self._stop_reason(started)
            if reason:
                return reason
            if max_items is not None and fetched >= max_items:
                return ITEM_LIMIT_REASON

    async def _process_chunk(self, state: SyncState, items: List[SourceItem], tracker: ErrorTracker) -> None:
        operations = []
        seen = set()
        for item in items:
            if item.source_id in seen:
                continue
            seen.add(item.source_id)

            key = RecordKey(self.source_type, item.source_id)
            record = self.record_store.get(key)
            kind = self.classifier.classify(item, record)
            state.stats.processed += 1

            if kind == ChangeKind.UNCHANGED:
                if record.last_seen_at < state.run_started_at:
                    self.record_store.update(key, last_seen_at=state.run_started_at)
                state.stats.unchanged += 1
                continue

            operations.append(UploadOperation(
                source_type=self.source_type,
                item=item,
                kind=kind,
                seen_at=state.run_started_at,
                previous=record,
            ))

        async for result in self.pipeline.stream(operations):
            self._count_upload(state, result, tracker)

    def _count_upload(self, state: SyncState, result: OperationResult, tracker: ErrorTracker) -> None:
        operation = result.operation
        if not result.success:
            if operation.previous is not None:
                # Still at the source: the failed item must not look stale
                self.record_store.update(operation.key, last_seen_at=operation.seen_at)
            state.stats.errored += 1
            tracker.report(result.error or "upload failed", source_id=operation.item.source_id,
                           details={'kind': operation.kind.value})
        elif result.metadata_only:
            state.stats.unchanged += 1
        elif operation.kind in (ChangeKind.NEW, ChangeKind.INCOMPLETE):
            state.stats.added += 1
        else:
            state.stats.updated += 1

    async def _delete_stale(self, state: SyncState, tracker: ErrorTracker, started: float) -> Optional[str]:
        """Delete every record of the source not seen since the run started."""
        stale = self.record_store.query_stale_before(self.source_type, state.run_started_at)
        if not stale:
            return None
        logger.info(f"{self.name}: deleting {len(stale)} stale documents")

        for offset in range(0, len(stale), self.chunk_size):
            batch = stale[offset:offset + self.chunk_size]
            async for result in self.pipeline.stream([DeleteOperation.for_record(record) for record in batch]):
                if result.success:
                    state.stats.deleted += 1
                else:
                    state.stats.errored += 1
                    tracker.report(result.error or "delete failed", source_id=result.operation.record_key.source_id)
            self._checkpoint(state)

            if offset + self.chunk_size < len(stale):
                reason = self._stop_reason(started)
                if reason:
                    return reason
        return None

    def _checkpoint(self, state: SyncState) -> None:
        # Partial update: never overwrites a stop request written meanwhile
        self.record_store.update_state(
            self.source_type,
            status=SyncStatus.RUNNING,
            cursor=state.cursor,
            phase=state.phase,
            stats=state.stats,
        )
        logger.info(
            f"{self.name}: checkpoint saved ({state.phase.value}, processed={state.stats.processed})",
            extra={'details': {'source': self.name, 'cursor': state.cursor, 'stats': state.stats.to_dict()}},
        )

    def _stop_reason(self, started: float) -> Optional[str]:
        current = self.record_store.get_state(self.source_type)
        if current is not None and current.stop_requested:
            return STOP_REASON
        if self.monotonic() - started >= self.max_runtime_seconds:
            return TIMEOUT_REASON
        return None

    def _result(self, state: SyncState, tracker: ErrorTracker, started: float, resumed: bool) -> SyncRunResult:
        return SyncRunResult(
            source_type=self.source_type,
            status=state.status,
            stats=replace(state.stats),
            duration_seconds=self.monotonic() - started,
            errors=tracker.messages(),
            errors_suppressed=tracker.suppressed,
            pause_reason=state.pause_reason,
            last_error=state.last_error,
            resumed=resumed,
        )

    def _pause(self, state: SyncState, reason: str, tracker: ErrorTracker, started: float, resumed: bool) -> SyncRunResult:
        state = self.record_store.update_state(
            self.source_type,
            status=SyncStatus.TIMEOUT,
            pause_reason=reason,
            stop_requested=False,
            last_run_at=self.clock(),
        )
        logger.info(f"{self.name} sync paused: {reason}", extra={'details': {'source': self.name, 'stats': state.stats.to_dict()}})
        return self._result(state, tracker, started, resumed)

    def _finalize(self, state: SyncState, tracker: ErrorTracker, started: float, resumed: bool) -> SyncRunResult:
        now = self.clock()
        state = self.record_store.update_state(
            self.source_type,
            status=SyncStatus.COMPLETED,
            cursor=None,
            run_started_at=None,
            phase=SyncPhase.STREAM,
            stop_requested=False,
            stats=state.stats,
            last_error=None,
            pause_reason=None,
            last_run_at=now,
            last_completed_at=now,
            total_documents=self.record_store.count(self.source_type),
        )
        logger.info(
            f"{self.name} sync completed: {state.total_documents} documents indexed",
            extra={'details': {'source': self.name, 'stats': state.stats.to_dict()}},
        )
        return self._result(state, tracker, started, resumed)

    def _fail(self, state: Optional[SyncState], exc: Exception, tracker: ErrorTracker,
              started: float, resumed: bool) -> SyncRunResult:
        message = str(exc) or type(exc).__name__
        logger.error(f"{self.name} sync failed: {message}", exc_info=True,
                     extra={'details': {'source': self.name, 'exception': type(exc).__name__}})
        tracker.report_exception(exc, severity=ErrorSeverity.CRITICAL)

        failed = SyncState(source_type=self.source_type, status=SyncStatus.FAILED, last_error=message)
        try:
            # Cursor and watermark stay untouched so the next run resumes
            failed = self.record_store.update_state(
                self.source_type,
                status=SyncStatus.FAILED,
                last_error=message,
                last_run_at=self.clock(),
            )
        except RecordStoreError as store_error:
            logger.error(f"Could not persist failed status for {self.name}: {store_error}")
            if state is not None:
                failed.stats = state.stats
        return self._result(failed, tracker, started, resumed)
