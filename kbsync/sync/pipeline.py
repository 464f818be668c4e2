"""
Upload/Delete Pipeline for the Sync Engine

This module applies classified operations to the index with bounded
concurrency and yields one OperationResult per operation as soon as it is
done.

Record writes are split in two so a crash between them is recoverable:
the record is written with an empty artifact id before the index call, and
the artifact id is attached only after the index acknowledged the upload.
"""

import asyncio
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence, TypeVar

from ..config import get_logger
from ..vector_store.vector_store_base import IndexWriter
from .content import compute_content_hash
from .error_tracker import RecordStoreError
from .models import (
    DeleteOperation, Operation, OperationResult, SyncedRecord, UploadOperation, utc_now,
)
from .rate_limiter import RateLimiter
from .record_store import RecordStore
from .resilience import RetryPolicy, with_retry
from .source_reader import SourceReader

T = TypeVar('T')


class OperationPipeline:
    """
    Applies upload and delete operations against the index.

    Args:
        reader: Renders content for uploads that carry none
        index_writer: The external index
        record_store: Where SyncedRecords are persisted
        limiter: Rate limiter for index calls
        retry_policy: Backoff policy for index calls
        concurrency: Maximum operations in flight
    """

    def __init__(
        self,
        reader: SourceReader,
        index_writer: IndexWriter,
        record_store: RecordStore,
        limiter: RateLimiter,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 10,
        clock: Callable = utc_now,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.reader = reader
        self.index_writer = index_writer
        self.record_store = record_store
        self.limiter = limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = concurrency
        self.clock = clock
        self.logger = get_logger(__name__)

    async def stream(self, operations: Sequence[Operation]) -> AsyncIterator[OperationResult]:
        """
        Apply operations concurrently, yielding results in completion order.

        A failed operation yields an unsuccessful result; record store
        failures are fatal to the run and propagate.
        """
        if not operations:
            return
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(operation: Operation) -> OperationResult:
            async with semaphore:
                return await self.apply(operation)

        tasks = [asyncio.ensure_future(guarded(operation)) for operation in operations]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def run(self, operations: Sequence[Operation]) -> List[OperationResult]:
        """Apply operations and collect all results."""
        return [result async for result in self.stream(operations)]

    async def apply(self, operation: Operation) -> OperationResult:
        try:
            if isinstance(operation, UploadOperation):
                return await self._apply_upload(operation)
            if isinstance(operation, DeleteOperation):
                return await self._apply_delete(operation)
            raise TypeError(f"Unsupported operation: {operation!r}")
        except RecordStoreError:
            raise
        except Exception as e:
            if self.index_writer.is_fatal(e) or self.reader.is_fatal(e):
                raise
            name = _describe(operation)
            self.logger.error(f"Operation failed for {name}: {e}", extra={'details': {'operation': name, 'exception': str(e)}})
            return OperationResult(operation=operation, success=False, error=str(e) or type(e).__name__)

    async def _call_index(self, call: Callable[[], Awaitable[T]], operation_name: str) -> T:
        return await with_retry(
            lambda: self.limiter.execute(call),
            policy=self.retry_policy,
            is_transient=self.index_writer.is_transient,
            operation_name=operation_name,
        )

    async def _apply_upload(self, operation: UploadOperation) -> OperationResult:
        item = operation.item
        key = operation.key
        previous = operation.previous

        content = operation.rendered_content
        if content is None:
            content = await self.reader.fetch_full_detail(item)
        content_hash = compute_content_hash(content)

        if previous is not None and previous.is_upload_confirmed and previous.content_hash == content_hash:
            # The marker moved but the rendered content did not
            self.record_store.update(
                key,
                last_modified_marker=item.last_modified_marker,
                last_seen_at=operation.seen_at,
                title=item.title,
                url=item.url,
            )
            return OperationResult(
                operation=operation,
                success=True,
                external_artifact_id=previous.external_artifact_id,
                metadata_only=True,
            )

        if previous is not None and previous.external_artifact_id:
            superseded = previous.external_artifact_id
            await self._call_index(lambda: self.index_writer.delete(superseded), f"delete {superseded}")

        now = self.clock()
        self.record_store.put(SyncedRecord(
            source_type=operation.source_type,
            source_id=item.source_id,
            external_artifact_id='',
            content_hash=content_hash,
            last_modified_marker=item.last_modified_marker,
            last_seen_at=operation.seen_at,
            created_at=previous.created_at if previous is not None else now,
            updated_at=now,
            title=item.title,
            url=item.url,
        ))

        artifact_id = await self._call_index(
            lambda: self.index_writer.create(content, operation.filename),
            f"upload {operation.filename}",
        )
        self.record_store.update(key, external_artifact_id=artifact_id)
        return OperationResult(operation=operation, success=True, external_artifact_id=artifact_id)

    async def _apply_delete(self, operation: DeleteOperation) -> OperationResult:
        artifact_id = operation.external_artifact_id
        if artifact_id:
            await self._call_index(lambda: self.index_writer.delete(artifact_id), f"delete {artifact_id}")
        self.record_store.delete(operation.record_key)
        return OperationResult(operation=operation, success=True, external_artifact_id=artifact_id or None)


def _describe(operation: Operation) -> str:
    if isinstance(operation, UploadOperation):
        return operation.key.document_id
    if isinstance(operation, DeleteOperation):
        return operation.record_key.document_id
    return repr(operation)
