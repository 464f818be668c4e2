"""
Core data model for the incremental sync engine.

This module provides:
1. Source and status enumerations
2. The ephemeral SourceItem produced by source readers
3. The persistent SyncedRecord and SyncState documents
4. Upload/delete operations and their results
5. The run result returned to callers
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Union


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, assuming UTC for naive values."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp as a fixed-width UTC ISO-8601 string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


class SourceType(str, Enum):
    """Supported content sources."""
    NOTION = "notion"  # page-oriented
    SLACK = "slack"  # message-oriented


class SyncStatus(str, Enum):
    """Lifecycle status of a source's sync state."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class SyncPhase(str, Enum):
    """Which phase of a run the checkpoint belongs to."""
    STREAM = "stream"
    DELETE = "delete"


class ChangeKind(str, Enum):
    """Classification of a source item against its persisted record."""
    NEW = "new"
    INCOMPLETE = "incomplete"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class RecordKey(NamedTuple):
    source_type: SourceType
    source_id: str

    @property
    def document_id(self) -> str:
        return f"{self.source_type.value}_{self.source_id}"


@dataclass
class SourceItem:
    """An item as reported by a source reader for one fetch."""
    source_id: str
    last_modified_marker: str
    title: str = ""
    url: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncedRecord:
    """
    Persistent record of an item that has been synced to the index.

    An empty ``external_artifact_id`` means the upload was never confirmed.
    """
    source_type: SourceType
    source_id: str
    external_artifact_id: str
    content_hash: str
    last_modified_marker: str
    last_seen_at: datetime
    created_at: datetime
    updated_at: datetime
    title: str = ""
    url: str = ""

    @property
    def key(self) -> RecordKey:
        return RecordKey(self.source_type, self.source_id)

    @property
    def is_upload_confirmed(self) -> bool:
        return bool(self.external_artifact_id)


@dataclass
class SyncStats:
    """Per-run counters."""
    processed: int = 0
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    errored: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "added": self.added,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "deleted": self.deleted,
            "errored": self.errored,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SyncStats':
        data = data or {}
        return cls(**{name: int(data.get(name, 0)) for name in cls().to_dict()})


@dataclass
class SyncState:
    """
    Persistent per-source state: the checkpoint plus operator-facing status.

    ``cursor`` and ``run_started_at`` describe an in-flight run. They are kept
    while the run is running, paused (timeout) or failed, and cleared when the
    run completes. A ``cursor`` of None with a ``run_started_at`` set means the
    stream restarts from the beginning of the source.
    """
    source_type: SourceType
    status: SyncStatus = SyncStatus.IDLE
    cursor: Optional[str] = None
    run_started_at: Optional[datetime] = None
    phase: SyncPhase = SyncPhase.STREAM
    stop_requested: bool = False
    stats: SyncStats = field(default_factory=SyncStats)
    last_error: Optional[str] = None
    pause_reason: Optional[str] = None
    last_run_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    total_documents: int = 0

    @property
    def has_checkpoint(self) -> bool:
        return self.run_started_at is not None

    @property
    def is_resumable(self) -> bool:
        return self.has_checkpoint and self.status in (
            SyncStatus.RUNNING, SyncStatus.TIMEOUT, SyncStatus.FAILED
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_type": self.source_type.value,
            "status": self.status.value,
            "cursor": self.cursor,
            "run_started_at": format_datetime(self.run_started_at),
            "phase": self.phase.value,
            "stop_requested": self.stop_requested,
            "stats": self.stats.to_dict(),
            "last_error": self.last_error,
            "pause_reason": self.pause_reason,
            "last_run_at": format_datetime(self.last_run_at),
            "last_completed_at": format_datetime(self.last_completed_at),
            "total_documents": self.total_documents,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncState':
        return cls(
            source_type=SourceType(data["source_type"]),
            status=SyncStatus(data.get("status", SyncStatus.IDLE.value)),
            cursor=data.get("cursor"),
            run_started_at=parse_datetime(data.get("run_started_at")),
            phase=SyncPhase(data.get("phase", SyncPhase.STREAM.value)),
            stop_requested=bool(data.get("stop_requested", False)),
            stats=SyncStats.from_dict(data.get("stats")),
            last_error=data.get("last_error"),
            pause_reason=data.get("pause_reason"),
            last_run_at=parse_datetime(data.get("last_run_at")),
            last_completed_at=parse_datetime(data.get("last_completed_at")),
            total_documents=int(data.get("total_documents", 0)),
        )


@dataclass
class UploadOperation:
    """Render an item and upload it, replacing any previous artifact."""
    source_type: SourceType
    item: SourceItem
    kind: ChangeKind
    seen_at: datetime
    previous: Optional[SyncedRecord] = None
    rendered_content: Optional[str] = None

    @property
    def key(self) -> RecordKey:
        return RecordKey(self.source_type, self.item.source_id)

    @property
    def filename(self) -> str:
        return f"{self.source_type.value}_{self.item.source_id}.txt"


@dataclass
class DeleteOperation:
    """Remove an artifact from the index and forget its record."""
    external_artifact_id: str
    record_key: RecordKey

    @classmethod
    def for_record(cls, record: SyncedRecord) -> 'DeleteOperation':
        return cls(external_artifact_id=record.external_artifact_id, record_key=record.key)


Operation = Union[UploadOperation, DeleteOperation]


@dataclass
class OperationResult:
    operation: Operation
    success: bool
    external_artifact_id: Optional[str] = None
    error: Optional[str] = None
    metadata_only: bool = False


@dataclass
class SyncRunResult:
    """Summary of one invocation of the orchestrator."""
    source_type: SourceType
    status: SyncStatus
    stats: SyncStats
    duration_seconds: float
    errors: List[str] = field(default_factory=list)
    errors_suppressed: int = 0
    pause_reason: Optional[str] = None
    last_error: Optional[str] = None
    resumed: bool = False

    @property
    def paused(self) -> bool:
        return self.status == SyncStatus.TIMEOUT

    @property
    def discovered(self) -> int:
        return self.stats.processed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_type": self.source_type.value,
            "status": self.status.value,
            "stats": self.stats.to_dict(),
            "duration_seconds": round(self.duration_seconds, 3),
            "errors": list(self.errors),
            "errors_suppressed": self.errors_suppressed,
            "pause_reason": self.pause_reason,
            "last_error": self.last_error,
            "resumed": self.resumed,
        }
