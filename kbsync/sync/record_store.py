"""
Record and Checkpoint Store for the Sync Engine

This module provides:
1. The RecordStore interface consumed by the orchestrator and pipeline
2. A SQLite implementation with one row per synced item
3. Per-source sync state (checkpoint, status, stop flag) persistence

Every method is a single-row read or read-modify-write; no transaction spans
more than one record.
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import get_logger
from .error_tracker import RecordStoreError
from .models import (
    RecordKey, SourceType, SyncState, SyncedRecord,
    format_datetime, parse_datetime, utc_now,
)


RECORD_FIELDS = (
    'external_artifact_id',
    'content_hash',
    'last_modified_marker',
    'last_seen_at',
    'title',
    'url',
)
DATETIME_FIELDS = ('last_seen_at', 'created_at', 'updated_at')


class RecordStore(ABC):
    """Persistence for SyncedRecords and per-source SyncState."""

    @abstractmethod
    def get(self, key: RecordKey) -> Optional[SyncedRecord]:
        pass

    @abstractmethod
    def put(self, record: SyncedRecord) -> None:
        pass

    @abstractmethod
    def update(self, key: RecordKey, **fields: Any) -> bool:
        """Update some fields of a record. Returns False when it does not exist."""
        pass

    @abstractmethod
    def delete(self, key: RecordKey) -> None:
        pass

    @abstractmethod
    def query_stale_before(self, source_type: SourceType, watermark, limit: Optional[int] = None) -> List[SyncedRecord]:
        """Records of a source whose ``last_seen_at`` is strictly before ``watermark``."""
        pass

    @abstractmethod
    def count(self, source_type: SourceType) -> int:
        pass

    @abstractmethod
    def get_state(self, source_type: SourceType) -> Optional[SyncState]:
        pass

    @abstractmethod
    def put_state(self, state: SyncState) -> None:
        pass

    @abstractmethod
    def update_state(self, source_type: SourceType, **fields: Any) -> SyncState:
        """Merge fields into the stored state (creating it if missing) and return it."""
        pass


class SQLiteRecordStore(RecordStore):
    """
    SQLite-backed record store.

    Records live in ``synced_records`` keyed by (source_type, source_id);
    the state of each source is a JSON document in ``sync_state``.
    """

    def __init__(self, state_directory: str = "./cache", filename: str = "sync_state.sqlite"):
        self.state_directory = Path(state_directory)
        self.state_directory.mkdir(parents=True, exist_ok=True)
        self.db_path = self.state_directory / filename
        self.logger = get_logger(__name__)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=30)

    def _init_db(self):
        """Initialize the database schema."""
        try:
            with self._connect() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS synced_records (
                        source_type TEXT NOT NULL,
                        source_id TEXT NOT NULL,
                        external_artifact_id TEXT NOT NULL DEFAULT '',
                        content_hash TEXT NOT NULL,
                        last_modified_marker TEXT NOT NULL,
                        last_seen_at TEXT NOT NULL,
                        title TEXT NOT NULL DEFAULT '',
                        url TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (source_type, source_id)
                    )
                """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_records_seen ON synced_records(source_type, last_seen_at)")
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS sync_state (
                        source_type TEXT PRIMARY KEY,
                        state TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
        except sqlite3.Error as e:
            raise RecordStoreError(f"Failed to initialize record store at {self.db_path}: {e}")

    @staticmethod
    def _row_to_record(row) -> SyncedRecord:
        return SyncedRecord(
            source_type=SourceType(row[0]),
            source_id=row[1],
            external_artifact_id=row[2],
            content_hash=row[3],
            last_modified_marker=row[4],
            last_seen_at=parse_datetime(row[5]),
            title=row[6],
            url=row[7],
            created_at=parse_datetime(row[8]),
            updated_at=parse_datetime(row[9]),
        )

    _SELECT = (
        "SELECT source_type, source_id, external_artifact_id, content_hash, last_modified_marker, "
        "last_seen_at, title, url, created_at, updated_at FROM synced_records"
    )

    def get(self, key: RecordKey) -> Optional[SyncedRecord]:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"{self._SELECT} WHERE source_type = ? AND source_id = ?",
                    (key.source_type.value, key.source_id)
                )
                row = cursor.fetchone()
        except sqlite3.Error as e:
            raise RecordStoreError(f"Failed to read record {key.document_id}: {e}", source_id=key.source_id)
        return self._row_to_record(row) if row else None

    def put(self, record: SyncedRecord) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO synced_records
                    (source_type, source_id, external_artifact_id, content_hash, last_modified_marker,
                     last_seen_at, title, url, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.source_type.value,
                        record.source_id,
                        record.external_artifact_id,
                        record.content_hash,
                        record.last_modified_marker,
                        format_datetime(record.last_seen_at),
                        record.title,
                        record.url,
                        format_datetime(record.created_at),
                        format_datetime(record.updated_at),
                    )
                )
        except sqlite3.Error as e:
            raise RecordStoreError(f"Failed to write record {record.key.document_id}: {e}", source_id=record.source_id)

    def update(self, key: RecordKey, **fields: Any) -> bool:
        unknown = set(fields) - set(RECORD_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update record fields: {sorted(unknown)}")
        if not fields:
            return self.get(key) is not None

        values = {name: (format_datetime(value) if name in DATETIME_FIELDS else value) for name, value in fields.items()}
        values['updated_at'] = format_datetime(utc_now())
        assignments = ", ".join(f"{name} = ?" for name in values)
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE synced_records SET {assignments} WHERE source_type = ? AND source_id = ?",
                    (*values.values(), key.source_type.value, key.source_id)
                )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise RecordStoreError(f"Failed to update record {key.document_id}: {e}", source_id=key.source_id)

    def delete(self, key: RecordKey) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM synced_records WHERE source_type = ? AND source_id = ?",
                    (key.source_type.value, key.source_id)
                )
        except sqlite3.Error as e:
            raise RecordStoreError(f"Failed to delete record {key.document_id}: {e}", source_id=key.source_id)

    def query_stale_before(self, source_type: SourceType, watermark, limit: Optional[int] = None) -> List[SyncedRecord]:
        query = f"{self._SELECT} WHERE source_type = ? AND last_seen_at < ? ORDER BY last_seen_at, source_id"
        params: List[Any] = [source_type.value, format_datetime(watermark)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        try:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise RecordStoreError(f"Failed to query stale {source_type.value} records: {e}")
        return [self._row_to_record(row) for row in rows]

    def list_records(self, source_type: SourceType) -> List[SyncedRecord]:
        """All records of a source, ordered by source id."""
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"{self._SELECT} WHERE source_type = ? ORDER BY source_id", (source_type.value,)
                ).fetchall()
        except sqlite3.Error as e:
            raise RecordStoreError(f"Failed to list {source_type.value} records: {e}")
        return [self._row_to_record(row) for row in rows]

    def count(self, source_type: SourceType) -> int:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) FROM synced_records WHERE source_type = ?", (source_type.value,)
                ).fetchone()
        except sqlite3.Error as e:
            raise RecordStoreError(f"Failed to count {source_type.value} records: {e}")
        return int(row[0])

    def get_state(self, source_type: SourceType) -> Optional[SyncState]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT state FROM sync_state WHERE source_type = ?", (source_type.value,)
                ).fetchone()
        except sqlite3.Error as e:
            raise RecordStoreError(f"Failed to read {source_type.value} sync state: {e}")
        return SyncState.from_dict(json.loads(row[0])) if row else None

    @staticmethod
    def _write_state(conn: sqlite3.Connection, data: Dict[str, Any]) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO sync_state (source_type, state, updated_at) VALUES (?, ?, ?)",
            (data['source_type'], json.dumps(data), format_datetime(utc_now()))
        )

    def put_state(self, state: SyncState) -> None:
        try:
            with self._connect() as conn:
                self._write_state(conn, state.to_dict())
        except sqlite3.Error as e:
            raise RecordStoreError(f"Failed to write {state.source_type.value} sync state: {e}")

    def update_state(self, source_type: SourceType, **fields: Any) -> SyncState:
        patch = SyncState(source_type=source_type, **fields).to_dict()
        patch = {name: patch[name] for name in fields}
        try:
            with self._connect() as conn:
                # Take the write lock before reading so the merge is atomic
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT state FROM sync_state WHERE source_type = ?", (source_type.value,)
                ).fetchone()
                data = json.loads(row[0]) if row else SyncState(source_type=source_type).to_dict()
                data.update(patch)
                self._write_state(conn, data)
        except sqlite3.Error as e:
            raise RecordStoreError(f"Failed to update {source_type.value} sync state: {e}")
        return SyncState.from_dict(data)
