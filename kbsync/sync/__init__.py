"""
Incremental sync of Notion and Slack content into the knowledge-base vector store.
"""

from .models import (
    ChangeKind, SourceItem, SourceType, SyncPhase, SyncRunResult, SyncState, SyncStats,
    SyncStatus, SyncedRecord,
)
from .orchestrator import SyncOrchestrator, SyncStateController
from .record_store import RecordStore, SQLiteRecordStore
from .source_reader import SourceChunk, SourceReader

__all__ = [
    'ChangeKind',
    'SourceChunk',
    'SourceItem',
    'SourceReader',
    'SourceType',
    'SQLiteRecordStore',
    'RecordStore',
    'SyncOrchestrator',
    'SyncPhase',
    'SyncRunResult',
    'SyncState',
    'SyncStateController',
    'SyncStats',
    'SyncStatus',
    'SyncedRecord',
]
