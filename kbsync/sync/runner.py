"""
Sync runner: builds sync engines from configuration and the environment.

This module wires together, per source:
- the source reader (Notion or Slack) with its own rate limiter and retry policy
- the OpenAI vector store writer with the index rate limiter and retry policy
- the SQLite record store shared by all sources
- logging, error reporting and the optional external monitor
"""

from pathlib import Path
from typing import List, Optional, Union

from ..config import DEFAULT_ENVIRONMENT, DEFAULT_CONFIG_PATH, get_openai_client, get_secret
from ..vector_store.vector_store_base import IndexWriter
from ..vector_store.vector_store_openai import OpenAIVectorStoreWriter
from .config import SourceSyncConfig, SyncConfig
from .error_tracker import ConfigurationError
from .external_monitor import get_monitor_from_config
from .logging_manager import LoggingManager
from .models import SourceType, SyncRunResult, SyncState, SyncStatus
from .notion_reader import NotionReader
from .orchestrator import SyncOrchestrator, SyncStateController
from .pipeline import OperationPipeline
from .rate_limiter import RateLimiter
from .record_store import RecordStore, SQLiteRecordStore
from .resilience import RetryPolicy
from .slack_reader import SlackReader
from .source_reader import SourceReader

SECRET_NAMES = {
    SourceType.NOTION: 'NOTION_API_KEY',
    SourceType.SLACK: 'SLACK_BOT_TOKEN',
}


def load_config(config_path: Optional[Union[str, Path]] = None) -> SyncConfig:
    """
    Load the sync configuration.

    An explicitly given path must exist; without one, ``sync_config.yaml`` in
    the working directory is used when present, else the defaults.
    """
    if config_path:
        return SyncConfig.from_yaml(config_path)
    if Path(DEFAULT_CONFIG_PATH).exists():
        return SyncConfig.from_yaml(DEFAULT_CONFIG_PATH)
    return SyncConfig()


class SyncRunner:
    """
    Entry point used by the CLI for running and operating source syncs.
    """

    def __init__(self, config: SyncConfig, environment: str = DEFAULT_ENVIRONMENT,
                 record_store: Optional[RecordStore] = None):
        """
        Initialize the runner.

        Args:
            config: Sync configuration
            environment: Environment (staging, production, local)
            record_store: Record store override (defaults to SQLite under state_directory)
        """
        self.config = config
        self.environment = environment
        self.logging_manager = LoggingManager.configure(
            log_level=config.log_level,
            log_file=config.log_file,
            json_format=config.log_format == 'json',
        )
        self.logger = self.logging_manager.get_logger(__name__)
        self.record_store = record_store or SQLiteRecordStore(state_directory=config.state_directory)
        self.monitor = get_monitor_from_config(config)

    def source_config(self, source_type: SourceType) -> SourceSyncConfig:
        source_config = self.config.get_source(source_type)
        if source_config is None:
            raise ConfigurationError(
                f"Source '{source_type.value}' is not configured",
                recovery_suggestion=f"Add a '{source_type.value}' entry under sources in the sync configuration.",
            )
        return source_config

    def _secret(self, name: str) -> str:
        try:
            return get_secret(name, self.environment)
        except ValueError as e:
            raise ConfigurationError(
                str(e),
                recovery_suggestion=f"Set {name} (or {name}_{self.environment.upper()}) in the environment or .env file.",
            )

    def build_reader(self, source_type: SourceType) -> SourceReader:
        source_config = self.source_config(source_type)
        limiter = RateLimiter.from_config(source_config.rate_limit, name=f"{source_type.value}-api")
        retry_policy = RetryPolicy.from_config(source_config.retry)
        token = self._secret(SECRET_NAMES[source_type])
        if source_type == SourceType.NOTION:
            return NotionReader.create(token, limiter, retry_policy, source_config.notion)
        return SlackReader.create(token, limiter, retry_policy, source_config.slack)

    def build_index_writer(self) -> IndexWriter:
        vector_store_id = self.config.index.vector_store_id or self._secret('OPENAI_VECTOR_STORE_ID')
        try:
            client = get_openai_client(self.environment)
        except ValueError as e:
            raise ConfigurationError(str(e))
        return OpenAIVectorStoreWriter(client, vector_store_id)

    def build_orchestrator(self, source_type: SourceType, reader: Optional[SourceReader] = None,
                           index_writer: Optional[IndexWriter] = None) -> SyncOrchestrator:
        """Build a fully wired orchestrator for one source."""
        source_config = self.source_config(source_type)
        reader = reader or self.build_reader(source_type)
        index_writer = index_writer or self.build_index_writer()
        pipeline = OperationPipeline(
            reader=reader,
            index_writer=index_writer,
            record_store=self.record_store,
            limiter=RateLimiter.from_config(self.config.index.rate_limit, name="index-api"),
            retry_policy=RetryPolicy.from_config(self.config.index.retry),
            concurrency=self.config.index.concurrency,
        )
        return SyncOrchestrator(
            source_type=source_type,
            reader=reader,
            record_store=self.record_store,
            pipeline=pipeline,
            chunk_size=source_config.chunk_size,
            max_runtime_seconds=source_config.max_runtime_seconds,
            max_reported_errors=self.config.max_reported_errors,
        )

    async def run(self, source_type: SourceType, max_items: Optional[int] = None,
                  orchestrator: Optional[SyncOrchestrator] = None) -> SyncRunResult:
        """
        Run or resume the sync of one source and report it.

        Returns:
            SyncRunResult of the invocation
        """
        if not self.source_config(source_type).enabled:
            raise ConfigurationError(f"Source '{source_type.value}' is disabled in the sync configuration")

        orchestrator = orchestrator or self.build_orchestrator(source_type)
        try:
            result = await orchestrator.run(max_items=max_items)
        finally:
            await orchestrator.reader.close()
            await orchestrator.pipeline.index_writer.close()

        if self.monitor:
            self.monitor.report_run(result, self.environment)
        return result

    def controller(self, source_type: SourceType) -> SyncStateController:
        return SyncStateController(source_type, self.record_store)

    def request_stop(self, source_type: SourceType) -> bool:
        return self.controller(source_type).request_stop()

    def reset(self, source_type: SourceType, force: bool = False) -> SyncState:
        return self.controller(source_type).reset(force=force)

    def get_status(self, source_type: SourceType) -> SyncState:
        return self.controller(source_type).get_status()

    def get_all_statuses(self) -> List[SyncState]:
        return [self.get_status(source.type) for source in self.config.sources]

    def print_summary(self, result: SyncRunResult):
        """Log a run summary in a readable form."""
        status_icon = {
            SyncStatus.COMPLETED: '✅',
            SyncStatus.TIMEOUT: '⏸️',
            SyncStatus.FAILED: '❌',
        }.get(result.status, '❓')
        stats = result.stats

        self.logger.info("=" * 60)
        self.logger.info(f"{status_icon} {result.source_type.value.upper()} SYNC: {result.status.value}")
        self.logger.info("=" * 60)
        if result.resumed:
            self.logger.info("Resumed from checkpoint")
        self.logger.info(f"Processed: {stats.processed:,}")
        self.logger.info(f"Added: {stats.added:,}  Updated: {stats.updated:,}  Unchanged: {stats.unchanged:,}")
        self.logger.info(f"Deleted: {stats.deleted:,}  Errored: {stats.errored:,}")
        self.logger.info(f"Duration: {result.duration_seconds:.2f}s")
        if result.pause_reason:
            self.logger.info(f"Paused: {result.pause_reason} (the next run resumes from the checkpoint)")
        if result.last_error:
            self.logger.error(f"Last error: {result.last_error}")

        if result.errors:
            self.logger.info("-" * 20)
            for error in result.errors:
                self.logger.error(f"  - {error}")
            if result.errors_suppressed:
                self.logger.error(f"  ... and {result.errors_suppressed} more")
        self.logger.info("=" * 60)
