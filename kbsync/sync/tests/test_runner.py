"""
Tests for wiring sync engines from configuration.
"""

import pytest
import tempfile
from unittest.mock import Mock, patch

from ...vector_store.vector_store_openai import OpenAIVectorStoreWriter
from ..config import MonitoringConfig, SyncConfig
from ..error_tracker import ConfigurationError
from ..models import SourceType, SyncStatus
from ..notion_reader import NotionReader
from ..runner import SyncRunner, load_config
from ..slack_reader import SlackApiClient, SlackReader
from .fakes import FakeIndexWriter, FakeReader, notion_item


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield temp_dir


@pytest.fixture
def no_secrets(monkeypatch):
    for name in ('NOTION_API_KEY', 'SLACK_BOT_TOKEN', 'OPENAI_API_KEY', 'OPENAI_VECTOR_STORE_ID'):
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(f'{name}_STAGING', raising=False)


class TestSyncRunner:

    @pytest.mark.asyncio
    async def test_run_closes_collaborators(self, temp_dir):
        runner = SyncRunner(SyncConfig(state_directory=temp_dir))
        reader = FakeReader([notion_item("A"), notion_item("B")])
        writer = FakeIndexWriter()
        orchestrator = runner.build_orchestrator(SourceType.NOTION, reader=reader, index_writer=writer)

        result = await runner.run(SourceType.NOTION, orchestrator=orchestrator)

        assert result.status == SyncStatus.COMPLETED
        assert result.stats.added == 2
        assert reader.closed
        assert writer.closed
        assert runner.get_status(SourceType.NOTION).total_documents == 2
        runner.print_summary(result)

    @pytest.mark.asyncio
    async def test_orchestrator_uses_source_settings(self, temp_dir):
        config = SyncConfig(
            state_directory=temp_dir,
            sources=[{'type': 'notion', 'chunk_size': 7, 'max_runtime_seconds': 120}],
            index={'concurrency': 3},
        )
        runner = SyncRunner(config)

        orchestrator = runner.build_orchestrator(SourceType.NOTION, reader=FakeReader([]), index_writer=FakeIndexWriter())

        assert orchestrator.chunk_size == 7
        assert orchestrator.max_runtime_seconds == 120
        assert orchestrator.pipeline.concurrency == 3
        assert orchestrator.pipeline.limiter.max_requests == 50

    @pytest.mark.asyncio
    @patch('kbsync.sync.external_monitor.requests.post')
    async def test_run_is_reported(self, mock_post, temp_dir):
        mock_post.return_value = Mock(raise_for_status=Mock())
        config = SyncConfig(state_directory=temp_dir, monitoring=MonitoringConfig(endpoint_url='https://hooks.example.com'))
        runner = SyncRunner(config, environment='production')
        orchestrator = runner.build_orchestrator(SourceType.NOTION, reader=FakeReader([]), index_writer=FakeIndexWriter())

        await runner.run(SourceType.NOTION, orchestrator=orchestrator)

        assert mock_post.call_count == 1

    @pytest.mark.asyncio
    async def test_disabled_source(self, temp_dir):
        runner = SyncRunner(SyncConfig(state_directory=temp_dir, sources=[{'type': 'notion', 'enabled': False}]))

        with pytest.raises(ConfigurationError):
            await runner.run(SourceType.NOTION)

    def test_unconfigured_source(self, temp_dir):
        runner = SyncRunner(SyncConfig(state_directory=temp_dir, sources=[{'type': 'notion'}]))

        with pytest.raises(ConfigurationError):
            runner.source_config(SourceType.SLACK)

    def test_missing_source_secret(self, temp_dir, no_secrets):
        runner = SyncRunner(SyncConfig(state_directory=temp_dir))

        with pytest.raises(ConfigurationError) as exc_info:
            runner.build_reader(SourceType.NOTION)

        assert 'NOTION_API_KEY' in exc_info.value.recovery_suggestion

    def test_build_readers(self, temp_dir, no_secrets, monkeypatch):
        monkeypatch.setenv('NOTION_API_KEY', 'notion-secret')
        monkeypatch.setenv('SLACK_BOT_TOKEN_STAGING', 'xoxb-staging')
        runner = SyncRunner(SyncConfig(state_directory=temp_dir), environment='staging')

        notion = runner.build_reader(SourceType.NOTION)
        slack = runner.build_reader(SourceType.SLACK)

        assert isinstance(notion, NotionReader)
        assert notion.client.limiter.max_requests == 3
        assert isinstance(slack, SlackReader)
        assert isinstance(slack.client, SlackApiClient)
        assert slack.client.headers['Authorization'] == 'Bearer xoxb-staging'
        assert slack.client.limiter.window_seconds == 0.5

    def test_build_index_writer(self, temp_dir, no_secrets, monkeypatch):
        monkeypatch.setenv('OPENAI_API_KEY', 'sk-test')
        monkeypatch.setenv('OPENAI_VECTOR_STORE_ID', 'vs_env')
        runner = SyncRunner(SyncConfig(state_directory=temp_dir))

        writer = runner.build_index_writer()

        assert isinstance(writer, OpenAIVectorStoreWriter)
        assert writer.vector_store_id == 'vs_env'

    def test_missing_vector_store(self, temp_dir, no_secrets):
        runner = SyncRunner(SyncConfig(state_directory=temp_dir))

        with pytest.raises(ConfigurationError):
            runner.build_index_writer()

    def test_statuses(self, temp_dir):
        runner = SyncRunner(SyncConfig(state_directory=temp_dir))

        states = runner.get_all_statuses()

        assert [state.source_type for state in states] == [SourceType.NOTION, SourceType.SLACK]
        assert all(state.status == SyncStatus.IDLE for state in states)
        assert runner.request_stop(SourceType.SLACK) is False


class TestLoadConfig:

    def test_explicit_missing_path(self):
        with pytest.raises(FileNotFoundError):
            load_config('/nonexistent/config.yaml')

    def test_defaults_without_file(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)

        assert load_config() == SyncConfig()
