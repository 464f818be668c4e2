"""
Sync Configuration Schema.

This module defines the configuration format for the Notion and Slack sync
engines: per-source chunking and runtime limits, rate limits and retry
policies for each external collaborator, and the index settings.
"""

import yaml
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import urlparse
from pydantic import BaseModel, Field, field_validator, model_validator

from .models import SourceType


DEFAULT_RATE_LIMITS = {
    SourceType.NOTION: {"max_requests": 3, "window_seconds": 1.0},
    SourceType.SLACK: {"max_requests": 1, "window_seconds": 0.5},
}

DEFAULT_CHANNEL_BLACKLIST = [
    "linear-updates",
    "github-updates",
    "new_update_alert",
    "service-outages",
    "google-cloud-outages",
    "google-ads-outages",
]


class RateLimitConfig(BaseModel):
    """Sliding-window request limit for one external collaborator."""
    max_requests: int = Field(..., gt=0, description="Requests allowed per window")
    window_seconds: float = Field(..., gt=0, description="Window length in seconds")
    safety_buffer_seconds: float = Field(default=0.01, ge=0, description="Extra delay added to every wait")


class RetryConfig(BaseModel):
    """Exponential backoff policy for transient failures."""
    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    initial_delay_seconds: float = Field(default=1.0, ge=0, description="Delay before the first retry")
    max_delay_seconds: float = Field(default=30.0, ge=0, description="Upper bound for any single delay")
    jitter: bool = Field(default=False, description="Randomize delays between 0.5x and 1.5x")


class NotionSourceConfig(BaseModel):
    """Notion API settings."""
    api_url: str = Field(default="https://api.notion.com/v1", description="Notion API base URL")
    api_version: str = Field(default="2022-06-28", description="Notion-Version header")
    block_page_size: int = Field(default=100, gt=0, le=100, description="Blocks fetched per children request")
    max_block_depth: int = Field(default=10, ge=1, description="Deepest level of nested blocks to render")
    request_timeout: int = Field(default=30, description="Request timeout in seconds")

    @field_validator('api_url')
    @classmethod
    def validate_url(cls, v):
        """Validate URL format."""
        result = urlparse(v)
        if not all([result.scheme, result.netloc]):
            raise ValueError(f'Invalid URL format: {v}')
        return v.rstrip('/')


class SlackSourceConfig(BaseModel):
    """Slack API settings and message filtering rules."""
    api_url: str = Field(default="https://slack.com/api", description="Slack Web API base URL")
    min_message_length: int = Field(default=50, ge=0, description="Shorter messages are not indexed")
    channel_blacklist: List[str] = Field(default_factory=lambda: list(DEFAULT_CHANNEL_BLACKLIST))
    blacklisted_suffixes: List[str] = Field(default_factory=lambda: ["-purchases", "-updates"])
    bot_whitelist_channels: List[str] = Field(default_factory=lambda: ["daily-standup"])
    user_cache_size: int = Field(default=1000, gt=0, description="Capacity of the user-name cache")
    request_timeout: int = Field(default=30, description="Request timeout in seconds")

    @field_validator('api_url')
    @classmethod
    def validate_url(cls, v):
        """Validate URL format."""
        result = urlparse(v)
        if not all([result.scheme, result.netloc]):
            raise ValueError(f'Invalid URL format: {v}')
        return v.rstrip('/')


class SourceSyncConfig(BaseModel):
    """Configuration for syncing a single content source."""
    type: SourceType = Field(..., description="Source type")
    enabled: bool = Field(default=True, description="Whether this source is synced")
    chunk_size: int = Field(default=20, gt=0, description="Items fetched and checkpointed together")
    max_runtime_seconds: float = Field(
        default=55 * 60,
        gt=0,
        description="Pause the run once this much wall-clock time has elapsed",
    )
    rate_limit: Optional[RateLimitConfig] = Field(None, description="Source API rate limit (per-type default)")
    retry: RetryConfig = Field(default_factory=RetryConfig)
    notion: NotionSourceConfig = Field(default_factory=NotionSourceConfig)
    slack: SlackSourceConfig = Field(default_factory=SlackSourceConfig)

    @model_validator(mode='after')
    def apply_default_rate_limit(self):
        """Fill in the documented rate limit for the source type."""
        if self.rate_limit is None:
            self.rate_limit = RateLimitConfig(**DEFAULT_RATE_LIMITS[self.type])
        return self


class IndexConfig(BaseModel):
    """Configuration of the OpenAI vector store that receives the documents."""
    vector_store_id: Optional[str] = Field(None, description="Vector store ID (falls back to OPENAI_VECTOR_STORE_ID)")
    concurrency: int = Field(default=10, gt=0, description="Concurrent upload/delete operations")
    rate_limit: RateLimitConfig = Field(
        default_factory=lambda: RateLimitConfig(max_requests=50, window_seconds=1.0)
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)


class MonitoringConfig(BaseModel):
    """External monitoring sink for run reports."""
    type: str = Field(default="webhook", description="Monitor type")
    endpoint_url: Optional[str] = Field(None, description="Webhook endpoint")
    headers: Optional[Dict[str, str]] = Field(None, description="Extra HTTP headers")
    timeout: int = Field(default=10, description="Request timeout in seconds")


def _default_sources() -> List[SourceSyncConfig]:
    return [SourceSyncConfig(type=SourceType.NOTION), SourceSyncConfig(type=SourceType.SLACK)]


class SyncConfig(BaseModel):
    """Main configuration for the sync system."""
    version: str = Field(default="1.0.0", description="Configuration version")
    name: str = Field(default="kbsync", description="Configuration name")
    description: Optional[str] = Field(None, description="Configuration description")

    sources: List[SourceSyncConfig] = Field(default_factory=_default_sources, description="Synced sources")
    index: IndexConfig = Field(default_factory=IndexConfig)

    # Storage configuration
    state_directory: str = Field(default="./cache", description="Directory holding the sync state database")

    # Logging configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(None, description="Log file path")
    log_format: str = Field(default="text", description="Log format: text or json")
    max_reported_errors: int = Field(default=50, gt=0, description="Error messages kept in a run result")

    monitoring: Optional[MonitoringConfig] = Field(None, description="External monitoring configuration")

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v):
        if v not in ('text', 'json'):
            raise ValueError(f'log_format must be "text" or "json", got: {v}')
        return v

    @model_validator(mode='after')
    def validate_unique_sources(self):
        """Each source type may be configured at most once."""
        types = [source.type for source in self.sources]
        if len(types) != len(set(types)):
            raise ValueError('Each source type may only be configured once')
        return self

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'SyncConfig':
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Convert to dict with enum values as strings
        data = self.model_dump(mode='json')

        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True)

    def get_source(self, source_type: SourceType) -> Optional[SourceSyncConfig]:
        """Get the configuration of a source type."""
        for source in self.sources:
            if source.type == source_type:
                return source
        return None

    def get_enabled_sources(self) -> List[SourceSyncConfig]:
        """Get all enabled sources."""
        return [source for source in self.sources if source.enabled]
