"""
Slack source reader.

This module provides:
1. Decoding of raw Slack messages into user, bot and system messages
2. Channel filtering (blacklist, bot whitelist) and message text extraction
3. A bounded LRU cache for user display names
4. SlackReader: walks public channels in id order, one history page per chunk

The cursor is a JSON document naming the current channel and that channel's
own history cursor, so a resumed run continues inside the right channel.
"""

import json
from bisect import bisect_left
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from ..config import get_logger
from .api_client import ApiClient
from .config import SlackSourceConfig
from .content import format_slack_document
from .error_tracker import ApiError
from .models import SourceItem, SourceType
from .rate_limiter import RateLimiter
from .resilience import RetryPolicy
from .source_reader import SourceChunk, SourceReader

logger = get_logger(__name__)

HISTORY_PAGE_LIMIT = 200
UNKNOWN_AUTHOR = 'Unknown'


class MessageKind(str, Enum):
    USER = "user"
    BOT = "bot"
    SYSTEM = "system"  # joins, leaves, topic changes and other subtypes


@dataclass
class SlackMessage:
    kind: MessageKind
    ts: str
    text: str
    user: Optional[str] = None
    username: Optional[str] = None
    subtype: Optional[str] = None
    thread_ts: Optional[str] = None
    reply_count: int = 0
    latest_reply: Optional[str] = None
    edited_ts: Optional[str] = None

    @property
    def is_thread_parent(self) -> bool:
        return bool(self.thread_ts) and self.thread_ts == self.ts and self.reply_count > 0

    @property
    def change_marker(self) -> str:
        """Reply count, latest reply and edit time; any change means the thread changed."""
        return f"{self.reply_count}:{self.latest_reply or ''}:{self.edited_ts or ''}"


@dataclass
class SlackChannel:
    id: str
    name: str


def extract_message_text(raw: Dict[str, Any]) -> str:
    """Main text plus attachment text (link previews, standup bot content)."""
    parts = []
    text = raw.get('text')
    if isinstance(text, str) and text.strip():
        parts.append(text)
    for attachment in raw.get('attachments') or []:
        if not isinstance(attachment, dict):
            continue
        if attachment.get('pretext'):
            parts.append(attachment['pretext'])
        if attachment.get('title') and attachment.get('text'):
            parts.append(f"{attachment['title']}: {attachment['text']}")
        elif attachment.get('text'):
            parts.append(attachment['text'])
        elif attachment.get('fallback') and not attachment.get('is_app_unfurl'):
            # App unfurls (Notion, Linear previews) only repeat the linked URL
            parts.append(attachment['fallback'])
    return '\n\n'.join(parts)


def decode_message(raw: Dict[str, Any]) -> Optional[SlackMessage]:
    """Decode a raw message; returns None for payloads without a timestamp."""
    if not isinstance(raw, dict) or not isinstance(raw.get('ts'), str):
        return None
    subtype = raw.get('subtype')
    if raw.get('bot_id') or subtype == 'bot_message':
        kind = MessageKind.BOT
    elif subtype:
        kind = MessageKind.SYSTEM
    else:
        kind = MessageKind.USER
    edited = raw.get('edited') if isinstance(raw.get('edited'), dict) else {}
    try:
        reply_count = int(raw.get('reply_count') or 0)
    except (TypeError, ValueError):
        reply_count = 0
    return SlackMessage(
        kind=kind,
        ts=raw['ts'],
        text=extract_message_text(raw),
        user=raw.get('user'),
        username=raw.get('username'),
        subtype=subtype,
        thread_ts=raw.get('thread_ts'),
        reply_count=reply_count,
        latest_reply=raw.get('latest_reply'),
        edited_ts=edited.get('ts'),
    )


def slack_ts_to_iso(ts: str) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat().replace('+00:00', 'Z')


def fallback_permalink(channel_id: str, ts: str) -> str:
    return f"https://slack.com/archives/{channel_id}/p{ts.replace('.', '')}"


def message_source_id(channel_id: str, ts: str) -> str:
    return f"{channel_id}_{ts.replace('.', '_')}"


class UserNameCache:
    """Least-recently-used cache of user id -> display name."""

    def __init__(self, capacity: int = 1000):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: 'OrderedDict[str, str]' = OrderedDict()

    def get(self, user_id: str) -> Optional[str]:
        if user_id not in self._entries:
            return None
        self._entries.move_to_end(user_id)
        return self._entries[user_id]

    def put(self, user_id: str, name: str) -> None:
        self._entries[user_id] = name
        self._entries.move_to_end(user_id)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries


@dataclass
class ChannelPosition:
    """Decoded form of the reader's cursor."""
    channel_id: Optional[str] = None
    cursor: Optional[str] = None

    def encode(self) -> str:
        return json.dumps({'channel_id': self.channel_id, 'cursor': self.cursor}, sort_keys=True)

    @classmethod
    def decode(cls, value: Optional[str]) -> 'ChannelPosition':
        if not value:
            return cls()
        try:
            data = json.loads(value)
        except ValueError:
            logger.warning(f"Ignoring unreadable Slack cursor: {value!r}")
            return cls()
        if not isinstance(data, dict):
            return cls()
        return cls(channel_id=data.get('channel_id'), cursor=data.get('cursor'))


class SlackApiClient(ApiClient):
    """Slack reports most failures as HTTP 200 with ``ok: false``."""

    def check_payload(self, method: str, path: str, data: Any) -> None:
        if isinstance(data, dict) and not data.get('ok', True):
            error = data.get('error', 'unknown_error')
            raise ApiError(f"Slack API {path} failed: {error}", code=error)


class SlackReader(SourceReader):
    """
    Reads top-level messages from public Slack channels.

    Channels are ordered by id and each chunk is one history page of one
    channel. Author names, permalinks and thread replies are resolved only
    when a message is rendered for upload.
    """

    source_type = SourceType.SLACK

    def __init__(self, client: ApiClient, config: Optional[SlackSourceConfig] = None):
        self.client = client
        self.config = config or SlackSourceConfig()
        self.user_cache = UserNameCache(self.config.user_cache_size)
        self._channels: Optional[List[SlackChannel]] = None
        self._joined: Set[str] = set()

    @classmethod
    def create(cls, bot_token: str, limiter: RateLimiter, retry_policy: RetryPolicy,
               config: Optional[SlackSourceConfig] = None) -> 'SlackReader':
        config = config or SlackSourceConfig()
        headers = {'Authorization': f'Bearer {bot_token}'}
        client = SlackApiClient(config.api_url, headers, limiter, retry_policy, timeout_seconds=config.request_timeout)
        return cls(client, config)

    def is_channel_blacklisted(self, name: str) -> bool:
        if name in self.config.channel_blacklist:
            return True
        return any(name.endswith(suffix) for suffix in self.config.blacklisted_suffixes)

    def accepts(self, channel: SlackChannel, message: SlackMessage) -> bool:
        """Whether a message is worth indexing."""
        bots_allowed = channel.name in self.config.bot_whitelist_channels
        if len(message.text) < self.config.min_message_length:
            return False
        if message.kind == MessageKind.SYSTEM:
            return False
        if message.kind == MessageKind.BOT:
            if not bots_allowed:
                return False
            if message.subtype and message.subtype != 'bot_message':
                return False
        return True

    async def list_channels(self) -> List[SlackChannel]:
        """Public, non-archived, non-blacklisted channels ordered by id."""
        if self._channels is not None:
            return self._channels
        channels = []
        cursor = None
        while True:
            params: Dict[str, Any] = {'types': 'public_channel', 'exclude_archived': 'true', 'limit': 200}
            if cursor:
                params['cursor'] = cursor
            data = await self.client.request('GET', 'conversations.list', params=params)
            for raw in data.get('channels') or []:
                if raw.get('id') and raw.get('name'):
                    channels.append(SlackChannel(id=raw['id'], name=raw['name']))
            cursor = (data.get('response_metadata') or {}).get('next_cursor')
            if not cursor:
                break
        skipped = [c.name for c in channels if self.is_channel_blacklisted(c.name)]
        if skipped:
            logger.info(f"Skipping {len(skipped)} blacklisted channels: {', '.join(sorted(skipped))}")
        self._channels = sorted((c for c in channels if not self.is_channel_blacklisted(c.name)), key=lambda c: c.id)
        return self._channels

    async def _fetch_history(self, channel: SlackChannel, cursor: Optional[str], limit: int) -> Optional[Dict[str, Any]]:
        params: Dict[str, Any] = {'channel': channel.id, 'limit': min(limit, HISTORY_PAGE_LIMIT)}
        if cursor:
            params['cursor'] = cursor
        try:
            return await self.client.request('GET', 'conversations.history', params=params)
        except ApiError as e:
            if e.code != 'not_in_channel':
                raise
            if channel.id in self._joined:
                logger.warning(f"Still not in #{channel.name} after joining, skipping it")
                return None
        self._joined.add(channel.id)
        try:
            await self.client.request('POST', 'conversations.join', json_body={'channel': channel.id})
        except ApiError as e:
            logger.warning(f"Could not join #{channel.name}, skipping it: {e}")
            return None
        logger.info(f"Joined channel #{channel.name}")
        return await self._fetch_history(channel, cursor, limit)

    def _to_item(self, channel: SlackChannel, message: SlackMessage) -> SourceItem:
        return SourceItem(
            source_id=message_source_id(channel.id, message.ts),
            last_modified_marker=message.change_marker,
            title=f"Slack message in #{channel.name}",
            url=fallback_permalink(channel.id, message.ts),
            payload={
                'channel_id': channel.id,
                'channel_name': channel.name,
                'ts': message.ts,
                'user': message.user,
                'username': message.username,
                'text': message.text,
                'is_thread_parent': message.is_thread_parent,
            },
        )

    async def fetch_chunk(self, cursor: Optional[str], limit: int) -> SourceChunk:
        channels = await self.list_channels()
        position = ChannelPosition.decode(cursor)
        index = 0
        if position.channel_id:
            # A channel that disappeared resumes at the next one in id order
            index = bisect_left([c.id for c in channels], position.channel_id)

        while index < len(channels):
            channel = channels[index]
            history_cursor = position.cursor if channel.id == position.channel_id else None
            data = await self._fetch_history(channel, history_cursor, limit)
            if data is None:
                index += 1
                continue

            items = []
            for raw in data.get('messages') or []:
                message = decode_message(raw)
                if message and self.accepts(channel, message):
                    items.append(self._to_item(channel, message))

            next_history = (data.get('response_metadata') or {}).get('next_cursor')
            if data.get('has_more') and next_history:
                next_position = ChannelPosition(channel.id, next_history)
            elif index + 1 < len(channels):
                next_position = ChannelPosition(channels[index + 1].id, None)
            else:
                return SourceChunk(items=items, next_cursor=None, has_more=False)
            logger.debug(f"#{channel.name}: {len(items)} messages in page")
            return SourceChunk(items=items, next_cursor=next_position.encode(), has_more=True)

        return SourceChunk(items=[], next_cursor=None, has_more=False)

    def _can_degrade(self, exc: ApiError) -> bool:
        """Lookups render without their detail only when a retry could not help."""
        return not (self.is_transient(exc) or self.is_fatal(exc))

    async def get_user_name(self, user_id: str) -> str:
        cached = self.user_cache.get(user_id)
        if cached is not None:
            return cached
        try:
            data = await self.client.request('GET', 'users.info', params={'user': user_id})
        except ApiError as e:
            if not self._can_degrade(e):
                raise
            logger.warning(f"Could not resolve user {user_id}: {e}")
            return user_id
        user = data.get('user') or {}
        name = user.get('real_name') or user.get('name') or user_id
        self.user_cache.put(user_id, name)
        return name

    async def get_permalink(self, channel_id: str, ts: str) -> str:
        try:
            data = await self.client.request(
                'GET', 'chat.getPermalink', params={'channel': channel_id, 'message_ts': ts}
            )
        except ApiError as e:
            if not self._can_degrade(e):
                raise
            logger.warning(f"Could not fetch permalink for {channel_id}/{ts}: {e}")
            return fallback_permalink(channel_id, ts)
        return data.get('permalink') or fallback_permalink(channel_id, ts)

    async def get_thread_replies(self, channel_id: str, thread_ts: str) -> List[Tuple[str, str]]:
        """(author, text) of each reply, oldest first, without the parent."""
        try:
            data = await self.client.request(
                'GET', 'conversations.replies', params={'channel': channel_id, 'ts': thread_ts, 'limit': 100}
            )
        except ApiError as e:
            if not self._can_degrade(e):
                raise
            logger.warning(f"Could not fetch thread replies for {channel_id}/{thread_ts}: {e}")
            return []
        replies = []
        for raw in (data.get('messages') or [])[1:]:
            if not raw.get('text') or not raw.get('ts'):
                continue
            author = await self.get_user_name(raw['user']) if raw.get('user') else UNKNOWN_AUTHOR
            replies.append((author, raw['text']))
        return replies

    async def fetch_full_detail(self, item: SourceItem) -> str:
        payload = item.payload
        channel_id = payload['channel_id']
        ts = payload['ts']
        if payload.get('user'):
            author = await self.get_user_name(payload['user'])
        else:
            author = payload.get('username') or UNKNOWN_AUTHOR
        replies = await self.get_thread_replies(channel_id, ts) if payload.get('is_thread_parent') else []
        permalink = await self.get_permalink(channel_id, ts)
        return format_slack_document(
            channel_name=payload['channel_name'],
            permalink=permalink,
            author=author,
            timestamp=slack_ts_to_iso(ts),
            text=payload['text'],
            replies=replies,
        )

    def is_transient(self, exc: BaseException) -> bool:
        return self.client.is_transient(exc)

    def is_fatal(self, exc: BaseException) -> bool:
        return self.client.is_fatal(exc)

    async def close(self) -> None:
        await self.client.close()
