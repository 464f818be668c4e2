"""
Notion source reader.

This module provides:
1. Decoding of Notion block payloads into a small set of block types
2. An iterative, depth-bounded walk over nested blocks
3. NotionReader: pages ordered by last edit time, rendered lazily

Only standalone pages are synced; database rows are skipped.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from ..config import get_logger
from .api_client import ApiClient
from .config import NotionSourceConfig
from .content import format_notion_document
from .models import SourceItem, SourceType
from .rate_limiter import RateLimiter
from .resilience import RetryPolicy
from .source_reader import SourceChunk, SourceReader

logger = get_logger(__name__)

TITLE_PROPERTY_NAMES = ('title', 'Title', 'Name', 'name')
UNTITLED = 'Untitled'

TEXT_BLOCK_PREFIXES = {
    'paragraph': '',
    'heading_1': '# ',
    'heading_2': '## ',
    'heading_3': '### ',
    'bulleted_list_item': '• ',
    'numbered_list_item': '- ',
    'toggle': '',
    'quote': '> ',
    'callout': '',
}


def plain_text(rich_text: Optional[List[Dict[str, Any]]]) -> str:
    return ''.join(part.get('plain_text', '') for part in rich_text or [] if isinstance(part, dict))


@dataclass
class TextBlock:
    kind: str
    text: str

    def render(self) -> Optional[str]:
        rendered = f"{TEXT_BLOCK_PREFIXES.get(self.kind, '')}{self.text}"
        return rendered or None


@dataclass
class TodoBlock:
    text: str
    checked: bool

    def render(self) -> Optional[str]:
        return f"[{'x' if self.checked else ' '}] {self.text}"


@dataclass
class CodeBlock:
    text: str
    language: str = ''

    def render(self) -> Optional[str]:
        return f"```{self.language}\n{self.text}\n```"


@dataclass
class TableRowBlock:
    cells: List[str]

    def render(self) -> Optional[str]:
        return ' | '.join(self.cells)


@dataclass
class UnsupportedBlock:
    """Any block kind without extractable text (images, dividers, embeds...)."""
    kind: str

    def render(self) -> Optional[str]:
        return None


Block = Union[TextBlock, TodoBlock, CodeBlock, TableRowBlock, UnsupportedBlock]


def decode_block(raw: Dict[str, Any]) -> Block:
    """
    Decode a raw Notion block.

    Unknown or malformed blocks decode to UnsupportedBlock rather than raising.
    """
    kind = raw.get('type') if isinstance(raw, dict) else None
    if not isinstance(kind, str):
        return UnsupportedBlock(kind='unknown')
    body = raw.get(kind)
    if not isinstance(body, dict):
        return UnsupportedBlock(kind=kind)

    if kind in TEXT_BLOCK_PREFIXES:
        if 'rich_text' not in body:
            return UnsupportedBlock(kind=kind)
        return TextBlock(kind=kind, text=plain_text(body.get('rich_text')))
    if kind == 'to_do':
        return TodoBlock(text=plain_text(body.get('rich_text')), checked=bool(body.get('checked')))
    if kind == 'code':
        return CodeBlock(text=plain_text(body.get('rich_text')), language=body.get('language') or '')
    if kind == 'table_row':
        cells = body.get('cells')
        if not isinstance(cells, list):
            return UnsupportedBlock(kind=kind)
        return TableRowBlock(cells=[plain_text(cell) for cell in cells])
    return UnsupportedBlock(kind=kind)


def render_blocks(blocks: List[Block]) -> str:
    parts = [rendered for rendered in (block.render() for block in blocks) if rendered]
    return '\n\n'.join(parts)


def get_page_title(page: Dict[str, Any]) -> str:
    """Title from the usual title properties, then any title property."""
    properties = page.get('properties') or {}
    candidates = [properties.get(name) for name in TITLE_PROPERTY_NAMES]
    candidates += list(properties.values())
    for prop in candidates:
        if isinstance(prop, dict) and prop.get('type') == 'title' and prop.get('title'):
            return plain_text(prop['title'])
    return UNTITLED


def is_database_row(page: Dict[str, Any]) -> bool:
    return (page.get('parent') or {}).get('type') == 'database_id'


class NotionReader(SourceReader):
    """
    Reads Notion pages through the search endpoint, most recently edited first.

    The cursor is Notion's own ``start_cursor``. Page content is fetched only
    when an item has to be uploaded.
    """

    source_type = SourceType.NOTION

    def __init__(self, client: ApiClient, config: Optional[NotionSourceConfig] = None):
        self.client = client
        self.config = config or NotionSourceConfig()

    @classmethod
    def create(cls, api_key: str, limiter: RateLimiter, retry_policy: RetryPolicy,
               config: Optional[NotionSourceConfig] = None) -> 'NotionReader':
        config = config or NotionSourceConfig()
        headers = {
            'Authorization': f'Bearer {api_key}',
            'Notion-Version': config.api_version,
            'Content-Type': 'application/json',
        }
        client = ApiClient(config.api_url, headers, limiter, retry_policy, timeout_seconds=config.request_timeout)
        return cls(client, config)

    async def fetch_chunk(self, cursor: Optional[str], limit: int) -> SourceChunk:
        body: Dict[str, Any] = {
            'filter': {'property': 'object', 'value': 'page'},
            'sort': {'direction': 'descending', 'timestamp': 'last_edited_time'},
            'page_size': min(limit, 100),
        }
        if cursor:
            body['start_cursor'] = cursor
        data = await self.client.request('POST', 'search', json_body=body)

        items = []
        for page in data.get('results', []):
            if page.get('object') != 'page' or is_database_row(page):
                continue
            items.append(SourceItem(
                source_id=page['id'],
                last_modified_marker=page.get('last_edited_time', ''),
                title=get_page_title(page),
                url=page.get('url', ''),
                payload={'page_id': page['id']},
            ))

        has_more = bool(data.get('has_more')) and bool(data.get('next_cursor'))
        logger.debug(f"Fetched {len(items)} Notion pages (has_more={has_more})")
        return SourceChunk(items=items, next_cursor=data.get('next_cursor') if has_more else None, has_more=has_more)

    async def fetch_full_detail(self, item: SourceItem) -> str:
        blocks = await self.collect_blocks(item.payload.get('page_id', item.source_id))
        return format_notion_document(item.title or UNTITLED, item.url, render_blocks(blocks))

    async def _list_children(self, block_id: str) -> List[Dict[str, Any]]:
        children: List[Dict[str, Any]] = []
        start_cursor = None
        while True:
            params: Dict[str, Any] = {'page_size': self.config.block_page_size}
            if start_cursor:
                params['start_cursor'] = start_cursor
            data = await self.client.request('GET', f'blocks/{block_id}/children', params=params)
            children.extend(block for block in data.get('results', []) if isinstance(block, dict) and 'type' in block)
            start_cursor = data.get('next_cursor')
            if not data.get('has_more') or not start_cursor:
                return children

    async def collect_blocks(self, page_id: str) -> List[Block]:
        """
        Walk the block tree of a page in document order.

        Children are expanded with an explicit stack; blocks deeper than
        ``max_block_depth`` are rendered without their children.
        """
        blocks: List[Block] = []
        stack: List[Tuple[Dict[str, Any], int]] = [
            (raw, 1) for raw in reversed(await self._list_children(page_id))
        ]
        while stack:
            raw, depth = stack.pop()
            blocks.append(decode_block(raw))
            if not raw.get('has_children') or not raw.get('id'):
                continue
            if depth >= self.config.max_block_depth:
                logger.debug(f"Not expanding block {raw['id']} beyond depth {depth}")
                continue
            children = await self._list_children(raw['id'])
            stack.extend((child, depth + 1) for child in reversed(children))
        return blocks

    def is_transient(self, exc: BaseException) -> bool:
        return self.client.is_transient(exc)

    def is_fatal(self, exc: BaseException) -> bool:
        return self.client.is_fatal(exc)

    async def close(self) -> None:
        await self.client.close()
