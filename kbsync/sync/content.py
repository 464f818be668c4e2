"""
Rendering of synced documents and content hashing.

Every document starts with a one-line header that the search side uses to
cite its source:

    [SOURCE:<type>|URL:<url>|TITLE:<title>]
"""

import hashlib
from typing import Iterable, Tuple, Union

EMPTY_CONTENT = "No content"
THREAD_SEPARATOR = "--- Thread Replies ---"


def compute_content_hash(content: Union[str, bytes]) -> str:
    """Compute MD5 hash of rendered content."""
    if isinstance(content, str):
        content = content.encode('utf-8')
    return hashlib.md5(content).hexdigest()


def source_header(source: str, url: str, title: str) -> str:
    return f"[SOURCE:{source}|URL:{url}|TITLE:{title}]"


def format_notion_document(title: str, url: str, text: str) -> str:
    """Render a Notion page."""
    body = text if text.strip() else EMPTY_CONTENT
    return f"{source_header('notion', url, title)}\n\n{body}"


def format_slack_document(
    channel_name: str,
    permalink: str,
    author: str,
    timestamp: str,
    text: str,
    replies: Iterable[Tuple[str, str]] = (),
) -> str:
    """
    Render a Slack message and its thread.

    Args:
        channel_name: Channel name without the leading '#'
        permalink: Link to the message
        author: Display name of the author
        timestamp: Human readable message time
        text: Message text
        replies: (author, text) pairs of thread replies, oldest first
    """
    header = source_header('slack', permalink, f"Slack message in #{channel_name}")
    document = (
        f"{header}\n\n"
        f"Author: {author}\n"
        f"Channel: #{channel_name}\n"
        f"Time: {timestamp}\n\n"
        f"{text}"
    )
    replies = list(replies)
    if replies:
        document += f"\n\n{THREAD_SEPARATOR}"
        for reply_author, reply_text in replies:
            document += f"\n{reply_author}: {reply_text}"
    return document
