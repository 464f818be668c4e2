"""
Source reader interface consumed by the sync engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from .models import SourceItem, SourceType


@dataclass
class SourceChunk:
    """One page of items plus the cursor that resumes after it."""
    items: List[SourceItem] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


class SourceReader(ABC):
    """
    Reads items from one content source.

    Implementations rate-limit and retry their own API calls, so every
    method here is safe to call in a tight loop.
    """

    source_type: SourceType

    @abstractmethod
    async def fetch_chunk(self, cursor: Optional[str], limit: int) -> SourceChunk:
        """
        Fetch up to ``limit`` items starting at ``cursor`` (None means the
        beginning of the source).
        """
        pass

    @abstractmethod
    async def fetch_full_detail(self, item: SourceItem) -> str:
        """Fetch everything needed for an item and return its rendered content."""
        pass

    def is_transient(self, exc: BaseException) -> bool:
        return False

    def is_fatal(self, exc: BaseException) -> bool:
        """Failures that abort the run instead of failing a single item."""
        return False

    async def close(self) -> None:
        pass
