"""
Change detection for source items.

The classifier decides, for an item and its persisted record, whether the item
is new, an incomplete earlier upload, updated, or unchanged. The source-specific
part ("did the change marker move?") is a comparator strategy injected per
source.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .models import ChangeKind, SourceItem, SourceType, SyncedRecord, parse_datetime


class MarkerComparator(ABC):
    """Decides whether an item's change marker differs from the stored one."""

    @abstractmethod
    def has_changed(self, current_marker: str, stored_marker: str) -> bool:
        pass


class EditTimeComparator(MarkerComparator):
    """
    Markers are ISO-8601 edit times; an item changed when its edit time is
    strictly later than the stored one.

    Markers that do not parse as timestamps are compared as strings.
    """

    def has_changed(self, current_marker: str, stored_marker: str) -> bool:
        if not stored_marker:
            return bool(current_marker)
        try:
            current = parse_datetime(current_marker)
            stored = parse_datetime(stored_marker)
        except ValueError:
            return current_marker > stored_marker
        if current is None:
            return False
        return current > stored


class CompositeMarkerComparator(MarkerComparator):
    """
    Markers are composite strings (e.g. reply count, latest reply and edit
    timestamp); any difference means the item changed.
    """

    def has_changed(self, current_marker: str, stored_marker: str) -> bool:
        return current_marker != stored_marker


class ChangeClassifier:
    """
    Classify a source item against its persisted record.

    Priority order:
    1. no record                  -> NEW
    2. record without artifact id -> INCOMPLETE
    3. marker moved               -> UPDATED
    4. otherwise                  -> UNCHANGED
    """

    def __init__(self, comparator: MarkerComparator):
        self.comparator = comparator

    def classify(self, item: SourceItem, record: Optional[SyncedRecord]) -> ChangeKind:
        if record is None:
            return ChangeKind.NEW
        if not record.is_upload_confirmed:
            return ChangeKind.INCOMPLETE
        if self.comparator.has_changed(item.last_modified_marker, record.last_modified_marker):
            return ChangeKind.UPDATED
        return ChangeKind.UNCHANGED


def classifier_for(source_type: SourceType) -> ChangeClassifier:
    """The canonical change rule of each source type."""
    if source_type == SourceType.NOTION:
        return ChangeClassifier(EditTimeComparator())
    if source_type == SourceType.SLACK:
        return ChangeClassifier(CompositeMarkerComparator())
    raise ValueError(f"Unsupported source type: {source_type}")
