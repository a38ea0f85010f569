"""Typed events published by the library engine."""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from noteshelf.models import DocumentRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotUpdated:
    user_id: str
    documents: List[DocumentRecord]


@dataclass(frozen=True)
class RecordEnriched:
    user_id: str
    document_id: str
    page_count: int
    thumbnail: Optional[bytes]


@dataclass(frozen=True)
class FavoriteToggled:
    user_id: str
    document_id: str
    is_favorite: bool


LibraryEvent = Union[SnapshotUpdated, RecordEnriched, FavoriteToggled]
Listener = Callable[[LibraryEvent], None]


class EventBus:
    """Synchronous fan-out of library events to subscribed listeners."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: LibraryEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"[Events] Listener failed on {type(event).__name__}: {e}")
