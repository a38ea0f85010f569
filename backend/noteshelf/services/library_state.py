"""In-memory library of one user: a record table keyed by id plus derived views."""

from typing import Dict, Iterable, List, Optional

from noteshelf.models import DocumentRecord, remove_duplicates_by_id, sort_newest_first
from noteshelf.services.snapshot_store import Snapshot


class LibraryState:
    """Single source of truth for a user's owned and favorited documents.

    Each document is stored once; the owned, favorited and unified lists are
    recomputed from id lists on every read. Callers receive copies.
    """

    def __init__(self):
        self.records: Dict[str, DocumentRecord] = {}
        self.owned_ids: List[str] = []
        self.favorited_ids: List[str] = []
        self.captured_at: Optional[float] = None

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "LibraryState":
        state = cls()
        state.replace(snapshot.owned, snapshot.favorited, snapshot.captured_at)
        return state

    @property
    def is_empty(self) -> bool:
        return not self.owned_ids and not self.favorited_ids

    def get(self, document_id: str) -> Optional[DocumentRecord]:
        record = self.records.get(document_id)
        return self._view(record) if record else None

    def replace(
        self,
        owned: Iterable[DocumentRecord],
        favorited: Iterable[DocumentRecord],
        captured_at: Optional[float],
    ) -> None:
        """Swap in freshly fetched collections.

        Page counts and thumbnails already known for an id survive when the
        incoming record carries none.
        """
        previous = self.records
        table: Dict[str, DocumentRecord] = {}

        def admit(records: Iterable[DocumentRecord]) -> List[str]:
            ids = []
            for record in sort_newest_first(remove_duplicates_by_id(records)):
                if record.id in table:
                    table[record.id] = table[record.id].fill_from(record)
                else:
                    table[record.id] = record
                ids.append(record.id)
            return ids

        owned_ids = admit(owned)
        favorited_ids = admit(favorited)

        for document_id, record in table.items():
            if document_id in previous:
                table[document_id] = record.fill_from(previous[document_id])

        self.records = table
        self.owned_ids = owned_ids
        self.favorited_ids = favorited_ids
        self.captured_at = captured_at

    def _view(self, record: DocumentRecord) -> DocumentRecord:
        return record.model_copy(update={"is_favorite": record.id in self.favorited_ids})

    def owned(self) -> List[DocumentRecord]:
        return [self._view(self.records[i]) for i in self.owned_ids]

    def favorited(self) -> List[DocumentRecord]:
        return [self._view(self.records[i]) for i in self.favorited_ids]

    def unified(self) -> List[DocumentRecord]:
        """Owned and favorited documents, newest first, each id once."""
        return remove_duplicates_by_id(sort_newest_first(self.owned() + self.favorited()))

    def to_snapshot(self) -> Snapshot:
        return Snapshot(
            owned=self.owned(),
            favorited=self.favorited(),
            captured_at=self.captured_at,
        )

    def apply_metadata(self, document_id: str, page_count: int, thumbnail: Optional[bytes]) -> bool:
        """Fill in page count and thumbnail; never replaces a known value.

        Returns True if the record changed.
        """
        record = self.records.get(document_id)
        if record is None:
            return False
        updated = record.fill_from(
            record.model_copy(update={"page_count": page_count, "thumbnail": thumbnail})
        )
        if updated is record:
            return False
        self.records[document_id] = updated
        return True

    def set_favorite(self, document_id: str, is_favorite: bool) -> bool:
        """Add the record to or drop it from the favorited list.

        The owned list is never touched. Returns True if anything changed.
        """
        if is_favorite:
            if document_id in self.favorited_ids or document_id not in self.records:
                return False
            ids = self.favorited_ids + [document_id]
            self.favorited_ids = [
                r.id for r in sort_newest_first(self.records[i] for i in ids)
            ]
            return True

        if document_id not in self.favorited_ids:
            return False
        self.favorited_ids = [i for i in self.favorited_ids if i != document_id]
        if document_id not in self.owned_ids:
            self.records.pop(document_id, None)
        return True
