from noteshelf.models.snapshot import LibrarySnapshot
from noteshelf.models.binaries import CachedBinary
from noteshelf.models.history import OpenedDocument
from noteshelf.models.document import DocumentRecord, remove_duplicates_by_id, sort_newest_first

__all__ = [
    "LibrarySnapshot",
    "CachedBinary",
    "OpenedDocument",
    "DocumentRecord",
    "remove_duplicates_by_id",
    "sort_newest_first",
]
