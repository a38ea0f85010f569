"""Document records as handed around by the cache subsystem."""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

UNKNOWN_FILE_SIZE = "Unknown"


def format_file_size(size: Optional[int]) -> str:
    """Format a byte count as a KB/MB string."""
    if not size or size <= 0:
        return UNKNOWN_FILE_SIZE
    if size < 1000 * 1000:
        return f"{max(1, round(size / 1000))} KB"
    return f"{size / (1000 * 1000):.1f} MB"


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.now(timezone.utc)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


class DocumentRecord(BaseModel):
    """A single PDF document in the user's library."""

    id: str
    title: str = "Untitled"
    author: str = "Unknown Author"
    binary_ref: str = ""
    thumbnail: Optional[bytes] = Field(default=None, exclude=True)  # PNG bytes
    is_favorite: bool = False
    page_count: int = 0
    subject_name: Optional[str] = None
    subject_code: Optional[str] = None
    file_size: str = UNKNOWN_FILE_SIZE
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    college: Optional[str] = None
    university: Optional[str] = None

    @property
    def is_enriched(self) -> bool:
        return self.page_count > 0 and self.thumbnail is not None

    @classmethod
    def from_raw(cls, data: Dict[str, Any], document_id: str = None) -> "DocumentRecord":
        """Build a record from a remote catalog field map.

        Raises ValueError when no id is available.
        """
        record_id = document_id or data.get("id")
        if not record_id:
            raise ValueError("Remote record has no id")

        file_size = data.get("fileSize")
        if isinstance(file_size, (int, float)) and not isinstance(file_size, bool):
            file_size = format_file_size(int(file_size))

        try:
            page_count = int(data.get("pageCount") or 0)
        except (TypeError, ValueError):
            page_count = 0

        return cls(
            id=str(record_id),
            title=data.get("fileName") or "Untitled",
            author=data.get("category") or "Unknown Author",
            binary_ref=data.get("downloadURL") or "",
            is_favorite=bool(data.get("isFavorite", False)),
            page_count=max(page_count, 0),
            subject_name=data.get("subjectName") or None,
            subject_code=data.get("subjectCode") or None,
            file_size=file_size or UNKNOWN_FILE_SIZE,
            created_at=_parse_timestamp(data.get("uploadDate")),
            college=data.get("collegeName") or None,
            university=data.get("universityName") or None,
        )

    def fill_from(self, richer: "DocumentRecord") -> "DocumentRecord":
        """Return a copy with empty enrichment fields taken from `richer`."""
        updates = {}
        if self.page_count <= 0 and richer.page_count > 0:
            updates["page_count"] = richer.page_count
        if self.thumbnail is None and richer.thumbnail is not None:
            updates["thumbnail"] = richer.thumbnail
        return self.model_copy(update=updates) if updates else self


def remove_duplicates_by_id(records: Iterable[DocumentRecord]) -> List[DocumentRecord]:
    """Drop records whose id was already seen, keeping the first occurrence."""
    seen = set()
    unique = []
    for record in records:
        if record.id in seen:
            continue
        seen.add(record.id)
        unique.append(record)
    return unique


def sort_newest_first(records: Iterable[DocumentRecord]) -> List[DocumentRecord]:
    return sorted(records, key=lambda r: r.created_at, reverse=True)
