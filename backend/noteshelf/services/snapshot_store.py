"""Local persistence of per-user snapshots, cached binaries and history."""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from noteshelf.errors import PersistenceError
from noteshelf.models import CachedBinary, DocumentRecord, LibrarySnapshot, OpenedDocument
from noteshelf.services.cache import ThumbnailCache

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """Owned and favorited records captured at one point in time."""
    owned: List[DocumentRecord] = field(default_factory=list)
    favorited: List[DocumentRecord] = field(default_factory=list)
    captured_at: Optional[float] = None  # epoch seconds


@dataclass(frozen=True)
class OpenedEntry:
    document_id: str
    title: str
    binary_ref: str
    last_opened_at: float


def _dump(records: List[DocumentRecord]) -> List[dict]:
    return [r.model_dump(mode="json") for r in records]


class LocalSnapshotStore:
    """Per-user local cache. Never touches the network.

    Every method given an empty user id is a no-op returning an empty result.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        thumbnails: ThumbnailCache = None,
        history_limit: int = 5,
    ):
        self.session_factory = session_factory
        self.thumbnails = thumbnails or ThumbnailCache()
        self.history_limit = history_limit

    # Snapshot
    def _load_records(self, rows: List[dict]) -> List[DocumentRecord]:
        records = []
        for row in rows or []:
            try:
                record = DocumentRecord.model_validate(row)
            except ValueError as e:
                logger.warning(f"[Store] Skipping unreadable cached record: {e}")
                continue
            thumbnail = self.thumbnails.get(record.binary_ref)
            if thumbnail is not None:
                record = record.model_copy(update={"thumbnail": thumbnail})
            records.append(record)
        return records

    async def load(self, user_id: str) -> Optional[Snapshot]:
        """Load the cached snapshot, or None if nothing is cached."""
        if not user_id:
            return None
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(LibrarySnapshot).where(LibrarySnapshot.user_id == user_id)
                )
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"[Store] Failed to load snapshot for {user_id}: {e}")
            return None

        if row is None:
            return None
        return Snapshot(
            owned=self._load_records(row.owned),
            favorited=self._load_records(row.favorited),
            captured_at=row.captured_at,
        )

    async def save(self, user_id: str, snapshot: Snapshot) -> None:
        """Replace the user's snapshot wholesale."""
        if not user_id:
            return
        for record in snapshot.owned + snapshot.favorited:
            if record.thumbnail is not None:
                self.thumbnails.set(record.binary_ref, record.thumbnail)

        captured_at = snapshot.captured_at if snapshot.captured_at is not None else time.time()
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(LibrarySnapshot).where(LibrarySnapshot.user_id == user_id)
                )
                row = result.scalar_one_or_none()
                if row:
                    row.owned = _dump(snapshot.owned)
                    row.favorited = _dump(snapshot.favorited)
                    row.captured_at = captured_at
                else:
                    session.add(LibrarySnapshot(
                        user_id=user_id,
                        owned=_dump(snapshot.owned),
                        favorited=_dump(snapshot.favorited),
                        captured_at=captured_at,
                    ))
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save snapshot for {user_id}: {e}")

    async def clear(self, user_id: str) -> None:
        """Remove the snapshot and every cached binary of the user.

        Missing files are ignored.
        """
        if not user_id:
            return
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(CachedBinary).where(CachedBinary.user_id == user_id)
                )
                binaries = result.scalars().all()
                for binary in binaries:
                    try:
                        Path(binary.local_path).unlink(missing_ok=True)
                    except OSError as e:
                        logger.warning(f"[Store] Could not delete {binary.local_path}: {e}")

                snapshot_result = await session.execute(
                    select(LibrarySnapshot).where(LibrarySnapshot.user_id == user_id)
                )
                snapshot = snapshot_result.scalar_one_or_none()
                if snapshot:
                    for row in (snapshot.owned or []) + (snapshot.favorited or []):
                        self.thumbnails.delete(row.get("binary_ref", ""))

                await session.execute(delete(CachedBinary).where(CachedBinary.user_id == user_id))
                await session.execute(delete(LibrarySnapshot).where(LibrarySnapshot.user_id == user_id))
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to clear cache for {user_id}: {e}")
        logger.info(f"[Store] Cleared cache for {user_id} ({len(binaries)} binaries)")

    # Binary path map
    async def cache_binary(self, user_id: str, document_id: str, local_path: str) -> None:
        """Remember where the full binary of a document is stored."""
        if not user_id:
            return
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(CachedBinary).where(
                        CachedBinary.user_id == user_id,
                        CachedBinary.document_id == document_id,
                    )
                )
                entry = result.scalar_one_or_none()
                if entry:
                    entry.local_path = str(local_path)
                else:
                    session.add(CachedBinary(
                        user_id=user_id,
                        document_id=document_id,
                        local_path=str(local_path),
                    ))
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record binary for {document_id}: {e}")

    async def get_cached_binary_path(self, user_id: str, document_id: str) -> Optional[Path]:
        """Return the local binary path if it is recorded and still on disk."""
        if not user_id:
            return None
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(CachedBinary.local_path).where(
                        CachedBinary.user_id == user_id,
                        CachedBinary.document_id == document_id,
                    )
                )
                local_path = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"[Store] Failed to look up binary for {document_id}: {e}")
            return None

        if local_path and Path(local_path).exists():
            return Path(local_path)
        return None

    # Thumbnails
    def cache_thumbnail(self, key: str, image: bytes) -> None:
        self.thumbnails.set(key, image)

    def get_thumbnail(self, key: str) -> Optional[bytes]:
        return self.thumbnails.get(key)

    # Previously opened
    async def record_opened(self, user_id: str, entry: OpenedEntry) -> List[OpenedEntry]:
        """Move an entry to the front of the history, trimming the oldest."""
        if not user_id:
            return []
        try:
            async with self.session_factory() as session:
                await session.execute(
                    delete(OpenedDocument).where(
                        OpenedDocument.user_id == user_id,
                        OpenedDocument.document_id == entry.document_id,
                    )
                )
                session.add(OpenedDocument(
                    user_id=user_id,
                    document_id=entry.document_id,
                    title=entry.title,
                    binary_ref=entry.binary_ref,
                    last_opened_at=entry.last_opened_at,
                ))
                await session.flush()

                result = await session.execute(
                    select(OpenedDocument)
                    .where(OpenedDocument.user_id == user_id)
                    .order_by(OpenedDocument.last_opened_at.desc(), OpenedDocument.id.desc())
                )
                rows = result.scalars().all()
                for stale in rows[self.history_limit:]:
                    await session.delete(stale)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record opened document {entry.document_id}: {e}")

        return [self._entry(row) for row in rows[:self.history_limit]]

    async def previously_opened(self, user_id: str) -> List[OpenedEntry]:
        """Most recently opened documents, newest first."""
        if not user_id:
            return []
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(OpenedDocument)
                    .where(OpenedDocument.user_id == user_id)
                    .order_by(OpenedDocument.last_opened_at.desc(), OpenedDocument.id.desc())
                    .limit(self.history_limit)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"[Store] Failed to load history for {user_id}: {e}")
            return []
        return [self._entry(row) for row in rows]

    @staticmethod
    def _entry(row: OpenedDocument) -> OpenedEntry:
        return OpenedEntry(
            document_id=row.document_id,
            title=row.title or "",
            binary_ref=row.binary_ref or "",
            last_opened_at=row.last_opened_at,
        )
