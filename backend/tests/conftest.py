"""
Shared pytest fixtures for noteshelf tests.

Provides an in-process fake catalog and a fake extractor so tests never touch
the network or need poppler.
"""

import asyncio
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from noteshelf.config import Settings
from noteshelf.database import build_engine, build_session_factory, create_tables
from noteshelf.errors import InvalidDocument, NetworkError, NotFound, RemoteFetchError
from noteshelf.services.cache import ThumbnailCache
from noteshelf.services.engine import ReconciliationEngine
from noteshelf.services.events import EventBus
from noteshelf.services.extractor import ExtractedMetadata
from noteshelf.services.snapshot_store import LocalSnapshotStore

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def fake_pdf(pages: int, padding: int = 0) -> bytes:
    """Bytes the FakeExtractor understands as a PDF with `pages` pages."""
    return f"%PDF-1.4 pages={pages};".encode() + b"x" * padding


def raw_record(
    document_id: str,
    page_count: int = 0,
    days_ago: int = 0,
    ref: Optional[str] = None,
    **extra,
) -> Dict:
    data = {
        "id": document_id,
        "fileName": f"Notes {document_id}",
        "category": "Physics",
        "downloadURL": ref if ref is not None else f"https://files.example/{document_id}.pdf",
        "pageCount": page_count,
        "fileSize": "1.2 MB",
        "uploadDate": (BASE_TIME - timedelta(days=days_ago)).isoformat(),
        "subjectName": "Mechanics",
        "subjectCode": "PH101",
    }
    data.update(extra)
    return data


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeExtractor:
    """Needs a `%PDF` header and a `pages=N;` marker anywhere in the bytes."""

    def __init__(self, with_thumbnail: bool = True):
        self.with_thumbnail = with_thumbnail
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.delay = 0.0
        self._lock = threading.Lock()

    def extract(self, data: bytes) -> ExtractedMetadata:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                threading.Event().wait(self.delay)
            match = re.search(rb"pages=(\d+);", data or b"")
            if not (data or b"").startswith(b"%PDF") or not match or int(match.group(1)) == 0:
                raise InvalidDocument("not a fake pdf")
            pages = int(match.group(1))
            thumbnail = b"PNG:" + data[:20] if self.with_thumbnail else None
            return ExtractedMetadata(page_count=pages, thumbnail=thumbnail)
        finally:
            with self._lock:
                self.active -= 1


class FakeCatalog:
    """In-memory stand-in for the remote catalog."""

    def __init__(self):
        self.owned: List[Dict] = []
        self.favorites: List[Dict] = []
        self.binaries: Dict[str, bytes] = {}
        self.owned_error: Optional[RemoteFetchError] = None
        self.favorites_error: Optional[RemoteFetchError] = None
        self.patch_error: Optional[RemoteFetchError] = None
        self.owned_delay = 0.0
        self.favorites_delay = 0.0  # delay of the favorite id list
        self.gate: Optional[asyncio.Event] = None
        self.owner_calls = 0
        self.favorite_calls = 0
        self.range_calls: List[str] = []
        self.full_calls: List[str] = []
        self.patches: List[tuple] = []
        self.favorite_updates: List[tuple] = []

    async def _wait(self):
        if self.gate is not None:
            await self.gate.wait()

    async def query_by_owner(self, user_id: str) -> List[Dict]:
        self.owner_calls += 1
        records = [dict(r) for r in self.owned]
        await self._wait()
        if self.owned_delay:
            await asyncio.sleep(self.owned_delay)
        if self.owned_error:
            raise self.owned_error
        return records

    async def query_favorites(self, user_id: str, timeout: Optional[float] = None) -> List[Dict]:
        self.favorite_calls += 1
        records = [dict(r, isFavorite=True) for r in self.favorites]
        await self._wait()
        if self.favorites_delay:
            try:
                await asyncio.wait_for(asyncio.sleep(self.favorites_delay), timeout)
            except asyncio.TimeoutError:
                raise NetworkError("favorite list timed out")
        if self.favorites_error:
            raise self.favorites_error
        return records

    async def get_binary(self, reference: str) -> bytes:
        self.full_calls.append(reference)
        if reference not in self.binaries:
            raise NotFound(f"{reference} missing", 404)
        return self.binaries[reference]

    async def get_binary_range(self, reference: str, byte_start: int, byte_end: int) -> bytes:
        self.range_calls.append(reference)
        if reference not in self.binaries:
            raise NotFound(f"{reference} missing", 404)
        return self.binaries[reference][byte_start:byte_end + 1]

    async def patch_record(self, document_id: str, fields: Dict) -> None:
        if self.patch_error:
            raise self.patch_error
        self.patches.append((document_id, fields))

    async def set_favorite(self, user_id: str, document_id: str, is_favorite: bool) -> None:
        self.favorite_updates.append((user_id, document_id, is_favorite))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def config(tmp_path):
    return Settings(
        data_dir=str(tmp_path / "data"),
        fetch_timeout_seconds=2.0,
        enrichment_batch_size=5,
        partial_fetch_bytes=200_000,
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    db_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    await create_tables(db_engine)
    yield LocalSnapshotStore(build_session_factory(db_engine), ThumbnailCache(), history_limit=5)
    await db_engine.dispose()


@pytest.fixture
def events():
    bus = EventBus()
    bus.received = []
    bus.subscribe(bus.received.append)
    return bus


@pytest_asyncio.fixture
async def engine(store, catalog, extractor, events, config, clock):
    library = ReconciliationEngine(store, catalog, extractor, events, config, clock=clock)
    yield library
    await library.wait_idle()


@pytest.fixture
def network_error():
    return NetworkError("connection reset")
