"""Snapshot reconciliation: serve cached libraries, refresh them, merge results."""

import asyncio
import functools
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Coroutine, Dict, List, Optional, Set

from noteshelf.config import Settings, settings as default_settings
from noteshelf.errors import NetworkError, NotFound, PersistenceError, RemoteFetchError
from noteshelf.models import DocumentRecord
from noteshelf.services.enrichment import EnrichmentScheduler
from noteshelf.services.events import EventBus, FavoriteToggled, RecordEnriched, SnapshotUpdated
from noteshelf.services.extractor import PdfMetadataExtractor
from noteshelf.services.library_state import LibraryState
from noteshelf.services.snapshot_store import LocalSnapshotStore, OpenedEntry

logger = logging.getLogger(__name__)


@dataclass
class LibraryView:
    """What a caller gets to display: both collections plus the unified list."""
    owned: List[DocumentRecord] = field(default_factory=list)
    favorited: List[DocumentRecord] = field(default_factory=list)
    documents: List[DocumentRecord] = field(default_factory=list)
    is_fresh: bool = False
    error: Optional[RemoteFetchError] = None


@dataclass
class CollectionFetch:
    label: str
    records: Optional[List[DocumentRecord]] = None  # None when the fetch failed
    error: Optional[RemoteFetchError] = None
    discovered: Set[str] = field(default_factory=set)

    @property
    def failed(self) -> bool:
        return self.records is None


class ReconciliationEngine:
    """Owns every user's in-memory library and the only paths that mutate it.

    All writes for a user go through one lock. Reads never hit the network.
    """

    def __init__(
        self,
        store: LocalSnapshotStore,
        catalog,
        extractor: PdfMetadataExtractor = None,
        events: EventBus = None,
        config: Settings = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or default_settings
        self.store = store
        self.catalog = catalog
        self.events = events or EventBus()
        self.clock = clock
        self.freshness_window = self.config.freshness_window_seconds
        self.fetch_timeout = self.config.fetch_timeout_seconds
        self.binaries_dir = Path(self.config.data_dir) / "binaries"
        self.enrichment = EnrichmentScheduler(
            self,
            store,
            catalog,
            extractor or PdfMetadataExtractor(
                (self.config.thumbnail_width, self.config.thumbnail_height)
            ),
            self.config,
        )

        self._states: Dict[str, LibraryState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._started: Dict[str, int] = {}
        self._applied: Dict[str, int] = {}
        self._background: Set[asyncio.Task] = set()

    # State access
    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def _state(self, user_id: str) -> LibraryState:
        """Load the user's state on first use. Caller holds the user's lock."""
        state = self._states.get(user_id)
        if state is None:
            snapshot = await self.store.load(user_id)
            state = LibraryState.from_snapshot(snapshot) if snapshot else LibraryState()
            self._states[user_id] = state
        return state

    def is_fresh(self, captured_at: Optional[float]) -> bool:
        if captured_at is None:
            return False
        return self.clock() - captured_at < self.freshness_window

    def _view(self, state: LibraryState) -> LibraryView:
        return LibraryView(
            owned=state.owned(),
            favorited=state.favorited(),
            documents=state.unified(),
            is_fresh=self.is_fresh(state.captured_at),
        )

    async def _persist(self, user_id: str, state: LibraryState) -> None:
        try:
            await self.store.save(user_id, state.to_snapshot())
        except PersistenceError as e:
            logger.error(f"[Store] {e}")

    def run_in_background(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for background favorite pushes and enrichment passes."""
        while self._background or self.enrichment.busy:
            await asyncio.gather(*list(self._background), return_exceptions=True)
            await self.enrichment.wait_idle()

    # Reads
    async def get_snapshot(self, user_id: str) -> LibraryView:
        """Return the cached library without any network access."""
        if not user_id:
            return LibraryView()
        async with self._lock(user_id):
            state = await self._state(user_id)
            return self._view(state)

    async def get_thumbnail(self, user_id: str, document_id: str) -> Optional[bytes]:
        if not user_id:
            return None
        async with self._lock(user_id):
            record = (await self._state(user_id)).get(document_id)
        if record is None:
            return None
        return record.thumbnail or self.store.get_thumbnail(record.binary_ref)

    async def previously_opened(self, user_id: str) -> List[OpenedEntry]:
        return await self.store.previously_opened(user_id)

    # Refresh
    async def refresh(self, user_id: str, force: bool = False) -> LibraryView:
        """Fetch both collections from the catalog and merge them in.

        An unforced call while another refresh is running waits for that one
        instead of starting a second fetch.
        """
        if not user_id:
            return LibraryView()

        running = self._inflight.get(user_id)
        if running is not None and not running.done() and not force:
            return await asyncio.shield(running)

        generation = self._started.get(user_id, 0) + 1
        self._started[user_id] = generation
        task = asyncio.create_task(self._refresh(user_id, generation))
        self._inflight[user_id] = task
        return await asyncio.shield(task)

    async def _refresh(self, user_id: str, generation: int) -> LibraryView:
        try:
            owned, favorited = await asyncio.gather(
                self._fetch_collection(user_id, "owned", self.catalog.query_by_owner),
                # The favorites query returns what arrived before the deadline
                self._fetch_collection(
                    user_id,
                    "favorited",
                    functools.partial(self.catalog.query_favorites, timeout=self.fetch_timeout),
                    own_deadline=True,
                ),
            )
            return await self._apply_refresh(user_id, generation, owned, favorited)
        finally:
            if self._inflight.get(user_id) is asyncio.current_task():
                del self._inflight[user_id]

    async def _fetch_collection(
        self,
        user_id: str,
        label: str,
        query: Callable[[str], Awaitable[List[dict]]],
        own_deadline: bool = False,
    ) -> CollectionFetch:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.fetch_timeout

        try:
            if own_deadline:
                raw_records = await query(user_id)
            else:
                raw_records = await asyncio.wait_for(query(user_id), self.fetch_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Refresh] {label} fetch for {user_id} timed out after {self.fetch_timeout}s")
            return CollectionFetch(label, error=NetworkError(f"{label} fetch timed out"))
        except RemoteFetchError as e:
            logger.warning(f"[Refresh] {label} fetch for {user_id} failed: {e}")
            return CollectionFetch(label, error=e)

        records = []
        for raw in raw_records:
            try:
                record = DocumentRecord.from_raw(raw)
            except ValueError as e:
                logger.warning(f"[Refresh] Skipping malformed {label} record: {e}")
                continue
            if label == "favorited":
                record = record.model_copy(update={"is_favorite": True})
            cached = self.store.get_thumbnail(record.binary_ref)
            if cached is not None and record.thumbnail is None:
                record = record.model_copy(update={"thumbnail": cached})
            records.append(record)

        fetch = CollectionFetch(label, records=records)
        await self._resolve_page_counts(user_id, fetch, deadline - loop.time())
        return fetch

    async def _resolve_page_counts(self, user_id: str, fetch: CollectionFetch, budget: float) -> None:
        """Try to fill in missing page counts before the deadline.

        Records still unresolved when time runs out keep a page count of 0.
        """
        missing = {i: r for i, r in enumerate(fetch.records) if r.page_count <= 0}
        if not missing:
            return
        if budget <= 0:
            logger.info(f"[Refresh] No time left to resolve {len(missing)} {fetch.label} page counts")
            return

        tasks = {
            asyncio.create_task(self.enrichment.discover(user_id, record)): index
            for index, record in missing.items()
        }
        done, pending = await asyncio.wait(tasks, timeout=budget)
        for task in pending:
            task.cancel()

        for task in done:
            if task.cancelled() or task.exception() is not None:
                if not task.cancelled():
                    logger.debug(f"[Refresh] Page count lookup failed: {task.exception()}")
                continue
            metadata = task.result()
            if metadata is None or metadata.page_count <= 0:
                continue
            index = tasks[task]
            record = fetch.records[index]
            fetch.records[index] = record.model_copy(update={
                "page_count": metadata.page_count,
                "thumbnail": record.thumbnail or metadata.thumbnail,
            })
            fetch.discovered.add(record.id)

        if pending:
            logger.info(f"[Refresh] {len(pending)} {fetch.label} page counts left for enrichment")

    async def _apply_refresh(
        self,
        user_id: str,
        generation: int,
        owned: CollectionFetch,
        favorited: CollectionFetch,
    ) -> LibraryView:
        failures = [f.error for f in (owned, favorited) if f.failed]
        user_error = next((e for e in failures if e is not None and e.user_facing), None)

        async with self._lock(user_id):
            state = await self._state(user_id)

            if generation < self._applied.get(user_id, 0):
                logger.info(f"[Refresh] Discarding superseded refresh {generation} for {user_id}")
                return self._view(state)
            self._applied[user_id] = generation

            if owned.failed and favorited.failed:
                view = self._view(state)
                if state.captured_at is None:
                    logger.error(f"[Refresh] Both collections failed for {user_id} and nothing is cached")
                    view.error = user_error or failures[0]
                else:
                    logger.warning(f"[Refresh] Both collections failed for {user_id}, keeping cached snapshot")
                    view.error = user_error
                return view

            state.replace(owned.records or [], favorited.records or [], self.clock())
            await self._persist(user_id, state)
            view = self._view(state)
            view.error = user_error
            enriched = [state.get(i) for i in owned.discovered | favorited.discovered]

        logger.info(
            f"[Refresh] {user_id}: {len(view.owned)} owned, {len(view.favorited)} favorited, "
            f"{len(view.documents)} unique"
        )
        self.events.publish(SnapshotUpdated(user_id, view.documents))
        for record in enriched:
            if record is not None:
                self.events.publish(
                    RecordEnriched(user_id, record.id, record.page_count, record.thumbnail)
                )
        self.enrichment.enrich(user_id, view.documents)
        return view

    # Writes
    async def apply_enrichment(
        self,
        user_id: str,
        document_id: str,
        page_count: int,
        thumbnail: Optional[bytes],
    ) -> bool:
        """Fill in discovered metadata for a record in every collection.

        Known values are never replaced. Returns True if the record changed.
        """
        async with self._lock(user_id):
            state = await self._state(user_id)
            if not state.apply_metadata(document_id, page_count, thumbnail):
                return False
            record = state.get(document_id)
            await self._persist(user_id, state)

        self.events.publish(RecordEnriched(user_id, document_id, record.page_count, record.thumbnail))
        return True

    async def set_favorite(self, user_id: str, document_id: str, is_favorite: bool) -> bool:
        """Mark or unmark a favorite locally and push it to the catalog."""
        if not user_id:
            return False
        async with self._lock(user_id):
            state = await self._state(user_id)
            changed = state.set_favorite(document_id, is_favorite)
            if changed:
                await self._persist(user_id, state)
                documents = state.unified()

        if changed:
            self.events.publish(FavoriteToggled(user_id, document_id, is_favorite))
            self.events.publish(SnapshotUpdated(user_id, documents))
        self.run_in_background(self._push_favorite(user_id, document_id, is_favorite))
        return changed

    async def _push_favorite(self, user_id: str, document_id: str, is_favorite: bool) -> None:
        try:
            await self.catalog.set_favorite(user_id, document_id, is_favorite)
        except RemoteFetchError as e:
            logger.warning(f"[Favorites] Could not sync favorite {document_id} for {user_id}: {e}")

    async def open_document(self, user_id: str, document_id: str) -> Optional[Path]:
        """Return a local path to the document's binary, downloading it if needed.

        The open is recorded in the previously-opened list. Raises NotFound
        for unknown documents and RemoteFetchError if the download fails.
        """
        if not user_id:
            return None
        async with self._lock(user_id):
            record = (await self._state(user_id)).get(document_id)
        if record is None:
            raise NotFound(f"Document {document_id} is not in the library")

        path = await self.store.get_cached_binary_path(user_id, document_id)
        if path is None:
            if not record.binary_ref:
                raise NotFound(f"Document {document_id} has no binary")
            data = await self.catalog.get_binary(record.binary_ref)
            path = self.binaries_dir / f"{uuid.uuid4().hex}.pdf"
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._write_binary, path, data)
            logger.info(f"Downloaded document {document_id}: {len(data)} bytes")
            try:
                await self.store.cache_binary(user_id, document_id, str(path))
            except PersistenceError as e:
                logger.error(f"[Store] {e}")

        try:
            await self.store.record_opened(user_id, OpenedEntry(
                document_id=record.id,
                title=record.title,
                binary_ref=record.binary_ref,
                last_opened_at=self.clock(),
            ))
        except PersistenceError as e:
            logger.error(f"[Store] {e}")

        # The full binary is local now, so missing metadata is cheap to derive
        self.enrichment.enrich(user_id, [record])
        return path

    @staticmethod
    def _write_binary(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def clear(self, user_id: str) -> None:
        """Drop the user's cached snapshot and binaries (e.g. on sign-out)."""
        if not user_id:
            return
        async with self._lock(user_id):
            try:
                await self.store.clear(user_id)
            except PersistenceError as e:
                logger.error(f"[Store] {e}")
            self._states[user_id] = LibraryState()
            self._applied[user_id] = self._started.get(user_id, 0)
