"""Background completion of missing page counts and thumbnails."""

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional, Set, Tuple

from noteshelf.config import Settings, settings as default_settings
from noteshelf.errors import ExtractionError, RemoteFetchError
from noteshelf.models import DocumentRecord
from noteshelf.services.extractor import ExtractedMetadata, PdfMetadataExtractor
from noteshelf.services.snapshot_store import LocalSnapshotStore

if TYPE_CHECKING:
    from noteshelf.services.engine import ReconciliationEngine

logger = logging.getLogger(__name__)


def needs_enrichment(record: DocumentRecord) -> bool:
    return record.page_count <= 0 or record.thumbnail is None


class EnrichmentScheduler:
    """Runs metadata extraction for records missing page count or thumbnail.

    At most `enrichment_batch_size` extractions run at once. Results are
    written back through the engine, which serializes all state changes.
    Failures leave the record unresolved for the next pass.
    """

    def __init__(
        self,
        engine: "ReconciliationEngine",
        store: LocalSnapshotStore,
        catalog,
        extractor: PdfMetadataExtractor,
        config: Settings = None,
    ):
        config = config or default_settings
        self.engine = engine
        self.store = store
        self.catalog = catalog
        self.extractor = extractor
        self.partial_fetch_bytes = config.partial_fetch_bytes
        self._semaphore = asyncio.Semaphore(max(1, config.enrichment_batch_size))
        self._tasks: Set[asyncio.Task] = set()
        self._in_progress: Set[Tuple[str, str]] = set()

    def enrich(self, user_id: str, records: Iterable[DocumentRecord]) -> Optional[asyncio.Task]:
        """Schedule enrichment in the background and return immediately."""
        pending = [r for r in records if needs_enrichment(r)]
        if not user_id or not pending:
            return None
        task = asyncio.create_task(self.run(user_id, pending))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self, user_id: str, records: List[DocumentRecord]) -> int:
        """Enrich the given records; returns how many were improved."""
        results = await asyncio.gather(
            *(self._enrich_one(user_id, record) for record in records)
        )
        enriched = sum(1 for r in results if r)
        if enriched:
            logger.info(f"[Enrich] Completed metadata for {enriched}/{len(records)} documents of {user_id}")
        return enriched

    @property
    def busy(self) -> bool:
        return bool(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every scheduled enrichment pass has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _enrich_one(self, user_id: str, record: DocumentRecord) -> bool:
        key = (user_id, record.id)
        if key in self._in_progress or not needs_enrichment(record):
            return False
        self._in_progress.add(key)
        try:
            return await self._enrich(user_id, record)
        except Exception as e:
            # A single record must never take down the whole pass
            logger.warning(f"[Enrich] Unexpected failure for {record.id}: {e}")
            return False
        finally:
            self._in_progress.discard(key)

    async def _enrich(self, user_id: str, record: DocumentRecord) -> bool:
        cached = self.store.get_thumbnail(record.binary_ref)
        if cached is not None and record.page_count > 0:
            if record.thumbnail is not None:
                return False
            return await self.engine.apply_enrichment(user_id, record.id, record.page_count, cached)

        metadata = await self.discover(user_id, record)
        if metadata is None:
            return False
        return await self.engine.apply_enrichment(
            user_id, record.id, metadata.page_count, metadata.thumbnail or cached
        )

    async def discover(self, user_id: str, record: DocumentRecord) -> Optional[ExtractedMetadata]:
        """Extract metadata from the local binary or a partial remote fetch.

        On success the thumbnail is cached and a newly found page count is
        pushed to the catalog. Returns None if nothing could be extracted.
        """
        async with self._semaphore:
            metadata = await self._extract_local(user_id, record)
            if metadata is None:
                metadata = await self._extract_partial(record)

        if metadata is None:
            return None
        if metadata.thumbnail is not None:
            self.store.cache_thumbnail(record.binary_ref, metadata.thumbnail)
        if metadata.page_count > 0 and record.page_count <= 0:
            await self._push_page_count(record.id, metadata.page_count)
        return metadata

    async def _extract(self, data: bytes) -> ExtractedMetadata:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.extractor.extract, data)

    async def _extract_local(self, user_id: str, record: DocumentRecord) -> Optional[ExtractedMetadata]:
        path = await self.store.get_cached_binary_path(user_id, record.id)
        if path is None:
            return None
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, Path(path).read_bytes)
            return await self._extract(data)
        except (OSError, ExtractionError) as e:
            logger.debug(f"[Enrich] Local binary of {record.id} unusable: {e}")
            return None

    async def _extract_partial(self, record: DocumentRecord) -> Optional[ExtractedMetadata]:
        if not record.binary_ref:
            return None
        try:
            data = await self.catalog.get_binary_range(record.binary_ref, 0, self.partial_fetch_bytes)
        except RemoteFetchError as e:
            logger.debug(f"[Enrich] Partial fetch of {record.id} failed: {e}")
            return None
        try:
            return await self._extract(data)
        except ExtractionError as e:
            logger.debug(f"[Enrich] Could not read {record.id} from first {len(data)} bytes: {e}")
            return None

    async def _push_page_count(self, document_id: str, page_count: int) -> None:
        try:
            await self.catalog.patch_record(document_id, {"pageCount": page_count})
        except RemoteFetchError as e:
            logger.warning(f"[Enrich] Could not update page count of {document_id}: {e}")
