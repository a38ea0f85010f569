"""Tests for snapshot reconciliation: freshness, refresh, merge and favorites."""

import asyncio

import httpx
import pytest

from noteshelf.errors import CatalogConfigurationError, NetworkError, NotFound
from noteshelf.services.catalog_client import CatalogClient
from noteshelf.services.engine import ReconciliationEngine
from noteshelf.services.events import FavoriteToggled, RecordEnriched, SnapshotUpdated

from conftest import fake_pdf, raw_record

REF = "https://files.example/{}.pdf"
CATALOG_URL = "https://catalog.example"


async def until(condition, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def of_type(events, event_type):
    return [e for e in events.received if isinstance(e, event_type)]


class TestSnapshot:

    @pytest.mark.asyncio
    async def test_empty_store_returns_empty_stale_view(self, engine, catalog):
        view = await engine.get_snapshot("u")
        assert view.documents == []
        assert view.is_fresh is False
        assert catalog.owner_calls == 0

    @pytest.mark.asyncio
    async def test_missing_user_yields_empty_results(self, engine, catalog):
        catalog.owned = [raw_record("a")]
        assert (await engine.get_snapshot(None)).documents == []
        assert (await engine.refresh("")).documents == []
        assert await engine.set_favorite(None, "a", True) is False
        assert await engine.open_document(None, "a") is None
        assert catalog.owner_calls == 0

    @pytest.mark.asyncio
    async def test_freshness_window_boundary(self, engine, catalog, clock):
        catalog.owned = [raw_record("a", page_count=2)]
        await engine.refresh("u")

        clock.advance(4 * 60 + 59)
        assert (await engine.get_snapshot("u")).is_fresh is True

        clock.advance(1)
        assert (await engine.get_snapshot("u")).is_fresh is False

        clock.advance(1)
        assert (await engine.get_snapshot("u")).is_fresh is False

    @pytest.mark.asyncio
    async def test_snapshot_survives_restart(self, engine, store, catalog, extractor, config, clock):
        catalog.owned = [raw_record("a", page_count=2), raw_record("b", page_count=1, days_ago=1)]
        await engine.refresh("u")
        await engine.wait_idle()

        restarted = ReconciliationEngine(store, catalog, extractor, config=config, clock=clock)
        view = await restarted.get_snapshot("u")

        assert [r.id for r in view.documents] == ["a", "b"]
        assert view.is_fresh is True
        assert catalog.owner_calls == 1


class TestRefresh:

    @pytest.mark.asyncio
    async def test_three_owned_documents_then_enrichment(self, engine, catalog, events):
        catalog.owned = [
            raw_record("a", page_count=10),
            raw_record("b", days_ago=1),
            raw_record("c", days_ago=2),
        ]
        catalog.binaries = {REF.format("b"): fake_pdf(3), REF.format("c"): fake_pdf(7)}

        view = await engine.refresh("u")
        assert [r.id for r in view.documents] == ["a", "b", "c"]
        assert view.is_fresh is True
        assert view.error is None

        await engine.wait_idle()
        pages = {r.id: r.page_count for r in (await engine.get_snapshot("u")).documents}
        assert pages == {"a": 10, "b": 3, "c": 7}

        enriched = of_type(events, RecordEnriched)
        assert sorted(e.document_id for e in enriched) == ["b", "c"]
        assert sorted(catalog.patches) == [("b", {"pageCount": 3}), ("c", {"pageCount": 7})]

    @pytest.mark.asyncio
    async def test_publishes_snapshot_updated(self, engine, catalog, events):
        catalog.owned = [raw_record("a", page_count=1)]
        await engine.refresh("u")
        updates = of_type(events, SnapshotUpdated)
        assert len(updates) == 1
        assert [r.id for r in updates[0].documents] == ["a"]

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_are_coalesced(self, engine, catalog):
        catalog.owned = [raw_record("a", page_count=1)]
        catalog.gate = asyncio.Event()

        calls = [asyncio.create_task(engine.refresh("u")) for _ in range(5)]
        await asyncio.sleep(0)
        catalog.gate.set()
        views = await asyncio.gather(*calls)

        assert catalog.owner_calls == 1
        assert catalog.favorite_calls == 1
        assert all([r.id for r in v.documents] == ["a"] for v in views)

    @pytest.mark.asyncio
    async def test_forced_refresh_is_not_coalesced(self, engine, catalog):
        catalog.owned = [raw_record("a", page_count=1)]
        catalog.gate = asyncio.Event()

        first = asyncio.create_task(engine.refresh("u"))
        await until(lambda: catalog.owner_calls == 1)
        second = asyncio.create_task(engine.refresh("u", force=True))
        await until(lambda: catalog.owner_calls == 2)
        catalog.gate.set()
        await asyncio.gather(first, second)

        assert catalog.owner_calls == 2

    @pytest.mark.asyncio
    async def test_superseded_refresh_result_is_discarded(self, engine, catalog):
        catalog.owned = [raw_record("old", page_count=1)]
        gate = asyncio.Event()
        catalog.gate = gate

        stale = asyncio.create_task(engine.refresh("u"))
        await until(lambda: catalog.owner_calls == 1 and catalog.favorite_calls == 1)

        catalog.gate = None
        catalog.owned = [raw_record("new", page_count=1)]
        fresh = await engine.refresh("u", force=True)
        assert [r.id for r in fresh.documents] == ["new"]

        gate.set()
        late = await stale
        assert [r.id for r in late.documents] == ["new"]
        assert [r.id for r in (await engine.get_snapshot("u")).documents] == ["new"]

    @pytest.mark.asyncio
    async def test_favorites_failure_degrades_to_owned(self, engine, catalog, network_error):
        catalog.owned = [raw_record("a", page_count=1), raw_record("b", page_count=1, days_ago=1)]
        catalog.favorites_error = network_error

        view = await engine.refresh("u")

        assert [r.id for r in view.documents] == ["a", "b"]
        assert view.favorited == []
        assert view.error is None
        assert view.is_fresh is True

    @pytest.mark.asyncio
    async def test_both_failing_without_snapshot_reports_error(self, engine, catalog, events, network_error):
        catalog.owned_error = network_error
        catalog.favorites_error = NetworkError("timeout")

        view = await engine.refresh("u")

        assert view.documents == []
        assert view.is_fresh is False
        assert view.error is network_error
        assert of_type(events, SnapshotUpdated) == []

    @pytest.mark.asyncio
    async def test_both_failing_keeps_existing_snapshot(self, engine, catalog, clock, network_error):
        catalog.owned = [raw_record("a", page_count=1)]
        await engine.refresh("u")
        clock.advance(600)

        catalog.owned_error = network_error
        catalog.favorites_error = network_error
        view = await engine.refresh("u")

        assert [r.id for r in view.documents] == ["a"]
        assert view.error is None
        assert view.is_fresh is False

    @pytest.mark.asyncio
    async def test_configuration_error_is_user_facing(self, engine, catalog):
        catalog.owned_error = CatalogConfigurationError("query requires an index", 400)
        catalog.favorites = [raw_record("f", page_count=1)]

        view = await engine.refresh("u")

        assert [r.id for r in view.documents] == ["f"]
        assert view.error.user_facing is True

    @pytest.mark.asyncio
    async def test_slow_owned_collection_times_out(self, store, catalog, extractor, config, clock):
        config.fetch_timeout_seconds = 0.2
        catalog.owned = [raw_record("a", page_count=1)]
        catalog.favorites = [raw_record("f", page_count=1)]
        catalog.owned_delay = 5
        engine = ReconciliationEngine(store, catalog, extractor, config=config, clock=clock)

        view = await asyncio.wait_for(engine.refresh("u"), 2)

        assert [r.id for r in view.documents] == ["f"]
        await engine.wait_idle()

    @pytest.mark.asyncio
    async def test_slow_favorite_list_fails_that_collection(self, store, catalog, extractor, config, clock):
        config.fetch_timeout_seconds = 0.2
        catalog.owned = [raw_record("a", page_count=1)]
        catalog.favorites = [raw_record("f", page_count=1)]
        catalog.favorites_delay = 5
        engine = ReconciliationEngine(store, catalog, extractor, config=config, clock=clock)

        view = await asyncio.wait_for(engine.refresh("u"), 2)

        assert [r.id for r in view.documents] == ["a"]
        await engine.wait_idle()

    @pytest.mark.asyncio
    async def test_slow_favorite_record_keeps_those_that_arrived(self, store, extractor, config, clock):
        config.fetch_timeout_seconds = 0.5

        async def handler(request: httpx.Request):
            path = request.url.path
            if not path.startswith("/api/"):
                return httpx.Response(404)
            if path == "/api/documents/":
                return httpx.Response(200, json={"results": [raw_record("a", page_count=1)]})
            if path == "/api/users/u/favorites/":
                return httpx.Response(200, json={"results": [{"id": "f1"}, {"id": "f2"}]})
            if path == "/api/documents/f2/":
                await asyncio.sleep(3)
            document_id = path.rstrip("/").rsplit("/", 1)[-1]
            return httpx.Response(200, json=raw_record(document_id, page_count=1, days_ago=1))

        catalog = CatalogClient(CATALOG_URL, transport=httpx.MockTransport(handler))
        engine = ReconciliationEngine(store, catalog, extractor, config=config, clock=clock)

        view = await asyncio.wait_for(engine.refresh("u"), 2)

        assert [r.id for r in view.favorited] == ["f1"]
        assert [r.id for r in view.documents] == ["a", "f1"]
        assert view.is_fresh is True
        await engine.wait_idle()

    @pytest.mark.asyncio
    async def test_failing_favorite_record_is_skipped(self, store, extractor, config, clock):
        def handler(request: httpx.Request):
            path = request.url.path
            if path == "/api/documents/":
                return httpx.Response(200, json={"results": []})
            if path == "/api/users/u/favorites/":
                return httpx.Response(200, json={"results": [{"id": "f1"}, {"id": "f2"}]})
            if path == "/api/documents/f2/":
                return httpx.Response(503, text="unavailable")
            if path == "/api/documents/f1/":
                return httpx.Response(200, json=raw_record("f1", page_count=1))
            return httpx.Response(404)

        catalog = CatalogClient(CATALOG_URL, transport=httpx.MockTransport(handler))
        engine = ReconciliationEngine(store, catalog, extractor, config=config, clock=clock)

        view = await engine.refresh("u")

        assert [r.id for r in view.favorited] == ["f1"]
        assert view.error is None
        await engine.wait_idle()

    @pytest.mark.asyncio
    async def test_unreadable_catalog_reply_degrades(self, store, extractor, config, clock):
        def handler(request: httpx.Request):
            path = request.url.path
            if path == "/api/documents/":
                return httpx.Response(200, text="<html>maintenance</html>")
            if path == "/api/users/u/favorites/":
                return httpx.Response(200, json=[{"id": "f1"}])
            return httpx.Response(404)

        catalog = CatalogClient(CATALOG_URL, transport=httpx.MockTransport(handler))
        engine = ReconciliationEngine(store, catalog, extractor, config=config, clock=clock)

        view = await engine.refresh("u")

        assert view.documents == []
        assert isinstance(view.error, NetworkError)
        assert view.is_fresh is False
        await engine.wait_idle()

    @pytest.mark.asyncio
    async def test_unreadable_record_does_not_fail_refresh(self, engine, catalog):
        catalog.owned = [raw_record("a"), raw_record("b", days_ago=1)]
        catalog.binaries = {REF.format("a"): b"garbage", REF.format("b"): fake_pdf(5)}

        view = await engine.refresh("u")

        pages = {r.id: r.page_count for r in view.documents}
        assert pages == {"a": 0, "b": 5}

    @pytest.mark.asyncio
    async def test_malformed_remote_record_is_skipped(self, engine, catalog):
        catalog.owned = [{"fileName": "no id"}, raw_record("a", page_count=1)]
        view = await engine.refresh("u")
        assert [r.id for r in view.documents] == ["a"]

    @pytest.mark.asyncio
    async def test_refresh_never_loses_enrichment(self, engine, catalog):
        catalog.owned = [raw_record("a")]
        catalog.binaries = {REF.format("a"): fake_pdf(12)}
        await engine.refresh("u")
        await engine.wait_idle()
        enriched = (await engine.get_snapshot("u")).documents[0]
        assert enriched.page_count == 12
        assert enriched.thumbnail is not None

        catalog.binaries = {}
        catalog.owned = [raw_record("a", fileName="Renamed")]
        view = await engine.refresh("u", force=True)

        record = view.documents[0]
        assert record.title == "Renamed"
        assert record.page_count == 12
        assert record.thumbnail == enriched.thumbnail

    @pytest.mark.asyncio
    async def test_enrichment_during_refresh_survives_merge(self, engine, catalog, events):
        catalog.owned = [raw_record("a")]
        await engine.refresh("u")
        await engine.wait_idle()
        assert (await engine.get_snapshot("u")).documents[0].page_count == 0

        catalog.gate = asyncio.Event()
        refresh = asyncio.create_task(engine.refresh("u", force=True))
        await until(lambda: catalog.owner_calls == 2 and catalog.favorite_calls == 2)

        assert await engine.apply_enrichment("u", "a", 7, b"thumb") is True
        catalog.gate.set()
        view = await refresh

        record = view.documents[0]
        assert record.page_count == 7
        assert record.thumbnail == b"thumb"
        stored = (await engine.get_snapshot("u")).documents[0]
        assert (stored.page_count, stored.thumbnail) == (7, b"thumb")

    @pytest.mark.asyncio
    async def test_shared_id_appears_once(self, engine, catalog):
        catalog.owned = [raw_record("x", page_count=1), raw_record("o", page_count=1, days_ago=1)]
        catalog.favorites = [raw_record("x", page_count=1), raw_record("f", page_count=1, days_ago=2)]

        view = await engine.refresh("u")

        ids = [r.id for r in view.documents]
        assert ids == ["x", "o", "f"]
        assert next(r for r in view.documents if r.id == "x").is_favorite is True


class TestFavorites:

    @pytest.mark.asyncio
    async def test_favoriting_owned_record(self, engine, catalog, events):
        catalog.owned = [raw_record("a", page_count=1)]
        await engine.refresh("u")

        assert await engine.set_favorite("u", "a", True) is True
        view = await engine.get_snapshot("u")
        assert [r.id for r in view.owned] == ["a"]
        assert [r.id for r in view.favorited] == ["a"]
        assert view.favorited[0].is_favorite is True
        assert len(view.documents) == 1

        assert await engine.set_favorite("u", "a", False) is True
        view = await engine.get_snapshot("u")
        assert [r.id for r in view.owned] == ["a"]
        assert view.favorited == []

        await engine.wait_idle()
        assert catalog.favorite_updates == [("u", "a", True), ("u", "a", False)]
        toggles = of_type(events, FavoriteToggled)
        assert [(t.document_id, t.is_favorite) for t in toggles] == [("a", True), ("a", False)]

    @pytest.mark.asyncio
    async def test_favorite_is_persisted(self, engine, store, catalog):
        catalog.owned = [raw_record("a", page_count=1)]
        await engine.refresh("u")
        await engine.set_favorite("u", "a", True)

        snapshot = await store.load("u")
        assert [r.id for r in snapshot.favorited] == ["a"]


class TestOpenDocument:

    @pytest.mark.asyncio
    async def test_downloads_once_and_records_history(self, engine, catalog, clock):
        catalog.owned = [raw_record("a", page_count=4)]
        catalog.binaries = {REF.format("a"): fake_pdf(4)}
        await engine.refresh("u")

        path = await engine.open_document("u", "a")
        assert path.read_bytes() == fake_pdf(4)

        clock.advance(10)
        assert await engine.open_document("u", "a") == path
        assert catalog.full_calls == [REF.format("a")]

        history = await engine.previously_opened("u")
        assert [e.document_id for e in history] == ["a"]
        assert history[0].title == "Notes a"

    @pytest.mark.asyncio
    async def test_unknown_document(self, engine):
        with pytest.raises(NotFound):
            await engine.open_document("u", "ghost")

    @pytest.mark.asyncio
    async def test_six_opens_keep_five_most_recent(self, engine, catalog, clock):
        catalog.owned = [raw_record(str(i), page_count=1, days_ago=i) for i in range(6)]
        catalog.binaries = {REF.format(i): fake_pdf(1) for i in range(6)}
        await engine.refresh("u")

        for i in range(6):
            clock.advance(1)
            await engine.open_document("u", str(i))

        history = await engine.previously_opened("u")
        assert [e.document_id for e in history] == ["5", "4", "3", "2", "1"]

    @pytest.mark.asyncio
    async def test_clear_removes_everything(self, engine, catalog):
        catalog.owned = [raw_record("a", page_count=4)]
        catalog.binaries = {REF.format("a"): fake_pdf(4)}
        await engine.refresh("u")
        path = await engine.open_document("u", "a")
        await engine.wait_idle()

        await engine.clear("u")

        assert not path.exists()
        view = await engine.get_snapshot("u")
        assert view.documents == []
        assert view.is_fresh is False
