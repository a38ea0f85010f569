import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from noteshelf.config import settings
from noteshelf.database import build_engine, build_session_factory, create_tables
from noteshelf.routers import library
from noteshelf.services.cache import ThumbnailCache
from noteshelf.services.catalog_client import CatalogClient
from noteshelf.services.engine import ReconciliationEngine
from noteshelf.services.events import EventBus
from noteshelf.services.extractor import PdfMetadataExtractor
from noteshelf.services.snapshot_store import LocalSnapshotStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    os.makedirs(settings.data_dir, exist_ok=True)

    # Startup: Create database tables and wire the library engine
    db_engine = build_engine()
    await create_tables(db_engine)
    store = LocalSnapshotStore(
        build_session_factory(db_engine),
        ThumbnailCache(settings.thumbnail_cache_count, settings.thumbnail_cache_bytes),
        history_limit=settings.previously_opened_limit,
    )
    app.state.engine = ReconciliationEngine(
        store,
        CatalogClient.from_settings(settings),
        PdfMetadataExtractor((settings.thumbnail_width, settings.thumbnail_height)),
        EventBus(),
        settings,
    )
    yield
    # Shutdown: let background work finish, then release the database
    await app.state.engine.wait_idle()
    await db_engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Local snapshot cache and metadata enrichment for a remote PDF library",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(library.router, prefix="/api/library", tags=["Library"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": settings.app_name}
