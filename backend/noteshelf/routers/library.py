import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel

from noteshelf.errors import NotFound, RemoteFetchError
from noteshelf.models import DocumentRecord
from noteshelf.services.engine import LibraryView, ReconciliationEngine

logger = logging.getLogger(__name__)

router = APIRouter()


# Pydantic models for requests/responses
class DocumentSchema(BaseModel):
    id: str
    title: str
    author: str
    binary_ref: str
    is_favorite: bool
    page_count: int
    subject_name: Optional[str] = None
    subject_code: Optional[str] = None
    file_size: str
    created_at: str
    college: Optional[str] = None
    university: Optional[str] = None
    has_thumbnail: bool = False


class LibrarySchema(BaseModel):
    owned: List[DocumentSchema]
    favorited: List[DocumentSchema]
    documents: List[DocumentSchema]
    is_fresh: bool
    error: Optional[str] = None
    show_error: bool = False


class FavoriteRequest(BaseModel):
    is_favorite: bool


def get_engine(request: Request) -> ReconciliationEngine:
    """Dependency to get the application's library engine."""
    return request.app.state.engine


def _document(record: DocumentRecord) -> DocumentSchema:
    data = record.model_dump(mode="json")
    data["has_thumbnail"] = record.thumbnail is not None
    return DocumentSchema(**data)


def _library(view: LibraryView) -> LibrarySchema:
    show_error = view.error is not None and (view.error.user_facing or not view.documents)
    return LibrarySchema(
        owned=[_document(r) for r in view.owned],
        favorited=[_document(r) for r in view.favorited],
        documents=[_document(r) for r in view.documents],
        is_fresh=view.is_fresh,
        error=str(view.error) if view.error else None,
        show_error=show_error,
    )


async def _background_refresh(engine: ReconciliationEngine, user_id: str):
    try:
        await engine.refresh(user_id)
    except Exception as e:
        logger.error(f"Background refresh for {user_id} failed: {e}")


@router.get("/", response_model=LibrarySchema)
async def get_library(
    x_user_id: Optional[str] = Header(None),
    engine: ReconciliationEngine = Depends(get_engine)
):
    """Get the cached library immediately; refresh in the background if stale."""
    view = await engine.get_snapshot(x_user_id)
    if x_user_id and not view.is_fresh:
        engine.run_in_background(_background_refresh(engine, x_user_id))
    return _library(view)


@router.post("/refresh", response_model=LibrarySchema)
async def refresh_library(
    force: bool = False,
    x_user_id: Optional[str] = Header(None),
    engine: ReconciliationEngine = Depends(get_engine)
):
    """Fetch fresh data from the catalog and return the merged library."""
    return _library(await engine.refresh(x_user_id, force=force))


@router.put("/favorites/{document_id}")
async def set_favorite(
    document_id: str,
    data: FavoriteRequest,
    x_user_id: Optional[str] = Header(None),
    engine: ReconciliationEngine = Depends(get_engine)
):
    """Mark or unmark a document as favorite."""
    changed = await engine.set_favorite(x_user_id, document_id, data.is_favorite)
    return {"success": True, "changed": changed, "is_favorite": data.is_favorite}


@router.get("/thumbnails/{document_id}")
async def get_thumbnail(
    document_id: str,
    x_user_id: Optional[str] = Header(None),
    engine: ReconciliationEngine = Depends(get_engine)
):
    """Rendered first page of a document as PNG."""
    image_bytes = await engine.get_thumbnail(x_user_id, document_id)
    if image_bytes is None:
        raise HTTPException(status_code=404, detail="Thumbnail not found")
    return Response(content=image_bytes, media_type="image/png")


@router.post("/documents/{document_id}/open")
async def open_document(
    document_id: str,
    x_user_id: Optional[str] = Header(None),
    engine: ReconciliationEngine = Depends(get_engine)
):
    """Make the document available locally and remember it as opened."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not signed in")
    try:
        path = await engine.open_document(x_user_id, document_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RemoteFetchError as e:
        logger.error(f"Error downloading {document_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return {"document_id": document_id, "local_path": str(path)}


@router.get("/recent")
async def get_recent(
    x_user_id: Optional[str] = Header(None),
    engine: ReconciliationEngine = Depends(get_engine)
):
    """Previously opened documents, most recent first."""
    entries = await engine.previously_opened(x_user_id)
    return [
        {
            "document_id": e.document_id,
            "title": e.title,
            "binary_ref": e.binary_ref,
            "last_opened_at": e.last_opened_at,
        }
        for e in entries
    ]


@router.delete("/cache")
async def clear_cache(
    x_user_id: Optional[str] = Header(None),
    engine: ReconciliationEngine = Depends(get_engine)
):
    """Remove the user's cached snapshot and downloaded documents."""
    await engine.clear(x_user_id)
    return {"success": True}
