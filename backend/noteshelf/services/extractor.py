"""Page count and first-page thumbnail extraction for PDF bytes."""

import io
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from PIL import Image
from pdf2image import convert_from_bytes, pdfinfo_from_bytes
from pdf2image.exceptions import (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFPopplerTimeoutError,
    PDFSyntaxError,
)

from noteshelf.errors import ExtractionError, InvalidDocument

logger = logging.getLogger(__name__)

DEFAULT_THUMBNAIL_SIZE = (200, 280)

# Render at twice the target size so the downscale stays sharp
RENDER_SCALE = 2


@dataclass(frozen=True)
class ExtractedMetadata:
    page_count: int
    thumbnail: Optional[bytes] = None  # PNG bytes


class PdfMetadataExtractor:
    """Derives page count and a thumbnail from full or partial PDF bytes.

    Stateless; safe to call from executor threads.
    """

    def __init__(self, thumbnail_size: Tuple[int, int] = DEFAULT_THUMBNAIL_SIZE, timeout: int = 30):
        self.thumbnail_size = thumbnail_size
        self.timeout = timeout

    def extract(self, data: bytes) -> ExtractedMetadata:
        """Return page count and first-page thumbnail.

        Raises InvalidDocument if the bytes are not a PDF or have no pages.
        A truncated PDF whose page tree is readable still yields a page count;
        the thumbnail is then best-effort.
        """
        if not data or not data.lstrip()[:5].startswith(b"%PDF"):
            raise InvalidDocument("Not a PDF document")

        page_count = self._page_count(data)
        if page_count <= 0:
            raise InvalidDocument("PDF contains no pages")

        thumbnail = None
        try:
            thumbnail = self.render_thumbnail(data)
        except ExtractionError as e:
            logger.debug(f"[Extract] Thumbnail render failed, keeping page count {page_count}: {e}")

        return ExtractedMetadata(page_count=page_count, thumbnail=thumbnail)

    def _page_count(self, data: bytes) -> int:
        try:
            info = pdfinfo_from_bytes(data, timeout=self.timeout)
        except (PDFPageCountError, PDFSyntaxError) as e:
            raise InvalidDocument(f"Unreadable PDF: {e}")
        except (PDFInfoNotInstalledError, PDFPopplerTimeoutError) as e:
            raise ExtractionError(f"PDF inspection unavailable: {e}")
        except (ValueError, OSError) as e:
            raise InvalidDocument(f"Unreadable PDF: {e}")
        try:
            return int(info.get("Pages", 0))
        except (TypeError, ValueError):
            return 0

    def render_thumbnail(self, data: bytes) -> bytes:
        """Render the first page, fitted into the thumbnail box, as PNG."""
        width, height = self.thumbnail_size
        try:
            pages = convert_from_bytes(
                data,
                first_page=1,
                last_page=1,
                size=(width * RENDER_SCALE, None),
                timeout=self.timeout,
            )
        except (PDFPageCountError, PDFSyntaxError, PDFInfoNotInstalledError,
                PDFPopplerTimeoutError, ValueError, OSError) as e:
            raise ExtractionError(f"First page could not be rendered: {e}")

        if not pages:
            raise ExtractionError("First page could not be rendered")

        img = pages[0]
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        img.thumbnail((width, height), Image.LANCZOS)

        output = io.BytesIO()
        img.save(output, format="PNG")
        return output.getvalue()
