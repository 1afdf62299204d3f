"""
PDF rendering service using pdf2image (poppler).

Renders one page at a time so large cookbooks never have every page
rasterized in memory at once.
"""

import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from PIL import Image

logger = logging.getLogger(__name__)


class PDFConversionError(Exception):
    """Raised when a PDF document cannot be opened at all."""

    pass


class RenderError(PDFConversionError):
    """Raised when a single page cannot be rendered."""

    pass


@dataclass
class PDFDocument:
    """An opened PDF: a spooled temp file plus its page count."""

    path: str
    page_count: int


class PDFService:
    """
    Service for PDF page rendering.

    Uses pdf2image (backed by poppler) to rasterize individual pages at a
    fixed DPI, then caps the longest side so the image fits vision model
    input limits. The same page index always yields the same raster.
    """

    def __init__(
        self,
        dpi: int = 150,
        image_format: str = "PNG",
        max_image_side: int = 2048,
        max_pages: int = 1000,
    ):
        """
        Initialize the PDF service.

        Args:
            dpi: Resolution for page rasterization.
            image_format: Raster format handed to poppler.
            max_image_side: Longest side of a rendered page, in pixels.
            max_pages: Largest page count accepted when opening a document.
        """
        self.dpi = dpi
        self.image_format = image_format
        self.max_image_side = max_image_side
        self.max_pages = max_pages

    @contextmanager
    def open_document(self, pdf_bytes: bytes) -> Iterator[PDFDocument]:
        """
        Spool PDF bytes to a temp file and read its page count.

        poppler reads the file from disk page by page, so only the page being
        rendered is held in memory.

        Args:
            pdf_bytes: Raw PDF content.

        Yields:
            PDFDocument usable with `render`.

        Raises:
            PDFConversionError: If the bytes are not a readable PDF.
        """
        try:
            # Import here to provide clear error if poppler not installed
            from pdf2image import pdfinfo_from_path
            from pdf2image.exceptions import (
                PDFInfoNotInstalledError,
                PDFPageCountError,
                PDFSyntaxError,
            )
        except ImportError as e:
            logger.error("pdf2image not installed: %s", e)
            raise PDFConversionError(
                "pdf2image library not installed. Run: pip install pdf2image"
            ) from e

        if not pdf_bytes:
            raise PDFConversionError("Empty PDF file provided")

        if not pdf_bytes[:4] == b"%PDF":
            raise PDFConversionError(
                "Invalid PDF file: does not start with PDF header"
            )

        fd, path = tempfile.mkstemp(suffix=".pdf", prefix="cookbook-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(pdf_bytes)

            try:
                info = pdfinfo_from_path(path)
            except PDFInfoNotInstalledError as e:
                logger.error("Poppler not installed: %s", e)
                raise PDFConversionError(
                    "Poppler not installed. Install poppler-utils: "
                    "brew install poppler (macOS) or apt-get install poppler-utils (Linux)"
                ) from e
            except (PDFPageCountError, PDFSyntaxError) as e:
                logger.error("Could not open PDF: %s", e)
                raise PDFConversionError(f"Invalid or corrupted PDF file: {e}") from e

            page_count = int(info.get("Pages", 0))
            if page_count <= 0:
                raise PDFConversionError("No pages found in PDF")
            if page_count > self.max_pages:
                raise PDFConversionError(
                    f"PDF has {page_count} pages, maximum is {self.max_pages}"
                )

            logger.info("Opened PDF with %d page(s)", page_count)
            yield PDFDocument(path=path, page_count=page_count)
        finally:
            try:
                os.unlink(path)
            except OSError:
                logger.warning("Could not remove temp file %s", path)

    def render(self, document: PDFDocument, page_index: int) -> Image.Image:
        """
        Render a single page to a PIL Image.

        Args:
            document: Document returned by `open_document`.
            page_index: Zero-based page index.

        Returns:
            RGB image whose longest side is at most `max_image_side`.

        Raises:
            RenderError: Page out of range, corrupt, or unsupported.
        """
        if page_index < 0 or page_index >= document.page_count:
            raise RenderError(
                f"Page index {page_index} out of range (document has {document.page_count} pages)"
            )

        from pdf2image import convert_from_path

        page_number = page_index + 1
        try:
            images = convert_from_path(
                document.path,
                dpi=self.dpi,
                fmt=self.image_format.lower(),
                first_page=page_number,
                last_page=page_number,
            )
        except Exception as e:
            logger.warning("Failed to render page %d: %s", page_number, e)
            raise RenderError(f"Could not render page {page_number}: {e}") from e

        if not images:
            raise RenderError(f"Page {page_number} produced no image")

        image = images[0].convert("RGB")
        return self.cap_size(image)

    def cap_size(self, image: Image.Image) -> Image.Image:
        """Downscale so the longest side fits `max_image_side`."""
        if max(image.size) <= self.max_image_side:
            return image
        ratio = self.max_image_side / max(image.size)
        new_size = (int(image.size[0] * ratio), int(image.size[1] * ratio))
        return image.resize(new_size, Image.Resampling.LANCZOS)


# Singleton instance for convenience
_pdf_service: PDFService | None = None


def get_pdf_service() -> PDFService:
    """Get or create the PDF service singleton."""
    global _pdf_service
    if _pdf_service is None:
        from ..config import get_settings

        settings = get_settings()
        _pdf_service = PDFService(
            dpi=settings.render_dpi,
            max_image_side=settings.max_image_side,
            max_pages=settings.max_pdf_pages,
        )
    return _pdf_service
