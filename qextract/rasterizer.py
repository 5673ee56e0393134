"""
Page Rasterizer
===============
Renders PDF pages to normalized, optimized PNG images using PyMuPDF (fitz)
for rendering and Pillow for re-encoding.

Pages are produced lazily, one at a time, in increasing page order. The
sequence ends at the first page that yields no image:

    - page 1 yields nothing  → RasterizationError (not a usable PDF)
    - page N > 1 yields nothing → end of document

A render failure on a later page is therefore indistinguishable from the
end of the document. Callers get every page up to the failure.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, Optional

import fitz  # PyMuPDF
from PIL import Image

from .exceptions import RasterizationError
from .models import PageImage
from .storage import remove_files, remove_tree

logger = logging.getLogger(__name__)

# 300 DPI is print quality; answer options stay legible after cropping
DEFAULT_DPI = 300

# A4 at 300 DPI
DEFAULT_PAGE_SIZE = (2480, 3508)


class PageRasterizer:
    """
    Converts one PDF into page images inside a run's scratch directory.

    Every file written is tracked so that cleanup() can remove the lot.
    One instance serves one run.
    """

    def __init__(
        self,
        scratch_dir: str | Path,
        dpi: int = DEFAULT_DPI,
        page_size: Optional[tuple[int, int]] = DEFAULT_PAGE_SIZE,
    ):
        self.scratch_dir = Path(scratch_dir)
        self.dpi = dpi
        self.page_size = page_size
        self._files: list[Path] = []

    @staticmethod
    def page_count(pdf_path: str) -> int:
        """Get total number of pages in the PDF."""
        with fitz.open(pdf_path) as doc:
            return doc.page_count

    def convert(self, pdf_path: str) -> Iterator[PageImage]:
        """
        Lazily rasterize the PDF, page 1 first.

        The iterator cannot be restarted; call convert() again for a new
        pass.

        Raises:
            RasterizationError: If the first page cannot be rendered.
        """
        try:
            doc = fitz.open(pdf_path)
        except Exception as e:
            raise RasterizationError(
                f"Could not open PDF: {pdf_path}",
                details={"error": str(e)},
            ) from e

        with doc:
            page_number = 1
            while True:
                try:
                    page_image = self._render_page(doc, page_number)
                except Exception as e:
                    if page_number == 1:
                        raise RasterizationError(
                            f"Could not rasterize first page of {pdf_path}",
                            details={"error": str(e)},
                        ) from e
                    logger.warning(
                        f"Page {page_number} failed to rasterize, "
                        f"treating as end of document: {e}"
                    )
                    return

                if page_image is None:
                    if page_number == 1:
                        raise RasterizationError(
                            f"PDF has no renderable pages: {pdf_path}"
                        )
                    logger.debug(f"Document exhausted after {page_number - 1} pages")
                    return

                yield page_image
                page_number += 1

    def _render_page(
        self, doc: fitz.Document, page_number: int
    ) -> Optional[PageImage]:
        """Render one page, or return None when the index is past the end."""
        if page_number > doc.page_count:
            return None

        self.scratch_dir.mkdir(parents=True, exist_ok=True)

        page = doc.load_page(page_number - 1)
        zoom = self.dpi / 72
        pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)

        raw_path = self.scratch_dir / f"page_{page_number}.png"
        self._files.append(raw_path)
        pix.save(str(raw_path))

        optimized_path = self.scratch_dir / f"page_{page_number}_optimized.png"
        self._files.append(optimized_path)
        width, height = self._optimize(raw_path, optimized_path)

        logger.debug(f"Rasterized page {page_number} ({width}x{height})")
        return PageImage(
            page_number=page_number,
            width=width,
            height=height,
            path=str(optimized_path),
        )

    def _optimize(self, raw_path: Path, optimized_path: Path) -> tuple[int, int]:
        """Normalize size and re-encode the raw raster as an optimized PNG."""
        with Image.open(raw_path) as raw:
            img = raw.convert("RGB")
        if self.page_size and img.size != tuple(self.page_size):
            img = img.resize(tuple(self.page_size), Image.Resampling.LANCZOS)
        img.save(optimized_path, format="PNG", optimize=True, compress_level=6)
        return img.size

    def cleanup(self) -> int:
        """
        Delete every transient file written for this run, then the scratch
        directory itself. Files already gone are ignored.

        Returns:
            Number of files removed.
        """
        files, self._files = self._files, []
        removed = remove_files(files)
        remove_tree(self.scratch_dir)
        logger.info(f"Cleaned up {removed} transient files in {self.scratch_dir}")
        return removed
