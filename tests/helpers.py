"""
Shared test helpers: synthetic PDFs, page images and scripted vision clients.
"""

from __future__ import annotations

import io
import json
from pathlib import Path

import fitz  # PyMuPDF
from PIL import Image

from qextract.engine import ExtractorConfig
from qextract.exceptions import VisionError
from qextract.models import PageImage
from qextract.vision import VisionClient

# Small pages keep rasterization fast
TEST_PAGE_SIZE = (400, 600)


def make_pdf(path: Path, pages: int = 2, size: tuple[int, int] = (200, 300)) -> Path:
    """Write a simple multi-page PDF with one line of text per page."""
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=size[0], height=size[1])
        page.insert_text((20, 40), f"Question block on page {i + 1}")
    doc.save(str(path))
    doc.close()
    return path


def make_page_image(
    directory: Path,
    width: int = 400,
    height: int = 600,
    page_number: int = 1,
) -> PageImage:
    """Write a blank page image and describe it as a PageImage."""
    path = directory / f"page_{page_number}.png"
    Image.new("RGB", (width, height), "white").save(path)
    return PageImage(
        page_number=page_number, width=width, height=height, path=str(path)
    )


def png_bytes(width: int = 40, height: int = 30, color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def vision_payload(*boxes: tuple[float, float, float, float]) -> str:
    """Build a vision-style JSON response for the given (x, y, w, h) boxes."""
    return json.dumps({
        "questions": [
            {
                "questionNumber": i + 1,
                "boundingBox": {"x": x, "y": y, "width": w, "height": h},
            }
            for i, (x, y, w, h) in enumerate(boxes)
        ]
    })


def make_config(storage_root: Path, **overrides) -> ExtractorConfig:
    values = dict(
        dpi=72,
        page_size=TEST_PAGE_SIZE,
        storage_root=str(storage_root),
        log_level="WARNING",
    )
    values.update(overrides)
    return ExtractorConfig(**values)


class ScriptedVision(VisionClient):
    """Returns (or raises) the given responses in order, one per call."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def generate(self, image_bytes, instruction, mime_type="image/png"):
        self.calls += 1
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class UnavailableVision(VisionClient):
    """Every call fails, as with a missing key or an outage."""

    def __init__(self):
        self.calls = 0

    def generate(self, image_bytes, instruction, mime_type="image/png"):
        self.calls += 1
        raise VisionError("service unavailable")
