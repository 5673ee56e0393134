"""
Data Models
===========
Pydantic models flowing through the extraction pipeline.

    PageImage ─► DetectionResult(DetectedQuestion[]) ─► CroppedQuestion[]
                                                      ─► ExtractionResult

All models are JSON-serializable for the document store and HTTP intake.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field

from .exceptions import InvalidRegionError


# ─── Enums ────────────────────────────────────────────────────────────────────


class DetectionSource(str, Enum):
    """Which detection path produced a page's boxes."""
    PRIMARY = "primary"
    FALLBACK = "fallback"


# ─── Page Models ──────────────────────────────────────────────────────────────


class PageImage(BaseModel):
    """One rasterized page. Lives only for the duration of a run."""
    page_number: int = Field(ge=1)
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    path: str = Field(description="Path of the optimized page image")


class BoundingBox(BaseModel):
    """
    A question region in page pixel coordinates.

    Values are kept exactly as detected (they may be negative, fractional
    or run off the page); to_pixel_rect() produces the clamped region that
    is actually cropped.
    """
    x: float
    y: float
    width: float
    height: float

    def to_pixel_rect(
        self, page_width: int, page_height: int
    ) -> tuple[int, int, int, int]:
        """
        Floor and clamp the box into the page.

        Returns:
            (left, top, right, bottom) with 0 <= left < right <= page_width
            and 0 <= top < bottom <= page_height.

        Raises:
            InvalidRegionError: If nothing of the box lies on the page, or
                a coordinate is not a finite number.
        """
        values = (self.x, self.y, self.width, self.height)
        if not all(math.isfinite(v) for v in values):
            raise InvalidRegionError(
                "Bounding box has a non-finite coordinate",
                details={"box": self.model_dump()},
            )

        left = math.floor(self.x)
        top = math.floor(self.y)
        right = left + math.floor(self.width)
        bottom = top + math.floor(self.height)

        left = min(max(left, 0), page_width)
        top = min(max(top, 0), page_height)
        right = min(max(right, 0), page_width)
        bottom = min(max(bottom, 0), page_height)

        if right <= left or bottom <= top:
            raise InvalidRegionError(
                "Bounding box has no area inside the page",
                details={
                    "box": self.model_dump(),
                    "page_size": (page_width, page_height),
                },
            )
        return left, top, right, bottom


class DetectedQuestion(BaseModel):
    """A question block found on one page. Numbering is page-local."""
    model_config = ConfigDict(populate_by_name=True)

    question_number: int = Field(
        default=0,
        validation_alias=AliasChoices("questionNumber", "question_number"),
    )
    bounding_box: BoundingBox = Field(
        validation_alias=AliasChoices("boundingBox", "bounding_box"),
    )


class DetectionResult(BaseModel):
    """
    Outcome of the single detect-or-fallback decision for a page.

    Tagged by ``source``: PRIMARY carries the vision model's boxes,
    FALLBACK carries equal strips plus the reason the primary path failed.
    """
    source: DetectionSource
    questions: list[DetectedQuestion] = Field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def primary(cls, questions: list[DetectedQuestion]) -> DetectionResult:
        return cls(source=DetectionSource.PRIMARY, questions=questions)

    @classmethod
    def fallback(
        cls, questions: list[DetectedQuestion], error: str
    ) -> DetectionResult:
        return cls(
            source=DetectionSource.FALLBACK, questions=questions, error=error
        )

    @property
    def is_fallback(self) -> bool:
        return self.source == DetectionSource.FALLBACK


# ─── Output Models ────────────────────────────────────────────────────────────


class CroppedQuestion(BaseModel):
    """
    A stored question image awaiting its answer key.
    This is the record handed to the document store.
    """
    question_number: int = Field(ge=1)
    question_image_url: str
    correct_option: Optional[str] = None
    page_number: int = Field(ge=1)


class PageReport(BaseModel):
    """How one page went through detection and cropping."""
    page_number: int = Field(ge=1)
    source: DetectionSource
    boxes_detected: int = 0
    boxes_cropped: int = 0
    detection_error: Optional[str] = None

    @computed_field
    @property
    def boxes_skipped(self) -> int:
        return self.boxes_detected - self.boxes_cropped


class ExtractionResult(BaseModel):
    """
    Complete output of one extraction run.
    Questions are numbered 1..N in page order, then detection order.
    """
    group_id: str
    label: str
    source_pdf: str = ""
    questions: list[CroppedQuestion] = Field(default_factory=list)
    pages: list[PageReport] = Field(default_factory=list)
    extractor_version: str = "1.0.0"
    extracted_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    elapsed_seconds: float = 0.0

    @computed_field
    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @computed_field
    @property
    def fallback_pages(self) -> list[int]:
        return [
            p.page_number for p in self.pages
            if p.source == DetectionSource.FALLBACK
        ]
