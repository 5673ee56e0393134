"""
Boundary Detector
=================
Finds question blocks on a page image.

Two paths:
    - Primary: ask the vision model for bounding boxes as JSON
    - Fallback: split the page into equal horizontal strips

detect_page() is the only place that chooses between them. The fallback is
used only after the primary path has failed for that page.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from .exceptions import DetectionError, VisionError
from .models import BoundingBox, DetectedQuestion, DetectionResult, PageImage
from .vision import VisionClient, extract_json_from_response

logger = logging.getLogger(__name__)

DEFAULT_QUESTIONS_PER_PAGE = 5
DEFAULT_MARGIN = 50

BOUNDARY_INSTRUCTION = """You are analyzing one page of an exam question paper.
The image is {width} pixels wide and {height} pixels tall.

RULES:
1. A question block is the question text, any diagrams or graphs, and ALL of
   its answer options (A, B, C, D), taken together as one region.
2. Detect EVERY question block visible on this page, in reading order.
3. Each bounding box must enclose the ENTIRE question block.
4. Coordinates are pixels from the top-left corner of the image.
5. Return ONLY valid JSON. No markdown, no explanation.

Return exactly this JSON format:
{{
  "questions": [
    {{
      "questionNumber": 1,
      "boundingBox": {{"x": 90, "y": 120, "width": 1850, "height": 680}}
    }}
  ]
}}"""


class BoundaryDetector:
    """
    Proposes question bounding boxes for one page at a time.
    Holds no per-page state, so one instance serves a whole run.
    """

    def __init__(
        self,
        vision_client: VisionClient,
        questions_per_page: int = DEFAULT_QUESTIONS_PER_PAGE,
        margin: int = DEFAULT_MARGIN,
    ):
        self.vision_client = vision_client
        self.questions_per_page = questions_per_page
        self.margin = margin

    def detect_page(self, page: PageImage) -> DetectionResult:
        """Try the vision model first; fall back to equal strips on failure."""
        try:
            questions = self.detect(page)
        except DetectionError as e:
            logger.warning(
                f"Page {page.page_number}: primary detection failed ({e}), "
                f"using {self.questions_per_page}-strip fallback"
            )
            return DetectionResult.fallback(
                self.fallback_detect(page, self.questions_per_page),
                error=str(e),
            )

        logger.info(
            f"Page {page.page_number}: detected {len(questions)} questions"
        )
        return DetectionResult.primary(questions)

    def detect(self, page: PageImage) -> list[DetectedQuestion]:
        """
        Primary detection through the vision model.

        Returns:
            Detected questions in response order, numbered 1..n.

        Raises:
            DetectionError: If the call fails, the response cannot be
                parsed, or it contains no questions.
        """
        image_bytes = Path(page.path).read_bytes()
        instruction = BOUNDARY_INSTRUCTION.format(
            width=page.width, height=page.height
        )

        try:
            response_text = self.vision_client.generate(image_bytes, instruction)
        except DetectionError:
            raise
        except Exception as e:
            raise VisionError(f"Vision call failed: {e}") from e

        payload = extract_json_from_response(response_text)
        if payload is None:
            raise DetectionError(
                "Vision response is not valid JSON",
                details={"response": response_text[:200]},
            )

        raw_questions = payload.get("questions") or []
        if not isinstance(raw_questions, list):
            raise DetectionError("'questions' is not a list")

        try:
            questions = [
                DetectedQuestion.model_validate(item) for item in raw_questions
            ]
        except ValidationError as e:
            raise DetectionError(
                f"Malformed question entry: {e.error_count()} errors"
            ) from e

        if not questions:
            raise DetectionError("Vision model found no questions")

        return [
            q.model_copy(update={"question_number": index})
            for index, q in enumerate(questions, start=1)
        ]

    def fallback_detect(
        self,
        page: PageImage,
        questions_per_page: int = DEFAULT_QUESTIONS_PER_PAGE,
    ) -> list[DetectedQuestion]:
        """
        Split the page into equal horizontal strips, inset by the margin.

        Pure geometry, never fails. On pages too small for the margin the
        inset shrinks so each box keeps a positive size, and on pages with
        fewer rows than strips the one-row strips stop at the last row.
        """
        count = max(1, questions_per_page)
        strip_height = max(1, page.height // count)
        margin = min(
            self.margin,
            (strip_height - 1) // 2,
            (page.width - 1) // 2,
        )
        margin = max(0, margin)

        return [
            DetectedQuestion(
                question_number=i + 1,
                bounding_box=BoundingBox(
                    x=margin,
                    y=min(i * strip_height, page.height - strip_height) + margin,
                    width=page.width - 2 * margin,
                    height=strip_height - 2 * margin,
                ),
            )
            for i in range(count)
        ]
