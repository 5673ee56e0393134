"""
Run Validation
==============
Final consistency check on an aggregated question list before it is
handed to the caller:

    - Question numbers are exactly 1..N (no gaps, no duplicates)
    - Numbers strictly increase in list order
    - Page numbers never go backwards

A violation means the pipeline itself is broken, so it fails the run.
"""

from __future__ import annotations

import logging
from collections import Counter

from .exceptions import ExtractionError
from .models import CroppedQuestion

logger = logging.getLogger(__name__)


class ValidationEngine:
    """Checks the numbering invariant of a finished run."""

    def validate(self, questions: list[CroppedQuestion]):
        """
        Raises:
            ExtractionError: If the numbering or ordering is inconsistent.
        """
        if not questions:
            logger.warning("Run produced no questions")
            return

        numbers = [q.question_number for q in questions]
        counts = Counter(numbers)
        duplicates = sorted(n for n, c in counts.items() if c > 1)
        missing = sorted(set(range(1, len(questions) + 1)) - set(numbers))
        out_of_order = [
            numbers[i] for i in range(1, len(numbers))
            if numbers[i] <= numbers[i - 1]
        ]
        page_regressions = [
            q.question_number for prev, q in zip(questions, questions[1:])
            if q.page_number < prev.page_number
        ]

        if duplicates or missing or out_of_order or page_regressions:
            raise ExtractionError(
                "Question numbering is inconsistent",
                details={
                    "duplicates": duplicates,
                    "missing": missing,
                    "out_of_order": out_of_order,
                    "page_regressions": page_regressions,
                },
            )

        logger.debug(f"Numbering verified: 1..{len(questions)}")
