"""
Extraction Engine
=================
Main orchestrator that drives rasterization, boundary detection and
cropping over a whole PDF and returns globally numbered questions.

Usage:
    engine = ExtractionEngine(ExtractorConfig.from_env())
    result = engine.extract("path/to/exam.pdf", "Physics Mock 3")
    # result.questions are numbered 1..N in reading order

Architecture:
    PDF → PageRasterizer → PageImage → BoundaryDetector → DetectionResult →
    ImageCropper → CroppedQuestion[] → ValidationEngine → ExtractionResult

Run states:
    created → rasterizing → (detecting → falling_back? → cropping) × pages
            → aggregating → cleaning_up → done | failed
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from . import __version__
from .cropper import ImageCropper
from .detector import DEFAULT_MARGIN, DEFAULT_QUESTIONS_PER_PAGE, BoundaryDetector
from .exceptions import ConfigurationError, ExtractionCancelled, ExtractionError
from .models import CroppedQuestion, ExtractionResult, PageImage, PageReport
from .rasterizer import DEFAULT_DPI, DEFAULT_PAGE_SIZE, PageRasterizer
from .storage import StorageLayout, new_group_id, remove_file
from .validator import ValidationEngine
from .vision import DEFAULT_MODEL, GeminiVisionClient, VisionClient

logger = logging.getLogger(__name__)


@dataclass
class ExtractorConfig:
    """Configuration for the extraction engine."""

    # Rasterization
    dpi: int = DEFAULT_DPI
    page_size: Optional[tuple[int, int]] = DEFAULT_PAGE_SIZE

    # Detection
    questions_per_page: int = DEFAULT_QUESTIONS_PER_PAGE
    fallback_margin: int = DEFAULT_MARGIN
    gemini_api_key: str = ""
    gemini_model: str = DEFAULT_MODEL
    vision_timeout: float = 60.0
    vision_max_attempts: int = 3

    # Storage
    storage_root: str = "storage"
    url_prefix: str = "/questions"
    remove_source_on_success: bool = True
    db_path: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides) -> ExtractorConfig:
        """
        Build a config from environment variables.
        Keyword overrides win; None values are ignored.
        """
        env = os.environ
        values = {
            "gemini_api_key": env.get("GEMINI_API_KEY", ""),
            "gemini_model": env.get("QEXTRACT_GEMINI_MODEL", DEFAULT_MODEL),
            "storage_root": env.get("QEXTRACT_STORAGE_ROOT", "storage"),
            "dpi": _env_number("QEXTRACT_DPI", DEFAULT_DPI, int),
            "questions_per_page": _env_number(
                "QEXTRACT_QUESTIONS_PER_PAGE", DEFAULT_QUESTIONS_PER_PAGE, int
            ),
            "vision_timeout": _env_number("QEXTRACT_VISION_TIMEOUT", 60.0, float),
            "log_level": env.get("QEXTRACT_LOG_LEVEL", "INFO"),
            "db_path": env.get("QEXTRACT_DB_PATH") or None,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def validate(self):
        """Raise ConfigurationError on out-of-range values."""
        problems = {}
        if self.dpi <= 0:
            problems["dpi"] = self.dpi
        if self.page_size is not None and min(self.page_size) <= 0:
            problems["page_size"] = self.page_size
        if self.questions_per_page <= 0:
            problems["questions_per_page"] = self.questions_per_page
        if self.fallback_margin < 0:
            problems["fallback_margin"] = self.fallback_margin
        if self.vision_timeout <= 0:
            problems["vision_timeout"] = self.vision_timeout
        if problems:
            raise ConfigurationError("Invalid extractor configuration", problems)


def _env_number(name: str, default, cast):
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


# ─── Run Context ──────────────────────────────────────────────────────────────


class RunState(Enum):
    """Lifecycle of a single extraction run."""
    CREATED = "created"
    RASTERIZING = "rasterizing"
    DETECTING = "detecting"
    FALLING_BACK = "falling_back"
    CROPPING = "cropping"
    AGGREGATING = "aggregating"
    CLEANING_UP = "cleaning_up"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RunContext:
    """Everything scoped to one run of one PDF."""

    group_id: str
    pdf_path: str
    label: str
    scratch_dir: Path
    state: RunState = RunState.CREATED
    history: list[RunState] = field(
        default_factory=lambda: [RunState.CREATED]
    )
    current_page: int = 0

    def transition(self, state: RunState):
        self.state = state
        self.history.append(state)
        logger.debug(
            f"[{self.group_id}] → {state.value}"
            + (f" (page {self.current_page})" if self.current_page else "")
        )


ProgressCallback = Callable[[int, int], None]


# ─── Engine ───────────────────────────────────────────────────────────────────


class ExtractionEngine:
    """
    Main question extraction engine.

    Orchestrates the full pipeline:
        1. Rasterize pages one at a time
        2. Detect question boundaries (vision model, else equal strips)
        3. Crop and store each question image
        4. Renumber globally and validate
        5. Clean up transient page images

    Each extract() call gets a fresh group id and scratch directory, so one
    engine may serve several runs.
    """

    def __init__(
        self,
        config: Optional[ExtractorConfig] = None,
        vision_client: Optional[VisionClient] = None,
        detector: Optional[BoundaryDetector] = None,
        cropper: Optional[ImageCropper] = None,
        rasterizer_factory: Optional[Callable[[Path], PageRasterizer]] = None,
    ):
        self.config = config or ExtractorConfig()
        self.config.validate()
        self._setup_logging()

        self.layout = StorageLayout.at(self.config.storage_root)

        if detector is None:
            vision_client = vision_client or GeminiVisionClient(
                api_key=self.config.gemini_api_key,
                model=self.config.gemini_model,
                timeout=self.config.vision_timeout,
                max_attempts=self.config.vision_max_attempts,
            )
            detector = BoundaryDetector(
                vision_client,
                questions_per_page=self.config.questions_per_page,
                margin=self.config.fallback_margin,
            )
        self.detector = detector
        self.cropper = cropper or ImageCropper(
            self.layout.questions_dir, url_prefix=self.config.url_prefix
        )
        self.rasterizer_factory = rasterizer_factory or self._default_rasterizer
        self.validator = ValidationEngine()
        self.last_run: Optional[RunContext] = None

    def _default_rasterizer(self, scratch_dir: Path) -> PageRasterizer:
        return PageRasterizer(
            scratch_dir,
            dpi=self.config.dpi,
            page_size=self.config.page_size,
        )

    def _setup_logging(self):
        """Configure logging based on config."""
        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        formatter = logging.Formatter(
            "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        package_logger = logging.getLogger("qextract")
        package_logger.setLevel(log_level)

        if not package_logger.handlers:
            console = logging.StreamHandler()
            console.setLevel(log_level)
            console.setFormatter(formatter)
            package_logger.addHandler(console)

        log_file = (
            os.path.abspath(self.config.log_file) if self.config.log_file else None
        )
        already_attached = any(
            getattr(h, "baseFilename", None) == log_file
            for h in package_logger.handlers
        )
        if log_file and not already_attached:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(
                log_file, encoding="utf-8"
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            package_logger.addHandler(file_handler)

    def extract(
        self,
        pdf_path: str,
        label: str = "",
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> ExtractionResult:
        """
        Extract every question of a PDF as a cropped image.

        Args:
            pdf_path: Path to the PDF file.
            label: Human-readable document name (defaults to the file stem).
            cancel_event: Set it to abort the run before the next step.
            progress_callback: Callback(page_number, questions_so_far)
                called after each page.

        Returns:
            ExtractionResult with questions numbered 1..N.

        Raises:
            FileNotFoundError: If the PDF doesn't exist.
            ExtractionError: If the run fails for any reason. Nothing from
                a failed run is kept except the source PDF.
        """
        pdf_path = os.path.abspath(pdf_path)
        if not os.path.exists(pdf_path):
            raise FileNotFoundError(f"PDF not found: {pdf_path}")

        label = label or Path(pdf_path).stem
        group_id = new_group_id()
        ctx = RunContext(
            group_id=group_id,
            pdf_path=pdf_path,
            label=label,
            scratch_dir=self.layout.scratch_dir(group_id),
        )
        self.last_run = ctx
        rasterizer = self.rasterizer_factory(ctx.scratch_dir)

        start_time = time.time()
        logger.info(f"Starting extraction of {pdf_path} as group {group_id}")

        succeeded = False
        try:
            questions, pages = self._process_pages(
                ctx, rasterizer, cancel_event, progress_callback
            )
            ctx.transition(RunState.AGGREGATING)
            self.validator.validate(questions)
            succeeded = True
        except ExtractionError as e:
            logger.error(f"Extraction of {label!r} failed: {e}")
            raise
        except Exception as e:
            logger.error(
                f"Extraction of {label!r} failed on page {ctx.current_page}: {e}",
                exc_info=True,
            )
            raise ExtractionError(
                f"Extraction of {label!r} failed: {e}",
                details={"group_id": group_id, "page": ctx.current_page},
            ) from e
        finally:
            ctx.transition(RunState.CLEANING_UP)
            rasterizer.cleanup()
            if not succeeded:
                self.cropper.delete_group_images(group_id)
                ctx.transition(RunState.FAILED)

        if self.config.remove_source_on_success:
            remove_file(pdf_path)
        ctx.transition(RunState.DONE)

        elapsed = time.time() - start_time
        logger.info(
            f"Extraction complete in {elapsed:.2f}s: "
            f"{len(questions)} questions from {len(pages)} pages"
        )

        return ExtractionResult(
            group_id=group_id,
            label=label,
            source_pdf=os.path.basename(pdf_path),
            questions=questions,
            pages=pages,
            extractor_version=__version__,
            elapsed_seconds=round(elapsed, 3),
        )

    def _process_pages(
        self,
        ctx: RunContext,
        rasterizer: PageRasterizer,
        cancel_event: Optional[threading.Event],
        progress_callback: Optional[ProgressCallback],
    ) -> tuple[list[CroppedQuestion], list[PageReport]]:
        """Run every page through detect → crop, strictly in page order."""
        questions: list[CroppedQuestion] = []
        pages: list[PageReport] = []
        next_number = 1

        ctx.transition(RunState.RASTERIZING)
        page_iter = rasterizer.convert(ctx.pdf_path)
        try:
            for page in page_iter:
                ctx.current_page = page.page_number
                _check_cancelled(cancel_event, ctx)

                cropped, report = self._process_page(
                    ctx, page, next_number, cancel_event
                )
                next_number += len(cropped)
                questions.extend(cropped)
                pages.append(report)

                if progress_callback:
                    progress_callback(page.page_number, len(questions))
                ctx.transition(RunState.RASTERIZING)
        finally:
            page_iter.close()

        return questions, pages

    def _process_page(
        self,
        ctx: RunContext,
        page: PageImage,
        next_number: int,
        cancel_event: Optional[threading.Event],
    ) -> tuple[list[CroppedQuestion], PageReport]:
        logger.info(f"Processing page {page.page_number}...")

        ctx.transition(RunState.DETECTING)
        detection = self.detector.detect_page(page)
        if detection.is_fallback:
            ctx.transition(RunState.FALLING_BACK)

        _check_cancelled(cancel_event, ctx)

        # Page-local numbers are discarded; skipped boxes leave no gaps
        ctx.transition(RunState.CROPPING)
        cropped = self.cropper.crop(
            page.path,
            detection.questions,
            ctx.group_id,
            page_number=page.page_number,
            start_number=next_number,
        )

        report = PageReport(
            page_number=page.page_number,
            source=detection.source,
            boxes_detected=len(detection.questions),
            boxes_cropped=len(cropped),
            detection_error=detection.error,
        )
        logger.info(
            f"Page {page.page_number}: cropped {report.boxes_cropped}/"
            f"{report.boxes_detected} questions ({detection.source.value})"
        )
        return cropped, report


def _check_cancelled(cancel_event: Optional[threading.Event], ctx: RunContext):
    if cancel_event is not None and cancel_event.is_set():
        raise ExtractionCancelled(
            "Extraction cancelled",
            details={"group_id": ctx.group_id, "page": ctx.current_page},
        )
