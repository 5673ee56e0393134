"""
Exception Hierarchy
===================
Errors raised by the extraction pipeline.

Run-level failures derive from ExtractionError and are the only errors a
caller of ExtractionEngine.extract() ever sees. DetectionError and
InvalidRegionError are recovered inside the pipeline (fallback detection and
skipped crops respectively).
"""


class ExtractorError(Exception):
    """Base exception for all extractor errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(ExtractorError):
    """Raised when an ExtractorConfig value is out of range."""
    pass


# ─── Run-level (fatal) ────────────────────────────────────────────────────────


class ExtractionError(ExtractorError):
    """A whole extraction run failed. No partial result is usable."""
    pass


class RasterizationError(ExtractionError):
    """The first page of the PDF could not be rendered."""
    pass


class ExtractionCancelled(ExtractionError):
    """The run was cancelled before it completed."""
    pass


# ─── Page-level (recoverable via fallback) ────────────────────────────────────


class DetectionError(ExtractorError):
    """Primary boundary detection produced no usable boxes."""
    pass


class VisionError(DetectionError):
    """The vision inference call itself failed (network, timeout, auth)."""
    pass


# ─── Box-level (recoverable, box skipped) ─────────────────────────────────────


class InvalidRegionError(ExtractorError):
    """A bounding box has no area left after clamping to the page."""
    pass
