"""
Vision Inference Client
=======================
Thin wrapper around a multimodal model that takes (image bytes, instruction)
and returns free-form text.

The boundary detector only depends on VisionClient.generate(); the Gemini
implementation is the production backend. Every failure surfaces as
VisionError so that the detector can fall back.
"""

from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import VisionError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"

# 5xx responses and dropped connections are worth another attempt.
# 4xx (bad key, bad request) and timeouts go straight to the fallback.
RETRYABLE_EXCEPTIONS = (
    genai_errors.ServerError,
    ConnectionError,
)


class VisionClient(ABC):
    """Interface for a multimodal inference backend."""

    @abstractmethod
    def generate(
        self,
        image_bytes: bytes,
        instruction: str,
        mime_type: str = "image/png",
    ) -> str:
        """Return the model's text for one image and instruction."""


class GeminiVisionClient(VisionClient):
    """
    Google Gemini backend.

    A missing API key does not fail construction: each call then raises
    VisionError, which sends every page down the fallback path.
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = DEFAULT_MODEL,
        timeout: float = 60.0,
        max_attempts: int = 3,
    ):
        self.model = model or DEFAULT_MODEL
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.client: Optional[genai.Client] = None

        if api_key:
            self.client = genai.Client(
                api_key=api_key,
                http_options=genai_types.HttpOptions(
                    timeout=int(timeout * 1000)
                ),
            )
        else:
            logger.warning(
                "No Gemini API key configured; "
                "boundary detection will use the fallback"
            )

    def generate(
        self,
        image_bytes: bytes,
        instruction: str,
        mime_type: str = "image/png",
    ) -> str:
        """
        Send one image with an instruction and return the model's text.

        Raises:
            VisionError: On any failure, after retrying transient errors.
        """
        if self.client is None:
            raise VisionError("Gemini API key is not configured")

        start_time = time.time()
        contents = [
            instruction,
            genai_types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
        ]

        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=1, min=2, max=10),
                retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
                reraise=True,
            ):
                with attempt:
                    response = self.client.models.generate_content(
                        model=self.model,
                        contents=contents,
                    )
        except Exception as e:
            raise VisionError(
                f"Gemini call failed: {e}",
                details={"model": self.model},
            ) from e

        elapsed = (time.time() - start_time) * 1000
        logger.debug(f"Gemini {self.model} responded in {elapsed:.0f}ms")
        return response.text or ""


# ─── Response Parsing ─────────────────────────────────────────────────────────

_FENCED_BLOCK = re.compile(r"```[a-zA-Z]*\s*\n?(.*?)```", re.DOTALL)
_FENCE_MARKER = re.compile(r"```[a-zA-Z]*")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences wrapped around a model response."""
    match = _FENCED_BLOCK.search(text)
    if match:
        return match.group(1).strip()
    # Unterminated fence
    return _FENCE_MARKER.sub("", text).strip()


def extract_json_from_response(raw_response: str) -> Optional[dict[str, Any]]:
    """
    Extract a JSON object from a model response.

    Handles:
    - ```json / ``` code fences
    - Prose around the JSON object
    - A bare top-level array (wrapped as {"questions": [...]})
    - Trailing commas

    Returns:
        Parsed dict, or None if nothing parseable was found.
    """
    if not raw_response:
        return None

    text = strip_code_fences(raw_response)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None

    if isinstance(parsed, dict):
        return parsed
    if isinstance(parsed, list):
        return {"questions": parsed}

    brace_start = text.find("{")
    brace_end = text.rfind("}")
    if brace_start < 0 or brace_end <= brace_start:
        return None

    candidate = text[brace_start:brace_end + 1]
    for attempt in (candidate, _TRAILING_COMMA.sub(r"\1", candidate)):
        try:
            parsed = json.loads(attempt)
        except json.JSONDecodeError as e:
            logger.debug(f"JSON parse error: {e}")
            continue
        if isinstance(parsed, dict):
            return parsed
    return None
