"""
Question Image Cropper
======================
Cuts question regions out of page images and stores each as its own PNG
in a per-document directory.

File naming (relative to the questions directory):
    {group_id}/q{number}_{token}.png     cropped by the pipeline
    {group_id}/replaced_{token}.png      uploaded as a replacement

The random token keeps names unique across retried pages and repeated runs.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Iterable, Optional

from PIL import Image

from .exceptions import InvalidRegionError
from .models import CroppedQuestion, DetectedQuestion
from .storage import remove_file, remove_tree, unique_token, validate_group_id

logger = logging.getLogger(__name__)

# Modes PNG can store as-is
_PNG_MODES = {"1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16"}


class ImageCropper:
    """Stores cropped and replacement question images for document groups."""

    def __init__(self, questions_dir: str | Path, url_prefix: str = "/questions"):
        self.questions_dir = Path(questions_dir).absolute()
        self.url_prefix = "/" + url_prefix.strip("/")

    def group_dir(self, group_id: str) -> Path:
        return self.questions_dir / validate_group_id(group_id)

    def url_for(self, group_id: str, filename: str) -> str:
        return f"{self.url_prefix}/{group_id}/{filename}"

    def path_for_url(self, image_url: str) -> Optional[Path]:
        """
        Map a stored image URL back to its file.
        Returns None for URLs that point outside the questions directory.
        """
        relative = image_url
        if relative.startswith(self.url_prefix + "/"):
            relative = relative[len(self.url_prefix) + 1:]
        relative = relative.lstrip("/")

        candidate = (self.questions_dir / relative).resolve()
        root = self.questions_dir.resolve()
        if candidate == root or not candidate.is_relative_to(root):
            return None
        return candidate

    # ─── Cropping ─────────────────────────────────────────────────────────

    def crop(
        self,
        page_image_path: str | Path,
        detections: Iterable[DetectedQuestion],
        group_id: str,
        page_number: int = 1,
        start_number: int = 1,
    ) -> list[CroppedQuestion]:
        """
        Crop every detected question out of a page image.

        A box that cannot be cropped is logged and skipped, so the result
        may be shorter than the input. Order is preserved. Surviving crops
        are numbered start_number, start_number + 1, ... and the number is
        part of each file name.

        Raises:
            OSError: If the page image itself cannot be opened.
        """
        group_dir = self.group_dir(group_id)
        cropped: list[CroppedQuestion] = []
        number = start_number

        with Image.open(page_image_path) as page:
            page.load()
            page_width, page_height = page.size

            for index, detection in enumerate(detections, start=1):
                try:
                    rect = detection.bounding_box.to_pixel_rect(
                        page_width, page_height
                    )
                    filename = f"q{number}_{unique_token()}.png"
                    group_dir.mkdir(parents=True, exist_ok=True)
                    _save_png(page.crop(rect), group_dir / filename)
                except (InvalidRegionError, OSError, OverflowError, ValueError) as e:
                    logger.error(
                        f"Failed to crop box {index} "
                        f"on page {page_number}: {e}"
                    )
                    continue

                cropped.append(CroppedQuestion(
                    question_number=number,
                    question_image_url=self.url_for(group_id, filename),
                    page_number=page_number,
                ))
                number += 1

        return cropped

    # ─── Replacement & Deletion ───────────────────────────────────────────

    def replace_image(
        self,
        group_id: str,
        old_image_url: Optional[str],
        new_image: bytes,
    ) -> str:
        """
        Store a replacement image and drop the old one.

        The old file is removed on a best-effort basis: if it is already
        gone the replacement still succeeds. With no old URL nothing is
        deleted.

        Returns:
            URL of the new image.

        Raises:
            OSError: If new_image is not a readable image.
        """
        group_dir = self.group_dir(group_id)
        group_dir.mkdir(parents=True, exist_ok=True)
        filename = f"replaced_{unique_token()}.png"

        with Image.open(io.BytesIO(new_image)) as img:
            _save_png(img, group_dir / filename)

        if old_image_url:
            self.delete_image(old_image_url)

        new_url = self.url_for(group_id, filename)
        logger.info(f"Replaced {old_image_url or '(none)'} with {new_url}")
        return new_url

    def delete_image(self, image_url: str) -> bool:
        """Best-effort delete of one stored image. True if a file was removed."""
        path = self.path_for_url(image_url)
        if path is None:
            logger.warning(f"Refusing to delete outside questions dir: {image_url}")
            return False
        removed = remove_file(path)
        if not removed:
            logger.info(f"Old image already deleted or not found: {image_url}")
        return removed

    def delete_group_images(self, group_id: str) -> bool:
        """
        Remove every image of a document group.
        Safe to call repeatedly; returns False when there was nothing left.
        """
        removed = remove_tree(self.group_dir(group_id))
        if removed:
            logger.info(f"Deleted images for group: {group_id}")
        return removed


def _save_png(img: Image.Image, path: Path):
    if img.mode not in _PNG_MODES:
        img = img.convert("RGB")
    img.save(path, format="PNG", optimize=True)
