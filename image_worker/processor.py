import logging
import os
import re
import tempfile
import uuid
from pathlib import Path
from typing import Optional

from PIL import Image

from common.config import MAX_IMAGE_WIDTH, PROCESSED_IMAGES_PREFIX
from common.errors import SourceUnavailable
from common.messages import ImageProcessingResult, ImageProcessingTask
from common.storage import ImageStorage

logger = logging.getLogger(__name__)

_SAFE_EXTENSION = re.compile(r"^\.[a-z0-9]{1,10}$")


def destination_name(original_file_name: str, detected_format: Optional[str] = None) -> str:
    """Fresh unique file name keeping only a sane extension of the original."""
    ext = Path(original_file_name).suffix.lower()
    if not _SAFE_EXTENSION.match(ext):
        ext = f".{detected_format.lower()}" if detected_format else ""
    return f"{uuid.uuid4().hex}{ext}"


def _output_format(name: str, fallback: Optional[str]) -> Optional[str]:
    return Image.registered_extensions().get(Path(name).suffix, fallback)


def _probe(source: Path):
    with Image.open(source) as img:
        width, detected_format = img.width, img.format
        img.verify()
    return width, detected_format


def _resize_to_width(source: Path, name: str, max_width: int, storage: ImageStorage) -> None:
    tmp = tempfile.NamedTemporaryFile(delete=False, suffix=Path(name).suffix)
    tmp.close()
    output_path = Path(tmp.name)
    try:
        with Image.open(source) as img:
            fmt = _output_format(name, img.format)
            height = max(1, round(img.height * max_width / img.width))
            resized = img.resize((max_width, height), Image.Resampling.LANCZOS)
            if fmt == "JPEG" and resized.mode not in ("RGB", "L", "CMYK"):
                resized = resized.convert("RGB")
            resized.save(output_path, format=fmt)
        storage.save(output_path, name)
    finally:
        output_path.unlink(missing_ok=True)


def store_processed_image(
    source: Path,
    original_file_name: str,
    storage: ImageStorage,
    max_width: int = MAX_IMAGE_WIDTH,
) -> str:
    """Resize (or copy) ``source`` into ``storage`` and return the new file name."""
    width, detected_format = _probe(source)
    name = destination_name(original_file_name, detected_format)
    if width > max_width:
        _resize_to_width(source, name, max_width, storage)
        logger.info("Resized %s from width %d to %d as %s", source, width, max_width, name)
    else:
        # Small enough: keep the original bytes
        storage.save(source, name)
        logger.info("Copied %s (width %d) as %s", source, width, name)
    return name


def _remove_source(source: Path, post_id: str) -> None:
    try:
        source.unlink(missing_ok=True)
    except OSError as exc:
        logger.error("Post %s: could not delete source %s: %s", post_id, source, exc)
    else:
        logger.info("Post %s: deleted source %s", post_id, source)


def process_task(
    task: ImageProcessingTask,
    storage: ImageStorage,
    max_width: int = MAX_IMAGE_WIDTH,
    url_prefix: str = PROCESSED_IMAGES_PREFIX,
) -> ImageProcessingResult:
    """Process one task. Never raises: failures become failure results.

    The source file belongs to the worker once it is confirmed readable and is
    deleted whatever the outcome.
    """
    source = Path(task.original_image_path)
    if not source.is_file() or not os.access(source, os.R_OK):
        error = SourceUnavailable(f"source file {source} is not accessible")
        logger.error("Post %s: %s", task.post_id, error.message)
        return ImageProcessingResult.failed(task.post_id, f"SourceUnavailable: {error.message}")

    try:
        name = store_processed_image(source, task.original_file_name, storage, max_width)
    except Exception as exc:
        logger.error("Post %s: processing %s failed: %r", task.post_id, source, exc)
        return ImageProcessingResult.failed(task.post_id, f"{type(exc).__name__}: {exc}")
    finally:
        _remove_source(source, task.post_id)

    locator = f"{url_prefix}/{name}"
    logger.info("Post %s: processed image available at %s", task.post_id, locator)
    return ImageProcessingResult.ok(task.post_id, locator)
