"""
Photo compression before transfer.

Large phone photos are resized to a bounded dimension and re-encoded as
JPEG before upload. Already-small images are passed through untouched.
Pillow work is CPU-bound, so it runs in the default executor.
"""

import asyncio
import io
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from config import Settings
from errors import CompressionError

logger = logging.getLogger(__name__)

PREVIEW_SIDE = 256
PREVIEW_QUALITY = 60


@dataclass
class RawPhoto:
    """A photo as selected by the operator. Owned by a single pipeline run."""

    filename: str
    source_bytes: bytes
    content_type: str = "image/jpeg"
    preview: bytes | None = None  # small JPEG for the selection grid

    @classmethod
    def from_path(cls, path: Path) -> "RawPhoto":
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(filename=path.name, source_bytes=path.read_bytes(), content_type=content_type)

    @property
    def size(self) -> int:
        return len(self.source_bytes)

    def release(self) -> None:
        self.preview = None


@dataclass
class UploadPayload:
    """Transfer-ready bytes for one photo."""

    filename: str
    content: bytes
    content_type: str
    compressed: bool = False


def is_image(content_type: str) -> bool:
    return content_type.startswith("image/")


def _image_size(data: bytes) -> tuple[int, int] | None:
    """Read dimensions from the header only. None if Pillow can't identify the data.

    Raises CompressionError for images whose declared size exceeds Pillow's pixel limit.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except Image.DecompressionBombError as e:
        raise CompressionError(f"Image too large to process: {e}") from e
    except (UnidentifiedImageError, OSError):
        return None


def should_compress(data: bytes, content_type: str, settings: Settings) -> bool:
    """True for images that are heavy on the wire or larger than the max dimension."""
    if not is_image(content_type):
        return False
    if len(data) >= settings.compress_threshold:
        return True
    size = _image_size(data)
    return size is not None and max(size) > settings.max_dimension


def compress_bytes(data: bytes, max_dimension: int, quality: float) -> bytes:
    """Resize to fit max_dimension (aspect kept) and re-encode as JPEG.

    EXIF orientation is applied before resizing; the rest of the EXIF block is dropped.
    """
    try:
        with Image.open(io.BytesIO(data)) as original:
            img = ImageOps.exif_transpose(original) or original
            if img.mode != "RGB":
                img = img.convert("RGB")  # JPEG has no alpha channel
            img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
            buf = io.BytesIO()
            img.save(buf, "JPEG", quality=round(quality * 100), optimize=True)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise CompressionError(f"Could not compress image: {e}") from e
    return buf.getvalue()


def make_preview(data: bytes, side: int = PREVIEW_SIDE) -> bytes | None:
    """Small JPEG preview for a selected photo. None if the image can't be decoded."""
    try:
        return compress_bytes(data, side, PREVIEW_QUALITY / 100)
    except CompressionError as e:
        logger.warning(f"  Preview failed: {e}")
        return None


def _jpeg_name(filename: str) -> str:
    return f"{Path(filename).stem or 'photo'}.jpg"


async def compress_photo(photo: RawPhoto, settings: Settings) -> UploadPayload:
    """Return the transfer-ready payload for one photo. Raises CompressionError."""
    if not should_compress(photo.source_bytes, photo.content_type, settings):
        return UploadPayload(filename=photo.filename, content=photo.source_bytes, content_type=photo.content_type)

    loop = asyncio.get_running_loop()
    content = await loop.run_in_executor(
        None, compress_bytes, photo.source_bytes, settings.max_dimension, settings.jpeg_quality
    )
    logger.info(f"  Compressed {photo.filename}: {photo.size / 1024:.0f}KB -> {len(content) / 1024:.0f}KB")
    return UploadPayload(
        filename=_jpeg_name(photo.filename),
        content=content,
        content_type="image/jpeg",
        compressed=True,
    )


async def compress_all(photos: list[RawPhoto], settings: Settings) -> list[UploadPayload]:
    """Compress photos in order. The first failure aborts the whole batch."""
    logger.info(f"Compressing {len(photos)} photos...")
    payloads: list[UploadPayload] = []
    for photo in photos:
        payloads.append(await compress_photo(photo, settings))
    return payloads
