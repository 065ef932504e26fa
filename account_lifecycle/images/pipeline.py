"""Validation, decoding, thumbnail derivation and storage of profile images."""

from __future__ import annotations

import io
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Protocol

from PIL import Image as PILImage
from PIL import UnidentifiedImageError

from ..config import ImageSettings
from ..domain.errors import ImageDecodeFailure, ImageTooLarge, UnsupportedImageFormat
from ..domain.image import Image

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = frozenset({"JPEG", "PNG", "GIF", "WEBP", "BMP"})
THUMBNAIL_FORMATS = frozenset({"JPEG", "PNG"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImageStore(Protocol):
    def save_image(self, image: Image) -> Image: ...


class ImageIngestionPipeline:
    """Turns an uploaded blob into a stored :class:`Image` with original and thumbnail bytes.

    Decoding and resizing finish before the store is called, and the store
    write is a single insert, so no account row is locked while Pillow works.
    """

    def __init__(
        self,
        settings: ImageSettings,
        store: ImageStore,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if settings.thumbnail_format not in THUMBNAIL_FORMATS:
            raise ValueError(f"unsupported thumbnail format: {settings.thumbnail_format}")
        self._settings = settings
        self._store = store
        self._clock = clock

    def ingest(self, account_id: str, raw_bytes: bytes, declared_content_type: str | None) -> Image:
        """Validate ``raw_bytes``, derive a thumbnail and persist both blobs.

        The size ceiling is enforced before anything is decoded. The format
        comes from sniffing the bytes; ``declared_content_type`` is only
        compared for logging.
        """
        if len(raw_bytes) > self._settings.max_bytes:
            raise ImageTooLarge(
                f"image is {len(raw_bytes)} bytes; limit is {self._settings.max_bytes}"
            )
        if not raw_bytes:
            raise ImageDecodeFailure("image payload is empty")

        try:
            with PILImage.open(io.BytesIO(raw_bytes)) as source:
                detected = source.format
                if detected not in SUPPORTED_FORMATS:
                    raise UnsupportedImageFormat(f"image format {detected} is not accepted")
                source.load()
                width, height = source.size
                thumbnail_bytes = self._thumbnail(source)
        except PILImage.DecompressionBombError as exc:
            raise ImageTooLarge("image dimensions exceed the decoder limit") from exc
        except UnidentifiedImageError as exc:
            raise ImageDecodeFailure("payload is not a recognisable image") from exc
        except (OSError, SyntaxError, ValueError) as exc:
            raise ImageDecodeFailure(f"image could not be decoded: {exc}") from exc

        content_type = PILImage.MIME.get(detected, "application/octet-stream")
        if declared_content_type and declared_content_type.split(";")[0].strip().lower() != content_type:
            logger.info(
                "declared content type %s differs from detected %s for account %s",
                declared_content_type,
                content_type,
                account_id,
            )

        image = Image(
            image_id=str(uuid.uuid4()),
            account_id=account_id,
            original_bytes=raw_bytes,
            original_content_type=content_type,
            thumbnail_bytes=thumbnail_bytes,
            thumbnail_content_type=PILImage.MIME[self._settings.thumbnail_format],
            width=width,
            height=height,
            created_at=self._clock(),
        )
        return self._store.save_image(image)

    def _thumbnail(self, source: PILImage.Image) -> bytes:
        box = self._settings.thumbnail_size
        thumb = _to_eight_bit(source)
        # fits inside the box keeping aspect ratio; never enlarges
        thumb.thumbnail((box, box), PILImage.Resampling.LANCZOS)

        fmt = self._settings.thumbnail_format
        if fmt == "JPEG":
            thumb = _flatten(thumb)
        elif thumb.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            thumb = thumb.convert("RGBA")

        buffer = io.BytesIO()
        if fmt == "JPEG":
            thumb.save(buffer, format=fmt, quality=85, optimize=True)
        else:
            thumb.save(buffer, format=fmt, optimize=True)
        return buffer.getvalue()


def _to_eight_bit(image: PILImage.Image) -> PILImage.Image:
    """Scale 16-bit and 32-bit greyscale down to ``L``; resampling refuses those modes."""
    if image.mode == "F" or image.mode.startswith("I"):
        wide = image if image.mode in ("I", "F") else image.convert("I")
        return wide.point(lambda value: value * (1 / 256)).convert("L")
    return image.copy()


def _flatten(image: PILImage.Image) -> PILImage.Image:
    """Composite transparency onto white; JPEG has no alpha channel."""
    has_alpha = image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info)
    if has_alpha:
        rgba = image.convert("RGBA")
        background = PILImage.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image
