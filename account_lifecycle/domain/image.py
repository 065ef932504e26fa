from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class Image:
    """Profile picture owned by exactly one account, kept as two independent blobs."""

    image_id: str
    account_id: str
    original_bytes: bytes
    original_content_type: str
    thumbnail_bytes: bytes
    thumbnail_content_type: str
    width: int
    height: int
    created_at: datetime

    def variant(self, name: str) -> tuple[bytes, str]:
        """Return ``(bytes, content_type)`` for ``original`` or ``thumbnail``."""
        if name == "original":
            return self.original_bytes, self.original_content_type
        if name == "thumbnail":
            return self.thumbnail_bytes, self.thumbnail_content_type
        raise ValueError(f"unknown image variant: {name}")
