from __future__ import annotations

from base64 import b64encode


def to_base64(data: bytes) -> str:
    return b64encode(data).decode("ascii")


def to_data_uri(data: bytes, content_type: str) -> str:
    """Inline form used when an image travels inside a JSON document."""
    return f"data:{content_type};base64,{to_base64(data)}"
