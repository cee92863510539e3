from __future__ import annotations

import base64
import binascii
import mimetypes
from pathlib import Path

DATA_URL_PREFIX = "data:"


def encode_data_url(data: bytes, mime_type: str = "image/png") -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"{DATA_URL_PREFIX}{mime_type};base64,{encoded}"


def decode_data_url(payload: str) -> tuple[str, bytes]:
    """Split a base64 data URL into (mime type, raw bytes)."""
    if not payload.startswith(DATA_URL_PREFIX) or "," not in payload:
        raise ValueError("payload is not a data URL")
    header, encoded = payload[len(DATA_URL_PREFIX) :].split(",", 1)
    mime_type, _, encoding = header.partition(";")
    if encoding != "base64":
        raise ValueError("only base64 data URLs are supported")
    try:
        raw = base64.b64decode(encoded, validate=True)
    except binascii.Error as exc:
        raise ValueError("data URL has invalid base64 content") from exc
    return mime_type or "application/octet-stream", raw


def read_image_file(path: Path | str) -> str:
    """Read an image file into a data URL; the content itself is not validated."""
    file_path = Path(path)
    mime_type, _ = mimetypes.guess_type(file_path.name)
    return encode_data_url(file_path.read_bytes(), mime_type or "application/octet-stream")
