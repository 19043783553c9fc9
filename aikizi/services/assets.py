# aikizi/services/assets.py
"""
Imagen de entrada del decode: validación + almacenamiento local.

El job guarda solo la referencia (ruta local o URL); los bytes viven en
UPLOAD_FOLDER para que el worker los lea aunque corra en otro proceso.
"""

from __future__ import annotations

import base64
import binascii
import os
import re
from dataclasses import dataclass
from typing import Optional

from aikizi.errors import InvalidInput, NotFound
from aikizi.models import gen_id

MB = 1024 * 1024
ALLOWED_MIME = ("image/jpeg", "image/png", "image/webp")
EXT_BY_MIME = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?;base64,", re.IGNORECASE)


@dataclass(frozen=True)
class ImagePayload:
    data: Optional[bytes] = None
    mime_type: Optional[str] = None
    url: Optional[str] = None


def _text(body: dict, *names: str) -> str:
    for name in names:
        value = body.get(name)
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            raise InvalidInput(f"{name} must be a string")
        return value.strip()
    return ""


def parse_image_payload(body: dict, max_upload_mb: int = 25) -> ImagePayload:
    """
    Acepta {image: <base64|data-url|http(s) url>, mimeType?} o
    {imageUrl} / {base64, mimeType}. Lanza InvalidInput si no cuadra.
    """
    url = _text(body, "imageUrl")
    raw = _text(body, "image", "base64")
    mime = _text(body, "mimeType", "mime_type").lower()

    if not url and raw.lower().startswith(("http://", "https://")):
        url, raw = raw, ""
    if url:
        if not url.lower().startswith(("http://", "https://")):
            raise InvalidInput("imageUrl must be an http(s) URL")
        return ImagePayload(url=url)

    if not raw:
        raise InvalidInput("image is required")

    m = _DATA_URL_RE.match(raw)
    if m:
        mime = mime or (m.group("mime") or "").lower()
        raw = raw[m.end():]

    if mime == "image/jpg":
        mime = "image/jpeg"
    if mime not in ALLOWED_MIME:
        raise InvalidInput(f"Unsupported image type. Allowed: {', '.join(ALLOWED_MIME)}")

    try:
        data = base64.b64decode(re.sub(r"\s+", "", raw), validate=True)
    except (binascii.Error, ValueError):
        raise InvalidInput("image is not valid base64")
    if not data:
        raise InvalidInput("image is empty")
    if len(data) > max_upload_mb * MB:
        raise InvalidInput(f"Image exceeds {max_upload_mb}MB limit")

    return ImagePayload(data=data, mime_type=mime)


class AssetStore:
    def __init__(self, folder: str) -> None:
        self.folder = folder

    def save(self, data: bytes, mime_type: str) -> str:
        os.makedirs(self.folder, exist_ok=True)
        name = f"{gen_id()}.{EXT_BY_MIME.get(mime_type, 'bin')}"
        path = os.path.join(self.folder, name)
        with open(path, "wb") as f:
            f.write(data)
        return path

    def load(self, path: str) -> bytes:
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise NotFound("Image file not found.")
