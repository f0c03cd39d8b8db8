"""Validation and upload of driver photos to object storage."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from .backend import BackendClient
from .models import AuthSession, ImageKind

logger = logging.getLogger("mobiurban.images")

MAX_IMAGE_BYTES = 5 * 1024 * 1024
CACHE_CONTROL = "3600"


class ImageValidationError(ValueError):
    """Raised when a selected file cannot be used as a photo."""


@dataclass(frozen=True)
class ImageUpload:
    """A file received from the browser."""

    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def validate_image(content_type: Optional[str], size: int) -> None:
    if not (content_type or "").startswith("image/"):
        raise ImageValidationError("Por favor, selecione apenas arquivos de imagem")
    if size > MAX_IMAGE_BYTES:
        raise ImageValidationError("A imagem deve ter no máximo 5MB")


def build_object_path(user_id: str, kind: ImageKind, filename: str, now_ms: Optional[int] = None) -> str:
    """Return ``<user_id>/<kind>_<epoch ms>.<ext>`` for a new upload."""

    if now_ms is None:
        now_ms = int(time.time() * 1000)
    extension = filename.rsplit(".", 1)[-1]
    return f"{user_id}/{kind.value}_{now_ms}.{extension}"


def upload_driver_image(
    client: BackendClient,
    session: AuthSession,
    kind: ImageKind,
    upload: ImageUpload,
    *,
    bucket: str,
) -> str:
    """Validate and store ``upload``, returning its public URL."""

    validate_image(upload.content_type, upload.size)
    path = build_object_path(session.user_id, kind, upload.filename)
    client.upload(
        bucket,
        path,
        upload.data,
        content_type=upload.content_type,
        cache_control=CACHE_CONTROL,
        upsert=True,
        access_token=session.access_token,
    )
    logger.info("Uploaded %s photo for %s to %s/%s", kind.value, session.user_id, bucket, path)
    return client.public_url(bucket, path)


__all__ = [
    "CACHE_CONTROL",
    "ImageUpload",
    "ImageValidationError",
    "MAX_IMAGE_BYTES",
    "build_object_path",
    "upload_driver_image",
    "validate_image",
]
