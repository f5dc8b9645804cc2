from __future__ import annotations

import logging
import os
import re
import time
from io import BytesIO
from pathlib import Path
from typing import BinaryIO
from urllib.parse import urlparse

import httpx

from .database import UPLOAD_DIR

GCS_PHOTO_BUCKET = os.getenv("GCS_PHOTO_BUCKET")
GCS_PHOTO_BASE_URL = os.getenv("GCS_PHOTO_BASE_URL")
GCS_PHOTO_CACHE_CONTROL = os.getenv("GCS_PHOTO_CACHE_CONTROL", "public, max-age=86400")
LOCAL_UPLOAD_URL_PREFIX = "/static/uploads/"
FETCH_TIMEOUT_SEC = float(os.getenv("IMAGE_FETCH_TIMEOUT_SEC", "20"))

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

logger = logging.getLogger(__name__)


def gcs_photos_enabled() -> bool:
    """Return True when a Google Cloud Storage bucket is configured for images."""
    return bool(GCS_PHOTO_BUCKET)


def build_object_name(event_id: str, kind: str, original_name: str) -> str:
    """Return ``events/<id>/<kind>/<millis>-<name>`` for an uploaded file."""
    safe_name = _UNSAFE_NAME_CHARS.sub("-", Path(original_name).name).strip("-") or "upload"
    return f"events/{event_id}/{kind}/{int(time.time() * 1000)}-{safe_name}"


def gcs_public_url(object_name: str) -> str:
    if not GCS_PHOTO_BUCKET:
        raise RuntimeError("GCS_PHOTO_BUCKET is not configured.")
    base_url = (GCS_PHOTO_BASE_URL or f"https://storage.googleapis.com/{GCS_PHOTO_BUCKET}").rstrip("/")
    return f"{base_url}/{object_name.lstrip('/')}"


def upload_photo_stream(handle: BinaryIO, *, object_name: str, content_type: str) -> str:
    """Upload the provided file-like object to the configured GCS bucket."""
    if not gcs_photos_enabled():
        raise RuntimeError("GCS photo storage is not enabled.")

    from google.cloud import storage

    client = storage.Client()
    bucket = client.bucket(GCS_PHOTO_BUCKET)
    blob = bucket.blob(object_name.lstrip("/"))
    blob.upload_from_file(handle, content_type=content_type)
    if GCS_PHOTO_CACHE_CONTROL:
        blob.cache_control = GCS_PHOTO_CACHE_CONTROL
        blob.patch()
    return gcs_public_url(object_name)


def store_image(data: bytes, *, object_name: str, content_type: str) -> str:
    """Persist image bytes and return the public URL they can be fetched from."""
    if gcs_photos_enabled():
        return upload_photo_stream(BytesIO(data), object_name=object_name, content_type=content_type)

    relative = object_name.lstrip("/")
    destination = UPLOAD_DIR / relative
    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("wb") as buffer:
        buffer.write(data)
    return f"{LOCAL_UPLOAD_URL_PREFIX}{relative}"


def local_upload_path(url: str) -> Path | None:
    path = urlparse(url).path
    if not path.startswith(LOCAL_UPLOAD_URL_PREFIX):
        return None
    candidate = (UPLOAD_DIR / path[len(LOCAL_UPLOAD_URL_PREFIX) :]).resolve()
    if UPLOAD_DIR.resolve() not in candidate.parents:
        return None
    return candidate


async def fetch_image_bytes(url: str) -> bytes:
    """Load image bytes from the local upload directory or over HTTP."""
    if not url.startswith(("http://", "https://")):
        local = local_upload_path(url)
        if local is not None:
            return local.read_bytes()
        raise ValueError(f"Unsupported image location: {url}")

    async with httpx.AsyncClient(timeout=FETCH_TIMEOUT_SEC, follow_redirects=True) as client:
        response = await client.get(url)
        response.raise_for_status()
        logger.debug("Fetched %s (%s bytes)", url, len(response.content))
        return response.content
