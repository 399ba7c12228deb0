"""
Local object store for image and video blobs.

Messages only ever hold the URL returned by ``put``; the bytes live here.
"""
import mimetypes
import re
import uuid
from pathlib import Path
from typing import Optional, Tuple

from ephemera.core.logging import get_logger

logger = get_logger(__name__)

KEY_PATTERN = re.compile(r"^[0-9a-f]{32}(\.[a-z0-9]{1,8})?$")

ALLOWED_CONTENT_TYPES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "video/mp4",
    "video/quicktime",
    "video/webm",
}


class ObjectStoreError(Exception):
    """Raised for rejected uploads or unknown keys."""


class LocalObjectStore:
    """Stores blobs as files under ``root`` and serves them by key."""

    def __init__(self, root: str, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def put(self, data: bytes, content_type: str) -> str:
        """Store a blob and return its key."""
        content_type = (content_type or "").split(";")[0].strip().lower()
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise ObjectStoreError(f"Unsupported content type: {content_type or 'missing'}")
        if not data:
            raise ObjectStoreError("Empty upload")

        extension = mimetypes.guess_extension(content_type) or ""
        key = f"{uuid.uuid4().hex}{extension}"

        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / key).write_bytes(data)

        logger.info(
            "Media stored",
            extra={"extra_data": {"key": key, "content_type": content_type, "size": len(data)}}
        )
        return key

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/media/{key}"

    def get(self, key: str) -> Tuple[bytes, str]:
        """Return ``(bytes, content_type)`` for a stored key."""
        if not KEY_PATTERN.match(key):
            raise ObjectStoreError(f"Invalid key: {key}")
        path = self.root / key
        if not path.is_file():
            raise ObjectStoreError(f"Unknown key: {key}")
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return path.read_bytes(), content_type

    def key_from_url(self, url: Optional[str]) -> Optional[str]:
        """The key behind a URL returned by ``url_for``, or None for foreign URLs."""
        if not url:
            return None
        prefix = f"{self.public_base_url}/media/"
        if not url.startswith(prefix):
            return None
        key = url[len(prefix):]
        return key if KEY_PATTERN.match(key) else None

    def delete(self, key: str) -> bool:
        """Remove a stored blob. Returns False if there was nothing to remove."""
        if not KEY_PATTERN.match(key):
            raise ObjectStoreError(f"Invalid key: {key}")
        path = self.root / key
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Media deleted", extra={"extra_data": {"key": key}})
        return True

    def discard(self, url: Optional[str]) -> bool:
        """
        Delete the blob a consumed message pointed at.

        Failures are logged, not raised; the message row is already gone.
        """
        key = self.key_from_url(url)
        if key is None:
            return False
        try:
            return self.delete(key)
        except OSError as e:
            logger.error(f"Media cleanup failed for {key}: {e}")
            return False
