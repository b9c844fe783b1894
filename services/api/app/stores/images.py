"""Receipt image storage on the local filesystem.

Images are written to RECEIPT_IMAGE_DIR as receipts/{timestamp}_{hash}.{ext}
and served back by GET /v1/receipts/images/{filename}. The public URL stored
on the receipt is RECEIPT_IMAGE_BASE_URL + "/" + filename.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from app.settings import get_settings

logger = logging.getLogger("uvicorn.error")

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/heic": "heic",
}
ALLOWED_SUFFIXES = set(CONTENT_TYPE_EXTENSIONS.values()) | {"jpeg"}


class ImageStorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoredImage:
    key: str
    url: str


def _extension(filename: str | None, content_type: str | None) -> str:
    if content_type and content_type.lower() in CONTENT_TYPE_EXTENSIONS:
        return CONTENT_TYPE_EXTENSIONS[content_type.lower()]
    suffix = Path(filename or "").suffix.lstrip(".").lower()
    if suffix in ALLOWED_SUFFIXES:
        return "jpg" if suffix == "jpeg" else suffix
    return "jpg"


class ReceiptImageStore:
    def __init__(self, root: str | Path, base_url: str):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _write(self, path: Path, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def save(self, data: bytes, *, filename: str | None = None, content_type: str | None = None) -> StoredImage:
        """Persist image bytes; raises ImageStorageError on any I/O failure."""
        if not data:
            raise ImageStorageError("Empty image")

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        digest = hashlib.sha256(data).hexdigest()[:12]
        key = f"{timestamp}_{digest}.{_extension(filename, content_type)}"
        path = self.root / key
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            logger.error(f"[images] failed to store receipt image {key}: {e}")
            raise ImageStorageError(f"Failed to store receipt image: {e}") from e

        logger.info(f"[images] saved {key} ({len(data)} bytes)")
        return StoredImage(key=key, url=f"{self.base_url}/{key}")

    def get_path(self, key: str) -> Path | None:
        """Resolve a stored image key to a file path (no path traversal allowed)."""
        if not key or "/" in key or "\\" in key or ".." in key:
            return None
        path = self.root / key
        if not path.exists() or not path.is_file():
            return None
        return path


def get_image_store() -> ReceiptImageStore:
    settings = get_settings()
    return ReceiptImageStore(settings.receipt_image_dir, settings.receipt_image_base_url)
