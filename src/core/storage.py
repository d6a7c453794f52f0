"""
Temp Upload Storage

Every upload is written to a uniquely named file under a single shared
directory, owned by the request that created it and deleted exactly once
when that request is done with it.
"""

import re
import time
import uuid
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

from pydantic import BaseModel, Field

from src.core.config import settings
from src.core.exceptions import StorageError
from src.core.logging import get_logger
from src.core.metrics import record_cleanup_failure, track_stage_latency

logger = get_logger(__name__)

MAX_NAME_LENGTH = 100
_UNSAFE_CHARS = re.compile(r"[^\w.\-]+", re.UNICODE)


class TempAsset(BaseModel):
    """A request-owned copy of an uploaded image on local disk."""
    path: Path
    original_name: str
    content_type: Optional[str] = None
    size_bytes: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    released: bool = False


def redecode_filename(name: str) -> str:
    """Undo UTF-8 names that were decoded as latin-1 in transit.

    "cafÃ©.png" becomes "café.png"; names that do not survive the round trip
    are returned untouched.
    """
    try:
        return name.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        return name


def sanitize_filename(name: Optional[str]) -> str:
    """Reduce a client supplied filename to a safe single path component."""
    name = redecode_filename(name or "")
    # Strip any directory part, whichever separator the client used
    name = name.replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    if not name:
        return "upload"
    if len(name) > MAX_NAME_LENGTH:
        stem, dot, ext = name.rpartition(".")
        if dot and len(ext) <= 10:
            name = stem[:MAX_NAME_LENGTH - len(ext) - 1] + "." + ext
        else:
            name = name[:MAX_NAME_LENGTH]
    return name


class TempStorage:
    """Local temp directory for in-flight uploads."""

    def __init__(self, base_path: str = "/tmp/uploads"):
        self.base_path = Path(base_path)
        try:
            self.ensure_directory()
        except OSError as e:
            # store() retries and reports a StorageError
            logger.warning("upload_directory_unavailable", path=str(self.base_path), error=str(e))

    def ensure_directory(self) -> Path:
        """Create the upload directory if needed (idempotent)."""
        self.base_path.mkdir(parents=True, exist_ok=True)
        return self.base_path

    def _get_unique_filename(self, original_name: Optional[str]) -> str:
        """Timestamp + random suffix + sanitized original name."""
        millis = int(time.time() * 1000)
        unique_id = uuid.uuid4().hex[:8]
        return f"{millis}-{unique_id}-{sanitize_filename(original_name)}"

    async def store(
        self,
        data: bytes,
        original_name: Optional[str],
        content_type: Optional[str] = None
    ) -> TempAsset:
        """
        Persist upload bytes to a new temp file.

        Args:
            data: Raw bytes of the upload
            original_name: Filename as sent by the client
            content_type: MIME type declared by the client

        Returns:
            TempAsset describing the written file

        Raises:
            StorageError: If the file could not be written
        """
        file_path = self.base_path / self._get_unique_filename(original_name)

        try:
            with track_stage_latency("persist"):
                self.ensure_directory()
                await asyncio.to_thread(self._write, file_path, data)
        except OSError as e:
            logger.error("temp_asset_write_failed", path=str(file_path), error=str(e))
            # Never leave a partial file behind
            if file_path.exists():
                self._unlink(file_path)
            raise StorageError(
                "Could not store the uploaded image.",
                details={"path": str(file_path), "reason": str(e)}
            ) from e

        asset = TempAsset(
            path=file_path,
            original_name=redecode_filename(original_name or ""),
            content_type=content_type,
            size_bytes=len(data),
        )
        logger.info("temp_asset_stored", path=str(file_path), size_bytes=len(data))
        return asset

    @staticmethod
    def _write(file_path: Path, data: bytes):
        # "xb" refuses to clobber an existing file
        with open(file_path, "xb") as f:
            f.write(data)

    def _unlink(self, file_path: Path) -> bool:
        try:
            file_path.unlink(missing_ok=True)
            return True
        except OSError as e:
            record_cleanup_failure()
            logger.error("temp_asset_release_failed", path=str(file_path), error=str(e))
            return False

    def release(self, asset: Optional[TempAsset]) -> bool:
        """
        Delete a temp asset. Safe to call repeatedly or with None.

        Failures are logged and reported through the return value, never raised.
        """
        if asset is None or asset.released:
            return True

        deleted = self._unlink(asset.path)
        if deleted:
            asset.released = True
            logger.info("temp_asset_released", path=str(asset.path))
        return deleted

    @asynccontextmanager
    async def acquire(
        self,
        data: bytes,
        original_name: Optional[str],
        content_type: Optional[str] = None
    ) -> AsyncIterator[TempAsset]:
        """
        Store an upload for the duration of the block and release it afterwards.

        Usage:
            async with storage.acquire(data, "photo.jpg") as asset:
                result = await service.remove(asset.path, spec)
        """
        asset = await self.store(data, original_name, content_type)
        try:
            yield asset
        finally:
            self.release(asset)


class StorageFactory:
    """Process-wide TempStorage instance."""

    _instance: Optional[TempStorage] = None

    @classmethod
    def get_storage(cls) -> TempStorage:
        if cls._instance is None:
            cls._instance = TempStorage(base_path=settings.UPLOAD_DIR)
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


# Convenience function for dependency injection
def get_temp_storage() -> TempStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
