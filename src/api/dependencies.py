"""
FastAPI Dependencies for the Background Remover

Provides dependency injection for:
- Temp upload storage (singleton)
- Background removal service (singleton, model loaded lazily or at startup)
"""

import asyncio

from src.core.config import settings
from src.core.logging import get_logger
from src.core.storage import TempStorage, get_temp_storage
from src.engines.removal.services import BackgroundRemovalService, get_removal_service

logger = get_logger(__name__)

__all__ = [
    "get_temp_storage",
    "get_removal_service",
    "prepare_upload_directory",
    "preload_model_async",
]


def prepare_upload_directory() -> TempStorage:
    """Create the upload directory at startup (idempotent)."""
    storage = get_temp_storage()
    storage.ensure_directory()
    logger.info("upload_directory_ready", path=str(storage.base_path))
    return storage


def preload_model() -> bool:
    """Load the removal model before the first request.

    A failure is not fatal; the model is then loaded on first use.
    """
    service: BackgroundRemovalService = get_removal_service()
    try:
        service.preload()
        return True
    except Exception as e:
        logger.warning("model_preload_failed", model=settings.REMBG_MODEL, error=str(e))
        return False


async def preload_model_async() -> bool:
    """Runs model preloading in a thread to avoid blocking the loop."""
    return await asyncio.to_thread(preload_model)
