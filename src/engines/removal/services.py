"""
Background Removal Service

Wraps the rembg library behind an async interface. The library is treated
as an opaque capability: image in, image with an alpha mask out. This module
only handles loading the input, bounding the call, and encoding the result.
"""

import io
import asyncio
import threading
from pathlib import Path
from typing import Callable, Optional, Union
from urllib.parse import urlparse
from urllib.request import url2pathname

from PIL import Image, ImageOps

from src.core.config import settings
from src.core.exceptions import ProcessingError
from src.core.logging import get_logger, with_logging
from src.core.metrics import record_removal, track_stage_latency
from src.engines.removal.schemas import OutputSpec

logger = get_logger(__name__)

# Takes the decoded input image, returns the cut-out (RGBA)
Remover = Callable[[Image.Image], Image.Image]

# JPEG has no alpha channel; transparent areas are flattened onto this
JPEG_BACKGROUND = (255, 255, 255)


# =============================================================================
# rembg Session (loaded once per process)
# =============================================================================

_session = None
_session_lock = threading.Lock()


def get_rembg_session(model_name: str):
    """Get or create the rembg session (thread safe)."""
    global _session

    if _session is not None:
        return _session

    with _session_lock:
        if _session is None:
            # Lazy import: the model runtime is heavy
            from rembg import new_session

            logger.info("rembg_session_loading", model=model_name)
            _session = new_session(model_name)
            logger.info("rembg_session_loaded", model=model_name)

    return _session


def rembg_remover(model_name: str) -> Remover:
    """Build a Remover backed by rembg."""
    def _remove(image: Image.Image) -> Image.Image:
        from rembg import remove

        return remove(image, session=get_rembg_session(model_name))

    return _remove


# =============================================================================
# Image I/O
# =============================================================================

def to_file_locator(file_path: Union[str, Path]) -> str:
    """Convert a filesystem path into an absolute file:// URI."""
    return Path(file_path).resolve().as_uri()


def load_image(locator: str) -> Image.Image:
    """Open the image a file:// locator points to."""
    parsed = urlparse(locator)
    if parsed.scheme != "file":
        raise ValueError(f"Unsupported image locator scheme: {parsed.scheme or 'none'}")

    path = url2pathname(parsed.path)
    with Image.open(path) as image:
        image.load()
        # Respect camera orientation before cutting out
        return ImageOps.exif_transpose(image)


def encode_image(image: Image.Image, spec: OutputSpec) -> bytes:
    """Encode a processed image according to the output spec."""
    buffer = io.BytesIO()

    if spec.pil_format == "JPEG":
        rgba = image.convert("RGBA")
        flattened = Image.new("RGB", rgba.size, JPEG_BACKGROUND)
        flattened.paste(rgba, mask=rgba.getchannel("A"))
        flattened.save(buffer, format="JPEG", quality=spec.encoder_quality)
    elif spec.pil_format == "WEBP":
        image.save(
            buffer,
            format="WEBP",
            quality=spec.encoder_quality,
            lossless=spec.is_lossless
        )
    else:
        image.save(buffer, format=spec.pil_format)

    return buffer.getvalue()


# =============================================================================
# Service
# =============================================================================

class BackgroundRemovalService:
    """
    Async adapter around the background removal capability.

    Calls run in a worker thread, at most `max_concurrent` at a time, each
    awaited for at most `timeout_seconds`. Threads abandoned after a timeout
    keep their slot until they finish. Every failure surfaces as ProcessingError.
    """

    def __init__(
        self,
        remover: Optional[Remover] = None,
        timeout_seconds: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        model_name: Optional[str] = None
    ):
        self.model_name = model_name or settings.REMBG_MODEL
        self._remover = remover or rembg_remover(self.model_name)
        self.timeout_seconds = timeout_seconds or settings.REMOVAL_TIMEOUT_SECONDS
        self.max_concurrent = max_concurrent or settings.MAX_CONCURRENT_REMOVALS
        self._semaphore = asyncio.Semaphore(self.max_concurrent)

    def preload(self):
        """Load the rembg model ahead of the first request."""
        get_rembg_session(self.model_name)

    @with_logging("rembg")
    def _remove_sync(self, locator: str, spec: OutputSpec) -> bytes:
        image = load_image(locator)
        input_size = image.size

        output_image = self._remover(image)
        output_bytes = encode_image(output_image, spec)

        logger.info(
            "background_removal_completed",
            dimensions=input_size,
            output_format=spec.format.value,
            output_size=len(output_bytes)
        )
        return output_bytes

    async def _start_worker(self, locator: str, spec: OutputSpec) -> asyncio.Future:
        """
        Take a concurrency slot and start the removal in a worker thread.

        The slot belongs to the thread, not to the awaiting request: it is
        given back only when the thread finishes, even if the request has
        already timed out.
        """
        await self._semaphore.acquire()
        try:
            worker = asyncio.ensure_future(asyncio.to_thread(self._remove_sync, locator, spec))
        except BaseException:
            self._semaphore.release()
            raise

        worker.add_done_callback(self._on_worker_done)
        return worker

    def _on_worker_done(self, worker: asyncio.Future):
        self._semaphore.release()

        # Failures of abandoned workers have nobody awaiting them
        error = None if worker.cancelled() else worker.exception()
        if error is not None:
            logger.debug("background_removal_worker_failed", error_type=type(error).__name__)

    async def remove(self, file_path: Union[str, Path], spec: OutputSpec) -> bytes:
        """
        Remove the background of the image stored at file_path.

        Args:
            file_path: Local path of the uploaded image
            spec: Negotiated output encoding

        Returns:
            Encoded image bytes in spec.mime_type

        Raises:
            ProcessingError: On any failure, including timeout
        """
        locator = to_file_locator(file_path)
        worker = await self._start_worker(locator, spec)

        try:
            with track_stage_latency("rembg"):
                # shield: a timeout abandons the worker, it does not stop it
                result = await asyncio.wait_for(
                    asyncio.shield(worker),
                    timeout=self.timeout_seconds
                )
        except asyncio.TimeoutError as e:
            record_removal("timeout", spec.format.value)
            logger.error("background_removal_timed_out", timeout_seconds=self.timeout_seconds)
            raise ProcessingError(
                "Background removal timed out.",
                details={"timeout_seconds": self.timeout_seconds}
            ) from e
        except Exception as e:
            record_removal("error", spec.format.value)
            raise ProcessingError(
                "Internal server error while processing the image.",
                details={"reason": f"{type(e).__name__}: {e}"}
            ) from e

        record_removal("success", spec.format.value)
        return result


_service: Optional[BackgroundRemovalService] = None


def get_removal_service() -> BackgroundRemovalService:
    """Returns the singleton removal service - ready for FastAPI Depends()."""
    global _service
    if _service is None:
        _service = BackgroundRemovalService()
    return _service
