"""
Remove Background Endpoint

POST /api/remove-background - Upload one image, get it back without its background:
1. Validate the upload (single file, MIME allow-list, size ceiling)
2. Persist it to a temp file
3. Negotiate the output format
4. Run background removal
5. Return the processed image; the temp file is always deleted
"""

from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from src.api.dependencies import get_removal_service, get_temp_storage
from src.api.uploads import UPLOAD_FORM_SCHEMA, read_upload_form
from src.core.logging import get_logger, LogContext
from src.core.storage import TempStorage, redecode_filename
from src.engines.removal.negotiator import resolve_output_spec
from src.engines.removal.schemas import OutputSpec
from src.engines.removal.services import BackgroundRemovalService

logger = get_logger(__name__)
router = APIRouter()


def download_name(original_name: Optional[str], spec: OutputSpec) -> str:
    stem = Path(redecode_filename(original_name or "")).stem or "image"
    # Header values must stay ASCII
    stem = stem.encode("ascii", "ignore").decode("ascii").replace('"', "") or "image"
    return f"{stem}-no-bg.{spec.extension}"


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/remove-background", openapi_extra=UPLOAD_FORM_SCHEMA)
async def remove_background(
    request: Request,
    storage: TempStorage = Depends(get_temp_storage),
    service: BackgroundRemovalService = Depends(get_removal_service),
):
    """
    Remove the background of an uploaded image.

    Returns the processed image bytes with a Content-Type matching the
    negotiated output format, or a JSON error object.
    """
    with LogContext(stage="receive") as log_context:
        # Streams the body; rejected uploads never reach the disk
        upload = await read_upload_form(request)

        logger.info(
            "upload_received",
            filename=upload.filename,
            content_type=upload.content_type,
            size_bytes=len(upload.data),
            requested_format=upload.output_format
        )

        spec = resolve_output_spec(upload.output_format)

        async with storage.acquire(upload.data, upload.filename, upload.content_type) as asset:
            log_context.set_stage("process")
            result = await service.remove(asset.path, spec)

        logger.info("processed_image_sent", output_format=spec.format.value, size_bytes=len(result))

        return Response(
            content=result,
            media_type=spec.mime_type,
            headers={
                "Content-Disposition": f'inline; filename="{download_name(upload.filename, spec)}"'
            }
        )
