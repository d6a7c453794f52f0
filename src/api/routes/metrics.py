"""
Metrics Endpoint

GET /api/metrics - Prometheus metrics endpoint
"""

from fastapi import APIRouter, Response

from src.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - remover_stage_latency_seconds (per stage)
    - remover_removals_total
    - remover_upload_rejections_total
    - remover_temp_cleanup_failures_total
    - http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
