"""
API Router Module

All endpoints are prefixed with /api/

- POST /api/remove-background - Background removal for one uploaded image
- GET  /api/metrics           - Prometheus metrics
"""

from fastapi import APIRouter

from src.api.routes.remove_background import router as remove_background_router
from src.api.routes.metrics import router as metrics_router

api_router = APIRouter(prefix="/api")

api_router.include_router(remove_background_router, tags=["background-removal"])
api_router.include_router(metrics_router, tags=["metrics"])
