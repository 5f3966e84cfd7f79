"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- /api/v1/screens - Tutorial screens (create, inspect, fetch image, destroy)
- /api/v1/metrics - Prometheus metrics
"""

from fastapi import APIRouter

from src.api.v1.screens import router as screens_router
from src.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(screens_router, prefix="/screens", tags=["screens"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
