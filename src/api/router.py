from __future__ import annotations

from fastapi import APIRouter

from src.api.guide_metrics import router as guide_metrics_router
from src.api.health import router as health_router


api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(guide_metrics_router)
