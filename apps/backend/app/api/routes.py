from __future__ import annotations

from fastapi import APIRouter

from app.api.cohort_routes import router as cohort_router
from app.api.funnel_routes import router as funnel_router
from app.api.heatmap_routes import router as heatmap_router
from app.api.recording_routes import router as recording_router

router = APIRouter()

# admin-facing analysis endpoints; ingestion lives in app.routes.events
router.include_router(funnel_router)
router.include_router(cohort_router)
router.include_router(recording_router)
router.include_router(heatmap_router)
