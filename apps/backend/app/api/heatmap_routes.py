from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.store import AnalyticsStore
from app.db import get_db
from app.schemas.analysis import HeatmapAnalysis
from app.services.heatmap import DEFAULT_GRID_SIZE, HeatmapEngine

router = APIRouter(prefix="/tracking", tags=["heatmaps"])


def _engine(db: Session = Depends(get_db)) -> HeatmapEngine:
    return HeatmapEngine(AnalyticsStore(db))


@router.get("/heatmap", response_model=HeatmapAnalysis)
def heatmap(
    page_url: Optional[str] = Query(None, alias="pageURL"),
    event_type: str = Query("click", alias="type"),
    project_id: Optional[str] = Query(None, alias="projectId"),
    date_range: Optional[str] = Query(None, alias="dateRange"),
    device: Optional[str] = Query(None),
    grid_size: int = Query(DEFAULT_GRID_SIZE, alias="gridSize"),
    engine: HeatmapEngine = Depends(_engine),
):
    return engine.aggregate(page_url, event_type, project_id, date_range, device, grid_size)


@router.get("/heatmap/raw")
def heatmap_raw(
    page_url: Optional[str] = Query(None, alias="pageURL"),
    event_type: str = Query("click", alias="type"),
    project_id: Optional[str] = Query(None, alias="projectId"),
    date_range: Optional[str] = Query(None, alias="dateRange"),
    device: Optional[str] = Query(None),
    limit: int = Query(1000),
    engine: HeatmapEngine = Depends(_engine),
):
    samples = engine.raw(page_url, event_type, project_id, date_range, device, limit)
    return {"points": [s.model_dump() for s in samples]}
