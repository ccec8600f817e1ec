from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ValidationError
from app.core.store import AnalyticsStore
from app.db import get_db
from app.models.analysis import Funnel
from app.schemas.analysis import FunnelAnalysis, FunnelCreate, FunnelUpdate
from app.services.export import funnel_csv, funnel_csv_headers
from app.services.funnel_engine import FunnelEngine, SegmentFilters, normalize_steps
from app.telemetry_utils import utcnow

router = APIRouter(prefix="/funnels", tags=["funnels"])


def _engine(db: Session = Depends(get_db)) -> FunnelEngine:
    return FunnelEngine(AnalyticsStore(db))


def _filters(
    device: Optional[str] = Query(None),
    country: Optional[str] = Query(None),
    utm_source: Optional[str] = Query(None, alias="utmSource"),
    referrer_contains: Optional[str] = Query(None, alias="referrerContains"),
    path_prefix: Optional[str] = Query(None, alias="pathPrefix"),
) -> SegmentFilters:
    return SegmentFilters(
        device=device,
        country=country,
        utm_source=utm_source,
        referrer_contains=referrer_contains,
        path_prefix=path_prefix,
    )


def funnel_to_dict(f: Funnel) -> dict:
    return {
        "id": f.id,
        "name": f.name,
        "description": f.description,
        "projectId": f.project_id,
        "steps": f.steps,
        "stats": f.stats,
        "timeWindow": f.time_window,
        "isActive": bool(f.is_active),
        "createdAt": f.created_at.isoformat() if f.created_at else None,
        "updatedAt": f.updated_at.isoformat() if f.updated_at else None,
    }


@router.post("", status_code=201)
def create_funnel(payload: FunnelCreate, engine: FunnelEngine = Depends(_engine)):
    if not payload.name or not payload.name.strip():
        raise ValidationError("Funnel name and at least 2 steps are required")

    funnel = Funnel(
        name=payload.name.strip(),
        description=payload.description,
        project_id=payload.project_id or settings.default_project_id,
        steps=normalize_steps(payload.steps),
        time_window=payload.time_window.model_dump() if payload.time_window else None,
        is_active=payload.is_active,
    )
    engine.store.add(funnel)
    engine.store.commit()
    return {"success": True, "funnel": funnel_to_dict(funnel)}


@router.get("")
def list_funnels(
    project_id: Optional[str] = Query(None, alias="projectId"),
    db: Session = Depends(get_db),
):
    criteria = [Funnel.project_id == project_id] if project_id else []
    rows = AnalyticsStore(db).all(Funnel, *criteria, order_by=(Funnel.created_at.desc(),))
    return {"success": True, "funnels": [funnel_to_dict(f) for f in rows]}


@router.get("/{funnel_id}")
def get_funnel(funnel_id: str, engine: FunnelEngine = Depends(_engine)):
    return {"success": True, "funnel": funnel_to_dict(engine.get(funnel_id))}


@router.put("/{funnel_id}")
def update_funnel(funnel_id: str, payload: FunnelUpdate, engine: FunnelEngine = Depends(_engine)):
    funnel = engine.get(funnel_id)

    if payload.name is not None:
        if not payload.name.strip():
            raise ValidationError("Funnel name must not be empty")
        funnel.name = payload.name.strip()
    if payload.description is not None:
        funnel.description = payload.description
    if payload.steps is not None:
        funnel.steps = normalize_steps(payload.steps)
        # cached snapshot described the old steps
        funnel.stats = None
    if payload.time_window is not None:
        funnel.time_window = payload.time_window.model_dump()
    if payload.is_active is not None:
        funnel.is_active = payload.is_active

    funnel.updated_at = utcnow()
    engine.store.commit()
    return {"success": True, "funnel": funnel_to_dict(funnel)}


@router.delete("/{funnel_id}")
def delete_funnel(funnel_id: str, engine: FunnelEngine = Depends(_engine)):
    engine.store.delete(engine.get(funnel_id))
    engine.store.commit()
    return {"success": True, "message": "Funnel deleted successfully"}


@router.get("/{funnel_id}/analyze", response_model=FunnelAnalysis)
def analyze_funnel(
    funnel_id: str,
    date_range: Optional[str] = Query(None, alias="dateRange"),
    filters: SegmentFilters = Depends(_filters),
    engine: FunnelEngine = Depends(_engine),
):
    return engine.analyze(funnel_id, date_range, filters)


@router.get("/{funnel_id}/export/csv")
def export_funnel_csv(
    funnel_id: str,
    date_range: Optional[str] = Query(None, alias="dateRange"),
    filters: SegmentFilters = Depends(_filters),
    engine: FunnelEngine = Depends(_engine),
):
    analysis = engine.analyze(funnel_id, date_range, filters)
    return Response(
        content=funnel_csv(analysis),
        media_type="text/csv",
        headers=funnel_csv_headers(analysis),
    )
