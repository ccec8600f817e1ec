from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ValidationError
from app.core.store import AnalyticsStore
from app.db import get_db
from app.models.analysis import Cohort
from app.schemas.analysis import CohortAnalysis, CohortCreate, CohortUpdate
from app.services.cohort_engine import CohortEngine, parse_conditions
from app.telemetry_utils import utcnow

router = APIRouter(prefix="/cohorts", tags=["cohorts"])


def _engine(db: Session = Depends(get_db)) -> CohortEngine:
    return CohortEngine(AnalyticsStore(db))


def _conditions_json(conditions) -> Any:
    """Validates first, then stores exactly the shape the client sent."""
    if conditions is None:
        raise ValidationError("Cohort name and at least one condition are required")
    parse_conditions(conditions)
    if isinstance(conditions, list):
        return [c.model_dump() for c in conditions]
    return conditions.model_dump()


def cohort_to_dict(c: Cohort) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "description": c.description,
        "projectId": c.project_id,
        "conditions": c.conditions,
        "userCount": c.user_count or 0,
        "createdAt": c.created_at.isoformat() if c.created_at else None,
        "updatedAt": c.updated_at.isoformat() if c.updated_at else None,
    }


@router.post("", status_code=201)
def create_cohort(payload: CohortCreate, engine: CohortEngine = Depends(_engine)):
    if not payload.name or not payload.name.strip():
        raise ValidationError("Cohort name and at least one condition are required")

    cohort = Cohort(
        name=payload.name.strip(),
        description=payload.description,
        project_id=payload.project_id or settings.default_project_id,
        conditions=_conditions_json(payload.conditions),
        user_count=0,
    )
    engine.store.add(cohort)
    engine.store.commit()
    engine.refresh_user_count(cohort)
    return {"success": True, "cohort": cohort_to_dict(cohort)}


@router.get("")
def list_cohorts(
    project_id: Optional[str] = Query(None, alias="projectId"),
    engine: CohortEngine = Depends(_engine),
):
    criteria = [Cohort.project_id == project_id] if project_id else []
    rows = engine.store.all(Cohort, *criteria, order_by=(Cohort.created_at.desc(),))
    for c in rows:
        engine.refresh_user_count(c)
    return {"success": True, "cohorts": [cohort_to_dict(c) for c in rows]}


@router.get("/{cohort_id}")
def get_cohort(cohort_id: str, engine: CohortEngine = Depends(_engine)):
    cohort = engine.get(cohort_id)
    engine.refresh_user_count(cohort)
    return {"success": True, "cohort": cohort_to_dict(cohort)}


@router.put("/{cohort_id}")
def update_cohort(cohort_id: str, payload: CohortUpdate, engine: CohortEngine = Depends(_engine)):
    cohort = engine.get(cohort_id)

    if payload.name is not None:
        if not payload.name.strip():
            raise ValidationError("Cohort name must not be empty")
        cohort.name = payload.name.strip()
    if payload.description is not None:
        cohort.description = payload.description
    if payload.conditions is not None:
        cohort.conditions = _conditions_json(payload.conditions)

    cohort.updated_at = utcnow()
    engine.store.commit()
    engine.refresh_user_count(cohort)
    return {"success": True, "cohort": cohort_to_dict(cohort)}


@router.delete("/{cohort_id}")
def delete_cohort(cohort_id: str, engine: CohortEngine = Depends(_engine)):
    engine.store.delete(engine.get(cohort_id))
    engine.store.commit()
    return {"success": True, "message": "Cohort deleted successfully"}


@router.get("/{cohort_id}/analyze", response_model=CohortAnalysis)
def analyze_cohort(
    cohort_id: str,
    date_range: Optional[str] = Query(None, alias="dateRange"),
    engine: CohortEngine = Depends(_engine),
):
    return engine.analyze(cohort_id, date_range)
