# apps/backend/app/models/analysis.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base
from app.models.event import JSONType
from app.telemetry_utils import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class Funnel(Base):
    __tablename__ = "funnels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    project_id: Mapped[str] = mapped_column(String(64), default="default", index=True)

    # [{order, name, eventType, eventName?, pageURL?, elementSelector?}], sorted by order
    steps: Mapped[Any] = mapped_column(JSONType)
    # snapshot of the last unfiltered analysis
    stats: Mapped[Any | None] = mapped_column(JSONType, nullable=True)
    time_window: Mapped[Any | None] = mapped_column(JSONType, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Cohort(Base):
    __tablename__ = "cohorts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    project_id: Mapped[str] = mapped_column(String(64), default="default", index=True)

    # either [{field, operator, value}] or {"properties": [...], "events": [...]}
    conditions: Mapped[Any] = mapped_column(JSONType)
    user_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
