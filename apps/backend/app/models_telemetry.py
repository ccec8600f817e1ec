from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base
from app.models.event import JSONType
from app.telemetry_utils import utcnow


class TrackedSession(Base):
    __tablename__ = "tracked_sessions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), default="anonymous", index=True)
    project_id: Mapped[str] = mapped_column(String(64), default="default", index=True)

    start_time: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration: Mapped[int] = mapped_column(Integer, default=0)  # seconds

    device_type: Mapped[str | None] = mapped_column(String(12), nullable=True)  # mobile|tablet|desktop
    browser: Mapped[str | None] = mapped_column(String(64), nullable=True)
    os: Mapped[str | None] = mapped_column(String(64), nullable=True)
    country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)

    referrer: Mapped[str | None] = mapped_column(Text, nullable=True)
    utm_source: Mapped[str | None] = mapped_column(String(128), nullable=True)
    entry_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    exit_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    event_count: Mapped[int] = mapped_column(Integer, default=0)
    page_views: Mapped[int] = mapped_column(Integer, default=0)
    is_complete: Mapped[bool] = mapped_column(Boolean, default=False)


Index("idx_tracked_sessions_project_start", TrackedSession.project_id, TrackedSession.start_time)


class Recording(Base):
    __tablename__ = "session_recordings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    recording_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_id: Mapped[str] = mapped_column(String(128), default="anonymous", index=True)
    project_id: Mapped[str] = mapped_column(String(64), default="default", index=True)

    start_time: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration: Mapped[int] = mapped_column(Integer, default=0)

    total_events: Mapped[int] = mapped_column(Integer, default=0)
    total_clicks: Mapped[int] = mapped_column(Integer, default=0)
    total_scrolls: Mapped[int] = mapped_column(Integer, default=0)
    total_moves: Mapped[int] = mapped_column(Integer, default=0)

    is_complete: Mapped[bool] = mapped_column(Boolean, default=False)


class RecordingFrame(Base):
    __tablename__ = "recording_frames"
    __table_args__ = (UniqueConstraint("session_id", "seq", name="uq_recording_frames_session_seq"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), index=True)
    seq: Mapped[int] = mapped_column(Integer)
    payload: Mapped[Any] = mapped_column(JSONType)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class PerformanceMetric(Base):
    __tablename__ = "performance_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    user_id: Mapped[str] = mapped_column(String(128), default="anonymous")
    project_id: Mapped[str] = mapped_column(String(64), default="default", index=True)
    page_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    ttfb: Mapped[float] = mapped_column(Float, default=0)
    fcp: Mapped[float] = mapped_column(Float, default=0)
    lcp: Mapped[float] = mapped_column(Float, default=0)
    cls: Mapped[float] = mapped_column(Float, default=0)
    inp: Mapped[float] = mapped_column(Float, default=0)
    fid: Mapped[float] = mapped_column(Float, default=0)
    load_time: Mapped[float] = mapped_column(Float, default=0)
    dom_ready_time: Mapped[float] = mapped_column(Float, default=0)
    dns_time: Mapped[float] = mapped_column(Float, default=0)

    js_errors: Mapped[Any] = mapped_column(JSONType, default=list)
    api_calls: Mapped[Any] = mapped_column(JSONType, default=list)

    device_type: Mapped[str | None] = mapped_column(String(12), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
