from __future__ import annotations

import logging
from typing import Any, Dict, List

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import NotFoundError, StorageError
from app.models_telemetry import Recording, RecordingFrame
from app.schemas.events import RecordingFramesIn
from app.telemetry_utils import utcnow

logger = logging.getLogger(__name__)

# frame "type" -> counter column; everything else only bumps total_events
_COUNTERS = {
    "click": "total_clicks",
    "scroll": "total_scrolls",
    "mousemove": "total_moves",
}


def frame_stats(frames: List[Any]) -> Dict[str, int]:
    stats = {"total_events": len(frames), "total_clicks": 0, "total_scrolls": 0, "total_moves": 0}
    for frame in frames:
        kind = frame.get("type") if isinstance(frame, dict) else None
        col = _COUNTERS.get(kind) if isinstance(kind, str) else None
        if col:
            stats[col] += 1
    return stats


def _get_or_create(db: Session, payload: RecordingFramesIn) -> Recording:
    stmt = select(Recording).where(Recording.session_id == payload.session_id)
    rec = db.execute(stmt).scalar_one_or_none()
    if rec is not None:
        return rec

    rec = Recording(
        session_id=payload.session_id,
        recording_id=payload.recording_id,
        user_id=payload.user_id or "anonymous",
        project_id=payload.project_id or settings.default_project_id,
        start_time=utcnow(),
        total_events=0,
        total_clicks=0,
        total_scrolls=0,
        total_moves=0,
        is_complete=False,
    )
    db.add(rec)
    try:
        db.commit()
    except IntegrityError:
        # another flush for the same session won the insert
        db.rollback()
        rec = db.execute(stmt).scalar_one()
    return rec


def append_frames(db: Session, payload: RecordingFramesIn) -> Dict[str, Any]:
    """
    Appends a flush of frames under the session key and bumps the counters in
    place, so concurrent flushes for one session never overwrite each other.
    """
    try:
        rec = _get_or_create(db, payload)
        if not payload.events:
            return {"success": True, "eventsProcessed": 0, "sessionId": payload.session_id}

        stats = frame_stats(payload.events)
        for attempt in (1, 2):
            base = db.execute(
                select(func.coalesce(func.max(RecordingFrame.seq), -1)).where(
                    RecordingFrame.session_id == payload.session_id
                )
            ).scalar()
            db.add_all(
                RecordingFrame(session_id=payload.session_id, seq=base + 1 + i, payload=frame)
                for i, frame in enumerate(payload.events)
            )
            db.execute(
                update(Recording)
                .where(Recording.id == rec.id)
                .values(
                    total_events=Recording.total_events + stats["total_events"],
                    total_clicks=Recording.total_clicks + stats["total_clicks"],
                    total_scrolls=Recording.total_scrolls + stats["total_scrolls"],
                    total_moves=Recording.total_moves + stats["total_moves"],
                    duration=int((utcnow() - rec.start_time).total_seconds()),
                )
            )
            try:
                db.commit()
                break
            except IntegrityError:
                # seq collided with a concurrent flush
                db.rollback()
                if attempt == 2:
                    raise
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"recording append failed: {e}") from e

    return {"success": True, "eventsProcessed": len(payload.events), "sessionId": payload.session_id}


def recording_to_dict(rec: Recording) -> Dict[str, Any]:
    return {
        "sessionId": rec.session_id,
        "recordingId": rec.recording_id,
        "userId": rec.user_id,
        "projectId": rec.project_id,
        "startTime": rec.start_time.isoformat() if rec.start_time else None,
        "endTime": rec.end_time.isoformat() if rec.end_time else None,
        "duration": rec.duration or 0,
        "stats": {
            "totalEvents": rec.total_events or 0,
            "totalClicks": rec.total_clicks or 0,
            "totalScrolls": rec.total_scrolls or 0,
            "totalMoves": rec.total_moves or 0,
        },
        "isComplete": bool(rec.is_complete),
    }


def list_recordings(db: Session, project_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    try:
        rows = db.execute(
            select(Recording)
            .where(Recording.project_id == project_id)
            .order_by(Recording.start_time.desc())
            .limit(limit)
        ).scalars().all()
    except SQLAlchemyError as e:
        raise StorageError(f"recording list failed: {e}") from e
    return [recording_to_dict(r) for r in rows]


def get_recording(db: Session, session_id: str) -> Dict[str, Any]:
    try:
        rec = db.execute(
            select(Recording).where(Recording.session_id == session_id)
        ).scalar_one_or_none()
        if rec is None:
            raise NotFoundError(f"Recording for session {session_id} not found")
        frames = db.execute(
            select(RecordingFrame.payload)
            .where(RecordingFrame.session_id == session_id)
            .order_by(RecordingFrame.seq)
        ).scalars().all()
    except SQLAlchemyError as e:
        raise StorageError(f"recording lookup failed: {e}") from e

    out = recording_to_dict(rec)
    out["events"] = list(frames)
    return out
