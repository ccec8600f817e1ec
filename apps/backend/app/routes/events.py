# apps/backend/app/routes/events.py
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.events import BatchIn, EventIn, IngestOut, PerformanceIn, RecordingFramesIn, SessionIn
from app.services.ingestion import ClientContext, Ingestor
from app.services.recordings import append_frames

router = APIRouter()

def _ingestor(request: Request, db: Session) -> Ingestor:
  return Ingestor(db, ClientContext.from_headers(request.headers))

# -----------------------------------------------------------------------------
# Interactions
# -----------------------------------------------------------------------------
@router.post("/tracking/interactions/batch", response_model=IngestOut)
def ingest_batch(batch: BatchIn, request: Request, db: Session = Depends(get_db)):
  return _ingestor(request, db).ingest_batch(batch)

@router.post("/tracking/interactions", response_model=IngestOut)
def ingest_interaction(evt: EventIn, request: Request, db: Session = Depends(get_db)):
  return _ingestor(request, db).ingest_one(evt)

# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------
@router.post("/tracking/session")
def register_session(payload: SessionIn, request: Request, db: Session = Depends(get_db)):
  row = _ingestor(request, db).register_session(payload)
  return {
    "message": "Session registered",
    "sessionId": row.session_id,
    "userId": row.user_id,
    "startTime": row.start_time.isoformat(),
  }

@router.post("/tracking/session/{session_id}/complete")
def complete_session(session_id: str, request: Request, db: Session = Depends(get_db)):
  return _ingestor(request, db).complete_session(session_id)

# -----------------------------------------------------------------------------
# Performance + replay frames
# -----------------------------------------------------------------------------
@router.post("/analytics/performance")
def record_performance(payload: PerformanceIn, request: Request, db: Session = Depends(get_db)):
  row = _ingestor(request, db).record_performance(payload)
  return {"success": True, "id": row.id}

@router.post("/analytics/recording-events")
def record_frames(payload: RecordingFramesIn, db: Session = Depends(get_db)):
  return append_frames(db, payload)
