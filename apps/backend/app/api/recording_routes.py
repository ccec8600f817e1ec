from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db import get_db
from app.schemas.analysis import RecordingStart, RecordingStop
from app.services.recording_hub import hub
from app.services.recordings import get_recording, list_recordings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recordings", tags=["recordings"])


@router.post("/start")
async def start_recording(payload: RecordingStart):
    project_id = payload.project_id or settings.default_project_id
    delivered = await hub.start(project_id, payload.recording_id)
    logger.info("recording-start for project %s reached %d client(s)", project_id, delivered)
    return {"success": True, "projectId": project_id, "recordingId": payload.recording_id, "clients": delivered}


@router.post("/stop")
async def stop_recording(payload: RecordingStop):
    project_id = payload.project_id or settings.default_project_id
    delivered = await hub.stop(project_id)
    logger.info("recording-stop for project %s reached %d client(s)", project_id, delivered)
    return {"success": True, "projectId": project_id, "clients": delivered}


@router.get("")
def recordings_index(
    project_id: Optional[str] = Query(None, alias="projectId"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return {"success": True, "recordings": list_recordings(db, project_id or settings.default_project_id, limit)}


@router.get("/{session_id}")
def recording_detail(session_id: str, db: Session = Depends(get_db)):
    return {"success": True, "recording": get_recording(db, session_id)}


@router.websocket("/ws")
async def recording_control(websocket: WebSocket, project_id: Optional[str] = Query(None, alias="projectId")):
    room = project_id or settings.default_project_id
    if not await hub.join(websocket, room):
        return
    try:
        while True:
            # clients only listen; anything they send is a keepalive
            msg = await websocket.receive_json()
            if isinstance(msg, dict) and msg.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        await hub.leave(websocket, room)
