from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import StorageError, ValidationError
from app.models.event import Event
from app.models_telemetry import PerformanceMetric, Recording, TrackedSession
from app.schemas.events import EVENT_TYPES, BatchIn, EventIn, IngestOut, PerformanceIn, SessionIn
from app.telemetry_utils import (
    extract_utm_source,
    guess_browser_from_ua,
    guess_device_from_ua,
    guess_os_from_ua,
    is_admin_path,
    parse_ts,
    sanitize_metadata,
    utcnow,
)

logger = logging.getLogger(__name__)


class Dropped(Exception):
    """An interaction that is skipped without failing the batch."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class ClientContext:
    """What the request itself says about the client."""

    user_agent: Optional[str] = None
    country: Optional[str] = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "ClientContext":
        country = headers.get("cf-ipcountry") or headers.get("x-country")
        if country in ("XX", "T1"):
            country = None
        return cls(user_agent=headers.get("user-agent"), country=country)

    def device(self, metadata: Dict[str, Any]) -> Dict[str, Optional[str]]:
        dev = metadata.get("device") if isinstance(metadata.get("device"), dict) else {}
        return {
            "device_type": dev.get("deviceType") or dev.get("type") or guess_device_from_ua(self.user_agent),
            "browser": dev.get("browser") or guess_browser_from_ua(self.user_agent),
            "os": dev.get("os") or guess_os_from_ua(self.user_agent),
        }

    def location(self, metadata: Dict[str, Any]) -> Dict[str, Optional[str]]:
        loc = metadata.get("location") if isinstance(metadata.get("location"), dict) else {}
        return {
            "country": loc.get("country") or self.country,
            "city": loc.get("city"),
        }


def _element(evt: EventIn, metadata: Dict[str, Any]) -> Dict[str, Optional[str]]:
    el = metadata.get("element") if isinstance(metadata.get("element"), dict) else {}
    return {
        "element_id": evt.element_id or el.get("id") or None,
        "element_class": evt.element_class or el.get("className") or None,
    }


def normalize_event(
    evt: EventIn,
    ctx: ClientContext,
    envelope: Optional[BatchIn] = None,
) -> Dict[str, Any]:
    """
    Turns one wire interaction into Event column values.
    Raises Dropped when the interaction must be skipped.
    """
    session_id = evt.session_id or (envelope.session_id if envelope else None)
    if not session_id:
        raise Dropped("missing_session")
    if not evt.event_type:
        raise Dropped("missing_event_type")
    if evt.event_type not in EVENT_TYPES:
        raise Dropped("unknown_event_type")
    if not evt.page_url:
        raise Dropped("missing_page_url")
    if is_admin_path(evt.page_url, settings.admin_path_prefixes):
        raise Dropped("admin_path")

    metadata = sanitize_metadata(evt.metadata or {})
    user_id = evt.user_id or (envelope.user_id if envelope else None) or "anonymous"
    project_id = (
        evt.project_id
        or (envelope.project_id if envelope else None)
        or settings.default_project_id
    )
    nested = metadata.get("utm") if isinstance(metadata.get("utm"), dict) else {}
    utm = (
        evt.utm_source
        or metadata.get("utmSource")
        or nested.get("source")
        or extract_utm_source(evt.page_url)
    )

    row = dict(
        event_id=evt.event_id,
        session_id=session_id,
        user_id=user_id,
        project_id=project_id,
        event_type=evt.event_type,
        event_name=evt.event_name or evt.event_type,
        page_url=evt.page_url,
        page_title=evt.page_title,
        referrer=evt.referrer or metadata.get("referrer"),
        utm_source=utm,
        payload=metadata,
        timestamp=parse_ts(evt.timestamp) or utcnow(),
    )
    row.update(_element(evt, metadata))
    row.update(ctx.device(metadata))
    row.update(ctx.location(metadata))
    return row


class Ingestor:
    def __init__(self, db: Session, ctx: ClientContext):
        self.db = db
        self.ctx = ctx

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------
    def ingest_batch(self, batch: BatchIn) -> IngestOut:
        if len(batch.interactions) > settings.max_batch_size:
            raise ValidationError(
                f"Batch of {len(batch.interactions)} exceeds the limit of {settings.max_batch_size}"
            )

        rows: List[Dict[str, Any]] = []
        dropped: Dict[str, int] = {}
        for evt in batch.interactions:
            try:
                rows.append(normalize_event(evt, self.ctx, envelope=batch))
            except Dropped as d:
                dropped[d.reason] = dropped.get(d.reason, 0) + 1

        if dropped:
            logger.warning("batch for session %s dropped interactions: %s", batch.session_id, dropped)

        stored, duplicates = self._persist(rows)
        return IngestOut(
            message="Interactions tracked",
            count=stored,
            dropped=sum(dropped.values()),
            duplicates=duplicates,
        )

    def ingest_one(self, evt: EventIn) -> IngestOut:
        missing = [
            name
            for name, value in (("sessionId", evt.session_id), ("eventType", evt.event_type), ("pageURL", evt.page_url))
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        try:
            row = normalize_event(evt, self.ctx)
        except Dropped as d:
            if d.reason == "unknown_event_type":
                raise ValidationError(f"Unknown eventType {evt.event_type!r}") from None
            return IngestOut(message="Interaction ignored", count=0, dropped=1)

        stored, duplicates = self._persist([row])
        return IngestOut(message="Interaction tracked", count=stored, duplicates=duplicates)

    def _persist(self, rows: List[Dict[str, Any]]) -> tuple[int, int]:
        """Stores rows not seen before and widens their sessions. Returns (stored, duplicates)."""
        if not rows:
            return 0, 0

        # a concurrent writer can insert the same eventId between our check and commit;
        # the second pass sees it and skips it
        for attempt in (1, 2):
            fresh = self._skip_known(rows)
            try:
                by_session: Dict[str, List[Dict[str, Any]]] = {}
                for row in fresh:
                    by_session.setdefault(row["session_id"], []).append(row)
                for sid, group in by_session.items():
                    self._widen_session(self._get_or_create_session(sid, group[0]), group)
                self.db.add_all(Event(**row) for row in fresh)
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                if attempt == 2:
                    raise StorageError(f"event insert failed: {e}") from e
                logger.warning("duplicate eventId raced on insert, retrying batch")
                continue
            except SQLAlchemyError as e:
                self.db.rollback()
                raise StorageError(f"event insert failed: {e}") from e
            return len(fresh), len(rows) - len(fresh)
        return 0, len(rows)

    def _skip_known(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ids = {r["event_id"] for r in rows if r.get("event_id")}
        known = set()
        if ids:
            try:
                known = set(
                    self.db.execute(select(Event.event_id).where(Event.event_id.in_(ids))).scalars()
                )
            except SQLAlchemyError as e:
                self.db.rollback()
                raise StorageError(f"duplicate lookup failed: {e}") from e

        out, seen = [], set()
        for r in rows:
            eid = r.get("event_id")
            if eid and (eid in known or eid in seen):
                continue
            if eid:
                seen.add(eid)
            out.append(r)
        return out

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------
    def _get_or_create_session(self, session_id: str, first: Dict[str, Any]) -> TrackedSession:
        row = self._read("session lookup", lambda: self.db.get(TrackedSession, session_id))
        if row is not None:
            return row

        row = TrackedSession(
            session_id=session_id,
            user_id=first.get("user_id") or "anonymous",
            project_id=first.get("project_id") or settings.default_project_id,
            start_time=first.get("timestamp") or utcnow(),
            device_type=first.get("device_type"),
            browser=first.get("browser"),
            os=first.get("os"),
            country=first.get("country"),
            city=first.get("city"),
            referrer=first.get("referrer"),
            utm_source=first.get("utm_source"),
            entry_url=first.get("page_url"),
            event_count=0,
            page_views=0,
            duration=0,
            is_complete=False,
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            # created by a concurrent request
            self.db.rollback()
            row = self._read("session lookup", lambda: self.db.get(TrackedSession, session_id))
            if row is None:
                raise StorageError(f"session {session_id} vanished after insert conflict")
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"session insert failed: {e}") from e
        return row

    @staticmethod
    def _widen_session(session: TrackedSession, rows: List[Dict[str, Any]]) -> None:
        ordered = sorted(rows, key=lambda r: r["timestamp"])
        first, last = ordered[0], ordered[-1]

        if first["timestamp"] < session.start_time:
            session.start_time = first["timestamp"]
        if session.user_id == "anonymous" and last.get("user_id") not in (None, "anonymous"):
            session.user_id = last["user_id"]
        for col in ("device_type", "browser", "os", "country", "city", "referrer", "utm_source"):
            if getattr(session, col) is None and first.get(col):
                setattr(session, col, first[col])

        session.event_count = (session.event_count or 0) + len(rows)
        session.page_views = (session.page_views or 0) + sum(1 for r in rows if r["event_type"] == "pageview")
        session.exit_url = last["page_url"]
        span = int((last["timestamp"] - session.start_time).total_seconds())
        session.duration = max(session.duration or 0, span)

    def register_session(self, payload: SessionIn) -> TrackedSession:
        metadata = sanitize_metadata(payload.metadata or {})
        first = dict(
            user_id=payload.user_id,
            project_id=payload.project_id,
            timestamp=parse_ts(payload.start_time) or utcnow(),
            referrer=payload.referrer,
            utm_source=payload.utm_source or extract_utm_source(payload.page_url),
            page_url=payload.page_url,
        )
        first.update(self.ctx.device(metadata))
        first.update(self.ctx.location(metadata))

        row = self._get_or_create_session(payload.session_id, first)
        if payload.user_id and row.user_id == "anonymous":
            row.user_id = payload.user_id
        if payload.page_url:
            row.exit_url = payload.page_url
        self._commit("session refresh")
        return row

    def complete_session(self, session_id: str) -> Dict[str, Any]:
        now = utcnow()
        closed = []

        session = self._read("session lookup", lambda: self.db.get(TrackedSession, session_id))
        if session is not None:
            session.end_time = now
            session.duration = max(session.duration or 0, int((now - session.start_time).total_seconds()))
            session.is_complete = True
            closed.append("session")

        recording = self._read(
            "recording lookup",
            lambda: self.db.execute(
                select(Recording).where(Recording.session_id == session_id)
            ).scalar_one_or_none(),
        )
        if recording is not None and not recording.is_complete:
            recording.end_time = now
            recording.duration = int((now - recording.start_time).total_seconds())
            recording.is_complete = True
            closed.append("recording")

        if not closed:
            # short sessions may never have produced a row
            return {"message": "Session not found or already completed", "sessionId": session_id}

        self._commit("session complete")
        return {"message": "Session completed", "sessionId": session_id, "closed": closed}

    # -------------------------------------------------------------------------
    # Performance
    # -------------------------------------------------------------------------
    def record_performance(self, payload: PerformanceIn) -> PerformanceMetric:
        row = PerformanceMetric(
            session_id=payload.session_id,
            user_id=payload.user_id or "anonymous",
            project_id=payload.project_id or settings.default_project_id,
            page_url=payload.page_url,
            ttfb=payload.ttfb,
            fcp=payload.fcp,
            lcp=payload.lcp,
            cls=payload.cls,
            inp=payload.inp,
            fid=payload.fid,
            load_time=payload.load_time,
            dom_ready_time=payload.dom_ready_time,
            dns_time=payload.dns_time,
            js_errors=sanitize_metadata(payload.js_errors),
            api_calls=sanitize_metadata(payload.api_calls),
            device_type=payload.device_type or guess_device_from_ua(self.ctx.user_agent),
            timestamp=parse_ts(payload.timestamp) or utcnow(),
        )
        self.db.add(row)
        self._commit("performance insert")
        return row

    def _commit(self, what: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"{what} failed: {e}") from e

    def _read(self, what: str, fn):
        try:
            return fn()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"{what} failed: {e}") from e
