from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import or_

from app.core.errors import NotFoundError, ValidationError
from app.core.store import AnalyticsStore
from app.models.analysis import Cohort
from app.models.event import Event
from app.models_telemetry import TrackedSession
from app.schemas.analysis import BehaviorMetric, CohortAnalysis, RetentionPoint
from app.telemetry_utils import pct, resolve_date_range, round_half_up, utcnow

logger = logging.getLogger(__name__)

WEEK = timedelta(days=7)

# condition field names (as sent by the dashboard) -> session column
FIELD_COLUMNS = {
    "userId": TrackedSession.user_id,
    "user_id": TrackedSession.user_id,
    "device": TrackedSession.device_type,
    "deviceType": TrackedSession.device_type,
    "device_type": TrackedSession.device_type,
    "device.deviceType": TrackedSession.device_type,
    "browser": TrackedSession.browser,
    "device.browser": TrackedSession.browser,
    "os": TrackedSession.os,
    "device.os": TrackedSession.os,
    "country": TrackedSession.country,
    "location.country": TrackedSession.country,
    "city": TrackedSession.city,
    "location.city": TrackedSession.city,
    "referrer": TrackedSession.referrer,
    "utmSource": TrackedSession.utm_source,
    "utm_source": TrackedSession.utm_source,
    "entryURL": TrackedSession.entry_url,
    "entry_url": TrackedSession.entry_url,
    "exitURL": TrackedSession.exit_url,
    "exit_url": TrackedSession.exit_url,
}


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any


@dataclass(frozen=True)
class SimpleConditions:
    conditions: List[Condition]


@dataclass(frozen=True)
class StructuredConditions:
    properties: List[Condition]
    events: List[Dict[str, Any]] = field(default_factory=list)


CohortConditions = Union[SimpleConditions, StructuredConditions]


def parse_conditions(raw: Any) -> CohortConditions:
    """Reads the stored JSON (or validated request model) into the tagged variant."""
    if hasattr(raw, "model_dump"):
        raw = raw.model_dump()
    if isinstance(raw, list):
        conds = [_condition(c, "field") for c in raw]
        if not conds:
            raise ValidationError("A cohort needs at least one condition")
        return SimpleConditions(conds)
    if isinstance(raw, dict):
        props = [_condition(p, "key") for p in raw.get("properties") or []]
        events = list(raw.get("events") or [])
        if not props and not events:
            raise ValidationError("A cohort needs at least one condition")
        return StructuredConditions(props, events)
    raise ValidationError("Cohort conditions must be a list or an object")


def _condition(raw: Any, key: str) -> Condition:
    if hasattr(raw, "model_dump"):
        raw = raw.model_dump()
    if not isinstance(raw, dict) or not raw.get(key):
        raise ValidationError(f"Cohort condition is missing {key!r}")
    name = raw[key]
    if name not in FIELD_COLUMNS:
        raise ValidationError(f"Unknown cohort field {name!r}")
    op = raw.get("operator")
    if op not in ("equals", "not_equals", "contains", "starts_with"):
        raise ValidationError(f"Unknown cohort operator {op!r}")
    return Condition(name, op, raw.get("value"))


def condition_clause(cond: Condition):
    col = FIELD_COLUMNS[cond.field]
    value = cond.value
    if cond.operator == "equals":
        return col == value
    if cond.operator == "not_equals":
        # sessions without the attribute are not equal to anything
        return or_(col != value, col.is_(None))

    text = "" if value is None else str(value)
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    if cond.operator == "contains":
        return col.ilike(f"%{escaped}%", escape="\\")
    return col.ilike(f"{escaped}%", escape="\\")


def build_query(cohort: Cohort) -> list:
    """SQL criteria over TrackedSession for the cohort, always scoped to its project."""
    crit = [TrackedSession.project_id == cohort.project_id]
    conds = parse_conditions(cohort.conditions)

    if isinstance(conds, SimpleConditions):
        crit.extend(condition_clause(c) for c in conds.conditions)
    elif isinstance(conds, StructuredConditions):
        crit.extend(condition_clause(c) for c in conds.properties)
        if conds.events:
            # event conditions are not evaluated against sessions
            logger.warning(
                "cohort %s: ignoring %d event condition(s)", cohort.id, len(conds.events)
            )
    return crit


class CohortEngine:
    def __init__(self, store: AnalyticsStore):
        self.store = store

    def get(self, cohort_id: str) -> Cohort:
        cohort = self.store.get(Cohort, cohort_id)
        if cohort is None:
            raise NotFoundError(f"Cohort {cohort_id} not found")
        return cohort

    def user_count(self, cohort: Cohort) -> int:
        return len(self.store.distinct(TrackedSession.user_id, *build_query(cohort)))

    def refresh_user_count(self, cohort: Cohort) -> int:
        """Recomputes the cached count; writes only when it moved."""
        count = self.user_count(cohort)
        if cohort.user_count != count:
            cohort.user_count = count
            self.store.commit()
        return count

    def analyze(self, cohort_id: str, date_range: Optional[str] = None, now: Optional[datetime] = None) -> CohortAnalysis:
        cohort = self.get(cohort_id)
        now = now or utcnow()
        label, since = resolve_date_range(date_range, now=now)
        base = build_query(cohort)

        sessions = self.store.find(
            (TrackedSession.user_id, TrackedSession.start_time, TrackedSession.duration),
            *base,
            TrackedSession.start_time >= since,
            order_by=(TrackedSession.start_time,),
        )
        users = sorted({s.user_id for s in sessions})

        retention = self._weekly_retention(sessions, len(users), now - since)
        behavior = self._behavior(cohort, base, sessions, users, since, now)

        return CohortAnalysis(
            cohort_id=cohort.id,
            cohort_name=cohort.name,
            date_range=label,
            user_count=len(users),
            retention=retention,
            behavior=behavior,
        )

    @staticmethod
    def _weekly_retention(sessions, base_size: int, window: timedelta) -> List[RetentionPoint]:
        """
        Weeks are counted from each user's own first session in the window,
        not from the window start, so week 0 holds every active member.
        """
        weeks = max(1, math.ceil(window / WEEK))

        # sessions come ordered by start_time, so the first one seen is the user's week 0
        first_seen: Dict[str, datetime] = {}
        active: List[set] = [set() for _ in range(weeks)]
        for s in sessions:
            start = first_seen.setdefault(s.user_id, s.start_time)
            w = int((s.start_time - start) / WEEK)
            if w < weeks:
                active[w].add(s.user_id)

        return [
            RetentionPoint(week=f"Week {w + 1}", retention=pct(len(active[w]), base_size), users=len(active[w]))
            for w in range(weeks)
        ]

    def _behavior(self, cohort: Cohort, base: list, sessions, users: List[str], since: datetime, now: datetime) -> List[BehaviorMetric]:
        n = len(users)
        avg_sessions = round_half_up(len(sessions) / n, 1) if n else 0.0

        total_events = 0
        if users:
            total_events = self.store.count(
                Event,
                Event.user_id.in_(users),
                Event.project_id == cohort.project_id,
                Event.timestamp >= since,
            )
        avg_events = round_half_up(total_events / n, 0) if n else 0.0

        durations = [s.duration for s in sessions if (s.duration or 0) > 0]
        avg_duration = round_half_up(sum(durations) / len(durations), 0) if durations else 0.0

        recent = self.store.distinct(
            TrackedSession.user_id, *base, TrackedSession.start_time >= now - WEEK
        )

        return [
            BehaviorMetric(metric="Avg Sessions", value=avg_sessions),
            BehaviorMetric(metric="Avg Events", value=avg_events),
            BehaviorMetric(metric="Avg Duration (sec)", value=avg_duration),
            BehaviorMetric(metric="Active Users (7d)", value=len(recent)),
        ]
