from __future__ import annotations

import logging
from bisect import bisect_right
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import or_

from app.core.errors import NotFoundError, ValidationError
from app.core.store import AnalyticsStore
from app.models.analysis import Funnel
from app.models.event import Event
from app.schemas.analysis import FunnelAnalysis, FunnelStep, StepResult
from app.telemetry_utils import escape_like, pct, resolve_date_range, round_half_up, utcnow

logger = logging.getLogger(__name__)


def _ilike_contains(column, value: str):
    return column.ilike(f"%{escape_like(value)}%", escape="\\")


def _ilike_prefix(column, value: str):
    return column.ilike(f"{escape_like(value)}%", escape="\\")


@dataclass(frozen=True)
class SegmentFilters:
    device: Optional[str] = None
    country: Optional[str] = None
    utm_source: Optional[str] = None
    referrer_contains: Optional[str] = None
    path_prefix: Optional[str] = None

    @property
    def active(self) -> bool:
        return any(getattr(self, f.name) for f in fields(self))

    def summary(self) -> Dict[str, str]:
        names = {
            "device": "device",
            "country": "country",
            "utm_source": "utmSource",
            "referrer_contains": "referrerContains",
            "path_prefix": "pathPrefix",
        }
        return {wire: getattr(self, attr) for attr, wire in names.items() if getattr(self, attr)}

    def criteria(self, step: Dict[str, Any]) -> list:
        out = []
        if self.device:
            out.append(Event.device_type == self.device)
        if self.country:
            out.append(Event.country == self.country)
        if self.referrer_contains:
            out.append(_ilike_contains(Event.referrer, self.referrer_contains))
        if self.path_prefix and not step.get("pageURL"):
            out.append(_ilike_prefix(Event.page_url, self.path_prefix))
        if self.utm_source:
            out.append(
                or_(
                    Event.utm_source.ilike(escape_like(self.utm_source), escape="\\"),
                    _ilike_contains(Event.event_name, self.utm_source),
                )
            )
        return out


def normalize_steps(steps: Sequence[Any]) -> List[Dict[str, Any]]:
    """
    Validates and orders funnel steps. Missing orders are assigned by position
    (1-based); the result is sorted by order with camelCase keys.
    """
    if not steps or len(steps) < 2:
        raise ValidationError("A funnel needs at least 2 steps")

    out = []
    for i, raw in enumerate(steps):
        step = raw if isinstance(raw, FunnelStep) else FunnelStep.model_validate(raw)
        d = step.model_dump(by_alias=True, exclude_none=True)
        if d.get("order") is None:
            d["order"] = i + 1
        out.append(d)

    orders = [d["order"] for d in out]
    if len(set(orders)) != len(orders):
        raise ValidationError(f"Duplicate step orders: {sorted(orders)}")
    return sorted(out, key=lambda d: d["order"])


class FunnelEngine:
    def __init__(self, store: AnalyticsStore):
        self.store = store

    def get(self, funnel_id: str) -> Funnel:
        funnel = self.store.get(Funnel, funnel_id)
        if funnel is None:
            raise NotFoundError(f"Funnel {funnel_id} not found")
        return funnel

    # -------------------------------------------------------------------------
    # per-step building blocks
    # -------------------------------------------------------------------------
    def step_criteria(
        self,
        funnel: Funnel,
        step: Dict[str, Any],
        since: datetime,
        filters: Optional[SegmentFilters] = None,
    ) -> list:
        crit = [
            Event.project_id == funnel.project_id,
            Event.timestamp >= since,
            Event.event_type == step["eventType"],
        ]
        if step.get("pageURL"):
            crit.append(Event.page_url == step["pageURL"])

        selector = step.get("elementSelector")
        if selector:
            crit.append(
                or_(
                    _ilike_contains(Event.element_class, selector.lstrip(".")),
                    _ilike_contains(Event.element_id, selector.lstrip("#")),
                )
            )
        if filters is not None and filters.active:
            crit.extend(filters.criteria(step))
        return crit

    def step_users(self, criteria: list) -> int:
        return len(self.store.distinct(Event.user_id, *criteria))

    def avg_time_to_next(self, current: list, nxt: list) -> Optional[int]:
        """
        For each user, their earliest event at this step against their earliest
        next-step event strictly after it. Mean delta in seconds, None if nobody advanced.
        """
        first_at: Dict[str, datetime] = {}
        for user_id, ts in self.store.find((Event.user_id, Event.timestamp), *current, order_by=(Event.timestamp,)):
            first_at.setdefault(user_id, ts)
        if not first_at:
            return None

        later: Dict[str, List[datetime]] = {}
        for user_id, ts in self.store.find(
            (Event.user_id, Event.timestamp),
            *nxt,
            Event.user_id.in_(list(first_at)),
            order_by=(Event.timestamp,),
        ):
            later.setdefault(user_id, []).append(ts)

        deltas = []
        for user_id, start in first_at.items():
            times = later.get(user_id)
            if not times:
                continue
            idx = bisect_right(times, start)
            if idx < len(times):
                deltas.append((times[idx] - start).total_seconds())

        if not deltas:
            return None
        return int(round_half_up(sum(deltas) / len(deltas), 0))

    def compute_steps(
        self,
        funnel: Funnel,
        since: datetime,
        filters: Optional[SegmentFilters] = None,
        with_timing: bool = True,
    ) -> List[StepResult]:
        steps = normalize_steps(funnel.steps)
        crits = [self.step_criteria(funnel, s, since, filters) for s in steps]
        counts = [self.step_users(c) for c in crits]

        out = []
        for i, step in enumerate(steps):
            if i == 0:
                conversion, dropoff = 100.0, 0.0
            else:
                conversion = pct(counts[i], counts[i - 1])
                dropoff = round_half_up(100 - conversion, 1)

            timing = None
            if with_timing and i < len(steps) - 1:
                timing = self.avg_time_to_next(crits[i], crits[i + 1])

            out.append(
                StepResult(
                    step_name=step["name"],
                    order=step["order"],
                    users=counts[i],
                    conversion_rate=conversion,
                    dropoff_rate=dropoff,
                    avg_time_to_next=timing,
                )
            )
        return out

    # -------------------------------------------------------------------------
    # analysis
    # -------------------------------------------------------------------------
    def analyze(
        self,
        funnel_id: str,
        date_range: Optional[str] = None,
        filters: Optional[SegmentFilters] = None,
    ) -> FunnelAnalysis:
        funnel = self.get(funnel_id)
        label, since = resolve_date_range(date_range)
        filters = filters or SegmentFilters()
        filtered_on = filters.active

        baseline = self.compute_steps(funnel, since, None, with_timing=not filtered_on)
        result = self.compute_steps(funnel, since, filters) if filtered_on else baseline

        baseline_rate = conversion_rate(baseline)
        filtered_rate = conversion_rate(result)
        lift = conversion_lift(baseline, result) if filtered_on else 0.0

        self._refresh_stats(funnel, baseline, label)

        return FunnelAnalysis(
            funnel_id=funnel.id,
            funnel_name=funnel.name,
            date_range=label,
            steps=result,
            total_entered=result[0].users,
            completed=result[-1].users,
            overall_conversion=pct(result[-1].users, result[0].users),
            filters_applied=filtered_on,
            filters=filters.summary(),
            baseline_steps=baseline if filtered_on else None,
            baseline_rate=baseline_rate,
            filtered_rate=filtered_rate,
            conversion_lift_pct=lift,
        )

    def _refresh_stats(self, funnel: Funnel, baseline: List[StepResult], label: str) -> None:
        snapshot = {
            "totalEntered": baseline[0].users,
            "completed": baseline[-1].users,
            "conversionRate": pct(baseline[-1].users, baseline[0].users),
            "dropoffByStep": [
                {"stepName": s.step_name, "dropoffRate": s.dropoff_rate} for s in baseline
            ],
            "dateRange": label,
        }
        current = dict(funnel.stats or {})
        current.pop("analyzedAt", None)
        if current == snapshot:
            return

        snapshot["analyzedAt"] = utcnow().isoformat()
        funnel.stats = snapshot
        self.store.commit()
        logger.debug("funnel %s stats refreshed", funnel.id)


def _raw_rate(steps: List[StepResult]) -> float:
    if not steps or not steps[0].users:
        return 0.0
    return steps[-1].users / steps[0].users * 100


def conversion_rate(steps: List[StepResult]) -> float:
    """Last-step users over first-step users, as a percentage with 2 decimals."""
    return round_half_up(_raw_rate(steps), 2)


def conversion_lift(baseline: List[StepResult], filtered: List[StepResult]) -> float:
    base = _raw_rate(baseline)
    if not base:
        return 0.0
    return round_half_up((_raw_rate(filtered) - base) / base * 100, 2)
