from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from app.core.config import settings
from app.core.errors import ValidationError
from app.core.store import AnalyticsStore
from app.models.event import Event
from app.schemas.analysis import HeatmapAnalysis, HeatmapCell, HeatmapSample
from app.telemetry_utils import escape_like, resolve_date_range

logger = logging.getLogger(__name__)

# query value -> stored eventType
HEATMAP_TYPES = {"click": "click", "move": "mousemove", "mousemove": "mousemove"}

DEFAULT_GRID_SIZE = 20
MAX_RAW_POINTS = 5000


def _coord(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def point_of(payload: Any) -> Optional[Tuple[float, float]]:
    """(x, y) from event metadata, or None when either coordinate is missing or not a number."""
    if not isinstance(payload, dict):
        return None
    x, y = _coord(payload.get("x")), _coord(payload.get("y"))
    if x is None or y is None:
        return None
    return x, y


def page_clause(page_url: str):
    """Exact page match; ``*`` matches any run of characters (``/products/*``)."""
    if "*" not in page_url:
        return Event.page_url == page_url
    pattern = "%".join(escape_like(part) for part in page_url.split("*"))
    return Event.page_url.like(pattern, escape="\\")


class HeatmapEngine:
    """Reads click and mousemove coordinates back out of the event store."""

    def __init__(self, store: AnalyticsStore):
        self.store = store

    def _criteria(self, page_url: Optional[str], event_type: str, project_id: Optional[str],
                  date_range: Optional[str], device: Optional[str]) -> Tuple[str, str, list]:
        if not page_url:
            raise ValidationError("pageURL is required")
        kind = HEATMAP_TYPES.get(event_type)
        if kind is None:
            raise ValidationError(
                f"Unknown heatmap type {event_type!r}; expected one of {', '.join(HEATMAP_TYPES)}"
            )
        label, since = resolve_date_range(date_range)

        criteria = [
            page_clause(page_url),
            Event.event_type == kind,
            Event.project_id == (project_id or settings.default_project_id),
            Event.timestamp >= since,
        ]
        if device:
            criteria.append(Event.device_type == device)
        return kind, label, criteria

    def aggregate(
        self,
        page_url: Optional[str],
        event_type: str = "click",
        project_id: Optional[str] = None,
        date_range: Optional[str] = None,
        device: Optional[str] = None,
        grid_size: int = DEFAULT_GRID_SIZE,
    ) -> HeatmapAnalysis:
        """
        Buckets every sampled point into ``grid_size`` pixel cells. Cells are
        ordered hottest first; events without numeric coordinates are skipped.
        """
        if grid_size < 1:
            raise ValidationError("gridSize must be at least 1")
        kind, label, criteria = self._criteria(page_url, event_type, project_id, date_range, device)

        rows = self.store.find((Event.user_id, Event.payload), *criteria)

        cells: Dict[Tuple[int, int], int] = {}
        users = set()
        skipped = 0
        for user_id, payload in rows:
            point = point_of(payload)
            if point is None:
                skipped += 1
                continue
            x, y = point
            key = (int(x // grid_size) * grid_size, int(y // grid_size) * grid_size)
            cells[key] = cells.get(key, 0) + 1
            users.add(user_id)

        if skipped:
            logger.debug("heatmap for %s skipped %d events without coordinates", page_url, skipped)

        points = [
            HeatmapCell(x=x, y=y, value=value)
            for (x, y), value in sorted(cells.items(), key=lambda kv: (-kv[1], kv[0][1], kv[0][0]))
        ]
        return HeatmapAnalysis(
            page_url=page_url,
            event_type=kind,
            date_range=label,
            device=device,
            grid_size=grid_size,
            points=points,
            total_interactions=sum(cells.values()),
            unique_users=len(users),
            max_value=max(cells.values(), default=0),
        )

    def raw(
        self,
        page_url: Optional[str],
        event_type: str = "click",
        project_id: Optional[str] = None,
        date_range: Optional[str] = None,
        device: Optional[str] = None,
        limit: int = 1000,
    ) -> List[HeatmapSample]:
        if not 1 <= limit <= MAX_RAW_POINTS:
            raise ValidationError(f"limit must be between 1 and {MAX_RAW_POINTS}")
        _, _, criteria = self._criteria(page_url, event_type, project_id, date_range, device)

        rows = self.store.find(
            (Event.payload, Event.timestamp),
            *criteria,
            order_by=(Event.timestamp.desc(),),
            limit=limit,
        )
        out = []
        for payload, ts in rows:
            point = point_of(payload)
            if point is not None:
                out.append(HeatmapSample(x=point[0], y=point[1], timestamp=ts))
        return out
