from __future__ import annotations

import re
import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable
from urllib.parse import parse_qs, urlparse

from app.core.errors import ValidationError

DEFAULT_DATE_RANGE = "7d"
DATE_RANGES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}

# keys stripped from client metadata at any depth (case-insensitive)
SENSITIVE_KEYS = frozenset(
    {"password", "pwd", "creditcard", "cc", "ssn", "token", "auth", "authorization", "value"}
)

_TABLET_RE = re.compile(r"ipad|tablet|kindle|silk|playbook|(android(?!.*mobile))")
_MOBILE_RE = re.compile(r"iphone|ipod|android|mobile|blackberry|opera mini|iemobile")


def utcnow() -> datetime:
    """Naive UTC, which is what every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_uuid_str(v: str | None) -> str:
    if v and len(v) >= 32:
        return v
    return str(uuid.uuid4())


def parse_ts(ts: Any) -> datetime | None:
    """
    Accepts epoch milliseconds (what the SDK sends), ISO strings or datetimes.
    Returns naive UTC, or None when the value can't be read.
    """
    if ts is None or ts == "":
        return None
    if isinstance(ts, datetime):
        if ts.tzinfo is not None:
            ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
        return ts
    if isinstance(ts, bool):
        return None
    if isinstance(ts, (int, float)):
        try:
            return datetime.fromtimestamp(ts / 1000.0, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(ts, str):
        raw = ts.strip()
        if raw.isdigit():
            return parse_ts(int(raw))
        try:
            # datetime.fromisoformat doesn't like "Z" in py<3.11 -> replace with +00:00
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parse_ts(parsed)
    return None


def guess_device_from_ua(user_agent: str | None) -> str | None:
    if not user_agent:
        return None
    ua = user_agent.lower()
    if _TABLET_RE.search(ua):
        return "tablet"
    if _MOBILE_RE.search(ua):
        return "mobile"
    return "desktop"


def guess_browser_from_ua(user_agent: str | None) -> str | None:
    if not user_agent:
        return None
    ua = user_agent.lower()
    # order matters: edge and opera also announce chrome, chrome announces safari
    for token, name in (
        ("edg/", "Edge"),
        ("opr/", "Opera"),
        ("firefox/", "Firefox"),
        ("chrome/", "Chrome"),
        ("safari/", "Safari"),
    ):
        if token in ua:
            return name
    return "Other"


def guess_os_from_ua(user_agent: str | None) -> str | None:
    if not user_agent:
        return None
    ua = user_agent.lower()
    if "windows" in ua:
        return "Windows"
    if "iphone" in ua or "ipad" in ua or "ios" in ua:
        return "iOS"
    if "android" in ua:
        return "Android"
    if "mac os" in ua or "macintosh" in ua:
        return "macOS"
    if "linux" in ua:
        return "Linux"
    return "Other"


def sanitize_metadata(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {
            k: sanitize_metadata(v)
            for k, v in obj.items()
            if str(k).lower() not in SENSITIVE_KEYS
        }
    if isinstance(obj, list):
        return [sanitize_metadata(v) for v in obj]
    return obj


def is_admin_path(url: str | None, prefixes: Iterable[str]) -> bool:
    if not url:
        return False
    path = urlparse(url).path if "://" in url else url.split("?", 1)[0]
    for prefix in prefixes:
        if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
            return True
    return False


def extract_utm_source(url: str | None) -> str | None:
    if not url or "utm_source=" not in url:
        return None
    values = parse_qs(urlparse(url).query).get("utm_source")
    return values[0] if values else None


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def resolve_date_range(date_range: str | None, now: datetime | None = None) -> tuple[str, datetime]:
    """Returns (label, since). Missing means 7d; anything unknown is rejected."""
    label = date_range or DEFAULT_DATE_RANGE
    window = DATE_RANGES.get(label)
    if window is None:
        raise ValidationError(
            f"Unknown dateRange {date_range!r}; expected one of {', '.join(DATE_RANGES)}"
        )
    return label, (now or utcnow()) - window


def round_half_up(value: float, places: int = 1) -> float:
    q = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(q, rounding=ROUND_HALF_UP))


def pct(part: float, whole: float, places: int = 1) -> float:
    if not whole:
        return 0.0
    return round_half_up(part / whole * 100, places)
