"""
Host-neutral descriptions of page activity.

The host page (or a test) builds these and hands them to
``TelemetryCapture.dispatch``; nothing here talks to a browser.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse


@dataclass(frozen=True)
class Element:
    tag: str
    id: Optional[str] = None
    class_name: Optional[str] = None
    text: Optional[str] = None
    name: Optional[str] = None
    input_type: Optional[str] = None


@dataclass(frozen=True)
class Page:
    url: str
    title: str = ""
    referrer: str = ""
    width: int = 0
    height: int = 0

    @property
    def path(self) -> str:
        return urlparse(self.url).path or "/"


@dataclass(frozen=True)
class PointerEvent:
    target: Element
    x: int = 0
    y: int = 0


@dataclass(frozen=True)
class ScrollEvent:
    scroll_y: int
    page_height: int = 0
    viewport_height: int = 0

    @property
    def depth_pct(self) -> int:
        scrollable = self.page_height - self.viewport_height
        if scrollable <= 0:
            return 100
        return max(0, min(100, round(self.scroll_y / scrollable * 100)))


@dataclass(frozen=True)
class InputEvent:
    target: Element
    # read only to know whether the field is filled; never sent
    value: str = ""


@dataclass(frozen=True)
class SubmitEvent:
    form: Element
    field_count: int = 0


@dataclass(frozen=True)
class ResizeEvent:
    width: int
    height: int


@dataclass(frozen=True)
class VisibilityEvent:
    hidden: bool


@dataclass(frozen=True)
class ErrorInfo:
    message: str
    source: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    stack: Optional[str] = None


@dataclass(frozen=True)
class RejectionInfo:
    reason: str
