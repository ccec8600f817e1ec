"""
Telemetry capture for one page.

``TelemetryCapture`` turns host activity handed to :meth:`dispatch` into event
records, keeps them in a bounded buffer and delivers them in batches. It never
raises into the host: listener failures are logged per listener and delivery
failures are recovered by requeueing.

Nothing is captured and no request is made while capture is suppressed
(administrator, admin path, tracking disabled, or opted out).
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from pagepulse import storage as keys
from pagepulse.buffer import EventBuffer, RetryPolicy
from pagepulse.config import CaptureConfig
from pagepulse.dom import (
    ErrorInfo,
    InputEvent,
    Page,
    PointerEvent,
    RejectionInfo,
    ResizeEvent,
    ScrollEvent,
    SubmitEvent,
    VisibilityEvent,
)
from pagepulse.errors import CaptureDropped
from pagepulse.network import PerformanceReporter
from pagepulse.storage import MemoryStorage, Storage
from pagepulse.transport import Transport

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]

_SKIPPED_INPUTS = ("password", "hidden")


def _system_clock() -> float:
    return time.time() * 1000


class TelemetryCapture:
    def __init__(
        self,
        config: Optional[CaptureConfig] = None,
        *,
        page: Optional[Page] = None,
        transport: Optional[Transport] = None,
        storage: Optional[Storage] = None,
        clock: Callable[[], float] = _system_clock,
    ):
        self.config = config or CaptureConfig()
        self.page = page or Page(url="/")
        self.transport = transport or Transport(self.config)
        self.storage = storage or MemoryStorage()
        self.clock = clock

        self.session_id = str(uuid.uuid4())
        self.user_id = self.storage.get(keys.USER_ID) or "anonymous"
        self.is_admin = self.storage.get(keys.IS_ADMIN) == "true"

        self.buffer = EventBuffer(self.config.max_buffer)
        self.retry = RetryPolicy(self.config.retry_base_ms, self.config.retry_max_ms)
        self.dropped: Counter = Counter()

        self.performance = PerformanceReporter(
            self.config, self.transport, self.identity, suppressed=lambda: not self.should_track(), clock=clock
        )

        self._listeners: Dict[str, List[Listener]] = {}
        self._unload_hooks: List[Callable[[], None]] = []
        self._initialized = False
        self._closed = False

        self._flush_task: Optional[asyncio.Task] = None
        self._flush_again = False
        self._backoff_until = 0.0
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._timer_task: Optional[asyncio.Task] = None

        self._last_scroll = float("-inf")
        self._last_move = float("-inf")
        self._hover_started: Dict[Any, float] = {}
        self._page_started = clock()
        self._hidden_at: Optional[float] = None

    # -------------------------------------------------------------------------
    # lifecycle
    # -------------------------------------------------------------------------
    async def init(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        self._closed = False

        self.on("click", self._on_click)
        self.on("scroll", self._on_scroll)
        if self.config.enable_heatmaps:
            self.on("mousemove", self._on_mousemove)
        self.on("mouseover", self._on_mouseover)
        self.on("mouseout", self._on_mouseout)
        self.on("input", self._on_input)
        self.on("change", self._on_input)
        self.on("submit", self._on_submit)
        self.on("visibilitychange", self._on_visibility)
        self.on("resize", self._on_resize)
        self.on("error", self._on_error)
        self.on("unhandledrejection", self._on_rejection)
        self.on("navigate", self._on_navigate)
        self.on("pagehide", lambda _evt: self.flush_on_unload())

        self._timer_task = asyncio.get_running_loop().create_task(self._flush_timer())
        self.performance.start()
        self.track_page_view()

    async def destroy(self) -> None:
        """Stops timers, delivers what is left once, and releases the client. No retry outlives it."""
        self._closed = True
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None
        self._cancel_retry()
        await self.performance.stop()

        await self.flush()
        self._cancel_retry()
        await self.transport.aclose()
        self._listeners.clear()
        self._initialized = False

    # -------------------------------------------------------------------------
    # suppression
    # -------------------------------------------------------------------------
    def should_track(self) -> bool:
        return self._suppression_reason() is None

    def _suppression_reason(self) -> Optional[str]:
        if self.is_admin:
            return "admin_user"
        prefix = self.config.admin_path_prefix.rstrip("/")
        path = self.page.path
        if path == prefix or path.startswith(prefix + "/"):
            return "admin_path"
        if self.storage.get(keys.TRACKING_ENABLED) == "false":
            return "tracking_disabled"
        if self.storage.get(keys.OPT_OUT) == "true":
            return "opted_out"
        return None

    def set_admin_status(self, is_admin: bool) -> None:
        self.is_admin = bool(is_admin)
        self.storage.set(keys.IS_ADMIN, "true" if self.is_admin else "false")
        if self.is_admin:
            self._discard_pending("admin_user")

    def opt_out(self) -> None:
        self.storage.set(keys.OPT_OUT, "true")
        self._discard_pending("opted_out")

    def opt_in(self) -> None:
        self.storage.remove(keys.OPT_OUT)

    def _discard_pending(self, reason: str) -> None:
        pending = self.buffer.drain()
        if pending:
            self.dropped[reason] += len(pending)
            logger.debug("discarded %d pending events: %s", len(pending), reason)
        self._hover_started.clear()

    # -------------------------------------------------------------------------
    # identity
    # -------------------------------------------------------------------------
    @property
    def super_properties(self) -> Dict[str, Any]:
        raw = self.storage.get(keys.SUPER_PROPERTIES)
        if not raw:
            return {}
        try:
            props = json.loads(raw)
        except ValueError:
            return {}
        return props if isinstance(props, dict) else {}

    def set_super_properties(self, props: Dict[str, Any]) -> None:
        merged = self.super_properties
        merged.update(props or {})
        self.storage.set(keys.SUPER_PROPERTIES, json.dumps(merged))

    def identify(self, user_id: str, props: Optional[Dict[str, Any]] = None) -> None:
        self.user_id = user_id
        self.storage.set(keys.USER_ID, user_id)
        if props:
            self.set_super_properties(props)
        self.track_custom_event("identify", {"userId": user_id, **(props or {})})

    def reset(self) -> None:
        self.session_id = str(uuid.uuid4())
        self.user_id = "anonymous"
        self.storage.remove(keys.USER_ID)
        self.storage.remove(keys.SUPER_PROPERTIES)
        self.buffer.clear()
        self._hover_started.clear()

    def identity(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "projectId": self.config.project_id,
            "pageURL": self.page.url,
        }

    # -------------------------------------------------------------------------
    # dispatch
    # -------------------------------------------------------------------------
    def on(self, event_name: str, listener: Listener) -> None:
        self._listeners.setdefault(event_name, []).append(listener)

    def add_unload_hook(self, hook: Callable[[], None]) -> None:
        self._unload_hooks.append(hook)

    def dispatch(self, event_name: str, event: Any = None) -> None:
        """Runs every listener for event_name; one failing listener never stops the others."""
        if event_name not in ("navigate", "pagehide") and not self.should_track():
            self._count_drop(self._suppression_reason() or "suppressed")
            return
        for listener in list(self._listeners.get(event_name, ())):
            try:
                listener(event)
            except Exception:
                logger.exception("listener for %r failed", event_name)

    # -------------------------------------------------------------------------
    # explicit tracking
    # -------------------------------------------------------------------------
    def track_page_view(self, url: Optional[str] = None) -> bool:
        self._page_started = self.clock()
        return self._capture("pageview", "page_view", {"path": self.page.path}, page_url=url)

    def track_custom_event(self, name: str, props: Optional[Dict[str, Any]] = None) -> bool:
        return self._capture("custom", name, dict(props or {}))

    # -------------------------------------------------------------------------
    # implicit capture
    # -------------------------------------------------------------------------
    def _on_click(self, evt: PointerEvent) -> None:
        el = evt.target
        self._capture(
            "click",
            "click",
            {"x": evt.x, "y": evt.y, "tag": el.tag, "text": (el.text or "")[:100]},
            element=el,
        )

    def _on_scroll(self, evt: ScrollEvent) -> None:
        now = self.clock()
        if now - self._last_scroll < self.config.scroll_throttle_ms:
            return
        self._last_scroll = now
        self._capture("scroll", "scroll", {"scrollY": evt.scroll_y, "depth": evt.depth_pct})

    def _on_mousemove(self, evt: PointerEvent) -> None:
        now = self.clock()
        if now - self._last_move < self.config.mousemove_throttle_ms:
            return
        self._last_move = now
        self._capture(
            "mousemove",
            "mousemove",
            {"x": evt.x, "y": evt.y, "viewportWidth": self.page.width, "viewportHeight": self.page.height},
        )

    def _on_mouseover(self, evt: PointerEvent) -> None:
        # already hovering: keep the original start
        self._hover_started.setdefault(evt.target, self.clock())

    def _on_mouseout(self, evt: PointerEvent) -> None:
        started = self._hover_started.pop(evt.target, None)
        if started is None:
            return
        dwell = self.clock() - started
        if dwell < self.config.hover_threshold_ms:
            return
        self._capture("hover", "hover", {"duration": round(dwell), "tag": evt.target.tag}, element=evt.target)

    def _on_input(self, evt: InputEvent) -> None:
        el = evt.target
        input_type = (el.input_type or "text").lower()
        if input_type in _SKIPPED_INPUTS:
            return
        self._capture(
            "input",
            "input",
            {"inputType": input_type, "fieldName": el.name, "hasValue": bool(evt.value)},
            element=el,
        )

    def _on_submit(self, evt: SubmitEvent) -> None:
        self._capture("submit", "form_submit", {"formId": evt.form.id, "fieldCount": evt.field_count}, element=evt.form)
        self.request_flush()

    def _on_visibility(self, evt: VisibilityEvent) -> None:
        now = self.clock()
        if evt.hidden:
            self._hidden_at = now
            self._capture("custom", "page_hidden", {"timeOnPage": round(now - self._page_started)})
            self.request_flush()
        else:
            hidden_for = round(now - self._hidden_at) if self._hidden_at is not None else 0
            self._hidden_at = None
            self._capture("custom", "page_visible", {"hiddenFor": hidden_for})

    def _on_resize(self, evt: ResizeEvent) -> None:
        self.page = Page(self.page.url, self.page.title, self.page.referrer, evt.width, evt.height)
        self._capture("custom", "viewport_resize", {"width": evt.width, "height": evt.height})

    def _on_error(self, evt: ErrorInfo) -> None:
        self.performance.record_error(evt.message, evt.source, evt.line, evt.column, evt.stack)
        self._capture("custom", "js_error", {"message": evt.message, "source": evt.source, "line": evt.line})

    def _on_rejection(self, evt: RejectionInfo) -> None:
        self.performance.record_error(f"Unhandled rejection: {evt.reason}")
        self._capture("custom", "unhandled_rejection", {"reason": evt.reason})

    def _on_navigate(self, page: Page) -> None:
        self.page = page
        self._hover_started.clear()
        self.track_page_view()

    # -------------------------------------------------------------------------
    # buffering
    # -------------------------------------------------------------------------
    def _capture(self, event_type: str, event_name: str, metadata: Dict[str, Any],
                 element=None, page_url: Optional[str] = None) -> bool:
        try:
            self._enqueue(self._build(event_type, event_name, metadata, element, page_url))
        except CaptureDropped as d:
            self._count_drop(d.reason)
            return False
        return True

    def _count_drop(self, reason: str) -> None:
        self.dropped[reason] += 1
        logger.debug("capture dropped: %s", reason)

    def _build(self, event_type: str, event_name: str, metadata: Dict[str, Any],
               element=None, page_url: Optional[str] = None) -> Dict[str, Any]:
        merged = self.super_properties
        merged.update(metadata)
        return {
            "eventId": str(uuid.uuid4()),
            "sessionId": self.session_id,
            "userId": self.user_id,
            "projectId": self.config.project_id,
            "eventType": event_type,
            "eventName": event_name,
            "pageURL": page_url or self.page.url,
            "pageTitle": self.page.title,
            "referrer": self.page.referrer or None,
            "elementId": getattr(element, "id", None),
            "elementClass": getattr(element, "class_name", None),
            "timestamp": int(self.clock()),
            "metadata": merged,
        }

    def _enqueue(self, event: Dict[str, Any]) -> None:
        reason = self._suppression_reason()
        if reason is not None:
            raise CaptureDropped(reason)
        if not event.get("sessionId"):
            raise CaptureDropped("missing_session")
        self.buffer.push(event)
        if len(self.buffer) >= self.config.batch_size:
            self.request_flush(auto=True)

    # -------------------------------------------------------------------------
    # delivery
    # -------------------------------------------------------------------------
    def request_flush(self, auto: bool = False) -> Optional[asyncio.Task]:
        """
        Starts a flush unless one is in flight, in which case a follow-up is
        coalesced. Automatic triggers wait out the retry backoff.
        """
        if self._closed:
            return None
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_again = True
            return self._flush_task
        if not self.buffer or not self.should_track():
            return None
        if auto and self.clock() < self._backoff_until:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        self._flush_task = loop.create_task(self._run_flush())
        return self._flush_task

    async def flush(self) -> None:
        """Delivers the buffer now (ignoring backoff) and waits for it, including follow-ups."""
        while True:
            task = self._flush_task
            if task is not None and not task.done():
                self._flush_again = True
                await task
                continue
            if not self.buffer or not self.should_track():
                return
            self._flush_task = asyncio.get_running_loop().create_task(self._run_flush())
            await self._flush_task
            return

    async def _run_flush(self) -> None:
        while True:
            self._flush_again = False
            delivered = await self._flush_once()
            if not (delivered and self._flush_again and self.buffer):
                return

    async def _flush_once(self) -> bool:
        if not self.should_track():
            return False
        batch = self.buffer.drain()
        if not batch:
            return True
        try:
            await self.transport.send_events(self.session_id, self.user_id, batch)
        except Exception as e:
            self.buffer.requeue(batch)
            delay = self.retry.next_delay_ms()
            self._backoff_until = self.clock() + delay
            self._schedule_retry(delay)
            logger.warning("delivery of %d events failed, retrying in %d ms: %s", len(batch), delay, e)
            return False
        self.retry.reset()
        self._backoff_until = 0.0
        return True

    def _schedule_retry(self, delay_ms: int) -> None:
        self._cancel_retry()
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(delay_ms / 1000, self.request_flush)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def _flush_timer(self) -> None:
        while True:
            await asyncio.sleep(self.config.flush_interval_ms / 1000)
            self.request_flush(auto=True)

    def flush_on_unload(self) -> None:
        """Page exit: drain everything through the blocking beacon. Losses are accepted."""
        if self.should_track():
            batch = self.buffer.drain()
            if batch:
                ok = self.transport.beacon(
                    self.config.batch_path,
                    {
                        "sessionId": self.session_id,
                        "userId": self.user_id,
                        "projectId": self.config.project_id,
                        "interactions": batch,
                    },
                )
                if not ok:
                    self.dropped["unload_lost"] += len(batch)
            self.performance.flush_on_unload()
        for hook in list(self._unload_hooks):
            try:
                hook()
            except Exception:
                logger.exception("unload hook failed")
