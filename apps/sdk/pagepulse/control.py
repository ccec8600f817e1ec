"""
WebSocket control channel for remotely triggered session recording.

Joins the project room on the server and turns ``recording-start`` /
``recording-stop`` messages into relay calls.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

import websockets

from pagepulse.config import CaptureConfig
from pagepulse.recording import RecordingRelay

logger = logging.getLogger(__name__)


class RecordingControlChannel:
    def __init__(
        self,
        config: CaptureConfig,
        relay: RecordingRelay,
        session_id: Callable[[], str],
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.config = config
        self.relay = relay
        self.session_id = session_id
        self._connect = connect
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self.connected = False

    async def handle_message(self, raw: Any) -> None:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            try:
                msg = json.loads(raw)
            except ValueError:
                logger.warning("ignoring malformed control message")
                return
        else:
            msg = raw
        if not isinstance(msg, dict):
            return

        kind = msg.get("type")
        if kind == "recording-start":
            self.relay.start(self.session_id(), msg.get("recordingId"))
        elif kind == "recording-stop":
            await self.relay.stop()
        elif kind != "pong":
            logger.debug("ignoring control message %r", kind)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._closing = False
            self._task = asyncio.get_running_loop().create_task(self.run())

    async def run(self) -> None:
        """Connects and listens; reconnects with capped backoff, gives up after the configured attempts."""
        url = self.config.control_url()
        attempts = 0
        ever_connected = False

        while not self._closing:
            try:
                async with self._connect(url) as ws:
                    self.connected = True
                    if ever_connected:
                        # frames buffered while we were away
                        self.relay.on_reconnect()
                    ever_connected = True
                    attempts = 0
                    async for raw in ws:
                        await self.handle_message(raw)
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
                logger.warning("recording control channel dropped: %s", e)
            finally:
                self.connected = False

            if self._closing:
                break
            attempts += 1
            if attempts > self.config.control_max_reconnects:
                logger.error("recording control channel gave up after %d attempts", attempts - 1)
                await self.relay.stop()
                return
            delay = min(
                self.config.control_reconnect_max_ms,
                self.config.control_reconnect_base_ms * (2 ** (attempts - 1)),
            )
            await asyncio.sleep(delay / 1000)

    async def close(self) -> None:
        self._closing = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
