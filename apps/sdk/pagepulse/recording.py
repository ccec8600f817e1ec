from __future__ import annotations

import asyncio
import logging
from itertools import groupby
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Protocol

from pagepulse.buffer import EventBuffer
from pagepulse.config import CaptureConfig
from pagepulse.errors import TransportError
from pagepulse.transport import Transport

logger = logging.getLogger(__name__)

Emit = Callable[[Any], None]


class Recorder(Protocol):
    """Produces opaque replay frames. ``start`` returns the callable that stops it."""

    def start(self, emit: Emit) -> Callable[[], None]: ...


class PendingFrame(NamedTuple):
    session_id: str
    recording_id: Optional[str]
    frame: Any


def _by_recording(frames: List[PendingFrame]):
    """Consecutive runs of frames that belong to the same recording."""
    for key, run in groupby(frames, key=lambda p: (p.session_id, p.recording_id)):
        yield key, list(run)


class RecordingRelay:
    """
    Buffers frames from a Recorder and relays them to the recording endpoint,
    every ``recording_flush_ms`` or as soon as ``recording_max_frames`` pile up.
    Each buffered frame keeps the session it was recorded in, so frames left
    over from a stopped recording are never sent under a later one.
    """

    def __init__(
        self,
        config: CaptureConfig,
        transport: Transport,
        recorder: Recorder,
        suppressed: Callable[[], bool] = lambda: False,
        identity: Callable[[], Dict[str, Any]] = dict,
    ):
        self.config = config
        self.transport = transport
        self.recorder = recorder
        self.suppressed = suppressed
        self.identity = identity

        self.session_id: Optional[str] = None
        self.recording_id: Optional[str] = None
        self.frames = EventBuffer(max(config.max_buffer, config.recording_max_frames), name="frames")

        self._stop_recorder: Optional[Callable[[], None]] = None
        self._timer: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_again = False
        self._stopping: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._stop_recorder is not None

    def start(self, session_id: str, recording_id: Optional[str] = None) -> bool:
        if self.active:
            return True
        if self.suppressed():
            logger.debug("recording start refused: capture suppressed")
            return False

        self.session_id = session_id
        self.recording_id = recording_id
        self._stop_recorder = self.recorder.start(self._emit)
        self._timer = asyncio.get_running_loop().create_task(self._flush_timer())
        logger.info("recording started for session %s", session_id)
        return True

    def _emit(self, frame: Any) -> None:
        if not self.active:
            return
        if self.suppressed():
            # suppression began mid-recording
            if self._stopping is None:
                self._stopping = asyncio.get_running_loop().create_task(self.stop())
            return
        self.frames.push(PendingFrame(self.session_id, self.recording_id, frame))
        if len(self.frames) >= self.config.recording_max_frames:
            self.request_flush()

    def request_flush(self) -> Optional[asyncio.Task]:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_again = True
            return self._flush_task
        if not self.frames:
            return None
        self._flush_task = asyncio.get_running_loop().create_task(self._run_flush())
        return self._flush_task

    async def flush(self) -> None:
        while self._flush_task is not None and not self._flush_task.done():
            self._flush_again = True
            await self._flush_task
        if self.frames:
            self._flush_task = asyncio.get_running_loop().create_task(self._run_flush())
            await self._flush_task

    async def _run_flush(self) -> None:
        while True:
            self._flush_again = False
            ok = await self._flush_once()
            if not (ok and self._flush_again and self.frames):
                return

    async def _flush_once(self) -> bool:
        if self.suppressed():
            return False
        batch = self.frames.drain()
        sent = 0
        for (session_id, recording_id), run in _by_recording(batch):
            try:
                await self.transport.send_frames(
                    session_id,
                    [p.frame for p in run],
                    recordingId=recording_id,
                    userId=self.identity().get("userId"),
                )
            except TransportError as e:
                self.frames.requeue(batch[sent:])
                logger.warning("relay of %d frames for session %s failed: %s", len(batch) - sent, session_id, e)
                return False
            sent += len(run)
        return True

    async def _flush_timer(self) -> None:
        while True:
            await asyncio.sleep(self.config.recording_flush_ms / 1000)
            self.request_flush()

    def _release(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._stop_recorder is not None:
            try:
                self._stop_recorder()
            except Exception:
                logger.exception("recorder failed to stop")
            self._stop_recorder = None

    async def stop(self) -> None:
        """Flushes what is left, releases the recorder and closes the recording server-side."""
        if not self.active:
            return
        session_id = self.session_id
        self._release()
        await self.flush()
        self._stopping = None

        if session_id is None or self.suppressed():
            return
        try:
            await self.transport.complete_session(session_id)
        except TransportError as e:
            logger.warning("could not close recording for session %s: %s", session_id, e)
        logger.info("recording stopped for session %s", session_id)

    def on_reconnect(self) -> None:
        self.request_flush()

    def flush_on_unload(self) -> None:
        if not self.active:
            return
        session_id = self.session_id
        self._release()
        if session_id is None or self.suppressed():
            return
        for (owner, recording_id), run in _by_recording(self.frames.drain()):
            self.transport.beacon(
                self.config.recording_path,
                self.transport.frames_payload(owner, [p.frame for p in run], recordingId=recording_id),
            )
        self.transport.beacon(self.config.complete_path.format(session_id=session_id), {})
