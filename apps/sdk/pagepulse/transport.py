from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
import requests

from pagepulse.config import CaptureConfig
from pagepulse.errors import TransportError

logger = logging.getLogger(__name__)

USER_AGENT = "pagepulse-python/0.3"


class Transport:
    """
    Async delivery over one shared httpx.AsyncClient, plus a blocking
    fire-and-forget beacon for page exit.
    """

    def __init__(self, config: CaptureConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        self._owns_client = client is None
        self.closed = False

    @property
    def client(self) -> httpx.AsyncClient:
        if self.closed:
            raise TransportError("transport is closed")
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.request_timeout_s,
                headers={"User-Agent": USER_AGENT},
            )
        return self._client

    async def post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self.config.url(path)
        try:
            r = await self.client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"POST {path} failed: {e}") from e
        if r.status_code >= 400:
            raise TransportError(f"POST {path} answered {r.status_code}", status=r.status_code)
        try:
            return r.json()
        except ValueError:
            return {}

    async def send_events(self, session_id: str, user_id: str, events: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self.post(
            self.config.batch_path,
            {
                "sessionId": session_id,
                "userId": user_id,
                "projectId": self.config.project_id,
                "interactions": events,
            },
        )

    async def send_performance(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.post(self.config.performance_path, payload)

    async def send_frames(self, session_id: str, frames: List[Any], **identity: Any) -> Dict[str, Any]:
        return await self.post(self.config.recording_path, self.frames_payload(session_id, frames, **identity))

    async def complete_session(self, session_id: str) -> Dict[str, Any]:
        return await self.post(self.config.complete_path.format(session_id=session_id), {})

    def frames_payload(self, session_id: str, frames: List[Any], **identity: Any) -> Dict[str, Any]:
        payload = {"sessionId": session_id, "projectId": self.config.project_id, "events": frames}
        payload.update({k: v for k, v in identity.items() if v is not None})
        return payload

    def beacon(self, path: str, payload: Dict[str, Any]) -> bool:
        """Blocking POST with a short timeout. Failures are logged and accepted as loss."""
        try:
            r = requests.post(
                self.config.url(path),
                json=payload,
                timeout=self.config.beacon_timeout_s,
                headers={"User-Agent": USER_AGENT},
            )
        except requests.RequestException as e:
            logger.warning("beacon to %s lost: %s", path, e)
            return False
        if not r.ok:
            logger.warning("beacon to %s answered %s", path, r.status_code)
            return False
        return True

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
        self.closed = True
