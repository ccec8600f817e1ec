from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from pagepulse.config import CaptureConfig
from pagepulse.errors import TransportError
from pagepulse.transport import Transport

logger = logging.getLogger(__name__)

VITALS = ("ttfb", "fcp", "lcp", "cls", "inp", "fid", "loadTime", "domReadyTime", "dnsTime")


class PerformanceReporter:
    """
    Collects web vitals, JS errors and API call timings, and ships them to the
    performance endpoint periodically and on page exit. Lists are cleared only
    after a successful send.
    """

    def __init__(
        self,
        config: CaptureConfig,
        transport: Transport,
        identity: Callable[[], Dict[str, Any]],
        suppressed: Callable[[], bool] = lambda: False,
        clock: Callable[[], float] = lambda: time.time() * 1000,
    ):
        self.config = config
        self.transport = transport
        self.identity = identity
        self.suppressed = suppressed
        self.clock = clock

        self.vitals: Dict[str, float] = {}
        self.js_errors: List[Dict[str, Any]] = []
        self.api_calls: List[Dict[str, Any]] = []
        self._task: Optional[asyncio.Task] = None

    def record_vitals(self, **metrics: float) -> None:
        for name, value in metrics.items():
            if name in VITALS and value is not None:
                self.vitals[name] = float(value)

    def record_error(self, message: str, source: Optional[str] = None, line: Optional[int] = None,
                     column: Optional[int] = None, stack: Optional[str] = None) -> None:
        self.js_errors.append({
            "message": message,
            "source": source,
            "line": line,
            "column": column,
            "stack": stack,
            "timestamp": self.clock(),
        })

    def record_api_call(self, url: str, method: str, status: int, duration_ms: float,
                        error: Optional[str] = None) -> None:
        call = {
            "url": url,
            "method": method.upper(),
            "status": status,
            "duration": round(duration_ms, 1),
            "timestamp": self.clock(),
        }
        if error:
            call["error"] = error
        self.api_calls.append(call)

    def has_data(self) -> bool:
        return bool(self.js_errors or self.api_calls or any(self.vitals.values()))

    def payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = dict(self.identity())
        body.update(self.vitals)
        body["jsErrors"] = list(self.js_errors)
        body["apiCalls"] = list(self.api_calls)
        body["timestamp"] = self.clock()
        return body

    def _clear(self, sent_errors: int, sent_calls: int) -> None:
        # keep anything recorded while the request was in flight
        del self.js_errors[:sent_errors]
        del self.api_calls[:sent_calls]
        self.vitals.clear()

    async def send(self) -> bool:
        if self.suppressed() or not self.has_data():
            return False
        body = self.payload()
        try:
            await self.transport.send_performance(body)
        except TransportError as e:
            logger.warning("performance report not delivered: %s", e)
            return False
        self._clear(len(body["jsErrors"]), len(body["apiCalls"]))
        return True

    def flush_on_unload(self) -> bool:
        if self.suppressed() or not self.has_data():
            return False
        body = self.payload()
        if self.transport.beacon(self.config.performance_path, body):
            self._clear(len(body["jsErrors"]), len(body["apiCalls"]))
            return True
        return False

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.performance_interval_ms / 1000)
            await self.send()


class InstrumentedClient:
    """
    Opt-in httpx.AsyncClient wrapper that times every call into a reporter.
    A failed call is recorded with status 0 and returns None instead of raising.
    """

    def __init__(self, reporter: PerformanceReporter, client: Optional[httpx.AsyncClient] = None, **client_kwargs: Any):
        self.reporter = reporter
        self._client = client or httpx.AsyncClient(**client_kwargs)
        self._owns_client = client is None

    def _is_own_traffic(self, url: str) -> bool:
        # the reporter's own deliveries are not application calls
        return url.startswith(self.reporter.config.api_url.rstrip("/") + "/api/tracking") or url.startswith(
            self.reporter.config.api_url.rstrip("/") + "/api/analytics"
        )

    async def request(self, method: str, url: str, **kwargs: Any) -> Optional[httpx.Response]:
        started = time.perf_counter()
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            elapsed = (time.perf_counter() - started) * 1000
            if not self._is_own_traffic(str(url)):
                self.reporter.record_api_call(str(url), method, 0, elapsed, error=str(e) or type(e).__name__)
            logger.debug("instrumented %s %s failed: %s", method, url, e)
            return None

        elapsed = (time.perf_counter() - started) * 1000
        if not self._is_own_traffic(str(url)):
            self.reporter.record_api_call(str(url), method, response.status_code, elapsed)
        return response

    async def get(self, url: str, **kwargs: Any) -> Optional[httpx.Response]:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> Optional[httpx.Response]:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> Optional[httpx.Response]:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> Optional[httpx.Response]:
        return await self.request("DELETE", url, **kwargs)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "InstrumentedClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()
