import asyncio

import pytest

from pagepulse.capture import TelemetryCapture
from pagepulse.config import CaptureConfig
from pagepulse.dom import Page
from pagepulse.errors import TransportError
from pagepulse.storage import MemoryStorage
from pagepulse.transport import Transport


class FakeClock:
    def __init__(self, start=1_700_000_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeTransport(Transport):
    """Records every delivery instead of sending it. Set ``fail`` to make sends raise."""

    def __init__(self, config=None):
        super().__init__(config or CaptureConfig())
        self.batches = []
        self.performance = []
        self.frames = []
        self.completed = []
        self.beacons = []
        self.fail = False
        self.gate = None  # an asyncio.Event that holds sends in flight
        self.closed = False

    async def _deliver(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise TransportError("offline", status=503)

    async def send_events(self, session_id, user_id, events):
        await self._deliver()
        self.batches.append(list(events))
        return {"count": len(events)}

    async def send_performance(self, payload):
        await self._deliver()
        self.performance.append(payload)
        return {}

    async def send_frames(self, session_id, frames, **identity):
        await self._deliver()
        self.frames.append(self.frames_payload(session_id, frames, **identity))
        return {}

    async def complete_session(self, session_id):
        await self._deliver()
        self.completed.append(session_id)
        return {}

    def beacon(self, path, payload):
        self.beacons.append((path, payload))
        return not self.fail

    async def aclose(self):
        self.closed = True


async def settle(rounds=5):
    """Lets tasks created by the code under test run to their next await."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def make_capture(transport, storage, clock):
    def _make(url="https://shop.test/products/1", **config):
        config.setdefault("flush_interval_ms", 600_000)
        config.setdefault("performance_interval_ms", 600_000)
        cfg = CaptureConfig(api_url="https://collect.test", **config)
        transport.config = cfg
        return TelemetryCapture(cfg, page=Page(url=url, title="Product"), transport=transport, storage=storage, clock=clock)

    return _make


@pytest.fixture
def run():
    return asyncio.run


@pytest.fixture
def wait():
    return settle
