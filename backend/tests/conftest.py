"""
Test configuration
Shared fakes and fixtures for the engine tests
"""

import asyncio

import pytest

from engine.pipeline import AlertPipeline
from engine.services.control_surface import ClientControlSurface
from engine.services.presenter import OverlayPresenter
from shared.errors import PresentationError
from shared.event_bus import EventBus
from shared.store import MemoryStore


async def instant_sleep(seconds: float) -> None:
    """Stand-in for asyncio.sleep that only yields to the loop"""
    await asyncio.sleep(0)


class FakeControlClient:
    """Records every call made against the production tool"""

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.calls: list[tuple] = []
        self.scene = "Main"
        self.visibility: dict[tuple[str, str], bool] = {}
        self.fail_on: dict[str, Exception] = {}

    def is_connected(self) -> bool:
        return self.connected

    async def _record(self, name: str, *args):
        if name in self.fail_on:
            raise self.fail_on[name]
        self.calls.append((name, *args))

    async def switch_scene(self, scene_name):
        await self._record("switch_scene", scene_name)
        self.scene = scene_name

    async def get_current_scene(self):
        return self.scene

    async def set_source_visibility(self, scene_name, source_name, visible):
        await self._record("set_source_visibility", scene_name, source_name, visible)
        self.visibility[(scene_name, source_name)] = visible

    async def get_source_visibility(self, scene_name, source_name):
        return self.visibility.get((scene_name, source_name), True)

    async def play_media(self, source_name):
        await self._record("play_media", source_name)

    async def pause_media(self, source_name):
        await self._record("pause_media", source_name)

    async def restart_media(self, source_name):
        await self._record("restart_media", source_name)

    async def set_filter_enabled(self, source_name, filter_name, enabled):
        await self._record("set_filter_enabled", source_name, filter_name, enabled)

    async def start_streaming(self):
        await self._record("start_streaming")

    async def stop_streaming(self):
        await self._record("stop_streaming")

    async def start_recording(self):
        await self._record("start_recording")

    async def stop_recording(self):
        await self._record("stop_recording")

    @property
    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


class RecordingSink:
    """Presentation sink that records alerts and can fail or hold on demand"""

    def __init__(self):
        self.presented: list[str] = []
        self.failures: dict[str, str] = {}
        self.gate: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0

    async def __call__(self, alert) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            self.presented.append(alert.id)
            if alert.id in self.failures:
                raise PresentationError(self.failures[alert.id])
        finally:
            self.active -= 1


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def control_client():
    return FakeControlClient()


@pytest.fixture
def surface(control_client):
    return ClientControlSurface(control_client)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
async def pipeline(store, bus, surface):
    """Started pipeline with an instant presenter and no gap between alerts"""
    presenter = OverlayPresenter(store, sleep=instant_sleep)
    pipe = AlertPipeline(store, bus, surface, presenter=presenter, min_delay=0)
    await pipe.start()
    yield pipe
    await pipe.stop()
    await bus.drain()
