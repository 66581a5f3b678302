"""Control-surface adapter: the operations automation actions perform against
the remote production tool (OBS or similar).

The wire protocol lives in whatever client object is injected; this module
only checks that the client offers each operation and turns "not there /
not connected / connection dropped" into ``AdapterUnavailableError`` so a
failed action is always visible instead of silently doing nothing.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from shared.errors import AdapterUnavailableError

LOGGER = logging.getLogger("ControlSurface")

CAPABILITIES = (
    "switch_scene",
    "get_current_scene",
    "set_source_visibility",
    "get_source_visibility",
    "play_media",
    "pause_media",
    "restart_media",
    "set_filter_enabled",
    "start_streaming",
    "stop_streaming",
    "start_recording",
    "stop_recording",
)


class ControlSurface(ABC):
    """Abstract operations the automation engine calls. All may raise
    ``AdapterUnavailableError``; retry/reconnect is the adapter's business."""

    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    async def switch_scene(self, scene_name: str) -> None: ...

    @abstractmethod
    async def get_current_scene(self) -> str: ...

    @abstractmethod
    async def set_source_visibility(self, scene_name: str, source_name: str, visible: bool) -> None: ...

    @abstractmethod
    async def get_source_visibility(self, scene_name: str, source_name: str) -> bool: ...

    @abstractmethod
    async def play_media(self, source_name: str) -> None: ...

    @abstractmethod
    async def pause_media(self, source_name: str) -> None: ...

    @abstractmethod
    async def restart_media(self, source_name: str) -> None: ...

    @abstractmethod
    async def set_filter_enabled(self, source_name: str, filter_name: str, enabled: bool) -> None: ...

    @abstractmethod
    async def start_streaming(self) -> None: ...

    @abstractmethod
    async def stop_streaming(self) -> None: ...

    @abstractmethod
    async def start_recording(self) -> None: ...

    @abstractmethod
    async def stop_recording(self) -> None: ...


class ClientControlSurface(ControlSurface):
    """Adapter over an injected remote-control client.

    The client exposes coroutine methods named as in ``CAPABILITIES`` and an
    optional ``is_connected()``. Without a client every call raises, which
    is how the pipeline runs when no production tool is configured.
    """

    def __init__(self, client: Any | None = None) -> None:
        self.client = client
        self.missing: list[str] = []
        if client is None:
            LOGGER.warning("No control client configured, automation actions will fail")
        else:
            self.missing = [name for name in CAPABILITIES if not callable(getattr(client, name, None))]
            if self.missing:
                LOGGER.warning(f"Control client lacks: {', '.join(self.missing)}")

    def is_connected(self) -> bool:
        if self.client is None:
            return False
        check = getattr(self.client, "is_connected", None)
        if check is None:
            return True
        try:
            return bool(check() if callable(check) else check)
        except Exception as e:
            LOGGER.warning(f"Connection status check failed: {e}")
            return False

    async def _call(self, name: str, *args: Any) -> Any:
        if self.client is None:
            raise AdapterUnavailableError("No control client configured")
        method = getattr(self.client, name, None)
        if not callable(method):
            raise AdapterUnavailableError(f"Control client does not support '{name}'")
        if not self.is_connected():
            raise AdapterUnavailableError(f"Control client not connected ({name})")
        try:
            return await method(*args)
        except (ConnectionError, TimeoutError) as e:
            raise AdapterUnavailableError(f"{name} failed: {type(e).__name__}: {e}") from e

    async def switch_scene(self, scene_name: str) -> None:
        await self._call("switch_scene", scene_name)
        LOGGER.info(f"Scene switched: {scene_name}")

    async def get_current_scene(self) -> str:
        return await self._call("get_current_scene")

    async def set_source_visibility(self, scene_name: str, source_name: str, visible: bool) -> None:
        await self._call("set_source_visibility", scene_name, source_name, visible)

    async def get_source_visibility(self, scene_name: str, source_name: str) -> bool:
        return bool(await self._call("get_source_visibility", scene_name, source_name))

    async def play_media(self, source_name: str) -> None:
        await self._call("play_media", source_name)

    async def pause_media(self, source_name: str) -> None:
        await self._call("pause_media", source_name)

    async def restart_media(self, source_name: str) -> None:
        await self._call("restart_media", source_name)

    async def set_filter_enabled(self, source_name: str, filter_name: str, enabled: bool) -> None:
        await self._call("set_filter_enabled", source_name, filter_name, enabled)

    async def start_streaming(self) -> None:
        await self._call("start_streaming")

    async def stop_streaming(self) -> None:
        await self._call("stop_streaming")

    async def start_recording(self) -> None:
        await self._call("start_recording")

    async def stop_recording(self) -> None:
        await self._call("stop_recording")
