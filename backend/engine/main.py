"""Engine entry point: store, bridge, pipeline and overlay server in one process"""

import asyncio
import logging
import signal

from dotenv import load_dotenv

from engine.core.config import BACKEND_DIR, EngineSettings, get_settings
from engine.core.logging import setup_logging
from engine.core.overlay_server import OverlayServer
from engine.pipeline import AlertPipeline
from engine.services.control_surface import ClientControlSurface
from shared.database import DatabaseManager, PoolConfig
from shared.event_bus import EventBus
from shared.store import MemoryStore, PersistenceStore, PostgresStore

LOGGER: logging.Logger = logging.getLogger("Engine")

load_dotenv(dotenv_path=BACKEND_DIR / ".env")


async def _open_store(settings: EngineSettings) -> tuple[PersistenceStore, DatabaseManager | None]:
    if not settings.uses_database:
        LOGGER.warning("DATABASE_URL not set, using in-memory store (nothing survives a restart)")
        return MemoryStore(), None

    db = DatabaseManager(
        settings.database_url, PoolConfig.for_service("engine", ssl=settings.database_ssl or None)
    )
    await db.connect()
    store = PostgresStore(db.pool)
    await store.ensure_schema()
    return store, db


async def main() -> None:
    settings = get_settings()
    setup_logging(settings)

    store, db = await _open_store(settings)
    bridge = EventBus()
    # No production-tool client is wired in yet: control actions fail loudly
    surface = ClientControlSurface(None)
    pipeline = AlertPipeline.from_settings(settings, store, bridge, surface)
    server = OverlayServer(pipeline, host=settings.overlay_host, port=settings.overlay_port)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops
            pass

    try:
        await pipeline.start()
        await server.start()
        LOGGER.info("Engine running")
        await stop_event.wait()
    finally:
        LOGGER.info("Shutting down...")
        await server.stop()
        await pipeline.stop()
        await bridge.drain()
        if db is not None:
            await db.disconnect()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        LOGGER.warning("Shutdown complete")


if __name__ == "__main__":
    run()
