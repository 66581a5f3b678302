"""Core modules for the engine process."""

from .config import BACKEND_DIR, EngineSettings, get_settings
from .logging import setup_logging
from .overlay_server import OverlayServer

__all__ = [
    # Settings
    "get_settings",
    "EngineSettings",
    "BACKEND_DIR",
    # Setup functions
    "setup_logging",
    # Services
    "OverlayServer",
]
