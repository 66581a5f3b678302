import logging

from rich.console import Console
from rich.logging import RichHandler

from engine.core.config import EngineSettings


def setup_logging(settings: EngineSettings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)

    console = Console(force_terminal=True, width=120)
    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True,
        tracebacks_show_locals=False,
        tracebacks_width=120,
    )
    rich_handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt="[%Y-%m-%d %H:%M:%S]"))

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%Y-%m-%d %H:%M:%S]",
        handlers=[rich_handler],
        force=True,
    )

    if level == logging.DEBUG:
        logging.getLogger("aiohttp.access").setLevel(logging.INFO)
    else:
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    logging.getLogger("asyncio").setLevel(logging.ERROR)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    logging.getLogger("Engine").info(
        f"[bold green]✓[/bold green] Logging: {settings.log_level}", extra={"markup": True}
    )
