"""Logging configuration for Stratus.

Stratus logs through loguru with per-component bound context (cloud,
configuration, instance, bootstrap state). As a library it stays silent
until a host process calls ``setup_logging``.

Example:
    from stratus.observability.logging import LogConfig, setup_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", console=True))
    ...
    teardown_logging(handler_ids)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from rich.logging import RichHandler

logger.disable("stratus")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "TRACE"]

_CONTEXT_KEYS = (
    "component", "cloud", "config", "instance", "state", "label",
)


def _format_context(record: Any) -> str:
    extra = record.get("extra", {})
    parts = [f"{k}={extra[k]}" for k in _CONTEXT_KEYS if k in extra]
    return f" [{' '.join(parts)}]" if parts else ""


CONSOLE_FORMAT = "{message}<dim>{extra[_ctx]}</dim>"

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line}{extra[_ctx]} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration for a Stratus controller process.

    Attributes:
        level: Minimum console log level.
        file: Path to log file. Empty string disables file output.
        console: Whether to log to the terminal through rich.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str = ".stratus/stratus.log"
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Configure logging and return handler IDs for cleanup.

    Args:
        config: Logging configuration.

    Returns:
        List of handler IDs that were added (for later removal).
    """
    logger.remove()
    logger.enable("stratus")
    logger.configure(patcher=lambda r: r["extra"].update(_ctx=_format_context(r)))

    handler_ids: list[int] = []

    if config.console:
        hid = logger.add(
            RichHandler(show_path=False, markup=False, rich_tracebacks=True),
            level=config.level,
            format=CONSOLE_FORMAT,
            filter="stratus",
        )
        handler_ids.append(hid)

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        hid = logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,
            enqueue=True,
        )
        handler_ids.append(hid)

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove handlers and disable logging.

    Args:
        handler_ids: List of handler IDs to remove.
    """
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("stratus")
