"""Logging configuration for buildfleet.

Structured logging goes through loguru. Every module binds a component
(``logger.bind(component="cloud")``) and narrows it further with the
cloud, node and zone it is working on. The sinks below render that bound
context as a ``component@cloud/node`` tag in front of each message.

Example:
    from buildfleet import ComputeEngineCloud, LogConfig

    cloud = ComputeEngineCloud(
        ...,
        logging=LogConfig(level="DEBUG", file=".buildfleet/cloud.log"),
    )
"""

from __future__ import annotations

import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger

type LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]


def _context_tag(record: Any) -> str:
    extra = record["extra"]
    scope = "/".join(str(extra[k]) for k in ("cloud", "node") if k in extra)
    tag = extra.get("component", "")
    if scope:
        tag = f"{tag}@{scope}" if tag else scope
    if zone := extra.get("zone"):
        tag = f"{tag} ({zone})"
    return f"[{tag}] " if tag else ""


CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> "
    "<level>{level: <7}</level> "
    "<magenta>{extra[_tag]}</magenta>"
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DDTHH:mm:ss.SSSZZ} {level: <7} "
    "{extra[_tag]}{message} ({name}:{line})"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration for a cloud.

    Attributes:
        level: Minimum level written to stderr. The file always gets DEBUG.
        file: Log file path, rotated and zipped. None disables it.
        console: Whether to write to stderr.
        rotation: When to rotate the file ("50 MB", "1 day", ...).
        retention: How many rotated files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = ".buildfleet/buildfleet.log"
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> LogConfig:
        return cls(**raw)


def setup_logging(config: LogConfig) -> list[int]:
    """Add the configured sinks and return their handler IDs.

    Only records from buildfleet modules reach these sinks.
    """
    logger.enable("buildfleet")
    logger.configure(patcher=lambda r: r["extra"].update(_tag=_context_tag(r)))
    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter="buildfleet",
        ))

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handler_ids.append(logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            filter="buildfleet",
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,
        ))

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove the handlers returned by setup_logging."""
    for hid in handler_ids:
        logger.remove(hid)


__all__ = ["LogConfig", "LogLevel", "setup_logging", "teardown_logging"]
