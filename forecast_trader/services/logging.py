"""Centralised logging configuration for the trading agent."""

from __future__ import annotations

import logging
from typing import Optional

from colorama import Fore, Style, init as colorama_init

colorama_init(autoreset=True)

ROOT_LOGGER_NAME = "forecast_trader"


class ColorFormatter(logging.Formatter):
    """Prefix records with a coloured, fixed-width level name."""

    LEVEL_MAP = {
        logging.DEBUG: Fore.BLUE,
        logging.INFO: Fore.GREEN,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.MAGENTA + Style.BRIGHT,
    }

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        colour = self.LEVEL_MAP.get(record.levelno, "")
        prefix = f"{colour}{record.levelname:<8}{Style.RESET_ALL}"
        message = super().format(record)
        return f"{prefix} {message}"


def resolve_level(level: int | str | None) -> int:
    """Translate a level name such as ``"debug"`` into its numeric value."""

    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def configure_logging(level: int | str | None = None) -> None:
    """Configure the root logger once; later calls only adjust the level."""

    logger = logging.getLogger()
    if logger.handlers:
        if level is not None:
            logger.setLevel(resolve_level(level))
        return

    handler = logging.StreamHandler()
    formatter = ColorFormatter("%(asctime)s | %(name)s | %(message)s", "%H:%M:%S")
    handler.setFormatter(formatter)
    logger.setLevel(resolve_level(level))
    logger.addHandler(handler)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a module-scoped logger."""

    configure_logging()
    return logging.getLogger(name if name else ROOT_LOGGER_NAME)
