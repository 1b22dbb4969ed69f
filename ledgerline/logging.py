"""Logging configuration for Ledgerline."""

from __future__ import annotations

import logging
import sys
from typing import Any


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging for the checkout service."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )

    # Reduce noise from third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


class ServiceLogger:
    """Structured logger for saga components.

    Context keyword arguments are rendered as ``key=value`` pairs after the
    message so that every line about an order carries its ``order_id``.
    """

    def __init__(self, service_name: str) -> None:
        self._logger = get_logger(f"ledgerline.{service_name}")

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, context)

    def error(self, message: str, **context: Any) -> None:
        self._log(logging.ERROR, message, context)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, context)

    def exception(self, message: str, **context: Any) -> None:
        self._log(logging.ERROR, message, context, exc_info=True)

    def _log(self, level: int, message: str, context: dict[str, Any], exc_info: bool = False) -> None:
        if context:
            context_str = " | ".join(f"{k}={v}" for k, v in context.items())
            message = f"{message} | {context_str}"
        self._logger.log(level, message, exc_info=exc_info)
