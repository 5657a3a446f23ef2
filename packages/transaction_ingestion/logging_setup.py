"""Logging for the ``transaction_ingestion`` package.

Library modules only call ``get_logger("transaction_ingestion.<module>")``.
Output is decided by the host: the CLI calls :func:`configure_logging`, which
owns a single named ``StreamHandler`` on the package root logger. Until then
the root logger carries a ``NullHandler`` and ingestion runs silently.

Environment
-----------
- ``TXN_INGEST_LOG_LEVEL``: level used when none is passed explicitly.
- ``TXN_INGEST_LOG_FORMAT``: ``logging.Formatter`` format string.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

PACKAGE_LOGGER = "transaction_ingestion"
LEVEL_ENV_VAR = "TXN_INGEST_LOG_LEVEL"
FORMAT_ENV_VAR = "TXN_INGEST_LOG_FORMAT"

_HANDLER_NAME = "transaction_ingestion.console"
_DEFAULT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def resolve_level(level: int | str | None = None) -> int:
    """Turn ``level`` (or ``TXN_INGEST_LOG_LEVEL``) into a numeric level.

    An explicit level that is not a number or a standard name raises
    ``ValueError``; a bad environment value is ignored in favour of INFO.
    """

    if level is None:
        env_val = os.getenv(LEVEL_ENV_VAR, "").strip()
        if not env_val:
            return logging.INFO
        try:
            return resolve_level(env_val)
        except ValueError:
            return logging.INFO
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name.isdigit():
        return int(name)
    numeric = logging.getLevelNamesMapping().get(name)
    if numeric is None:
        raise ValueError(f"unknown log level: {level!r}")
    return numeric


def _console_handler(logger: logging.Logger) -> logging.Handler | None:
    for h in logger.handlers:
        if h.get_name() == _HANDLER_NAME:
            return h
    return None


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] | None = None,
) -> logging.Handler:
    """Route package logs to ``stream`` (stderr by default) and return the handler.

    Calling again reuses the same handler and only updates its level and
    format, so entrypoints may call it freely.
    """

    resolved = resolve_level(level)
    formatter = logging.Formatter(fmt or os.getenv(FORMAT_ENV_VAR) or _DEFAULT_FORMAT)
    logger = logging.getLogger(PACKAGE_LOGGER)

    for h in list(logger.handlers):
        if isinstance(h, logging.NullHandler):
            logger.removeHandler(h)

    handler = _console_handler(logger)
    if handler is None:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.set_name(_HANDLER_NAME)
        logger.addHandler(handler)
    elif stream is not None and isinstance(handler, logging.StreamHandler):
        handler.setStream(stream)
    handler.setLevel(resolved)
    handler.setFormatter(formatter)

    logger.setLevel(resolved)
    logger.propagate = False
    return handler


def get_logger(name: str) -> logging.Logger:
    """Return the named logger; the package stays silent until configured."""

    pkg_logger = logging.getLogger(PACKAGE_LOGGER)
    if not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "resolve_level"]
