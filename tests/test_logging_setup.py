from __future__ import annotations

import io
import logging

import pytest

from transaction_ingestion.logging_setup import (
    PACKAGE_LOGGER,
    configure_logging,
    get_logger,
    resolve_level,
)


@pytest.fixture(autouse=True)
def _restore_package_logger():
    logger = logging.getLogger(PACKAGE_LOGGER)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    logger.handlers.clear()
    yield logger
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


@pytest.mark.parametrize(
    ("level", "expected"),
    [("debug", logging.DEBUG), (" Warning ", logging.WARNING), ("15", 15), (40, 40)],
)
def test_resolve_explicit_level(level, expected):
    assert resolve_level(level) == expected


def test_resolve_level_from_environment(monkeypatch):
    assert resolve_level() == logging.INFO
    monkeypatch.setenv("TXN_INGEST_LOG_LEVEL", "error")
    assert resolve_level() == logging.ERROR
    monkeypatch.setenv("TXN_INGEST_LOG_LEVEL", "chatty")
    assert resolve_level() == logging.INFO


def test_unknown_explicit_level_is_rejected():
    with pytest.raises(ValueError, match="unknown log level"):
        resolve_level("chatty")


def test_library_use_is_silent(_restore_package_logger):
    get_logger("transaction_ingestion.normalizers")
    assert [type(h) for h in _restore_package_logger.handlers] == [logging.NullHandler]


def test_configure_routes_package_logs(_restore_package_logger):
    get_logger("transaction_ingestion.pipeline")
    out = io.StringIO()

    configure_logging("info", fmt="%(levelname)s %(name)s %(message)s", stream=out)
    get_logger("transaction_ingestion.pipeline").info("imported %d", 3)

    assert out.getvalue() == "INFO transaction_ingestion.pipeline imported 3\n"
    assert not any(
        isinstance(h, logging.NullHandler) for h in _restore_package_logger.handlers
    )
    assert _restore_package_logger.propagate is False


def test_reconfigure_reuses_the_handler(_restore_package_logger):
    out = io.StringIO()
    first = configure_logging("debug", fmt="%(message)s", stream=out)
    second = configure_logging("warning", fmt="%(message)s")

    assert first is second
    assert len(_restore_package_logger.handlers) == 1

    log = get_logger("transaction_ingestion.duplicates")
    log.info("hidden")
    log.warning("shown")
    assert out.getvalue().splitlines() == ["shown"]


def test_format_from_environment(monkeypatch):
    monkeypatch.setenv("TXN_INGEST_LOG_FORMAT", "%(name)s|%(message)s")
    out = io.StringIO()

    configure_logging(stream=out)
    get_logger("transaction_ingestion.cli").info("ready")

    assert out.getvalue() == "transaction_ingestion.cli|ready\n"
