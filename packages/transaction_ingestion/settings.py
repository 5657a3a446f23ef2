"""Environment-driven settings and resource loading.

Tunables are read once into a frozen :class:`PipelineSettings` by the CLI (or
by a host application) and passed down explicitly; library code never reads
the environment on its own except through :func:`resource_path`, which honors
``TXN_INGEST_RESOURCES_DIR`` so deployments can ship edited dictionaries
without rebuilding the package.

Environment variables
---------------------
- ``TXN_INGEST_MAX_WORKERS``: worker pool size for batch processing (1..32).
- ``TXN_INGEST_ENRICH_RATE``: enrichment calls per second.
- ``TXN_INGEST_ENRICH_BURST``: enrichment token-bucket capacity.
- ``TXN_INGEST_DUP_WINDOW_DAYS``: duplicate candidate window (days).
- ``TXN_INGEST_DUP_THRESHOLD``: duplicate match threshold in [0,1].
- ``TXN_INGEST_HISTORY_SAMPLE``: categorized samples used for similarity.
- ``TXN_INGEST_RESOURCES_DIR``: directory overriding the packaged JSON files.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any

from .logging_setup import get_logger

_logger = get_logger("transaction_ingestion.settings")

_MAX_WORKERS_CAP = 32


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        _logger.warning("ignoring non-integer %s=%r", name, raw)
        return default
    return max(minimum, value)


def _env_float(name: str, default: float, *, lo: float, hi: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        _logger.warning("ignoring non-numeric %s=%r", name, raw)
        return default
    if not lo <= value <= hi:
        _logger.warning("ignoring out-of-range %s=%r", name, raw)
        return default
    return value


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    max_workers: int = 4
    enrich_rate_per_sec: float = 10.0
    enrich_burst: int = 5
    duplicate_window_days: int = 3
    duplicate_threshold: float = 0.8
    history_sample_size: int = 100

    @classmethod
    def from_env(cls) -> PipelineSettings:
        return cls(
            max_workers=min(_env_int("TXN_INGEST_MAX_WORKERS", 4), _MAX_WORKERS_CAP),
            enrich_rate_per_sec=_env_float("TXN_INGEST_ENRICH_RATE", 10.0, lo=0.001, hi=1e6),
            enrich_burst=_env_int("TXN_INGEST_ENRICH_BURST", 5),
            duplicate_window_days=_env_int("TXN_INGEST_DUP_WINDOW_DAYS", 3),
            duplicate_threshold=_env_float("TXN_INGEST_DUP_THRESHOLD", 0.8, lo=0.0, hi=1.0),
            history_sample_size=_env_int("TXN_INGEST_HISTORY_SAMPLE", 100),
        )


def resource_path(name: str) -> Path:
    """Return the path of a versioned JSON resource such as ``merchants.v1.json``.

    ``TXN_INGEST_RESOURCES_DIR`` wins when it contains a file with that name.
    """

    override = os.getenv("TXN_INGEST_RESOURCES_DIR")
    if override:
        candidate = Path(override).expanduser() / name
        if candidate.is_file():
            return candidate
        _logger.debug("resource %s not in override dir %s; using packaged copy", name, override)
    return Path(str(resources.files("transaction_ingestion").joinpath("resources", name)))


def load_resource_json(name: str, *, path: Path | None = None) -> Any:
    target = path if path is not None else resource_path(name)
    with target.open("r", encoding="utf-8") as f:
        return json.load(f)


__all__ = ["PipelineSettings", "load_resource_json", "resource_path"]
