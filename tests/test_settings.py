from __future__ import annotations

import json

from transaction_ingestion.settings import PipelineSettings, load_resource_json, resource_path


def test_defaults_without_environment():
    assert PipelineSettings.from_env() == PipelineSettings()


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("TXN_INGEST_MAX_WORKERS", "500")
    monkeypatch.setenv("TXN_INGEST_ENRICH_RATE", "2.5")
    monkeypatch.setenv("TXN_INGEST_ENRICH_BURST", "0")
    monkeypatch.setenv("TXN_INGEST_DUP_WINDOW_DAYS", "7")
    monkeypatch.setenv("TXN_INGEST_DUP_THRESHOLD", "0.9")
    monkeypatch.setenv("TXN_INGEST_HISTORY_SAMPLE", "25")

    settings = PipelineSettings.from_env()

    assert settings.max_workers == 32
    assert settings.enrich_rate_per_sec == 2.5
    assert settings.enrich_burst == 1
    assert settings.duplicate_window_days == 7
    assert settings.duplicate_threshold == 0.9
    assert settings.history_sample_size == 25


def test_bad_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("TXN_INGEST_MAX_WORKERS", "many")
    monkeypatch.setenv("TXN_INGEST_DUP_THRESHOLD", "1.5")
    monkeypatch.setenv("TXN_INGEST_ENRICH_RATE", "   ")

    settings = PipelineSettings.from_env()

    assert settings.max_workers == 4
    assert settings.duplicate_threshold == 0.8
    assert settings.enrich_rate_per_sec == 10.0


def test_resource_override_directory(tmp_path, monkeypatch):
    custom = tmp_path / "merchants.v1.json"
    custom.write_text(json.dumps({"acme": {"name": "Acme"}}), encoding="utf-8")
    monkeypatch.setenv("TXN_INGEST_RESOURCES_DIR", str(tmp_path))

    assert resource_path("merchants.v1.json") == custom
    assert load_resource_json("merchants.v1.json") == {"acme": {"name": "Acme"}}

    # Files missing from the override directory come from the package.
    packaged = resource_path("bank_formats.v1.json")
    assert packaged.parent.name == "resources"
    assert packaged.is_file()
