from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest
from typer.testing import CliRunner

from tests.helpers.builders import ACCOUNT_ID, USER_ID
from tests.helpers.db import fetch_transactions, seed_account
from transaction_ingestion import cli
from transaction_ingestion.logging_setup import resolve_level

BARCLAYS_CSV = textwrap.dedent(
    """\
    Date,Amount,Description,Merchant,Reference,Balance
    15/01/2024,-45.99,CARD PAYMENT TO TESCO STORES 1234,,R1,954.01
    15/01/2024,-45.99,CARD PAYMENT TO TESCO STORES 1234,,R1,954.01
    16/01/2024,,,,,
    31/01/2024,2500.00,ACME SALARY,,R3,3454.01
    """
)


@pytest.fixture(autouse=True)
def _quiet_cli(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # Keep ``.env`` discovery and handler setup away from the developer checkout.
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "configure_logging", lambda level=None: None)


@pytest.fixture()
def csv_file(tmp_path: Path) -> Path:
    path = tmp_path / "export.csv"
    path.write_text(BARCLAYS_CSV, encoding="utf-8")
    return path


def _json_lines(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


def test_detect_format(csv_file):
    result = CliRunner().invoke(cli.app, ["detect-format", "--csv-path", str(csv_file)])
    assert result.exit_code == 0, result.output
    assert "barclays" in result.output


def test_normalize_prints_json_lines_and_row_errors(csv_file):
    result = CliRunner().invoke(cli.app, ["normalize", "--csv-path", str(csv_file)])

    assert result.exit_code == 0, result.output
    rows = _json_lines(result.output)
    assert [r["amount"] for r in rows] == ["45.99", "45.99", "2500.00"]
    assert rows[0]["merchant"] == "Tesco Stores 1234"
    assert "row 2: Record has no description or amount" in result.output
    assert "format=barclays normalized=3 errors=1" in result.output


def test_normalize_rejects_unknown_format(csv_file):
    result = CliRunner().invoke(
        cli.app, ["normalize", "--csv-path", str(csv_file), "--format", "monzo"]
    )
    assert result.exit_code == 1
    assert "unknown bank format" in result.output


def test_bad_log_level_is_a_usage_error(csv_file, monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda level=None: resolve_level(level))

    result = CliRunner().invoke(
        cli.app, ["--log-level", "chatty", "detect-format", "--csv-path", str(csv_file)]
    )

    assert result.exit_code == 2
    assert "unknown log level" in result.output


def test_missing_file_is_reported(tmp_path):
    result = CliRunner().invoke(
        cli.app, ["detect-format", "--csv-path", str(tmp_path / "absent.csv")]
    )
    assert result.exit_code == 1
    assert "File not found" in result.output


def test_ingest_in_memory(csv_file):
    result = CliRunner().invoke(
        cli.app,
        ["ingest", "--csv-path", str(csv_file), "--account-id", ACCOUNT_ID, "--user-id", USER_ID],
    )

    assert result.exit_code == 0, result.output
    statuses = [r["status"] for r in _json_lines(result.output)]
    assert statuses == ["imported", "duplicate", "invalid", "imported"]
    assert "imported=2 duplicates=1 invalid=1 errors=0" in result.output


def test_ingest_persist_requires_database(csv_file):
    result = CliRunner().invoke(
        cli.app,
        [
            "ingest",
            "--csv-path",
            str(csv_file),
            "--account-id",
            ACCOUNT_ID,
            "--user-id",
            USER_ID,
            "--persist",
        ],
    )
    assert result.exit_code == 1
    assert "--persist requires DATABASE_URL" in result.output


def test_ingest_persist_and_cleanup_with_database(csv_file, sqlite_url):
    seed_account(sqlite_url, account_id=ACCOUNT_ID, user_id=USER_ID)
    runner = CliRunner()

    result = runner.invoke(
        cli.app,
        [
            "ingest",
            "--csv-path",
            str(csv_file),
            "--account-id",
            ACCOUNT_ID,
            "--user-id",
            USER_ID,
            "--database-url",
            sqlite_url,
            "--persist",
        ],
    )
    assert result.exit_code == 0, result.output
    saved = fetch_transactions(sqlite_url, ACCOUNT_ID)
    assert sorted(r.external_id for r in saved) == ["R1", "R3"]

    sweep = runner.invoke(
        cli.app,
        ["cleanup-duplicates", "--account-id", ACCOUNT_ID, "--database-url", sqlite_url],
    )
    assert sweep.exit_code == 0, sweep.output
    assert "found=0 resolved=0 errors=0" in sweep.output


def test_cleanup_requires_database():
    result = CliRunner().invoke(cli.app, ["cleanup-duplicates", "--account-id", ACCOUNT_ID])
    assert result.exit_code == 1
    assert "DATABASE_URL is not set" in result.output


def test_database_url_from_env(csv_file, sqlite_url, monkeypatch):
    seed_account(sqlite_url, account_id=ACCOUNT_ID, user_id=USER_ID)
    monkeypatch.setenv("DATABASE_URL", sqlite_url)

    result = CliRunner().invoke(
        cli.app, ["cleanup-duplicates", "--account-id", ACCOUNT_ID, "--auto-resolve"]
    )

    assert result.exit_code == 0, result.output
