# ruff: noqa: I001
"""CLI for the ``transaction_ingestion`` package.

Command handlers (``cmd_*``) return a process exit code and write errors to
stderr; the Typer commands at the bottom only parse options and delegate.
``.env`` in the working directory is loaded with ``python-dotenv`` before any
command runs, so ``DATABASE_URL`` and the ``TXN_INGEST_*`` tunables can live
there.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from typer.models import OptionInfo

from .logging_setup import configure_logging, get_logger
from .normalizers import TransactionNormalizer, read_csv_rows
from .settings import PipelineSettings

_logger = get_logger("transaction_ingestion.cli")


# ---- Small module-level helpers used by CLI commands -------------------------


def _read_rows(csv_path: str) -> list[dict[str, str]] | None:
    """Read a CSV export or print an error and return ``None``."""

    import csv

    try:
        text = Path(csv_path).read_text(encoding="utf-8-sig")
        return read_csv_rows(text)
    except FileNotFoundError:
        print(f"Error: File not found: {csv_path}", file=sys.stderr)
    except PermissionError:
        print(f"Error: Permission denied: {csv_path}", file=sys.stderr)
    except (csv.Error, UnicodeDecodeError) as e:
        print(f"Error: Failed to parse CSV: {e}", file=sys.stderr)
    return None


def _database_url(override: str | None) -> str | None:
    return override or os.getenv("DATABASE_URL") or None


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, sort_keys=True, default=str))


# ---- Command handlers --------------------------------------------------------


def cmd_detect_format(csv_path: str) -> int:
    """Print the detected bank format code for a CSV export."""

    rows = _read_rows(csv_path)
    if rows is None:
        return 1
    if not rows:
        print(f"Error: CSV has no data rows: {csv_path}", file=sys.stderr)
        return 1
    normalizer = TransactionNormalizer()
    print(normalizer.detect_format(list(rows[0].keys()), rows[:5]))
    return 0


def cmd_normalize(csv_path: str, *, format_code: str | None = None) -> int:
    """Normalize a CSV export and print one JSON object per transaction.

    Per-row failures go to stderr as ``row <index>: <error>``; they do not
    change the exit status.
    """

    rows = _read_rows(csv_path)
    if rows is None:
        return 1
    normalizer = TransactionNormalizer()
    try:
        batch = normalizer.normalize_batch(rows, format_code)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    for tx in batch.normalized:
        _emit(tx.to_dict())
    for err in batch.errors:
        print(f"row {err.index}: {err.error}", file=sys.stderr)
    print(
        f"format={batch.format_used} normalized={len(batch.normalized)} errors={len(batch.errors)}",
        file=sys.stderr,
    )
    return 0


def cmd_ingest(
    csv_path: str,
    *,
    account_id: str,
    user_id: str,
    format_code: str | None = None,
    database_url: str | None = None,
    persist: bool = False,
) -> int:
    """Run the full pipeline over a CSV export.

    Without a database the stores are empty in-memory ones, which still
    exercises normalization, in-file duplicate detection and enrichment.
    With ``persist`` the finalized transactions are inserted in one
    transaction.
    """

    from .pipeline import IngestionPipeline

    rows = _read_rows(csv_path)
    if rows is None:
        return 1

    settings = PipelineSettings.from_env()
    url = _database_url(database_url)
    if persist and url is None:
        print("Error: --persist requires DATABASE_URL or --database-url", file=sys.stderr)
        return 1

    if url is not None:
        from db.client import get_session_factory
        from .persistence import (
            SqlCategoryStore,
            SqlFeedbackLog,
            SqlRuleStore,
            SqlTransactionStore,
        )

        factory = get_session_factory(database_url=url)
        pipeline = IngestionPipeline.build(
            categories=SqlCategoryStore(factory),
            rules=SqlRuleStore(factory),
            transactions=SqlTransactionStore(factory),
            feedback_log=SqlFeedbackLog(factory),
            settings=settings,
        )
    else:
        from .stores import InMemoryCategoryStore, InMemoryRuleStore, InMemoryTransactionStore

        pipeline = IngestionPipeline.build(
            categories=InMemoryCategoryStore(),
            rules=InMemoryRuleStore(),
            transactions=InMemoryTransactionStore(),
            settings=settings,
        )

    try:
        report = pipeline.process_batch(
            rows, account_id=account_id, user_id=user_id, format_code=format_code
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    for outcome in report.outcomes:
        if outcome.finalized is not None:
            _emit({"index": outcome.index, "status": outcome.status, **outcome.finalized.to_dict()})
        else:
            _emit({"index": outcome.index, "status": outcome.status, "message": outcome.message})

    if persist:
        from db.client import session_scope
        from .persistence import save_finalized

        try:
            with session_scope(database_url=url) as session:
                save_finalized(session, report.finalized)
        except Exception as e:
            print(f"Error: persistence failed: {e}", file=sys.stderr)
            return 1

    print(
        f"format={report.format_used} imported={report.imported} "
        f"duplicates={report.duplicates} invalid={report.invalid} errors={report.errors}",
        file=sys.stderr,
    )
    return 0 if report.success else 2


def cmd_cleanup_duplicates(
    account_id: str, *, database_url: str | None = None, auto_resolve: bool = False
) -> int:
    """Sweep an account stored in the database for duplicates."""

    url = _database_url(database_url)
    if url is None:
        print("Error: DATABASE_URL is not set; pass --database-url", file=sys.stderr)
        return 1

    from db.client import get_session_factory
    from .duplicates import DuplicateDetectionConfig, DuplicateDetector
    from .persistence import SqlTransactionStore

    settings = PipelineSettings.from_env()
    detector = DuplicateDetector(
        SqlTransactionStore(get_session_factory(database_url=url)),
        DuplicateDetectionConfig(
            threshold=settings.duplicate_threshold, window_days=settings.duplicate_window_days
        ),
    )
    try:
        report = detector.cleanup_duplicates(account_id, auto_resolve=auto_resolve)
    except Exception as e:
        print(f"Error: duplicate sweep failed: {e}", file=sys.stderr)
        return 1

    for d in report.details:
        print(f"{d.transaction_id}\t{d.duplicate_id}\t{d.action}\t{d.reason}")
    print(
        f"found={report.found} resolved={report.resolved} errors={report.errors}",
        file=sys.stderr,
    )
    return 0 if report.errors == 0 else 2


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Normalize, deduplicate, enrich and categorize bank-export CSV files.",
)

# Module-level option objects to satisfy ruff B008 (no calls in parameter
# defaults).
CSV_PATH_OPTION: OptionInfo = typer.Option(
    ...,
    "--csv-path",
    help="Path to a bank-export CSV file",
    dir_okay=False,
    file_okay=True,
    exists=False,  # the handler reports missing files
    readable=True,
)
FORMAT_OPTION: OptionInfo = typer.Option(
    "--format",
    help="Bank format code (barclays, hsbc, lloyds, generic); auto-detected when omitted.",
)
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    "--database-url", help="Override DATABASE_URL (falls back to env var)."
)


def _exit(code: int) -> None:
    if code:
        raise typer.Exit(code)


@app.command("detect-format")
def detect_format_cmd(csv_path: Annotated[Path, CSV_PATH_OPTION]) -> None:
    """Print the bank format detected from the CSV headers."""

    _exit(cmd_detect_format(str(csv_path)))


@app.command("normalize")
def normalize_cmd(
    csv_path: Annotated[Path, CSV_PATH_OPTION],
    format_code: Annotated[str | None, FORMAT_OPTION] = None,
) -> None:
    """Normalize a CSV into canonical JSON lines."""

    _exit(cmd_normalize(str(csv_path), format_code=format_code))


@app.command("ingest")
def ingest_cmd(
    csv_path: Annotated[Path, CSV_PATH_OPTION],
    *,
    account_id: str = typer.Option(..., help="Account the rows belong to."),
    user_id: str = typer.Option(..., help="Owner of the account (scopes categories and rules)."),
    format_code: Annotated[str | None, FORMAT_OPTION] = None,
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
    persist: bool = typer.Option(False, help="Insert finalized transactions into the database."),
) -> None:
    """Run normalization, duplicate gate, enrichment and categorization."""

    _exit(
        cmd_ingest(
            str(csv_path),
            account_id=account_id,
            user_id=user_id,
            format_code=format_code,
            database_url=database_url,
            persist=persist,
        )
    )


@app.command("cleanup-duplicates")
def cleanup_duplicates_cmd(
    *,
    account_id: str = typer.Option(..., help="Account to sweep."),
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
    auto_resolve: bool = typer.Option(
        False, help="Soft-mark exact duplicates instead of only listing them."
    ),
) -> None:
    """Find duplicates among stored transactions of one account."""

    _exit(
        cmd_cleanup_duplicates(account_id, database_url=database_url, auto_resolve=auto_resolve)
    )


@app.callback(invoke_without_command=True)
def _root(
    ctx: typer.Context,
    *,
    log_level: str | None = typer.Option(
        None, help="Log level (falls back to TXN_INGEST_LOG_LEVEL, then INFO)."
    ),
) -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures package logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    try:
        configure_logging(log_level)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--log-level") from None
    _logger.debug("invoked subcommand %s", ctx.invoked_subcommand)

    if ctx.invoked_subcommand is None:
        typer.echo("No subcommand provided. Use --help to see available commands.")
        raise typer.Exit(1)


if __name__ == "__main__":  # pragma: no cover
    app()
