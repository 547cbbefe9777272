# ruff: noqa: I001
"""CLI for the ``payment_recon`` package.

Typer-based console interface over :mod:`payment_recon.api`. Environment
variables (``DATABASE_URL`` and the ``PAYRECON_*`` settings) are loaded from a
local ``.env`` using ``python-dotenv`` before any command runs. Results are
printed to stdout as JSON; failures print ``Error: ...`` to stderr and exit
with status 1.
"""

from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime
from pathlib import Path
from typing import Annotated, Any, NoReturn

import typer
from dotenv import load_dotenv

from .config import EngineSettings, load_settings
from .logging_setup import configure_logging

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Classify payments, report decline diagnostics and reconcile historical "
        "payments to profiles by card. Loads DATABASE_URL from a local .env."
    ),
)

_DATE_FORMATS = ["%Y-%m-%d"]

DATABASE_URL_OPTION = typer.Option(None, help="Override DATABASE_URL (falls back to env var).")


# ---- Small helpers -------------------------------------------------------------


def _fail(message: str) -> NoReturn:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def _emit(obj: Any) -> None:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        obj = dataclasses.asdict(obj)
    typer.echo(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def _settings() -> EngineSettings:
    try:
        return load_settings()
    except ValueError as e:
        _fail(f"invalid configuration: {e}")


def _as_date(value: datetime | None) -> date | None:
    return value.date() if value is not None else None


# ---- Commands ------------------------------------------------------------------


@app.command("classify")
def classify_cmd(
    status: str | None = typer.Option(None, help="Raw provider status."),
    transaction_type: str | None = typer.Option(None, "--type", help="Raw transaction type."),
    amount: str | None = typer.Option(None, help="Signed amount; malformed values are ignored."),
    message: str | None = typer.Option(None, help="Decline message to categorize."),
) -> None:
    """Classify a single transaction and print the result."""

    from .classification import classify
    from .error_categories import categorize_error, error_label
    from .status import normalize_status

    canonical = normalize_status(status)
    category = classify(status, transaction_type, amount)
    out: dict[str, Any] = {
        "normalized_status": canonical.value if canonical is not None else None,
        "category": category.value,
    }
    if message is not None:
        err = categorize_error(message)
        out["error_category"] = err.value
        out["error_label"] = error_label(err)
    _emit(out)


@app.command("diagnostics")
def diagnostics_cmd(
    date_from: Annotated[
        datetime | None, typer.Option("--from", formats=_DATE_FORMATS, help="First day (local).")
    ] = None,
    date_to: Annotated[
        datetime | None, typer.Option("--to", formats=_DATE_FORMATS, help="Last day, inclusive.")
    ] = None,
    brand: str | None = typer.Option(None, help="Card brand filter."),
    bank: str | None = typer.Option(None, help="Issuer bank filter."),
    issuer_country: str | None = typer.Option(None, help="Issuer country filter."),
    client_country: str | None = typer.Option(None, help="Customer country filter."),
    transaction_type: str | None = typer.Option(None, "--type", help="Transaction type filter."),
    has_3ds: bool | None = typer.Option(None, "--has-3ds/--no-3ds", help="3-D Secure filter."),
    error_category: str | None = typer.Option(None, help="Error category filter."),
    input_path: Path | None = typer.Option(
        None, "--input", help="Aggregate a JSON array of records instead of the database."
    ),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Print approval, 3DS, bank, error and daily diagnostics for a window."""

    from .aggregation import aggregate, apply_filters
    from .api import payment_diagnostics
    from .models import DiagnosticsFilters, TransactionRecord

    settings = _settings()
    try:
        filters = DiagnosticsFilters(
            date_from=_as_date(date_from),
            date_to=_as_date(date_to),
            brand=brand,
            issuer_bank=bank,
            issuer_country=issuer_country,
            client_country=client_country,
            transaction_type=transaction_type,
            has_3ds=has_3ds,
            error_category=error_category,
        )
    except ValueError as e:
        _fail(str(e))

    if input_path is not None:
        try:
            raw = json.loads(input_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            _fail(f"File not found: {input_path}")
        except json.JSONDecodeError as e:
            _fail(f"Failed to parse JSON: {e}")
        if not isinstance(raw, list):
            _fail("input must be a JSON array of records")
        records = [TransactionRecord.from_mapping(r) for r in raw if isinstance(r, dict)]
        window = apply_filters(records, filters, settings=settings)
        _emit(aggregate(window, filters, settings=settings))
        return

    try:
        stats = payment_diagnostics(filters, database_url=database_url, settings=settings)
    except Exception as e:
        _fail(f"diagnostics failed: {e}")
    _emit(stats)


@app.command("payments-summary")
def payments_summary_cmd(
    date_from: Annotated[
        datetime | None, typer.Option("--from", formats=_DATE_FORMATS, help="First day.")
    ] = None,
    date_to: Annotated[
        datetime | None, typer.Option("--to", formats=_DATE_FORMATS, help="Last day, inclusive.")
    ] = None,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Print per-category counts and amounts, fees and net revenue."""

    from .api import payments_summary

    settings = _settings()
    try:
        summary = payments_summary(
            date_from=_as_date(date_from),
            date_to=_as_date(date_to),
            database_url=database_url,
            settings=settings,
        )
    except Exception as e:
        _fail(f"payments summary failed: {e}")
    _emit(summary)


@app.command("reconcile-card")
def reconcile_card_cmd(
    profile_id: str = typer.Option(..., help="Target profile id."),
    last4: str = typer.Option(..., help="Card last four digits."),
    brand: str = typer.Option(..., help="Card brand (any common spelling)."),
    token: str | None = typer.Option(None, help="Provider card token for exact matching."),
    apply: bool = typer.Option(False, "--apply", help="Write changes (default is a dry-run)."),
    limit: int | None = typer.Option(None, min=1, help="Candidate cap (PAYRECON_RECONCILE_LIMIT)."),
    allow_large: bool = typer.Option(False, help="Proceed even when candidates exceed the cap."),
    force_actor: str | None = typer.Option(None, help="Person authorizing a colliding link."),
    force_reason: str | None = typer.Option(None, help="Why the colliding link is correct."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Attach a profile to unattributed payments and queue rows paid with a card."""

    from .api import reconcile_card
    from .models import ForceLinkAuthorization, ReconcileMode

    settings = _settings()
    force_link = None
    if force_actor is not None or force_reason is not None:
        try:
            force_link = ForceLinkAuthorization(actor=force_actor or "", reason=force_reason or "")
        except ValueError as e:
            _fail(f"--force-actor and --force-reason are both required: {e}")

    try:
        result = reconcile_card(
            profile_id,
            last4,
            brand,
            database_url=database_url,
            mode=ReconcileMode.APPLY if apply else ReconcileMode.DRY_RUN,
            limit=limit,
            provider_token=token,
            force_link=force_link,
            allow_large=allow_large,
            settings=settings,
        )
    except ValueError as e:
        _fail(str(e))
    except Exception as e:
        _fail(f"reconcile failed: {e}")
    _emit(result)


@app.command("reconcile-all")
def reconcile_all_cmd(
    apply: bool = typer.Option(False, "--apply", help="Write changes (default is a dry-run)."),
    limit: int | None = typer.Option(None, min=1, help="Per-card candidate cap."),
    concurrency: int | None = typer.Option(None, min=1, help="Cards processed in parallel."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Reconcile every linked card; per-card failures are reported, not fatal."""

    import threading

    from .api import reconcile_all_cards
    from .models import ReconcileMode

    settings = _settings()
    cancel = threading.Event()
    try:
        batch = reconcile_all_cards(
            database_url=database_url,
            mode=ReconcileMode.APPLY if apply else ReconcileMode.DRY_RUN,
            limit=limit,
            concurrency=concurrency,
            cancel_event=cancel,
            settings=settings,
        )
    except KeyboardInterrupt:
        cancel.set()
        _fail("interrupted")
    except Exception as e:
        _fail(f"batch reconcile failed: {e}")

    out = dataclasses.asdict(batch)
    out["summary"] = {
        "cards": len(batch.results),
        "processed": batch.processed,
        "stopped": batch.stopped,
        "errors": batch.errors,
        "total_candidates": batch.total_candidates,
        "total_updated": batch.total_updated,
    }
    _emit(out)


@app.command("backfill-cards")
def backfill_cards_cmd(
    apply: bool = typer.Option(False, "--apply", help="Write changes (default is a dry-run)."),
    limit: int | None = typer.Option(None, min=1, help="Max rows per table."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Fill missing card last4/brand from stored provider payloads."""

    from .api import backfill_cards

    settings = _settings()
    try:
        result = backfill_cards(
            database_url=database_url, dry_run=not apply, limit=limit, settings=settings
        )
    except Exception as e:
        _fail(f"backfill failed: {e}")
    _emit(result)


@app.callback()
def _root(
    log_level: str | None = typer.Option(
        None, help="Log level (falls back to PAYRECON_LOG_LEVEL, then INFO)."
    ),
) -> None:
    """Load ``.env`` and configure logging before any subcommand."""

    load_dotenv()
    configure_logging(log_level)


def main() -> None:  # pragma: no cover - thin wrapper
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
