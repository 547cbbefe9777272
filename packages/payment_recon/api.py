"""Public API for the ``payment_recon`` package.

Pure functions (:func:`classify`, :func:`normalize_status`,
:func:`categorize_error`, :func:`aggregate`) are re-exported from their
modules. The DB-backed entry points below open their own
``db.client.session_scope`` so callers only pass a ``database_url`` (or rely on
``DATABASE_URL``).
"""

from __future__ import annotations

import threading
from datetime import date

from db.client import session_scope

from .aggregation import aggregate, summarize_payments
from .cards import make_fingerprint
from .classification import PaymentCategory, classify
from .config import EngineSettings
from .error_categories import ErrorCategory, categorize_error, effective_error_category
from .models import (
    AggregatedStats,
    BackfillResult,
    BatchReconciliationResult,
    DiagnosticsFilters,
    ForceLinkAuthorization,
    PaymentsSummary,
    ReconcileMode,
    ReconciliationResult,
)
from .reconcile import fingerprint_lock
from .reconcile import reconcile_all_cards as _reconcile_all_cards
from .reconcile import reconcile_card as _reconcile_card
from .status import CanonicalStatus, normalize_status, require_canonical_status
from .store import backfill_card_fields, fetch_transactions
from .store import payments_summary as _payments_summary


def payment_diagnostics(
    filters: DiagnosticsFilters | None = None,
    *,
    database_url: str | None = None,
    settings: EngineSettings | None = None,
) -> AggregatedStats:
    """Fetch the queue window for ``filters`` and aggregate it."""

    settings = settings or EngineSettings()
    with session_scope(database_url=database_url) as session:
        records = fetch_transactions(session, filters, settings=settings)
    return aggregate(records, filters, settings=settings)


def payments_summary(
    *,
    date_from: date | None = None,
    date_to: date | None = None,
    database_url: str | None = None,
    settings: EngineSettings | None = None,
) -> PaymentsSummary:
    """Per-category payment totals computed in SQL by the compiled classifier."""

    with session_scope(database_url=database_url) as session:
        return _payments_summary(
            session, date_from=date_from, date_to=date_to, settings=settings
        )


def reconcile_card(
    profile_id: str,
    card_last4: str,
    card_brand: str | None,
    *,
    database_url: str | None = None,
    mode: ReconcileMode | str = ReconcileMode.DRY_RUN,
    limit: int | None = None,
    provider_token: str | None = None,
    force_link: ForceLinkAuthorization | None = None,
    allow_large: bool = False,
    settings: EngineSettings | None = None,
) -> ReconciliationResult:
    """Reconcile one card in its own transaction.

    Store errors propagate after the transaction rolls back.
    """

    settings = settings or EngineSettings()
    fp = make_fingerprint(profile_id, card_last4, card_brand)
    with fingerprint_lock(fp), session_scope(database_url=database_url) as session:
        return _reconcile_card(
            session,
            fp,
            mode=mode,
            limit=limit if limit is not None else settings.reconcile_limit,
            provider_token=provider_token,
            force_link=force_link,
            allow_large=allow_large,
        )


def reconcile_all_cards(
    *,
    database_url: str | None = None,
    mode: ReconcileMode | str = ReconcileMode.DRY_RUN,
    limit: int | None = None,
    concurrency: int | None = None,
    cancel_event: threading.Event | None = None,
    settings: EngineSettings | None = None,
) -> BatchReconciliationResult:
    return _reconcile_all_cards(
        database_url=database_url,
        mode=mode,
        limit=limit,
        concurrency=concurrency,
        cancel_event=cancel_event,
        settings=settings,
    )


def backfill_cards(
    *,
    database_url: str | None = None,
    dry_run: bool = True,
    limit: int | None = None,
    settings: EngineSettings | None = None,
) -> BackfillResult:
    settings = settings or EngineSettings()
    with session_scope(database_url=database_url) as session:
        return backfill_card_fields(
            session, deep_search=settings.deep_card_search, dry_run=dry_run, limit=limit
        )


__all__ = [
    "CanonicalStatus",
    "ErrorCategory",
    "PaymentCategory",
    "aggregate",
    "backfill_cards",
    "categorize_error",
    "classify",
    "effective_error_category",
    "normalize_status",
    "payment_diagnostics",
    "payments_summary",
    "reconcile_all_cards",
    "reconcile_card",
    "require_canonical_status",
    "summarize_payments",
]
