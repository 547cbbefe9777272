"""Payment diagnostics aggregation.

Pure functions over an in-memory window of :class:`TransactionRecord`. The
store fetches the window (date range, brand, bank, countries, type, 3DS); the
``error_category`` filter is applied here because the category may have to be
derived from the decline message.

Every call recomputes from scratch. Percentages are 0 when the denominator is
0.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from .classification import PaymentCategory, classify
from .config import EngineSettings
from .error_categories import ErrorCategory, effective_error_category, error_label
from .models import (
    AggregatedStats,
    BankBreakdownRow,
    CategoryTotal,
    DailyTrendRow,
    DiagnosticsFilters,
    ErrorBreakdownRow,
    FilterOptions,
    OverallStats,
    PaymentsSummary,
    TransactionRecord,
)
from .status import STATUS_SYNONYMS, CanonicalStatus, clean_token

UNKNOWN_BANK = "Unknown"
UNKNOWN_COUNTRY = "??"
UNKNOWN_DAY = "unknown"


def _pct(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole > 0 else 0.0


_SUCCEEDED_TOKENS = STATUS_SYNONYMS[CanonicalStatus.SUCCEEDED]


def is_successful(record: TransactionRecord) -> bool:
    """True when either status field is an exact succeeded synonym.

    No substring fallback: "unsuccessful" and "Неуспешная" are not approvals.
    """

    return (
        clean_token(record.status_normalized) in _SUCCEEDED_TOKENS
        or clean_token(record.status) in _SUCCEEDED_TOKENS
    )


def _is_local(record: TransactionRecord, local_country: str) -> bool:
    for value in (record.customer_country, record.card_bank_country, record.client_geo_country):
        if value and value.strip().upper() == local_country:
            return True
    return False


def day_bucket(created_at: datetime | None, settings: EngineSettings) -> str:
    """Calendar day of ``created_at`` in the configured zone; naive values are UTC."""

    if created_at is None:
        return UNKNOWN_DAY
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    return created_at.astimezone(settings.tzinfo).date().isoformat()


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


def _eq(value: str | None, wanted: str | None) -> bool:
    return wanted is None or (value or "") == wanted


def apply_filters(
    records: Iterable[TransactionRecord],
    filters: DiagnosticsFilters,
    *,
    settings: EngineSettings | None = None,
) -> list[TransactionRecord]:
    """Apply the store-side window in memory (for callers without a store).

    Mirrors :func:`payment_recon.store.fetch_transactions`. Date bounds use the
    configured zone and ``date_to`` covers the whole day. The
    ``error_category`` filter is not applied here; :func:`aggregate` does it.
    """

    settings = settings or EngineSettings()
    active = DiagnosticsFilters.active
    out: list[TransactionRecord] = []
    for r in records:
        if filters.date_from or filters.date_to:
            day = day_bucket(r.created_at, settings)
            if day == UNKNOWN_DAY:
                continue
            if filters.date_from and day < filters.date_from.isoformat():
                continue
            if filters.date_to and day > filters.date_to.isoformat():
                continue
        if not _eq(r.card_brand, active(filters.brand)):
            continue
        if not _eq(r.card_bank, active(filters.issuer_bank)):
            continue
        if not _eq(r.card_bank_country, active(filters.issuer_country)):
            continue
        if not _eq(r.customer_country, active(filters.client_country)):
            continue
        if not _eq(r.transaction_type, active(filters.transaction_type)):
            continue
        if filters.has_3ds is not None and r.three_d_secure is not filters.has_3ds:
            continue
        out.append(r)
    return out


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _Bucket:
    total: int = 0
    successful: int = 0
    failed: int = 0
    needs_3ds: int = 0

    def add(self, successful: bool, needs_3ds: bool) -> None:
        self.total += 1
        if successful:
            self.successful += 1
        else:
            self.failed += 1
            if needs_3ds:
                self.needs_3ds += 1


def _filter_options(records: Sequence[TransactionRecord]) -> FilterOptions:
    def _distinct(values: Iterable[str | None]) -> tuple[str, ...]:
        return tuple(sorted({v for v in values if v}))

    return FilterOptions(
        brands=_distinct(r.card_brand for r in records),
        banks=_distinct(r.card_bank for r in records),
        issuer_countries=_distinct(r.card_bank_country for r in records),
        client_countries=_distinct(r.customer_country or r.client_geo_country for r in records),
    )


def aggregate(
    records: Iterable[TransactionRecord],
    filters: DiagnosticsFilters | None = None,
    *,
    settings: EngineSettings | None = None,
) -> AggregatedStats:
    """Compute diagnostics for a pre-fetched window of records.

    Filter options are taken from the window before the ``error_category``
    filter so the choices do not collapse to the selected category.
    """

    settings = settings or EngineSettings()
    window = list(records)

    wanted = DiagnosticsFilters.active(filters.error_category) if filters else None
    if wanted is not None:
        wanted = wanted.lower()
        rows = [r for r in window if effective_error_category(r).value == wanted]
    else:
        rows = window

    overall = _Bucket()
    banks: dict[tuple[str, str], _Bucket] = {}
    days: dict[str, _Bucket] = {}
    errors: Counter[ErrorCategory] = Counter()
    local = 0

    for r in rows:
        ok = is_successful(r)
        category = None if ok else effective_error_category(r)
        needs_3ds = category is ErrorCategory.NEEDS_3DS

        overall.add(ok, needs_3ds)
        if category is not None:
            errors[category] += 1
        if _is_local(r, settings.local_country):
            local += 1

        key = (r.card_bank or UNKNOWN_BANK, r.card_bank_country or UNKNOWN_COUNTRY)
        banks.setdefault(key, _Bucket()).add(ok, needs_3ds)
        days.setdefault(day_bucket(r.created_at, settings), _Bucket()).add(ok, needs_3ds)

    stats = OverallStats(
        total=overall.total,
        successful=overall.successful,
        failed=overall.failed,
        approval_rate=_pct(overall.successful, overall.total),
        needs_3ds_count=overall.needs_3ds,
        needs_3ds_rate=_pct(overall.needs_3ds, overall.failed),
        local_count=local,
        non_local_count=overall.total - local,
        local_country=settings.local_country,
    )

    bank_rows = sorted(
        (
            BankBreakdownRow(
                bank=bank,
                country=country,
                total=b.total,
                successful=b.successful,
                failed=b.failed,
                needs_3ds=b.needs_3ds,
                approval_rate=_pct(b.successful, b.total),
            )
            for (bank, country), b in banks.items()
        ),
        key=lambda row: (-row.failed, -row.total, row.bank, row.country),
    )[: settings.bank_top_n]

    error_rows = sorted(
        (
            ErrorBreakdownRow(
                category=cat.value,
                label=error_label(cat),
                count=count,
                percentage=_pct(count, overall.failed),
            )
            for cat, count in errors.items()
        ),
        key=lambda row: (-row.count, row.category),
    )

    daily_rows = sorted(
        (
            DailyTrendRow(
                date=day,
                total=b.total,
                successful=b.successful,
                failed=b.failed,
                approval_rate=_pct(b.successful, b.total),
            )
            for day, b in days.items()
        ),
        # Dated buckets ascending; the undated bucket last.
        key=lambda row: (row.date == UNKNOWN_DAY, row.date),
    )

    return AggregatedStats(
        stats=stats,
        bank_breakdown=tuple(bank_rows),
        error_breakdown=tuple(error_rows),
        daily_trend=tuple(daily_rows),
        filter_options=_filter_options(window),
    )


# ---------------------------------------------------------------------------
# Payments summary
# ---------------------------------------------------------------------------


def summarize_payments(records: Iterable[TransactionRecord]) -> PaymentsSummary:
    """Per-category counts and absolute amounts; net = successful - refunded - fees."""

    counts: Counter[PaymentCategory] = Counter()
    amounts: dict[PaymentCategory, Decimal] = {c: Decimal("0") for c in PaymentCategory}
    fees = Decimal("0")
    total = 0

    for r in records:
        total += 1
        cat = classify(r.status_normalized or r.status, r.transaction_type, r.amount)
        counts[cat] += 1
        if r.amount is not None:
            amounts[cat] += abs(r.amount)
        # Fees are charged on successful payments only.
        if cat is PaymentCategory.SUCCESSFUL and r.commission is not None:
            fees += r.commission

    totals = {
        c.value: CategoryTotal(count=counts[c], amount=amounts[c]) for c in PaymentCategory
    }
    successful = amounts[PaymentCategory.SUCCESSFUL]
    net = successful - amounts[PaymentCategory.REFUNDED] - fees
    fee_percent = float(fees / successful * 100) if successful > 0 else 0.0
    return PaymentsSummary(
        totals=totals,
        fees=fees,
        fee_percent=fee_percent,
        net_revenue=net,
        total_count=total,
    )


__all__ = [
    "UNKNOWN_BANK",
    "UNKNOWN_COUNTRY",
    "UNKNOWN_DAY",
    "aggregate",
    "apply_filters",
    "day_bucket",
    "is_successful",
    "summarize_payments",
]
