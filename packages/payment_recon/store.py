"""Store access for diagnostics and card reconciliation.

Functions here take an open SQLAlchemy ``Session`` (see ``db.client``) and
never commit; the caller owns the transaction. Reads return plain
:mod:`payment_recon.models` dataclasses, not ORM instances.

Scope:
- windowed reads of queue/payment rows for aggregation;
- card-link reads and collision lookups;
- candidate scans by provider token and by ``(last4, brand)``;
- guarded profile attachment (``profile IS NULL``) in batches;
- audit log rows;
- card column backfill from stored provider payloads.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

from db.models import AuditLog, CardProfileLink, Payment, PaymentMethod, ReconcileQueueItem
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .cards import extract_card_info, make_fingerprint, normalize_brand
from .classification import PaymentCategory
from .classification_sql import payments_stats_statement
from .config import EngineSettings
from .logging_setup import get_logger
from .models import (
    BackfillResult,
    CardFingerprint,
    CategoryTotal,
    DiagnosticsFilters,
    PaymentsSummary,
    TransactionRecord,
)

_log = get_logger("payment_recon.store")

# Rows per UPDATE when attaching a profile.
UPDATE_BATCH_SIZE = 50


# ---------------------------------------------------------------------------
# Reads for aggregation
# ---------------------------------------------------------------------------


def _queue_record(row: ReconcileQueueItem) -> TransactionRecord:
    return TransactionRecord(
        id=str(row.id),
        status=row.status,
        status_normalized=row.status_normalized,
        transaction_type=row.transaction_type,
        amount=row.amount,
        currency=row.currency,
        created_at=row.created_at,
        card_brand=row.card_brand,
        card_last4=row.card_last4,
        card_bank=row.card_bank,
        card_bank_country=row.card_bank_country,
        customer_country=row.customer_country,
        client_geo_country=row.client_geo_country,
        error_message=row.message,
        reason=row.reason,
        error_category=row.error_category,
        three_d_secure=row.three_d_secure,
        profile_id=row.matched_profile_id,
    )


def _payment_record(row: Payment) -> TransactionRecord:
    return TransactionRecord(
        id=str(row.id),
        status=row.status,
        status_normalized=row.status_normalized,
        transaction_type=row.transaction_type,
        amount=row.amount,
        currency=row.currency,
        created_at=row.created_at,
        card_brand=row.card_brand,
        card_last4=row.card_last4,
        card_bank=row.card_bank,
        card_bank_country=row.card_bank_country,
        customer_country=row.customer_country,
        error_message=row.error_message,
        error_category=row.error_category,
        three_d_secure=row.three_d_secure,
        commission=row.commission_total,
        profile_id=row.profile_id,
    )


def _day_bounds(
    date_from: date | None, date_to: date | None, settings: EngineSettings
) -> tuple[datetime | None, datetime | None]:
    """UTC ``[start, end)`` covering whole local days in the configured zone."""

    tz = settings.tzinfo
    start = end = None
    if date_from is not None:
        start = datetime.combine(date_from, time.min, tzinfo=tz).astimezone(UTC)
    if date_to is not None:
        end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=tz).astimezone(UTC)
    return start, end


def fetch_transactions(
    session: Session,
    filters: DiagnosticsFilters | None = None,
    *,
    settings: EngineSettings | None = None,
    limit: int | None = None,
) -> list[TransactionRecord]:
    """Read the diagnostics window from the reconciliation queue, newest first.

    Every filter except ``error_category`` is applied in SQL; that one is left
    to :func:`payment_recon.aggregation.aggregate` because it may need to be
    derived from the message text.
    """

    settings = settings or EngineSettings()
    filters = filters or DiagnosticsFilters()
    active = DiagnosticsFilters.active
    Q = ReconcileQueueItem

    stmt = select(Q)
    start, end = _day_bounds(filters.date_from, filters.date_to, settings)
    if start is not None:
        stmt = stmt.where(Q.created_at >= start)
    if end is not None:
        stmt = stmt.where(Q.created_at < end)
    for col, value in (
        (Q.card_brand, active(filters.brand)),
        (Q.card_bank, active(filters.issuer_bank)),
        (Q.card_bank_country, active(filters.issuer_country)),
        (Q.customer_country, active(filters.client_country)),
        (Q.transaction_type, active(filters.transaction_type)),
    ):
        if value is not None:
            stmt = stmt.where(col == value)
    if filters.has_3ds is not None:
        stmt = stmt.where(Q.three_d_secure.is_(filters.has_3ds))
    stmt = stmt.order_by(Q.created_at.desc(), Q.id.desc())
    if limit is not None:
        stmt = stmt.limit(limit)

    return [_queue_record(row) for row in session.scalars(stmt)]


def fetch_payments(
    session: Session,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
    settings: EngineSettings | None = None,
) -> list[TransactionRecord]:
    """Read ``payments_v2`` rows created within the given local-day window."""

    start, end = _day_bounds(date_from, date_to, settings or EngineSettings())
    stmt = select(Payment)
    if start is not None:
        stmt = stmt.where(Payment.created_at >= start)
    if end is not None:
        stmt = stmt.where(Payment.created_at < end)
    stmt = stmt.order_by(Payment.created_at.desc(), Payment.id.desc())
    return [_payment_record(row) for row in session.scalars(stmt)]


def payments_summary(
    session: Session,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
    settings: EngineSettings | None = None,
) -> PaymentsSummary:
    """Server-side :class:`PaymentsSummary` via the compiled classification ``CASE``.

    The day window is read in the configured timezone, as in :func:`fetch_payments`.
    """

    start, end = _day_bounds(date_from, date_to, settings or EngineSettings())
    row = session.execute(payments_stats_statement(start=start, end=end)).mappings().one()

    def _money(value: Any) -> Decimal:
        return Decimal(str(value or 0))

    totals = {
        cat.value: CategoryTotal(
            count=int(row[f"{cat.value}_count"] or 0),
            amount=_money(row[f"{cat.value}_amount"]),
        )
        for cat in PaymentCategory
    }
    fees = _money(row["fees"])
    successful = totals[PaymentCategory.SUCCESSFUL.value].amount
    return PaymentsSummary(
        totals=totals,
        fees=fees,
        fee_percent=float(fees / successful * 100) if successful > 0 else 0.0,
        net_revenue=successful - totals[PaymentCategory.REFUNDED.value].amount - fees,
        total_count=int(row["total_count"] or 0),
    )


# ---------------------------------------------------------------------------
# Card links and collisions
# ---------------------------------------------------------------------------


def load_card_links(session: Session) -> list[CardFingerprint]:
    """Every distinct card link as a normalized fingerprint, in link order.

    Links whose last4 is not four digits are skipped with a warning.
    """

    rows = session.execute(
        select(CardProfileLink.profile_id, CardProfileLink.card_last4, CardProfileLink.card_brand)
        .order_by(CardProfileLink.id)
    ).all()

    seen: set[tuple[str, str, str]] = set()
    out: list[CardFingerprint] = []
    for profile_id, last4, brand in rows:
        try:
            fp = make_fingerprint(profile_id, last4, brand)
        except ValueError:
            _log.warning("skipping malformed card link profile=%s last4=%r", profile_id, last4)
            continue
        key = (fp.profile_id, fp.card_last4, fp.card_brand)
        if key in seen:
            continue
        seen.add(key)
        out.append(fp)
    return out


def _same_brand(raw: str | None, fingerprint: CardFingerprint) -> bool:
    return normalize_brand(raw) == fingerprint.card_brand


def collision_profiles(session: Session, fingerprint: CardFingerprint) -> set[str]:
    """Profiles other than ``fingerprint.profile_id`` bound to the same card.

    Both card links and active saved payment methods count.
    """

    linked = session.execute(
        select(CardProfileLink.profile_id, CardProfileLink.card_brand).where(
            CardProfileLink.card_last4 == fingerprint.card_last4
        )
    ).all()
    methods = session.execute(
        select(PaymentMethod.profile_id, PaymentMethod.brand).where(
            PaymentMethod.last4 == fingerprint.card_last4,
            PaymentMethod.status == "active",
            PaymentMethod.profile_id.is_not(None),
        )
    ).all()
    others = {p for p, brand in (*linked, *methods) if p and _same_brand(brand, fingerprint)}
    others.discard(fingerprint.profile_id)
    return others


# ---------------------------------------------------------------------------
# Candidate scans
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ScannedRow:
    """A payment or queue row matched by card data, with its current owner."""

    id: int
    profile_id: str | None
    external_id: str | None
    amount: Decimal | None
    paid_at: datetime | None

    def sample(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


def scan_payments_by_token(session: Session, token: str, *, limit: int) -> list[ScannedRow]:
    rows = session.execute(
        select(
            Payment.id,
            Payment.profile_id,
            Payment.provider_payment_id,
            Payment.amount,
            Payment.paid_at,
        )
        .where(Payment.payment_token == token)
        .order_by(Payment.id)
        .limit(limit)
    ).all()
    return [ScannedRow(*row) for row in rows]


def _take_same_brand(
    rows: Iterable[Any], fingerprint: CardFingerprint, *, limit: int
) -> list[ScannedRow]:
    # Rows are (*ScannedRow fields, brand). Brands compare after normalization,
    # so "Visa Debit" and "visa  classic" both match a "visa" card.
    out: list[ScannedRow] = []
    for *fields, brand in rows:
        if not _same_brand(brand, fingerprint):
            continue
        out.append(ScannedRow(*fields))
        if len(out) >= limit:
            break
    return out


def scan_payments_by_card(
    session: Session, fingerprint: CardFingerprint, *, limit: int
) -> list[ScannedRow]:
    rows = session.execute(
        select(
            Payment.id,
            Payment.profile_id,
            Payment.provider_payment_id,
            Payment.amount,
            Payment.paid_at,
            Payment.card_brand,
        )
        .where(Payment.card_last4 == fingerprint.card_last4)
        .order_by(Payment.id)
    ).all()
    return _take_same_brand(rows, fingerprint, limit=limit)


def scan_queue_by_card(
    session: Session, fingerprint: CardFingerprint, *, limit: int
) -> list[ScannedRow]:
    Q = ReconcileQueueItem
    rows = session.execute(
        select(Q.id, Q.matched_profile_id, Q.bepaid_uid, Q.amount, Q.paid_at, Q.card_brand)
        .where(Q.card_last4 == fingerprint.card_last4)
        .order_by(Q.id)
    ).all()
    return _take_same_brand(rows, fingerprint, limit=limit)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def _batches(ids: Sequence[int], size: int) -> Iterable[Sequence[int]]:
    for i in range(0, len(ids), size):
        yield ids[i : i + size]


def attach_profile_to_payments(
    session: Session, ids: Sequence[int], profile_id: str, *, batch_size: int = UPDATE_BATCH_SIZE
) -> int:
    """Set ``profile_id`` on still-unattributed payments; return rows changed."""

    updated = 0
    for batch in _batches(ids, batch_size):
        result = session.execute(
            update(Payment)
            .where(Payment.id.in_(batch), Payment.profile_id.is_(None))
            .values(profile_id=profile_id, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        updated += result.rowcount or 0
    return updated


def attach_profile_to_queue(
    session: Session, ids: Sequence[int], profile_id: str, *, batch_size: int = UPDATE_BATCH_SIZE
) -> int:
    """Set ``matched_profile_id`` on still-unattributed queue rows; return rows changed."""

    Q = ReconcileQueueItem
    updated = 0
    for batch in _batches(ids, batch_size):
        result = session.execute(
            update(Q)
            .where(Q.id.in_(batch), Q.matched_profile_id.is_(None))
            .values(matched_profile_id=profile_id, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        updated += result.rowcount or 0
    return updated


def write_audit_log(
    session: Session,
    *,
    action: str,
    meta: dict[str, Any],
    actor_type: str = "system",
    actor_label: str | None = None,
) -> None:
    session.add(
        AuditLog(actor_type=actor_type, actor_label=actor_label or action, action=action, meta=meta)
    )
    session.flush()


# ---------------------------------------------------------------------------
# Backfill
# ---------------------------------------------------------------------------


def backfill_card_fields(
    session: Session,
    *,
    deep_search: bool = False,
    dry_run: bool = True,
    limit: int | None = None,
) -> BackfillResult:
    """Fill missing ``card_last4``/``card_brand`` from stored provider payloads.

    Only rows with no ``card_last4`` are touched. On payments a missing
    ``payment_token`` is filled as well so token matching can find them.
    """

    scanned = updated_payments = updated_queue = unresolved = 0

    payment_rows = session.scalars(
        select(Payment)
        .where(Payment.card_last4.is_(None), Payment.provider_response.is_not(None))
        .order_by(Payment.id)
        .limit(limit)
    ).all()
    for p in payment_rows:
        scanned += 1
        info = extract_card_info(p.provider_response, deep_search=deep_search)
        if info is None or not info.last_4:
            unresolved += 1
            continue
        updated_payments += 1
        if dry_run:
            continue
        p.card_last4 = info.last_4
        if not p.card_brand and info.brand:
            p.card_brand = normalize_brand(info.brand)
        if not p.payment_token and info.token:
            p.payment_token = info.token

    queue_rows = session.scalars(
        select(ReconcileQueueItem)
        .where(
            ReconcileQueueItem.card_last4.is_(None),
            ReconcileQueueItem.provider_response.is_not(None),
        )
        .order_by(ReconcileQueueItem.id)
        .limit(limit)
    ).all()
    for q in queue_rows:
        scanned += 1
        info = extract_card_info(q.provider_response, deep_search=deep_search)
        if info is None or not info.last_4:
            unresolved += 1
            continue
        updated_queue += 1
        if dry_run:
            continue
        q.card_last4 = info.last_4
        if not q.card_brand and info.brand:
            q.card_brand = normalize_brand(info.brand)

    session.flush()
    _log.info(
        "card backfill dry_run=%s scanned=%d payments=%d queue=%d unresolved=%d",
        dry_run,
        scanned,
        updated_payments,
        updated_queue,
        unresolved,
    )
    return BackfillResult(
        dry_run=dry_run,
        scanned=scanned,
        updated_payments=updated_payments,
        updated_queue=updated_queue,
        unresolved=unresolved,
    )


__all__ = [
    "UPDATE_BATCH_SIZE",
    "ScannedRow",
    "attach_profile_to_payments",
    "attach_profile_to_queue",
    "backfill_card_fields",
    "collision_profiles",
    "fetch_payments",
    "fetch_transactions",
    "load_card_links",
    "payments_summary",
    "scan_payments_by_card",
    "scan_payments_by_token",
    "scan_queue_by_card",
    "write_audit_log",
]
