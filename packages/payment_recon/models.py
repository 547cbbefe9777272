"""Data models for ``payment_recon``.

Everything here is plain data: frozen dataclasses that the store builds from
ORM rows and the engines return to callers. Nothing is persisted by these
types; classification and aggregation are always recomputed on read.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from .classification import coerce_amount

# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TransactionRecord:
    """A single payment-like row as read from the store.

    ``error_category`` is the precomputed category when one has been stored
    (possibly corrected by hand); it is authoritative over re-derivation from
    ``error_message``/``reason``.
    """

    id: str
    status: str | None = None
    status_normalized: str | None = None
    transaction_type: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    created_at: datetime | None = None
    card_brand: str | None = None
    card_last4: str | None = None
    card_bank: str | None = None
    card_bank_country: str | None = None
    customer_country: str | None = None
    client_geo_country: str | None = None
    error_message: str | None = None
    reason: str | None = None
    error_category: str | None = None
    three_d_secure: bool | None = None
    commission: Decimal | None = None
    profile_id: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> TransactionRecord:
        """Build a record from a loosely-shaped mapping (JSON export, dict row).

        Unknown keys are ignored. ``message`` is accepted as an alias of
        ``error_message`` and ``commission_total`` of ``commission``;
        ``created_at`` may be an ISO-8601 string.
        """

        created = data.get("created_at")
        if isinstance(created, str):
            created = _parse_timestamp(created)
        elif not isinstance(created, datetime):
            created = None

        def _opt_str(key: str, *aliases: str) -> str | None:
            for k in (key, *aliases):
                v = data.get(k)
                if v is not None and str(v) != "":
                    return str(v)
            return None

        tds = data.get("three_d_secure")
        return cls(
            id=str(data.get("id") if data.get("id") is not None else ""),
            status=_opt_str("status"),
            status_normalized=_opt_str("status_normalized"),
            transaction_type=_opt_str("transaction_type"),
            amount=coerce_amount(data.get("amount")),
            currency=_opt_str("currency"),
            created_at=created,
            card_brand=_opt_str("card_brand"),
            card_last4=_opt_str("card_last4"),
            card_bank=_opt_str("card_bank"),
            card_bank_country=_opt_str("card_bank_country"),
            customer_country=_opt_str("customer_country"),
            client_geo_country=_opt_str("client_geo_country"),
            error_message=_opt_str("error_message", "message"),
            reason=_opt_str("reason"),
            error_category=_opt_str("error_category"),
            three_d_secure=tds if isinstance(tds, bool) else None,
            commission=coerce_amount(
                data.get("commission", data.get("commission_total"))
            ),
            profile_id=_opt_str("profile_id", "matched_profile_id"),
        )


def _parse_timestamp(raw: str) -> datetime | None:
    s = raw.strip()
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class DiagnosticsFilters:
    """Store-side window plus the in-memory ``error_category`` filter.

    ``None`` (or ``"all"`` for string filters) means "no constraint".
    ``date_to`` is inclusive of the whole calendar day.
    """

    date_from: date | None = None
    date_to: date | None = None
    brand: str | None = None
    issuer_bank: str | None = None
    issuer_country: str | None = None
    client_country: str | None = None
    transaction_type: str | None = None
    has_3ds: bool | None = None
    error_category: str | None = None

    def __post_init__(self) -> None:
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")

    @staticmethod
    def active(value: str | None) -> str | None:
        """Return ``value`` unless it is empty or the ``"all"`` wildcard."""

        if value is None:
            return None
        v = value.strip()
        if not v or v.lower() == "all":
            return None
        return v


# ---------------------------------------------------------------------------
# Aggregation output
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OverallStats:
    total: int
    successful: int
    failed: int
    approval_rate: float
    needs_3ds_count: int
    needs_3ds_rate: float
    local_count: int
    non_local_count: int
    local_country: str


@dataclass(frozen=True, slots=True)
class BankBreakdownRow:
    bank: str
    country: str
    total: int
    successful: int
    failed: int
    needs_3ds: int
    approval_rate: float


@dataclass(frozen=True, slots=True)
class ErrorBreakdownRow:
    category: str
    label: str
    count: int
    percentage: float


@dataclass(frozen=True, slots=True)
class DailyTrendRow:
    date: str
    total: int
    successful: int
    failed: int
    approval_rate: float


@dataclass(frozen=True, slots=True)
class FilterOptions:
    brands: tuple[str, ...] = ()
    banks: tuple[str, ...] = ()
    issuer_countries: tuple[str, ...] = ()
    client_countries: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AggregatedStats:
    stats: OverallStats
    bank_breakdown: tuple[BankBreakdownRow, ...]
    error_breakdown: tuple[ErrorBreakdownRow, ...]
    daily_trend: tuple[DailyTrendRow, ...]
    filter_options: FilterOptions


@dataclass(frozen=True, slots=True)
class CategoryTotal:
    count: int = 0
    amount: Decimal = Decimal("0")


@dataclass(frozen=True, slots=True)
class PaymentsSummary:
    """Per-category counts and absolute amounts for a set of payments."""

    totals: Mapping[str, CategoryTotal]
    fees: Decimal
    fee_percent: float
    net_revenue: Decimal
    total_count: int


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class ReconcileMode(StrEnum):
    DRY_RUN = "dry_run"
    APPLY = "apply"


@dataclass(frozen=True, slots=True)
class CardFingerprint:
    """A card bound to a profile: ``(profile_id, last4, normalized brand)``."""

    profile_id: str
    card_last4: str
    card_brand: str

    def __post_init__(self) -> None:
        if not self.profile_id or not str(self.profile_id).strip():
            raise ValueError("CardFingerprint.profile_id must be non-empty")
        last4 = str(self.card_last4).strip()
        if len(last4) != 4 or not last4.isdigit():
            raise ValueError(f"CardFingerprint.card_last4 must be 4 digits: {self.card_last4!r}")
        if not self.card_brand or not str(self.card_brand).strip():
            raise ValueError("CardFingerprint.card_brand must be non-empty")

    @property
    def key(self) -> tuple[str, str]:
        """The profile-independent identity used for collision checks and locking."""

        return (self.card_last4, self.card_brand)


@dataclass(frozen=True, slots=True)
class ForceLinkAuthorization:
    """Explicit, audited permission to link a colliding card.

    ``actor`` names the human taking responsibility; ``reason`` is free text
    recorded in the audit log. Both are required.
    """

    actor: str
    reason: str

    def __post_init__(self) -> None:
        if not isinstance(self.actor, str) or not self.actor.strip():
            raise ValueError("ForceLinkAuthorization.actor must be non-empty")
        if not isinstance(self.reason, str) or not self.reason.strip():
            raise ValueError("ForceLinkAuthorization.reason must be non-empty")


@dataclass(frozen=True, slots=True)
class ReconciliationResult:
    profile_id: str
    card_last4: str
    card_brand: str
    dry_run: bool
    status: str  # "success" | "stop" | "error" | "cancelled"
    candidates_payments: int = 0
    candidates_queue: int = 0
    updated_payments_profile: int = 0
    updated_queue_profile: int = 0
    skipped_already_linked: int = 0
    conflicts: int = 0
    found_candidates: int = 0
    collision: bool = False
    stop_reason: str | None = None
    force_linked: bool | None = None
    error: str | None = None
    samples: Mapping[str, tuple[Mapping[str, Any], ...]] = field(default_factory=dict)

    @property
    def total_candidates(self) -> int:
        return self.candidates_payments + self.candidates_queue

    @property
    def total_updated(self) -> int:
        return self.updated_payments_profile + self.updated_queue_profile


@dataclass(frozen=True, slots=True)
class BackfillResult:
    """Outcome of filling missing card columns from stored provider payloads."""

    dry_run: bool
    scanned: int = 0
    updated_payments: int = 0
    updated_queue: int = 0
    unresolved: int = 0


@dataclass(frozen=True, slots=True)
class BatchReconciliationResult:
    dry_run: bool
    results: tuple[ReconciliationResult, ...]
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return sum(1 for r in self.results if r.status != "cancelled")

    @property
    def errors(self) -> int:
        return sum(1 for r in self.results if r.status == "error")

    @property
    def stopped(self) -> int:
        return sum(1 for r in self.results if r.status == "stop")

    @property
    def total_candidates(self) -> int:
        return sum(r.total_candidates for r in self.results)

    @property
    def total_updated(self) -> int:
        return sum(r.total_updated for r in self.results)


__all__ = [
    "AggregatedStats",
    "BackfillResult",
    "BankBreakdownRow",
    "BatchReconciliationResult",
    "CardFingerprint",
    "CategoryTotal",
    "DailyTrendRow",
    "DiagnosticsFilters",
    "ErrorBreakdownRow",
    "FilterOptions",
    "ForceLinkAuthorization",
    "OverallStats",
    "PaymentsSummary",
    "ReconcileMode",
    "ReconciliationResult",
    "TransactionRecord",
]
