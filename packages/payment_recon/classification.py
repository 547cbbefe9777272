"""Priority-ordered business classification of payment transactions.

Every ``(status, transaction_type, amount)`` triple maps to exactly one
:class:`PaymentCategory`. Rules are evaluated in :data:`PRIORITY_RULES` order
and the first match wins:

1. refunded   - refund transaction type, refunded status, or a negative
   amount on a "возврат" type;
2. cancelled  - cancel/void transaction type or a cancelled status;
3. pending    - pending/processing status;
4. failed     - failed/error/declined/expired/incomplete status;
5. successful - successful status AND a payment transaction type AND a
   positive (or absent) amount;
6. unknown    - anything else; callers treat it as "needs manual review".

Refunds and cancellations come first because providers keep reporting
``status="successful"`` on refunded rows. Success needs the strongest
evidence because status alone cannot tell a real payment from a zero or
negative artifact.

The keyword and status tables below are the single source of truth; the SQL
rendition in :mod:`payment_recon.classification_sql` is compiled from them.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import StrEnum

from .status import CanonicalStatus, clean_token, normalize_status


class PaymentCategory(StrEnum):
    SUCCESSFUL = "successful"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    FAILED = "failed"
    PENDING = "pending"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Rule tables (lower-case)
# ---------------------------------------------------------------------------

REFUND_TYPE_KEYWORDS: tuple[str, ...] = ("возврат", "refund", "refunded")
# A negative amount only marks a refund on this type keyword.
NEGATIVE_REFUND_TYPE_KEYWORD = "возврат"
CANCEL_TYPE_KEYWORDS: tuple[str, ...] = (
    "отмена",
    "отмен",
    "void",
    "cancellation",
    "authorization_void",
    "canceled",
    "cancelled",
    "cancel",
)
PAYMENT_TYPES: frozenset[str] = frozenset(
    {
        "платеж",
        "payment",
        "payment_card",
        "payment_erip",
        "erip",
        "payment_apple_pay",
        "payment_google_pay",
    }
)

REFUND_STATUSES: frozenset[str] = frozenset({CanonicalStatus.REFUNDED.value})
CANCEL_STATUSES: frozenset[str] = frozenset({"cancelled", "canceled", "void"})
PENDING_STATUSES: frozenset[str] = frozenset({"pending", "processing"})
FAILED_STATUSES: frozenset[str] = frozenset(
    {"failed", "error", "declined", "expired", "incomplete"}
)
SUCCESS_STATUSES: frozenset[str] = frozenset({"successful", "succeeded"})


# ---------------------------------------------------------------------------
# Facts and rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ClassificationFacts:
    """Inputs to the rules, cleaned once.

    ``status`` is the canonical value when the raw status normalizes,
    otherwise the trimmed lower-cased raw string (``""`` when absent).
    """

    status: str
    type_text: str
    amount: Decimal | None

    @property
    def type_missing(self) -> bool:
        return not self.type_text


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    category: PaymentCategory
    matches: Callable[[ClassificationFacts], bool]


def _type_contains(facts: ClassificationFacts, keywords: tuple[str, ...]) -> bool:
    return any(k in facts.type_text for k in keywords)


def _is_refund(facts: ClassificationFacts) -> bool:
    return (
        _type_contains(facts, REFUND_TYPE_KEYWORDS)
        or facts.status in REFUND_STATUSES
        or (
            facts.amount is not None
            and facts.amount < 0
            and NEGATIVE_REFUND_TYPE_KEYWORD in facts.type_text
        )
    )


def _is_cancel(facts: ClassificationFacts) -> bool:
    return _type_contains(facts, CANCEL_TYPE_KEYWORDS) or facts.status in CANCEL_STATUSES


def _is_pending(facts: ClassificationFacts) -> bool:
    return facts.status in PENDING_STATUSES


def _is_failed(facts: ClassificationFacts) -> bool:
    return facts.status in FAILED_STATUSES


def _is_successful(facts: ClassificationFacts) -> bool:
    return (
        facts.status in SUCCESS_STATUSES
        and (facts.type_missing or facts.type_text in PAYMENT_TYPES)
        and (facts.amount is None or facts.amount > 0)
    )


PRIORITY_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(PaymentCategory.REFUNDED, _is_refund),
    ClassificationRule(PaymentCategory.CANCELLED, _is_cancel),
    ClassificationRule(PaymentCategory.PENDING, _is_pending),
    ClassificationRule(PaymentCategory.FAILED, _is_failed),
    ClassificationRule(PaymentCategory.SUCCESSFUL, _is_successful),
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def coerce_amount(raw: object) -> Decimal | None:
    """Best-effort conversion of ``raw`` to ``Decimal``; junk becomes ``None``."""

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else None
    if isinstance(raw, float) and not math.isfinite(raw):
        return None
    if isinstance(raw, int | float):
        return Decimal(str(raw))
    if isinstance(raw, str):
        try:
            d = Decimal(raw.strip().replace(",", "."))
        except InvalidOperation:
            return None
        return d if d.is_finite() else None
    return None


def build_facts(
    status: str | None, transaction_type: str | None, amount: object = None
) -> ClassificationFacts:
    canonical = normalize_status(status)
    return ClassificationFacts(
        status=canonical.value if canonical is not None else clean_token(status),
        type_text=clean_token(transaction_type),
        amount=coerce_amount(amount),
    )


def classify(
    status: str | None,
    transaction_type: str | None,
    amount: object = None,
    *,
    rules: tuple[ClassificationRule, ...] = PRIORITY_RULES,
) -> PaymentCategory:
    """Return the single :class:`PaymentCategory` for a transaction.

    Never raises for malformed input. ``rules`` exists so tests can evaluate
    alternative orderings; production callers use the default.
    """

    facts = build_facts(status, transaction_type, amount)
    for rule in rules:
        if rule.matches(facts):
            return rule.category
    return PaymentCategory.UNKNOWN


def is_refund_transaction_type(transaction_type: str | None) -> bool:
    return _type_contains(build_facts(None, transaction_type), REFUND_TYPE_KEYWORDS)


def is_cancel_transaction_type(transaction_type: str | None) -> bool:
    return _type_contains(build_facts(None, transaction_type), CANCEL_TYPE_KEYWORDS)


def is_payment_transaction_type(transaction_type: str | None) -> bool:
    """A missing type counts as a payment (providers omit it for plain charges)."""

    facts = build_facts(None, transaction_type)
    return facts.type_missing or facts.type_text in PAYMENT_TYPES


__all__ = [
    "CANCEL_STATUSES",
    "CANCEL_TYPE_KEYWORDS",
    "FAILED_STATUSES",
    "NEGATIVE_REFUND_TYPE_KEYWORD",
    "PAYMENT_TYPES",
    "PENDING_STATUSES",
    "PRIORITY_RULES",
    "REFUND_STATUSES",
    "REFUND_TYPE_KEYWORDS",
    "SUCCESS_STATUSES",
    "ClassificationFacts",
    "ClassificationRule",
    "PaymentCategory",
    "build_facts",
    "classify",
    "coerce_amount",
    "is_cancel_transaction_type",
    "is_payment_transaction_type",
    "is_refund_transaction_type",
]
