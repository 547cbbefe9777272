"""SQL rendition of status normalization and payment classification.

The expressions here are compiled from the same tables the Python functions
use (:data:`payment_recon.status.STATUS_SYNONYMS`,
:data:`payment_recon.status.STATUS_FALLBACKS` and
:data:`payment_recon.classification.PRIORITY_RULES`), so server-side
aggregates cannot drift from :func:`payment_recon.classification.classify`.

Parity holds for values whose surrounding whitespace is plain spaces: Python
``str.strip()`` also removes tabs and newlines while SQL ``trim()`` does not.
On SQLite a Unicode-aware ``lower()`` must be registered on the connection
(Postgres ``lower()`` already is).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from db.models import Payment
from sqlalchemy import Numeric, String, and_, case, func, literal_column, or_, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.sql.selectable import Select

from .classification import (
    CANCEL_STATUSES,
    CANCEL_TYPE_KEYWORDS,
    FAILED_STATUSES,
    NEGATIVE_REFUND_TYPE_KEYWORD,
    PAYMENT_TYPES,
    PENDING_STATUSES,
    PRIORITY_RULES,
    REFUND_STATUSES,
    REFUND_TYPE_KEYWORDS,
    SUCCESS_STATUSES,
    ClassificationRule,
    PaymentCategory,
)
from .status import STATUS_FALLBACKS, STATUS_SYNONYMS

_MONEY = Numeric(14, 2)

# ---------------------------------------------------------------------------
# Status normalization
# ---------------------------------------------------------------------------


def _clean(col: ColumnElement) -> ColumnElement:
    return func.lower(func.trim(col, type_=String), type_=String)


def _contains_any(col: ColumnElement, needles: tuple[str, ...]) -> ColumnElement[bool]:
    return or_(*(col.contains(n, autoescape=True) for n in needles))


def normalized_status_sql(col: ColumnElement) -> ColumnElement:
    """``CASE`` equivalent of :func:`payment_recon.status.normalize_status`."""

    s = _clean(col)
    whens: list[tuple[ColumnElement[bool], str]] = [
        (s.in_(sorted(synonyms)), canonical.value)
        for canonical, synonyms in STATUS_SYNONYMS.items()
    ]
    whens += [
        (_contains_any(s, needles), canonical.value) for canonical, needles in STATUS_FALLBACKS
    ]
    return case(*whens, else_=None)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _SqlFacts:
    status: ColumnElement
    type_text: ColumnElement
    type_missing: ColumnElement[bool]
    amount: ColumnElement


def _refund(f: _SqlFacts) -> ColumnElement[bool]:
    return or_(
        _contains_any(f.type_text, REFUND_TYPE_KEYWORDS),
        f.status.in_(sorted(REFUND_STATUSES)),
        and_(
            f.amount.is_not(None),
            f.amount < 0,
            f.type_text.contains(NEGATIVE_REFUND_TYPE_KEYWORD, autoescape=True),
        ),
    )


def _cancel(f: _SqlFacts) -> ColumnElement[bool]:
    return or_(
        _contains_any(f.type_text, CANCEL_TYPE_KEYWORDS),
        f.status.in_(sorted(CANCEL_STATUSES)),
    )


def _pending(f: _SqlFacts) -> ColumnElement[bool]:
    return f.status.in_(sorted(PENDING_STATUSES))


def _failed(f: _SqlFacts) -> ColumnElement[bool]:
    return f.status.in_(sorted(FAILED_STATUSES))


def _successful(f: _SqlFacts) -> ColumnElement[bool]:
    return and_(
        f.status.in_(sorted(SUCCESS_STATUSES)),
        or_(f.type_missing, f.type_text.in_(sorted(PAYMENT_TYPES))),
        or_(f.amount.is_(None), f.amount > 0),
    )


_SQL_PREDICATES: dict[PaymentCategory, Callable[[_SqlFacts], ColumnElement[bool]]] = {
    PaymentCategory.REFUNDED: _refund,
    PaymentCategory.CANCELLED: _cancel,
    PaymentCategory.PENDING: _pending,
    PaymentCategory.FAILED: _failed,
    PaymentCategory.SUCCESSFUL: _successful,
}


def payment_category_sql(
    status_col: ColumnElement,
    type_col: ColumnElement,
    amount_col: ColumnElement,
    *,
    rules: tuple[ClassificationRule, ...] = PRIORITY_RULES,
) -> ColumnElement:
    """``CASE`` equivalent of :func:`payment_recon.classification.classify`.

    The ``WHEN`` branches follow ``rules`` order, so the evaluation order is
    the one defined in Python.
    """

    facts = _SqlFacts(
        status=func.coalesce(normalized_status_sql(status_col), _clean(status_col), type_=String),
        type_text=_clean(type_col),
        type_missing=or_(type_col.is_(None), func.trim(type_col) == ""),
        amount=amount_col,
    )
    whens = [(_SQL_PREDICATES[rule.category](facts), rule.category.value) for rule in rules]
    return case(*whens, else_=PaymentCategory.UNKNOWN.value)


# ---------------------------------------------------------------------------
# Aggregate statement
# ---------------------------------------------------------------------------


def payments_stats_statement(
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> Select:
    """One-row aggregate over ``payments_v2``: count and absolute amount per category.

    Columns are ``<category>_count`` and ``<category>_amount`` for every
    :class:`PaymentCategory`, plus ``fees`` (commission on successful rows)
    and ``total_count``, over rows created in ``[start, end)``.
    """

    category = payment_category_sql(
        func.coalesce(func.nullif(Payment.status_normalized, ""), Payment.status, type_=String),
        Payment.transaction_type,
        Payment.amount,
    ).label("category")

    inner = select(
        category,
        func.abs(Payment.amount, type_=_MONEY).label("abs_amount"),
        Payment.commission_total.label("commission"),
    )
    if start is not None:
        inner = inner.where(Payment.created_at >= start)
    if end is not None:
        inner = inner.where(Payment.created_at < end)
    sub = inner.subquery()

    cols = []
    for cat in PaymentCategory:
        hit = sub.c.category == cat.value
        count = func.coalesce(func.sum(case((hit, 1), else_=0)), 0)
        cols.append(count.label(f"{cat.value}_count"))
        amount = func.coalesce(func.sum(case((hit, sub.c.abs_amount), else_=0)), 0, type_=_MONEY)
        cols.append(amount.label(f"{cat.value}_amount"))
    ok = sub.c.category == PaymentCategory.SUCCESSFUL.value
    fees = func.coalesce(func.sum(case((ok, sub.c.commission), else_=0)), 0, type_=_MONEY)
    cols.append(fees.label("fees"))
    cols.append(func.count().label("total_count"))
    return select(*cols).select_from(sub)


# ---------------------------------------------------------------------------
# Stored function (Postgres)
# ---------------------------------------------------------------------------


def payment_category_function_ddl() -> str:
    """``CREATE FUNCTION payment_category(text, text, numeric)`` for Postgres.

    Server-side reports call ``payment_category(status, type, amount)`` and get
    the same answer as :func:`classify`. Emitted by migration
    ``0002_payment_category_fn``.
    """

    expr = payment_category_sql(
        literal_column("p_status", String),
        literal_column("p_type", String),
        literal_column("p_amount", Numeric),
    )
    body = str(
        select(expr).compile(
            dialect=postgresql.dialect(paramstyle="named"),
            compile_kwargs={"literal_binds": True},
        )
    )
    return (
        "CREATE OR REPLACE FUNCTION payment_category("
        "p_status text, p_type text, p_amount numeric) "
        "RETURNS text LANGUAGE sql IMMUTABLE AS $fn$ "
        f"{body} $fn$"
    )


__all__ = [
    "normalized_status_sql",
    "payment_category_function_ddl",
    "payment_category_sql",
    "payments_stats_statement",
]
