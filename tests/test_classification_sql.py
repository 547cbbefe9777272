from __future__ import annotations

import itertools
from datetime import UTC, date, datetime
from decimal import Decimal

from db.client import session_scope
from db.models import Payment
from payment_recon.aggregation import summarize_payments
from payment_recon.classification import classify
from payment_recon.classification_sql import (
    normalized_status_sql,
    payment_category_function_ddl,
    payment_category_sql,
)
from payment_recon.config import EngineSettings
from payment_recon.models import TransactionRecord
from payment_recon.status import STATUS_SYNONYMS, normalize_status
from payment_recon.store import fetch_payments, payments_summary
from sqlalchemy import select

from tests.helpers.db import add_payment

STATUSES = [
    None,
    "",
    " successful ",
    "Успешно",
    "REFUNDED",
    "void",
    "cancel_pending",
    "processing",
    "declined",
    "Ошибка",
    "partial_refund",
    "bogus-status-xyz",
]
TYPES = [None, "", "payment", "Платеж", "Возврат", "refund", "Отмена", "transfer"]
AMOUNTS = [None, Decimal("0"), Decimal("12.50"), Decimal("-4.00")]


def test_sql_classifier_matches_python(db_url: str) -> None:
    grid = list(itertools.product(STATUSES, TYPES, AMOUNTS))
    ids = {
        add_payment(db_url, status=s, transaction_type=t, amount=a): (s, t, a) for s, t, a in grid
    }

    expr = payment_category_sql(Payment.status, Payment.transaction_type, Payment.amount)
    with session_scope(database_url=db_url) as session:
        rows = session.execute(select(Payment.id, expr)).all()

    assert len(rows) == len(grid)
    for row_id, sql_category in rows:
        status, tx_type, amount = ids[row_id]
        assert sql_category == classify(status, tx_type, amount).value, (status, tx_type, amount)


def test_sql_status_normalizer_matches_python(db_url: str) -> None:
    raws = [s for synonyms in STATUS_SYNONYMS.values() for s in synonyms]
    raws += ["partial_refund", "cancel_pending", "3ds_failure", "awaiting processing", "new"]
    ids = {add_payment(db_url, status=raw): raw for raw in raws}

    with session_scope(database_url=db_url) as session:
        rows = session.execute(select(Payment.id, normalized_status_sql(Payment.status))).all()

    for row_id, sql_status in rows:
        expected = normalize_status(ids[row_id])
        assert sql_status == (expected.value if expected is not None else None), ids[row_id]


def test_payments_summary_matches_in_memory_summary(db_url: str) -> None:
    cols = ("status", "status_normalized", "transaction_type", "amount", "commission_total")
    rows = [
        dict(zip(cols, values, strict=True))
        for values in (
            ("successful", None, "payment", "100.00", "2.50"),
            ("successful", None, "payment_card", "50.00", "1.25"),
            ("successful", None, "Возврат", "-30.00", "0.50"),
            ("failed", "failed", "payment", "20.00", None),
            ("weird", "", "payment", "5.00", None),
            ("Отмена", None, None, "7.00", None),
        )
    ]
    for r in rows:
        add_payment(db_url, **r)

    with session_scope(database_url=db_url) as session:
        summary = payments_summary(session)

    expected = summarize_payments(
        TransactionRecord.from_mapping({"id": i, **r}) for i, r in enumerate(rows)
    )

    assert summary.total_count == expected.total_count == 6
    for category, total in expected.totals.items():
        assert summary.totals[category].count == total.count, category
        assert summary.totals[category].amount == total.amount, category
    assert summary.totals["successful"].amount == Decimal("150.00")
    assert summary.totals["refunded"].amount == Decimal("30.00")
    assert summary.fees == expected.fees == Decimal("3.75")
    assert summary.net_revenue == expected.net_revenue == Decimal("116.25")
    assert round(summary.fee_percent, 2) == 2.5


def test_payments_summary_respects_date_window(db_url: str) -> None:
    add_payment(
        db_url, status="successful", amount="10", created_at=datetime(2026, 1, 1, 12, tzinfo=UTC)
    )
    add_payment(
        db_url, status="successful", amount="20", created_at=datetime(2026, 1, 2, 23, tzinfo=UTC)
    )
    add_payment(
        db_url, status="successful", amount="40", created_at=datetime(2026, 1, 3, 0, tzinfo=UTC)
    )

    with session_scope(database_url=db_url) as session:
        summary = payments_summary(session, date_from=date(2026, 1, 2), date_to=date(2026, 1, 2))

    assert summary.total_count == 1
    assert summary.totals["successful"].amount == Decimal("20")


def test_payments_summary_day_window_uses_configured_timezone(db_url: str) -> None:
    for amount, created in (
        ("10", datetime(2026, 1, 1, 12, tzinfo=UTC)),
        # 2026-01-02 01:00 in Minsk (UTC+3)
        ("5", datetime(2026, 1, 1, 22, tzinfo=UTC)),
        # 2026-01-03 02:00 in Minsk
        ("20", datetime(2026, 1, 2, 23, tzinfo=UTC)),
    ):
        add_payment(db_url, status="successful", amount=amount, created_at=created)

    minsk = EngineSettings(timezone="Europe/Minsk")
    day = {"date_from": date(2026, 1, 2), "date_to": date(2026, 1, 2)}
    with session_scope(database_url=db_url) as session:
        summary = payments_summary(session, settings=minsk, **day)
        expected = summarize_payments(fetch_payments(session, settings=minsk, **day))

    assert summary.total_count == expected.total_count == 1
    assert summary.totals["successful"].amount == expected.totals["successful"].amount
    assert summary.totals["successful"].amount == Decimal("5")


def test_empty_table_summary_is_zero(db_url: str) -> None:
    with session_scope(database_url=db_url) as session:
        summary = payments_summary(session)
    assert summary.total_count == 0
    assert summary.fees == 0
    assert summary.fee_percent == 0.0


def test_function_ddl_is_postgres_sql_function() -> None:
    ddl = payment_category_function_ddl()
    assert ddl.startswith("CREATE OR REPLACE FUNCTION payment_category(")
    assert "RETURNS text LANGUAGE sql IMMUTABLE" in ddl
    assert "p_status" in ddl and "p_type" in ddl and "p_amount" in ddl
    assert "'refunded'" in ddl and "'unknown'" in ddl
    assert ddl.rstrip().endswith("$fn$")
