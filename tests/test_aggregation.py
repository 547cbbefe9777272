from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone
from decimal import Decimal

from payment_recon.aggregation import (
    UNKNOWN_BANK,
    UNKNOWN_DAY,
    aggregate,
    apply_filters,
    day_bucket,
    is_successful,
    summarize_payments,
)
from payment_recon.config import EngineSettings
from payment_recon.models import DiagnosticsFilters, TransactionRecord


def _rec(i: int, **kw) -> TransactionRecord:
    kw.setdefault("created_at", datetime(2026, 1, 10, 12, tzinfo=UTC))
    return TransactionRecord(id=str(i), **kw)


def _window() -> list[TransactionRecord]:
    return [
        _rec(1, status="successful", card_bank="Alfa", card_bank_country="BY",
             customer_country="BY", card_brand="visa"),
        _rec(2, status="Успешно", card_bank="Alfa", card_bank_country="BY", card_brand="visa"),
        _rec(3, status="failed", error_message="3-D Secure authentication failed",
             card_bank="Alfa", card_bank_country="BY", card_brand="visa"),
        _rec(4, status="failed", error_message="Insufficient funds", card_bank="Revolut",
             card_bank_country="LT", client_geo_country="DE", card_brand="mastercard"),
        _rec(5, status="declined", error_message="Do not honor", card_bank="Revolut",
             card_bank_country="LT", card_brand="mastercard",
             created_at=datetime(2026, 1, 11, 9, tzinfo=UTC)),
        _rec(6, status="failed", error_message="3DS required", error_category="needs_3ds",
             card_bank=None, card_bank_country=None, created_at=None),
    ]


# ---- Overall ---------------------------------------------------------------------


def test_overall_stats() -> None:
    result = aggregate(_window())
    s = result.stats
    assert (s.total, s.successful, s.failed) == (6, 2, 4)
    assert round(s.approval_rate, 2) == 33.33
    assert s.needs_3ds_count == 2
    assert s.needs_3ds_rate == 50.0
    assert (s.local_count, s.non_local_count) == (3, 3)
    assert s.local_country == "BY"


def test_empty_window_has_zero_rates() -> None:
    result = aggregate([])
    assert result.stats.total == 0
    assert result.stats.approval_rate == 0.0
    assert result.stats.needs_3ds_rate == 0.0
    assert result.bank_breakdown == ()
    assert result.error_breakdown == ()
    assert result.daily_trend == ()


def test_successful_accepts_either_status_field() -> None:
    assert is_successful(TransactionRecord(id="a", status="weird", status_normalized="succeeded"))
    assert is_successful(TransactionRecord(id="b", status="captured"))
    assert not is_successful(TransactionRecord(id="c", status="refunded"))


def test_negated_success_statuses_are_not_approvals() -> None:
    for status in ("unsuccessful", "not successful", "Неуспешная", "Неуспешный"):
        assert not is_successful(TransactionRecord(id="x", status=status)), status

    window = [
        _rec(1, status="successful"),
        _rec(2, status="unsuccessful", error_message="Insufficient funds"),
    ]
    result = aggregate(window)
    assert (result.stats.successful, result.stats.failed) == (1, 1)
    assert result.stats.approval_rate == 50.0
    assert [row.category for row in result.error_breakdown] == ["insufficient_funds"]


def test_local_country_is_configurable() -> None:
    result = aggregate(_window(), settings=EngineSettings(local_country="LT"))
    assert result.stats.local_count == 2
    assert result.stats.local_country == "LT"


# ---- Breakdowns ------------------------------------------------------------------


def test_bank_breakdown_sorted_by_failures() -> None:
    rows = aggregate(_window()).bank_breakdown
    assert [(r.bank, r.country) for r in rows] == [
        ("Revolut", "LT"),
        ("Alfa", "BY"),
        (UNKNOWN_BANK, "??"),
    ]
    revolut, alfa, unknown = rows
    assert (revolut.total, revolut.failed, revolut.approval_rate) == (2, 2, 0.0)
    assert (alfa.total, alfa.successful, alfa.failed, alfa.needs_3ds) == (3, 2, 1, 1)
    assert unknown.needs_3ds == 1


def test_bank_breakdown_is_truncated_to_top_n() -> None:
    rows = aggregate(_window(), settings=EngineSettings(bank_top_n=1)).bank_breakdown
    assert [r.bank for r in rows] == ["Revolut"]


def test_error_breakdown_counts_failures_only() -> None:
    rows = aggregate(_window()).error_breakdown
    assert [(r.category, r.count) for r in rows] == [
        ("needs_3ds", 2),
        ("do_not_honor", 1),
        ("insufficient_funds", 1),
    ]
    assert rows[0].percentage == 50.0
    assert rows[0].label == "Требует 3DS"
    assert sum(r.count for r in rows) == aggregate(_window()).stats.failed


def test_daily_trend_ascending_with_unknown_last() -> None:
    rows = aggregate(_window()).daily_trend
    assert [r.date for r in rows] == ["2026-01-10", "2026-01-11", UNKNOWN_DAY]
    assert (rows[0].total, rows[0].successful, rows[0].failed) == (4, 2, 2)


def test_daily_trend_uses_configured_timezone() -> None:
    late = TransactionRecord(
        id="x", status="successful", created_at=datetime(2026, 1, 10, 22, tzinfo=UTC)
    )
    assert day_bucket(late.created_at, EngineSettings()) == "2026-01-10"
    assert day_bucket(late.created_at, EngineSettings(timezone="Europe/Minsk")) == "2026-01-11"
    naive = datetime(2026, 1, 10, 22)
    assert day_bucket(naive, EngineSettings(timezone="Europe/Minsk")) == "2026-01-11"
    assert day_bucket(None, EngineSettings()) == UNKNOWN_DAY


# ---- Filters ---------------------------------------------------------------------


def test_error_category_filter_is_applied_in_memory() -> None:
    result = aggregate(_window(), DiagnosticsFilters(error_category="needs_3ds"))
    assert result.stats.total == 2
    assert result.stats.failed == 2
    # Options come from the window before the category filter.
    assert result.filter_options.banks == ("Alfa", "Revolut")
    assert result.filter_options.brands == ("mastercard", "visa")
    assert result.filter_options.client_countries == ("BY", "DE")


def test_error_category_filter_all_is_a_wildcard() -> None:
    assert aggregate(_window(), DiagnosticsFilters(error_category="all")).stats.total == 6


def test_apply_filters_matches_store_window() -> None:
    window = _window()
    out = apply_filters(window, DiagnosticsFilters(brand="mastercard"))
    assert [r.id for r in out] == ["4", "5"]

    out = apply_filters(window, DiagnosticsFilters(date_from=date(2026, 1, 11)))
    assert [r.id for r in out] == ["5"]

    out = apply_filters(window, DiagnosticsFilters(issuer_bank="all", issuer_country="BY"))
    assert [r.id for r in out] == ["1", "2", "3"]

    with_3ds = [_rec(7, status="successful", three_d_secure=True), _rec(8, status="failed")]
    assert [r.id for r in apply_filters(with_3ds, DiagnosticsFilters(has_3ds=True))] == ["7"]


def test_apply_filters_date_bounds_are_local_days() -> None:
    minsk = timezone(timedelta(hours=3))
    rec = _rec(1, status="successful", created_at=datetime(2026, 1, 10, 23, 30, tzinfo=minsk))
    settings = EngineSettings(timezone="Europe/Minsk")
    f = DiagnosticsFilters(date_from=date(2026, 1, 10), date_to=date(2026, 1, 10))
    assert apply_filters([rec], f, settings=settings) == [rec]
    assert apply_filters([rec], f, settings=EngineSettings()) == [rec]
    f_next = DiagnosticsFilters(date_from=date(2026, 1, 11))
    assert apply_filters([rec], f_next, settings=settings) == []


# ---- Payments summary ------------------------------------------------------------


def test_summarize_payments() -> None:
    records = [
        TransactionRecord(id="1", status="successful", transaction_type="payment",
                          amount=Decimal("100"), commission=Decimal("3")),
        TransactionRecord(id="2", status="successful", transaction_type="Возврат",
                          amount=Decimal("-40"), commission=Decimal("1")),
        TransactionRecord(id="3", status="weird", status_normalized="pending",
                          amount=Decimal("5")),
        TransactionRecord(id="4", status="bogus"),
    ]
    summary = summarize_payments(records)
    assert summary.total_count == 4
    assert summary.totals["successful"].count == 1
    assert summary.totals["refunded"].amount == Decimal("40")
    assert summary.totals["pending"].count == 1
    assert summary.totals["unknown"].count == 1
    assert summary.fees == Decimal("3")
    assert summary.net_revenue == Decimal("57")
    assert summary.fee_percent == 3.0
