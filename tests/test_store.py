from __future__ import annotations

from datetime import UTC, date, datetime

from db.client import session_scope
from db.models import Payment, ReconcileQueueItem
from payment_recon.cards import make_fingerprint
from payment_recon.config import EngineSettings
from payment_recon.models import DiagnosticsFilters
from payment_recon.store import (
    attach_profile_to_payments,
    attach_profile_to_queue,
    backfill_card_fields,
    collision_profiles,
    fetch_transactions,
    load_card_links,
    scan_payments_by_card,
    scan_queue_by_card,
)

from tests.helpers.db import (
    add_payment,
    add_payment_method,
    add_queue_item,
    card_columns,
    link_card,
    payment_profiles,
    queue_profiles,
)


def _at(day: int, hour: int = 12) -> datetime:
    return datetime(2026, 1, day, hour, tzinfo=UTC)


# ---- Diagnostics window ----------------------------------------------------------


def test_fetch_transactions_applies_window_newest_first(db_url: str) -> None:
    add_queue_item(db_url, status="successful", card_brand="visa", created_at=_at(9))
    add_queue_item(
        db_url, status="failed", card_brand="visa", message="Do not honor", created_at=_at(10)
    )
    add_queue_item(db_url, status="failed", card_brand="mastercard", created_at=_at(10, 13))
    add_queue_item(db_url, status="failed", card_brand="visa", created_at=_at(12))

    filters = DiagnosticsFilters(
        date_from=date(2026, 1, 9), date_to=date(2026, 1, 10), brand="visa"
    )
    with session_scope(database_url=db_url) as session:
        records = fetch_transactions(session, filters)

    assert [r.status for r in records] == ["failed", "successful"]
    assert records[0].error_message == "Do not honor"


def test_fetch_transactions_uses_local_day_bounds(db_url: str) -> None:
    # 22:00 UTC on the 9th is already the 10th in Minsk.
    add_queue_item(db_url, status="successful", created_at=_at(9, 22))
    settings = EngineSettings(timezone="Europe/Minsk")
    f = DiagnosticsFilters(date_from=date(2026, 1, 10), date_to=date(2026, 1, 10))
    with session_scope(database_url=db_url) as session:
        assert len(fetch_transactions(session, f, settings=settings)) == 1
        assert len(fetch_transactions(session, f)) == 0


def test_fetch_transactions_filters_3ds_and_maps_columns(db_url: str) -> None:
    add_queue_item(
        db_url,
        status="failed",
        three_d_secure=True,
        matched_profile_id="p-1",
        client_geo_country="BY",
        reason="Expired card",
    )
    add_queue_item(db_url, status="failed", three_d_secure=False)
    with session_scope(database_url=db_url) as session:
        records = fetch_transactions(session, DiagnosticsFilters(has_3ds=True))
    assert len(records) == 1
    rec = records[0]
    assert rec.profile_id == "p-1"
    assert rec.client_geo_country == "BY"
    assert rec.reason == "Expired card"
    assert rec.three_d_secure is True


# ---- Card links and collisions ---------------------------------------------------


def test_load_card_links_dedupes_and_skips_malformed(db_url: str) -> None:
    link_card(db_url, "p-1", "4242", "Visa")
    link_card(db_url, "p-1", "4242", "visa classic")
    link_card(db_url, "p-2", "12", "visa")
    link_card(db_url, "p-2", "5555", None)

    with session_scope(database_url=db_url) as session:
        links = load_card_links(session)

    assert [(f.profile_id, f.card_last4, f.card_brand) for f in links] == [
        ("p-1", "4242", "visa"),
        ("p-2", "5555", "unknown"),
    ]


def test_collision_profiles_counts_links_and_active_methods(db_url: str) -> None:
    link_card(db_url, "p-1", "4242", "visa")
    link_card(db_url, "p-2", "4242", "Visa Classic")
    link_card(db_url, "p-6", "4242", "Visa Debit")
    add_payment_method(db_url, "p-3", "4242", "VISA")
    add_payment_method(db_url, "p-4", "4242", "visa", status="revoked")
    add_payment_method(db_url, "p-5", "4242", "mastercard")

    with session_scope(database_url=db_url) as session:
        others = collision_profiles(session, make_fingerprint("p-1", "4242", "visa"))

    assert others == {"p-2", "p-3", "p-6"}


# ---- Scans and guarded writes ----------------------------------------------------


def test_scan_matches_normalized_brand_never_last4_alone(db_url: str) -> None:
    a = add_payment(db_url, card_last4="4242", card_brand="VISA")
    b = add_payment(db_url, card_last4="4242", card_brand="visa classic")
    c = add_payment(db_url, card_last4="4242", card_brand="Visa Debit")
    d = add_payment(db_url, card_last4="4242", card_brand="visa  platinum")
    add_payment(db_url, card_last4="4242", card_brand="mastercard")
    add_payment(db_url, card_last4="4242", card_brand=None)
    add_payment(db_url, card_last4="1111", card_brand="visa")

    with session_scope(database_url=db_url) as session:
        rows = scan_payments_by_card(session, make_fingerprint("p", "4242", "visa"), limit=10)

    assert [r.id for r in rows] == [a, b, c, d]


def test_scan_limit_counts_only_matching_brands(db_url: str) -> None:
    add_queue_item(db_url, card_last4="4242", card_brand="mastercard")
    add_queue_item(db_url, card_last4="4242", card_brand="mastercard")
    q1 = add_queue_item(db_url, card_last4="4242", card_brand="Visa Debit")
    q2 = add_queue_item(db_url, card_last4="4242", card_brand="visa")
    add_queue_item(db_url, card_last4="4242", card_brand="visa")

    with session_scope(database_url=db_url) as session:
        rows = scan_queue_by_card(session, make_fingerprint("p", "4242", "visa"), limit=2)

    assert [r.id for r in rows] == [q1, q2]


def test_attach_profile_only_touches_unattributed_rows(db_url: str) -> None:
    free = [add_payment(db_url) for _ in range(5)]
    taken = add_payment(db_url, profile_id="p-other")
    q_free = add_queue_item(db_url)
    q_taken = add_queue_item(db_url, matched_profile_id="p-other")

    with session_scope(database_url=db_url) as session:
        n = attach_profile_to_payments(session, [*free, taken], "p-1", batch_size=2)
        m = attach_profile_to_queue(session, [q_free, q_taken], "p-1")

    assert (n, m) == (5, 1)
    profiles = payment_profiles(db_url)
    assert all(profiles[i] == "p-1" for i in free)
    assert profiles[taken] == "p-other"
    assert queue_profiles(db_url) == {q_free: "p-1", q_taken: "p-other"}

    with session_scope(database_url=db_url) as session:
        assert attach_profile_to_payments(session, free, "p-1") == 0


# ---- Backfill --------------------------------------------------------------------


def test_backfill_dry_run_then_apply(db_url: str) -> None:
    p1 = add_payment(
        db_url,
        provider_response={"credit_card": {"last_4": "4242", "brand": "Visa Gold", "token": "t1"}},
    )
    p2 = add_payment(db_url, provider_response={"nothing": "here"})
    p3 = add_payment(db_url, card_last4="9999", provider_response={"card": {"last_4": "1111"}})
    q1 = add_queue_item(db_url, provider_response={"transaction": {"card": {"last_4": "5555"}}})

    with session_scope(database_url=db_url) as session:
        dry = backfill_card_fields(session, dry_run=True)
    assert (dry.scanned, dry.updated_payments, dry.updated_queue, dry.unresolved) == (3, 1, 1, 1)
    assert card_columns(db_url, Payment, p1)["card_last4"] is None

    with session_scope(database_url=db_url) as session:
        applied = backfill_card_fields(session, dry_run=False)
    assert (applied.updated_payments, applied.updated_queue) == (1, 1)
    assert card_columns(db_url, Payment, p1) == {
        "card_last4": "4242",
        "card_brand": "visa",
        "payment_token": "t1",
    }
    assert card_columns(db_url, Payment, p2)["card_last4"] is None
    assert card_columns(db_url, Payment, p3)["card_last4"] == "9999"
    assert card_columns(db_url, ReconcileQueueItem, q1)["card_last4"] == "5555"


def test_backfill_deep_search_is_opt_in(db_url: str) -> None:
    pid = add_payment(db_url, provider_response={"data": {"source": {"last4": "7777"}}})
    with session_scope(database_url=db_url) as session:
        assert backfill_card_fields(session, dry_run=False).updated_payments == 0
    with session_scope(database_url=db_url) as session:
        assert backfill_card_fields(session, dry_run=False, deep_search=True).updated_payments == 1
    assert card_columns(db_url, Payment, pid)["card_last4"] == "7777"
