from __future__ import annotations

import threading

import pytest
from payment_recon import reconcile as reconcile_mod
from payment_recon.api import reconcile_all_cards
from payment_recon.config import EngineSettings
from payment_recon.models import ReconcileMode
from payment_recon.reconcile import STOP_COLLISION
from sqlalchemy.exc import OperationalError

from tests.helpers.db import add_payment, audit_rows, link_card, payment_profiles


def _seed(db_url: str) -> dict[str, int]:
    link_card(db_url, "p-1", "4242", "visa")
    link_card(db_url, "p-2", "1111", "mastercard")
    # Shared card: both links collide with each other.
    link_card(db_url, "p-3", "9999", "visa")
    link_card(db_url, "p-4", "9999", "visa")
    return {
        "p1": add_payment(db_url, card_last4="4242", card_brand="visa"),
        "p2": add_payment(db_url, card_last4="1111", card_brand="MC"),
        "shared": add_payment(db_url, card_last4="9999", card_brand="visa"),
    }


def test_batch_apply_isolates_collisions(db_url: str) -> None:
    rows = _seed(db_url)

    batch = reconcile_all_cards(database_url=db_url, mode=ReconcileMode.APPLY, concurrency=1)

    assert batch.dry_run is False
    assert [r.profile_id for r in batch.results] == ["p-1", "p-2", "p-3", "p-4"]
    assert [r.status for r in batch.results] == ["success", "success", "stop", "stop"]
    assert all(r.stop_reason == STOP_COLLISION for r in batch.results[2:])
    assert batch.processed == 4
    assert batch.stopped == 2
    assert batch.errors == 0
    assert batch.total_updated == 2
    assert batch.cancelled is False

    profiles = payment_profiles(db_url)
    assert profiles[rows["p1"]] == "p-1"
    assert profiles[rows["p2"]] == "p-2"
    assert profiles[rows["shared"]] is None
    assert len(audit_rows(db_url)) == 4


def test_batch_dry_run_writes_nothing_but_audits(db_url: str) -> None:
    _seed(db_url)

    batch = reconcile_all_cards(database_url=db_url, concurrency=1)

    assert batch.dry_run is True
    assert batch.total_candidates == 2
    assert batch.total_updated == 0
    assert all(p is None for p in payment_profiles(db_url).values())
    assert len(audit_rows(db_url)) == 4


def test_batch_captures_per_card_errors(db_url: str, monkeypatch: pytest.MonkeyPatch) -> None:
    rows = _seed(db_url)
    real_scan = reconcile_mod._scan

    def _flaky_scan(session, fingerprint, **kwargs):
        if fingerprint.profile_id == "p-1":
            raise OperationalError("SELECT", {}, Exception("connection reset"))
        return real_scan(session, fingerprint, **kwargs)

    monkeypatch.setattr(reconcile_mod, "_scan", _flaky_scan)

    batch = reconcile_all_cards(database_url=db_url, mode=ReconcileMode.APPLY, concurrency=1)

    first, second = batch.results[:2]
    assert first.status == "error"
    assert "connection reset" in (first.error or "")
    assert second.status == "success"
    assert batch.errors == 1
    profiles = payment_profiles(db_url)
    assert profiles[rows["p1"]] is None
    assert profiles[rows["p2"]] == "p-2"


def test_cancellation_is_checked_before_each_card(
    db_url: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    _seed(db_url)
    cancel = threading.Event()
    real = reconcile_mod.reconcile_card

    def _cancel_after_first(session, fingerprint, **kwargs):
        result = real(session, fingerprint, **kwargs)
        cancel.set()
        return result

    monkeypatch.setattr(reconcile_mod, "reconcile_card", _cancel_after_first)

    batch = reconcile_all_cards(database_url=db_url, concurrency=1, cancel_event=cancel)

    assert [r.status for r in batch.results] == ["success", "cancelled", "cancelled", "cancelled"]
    assert batch.cancelled is True
    assert batch.processed == 1
    assert len(audit_rows(db_url)) == 1


def test_batch_uses_settings_defaults(db_url: str) -> None:
    link_card(db_url, "p-1", "4242", "visa")
    for _ in range(3):
        add_payment(db_url, card_last4="4242", card_brand="visa")

    settings = EngineSettings(reconcile_limit=2, max_workers=1)
    batch = reconcile_all_cards(database_url=db_url, settings=settings)

    (result,) = batch.results
    assert result.status == "stop"
    assert result.found_candidates == 3


def test_empty_link_table(db_url: str) -> None:
    batch = reconcile_all_cards(database_url=db_url)
    assert batch.results == ()
    assert batch.processed == 0
