from __future__ import annotations

import pytest
from payment_recon.config import EngineSettings, load_settings


def test_defaults() -> None:
    s = load_settings({})
    assert s == EngineSettings()
    assert (s.local_country, s.timezone, s.bank_top_n) == ("BY", "UTC", 20)
    assert (s.reconcile_limit, s.max_workers, s.deep_card_search) == (200, 4, False)


def test_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PAYRECON_LOCAL_COUNTRY", " lt ")
    monkeypatch.setenv("PAYRECON_TIMEZONE", "Europe/Minsk")
    monkeypatch.setenv("PAYRECON_BANK_TOP_N", "5")
    monkeypatch.setenv("PAYRECON_RECONCILE_LIMIT", "50")
    monkeypatch.setenv("PAYRECON_MAX_WORKERS", "2")
    monkeypatch.setenv("PAYRECON_DEEP_CARD_SEARCH", "yes")

    s = load_settings()

    assert s.local_country == "LT"
    assert s.tzinfo.key == "Europe/Minsk"
    assert (s.bank_top_n, s.reconcile_limit, s.max_workers) == (5, 50, 2)
    assert s.deep_card_search is True


def test_max_workers_is_clamped() -> None:
    assert load_settings({"PAYRECON_MAX_WORKERS": "64"}).max_workers == 16
    assert load_settings({"PAYRECON_MAX_WORKERS": "0"}).max_workers == 1


@pytest.mark.parametrize(
    "env",
    [
        {"PAYRECON_TIMEZONE": "Mars/Olympus"},
        {"PAYRECON_LOCAL_COUNTRY": "BLR"},
        {"PAYRECON_BANK_TOP_N": "ten"},
        {"PAYRECON_RECONCILE_LIMIT": "0"},
        {"PAYRECON_DEEP_CARD_SEARCH": "maybe"},
    ],
)
def test_invalid_values_raise(env: dict[str, str]) -> None:
    with pytest.raises(ValueError):
        load_settings(env)
