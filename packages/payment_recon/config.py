"""Runtime settings for the engine, resolved from environment variables.

Entrypoints load ``.env`` (via ``python-dotenv``) before calling
:func:`load_settings`; library code receives an :class:`EngineSettings`
explicitly and never reads the environment on its own.

Variables
---------
``PAYRECON_LOCAL_COUNTRY``      ISO country treated as "local" in the geo split (``BY``)
``PAYRECON_TIMEZONE``           IANA zone used for daily trend buckets (``UTC``)
``PAYRECON_BANK_TOP_N``         rows kept in the bank breakdown (``20``)
``PAYRECON_RECONCILE_LIMIT``    per-card candidate cap for reconciliation (``200``)
``PAYRECON_MAX_WORKERS``        batch reconciliation concurrency (``4``, capped at 16)
``PAYRECON_DEEP_CARD_SEARCH``   enable the bounded structural card search (off)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_MAX_WORKERS_CAP = 16


@dataclass(frozen=True, slots=True)
class EngineSettings:
    local_country: str = "BY"
    timezone: str = "UTC"
    bank_top_n: int = 20
    reconcile_limit: int = 200
    max_workers: int = 4
    deep_card_search: bool = False

    def __post_init__(self) -> None:
        if not self.local_country or len(self.local_country) != 2:
            raise ValueError(f"local_country must be an ISO alpha-2 code: {self.local_country!r}")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {self.timezone!r}") from exc
        for name in ("bank_top_n", "reconcile_limit", "max_workers"):
            val = getattr(self, name)
            if isinstance(val, bool) or not isinstance(val, int) or val <= 0:
                raise ValueError(f"EngineSettings.{name} must be a positive integer")

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        val = int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc
    return val


def _env_flag(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"{key} must be a boolean flag, got {raw!r}")


def load_settings(env: Mapping[str, str] | None = None) -> EngineSettings:
    """Build :class:`EngineSettings` from ``env`` (defaults to ``os.environ``)."""

    env = os.environ if env is None else env
    defaults = EngineSettings()
    workers = _env_int(env, "PAYRECON_MAX_WORKERS", defaults.max_workers)
    return EngineSettings(
        local_country=(env.get("PAYRECON_LOCAL_COUNTRY") or defaults.local_country)
        .strip()
        .upper(),
        timezone=(env.get("PAYRECON_TIMEZONE") or defaults.timezone).strip(),
        bank_top_n=_env_int(env, "PAYRECON_BANK_TOP_N", defaults.bank_top_n),
        reconcile_limit=_env_int(env, "PAYRECON_RECONCILE_LIMIT", defaults.reconcile_limit),
        max_workers=max(1, min(workers, _MAX_WORKERS_CAP)),
        deep_card_search=_env_flag(env, "PAYRECON_DEEP_CARD_SEARCH"),
    )


__all__ = ["EngineSettings", "load_settings"]
