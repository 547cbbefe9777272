"""Decline-reason categorization for failed transactions.

Provider error messages are free text ("Do not honor (05)", "3-D Secure
authentication failed", "Insufficient funds"). :func:`categorize_error` maps
them to a closed :class:`ErrorCategory` set by ordered, case-insensitive
substring matching. Numeric ISO response codes ("51", "05", ...) are matched as
substrings too, so a message mentioning "2051" still counts as insufficient
funds; that is accepted behavior.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from .logging_setup import get_logger

_log = get_logger("payment_recon.error_categories")


class ErrorCategory(StrEnum):
    NEEDS_3DS = "needs_3ds"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    DO_NOT_HONOR = "do_not_honor"
    EXPIRED_CARD = "expired_card"
    INVALID_CARD = "invalid_card"
    LOST_STOLEN = "lost_stolen"
    TIMEOUT = "timeout"
    ISSUER_BLOCK = "issuer_block"
    UNKNOWN = "unknown"


# Evaluated top to bottom; the first category with a matching needle wins.
ERROR_PATTERNS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.NEEDS_3DS, ("3d secure", "3-d secure", "authentication", "3ds")),
    (ErrorCategory.INSUFFICIENT_FUNDS, ("51", "insufficient")),
    (ErrorCategory.DO_NOT_HONOR, ("do not honor", "05")),
    (ErrorCategory.EXPIRED_CARD, ("expired", "33", "54")),
    (ErrorCategory.INVALID_CARD, ("invalid", "14")),
    (ErrorCategory.LOST_STOLEN, ("lost", "41", "stolen", "43")),
    (ErrorCategory.TIMEOUT, ("timeout", "unavailable")),
    (ErrorCategory.ISSUER_BLOCK, ("block", "restrict", "not permitted")),
)

ERROR_CATEGORY_LABELS: dict[ErrorCategory, str] = {
    ErrorCategory.NEEDS_3DS: "Требует 3DS",
    ErrorCategory.DO_NOT_HONOR: "Отклонено банком",
    ErrorCategory.INSUFFICIENT_FUNDS: "Недостаточно средств",
    ErrorCategory.ISSUER_BLOCK: "Блокировка эмитента",
    ErrorCategory.EXPIRED_CARD: "Карта просрочена",
    ErrorCategory.INVALID_CARD: "Неверные данные",
    ErrorCategory.LOST_STOLEN: "Утеряна/украдена",
    ErrorCategory.TIMEOUT: "Таймаут/недоступность",
    ErrorCategory.UNKNOWN: "Неизвестная ошибка",
}


def categorize_error(message: str | None) -> ErrorCategory:
    """Map a free-text decline message to an :class:`ErrorCategory`."""

    if not isinstance(message, str):
        return ErrorCategory.UNKNOWN
    text = message.lower()
    if not text.strip():
        return ErrorCategory.UNKNOWN
    for category, needles in ERROR_PATTERNS:
        if any(n in text for n in needles):
            return category
    return ErrorCategory.UNKNOWN


def coerce_error_category(value: Any) -> ErrorCategory | None:
    """Return ``value`` as an :class:`ErrorCategory` when it names one."""

    if isinstance(value, ErrorCategory):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return ErrorCategory(value.strip().lower())
        except ValueError:
            return None
    return None


def effective_error_category(record: Any) -> ErrorCategory:
    """Category for a record: a stored ``error_category`` wins over re-derivation.

    ``record`` may be a mapping or any object with ``error_category`` and
    ``error_message`` attributes. Any non-empty stored value is authoritative;
    one outside the closed set is reported as ``unknown`` with a warning. When
    nothing is stored, the message is categorized; ``reason`` is consulted when
    the message is empty.
    """

    if isinstance(record, Mapping):
        stored = record.get("error_category")
        message = record.get("error_message") or record.get("message") or record.get("reason")
    else:
        stored = getattr(record, "error_category", None)
        message = getattr(record, "error_message", None) or getattr(record, "reason", None)

    precomputed = coerce_error_category(stored)
    if precomputed is not None:
        return precomputed
    if isinstance(stored, str) and stored.strip():
        _log.warning("unrecognized stored error_category %r; counting as unknown", stored)
        return ErrorCategory.UNKNOWN
    return categorize_error(message)


def error_label(category: ErrorCategory | str) -> str:
    cat = coerce_error_category(category) or ErrorCategory.UNKNOWN
    return ERROR_CATEGORY_LABELS[cat]


__all__ = [
    "ERROR_CATEGORY_LABELS",
    "ERROR_PATTERNS",
    "ErrorCategory",
    "categorize_error",
    "coerce_error_category",
    "effective_error_category",
    "error_label",
]
