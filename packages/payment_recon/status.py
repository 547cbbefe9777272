"""Provider status normalization.

Payment providers (and the humans exporting their statements) describe the
same outcome in many ways: ``"successful"``, ``"Успешно"``, ``"captured"``...
This module collapses them into a closed :class:`CanonicalStatus` set.

- :func:`normalize_status` is total and never raises; unrecognized input
  yields ``None`` and callers decide what that means.
- :func:`require_canonical_status` is the strict variant for write paths that
  must not store an unrecognized value.

The synonym table and the ordered substring fallbacks are also consumed by
:mod:`payment_recon.classification_sql`, so the SQL rendition cannot drift
from the Python one.
"""

from __future__ import annotations

from enum import StrEnum


class CanonicalStatus(StrEnum):
    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"
    CANCELED = "canceled"
    FAILED = "failed"
    PENDING = "pending"


CANONICAL_STATUSES: tuple[CanonicalStatus, ...] = tuple(CanonicalStatus)


class UnrecognizedStatusError(ValueError):
    """Raised by :func:`require_canonical_status` for unmappable input."""

    def __init__(self, raw: object, context: str | None = None) -> None:
        self.raw = raw
        self.context = context
        where = f" ({context})" if context else ""
        super().__init__(f"unrecognized payment status{where}: {raw!r}")


# Exact synonyms, keyed by canonical status. Keys are already trimmed and
# lower-cased.
STATUS_SYNONYMS: dict[CanonicalStatus, frozenset[str]] = {
    CanonicalStatus.SUCCEEDED: frozenset(
        {
            "successful",
            "succeeded",
            "success",
            "completed",
            "processed",
            "captured",
            "успешно",
            "успех",
        }
    ),
    CanonicalStatus.REFUNDED: frozenset(
        {"refund", "refunded", "refunds", "возврат", "возврат средств"}
    ),
    CanonicalStatus.CANCELED: frozenset(
        {
            "cancel",
            "cancelled",
            "canceled",
            "cancellation",
            "void",
            "voided",
            "authorization_void",
            "отмена",
        }
    ),
    CanonicalStatus.FAILED: frozenset(
        {
            "failed",
            "fail",
            "error",
            "declined",
            "expired",
            "incomplete",
            "ошибка",
            "отклонено",
            "неуспешно",
        }
    ),
    CanonicalStatus.PENDING: frozenset(
        {"pending", "processing", "ожидание", "в обработке"}
    ),
}

# Substring fallbacks, evaluated in this order; first hit wins.
STATUS_FALLBACKS: tuple[tuple[CanonicalStatus, tuple[str, ...]], ...] = (
    (CanonicalStatus.REFUNDED, ("refund", "возврат")),
    (CanonicalStatus.CANCELED, ("cancel", "void", "отмен")),
    (CanonicalStatus.SUCCEEDED, ("success", "succeed", "успеш", "успех")),
    (
        CanonicalStatus.FAILED,
        ("fail", "error", "declin", "expir", "incomplete", "ошибк", "отклон"),
    ),
    (CanonicalStatus.PENDING, ("pending", "process", "ожидан", "обработк")),
)

_EXACT: dict[str, CanonicalStatus] = {
    synonym: canonical for canonical, synonyms in STATUS_SYNONYMS.items() for synonym in synonyms
}


def clean_token(raw: object) -> str:
    """Trim and lower-case ``raw``; ``None`` and non-strings become ``""``."""

    if not isinstance(raw, str):
        return ""
    return raw.strip().lower()


def normalize_status(raw: str | None) -> CanonicalStatus | None:
    """Map a provider status string to a :class:`CanonicalStatus` or ``None``."""

    s = clean_token(raw)
    if not s:
        return None
    exact = _EXACT.get(s)
    if exact is not None:
        return exact
    for canonical, needles in STATUS_FALLBACKS:
        if any(n in s for n in needles):
            return canonical
    return None


def require_canonical_status(raw: str | None, context: str | None = None) -> CanonicalStatus:
    """Strict variant of :func:`normalize_status` for storage writes."""

    status = normalize_status(raw)
    if status is None:
        raise UnrecognizedStatusError(raw, context)
    return status


def is_canonical_status(value: object) -> bool:
    """True only for the literal canonical values (not their synonyms)."""

    return isinstance(value, str) and value in CanonicalStatus._value2member_map_


__all__ = [
    "CANONICAL_STATUSES",
    "STATUS_FALLBACKS",
    "STATUS_SYNONYMS",
    "CanonicalStatus",
    "UnrecognizedStatusError",
    "clean_token",
    "is_canonical_status",
    "normalize_status",
    "require_canonical_status",
]
