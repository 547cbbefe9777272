"""Card fingerprint helpers: brand normalization and payload extraction.

Brand strings arrive as "VISA", "Visa Classic", "MC", "Белкарт"... and must
collapse to one value before two cards can be compared. Card data inside raw
provider payloads is read through an explicit, versioned pydantic schema;
a bounded structural search exists only as an opt-in fallback
(``PAYRECON_DEEP_CARD_SEARCH``) for payloads that drift from the schema.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .logging_setup import get_logger
from .models import CardFingerprint

_log = get_logger("payment_recon.cards")

# ---------------------------------------------------------------------------
# Brand normalization
# ---------------------------------------------------------------------------

# Exact aliases (lower-case, whitespace collapsed) -> normalized brand.
BRAND_ALIASES: dict[str, str] = {
    "visa": "visa",
    "visa classic": "visa",
    "visa gold": "visa",
    "visa platinum": "visa",
    "visa electron": "visa",
    "visa business": "visa",
    "visa signature": "visa",
    "visa infinite": "visa",
    "mastercard": "mastercard",
    "master card": "mastercard",
    "master": "mastercard",
    "mc": "mastercard",
    "mastercard gold": "mastercard",
    "mastercard platinum": "mastercard",
    "mastercard world": "mastercard",
    "mastercard standard": "mastercard",
    "mir": "mir",
    "мир": "mir",
    "belkart": "belkart",
    "белкарт": "belkart",
    "unionpay": "unionpay",
    "union pay": "unionpay",
    "cup": "unionpay",
    "maestro": "maestro",
    "amex": "amex",
    "american express": "amex",
}

# Prefix rules for variants not listed verbatim ("visa debit", "mastercard black").
_BRAND_PREFIXES: tuple[tuple[str, str], ...] = (
    ("visa", "visa"),
    ("mastercard", "mastercard"),
    ("american express", "amex"),
    ("union pay", "unionpay"),
    ("unionpay", "unionpay"),
    ("belkart", "belkart"),
    ("белкарт", "belkart"),
)

_WS = re.compile(r"\s+")


def normalize_brand(raw: str | None) -> str:
    """Return the normalized brand for ``raw``; ``""`` when absent."""

    if not isinstance(raw, str):
        return ""
    b = _WS.sub(" ", raw.strip().lower())
    if not b:
        return ""
    alias = BRAND_ALIASES.get(b)
    if alias is not None:
        return alias
    for prefix, brand in _BRAND_PREFIXES:
        if b.startswith(prefix + " "):
            return brand
    return b


def normalize_last4(raw: object) -> str | None:
    """Extract the trailing four digits from a last4 or masked PAN value."""

    if raw is None:
        return None
    digits = re.sub(r"\D", "", str(raw))
    if len(digits) < 4:
        return None
    return digits[-4:]


def make_fingerprint(profile_id: str, card_last4: str, card_brand: str | None) -> CardFingerprint:
    """Build a :class:`CardFingerprint` with normalized last4 and brand.

    A missing brand becomes ``"unknown"`` so the card can still be scanned; it
    only ever matches rows whose brand is literally unknown.
    """

    last4 = normalize_last4(card_last4)
    if last4 is None:
        raise ValueError(f"card_last4 must contain four digits: {card_last4!r}")
    return CardFingerprint(
        profile_id=str(profile_id).strip(),
        card_last4=last4,
        card_brand=normalize_brand(card_brand) or "unknown",
    )


# ---------------------------------------------------------------------------
# Provider payload schema (v1)
# ---------------------------------------------------------------------------

PAYLOAD_SCHEMA_VERSION = 1


class CardInfo(BaseModel):
    """Card block as sent by the provider (``credit_card`` or ``card``)."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    last_4: str | None = None
    brand: str | None = None
    token: str | None = None
    holder: str | None = None

    @field_validator("last_4", mode="before")
    @classmethod
    def _coerce_last4(cls, v: Any) -> str | None:
        if v is None:
            return None
        return normalize_last4(v)


class _TransactionEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    credit_card: CardInfo | None = None
    card: CardInfo | None = None


class ProviderPayloadV1(BaseModel):
    """Known locations of card data in a provider response.

    Checked in order: ``credit_card``, ``card``, ``transaction.credit_card``,
    ``transaction.card``.
    """

    model_config = ConfigDict(extra="ignore")

    credit_card: CardInfo | None = None
    card: CardInfo | None = None
    transaction: _TransactionEnvelope | None = None

    def card_info(self) -> CardInfo | None:
        blocks = [self.credit_card, self.card]
        if self.transaction is not None:
            blocks += [self.transaction.credit_card, self.transaction.card]
        for block in blocks:
            if block is not None and (block.last_4 or block.token):
                return block
        return None


# ---------------------------------------------------------------------------
# Bounded structural fallback
# ---------------------------------------------------------------------------

_DEEP_SEARCH_MAX_DEPTH = 4
_LAST4_KEYS = ("last_4", "last4", "card_last4", "card_last_4")
_BRAND_KEYS = ("brand", "card_brand")
_TOKEN_KEYS = ("token", "card_token", "payment_token")


def _deep_find(node: Any, depth: int) -> CardInfo | None:
    if depth > _DEEP_SEARCH_MAX_DEPTH or not isinstance(node, Mapping):
        return None
    last4 = next((normalize_last4(node[k]) for k in _LAST4_KEYS if node.get(k)), None)
    if last4:
        brand = next((str(node[k]) for k in _BRAND_KEYS if node.get(k)), None)
        token = next((str(node[k]) for k in _TOKEN_KEYS if node.get(k)), None)
        return CardInfo(last_4=last4, brand=brand, token=token)
    for value in node.values():
        if isinstance(value, Mapping):
            hit = _deep_find(value, depth + 1)
            if hit is not None:
                return hit
        elif isinstance(value, list):
            for item in value[:10]:
                hit = _deep_find(item, depth + 1)
                if hit is not None:
                    return hit
    return None


def extract_card_info(payload: Any, *, deep_search: bool = False) -> CardInfo | None:
    """Return card data from a raw provider payload, or ``None``.

    The v1 schema is tried first. When it finds nothing and ``deep_search``
    is enabled, nested mappings are searched up to a fixed depth; every such
    hit is logged so schema drift gets noticed.
    """

    if not isinstance(payload, Mapping):
        return None
    try:
        info = ProviderPayloadV1.model_validate(payload).card_info()
    except ValidationError:
        info = None
    if info is not None or not deep_search:
        return info

    info = _deep_find(payload, 0)
    if info is not None:
        _log.warning(
            "card data found outside schema v%d (deep search); last4=%s",
            PAYLOAD_SCHEMA_VERSION,
            info.last_4,
        )
    return info


def extract_card_fingerprint(
    payload: Any, *, profile_id: str, deep_search: bool = False
) -> CardFingerprint | None:
    info = extract_card_info(payload, deep_search=deep_search)
    if info is None or not info.last_4:
        return None
    return make_fingerprint(profile_id, info.last_4, info.brand)


__all__ = [
    "BRAND_ALIASES",
    "PAYLOAD_SCHEMA_VERSION",
    "CardInfo",
    "ProviderPayloadV1",
    "extract_card_fingerprint",
    "extract_card_info",
    "make_fingerprint",
    "normalize_brand",
    "normalize_last4",
]
