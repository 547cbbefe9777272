from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGINT identity on Postgres; SQLite only autoincrements INTEGER PRIMARY KEY.
_PK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


# ---------------------------
# Core: payments_v2
# ---------------------------


class Payment(Base):
    __tablename__ = "payments_v2"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String, nullable=False, server_default="bepaid")
    provider_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Profile attribution. NULL means "not yet attributed" and is the only
    # state the reconciler will write over.
    profile_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_token: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    status_normalized: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_type: Mapped[str | None] = mapped_column(String, nullable=True)
    card_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    card_brand: Mapped[str | None] = mapped_column(String, nullable=True)
    card_bank: Mapped[str | None] = mapped_column(String, nullable=True)
    card_bank_country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    customer_country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_category: Mapped[str | None] = mapped_column(String, nullable=True)
    three_d_secure: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    commission_total: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    # Raw provider payload as received; card fields may be backfilled from it.
    provider_response: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_payments_v2_card", "card_last4", "card_brand"),
        Index("ix_payments_v2_payment_token", "payment_token"),
    )


# ---------------------------
# Core: payment_reconcile_queue
# ---------------------------


class ReconcileQueueItem(Base):
    """Payment-like rows imported from provider statements awaiting attribution."""

    __tablename__ = "payment_reconcile_queue"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    bepaid_uid: Mapped[str | None] = mapped_column(String, nullable=True)
    matched_profile_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    status_normalized: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_type: Mapped[str | None] = mapped_column(String, nullable=True)
    card_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    card_brand: Mapped[str | None] = mapped_column(String, nullable=True)
    card_bank: Mapped[str | None] = mapped_column(String, nullable=True)
    card_bank_country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    customer_country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    client_geo_country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_category: Mapped[str | None] = mapped_column(String, nullable=True)
    three_d_secure: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    provider_response: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (Index("ix_payment_reconcile_queue_card", "card_last4", "card_brand"),)


# ---------------------------
# Reference: card_profile_links / payment_methods
# ---------------------------


class CardProfileLink(Base):
    __tablename__ = "card_profile_links"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    profile_id: Mapped[str] = mapped_column(String, nullable=False)
    card_last4: Mapped[str] = mapped_column(String(4), nullable=False)
    card_brand: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "profile_id", "card_last4", "card_brand", name="uq_card_profile_links_card"
        ),
    )


class PaymentMethod(Base):
    """Saved cards; active ones participate in collision detection."""

    __tablename__ = "payment_methods"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    profile_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last4: Mapped[str] = mapped_column(String(4), nullable=False)
    brand: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_token: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, server_default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status in ('active','revoked','expired')", name="ck_payment_methods_status"
        ),
    )


# ---------------------------
# Audit: audit_logs
# ---------------------------


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    actor_type: Mapped[str] = mapped_column(String, nullable=False)
    actor_label: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("actor_type in ('system','user')", name="ck_audit_logs_actor_type"),
    )


__all__ = [
    "AuditLog",
    "Base",
    "CardProfileLink",
    "Payment",
    "PaymentMethod",
    "ReconcileQueueItem",
]
