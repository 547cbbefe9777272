# ruff: noqa: I001
"""Payments, reconciliation queue, card links, payment methods, audit log.

Revision ID: 0001_payments_core
Revises: None
Create Date: 2026-01-29
"""

from __future__ import annotations  # ruff: noqa: I001

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001_payments_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def _card_columns() -> list[sa.Column]:
    return [
        sa.Column("card_last4", sa.String(4), nullable=True),
        sa.Column("card_brand", sa.Text(), nullable=True),
        sa.Column("card_bank", sa.Text(), nullable=True),
        sa.Column("card_bank_country", sa.String(2), nullable=True),
        sa.Column("customer_country", sa.String(2), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "payments_v2",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.Text(), nullable=False, server_default=sa.text("'bepaid'")),
        sa.Column("provider_payment_id", sa.Text(), nullable=True),
        sa.Column("profile_id", sa.Text(), nullable=True),
        sa.Column("payment_token", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("status", sa.Text(), nullable=True),
        sa.Column("status_normalized", sa.Text(), nullable=True),
        sa.Column("transaction_type", sa.Text(), nullable=True),
        *_card_columns(),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_category", sa.Text(), nullable=True),
        sa.Column("three_d_secure", sa.Boolean(), nullable=True),
        sa.Column("commission_total", sa.Numeric(12, 2), nullable=True),
        sa.Column("provider_response", postgresql.JSONB(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payments_v2_profile_id", "payments_v2", ["profile_id"])
    op.create_index("ix_payments_v2_card", "payments_v2", ["card_last4", "card_brand"])
    op.create_index("ix_payments_v2_payment_token", "payments_v2", ["payment_token"])

    op.create_table(
        "payment_reconcile_queue",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("bepaid_uid", sa.Text(), nullable=True),
        sa.Column("matched_profile_id", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("status", sa.Text(), nullable=True),
        sa.Column("status_normalized", sa.Text(), nullable=True),
        sa.Column("transaction_type", sa.Text(), nullable=True),
        *_card_columns(),
        sa.Column("client_geo_country", sa.String(2), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("error_category", sa.Text(), nullable=True),
        sa.Column("three_d_secure", sa.Boolean(), nullable=True),
        sa.Column("provider_response", postgresql.JSONB(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_payment_reconcile_queue_matched_profile_id",
        "payment_reconcile_queue",
        ["matched_profile_id"],
    )
    op.create_index(
        "ix_payment_reconcile_queue_card",
        "payment_reconcile_queue",
        ["card_last4", "card_brand"],
    )

    op.create_table(
        "card_profile_links",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("profile_id", sa.Text(), nullable=False),
        sa.Column("card_last4", sa.String(4), nullable=False),
        sa.Column("card_brand", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint(
            "profile_id", "card_last4", "card_brand", name="uq_card_profile_links_card"
        ),
    )

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("profile_id", sa.Text(), nullable=True),
        sa.Column("last4", sa.String(4), nullable=False),
        sa.Column("brand", sa.Text(), nullable=True),
        sa.Column("provider_token", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'active'")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint(
            "status in ('active','revoked','expired')", name="ck_payment_methods_status"
        ),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("actor_type", sa.Text(), nullable=False),
        sa.Column("actor_label", sa.Text(), nullable=True),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("meta", postgresql.JSONB(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint("actor_type in ('system','user')", name="ck_audit_logs_actor_type"),
    )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("payment_methods")
    op.drop_table("card_profile_links")
    op.drop_index("ix_payment_reconcile_queue_card", table_name="payment_reconcile_queue")
    op.drop_index(
        "ix_payment_reconcile_queue_matched_profile_id", table_name="payment_reconcile_queue"
    )
    op.drop_table("payment_reconcile_queue")
    op.drop_index("ix_payments_v2_payment_token", table_name="payments_v2")
    op.drop_index("ix_payments_v2_card", table_name="payments_v2")
    op.drop_index("ix_payments_v2_profile_id", table_name="payments_v2")
    op.drop_table("payments_v2")
