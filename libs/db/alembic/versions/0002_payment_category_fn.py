# ruff: noqa: I001
"""Add the ``payment_category(status, type, amount)`` SQL function.

Revision ID: 0002_payment_category_fn
Revises: 0001_payments_core
Create Date: 2026-02-03
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op

from payment_recon.classification_sql import payment_category_function_ddl


# revision identifiers, used by Alembic.
revision: str = "0002_payment_category_fn"
down_revision: str | None = "0001_payments_core"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Postgres only; SQLite callers classify in Python.
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute(payment_category_function_ddl())


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute("DROP FUNCTION IF EXISTS payment_category(text, text, numeric)")
