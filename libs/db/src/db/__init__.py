"""db: shared database library (SQLAlchemy/Alembic) for the payments store.

Public exports
--------------
- ``Base`` and ``metadata`` for Alembic autogenerate/targeting
- ORM models in ``db.models.payments`` (re-exported for convenience)
- Engine/session helpers in ``db.client``
"""

from __future__ import annotations

from .models.payments import (
    AuditLog,
    Base,
    CardProfileLink,
    Payment,
    PaymentMethod,
    ReconcileQueueItem,
)

# Re-export SQLAlchemy metadata for Alembic's env.py
metadata = Base.metadata

__all__ = [
    "AuditLog",
    "Base",
    "CardProfileLink",
    "metadata",
    "Payment",
    "PaymentMethod",
    "ReconcileQueueItem",
]
