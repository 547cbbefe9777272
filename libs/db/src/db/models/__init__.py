"""Shared SQLAlchemy models registry for the payments database.

Currently includes the payment, reconciliation-queue, card-link and audit
models used by ``payment_recon``.
"""

from .payments import (
    AuditLog,
    Base,
    CardProfileLink,
    Payment,
    PaymentMethod,
    ReconcileQueueItem,
)

__all__ = [
    "AuditLog",
    "Base",
    "CardProfileLink",
    "Payment",
    "PaymentMethod",
    "ReconcileQueueItem",
]
