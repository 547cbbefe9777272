"""Public interface for the ``payment_recon`` package.

This module exposes the package's API functions and public models/types as the
stable import surface. There is no runtime logic here, only symbol re-exports.
"""

from .api import (
    aggregate,
    backfill_cards,
    categorize_error,
    classify,
    effective_error_category,
    normalize_status,
    payment_diagnostics,
    payments_summary,
    reconcile_all_cards,
    reconcile_card,
    require_canonical_status,
    summarize_payments,
)
from .classification import PaymentCategory
from .config import EngineSettings, load_settings
from .error_categories import ErrorCategory
from .models import (
    AggregatedStats,
    BackfillResult,
    BatchReconciliationResult,
    CardFingerprint,
    DiagnosticsFilters,
    ForceLinkAuthorization,
    PaymentsSummary,
    ReconcileMode,
    ReconciliationResult,
    TransactionRecord,
)
from .status import CanonicalStatus, UnrecognizedStatusError

__all__ = [
    # API
    "aggregate",
    "backfill_cards",
    "categorize_error",
    "classify",
    "effective_error_category",
    "normalize_status",
    "payment_diagnostics",
    "payments_summary",
    "reconcile_all_cards",
    "reconcile_card",
    "require_canonical_status",
    "summarize_payments",
    # Configuration
    "EngineSettings",
    "load_settings",
    # Models / types
    "AggregatedStats",
    "BackfillResult",
    "BatchReconciliationResult",
    "CanonicalStatus",
    "CardFingerprint",
    "DiagnosticsFilters",
    "ErrorCategory",
    "ForceLinkAuthorization",
    "PaymentCategory",
    "PaymentsSummary",
    "ReconcileMode",
    "ReconciliationResult",
    "TransactionRecord",
    "UnrecognizedStatusError",
]
