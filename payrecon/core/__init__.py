# payrecon/core/__init__.py

from payrecon.core.store import (
    PaymentStore,
    ReadScope,
    StoreError,
    StoreUnavailableError,
    StoreWriteError,
    DuplicatePaymentError,
    ScopeError,
)
from payrecon.core.normalizers import normalize_row, normalize_status, parse_amount, parse_timestamp
from payrecon.core.dedup import merge_rows, MergeResult
from payrecon.core.discrepancy import (
    compare_totals,
    detect_amount_discrepancies,
    run_amount_audit,
    LookupResult,
)
from payrecon.core.materialize import MaterializationEngine, materialize
from payrecon.core.unified import compose_unified_view, UnifiedView

__all__ = [
    "PaymentStore",
    "ReadScope",
    "StoreError",
    "StoreUnavailableError",
    "StoreWriteError",
    "DuplicatePaymentError",
    "ScopeError",
    "normalize_row",
    "normalize_status",
    "parse_amount",
    "parse_timestamp",
    "merge_rows",
    "MergeResult",
    "compare_totals",
    "detect_amount_discrepancies",
    "run_amount_audit",
    "LookupResult",
    "MaterializationEngine",
    "materialize",
    "compose_unified_view",
    "UnifiedView",
]
