# payrecon/models/__init__.py

from payrecon.models.payment import (
    PaymentStatus,
    PaymentOrigin,
    ImportRow,
    RowError,
    CanonicalPayment,
    StagingQueueItem,
    UnifiedPayment,
)
from payrecon.models.reconciliation import (
    RunMode,
    ResponseMode,
    RowOutcome,
    RowBatch,
    MaterializeScope,
    QueueCursor,
    StatementImportRequest,
    ProviderSyncRequest,
    LegacyQueueRequest,
    MaterializeRequest,
    TotalsExpectation,
    TotalsCheck,
    Discrepancy,
    FileStats,
    RunStats,
    RowSample,
    RowWriteError,
    SampleError,
    MaterializeResponse,
    UidKind,
    LookupOutcome,
    AmountAuditRequest,
    LookupDetail,
    AmountAuditResult,
    TotalsCheckRequest,
)

__all__ = [
    # Payment
    "PaymentStatus",
    "PaymentOrigin",
    "ImportRow",
    "RowError",
    "CanonicalPayment",
    "StagingQueueItem",
    "UnifiedPayment",
    # Materialization
    "RunMode",
    "ResponseMode",
    "RowOutcome",
    "RowBatch",
    "MaterializeScope",
    "QueueCursor",
    "StatementImportRequest",
    "ProviderSyncRequest",
    "LegacyQueueRequest",
    "MaterializeRequest",
    "TotalsExpectation",
    "TotalsCheck",
    "Discrepancy",
    "FileStats",
    "RunStats",
    "RowSample",
    "RowWriteError",
    "SampleError",
    "MaterializeResponse",
    # Amount audit
    "UidKind",
    "LookupOutcome",
    "AmountAuditRequest",
    "LookupDetail",
    "AmountAuditResult",
    "TotalsCheckRequest",
]
