# payrecon/models/reconciliation.py

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Optional, Literal, Union
from pydantic import BaseModel, Field

from payrecon.models.payment import PaymentStatus


# ============================================
# Request models
# ============================================

RunMode = Literal["dry_run", "execute"]
ResponseMode = Literal["dry_run", "execute", "execute_blocked"]
RowOutcome = Literal["created", "updated", "skipped", "error", "not_attempted"]


class RowBatch(BaseModel):
    """One uploaded file (or API page), already tokenized into header -> value rows."""

    name: str
    rows: list[dict[str, Any]] = Field(default_factory=list)


class MaterializeScope(BaseModel):
    """Which rows a run may touch."""

    from_date: Optional[date] = None
    to_date: Optional[date] = None
    limit: Optional[int] = Field(None, ge=1)
    source_filter: Optional[list[str]] = None


class QueueCursor(BaseModel):
    """Keyset cursor over the staging queue, ordered by (paid_at, id)."""

    paid_at: Optional[datetime] = None
    id: str


class _MaterializeRequestBase(BaseModel):
    mode: RunMode = "dry_run"
    provider: Optional[str] = None
    scope: MaterializeScope = Field(default_factory=MaterializeScope)
    time_budget_ms: Optional[int] = Field(None, ge=1)


class StatementImportRequest(_MaterializeRequestBase):
    """Operator-uploaded statement files."""

    source: Literal["statement_import"] = "statement_import"
    input: list[RowBatch] = Field(min_length=1)


class ProviderSyncRequest(_MaterializeRequestBase):
    """Rows fetched from the provider webhook/API sync."""

    source: Literal["provider_sync"] = "provider_sync"
    input: list[RowBatch] = Field(min_length=1)


class LegacyQueueRequest(_MaterializeRequestBase):
    """Promote completed items of the legacy staging queue."""

    source: Literal["legacy_queue"] = "legacy_queue"
    cursor: Optional[QueueCursor] = None


MaterializeRequest = Annotated[
    Union[StatementImportRequest, ProviderSyncRequest, LegacyQueueRequest],
    Field(discriminator="source"),
]


# ============================================
# Totals / discrepancies
# ============================================

class TotalsExpectation(BaseModel):
    """Operator-supplied control totals, for comparison only."""

    expected_count: Optional[int] = None
    expected_amount: Optional[Decimal] = None
    source_file: Optional[str] = None


class TotalsCheck(BaseModel):
    """Aggregate comparison of computed stats against a TotalsExpectation."""

    expected_count: Optional[int] = None
    expected_amount: Optional[Decimal] = None
    actual_count: int
    actual_amount: Decimal
    count_delta: Optional[int] = None
    amount_delta: Optional[Decimal] = None
    flagged: bool = False


class Discrepancy(BaseModel):
    """Our amount differs from an authoritative external amount."""

    uid: str
    our_amount: Decimal
    external_amount: Decimal
    diff: Decimal
    transaction_type: str
    status: str


# ============================================
# Materialization response
# ============================================

class FileStats(BaseModel):
    name: str
    total_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0


class RunStats(BaseModel):
    """Statistics of one materialization run."""

    total_files: int = 0
    per_file: list[FileStats] = Field(default_factory=list)
    total_rows: int = 0
    scanned: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    invalid_rate: float = 0.0
    duplicates_merged: int = 0
    uids_unique: int = 0
    total_amount: Decimal = Decimal("0")
    out_of_scope: int = 0
    eligible: int = 0
    ineligible: int = 0
    to_create: int = 0
    to_update: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    not_attempted: int = 0


class RowSample(BaseModel):
    uid: str
    result: RowOutcome
    payment_id: Optional[str] = None
    amount: Optional[Decimal] = None
    status: Optional[PaymentStatus] = None
    paid_at: Optional[datetime] = None
    source_file: Optional[str] = None
    error: Optional[str] = None


class RowWriteError(BaseModel):
    uid: str
    error: str


class SampleError(BaseModel):
    row: int
    file: Optional[str] = None
    reason: str


class MaterializeResponse(BaseModel):
    success: bool
    mode: ResponseMode
    source: str
    stats: RunStats
    totals_expected: Optional[TotalsExpectation] = None
    totals_check: Optional[TotalsCheck] = None
    samples: list[RowSample] = Field(default_factory=list)
    sample_errors: list[SampleError] = Field(default_factory=list)
    error_details: list[RowWriteError] = Field(default_factory=list)
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    next_cursor: Optional[QueueCursor] = None
    partial: bool = False
    error: Optional[str] = None
    duration_ms: int = 0


# ============================================
# Amount audit (provider lookup)
# ============================================

UidKind = Literal["transaction_uid", "tracking_id", "unknown"]
LookupOutcome = Literal["match", "discrepancy", "not_found", "error"]


class AmountAuditRequest(BaseModel):
    provider: Optional[str] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    limit: Optional[int] = Field(None, ge=1)


class LookupDetail(BaseModel):
    """How the provider lookup went for one uid."""

    uid: str
    payment_id: Optional[str] = None
    outcome: LookupOutcome
    endpoints_tried: list[str] = Field(default_factory=list)
    last_http_status: int = 0
    endpoint: Optional[str] = None
    uid_kind_guess: UidKind = "unknown"
    error_excerpt: Optional[str] = None


class AmountAuditResult(BaseModel):
    success: bool = True
    checked: int = 0
    matched: int = 0
    discrepancies_found: int = 0
    not_found: int = 0
    errors: int = 0
    skipped: int = 0
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    fetched_details: list[LookupDetail] = Field(default_factory=list)
    not_found_details: list[LookupDetail] = Field(default_factory=list)
    error_fetch_details: list[LookupDetail] = Field(default_factory=list)
    duration_ms: int = 0


class TotalsCheckRequest(BaseModel):
    uids_unique: int = Field(ge=0)
    total_amount: Decimal
    totals: TotalsExpectation
