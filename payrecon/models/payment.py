# payrecon/models/payment.py

from datetime import datetime
from decimal import Decimal
from typing import Optional, Literal
from pydantic import BaseModel, Field

PaymentStatus = Literal[
    "successful",
    "refunded",
    "failed",
    "pending",
    "void",
    "chargeback",
    "unknown",
]

PaymentOrigin = Literal["provider_sync", "statement_import", "legacy_migration"]


class ImportRow(BaseModel):
    """One normalized transaction candidate, from any source."""

    uid: str
    amount: Decimal
    currency: Optional[str] = None  # None when the source has no currency
    status: PaymentStatus = "unknown"
    transaction_type: str = "payment"
    paid_at: Optional[datetime] = None
    raw_fields: dict[str, dict[str, str]] = Field(default_factory=dict)
    source_file: Optional[str] = None
    row_number: Optional[int] = None

    # Linkage hints carried by legacy staging rows, used on create only
    linked_profile_id: Optional[str] = None
    linked_order_id: Optional[str] = None


class RowError(BaseModel):
    """A row rejected by the normalizer."""

    row: int
    file: Optional[str] = None
    reason: str


class CanonicalPayment(BaseModel):
    """Persisted ledger entry."""

    id: Optional[str] = None
    provider: str
    provider_payment_id: str
    amount: Decimal
    currency: str
    status_normalized: PaymentStatus
    transaction_type: str = "payment"
    paid_at: Optional[datetime] = None
    origin: PaymentOrigin

    # Owned by the linking workflow
    linked_profile_id: Optional[str] = None
    linked_order_id: Optional[str] = None

    meta: dict = Field(default_factory=dict)

    class Config:
        from_attributes = True


class StagingQueueItem(BaseModel):
    """A payment event recorded but not yet promoted to the ledger."""

    id: str
    provider: str = "bepaid"
    uid: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: str = "completed"  # job status, not payment status
    status_normalized: Optional[str] = None
    transaction_type: Optional[str] = None
    paid_at: Optional[datetime] = None
    source: Optional[str] = None
    matched_profile_id: Optional[str] = None
    matched_order_id: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UnifiedPayment(BaseModel):
    """A row of the unified payments view."""

    id: str
    uid: str
    provider: str
    raw_source: Literal["payments", "queue"]
    amount: Decimal
    currency: str
    status_normalized: str
    transaction_type: str
    paid_at: Optional[datetime] = None
    origin: Optional[PaymentOrigin] = None
    queue_source: Optional[str] = None
    linked_profile_id: Optional[str] = None
    linked_order_id: Optional[str] = None
