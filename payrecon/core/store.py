# payrecon/core/store.py

"""
Storage interface for the canonical ledger, the staging queue and the audit log.

The engine only talks to a PaymentStore. The Supabase implementation lives in
payrecon/database.py; tests plug in an in-memory double.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo
from typing import Optional

from payrecon.models import CanonicalPayment, StagingQueueItem, QueueCursor


# ============================================
# Errors
# ============================================

class StoreError(Exception):
    """Base class for storage failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StoreUnavailableError(StoreError):
    """Storage cannot be reached at all."""


class StoreWriteError(StoreError):
    """A single write was rejected or failed."""


class DuplicatePaymentError(StoreWriteError):
    """Insert hit the (provider, provider_payment_id) unique constraint."""


class ScopeError(ValueError):
    """The run scope cannot be interpreted."""


# ============================================
# Read scope
# ============================================

def day_bounds(
    from_date: Optional[date],
    to_date: Optional[date],
    tz: tzinfo,
) -> tuple[Optional[datetime], Optional[datetime]]:
    """
    Turn provider-local calendar dates into an inclusive timestamp range.

    Raises ScopeError when the range is inverted.
    """
    if from_date and to_date and from_date > to_date:
        raise ScopeError(f"from_date {from_date} is after to_date {to_date}")

    start = datetime.combine(from_date, time.min, tzinfo=tz) if from_date else None
    end = datetime.combine(to_date, time.max, tzinfo=tz) if to_date else None
    return start, end


@dataclass
class ReadScope:
    """Filters for reading payments or queue items."""

    provider: Optional[str] = None
    paid_from: Optional[datetime] = None
    paid_to: Optional[datetime] = None
    limit: Optional[int] = None
    source_filter: Optional[list[str]] = None
    statuses: Optional[list[str]] = None
    cursor: Optional[QueueCursor] = None


# ============================================
# Store interface
# ============================================

class PaymentStore(ABC):
    """Canonical payments, staging queue and audit log."""

    @abstractmethod
    async def get_payments_by_uids(
        self, provider: str, uids: list[str]
    ) -> dict[str, CanonicalPayment]:
        """Return existing payments keyed by provider_payment_id."""

    @abstractmethod
    async def insert_payment(self, payment: CanonicalPayment) -> CanonicalPayment:
        """
        Insert a new payment.

        Raises DuplicatePaymentError when (provider, provider_payment_id)
        already exists.
        """

    @abstractmethod
    async def update_payment(self, payment_id: str, fields: dict) -> CanonicalPayment:
        """Update the given fields of an existing payment."""

    @abstractmethod
    async def list_payments(self, scope: ReadScope) -> list[CanonicalPayment]:
        """Payments in scope, newest first."""

    @abstractmethod
    async def list_staging(self, scope: ReadScope) -> list[StagingQueueItem]:
        """Queue items in scope, ordered by (paid_at, id)."""

    @abstractmethod
    async def mark_staging_needs_uid(self, item_ids: list[str]) -> None:
        """Flag queue items that cannot be materialized without a uid."""

    @abstractmethod
    async def write_audit(self, action: str, meta: dict) -> None:
        """Append an audit log record."""
