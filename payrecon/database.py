# payrecon/database.py

from datetime import datetime, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Any, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import create_client, Client

from payrecon.config import Settings, get_settings
from payrecon.core.normalizers import normalize_status
from payrecon.core.store import (
    DuplicatePaymentError,
    PaymentStore,
    ReadScope,
    StoreUnavailableError,
    StoreWriteError,
)
from payrecon.models import CanonicalPayment, StagingQueueItem

UNIQUE_VIOLATION = "23505"

ORIGINS = ("provider_sync", "statement_import", "legacy_migration")

# Model field -> payments table column
PAYMENT_COLUMNS = {
    "status_normalized": "status",
    "linked_profile_id": "profile_id",
    "linked_order_id": "order_id",
}


@lru_cache()
def get_supabase_admin() -> Client:
    """Admin client (bypasses RLS - use carefully)."""
    settings = get_settings()
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


# ============================================
# Row mapping
# ============================================

def _db_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _to_payment_columns(fields: dict) -> dict:
    return {PAYMENT_COLUMNS.get(k, k): _db_value(v) for k, v in fields.items()}


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def payment_from_row(row: dict) -> CanonicalPayment:
    """Map a payments table row onto CanonicalPayment."""
    origin = row.get("origin")
    return CanonicalPayment(
        id=str(row["id"]),
        provider=row.get("provider") or "bepaid",
        provider_payment_id=row["provider_payment_id"],
        amount=_decimal(row.get("amount")) or Decimal("0"),
        currency=row.get("currency") or "BYN",
        status_normalized=normalize_status(row.get("status"), row.get("transaction_type")),
        transaction_type=row.get("transaction_type") or "payment",
        paid_at=row.get("paid_at"),
        origin=origin if origin in ORIGINS else "provider_sync",
        linked_profile_id=row.get("profile_id"),
        linked_order_id=row.get("order_id"),
        meta=row.get("meta") or {},
    )


def staging_from_row(row: dict) -> StagingQueueItem:
    """Map a staging queue row onto StagingQueueItem."""
    return StagingQueueItem(
        id=str(row["id"]),
        provider=row.get("provider") or "bepaid",
        uid=row.get("bepaid_uid"),
        amount=_decimal(row.get("amount")),
        currency=row.get("currency"),
        status=row.get("status") or "completed",
        status_normalized=row.get("status_normalized"),
        transaction_type=row.get("transaction_type"),
        paid_at=row.get("paid_at"),
        source=row.get("source"),
        matched_profile_id=row.get("matched_profile_id"),
        matched_order_id=row.get("matched_order_id"),
        created_at=row.get("created_at"),
    )


# ============================================
# Supabase-backed store
# ============================================

class SupabasePaymentStore(PaymentStore):
    """Payments, staging queue and audit log in Supabase (PostgREST)."""

    def __init__(self, client: Optional[Client] = None, settings: Optional[Settings] = None):
        self._client = client
        self.settings = settings or get_settings()

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase_admin()
        return self._client

    def _read(self, query):
        try:
            return query.execute()
        except (APIError, httpx.HTTPError) as e:
            raise StoreUnavailableError(f"read failed: {getattr(e, 'message', None) or e}")

    def _write(self, query):
        try:
            return query.execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise DuplicatePaymentError(e.message or "duplicate key")
            raise StoreWriteError(e.message or str(e))
        except httpx.HTTPError as e:
            raise StoreWriteError(f"write failed: {e}")

    async def get_payments_by_uids(self, provider: str, uids: list[str]) -> dict[str, CanonicalPayment]:
        if not uids:
            return {}
        response = self._read(
            self.client.table(self.settings.payments_table)
            .select("*")
            .eq("provider", provider)
            .in_("provider_payment_id", uids)
        )
        payments = [payment_from_row(r) for r in response.data or []]
        return {p.provider_payment_id: p for p in payments}

    async def insert_payment(self, payment: CanonicalPayment) -> CanonicalPayment:
        data = _to_payment_columns(payment.model_dump(exclude={"id"}))
        response = self._write(self.client.table(self.settings.payments_table).insert(data))
        if not response.data:
            raise StoreWriteError(f"insert of {payment.provider_payment_id} returned no row")
        return payment_from_row(response.data[0])

    async def update_payment(self, payment_id: str, fields: dict) -> CanonicalPayment:
        response = self._write(
            self.client.table(self.settings.payments_table)
            .update(_to_payment_columns(fields))
            .eq("id", payment_id)
        )
        if not response.data:
            raise StoreWriteError(f"payment {payment_id} not found for update")
        return payment_from_row(response.data[0])

    async def list_payments(self, scope: ReadScope) -> list[CanonicalPayment]:
        query = self.client.table(self.settings.payments_table).select("*")
        if scope.provider:
            query = query.eq("provider", scope.provider)
        if scope.paid_from:
            query = query.gte("paid_at", scope.paid_from.isoformat())
        if scope.paid_to:
            query = query.lte("paid_at", scope.paid_to.isoformat())

        query = query.order("paid_at", desc=True)
        if scope.limit:
            query = query.limit(scope.limit)

        response = self._read(query)
        return [payment_from_row(r) for r in response.data or []]

    async def list_staging(self, scope: ReadScope) -> list[StagingQueueItem]:
        query = self.client.table(self.settings.queue_table).select("*")
        if scope.provider:
            query = query.eq("provider", scope.provider)
        if scope.statuses:
            query = query.in_("status", scope.statuses)
        if scope.source_filter:
            query = query.in_("source", scope.source_filter)
        if scope.paid_from:
            query = query.gte("paid_at", scope.paid_from.isoformat())
        if scope.paid_to:
            query = query.lte("paid_at", scope.paid_to.isoformat())

        cursor = scope.cursor
        if cursor is not None:
            if cursor.paid_at is not None:
                paid_at = cursor.paid_at.astimezone(timezone.utc).isoformat()
                query = query.or_(
                    f"paid_at.gt.{paid_at},and(paid_at.eq.{paid_at},id.gt.{cursor.id})"
                )
            else:
                query = query.gt("id", cursor.id)

        query = query.order("paid_at").order("id")
        if scope.limit:
            query = query.limit(scope.limit)

        response = self._read(query)
        return [staging_from_row(r) for r in response.data or []]

    async def mark_staging_needs_uid(self, item_ids: list[str]) -> None:
        if not item_ids:
            return
        self._write(
            self.client.table(self.settings.queue_table)
            .update({"status": "needs_uid"})
            .in_("id", item_ids)
        )

    async def write_audit(self, action: str, meta: dict) -> None:
        self._write(self.client.table(self.settings.audit_table).insert({
            "actor_type": "system",
            "actor_user_id": None,
            "actor_label": "payrecon",
            "action": action,
            "meta": meta,
        }))
