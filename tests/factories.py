# tests/factories.py

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from payrecon.core.store import (
    DuplicatePaymentError,
    PaymentStore,
    ReadScope,
    StoreUnavailableError,
    StoreWriteError,
)
from payrecon.models import CanonicalPayment, RowBatch, StagingQueueItem

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


class InMemoryPaymentStore(PaymentStore):
    """
    PaymentStore double.

    Enforces (provider, provider_payment_id) uniqueness like the real table and
    lets tests inject failures.
    """

    def __init__(self):
        self.payments: dict[str, CanonicalPayment] = {}
        self.staging: list[StagingQueueItem] = []
        self.audit: list[tuple[str, dict]] = []
        self.updates: list[tuple[str, dict]] = []
        self.needs_uid: list[str] = []
        self.writes = 0

        # Failure injection
        self.unavailable = False
        self.audit_fails = False
        self.fail_uids: set[str] = set()
        self.preempt: dict[str, CanonicalPayment] = {}
        self.write_delay = 0.0

        self._next_id = 1

    # helpers

    def add_payment(self, payment: CanonicalPayment) -> CanonicalPayment:
        stored = payment.model_copy(update={"id": payment.id or f"pay-{self._next_id}"})
        self._next_id += 1
        self.payments[stored.id] = stored
        return stored

    def find(self, provider: str, uid: str) -> list[CanonicalPayment]:
        return [
            p for p in self.payments.values()
            if p.provider == provider and p.provider_payment_id == uid
        ]

    async def _write_pause(self):
        if self.write_delay:
            await asyncio.sleep(self.write_delay)

    # PaymentStore

    async def get_payments_by_uids(self, provider, uids):
        if self.unavailable:
            raise StoreUnavailableError("connection refused")
        wanted = set(uids)
        return {
            p.provider_payment_id: p.model_copy()
            for p in self.payments.values()
            if p.provider == provider and p.provider_payment_id in wanted
        }

    async def insert_payment(self, payment):
        await self._write_pause()
        uid = payment.provider_payment_id
        if uid in self.fail_uids:
            raise StoreWriteError(f"insert rejected for {uid}")

        competitor = self.preempt.pop(uid, None)
        if competitor is not None:
            self.add_payment(competitor)

        if self.find(payment.provider, uid):
            raise DuplicatePaymentError(f"duplicate key for {uid}")

        self.writes += 1
        return self.add_payment(payment).model_copy()

    async def update_payment(self, payment_id, fields):
        await self._write_pause()
        current = self.payments.get(payment_id)
        if current is None:
            raise StoreWriteError(f"payment {payment_id} not found")
        if current.provider_payment_id in self.fail_uids:
            raise StoreWriteError(f"update rejected for {current.provider_payment_id}")

        self.writes += 1
        self.updates.append((payment_id, dict(fields)))
        updated = current.model_copy(update=fields)
        self.payments[payment_id] = updated
        return updated.model_copy()

    async def list_payments(self, scope: ReadScope):
        if self.unavailable:
            raise StoreUnavailableError("connection refused")
        rows = [
            p for p in self.payments.values()
            if (not scope.provider or p.provider == scope.provider)
            and _in_range(p.paid_at, scope)
        ]
        rows.sort(key=lambda p: p.paid_at or _OLDEST, reverse=True)
        return rows[: scope.limit] if scope.limit else rows

    async def list_staging(self, scope: ReadScope):
        if self.unavailable:
            raise StoreUnavailableError("connection refused")
        rows = [
            i for i in self.staging
            if (not scope.provider or i.provider == scope.provider)
            and (not scope.statuses or i.status in scope.statuses)
            and (not scope.source_filter or i.source in scope.source_filter)
            and _in_range(i.paid_at, scope)
        ]
        rows.sort(key=lambda i: (i.paid_at or _OLDEST, i.id))
        if scope.cursor is not None:
            after = (scope.cursor.paid_at or _OLDEST, scope.cursor.id)
            rows = [i for i in rows if (i.paid_at or _OLDEST, i.id) > after]
        return rows[: scope.limit] if scope.limit else rows

    async def mark_staging_needs_uid(self, item_ids):
        self.writes += 1
        self.needs_uid.extend(item_ids)
        for i, item in enumerate(self.staging):
            if item.id in item_ids:
                self.staging[i] = item.model_copy(update={"status": "needs_uid"})

    async def write_audit(self, action, meta):
        if self.audit_fails:
            raise StoreWriteError("audit table unavailable")
        self.writes += 1
        self.audit.append((action, meta))


def _in_range(paid_at: Optional[datetime], scope: ReadScope) -> bool:
    if paid_at is None:
        return scope.paid_from is None and scope.paid_to is None
    if scope.paid_from and paid_at < scope.paid_from:
        return False
    if scope.paid_to and paid_at > scope.paid_to:
        return False
    return True


# ============================================
# Test Data
# ============================================

PAID_AT = "2026-01-06 09:58:06 +0300"


def statement_row(
    uid: str,
    amount: str = "100.00",
    status: str = "Успешный",
    transaction_type: str = "Платеж",
    paid_at: str = PAID_AT,
    extra: dict = None,
) -> dict:
    row = {
        "UID": uid,
        "Статус": status,
        "Сумма": amount,
        "Валюта": "BYN",
        "Тип транзакции": transaction_type,
        "Дата оплаты": paid_at,
    }
    row.update(extra or {})
    return row


def batch(name: str, rows: list[dict]) -> RowBatch:
    return RowBatch(name=name, rows=rows)


def canonical(
    uid: str,
    amount: str = "100.00",
    provider: str = "bepaid",
    origin: str = "provider_sync",
    paid_at: Optional[datetime] = None,
    **fields,
) -> CanonicalPayment:
    return CanonicalPayment(
        provider=provider,
        provider_payment_id=uid,
        amount=Decimal(amount),
        currency=fields.pop("currency", "BYN"),
        status_normalized=fields.pop("status_normalized", "successful"),
        transaction_type=fields.pop("transaction_type", "Платеж"),
        paid_at=paid_at,
        origin=origin,
        **fields,
    )


def scenario_batches() -> list[RowBatch]:
    """
    100 rows across two files: 8 rows without a uid, 90 unique uids, and
    u001/u002 repeated in the second file (10 rows sharing 8 uids).
    """
    first = [statement_row(f"u{n:03d}") for n in range(1, 91)]
    second = [statement_row("u001"), statement_row("u002")]
    blanks = [statement_row("") for _ in range(8)]
    return [
        batch("statement_jan.csv", first + blanks[:4]),
        batch("statement_jan_part2.csv", second + blanks[4:]),
    ]


def guard_batches(invalid: int, total: int = 100) -> list[RowBatch]:
    """`total` rows of which `invalid` have no uid."""
    rows = [statement_row(f"g{n:03d}") for n in range(total - invalid)]
    rows += [statement_row("") for _ in range(invalid)]
    return [batch("statement.csv", rows)]


def queue_item(
    id: str,
    uid: Optional[str],
    paid_at: datetime,
    amount: str = "50.00",
    status: str = "completed",
    **fields,
) -> StagingQueueItem:
    return StagingQueueItem(
        id=id,
        uid=uid,
        amount=Decimal(amount),
        currency=fields.pop("currency", "BYN"),
        status=status,
        status_normalized=fields.pop("status_normalized", "successful"),
        transaction_type=fields.pop("transaction_type", "payment"),
        paid_at=paid_at,
        source=fields.pop("source", "webhook"),
        **fields,
    )
