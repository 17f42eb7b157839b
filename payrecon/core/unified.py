# payrecon/core/unified.py

"""
Unified payments view.

Canonical payments plus the staging-queue items that have not been
materialized yet. A queue item whose (provider, uid) is already in the ledger
is hidden, so no payment is ever shown twice.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from payrecon.core.normalizers import NEGATIVE_STATUSES, normalize_status, signed_amount
from payrecon.models import CanonicalPayment, StagingQueueItem, UnifiedPayment

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class UnifiedStats:
    total: int = 0
    processed: int = 0
    in_queue: int = 0
    total_amount: Decimal = Decimal("0")


@dataclass
class UnifiedView:
    payments: list[UnifiedPayment] = field(default_factory=list)
    stats: UnifiedStats = field(default_factory=UnifiedStats)


def payment_key(provider: str, uid: Optional[str]) -> str:
    return f"{provider}:{uid}"


def _from_canonical(payment: CanonicalPayment) -> UnifiedPayment:
    return UnifiedPayment(
        id=payment.id or payment_key(payment.provider, payment.provider_payment_id),
        uid=payment.provider_payment_id,
        provider=payment.provider,
        raw_source="payments",
        amount=payment.amount,
        currency=payment.currency,
        status_normalized=payment.status_normalized,
        transaction_type=payment.transaction_type,
        paid_at=payment.paid_at,
        origin=payment.origin,
        linked_profile_id=payment.linked_profile_id,
        linked_order_id=payment.linked_order_id,
    )


def _from_staging(item: StagingQueueItem, default_currency: str) -> UnifiedPayment:
    status = normalize_status(item.status_normalized, item.transaction_type)
    amount = item.amount or Decimal("0")
    if status in NEGATIVE_STATUSES:
        amount = signed_amount(amount, status)

    return UnifiedPayment(
        id=item.id,
        uid=item.uid or item.id,
        provider=item.provider,
        raw_source="queue",
        amount=amount,
        currency=item.currency or default_currency,
        status_normalized=status,
        transaction_type=item.transaction_type or "payment",
        paid_at=item.paid_at or item.created_at,
        queue_source=item.source,
        linked_profile_id=item.matched_profile_id,
        linked_order_id=item.matched_order_id,
    )


def compose_unified_view(
    canonical: list[CanonicalPayment],
    staging: list[StagingQueueItem],
    default_currency: str = "BYN",
) -> UnifiedView:
    """
    Anti-join the staging queue against the ledger.

    Result: every canonical payment, plus each staging item whose
    provider:uid key is not in the ledger. Staging duplicates of one key
    collapse to the first. Items without a uid are shown under their own id.
    """
    view = UnifiedView()
    seen: set[str] = set()

    for payment in canonical:
        seen.add(payment_key(payment.provider, payment.provider_payment_id))
        view.payments.append(_from_canonical(payment))
    view.stats.processed = len(view.payments)

    for item in staging:
        key = payment_key(item.provider, item.uid) if item.uid else f"queue:{item.id}"
        if key in seen:
            continue
        seen.add(key)
        view.payments.append(_from_staging(item, default_currency))
        view.stats.in_queue += 1

    view.payments.sort(key=lambda p: p.paid_at or _OLDEST, reverse=True)

    view.stats.total = len(view.payments)
    view.stats.total_amount = sum(
        (p.amount for p in view.payments if p.amount > 0), Decimal("0")
    )
    return view
