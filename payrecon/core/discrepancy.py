# payrecon/core/discrepancy.py

"""
Discrepancy detection.

Read-only comparisons of our amounts against an authoritative value:
- per payment, against a live provider lookup
- in aggregate, against operator-supplied control totals
- per row, against what the ledger already stores
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Protocol

from payrecon.config import Settings, get_settings
from payrecon.core.store import PaymentStore, ReadScope, day_bounds
from payrecon.models import (
    AmountAuditRequest,
    AmountAuditResult,
    CanonicalPayment,
    Discrepancy,
    ImportRow,
    LookupDetail,
    TotalsCheck,
    TotalsExpectation,
    UidKind,
)

logger = logging.getLogger(__name__)

DETAIL_LIMIT = 20

_TRANSACTION_UID = re.compile(r"^\d{4}-[0-9a-f]{10}$", re.IGNORECASE)
_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


# ============================================
# Provider lookup contract
# ============================================

@dataclass
class LookupResult:
    """Outcome of looking a uid up across every known provider endpoint."""

    transaction: Optional[dict[str, Any]] = None
    endpoint: Optional[str] = None
    status: Optional[int] = None
    endpoints_tried: list[str] = field(default_factory=list)
    last_http_status: int = 0
    error_excerpt: Optional[str] = None


class TransactionLookup(Protocol):
    async def fetch_transaction(self, uid: str) -> LookupResult:
        ...


def guess_uid_kind(uid: str) -> UidKind:
    """Provider transaction uids look like 1234-abcdef0123; tracking ids are UUIDs."""
    if _TRANSACTION_UID.match(uid):
        return "transaction_uid"
    if _UUID.match(uid):
        return "tracking_id"
    return "unknown"


def provider_amount(transaction: dict[str, Any], payment: CanonicalPayment) -> Decimal:
    """
    Provider amount in major units, signed like our ledger.

    The provider reports minor units (kopecks); refunds are stored negative.
    """
    amount = Decimal(str(transaction.get("amount") or 0)) / 100

    our_type = (payment.transaction_type or "").lower()
    is_refund = (
        transaction.get("type") == "refund"
        or "refund" in our_type
        or "возврат" in our_type
        or payment.status_normalized == "refunded"
    )
    if is_refund and amount > 0:
        amount = -amount
    return amount


# ============================================
# Per-payment audit against the provider
# ============================================

async def detect_amount_discrepancies(
    payments: list[CanonicalPayment],
    lookup: TransactionLookup,
    tolerance: Decimal = Decimal("0.01"),
) -> AmountAuditResult:
    """
    Compare every payment's amount with the provider's record.

    Outcomes per uid: match, discrepancy, not_found (404 on every endpoint),
    error (anything else). Nothing is written.
    """
    start_time = datetime.now()
    result = AmountAuditResult()

    for payment in payments:
        uid = payment.provider_payment_id
        if not uid:
            result.skipped += 1
            continue

        result.checked += 1
        fetched = await lookup.fetch_transaction(uid)
        kind = guess_uid_kind(uid)

        if fetched.transaction is None:
            outcome = "not_found" if fetched.last_http_status == 404 else "error"
            detail = LookupDetail(
                uid=uid,
                payment_id=payment.id,
                outcome=outcome,
                endpoints_tried=fetched.endpoints_tried,
                last_http_status=fetched.last_http_status,
                uid_kind_guess=kind,
                error_excerpt=fetched.error_excerpt,
            )
            if outcome == "not_found":
                result.not_found += 1
                if len(result.not_found_details) < DETAIL_LIMIT:
                    result.not_found_details.append(detail)
            else:
                result.errors += 1
                if len(result.error_fetch_details) < DETAIL_LIMIT:
                    result.error_fetch_details.append(detail)
            continue

        external = provider_amount(fetched.transaction, payment)
        diff = payment.amount - external
        outcome = "discrepancy" if abs(diff) > tolerance else "match"

        if len(result.fetched_details) < DETAIL_LIMIT:
            result.fetched_details.append(LookupDetail(
                uid=uid,
                payment_id=payment.id,
                outcome=outcome,
                endpoints_tried=fetched.endpoints_tried,
                last_http_status=fetched.last_http_status,
                endpoint=fetched.endpoint,
                uid_kind_guess=kind,
            ))

        if outcome == "match":
            result.matched += 1
            continue

        result.discrepancies_found += 1
        result.discrepancies.append(Discrepancy(
            uid=uid,
            our_amount=payment.amount,
            external_amount=external,
            diff=diff,
            transaction_type=payment.transaction_type or fetched.transaction.get("type") or "unknown",
            status=payment.status_normalized or fetched.transaction.get("status") or "unknown",
        ))

    result.duration_ms = int((datetime.now() - start_time).total_seconds() * 1000)
    return result


async def run_amount_audit(
    store: PaymentStore,
    lookup: TransactionLookup,
    request: AmountAuditRequest,
    settings: Optional[Settings] = None,
) -> AmountAuditResult:
    """Load ledger payments in scope and audit them against the provider."""
    settings = settings or get_settings()
    paid_from, paid_to = day_bounds(request.from_date, request.to_date, settings.provider_tz)

    limit = min(request.limit or settings.audit_default_limit, settings.audit_max_payments)
    payments = await store.list_payments(ReadScope(
        provider=request.provider or settings.default_provider,
        paid_from=paid_from,
        paid_to=paid_to,
        limit=limit,
    ))
    logger.info(f"Amount audit: checking {len(payments)} payments (limit {limit})")

    result = await detect_amount_discrepancies(payments, lookup, settings.amount_tolerance)

    logger.info(
        f"Amount audit complete: checked={result.checked}, matched={result.matched}, "
        f"discrepancies={result.discrepancies_found}, not_found={result.not_found}, "
        f"errors={result.errors}"
    )
    return result


# ============================================
# Aggregate check against control totals
# ============================================

def compare_totals(
    uids_unique: int,
    total_amount: Decimal,
    totals: TotalsExpectation,
    tolerance: Decimal = Decimal("0.01"),
) -> TotalsCheck:
    """Sanity check of computed stats against a totals file. Not a per-row audit."""
    check = TotalsCheck(
        expected_count=totals.expected_count,
        expected_amount=totals.expected_amount,
        actual_count=uids_unique,
        actual_amount=total_amount,
    )

    if totals.expected_count is not None:
        check.count_delta = uids_unique - totals.expected_count
    if totals.expected_amount is not None:
        check.amount_delta = total_amount - totals.expected_amount

    check.flagged = bool(check.count_delta) or (
        check.amount_delta is not None and abs(check.amount_delta) > tolerance
    )
    return check


# ============================================
# Incoming row vs stored ledger row
# ============================================

def ledger_discrepancy(
    row: ImportRow,
    existing: CanonicalPayment,
    tolerance: Decimal = Decimal("0.01"),
) -> Optional[Discrepancy]:
    """An incoming row would change the stored amount of a payment."""
    diff = existing.amount - row.amount
    if abs(diff) <= tolerance:
        return None
    return Discrepancy(
        uid=row.uid,
        our_amount=existing.amount,
        external_amount=row.amount,
        diff=diff,
        transaction_type=row.transaction_type,
        status=row.status,
    )
