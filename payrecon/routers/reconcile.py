# payrecon/routers/reconcile.py

"""
Reconciliation routes.

Read-only checks of our ledger against the provider and against control totals.
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from payrecon.config import get_settings
from payrecon.core.discrepancy import TransactionLookup, compare_totals, run_amount_audit
from payrecon.core.store import PaymentStore, ScopeError, StoreError
from payrecon.dependencies import get_payment_store, get_transaction_lookup
from payrecon.models import AmountAuditRequest, AmountAuditResult, TotalsCheck, TotalsCheckRequest

logger = logging.getLogger(__name__)
router = APIRouter()


# ============================================
# Amount audit against the provider
# ============================================

@router.post("/amounts", response_model=AmountAuditResult)
async def reconcile_amounts(
    request: AmountAuditRequest,
    store: PaymentStore = Depends(get_payment_store),
    lookup: TransactionLookup = Depends(get_transaction_lookup),
):
    """
    Compare stored payment amounts with the provider's records.

    Never writes; lookup failures are reported per uid.
    """
    start_time = datetime.now()
    try:
        return await run_amount_audit(store, lookup, request, get_settings())
    except (ScopeError, StoreError) as e:
        status_code = 400 if isinstance(e, ScopeError) else 503
        message = getattr(e, "message", None) or str(e)
        logger.error(f"Amount audit failed: {message}")
        return JSONResponse(
            status_code=status_code,
            content={
                "success": False,
                "error": message,
                "duration_ms": int((datetime.now() - start_time).total_seconds() * 1000),
            },
        )


# ============================================
# Control totals
# ============================================

@router.post("/totals", response_model=TotalsCheck)
async def reconcile_totals(request: TotalsCheckRequest):
    """Compare computed stats with operator-supplied control totals."""
    return compare_totals(
        request.uids_unique,
        request.total_amount,
        request.totals,
        get_settings().totals_tolerance,
    )
