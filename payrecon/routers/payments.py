# payrecon/routers/payments.py

"""
Payments routes.

The unified view: ledger payments plus queue items not yet materialized.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from payrecon.config import get_settings
from payrecon.core.store import PaymentStore, ReadScope, ScopeError, StoreError, day_bounds
from payrecon.core.unified import compose_unified_view
from payrecon.dependencies import get_payment_store

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/unified")
async def unified_payments(
    store: PaymentStore = Depends(get_payment_store),
    from_date: Optional[date] = Query(None, description="First day, provider local time"),
    to_date: Optional[date] = Query(None, description="Last day, provider local time"),
    provider: Optional[str] = Query(None),
    limit: int = Query(500, ge=1, le=5000),
):
    """
    List payments from the ledger and the staging queue, each payment once.

    Both collections are read with the same scope.
    """
    settings = get_settings()

    try:
        paid_from, paid_to = day_bounds(from_date, to_date, settings.provider_tz)
    except ScopeError as e:
        raise HTTPException(status_code=400, detail=str(e))

    scope = ReadScope(
        provider=provider or settings.default_provider,
        paid_from=paid_from,
        paid_to=paid_to,
        limit=limit,
    )

    try:
        canonical = await store.list_payments(scope)
        staging = await store.list_staging(scope)
    except StoreError as e:
        logger.error(f"Unified view failed: {e.message}")
        raise HTTPException(status_code=503, detail=e.message)

    view = compose_unified_view(canonical, staging, settings.default_currency)

    return {
        "success": True,
        "payments": [p.model_dump(mode="json") for p in view.payments],
        "stats": {
            "total": view.stats.total,
            "processed": view.stats.processed,
            "in_queue": view.stats.in_queue,
            "total_amount": str(view.stats.total_amount),
        },
    }
