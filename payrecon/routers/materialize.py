# payrecon/routers/materialize.py

"""
Materialization route.

One endpoint for every source; the body's `source` field picks the variant.
"""

import logging
from datetime import datetime
from typing import Annotated, Union

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from payrecon.config import get_settings
from payrecon.core.materialize import MaterializationEngine
from payrecon.core.store import PaymentStore, ScopeError, StoreError
from payrecon.dependencies import get_payment_store
from payrecon.models import (
    LegacyQueueRequest,
    MaterializeResponse,
    ProviderSyncRequest,
    StatementImportRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter()

AnyMaterializeRequest = Annotated[
    Union[StatementImportRequest, ProviderSyncRequest, LegacyQueueRequest],
    Body(discriminator="source"),
]


def run_failed(status_code: int, error: str, start_time: datetime) -> JSONResponse:
    """Whole-run failure: no stats, nothing was written."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "duration_ms": int((datetime.now() - start_time).total_seconds() * 1000),
        },
    )


# ============================================
# Materialize
# ============================================

@router.post("/materialize", response_model=MaterializeResponse)
async def run_materialize(
    request: AnyMaterializeRequest,
    store: PaymentStore = Depends(get_payment_store),
):
    """
    Dry-run or execute a materialization.

    - 200: dry_run, or execute (row-level failures are in the body)
    - 409: execute blocked by the STOP-guard, full stats in the body
    - 400: the scope cannot be interpreted
    - 503: storage unavailable, nothing was written
    """
    start_time = datetime.now()
    engine = MaterializationEngine(store, get_settings())

    try:
        result = await engine.run(request)
    except ScopeError as e:
        return run_failed(400, str(e), start_time)
    except StoreError as e:
        logger.error(f"Materialize failed: {e.message}")
        return run_failed(503, e.message, start_time)

    if result.mode == "execute_blocked":
        return JSONResponse(status_code=409, content=result.model_dump(mode="json"))
    return result
