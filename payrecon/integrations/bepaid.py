# payrecon/integrations/bepaid.py

"""
bePaid transaction lookup.

A uid may be a gateway transaction uid or a tracking id, and the provider
exposes several APIs, so every known endpoint is tried in order until one
returns a transaction.
"""

import base64
import logging
from typing import Any, Optional

import httpx

from payrecon.config import Settings, get_settings
from payrecon.core.discrepancy import LookupResult

logger = logging.getLogger(__name__)

ENDPOINT_TEMPLATES = [
    "https://gateway.bepaid.by/transactions/{uid}",
    "https://gateway.bepaid.by/v2/transactions/tracking_id/{uid}",
    "https://api.bepaid.by/beyag/transactions/{uid}",
    "https://api.bepaid.by/v2/transactions/{uid}",
]

ERROR_EXCERPT_LENGTH = 200


def extract_transaction(data: Any) -> Optional[dict]:
    """
    Pull the transaction out of any of the response shapes the APIs use:
    {transaction}, {data: {transaction}}, {data}, {transactions: [...]}, or bare.

    Returns None unless the candidate carries a uid or id.
    """
    if not isinstance(data, dict):
        return None

    candidate: Any = data.get("transaction")
    if candidate is None and isinstance(data.get("data"), dict):
        candidate = data["data"].get("transaction") or data["data"]
    if candidate is None:
        candidate = data.get("data", data)

    transactions = data.get("transactions")
    if isinstance(transactions, list) and transactions:
        candidate = transactions[0]
    if isinstance(candidate, list):
        candidate = candidate[0] if candidate else None
    if not isinstance(candidate, dict):
        return None

    tx_uid = candidate.get("uid") or candidate.get("transaction_uid") or candidate.get("transactionUid")
    tx_id = candidate.get("id") or candidate.get("transaction_id") or candidate.get("transactionId")
    if not (tx_uid or tx_id):
        return None

    tx = dict(candidate)
    if tx_uid and not tx.get("uid"):
        tx["uid"] = tx_uid
    if tx_id and not tx.get("id"):
        tx["id"] = tx_id
    return tx


class BepaidClient:
    """Read-only lookups against the bePaid APIs."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        auth = base64.b64encode(
            f"{self.settings.bepaid_shop_id}:{self.settings.bepaid_secret_key}".encode()
        ).decode()
        return {
            "Authorization": f"Basic {auth}",
            "Accept": "application/json",
            "X-Api-Version": "3",
        }

    async def fetch_transaction(self, uid: str) -> LookupResult:
        """
        Try every endpoint in order.

        last_http_status prefers the last non-404 status, so a uid that only
        ever got 404s reads as not found and anything else reads as an error.
        """
        result = LookupResult()
        last_non_404: Optional[int] = None

        async with httpx.AsyncClient(
            headers=self._headers(),
            timeout=self.settings.bepaid_timeout_seconds,
            transport=self.transport,
        ) as client:
            for template in ENDPOINT_TEMPLATES:
                endpoint = template.format(uid=uid)
                result.endpoints_tried.append(endpoint)

                try:
                    response = await client.get(endpoint)
                except httpx.HTTPError as e:
                    logger.warning(f"bePaid lookup failed for {uid} at {endpoint}: {type(e).__name__}")
                    if last_non_404 is None:
                        last_non_404 = 0
                    if not result.error_excerpt:
                        result.error_excerpt = str(e)[:ERROR_EXCERPT_LENGTH]
                    continue

                result.last_http_status = response.status_code
                if response.status_code != 404:
                    last_non_404 = response.status_code

                if response.is_success:
                    try:
                        tx = extract_transaction(response.json())
                    except ValueError:
                        tx = None
                    if tx is not None:
                        result.transaction = tx
                        result.endpoint = endpoint
                        result.status = response.status_code
                        return result

                # Body excerpts are kept for 400s only
                if response.status_code == 400 and not result.error_excerpt:
                    result.error_excerpt = response.text[:ERROR_EXCERPT_LENGTH]

        if last_non_404 is not None:
            result.last_http_status = last_non_404
        logger.debug(f"bePaid lookup for {uid}: no transaction, last status {result.last_http_status}")
        return result
