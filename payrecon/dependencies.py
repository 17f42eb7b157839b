# payrecon/dependencies.py

"""
Shared FastAPI dependencies.

Tests swap these out through app.dependency_overrides.
"""

from payrecon.core.discrepancy import TransactionLookup
from payrecon.core.store import PaymentStore
from payrecon.database import SupabasePaymentStore
from payrecon.integrations.bepaid import BepaidClient


def get_payment_store() -> PaymentStore:
    """Supabase-backed ledger, queue and audit log."""
    return SupabasePaymentStore()


def get_transaction_lookup() -> TransactionLookup:
    """bePaid transaction lookup client."""
    return BepaidClient()
