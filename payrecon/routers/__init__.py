# payrecon/routers/__init__.py

from payrecon.routers import health
from payrecon.routers import materialize
from payrecon.routers import reconcile
from payrecon.routers import payments

__all__ = ["health", "materialize", "reconcile", "payments"]
