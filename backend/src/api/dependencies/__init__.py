"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from src.api.dependencies.entitlements import (
    get_guard,
    get_payment_gateway_client,
    get_resolver,
    require_feature,
)

__all__ = [
    "get_guard",
    "get_payment_gateway_client",
    "get_resolver",
    "require_feature",
]
