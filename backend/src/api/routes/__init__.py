# API routes
from src.api.routes import health
from src.api.routes import billing
from src.api.routes import entitlements
from src.api.routes import webhooks_payments
from src.api.routes import audit_export
from src.api.routes import customer_groups

__all__ = ["health", "billing", "entitlements", "webhooks_payments", "audit_export", "customer_groups"]
