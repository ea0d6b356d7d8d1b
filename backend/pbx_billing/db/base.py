# noqa: F401 to ensure models are imported for metadata
from pbx_billing.models.billing import (
    BillingCycleLock,
    Invoice,
    InvoiceItem,
    Payment,
    PaymentMethod,
    PaymentRetryAttempt,
    Plan,
    Subscription,
    UsageRecord,
)
from pbx_billing.models.tenant import Tenant

__all__ = [
    "BillingCycleLock",
    "Invoice",
    "InvoiceItem",
    "Payment",
    "PaymentMethod",
    "PaymentRetryAttempt",
    "Plan",
    "Subscription",
    "Tenant",
    "UsageRecord",
]
