from pbx_billing.services.billing_cycle import BillingCycleService, DatabaseCycleLock, InProcessCycleLock
from pbx_billing.services.invoice import InvoiceService
from pbx_billing.services.payment import PaymentService
from pbx_billing.services.payment_retry import PaymentRetryOptions, PaymentRetryService
from pbx_billing.services.subscription import SubscriptionService
from pbx_billing.services.usage import UsageService

__all__ = [
    "BillingCycleService",
    "DatabaseCycleLock",
    "InProcessCycleLock",
    "InvoiceService",
    "PaymentService",
    "PaymentRetryOptions",
    "PaymentRetryService",
    "SubscriptionService",
    "UsageService",
]
