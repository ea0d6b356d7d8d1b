from sqlmodel import Session

from pbx_billing.core.exceptions import CycleAlreadyRunningError
from pbx_billing.core.logging_setup import get_logger
from pbx_billing.schemas.billing import BillingCycleOptions, BillingCycleSummary, RetryProcessingResult
from pbx_billing.services.billing_cycle import BillingCycleService
from pbx_billing.services.payment_retry import PaymentRetryService

logger = get_logger("scheduler")

# Entry points for the external timer: a daily billing run and a retry sweep
# every billing_retry_interval_minutes.


def run_billing_cycle_job(session: Session, *, process_overages: bool = True) -> BillingCycleSummary | None:
    service = BillingCycleService(session)
    try:
        summary = service.process_billing_cycle(BillingCycleOptions(process_overages=process_overages))
    except CycleAlreadyRunningError as exc:
        logger.info("Skipping scheduled billing run: %s", exc.message)
        return None
    for error in summary.errors:
        logger.warning("Billing cycle error: %s", error)
    return summary


def run_payment_retry_job(session: Session) -> RetryProcessingResult:
    service = PaymentRetryService(session)
    stale = service.payments.fail_stale_pending_payments()
    if stale:
        logger.info("Marked %s stale pending payments as failed", stale)
    result = service.process_retries()
    for error in result.errors:
        logger.warning("Retry error: %s", error)
    return result
