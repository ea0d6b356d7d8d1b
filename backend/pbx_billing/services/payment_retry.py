from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from sqlalchemy import func, update
from sqlmodel import Session, select

from pbx_billing.core.config import settings
from pbx_billing.core.exceptions import AlreadyPaidError, BillingError, NotFoundError
from pbx_billing.core.logging_setup import get_logger
from pbx_billing.db.session import get_for_update
from pbx_billing.models.base import utc_now
from pbx_billing.models.billing import (
    Payment,
    PaymentRetryAttempt,
    PaymentStatus,
    RetryState,
    RetryStatus,
)
from pbx_billing.schemas.billing import (
    ManualRetryResult,
    PaymentRetryStatus,
    RetryAttemptRead,
    RetryProcessingResult,
    RetryStatistics,
)
from pbx_billing.services.payment import PaymentService
from pbx_billing.services.payment_gateway import PENDING, SUCCEEDED, classify_failure_reason

logger = get_logger("payment_retry")


@dataclass
class PaymentRetryOptions:
    max_retries: int = field(default_factory=lambda: settings.billing_max_retries)
    base_delay_minutes: int = field(default_factory=lambda: settings.billing_retry_base_delay_minutes)
    exponential_backoff: bool = field(default_factory=lambda: settings.billing_retry_exponential_backoff)
    retry_reasons: list[str] = field(default_factory=lambda: list(settings.billing_retry_reasons))

    def delay_for(self, previous_attempts: int) -> timedelta:
        if self.exponential_backoff:
            return timedelta(minutes=self.base_delay_minutes * (2 ** previous_attempts))
        return timedelta(minutes=self.base_delay_minutes)


class PaymentRetryService:
    """Dunning: schedules, runs and reports retry attempts for failed payments.

    A payment's retry lineage is every PaymentRetryAttempt pointing at it.
    Cancelled attempts do not count toward ``max_retries`` and do not consume
    an attempt number.
    """

    def __init__(
        self,
        session: Session,
        payment_service: PaymentService | None = None,
        options: PaymentRetryOptions | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self._now = clock or utc_now
        self.options = options or PaymentRetryOptions()
        self.payments = payment_service or PaymentService(session, retry_service=self, clock=self._now)

    def schedule_retry(self, payment_id: UUID, failure_reason: str | None) -> PaymentRetryAttempt | None:
        payment = get_for_update(self.session, Payment, payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        reason = classify_failure_reason(failure_reason)
        now = self._now()

        if reason not in self.options.retry_reasons:
            payment.status = PaymentStatus.FAILED
            payment.retry_state = RetryState.NOT_RETRYABLE
            payment.updated_at = now
            self.session.add(payment)
            self.session.commit()
            logger.info("Payment %s failed with non-retryable reason %s", payment.id, reason)
            return None

        count = self._attempt_count(payment.id)
        if count >= self.options.max_retries:
            payment.status = PaymentStatus.FAILED
            payment.retry_state = RetryState.EXHAUSTED
            payment.failure_reason = f"{reason} (retries exhausted after {count} attempts)"
            payment.updated_at = now
            self.session.add(payment)
            self.session.commit()
            logger.warning("Payment %s permanently failed: retries exhausted after %s attempts", payment.id, count)
            return None

        attempt = PaymentRetryAttempt(
            payment_id=payment.id,
            tenant_id=payment.tenant_id,
            attempt_number=count + 1,
            status=RetryStatus.PENDING,
            scheduled_at=now + self.options.delay_for(count),
            created_at=now,
        )
        payment.retry_state = RetryState.PENDING
        payment.updated_at = now
        self.session.add(attempt)
        self.session.add(payment)
        self.session.commit()
        self.session.refresh(attempt)
        logger.info(
            "Scheduled retry %s for payment %s at %s (%s)",
            attempt.attempt_number,
            payment.id,
            attempt.scheduled_at.isoformat(),
            reason,
        )
        return attempt

    def process_retries(self) -> RetryProcessingResult:
        """Run every pending attempt whose scheduled time has come."""
        result = RetryProcessingResult()
        due_ids = self.session.exec(
            select(PaymentRetryAttempt.id)
            .where(
                PaymentRetryAttempt.status == RetryStatus.PENDING,
                PaymentRetryAttempt.scheduled_at <= self._now(),
            )
            .order_by(PaymentRetryAttempt.scheduled_at)
        ).all()

        for attempt_id in due_ids:
            attempt = get_for_update(self.session, PaymentRetryAttempt, attempt_id)
            if not attempt or attempt.status != RetryStatus.PENDING:
                continue
            result.processed += 1
            try:
                self._run_attempt(attempt, result)
            except Exception as exc:
                self.session.rollback()
                logger.exception("Retry attempt %s crashed", attempt_id)
                result.errors.append(f"Retry attempt {attempt_id}: {exc}")
                self._close_attempt(attempt_id, RetryStatus.FAILED, str(exc))

        if result.processed:
            logger.info(
                "Retry run: processed=%s succeeded=%s failed=%s errors=%s",
                result.processed,
                result.succeeded,
                result.failed,
                len(result.errors),
            )
        return result

    def _run_attempt(self, attempt: PaymentRetryAttempt, result: RetryProcessingResult) -> None:
        payment = get_for_update(self.session, Payment, attempt.payment_id)
        attempt.status = RetryStatus.PROCESSING
        payment.retry_state = RetryState.PROCESSING
        self.session.add(attempt)
        self.session.add(payment)
        self.session.commit()

        try:
            outcome = self.payments.retry_charge(payment, attempt)
        except AlreadyPaidError:
            self.session.rollback()
            self._close_attempt(attempt.id, RetryStatus.CANCELLED, "invoice already settled")
            return
        except BillingError as exc:
            # No payment method, voided invoice: the lineage stops here.
            self.session.rollback()
            self._close_attempt(attempt.id, RetryStatus.FAILED, exc.message)
            result.failed += 1
            result.errors.append(f"Payment {payment.id}: {exc.message}")
            self._stop_lineage(payment.id)
            return

        if outcome.status == SUCCEEDED:
            self._close_attempt(attempt.id, RetryStatus.SUCCEEDED)
            result.succeeded += 1
        elif outcome.status == PENDING:
            # Stays processing until reconciliation settles the payment.
            logger.info("Retry %s for payment %s awaiting settlement", attempt.attempt_number, payment.id)
        else:
            self._close_attempt(attempt.id, RetryStatus.FAILED, outcome.failure_reason)
            result.failed += 1
            self.schedule_retry(payment.id, outcome.failure_reason)

    def get_payment_retry_status(self, payment_id: UUID) -> PaymentRetryStatus:
        payment = self.session.get(Payment, payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        attempts = self.session.exec(
            select(PaymentRetryAttempt)
            .where(
                PaymentRetryAttempt.payment_id == payment_id,
                PaymentRetryAttempt.status != RetryStatus.CANCELLED,
            )
            .order_by(PaymentRetryAttempt.attempt_number, PaymentRetryAttempt.created_at)
        ).all()
        pending = [a.scheduled_at for a in attempts if a.status == RetryStatus.PENDING]
        return PaymentRetryStatus(
            total_attempts=len(attempts),
            last_attempt=RetryAttemptRead.model_validate(attempts[-1]) if attempts else None,
            next_scheduled=min(pending) if pending else None,
            can_retry=self._can_retry(payment),
        )

    def cancel_retries(self, payment_id: UUID, reason: str | None = None) -> int:
        if not self.session.get(Payment, payment_id):
            raise NotFoundError("Payment not found")
        return self._cancel_where(PaymentRetryAttempt.payment_id == payment_id, reason or "cancelled")

    def cancel_retries_for_invoice(self, invoice_id: UUID, reason: str | None = None) -> int:
        payment_ids = select(Payment.id).where(Payment.invoice_id == invoice_id)
        return self._cancel_where(PaymentRetryAttempt.payment_id.in_(payment_ids), reason or "cancelled")

    def trigger_manual_retry(self, payment_id: UUID) -> ManualRetryResult:
        """Skip the backoff: replace any pending attempt with one due now."""
        payment = get_for_update(self.session, Payment, payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        if payment.status != PaymentStatus.FAILED:
            return ManualRetryResult(success=False, message=f"Payment is {payment.status.value}, not failed")

        self._cancel_where(PaymentRetryAttempt.payment_id == payment.id, "superseded by manual retry", commit=False)
        if not self._can_retry(payment):
            self.session.rollback()
            return ManualRetryResult(success=False, message="Maximum retry attempts reached")

        now = self._now()
        attempt = PaymentRetryAttempt(
            payment_id=payment.id,
            tenant_id=payment.tenant_id,
            attempt_number=self._attempt_count(payment.id) + 1,
            status=RetryStatus.PENDING,
            scheduled_at=now,
            created_at=now,
        )
        payment.retry_state = RetryState.PENDING
        payment.updated_at = now
        self.session.add(attempt)
        self.session.add(payment)
        self.session.commit()
        self.session.refresh(attempt)
        logger.info("Manual retry %s scheduled for payment %s", attempt.attempt_number, payment.id)
        return ManualRetryResult(
            success=True,
            message="Manual retry scheduled successfully",
            attempt=RetryAttemptRead.model_validate(attempt),
        )

    def get_retry_statistics(self, days: int = 30) -> RetryStatistics:
        since = self._now() - timedelta(days=days)
        counts = dict(
            self.session.exec(
                select(PaymentRetryAttempt.status, func.count())
                .where(PaymentRetryAttempt.created_at >= since)
                .group_by(PaymentRetryAttempt.status)
            ).all()
        )
        counts = {RetryStatus(status): total for status, total in counts.items()}
        total = sum(counts.values())
        succeeded = counts.get(RetryStatus.SUCCEEDED, 0)

        winning_attempts = self.session.exec(
            select(func.max(PaymentRetryAttempt.attempt_number))
            .where(
                PaymentRetryAttempt.created_at >= since,
                PaymentRetryAttempt.status == RetryStatus.SUCCEEDED,
            )
            .group_by(PaymentRetryAttempt.payment_id)
        ).all()

        return RetryStatistics(
            total_retries=total,
            successful_retries=succeeded,
            failed_retries=counts.get(RetryStatus.FAILED, 0),
            pending_retries=counts.get(RetryStatus.PENDING, 0) + counts.get(RetryStatus.PROCESSING, 0),
            cancelled_retries=counts.get(RetryStatus.CANCELLED, 0),
            success_rate=(succeeded / total * 100) if total else 0.0,
            average_attempts_to_success=(
                sum(winning_attempts) / len(winning_attempts) if winning_attempts else 0.0
            ),
        )

    def _attempt_count(self, payment_id: UUID) -> int:
        return self.session.exec(
            select(func.count())
            .select_from(PaymentRetryAttempt)
            .where(
                PaymentRetryAttempt.payment_id == payment_id,
                PaymentRetryAttempt.status != RetryStatus.CANCELLED,
            )
        ).one()

    def _can_retry(self, payment: Payment) -> bool:
        if payment.status != PaymentStatus.FAILED:
            return False
        settled = self.session.exec(
            select(func.count())
            .select_from(PaymentRetryAttempt)
            .where(
                PaymentRetryAttempt.payment_id == payment.id,
                PaymentRetryAttempt.status.in_([RetryStatus.PROCESSING, RetryStatus.SUCCEEDED, RetryStatus.FAILED]),
            )
        ).one()
        return settled < self.options.max_retries

    def _cancel_where(self, condition, reason: str, *, commit: bool = True) -> int:
        result = self.session.exec(
            update(PaymentRetryAttempt)
            .where(condition, PaymentRetryAttempt.status == RetryStatus.PENDING)
            .values(status=RetryStatus.CANCELLED, error_message=reason, processed_at=self._now())
        )
        if commit:
            self.session.commit()
        if result.rowcount:
            logger.info("Cancelled %s pending retries (%s)", result.rowcount, reason)
        return result.rowcount or 0

    def _close_attempt(self, attempt_id: UUID, status: RetryStatus, message: str | None = None) -> None:
        attempt = get_for_update(self.session, PaymentRetryAttempt, attempt_id)
        if not attempt or attempt.status in (RetryStatus.SUCCEEDED, RetryStatus.CANCELLED):
            return
        attempt.status = status
        attempt.processed_at = self._now()
        if message:
            attempt.error_message = message
        self.session.add(attempt)
        self.session.commit()

    def _stop_lineage(self, payment_id: UUID) -> None:
        payment = get_for_update(self.session, Payment, payment_id)
        if payment and payment.retry_state in (RetryState.PENDING, RetryState.PROCESSING):
            payment.retry_state = RetryState.NOT_RETRYABLE
            payment.updated_at = self._now()
            self.session.add(payment)
            self.session.commit()
