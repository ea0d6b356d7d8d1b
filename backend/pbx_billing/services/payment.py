from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Iterable
from uuid import UUID

from sqlalchemy import func, update
from sqlmodel import Session, select

from pbx_billing.core.config import settings
from pbx_billing.core.exceptions import (
    AlreadyPaidError,
    ConfigurationError,
    GatewayError,
    NoPaymentMethodError,
    NotFoundError,
    ValidationError,
)
from pbx_billing.core.logging_setup import get_logger
from pbx_billing.db.session import get_for_update
from pbx_billing.models.base import utc_now
from pbx_billing.models.billing import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentMethodType,
    PaymentRetryAttempt,
    PaymentStatus,
    RetryState,
    RetryStatus,
    Subscription,
)
from pbx_billing.models.tenant import Tenant
from pbx_billing.services.invoice import InvoiceService
from pbx_billing.services.payment_gateway import (
    FAILED,
    PENDING,
    SUCCEEDED,
    GatewayOutcome,
    PaymentGateway,
    classify_failure_reason,
    gateways_from_settings,
)
from pbx_billing.services.subscription import SubscriptionService

if TYPE_CHECKING:
    from pbx_billing.services.payment_retry import PaymentRetryService

logger = get_logger("payment")

_SETTLED_STATUSES = {"succeeded", "paid", "approved"}
_FAILED_STATUSES = {"failed", "declined", "canceled", "cancelled"}


class PaymentService:
    """Charges invoices through a payment gateway and records every attempt."""

    def __init__(
        self,
        session: Session,
        gateway: PaymentGateway | None = None,
        *,
        gateways: dict[str, PaymentGateway] | None = None,
        retry_service: "PaymentRetryService | None" = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self._now = clock or utc_now
        self._gateway = gateway
        self._gateways = gateways
        self._retries = retry_service
        self.invoices = InvoiceService(session, clock=self._now)
        self.subscriptions = SubscriptionService(session, clock=self._now)

    @property
    def retries(self) -> "PaymentRetryService":
        if self._retries is None:
            from pbx_billing.services.payment_retry import PaymentRetryService

            self._retries = PaymentRetryService(self.session, payment_service=self, clock=self._now)
        return self._retries

    # Payment methods

    def get_payment_methods(self, tenant_id: UUID) -> list[PaymentMethod]:
        """Saved methods for a tenant, default first."""
        return list(
            self.session.exec(
                select(PaymentMethod)
                .where(PaymentMethod.tenant_id == tenant_id)
                .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at, PaymentMethod.id)
            ).all()
        )

    def add_payment_method(
        self,
        tenant_id: UUID,
        gateway_token: str,
        *,
        method_type: PaymentMethodType = PaymentMethodType.CARD,
        label: str | None = None,
        make_default: bool = False,
    ) -> PaymentMethod:
        if self.session.get(Tenant, tenant_id) is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        if not gateway_token or not gateway_token.strip():
            raise ValidationError("Payment method token is required")

        existing = self.get_payment_methods(tenant_id)
        is_default = make_default or not existing
        if is_default:
            for method in existing:
                if method.is_default:
                    method.is_default = False
                    self.session.add(method)
        method = PaymentMethod(
            tenant_id=tenant_id,
            method_type=PaymentMethodType(method_type),
            gateway_token=gateway_token.strip(),
            label=label,
            is_default=is_default,
            created_at=self._now(),
        )
        self.session.add(method)
        self.session.commit()
        self.session.refresh(method)
        logger.info("Payment method %s (%s) added for tenant %s", method.id, method.method_type.value, tenant_id)
        return method

    def remove_payment_method(self, tenant_id: UUID, method_id: UUID) -> None:
        method = self.session.get(PaymentMethod, method_id)
        if not method or method.tenant_id != tenant_id:
            raise NotFoundError("Payment method not found")
        was_default = method.is_default
        self.session.delete(method)
        self.session.flush()
        if was_default:
            remaining = self.get_payment_methods(tenant_id)
            if remaining:
                remaining[0].is_default = True
                self.session.add(remaining[0])
        self.session.commit()
        logger.info("Payment method %s removed for tenant %s", method_id, tenant_id)

    # Payments

    def list_payments(self, tenant_id: UUID, invoice_id: UUID | None = None) -> Iterable[Payment]:
        statement = select(Payment).where(Payment.tenant_id == tenant_id)
        if invoice_id:
            statement = statement.where(Payment.invoice_id == invoice_id)
        return self.session.exec(statement.order_by(Payment.created_at.desc())).all()

    def get_payment(self, payment_id: UUID, tenant_id: UUID | None = None) -> Payment:
        payment = self.session.get(Payment, payment_id)
        if not payment or (tenant_id is not None and payment.tenant_id != tenant_id):
            raise NotFoundError("Payment not found")
        return payment

    def attempt_payment(
        self,
        invoice: Invoice,
        payment_method: PaymentMethod | None = None,
        amount: int | None = None,
    ) -> Payment:
        """Charge an open invoice once.

        The attempt is persisted as `pending` before the gateway is called,
        and always leaves this method `succeeded`, `failed` or (for
        asynchronous providers) `pending` with a gateway reference that
        reconciliation settles later. Failures are handed to the retry
        scheduler.
        """
        invoice = self._lock_invoice(invoice.id)
        if invoice.status == InvoiceStatus.PAID:
            logger.info("Invoice %s already paid; skipping charge", invoice.id)
            raise AlreadyPaidError(f"Invoice {invoice.id} is already paid")
        if invoice.status != InvoiceStatus.OPEN:
            raise ValidationError(f"Invoice in status {invoice.status.value} cannot be charged")

        amount = invoice.amount_due if amount is None else amount
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")
        if amount > invoice.amount_due:
            raise ValidationError(f"Payment of {amount} exceeds amount due {invoice.amount_due}")

        method = payment_method
        if method is None:
            methods = self.get_payment_methods(invoice.tenant_id)
            if not methods:
                raise NoPaymentMethodError(
                    f"Tenant {invoice.tenant_id} has no saved payment method",
                    details={"invoice_id": str(invoice.id)},
                )
            method = methods[0]
        elif method.tenant_id != invoice.tenant_id:
            raise ValidationError("Payment method belongs to another tenant")

        gateway = self._gateway_for(method)
        now = self._now()
        payment = Payment(
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
            payment_method_id=method.id,
            amount=amount,
            currency=invoice.currency,
            status=PaymentStatus.PENDING,
            gateway=gateway.name,
            description=f"Payment for invoice {invoice.billing_period}",
            created_at=now,
            idempotency_key="",
        )
        payment.idempotency_key = f"pay_{payment.id.hex}"
        self.session.add(payment)
        self.session.commit()
        self.session.refresh(payment)

        outcome = self._authorize(gateway, payment, method, payment.idempotency_key)
        payment = get_for_update(self.session, Payment, payment.id)
        invoice = self._lock_invoice(invoice.id)
        payment.gateway_ref = outcome.gateway_ref
        self._track_charge_key(payment, method, payment.idempotency_key, outcome)
        if outcome.status == SUCCEEDED:
            self._settle(payment, invoice)
        elif outcome.status == PENDING:
            payment.updated_at = self._now()
            self.session.add(payment)
            self.session.commit()
            logger.info("Payment %s pending at %s (ref=%s)", payment.id, gateway.name, payment.gateway_ref)
        else:
            self._record_failure(payment, invoice, outcome.failure_reason)
            self.retries.schedule_retry(payment.id, payment.failure_reason)
        self.session.refresh(payment)
        return payment

    def retry_charge(self, payment: Payment, attempt: PaymentRetryAttempt) -> GatewayOutcome:
        """Re-charge a failed payment for one retry attempt.

        Payment methods are fetched fresh and tried in order, so a card the
        tenant replaced after the original failure is picked up. Scheduling the
        next attempt is left to the caller.
        """
        invoice = self._lock_invoice(payment.invoice_id)
        if invoice.status == InvoiceStatus.PAID or invoice.amount_due == 0:
            raise AlreadyPaidError(f"Invoice {invoice.id} is already paid")
        if invoice.status != InvoiceStatus.OPEN:
            raise ValidationError(f"Invoice in status {invoice.status.value} cannot be charged")
        methods = self.get_payment_methods(payment.tenant_id)
        if not methods:
            raise NoPaymentMethodError(f"Tenant {payment.tenant_id} has no saved payment method")

        amount = min(payment.amount, invoice.amount_due)
        outcome = GatewayOutcome(status=FAILED, failure_reason="processing_error")
        for method in methods:
            gateway = self._gateway_for(method)
            key = self._charge_key(payment, method, attempt.attempt_number)
            outcome = self._authorize(gateway, payment, method, key, amount=amount)
            payment = get_for_update(self.session, Payment, payment.id)
            self._track_charge_key(payment, method, key, outcome)
            if outcome.status in (SUCCEEDED, PENDING):
                invoice = self._lock_invoice(invoice.id)
                payment.payment_method_id = method.id
                payment.gateway = gateway.name
                payment.gateway_ref = outcome.gateway_ref
                payment.amount = amount
                break
            logger.info(
                "Retry %s for payment %s declined on method %s: %s",
                attempt.attempt_number,
                payment.id,
                method.id,
                outcome.failure_reason,
            )

        if outcome.status == SUCCEEDED:
            self._settle(payment, invoice)
        elif outcome.status == PENDING:
            payment.status = PaymentStatus.PENDING
            payment.updated_at = self._now()
            self.session.add(payment)
            self.session.commit()
        else:
            payment = get_for_update(self.session, Payment, payment.id)
            self._record_failure(payment, self._lock_invoice(invoice.id), outcome.failure_reason)
        return outcome

    def reconcile_payment(self, gateway_ref: str, status: str, failure_reason: str | None = None) -> Payment | None:
        """Apply a provider's final verdict to an attempt it left pending."""
        payment = self.session.exec(select(Payment).where(Payment.gateway_ref == gateway_ref)).first()
        if not payment:
            logger.warning("Reconciliation for unknown gateway reference %s", gateway_ref)
            return None
        payment = get_for_update(self.session, Payment, payment.id)
        if payment.status != PaymentStatus.PENDING:
            return payment

        normalized = (status or "").strip().lower()
        invoice = self._lock_invoice(payment.invoice_id)
        if normalized in _SETTLED_STATUSES:
            self._settle(payment, invoice)
        elif normalized in _FAILED_STATUSES:
            payment.unresolved_charge_key = None
            payment.unresolved_method_id = None
            self._record_failure(payment, invoice, failure_reason or "processing_error")
            self.retries.schedule_retry(payment.id, payment.failure_reason)
        else:
            raise ValidationError(f"Unsupported reconciliation status '{status}'")
        self.session.refresh(payment)
        return payment

    def fail_stale_pending_payments(self) -> int:
        """Fail attempts a provider never resolved within the allowed wait."""
        cutoff = self._now() - timedelta(minutes=settings.billing_pending_payment_timeout_minutes)
        stale_ids = self.session.exec(
            select(Payment.id).where(
                Payment.status == PaymentStatus.PENDING,
                func.coalesce(Payment.updated_at, Payment.created_at) <= cutoff,
            )
        ).all()
        failed = 0
        for payment_id in stale_ids:
            payment = get_for_update(self.session, Payment, payment_id)
            if not payment or payment.status != PaymentStatus.PENDING:
                continue
            invoice = self._lock_invoice(payment.invoice_id)
            self._record_failure(payment, invoice, "network_error")
            self.retries.schedule_retry(payment.id, payment.failure_reason)
            failed += 1
        if failed:
            logger.warning("Failed %s payments left pending past %s", failed, cutoff.isoformat())
        return failed

    # Internals

    def _gateway_for(self, method: PaymentMethod) -> PaymentGateway:
        if self._gateway is not None:
            return self._gateway
        if self._gateways is None:
            self._gateways = gateways_from_settings()
        gateway = self._gateways.get(method.method_type.value)
        if gateway is None:
            raise ConfigurationError(f"No gateway configured for {method.method_type.value} payments")
        return gateway

    @staticmethod
    def _charge_key(payment: Payment, method: PaymentMethod, attempt_number: int) -> str:
        # A charge the provider never confirmed may still capture funds; sending
        # its key again lets the provider deduplicate instead of charging twice.
        if payment.unresolved_charge_key and payment.unresolved_method_id == method.id:
            return payment.unresolved_charge_key
        return f"pay_{payment.id.hex}_r{attempt_number}_{method.id.hex[:12]}"

    @staticmethod
    def _track_charge_key(payment: Payment, method: PaymentMethod, key: str, outcome: GatewayOutcome) -> None:
        if outcome.status == PENDING or outcome.failure_reason == "network_error":
            payment.unresolved_charge_key = key
            payment.unresolved_method_id = method.id
        elif payment.unresolved_method_id == method.id:
            payment.unresolved_charge_key = None
            payment.unresolved_method_id = None

    def _authorize(
        self,
        gateway: PaymentGateway,
        payment: Payment,
        method: PaymentMethod,
        idempotency_key: str,
        *,
        amount: int | None = None,
    ) -> GatewayOutcome:
        # Providers bound their own calls (see CardProcessorGateway's transport
        # timeout) and report a timeout as GatewayError("network_error").
        try:
            outcome = gateway.authorize(
                amount_cents=payment.amount if amount is None else amount,
                currency=payment.currency,
                payment_method_ref=method.gateway_token,
                idempotency_key=idempotency_key,
            )
        except GatewayError as exc:
            logger.warning("Gateway %s error for payment %s: %s", gateway.name, payment.id, exc.message)
            return GatewayOutcome(status=FAILED, failure_reason=classify_failure_reason(exc.reason))
        except Exception:
            logger.exception("Gateway %s raised unexpectedly for payment %s", gateway.name, payment.id)
            return GatewayOutcome(status=FAILED, failure_reason="processing_error")

        if outcome.status == FAILED:
            outcome.failure_reason = classify_failure_reason(outcome.failure_reason)
        return outcome

    def _settle(self, payment: Payment, invoice: Invoice) -> None:
        now = self._now()
        credit = min(payment.amount, invoice.amount_due)
        if credit < payment.amount:
            logger.warning("Payment %s exceeds the remaining due on invoice %s", payment.id, invoice.id)
        if credit > 0:
            self.invoices.apply_payment(invoice, credit)
        payment.status = PaymentStatus.SUCCEEDED
        payment.paid_at = now
        payment.failure_reason = None
        payment.unresolved_charge_key = None
        payment.unresolved_method_id = None
        payment.updated_at = now
        if payment.retry_state in (RetryState.PENDING, RetryState.PROCESSING):
            payment.retry_state = RetryState.SUCCEEDED
        self.session.add(payment)
        self._close_processing_attempts(payment.id, RetryStatus.SUCCEEDED)

        if invoice.status == InvoiceStatus.PAID and invoice.subscription_id:
            subscription = get_for_update(self.session, Subscription, invoice.subscription_id)
            if subscription:
                self.subscriptions.close_billed_period(subscription, invoice)
        self.session.commit()

        cancelled = self.retries.cancel_retries_for_invoice(invoice.id, reason="invoice_paid")
        logger.info(
            "Payment %s succeeded: %s %s collected for invoice %s (%s retries cancelled)",
            payment.id,
            payment.amount,
            payment.currency,
            invoice.id,
            cancelled,
        )

    def _record_failure(self, payment: Payment, invoice: Invoice, reason: str | None) -> None:
        now = self._now()
        payment.status = PaymentStatus.FAILED
        payment.failure_reason = classify_failure_reason(reason)
        payment.failed_at = now
        payment.updated_at = now
        self.session.add(payment)
        self._close_processing_attempts(payment.id, RetryStatus.FAILED, payment.failure_reason)
        if invoice.subscription_id:
            subscription = get_for_update(self.session, Subscription, invoice.subscription_id)
            if subscription:
                self.subscriptions.mark_past_due(subscription)
        self.session.commit()
        logger.warning("Payment %s failed: %s", payment.id, payment.failure_reason)

    def _close_processing_attempts(self, payment_id: UUID, status: RetryStatus, message: str | None = None) -> None:
        # Settles the attempt that was waiting on an asynchronous provider.
        values = {"status": status, "processed_at": self._now()}
        if message:
            values["error_message"] = message
        self.session.exec(
            update(PaymentRetryAttempt)
            .where(
                PaymentRetryAttempt.payment_id == payment_id,
                PaymentRetryAttempt.status == RetryStatus.PROCESSING,
            )
            .values(**values)
        )

    def _lock_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = get_for_update(self.session, Invoice, invoice_id)
        if not invoice:
            raise NotFoundError("Invoice not found")
        return invoice
