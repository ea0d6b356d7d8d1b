from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from pbx_billing.core.config import settings
from pbx_billing.core.exceptions import DuplicateInvoiceError, NotFoundError, ValidationError
from pbx_billing.core.logging_setup import get_logger
from pbx_billing.db.session import get_for_update
from pbx_billing.models.base import utc_now
from pbx_billing.models.billing import (
    BillingInterval,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    Plan,
    Subscription,
)
from pbx_billing.services.usage import UsageService
from pbx_billing.utils.money import apply_rate, line_amount
from pbx_billing.utils.periods import billing_period_key, parse_billing_period

logger = get_logger("invoice")


@dataclass
class LineItem:
    description: str
    quantity: float
    unit_amount: int

    @property
    def amount(self) -> int:
        return line_amount(self.quantity, self.unit_amount)


class InvoiceService:
    def __init__(
        self,
        session: Session,
        usage_service: UsageService | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self._now = clock or utc_now
        self.usage = usage_service or UsageService(session, clock=self._now)

    def list_invoices(self, tenant_id: UUID, limit: int = 50, offset: int = 0) -> Iterable[Invoice]:
        return self.session.exec(
            select(Invoice)
            .where(Invoice.tenant_id == tenant_id)
            .order_by(Invoice.created_at.desc())
            .offset(offset)
            .limit(limit)
        ).all()

    def get_invoice(self, invoice_id: UUID, tenant_id: UUID | None = None) -> Invoice:
        invoice = self.session.get(Invoice, invoice_id)
        if not invoice or (tenant_id is not None and invoice.tenant_id != tenant_id):
            raise NotFoundError("Invoice not found")
        return invoice

    def find_invoice(self, subscription_id: UUID, period: str) -> Invoice | None:
        return self.session.exec(
            select(Invoice).where(
                Invoice.subscription_id == subscription_id,
                Invoice.billing_period == period,
                Invoice.status != InvoiceStatus.VOID,
            )
        ).first()

    def build_invoice(self, subscription: Subscription, period: str | None = None, *, finalize: bool = True) -> Invoice:
        """Generate and persist the invoice for a subscription's billing period.

        One non-void invoice may exist per (subscription, period); a second
        request raises DuplicateInvoiceError instead of billing twice. A
        finalized invoice is `open` with the full total due, except a zero
        total, which is settled on the spot since there is nothing to collect.
        """
        invoice = self.preview_invoice(subscription, period)
        now = self._now()
        if invoice.total == 0:
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = now
        else:
            invoice.status = InvoiceStatus.OPEN if finalize else InvoiceStatus.DRAFT

        self.session.add(invoice)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateInvoiceError(
                f"Invoice already exists for billing period {invoice.billing_period}",
                details={"subscription_id": str(subscription.id), "period": invoice.billing_period},
            ) from exc
        self.session.refresh(invoice)
        logger.info(
            "Invoice %s generated for subscription %s (%s): total=%s",
            invoice.id,
            subscription.id,
            invoice.billing_period,
            invoice.total,
        )
        return invoice

    def preview_invoice(self, subscription: Subscription, period: str | None = None) -> Invoice:
        """Compute an invoice without persisting it (used by dry runs)."""
        period = period or billing_period_key(subscription.current_period_start)
        parse_billing_period(period)
        if self.find_invoice(subscription.id, period):
            raise DuplicateInvoiceError(
                f"Invoice already exists for billing period {period}",
                details={"subscription_id": str(subscription.id), "period": period},
            )

        plan = self.session.get(Plan, subscription.plan_id)
        if not plan:
            raise NotFoundError(f"Plan {subscription.plan_id} not found")

        lines = self._line_items(subscription, plan, period)
        subtotal = sum(line.amount for line in lines)
        tax = apply_rate(subtotal, settings.billing_tax_rate)
        total = subtotal + tax

        now = self._now()
        invoice = Invoice(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            billing_period=period,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            description=(
                f"{plan.name} - {subscription.current_period_start.date().isoformat()} "
                f"to {subscription.current_period_end.date().isoformat()}"
            ),
            currency=settings.billing_currency,
            subtotal=subtotal,
            tax=tax,
            total=total,
            amount_paid=0,
            amount_due=total,
            status=InvoiceStatus.DRAFT,
            due_date=now + timedelta(days=settings.billing_invoice_due_days),
        )
        for position, line in enumerate(lines):
            invoice.items.append(
                InvoiceItem(
                    invoice_id=invoice.id,
                    position=position,
                    description=line.description,
                    quantity=line.quantity,
                    unit_amount=line.unit_amount,
                    amount=line.amount,
                )
            )
        return invoice

    def _line_items(self, subscription: Subscription, plan: Plan, period: str) -> list[LineItem]:
        base_price = plan.yearly_price if subscription.billing_interval == BillingInterval.YEARLY else plan.monthly_price
        lines = [LineItem(f"{plan.name} Plan - {period}", subscription.quantity, base_price)]

        overages = self.usage.calculate_overages(subscription, plan, period)
        if overages.overage_minutes > 0:
            lines.append(
                LineItem(
                    f"Call minute overages - {overages.overage_minutes:g} minutes",
                    overages.overage_minutes,
                    overages.call_unit_amount,
                )
            )
        if overages.overage_seats > 0:
            lines.append(
                LineItem(
                    f"Additional seats - {overages.overage_seats:g} seats",
                    overages.overage_seats,
                    overages.seat_unit_amount,
                )
            )
        return lines

    def finalize_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self._locked(invoice_id)
        if invoice.status != InvoiceStatus.DRAFT:
            raise ValidationError(f"Only draft invoices can be finalized (status={invoice.status.value})")
        invoice.status = InvoiceStatus.OPEN
        invoice.updated_at = self._now()
        self.session.add(invoice)
        self.session.commit()
        self.session.refresh(invoice)
        return invoice

    def void_invoice(self, invoice_id: UUID, tenant_id: UUID | None = None) -> Invoice:
        from pbx_billing.services.payment_retry import PaymentRetryService

        self.get_invoice(invoice_id, tenant_id)
        invoice = self._locked(invoice_id)
        if invoice.status == InvoiceStatus.VOID:
            return invoice
        if invoice.status == InvoiceStatus.PAID or invoice.amount_paid > 0:
            raise ValidationError("Invoices with collected payments cannot be voided")
        now = self._now()
        invoice.status = InvoiceStatus.VOID
        invoice.amount_due = 0
        invoice.voided_at = now
        invoice.updated_at = now
        self.session.add(invoice)
        self.session.commit()
        self.session.refresh(invoice)

        retries = PaymentRetryService(self.session, clock=self._now)
        cancelled = retries.cancel_retries_for_invoice(invoice.id, reason="invoice_voided")
        logger.info("Invoice %s voided; %s pending retries cancelled", invoice.id, cancelled)
        return invoice

    def mark_uncollectible(self, invoice_id: UUID) -> Invoice:
        invoice = self._locked(invoice_id)
        if invoice.status not in (InvoiceStatus.OPEN, InvoiceStatus.DRAFT):
            raise ValidationError(f"Invoice in status {invoice.status.value} cannot be marked uncollectible")
        invoice.status = InvoiceStatus.UNCOLLECTIBLE
        invoice.updated_at = self._now()
        self.session.add(invoice)
        self.session.commit()
        self.session.refresh(invoice)
        return invoice

    def apply_payment(self, invoice: Invoice, amount: int) -> Invoice:
        """Credit a collected amount to the invoice. Callers commit."""
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")
        if amount > invoice.amount_due:
            raise ValidationError(f"Payment of {amount} exceeds amount due {invoice.amount_due}")
        now = self._now()
        invoice.amount_paid += amount
        invoice.amount_due = invoice.total - invoice.amount_paid
        if invoice.amount_due == 0:
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = now
        invoice.updated_at = now
        self.session.add(invoice)
        return invoice

    def _locked(self, invoice_id: UUID) -> Invoice:
        invoice = get_for_update(self.session, Invoice, invoice_id)
        if not invoice:
            raise NotFoundError("Invoice not found")
        return invoice
