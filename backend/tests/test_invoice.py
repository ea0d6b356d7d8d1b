from datetime import timedelta

import pytest
from sqlmodel import select

from pbx_billing.core.exceptions import DuplicateInvoiceError, NotFoundError, ValidationError
from pbx_billing.models.billing import (
    BillingInterval,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentRetryAttempt,
    PaymentStatus,
    RetryStatus,
    UsageType,
)
from pbx_billing.services.invoice import InvoiceService
from pbx_billing.services.usage import UsageService
from tests.conftest import make_plan, make_subscription, make_tenant


def _subscription(db_session, **kwargs):
    tenant = make_tenant(db_session)
    plan = make_plan(db_session, **kwargs)
    return tenant, plan, make_subscription(db_session, tenant, plan)


def _assert_balanced(invoice: Invoice) -> None:
    assert invoice.subtotal + invoice.tax == invoice.total
    assert invoice.amount_paid + invoice.amount_due == invoice.total


def test_basic_plan_without_usage(db_session, clock):
    tenant, plan, subscription = _subscription(db_session)

    invoice = InvoiceService(db_session, clock=clock).build_invoice(subscription)

    assert invoice.billing_period == "2026-01"
    assert invoice.subtotal == 2900
    assert invoice.tax == 232
    assert invoice.total == 3132
    assert invoice.amount_due == 3132
    assert invoice.status == InvoiceStatus.OPEN
    assert invoice.due_date == clock.now + timedelta(days=30)
    assert invoice.period_start == subscription.current_period_start
    assert [item.amount for item in invoice.items] == [2900]
    assert invoice.items[0].description == "Basic Plan - 2026-01"
    _assert_balanced(invoice)


def test_call_minute_overage_line_is_taxed(db_session, clock):
    tenant, plan, subscription = _subscription(db_session)
    UsageService(db_session, clock=clock).record_usage(tenant.id, UsageType.CALL_MINUTES, 5001)

    invoice = InvoiceService(db_session, clock=clock).build_invoice(subscription)

    assert len(invoice.items) == 2
    overage = invoice.items[1]
    assert overage.quantity == 1
    assert overage.unit_amount == 5
    assert overage.amount == 5
    assert invoice.subtotal == 2905
    assert invoice.tax == 232
    assert invoice.total == 3137
    _assert_balanced(invoice)


def test_yearly_interval_bills_yearly_price_times_quantity(db_session, clock):
    tenant = make_tenant(db_session)
    plan = make_plan(db_session)
    subscription = make_subscription(db_session, tenant, plan, quantity=3, interval=BillingInterval.YEARLY)

    invoice = InvoiceService(db_session, clock=clock).build_invoice(subscription)

    assert invoice.items[0].quantity == 3
    assert invoice.items[0].unit_amount == 29000
    assert invoice.subtotal == 87000
    assert invoice.tax == 6960


def test_second_invoice_for_same_period_is_rejected(db_session, clock):
    tenant, _, subscription = _subscription(db_session)
    service = InvoiceService(db_session, clock=clock)
    first = service.build_invoice(subscription)

    with pytest.raises(DuplicateInvoiceError):
        service.build_invoice(subscription)
    with pytest.raises(DuplicateInvoiceError):
        service.preview_invoice(subscription)

    invoices = db_session.exec(select(Invoice).where(Invoice.status != InvoiceStatus.VOID)).all()
    assert [i.id for i in invoices] == [first.id]


def test_voided_invoice_frees_the_period(db_session, clock):
    tenant, _, subscription = _subscription(db_session)
    service = InvoiceService(db_session, clock=clock)
    first = service.build_invoice(subscription)

    voided = service.void_invoice(first.id, tenant.id)
    assert voided.status == InvoiceStatus.VOID
    assert voided.amount_due == 0
    assert voided.voided_at == clock.now

    second = service.build_invoice(subscription)
    assert second.id != first.id
    assert second.status == InvoiceStatus.OPEN


def test_preview_does_not_persist(db_session, clock):
    tenant, _, subscription = _subscription(db_session)
    service = InvoiceService(db_session, clock=clock)

    preview = service.preview_invoice(subscription)

    assert preview.total == 3132
    assert preview.status == InvoiceStatus.DRAFT
    db_session.commit()
    assert list(service.list_invoices(tenant.id)) == []


def test_zero_total_invoice_is_settled_immediately(db_session, clock):
    tenant, _, subscription = _subscription(db_session, name="Free", monthly=0, yearly=0)

    invoice = InvoiceService(db_session, clock=clock).build_invoice(subscription)

    assert invoice.total == 0
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.paid_at == clock.now
    _assert_balanced(invoice)


def test_draft_invoices_are_finalized_once(db_session, clock):
    tenant, _, subscription = _subscription(db_session)
    service = InvoiceService(db_session, clock=clock)
    draft = service.build_invoice(subscription, finalize=False)
    assert draft.status == InvoiceStatus.DRAFT

    opened = service.finalize_invoice(draft.id)
    assert opened.status == InvoiceStatus.OPEN
    with pytest.raises(ValidationError):
        service.finalize_invoice(draft.id)


def test_apply_payment_keeps_balance(db_session, clock):
    tenant, _, subscription = _subscription(db_session)
    service = InvoiceService(db_session, clock=clock)
    invoice = service.build_invoice(subscription)

    service.apply_payment(invoice, 1000)
    db_session.commit()
    assert invoice.status == InvoiceStatus.OPEN
    assert invoice.amount_paid == 1000
    assert invoice.amount_due == 2132
    _assert_balanced(invoice)

    with pytest.raises(ValidationError):
        service.apply_payment(invoice, 5000)

    service.apply_payment(invoice, 2132)
    db_session.commit()
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.paid_at == clock.now
    _assert_balanced(invoice)

    with pytest.raises(ValidationError):
        service.void_invoice(invoice.id)


def test_void_cancels_pending_retries(db_session, clock):
    tenant, _, subscription = _subscription(db_session)
    service = InvoiceService(db_session, clock=clock)
    invoice = service.build_invoice(subscription)
    payment = Payment(
        tenant_id=tenant.id,
        invoice_id=invoice.id,
        amount=invoice.total,
        status=PaymentStatus.FAILED,
        idempotency_key="pay_void_test",
    )
    db_session.add(payment)
    db_session.commit()
    attempt = PaymentRetryAttempt(
        payment_id=payment.id,
        tenant_id=tenant.id,
        attempt_number=1,
        status=RetryStatus.PENDING,
        scheduled_at=clock.now + timedelta(hours=1),
    )
    db_session.add(attempt)
    db_session.commit()

    service.void_invoice(invoice.id)

    db_session.refresh(attempt)
    assert attempt.status == RetryStatus.CANCELLED
    assert attempt.error_message == "invoice_voided"


def test_mark_uncollectible(db_session, clock):
    tenant, _, subscription = _subscription(db_session)
    service = InvoiceService(db_session, clock=clock)
    invoice = service.build_invoice(subscription)

    updated = service.mark_uncollectible(invoice.id)

    assert updated.status == InvoiceStatus.UNCOLLECTIBLE
    assert updated.amount_due == 3132
    with pytest.raises(ValidationError):
        service.mark_uncollectible(invoice.id)


def test_invoices_are_tenant_scoped(db_session, clock):
    tenant, _, subscription = _subscription(db_session)
    other = make_tenant(db_session, name="Other")
    service = InvoiceService(db_session, clock=clock)
    invoice = service.build_invoice(subscription)

    assert service.get_invoice(invoice.id, tenant.id).id == invoice.id
    with pytest.raises(NotFoundError):
        service.get_invoice(invoice.id, other.id)
    assert list(service.list_invoices(other.id)) == []
    assert [i.id for i in service.list_invoices(tenant.id)] == [invoice.id]


def test_malformed_period_is_rejected(db_session, clock):
    tenant, _, subscription = _subscription(db_session)
    with pytest.raises(ValidationError):
        InvoiceService(db_session, clock=clock).build_invoice(subscription, "January")
