from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from sqlalchemy import CheckConstraint, Index, text
from sqlmodel import Field, Relationship, SQLModel

from pbx_billing.models.base import TimestampedModel, UUIDModel, enum_column


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class UsageType(str, Enum):
    CALL_MINUTES = "call_minutes"
    SEAT_COUNT = "seat_count"
    SMS_COUNT = "sms_count"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


class PaymentMethodType(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    MANUAL = "manual"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class RetryState(str, Enum):
    """Where a payment's retry lineage stands."""

    NOT_NEEDED = "not_needed"
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "failed_exhausted"
    NOT_RETRYABLE = "not_retryable"


class RetryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Plan(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "plans"

    name: str = Field(unique=True, index=True)
    description: str | None = Field(default=None)
    monthly_price: int
    yearly_price: int
    max_extensions: int = Field(default=0)
    max_concurrent_calls: int = Field(default=0)
    max_users: int = Field(default=0)
    is_active: bool = Field(default=True)


class Subscription(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("current_period_end > current_period_start", name="ck_subscriptions_period_order"),
        CheckConstraint("quantity >= 1", name="ck_subscriptions_quantity"),
    )

    tenant_id: UUID = Field(foreign_key="tenants.id", unique=True, index=True)
    plan_id: UUID = Field(foreign_key="plans.id", index=True)
    status: SubscriptionStatus = Field(
        default=SubscriptionStatus.ACTIVE,
        sa_column=enum_column(SubscriptionStatus, index=True),
    )
    billing_interval: BillingInterval = Field(
        default=BillingInterval.MONTHLY,
        sa_column=enum_column(BillingInterval),
    )
    current_period_start: datetime
    current_period_end: datetime = Field(index=True)
    quantity: int = Field(default=1)
    trial_start: datetime | None = Field(default=None)
    trial_end: datetime | None = Field(default=None)
    cancel_at: datetime | None = Field(default=None)
    canceled_at: datetime | None = Field(default=None)

    plan: Optional[Plan] = Relationship()


class UsageRecord(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "usage_records"
    __table_args__ = (CheckConstraint("quantity >= 0", name="ck_usage_records_quantity"),)

    tenant_id: UUID = Field(foreign_key="tenants.id", index=True)
    subscription_id: UUID = Field(foreign_key="subscriptions.id", index=True)
    record_type: UsageType = Field(sa_column=enum_column(UsageType, index=True))
    quantity: float
    description: str | None = Field(default=None)
    record_date: datetime
    billing_period: str = Field(index=True, max_length=7)
    processed: bool = Field(default=False, index=True)
    processed_at: datetime | None = Field(default=None)


class Invoice(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "invoices"
    __table_args__ = (
        Index(
            "uq_invoices_subscription_period",
            "subscription_id",
            "billing_period",
            unique=True,
            sqlite_where=text("status != 'void'"),
            postgresql_where=text("status != 'void'"),
        ),
        CheckConstraint("total = subtotal + tax", name="ck_invoices_total"),
    )

    tenant_id: UUID = Field(foreign_key="tenants.id", index=True)
    subscription_id: UUID | None = Field(default=None, foreign_key="subscriptions.id", index=True)
    billing_period: str = Field(max_length=7)
    period_start: datetime
    period_end: datetime
    description: str | None = Field(default=None)
    currency: str = Field(default="usd", max_length=3)
    subtotal: int = Field(default=0)
    tax: int = Field(default=0)
    total: int = Field(default=0)
    amount_paid: int = Field(default=0)
    amount_due: int = Field(default=0)
    status: InvoiceStatus = Field(
        default=InvoiceStatus.DRAFT,
        sa_column=enum_column(InvoiceStatus, index=True),
    )
    due_date: datetime | None = Field(default=None)
    paid_at: datetime | None = Field(default=None)
    voided_at: datetime | None = Field(default=None)

    items: List["InvoiceItem"] = Relationship(
        back_populates="invoice",
        sa_relationship_kwargs={"order_by": "InvoiceItem.position", "cascade": "all, delete-orphan"},
    )


class InvoiceItem(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "invoice_items"

    invoice_id: UUID = Field(foreign_key="invoices.id", index=True)
    position: int = Field(default=0)
    description: str
    quantity: float = Field(default=1)
    unit_amount: int
    amount: int

    invoice: Optional[Invoice] = Relationship(back_populates="items")


class PaymentMethod(UUIDModel, TimestampedModel, table=True):
    """A saved, gateway-tokenized way to pay (card, bank account, offline)."""

    __tablename__ = "payment_methods"

    tenant_id: UUID = Field(foreign_key="tenants.id", index=True)
    method_type: PaymentMethodType = Field(
        default=PaymentMethodType.CARD,
        sa_column=enum_column(PaymentMethodType),
    )
    gateway_token: str
    label: str | None = Field(default=None)
    is_default: bool = Field(default=False)


class Payment(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "payments"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_payments_amount"),)

    tenant_id: UUID = Field(foreign_key="tenants.id", index=True)
    invoice_id: UUID = Field(foreign_key="invoices.id", index=True)
    payment_method_id: UUID | None = Field(default=None, foreign_key="payment_methods.id")
    amount: int
    currency: str = Field(default="usd", max_length=3)
    status: PaymentStatus = Field(
        default=PaymentStatus.PENDING,
        sa_column=enum_column(PaymentStatus, index=True),
    )
    retry_state: RetryState = Field(
        default=RetryState.NOT_NEEDED,
        sa_column=enum_column(RetryState),
    )
    gateway: str | None = Field(default=None, max_length=32)
    gateway_ref: str | None = Field(default=None, index=True)
    idempotency_key: str = Field(unique=True)
    # Key of the last charge whose outcome the provider never confirmed.
    unresolved_charge_key: str | None = Field(default=None)
    unresolved_method_id: UUID | None = Field(default=None)
    failure_reason: str | None = Field(default=None)
    description: str | None = Field(default=None)
    paid_at: datetime | None = Field(default=None)
    failed_at: datetime | None = Field(default=None)


class PaymentRetryAttempt(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "payment_retry_attempts"

    payment_id: UUID = Field(foreign_key="payments.id", index=True)
    tenant_id: UUID = Field(foreign_key="tenants.id", index=True)
    attempt_number: int
    status: RetryStatus = Field(
        default=RetryStatus.PENDING,
        sa_column=enum_column(RetryStatus, index=True),
    )
    scheduled_at: datetime = Field(index=True)
    error_message: str | None = Field(default=None)
    processed_at: datetime | None = Field(default=None)


class BillingCycleLock(SQLModel, table=True):
    """Advisory lock row guarding billing runs across processes."""

    __tablename__ = "billing_cycle_locks"

    name: str = Field(primary_key=True, max_length=64)
    owner: str | None = Field(default=None, max_length=128)
    acquired_at: datetime | None = Field(default=None)
    expires_at: datetime | None = Field(default=None)
    last_completed_at: datetime | None = Field(default=None)
    # Dry runs in flight; the count lapses at dry_runs_expire_at.
    dry_runs: int = Field(default=0)
    dry_runs_expire_at: datetime | None = Field(default=None)
