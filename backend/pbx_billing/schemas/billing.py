from __future__ import annotations

from datetime import datetime
from typing import List
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from pbx_billing.models.billing import RetryStatus


class RetryAttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_id: UUID
    attempt_number: int
    status: RetryStatus
    scheduled_at: datetime
    error_message: str | None = None
    processed_at: datetime | None = None
    created_at: datetime


class BillingCycleOptions(BaseModel):
    tenant_id: UUID | None = None
    dry_run: bool = False
    process_overages: bool = False


class BillingCycleSummary(BaseModel):
    """Outcome of one billing cycle run. Never persisted."""

    dry_run: bool = False
    processed_subscriptions: int = 0
    generated_invoices: int = 0
    collected_payments: int = 0
    failed_payments: int = 0
    pending_payments: int = 0
    total_amount: int = 0
    errors: List[str] = Field(default_factory=list)


class BillingStatus(BaseModel):
    is_running: bool
    last_run_at: datetime | None = None


class RetryProcessingResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class PaymentRetryStatus(BaseModel):
    total_attempts: int
    last_attempt: RetryAttemptRead | None = None
    next_scheduled: datetime | None = None
    can_retry: bool


class ManualRetryResult(BaseModel):
    success: bool
    message: str
    attempt: RetryAttemptRead | None = None


class RetryStatistics(BaseModel):
    total_retries: int
    successful_retries: int
    failed_retries: int
    pending_retries: int
    cancelled_retries: int
    success_rate: float
    average_attempts_to_success: float
