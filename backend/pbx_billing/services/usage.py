from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable
from uuid import UUID

from sqlalchemy import func, update
from sqlmodel import Session, select

from pbx_billing.core.config import settings
from pbx_billing.core.exceptions import ConfigurationError, ValidationError
from pbx_billing.core.logging_setup import get_logger
from pbx_billing.models.base import utc_now
from pbx_billing.models.billing import Plan, Subscription, SubscriptionStatus, UsageRecord, UsageType
from pbx_billing.utils.money import line_amount
from pbx_billing.utils.periods import billing_period_key, parse_billing_period

logger = get_logger("usage")

SEAT_ALLOWANCE_FIELDS = ("max_users", "max_extensions")


@dataclass
class OverageCharges:
    call_minutes: float = 0
    call_allowance: int = 0
    overage_minutes: float = 0
    call_unit_amount: int = 0
    call_amount: int = 0
    seat_peak: float = 0
    seat_allowance: int = 0
    overage_seats: float = 0
    seat_unit_amount: int = 0
    seat_amount: int = 0

    @property
    def total_amount(self) -> int:
        return self.call_amount + self.seat_amount


class UsageService:
    """Ledger of metered consumption (call minutes, seats, SMS) per billing period."""

    def __init__(self, session: Session, clock: Callable[[], datetime] | None = None) -> None:
        self.session = session
        self._now = clock or utc_now

    def record_usage(
        self,
        tenant_id: UUID,
        record_type: UsageType | str,
        quantity: float,
        *,
        when: datetime | None = None,
        description: str | None = None,
    ) -> UsageRecord:
        try:
            usage_type = UsageType(record_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown usage type '{record_type}'") from exc
        if quantity is None or quantity < 0 or math.isnan(quantity):
            raise ValidationError("Usage quantity must be zero or positive")

        subscription = self.session.exec(
            select(Subscription).where(Subscription.tenant_id == tenant_id)
        ).first()
        if not subscription or subscription.status == SubscriptionStatus.CANCELED:
            raise ValidationError(f"No active subscription found for tenant {tenant_id}")

        record_date = when or self._now()
        record = UsageRecord(
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            record_type=usage_type,
            quantity=quantity,
            description=description,
            record_date=record_date,
            billing_period=billing_period_key(record_date),
            processed=False,
        )
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    def record_call_usage(self, tenant_id: UUID, call_id: str, duration_seconds: float) -> UsageRecord:
        """Completed-call hook: bill whole minutes, rounding partial minutes up."""
        if duration_seconds is None or duration_seconds < 0:
            raise ValidationError("Call duration must be zero or positive")
        minutes = math.ceil(duration_seconds / 60)
        return self.record_usage(
            tenant_id,
            UsageType.CALL_MINUTES,
            minutes,
            description=f"Call {call_id} - {duration_seconds:g}s ({minutes} min)",
        )

    def record_seat_usage(self, tenant_id: UUID, seats: int) -> UsageRecord:
        return self.record_usage(
            tenant_id,
            UsageType.SEAT_COUNT,
            seats,
            description=f"Active seats count: {seats}",
        )

    def list_usage(self, tenant_id: UUID, period: str | None = None) -> Iterable[UsageRecord]:
        period = period or billing_period_key(self._now())
        parse_billing_period(period)
        return self.session.exec(
            select(UsageRecord)
            .where(UsageRecord.tenant_id == tenant_id, UsageRecord.billing_period == period)
            .order_by(UsageRecord.record_date.desc())
        ).all()

    def summarize(self, tenant_id: UUID, period: str | None = None) -> dict[str, float]:
        """Total quantity per usage type for a period.

        Processed records are included: the flag only tracks whether a record
        has been folded into an invoice, not whether it counts.
        """
        period = period or billing_period_key(self._now())
        parse_billing_period(period)
        rows = self.session.exec(
            select(UsageRecord.record_type, func.sum(UsageRecord.quantity))
            .where(UsageRecord.tenant_id == tenant_id, UsageRecord.billing_period == period)
            .group_by(UsageRecord.record_type)
        ).all()
        summary = {usage_type.value: 0.0 for usage_type in UsageType}
        for record_type, total in rows:
            summary[UsageType(record_type).value] = float(total or 0)
        return summary

    def calculate_overages(self, subscription: Subscription, plan: Plan, period: str) -> OverageCharges:
        """Usage beyond the plan allowance for one subscription and period.

        Call minutes are summed and compared to max_concurrent_calls x the
        configured minutes-per-call allowance. Seats are point-in-time
        snapshots, so the peak snapshot is compared to the seat limit.
        """
        rows = self.session.exec(
            select(
                UsageRecord.record_type,
                func.sum(UsageRecord.quantity),
                func.max(UsageRecord.quantity),
            )
            .where(
                UsageRecord.subscription_id == subscription.id,
                UsageRecord.billing_period == period,
            )
            .group_by(UsageRecord.record_type)
        ).all()
        totals = {UsageType(record_type): (float(total or 0), float(peak or 0)) for record_type, total, peak in rows}

        charges = OverageCharges(
            call_unit_amount=settings.billing_call_overage_unit_cents,
            seat_unit_amount=settings.billing_seat_overage_unit_cents,
        )
        charges.call_minutes = totals.get(UsageType.CALL_MINUTES, (0.0, 0.0))[0]
        charges.call_allowance = plan.max_concurrent_calls * settings.billing_call_minutes_per_concurrent_call
        if charges.call_minutes > charges.call_allowance:
            charges.overage_minutes = charges.call_minutes - charges.call_allowance
            charges.call_amount = line_amount(charges.overage_minutes, charges.call_unit_amount)

        charges.seat_peak = totals.get(UsageType.SEAT_COUNT, (0.0, 0.0))[1]
        charges.seat_allowance = self._seat_allowance(plan)
        if charges.seat_peak > charges.seat_allowance:
            charges.overage_seats = charges.seat_peak - charges.seat_allowance
            charges.seat_amount = line_amount(charges.overage_seats, charges.seat_unit_amount)
        return charges

    def mark_processed(self, subscription_id: UUID, period: str) -> int:
        """Flag the subscription's records up to and including a period as invoiced.

        Earlier periods are swept too, so usage that arrived after its period
        was billed is not picked up again. Safe to call repeatedly; callers commit.
        """
        result = self.session.exec(
            update(UsageRecord)
            .where(
                UsageRecord.subscription_id == subscription_id,
                UsageRecord.billing_period <= period,
                UsageRecord.processed.is_(False),
            )
            .values(processed=True, processed_at=self._now())
        )
        if result.rowcount:
            logger.info("Marked %s usage records processed for subscription %s (%s)", result.rowcount, subscription_id, period)
        return result.rowcount or 0

    def subscriptions_with_unprocessed_usage(self, period: str, tenant_id: UUID | None = None) -> list[UUID]:
        statement = (
            select(UsageRecord.subscription_id)
            .where(UsageRecord.billing_period == period, UsageRecord.processed.is_(False))
            .distinct()
        )
        if tenant_id:
            statement = statement.where(UsageRecord.tenant_id == tenant_id)
        return list(self.session.exec(statement).all())

    @staticmethod
    def _seat_allowance(plan: Plan) -> int:
        field = settings.billing_seat_allowance_field
        if field not in SEAT_ALLOWANCE_FIELDS:
            raise ConfigurationError(f"Unsupported seat allowance field '{field}'")
        return int(getattr(plan, field) or 0)
