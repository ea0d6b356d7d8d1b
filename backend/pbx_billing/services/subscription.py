from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Iterable
from uuid import UUID

from sqlmodel import Session, select

from pbx_billing.core.config import settings
from pbx_billing.core.exceptions import NotFoundError, ValidationError
from pbx_billing.core.logging_setup import get_logger
from pbx_billing.models.base import utc_now
from pbx_billing.models.billing import BillingInterval, Invoice, Plan, Subscription, SubscriptionStatus
from pbx_billing.models.tenant import Tenant
from pbx_billing.services.usage import UsageService
from pbx_billing.utils.periods import add_months, billing_period_key, next_period_bounds

logger = get_logger("subscription")

DEFAULT_PLANS = [
    # name, description, monthly, yearly, extensions, concurrent calls, users
    ("Basic", "Perfect for small teams getting started", 2900, 29000, 10, 5, 5),
    ("Professional", "For growing businesses with advanced needs", 4900, 49000, 50, 25, 25),
    ("Enterprise", "Full-featured solution for large organizations", 9900, 99000, 500, 100, 100),
]


def interval_months(subscription: Subscription) -> int:
    return 12 if subscription.billing_interval == BillingInterval.YEARLY else 1


class SubscriptionService:
    def __init__(self, session: Session, clock: Callable[[], datetime] | None = None) -> None:
        self.session = session
        self._now = clock or utc_now

    def list_active_plans(self) -> Iterable[Plan]:
        return self.session.exec(
            select(Plan).where(Plan.is_active.is_(True)).order_by(Plan.monthly_price)
        ).all()

    def get_plan(self, plan_id: UUID) -> Plan | None:
        return self.session.get(Plan, plan_id)

    def get_subscription(self, tenant_id: UUID) -> Subscription | None:
        return self.session.exec(
            select(Subscription).where(Subscription.tenant_id == tenant_id)
        ).first()

    def ensure_default_plans(self) -> list[Plan]:
        """Idempotently create the default call-center plans."""
        existing = {p.name: p for p in self.session.exec(select(Plan)).all()}
        created: list[Plan] = []
        for name, description, monthly, yearly, extensions, calls, users in DEFAULT_PLANS:
            if name in existing:
                continue
            plan = Plan(
                name=name,
                description=description,
                monthly_price=monthly,
                yearly_price=yearly,
                max_extensions=extensions,
                max_concurrent_calls=calls,
                max_users=users,
                is_active=True,
            )
            self.session.add(plan)
            created.append(plan)
        if created:
            self.session.commit()
            for plan in created:
                self.session.refresh(plan)
        return list(self.list_active_plans())

    def assign_plan(
        self,
        tenant_id: UUID,
        plan_id: UUID,
        *,
        billing_interval: BillingInterval = BillingInterval.MONTHLY,
        quantity: int = 1,
        trial_days: int | None = None,
    ) -> Subscription:
        """Enroll a tenant in a plan, or move its existing subscription to it.

        A tenant has at most one subscription; re-assigning restarts the
        billing period from now, as a plan change does in the admin console.
        """
        if quantity < 1:
            raise ValidationError("Subscription quantity must be at least 1")
        if self.session.get(Tenant, tenant_id) is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        plan = self.get_plan(plan_id)
        if not plan:
            raise NotFoundError(f"Plan {plan_id} not found")
        if not plan.is_active:
            raise ValidationError("Cannot assign inactive plan")

        now = self._now()
        trial_days = settings.billing_trial_days if trial_days is None else trial_days
        months = 12 if billing_interval == BillingInterval.YEARLY else 1
        if trial_days > 0:
            status = SubscriptionStatus.TRIALING
            trial_end = now + timedelta(days=trial_days)
            period_end = trial_end
        else:
            status = SubscriptionStatus.ACTIVE
            trial_end = None
            period_end = add_months(now, months)

        subscription = self.get_subscription(tenant_id)
        if subscription is None:
            subscription = Subscription(tenant_id=tenant_id, plan_id=plan.id, current_period_start=now, current_period_end=period_end)
        subscription.plan_id = plan.id
        subscription.status = status
        subscription.billing_interval = billing_interval
        subscription.quantity = quantity
        subscription.current_period_start = now
        subscription.current_period_end = period_end
        subscription.trial_start = now if trial_end else None
        subscription.trial_end = trial_end
        subscription.cancel_at = None
        subscription.canceled_at = None
        subscription.updated_at = now
        self.session.add(subscription)
        self.session.commit()
        self.session.refresh(subscription)
        logger.info("Tenant %s assigned to plan %s (%s)", tenant_id, plan.name, status.value)
        return subscription

    def end_trial(self, tenant_id: UUID) -> Subscription:
        subscription = self._require(tenant_id)
        if subscription.status != SubscriptionStatus.TRIALING:
            raise ValidationError("Subscription is not in trial")
        now = self._now()
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.trial_end = now
        if subscription.current_period_end <= now:
            subscription.current_period_start = now
            subscription.current_period_end = add_months(now, interval_months(subscription))
        subscription.updated_at = now
        self.session.add(subscription)
        self.session.commit()
        self.session.refresh(subscription)
        return subscription

    def cancel_subscription(self, tenant_id: UUID, *, at_period_end: bool = False) -> Subscription:
        subscription = self._require(tenant_id)
        if subscription.status == SubscriptionStatus.CANCELED:
            return subscription
        now = self._now()
        if at_period_end:
            subscription.cancel_at = subscription.current_period_end
        else:
            subscription.status = SubscriptionStatus.CANCELED
            subscription.canceled_at = now
        subscription.updated_at = now
        self.session.add(subscription)
        self.session.commit()
        self.session.refresh(subscription)
        logger.info("Subscription %s canceled (at_period_end=%s)", subscription.id, at_period_end)
        return subscription

    # Helpers used inside billing transactions; callers commit.

    def advance_period(self, subscription: Subscription) -> tuple[datetime, datetime]:
        next_start, next_end = next_period_bounds(subscription.current_period_end, interval_months(subscription))
        if next_end <= next_start:
            raise ValidationError("Billing period end must be after its start")
        subscription.current_period_start = next_start
        subscription.current_period_end = next_end
        if subscription.cancel_at is not None and subscription.cancel_at <= next_start:
            subscription.status = SubscriptionStatus.CANCELED
            subscription.canceled_at = self._now()
        subscription.updated_at = self._now()
        self.session.add(subscription)
        return next_start, next_end

    def close_billed_period(self, subscription: Subscription, invoice: Invoice) -> bool:
        """Roll a subscription forward once the invoice for its current period is settled.

        Reactivates a past-due subscription. Returns False when the invoice
        covers an older period, which leaves the current period untouched.
        """
        self.reactivate(subscription)
        if invoice.billing_period != billing_period_key(subscription.current_period_start):
            return False
        UsageService(self.session, clock=self._now).mark_processed(subscription.id, invoice.billing_period)
        self.advance_period(subscription)
        return True

    def mark_past_due(self, subscription: Subscription) -> None:
        if subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            subscription.status = SubscriptionStatus.PAST_DUE
            subscription.updated_at = self._now()
            self.session.add(subscription)

    def reactivate(self, subscription: Subscription) -> None:
        if subscription.status == SubscriptionStatus.PAST_DUE:
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.updated_at = self._now()
            self.session.add(subscription)

    def _require(self, tenant_id: UUID) -> Subscription:
        subscription = self.get_subscription(tenant_id)
        if not subscription:
            raise NotFoundError(f"No subscription found for tenant {tenant_id}")
        return subscription
