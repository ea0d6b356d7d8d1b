from datetime import datetime
from uuid import uuid4

import pytest
from sqlmodel import Session

from pbx_billing.core.exceptions import NotFoundError, ValidationError
from pbx_billing.models.billing import BillingInterval, Subscription, SubscriptionStatus
from pbx_billing.services.subscription import SubscriptionService
from tests.conftest import make_plan, make_subscription, make_tenant


def test_default_plans_are_seeded_once(db_session, clock):
    service = SubscriptionService(db_session, clock=clock)

    plans = service.ensure_default_plans()
    again = service.ensure_default_plans()

    assert [p.name for p in plans] == ["Basic", "Professional", "Enterprise"]
    assert [p.id for p in again] == [p.id for p in plans]
    basic, professional, enterprise = plans
    assert (basic.monthly_price, basic.yearly_price) == (2900, 29000)
    assert (basic.max_extensions, basic.max_concurrent_calls, basic.max_users) == (10, 5, 5)
    assert (professional.monthly_price, professional.max_concurrent_calls) == (4900, 25)
    assert (enterprise.yearly_price, enterprise.max_extensions) == (99000, 500)


def test_assign_plan_starts_a_period(db_session, clock):
    tenant = make_tenant(db_session)
    plan = make_plan(db_session)
    service = SubscriptionService(db_session, clock=clock)

    subscription = service.assign_plan(tenant.id, plan.id, quantity=2)

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.quantity == 2
    assert subscription.current_period_start == clock.now
    assert subscription.current_period_end == datetime(2026, 2, 28, 12, 0)
    assert service.get_subscription(tenant.id).id == subscription.id
    assert service.get_plan(plan.id).name == "Basic"

    pro = make_plan(db_session, name="Professional", monthly=4900, yearly=49000)
    moved = service.assign_plan(tenant.id, pro.id, billing_interval=BillingInterval.YEARLY)
    assert moved.id == subscription.id
    assert moved.plan_id == pro.id
    assert moved.current_period_end == datetime(2027, 1, 31, 12, 0)


def test_assign_plan_with_trial(db_session, clock):
    tenant = make_tenant(db_session)
    plan = make_plan(db_session)
    service = SubscriptionService(db_session, clock=clock)

    subscription = service.assign_plan(tenant.id, plan.id, trial_days=14)
    assert subscription.status == SubscriptionStatus.TRIALING
    assert subscription.trial_end == datetime(2026, 2, 14, 12, 0)

    clock.advance(days=3)
    active = service.end_trial(tenant.id)
    assert active.status == SubscriptionStatus.ACTIVE
    assert active.trial_end == clock.now
    with pytest.raises(ValidationError):
        service.end_trial(tenant.id)


def test_assign_plan_validation(db_session, clock):
    tenant = make_tenant(db_session)
    plan = make_plan(db_session)
    service = SubscriptionService(db_session, clock=clock)

    with pytest.raises(ValidationError):
        service.assign_plan(tenant.id, plan.id, quantity=0)
    with pytest.raises(NotFoundError):
        service.assign_plan(uuid4(), plan.id)
    with pytest.raises(NotFoundError):
        service.assign_plan(tenant.id, uuid4())

    plan.is_active = False
    db_session.add(plan)
    db_session.commit()
    with pytest.raises(ValidationError):
        service.assign_plan(tenant.id, plan.id)


def test_advance_period_by_interval(db_session, clock):
    tenant = make_tenant(db_session)
    plan = make_plan(db_session)
    service = SubscriptionService(db_session, clock=clock)
    subscription = make_subscription(db_session, tenant, plan, interval=BillingInterval.YEARLY)

    assert service.advance_period(subscription) == (datetime(2026, 2, 1), datetime(2027, 2, 1))


def test_cancel_at_period_end_takes_effect_on_rollover(db_session, clock):
    tenant = make_tenant(db_session)
    plan = make_plan(db_session)
    service = SubscriptionService(db_session, clock=clock)
    make_subscription(db_session, tenant, plan)

    pending = service.cancel_subscription(tenant.id, at_period_end=True)
    assert pending.status == SubscriptionStatus.ACTIVE
    assert pending.cancel_at == datetime(2026, 1, 31)

    service.advance_period(pending)
    db_session.commit()
    assert pending.status == SubscriptionStatus.CANCELED
    assert pending.canceled_at == clock.now


def test_cancel_immediately(db_session, clock):
    tenant = make_tenant(db_session)
    make_subscription(db_session, tenant, make_plan(db_session))
    service = SubscriptionService(db_session, clock=clock)

    canceled = service.cancel_subscription(tenant.id)

    assert canceled.status == SubscriptionStatus.CANCELED
    assert service.cancel_subscription(tenant.id).canceled_at == clock.now
    with pytest.raises(NotFoundError):
        service.cancel_subscription(uuid4())


def test_past_due_round_trip(db_session, clock):
    tenant = make_tenant(db_session)
    subscription = make_subscription(db_session, tenant, make_plan(db_session))
    service = SubscriptionService(db_session, clock=clock)

    service.mark_past_due(subscription)
    assert subscription.status == SubscriptionStatus.PAST_DUE
    service.reactivate(subscription)
    assert subscription.status == SubscriptionStatus.ACTIVE


def test_naive_utc_timestamps_round_trip(db_engine, db_session, clock):
    tenant = make_tenant(db_session)
    subscription = make_subscription(db_session, tenant, make_plan(db_session))
    SubscriptionService(db_session, clock=clock).mark_past_due(subscription)
    db_session.commit()

    with Session(db_engine) as session:
        stored = session.get(Subscription, subscription.id)
    assert stored.updated_at == clock.now
    assert stored.updated_at.tzinfo is None
    assert stored.current_period_end == datetime(2026, 1, 31)
