from __future__ import annotations

import os
import threading
import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import text
from sqlmodel import Session, SQLModel, create_engine

import pbx_billing.db.base  # noqa: F401
from pbx_billing.core.exceptions import GatewayError
from pbx_billing.db import session as db_session_module
from pbx_billing.models.billing import (
    BillingInterval,
    PaymentMethod,
    PaymentMethodType,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from pbx_billing.models.tenant import Tenant
from pbx_billing.services.billing_cycle import InProcessCycleLock
from pbx_billing.services.payment_gateway import GatewayOutcome


@pytest.fixture()
def db_engine(tmp_path):
    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not test_database_url:
        db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
        test_database_url = f"sqlite:///{db_path}"

    is_postgres = test_database_url.startswith("postgresql")

    admin_engine = None
    schema_name = None

    if is_postgres:
        schema_name = f"test_{uuid.uuid4().hex}"
        admin_engine = create_engine(test_database_url, future=True)
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"')
            )
        client_encoding = os.getenv("POSTGRES_CLIENT_ENCODING", "UTF8")
        connect_args = {"options": f"-csearch_path={schema_name},public -cclient_encoding={client_encoding}"}
        engine = create_engine(test_database_url, connect_args=connect_args, future=True)
    else:
        engine = create_engine(test_database_url, connect_args={"check_same_thread": False})

    SQLModel.metadata.create_all(bind=engine)

    original_engine = db_session_module.engine
    db_session_module.engine = engine

    yield engine

    db_session_module.engine = original_engine
    engine.dispose()
    if is_postgres and admin_engine and schema_name:
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'DROP SCHEMA IF EXISTS "{schema_name}" CASCADE')
            )
        admin_engine.dispose()


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


class FrozenClock:
    """Injectable clock; tests move time forward explicitly."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class ScriptedGateway:
    """Gateway double that replays queued outcomes and records each call.

    Queue entries are GatewayOutcome instances or exceptions to raise. When
    the queue is empty every charge succeeds.
    """

    name = "scripted"

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []
        self.entered = threading.Event()
        self.release: threading.Event | None = None

    def queue(self, *outcomes) -> None:
        self.outcomes.extend(outcomes)

    def authorize(self, *, amount_cents, currency, payment_method_ref, idempotency_key):
        self.calls.append(
            {
                "amount_cents": amount_cents,
                "currency": currency,
                "payment_method_ref": payment_method_ref,
                "idempotency_key": idempotency_key,
            }
        )
        self.entered.set()
        if self.release is not None:
            self.release.wait(timeout=10)
        if not self.outcomes:
            return GatewayOutcome(status="succeeded", gateway_ref=f"ref-{len(self.calls)}")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def declined(reason: str = "card_declined") -> GatewayOutcome:
    return GatewayOutcome(status="failed", failure_reason=reason)


def gateway_down() -> GatewayError:
    return GatewayError("connection refused", reason="network_error")


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 1, 31, 12, 0, 0))


@pytest.fixture()
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture()
def cycle_lock(clock) -> InProcessCycleLock:
    return InProcessCycleLock(clock=clock)


def make_tenant(session: Session, name: str = "Acme Support") -> Tenant:
    tenant = Tenant(name=name, slug=f"tenant-{uuid.uuid4().hex[:6]}")
    session.add(tenant)
    session.commit()
    session.refresh(tenant)
    return tenant


def make_plan(
    session: Session,
    name: str = "Basic",
    monthly: int = 2900,
    yearly: int = 29000,
    extensions: int = 10,
    calls: int = 5,
    users: int = 5,
) -> Plan:
    plan = Plan(
        name=name,
        monthly_price=monthly,
        yearly_price=yearly,
        max_extensions=extensions,
        max_concurrent_calls=calls,
        max_users=users,
        is_active=True,
    )
    session.add(plan)
    session.commit()
    session.refresh(plan)
    return plan


def make_subscription(
    session: Session,
    tenant: Tenant,
    plan: Plan,
    *,
    start: datetime = datetime(2026, 1, 1),
    end: datetime = datetime(2026, 1, 31),
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    quantity: int = 1,
    interval: BillingInterval = BillingInterval.MONTHLY,
) -> Subscription:
    subscription = Subscription(
        tenant_id=tenant.id,
        plan_id=plan.id,
        status=status,
        billing_interval=interval,
        current_period_start=start,
        current_period_end=end,
        quantity=quantity,
    )
    session.add(subscription)
    session.commit()
    session.refresh(subscription)
    return subscription


def add_card(session: Session, tenant: Tenant, token: str = "tok_visa", *, is_default: bool = True) -> PaymentMethod:
    method = PaymentMethod(
        tenant_id=tenant.id,
        method_type=PaymentMethodType.CARD,
        gateway_token=token,
        label="Visa ending 4242",
        is_default=is_default,
    )
    session.add(method)
    session.commit()
    session.refresh(method)
    return method
