from __future__ import annotations

import os
import socket
import threading
from datetime import datetime, timedelta
from typing import Callable, Protocol
from uuid import UUID, uuid4

from sqlalchemy import case, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from pbx_billing.core.config import settings
from pbx_billing.core.exceptions import (
    BillingError,
    ConfigurationError,
    CycleAlreadyRunningError,
    NoPaymentMethodError,
)
from pbx_billing.core.logging_setup import get_logger
from pbx_billing.db.session import get_for_update
from pbx_billing.models.base import utc_now
from pbx_billing.models.billing import (
    BillingCycleLock,
    InvoiceStatus,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from pbx_billing.schemas.billing import BillingCycleOptions, BillingCycleSummary, BillingStatus
from pbx_billing.services.invoice import InvoiceService
from pbx_billing.services.payment import PaymentService
from pbx_billing.services.subscription import SubscriptionService
from pbx_billing.services.usage import UsageService
from pbx_billing.utils.periods import billing_period_key, end_of_day

logger = get_logger("billing_cycle")

LOCK_NAME = "billing_cycle"


class CycleLock(Protocol):
    def acquire(self, *, dry_run: bool) -> None:
        ...

    def release(self, *, dry_run: bool) -> None:
        ...

    def status(self) -> BillingStatus:
        ...


class InProcessCycleLock:
    """Run guard for a single process.

    Live runs are exclusive. Dry runs may overlap each other but never a
    live run, in either order.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._mutex = threading.Lock()
        self._live = False
        self._dry_runs = 0
        self._last_run_at: datetime | None = None
        self._now = clock or utc_now

    def acquire(self, *, dry_run: bool) -> None:
        with self._mutex:
            if self._live:
                raise CycleAlreadyRunningError("Billing cycle is already running")
            if dry_run:
                self._dry_runs += 1
                return
            if self._dry_runs:
                raise CycleAlreadyRunningError("A dry-run billing cycle is in progress")
            self._live = True

    def release(self, *, dry_run: bool) -> None:
        with self._mutex:
            if dry_run:
                self._dry_runs = max(self._dry_runs - 1, 0)
                return
            self._live = False
            self._last_run_at = self._now()

    def status(self) -> BillingStatus:
        with self._mutex:
            return BillingStatus(is_running=self._live, last_run_at=self._last_run_at)


class DatabaseCycleLock:
    """Run guard shared by every process pointing at the same database.

    A live run claims the lock row with a conditional UPDATE, so only one
    claimant can win. Dry runs bump a shared counter on the same row under
    the same condition, and a live claim requires that counter to be zero.
    Both claims lapse after the TTL if their owner dies mid-run.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        name: str = LOCK_NAME,
        ttl_minutes: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._name = name
        self._ttl = timedelta(minutes=ttl_minutes or settings.billing_cycle_lock_ttl_minutes)
        self._now = clock or utc_now
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"

    def _ensure_row(self, session: Session) -> None:
        if session.get(BillingCycleLock, self._name) is not None:
            return
        session.add(BillingCycleLock(name=self._name))
        try:
            session.commit()
        except IntegrityError:
            session.rollback()

    def acquire(self, *, dry_run: bool) -> None:
        now = self._now()
        with Session(self._engine) as session:
            self._ensure_row(session)
            no_live_claim = or_(BillingCycleLock.owner.is_(None), BillingCycleLock.expires_at <= now)
            if dry_run:
                result = session.exec(
                    update(BillingCycleLock)
                    .where(BillingCycleLock.name == self._name, no_live_claim)
                    .values(
                        dry_runs=case(
                            (BillingCycleLock.dry_runs_expire_at > now, BillingCycleLock.dry_runs + 1),
                            else_=1,
                        ),
                        dry_runs_expire_at=now + self._ttl,
                    )
                )
                session.commit()
                if result.rowcount != 1:
                    raise CycleAlreadyRunningError("Billing cycle is already running")
                return
            result = session.exec(
                update(BillingCycleLock)
                .where(
                    BillingCycleLock.name == self._name,
                    no_live_claim,
                    or_(
                        BillingCycleLock.dry_runs == 0,
                        BillingCycleLock.dry_runs_expire_at.is_(None),
                        BillingCycleLock.dry_runs_expire_at <= now,
                    ),
                )
                .values(
                    owner=self.owner,
                    acquired_at=now,
                    expires_at=now + self._ttl,
                    dry_runs=0,
                    dry_runs_expire_at=None,
                )
            )
            session.commit()
            if result.rowcount != 1:
                row = session.get(BillingCycleLock, self._name)
                if row.owner and row.expires_at and row.expires_at > now:
                    raise CycleAlreadyRunningError(f"Billing cycle is already running ({row.owner})")
                raise CycleAlreadyRunningError("A dry-run billing cycle is in progress")
        logger.info("Billing cycle lock acquired by %s", self.owner)

    def release(self, *, dry_run: bool) -> None:
        with Session(self._engine) as session:
            if dry_run:
                session.exec(
                    update(BillingCycleLock)
                    .where(BillingCycleLock.name == self._name, BillingCycleLock.dry_runs > 0)
                    .values(dry_runs=BillingCycleLock.dry_runs - 1)
                )
                session.commit()
                return
            session.exec(
                update(BillingCycleLock)
                .where(BillingCycleLock.name == self._name, BillingCycleLock.owner == self.owner)
                .values(owner=None, acquired_at=None, expires_at=None, last_completed_at=self._now())
            )
            session.commit()

    def status(self) -> BillingStatus:
        with Session(self._engine) as session:
            row = session.get(BillingCycleLock, self._name)
        if row is None:
            return BillingStatus(is_running=False)
        running = bool(row.owner and row.expires_at and row.expires_at > self._now())
        return BillingStatus(is_running=running, last_run_at=row.last_completed_at)


_process_lock = InProcessCycleLock()


def cycle_lock_from_settings(session: Session) -> CycleLock:
    backend = (settings.billing_cycle_lock_backend or "memory").lower()
    if backend == "memory":
        return _process_lock
    if backend == "database":
        return DatabaseCycleLock(session.get_bind())
    raise ConfigurationError(f"Unknown billing cycle lock backend '{backend}'")


class BillingCycleService:
    def __init__(
        self,
        session: Session,
        payment_service: PaymentService | None = None,
        *,
        lock: CycleLock | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self._now = clock or utc_now
        self.lock = lock or cycle_lock_from_settings(session)
        self.payments = payment_service or PaymentService(session, clock=self._now)
        self.invoices = InvoiceService(session, clock=self._now)
        self.subscriptions = SubscriptionService(session, clock=self._now)
        self.usage = UsageService(session, clock=self._now)

    def get_billing_status(self) -> BillingStatus:
        return self.lock.status()

    def trigger_manual_billing(self, tenant_id: UUID | None = None, dry_run: bool = True) -> BillingCycleSummary:
        logger.info("Manual billing cycle triggered for %s (dry_run=%s)", tenant_id or "all tenants", dry_run)
        return self.process_billing_cycle(
            BillingCycleOptions(tenant_id=tenant_id, dry_run=dry_run, process_overages=True)
        )

    def process_billing_cycle(self, options: BillingCycleOptions | None = None) -> BillingCycleSummary:
        """Invoice and charge every active subscription whose period has ended.

        Each subscription is handled independently: its failure is recorded
        in the summary and the run moves on. Only a second concurrent live
        run (CycleAlreadyRunningError) or a configuration error reaches the
        caller.
        """
        options = options or BillingCycleOptions()
        self.lock.acquire(dry_run=options.dry_run)
        summary = BillingCycleSummary(dry_run=options.dry_run)
        try:
            subscription_ids = self._due_subscription_ids(options.tenant_id)
            logger.info(
                "Billing cycle started (dry_run=%s, tenant=%s): %s subscriptions due",
                options.dry_run,
                options.tenant_id or "all",
                len(subscription_ids),
            )
            handled: set[UUID] = set()
            for subscription_id in subscription_ids:
                handled.add(subscription_id)
                self._run_step(subscription_id, options, summary, label=f"Subscription {subscription_id}")

            if options.process_overages:
                self._process_overages(options, summary, handled)
        finally:
            if options.dry_run:
                self.session.rollback()
            self.lock.release(dry_run=options.dry_run)

        logger.info(
            "Billing cycle finished: processed=%s invoices=%s collected=%s failed=%s pending=%s total=%s errors=%s",
            summary.processed_subscriptions,
            summary.generated_invoices,
            summary.collected_payments,
            summary.failed_payments,
            summary.pending_payments,
            summary.total_amount,
            len(summary.errors),
        )
        return summary

    def _due_subscription_ids(self, tenant_id: UUID | None) -> list[UUID]:
        statement = select(Subscription.id).where(
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.current_period_end <= end_of_day(self._now()),
        )
        if tenant_id:
            statement = statement.where(Subscription.tenant_id == tenant_id)
        return list(self.session.exec(statement.order_by(Subscription.current_period_end)).all())

    def _process_overages(self, options: BillingCycleOptions, summary: BillingCycleSummary, handled: set[UUID]) -> None:
        period = billing_period_key(self._now())
        for subscription_id in self.usage.subscriptions_with_unprocessed_usage(period, options.tenant_id):
            if subscription_id in handled:
                continue
            handled.add(subscription_id)
            self._run_step(
                subscription_id,
                options,
                summary,
                label=f"Overage processing for subscription {subscription_id}",
                overage=True,
            )

    def _run_step(
        self,
        subscription_id: UUID,
        options: BillingCycleOptions,
        summary: BillingCycleSummary,
        *,
        label: str,
        overage: bool = False,
    ) -> None:
        try:
            self._bill_subscription(subscription_id, options, summary, overage=overage)
        except ConfigurationError:
            self.session.rollback()
            raise
        except BillingError as exc:
            self.session.rollback()
            logger.warning("%s: %s", label, exc.message)
            summary.errors.append(f"{label}: {exc.message}")
        except Exception as exc:
            self.session.rollback()
            logger.exception("%s failed", label)
            summary.errors.append(f"{label}: {exc}")

    def _bill_subscription(
        self,
        subscription_id: UUID,
        options: BillingCycleOptions,
        summary: BillingCycleSummary,
        *,
        overage: bool = False,
    ) -> None:
        subscription = get_for_update(self.session, Subscription, subscription_id)
        if not subscription or subscription.status != SubscriptionStatus.ACTIVE:
            return
        if overage and subscription.current_period_start > self._now():
            # Already billed ahead; the usage is swept when that period closes.
            return

        if options.dry_run:
            invoice = self.invoices.preview_invoice(subscription)
            summary.generated_invoices += 1
            summary.total_amount += invoice.total
            summary.processed_subscriptions += 1
            self.session.rollback()
            return

        invoice = self.invoices.build_invoice(subscription)
        summary.generated_invoices += 1
        summary.total_amount += invoice.total

        if invoice.status == InvoiceStatus.PAID:
            # Nothing to collect; close the period straight away.
            subscription = get_for_update(self.session, Subscription, subscription_id)
            self.subscriptions.close_billed_period(subscription, invoice)
            self.session.commit()
            summary.processed_subscriptions += 1
            return

        try:
            payment = self.payments.attempt_payment(invoice)
        except NoPaymentMethodError as exc:
            subscription = get_for_update(self.session, Subscription, subscription_id)
            self.subscriptions.mark_past_due(subscription)
            self.session.commit()
            summary.failed_payments += 1
            summary.processed_subscriptions += 1
            summary.errors.append(f"Subscription {subscription_id}: {exc.message}")
            logger.warning("Subscription %s past due: %s", subscription_id, exc.message)
            return

        if payment.status == PaymentStatus.SUCCEEDED:
            summary.collected_payments += 1
        elif payment.status == PaymentStatus.PENDING:
            summary.pending_payments += 1
        else:
            summary.failed_payments += 1
            summary.errors.append(f"Subscription {subscription_id}: payment failed ({payment.failure_reason})")
        summary.processed_subscriptions += 1
