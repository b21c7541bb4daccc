"""Vreamio – Billing Service.

Subscription CRUD, checkout/portal sessions and the status read model.

``transition`` is the only code path that changes ``Subscription.status``. It
applies the state machine and writes the audit entry in the same transaction,
using compare-and-swap on the previous status so that a webhook and a worker
tick racing on one subscription cannot silently overwrite each other.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.billing import state_machine
from app.billing.payments import CheckoutSession, PaymentProvider
from app.billing.types import AuditEventType, BillingEvent, SubscriptionStatus, SubscriptionTier
from app.core.db import Database
from app.core.instrumentation import SUBSCRIPTION_TRANSITIONS
from app.core.ledger import AuditLedger, Clock, utcnow
from app.core.models import Subscription, VendorLink

logger = structlog.get_logger()

CAS_ATTEMPTS = 3
PAYMENT_FIELDS = frozenset({
    "stripe_customer_id",
    "stripe_subscription_id",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
})


class BillingError(Exception):
    pass


class AlreadySubscribed(BillingError):
    def __init__(self) -> None:
        super().__init__("Already have an active subscription")


class MissingPaymentCustomer(BillingError):
    def __init__(self) -> None:
        super().__init__("No Stripe customer found for this user")


class SubscriptionNotFound(LookupError):
    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Subscription not found: {key}")


class ConcurrentTransitionError(BillingError):
    """The row kept changing underneath us; the transition was not applied."""

    def __init__(self, subscription_id: str, event: BillingEvent) -> None:
        self.subscription_id = subscription_id
        self.event = event
        super().__init__(
            f"Subscription {subscription_id} changed concurrently while applying {event.value}"
        )


# ─── Read model ──────────────────────────────────────────────────────────────

class VendorStatusView(BaseModel):
    status: Optional[str] = None
    email: Optional[str] = None
    needs_email_confirmation: bool = False


class SubscriptionStatusView(BaseModel):
    status: SubscriptionStatus
    tier: SubscriptionTier
    plan: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    torbox: VendorStatusView


class BillingService:
    def __init__(
        self,
        db: Database,
        ledger: AuditLedger,
        payments: PaymentProvider,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._payments = payments
        self._clock = clock

    # ─── Lookups ─────────────────────────────────────────────────────────

    def get_or_create(self, user_id: str) -> Subscription:
        existing = self.get_subscription(user_id)
        if existing is not None:
            return existing
        try:
            with self._db.session() as session:
                sub = Subscription(
                    user_id=user_id,
                    status=SubscriptionStatus.NOT_SUBSCRIBED.value,
                    created_at=self._clock(),
                    updated_at=self._clock(),
                )
                session.add(sub)
                session.flush()
                self._ledger.append(
                    user_id, AuditEventType.SUBSCRIPTION_CREATED, {"subscription_id": sub.id}, session=session,
                )
        except IntegrityError:
            # Another request created it first
            sub = self.get_subscription(user_id)
            if sub is None:
                raise
            return sub
        logger.info("billing.subscription_created", user_id=user_id, subscription_id=sub.id)
        return sub

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        with self._db.session() as session:
            return session.scalar(select(Subscription).where(Subscription.user_id == user_id))

    def get_by_id(self, subscription_id: str) -> Subscription:
        with self._db.session() as session:
            sub = session.get(Subscription, subscription_id)
        if sub is None:
            raise SubscriptionNotFound(subscription_id)
        return sub

    def get_by_stripe_subscription_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        with self._db.session() as session:
            return session.scalar(
                select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
            )

    def get_subscriptions_by_status(self, status: SubscriptionStatus) -> list[Subscription]:
        with self._db.session() as session:
            return list(session.scalars(
                select(Subscription)
                .where(Subscription.status == SubscriptionStatus(status).value)
                .order_by(Subscription.created_at)
            ))

    def list_subscriptions(self, status: Optional[SubscriptionStatus] = None, limit: int = 100) -> list[Subscription]:
        stmt = select(Subscription)
        if status is not None:
            stmt = stmt.where(Subscription.status == SubscriptionStatus(status).value)
        stmt = stmt.order_by(Subscription.updated_at.desc()).limit(limit)
        with self._db.session() as session:
            return list(session.scalars(stmt))

    # ─── Transitions ─────────────────────────────────────────────────────

    def transition(
        self,
        subscription_id: str,
        event: BillingEvent,
        meta: Optional[dict[str, Any]] = None,
        *,
        correlation_id: Optional[str] = None,
    ) -> Subscription:
        """Apply ``event`` to the subscription, persist and audit it.

        Raises :class:`~app.billing.state_machine.InvalidTransition` when the
        table has no edge for the current status, :class:`SubscriptionNotFound`
        for an unknown id and :class:`ConcurrentTransitionError` when the status
        changed under us on every attempt.
        """
        event = BillingEvent(event)
        for attempt in range(1, CAS_ATTEMPTS + 1):
            with self._db.session() as session:
                sub = session.get(Subscription, subscription_id)
                if sub is None:
                    raise SubscriptionNotFound(subscription_id)
                current = SubscriptionStatus(sub.status)
                try:
                    next_status = state_machine.transition(current, event)
                except state_machine.InvalidTransition:
                    logger.warning(
                        "billing.invalid_transition",
                        subscription_id=subscription_id,
                        status=current.value,
                        event=event.value,
                    )
                    raise

                if not self._compare_and_swap(session, subscription_id, current, next_status):
                    logger.warning(
                        "billing.transition_conflict",
                        subscription_id=subscription_id,
                        expected=current.value,
                        event=event.value,
                        attempt=attempt,
                    )
                    continue

                session.refresh(sub)
                self._ledger.append(
                    sub.user_id,
                    AuditEventType.STATE_TRANSITION,
                    {
                        "subscription_id": subscription_id,
                        "from": current.value,
                        "to": next_status.value,
                        "event": event.value,
                        "meta": meta or {},
                    },
                    correlation_id,
                    session=session,
                )

            SUBSCRIPTION_TRANSITIONS.labels(
                from_status=current.value, to_status=next_status.value, event=event.value,
            ).inc()
            logger.info(
                "billing.transition",
                subscription_id=subscription_id,
                user_id=sub.user_id,
                from_status=current.value,
                to_status=next_status.value,
                event=event.value,
            )
            return sub

        raise ConcurrentTransitionError(subscription_id, event)

    def _compare_and_swap(
        self,
        session: Session,
        subscription_id: str,
        expected: SubscriptionStatus,
        next_status: SubscriptionStatus,
    ) -> bool:
        result = session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.status == expected.value)
            .values(status=next_status.value, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def update_payment_fields(self, subscription_id: str, **fields: Any) -> None:
        """Store processor references and billing period data. Never touches status."""
        unknown = set(fields) - PAYMENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown payment fields: {sorted(unknown)}")
        if not fields:
            return
        with self._db.session() as session:
            result = session.execute(
                update(Subscription)
                .where(Subscription.id == subscription_id)
                .values(updated_at=self._clock(), **fields)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise SubscriptionNotFound(subscription_id)

    # ─── Payment processor ───────────────────────────────────────────────

    def create_checkout(self, user_id: str, email: str) -> CheckoutSession:
        sub = self.get_or_create(user_id)
        if sub.status == SubscriptionStatus.ACTIVE.value:
            raise AlreadySubscribed()

        self._ledger.append(user_id, AuditEventType.CHECKOUT_STARTED, {
            "subscription_id": sub.id,
            "provider": self._payments.name,
        })
        checkout = self._payments.create_checkout_session(subscription_id=sub.id, user_id=user_id, email=email)
        if checkout.customer_id:
            self.update_payment_fields(sub.id, stripe_customer_id=checkout.customer_id)
        logger.info("billing.checkout_created", user_id=user_id, session_id=checkout.session_id)
        return checkout

    def create_portal(self, user_id: str) -> str:
        sub = self.get_subscription(user_id)
        if sub is None or not sub.stripe_customer_id:
            raise MissingPaymentCustomer()
        return self._payments.create_portal_session(customer_id=sub.stripe_customer_id)

    # ─── Read side ───────────────────────────────────────────────────────

    def status_projection(self, user_id: str) -> SubscriptionStatusView:
        with self._db.session() as session:
            sub = session.scalar(select(Subscription).where(Subscription.user_id == user_id))
            link = session.scalar(select(VendorLink).where(VendorLink.user_id == user_id))

        status = SubscriptionStatus(sub.status) if sub else SubscriptionStatus.NOT_SUBSCRIBED
        return SubscriptionStatusView(
            status=status,
            tier=SubscriptionTier.PLUS if state_machine.has_active_access(status) else SubscriptionTier.FREE,
            plan=sub.plan if sub else "none",
            current_period_end=sub.current_period_end if sub else None,
            cancel_at_period_end=bool(sub and sub.cancel_at_period_end),
            torbox=VendorStatusView(
                status=link.status if link else None,
                email=link.vendor_email if link else None,
                needs_email_confirmation=status == SubscriptionStatus.PROVISIONED_PENDING_CONFIRM,
            ),
        )

    def audit_log(
        self,
        user_id: Optional[str],
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        self._ledger.append(user_id, event_type, data, correlation_id)

    def health_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in SubscriptionStatus}
        with self._db.session() as session:
            rows = session.execute(
                select(Subscription.status, func.count()).group_by(Subscription.status)
            ).all()
        for status, count in rows:
            counts[status] = count
        return counts
