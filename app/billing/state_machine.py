"""Subscription state machine.

Every valid edge is listed explicitly as a ``(status, event) -> status`` pair so the
table can be reviewed line by line. Anything not listed is an invalid transition.
Nothing here touches the database; persistence and auditing belong to the caller.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Optional

from app.billing.types import BillingEvent, SubscriptionStatus

S = SubscriptionStatus
E = BillingEvent

TRANSITIONS: Mapping[tuple[SubscriptionStatus, BillingEvent], SubscriptionStatus] = MappingProxyType({
    (S.NOT_SUBSCRIBED, E.PAYMENT_SUCCESS): S.PAID_PENDING_PROVISION,
    (S.NOT_SUBSCRIBED, E.MANUAL_ACTIVATE): S.PAID_PENDING_PROVISION,

    (S.PAID_PENDING_PROVISION, E.TORBOX_USER_CREATED): S.PROVISIONED_PENDING_CONFIRM,
    (S.PAID_PENDING_PROVISION, E.TORBOX_TOKEN_ACQUIRED): S.ACTIVE,
    (S.PAID_PENDING_PROVISION, E.PAYMENT_FAILED): S.PAST_DUE,
    (S.PAID_PENDING_PROVISION, E.SUBSCRIPTION_CANCELED): S.CANCELED,
    (S.PAID_PENDING_PROVISION, E.MANUAL_ACTIVATE): S.ACTIVE,

    (S.PROVISIONED_PENDING_CONFIRM, E.TORBOX_EMAIL_CONFIRMED): S.ACTIVE,
    (S.PROVISIONED_PENDING_CONFIRM, E.TORBOX_TOKEN_ACQUIRED): S.ACTIVE,
    (S.PROVISIONED_PENDING_CONFIRM, E.PAYMENT_FAILED): S.PAST_DUE,
    (S.PROVISIONED_PENDING_CONFIRM, E.SUBSCRIPTION_CANCELED): S.CANCELED,
    (S.PROVISIONED_PENDING_CONFIRM, E.MANUAL_ACTIVATE): S.ACTIVE,

    (S.ACTIVE, E.PAYMENT_FAILED): S.PAST_DUE,
    (S.ACTIVE, E.SUBSCRIPTION_CANCELED): S.CANCELED,
    (S.ACTIVE, E.PERIOD_EXPIRED): S.EXPIRED,
    (S.ACTIVE, E.MANUAL_REVOKE): S.CANCELED,

    (S.PAST_DUE, E.PAYMENT_RECOVERED): S.ACTIVE,
    (S.PAST_DUE, E.PAYMENT_SUCCESS): S.ACTIVE,
    (S.PAST_DUE, E.SUBSCRIPTION_CANCELED): S.CANCELED,
    (S.PAST_DUE, E.PERIOD_EXPIRED): S.EXPIRED,

    (S.CANCELED, E.TORBOX_USER_REVOKED): S.NOT_SUBSCRIBED,
    (S.CANCELED, E.PERIOD_EXPIRED): S.EXPIRED,
    (S.CANCELED, E.PAYMENT_SUCCESS): S.PAID_PENDING_PROVISION,
    (S.CANCELED, E.MANUAL_ACTIVATE): S.PAID_PENDING_PROVISION,

    (S.EXPIRED, E.PAYMENT_SUCCESS): S.PAID_PENDING_PROVISION,
    (S.EXPIRED, E.TORBOX_USER_REVOKED): S.NOT_SUBSCRIBED,
    (S.EXPIRED, E.MANUAL_ACTIVATE): S.PAID_PENDING_PROVISION,
})


class InvalidTransition(Exception):
    """Raised when an event is not allowed from the current status."""

    def __init__(self, status: SubscriptionStatus, event: BillingEvent) -> None:
        self.status = status
        self.event = event
        super().__init__(
            f"Invalid state transition: {status.value} + {event.value}. No valid transition defined."
        )


def try_transition(status: SubscriptionStatus, event: BillingEvent) -> Optional[SubscriptionStatus]:
    """Return the next status, or ``None`` when the pair is not in the table."""
    return TRANSITIONS.get((SubscriptionStatus(status), BillingEvent(event)))


def can_transition(status: SubscriptionStatus, event: BillingEvent) -> bool:
    return try_transition(status, event) is not None


def transition(status: SubscriptionStatus, event: BillingEvent) -> SubscriptionStatus:
    """Compute the next status. Raises :class:`InvalidTransition` if none."""
    next_status = try_transition(status, event)
    if next_status is None:
        raise InvalidTransition(SubscriptionStatus(status), BillingEvent(event))
    return next_status


def valid_events(status: SubscriptionStatus) -> list[BillingEvent]:
    return [event for (source, event) in TRANSITIONS if source == status]


def needs_provisioning(status: SubscriptionStatus) -> bool:
    return status == SubscriptionStatus.PAID_PENDING_PROVISION


def has_active_access(status: SubscriptionStatus) -> bool:
    return status == SubscriptionStatus.ACTIVE


def needs_revocation(status: SubscriptionStatus) -> bool:
    return status in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)
