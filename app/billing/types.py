"""Vreamio – Billing & Subscription Types.

State machine vocabulary for the paid access → TorBox vendor provisioning system.

Flow::

    NOT_SUBSCRIBED
      → PAID_PENDING_PROVISION       (payment succeeds)
      → PROVISIONED_PENDING_CONFIRM  (TorBox user created, awaiting email confirm)
      → ACTIVE                       (TorBox API token acquired)
      → PAST_DUE                     (payment fails)
      → CANCELED                     (user cancels / payment timeout)
      → EXPIRED                      (period ends without renewal)
"""

from __future__ import annotations

from enum import Enum


class SubscriptionStatus(str, Enum):
    NOT_SUBSCRIBED = "not_subscribed"
    PAID_PENDING_PROVISION = "paid_pending_provision"
    PROVISIONED_PENDING_CONFIRM = "provisioned_pending_confirm"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class BillingEvent(str, Enum):
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    TORBOX_USER_CREATED = "torbox_user_created"
    TORBOX_EMAIL_CONFIRMED = "torbox_email_confirmed"
    TORBOX_TOKEN_ACQUIRED = "torbox_token_acquired"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PERIOD_EXPIRED = "period_expired"
    PAYMENT_RECOVERED = "payment_recovered"
    TORBOX_USER_REVOKED = "torbox_user_revoked"
    MANUAL_ACTIVATE = "manual_activate"
    MANUAL_REVOKE = "manual_revoke"


class VendorLinkStatus(str, Enum):
    """TorBox vendor account provisioning states."""

    PENDING_PROVISION = "pending_provision"
    PENDING_EMAIL_CONFIRM = "pending_email_confirm"
    ACTIVE = "active"
    REVOKED = "revoked"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PLUS = "vreamio_plus"


class AuditEventType(str, Enum):
    # Payment
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    CHECKOUT_STARTED = "checkout_started"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_CANCELED = "subscription_canceled"

    # Provisioning
    PROVISION_STARTED = "provision_started"
    PROVISION_COMPLETED = "provision_completed"
    PROVISION_FAILED = "provision_failed"
    PROVISION_ATTEMPTS_EXHAUSTED = "provision_attempts_exhausted"
    PROVISION_ATTEMPTS_RESET = "provision_attempts_reset"
    EMAIL_CONFIRM_PENDING = "email_confirm_pending"
    TOKEN_ACQUIRED = "token_acquired"

    # Revocation
    REVOCATION_STARTED = "revocation_started"
    REVOCATION_COMPLETED = "revocation_completed"
    REVOCATION_FAILED = "revocation_failed"

    # Reconciliation
    RECONCILIATION_RUN = "reconciliation_run"
    RECONCILIATION_DRIFT = "reconciliation_drift"

    # Webhooks
    WEBHOOK_RECEIVED = "webhook_received"
    WEBHOOK_PROCESSED = "webhook_processed"

    STATE_TRANSITION = "state_transition"


PLAN_STANDARD = "standard"
