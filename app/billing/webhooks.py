"""Vreamio – Stripe webhook processing.

Events are gated by the webhook ledger: check, process, mark. A redelivered event
id is a no-op. Handler errors are recorded on the ledger row and not re-raised,
otherwise Stripe would keep redelivering an event we cannot process.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from app.billing import state_machine
from app.billing.service import BillingService
from app.billing.types import AuditEventType, BillingEvent, SubscriptionStatus
from app.core.ledger import AuditLedger, WebhookLedger
from app.core.users import UserDirectory
from app.provisioning.service import ProvisioningService

logger = structlog.get_logger()


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    IGNORED = "ignored"


def _ref(value: Any) -> Optional[str]:
    """Stripe sends either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _invoice_subscription_id(invoice: dict[str, Any]) -> Optional[str]:
    ref = _ref(invoice.get("subscription"))
    if ref:
        return ref
    # Newer API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _ref(details.get("subscription"))


class StripeWebhookProcessor:
    def __init__(
        self,
        billing: BillingService,
        webhooks: WebhookLedger,
        ledger: AuditLedger,
        users: UserDirectory,
        provisioning: Optional[ProvisioningService] = None,
    ) -> None:
        self._billing = billing
        self._webhooks = webhooks
        self._ledger = ledger
        self._users = users
        self._provisioning = provisioning
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "checkout.session.completed": self._checkout_completed,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.payment_failed": self._invoice_failed,
            "customer.subscription.deleted": self._subscription_deleted,
            "customer.subscription.updated": self._subscription_updated,
        }

    async def handle(self, event: dict[str, Any]) -> WebhookOutcome:
        event_id = event["id"]
        event_type = event.get("type", "")

        if self._webhooks.is_processed(event_id):
            logger.info("billing.webhook.duplicate", event_id=event_id, event_type=event_type)
            return WebhookOutcome.DUPLICATE

        self._ledger.append(None, AuditEventType.WEBHOOK_RECEIVED, {"event_id": event_id, "type": event_type})
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("billing.webhook.event_ignored", event_type=event_type, event_id=event_id)
            self._webhooks.mark_processed(event_id, event_type, {"success": True, "ignored": True})
            return WebhookOutcome.IGNORED

        obj = (event.get("data") or {}).get("object") or {}
        try:
            await handler(obj)
        except Exception as exc:
            logger.error("billing.webhook.handler_failed", event_type=event_type, event_id=event_id, error=str(exc))
            self._webhooks.mark_processed(event_id, event_type, {"error": str(exc)})
            return WebhookOutcome.FAILED

        self._webhooks.mark_processed(event_id, event_type, {"success": True})
        self._ledger.append(None, AuditEventType.WEBHOOK_PROCESSED, {"event_id": event_id, "type": event_type})
        logger.info("billing.webhook.processed", event_type=event_type, event_id=event_id)
        return WebhookOutcome.PROCESSED

    async def _checkout_completed(self, session: dict[str, Any]) -> None:
        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id")
        subscription_id = metadata.get("subscription_id")
        if not user_id or not subscription_id:
            logger.warning("billing.webhook.checkout_completed.missing_metadata", metadata=metadata)
            return

        refs = {
            "stripe_customer_id": _ref(session.get("customer")),
            "stripe_subscription_id": _ref(session.get("subscription")),
        }
        self._billing.update_payment_fields(subscription_id, **{k: v for k, v in refs.items() if v})
        sub = self._billing.transition(subscription_id, BillingEvent.PAYMENT_SUCCESS, {"source": "stripe"})
        self._ledger.append(user_id, AuditEventType.PAYMENT_SUCCESS, {"subscription_id": subscription_id})
        await self.provision_now(sub.user_id, sub.id, sub.status)

    async def provision_now(self, user_id: str, subscription_id: str, status: str) -> None:
        """Try provisioning right away instead of waiting for the next worker cycle."""
        if self._provisioning is None or not state_machine.needs_provisioning(SubscriptionStatus(status)):
            return
        email = self._users.get_email(user_id)
        if not email:
            logger.warning("billing.webhook.user_email_missing", user_id=user_id)
            return
        await self._provisioning.provision_user(user_id, email, subscription_id)

    async def _invoice_paid(self, invoice: dict[str, Any]) -> None:
        stripe_sub_id = _invoice_subscription_id(invoice)
        if not stripe_sub_id:
            return
        sub = self._billing.get_by_stripe_subscription_id(stripe_sub_id)
        if sub is None:
            logger.warning("billing.webhook.subscription_not_found", stripe_subscription_id=stripe_sub_id)
            return

        period = {
            "current_period_start": _ts(invoice.get("period_start")),
            "current_period_end": _ts(invoice.get("period_end")),
        }
        self._billing.update_payment_fields(sub.id, **{k: v for k, v in period.items() if v is not None})
        if sub.status == SubscriptionStatus.PAST_DUE.value:
            self._billing.transition(sub.id, BillingEvent.PAYMENT_RECOVERED, {"source": "stripe"})

    async def _invoice_failed(self, invoice: dict[str, Any]) -> None:
        stripe_sub_id = _invoice_subscription_id(invoice)
        if not stripe_sub_id:
            return
        sub = self._billing.get_by_stripe_subscription_id(stripe_sub_id)
        if sub is None:
            return
        self._ledger.append(sub.user_id, AuditEventType.PAYMENT_FAILED, {"stripe_subscription_id": stripe_sub_id})
        self._transition_if_allowed(sub.id, sub.status, BillingEvent.PAYMENT_FAILED)

    async def _subscription_deleted(self, subscription: dict[str, Any]) -> None:
        sub = self._billing.get_by_stripe_subscription_id(subscription.get("id", ""))
        if sub is None:
            return
        self._ledger.append(
            sub.user_id, AuditEventType.SUBSCRIPTION_CANCELED, {"stripe_subscription_id": sub.stripe_subscription_id},
        )
        self._transition_if_allowed(sub.id, sub.status, BillingEvent.SUBSCRIPTION_CANCELED)

    async def _subscription_updated(self, subscription: dict[str, Any]) -> None:
        sub = self._billing.get_by_stripe_subscription_id(subscription.get("id", ""))
        if sub is None:
            return
        fields: dict[str, Any] = {"cancel_at_period_end": bool(subscription.get("cancel_at_period_end"))}
        period_end = _ts(subscription.get("current_period_end"))
        if period_end is not None:
            fields["current_period_end"] = period_end
        self._billing.update_payment_fields(sub.id, **fields)

    def _transition_if_allowed(self, subscription_id: str, status: str, event: BillingEvent) -> None:
        if not state_machine.can_transition(SubscriptionStatus(status), event):
            logger.info(
                "billing.webhook.transition_skipped", subscription_id=subscription_id, status=status, event=event.value,
            )
            return
        self._billing.transition(subscription_id, event, {"source": "stripe"})
