"""StripeWebhookProcessor: idempotency gate and per-event handling."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from app.billing.types import AuditEventType, BillingEvent, SubscriptionStatus
from app.billing.webhooks import StripeWebhookProcessor, WebhookOutcome
from app.core.models import WebhookRecord

PERIOD_START = 1790000000
PERIOD_END = 1792592000


@pytest.fixture
def processor(billing, webhook_ledger, audit, users, provisioning):
    return StripeWebhookProcessor(billing, webhook_ledger, audit, users, provisioning=provisioning)


def _event(event_id, event_type, obj):
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def _checkout_event(event_id, user_id, subscription_id):
    return _event(event_id, "checkout.session.completed", {
        "id": "cs_1",
        "customer": "cus_1",
        "subscription": "sub_stripe_1",
        "metadata": {"user_id": user_id, "subscription_id": subscription_id},
    })


def _with_stripe_sub(billing, user_id, *events):
    sub = billing.get_or_create(user_id)
    billing.update_payment_fields(sub.id, stripe_subscription_id=f"sub_{user_id}")
    for event in events:
        sub = billing.transition(sub.id, event)
    return sub


class TestCheckoutCompleted:
    @pytest.mark.anyio
    async def test_marks_paid_and_provisions_inline(self, processor, billing, vendor, make_user, audit):
        user_id = make_user("buyer@example.com")
        sub = billing.get_or_create(user_id)

        outcome = await processor.handle(_checkout_event("evt_1", user_id, sub.id))

        assert outcome == WebhookOutcome.PROCESSED
        fresh = billing.get_by_id(sub.id)
        assert fresh.stripe_customer_id == "cus_1"
        assert fresh.stripe_subscription_id == "sub_stripe_1"
        assert fresh.status == SubscriptionStatus.PROVISIONED_PENDING_CONFIRM.value
        assert ("register_user", ("buyer@example.com",)) in vendor.calls
        assert len(audit.query(user_id=user_id, event_type=AuditEventType.PAYMENT_SUCCESS)) == 1

    @pytest.mark.anyio
    async def test_redelivery_is_a_no_op(self, processor, billing, vendor, make_user, audit):
        user_id = make_user("buyer@example.com")
        sub = billing.get_or_create(user_id)
        event = _checkout_event("evt_1", user_id, sub.id)
        await processor.handle(event)
        vendor.calls.clear()
        transitions = len(audit.query(event_type=AuditEventType.STATE_TRANSITION))

        assert await processor.handle(event) == WebhookOutcome.DUPLICATE

        assert vendor.calls == []
        assert len(audit.query(event_type=AuditEventType.STATE_TRANSITION)) == transitions

    @pytest.mark.anyio
    async def test_without_provisioning_only_marks_paid(self, billing, webhook_ledger, audit, users, vendor, make_user):
        processor = StripeWebhookProcessor(billing, webhook_ledger, audit, users)
        user_id = make_user("buyer@example.com")
        sub = billing.get_or_create(user_id)

        await processor.handle(_checkout_event("evt_1", user_id, sub.id))

        assert billing.get_by_id(sub.id).status == SubscriptionStatus.PAID_PENDING_PROVISION.value
        assert vendor.calls == []

    @pytest.mark.anyio
    async def test_missing_metadata_is_processed_without_changes(self, processor, billing):
        sub = billing.get_or_create("user-1")
        event = _event("evt_1", "checkout.session.completed", {"id": "cs_1", "metadata": {}})

        assert await processor.handle(event) == WebhookOutcome.PROCESSED
        assert billing.get_by_id(sub.id).status == SubscriptionStatus.NOT_SUBSCRIBED.value


class TestInvoices:
    @pytest.mark.anyio
    async def test_payment_failed_moves_active_to_past_due(self, processor, billing, audit):
        sub = _with_stripe_sub(
            billing, "user-1",
            BillingEvent.PAYMENT_SUCCESS, BillingEvent.TORBOX_USER_CREATED, BillingEvent.TORBOX_TOKEN_ACQUIRED,
        )

        await processor.handle(_event("evt_1", "invoice.payment_failed", {"subscription": "sub_user-1"}))

        assert billing.get_by_id(sub.id).status == SubscriptionStatus.PAST_DUE.value
        assert len(audit.query(user_id="user-1", event_type=AuditEventType.PAYMENT_FAILED)) == 1

    @pytest.mark.anyio
    async def test_payment_failed_outside_the_table_is_skipped(self, processor, billing):
        sub = _with_stripe_sub(billing, "user-1")

        outcome = await processor.handle(_event("evt_1", "invoice.payment_failed", {"subscription": "sub_user-1"}))

        assert outcome == WebhookOutcome.PROCESSED
        assert billing.get_by_id(sub.id).status == SubscriptionStatus.NOT_SUBSCRIBED.value

    @pytest.mark.anyio
    async def test_payment_succeeded_recovers_and_stores_period(self, processor, billing):
        sub = _with_stripe_sub(
            billing, "user-1",
            BillingEvent.PAYMENT_SUCCESS, BillingEvent.TORBOX_TOKEN_ACQUIRED, BillingEvent.PAYMENT_FAILED,
        )
        invoice = {
            "parent": {"subscription_details": {"subscription": "sub_user-1"}},
            "period_start": PERIOD_START,
            "period_end": PERIOD_END,
        }

        await processor.handle(_event("evt_1", "invoice.payment_succeeded", invoice))

        fresh = billing.get_by_id(sub.id)
        assert fresh.status == SubscriptionStatus.ACTIVE.value
        assert fresh.current_period_end.replace(tzinfo=timezone.utc) == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)

    @pytest.mark.anyio
    async def test_unknown_stripe_subscription_is_ignored(self, processor):
        outcome = await processor.handle(_event("evt_1", "invoice.payment_succeeded", {"subscription": "sub_nope"}))
        assert outcome == WebhookOutcome.PROCESSED


class TestSubscriptionEvents:
    @pytest.mark.anyio
    async def test_deleted_cancels(self, processor, billing, audit):
        sub = _with_stripe_sub(billing, "user-1", BillingEvent.PAYMENT_SUCCESS, BillingEvent.TORBOX_TOKEN_ACQUIRED)

        await processor.handle(_event("evt_1", "customer.subscription.deleted", {"id": "sub_user-1"}))

        assert billing.get_by_id(sub.id).status == SubscriptionStatus.CANCELED.value
        assert len(audit.query(user_id="user-1", event_type=AuditEventType.SUBSCRIPTION_CANCELED)) == 1

    @pytest.mark.anyio
    async def test_updated_stores_cancel_flag_without_transition(self, processor, billing):
        sub = _with_stripe_sub(billing, "user-1", BillingEvent.PAYMENT_SUCCESS, BillingEvent.TORBOX_TOKEN_ACQUIRED)
        obj = {"id": "sub_user-1", "cancel_at_period_end": True, "current_period_end": PERIOD_END}

        await processor.handle(_event("evt_1", "customer.subscription.updated", obj))

        fresh = billing.get_by_id(sub.id)
        assert fresh.cancel_at_period_end is True
        assert fresh.current_period_end is not None
        assert fresh.status == SubscriptionStatus.ACTIVE.value


class TestLedger:
    @pytest.mark.anyio
    async def test_unhandled_type_is_recorded(self, db, processor, webhook_ledger):
        outcome = await processor.handle(_event("evt_9", "customer.created", {"id": "cus_1"}))

        assert outcome == WebhookOutcome.IGNORED
        assert webhook_ledger.is_processed("evt_9")
        assert await processor.handle(_event("evt_9", "customer.created", {})) == WebhookOutcome.DUPLICATE

    @pytest.mark.anyio
    async def test_handler_error_is_recorded_not_raised(self, db, processor):
        with patch.object(processor, "_handlers", {"invoice.payment_failed": AsyncMock(side_effect=RuntimeError("db gone"))}):
            outcome = await processor.handle(_event("evt_2", "invoice.payment_failed", {}))

        assert outcome == WebhookOutcome.FAILED
        with db.session() as session:
            record = session.get(WebhookRecord, "evt_2")
        assert json.loads(record.result) == {"error": "db gone"}
        assert await processor.handle(_event("evt_2", "invoice.payment_failed", {})) == WebhookOutcome.DUPLICATE
