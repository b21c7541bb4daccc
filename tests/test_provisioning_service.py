"""ProvisioningService against an in-memory TorBox fake."""

import json

import pytest

from app.billing.types import AuditEventType, BillingEvent, SubscriptionStatus, VendorLinkStatus
from app.core.models import CapacitySnapshot, VendorLink
from app.integrations.torbox.client import VendorLogicalFailure, VendorTransientError
from app.provisioning.service import ProvisionOutcome


def _paid(billing, user_id: str = "user-1"):
    sub = billing.get_or_create(user_id)
    return billing.transition(sub.id, BillingEvent.PAYMENT_SUCCESS)


def _events(audit, user_id=None, event_type=None):
    return audit.query(user_id=user_id, event_type=event_type, limit=500)


class TestProvisionUser:
    @pytest.mark.anyio
    async def test_registers_and_moves_to_pending_confirm(self, billing, provisioning, vendor, audit):
        sub = _paid(billing)

        outcome = await provisioning.provision_user("user-1", "u1@example.com", sub.id)

        assert outcome == ProvisionOutcome.PROVISIONED
        assert vendor.call_names() == ["get_account", "register_user"]
        link = provisioning.get_link("user-1")
        assert link.status == VendorLinkStatus.PENDING_EMAIL_CONFIRM.value
        assert link.vendor_account_id == "auth-1"
        assert link.provision_attempts == 1
        assert link.api_token_encrypted is None
        assert billing.get_by_id(sub.id).status == SubscriptionStatus.PROVISIONED_PENDING_CONFIRM.value

        [pending] = _events(audit, "user-1", AuditEventType.EMAIL_CONFIRM_PENDING)
        assert pending.correlation_id == link.correlation_id
        transition = _events(audit, "user-1", AuditEventType.STATE_TRANSITION)[0]
        assert transition.correlation_id == link.correlation_id

    @pytest.mark.anyio
    async def test_no_capacity_is_soft(self, billing, provisioning, vendor, audit):
        vendor.users_allowed = 0
        sub = _paid(billing)

        outcome = await provisioning.provision_user("user-1", "u1@example.com", sub.id)

        assert outcome == ProvisionOutcome.NO_CAPACITY
        assert "register_user" not in vendor.call_names()
        assert provisioning.get_link("user-1") is None
        assert billing.get_by_id(sub.id).status == SubscriptionStatus.PAID_PENDING_PROVISION.value
        [failure] = _events(audit, "user-1", AuditEventType.PROVISION_FAILED)
        assert json.loads(failure.event_data)["reason"] == "no_capacity"

    @pytest.mark.anyio
    async def test_active_link_makes_no_vendor_calls(self, db, billing, provisioning, vendor):
        sub = _paid(billing)
        await provisioning.provision_user("user-1", "u1@example.com", sub.id)
        vendor.confirm("auth-1")
        assert await provisioning.poll_email_confirmation("user-1") is True
        vendor.calls.clear()

        first = await provisioning.provision_user("user-1", "u1@example.com", sub.id)
        second = await provisioning.provision_user("user-1", "u1@example.com", sub.id)

        assert first == second == ProvisionOutcome.ALREADY_ACTIVE
        assert vendor.calls == []
        with db.session() as session:
            assert session.query(VendorLink).filter(VendorLink.user_id == "user-1").count() == 1

    @pytest.mark.anyio
    async def test_active_link_brings_subscription_to_active(self, db, billing, provisioning, cipher):
        sub = _paid(billing)
        with db.session() as session:
            session.add(VendorLink(
                user_id="user-1",
                subscription_id=sub.id,
                vendor_account_id="auth-7",
                vendor_email="u1@example.com",
                api_token_encrypted=cipher.encrypt("tok"),
                status=VendorLinkStatus.ACTIVE.value,
            ))

        outcome = await provisioning.provision_user("user-1", "u1@example.com", sub.id)

        assert outcome == ProvisionOutcome.ALREADY_ACTIVE
        assert billing.get_by_id(sub.id).status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.anyio
    async def test_pending_link_skips_registration(self, billing, provisioning, vendor):
        sub = _paid(billing)
        await provisioning.provision_user("user-1", "u1@example.com", sub.id)
        vendor.calls.clear()

        outcome = await provisioning.provision_user("user-1", "u1@example.com", sub.id)

        assert outcome == ProvisionOutcome.AWAITING_CONFIRMATION
        assert vendor.calls == []

    @pytest.mark.anyio
    async def test_failure_counts_attempts_and_alerts_at_ceiling(self, billing, provisioning, vendor, audit):
        vendor.fail_register = VendorTransientError("upstream down", status_code=503, endpoint="/registeruser")
        sub = _paid(billing)

        outcomes = [await provisioning.provision_user("user-1", "u1@example.com", sub.id) for _ in range(5)]

        assert outcomes == [ProvisionOutcome.FAILED] * 4 + [ProvisionOutcome.ATTEMPTS_EXHAUSTED]
        link = provisioning.get_link("user-1")
        assert link.status == VendorLinkStatus.PENDING_PROVISION.value
        assert link.vendor_account_id is None
        assert link.provision_attempts == 5
        assert billing.get_by_id(sub.id).status == SubscriptionStatus.PAID_PENDING_PROVISION.value
        assert len(_events(audit, "user-1", AuditEventType.PROVISION_FAILED)) == 5
        assert len(_events(audit, "user-1", AuditEventType.PROVISION_ATTEMPTS_EXHAUSTED)) == 1

        vendor.calls.clear()
        assert await provisioning.provision_user("user-1", "u1@example.com", sub.id) == ProvisionOutcome.ATTEMPTS_EXHAUSTED
        assert vendor.calls == []

    @pytest.mark.anyio
    async def test_reset_attempts_allows_retry(self, billing, provisioning, vendor, audit):
        vendor.fail_register = VendorLogicalFailure("rejected", endpoint="/registeruser")
        sub = _paid(billing)
        for _ in range(5):
            await provisioning.provision_user("user-1", "u1@example.com", sub.id)

        provisioning.reset_attempts("user-1")
        vendor.fail_register = None

        assert await provisioning.provision_user("user-1", "u1@example.com", sub.id) == ProvisionOutcome.PROVISIONED
        assert provisioning.get_link("user-1").provision_attempts == 1
        assert len(_events(audit, "user-1", AuditEventType.PROVISION_ATTEMPTS_RESET)) == 1

    def test_reset_attempts_without_link(self, provisioning):
        with pytest.raises(LookupError):
            provisioning.reset_attempts("nobody")


class TestPollEmailConfirmation:
    @pytest.mark.anyio
    async def test_without_link(self, provisioning, vendor):
        assert await provisioning.poll_email_confirmation("nobody") is False
        assert vendor.calls == []

    @pytest.mark.anyio
    async def test_waiting_for_confirmation(self, billing, provisioning):
        sub = _paid(billing)
        await provisioning.provision_user("user-1", "u1@example.com", sub.id)
        assert await provisioning.poll_email_confirmation("user-1") is False
        assert billing.get_by_id(sub.id).status == SubscriptionStatus.PROVISIONED_PENDING_CONFIRM.value

    @pytest.mark.anyio
    async def test_token_acquired(self, billing, provisioning, vendor, audit):
        sub = _paid(billing)
        await provisioning.provision_user("user-1", "u1@example.com", sub.id)
        vendor.confirm("auth-1", token="secret-api-token")

        assert await provisioning.poll_email_confirmation("user-1") is True

        link = provisioning.get_link("user-1")
        assert link.status == VendorLinkStatus.ACTIVE.value
        assert "secret-api-token" not in link.api_token_encrypted
        assert provisioning.reveal_token("user-1") == "secret-api-token"
        assert billing.get_by_id(sub.id).status == SubscriptionStatus.ACTIVE.value
        [acquired] = _events(audit, "user-1", AuditEventType.TOKEN_ACQUIRED)
        assert acquired.correlation_id == link.correlation_id

        vendor.calls.clear()
        assert await provisioning.poll_email_confirmation("user-1") is True
        assert vendor.calls == []

    @pytest.mark.anyio
    async def test_vendor_errors_mean_not_yet(self, billing, provisioning, vendor):
        sub = _paid(billing)
        await provisioning.provision_user("user-1", "u1@example.com", sub.id)
        vendor.users.clear()  # fake raises a transient error for unknown ids

        assert await provisioning.poll_email_confirmation("user-1") is False
        assert provisioning.get_link("user-1").status == VendorLinkStatus.PENDING_EMAIL_CONFIRM.value

    def test_reveal_token_requires_active_link(self, provisioning):
        assert provisioning.reveal_token("nobody") is None


class TestRevokeUser:
    async def _active_then_canceled(self, billing, provisioning, vendor):
        sub = _paid(billing)
        await provisioning.provision_user("user-1", "u1@example.com", sub.id)
        vendor.confirm("auth-1")
        await provisioning.poll_email_confirmation("user-1")
        billing.transition(sub.id, BillingEvent.SUBSCRIPTION_CANCELED)
        return sub

    @pytest.mark.anyio
    async def test_revokes_and_settles(self, billing, provisioning, vendor, audit):
        sub = await self._active_then_canceled(billing, provisioning, vendor)
        vendor.calls.clear()

        assert await provisioning.revoke_user("user-1") is True

        assert vendor.calls == [("remove_user", ("auth-1",))]
        link = provisioning.get_link("user-1")
        assert link.status == VendorLinkStatus.REVOKED.value
        assert link.api_token_encrypted is None
        assert link.revoked_at is not None
        assert billing.get_by_id(sub.id).status == SubscriptionStatus.NOT_SUBSCRIBED.value
        assert len(_events(audit, "user-1", AuditEventType.REVOCATION_COMPLETED)) == 1

    @pytest.mark.anyio
    async def test_revoked_link_is_a_no_op(self, billing, provisioning, vendor, audit):
        await self._active_then_canceled(billing, provisioning, vendor)
        await provisioning.revoke_user("user-1")
        vendor.calls.clear()
        before = len(_events(audit))

        assert await provisioning.revoke_user("user-1") is False

        assert vendor.calls == []
        assert len(_events(audit)) == before

    @pytest.mark.anyio
    async def test_without_link(self, provisioning, vendor):
        assert await provisioning.revoke_user("nobody") is False
        assert vendor.calls == []

    @pytest.mark.anyio
    async def test_failure_is_audited_not_raised(self, billing, provisioning, vendor, audit):
        sub = await self._active_then_canceled(billing, provisioning, vendor)
        vendor.fail_remove = VendorTransientError("timeout", endpoint="/removeuser")

        assert await provisioning.revoke_user("user-1") is False

        assert provisioning.get_link("user-1").status == VendorLinkStatus.ACTIVE.value
        assert billing.get_by_id(sub.id).status == SubscriptionStatus.CANCELED.value
        [failed] = _events(audit, "user-1", AuditEventType.REVOCATION_FAILED)
        assert "timeout" in json.loads(failed.event_data)["error"]

    @pytest.mark.anyio
    async def test_active_subscription_is_not_settled(self, billing, provisioning, vendor):
        sub = _paid(billing)
        await provisioning.provision_user("user-1", "u1@example.com", sub.id)
        vendor.confirm("auth-1")
        await provisioning.poll_email_confirmation("user-1")

        await provisioning.revoke_user("user-1")

        assert billing.get_by_id(sub.id).status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.anyio
    async def test_link_that_never_reached_vendor_settles_locally(self, billing, provisioning, vendor):
        vendor.fail_register = VendorLogicalFailure("rejected", endpoint="/registeruser")
        sub = _paid(billing)
        await provisioning.provision_user("user-1", "u1@example.com", sub.id)
        billing.transition(sub.id, BillingEvent.SUBSCRIPTION_CANCELED)
        vendor.calls.clear()

        assert await provisioning.revoke_user("user-1") is True

        assert vendor.calls == []
        assert provisioning.get_link("user-1").status == VendorLinkStatus.REVOKED.value
        assert billing.get_by_id(sub.id).status == SubscriptionStatus.NOT_SUBSCRIBED.value


class TestResubscription:
    @pytest.mark.anyio
    async def test_revoked_link_is_reused(self, db, billing, provisioning, vendor):
        sub = _paid(billing)
        await provisioning.provision_user("user-1", "u1@example.com", sub.id)
        billing.transition(sub.id, BillingEvent.SUBSCRIPTION_CANCELED)
        await provisioning.revoke_user("user-1")

        billing.transition(sub.id, BillingEvent.PAYMENT_SUCCESS)
        outcome = await provisioning.provision_user("user-1", "u1@example.com", sub.id)

        assert outcome == ProvisionOutcome.PROVISIONED
        link = provisioning.get_link("user-1")
        assert link.status == VendorLinkStatus.PENDING_EMAIL_CONFIRM.value
        assert link.vendor_account_id == "auth-2"
        assert link.revoked_at is None
        assert link.provision_attempts == 1
        with db.session() as session:
            assert session.query(VendorLink).count() == 1


class TestReconcile:
    @pytest.mark.anyio
    async def test_reports_symmetric_difference(self, db, billing, provisioning, vendor, audit):
        for n in (1, 2):
            sub = _paid(billing, f"user-{n}")
            await provisioning.provision_user(f"user-{n}", f"u{n}@example.com", sub.id)
        # auth-1 vanished on the vendor side, auth-x was never ours
        vendor.users.pop("auth-1")
        vendor.users["auth-x"] = vendor.users["auth-2"].model_copy(update={"auth_id": "auth-x", "email": "x@example.com"})

        report = await provisioning.reconcile()

        assert report.checked == 2
        assert sorted(report.drifts) == sorted([
            "User user-1: exists locally (pending_email_confirm) but not on TorBox",
            "TorBox user auth-x (x@example.com): exists on TorBox but not in local DB",
        ])
        with db.session() as session:
            snapshots = session.query(CapacitySnapshot).all()
        assert len(snapshots) == 1
        assert snapshots[0].users_allowed == 10
        assert snapshots[0].current_users == 2
        assert len(_events(audit, event_type=AuditEventType.RECONCILIATION_RUN)) == 1
        [drift] = _events(audit, event_type=AuditEventType.RECONCILIATION_DRIFT)
        assert len(json.loads(drift.event_data)["drifts"]) == 2

    @pytest.mark.anyio
    async def test_clean_run_records_no_drift(self, db, provisioning, audit):
        report = await provisioning.reconcile()
        await provisioning.reconcile()

        assert report.checked == 0
        assert report.drifts == []
        assert not report.has_drift
        with db.session() as session:
            assert session.query(CapacitySnapshot).count() == 2
        assert _events(audit, event_type=AuditEventType.RECONCILIATION_DRIFT) == []
        assert provisioning.latest_capacity().users_allowed == 10

    @pytest.mark.anyio
    async def test_revoked_links_are_ignored(self, billing, provisioning, vendor):
        sub = _paid(billing)
        await provisioning.provision_user("user-1", "u1@example.com", sub.id)
        billing.transition(sub.id, BillingEvent.SUBSCRIPTION_CANCELED)
        await provisioning.revoke_user("user-1")

        report = await provisioning.reconcile()

        assert report.checked == 0
        assert report.drifts == []

    @pytest.mark.anyio
    async def test_transport_failure_propagates(self, db, provisioning, vendor):
        vendor.fail_listing = VendorTransientError("down", status_code=502, endpoint="/getaccounts")
        with pytest.raises(VendorTransientError):
            await provisioning.reconcile()
        with db.session() as session:
            assert session.query(CapacitySnapshot).count() == 0
