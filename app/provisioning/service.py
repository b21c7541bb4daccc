"""Vreamio – TorBox Provisioning Service.

Drives a subscription from "paid" to "vendor account usable" and back:

    provision_user           register on TorBox, user gets a confirmation email
    poll_email_confirmation  token shows up once they clicked it → ACTIVE
    revoke_user              remove the vendor account after cancel/expiry
    reconcile                compare local links with the vendor's user list

Vendor failures never escape ``provision_user``, ``poll_email_confirmation`` or
``revoke_user``; they are audited and left for the next worker sweep.
``reconcile`` is operator-triggered and raises.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from uuid import uuid4

import structlog
from sqlalchemy import select

from app.billing import state_machine
from app.billing.service import BillingService
from app.billing.types import AuditEventType, BillingEvent, SubscriptionStatus, VendorLinkStatus
from app.core.crypto import TokenCipher
from app.core.db import Database
from app.core.instrumentation import PROVISIONING_OUTCOMES
from app.core.ledger import AuditLedger, Clock, utcnow
from app.core.models import CapacitySnapshot, VendorLink
from app.integrations.torbox.client import TorBoxVendorClient

logger = structlog.get_logger()

MAX_PROVISION_ATTEMPTS = 5


class ProvisionOutcome(str, Enum):
    PROVISIONED = "provisioned"
    ALREADY_ACTIVE = "already_active"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    NO_CAPACITY = "no_capacity"
    FAILED = "failed"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


@dataclass
class ReconciliationReport:
    checked: int
    drifts: list[str] = field(default_factory=list)

    @property
    def has_drift(self) -> bool:
        return bool(self.drifts)


class ProvisioningService:
    def __init__(
        self,
        db: Database,
        billing: BillingService,
        ledger: AuditLedger,
        vendor: TorBoxVendorClient,
        cipher: TokenCipher,
        *,
        max_attempts: int = MAX_PROVISION_ATTEMPTS,
        clock: Clock = utcnow,
    ) -> None:
        self._db = db
        self._billing = billing
        self._ledger = ledger
        self._vendor = vendor
        self._cipher = cipher
        self.max_attempts = max_attempts
        self._clock = clock

    # ─── Links ───────────────────────────────────────────────────────────

    def get_link(self, user_id: str) -> Optional[VendorLink]:
        with self._db.session() as session:
            return session.scalar(select(VendorLink).where(VendorLink.user_id == user_id))

    def attempts_exhausted(self, link: Optional[VendorLink]) -> bool:
        return (
            link is not None
            and link.status == VendorLinkStatus.PENDING_PROVISION.value
            and link.provision_attempts >= self.max_attempts
        )

    def reset_attempts(self, user_id: str) -> VendorLink:
        """Operator action: let the worker try a stuck user again."""
        with self._db.session() as session:
            link = session.scalar(select(VendorLink).where(VendorLink.user_id == user_id))
            if link is None:
                raise LookupError(f"No vendor link for user {user_id}")
            previous = link.provision_attempts
            link.provision_attempts = 0
            self._ledger.append(
                user_id,
                AuditEventType.PROVISION_ATTEMPTS_RESET,
                {"previous_attempts": previous},
                link.correlation_id,
                session=session,
            )
        logger.info("provisioning.attempts_reset", user_id=user_id, previous_attempts=previous)
        return link

    def reveal_token(self, user_id: str) -> Optional[str]:
        """Decrypted TorBox API token, or None unless the link is ACTIVE."""
        link = self.get_link(user_id)
        if link is None or link.status != VendorLinkStatus.ACTIVE.value or not link.api_token_encrypted:
            return None
        return self._cipher.decrypt_text(link.api_token_encrypted)

    def latest_capacity(self) -> Optional[CapacitySnapshot]:
        with self._db.session() as session:
            return session.scalar(
                select(CapacitySnapshot).order_by(CapacitySnapshot.recorded_at.desc(), CapacitySnapshot.id.desc())
            )

    # ─── Provision ───────────────────────────────────────────────────────

    async def provision_user(
        self,
        user_id: str,
        email: str,
        subscription_id: str,
        *,
        correlation_id: Optional[str] = None,
    ) -> ProvisionOutcome:
        correlation_id = correlation_id or str(uuid4())
        with structlog.contextvars.bound_contextvars(correlation_id=correlation_id, user_id=user_id):
            link = self.get_link(user_id)

            if link is not None and link.status == VendorLinkStatus.ACTIVE.value:
                self._ensure_status(subscription_id, BillingEvent.TORBOX_TOKEN_ACQUIRED, link.correlation_id)
                logger.debug("provisioning.already_active")
                return ProvisionOutcome.ALREADY_ACTIVE

            if link is not None and link.status == VendorLinkStatus.PENDING_EMAIL_CONFIRM.value:
                self._ensure_status(subscription_id, BillingEvent.TORBOX_USER_CREATED, link.correlation_id)
                logger.debug("provisioning.awaiting_confirmation")
                return ProvisionOutcome.AWAITING_CONFIRMATION

            if self.attempts_exhausted(link):
                logger.debug("provisioning.skipped_exhausted", attempts=link.provision_attempts)
                return ProvisionOutcome.ATTEMPTS_EXHAUSTED

            try:
                if not await self._vendor.has_capacity():
                    self._ledger.append(
                        user_id,
                        AuditEventType.PROVISION_FAILED,
                        {"reason": "no_capacity", "subscription_id": subscription_id},
                        correlation_id,
                    )
                    PROVISIONING_OUTCOMES.labels(outcome=ProvisionOutcome.NO_CAPACITY.value).inc()
                    logger.warning("provisioning.no_capacity")
                    return ProvisionOutcome.NO_CAPACITY

                self._ledger.append(
                    user_id, AuditEventType.PROVISION_STARTED, {"subscription_id": subscription_id}, correlation_id,
                )
                registered = await self._vendor.register_user(email)
                self._store_registration(
                    user_id, subscription_id, registered.auth_id, registered.email or email, correlation_id,
                )
                sub = self._billing.get_by_id(subscription_id)
                if state_machine.can_transition(SubscriptionStatus(sub.status), BillingEvent.TORBOX_USER_CREATED):
                    self._billing.transition(
                        subscription_id,
                        BillingEvent.TORBOX_USER_CREATED,
                        {"vendor_account_id": registered.auth_id},
                        correlation_id=correlation_id,
                    )
                self._ledger.append(
                    user_id,
                    AuditEventType.EMAIL_CONFIRM_PENDING,
                    {"vendor_account_id": registered.auth_id, "email": registered.email or email},
                    correlation_id,
                )
            except Exception as exc:
                return self._record_failure(user_id, email, subscription_id, correlation_id, exc)

            PROVISIONING_OUTCOMES.labels(outcome=ProvisionOutcome.PROVISIONED.value).inc()
            logger.info("provisioning.user_registered", vendor_account_id=registered.auth_id)
            return ProvisionOutcome.PROVISIONED

    def _ensure_status(self, subscription_id: str, event: BillingEvent, correlation_id: Optional[str]) -> None:
        sub = self._billing.get_by_id(subscription_id)
        status = SubscriptionStatus(sub.status)
        if event == BillingEvent.TORBOX_USER_CREATED and status != SubscriptionStatus.PAID_PENDING_PROVISION:
            return
        if state_machine.can_transition(status, event):
            self._billing.transition(subscription_id, event, {"source": "provisioning"}, correlation_id=correlation_id)

    def _store_registration(
        self,
        user_id: str,
        subscription_id: str,
        vendor_account_id: str,
        vendor_email: str,
        correlation_id: str,
    ) -> None:
        with self._db.session() as session:
            link = session.scalar(select(VendorLink).where(VendorLink.user_id == user_id))
            if link is None:
                link = VendorLink(user_id=user_id, provision_attempts=0)
                session.add(link)
            elif link.status == VendorLinkStatus.REVOKED.value:
                link.provision_attempts = 0
            link.subscription_id = subscription_id
            link.vendor_account_id = vendor_account_id
            link.vendor_email = vendor_email
            link.api_token_encrypted = None
            link.status = VendorLinkStatus.PENDING_EMAIL_CONFIRM.value
            link.provision_attempts = (link.provision_attempts or 0) + 1
            link.last_provision_attempt = self._clock()
            link.correlation_id = correlation_id
            link.revoked_at = None

    def _record_failure(
        self,
        user_id: str,
        email: str,
        subscription_id: str,
        correlation_id: str,
        exc: Exception,
    ) -> ProvisionOutcome:
        with self._db.session() as session:
            link = session.scalar(select(VendorLink).where(VendorLink.user_id == user_id))
            if link is None:
                link = VendorLink(
                    user_id=user_id,
                    vendor_email=email,
                    status=VendorLinkStatus.PENDING_PROVISION.value,
                    provision_attempts=0,
                )
                session.add(link)
            elif link.status == VendorLinkStatus.REVOKED.value:
                # Re-subscription: the old vendor account is gone, start over
                link.status = VendorLinkStatus.PENDING_PROVISION.value
                link.vendor_account_id = None
                link.revoked_at = None
                link.provision_attempts = 0
            link.subscription_id = subscription_id
            link.provision_attempts = (link.provision_attempts or 0) + 1
            link.last_provision_attempt = self._clock()
            link.correlation_id = correlation_id
            attempts = link.provision_attempts

        self._ledger.append(
            user_id,
            AuditEventType.PROVISION_FAILED,
            {"error": str(exc), "attempts": attempts, "subscription_id": subscription_id},
            correlation_id,
        )
        logger.error("provisioning.failed", error=str(exc), error_type=type(exc).__name__, attempts=attempts)

        if attempts >= self.max_attempts:
            self._ledger.append(
                user_id,
                AuditEventType.PROVISION_ATTEMPTS_EXHAUSTED,
                {"attempts": attempts, "max_attempts": self.max_attempts},
                correlation_id,
            )
            PROVISIONING_OUTCOMES.labels(outcome=ProvisionOutcome.ATTEMPTS_EXHAUSTED.value).inc()
            logger.critical("provisioning.max_attempts_exceeded", attempts=attempts, subscription_id=subscription_id)
            return ProvisionOutcome.ATTEMPTS_EXHAUSTED

        PROVISIONING_OUTCOMES.labels(outcome=ProvisionOutcome.FAILED.value).inc()
        return ProvisionOutcome.FAILED

    # ─── Confirmation ────────────────────────────────────────────────────

    async def poll_email_confirmation(self, user_id: str) -> bool:
        """True once the user confirmed their TorBox email and the token is stored."""
        link = self.get_link(user_id)
        if link is None or not link.vendor_account_id:
            return False
        if link.status == VendorLinkStatus.ACTIVE.value:
            return True
        if link.status == VendorLinkStatus.REVOKED.value:
            return False

        with structlog.contextvars.bound_contextvars(correlation_id=link.correlation_id, user_id=user_id):
            try:
                detail = await self._vendor.get_single_account(link.vendor_account_id)
                if not detail.api_token:
                    logger.debug("provisioning.confirmation_pending")
                    return False

                encrypted = self._cipher.encrypt(detail.api_token)
                with self._db.session() as session:
                    row = session.get(VendorLink, link.id)
                    row.api_token_encrypted = encrypted
                    row.status = VendorLinkStatus.ACTIVE.value
                    row.last_provision_attempt = self._clock()

                sub = self._billing.get_subscription(user_id)
                if sub is not None and sub.status in (
                    SubscriptionStatus.PROVISIONED_PENDING_CONFIRM.value,
                    SubscriptionStatus.PAID_PENDING_PROVISION.value,
                ):
                    self._billing.transition(
                        sub.id,
                        BillingEvent.TORBOX_TOKEN_ACQUIRED,
                        {"vendor_account_id": link.vendor_account_id},
                        correlation_id=link.correlation_id,
                    )
                self._ledger.append(
                    user_id,
                    AuditEventType.TOKEN_ACQUIRED,
                    {"vendor_account_id": link.vendor_account_id},
                    link.correlation_id,
                )
            except Exception as exc:
                logger.warning("provisioning.poll_failed", error=str(exc), error_type=type(exc).__name__)
                return False

            PROVISIONING_OUTCOMES.labels(outcome="confirmed").inc()
            logger.info("provisioning.token_acquired", vendor_account_id=link.vendor_account_id)
            return True

    # ─── Revocation ──────────────────────────────────────────────────────

    async def revoke_user(self, user_id: str) -> bool:
        """Remove the vendor account. Returns True when this call revoked the link."""
        link = self.get_link(user_id)
        if link is None or link.status == VendorLinkStatus.REVOKED.value:
            return False

        correlation_id = link.correlation_id
        with structlog.contextvars.bound_contextvars(correlation_id=correlation_id, user_id=user_id):
            if not link.vendor_account_id:
                # Never reached TorBox, nothing to remove remotely
                self._mark_revoked(link.id)
                self._settle_subscription(user_id, correlation_id)
                self._ledger.append(
                    user_id, AuditEventType.REVOCATION_COMPLETED, {"vendor_call": False}, correlation_id,
                )
                logger.info("provisioning.revoked_locally")
                return True

            try:
                self._ledger.append(
                    user_id,
                    AuditEventType.REVOCATION_STARTED,
                    {"vendor_account_id": link.vendor_account_id},
                    correlation_id,
                )
                await self._vendor.remove_user(link.vendor_account_id)
                self._mark_revoked(link.id)
                self._settle_subscription(user_id, correlation_id)
                self._ledger.append(
                    user_id,
                    AuditEventType.REVOCATION_COMPLETED,
                    {"vendor_account_id": link.vendor_account_id},
                    correlation_id,
                )
            except Exception as exc:
                self._ledger.append(
                    user_id,
                    AuditEventType.REVOCATION_FAILED,
                    {"vendor_account_id": link.vendor_account_id, "error": str(exc)},
                    correlation_id,
                )
                logger.error("provisioning.revocation_failed", error=str(exc), error_type=type(exc).__name__)
                return False

            logger.info("provisioning.revoked", vendor_account_id=link.vendor_account_id)
            return True

    def _mark_revoked(self, link_id: str) -> None:
        with self._db.session() as session:
            row = session.get(VendorLink, link_id)
            row.api_token_encrypted = None
            row.status = VendorLinkStatus.REVOKED.value
            row.revoked_at = self._clock()

    def _settle_subscription(self, user_id: str, correlation_id: Optional[str]) -> None:
        sub = self._billing.get_subscription(user_id)
        if sub is not None and state_machine.needs_revocation(SubscriptionStatus(sub.status)):
            self._billing.transition(
                sub.id, BillingEvent.TORBOX_USER_REVOKED, {"source": "revocation"}, correlation_id=correlation_id,
            )

    # ─── Reconciliation ──────────────────────────────────────────────────

    async def reconcile(self) -> ReconciliationReport:
        """Compare non-revoked local links with TorBox's user list and snapshot capacity."""
        try:
            remote_users = await self._vendor.get_accounts()
            account = await self._vendor.get_account()
        except Exception as exc:
            logger.error("provisioning.reconciliation_failed", error=str(exc))
            raise

        with self._db.session() as session:
            local_links = list(session.scalars(
                select(VendorLink).where(VendorLink.status != VendorLinkStatus.REVOKED.value)
            ))
            remote_by_id = {user.auth_id: user for user in remote_users}
            local_ids = {link.vendor_account_id for link in local_links if link.vendor_account_id}

            drifts: list[str] = []
            for link in local_links:
                if link.vendor_account_id and link.vendor_account_id not in remote_by_id:
                    drifts.append(f"User {link.user_id}: exists locally ({link.status}) but not on TorBox")
            for auth_id, remote in remote_by_id.items():
                if auth_id not in local_ids:
                    drifts.append(f"TorBox user {auth_id} ({remote.email}): exists on TorBox but not in local DB")

            session.add(CapacitySnapshot(
                users_allowed=account.users_allowed,
                current_users=account.current_users,
                vendor_status=account.status or "recorded",
                recorded_at=self._clock(),
            ))
            self._ledger.append(
                None,
                AuditEventType.RECONCILIATION_RUN,
                {
                    "checked": len(local_links),
                    "torbox_users": len(remote_users),
                    "drifts": len(drifts),
                    "users_allowed": account.users_allowed,
                    "current_users": account.current_users,
                },
                session=session,
            )
            if drifts:
                self._ledger.append(None, AuditEventType.RECONCILIATION_DRIFT, {"drifts": drifts}, session=session)

        if drifts:
            logger.warning("provisioning.reconciliation_drift", drift_count=len(drifts), drifts=drifts)
        else:
            logger.info("provisioning.reconciliation_clean", checked=len(local_links))
        return ReconciliationReport(checked=len(local_links), drifts=drifts)
