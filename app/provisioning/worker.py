"""Vreamio – Provisioning Worker.

One background loop. Each cycle sweeps, in order:

1. PAID_PENDING_PROVISION        → provision_user
2. PROVISIONED_PENDING_CONFIRM   → poll_email_confirmation
3. CANCELED / EXPIRED with link  → revoke_user

Users are processed one at a time. A failure for one user is logged and the sweep
moves on. Cycles never overlap: the next one is scheduled after the previous
finished.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

import structlog

from app.billing.service import BillingService
from app.billing.types import SubscriptionStatus, VendorLinkStatus
from app.core.instrumentation import WORKER_CYCLE_DURATION, WORKER_CYCLES
from app.core.users import UserDirectory
from app.provisioning.service import ProvisionOutcome, ProvisioningService

logger = structlog.get_logger()

DEFAULT_INTERVAL_SECONDS = 60.0


@dataclass
class CycleSummary:
    provisioned: int = 0
    confirmed: int = 0
    revoked: int = 0
    skipped: int = 0
    errors: int = 0


class ProvisioningWorker:
    def __init__(
        self,
        billing: BillingService,
        provisioning: ProvisioningService,
        users: UserDirectory,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self._billing = billing
        self._provisioning = provisioning
        self._users = users
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            logger.warning("worker.already_running")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info("worker.started", interval_s=self.interval_seconds)

    async def stop(self) -> None:
        """Stop scheduling cycles. A cycle already running is allowed to finish."""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("worker.stopped")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception as exc:
                logger.error("worker.cycle_failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def run_cycle(self) -> CycleSummary:
        summary = CycleSummary()
        started = time.monotonic()

        await self._sweep_provisioning(summary)
        await self._sweep_confirmations(summary)
        await self._sweep_revocations(summary)

        duration = time.monotonic() - started
        WORKER_CYCLES.inc()
        WORKER_CYCLE_DURATION.observe(duration)
        logger.info(
            "worker.cycle_completed",
            provisioned=summary.provisioned,
            confirmed=summary.confirmed,
            revoked=summary.revoked,
            skipped=summary.skipped,
            errors=summary.errors,
            duration_ms=round(duration * 1000, 1),
        )
        return summary

    async def _sweep_provisioning(self, summary: CycleSummary) -> None:
        for sub in self._billing.get_subscriptions_by_status(SubscriptionStatus.PAID_PENDING_PROVISION):
            try:
                email = self._users.get_email(sub.user_id)
                if not email:
                    logger.warning("worker.user_email_missing", user_id=sub.user_id)
                    summary.skipped += 1
                    continue
                if self._provisioning.attempts_exhausted(self._provisioning.get_link(sub.user_id)):
                    summary.skipped += 1
                    continue
                outcome = await self._provisioning.provision_user(sub.user_id, email, sub.id)
                if outcome == ProvisionOutcome.PROVISIONED:
                    summary.provisioned += 1
                elif outcome in (ProvisionOutcome.FAILED, ProvisionOutcome.ATTEMPTS_EXHAUSTED):
                    summary.errors += 1
            except Exception as exc:
                summary.errors += 1
                logger.error("worker.provision_failed", user_id=sub.user_id, error=str(exc))

    async def _sweep_confirmations(self, summary: CycleSummary) -> None:
        for sub in self._billing.get_subscriptions_by_status(SubscriptionStatus.PROVISIONED_PENDING_CONFIRM):
            try:
                if await self._provisioning.poll_email_confirmation(sub.user_id):
                    summary.confirmed += 1
            except Exception as exc:
                summary.errors += 1
                logger.error("worker.poll_failed", user_id=sub.user_id, error=str(exc))

    async def _sweep_revocations(self, summary: CycleSummary) -> None:
        for status in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED):
            for sub in self._billing.get_subscriptions_by_status(status):
                try:
                    link = self._provisioning.get_link(sub.user_id)
                    if link is None or link.status == VendorLinkStatus.REVOKED.value:
                        continue
                    if await self._provisioning.revoke_user(sub.user_id):
                        summary.revoked += 1
                    else:
                        summary.errors += 1
                except Exception as exc:
                    summary.errors += 1
                    logger.error("worker.revoke_failed", user_id=sub.user_id, error=str(exc))
