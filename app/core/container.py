"""Vreamio – Service container.

Builds every long-lived collaborator once from settings and hands them out by
reference. The gateway, the worker and the operator scripts all start here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from app.billing.payments import PaymentProvider, build_payment_provider
from app.billing.service import BillingService
from app.billing.webhooks import StripeWebhookProcessor
from app.core.crypto import TokenCipher
from app.core.db import Database
from app.core.ledger import AuditLedger, Clock, WebhookLedger, utcnow
from app.core.users import SqlUserDirectory, UserDirectory
from app.integrations.torbox import TorBoxVendorClient, build_client
from app.provisioning.service import ProvisioningService
from app.provisioning.worker import ProvisioningWorker
from config.settings import Settings

logger = structlog.get_logger()


@dataclass
class ServiceContainer:
    settings: Settings
    db: Database
    clock: Clock
    audit: AuditLedger
    webhooks: WebhookLedger
    cipher: TokenCipher
    vendor: TorBoxVendorClient
    payments: PaymentProvider
    users: UserDirectory
    billing: BillingService
    provisioning: ProvisioningService
    webhook_processor: StripeWebhookProcessor
    worker: ProvisioningWorker

    async def aclose(self) -> None:
        await self.worker.stop()
        await self.vendor.aclose()
        self.db.dispose()


def build_container(
    settings: Settings,
    *,
    db: Optional[Database] = None,
    vendor: Optional[TorBoxVendorClient] = None,
    payments: Optional[PaymentProvider] = None,
    cipher: Optional[TokenCipher] = None,
    clock: Clock = utcnow,
) -> ServiceContainer:
    db = db or Database(settings.database_url)
    audit = AuditLedger(db, clock)
    webhooks = WebhookLedger(db, clock)
    cipher = cipher or TokenCipher(settings.torbox_encryption_key)
    vendor = vendor or build_client(settings)
    payments = payments or build_payment_provider(settings)
    users = SqlUserDirectory(db)

    billing = BillingService(db, audit, payments, clock=clock)
    provisioning = ProvisioningService(
        db, billing, audit, vendor, cipher,
        max_attempts=settings.provisioning_max_attempts,
        clock=clock,
    )
    webhook_processor = StripeWebhookProcessor(
        billing, webhooks, audit, users,
        provisioning=provisioning if settings.torbox_configured else None,
    )
    worker = ProvisioningWorker(
        billing, provisioning, users,
        interval_seconds=settings.provisioning_interval_seconds,
    )
    logger.info(
        "container.built",
        payments=payments.name,
        torbox_configured=settings.torbox_configured,
        environment=settings.environment,
    )
    return ServiceContainer(
        settings=settings,
        db=db,
        clock=clock,
        audit=audit,
        webhooks=webhooks,
        cipher=cipher,
        vendor=vendor,
        payments=payments,
        users=users,
        billing=billing,
        provisioning=provisioning,
        webhook_processor=webhook_processor,
        worker=worker,
    )
