"""app/gateway/routers/internal.py — Operator endpoints.

Bearer ``INTERNAL_API_KEY``. Open in development while no key is configured.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from app.billing import state_machine
from app.billing.types import AuditEventType, BillingEvent, SubscriptionStatus
from app.core.container import ServiceContainer
from app.gateway.dependencies import get_container, require_operator
from app.gateway.schemas import (
    AuditEntryOut,
    CapacityOut,
    ReconcileResponse,
    SubscriptionOut,
    VendorLinkOut,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_operator)])

MAX_AUDIT_LIMIT = 500


@router.get("/health")
async def health(container: ServiceContainer = Depends(get_container)) -> dict:
    capacity = container.provisioning.latest_capacity()
    return {
        "success": True,
        "data": {
            "subscriptions": container.billing.health_counts(),
            "audit_events_last_hour": container.audit.count_since(timedelta(hours=1)),
            "capacity": CapacityOut.model_validate(capacity) if capacity else None,
            "worker_running": container.worker.running,
            "payments": container.payments.name,
        },
    }


@router.post("/reconcile")
async def reconcile(container: ServiceContainer = Depends(get_container)) -> dict:
    report = await container.provisioning.reconcile()
    return {"success": True, "data": ReconcileResponse(checked=report.checked, drifts=report.drifts)}


@router.get("/subscriptions")
async def list_subscriptions(
    status: Optional[SubscriptionStatus] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    subs = container.billing.list_subscriptions(status, limit=limit)
    return {"success": True, "data": [SubscriptionOut.model_validate(sub) for sub in subs]}


@router.get("/subscriptions/{user_id}")
async def subscription_detail(user_id: str, container: ServiceContainer = Depends(get_container)) -> dict:
    sub = container.billing.get_subscription(user_id)
    if sub is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    link = container.provisioning.get_link(user_id)
    audit = container.audit.query(user_id=user_id, limit=20)
    return {
        "success": True,
        "data": {
            "subscription": SubscriptionOut.model_validate(sub),
            "torbox": VendorLinkOut.from_link(link) if link else None,
            "audit": [AuditEntryOut.model_validate(entry) for entry in audit],
        },
    }


@router.post("/subscriptions/{user_id}/activate")
async def activate(user_id: str, container: ServiceContainer = Depends(get_container)) -> dict:
    sub = container.billing.get_subscription(user_id)
    if sub is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    sub = container.billing.transition(sub.id, BillingEvent.MANUAL_ACTIVATE, {"source": "operator"})
    await container.webhook_processor.provision_now(sub.user_id, sub.id, sub.status)
    logger.info("gateway.internal.manual_activate", user_id=user_id, status=sub.status)
    return {"success": True, "data": SubscriptionOut.model_validate(container.billing.get_by_id(sub.id))}


@router.post("/subscriptions/{user_id}/revoke")
async def revoke(user_id: str, container: ServiceContainer = Depends(get_container)) -> dict:
    sub = container.billing.get_subscription(user_id)
    if sub is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    if state_machine.can_transition(SubscriptionStatus(sub.status), BillingEvent.MANUAL_REVOKE):
        sub = container.billing.transition(sub.id, BillingEvent.MANUAL_REVOKE, {"source": "operator"})
    revoked = await container.provisioning.revoke_user(user_id)
    logger.info("gateway.internal.manual_revoke", user_id=user_id, vendor_revoked=revoked)
    return {
        "success": True,
        "data": {
            "vendor_revoked": revoked,
            "subscription": SubscriptionOut.model_validate(container.billing.get_by_id(sub.id)),
        },
    }


@router.post("/subscriptions/{user_id}/reset-attempts")
async def reset_attempts(user_id: str, container: ServiceContainer = Depends(get_container)) -> dict:
    try:
        link = container.provisioning.reset_attempts(user_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="No TorBox link for this user")
    return {"success": True, "data": VendorLinkOut.from_link(link)}


@router.get("/audit")
async def audit_log(
    user_id: Optional[str] = Query(default=None),
    event_type: Optional[AuditEventType] = Query(default=None),
    limit: int = Query(default=50, ge=1),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    entries = container.audit.query(user_id=user_id, event_type=event_type, limit=min(limit, MAX_AUDIT_LIMIT))
    return {"success": True, "data": [AuditEntryOut.model_validate(entry) for entry in entries]}
