"""app/gateway/routers/billing.py — Subscription endpoints for end users + Stripe webhook.

Endpoints (prefix /billing):
    GET  /status               → subscription + TorBox status
    POST /checkout             → checkout session (Stripe or mock)
    POST /portal               → Stripe customer portal
    POST /refresh-torbox       → poll TorBox email confirmation now
    GET  /torbox-credentials   → decrypted TorBox API token (ACTIVE only)
    GET  /mock-success         → simulate payment success (not in production)
    POST /webhook              → Stripe webhook (signature verified)
"""
from __future__ import annotations

from datetime import timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.billing.payments import WebhookVerificationError
from app.billing.types import BillingEvent
from app.core.auth import AuthContext
from app.core.container import ServiceContainer
from app.gateway.dependencies import get_container, get_current_user
from app.gateway.schemas import CheckoutResponse, PortalResponse, TorBoxCredentials

logger = structlog.get_logger()

router = APIRouter(prefix="/billing", tags=["billing"])

MOCK_PERIOD = timedelta(days=30)


@router.get("/status")
async def subscription_status(
    user: AuthContext = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    return {"success": True, "data": container.billing.status_projection(user.user_id)}


@router.post("/checkout")
async def create_checkout(
    user: AuthContext = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    email = user.email or container.users.get_email(user.user_id)
    if not email:
        raise HTTPException(status_code=400, detail="No email address on this account")
    checkout = container.billing.create_checkout(user.user_id, email)
    return {"success": True, "data": CheckoutResponse(checkout_url=checkout.url, session_id=checkout.session_id)}


@router.post("/portal")
async def create_portal(
    user: AuthContext = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    url = container.billing.create_portal(user.user_id)
    return {"success": True, "data": PortalResponse(portal_url=url)}


@router.post("/refresh-torbox")
async def refresh_torbox(
    user: AuthContext = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    confirmed = await container.provisioning.poll_email_confirmation(user.user_id)
    return {
        "success": True,
        "data": {
            "confirmed": confirmed,
            "subscription": container.billing.status_projection(user.user_id),
        },
    }


@router.get("/torbox-credentials")
async def torbox_credentials(
    user: AuthContext = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    token = container.provisioning.reveal_token(user.user_id)
    if token is None:
        raise HTTPException(status_code=404, detail="No active TorBox account")
    link = container.provisioning.get_link(user.user_id)
    return {"success": True, "data": TorBoxCredentials(api_token=token, email=link.vendor_email if link else None)}


@router.get("/mock-success")
async def mock_success(
    sub_id: Optional[str] = Query(default=None),
    session_id: Optional[str] = Query(default=None),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    if container.settings.is_production:
        raise HTTPException(status_code=403, detail="Not available in production")
    if not sub_id:
        raise HTTPException(status_code=400, detail="Missing sub_id query parameter")

    sub = container.billing.transition(sub_id, BillingEvent.PAYMENT_SUCCESS, {"mock": True, "session_id": session_id})
    now = container.clock()
    container.billing.update_payment_fields(
        sub_id,
        stripe_customer_id=f"mock_cus_{sub_id}",
        stripe_subscription_id=f"mock_sub_{sub_id}",
        current_period_start=now,
        current_period_end=now + MOCK_PERIOD,
    )
    await container.webhook_processor.provision_now(sub.user_id, sub.id, sub.status)
    sub = container.billing.get_by_id(sub_id)
    logger.info("billing.mock_payment_succeeded", subscription_id=sub_id, status=sub.status)
    return {
        "success": True,
        "message": "Mock payment successful.",
        "data": {"subscription_id": sub_id, "status": sub.status},
    }


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    try:
        event = container.payments.parse_webhook(payload, signature)
    except WebhookVerificationError as exc:
        logger.warning("billing.webhook.rejected", error=str(exc))
        raise HTTPException(status_code=400, detail=f"Webhook Error: {exc}")

    outcome = await container.webhook_processor.handle(event)
    return {"received": True, "outcome": outcome.value}
