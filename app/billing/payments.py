"""Vreamio – Payment provider capability.

Checkout, customer portal and webhook verification behind one small interface.
``build_payment_provider`` picks the Stripe implementation when a real secret key
is configured and the deterministic mock otherwise; the choice is made once.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

import stripe
import structlog

from config.settings import Settings

logger = structlog.get_logger()


class PaymentProviderError(Exception):
    """The payment processor refused or failed a request."""


class WebhookVerificationError(PaymentProviderError):
    """Webhook payload is malformed or its signature does not match."""


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str
    customer_id: str | None = None


class PaymentProvider(Protocol):
    name: str

    def create_checkout_session(self, *, subscription_id: str, user_id: str, email: str) -> CheckoutSession:
        ...

    def create_portal_session(self, *, customer_id: str) -> str:
        ...

    def parse_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        ...


class StripePaymentProvider:
    name = "stripe"

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._price_id = price_id
        self._success_url = success_url
        self._cancel_url = cancel_url

    def create_checkout_session(self, *, subscription_id: str, user_id: str, email: str) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.create(
                api_key=self._secret_key,
                mode="subscription",
                customer_email=email,
                line_items=[{"price": self._price_id, "quantity": 1}],
                metadata={"user_id": user_id, "subscription_id": subscription_id},
                success_url=self._success_url + "?session_id={CHECKOUT_SESSION_ID}",
                cancel_url=self._cancel_url,
            )
        except stripe.StripeError as exc:
            logger.error("billing.checkout_session_failed", user_id=user_id, error=str(exc))
            raise PaymentProviderError(str(exc)) from exc

        customer = session.get("customer")
        if customer is not None and not isinstance(customer, str):
            customer = customer.get("id")
        return CheckoutSession(session_id=session["id"], url=session["url"], customer_id=customer)

    def create_portal_session(self, *, customer_id: str) -> str:
        try:
            portal = stripe.billing_portal.Session.create(
                api_key=self._secret_key,
                customer=customer_id,
                return_url=self._cancel_url,
            )
        except stripe.StripeError as exc:
            logger.error("billing.portal_session_failed", customer_id=customer_id, error=str(exc))
            raise PaymentProviderError(str(exc)) from exc
        return portal["url"]

    def parse_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        if not signature:
            raise WebhookVerificationError("Missing stripe-signature header")
        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=self._webhook_secret)
        except ValueError as exc:
            raise WebhookVerificationError("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError(str(exc)) from exc
        # Signature checked; hand the plain JSON on instead of StripeObject
        return json.loads(payload)


class MockPaymentProvider:
    """Local development stand-in. Ids and urls depend only on the subscription."""

    name = "mock"

    def __init__(self, *, public_url: str) -> None:
        self._public_url = public_url.rstrip("/")

    def create_checkout_session(self, *, subscription_id: str, user_id: str, email: str) -> CheckoutSession:
        session_id = f"mock_session_{subscription_id}"
        logger.info("billing.mock_checkout_created", user_id=user_id, session_id=session_id)
        return CheckoutSession(
            session_id=session_id,
            url=f"{self._public_url}/billing/mock-success?session_id={session_id}&sub_id={subscription_id}",
        )

    def create_portal_session(self, *, customer_id: str) -> str:
        return f"{self._public_url}/billing/mock-portal?customer={customer_id}"

    def parse_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise WebhookVerificationError("Invalid payload") from exc
        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise WebhookVerificationError("Event must carry id and type")
        return event


def build_payment_provider(settings: Settings) -> PaymentProvider:
    if settings.stripe_configured:
        return StripePaymentProvider(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            price_id=settings.stripe_price_id,
            success_url=settings.stripe_success_url,
            cancel_url=settings.stripe_cancel_url,
        )
    logger.warning("billing.stripe_not_configured", provider="mock")
    return MockPaymentProvider(public_url=settings.gateway_public_url)
