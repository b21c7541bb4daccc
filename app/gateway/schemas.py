import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str


class PortalResponse(BaseModel):
    portal_url: str


class TorBoxCredentials(BaseModel):
    api_token: str
    email: Optional[str] = None


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    status: str
    plan: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class VendorLinkOut(BaseModel):
    """Vendor link without the encrypted token."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    subscription_id: Optional[str] = None
    vendor_account_id: Optional[str] = None
    vendor_email: str
    status: str
    provision_attempts: int = 0
    last_provision_attempt: Optional[datetime] = None
    correlation_id: Optional[str] = None
    revoked_at: Optional[datetime] = None
    has_token: bool = False

    @classmethod
    def from_link(cls, link: Any) -> "VendorLinkOut":
        out = cls.model_validate(link)
        out.has_token = bool(link.api_token_encrypted)
        return out


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: Optional[str] = None
    event_type: str
    event_data: Optional[Any] = None
    correlation_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("event_data", mode="before")
    @classmethod
    def _parse_json(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                return value
        return value


class CapacityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    users_allowed: int
    current_users: int
    vendor_status: str
    recorded_at: Optional[datetime] = None


class ReconcileResponse(BaseModel):
    checked: int
    drifts: list[str]
