from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from app.billing.types import PLAN_STANDARD, SubscriptionStatus, VendorLinkStatus
from app.core.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class UserAccount(Base):
    """Read-only projection of the account service's users table."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    email = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, index=True, nullable=False, default=SubscriptionStatus.NOT_SUBSCRIBED.value)
    plan = Column(String, nullable=False, default=PLAN_STANDARD)
    stripe_customer_id = Column(String, index=True, nullable=True)
    stripe_subscription_id = Column(String, unique=True, index=True, nullable=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class VendorLink(Base):
    """Local record of a TorBox vendor account. Never deleted, only marked revoked."""
    __tablename__ = "vendor_links"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, unique=True, index=True, nullable=False)
    subscription_id = Column(String, index=True, nullable=True)
    vendor_account_id = Column(String, index=True, nullable=True)  # TorBox auth_id
    vendor_email = Column(String, nullable=False)
    api_token_encrypted = Column(Text, nullable=True)  # only while ACTIVE
    status = Column(String, index=True, nullable=False, default=VendorLinkStatus.PENDING_PROVISION.value)
    provision_attempts = Column(Integer, nullable=False, default=0)
    last_provision_attempt = Column(DateTime, nullable=True)
    correlation_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    revoked_at = Column(DateTime, nullable=True)


class AuditEntry(Base):
    """Append-only. Rows are never updated or deleted."""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, index=True, nullable=True)  # NULL for system-wide events
    event_type = Column(String, index=True, nullable=False)
    event_data = Column(Text, nullable=True)  # JSON
    correlation_id = Column(String, index=True, nullable=True)
    created_at = Column(DateTime, default=_utcnow, index=True)


class WebhookRecord(Base):
    __tablename__ = "webhook_events"

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    processed_at = Column(DateTime, default=_utcnow)
    result = Column(Text, nullable=True)  # JSON


class CapacitySnapshot(Base):
    __tablename__ = "vendor_capacity"

    id = Column(Integer, primary_key=True, autoincrement=True)
    users_allowed = Column(Integer, nullable=False)
    current_users = Column(Integer, nullable=False)
    vendor_status = Column(String, nullable=False, default="recorded")
    recorded_at = Column(DateTime, default=_utcnow, index=True)
