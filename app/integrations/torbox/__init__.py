"""TorBox vendor integration package."""

from app.integrations.torbox.client import (
    TorBoxVendorClient,
    VendorAccount,
    VendorCapacity,
    VendorError,
    VendorLogicalFailure,
    VendorRequestRejected,
    VendorTransientError,
    VendorUser,
    VendorUserDetail,
)
from config.settings import Settings


def build_client(settings: Settings) -> TorBoxVendorClient:
    """Create a vendor client from application settings."""
    return TorBoxVendorClient(
        api_key=settings.torbox_vendor_api_key,
        base_url=settings.torbox_base_url,
        max_attempts=settings.torbox_max_attempts,
        base_delay=settings.torbox_retry_base_delay_seconds,
        timeout=settings.torbox_timeout_seconds,
    )


__all__ = [
    "TorBoxVendorClient",
    "VendorAccount",
    "VendorCapacity",
    "VendorError",
    "VendorLogicalFailure",
    "VendorRequestRejected",
    "VendorTransientError",
    "VendorUser",
    "VendorUserDetail",
    "build_client",
]
