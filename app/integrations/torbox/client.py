"""TorBox Vendors API client.

API base: https://api.torbox.app/v1/api/vendors, bearer token auth.
Every response is wrapped as ``{success, detail?, error?, data}``.

Every public method corresponds to exactly one API call. Retries live in
:meth:`TorBoxVendorClient.request_with_retry`: network errors, 5xx and 429 are
retried with exponential backoff; other 4xx responses and vendor-reported
failures (``success: false``) are raised immediately.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from app.core.instrumentation import VENDOR_REQUESTS

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://api.torbox.app/v1/api/vendors"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_TIMEOUT = 30.0


# ─── Errors ──────────────────────────────────────────────────────────

class VendorError(Exception):
    def __init__(self, message: str, *, status_code: Optional[int] = None, endpoint: str = "") -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        self.message = message
        super().__init__(f"TorBox API error ({status_code}) at {endpoint}: {message}")


class VendorTransientError(VendorError):
    """Network failure, 5xx or 429. Retried, raised once attempts run out."""


class VendorRequestRejected(VendorError):
    """Non-retryable 4xx response."""


class VendorLogicalFailure(VendorError):
    """The vendor answered but reported ``success: false``."""


# ─── Payloads ────────────────────────────────────────────────────────

class _VendorModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class VendorAccount(_VendorModel):
    id: Optional[int] = None
    email: Optional[str] = None
    auth_id: Optional[str] = None
    plan: Optional[int] = None
    users_allowed: int = 0
    current_users: int = 0
    status: Optional[str] = None
    paid_until: Optional[str] = None


class VendorUser(_VendorModel):
    id: Optional[int] = None
    auth_id: str
    email: Optional[str] = None
    plan: Optional[int] = None
    status: Optional[str] = None
    premium_expires_at: Optional[str] = None


class VendorUserDetail(VendorUser):
    api_token: Optional[str] = None  # only present once the user confirmed their email
    settings: Optional[dict[str, Any]] = None


class RegisterUserResult(_VendorModel):
    auth_id: str
    email: str
    detail: Optional[str] = None


@dataclass(frozen=True)
class VendorCapacity:
    allowed: int
    current: int

    @property
    def available(self) -> int:
        return self.allowed - self.current

    @property
    def has_room(self) -> bool:
        return self.current < self.allowed


def exponential_backoff(base_delay: float) -> Callable[[int], float]:
    """Delay before retry ``n`` (0-based): base, 2*base, 4*base, …"""
    return lambda retry: base_delay * (2 ** retry)


class TorBoxVendorClient:
    """Low-level TorBox vendor account-management client."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
        backoff: Optional[Callable[[int], float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self._backoff = backoff or exponential_backoff(base_delay)
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "TorBoxVendorClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ─── Vendor account ──────────────────────────────────────────────

    async def get_account(self) -> VendorAccount:
        """GET /getaccount"""
        data = await self.request_with_retry("GET", "/getaccount")
        return VendorAccount.model_validate(data or {})

    # ─── Vendor users ────────────────────────────────────────────────

    async def get_accounts(self) -> list[VendorUser]:
        """GET /getaccounts"""
        data = await self.request_with_retry("GET", "/getaccounts")
        return [VendorUser.model_validate(item) for item in (data or [])]

    async def get_single_account(self, auth_id: str) -> VendorUserDetail:
        """GET /getsingleaccount?id={auth_id}"""
        data = await self.request_with_retry("GET", "/getsingleaccount", params={"id": auth_id})
        return VendorUserDetail.model_validate(data or {})

    async def register_user(self, email: str) -> RegisterUserResult:
        """POST /registeruser

        TorBox mails the user a confirmation link; the API token only shows up
        on /getsingleaccount after they click it.
        """
        data = await self.request_with_retry("POST", "/registeruser", json={"email": email})
        return RegisterUserResult.model_validate(data or {})

    async def remove_user(self, auth_id: str) -> None:
        """POST /removeuser"""
        await self.request_with_retry("POST", "/removeuser", json={"id": auth_id})

    async def refresh_accounts(self) -> None:
        """POST /refresh"""
        await self.request_with_retry("POST", "/refresh")

    # ─── Capacity ────────────────────────────────────────────────────

    async def get_capacity(self) -> VendorCapacity:
        account = await self.get_account()
        return VendorCapacity(allowed=account.users_allowed, current=account.current_users)

    async def has_capacity(self) -> bool:
        return (await self.get_capacity()).has_room

    # ─── HTTP layer ──────────────────────────────────────────────────

    async def request_with_retry(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Send a request, retrying transient failures. Returns the envelope's ``data``."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(VendorTransientError),
            sleep=self._sleep,
            before_sleep=partial(self._log_retry, path),
            reraise=True,
        )
        try:
            data = await retrying(self._send, method, path, params=params, json=json)
        except VendorTransientError:
            VENDOR_REQUESTS.labels(endpoint=path, outcome="exhausted").inc()
            raise
        except VendorError:
            VENDOR_REQUESTS.labels(endpoint=path, outcome="rejected").inc()
            raise
        VENDOR_REQUESTS.labels(endpoint=path, outcome="ok").inc()
        return data

    def _wait(self, retry_state: RetryCallState) -> float:
        return self._backoff(retry_state.attempt_number - 1)

    def _log_retry(self, path: str, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "torbox.request_retry",
            endpoint=path,
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            delay_s=retry_state.next_action.sleep if retry_state.next_action else None,
            error=getattr(error, "message", str(error)),
        )

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, str]],
        json: Optional[dict[str, Any]],
    ) -> Any:
        try:
            response = await self._http.request(method, path, params=params, json=json)
        except httpx.TransportError as exc:
            raise VendorTransientError(f"{exc.__class__.__name__}: {exc}", endpoint=path) from exc

        status = response.status_code
        body = _safe_json(response)
        message = _envelope_message(body) or response.reason_phrase or "request failed"

        if status >= 500 or status == 429:
            raise VendorTransientError(message, status_code=status, endpoint=path)
        if status >= 400:
            raise VendorRequestRejected(message, status_code=status, endpoint=path)
        if not isinstance(body, dict):
            raise VendorLogicalFailure("Malformed response body", status_code=status, endpoint=path)
        if not body.get("success"):
            raise VendorLogicalFailure(
                _envelope_message(body) or "Unknown TorBox error", status_code=status, endpoint=path,
            )
        return body.get("data")


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _envelope_message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        return body.get("detail") or body.get("error")
    return None
