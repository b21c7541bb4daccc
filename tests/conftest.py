"""Vreamio – Pytest Configuration.

Shared fixtures: in-memory database, services wired the way the container wires
them, and an in-process fake of the TorBox vendor API.
"""

from typing import Optional

import pytest

from app.billing.payments import MockPaymentProvider
from app.billing.service import BillingService
from app.core.crypto import TokenCipher
from app.core.db import Database
from app.core.ledger import AuditLedger, WebhookLedger
from app.core.models import UserAccount
from app.core.users import SqlUserDirectory
from app.integrations.torbox.client import (
    RegisterUserResult,
    VendorAccount,
    VendorCapacity,
    VendorTransientError,
    VendorUser,
    VendorUserDetail,
)
from app.provisioning.service import ProvisioningService


class FakeVendorClient:
    """In-memory TorBox vendor. Every call is recorded in ``calls``."""

    def __init__(self, users_allowed: int = 10) -> None:
        self.users_allowed = users_allowed
        self.users: dict[str, VendorUserDetail] = {}
        self.calls: list[tuple[str, tuple]] = []
        self.fail_register: Optional[Exception] = None
        self.fail_remove: Optional[Exception] = None
        self.fail_listing: Optional[Exception] = None
        self._next_id = 1

    async def get_account(self) -> VendorAccount:
        self.calls.append(("get_account", ()))
        return VendorAccount(users_allowed=self.users_allowed, current_users=len(self.users), status="active")

    async def get_accounts(self) -> list[VendorUser]:
        self.calls.append(("get_accounts", ()))
        if self.fail_listing:
            raise self.fail_listing
        return [VendorUser(auth_id=u.auth_id, email=u.email) for u in self.users.values()]

    async def get_single_account(self, auth_id: str) -> VendorUserDetail:
        self.calls.append(("get_single_account", (auth_id,)))
        if auth_id not in self.users:
            raise VendorTransientError("not found", status_code=500, endpoint="/getsingleaccount")
        return self.users[auth_id]

    async def register_user(self, email: str) -> RegisterUserResult:
        self.calls.append(("register_user", (email,)))
        if self.fail_register:
            raise self.fail_register
        auth_id = f"auth-{self._next_id}"
        self._next_id += 1
        self.users[auth_id] = VendorUserDetail(auth_id=auth_id, email=email)
        return RegisterUserResult(auth_id=auth_id, email=email)

    async def remove_user(self, auth_id: str) -> None:
        self.calls.append(("remove_user", (auth_id,)))
        if self.fail_remove:
            raise self.fail_remove
        self.users.pop(auth_id, None)

    async def get_capacity(self) -> VendorCapacity:
        account = await self.get_account()
        return VendorCapacity(allowed=account.users_allowed, current=account.current_users)

    async def has_capacity(self) -> bool:
        return (await self.get_capacity()).has_room

    async def aclose(self) -> None:
        pass

    def confirm(self, auth_id: str, token: str = "tb-api-token") -> None:
        """Simulate the user clicking the confirmation link."""
        self.users[auth_id] = self.users[auth_id].model_copy(update={"api_token": token})

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def cipher():
    return TokenCipher("test-encryption-secret-at-least-32-chars", iterations=1_000)


@pytest.fixture
def audit(db):
    return AuditLedger(db)


@pytest.fixture
def webhook_ledger(db):
    return WebhookLedger(db)


@pytest.fixture
def payments():
    return MockPaymentProvider(public_url="http://test")


@pytest.fixture
def billing(db, audit, payments):
    return BillingService(db, audit, payments)


@pytest.fixture
def vendor():
    return FakeVendorClient()


@pytest.fixture
def provisioning(db, billing, audit, vendor, cipher):
    return ProvisioningService(db, billing, audit, vendor, cipher, max_attempts=5)


@pytest.fixture
def users(db):
    return SqlUserDirectory(db)


@pytest.fixture
def make_user(db):
    def _make(email: str) -> str:
        with db.session() as session:
            account = UserAccount(email=email)
            session.add(account)
            session.flush()
            return account.id
    return _make
