"""Vreamio – User directory.

Accounts are owned by the auth service; billing only needs to look up the email a
vendor account gets registered with.
"""

from typing import Optional, Protocol

from sqlalchemy import select

from app.core.db import Database
from app.core.models import UserAccount


class UserDirectory(Protocol):
    def get_email(self, user_id: str) -> Optional[str]:
        ...


class SqlUserDirectory:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get_email(self, user_id: str) -> Optional[str]:
        with self._db.session() as session:
            return session.scalar(select(UserAccount.email).where(UserAccount.id == user_id))
