"""
Login directory.

Resolves login handles to user ids. Credential checks and registration
flows live elsewhere; the query core only needs the id.
"""

import sqlite3
from datetime import datetime
from typing import Optional

from benefit_guard.core.errors import PersistenceFailure, UserNotFound, ValidationError

from .db import DEFAULT_DB_PATH, connect_async
from .models import User


class CredentialDirectory:
    """Read access to the ``users`` table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    async def find_user(self, login: str) -> Optional[User]:
        try:
            async with connect_async(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT id, name, login, password_hash, created_at, last_login"
                    " FROM users WHERE login = ? LIMIT 1",
                    (login,),
                )
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise PersistenceFailure("could not read user directory") from e
        if row is None:
            return None
        return User(
            id=row["id"],
            name=row["name"],
            login=row["login"],
            password_hash=row["password_hash"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_login=datetime.fromisoformat(row["last_login"]) if row["last_login"] else None,
        )

    async def resolve_user(self, login: str) -> int:
        """Return the id of the user owning ``login``.

        Raises:
            UserNotFound: If no user has this login
        """
        user = await self.find_user(login)
        if user is None:
            raise UserNotFound("user not found for this login", {"login": login})
        return user.id

    async def create_user(self, name: str, login: str, password_hash: Optional[str] = None) -> User:
        """Insert a user row. Used by seeding and tests.

        Raises:
            ValidationError: If the login is empty or already taken
        """
        if not login or not login.strip():
            raise ValidationError("login is required")
        created = datetime.now()
        try:
            async with connect_async(self.db_path) as db:
                cursor = await db.execute(
                    "INSERT INTO users (name, login, password_hash, created_at) VALUES (?, ?, ?, ?)",
                    (name, login, password_hash, created.isoformat(timespec="microseconds")),
                )
                await db.commit()
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValidationError("login already registered", {"login": login}) from e
        except sqlite3.Error as e:
            raise PersistenceFailure("could not write user directory") from e
        return User(id=user_id, name=name, login=login, password_hash=password_hash, created_at=created)
