from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional

from usergate.logging import get_logger
from usergate.storage.errors import ConstraintViolation
from usergate.storage.models import User

_UPDATABLE_FIELDS = frozenset({"name", "email", "age", "role", "password_hash"})


class MemoryStore:
    """In-process user store for tests and local development.

    Records are copied on the way in and out so callers never share mutable
    state with the store. The email uniqueness check and the insert happen
    under one lock, matching the unique index of the Postgres store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        return any(
            u.email == email and u.id != exclude_id for u in self.users.values()
        )

    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        age: Optional[int] = None,
    ) -> User:
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                name=name,
                email=email,
                password_hash=password_hash,
                role=role,
                age=age,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def list_users(self) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [replace(u) for u in ordered]

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            email = fields.get("email")
            if email is not None and self._email_taken(email, exclude_id=user_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            updated = replace(user, **fields)
            self.users[user_id] = updated
            return replace(updated)

    def delete_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.pop(user_id, None)

    def delete_all_users(self) -> int:
        with self._data_lock:
            count = len(self.users)
            self.users.clear()
            return count
