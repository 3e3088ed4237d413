from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from usergate.config import DETAIL_CACHE_TTL_SECONDS, LIST_CACHE_TTL_SECONDS
from usergate.logging import get_logger
from usergate.service.auth import AuthService
from usergate.service.cache import ReadThroughCache, detail_cache_key, list_cache_key
from usergate.service.errors import ConflictError, InvalidIdError, NotFoundError
from usergate.service.store import BoundedStore
from usergate.service.tokens import Principal
from usergate.storage.errors import ConstraintViolation
from usergate.storage.models import User

logger = get_logger(__name__)

UPDATABLE_FIELDS = ("name", "email", "age")


def parse_user_id(raw: str) -> str:
    """Return the canonical form of a path id or raise ``InvalidIdError``."""
    try:
        return str(uuid.UUID(str(raw)))
    except (ValueError, AttributeError, TypeError):
        raise InvalidIdError()


class UserService:
    """User CRUD with a read-through cache in front of the store.

    Reads consult the cache first and populate it on a miss. Writes go
    straight to the store and, when ``invalidate_on_write`` is set, drop
    the cached detail entry and every cached list view.
    """

    def __init__(
        self,
        store: BoundedStore,
        auth: AuthService,
        cache: Optional[ReadThroughCache] = None,
        *,
        list_ttl_seconds: int = LIST_CACHE_TTL_SECONDS,
        detail_ttl_seconds: int = DETAIL_CACHE_TTL_SECONDS,
        invalidate_on_write: bool = True,
    ) -> None:
        self.store = store
        self.auth = auth
        self.cache = cache
        self.list_ttl_seconds = list_ttl_seconds
        self.detail_ttl_seconds = detail_ttl_seconds
        self.invalidate_on_write = invalidate_on_write

    async def list_users(self, full_path: str) -> List[Dict[str, Any]]:
        async def load() -> List[Dict[str, Any]]:
            users: List[User] = await self.store.read("list_users")
            return [user.to_public() for user in users]

        if not self.cache:
            return await load()
        # an empty list is never cached so the first insert shows up at once
        return await self.cache.fetch(
            list_cache_key(full_path), load, self.list_ttl_seconds, keep=bool
        )

    async def get_user(self, user_id: str) -> Dict[str, Any]:
        user_id = parse_user_id(user_id)

        async def load() -> Dict[str, Any]:
            user: Optional[User] = await self.store.read("get_user", user_id)
            if not user:
                raise NotFoundError()
            return user.to_public()

        if not self.cache:
            return await load()
        return await self.cache.fetch(
            detail_cache_key(user_id), load, self.detail_ttl_seconds
        )

    async def create_user(
        self, *, name: str, email: str, password: str, role: str
    ) -> Dict[str, Any]:
        user = await self.auth.create_account(
            name=name, email=email, password=password, role=role
        )
        await self.invalidate_user(user.id)
        return user.to_public()

    async def update_user(
        self, principal: Principal, user_id: str, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply a self-service update; identity is checked by the route gate.

        ``principal`` is carried for the audit log only.
        """
        user_id = parse_user_id(user_id)
        fields = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS}
        current: Optional[User] = await self.store.read("get_user", user_id)
        if not current:
            raise NotFoundError()
        new_email = fields.get("email")
        if new_email is not None and new_email != current.email:
            await self.auth.ensure_domain_receives_mail(new_email)
            await self.auth.ensure_email_available(new_email)
        elif new_email is not None:
            fields.pop("email")
        if not fields:
            return current.to_public()
        try:
            updated: Optional[User] = await self.store.write(
                "update_user", user_id, fields
            )
        except ConstraintViolation as exc:
            logger.info("update_conflict", user_id=user_id, detail=exc.detail)
            raise ConflictError() from exc
        if not updated:
            raise NotFoundError()
        await self.invalidate_user(user_id)
        logger.info(
            "user_updated",
            user_id=user_id,
            actor_id=principal.id,
            fields=sorted(fields),
        )
        return updated.to_public()

    async def delete_user(self, principal: Principal, user_id: str) -> Dict[str, Any]:
        user_id = parse_user_id(user_id)
        deleted: Optional[User] = await self.store.write("delete_user", user_id)
        if not deleted:
            raise NotFoundError()
        await self.invalidate_user(user_id)
        logger.info("user_deleted", user_id=user_id, actor_id=principal.id)
        return deleted.to_public()

    async def delete_all(self, principal: Principal) -> int:
        known_ids: List[str] = []
        if self.cache and self.invalidate_on_write:
            known_ids = [user.id for user in await self.store.read("list_users")]
        count: int = await self.store.write("delete_all_users")
        if self.cache and self.invalidate_on_write:
            await self.cache.invalidate_after_write(
                detail_cache_key(i) for i in known_ids
            )
        logger.warning("users_deleted_all", count=count, actor_id=principal.id)
        return count

    async def invalidate_user(self, user_id: str) -> None:
        """Drop cached views that may hold ``user_id`` after a store write."""
        if not self.cache or not self.invalidate_on_write:
            return
        await self.cache.invalidate_after_write([detail_cache_key(user_id)])
