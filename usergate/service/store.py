from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from usergate.logging import get_logger
from usergate.service.errors import StoreUnavailableError
from usergate.storage.errors import ConstraintViolation
from usergate.storage.models import User

logger = get_logger(__name__)

T = TypeVar("T")


class UserStore(Protocol):
    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        age: Optional[int] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self) -> List[User]: ...

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> Optional[User]: ...

    def delete_all_users(self) -> int: ...

    def verify_connection(self) -> None: ...


class BoundedStore:
    """Runs blocking store calls off the event loop under a deadline.

    ``read`` may retry once more than asked for on failure; ``write`` never
    retries so a create or delete is not applied twice. Constraint
    violations are domain outcomes and pass through untouched.
    """

    def __init__(
        self, store: UserStore, *, timeout_seconds: float = 5.0, read_retries: int = 1
    ) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.read_retries = read_retries

    async def _call(self, op: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs), self.timeout_seconds
            )
        except ConstraintViolation:
            raise
        except asyncio.TimeoutError as exc:
            logger.error("store_call_timeout", op=op, timeout=self.timeout_seconds)
            raise StoreUnavailableError() from exc
        except Exception as exc:
            logger.error(
                "store_call_failed",
                op=op,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailableError() from exc

    async def read(self, op: str, *args: Any, **kwargs: Any) -> Any:
        fn = getattr(self.store, op)
        attempts = 1 + max(0, self.read_retries)
        for attempt in range(1, attempts + 1):
            try:
                return await self._call(op, fn, *args, **kwargs)
            except StoreUnavailableError:
                if attempt >= attempts:
                    raise
                logger.warning("store_read_retry", op=op, attempt=attempt)
        raise StoreUnavailableError()

    async def write(self, op: str, *args: Any, **kwargs: Any) -> Any:
        return await self._call(op, getattr(self.store, op), *args, **kwargs)
