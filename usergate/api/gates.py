"""Request gates run in front of ``/users`` handlers.

A gate is an ordered chain of stages. Each stage receives the request and
the principal produced so far (``None`` before authentication) and returns
the principal to hand on, or raises to reject the request.
"""

from typing import Callable, FrozenSet, Iterable, Optional

from fastapi import Request

from usergate.logging import get_logger
from usergate.service.errors import (
    ForbiddenError,
    IdentityMismatchError,
    ServerError,
    ServiceError,
)
from usergate.service.tokens import Principal
from usergate.service.users import parse_user_id
from usergate.storage.models import ROLES

logger = get_logger(__name__)

Stage = Callable[[Request, Optional[Principal]], Optional[Principal]]

_ROLE_COLLECTIONS = (list, tuple, set, frozenset)


def verify_bearer(request: Request, principal: Optional[Principal]) -> Principal:
    """Authenticate the ``Authorization: Bearer`` header."""
    runtime = request.app.state.runtime
    return runtime.tokens.verify_header(request.headers.get("authorization"))


class RolePolicy:
    """Allow the request only when the principal's role is in ``allowed_roles``.

    The allow-list is checked when the route is declared, so a typo in a
    role name fails at import rather than on the first request.
    """

    def __init__(self, allowed_roles: Iterable[str]) -> None:
        if not isinstance(allowed_roles, _ROLE_COLLECTIONS):
            raise TypeError(
                "allowed_roles must be a list, tuple, set or frozenset, "
                f"got {type(allowed_roles).__name__}"
            )
        roles: FrozenSet[str] = frozenset(allowed_roles)
        if not roles:
            raise ValueError("allowed_roles must name at least one role")
        unknown = sorted(r for r in roles if r not in ROLES)
        if unknown:
            raise ValueError(f"unknown roles: {', '.join(map(str, unknown))}")
        self.allowed_roles = roles

    def __call__(self, request: Request, principal: Optional[Principal]) -> Principal:
        if principal is None:
            logger.error("role_policy_without_principal", path=request.url.path)
            raise ServerError()
        if principal.role not in self.allowed_roles:
            logger.warning(
                "role_forbidden",
                user_id=principal.id,
                role=principal.role,
                allowed=sorted(self.allowed_roles),
                path=request.url.path,
            )
            raise ForbiddenError()
        return principal

    def __repr__(self) -> str:
        return f"RolePolicy({sorted(self.allowed_roles)!r})"


class SelfOnly:
    """Allow the request only against the principal's own record."""

    def __init__(self, param: str = "user_id") -> None:
        self.param = param

    def __call__(self, request: Request, principal: Optional[Principal]) -> Principal:
        target = parse_user_id(request.path_params.get(self.param, ""))
        if principal is None:
            logger.error("self_only_without_principal", path=request.url.path)
            raise ServerError()
        if principal.id != target:
            logger.warning(
                "identity_mismatch",
                user_id=principal.id,
                target_id=target,
                path=request.url.path,
            )
            raise IdentityMismatchError()
        return principal


class RequestGate:
    """FastAPI dependency running ``stages`` in order.

    The final principal is stored on ``request.state.principal`` and
    returned to the handler. Service errors raised by a stage propagate
    unchanged; anything else is logged and reported as a server error.
    """

    def __init__(self, *stages: Stage) -> None:
        if not stages:
            raise ValueError("RequestGate needs at least one stage")
        self.stages = stages

    async def __call__(self, request: Request) -> Principal:
        principal: Optional[Principal] = None
        for stage in self.stages:
            try:
                principal = stage(request, principal)
            except ServiceError:
                raise
            except Exception as exc:
                logger.error(
                    "gate_stage_failed",
                    stage=getattr(stage, "__name__", repr(stage)),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise ServerError() from exc
            request.state.principal = principal
        if principal is None:
            logger.error("gate_completed_without_principal", path=request.url.path)
            raise ServerError()
        return principal


authenticated = RequestGate(verify_bearer)
admin_only = RequestGate(verify_bearer, RolePolicy(["admin"]))
admin_or_owner = RequestGate(verify_bearer, RolePolicy(["admin", "owner"]))
self_only = RequestGate(verify_bearer, SelfOnly("user_id"))
