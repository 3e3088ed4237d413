from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from usergate.logging import get_logger
from usergate.service.email_domain import DomainChecker, email_domain
from usergate.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from usergate.service.store import BoundedStore
from usergate.service.tokens import IssuedToken, Principal, TokenService
from usergate.storage.errors import ConstraintViolation
from usergate.storage.models import User

logger = get_logger(__name__)


@dataclass
class LoginResult:
    user: User
    token: IssuedToken


class AuthService:
    """Registration, login and password hashing.

    Inputs reaching this service are already validated and normalized
    (uppercased name, lowercased email, password policy applied).
    """

    def __init__(
        self,
        store: BoundedStore,
        tokens: TokenService,
        domain_checker: DomainChecker,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.domain_checker = domain_checker
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        """Constant-time comparison of ``password`` against the stored hash."""
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable", user_id=user.id)
            return False

    async def ensure_email_available(self, email: str) -> None:
        existing = await self.store.read("get_user_by_email", email)
        if existing:
            raise ConflictError()

    async def ensure_domain_receives_mail(self, email: str) -> None:
        domain = email_domain(email)
        if not await self.domain_checker.domain_receives_mail(domain):
            raise ValidationError("Invalid email domain", detail={"domain": domain})

    async def create_account(
        self, *, name: str, email: str, password: str, role: str
    ) -> User:
        """Create a user after the uniqueness and mail-domain checks.

        The uniqueness pre-check gives the common case a clean 409; the store
        constraint still decides races between concurrent creations.
        """
        await self.ensure_email_available(email)
        await self.ensure_domain_receives_mail(email)
        password_hash = self.hash_password(password)
        try:
            user = await self.store.write(
                "create_user", name, email, password_hash, role=role
            )
        except ConstraintViolation as exc:
            self.logger.info("register_conflict", detail=exc.detail)
            raise ConflictError() from exc
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        return user

    async def login(self, *, email: str, password: str) -> LoginResult:
        user: Optional[User] = await self.store.read("get_user_by_email", email)
        if not user:
            raise NotFoundError()
        if not self.verify_password(user, password):
            self.logger.warning("login_invalid_credentials", user_id=user.id)
            raise InvalidCredentialsError()
        token = self.tokens.issue(Principal.from_user(user))
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(user=user, token=token)
