"""Unit tests for auth service.

Tests for:
- Password hashing and verification
- Registration uniqueness and email-domain checks
- Login outcomes and issued tokens
"""

import asyncio

import pytest

from usergate.service.auth import AuthService
from usergate.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from usergate.service.store import BoundedStore
from usergate.service.tokens import TokenService
from usergate.storage.errors import ConstraintViolation

PASSWORD = "Abc12345!"


@pytest.fixture
def tokens(clock):
    return TokenService("unit-test-signing-secret-0123456789", clock=clock)


@pytest.fixture
def auth_service(memory_store, tokens, domains):
    """Create auth service for testing."""
    return AuthService(BoundedStore(memory_store), tokens, domains)


class TestPasswordHashing:
    def test_hash_is_argon2id_and_not_plaintext(self, auth_service):
        pwd_hash = auth_service.hash_password(PASSWORD)

        assert pwd_hash.startswith("$argon2id$")
        assert PASSWORD not in pwd_hash

    def test_same_password_hashes_differently(self, auth_service):
        assert auth_service.hash_password(PASSWORD) != auth_service.hash_password(PASSWORD)

    def test_verify_password(self, auth_service, memory_store):
        user = memory_store.create_user(
            "BOB", "bob@gmail.com", auth_service.hash_password(PASSWORD)
        )

        assert auth_service.verify_password(user, PASSWORD) is True
        assert auth_service.verify_password(user, "Wrong12345!") is False

    def test_unusable_hash_never_verifies(self, auth_service, memory_store):
        user = memory_store.create_user("BOB", "bob@gmail.com", "not-a-hash")

        assert auth_service.verify_password(user, PASSWORD) is False


class TestRegistration:
    async def test_create_account_stores_hashed_password(self, auth_service, memory_store):
        user = await auth_service.create_account(
            name="BOB", email="bob@gmail.com", password=PASSWORD, role="user"
        )

        stored = memory_store.get_user(user.id)
        assert stored.password_hash != PASSWORD
        assert auth_service.verify_password(stored, PASSWORD)

    async def test_duplicate_email_conflicts(self, auth_service):
        await auth_service.create_account(
            name="BOB", email="bob@gmail.com", password=PASSWORD, role="user"
        )

        with pytest.raises(ConflictError) as exc:
            await auth_service.create_account(
                name="ROBERT", email="bob@gmail.com", password=PASSWORD, role="user"
            )
        assert exc.value.message == "Email is already in use"

    async def test_domain_without_mail_rejected(self, auth_service, memory_store, domains):
        with pytest.raises(ValidationError) as exc:
            await auth_service.create_account(
                name="BOB", email="bob@nomail.invalid", password=PASSWORD, role="user"
            )
        assert exc.value.message == "Invalid email domain"
        assert domains.lookups == ["nomail.invalid"]
        assert memory_store.list_users() == []

    async def test_uniqueness_checked_before_domain(self, auth_service, domains):
        await auth_service.create_account(
            name="BOB", email="bob@gmail.com", password=PASSWORD, role="user"
        )
        domains.lookups.clear()

        with pytest.raises(ConflictError):
            await auth_service.create_account(
                name="BOB", email="bob@gmail.com", password=PASSWORD, role="user"
            )
        assert domains.lookups == []

    async def test_store_constraint_race_maps_to_conflict(self, tokens, domains):
        class RacingStore:
            def get_user_by_email(self, email):
                return None

            def create_user(self, *args, **kwargs):
                raise ConstraintViolation("email already exists", {"field": "email"})

        service = AuthService(BoundedStore(RacingStore()), tokens, domains)

        with pytest.raises(ConflictError):
            await service.create_account(
                name="BOB", email="bob@gmail.com", password=PASSWORD, role="user"
            )

    async def test_concurrent_registrations_one_wins(self, auth_service, memory_store):
        async def attempt():
            try:
                await auth_service.create_account(
                    name="BOB", email="race@gmail.com", password=PASSWORD, role="user"
                )
                return 201
            except ConflictError:
                return 409

        results = await asyncio.gather(attempt(), attempt())

        assert sorted(results) == [201, 409]
        assert len(memory_store.list_users()) == 1


class TestLogin:
    async def test_login_issues_token_for_principal(self, auth_service, tokens):
        user = await auth_service.create_account(
            name="BOB", email="bob@gmail.com", password=PASSWORD, role="admin"
        )

        result = await auth_service.login(email="bob@gmail.com", password=PASSWORD)

        principal = tokens.verify(result.token.token)
        assert principal.id == user.id
        assert principal.role == "admin"
        assert result.token.expires_at - result.token.issued_at == 172800

    async def test_unknown_email_not_found(self, auth_service):
        with pytest.raises(NotFoundError) as exc:
            await auth_service.login(email="ghost@gmail.com", password=PASSWORD)
        assert exc.value.message == "User not found"

    async def test_wrong_password_invalid_credentials(self, auth_service):
        await auth_service.create_account(
            name="BOB", email="bob@gmail.com", password=PASSWORD, role="user"
        )

        with pytest.raises(InvalidCredentialsError) as exc:
            await auth_service.login(email="bob@gmail.com", password="Wrong12345!")
        assert exc.value.status_code == 401
        assert exc.value.message == "Invalid credentials"
