"""Tests for user CRUD and its cache discipline."""

import asyncio
import threading
import time

import pytest

from usergate.service.auth import AuthService
from usergate.service.cache import MISS, Hit, ReadThroughCache, detail_cache_key, list_cache_key
from usergate.service.errors import (
    CacheUnavailableError,
    ConflictError,
    InvalidIdError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from usergate.service.store import BoundedStore
from usergate.service.tokens import Principal, TokenService
from usergate.service.users import UserService, parse_user_id
from usergate.storage.memory import MemoryStore

PASSWORD = "Abc12345!"
MISSING_ID = "00000000-0000-4000-8000-000000000000"


class CountingStore(MemoryStore):
    """Memory store that counts reads so cache hits can be observed."""

    def __init__(self):
        super().__init__()
        self.reads = {"list_users": 0, "get_user": 0}

    def list_users(self):
        self.reads["list_users"] += 1
        return super().list_users()

    def get_user(self, user_id):
        self.reads["get_user"] += 1
        return super().get_user(user_id)


@pytest.fixture
def store():
    return CountingStore()


@pytest.fixture
def cache(cache_backend):
    return ReadThroughCache(cache_backend)


def _service(store, cache, domains, *, invalidate_on_write=True, timeout=5.0, retries=1):
    bounded = BoundedStore(store, timeout_seconds=timeout, read_retries=retries)
    auth = AuthService(
        bounded, TokenService("unit-test-signing-secret-0123456789"), domains
    )
    return UserService(bounded, auth, cache, invalidate_on_write=invalidate_on_write)


@pytest.fixture
def service(store, cache, domains):
    return _service(store, cache, domains)


def _principal(user):
    return Principal(id=user["id"], name=user["name"], email=user["email"], role=user["role"])


async def _create(service, name="BOB", email="bob@gmail.com", role="user"):
    return await service.create_user(name=name, email=email, password=PASSWORD, role=role)


def test_parse_user_id():
    assert parse_user_id(MISSING_ID.upper()) == MISSING_ID
    with pytest.raises(InvalidIdError) as exc:
        parse_user_id("507f1f77bcf86cd799439011")
    assert exc.value.message == "Invalid ID format"


class TestReads:
    async def test_list_hit_bypasses_store(self, service, store):
        await _create(service)

        first = await service.list_users("/users")
        second = await service.list_users("/users")

        assert first == second
        assert store.reads["list_users"] == 1

    async def test_list_key_includes_query(self, service, store, cache):
        await _create(service)

        await service.list_users("/users?sort=name")

        assert isinstance(await cache.lookup(list_cache_key("/users?sort=name")), Hit)
        assert await cache.lookup(list_cache_key("/users")) is MISS

    async def test_empty_list_not_cached(self, service, store, cache):
        assert await service.list_users("/users") == []

        assert await cache.lookup(list_cache_key("/users")) is MISS

    async def test_public_view_has_no_password_hash(self, service, cache):
        user = await _create(service)

        listed = await service.list_users("/users")
        detail = await service.get_user(user["id"])
        cached = await cache.lookup(detail_cache_key(user["id"]))

        assert "password_hash" not in listed[0]
        assert "password_hash" not in detail
        assert "password_hash" not in cached.value

    async def test_detail_cached_and_missing_never_cached(self, service, store, cache):
        user = await _create(service)

        await service.get_user(user["id"])
        await service.get_user(user["id"])
        assert store.reads["get_user"] == 1

        with pytest.raises(NotFoundError):
            await service.get_user(MISSING_ID)
        assert await cache.lookup(detail_cache_key(MISSING_ID)) is MISS

    async def test_invalid_id_rejected_before_store(self, service, store):
        with pytest.raises(InvalidIdError):
            await service.get_user("nope")
        assert store.reads["get_user"] == 0

    async def test_cache_outage_on_lookup_is_server_error(self, store, domains):
        class DownBackend:
            async def get(self, key):
                raise ConnectionError("redis down")

        service = _service(store, ReadThroughCache(DownBackend()), domains)

        with pytest.raises(CacheUnavailableError) as exc:
            await service.list_users("/users")
        assert exc.value.status_code == 500

    async def test_works_without_cache(self, store, domains):
        service = _service(store, None, domains)
        user = await _create(service)

        assert (await service.get_user(user["id"]))["email"] == "bob@gmail.com"
        assert len(await service.list_users("/users")) == 1


class TestWritesInvalidate:
    async def test_create_drops_cached_lists(self, service):
        await _create(service)
        assert len(await service.list_users("/users")) == 1

        await _create(service, name="ANN", email="ann@gmail.com")

        assert len(await service.list_users("/users")) == 2

    async def test_update_drops_detail_and_lists(self, service):
        user = await _create(service)
        await service.get_user(user["id"])
        await service.list_users("/users")

        await service.update_user(_principal(user), user["id"], {"name": "ROBERT"})

        assert (await service.get_user(user["id"]))["name"] == "ROBERT"
        assert (await service.list_users("/users"))[0]["name"] == "ROBERT"

    async def test_delete_drops_detail(self, service):
        user = await _create(service)
        await service.get_user(user["id"])

        deleted = await service.delete_user(_principal(user), user["id"])

        assert deleted["id"] == user["id"]
        with pytest.raises(NotFoundError):
            await service.get_user(user["id"])

    async def test_delete_all_drops_everything(self, service):
        ann = await _create(service, name="ANN", email="ann@gmail.com")
        await _create(service)
        await service.get_user(ann["id"])
        await service.list_users("/users")

        count = await service.delete_all(_principal(ann))

        assert count == 2
        assert await service.list_users("/users") == []
        with pytest.raises(NotFoundError):
            await service.get_user(ann["id"])

    async def test_list_read_overlapping_create_is_not_served(self, cache, domains):
        class HeldStore(MemoryStore):
            """Parks the next list read after it has fetched its rows."""

            def __init__(self):
                super().__init__()
                self.hold_next = False
                self.parked = threading.Event()
                self.release = threading.Event()

            def list_users(self):
                users = super().list_users()
                if self.hold_next:
                    self.hold_next = False
                    self.parked.set()
                    self.release.wait(5)
                return users

        store = HeldStore()
        service = _service(store, cache, domains)
        await _create(service)

        store.hold_next = True
        reader = asyncio.ensure_future(service.list_users("/users"))
        assert await asyncio.to_thread(store.parked.wait, 5)
        await _create(service, name="ANN", email="ann@gmail.com")
        store.release.set()
        in_flight = await reader

        assert [u["email"] for u in in_flight] == ["bob@gmail.com"]
        fresh = await service.list_users("/users")
        assert sorted(u["email"] for u in fresh) == ["ann@gmail.com", "bob@gmail.com"]

    async def test_detail_read_overlapping_update_is_not_served(self, cache, domains):
        class HeldStore(MemoryStore):
            def __init__(self):
                super().__init__()
                self.hold_next = False
                self.parked = threading.Event()
                self.release = threading.Event()

            def get_user(self, user_id):
                user = super().get_user(user_id)
                if self.hold_next:
                    self.hold_next = False
                    self.parked.set()
                    self.release.wait(5)
                return user

        store = HeldStore()
        service = _service(store, cache, domains)
        user = await _create(service)

        store.hold_next = True
        reader = asyncio.ensure_future(service.get_user(user["id"]))
        assert await asyncio.to_thread(store.parked.wait, 5)
        await service.update_user(_principal(user), user["id"], {"name": "ROBERT"})
        store.release.set()
        await reader

        assert (await service.get_user(user["id"]))["name"] == "ROBERT"

    async def test_ttl_only_mode_keeps_stale_entries(self, store, cache, domains):
        service = _service(store, cache, domains, invalidate_on_write=False)
        user = await _create(service)
        await service.get_user(user["id"])

        await service.update_user(_principal(user), user["id"], {"name": "ROBERT"})

        assert (await service.get_user(user["id"]))["name"] == "BOB"


class TestUpdate:
    async def test_only_known_fields_applied(self, service, store):
        user = await _create(service)

        updated = await service.update_user(
            _principal(user), user["id"], {"age": 30, "role": "owner"}
        )

        assert updated["age"] == 30
        assert updated["role"] == "user"

    async def test_missing_user_not_found(self, service):
        user = await _create(service)

        with pytest.raises(NotFoundError):
            await service.update_user(_principal(user), MISSING_ID, {"name": "ROBERT"})

    async def test_new_email_domain_checked(self, service, domains):
        user = await _create(service)

        with pytest.raises(ValidationError) as exc:
            await service.update_user(
                _principal(user), user["id"], {"email": "bob@nomail.invalid"}
            )
        assert exc.value.message == "Invalid email domain"

    async def test_new_email_must_be_unique(self, service):
        await _create(service, name="ANN", email="ann@gmail.com")
        user = await _create(service)

        with pytest.raises(ConflictError):
            await service.update_user(
                _principal(user), user["id"], {"email": "ann@gmail.com"}
            )

    async def test_unchanged_email_skips_checks(self, service, domains):
        user = await _create(service)
        domains.lookups.clear()

        updated = await service.update_user(
            _principal(user), user["id"], {"email": "bob@gmail.com", "age": 20}
        )

        assert updated["age"] == 20
        assert domains.lookups == []


class TestStoreFailures:
    async def test_read_retried_once(self, domains):
        class FlakyStore(MemoryStore):
            calls = 0

            def list_users(self):
                FlakyStore.calls += 1
                if FlakyStore.calls == 1:
                    raise ConnectionError("connection reset")
                return super().list_users()

        service = _service(FlakyStore(), None, domains)

        assert await service.list_users("/users") == []
        assert FlakyStore.calls == 2

    async def test_write_never_retried(self, domains):
        class BrokenStore(MemoryStore):
            deletes = 0

            def delete_all_users(self):
                BrokenStore.deletes += 1
                raise ConnectionError("connection reset")

        service = _service(BrokenStore(), None, domains)
        principal = Principal(id=MISSING_ID, name="ANN", email="ann@gmail.com", role="owner")

        with pytest.raises(StoreUnavailableError):
            await service.delete_all(principal)
        assert BrokenStore.deletes == 1

    async def test_store_timeout_is_server_error(self, domains):
        class SlowStore(MemoryStore):
            def list_users(self):
                time.sleep(0.2)
                return []

        service = _service(SlowStore(), None, domains, timeout=0.01, retries=0)

        with pytest.raises(StoreUnavailableError) as exc:
            await service.list_users("/users")
        assert exc.value.status_code == 500
