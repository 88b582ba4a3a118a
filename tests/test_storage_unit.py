from datetime import datetime, timedelta, timezone

import pytest

from fruitables.storage.errors import ConstraintViolation, StoreError, StoreErrorCode
from fruitables.storage.memory import MemoryStore
from fruitables.storage.models import UserIdentity

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _identity(user):
    return UserIdentity.from_user(user)


@pytest.mark.asyncio
async def test_memory_store_user_lookups():
    store = MemoryStore()
    user = await store.create_user("alice", "alice@example.com", "hash")

    assert user.id == 1
    assert user.role == "user"
    assert await store.find_user_by_email("alice@example.com") is user
    assert await store.find_user_by_username("alice") is user
    assert await store.find_user_by_id(user.id) is user
    assert await store.find_user_by_email("ALICE@example.com") is None
    assert await store.find_user_by_id(42) is None


@pytest.mark.asyncio
async def test_memory_store_rejects_duplicates():
    store = MemoryStore()
    await store.create_user("alice", "alice@example.com", "hash")

    with pytest.raises(ConstraintViolation) as by_name:
        await store.create_user("alice", "other@example.com", "hash")
    with pytest.raises(ConstraintViolation) as by_email:
        await store.create_user("bob", "alice@example.com", "hash")

    assert by_name.value.code is StoreErrorCode.DUPLICATE_USERNAME
    assert by_email.value.code is StoreErrorCode.DUPLICATE_EMAIL
    assert len(store.users) == 1


@pytest.mark.asyncio
async def test_memory_store_admin_limit():
    store = MemoryStore(max_admins=2)
    await store.create_user("a1", "a1@example.com", "hash", "admin")
    await store.create_user("a2", "a2@example.com", "hash", "admin")

    with pytest.raises(ConstraintViolation) as excinfo:
        await store.create_user("a3", "a3@example.com", "hash", "admin")

    assert excinfo.value.code is StoreErrorCode.ADMIN_LIMIT
    assert isinstance(excinfo.value, StoreError)
    await store.create_user("u1", "u1@example.com", "hash", "user")


@pytest.mark.asyncio
async def test_memory_store_missing_fields():
    store = MemoryStore()
    with pytest.raises(StoreError) as excinfo:
        await store.create_user("", "alice@example.com", "hash")
    assert excinfo.value.code is StoreErrorCode.MISSING_FIELD

    user = await store.create_user("alice", "alice@example.com", "hash")
    with pytest.raises(StoreError):
        await store.insert_reset_code(user, "")
    with pytest.raises(StoreError):
        await store.insert_otp(user, 0)


@pytest.mark.asyncio
async def test_memory_store_update_password_counts_rows():
    store = MemoryStore()
    user = await store.create_user("alice", "alice@example.com", "hash")

    assert await store.update_password(user.id, "new-hash") == 1
    assert user.password_hash == "new-hash"
    assert await store.update_password(999, "new-hash") == 0


@pytest.mark.asyncio
async def test_memory_store_upsert_keeps_one_row_per_email():
    store = MemoryStore()
    user = await store.create_user("alice", "alice@example.com", "hash")
    identity = _identity(user)

    await store.upsert_access_token(identity, "first", NOW + timedelta(hours=1))
    first = await store.find_access_token_by_email("alice@example.com")
    returned = await store.upsert_access_token(identity, "second", NOW + timedelta(hours=2))
    second = await store.find_access_token_by_email("alice@example.com")

    assert returned == "alice@example.com"
    assert second.id == first.id
    assert second.token == "second"
    assert len(store.access_tokens) == 1

    await store.upsert_refresh_token(identity, "r1", NOW + timedelta(hours=1))
    await store.upsert_refresh_token(identity, "r2", NOW + timedelta(hours=1))
    assert len(store.refresh_tokens) == 1
    assert (await store.find_refresh_token_by_email("alice@example.com")).token == "r2"


@pytest.mark.asyncio
async def test_memory_store_delete_tokens_by_email():
    store = MemoryStore()
    user = await store.create_user("alice", "alice@example.com", "hash")
    identity = _identity(user)
    await store.upsert_access_token(identity, "a", NOW)
    await store.upsert_refresh_token(identity, "r", NOW)

    assert await store.delete_tokens_by_email("alice@example.com") == 2
    assert await store.delete_tokens_by_email("alice@example.com") == 0
    assert await store.find_access_token_by_email("alice@example.com") is None


@pytest.mark.asyncio
async def test_memory_store_one_time_codes_replace_per_user():
    store = MemoryStore()
    user = await store.create_user("alice", "alice@example.com", "hash")

    await store.insert_reset_code(user, "first")
    await store.insert_reset_code(user, "second")
    await store.insert_otp(user, 1111)
    await store.insert_otp(user, 2222)

    assert (await store.find_reset_code_by_user_id(user.id)).code == "second"
    assert (await store.find_otp_by_user_id(user.id)).otp == 2222
    assert len(store.reset_codes) == 1
    assert len(store.otps) == 1
    assert await store.find_otp_by_user_id(999) is None


@pytest.mark.asyncio
async def test_memory_store_sweep_counts():
    store = MemoryStore()
    user = await store.create_user("alice", "alice@example.com", "hash")
    identity = _identity(user)
    await store.upsert_access_token(identity, "a", NOW - timedelta(minutes=1))
    await store.upsert_refresh_token(identity, "r", NOW + timedelta(minutes=1))
    store.add_cart_row(user.id, 7, created_at=NOW - timedelta(hours=24))
    store.add_cart_row(user.id, 8, created_at=NOW - timedelta(hours=23))

    assert await store.sweep_expired_tokens(NOW) == 1
    assert await store.sweep_stale_carts(NOW) == 1
    assert [row.product_id for row in store.list_cart_rows()] == [8]


@pytest.mark.asyncio
async def test_memory_store_lifecycle_is_noop():
    store = MemoryStore()
    await store.open()
    assert await store.ping() is True
    await store.close()


def test_cart_row_carries_only_sweep_fields():
    from dataclasses import fields

    from fruitables.storage.models import CartRow

    assert [f.name for f in fields(CartRow)] == [
        "id",
        "user_id",
        "product_id",
        "quantity",
        "created_at",
    ]
