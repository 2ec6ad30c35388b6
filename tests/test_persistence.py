"""Tests for local cart storage backends."""

from datetime import timedelta

import pytest

from cartengine.config import PersistenceSettings
from cartengine.errors import ConfigurationError, PersistenceError
from cartengine.models import utcnow
from cartengine.persistence import (
    FileCartStorage,
    MemoryCartStorage,
    NullCartStorage,
    StoredCart,
    create_storage,
)

from conftest import build_cart, make_coupon, make_item, make_product


@pytest.fixture
def cart(calculator):
    items = [
        make_item(make_product("prod-1", price=19.99), 3, attributes={"size": "M"}),
        make_item(make_product("prod-2", price=0.1), 7),
    ]
    return build_cart(calculator, items, [make_coupon("SAVE10").to_applied()], customer_id="user-1")


@pytest.mark.anyio
class TestMemoryStorage:
    async def test_round_trip(self, cart):
        storage = MemoryCartStorage()
        await storage.save(cart)

        loaded = await storage.load()

        assert loaded == cart
        assert loaded is not cart

    async def test_load_before_save(self):
        assert await MemoryCartStorage().load() is None

    async def test_clear(self, cart):
        storage = MemoryCartStorage()
        await storage.save(cart)
        await storage.clear()

        assert await storage.load() is None


@pytest.mark.anyio
class TestFileStorage:
    async def test_round_trip(self, cart, tmp_path):
        storage = FileCartStorage(tmp_path / "carts" / "cart.json")
        await storage.save(cart)

        loaded = await storage.load()

        assert loaded == cart
        assert [item.key for item in loaded.items] == [item.key for item in cart.items]

    async def test_envelope_records_expiry(self, cart, tmp_path):
        path = tmp_path / "cart.json"
        await FileCartStorage(path, expiration_days=7).save(cart)

        envelope = StoredCart.model_validate_json(path.read_text())

        assert envelope.expires_at - envelope.saved_at == timedelta(days=7)

    async def test_missing_file(self, tmp_path):
        assert await FileCartStorage(tmp_path / "nothing.json").load() is None

    async def test_expired_snapshot_is_discarded(self, cart, tmp_path):
        path = tmp_path / "cart.json"
        saved_at = utcnow() - timedelta(days=40)
        envelope = StoredCart(cart=cart, saved_at=saved_at, expires_at=saved_at + timedelta(days=30))
        path.write_text(envelope.model_dump_json())

        assert await FileCartStorage(path).load() is None
        assert not path.exists()

    async def test_no_expiration(self, cart, tmp_path):
        path = tmp_path / "cart.json"
        await FileCartStorage(path, expiration_days=None).save(cart)

        envelope = StoredCart.model_validate_json(path.read_text())

        assert envelope.expires_at is None
        assert await FileCartStorage(path, expiration_days=None).load() == cart

    async def test_corrupt_file(self, tmp_path):
        path = tmp_path / "cart.json"
        path.write_text("{not json")

        with pytest.raises(PersistenceError) as exc_info:
            await FileCartStorage(path).load()

        assert exc_info.value.details["path"] == str(path)

    async def test_clear(self, cart, tmp_path):
        path = tmp_path / "cart.json"
        storage = FileCartStorage(path)
        await storage.save(cart)
        await storage.clear()

        assert not path.exists()
        await storage.clear()

    async def test_unwritable_location(self, cart, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")

        with pytest.raises(PersistenceError):
            await FileCartStorage(blocker / "cart.json").save(cart)


@pytest.mark.anyio
class TestNullStorage:
    async def test_keeps_nothing(self, cart):
        storage = NullCartStorage()
        await storage.save(cart)

        assert await storage.load() is None


class TestCreateStorage:
    def test_memory(self):
        assert isinstance(create_storage(PersistenceSettings(strategy="memory")), MemoryCartStorage)

    def test_file(self, tmp_path):
        storage = create_storage(PersistenceSettings(strategy="file", path=str(tmp_path / "c.json"), expiration_days=3))

        assert isinstance(storage, FileCartStorage)
        assert storage.expiration_days == 3

    def test_none(self):
        assert isinstance(create_storage(PersistenceSettings(strategy="none")), NullCartStorage)

    def test_unknown_strategy(self):
        with pytest.raises(ConfigurationError):
            create_storage(PersistenceSettings.model_construct(strategy="redis"))
