"""Tests for the commerce HTTP client against the mock merchant app."""

import httpx
import pytest

from app.database import coupon_db, product_db, server_cart_db
from app.main import app
from cartengine.client import CommerceClient
from cartengine.errors import CatalogError, MergeError, SyncAuthError, SyncTransportError
from cartengine.models import Cart, IdentityContext, ProductStatus, ServerCartData, SyncMetadata, utcnow
from cartengine.persistence import MemoryCartStorage
from cartengine.service import CartService

from conftest import make_settings

pytestmark = pytest.mark.anyio

BASE_URL = "http://merchant.test"


@pytest.fixture(autouse=True)
def reset_merchant():
    product_db.reset()
    coupon_db.reset()
    server_cart_db.reset()
    yield
    server_cart_db.reset()


@pytest.fixture
async def client():
    http_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=BASE_URL)
    async with http_client:
        yield CommerceClient(BASE_URL, http_client=http_client)


def client_with_handler(handler) -> CommerceClient:
    return CommerceClient(BASE_URL, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def envelope_for(user_id: str, cart: Cart = None) -> ServerCartData:
    cart = cart or Cart(customer_id=user_id)
    return ServerCartData(
        cart=cart,
        metadata=SyncMetadata(
            device_id="device-a",
            last_sync_at=utcnow(),
            user_id=user_id,
            session_id=cart.session_id,
        ),
    )


class TestCatalog:
    async def test_fetch_product(self, client):
        product = await client.fetch_product("prod-001")

        assert product.price == 349.99
        assert product.stock_quantity == 50

    async def test_missing_product_is_none(self, client):
        assert await client.fetch_product("nope") is None

    async def test_unpublished_product_is_returned(self, client):
        product = await client.fetch_product("prod-007")

        assert product.status == ProductStatus.DRAFT

    async def test_fetch_coupon_normalizes_code(self, client):
        coupon = await client.fetch_coupon(" save10 ")

        assert coupon.code == "SAVE10"
        assert coupon.amount == 10

    async def test_missing_coupon_is_none(self, client):
        assert await client.fetch_coupon("NOPE") is None

    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = client_with_handler(handler)

        with pytest.raises(CatalogError) as exc_info:
            await client.fetch_product("prod-001")

        assert exc_info.value.retryable is True

    async def test_malformed_product(self):
        client = client_with_handler(lambda request: httpx.Response(200, json={"id": "x"}))

        with pytest.raises(CatalogError) as exc_info:
            await client.fetch_product("x")

        assert exc_info.value.retryable is False


class TestServerCart:
    async def test_authenticate(self, client):
        identity = await client.authenticate("user-1", "user@example.com")

        assert identity.is_authenticated is True
        assert identity.user_id == "user-1"
        assert identity.access_token

    async def test_no_server_cart(self, client):
        identity = await client.authenticate("user-1")

        assert await client.get_server_cart(identity) is None

    async def test_round_trip(self, client):
        identity = await client.authenticate("user-1")
        data = envelope_for("user-1")

        await client.put_server_cart(identity, data)
        fetched = await client.get_server_cart(identity)

        assert fetched.cart == data.cart
        assert fetched.metadata.device_id == "device-a"

    async def test_delete(self, client):
        identity = await client.authenticate("user-1")
        await client.put_server_cart(identity, envelope_for("user-1"))

        await client.delete_server_cart(identity)

        assert await client.get_server_cart(identity) is None
        await client.delete_server_cart(identity)

    async def test_invalid_token(self, client):
        identity = IdentityContext(user_id="user-1", is_authenticated=True, access_token="not-a-token")

        with pytest.raises(SyncAuthError) as exc_info:
            await client.get_server_cart(identity)

        assert exc_info.value.details["status_code"] == 401

    async def test_token_for_another_user(self, client):
        other = await client.authenticate("user-1")
        identity = IdentityContext(user_id="user-2", is_authenticated=True, access_token=other.access_token)

        with pytest.raises(SyncAuthError) as exc_info:
            await client.put_server_cart(identity, envelope_for("user-2"))

        assert exc_info.value.details["status_code"] == 403

    async def test_anonymous_identity(self, client):
        with pytest.raises(SyncAuthError):
            await client.get_server_cart(IdentityContext())

    async def test_unexpected_shape(self):
        client = client_with_handler(lambda request: httpx.Response(200, json={"cart": "nope"}))
        identity = IdentityContext(user_id="user-1", is_authenticated=True, access_token="t")

        with pytest.raises(MergeError):
            await client.get_server_cart(identity)

    async def test_server_error(self):
        client = client_with_handler(lambda request: httpx.Response(503, json={"detail": "down"}))
        identity = IdentityContext(user_id="user-1", is_authenticated=True, access_token="t")

        with pytest.raises(SyncTransportError):
            await client.put_server_cart(identity, envelope_for("user-1"))


class TestTwoDevices:
    @staticmethod
    def device(client: CommerceClient, name: str) -> CartService:
        return CartService(make_settings(sync_enabled=True), client, client, MemoryCartStorage(), client, device_id=name)

    async def test_carts_converge(self, client):
        phone = self.device(client, "phone")
        laptop = self.device(client, "laptop")

        await phone.add_item("prod-001")
        await phone.set_identity(await client.authenticate("user-1"))

        await laptop.add_item("prod-010", quantity=2)
        await laptop.set_identity(await client.authenticate("user-1"))

        await phone.sync_with_server()

        phone_cart = (await phone.get_cart()).data
        laptop_cart = (await laptop.get_cart()).data
        assert sorted(i.product_id for i in phone_cart.items) == ["prod-001", "prod-010"]
        assert sorted(i.product_id for i in laptop_cart.items) == ["prod-001", "prod-010"]
        assert phone_cart.totals.total == laptop_cart.totals.total == 399.97
        assert server_cart_db.get_cart("user-1").metadata.sync_version == 3
        assert server_cart_db.get_cart("user-1").metadata.device_id == "phone"

    async def test_quantity_conflict_keeps_higher(self, client):
        phone = self.device(client, "phone")
        laptop = self.device(client, "laptop")

        await phone.add_item("prod-010", quantity=1)
        await phone.set_identity(await client.authenticate("user-1"))

        await laptop.add_item("prod-010", quantity=3)
        result = await laptop.set_identity(await client.authenticate("user-1"))

        assert len(result.data.conflicts) == 1
        assert (await laptop.get_cart()).data.items[0].quantity == 3
