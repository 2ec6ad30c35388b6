"""Tests for cross-device cart sync, the offline queue and background sync."""

import asyncio

import pytest

from cartengine.config import SyncSettings
from cartengine.errors import MergeError, SyncAuthError, SyncTransportError
from cartengine.models import (
    ConflictType,
    DiscountType,
    IdentityContext,
    QueuedActionType,
    ServerCartData,
    SyncMetadata,
    SyncStatus,
    SyncStrategy,
    utcnow,
)
from cartengine.sync import CartSyncManager, SyncObserver, resolve_quantity

from conftest import FakeTransport, build_cart, make_coupon, make_item, make_product


def sync_settings(**kwargs) -> SyncSettings:
    kwargs.setdefault("enabled", True)
    kwargs.setdefault("background_sync", False)
    return SyncSettings(**kwargs)


def server_envelope(cart, version: int = 3, user_id: str = "user-1") -> ServerCartData:
    return ServerCartData(
        cart=cart,
        metadata=SyncMetadata(
            device_id="device-b",
            last_sync_at=utcnow(),
            sync_version=version,
            user_id=user_id,
            session_id=cart.session_id,
        ),
    )


@pytest.fixture
def manager(transport, calculator):
    return CartSyncManager(sync_settings(), transport, calculator, device_id="device-a")


@pytest.fixture
def product():
    return make_product("prod-1", price=10.0)


class RecordingObserver(SyncObserver):
    def __init__(self, name, events, fail_on=None):
        self.name = name
        self.events = events
        self.fail_on = fail_on

    def _record(self, event):
        self.events.append((self.name, event))
        if event == self.fail_on:
            raise RuntimeError(f"{self.name} broke")

    def on_sync_start(self):
        self._record("start")

    def on_sync_complete(self, result):
        self._record("complete")

    def on_sync_error(self, error):
        self._record("error")

    def on_conflict_detected(self, conflicts):
        self._record("conflict")


class ExplodingTransport(FakeTransport):
    async def get_server_cart(self, identity):
        raise RuntimeError("connection reset")


class TestResolveQuantity:
    @pytest.mark.parametrize(
        "strategy, expected",
        [
            (SyncStrategy.MERGE_SMART, 5),
            (SyncStrategy.MERGE_QUANTITIES, 7),
            (SyncStrategy.LOCAL_WINS, 2),
            (SyncStrategy.SERVER_WINS, 5),
            (SyncStrategy.PROMPT_USER, 5),
        ],
    )
    def test_policy(self, strategy, expected):
        assert resolve_quantity(strategy, 2, 5) == expected


@pytest.mark.anyio
class TestSyncCart:
    async def test_first_sync_uploads_local_cart(self, manager, transport, calculator, identity, product):
        local = build_cart(calculator, [make_item(product, 2)])

        result = await manager.sync_cart(local, identity)

        assert result.success is True
        assert result.status == SyncStatus.SYNCED
        assert result.merged_cart == local
        assert result.conflicts == []
        assert transport.carts["user-1"].cart == local
        assert transport.carts["user-1"].metadata.sync_version == 1
        assert transport.carts["user-1"].metadata.device_id == "device-a"
        assert manager.status == SyncStatus.SYNCED
        assert manager.last_sync_at == result.synced_at

    @pytest.mark.parametrize(
        "strategy, expected",
        [
            (SyncStrategy.MERGE_SMART, 5),
            (SyncStrategy.MERGE_QUANTITIES, 7),
            (SyncStrategy.LOCAL_WINS, 2),
            (SyncStrategy.SERVER_WINS, 5),
        ],
    )
    async def test_quantity_conflict_policies(self, transport, calculator, identity, product, strategy, expected):
        manager = CartSyncManager(sync_settings(strategy=strategy), transport, calculator)
        local = build_cart(calculator, [make_item(product, 2)])
        transport.carts["user-1"] = server_envelope(build_cart(calculator, [make_item(product, 5)]))

        result = await manager.sync_cart(local, identity)

        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.type == ConflictType.ITEM_QUANTITY
        assert conflict.local_value == 2
        assert conflict.server_value == 5
        assert result.merged_cart.items[0].quantity == expected
        assert result.merged_cart.totals.total == expected * 10.0
        assert local.items[0].quantity == 2

    async def test_version_increments_from_server(self, manager, transport, calculator, identity, product):
        transport.carts["user-1"] = server_envelope(build_cart(calculator, [make_item(product, 1)]), version=3)

        await manager.sync_cart(build_cart(calculator, [make_item(product, 1)]), identity)

        assert transport.carts["user-1"].metadata.sync_version == 4

    async def test_server_only_items_are_appended(self, manager, transport, calculator, identity, product):
        other = make_product("prod-2", price=20.0)
        local = build_cart(calculator, [make_item(product, 1)])
        transport.carts["user-1"] = server_envelope(build_cart(calculator, [make_item(other, 2)]))

        result = await manager.sync_cart(local, identity)

        assert [item.product_id for item in result.merged_cart.items] == ["prod-1", "prod-2"]
        assert result.conflicts == []
        assert result.changes.items_added == 1
        assert result.merged_cart.totals.total == 50.0
        assert result.merged_cart.session_id == local.session_id

    async def test_coupons_are_unioned(self, manager, transport, calculator, identity, product):
        local = build_cart(calculator, [make_item(product, 1)], [make_coupon("SAVE10").to_applied()])
        server = build_cart(
            calculator,
            [make_item(product, 1)],
            [make_coupon("FIVE", DiscountType.FIXED_CART, 5).to_applied()],
        )
        transport.carts["user-1"] = server_envelope(server)

        result = await manager.sync_cart(local, identity)

        assert [c.code for c in result.merged_cart.applied_coupons] == ["SAVE10", "FIVE"]
        assert result.changes.coupons_added == 1

    async def test_diverging_coupon_keeps_local_version(self, manager, transport, calculator, identity, product):
        local = build_cart(calculator, [make_item(product, 1)], [make_coupon("SAVE10", amount=10).to_applied()])
        server = build_cart(calculator, [make_item(product, 1)], [make_coupon("SAVE10", amount=20).to_applied()])
        transport.carts["user-1"] = server_envelope(server)

        result = await manager.sync_cart(local, identity)

        assert [c.type for c in result.conflicts] == [ConflictType.COUPON_CONFLICT]
        assert result.merged_cart.applied_coupons[0].amount == 10

    async def test_upload_failure_returns_no_cart(self, manager, transport, calculator, identity, product):
        transport.fail_put = True

        with pytest.raises(SyncTransportError) as exc_info:
            await manager.sync_cart(build_cart(calculator, [make_item(product, 1)]), identity)

        assert exc_info.value.retryable is True
        assert manager.status == SyncStatus.FAILED
        assert transport.puts == []
        assert manager.last_sync_at is None

    async def test_fetch_failure(self, manager, transport, calculator, identity):
        transport.fail_get = True

        with pytest.raises(SyncTransportError):
            await manager.sync_cart(build_cart(calculator), identity)

        assert manager.status == SyncStatus.FAILED

    async def test_unexpected_transport_exception_is_wrapped(self, calculator, identity):
        manager = CartSyncManager(sync_settings(), ExplodingTransport(), calculator)

        with pytest.raises(SyncTransportError):
            await manager.sync_cart(build_cart(calculator), identity)

    async def test_anonymous_identity_is_rejected(self, manager, transport, calculator):
        with pytest.raises(SyncAuthError) as exc_info:
            await manager.sync_cart(build_cart(calculator), IdentityContext())

        assert exc_info.value.retryable is False
        assert transport.gets == 0

    async def test_disabled_sync_is_a_no_op(self, transport, calculator, identity):
        manager = CartSyncManager(sync_settings(enabled=False), transport, calculator)

        result = await manager.sync_cart(build_cart(calculator), identity)

        assert result.status == SyncStatus.IDLE
        assert result.merged_cart is None
        assert transport.gets == 0

    async def test_concurrent_syncs_are_serialized(self, manager, transport, calculator, identity, product):
        first = build_cart(calculator, [make_item(product, 1)])
        second = build_cart(calculator, [make_item(make_product("prod-2"), 1)])

        await asyncio.gather(manager.sync_cart(first, identity), manager.sync_cart(second, identity))

        assert [data.metadata.sync_version for data in transport.puts] == [1, 2]
        assert len(transport.carts["user-1"].cart.items) == 2

    async def test_user_lock_is_created_once(self, manager, calculator, identity, product, monkeypatch):
        created = []
        lock_class = asyncio.Lock

        def counting_lock():
            created.append(1)
            return lock_class()

        monkeypatch.setattr(asyncio, "Lock", counting_lock)
        cart = build_cart(calculator, [make_item(product, 1)])

        await manager.sync_cart(cart, identity)
        await manager.sync_cart(cart, identity)

        assert len(created) == 1
        assert list(manager._locks) == ["user-1"]


@pytest.mark.anyio
class TestPromptUser:
    @pytest.fixture
    def prompt_manager(self, transport, calculator):
        return CartSyncManager(sync_settings(strategy=SyncStrategy.PROMPT_USER), transport, calculator)

    @pytest.fixture
    def conflicting(self, transport, calculator, product):
        transport.carts["user-1"] = server_envelope(build_cart(calculator, [make_item(product, 5)]))
        return build_cart(calculator, [make_item(product, 2)])

    async def test_resolver_choice_is_applied(self, prompt_manager, conflicting, identity):
        seen = {}

        async def resolver(conflicts):
            seen["status"] = prompt_manager.status
            seen["conflicts"] = conflicts
            return {conflicts[0].item_key: 4}

        prompt_manager.set_conflict_resolver(resolver)
        result = await prompt_manager.sync_cart(conflicting, identity)

        assert seen["status"] == SyncStatus.CONFLICT
        assert len(seen["conflicts"]) == 1
        assert result.merged_cart.items[0].quantity == 4
        assert prompt_manager.status == SyncStatus.SYNCED

    async def test_zero_quantity_drops_line(self, prompt_manager, conflicting, identity):
        async def resolver(conflicts):
            return {conflicts[0].item_key: 0}

        prompt_manager.set_conflict_resolver(resolver)
        result = await prompt_manager.sync_cart(conflicting, identity)

        assert result.merged_cart.items == []
        assert result.changes.items_removed == 1

    async def test_without_resolver_uses_higher_quantity(self, prompt_manager, conflicting, identity):
        result = await prompt_manager.sync_cart(conflicting, identity)

        assert result.merged_cart.items[0].quantity == 5

    async def test_invalid_choice_fails_the_sync(self, prompt_manager, conflicting, transport, identity):
        async def resolver(conflicts):
            return {conflicts[0].item_key: -1}

        prompt_manager.set_conflict_resolver(resolver)

        with pytest.raises(MergeError):
            await prompt_manager.sync_cart(conflicting, identity)

        assert prompt_manager.status == SyncStatus.FAILED
        assert transport.puts == []


@pytest.mark.anyio
class TestObservers:
    async def test_events_in_registration_order(self, manager, transport, calculator, identity, product):
        events = []
        manager.add_observer(RecordingObserver("first", events))
        manager.add_observer(RecordingObserver("second", events))
        transport.carts["user-1"] = server_envelope(build_cart(calculator, [make_item(product, 5)]))

        await manager.sync_cart(build_cart(calculator, [make_item(product, 2)]), identity)

        assert events == [
            ("first", "start"),
            ("second", "start"),
            ("first", "conflict"),
            ("second", "conflict"),
            ("first", "complete"),
            ("second", "complete"),
        ]

    async def test_failing_observer_does_not_break_sync(self, manager, calculator, identity):
        events = []
        manager.add_observer(RecordingObserver("broken", events, fail_on="start"))
        manager.add_observer(RecordingObserver("healthy", events))

        result = await manager.sync_cart(build_cart(calculator), identity)

        assert result.success is True
        assert ("healthy", "complete") in events

    async def test_error_event(self, manager, transport, calculator, identity):
        events = []
        manager.add_observer(RecordingObserver("only", events))
        transport.fail_get = True

        with pytest.raises(SyncTransportError):
            await manager.sync_cart(build_cart(calculator), identity)

        assert events == [("only", "start"), ("only", "error")]

    async def test_removed_observer_gets_nothing(self, manager, calculator, identity):
        events = []
        observer = RecordingObserver("gone", events)
        manager.add_observer(observer)
        manager.remove_observer(observer)

        await manager.sync_cart(build_cart(calculator), identity)

        assert events == []


@pytest.mark.anyio
class TestOfflineQueue:
    async def test_nothing_is_queued_while_online(self, manager):
        assert manager.queue_action(QueuedActionType.CLEAR, {}) is None
        assert manager.queued_actions == []

    async def test_nothing_is_queued_when_disabled(self, transport, calculator):
        manager = CartSyncManager(sync_settings(enabled=False), transport, calculator)
        manager.set_online(False)

        assert manager.queue_action(QueuedActionType.CLEAR, {}) is None

    async def test_queue_is_bounded(self, transport, calculator):
        manager = CartSyncManager(sync_settings(offline_queue_size=2), transport, calculator)
        manager.set_online(False)

        for key in ("a", "b", "c"):
            manager.queue_action(QueuedActionType.REMOVE, {"key": key})

        assert [q.payload["key"] for q in manager.queued_actions] == ["b", "c"]

    async def test_failed_action_is_retried_then_dropped(self, transport, calculator):
        manager = CartSyncManager(sync_settings(max_retries=2), transport, calculator)
        manager.set_online(False)
        for key in ("good", "bad", "also-good"):
            manager.queue_action(QueuedActionType.REMOVE, {"key": key})

        replayed = []

        async def executor(queued):
            if queued.payload["key"] == "bad":
                raise RuntimeError("still failing")
            replayed.append(queued.payload["key"])

        assert await manager.process_queue(executor) == 2
        assert replayed == ["good", "also-good"]
        assert [(q.payload["key"], q.retry_count) for q in manager.queued_actions] == [("bad", 1)]

        assert await manager.process_queue(executor) == 0
        assert manager.queued_actions == []

    async def test_empty_queue(self, manager):
        async def executor(queued):
            raise AssertionError("should not run")

        assert await manager.process_queue(executor) == 0


@pytest.mark.anyio
class TestBackgroundSync:
    async def test_runs_only_for_authenticated_identity(self, transport, calculator, identity):
        manager = CartSyncManager(
            sync_settings(background_sync=True, sync_interval_seconds=0.01),
            transport,
            calculator,
        )
        calls = []
        current = {"identity": IdentityContext()}

        async def runner():
            calls.append(current["identity"].user_id)

        manager.start_background_sync(runner, lambda: current["identity"])
        await asyncio.sleep(0.05)
        assert calls == []

        current["identity"] = identity
        await asyncio.sleep(0.05)
        await manager.close()

        assert calls
        assert set(calls) == {"user-1"}

    async def test_runner_errors_do_not_stop_the_loop(self, transport, calculator, identity):
        manager = CartSyncManager(
            sync_settings(background_sync=True, sync_interval_seconds=0.01),
            transport,
            calculator,
        )
        attempts = []

        async def runner():
            attempts.append(1)
            raise RuntimeError("server down")

        manager.start_background_sync(runner, lambda: identity)
        await asyncio.sleep(0.06)
        await manager.close()

        assert len(attempts) >= 2

    async def test_disable_stops_background_sync(self, transport, calculator, identity):
        manager = CartSyncManager(
            sync_settings(background_sync=True, sync_interval_seconds=0.01),
            transport,
            calculator,
        )
        calls = []

        async def runner():
            calls.append(1)

        manager.start_background_sync(runner, lambda: identity)
        manager.disable()
        await asyncio.sleep(0.05)
        await manager.close()

        assert calls == []
