"""
Cart Sync Manager

Reconciles the local cart with the server-held cart of the same
authenticated user, and records cart actions taken while offline.

Sync state machine per attempt:
    idle -> syncing -> synced
                    -> conflict -> synced
                    -> failed
"""

import asyncio
import logging
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from .config import SyncSettings
from .errors import MergeError, SyncAuthError, SyncError, SyncTransportError
from .interfaces import CartTransport
from .models import (
    AppliedCoupon,
    Cart,
    CartItem,
    CartSyncResult,
    ConflictType,
    IdentityContext,
    QueuedAction,
    QueuedActionType,
    ServerCartData,
    SyncChanges,
    SyncConflict,
    SyncMetadata,
    SyncStatus,
    SyncStrategy,
    TaxContext,
    utcnow,
)
from .totals import TotalsCalculator

logger = logging.getLogger(__name__)

# Returns the chosen quantity per item key; keys left out keep the merge_smart result
ConflictResolver = Callable[[list[SyncConflict]], Awaitable[dict[str, int]]]
QueueExecutor = Callable[[QueuedAction], Awaitable[Any]]
SyncRunner = Callable[[], Awaitable[Any]]
IdentityProvider = Callable[[], Optional[IdentityContext]]


class SyncObserver:
    """
    Receives sync lifecycle events.

    Subclass and override the events you care about. Events are delivered
    synchronously, in registration order, once per event.
    """

    def on_sync_start(self) -> None:
        pass

    def on_sync_complete(self, result: CartSyncResult) -> None:
        pass

    def on_sync_error(self, error: SyncError) -> None:
        pass

    def on_conflict_detected(self, conflicts: list[SyncConflict]) -> None:
        pass


def resolve_quantity(strategy: SyncStrategy, local_quantity: int, server_quantity: int) -> int:
    """Pick the merged quantity for a line both sides disagree on"""
    if strategy == SyncStrategy.LOCAL_WINS:
        return local_quantity
    if strategy == SyncStrategy.SERVER_WINS:
        return server_quantity
    if strategy == SyncStrategy.MERGE_QUANTITIES:
        return local_quantity + server_quantity
    # merge_smart, and prompt_user before the resolver answers
    return max(local_quantity, server_quantity)


def quantity_suggestion(strategy: SyncStrategy, local_quantity: int, server_quantity: int) -> str:
    resolved = resolve_quantity(strategy, local_quantity, server_quantity)
    if strategy == SyncStrategy.LOCAL_WINS:
        return f"Keep local quantity: {resolved}"
    if strategy == SyncStrategy.SERVER_WINS:
        return f"Use server quantity: {resolved}"
    if strategy == SyncStrategy.MERGE_QUANTITIES:
        return f"Add quantities: {resolved}"
    return f"Use higher quantity: {resolved}"


class CartSyncManager:
    """
    Cross-device cart synchronization.

    Usage:
        manager = CartSyncManager(settings.sync, transport, calculator)
        result = await manager.sync_cart(cart, identity)
        cart = result.merged_cart
    """

    def __init__(
        self,
        settings: SyncSettings,
        transport: CartTransport,
        calculator: TotalsCalculator,
        device_id: Optional[str] = None,
    ):
        self.settings = settings
        self.transport = transport
        self.calculator = calculator
        self.device_id = device_id or f"device_{uuid.uuid4().hex[:12]}"

        self._enabled = settings.enabled
        self._status = SyncStatus.IDLE
        self._last_sync_at = None
        self._online = True
        self._queue: deque[QueuedAction] = deque(maxlen=settings.offline_queue_size)
        self._observers: list[SyncObserver] = []
        self._resolver: Optional[ConflictResolver] = None
        self._locks: dict[str, asyncio.Lock] = {}

        self._background_task: Optional[asyncio.Task] = None
        self._runner: Optional[SyncRunner] = None
        self._identity_provider: Optional[IdentityProvider] = None

    # ==================== State ====================

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def last_sync_at(self):
        return self._last_sync_at

    @property
    def strategy(self) -> SyncStrategy:
        return self.settings.strategy

    def enable(self) -> None:
        """Enable cart synchronization"""
        self._enabled = True
        if self._runner and self._identity_provider:
            self.start_background_sync(self._runner, self._identity_provider)
        logger.info("Cart sync enabled")

    def disable(self) -> None:
        """Disable cart synchronization"""
        self._enabled = False
        self.stop_background_sync()
        logger.info("Cart sync disabled")

    # ==================== Observers ====================

    def add_observer(self, observer: SyncObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: SyncObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def set_conflict_resolver(self, resolver: Optional[ConflictResolver]) -> None:
        """Register the callback consulted by the prompt_user strategy"""
        self._resolver = resolver

    def _notify(self, event: str, *args) -> None:
        for observer in list(self._observers):
            handler = getattr(observer, event, None)
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Error in cart sync observer during {event}")

    # ==================== Sync ====================

    async def sync_cart(
        self,
        local_cart: Cart,
        identity: IdentityContext,
        tax_context: Optional[TaxContext] = None,
    ) -> CartSyncResult:
        """
        Synchronize the local cart with the server cart.

        The local cart is never modified. The merged cart is only
        returned when the whole attempt succeeded.

        Raises:
            SyncAuthError: identity is not authenticated
            SyncTransportError: server cart could not be fetched or uploaded
            MergeError: server cart has an unexpected shape
        """
        if not self._enabled:
            return CartSyncResult(success=True, status=SyncStatus.IDLE)

        if not identity.is_authenticated or not identity.user_id:
            raise SyncAuthError("User must be authenticated for cart synchronization")

        if identity.user_id not in self._locks:
            self._locks[identity.user_id] = asyncio.Lock()
        lock = self._locks[identity.user_id]
        async with lock:
            return await self._run_sync(local_cart, identity, tax_context)

    async def _run_sync(
        self,
        local_cart: Cart,
        identity: IdentityContext,
        tax_context: Optional[TaxContext],
    ) -> CartSyncResult:
        logger.info(f"Starting cart sync for user {identity.user_id}")
        self._status = SyncStatus.SYNCING
        self._notify("on_sync_start")

        try:
            server_data = await self.transport.get_server_cart(identity)

            if server_data is None:
                merged_cart = local_cart
                conflicts: list[SyncConflict] = []
                changes = SyncChanges()
                sync_version = 1
            else:
                merged_cart, conflicts, changes = await self._merge(local_cart, server_data.cart, tax_context)
                sync_version = server_data.metadata.sync_version + 1

            synced_at = utcnow()
            envelope = ServerCartData(
                cart=merged_cart,
                metadata=SyncMetadata(
                    device_id=self.device_id,
                    last_sync_at=synced_at,
                    sync_version=sync_version,
                    user_id=identity.user_id,
                    session_id=merged_cart.session_id,
                ),
            )
            await self.transport.put_server_cart(identity, envelope)

        except SyncError as e:
            self._fail(e)
            raise
        except (ValueError, TypeError, KeyError) as e:
            error = MergeError(f"Failed to merge carts: {e}")
            self._fail(error)
            raise error from e
        except Exception as e:
            error = SyncTransportError(f"Cart synchronization failed: {e}")
            self._fail(error)
            raise error from e

        result = CartSyncResult(
            success=True,
            status=SyncStatus.SYNCED,
            conflicts=conflicts,
            merged_cart=merged_cart,
            synced_at=synced_at,
            changes=changes,
        )

        self._status = SyncStatus.SYNCED
        self._last_sync_at = synced_at
        logger.info(
            f"Cart sync completed for user {identity.user_id} "
            f"({len(conflicts)} conflicts, {changes.items_added} items added)"
        )
        self._notify("on_sync_complete", result)
        return result

    def _fail(self, error: SyncError) -> None:
        self._status = SyncStatus.FAILED
        logger.error(f"Cart sync failed: {error.message}")
        self._notify("on_sync_error", error)

    # ==================== Merge ====================

    async def _merge(
        self,
        local_cart: Cart,
        server_cart: Cart,
        tax_context: Optional[TaxContext],
    ) -> tuple[Cart, list[SyncConflict], SyncChanges]:
        items, conflicts = self._merge_items(local_cart.items, server_cart.items)
        coupons, coupon_conflicts = self._merge_coupons(local_cart.applied_coupons, server_cart.applied_coupons)
        conflicts.extend(coupon_conflicts)

        if conflicts:
            self._status = SyncStatus.CONFLICT
            self._notify("on_conflict_detected", list(conflicts))

            if self.strategy == SyncStrategy.PROMPT_USER:
                items = await self._apply_user_resolution(items, conflicts)

        local_keys = {item.key: item for item in local_cart.items}
        merged_keys = {item.key for item in items}
        local_codes = {coupon.code for coupon in local_cart.applied_coupons}
        merged_codes = {coupon.code for coupon in coupons}

        changes = SyncChanges(
            items_added=sum(1 for item in items if item.key not in local_keys),
            items_updated=sum(
                1 for item in items
                if item.key in local_keys and local_keys[item.key].quantity != item.quantity
            ),
            items_removed=sum(1 for key in local_keys if key not in merged_keys),
            coupons_added=len(merged_codes - local_codes),
            coupons_removed=len(local_codes - merged_codes),
        )

        merged_cart = self.calculator.refresh(
            local_cart,
            items=items,
            applied_coupons=coupons,
            tax_context=tax_context,
        )
        return merged_cart, conflicts, changes

    def _merge_items(
        self,
        local_items: list[CartItem],
        server_items: list[CartItem],
    ) -> tuple[list[CartItem], list[SyncConflict]]:
        server_by_key = {item.key: item for item in server_items}
        merged: list[CartItem] = []
        conflicts: list[SyncConflict] = []

        for local_item in local_items:
            server_item = server_by_key.get(local_item.key)

            if server_item is None or server_item.quantity == local_item.quantity:
                merged.append(local_item)
                continue

            conflicts.append(
                SyncConflict(
                    type=ConflictType.ITEM_QUANTITY,
                    item_key=local_item.key,
                    local_value=local_item.quantity,
                    server_value=server_item.quantity,
                    message=f"Quantity mismatch for {local_item.name}",
                    suggestion=quantity_suggestion(self.strategy, local_item.quantity, server_item.quantity),
                )
            )
            resolved = resolve_quantity(self.strategy, local_item.quantity, server_item.quantity)
            merged.append(local_item.with_quantity(resolved))

        # Lines added on another device since the last sync
        local_keys = {item.key for item in local_items}
        merged.extend(item for item in server_items if item.key not in local_keys)

        return merged, conflicts

    def _merge_coupons(
        self,
        local_coupons: list[AppliedCoupon],
        server_coupons: list[AppliedCoupon],
    ) -> tuple[list[AppliedCoupon], list[SyncConflict]]:
        local_by_code = {coupon.code: coupon for coupon in local_coupons}
        merged = list(local_coupons)
        conflicts: list[SyncConflict] = []

        for server_coupon in server_coupons:
            local_coupon = local_by_code.get(server_coupon.code)
            if local_coupon is None:
                merged.append(server_coupon)
                continue

            if local_coupon != server_coupon:
                conflicts.append(
                    SyncConflict(
                        type=ConflictType.COUPON_CONFLICT,
                        local_value=local_coupon.model_dump(mode="json"),
                        server_value=server_coupon.model_dump(mode="json"),
                        message=f"Coupon {server_coupon.code} differs between devices",
                        suggestion="Keep local coupon",
                    )
                )

        return merged, conflicts

    async def _apply_user_resolution(
        self,
        items: list[CartItem],
        conflicts: list[SyncConflict],
    ) -> list[CartItem]:
        if self._resolver is None:
            logger.warning("No conflict resolver registered for prompt_user, using merge_smart")
            return items

        choices = await self._resolver(conflicts)
        conflict_keys = {c.item_key for c in conflicts if c.type == ConflictType.ITEM_QUANTITY}

        resolved: list[CartItem] = []
        for item in items:
            if item.key not in conflict_keys or item.key not in choices:
                resolved.append(item)
                continue

            quantity = choices[item.key]
            if not isinstance(quantity, int) or quantity < 0:
                raise MergeError(
                    f"Invalid resolved quantity {quantity!r} for item {item.key}",
                    details={"item_key": item.key},
                )
            if quantity > 0:
                resolved.append(item.with_quantity(quantity))

        return resolved

    # ==================== Offline queue ====================

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online != self._online:
            logger.info(f"Cart sync is now {'online' if online else 'offline'}")
        self._online = online

    @property
    def queued_actions(self) -> list[QueuedAction]:
        return list(self._queue)

    def queue_action(self, action: QueuedActionType, payload: dict[str, Any]) -> Optional[QueuedAction]:
        """
        Record a cart action taken while offline.

        Returns None when sync is disabled or the manager is online.
        """
        if not self._enabled or self._online:
            return None

        if len(self._queue) == self._queue.maxlen:
            evicted = self._queue[0]
            logger.warning(f"Offline queue full, dropping oldest action {evicted.action.value} ({evicted.id})")

        queued = QueuedAction(action=action, payload=payload)
        self._queue.append(queued)
        logger.debug(f"Queued offline action {action.value} ({queued.id})")
        return queued

    async def process_queue(self, executor: QueueExecutor) -> int:
        """
        Replay queued actions in order.

        A failed action is retried on the next replay until it has
        failed max_retries times, then it is dropped.

        Returns:
            Number of actions replayed successfully
        """
        if not self._queue:
            return 0

        pending = list(self._queue)
        self._queue.clear()

        retained: list[QueuedAction] = []
        processed = 0

        for queued in pending:
            try:
                await executor(queued)
                processed += 1
            except Exception as e:
                queued.retry_count += 1
                if queued.retry_count < self.settings.max_retries:
                    logger.warning(
                        f"Queued action {queued.action.value} failed "
                        f"(attempt {queued.retry_count}/{self.settings.max_retries}): {e}"
                    )
                    retained.append(queued)
                else:
                    logger.error(f"Dropping queued action {queued.action.value} after {queued.retry_count} attempts: {e}")

        # Actions queued during the replay stay behind the retained ones
        self._queue = deque(retained + list(self._queue), maxlen=self.settings.offline_queue_size)
        logger.info(f"Processed offline queue: {processed} replayed, {len(retained)} pending")
        return processed

    # ==================== Background sync ====================

    def start_background_sync(self, runner: SyncRunner, identity_provider: IdentityProvider) -> None:
        """Start periodic sync for authenticated identities"""
        self._runner = runner
        self._identity_provider = identity_provider

        if not self._enabled or not self.settings.background_sync:
            return
        if self._background_task and not self._background_task.done():
            return

        self._background_task = asyncio.create_task(self._background_loop())
        logger.info(f"Background cart sync started (every {self.settings.sync_interval_seconds}s)")

    def stop_background_sync(self) -> None:
        if self._background_task and not self._background_task.done():
            self._background_task.cancel()
            logger.info("Background cart sync stopped")

    async def _background_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sync_interval_seconds)

            identity = self._identity_provider() if self._identity_provider else None
            if identity is None or not identity.is_authenticated:
                continue

            try:
                await self._runner()
            except Exception:
                logger.exception("Background cart sync failed")

    async def close(self) -> None:
        """Stop background work and release observers"""
        task = self._background_task
        self.stop_background_sync()
        self._background_task = None
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._observers.clear()
        self._queue.clear()
