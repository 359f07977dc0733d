"""
Cart relay.

Keeps the device's cart and mirrors every change, as a full snapshot,
into the main device's session row. After a takeover the cart is seeded
with the snapshot inherited from the previous main device, verbatim.
"""

from typing import List

from tableside.core.exceptions import InvalidOrderDataError
from tableside.core.logging import logger
from tableside.schemas.order import OrderData, OrderLineItem, validate_order_data
from tableside.services.coordinator import ActionResult, ErrorKind, Role, RoleChange, SessionCoordinator

# Role changes after which the device's own row holds the authoritative cart
_RESTORE_REASONS = {"resumed", "reclaimed"}


class CartRelay:
    """Local cart of one device, relayed through its coordinator."""

    def __init__(self, coordinator: SessionCoordinator):
        self._coordinator = coordinator
        self._items: List[OrderLineItem] = []
        self.pending_sync = False
        self._remove_listener = coordinator.add_listener(self._on_role_change)

    @property
    def items(self) -> OrderData:
        return list(self._items)

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self._items)

    @property
    def subtotal(self) -> float:
        return round(sum(item.line_total for item in self._items), 2)

    def guest_view(self) -> OrderData:
        """The main device's relayed cart, as seen from a guest device."""
        session = self._coordinator.session
        if self._coordinator.role != Role.GUEST or session is None:
            return []
        return list(session.order_data)

    async def add_item(self, item: OrderLineItem) -> ActionResult:
        """Add a line; an existing line for the same item gains its quantity."""
        items = list(self._items)
        for index, existing in enumerate(items):
            if existing.id == item.id:
                merged = existing.model_dump()
                merged["quantity"] = existing.quantity + item.quantity
                items[index] = merged
                break
        else:
            items.append(item)
        return await self._commit(items)

    async def remove_item(self, item_id: str) -> ActionResult:
        return await self._commit([item for item in self._items if item.id != item_id])

    async def set_quantity(self, item_id: str, quantity: int) -> ActionResult:
        """Change a line's quantity; zero or less removes the line."""
        if quantity <= 0:
            return await self.remove_item(item_id)
        items = [
            item.model_copy(update={"quantity": quantity}) if item.id == item_id else item
            for item in self._items
        ]
        return await self._commit([item.model_dump() for item in items])

    async def clear(self) -> ActionResult:
        return await self._commit([])

    async def replace(self, items: list) -> ActionResult:
        return await self._commit(list(items))

    async def flush(self) -> ActionResult:
        """Push the current cart again, e.g. after a failed relay."""
        return await self._commit(list(self._items))

    def close(self) -> None:
        self._remove_listener()

    async def _commit(self, raw_items: list) -> ActionResult:
        coordinator = self._coordinator
        if coordinator.role != Role.MAIN:
            return ActionResult.failure(
                coordinator.role,
                ErrorKind.INVALID_STATE,
                "The cart can only be changed on the main device",
            )
        try:
            snapshot = validate_order_data(raw_items)
        except InvalidOrderDataError as e:
            return ActionResult.failure(coordinator.role, ErrorKind.INVALID_ORDER_DATA, str(e))

        result = await coordinator.update_order_data(snapshot)
        if result.ok:
            self._items = snapshot
            self.pending_sync = False
        elif result.retryable:
            # Keep the local change; flush() or the next mutation relays it
            self._items = snapshot
            self.pending_sync = True
            logger.warning(f"Cart relay deferred: {result.message}")
        return result

    def _on_role_change(self, change: RoleChange) -> None:
        coordinator = self._coordinator
        if change.current == Role.MAIN and change.reason == "takeover":
            self._items = coordinator.inherited_order_data
            self.pending_sync = False
            logger.debug(f"Cart seeded with {len(self._items)} inherited line(s)")
        elif change.current == Role.MAIN and change.reason in _RESTORE_REASONS:
            session = coordinator.session
            if session is not None:
                self._items = list(session.order_data)
        elif change.current in (Role.GUEST, Role.ENDED):
            self._items = []
            self.pending_sync = False
