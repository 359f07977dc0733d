"""
Pydantic schemas for relayed cart snapshots.

A snapshot is an ordered list of line items. Snapshots are validated
whenever they cross a relay or backend boundary and rejected when
malformed.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from tableside.core.exceptions import InvalidOrderDataError


class OrderLineItem(BaseModel):
    """One cart line: a menu item and how many of it."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=100)
    price: float = Field(..., ge=0, le=10000)
    quantity: int = Field(..., ge=1, le=99)
    special_instructions: Optional[str] = Field(None, max_length=200)

    @property
    def line_total(self) -> float:
        return self.price * self.quantity


OrderData = List[OrderLineItem]

_order_data_adapter = TypeAdapter(OrderData)


def validate_order_data(raw: Any) -> OrderData:
    """
    Validate a cart snapshot.

    Args:
        raw: List of line items, as models or plain dicts

    Returns:
        The validated snapshot

    Raises:
        InvalidOrderDataError: If the snapshot is not a list of valid line items
    """
    if raw is None:
        raise InvalidOrderDataError("Order data must be a list, got None")
    if isinstance(raw, list):
        raw = [item.model_dump() if isinstance(item, OrderLineItem) else item for item in raw]
    try:
        return _order_data_adapter.validate_python(raw)
    except ValidationError as e:
        raise InvalidOrderDataError(f"Malformed order data: {e.error_count()} error(s)") from e


def dump_order_data(order_data: OrderData) -> List[dict]:
    """JSON-ready form of a snapshot, as stored in the session row."""
    return [item.model_dump(mode="json") for item in order_data]
