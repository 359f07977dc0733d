"""
Schemas package initialization.

This module imports all schemas to make them available from a single import point.
"""

from tableside.schemas.order import (
    OrderLineItem,
    OrderData,
    validate_order_data,
    dump_order_data,
)
from tableside.schemas.device_session import (
    DeviceSessionBase,
    DeviceSessionCreate,
    DeviceSessionUpdate,
    DeviceSessionRead,
    TransferMainRequest,
    TransferMainResponse,
    CleanupResponse,
    ChangeEvent,
    SessionChange,
)

__all__ = [
    "OrderLineItem",
    "OrderData",
    "validate_order_data",
    "dump_order_data",
    "DeviceSessionBase",
    "DeviceSessionCreate",
    "DeviceSessionUpdate",
    "DeviceSessionRead",
    "TransferMainRequest",
    "TransferMainResponse",
    "CleanupResponse",
    "ChangeEvent",
    "SessionChange",
]
