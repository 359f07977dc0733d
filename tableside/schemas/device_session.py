"""
Pydantic schemas for device sessions.

This module defines the request and response schemas for the device
session table, the remote procedures and the change feed.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tableside.schemas.order import OrderLineItem


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DeviceSessionBase(BaseModel):
    """Base schema for device session data."""

    session_token: str = Field(..., min_length=1, max_length=512)
    device_ip: str = Field(..., min_length=1, max_length=255)
    restaurant_id: UUID
    table_number: str = Field(..., min_length=1, max_length=10)
    is_main_device: bool = False
    order_data: List[OrderLineItem] = Field(default_factory=list)


class DeviceSessionCreate(DeviceSessionBase):
    """Schema for creating a device session. The expiry is set by the server."""


class DeviceSessionUpdate(BaseModel):
    """Schema for patching a device session. Unset fields are left alone."""

    model_config = ConfigDict(extra="forbid")

    is_main_device: Optional[bool] = None
    order_data: Optional[List[OrderLineItem]] = None


class DeviceSessionRead(DeviceSessionBase):
    """Schema for device session response data."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_at: datetime
    expires_at: datetime
    last_activity: datetime

    @field_validator("created_at", "expires_at", "last_activity")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def is_active(self, now: datetime) -> bool:
        """A session is active until its expiry instant."""
        return now < self.expires_at


class TransferMainRequest(BaseModel):
    """Arguments of the ``transfer-main`` remote procedure."""

    old_session_token: str = Field(..., min_length=1)
    new_session_token: str = Field(..., min_length=1)


class TransferMainResponse(BaseModel):
    transferred: bool


class CleanupResponse(BaseModel):
    deleted: int


class ChangeEvent(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SessionChange(BaseModel):
    """A committed row change on a table's session rows."""

    event: ChangeEvent
    restaurant_id: UUID
    table_number: str
    session: DeviceSessionRead

    @classmethod
    def of(cls, event: ChangeEvent, session: DeviceSessionRead) -> "SessionChange":
        return cls(
            event=event,
            restaurant_id=session.restaurant_id,
            table_number=session.table_number,
            session=session,
        )
