"""
Device session model.

One row per device claim on a restaurant table for a bounded time window.
At most one active row per (restaurant_id, table_number) holds
``is_main_device``.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, JSON, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from tableside.models.base import Base


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class DeviceSession(Base):
    """
    Device session model for table-level ordering authority.

    ``session_token`` doubles as lookup key and as the write credential the
    authorization policy checks on every mutating call.
    """

    __tablename__ = "device_sessions"
    __table_args__ = (
        Index("ix_device_sessions_table", "restaurant_id", "table_number"),
        Index("ix_device_sessions_expires_at", "expires_at"),
    )

    id = Column(Uuid(as_uuid=True), default=uuid.uuid4, primary_key=True)
    session_token = Column(String(512), nullable=False, unique=True)
    device_ip = Column(String(255), nullable=False)
    restaurant_id = Column(Uuid(as_uuid=True), nullable=False)
    table_number = Column(String(10), nullable=False)
    is_main_device = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_activity = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    order_data = Column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=list,
    )

    def __repr__(self) -> str:
        """String representation of the DeviceSession model."""
        return (
            f"<DeviceSession(id={self.id}, table={self.restaurant_id}/{self.table_number}, "
            f"main={self.is_main_device}, token={self.session_token[:10]}...)>"
        )
