"""
Service layer for device session rows.

This module holds the backend side of the session table: scoped queries,
the token-match write policy and the two remote procedures
(``transfer_main`` and ``cleanup_expired``). Every write is one database
transaction.
"""

import secrets
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.config import settings
from tableside.core.exceptions import (
    SessionAuthorizationError,
    SessionConflictError,
    SessionNotFoundError,
)
from tableside.core.logging import logger
from tableside.models.device_session import DeviceSession, utcnow
from tableside.schemas.device_session import DeviceSessionCreate, DeviceSessionUpdate
from tableside.schemas.order import dump_order_data


def session_duration() -> timedelta:
    return timedelta(hours=settings.session.duration_hours)


class DeviceSessionService:
    """Service class for device session operations."""

    @staticmethod
    def authorize(session_token: str, auth_token: Optional[str]) -> None:
        """
        Enforce the write policy: a row may only be written by presenting its own token.

        Raises:
            SessionAuthorizationError: If the token is missing or does not match
        """
        if not auth_token or not secrets.compare_digest(
            session_token.encode("utf-8"), auth_token.encode("utf-8")
        ):
            logger.warning(f"Rejected write on session {session_token[:10]}...: token mismatch")
            raise SessionAuthorizationError("Session token does not match the target session")

    @staticmethod
    async def list_active(
        db: AsyncSession,
        restaurant_id: UUID,
        table_number: str,
        now: Optional[datetime] = None,
    ) -> List[DeviceSession]:
        """
        Get the active sessions of a table, oldest first.

        Args:
            db: Database session
            restaurant_id: Restaurant ID
            table_number: Table number within the restaurant
            now: Reference instant for expiry

        Returns:
            Sessions with ``expires_at > now`` ordered by creation time
        """
        now = now or utcnow()
        logger.debug(f"Listing active sessions for table {restaurant_id}/{table_number}")

        result = await db.execute(
            select(DeviceSession)
            .where(
                DeviceSession.restaurant_id == restaurant_id,
                DeviceSession.table_number == table_number,
                DeviceSession.expires_at > now,
            )
            .order_by(DeviceSession.created_at.asc(), DeviceSession.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_by_token(
        db: AsyncSession,
        session_token: str,
    ) -> Optional[DeviceSession]:
        # Bulk updates bypass the identity map; always load the committed state
        result = await db.execute(
            select(DeviceSession)
            .where(DeviceSession.session_token == session_token)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def create(
        db: AsyncSession,
        session_in: DeviceSessionCreate,
        auth_token: Optional[str],
        now: Optional[datetime] = None,
    ) -> DeviceSession:
        """
        Create a device session.

        Args:
            db: Database session
            session_in: Session creation data
            auth_token: Token presented by the caller, must equal the new row's token
            now: Creation instant

        Returns:
            Created session

        Raises:
            SessionAuthorizationError: If the caller is not creating its own row
            SessionConflictError: If the token is already in use
        """
        DeviceSessionService.authorize(session_in.session_token, auth_token)
        now = now or utcnow()

        device_session = DeviceSession(
            session_token=session_in.session_token,
            device_ip=session_in.device_ip,
            restaurant_id=session_in.restaurant_id,
            table_number=session_in.table_number,
            is_main_device=session_in.is_main_device,
            order_data=dump_order_data(session_in.order_data),
            created_at=now,
            last_activity=now,
            expires_at=now + session_duration(),
        )
        db.add(device_session)
        try:
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            logger.warning(f"Duplicate session token rejected: {session_in.session_token[:10]}...")
            raise SessionConflictError("Session token already in use") from e
        await db.refresh(device_session)

        logger.info(
            f"Created session {device_session.id} for table "
            f"{device_session.restaurant_id}/{device_session.table_number} "
            f"(main={device_session.is_main_device})"
        )
        return device_session

    @staticmethod
    async def update(
        db: AsyncSession,
        session_token: str,
        patch: DeviceSessionUpdate,
        auth_token: Optional[str],
        now: Optional[datetime] = None,
    ) -> DeviceSession:
        """
        Patch an active session and stamp its last activity.

        Raises:
            SessionAuthorizationError: If the caller does not own the row
            SessionNotFoundError: If no active row has this token
        """
        DeviceSessionService.authorize(session_token, auth_token)
        now = now or utcnow()

        device_session = await DeviceSessionService.get_by_token(db, session_token)
        if device_session is None or not _is_active(device_session, now):
            raise SessionNotFoundError("Session not found or expired")

        update_data = patch.model_dump(exclude_unset=True)
        if "order_data" in update_data and patch.order_data is not None:
            device_session.order_data = dump_order_data(patch.order_data)
        if update_data.get("is_main_device") is not None:
            device_session.is_main_device = patch.is_main_device
        device_session.last_activity = now

        await db.commit()
        await db.refresh(device_session)

        logger.debug(f"Updated session {device_session.id}: {sorted(update_data)}")
        return device_session

    @staticmethod
    async def delete(
        db: AsyncSession,
        session_token: str,
        auth_token: Optional[str],
    ) -> DeviceSession:
        """
        Delete a session. A device may only delete its own row.

        Returns:
            The deleted row, detached

        Raises:
            SessionAuthorizationError: If the caller does not own the row
            SessionNotFoundError: If no row has this token
        """
        DeviceSessionService.authorize(session_token, auth_token)

        device_session = await DeviceSessionService.get_by_token(db, session_token)
        if device_session is None:
            raise SessionNotFoundError("Session not found")

        await db.delete(device_session)
        await db.commit()

        logger.info(f"Deleted session {device_session.id}")
        return device_session

    @staticmethod
    async def transfer_main(
        db: AsyncSession,
        old_session_token: str,
        new_session_token: str,
        now: Optional[datetime] = None,
    ) -> Optional[Tuple[DeviceSession, DeviceSession]]:
        """
        Move main-device status from one active row to another in one transaction.

        The demotion is conditional on the old row still being main, so of
        two concurrent transfers away from the same row only one commits.
        The new row must sit at the same restaurant table, and it receives
        the old row's order data as read under the demotion's row lock.

        Args:
            db: Database session
            old_session_token: Token of the current main row
            new_session_token: Token of the row that becomes main
            now: Reference instant for expiry

        Returns:
            ``(old_row, new_row)`` after the transfer, or None if nothing changed
        """
        if old_session_token == new_session_token:
            return None
        now = now or utcnow()

        demoted = await db.execute(
            update(DeviceSession)
            .where(
                DeviceSession.session_token == old_session_token,
                DeviceSession.is_main_device.is_(True),
                DeviceSession.expires_at > now,
            )
            .values(is_main_device=False, last_activity=now)
            .execution_options(synchronize_session=False)
        )
        if demoted.rowcount != 1:
            await db.rollback()
            logger.info(f"Transfer refused: {old_session_token[:10]}... is no longer main")
            return None

        # Read after the demotion so the cart reflects the last write made while main
        source = await db.execute(
            select(DeviceSession.restaurant_id, DeviceSession.table_number, DeviceSession.order_data)
            .where(DeviceSession.session_token == old_session_token)
        )
        restaurant_id, table_number, order_data = source.one()

        promoted = await db.execute(
            update(DeviceSession)
            .where(
                DeviceSession.session_token == new_session_token,
                DeviceSession.restaurant_id == restaurant_id,
                DeviceSession.table_number == table_number,
                DeviceSession.expires_at > now,
            )
            .values(is_main_device=True, last_activity=now, order_data=order_data)
            .execution_options(synchronize_session=False)
        )
        if promoted.rowcount != 1:
            await db.rollback()
            logger.info(
                f"Transfer refused: {new_session_token[:10]}... is not an active session "
                f"at table {table_number}"
            )
            return None

        await db.commit()

        old_row = await DeviceSessionService.get_by_token(db, old_session_token)
        new_row = await DeviceSessionService.get_by_token(db, new_session_token)
        if old_row is None or new_row is None:
            # Committed, but a concurrent delete removed one of the rows
            return None

        logger.info(f"Transferred main device from {old_row.id} to {new_row.id}")
        return old_row, new_row

    @staticmethod
    async def count_active(
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utcnow()
        result = await db.execute(
            select(func.count()).select_from(DeviceSession).where(DeviceSession.expires_at > now)
        )
        return result.scalar_one()

    @staticmethod
    async def cleanup_expired(
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Delete every expired session.

        Returns:
            Number of rows removed
        """
        now = now or utcnow()
        result = await db.execute(
            delete(DeviceSession)
            .where(DeviceSession.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        if result.rowcount:
            logger.info(f"Cleaned up {result.rowcount} expired session(s)")
        return result.rowcount or 0


def _is_active(device_session: DeviceSession, now: datetime) -> bool:
    expires_at = device_session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=now.tzinfo)
    return now < expires_at
