"""
Device session table endpoints.

Rows of a table are readable by anyone holding the table key; every write
must present the target row's own token in the session token header.
"""
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.deps import get_session_token
from tableside.core.exceptions import (
    SessionAuthorizationError,
    SessionConflictError,
    SessionNotFoundError,
)
from tableside.core.logging import logger
from tableside.db.session import get_db
from tableside.schemas.device_session import (
    ChangeEvent,
    DeviceSessionCreate,
    DeviceSessionRead,
    DeviceSessionUpdate,
    SessionChange,
)
from tableside.services.change_feed import ChangeFeed, get_change_feed
from tableside.services.device_session import DeviceSessionService

router = APIRouter()


@router.get("", response_model=List[DeviceSessionRead])
async def list_active_sessions(
    restaurant_id: UUID = Query(..., description="Restaurant ID"),
    table_number: str = Query(..., min_length=1, max_length=10, description="Table number"),
    db: AsyncSession = Depends(get_db),
) -> List[DeviceSessionRead]:
    """
    List the active sessions of a table, oldest first.

    Args:
        restaurant_id: Restaurant ID
        table_number: Table number
        db: Database session

    Returns:
        Active sessions ordered by creation time
    """
    rows = await DeviceSessionService.list_active(db, restaurant_id, table_number)
    return [DeviceSessionRead.model_validate(row) for row in rows]


@router.post("", response_model=DeviceSessionRead, status_code=status.HTTP_201_CREATED)
async def create_session(
    session_in: DeviceSessionCreate,
    auth_token: str = Depends(get_session_token),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> DeviceSessionRead:
    """
    Create a session row. The header token must equal the new row's token.
    """
    try:
        row = await DeviceSessionService.create(db, session_in, auth_token)
    except SessionAuthorizationError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except SessionConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    created = DeviceSessionRead.model_validate(row)
    await feed.publish(SessionChange.of(ChangeEvent.INSERT, created))
    return created


@router.patch("", response_model=DeviceSessionRead)
async def update_session(
    patch: DeviceSessionUpdate,
    session_token: str = Query(..., min_length=1),
    auth_token: str = Depends(get_session_token),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> DeviceSessionRead:
    """
    Patch an active session row owned by the caller.
    """
    try:
        row = await DeviceSessionService.update(db, session_token, patch, auth_token)
    except SessionAuthorizationError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    updated = DeviceSessionRead.model_validate(row)
    await feed.publish(SessionChange.of(ChangeEvent.UPDATE, updated))
    return updated


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(
    session_token: str = Query(..., min_length=1),
    auth_token: str = Depends(get_session_token),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> Response:
    """
    Delete the caller's own session row.
    """
    try:
        row = await DeviceSessionService.delete(db, session_token, auth_token)
    except SessionAuthorizationError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    await feed.publish(SessionChange.of(ChangeEvent.DELETE, DeviceSessionRead.model_validate(row)))
    logger.debug(f"Session {row.id} deleted by its owner")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
