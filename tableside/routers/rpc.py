"""
Remote procedures on the device session table.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.deps import get_session_token
from tableside.core.exceptions import SessionAuthorizationError
from tableside.db.session import get_db
from tableside.schemas.device_session import (
    ChangeEvent,
    CleanupResponse,
    DeviceSessionRead,
    SessionChange,
    TransferMainRequest,
    TransferMainResponse,
)
from tableside.services.change_feed import ChangeFeed, get_change_feed
from tableside.services.device_session import DeviceSessionService

router = APIRouter()


@router.post("/transfer-main", response_model=TransferMainResponse)
async def transfer_main(
    payload: TransferMainRequest,
    auth_token: str = Depends(get_session_token),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> TransferMainResponse:
    """
    Atomically move main-device status to the caller's session.

    The caller authenticates as the receiving session. Returns
    ``transferred: false`` when the old session is no longer main, or the
    new session is not active at the same restaurant table.
    """
    try:
        DeviceSessionService.authorize(payload.new_session_token, auth_token)
    except SessionAuthorizationError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))

    rows = await DeviceSessionService.transfer_main(
        db, payload.old_session_token, payload.new_session_token
    )
    if rows is None:
        return TransferMainResponse(transferred=False)

    for row in rows:
        await feed.publish(SessionChange.of(ChangeEvent.UPDATE, DeviceSessionRead.model_validate(row)))
    return TransferMainResponse(transferred=True)


@router.post("/cleanup-expired", response_model=CleanupResponse)
async def cleanup_expired(
    db: AsyncSession = Depends(get_db),
) -> CleanupResponse:
    """
    Delete expired session rows. Safe to call at any time.
    """
    deleted = await DeviceSessionService.cleanup_expired(db)
    return CleanupResponse(deleted=deleted)
