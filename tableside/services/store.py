"""
Session store adapters.

Typed access to the shared ``device_sessions`` table, scoped by
restaurant and table. Every write carries the caller's session token as
its credential. Backend failures surface as ``StoreUnavailableError`` and
are never reported as an empty table.
"""

import abc
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, List, Optional
from uuid import UUID

import httpx
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tableside.core.config import settings
from tableside.core.exceptions import (
    InvalidOrderDataError,
    SessionAuthorizationError,
    SessionConflictError,
    SessionNotFoundError,
    StoreError,
    StoreUnavailableError,
)
from tableside.core.logging import logger
from tableside.models.device_session import utcnow
from tableside.schemas.device_session import (
    ChangeEvent,
    DeviceSessionCreate,
    DeviceSessionRead,
    DeviceSessionUpdate,
    SessionChange,
    TransferMainRequest,
)
from tableside.services.change_feed import ChangeFeed
from tableside.services.device_session import DeviceSessionService


class SessionStore(abc.ABC):
    """Operations the coordinator needs from the shared session table."""

    @abc.abstractmethod
    async def list_active(self, restaurant_id: UUID, table_number: str) -> List[DeviceSessionRead]: ...

    @abc.abstractmethod
    async def insert(self, session: DeviceSessionCreate, auth_token: str) -> DeviceSessionRead: ...

    @abc.abstractmethod
    async def update(
        self,
        session_token: str,
        patch: DeviceSessionUpdate,
        auth_token: str,
    ) -> DeviceSessionRead: ...

    @abc.abstractmethod
    async def delete(self, session_token: str, auth_token: str) -> None: ...

    @abc.abstractmethod
    async def transfer_main(self, old_session_token: str, new_session_token: str) -> bool: ...

    @abc.abstractmethod
    async def cleanup_expired(self) -> None: ...


class SqlSessionStore(SessionStore):
    """
    Store that talks to the database directly through ``DeviceSessionService``.

    Each call runs in its own ``AsyncSession``; committed writes are
    published on the change feed when one is configured.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        change_feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._change_feed = change_feed
        self._clock = clock

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                yield db
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Session store unavailable: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def _publish(self, event: ChangeEvent, row: DeviceSessionRead) -> None:
        if self._change_feed is None:
            return
        try:
            await self._change_feed.publish(SessionChange.of(event, row))
        except Exception as e:
            # The write is committed; subscribers catch up on their next reconcile
            logger.error(f"Failed to publish {event.value} for session {row.id}: {e}")

    async def list_active(self, restaurant_id: UUID, table_number: str) -> List[DeviceSessionRead]:
        async with self._db() as db:
            rows = await DeviceSessionService.list_active(db, restaurant_id, table_number, now=self._clock())
            return [DeviceSessionRead.model_validate(row) for row in rows]

    async def insert(self, session: DeviceSessionCreate, auth_token: str) -> DeviceSessionRead:
        async with self._db() as db:
            row = await DeviceSessionService.create(db, session, auth_token, now=self._clock())
            created = DeviceSessionRead.model_validate(row)
        await self._publish(ChangeEvent.INSERT, created)
        return created

    async def update(
        self,
        session_token: str,
        patch: DeviceSessionUpdate,
        auth_token: str,
    ) -> DeviceSessionRead:
        async with self._db() as db:
            row = await DeviceSessionService.update(db, session_token, patch, auth_token, now=self._clock())
            updated = DeviceSessionRead.model_validate(row)
        await self._publish(ChangeEvent.UPDATE, updated)
        return updated

    async def delete(self, session_token: str, auth_token: str) -> None:
        async with self._db() as db:
            row = await DeviceSessionService.delete(db, session_token, auth_token)
            deleted = DeviceSessionRead.model_validate(row)
        await self._publish(ChangeEvent.DELETE, deleted)

    async def transfer_main(self, old_session_token: str, new_session_token: str) -> bool:
        async with self._db() as db:
            rows = await DeviceSessionService.transfer_main(
                db, old_session_token, new_session_token, now=self._clock()
            )
            if rows is None:
                return False
            old_row, new_row = (DeviceSessionRead.model_validate(row) for row in rows)
        await self._publish(ChangeEvent.UPDATE, old_row)
        await self._publish(ChangeEvent.UPDATE, new_row)
        return True

    async def cleanup_expired(self) -> None:
        try:
            async with self._db() as db:
                await DeviceSessionService.cleanup_expired(db, now=self._clock())
        except StoreUnavailableError as e:
            # Election filters on expires_at, physical deletion is optional
            logger.warning(f"Expired session cleanup failed: {e}")


class RestSessionStore(SessionStore):
    """
    Store that talks to the session HTTP API.

    The caller's token goes into the configured header on each request;
    the client itself carries no session state.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_header: Optional[str] = None,
        prefix: str = "/api",
    ):
        self._client = client
        self._token_header = token_header or settings.session.token_header
        self._sessions_url = f"{prefix}/device-sessions"
        self._rpc_url = f"{prefix}/rpc"

    async def _request(
        self,
        method: str,
        url: str,
        auth_token: Optional[str] = None,
        **kwargs,
    ) -> httpx.Response:
        headers = {self._token_header: auth_token} if auth_token else None
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Session store unavailable: {method} {url}: {e!r}")
            raise StoreUnavailableError(f"{method} {url} failed: {e}") from e
        self._raise_for_status(response)
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status_code = response.status_code
        if status_code < 400:
            return
        detail = _error_detail(response)
        if status_code in (401, 403):
            raise SessionAuthorizationError(detail)
        if status_code == 404:
            raise SessionNotFoundError(detail)
        if status_code == 409:
            raise SessionConflictError(detail)
        if status_code == 422 and "order_data" in detail:
            raise InvalidOrderDataError(detail)
        if status_code >= 500:
            raise StoreUnavailableError(f"Backend error {status_code}: {detail}")
        raise StoreError(f"Request rejected with {status_code}: {detail}")

    @staticmethod
    def _parse_row(response: httpx.Response) -> DeviceSessionRead:
        try:
            return DeviceSessionRead.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise StoreError(f"Malformed session row from backend: {e}") from e

    async def list_active(self, restaurant_id: UUID, table_number: str) -> List[DeviceSessionRead]:
        response = await self._request(
            "GET",
            self._sessions_url,
            params={"restaurant_id": str(restaurant_id), "table_number": table_number},
        )
        try:
            return [DeviceSessionRead.model_validate(row) for row in response.json()]
        except (ValueError, TypeError, ValidationError) as e:
            raise StoreError(f"Malformed session list from backend: {e}") from e

    async def insert(self, session: DeviceSessionCreate, auth_token: str) -> DeviceSessionRead:
        response = await self._request(
            "POST",
            self._sessions_url,
            auth_token=auth_token,
            json=session.model_dump(mode="json", exclude_none=True),
        )
        return self._parse_row(response)

    async def update(
        self,
        session_token: str,
        patch: DeviceSessionUpdate,
        auth_token: str,
    ) -> DeviceSessionRead:
        response = await self._request(
            "PATCH",
            self._sessions_url,
            auth_token=auth_token,
            params={"session_token": session_token},
            json=patch.model_dump(mode="json", exclude_unset=True),
        )
        return self._parse_row(response)

    async def delete(self, session_token: str, auth_token: str) -> None:
        await self._request(
            "DELETE",
            self._sessions_url,
            auth_token=auth_token,
            params={"session_token": session_token},
        )

    async def transfer_main(self, old_session_token: str, new_session_token: str) -> bool:
        payload = TransferMainRequest(
            old_session_token=old_session_token,
            new_session_token=new_session_token,
        )
        response = await self._request(
            "POST",
            f"{self._rpc_url}/transfer-main",
            auth_token=new_session_token,
            json=payload.model_dump(),
        )
        try:
            return bool(response.json()["transferred"])
        except (ValueError, KeyError, TypeError) as e:
            raise StoreError(f"Malformed transfer response from backend: {e}") from e

    async def cleanup_expired(self) -> None:
        try:
            await self._request("POST", f"{self._rpc_url}/cleanup-expired")
        except StoreError as e:
            logger.warning(f"Expired session cleanup failed: {e}")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)
