"""
Device session coordinator.

One coordinator per device per table. It decides whether this device is
the table's main device (allowed to order) or a guest, persists that
decision in the shared session table, performs takeovers and tracks
expiry.

Roles::

    UNINITIALIZED -> RESOLVING -> MAIN | GUEST -> ENDED
    GUEST -> MAIN   (takeover)
    MAIN  -> GUEST  (another device took over)

All public operations return an ``ActionResult`` instead of raising store
errors. Operations of one coordinator are serialized by a lock; change
feed events and reconciliation polls go through the same lock.
"""

import asyncio
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel

from tableside.core.config import settings
from tableside.core.exceptions import (
    InvalidOrderDataError,
    SessionAuthorizationError,
    SessionConflictError,
    SessionNotFoundError,
    StoreError,
    StoreUnavailableError,
    TablesideError,
)
from tableside.core.logging import logger
from tableside.models.device_session import utcnow
from tableside.schemas.device_session import (
    ChangeEvent,
    DeviceSessionCreate,
    DeviceSessionRead,
    DeviceSessionUpdate,
    SessionChange,
)
from tableside.schemas.order import OrderData, validate_order_data
from tableside.services.change_feed import ChangeFeed, Subscription
from tableside.services.identity import DeviceIdentity, DeviceIdentityProvider
from tableside.services.store import SessionStore


class Role(str, Enum):
    UNINITIALIZED = "uninitialized"
    RESOLVING = "resolving"
    MAIN = "main"
    GUEST = "guest"
    ENDED = "ended"


class ErrorKind(str, Enum):
    STORE_UNAVAILABLE = "store_unavailable"
    STORE_ERROR = "store_error"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_STATE = "invalid_state"
    INVALID_ORDER_DATA = "invalid_order_data"


class ActionResult(BaseModel):
    """Tagged outcome of a coordinator operation."""

    ok: bool
    role: Role
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    retryable: bool = False

    @classmethod
    def success(cls, role: Role) -> "ActionResult":
        return cls(ok=True, role=role)

    @classmethod
    def failure(
        cls,
        role: Role,
        error: ErrorKind,
        message: str,
        retryable: bool = False,
    ) -> "ActionResult":
        return cls(ok=False, role=role, error=error, message=message, retryable=retryable)


class RoleChange(BaseModel):
    previous: Role
    current: Role
    reason: str


RoleListener = Callable[[RoleChange], Any]


def classify_error(exc: TablesideError) -> Tuple[ErrorKind, bool]:
    """Map an exception to ``(error kind, retryable)``."""
    if isinstance(exc, StoreUnavailableError):
        return ErrorKind.STORE_UNAVAILABLE, True
    if isinstance(exc, SessionAuthorizationError):
        return ErrorKind.AUTHORIZATION, False
    if isinstance(exc, SessionNotFoundError):
        return ErrorKind.NOT_FOUND, False
    if isinstance(exc, SessionConflictError):
        return ErrorKind.CONFLICT, True
    if isinstance(exc, InvalidOrderDataError):
        return ErrorKind.INVALID_ORDER_DATA, False
    return ErrorKind.STORE_ERROR, False


def _sort_key(row: DeviceSessionRead) -> Tuple[datetime, str]:
    return row.created_at, str(row.id)


class SessionCoordinator:
    """
    Main/guest election and handoff for one device at one table.

    Presentation reads ``role``, ``session``, ``device_identity`` and
    ``loading`` and registers listeners for role changes. ``session`` is
    this device's own row while MAIN and the main device's row while GUEST.
    """

    def __init__(
        self,
        store: SessionStore,
        identity_provider: DeviceIdentityProvider,
        change_feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utcnow,
        warning_threshold: Optional[timedelta] = None,
    ):
        self._store = store
        self._identity_provider = identity_provider
        self._change_feed = change_feed
        self._clock = clock
        self._warning_threshold = warning_threshold or timedelta(minutes=settings.session.warning_minutes)

        self.role: Role = Role.UNINITIALIZED
        self.session: Optional[DeviceSessionRead] = None
        self.device_identity: Optional[DeviceIdentity] = None
        self.loading: bool = False
        self.last_error: Optional[ActionResult] = None
        self.restaurant_id: Optional[UUID] = None
        self.table_number: Optional[str] = None

        self._token: Optional[str] = None
        self._identity_token_used = False
        self._inherited_order_data: OrderData = []
        self._seen: Dict[UUID, datetime] = {}
        self._lock = asyncio.Lock()
        self._listeners: List[RoleListener] = []
        self._subscription: Optional[Subscription] = None
        self._reconcile_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ #
    # State accessors
    # ------------------------------------------------------------------ #

    @property
    def session_token(self) -> Optional[str]:
        """Token of this device's own row, if it has one."""
        return self._token

    @property
    def is_main_device(self) -> bool:
        return self.role == Role.MAIN

    @property
    def inherited_order_data(self) -> OrderData:
        """Snapshot taken over from the previous main device on the last takeover."""
        return list(self._inherited_order_data)

    def add_listener(self, listener: RoleListener) -> Callable[[], None]:
        """Register a role-change listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def get_time_left(self) -> int:
        """Whole seconds until the displayed session expires, never negative."""
        if self.session is None:
            return 0
        remaining = (self.session.expires_at - self._clock()).total_seconds()
        return max(0, math.floor(remaining))

    def is_expiring_soon(self) -> bool:
        time_left = self.get_time_left()
        return 0 < time_left <= self._warning_threshold.total_seconds()

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    async def initialize(self, restaurant_id: UUID, table_number: str) -> ActionResult:
        """
        Elect this device as main or guest for a table.

        Store failures leave the coordinator UNINITIALIZED with a retryable
        error; no role is assumed.
        """
        async with self._lock:
            if (restaurant_id, table_number) != (self.restaurant_id, self.table_number):
                await self._release_subscription()
                if self._token is not None:
                    # A device sits at one table at a time
                    await self._discard_row(self._token)
                self._token = None
                self._seen.clear()
            self.restaurant_id = restaurant_id
            self.table_number = table_number

            self.loading = True
            self._set_role(Role.RESOLVING, "initialize")
            try:
                if self.device_identity is None:
                    self.device_identity = await self._identity_provider.resolve_identity()
                await self._store.cleanup_expired()
                rows = await self._store.list_active(restaurant_id, table_number)
                result = await self._elect(rows)
            except StoreError as e:
                logger.error(f"Initialization failed for table {restaurant_id}/{table_number}: {e}")
                self.session = None
                self._set_role(Role.UNINITIALIZED, "initialize_failed")
                return self._failure(e)
            finally:
                self.loading = False

            await self._ensure_subscription()
            return result

    async def take_over(self) -> ActionResult:
        """
        Take main-device status from the current main device.

        On any failure the device stays GUEST and its provisional row is
        removed. On success any earlier row of this device is removed.
        """
        async with self._lock:
            if self.role != Role.GUEST or self.device_identity is None:
                return self._reject(f"Takeover is only possible as guest, current role is {self.role.value}")

            superseded = self._token
            result = await self._take_over_locked()
            if result.ok and superseded is not None and superseded != self._token:
                await self._discard_row(superseded)
            return result

    async def _take_over_locked(self) -> ActionResult:
        token = self._identity_provider.mint_session_token(self.device_identity.device_ip)
        try:
            own = await self._store.insert(self._new_row(token, is_main=False), auth_token=token)
            self._remember(own)
        except StoreError as e:
            logger.error(f"Takeover failed creating session row: {e}")
            return self._failure(e)

        try:
            rows = await self._store.list_active(self.restaurant_id, self.table_number)
            main = self._authoritative_main(rows, exclude_token=token)
            if main is None:
                return await self._self_promote(own)
            transferred = await self._store.transfer_main(main.session_token, token)
            if not transferred:
                rows = await self._store.list_active(self.restaurant_id, self.table_number)
                if self._authoritative_main(rows, exclude_token=token) is None:
                    # The main session ended or expired in between
                    return await self._self_promote(own)
        except StoreError as e:
            logger.error(f"Takeover failed: {e}")
            await self._discard_row(token)
            return self._failure(e)

        if not transferred:
            logger.info(f"Takeover lost: session {main.id} is no longer main")
            await self._discard_row(token)
            return self._fail(ErrorKind.CONFLICT, "Another device changed the main session first", retryable=True)

        self._token = token
        try:
            rows = await self._store.list_active(self.restaurant_id, self.table_number)
        except StoreError as e:
            logger.warning(f"Took over main but could not reload the transferred cart: {e}")
            rows = []
        for row in rows:
            self._remember(row)
        # The transfer copied the cart as it stood when main status moved
        promoted = self._own_row(rows) or own.model_copy(
            update={"is_main_device": True, "order_data": list(main.order_data)}
        )
        self._inherited_order_data = list(promoted.order_data)
        self._become_main(promoted, "takeover")
        return ActionResult.success(self.role)

    async def update_order_data(self, order_data: Iterable[Any]) -> ActionResult:
        """Persist the full cart snapshot to this device's row. MAIN only."""
        async with self._lock:
            if self.role != Role.MAIN or self._token is None:
                return self._reject(f"Only the main device can update order data, current role is {self.role.value}")
            try:
                snapshot = validate_order_data(list(order_data))
            except InvalidOrderDataError as e:
                return self._failure(e)

            try:
                updated = await self._store.update(
                    self._token,
                    DeviceSessionUpdate(order_data=snapshot),
                    auth_token=self._token,
                )
            except SessionNotFoundError as e:
                self._end_locally("expired" if self.get_time_left() == 0 else "removed")
                await self._release_subscription()
                return self._failure(e)
            except (StoreError, InvalidOrderDataError) as e:
                return self._failure(e)

            self._remember(updated)
            if not updated.is_main_device:
                logger.info(f"Session {updated.id} was demoted before the order update")
                await self._demoted()
                return self._reject("This device is no longer the main device")

            self.session = updated
            return ActionResult.success(self.role)

    async def end_session(self) -> ActionResult:
        """
        Leave the table. Deletes this device's own row only; the coordinator
        is ENDED even if the delete fails.
        """
        async with self._lock:
            result = ActionResult.success(Role.ENDED)
            if self._token is not None:
                try:
                    await self._store.delete(self._token, auth_token=self._token)
                except SessionNotFoundError:
                    logger.debug("Session row already gone at end of session")
                except StoreError as e:
                    logger.warning(f"Could not delete session row at end of session: {e}")
                    kind, retryable = classify_error(e)
                    result = ActionResult.failure(Role.ENDED, kind, str(e), retryable)
            self._end_locally("ended")
            await self._teardown()
            return result

    async def check_expiry(self) -> bool:
        """End the session if the displayed session has expired. Returns True if it did."""
        async with self._lock:
            if self.role not in (Role.MAIN, Role.GUEST) or self.session is None:
                return False
            if self.get_time_left() > 0:
                return False
            logger.info(f"Session for table {self.restaurant_id}/{self.table_number} expired")
            self._end_locally("expired")
            await self._teardown()
            return True

    async def reconcile(self) -> ActionResult:
        """Re-read the table and correct local state (safety net for missed events)."""
        async with self._lock:
            if self.role not in (Role.MAIN, Role.GUEST):
                return ActionResult.success(self.role)
            try:
                await self._reconcile_locked()
            except StoreError as e:
                logger.warning(f"Reconciliation failed: {e}")
                return self._failure(e)
            return ActionResult.success(self.role)

    def start(self, interval: Optional[float] = None) -> None:
        """Start the periodic expiry check and reconciliation poll."""
        if self._reconcile_task is not None and not self._reconcile_task.done():
            return
        interval = interval or settings.session.reconcile_interval_seconds
        self._reconcile_task = asyncio.get_running_loop().create_task(self._reconcile_loop(interval))

    async def close(self) -> None:
        """Stop background work and release the change feed subscription."""
        await self._teardown()

    # ------------------------------------------------------------------ #
    # Election
    # ------------------------------------------------------------------ #

    async def _elect(self, rows: List[DeviceSessionRead]) -> ActionResult:
        main = self._authoritative_main(rows)
        identity = self.device_identity

        if main is not None:
            if self._token is not None and main.session_token == self._token:
                self._become_main(main, "resumed")
                return ActionResult.success(self.role)
            if main.device_ip != identity.device_ip or self._token is not None:
                self._become_guest(main, "main_elsewhere")
                return ActionResult.success(self.role)
            # Same device identity without a token of its own: a reconnect
            logger.info(f"Reclaiming main session {main.id} for reconnecting device {identity.device_ip}")
            self._token = main.session_token
            self._become_main(main, "reclaimed")
            return ActionResult.success(self.role)

        own = self._own_row(rows)
        if own is not None:
            claimed = await self._store.update(
                own.session_token,
                DeviceSessionUpdate(is_main_device=True),
                auth_token=own.session_token,
            )
        else:
            token = self._next_token()
            claimed = await self._store.insert(self._new_row(token, is_main=True), auth_token=token)
            self._token = token
        self._remember(claimed)

        won, winner, latest = await self._verify_claim(claimed)
        if won:
            self._become_main(latest, "elected")
            return ActionResult.success(self.role)

        logger.warning(f"Lost concurrent election to session {winner.id}, demoting {claimed.id}")
        demoted = await self._store.update(
            claimed.session_token,
            DeviceSessionUpdate(is_main_device=False),
            auth_token=claimed.session_token,
        )
        self._remember(demoted)
        self._become_guest(winner, "lost_election")
        return ActionResult.success(self.role)

    async def _self_promote(self, own: DeviceSessionRead) -> ActionResult:
        logger.info(f"No main session left on table {self.restaurant_id}/{self.table_number}, self-promoting")
        token = own.session_token
        promoted = await self._store.update(token, DeviceSessionUpdate(is_main_device=True), auth_token=token)
        self._remember(promoted)

        won, winner, latest = await self._verify_claim(promoted)
        if not won:
            logger.warning(f"Self-promotion lost to session {winner.id}")
            await self._discard_row(token)
            self.session = winner
            return self._fail(ErrorKind.CONFLICT, "Another device became main first", retryable=True)

        self._token = token
        self._inherited_order_data = []
        self._become_main(latest, "takeover")
        return ActionResult.success(self.role)

    async def _verify_claim(
        self, claimed: DeviceSessionRead
    ) -> Tuple[bool, Optional[DeviceSessionRead], DeviceSessionRead]:
        """Re-read the table after claiming main; the earliest main row wins."""
        rows = await self._store.list_active(self.restaurant_id, self.table_number)
        latest = next((row for row in rows if row.session_token == claimed.session_token), claimed)
        winner = self._authoritative_main(rows)
        if winner is None or winner.session_token == claimed.session_token:
            return True, winner, latest
        return False, winner, latest

    def _authoritative_main(
        self,
        rows: Iterable[DeviceSessionRead],
        exclude_token: Optional[str] = None,
    ) -> Optional[DeviceSessionRead]:
        now = self._clock()
        mains = sorted(
            (
                row for row in rows
                if row.is_main_device and row.is_active(now) and row.session_token != exclude_token
            ),
            key=_sort_key,
        )
        if len(mains) > 1:
            logger.warning(
                f"Integrity warning: {len(mains)} main sessions on table "
                f"{self.restaurant_id}/{self.table_number}; treating {mains[0].id} as authoritative"
            )
        return mains[0] if mains else None

    def _own_row(self, rows: Iterable[DeviceSessionRead]) -> Optional[DeviceSessionRead]:
        if self._token is None:
            return None
        return next((row for row in rows if row.session_token == self._token), None)

    def _next_token(self) -> str:
        if not self._identity_token_used:
            self._identity_token_used = True
            return self.device_identity.session_token
        return self._identity_provider.mint_session_token(self.device_identity.device_ip)

    def _new_row(self, token: str, is_main: bool) -> DeviceSessionCreate:
        return DeviceSessionCreate(
            session_token=token,
            device_ip=self.device_identity.device_ip,
            restaurant_id=self.restaurant_id,
            table_number=self.table_number,
            is_main_device=is_main,
            order_data=[],
        )

    async def _discard_row(self, token: str) -> None:
        try:
            await self._store.delete(token, auth_token=token)
        except StoreError as e:
            # Left to expire
            logger.warning(f"Could not remove session row {token[:10]}...: {e}")

    # ------------------------------------------------------------------ #
    # Change feed and reconciliation
    # ------------------------------------------------------------------ #

    async def _ensure_subscription(self) -> None:
        if self._change_feed is None or self.role not in (Role.MAIN, Role.GUEST):
            return
        if self._subscription is not None and self._subscription.active:
            return
        self._subscription = await self._change_feed.subscribe(
            self.restaurant_id, self.table_number, self._on_change
        )

    async def _on_change(self, change: SessionChange) -> None:
        async with self._lock:
            try:
                await self._apply_change(change)
            except StoreError as e:
                logger.warning(f"Could not apply change for session {change.session.id}: {e}")

    def _is_stale(self, row: DeviceSessionRead) -> bool:
        seen = self._seen.get(row.id)
        return seen is not None and row.last_activity <= seen

    def _remember(self, row: DeviceSessionRead) -> None:
        seen = self._seen.get(row.id)
        if seen is None or row.last_activity > seen:
            self._seen[row.id] = row.last_activity

    async def _apply_change(self, change: SessionChange) -> None:
        if self.role not in (Role.MAIN, Role.GUEST):
            return
        row = change.session
        if change.event != ChangeEvent.DELETE:
            # Last write wins by last_activity
            if self._is_stale(row):
                return
            self._remember(row)
        is_own = self._token is not None and row.session_token == self._token

        if self.role == Role.MAIN:
            if is_own:
                if change.event == ChangeEvent.DELETE:
                    self._end_locally("removed")
                    await self._release_subscription()
                elif not row.is_main_device:
                    await self._demoted()
                else:
                    self.session = row
            elif (
                change.event != ChangeEvent.DELETE
                and row.is_main_device
                and row.is_active(self._clock())
                and self.session is not None
                and _sort_key(row) < _sort_key(self.session)
            ):
                # An earlier claim exists: this device's claim is the stale one
                await self._reconcile_locked()
            return

        # GUEST
        shown = self.session
        if shown is not None and row.id == shown.id:
            if change.event == ChangeEvent.DELETE or not row.is_main_device:
                await self._reconcile_locked()
            else:
                self.session = row
        elif change.event != ChangeEvent.DELETE and row.is_main_device and not is_own:
            await self._reconcile_locked()

    async def _reconcile_locked(self) -> None:
        rows = await self._store.list_active(self.restaurant_id, self.table_number)
        for row in rows:
            self._remember(row)
        main = self._authoritative_main(rows)

        if self.role == Role.MAIN:
            own = self._own_row(rows)
            if own is None:
                self._end_locally("expired" if self.get_time_left() == 0 else "removed")
                await self._release_subscription()
            elif not own.is_main_device:
                self._become_guest(main, "taken_over")
            elif main is not None and main.session_token != own.session_token:
                logger.warning(f"Session {own.id} is a stale main claim, yielding to {main.id}")
                demoted = await self._store.update(
                    own.session_token,
                    DeviceSessionUpdate(is_main_device=False),
                    auth_token=own.session_token,
                )
                self._remember(demoted)
                self._become_guest(main, "lost_election")
            else:
                self.session = own
        elif self.role == Role.GUEST:
            self.session = main

    async def _demoted(self) -> None:
        rows = await self._store.list_active(self.restaurant_id, self.table_number)
        for row in rows:
            self._remember(row)
        self._become_guest(self._authoritative_main(rows), "taken_over")

    async def _reconcile_loop(self, interval: float) -> None:
        while self.role not in (Role.ENDED,):
            await asyncio.sleep(interval)
            if await self.check_expiry():
                break
            await self.reconcile()

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    def _become_main(self, own: DeviceSessionRead, reason: str) -> None:
        self._token = own.session_token
        self._remember(own)
        self.session = own
        self._set_role(Role.MAIN, reason)

    def _become_guest(self, main: Optional[DeviceSessionRead], reason: str) -> None:
        self.session = main
        self._set_role(Role.GUEST, reason)

    def _end_locally(self, reason: str) -> None:
        self._token = None
        self.session = None
        self._set_role(Role.ENDED, reason)

    def _set_role(self, role: Role, reason: str) -> None:
        previous = self.role
        self.role = role
        if previous != role:
            logger.info(
                f"Table {self.restaurant_id}/{self.table_number}: {previous.value} -> {role.value} ({reason})"
            )
        change = RoleChange(previous=previous, current=role, reason=reason)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(f"Role listener failed on {previous.value} -> {role.value}")

    async def _release_subscription(self) -> None:
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await subscription.unsubscribe()

    async def _teardown(self) -> None:
        await self._release_subscription()
        task, self._reconcile_task = self._reconcile_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------ #
    # Results
    # ------------------------------------------------------------------ #

    def _failure(self, exc: TablesideError) -> ActionResult:
        kind, retryable = classify_error(exc)
        return self._fail(kind, str(exc) or exc.__class__.__name__, retryable)

    def _reject(self, message: str) -> ActionResult:
        return self._fail(ErrorKind.INVALID_STATE, message)

    def _fail(self, kind: ErrorKind, message: str, retryable: bool = False) -> ActionResult:
        result = ActionResult.failure(self.role, kind, message, retryable)
        self.last_error = result
        return result
