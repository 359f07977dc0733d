"""
Services package initialization.

This module imports all services to make them available from a single import point.
"""

from tableside.services.device_session import DeviceSessionService
from tableside.services.change_feed import ChangeFeed, LocalChangeFeed, RedisChangeFeed, Subscription
from tableside.services.identity import DeviceIdentity, DeviceIdentityProvider
from tableside.services.store import SessionStore, SqlSessionStore, RestSessionStore
from tableside.services.coordinator import ActionResult, ErrorKind, Role, RoleChange, SessionCoordinator
from tableside.services.cart_relay import CartRelay

__all__ = [
    "DeviceSessionService",
    "ChangeFeed",
    "LocalChangeFeed",
    "RedisChangeFeed",
    "Subscription",
    "DeviceIdentity",
    "DeviceIdentityProvider",
    "SessionStore",
    "SqlSessionStore",
    "RestSessionStore",
    "ActionResult",
    "ErrorKind",
    "Role",
    "RoleChange",
    "SessionCoordinator",
    "CartRelay",
]
