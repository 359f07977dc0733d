"""
Device identity and session token minting.

The identity is best effort: the device's public IP as reported by a lookup
service, or a synthetic ``fallback-<ms>`` string when the lookup fails. It
only arbitrates table slots and is never treated as authentication.
"""

import ipaddress
import re
import uuid
from datetime import datetime
from typing import Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict

from tableside.core.config import settings
from tableside.core.logging import logger
from tableside.models.device_session import utcnow

# The backend recognizes tokens by this shape: <identity>-<epoch ms>-<uuid4>
TOKEN_DELIMITER = "-"
_TOKEN_PATTERN = re.compile(
    r"^(?P<identity>.+)-(?P<millis>\d+)-"
    r"(?P<nonce>[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12})$"
)


class DeviceIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_ip: str
    session_token: str


def epoch_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def mint_session_token(device_ip: str, now: Optional[datetime] = None) -> str:
    """
    Mint an unguessable per-visit session token.

    Args:
        device_ip: Device identity to embed
        now: Minting instant

    Returns:
        ``<device_ip>-<epoch ms>-<uuid4>``
    """
    moment = now or utcnow()
    return TOKEN_DELIMITER.join([device_ip, str(epoch_millis(moment)), str(uuid.uuid4())])


def is_session_token(value: str) -> bool:
    return bool(_TOKEN_PATTERN.match(value or ""))


class DeviceIdentityProvider:
    """Resolves the device identity once and mints tokens for it."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        lookup_url: Optional[str] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._client = client
        self._lookup_url = lookup_url or settings.session.ip_lookup_url
        self._timeout = timeout or settings.session.ip_lookup_timeout
        self._clock = clock

    async def lookup_ip(self) -> Optional[str]:
        """
        Ask the lookup service for the public IP.

        Returns:
            The IP as a string, or None on any failure
        """
        try:
            if self._client is not None:
                response = await self._client.get(self._lookup_url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(self._lookup_url)
            response.raise_for_status()
            ip = str(response.json()["ip"]).strip()
            ipaddress.ip_address(ip)
            return ip
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Public IP lookup failed, using fallback identity: {e!r}")
            return None

    def fallback_identity(self) -> str:
        return f"fallback-{epoch_millis(self._clock())}"

    def mint_session_token(self, device_ip: str) -> str:
        return mint_session_token(device_ip, self._clock())

    async def resolve_identity(self) -> DeviceIdentity:
        """Resolve the device identity and mint the first session token."""
        device_ip = await self.lookup_ip() or self.fallback_identity()
        identity = DeviceIdentity(
            device_ip=device_ip,
            session_token=self.mint_session_token(device_ip),
        )
        logger.debug(f"Resolved device identity {device_ip}")
        return identity
