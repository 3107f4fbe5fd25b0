from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol, Tuple

import httpx

from tenantgate.logging import get_logger
from tenantgate.storage.models import LoginHistoryEntry, Principal

logger = get_logger(__name__)

_LOCAL_ADDRESSES = {"127.0.0.1", "::1", "localhost"}


class HistoryStore(Protocol):
    def push_login_history(
        self, principal_id: str, entry: LoginHistoryEntry, *, limit: int = 20
    ) -> bool: ...


class GeoLocator:
    """Coarse city/country lookup for an IP address; never raises."""

    def __init__(
        self,
        lookup_url: Optional[str] = None,
        *,
        timeout: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.lookup_url = lookup_url
        self.timeout = timeout
        self._transport = transport

    async def locate(self, ip: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        if not ip or ip == "unknown":
            return None, None
        if ip in _LOCAL_ADDRESSES:
            return "Local Dev", "Local Dev"
        if not self.lookup_url:
            return None, None
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.get(self.lookup_url.format(ip=ip))
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("geo_lookup_failed", error=str(exc))
            return None, None
        if not isinstance(data, dict):
            return None, None
        return data.get("city"), data.get("country")


class LoginHistoryRecorder:
    def __init__(self, store: HistoryStore, locator: GeoLocator, *, limit: int = 20) -> None:
        self.store = store
        self.locator = locator
        self.limit = limit

    async def record(
        self,
        principal: Principal,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Optional[LoginHistoryEntry]:
        """Push a login entry; failures are logged and never abort the login."""
        try:
            city, country = await self.locator.locate(ip_address)
            entry = LoginHistoryEntry(
                login_at=datetime.now(timezone.utc),
                ip_address=ip_address or "unknown",
                user_agent=user_agent or "Unknown",
                city=city,
                country=country,
            )
            if not self.store.push_login_history(principal.id, entry, limit=self.limit):
                logger.warning("login_history_principal_missing", principal_id=principal.id)
                return None
            return entry
        except Exception as exc:
            logger.warning(
                "login_history_push_failed",
                principal_id=principal.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
