from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union

import httpx

from tenantgate.config import Settings, get_settings, reset_settings_cache
from tenantgate.logging import get_logger
from tenantgate.service.auth import AuthService
from tenantgate.service.deletion import AccountDeletionService
from tenantgate.service.email import EmailService
from tenantgate.service.login_history import GeoLocator, LoginHistoryRecorder
from tenantgate.service.oauth import OAuthFederationEngine
from tenantgate.service.otp import OtpChallengeManager, OtpPurpose
from tenantgate.service.tenants import TenantResolver
from tenantgate.service.tokens import TokenService
from tenantgate.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = store or MemoryStore()
        if self.settings.seed_file:
            self.store.load_seed(self.settings.seed_file)

        self.tenants = TenantResolver(self.store)
        self.tokens = TokenService(self.settings, self.store.get_tenant)
        self.otp = OtpChallengeManager(
            self.store,
            ttl_minutes=self.settings.otp_ttl_minutes,
            ttl_overrides={OtpPurpose.DELETION_CONFIRM: self.settings.deletion_otp_ttl_minutes},
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        # No outbound geolocation in test mode
        geo_url = None if self.settings.test_mode else self.settings.geoip_lookup_url
        self.history = LoginHistoryRecorder(
            self.store,
            GeoLocator(geo_url, transport=http_transport),
            limit=self.settings.login_history_limit,
        )
        self.auth = AuthService(
            self.store, self.settings, self.tokens, self.otp, self.email, self.history
        )
        self.oauth = OAuthFederationEngine(
            self.store,
            self.settings,
            self.tokens,
            self.tenants,
            self.history,
            transport=http_transport,
        )
        self.deletion = AccountDeletionService(
            self.store, self.otp, self.email, grace_days=self.settings.deletion_grace_days
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            tenants=len(self.store.list_tenants()),
            email_configured=self.email.is_configured,
            geo_lookup_enabled=geo_url is not None,
            default_signing_fallback=self.settings.allow_default_signing_secret,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**kwargs) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **kwargs)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """In-process token bucket refilling ``limit`` tokens per ``window_seconds``.

    Returns bool, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
            runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if not allowed:
        logger.info("rate_limited", key=key, limit=limit)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
