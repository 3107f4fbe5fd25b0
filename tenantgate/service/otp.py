from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from tenantgate.logging import get_logger
from tenantgate.service.errors import ExpiredError, InvalidCredentialError
from tenantgate.storage.models import OneTimeCode, Principal

logger = get_logger(__name__)

# Same message for unknown principal and wrong code
INVALID_CODE_MESSAGE = "Invalid or expired code"


class OtpPurpose(str, Enum):
    LOGIN_MFA = "login_mfa"
    SIGNUP_VERIFY = "signup_verify"
    PASSWORD_RESET = "password_reset"
    DELETION_CONFIRM = "deletion_confirm"
    MFA_ENABLE = "mfa_enable"


class OtpStore(Protocol):
    def find_principal(self, tenant_id: str, email: str) -> Optional[Principal]: ...

    def set_one_time_code(self, principal_id: str, otc: OneTimeCode) -> Optional[Principal]: ...

    def clear_one_time_code(self, principal_id: str, purpose: str, code: str) -> bool: ...

    def consume_one_time_code(
        self,
        principal_id: str,
        purpose: str,
        code: str,
        now: datetime,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Principal]: ...


def generate_code() -> str:
    """Six-digit numeric code from the OS CSPRNG."""
    return str(100000 + secrets.randbelow(900000))


class OtpChallengeManager:
    """Issue and check short-lived numeric codes keyed by (principal, purpose).

    Issuing replaces whatever code was stored for the purpose, so a superseded
    code fails as invalid rather than expired. ``verify`` tolerates two
    concurrent checks of the same code (both succeed inside the window);
    ``consume`` is strict and performs the dependent state change in the same
    conditional update that clears the code.
    """

    def __init__(
        self,
        store: OtpStore,
        *,
        ttl_minutes: int = 10,
        ttl_overrides: Optional[Dict[OtpPurpose, int]] = None,
    ) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes
        self.ttl_overrides = dict(ttl_overrides or {})

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def ttl_for(self, purpose: OtpPurpose) -> timedelta:
        return timedelta(minutes=self.ttl_overrides.get(purpose, self.ttl_minutes))

    def issue(
        self,
        principal: Principal,
        purpose: OtpPurpose,
        *,
        meta: Optional[Dict[str, Any]] = None,
    ) -> OneTimeCode:
        otc = OneTimeCode(
            code=generate_code(),
            purpose=purpose.value,
            expires_at=self._now() + self.ttl_for(purpose),
            meta=dict(meta or {}),
        )
        if self.store.set_one_time_code(principal.id, otc) is None:
            raise InvalidCredentialError(INVALID_CODE_MESSAGE)
        logger.info(
            "otp_issued",
            principal_id=principal.id,
            tenant_id=principal.tenant_id,
            purpose=purpose.value,
        )
        return otc

    def _check(
        self, tenant_id: str, email: str, purpose: OtpPurpose, code: str
    ) -> Principal:
        principal = self.store.find_principal(tenant_id, email) if email else None
        stored = principal.one_time_codes.get(purpose.value) if principal else None
        if principal is None or stored is None or not code or stored.code != str(code).strip():
            logger.info("otp_rejected", tenant_id=tenant_id, purpose=purpose.value)
            raise InvalidCredentialError(INVALID_CODE_MESSAGE)
        if stored.expires_at <= self._now():
            logger.info(
                "otp_expired", principal_id=principal.id, purpose=purpose.value
            )
            raise ExpiredError("Code has expired. Please request a new one.")
        return principal

    def verify(
        self, tenant_id: str, email: str, purpose: OtpPurpose, code: str
    ) -> Principal:
        """Check a code and clear it; returns the principal it belongs to."""
        principal = self._check(tenant_id, email, purpose, code)
        # A concurrent verify may already have cleared this same code
        self.store.clear_one_time_code(principal.id, purpose.value, str(code).strip())
        principal.one_time_codes.pop(purpose.value, None)
        logger.info("otp_verified", principal_id=principal.id, purpose=purpose.value)
        return principal

    def consume(
        self,
        tenant_id: str,
        email: str,
        purpose: OtpPurpose,
        code: str,
        *,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Principal:
        """Atomically match the code, clear it, and apply ``updates``."""
        principal = self._check(tenant_id, email, purpose, code)
        updated = self.store.consume_one_time_code(
            principal.id, purpose.value, str(code).strip(), self._now(), updates
        )
        if updated is None:
            # Lost a race with a newer code or another consumer
            raise InvalidCredentialError(INVALID_CODE_MESSAGE)
        logger.info("otp_consumed", principal_id=principal.id, purpose=purpose.value)
        return updated

    def pending(self, principal: Principal, purpose: OtpPurpose) -> Optional[OneTimeCode]:
        stored = principal.one_time_codes.get(purpose.value)
        if stored is None or stored.expires_at <= self._now():
            return None
        return stored
