from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt
from cryptography.hazmat.primitives import serialization

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import InvalidTokenError, MisconfiguredError
from tenantgate.storage.models import SUPERUSER_TENANT_ID, Principal, Superuser, Tenant

logger = get_logger(__name__)

TENANT_CLAIM = "organizationId"
SUPERUSER_ALGORITHM = "HS256"

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}

TenantLookup = Callable[[str], Optional[Tenant]]


def parse_expires_in(value: Any, default: str = "24h") -> timedelta:
    """Parse ``"30m"``, ``"24h"``, ``"7d"`` or plain seconds into a timedelta."""
    raw = default if value is None or value == "" else value
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        seconds = int(raw)
    else:
        match = _DURATION_RE.match(str(raw))
        if not match:
            raise ValueError(f"invalid duration: {raw!r}")
        seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {raw!r}")
    return timedelta(seconds=seconds)


@dataclass
class IssuedToken:
    token: str
    expires_at: datetime
    claims: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VerifiedToken:
    claims: Dict[str, Any]
    tenant_id: str

    @property
    def is_superuser(self) -> bool:
        return self.tenant_id == SUPERUSER_TENANT_ID

    @property
    def principal_id(self) -> Optional[str]:
        return self.claims.get("userId")


class TokenService:
    """Issue and verify bearer tokens under per-tenant signing configuration.

    The signing key depends on the tenant, and the tenant is named inside the
    token being verified, so verification decodes the token twice: once
    unverified to pick the key, once with signature and expiry checks under
    that key. The unverified pass is only ever used for key selection.
    """

    def __init__(self, settings: Settings, tenant_lookup: TenantLookup) -> None:
        self.settings = settings
        self.tenant_lookup = tenant_lookup

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- claims ------------------------------------------------------------

    def build_claims(self, principal: Principal, tenant: Tenant) -> Dict[str, Any]:
        claims: Dict[str, Any] = {}
        for name in tenant.signing.payload_fields:
            if name == "userId":
                claims["userId"] = principal.id
            elif name == "userName":
                claims["userName"] = principal.full_name
            elif name == "email":
                claims["email"] = principal.email
            elif name == "firstName":
                claims["firstName"] = principal.first_name
            elif name == "lastName":
                claims["lastName"] = principal.last_name
            elif name == "profilePicture":
                claims["profilePicture"] = principal.profile_picture
            elif name == "role":
                claims["role"] = principal.role
            elif name == TENANT_CLAIM:
                claims[TENANT_CLAIM] = principal.tenant_id or tenant.id
            elif name == "isVerified":
                claims["isVerified"] = principal.is_verified
            elif name in principal.attributes:
                claims[name] = principal.attributes[name]
        # Tenant claim is mandatory: verification selects the key from it
        if not claims.get(TENANT_CLAIM):
            claims[TENANT_CLAIM] = tenant.id
        return claims

    # -- key material ------------------------------------------------------

    def _signing_secret(self, tenant: Tenant) -> str:
        secret = tenant.signing.secret
        if secret:
            return secret
        if tenant.signing.algorithm.startswith("RS"):
            # An HMAC default cannot stand in for an RSA key pair
            logger.error(
                "tenant_signing_key_missing",
                tenant_id=tenant.id,
                algorithm=tenant.signing.algorithm,
            )
            raise MisconfiguredError("Organization has no signing key configured")
        if not self.settings.allow_default_signing_secret:
            logger.error("tenant_signing_secret_missing", tenant_id=tenant.id)
            raise MisconfiguredError("Organization has no signing secret configured")
        logger.warning(
            "tenant_signing_secret_fallback",
            tenant_id=tenant.id,
            algorithm=tenant.signing.algorithm,
            degraded_security=True,
        )
        return self.settings.jwt_secret

    def _verification_key(self, tenant: Tenant) -> Any:
        algorithm = tenant.signing.algorithm
        if not algorithm.startswith("RS"):
            return self._signing_secret(tenant)
        if tenant.signing.public_key:
            return tenant.signing.public_key
        private_pem = self._signing_secret(tenant)
        try:
            private_key = serialization.load_pem_private_key(
                private_pem.encode(), password=None
            )
        except (ValueError, TypeError) as exc:
            logger.error("tenant_signing_key_unreadable", tenant_id=tenant.id, error=str(exc))
            raise MisconfiguredError("Organization signing key is unreadable") from exc
        return private_key.public_key()

    def _token_lifetime(self, tenant: Tenant) -> timedelta:
        try:
            return parse_expires_in(
                tenant.signing.expires_in, self.settings.default_token_expires_in
            )
        except ValueError:
            logger.warning(
                "tenant_token_expiry_invalid",
                tenant_id=tenant.id,
                expires_in=tenant.signing.expires_in,
            )
            return parse_expires_in(self.settings.default_token_expires_in)

    # -- issue -------------------------------------------------------------

    def issue(self, principal: Principal, tenant: Tenant) -> IssuedToken:
        claims = self.build_claims(principal, tenant)
        secret = self._signing_secret(tenant)
        now = self._now()
        expires_at = now + self._token_lifetime(tenant)
        payload = {**claims, "iat": now, "exp": expires_at}
        try:
            token = jwt.encode(payload, secret, algorithm=tenant.signing.algorithm)
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            logger.error(
                "token_sign_failed",
                tenant_id=tenant.id,
                algorithm=tenant.signing.algorithm,
                error=str(exc),
            )
            raise MisconfiguredError("Organization signing key is unusable") from exc
        return IssuedToken(token=token, expires_at=expires_at, claims=claims)

    def issue_superuser(self, superuser: Superuser) -> IssuedToken:
        now = self._now()
        expires_at = now + timedelta(days=self.settings.superuser_token_ttl_days)
        claims = {
            "userId": superuser.id,
            "email": superuser.email,
            "role": superuser.role,
            TENANT_CLAIM: SUPERUSER_TENANT_ID,
        }
        token = jwt.encode(
            {**claims, "iat": now, "exp": expires_at},
            self.settings.superuser_jwt_secret,
            algorithm=SUPERUSER_ALGORITHM,
        )
        return IssuedToken(token=token, expires_at=expires_at, claims=claims)

    # -- verify ------------------------------------------------------------

    def verify(self, token: str, *, expected_tenant_id: Optional[str] = None) -> VerifiedToken:
        """Verify ``token``; optionally require it to belong to a given tenant.

        Raises InvalidTokenError for every failure; ``expired`` is set on the
        error when the only problem is the expiry.
        """
        if not token or not isinstance(token, str):
            raise InvalidTokenError(reason="malformed")
        # Phase 1: unverified read, used only to select the key
        try:
            unverified = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError:
            raise InvalidTokenError(reason="malformed")
        tenant_id = unverified.get(TENANT_CLAIM)
        if not isinstance(tenant_id, str) or not tenant_id:
            raise InvalidTokenError(reason="malformed")
        if expected_tenant_id is not None and tenant_id != expected_tenant_id:
            logger.warning(
                "token_tenant_mismatch",
                claimed_tenant=tenant_id,
                expected_tenant=expected_tenant_id,
            )
            raise InvalidTokenError(reason="tenant_mismatch")

        # Phase 2: key selection
        if tenant_id == SUPERUSER_TENANT_ID:
            key: Any = self.settings.superuser_jwt_secret
            algorithm = SUPERUSER_ALGORITHM
        else:
            tenant = self.tenant_lookup(tenant_id)
            if tenant is None or not tenant.is_active:
                raise InvalidTokenError(reason="unknown_tenant")
            algorithm = tenant.signing.algorithm
            try:
                key = self._verification_key(tenant)
            except MisconfiguredError:
                raise InvalidTokenError(reason="misconfigured")

        # Phase 3: verified decode under the tenant's own algorithm and key
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise InvalidTokenError("token expired", reason="expired", expired=True)
        except jwt.PyJWTError as exc:
            logger.info(
                "token_verify_failed",
                tenant_id=tenant_id,
                error_type=type(exc).__name__,
            )
            raise InvalidTokenError(reason="signature")
        return VerifiedToken(claims=claims, tenant_id=tenant_id)
