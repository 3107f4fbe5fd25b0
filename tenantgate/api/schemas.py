from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tenantgate.storage.models import LoginHistoryEntry, Principal

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "missing_api_key",
    "tenant_not_found",
    "tenant_inactive",
    "invalid_credentials",
    "invalid_token",
    "expired",
    "misconfigured",
    "upstream_failure",
    "cross_tenant_conflict",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def _normalize_unicode(value: str) -> str:
    """Drop zero-width characters and apply NFKC normalization."""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(_EmailRequest):
    password: str = Field(..., max_length=128)


class CodeLoginRequest(_EmailRequest):
    code: str = Field(..., min_length=1, max_length=10)


class SignupRequest(_EmailRequest):
    # Length and complexity rules come from the tenant's password policy
    password: str = Field(..., max_length=128)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    role: Optional[str] = Field(default=None, max_length=64)


class EmailOnlyRequest(_EmailRequest):
    pass


class PasswordResetConfirmRequest(_EmailRequest):
    code: str = Field(..., min_length=1, max_length=10)
    new_password: str = Field(..., max_length=128)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)


class MFAVerifyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=10)


class MFADisableRequest(BaseModel):
    password: Optional[str] = Field(default=None, max_length=128)


class OAuthExchangeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=4096)
    origin: Optional[str] = Field(default=None, max_length=2048)
    role: Optional[str] = Field(default=None, max_length=64)
    # Apple's first-login ``user`` JSON, forwarded by the client as-is
    user: Optional[str] = Field(default=None, max_length=4096)


class DeletionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class DeletionConfirmRequest(BaseModel):
    otp: str = Field(..., min_length=1, max_length=10)


class SuperuserLoginRequest(_EmailRequest):
    password: str = Field(..., max_length=128)


class PrincipalResponse(BaseModel):
    id: str
    email: str
    organization_id: str
    role: str
    first_name: str = ""
    last_name: str = ""
    is_verified: bool = False
    mfa_enabled: bool = False
    provider: str = "local"
    profile_picture: Optional[str] = None
    deletion_state: str = "active"
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            id=principal.id,
            email=principal.email,
            organization_id=principal.tenant_id,
            role=principal.role,
            first_name=principal.first_name,
            last_name=principal.last_name,
            is_verified=principal.is_verified,
            mfa_enabled=principal.mfa_enabled,
            provider=principal.provider,
            profile_picture=principal.profile_picture,
            deletion_state=principal.deletion_state,
            last_login_at=principal.last_login_at,
            created_at=principal.created_at,
        )


class LoginResponse(BaseModel):
    mfa_required: bool = False
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    redirect_url: Optional[str] = None
    redirect_match: Optional[str] = None
    user: Optional[PrincipalResponse] = None


class LoginHistoryResponse(BaseModel):
    login_at: datetime
    ip_address: str
    user_agent: str
    city: Optional[str] = None
    country: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: LoginHistoryEntry) -> "LoginHistoryResponse":
        return cls(
            login_at=entry.login_at,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            city=entry.city,
            country=entry.country,
        )


class RoleResponse(BaseModel):
    name: str
    slug: str
    permissions: List[str] = Field(default_factory=list)


class OAuthProviderStatus(BaseModel):
    enabled: bool
    client_id: Optional[str] = None
    source: Optional[str] = None


class OAuthConfigResponse(BaseModel):
    providers: Dict[str, OAuthProviderStatus]
