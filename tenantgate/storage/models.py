from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Sentinel tenant id embedded in superuser tokens; never a real tenant id
SUPERUSER_TENANT_ID = "god"

SIGNING_ALGORITHMS = ("HS256", "HS384", "HS512", "RS256", "RS384", "RS512")
DEFAULT_PAYLOAD_FIELDS = ("userId", "userName", "email")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class SigningConfig:
    algorithm: str = "HS256"
    # HMAC secret for HS*, PEM private key for RS*
    secret: Optional[str] = None
    public_key: Optional[str] = None
    payload_fields: List[str] = field(default_factory=lambda: list(DEFAULT_PAYLOAD_FIELDS))
    expires_in: Optional[str] = None


@dataclass
class OAuthRedirectRule:
    origin_pattern: str
    redirect_uri: str
    is_default: bool = False


@dataclass
class OAuthProviderConfig:
    enabled: bool = False
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_rules: List[OAuthRedirectRule] = field(default_factory=list)
    # Legacy parallel arrays, matched positionally
    legacy_origins: List[str] = field(default_factory=list)
    legacy_redirect_uris: List[str] = field(default_factory=list)
    # Microsoft directory (tenant) id; "common" when unset
    directory_tenant: Optional[str] = None


@dataclass
class RedirectionUrl:
    url: str
    is_default: bool = False


@dataclass
class RedirectionRule:
    auth_page_url: str
    role_slug: str = "any"
    env: str = "production"
    urls: List[RedirectionUrl] = field(default_factory=list)


@dataclass
class Role:
    name: str
    slug: str
    permissions: List[str] = field(default_factory=list)
    is_default: bool = False
    show_on_signup: bool = True


@dataclass
class PasswordPolicy:
    min_length: int = 6
    require_uppercase: bool = False
    require_lowercase: bool = False
    require_numbers: bool = False
    require_special: bool = False


@dataclass
class Tenant:
    id: str
    name: str
    api_key: str
    is_active: bool = True
    signing: SigningConfig = field(default_factory=SigningConfig)
    oauth_providers: Dict[str, OAuthProviderConfig] = field(default_factory=dict)
    redirection_rules: List[RedirectionRule] = field(default_factory=list)
    roles: List[Role] = field(default_factory=list)
    mfa_required: bool = False
    password_policy: PasswordPolicy = field(default_factory=PasswordPolicy)
    support_email: Optional[str] = None
    notify_on_user_deletion: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    def role(self, slug: str) -> Optional[Role]:
        return next((r for r in self.roles if r.slug == slug), None)


@dataclass
class OneTimeCode:
    code: str
    purpose: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LoginHistoryEntry:
    login_at: datetime
    ip_address: str
    user_agent: str
    city: Optional[str] = None
    country: Optional[str] = None


class DeletionState:
    ACTIVE = "active"
    REQUESTED = "deletion_requested"
    CONFIRMED = "deletion_confirmed"


@dataclass
class Principal:
    id: str
    email: str
    tenant_id: str
    role: str = "user"
    first_name: str = ""
    last_name: str = ""
    # None for federated-only accounts
    password_hash: Optional[str] = None
    is_verified: bool = False
    mfa_enabled: bool = False
    provider: str = "local"
    profile_picture: Optional[str] = None
    one_time_codes: Dict[str, OneTimeCode] = field(default_factory=dict)
    deletion_state: str = DeletionState.ACTIVE
    deletion_reason: Optional[str] = None
    deletion_requested_at: Optional[datetime] = None
    deletion_scheduled_at: Optional[datetime] = None
    login_history: List[LoginHistoryEntry] = field(default_factory=list)
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    # Free-form attributes available to custom token payload fields
    attributes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, email: str, tenant_id: str, **kwargs: Any) -> "Principal":
        return cls(id=_new_id(), email=email, tenant_id=tenant_id, **kwargs)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


@dataclass
class Superuser:
    id: str
    email: str
    password_hash: str
    name: str = ""
    role: str = "superadmin"
    is_active: bool = True
    last_login_at: Optional[datetime] = None
