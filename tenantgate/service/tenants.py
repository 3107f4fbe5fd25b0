from __future__ import annotations

import secrets
import string
from typing import Optional, Protocol

from tenantgate.logging import get_logger
from tenantgate.service.errors import (
    MissingApiKeyError,
    TenantInactiveError,
    TenantNotFoundError,
)
from tenantgate.storage.models import Tenant

logger = get_logger(__name__)

API_KEY_PREFIX = "exy_"
API_KEY_LENGTH = 32
_API_KEY_ALPHABET = string.ascii_letters + string.digits


class TenantStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_api_key(self, api_key: str) -> Optional[Tenant]: ...


def generate_api_key() -> str:
    """Return a fresh tenant API key (``exy_`` + 32 alphanumerics)."""
    body = "".join(secrets.choice(_API_KEY_ALPHABET) for _ in range(API_KEY_LENGTH))
    return f"{API_KEY_PREFIX}{body}"


def _key_hint(api_key: str) -> str:
    return api_key[:8] + "..."


class TenantResolver:
    """Map an inbound API key (or a state-carried tenant id) to an active tenant."""

    def __init__(self, store: TenantStore) -> None:
        self.store = store

    def resolve(self, api_key: Optional[str]) -> Tenant:
        if not api_key or not api_key.strip():
            raise MissingApiKeyError("API key required. Pass the x-api-key header.")
        # Exact indexed lookup only; keys are never pattern-matched
        tenant = self.store.get_tenant_by_api_key(api_key.strip())
        if tenant is None:
            logger.warning("tenant_api_key_unknown", key_hint=_key_hint(api_key))
            raise TenantNotFoundError("Invalid API key")
        return self._require_active(tenant)

    def resolve_id(self, tenant_id: Optional[str]) -> Tenant:
        """Resolve a tenant by id, e.g. from a decoded OAuth state."""
        if not tenant_id:
            raise TenantNotFoundError("Organization ID is required")
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            logger.warning("tenant_id_unknown", tenant_id=tenant_id)
            raise TenantNotFoundError("Organization not found")
        return self._require_active(tenant)

    def _require_active(self, tenant: Tenant) -> Tenant:
        if not tenant.is_active:
            logger.warning("tenant_inactive", tenant_id=tenant.id)
            raise TenantInactiveError(
                "Organization is inactive. Please contact administrator."
            )
        return tenant


def default_role_slug(tenant: Tenant) -> str:
    """The tenant's default role, else ``user``."""
    default = next((role for role in tenant.roles if role.is_default), None)
    if default:
        return default.slug
    return "user"


def signup_role(tenant: Tenant, requested: Optional[str]) -> str:
    """Honour ``requested`` only when the role exists and is offered on signup."""
    if requested:
        role = tenant.role(requested)
        if role and role.show_on_signup:
            return role.slug
        logger.warning(
            "signup_role_rejected", tenant_id=tenant.id, requested_role=requested
        )
    return default_role_slug(tenant)
