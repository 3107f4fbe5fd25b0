from __future__ import annotations

import copy
import json
import threading
from dataclasses import fields
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from tenantgate.logging import get_logger
from tenantgate.service.redirection import validate_redirection_settings
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    SIGNING_ALGORITHMS,
    SUPERUSER_TENANT_ID,
    LoginHistoryEntry,
    OAuthProviderConfig,
    OAuthRedirectRule,
    OneTimeCode,
    PasswordPolicy,
    Principal,
    RedirectionRule,
    RedirectionUrl,
    Role,
    SigningConfig,
    Superuser,
    Tenant,
)

_PRINCIPAL_FIELDS = frozenset(f.name for f in fields(Principal))
# Identity fields never change after creation
_IMMUTABLE_PRINCIPAL_FIELDS = frozenset({"id", "tenant_id", "email"})


def _email_key(email: str) -> str:
    return email.strip().lower()


def _check_updates(updates: Dict[str, Any]) -> None:
    names = set(updates)
    if names - _PRINCIPAL_FIELDS or names & _IMMUTABLE_PRINCIPAL_FIELDS:
        raise ValueError(f"cannot update principal fields: {sorted(names)}")


class MemoryStore:
    """In-process tenant/principal store.

    Every mutation runs inside a single critical section and is expressed as
    a conditional update, so concurrent requests touching the same principal
    never lose writes. Records handed out are copies; callers change state
    only through the update methods.
    """

    def __init__(self) -> None:
        self._data_lock = threading.RLock()
        self.tenants: Dict[str, Tenant] = {}
        self._tenant_by_api_key: Dict[str, str] = {}
        self.principals: Dict[str, Principal] = {}
        self._principal_index: Dict[tuple[str, str], str] = {}
        self.superusers: Dict[str, Superuser] = {}
        self.logger = get_logger(__name__)

    # -- tenants -----------------------------------------------------------

    def _validate_tenant(self, tenant: Tenant) -> None:
        if tenant.id == SUPERUSER_TENANT_ID:
            raise ConstraintViolation("tenant id is reserved", {"field": "id"})
        if tenant.signing.algorithm not in SIGNING_ALGORITHMS:
            raise ConstraintViolation(
                "unsupported signing algorithm",
                {"field": "signing.algorithm", "value": tenant.signing.algorithm},
            )
        slugs = [role.slug for role in tenant.roles]
        if len(slugs) != len(set(slugs)):
            raise ConstraintViolation("role slugs must be unique", {"field": "roles"})
        if sum(1 for role in tenant.roles if role.is_default) > 1:
            raise ConstraintViolation(
                "at most one role may be the default", {"field": "roles"}
            )
        problems = validate_redirection_settings(tenant.redirection_rules)
        if problems:
            raise ConstraintViolation(problems[0], {"field": "redirection_rules"})

    def create_tenant(self, tenant: Tenant) -> Tenant:
        self._validate_tenant(tenant)
        with self._data_lock:
            if tenant.id in self.tenants:
                raise ConstraintViolation("tenant already exists", {"field": "id"})
            if tenant.api_key in self._tenant_by_api_key:
                raise ConstraintViolation("api key already in use", {"field": "api_key"})
            stored = copy.deepcopy(tenant)
            self.tenants[stored.id] = stored
            self._tenant_by_api_key[stored.api_key] = stored.id
            return copy.deepcopy(stored)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return copy.deepcopy(tenant) if tenant else None

    def get_tenant_by_api_key(self, api_key: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant_id = self._tenant_by_api_key.get(api_key)
            if tenant_id is None:
                return None
            return copy.deepcopy(self.tenants[tenant_id])

    def rotate_tenant_api_key(self, tenant_id: str, new_api_key: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            if new_api_key in self._tenant_by_api_key:
                raise ConstraintViolation("api key already in use", {"field": "api_key"})
            self._tenant_by_api_key.pop(tenant.api_key, None)
            tenant.api_key = new_api_key
            self._tenant_by_api_key[new_api_key] = tenant_id
            return copy.deepcopy(tenant)

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.is_active = is_active
            return copy.deepcopy(tenant)

    def list_tenants(self) -> List[Tenant]:
        with self._data_lock:
            return [copy.deepcopy(t) for t in self.tenants.values()]

    # -- principals --------------------------------------------------------

    def create_principal(self, principal: Principal) -> Principal:
        key = (principal.tenant_id, _email_key(principal.email))
        with self._data_lock:
            if principal.tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant does not exist", {"tenant_id": principal.tenant_id}
                )
            if key in self._principal_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = copy.deepcopy(principal)
            stored.email = _email_key(stored.email)
            self.principals[stored.id] = stored
            self._principal_index[key] = stored.id
            return copy.deepcopy(stored)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return copy.deepcopy(principal) if principal else None

    def find_principal(self, tenant_id: str, email: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._principal_index.get((tenant_id, _email_key(email)))
            if principal_id is None:
                return None
            return copy.deepcopy(self.principals[principal_id])

    def find_federated_principal(self, provider: str, provider_uid: str) -> Optional[Principal]:
        """Principal in any tenant linked to the external ``provider_uid``."""
        if not provider or not provider_uid:
            return None
        with self._data_lock:
            for principal in self.principals.values():
                if (
                    principal.provider == provider
                    and principal.attributes.get("providerUid") == provider_uid
                ):
                    return copy.deepcopy(principal)
            return None

    def delete_principal(self, principal_id: str) -> bool:
        with self._data_lock:
            principal = self.principals.pop(principal_id, None)
            if not principal:
                return False
            self._principal_index.pop(
                (principal.tenant_id, _email_key(principal.email)), None
            )
            return True

    def update_principal(
        self,
        principal_id: str,
        updates: Dict[str, Any],
        *,
        when: Optional[Callable[[Principal], bool]] = None,
    ) -> Optional[Principal]:
        """Apply ``updates`` if ``when`` holds for the current record.

        Returns the updated copy, or None when the principal is missing or the
        precondition failed.
        """
        _check_updates(updates)
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            if when is not None and not when(principal):
                return None
            for name, value in updates.items():
                setattr(principal, name, copy.deepcopy(value))
            return copy.deepcopy(principal)

    def set_one_time_code(self, principal_id: str, otc: OneTimeCode) -> Optional[Principal]:
        """Store a code for its purpose, replacing any earlier one."""
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.one_time_codes[otc.purpose] = copy.deepcopy(otc)
            return copy.deepcopy(principal)

    def clear_one_time_code(self, principal_id: str, purpose: str, code: str) -> bool:
        """Drop the stored code only if it is still ``code``."""
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return False
            current = principal.one_time_codes.get(purpose)
            if current is None or current.code != code:
                return False
            del principal.one_time_codes[purpose]
            return True

    def consume_one_time_code(
        self,
        principal_id: str,
        purpose: str,
        code: str,
        now: datetime,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Principal]:
        """Match-then-set: clear an unexpired matching code and apply ``updates``."""

        def _matches(principal: Principal) -> bool:
            current = principal.one_time_codes.get(purpose)
            return current is not None and current.code == code and current.expires_at > now

        if updates:
            _check_updates(updates)
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or not _matches(principal):
                return None
            del principal.one_time_codes[purpose]
            if updates:
                return self.update_principal(principal_id, updates)
            return copy.deepcopy(principal)

    def push_login_history(
        self, principal_id: str, entry: LoginHistoryEntry, *, limit: int = 20
    ) -> bool:
        """Append ``entry`` and keep only the newest ``limit`` entries."""
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return False
            principal.login_history.append(copy.deepcopy(entry))
            if len(principal.login_history) > limit:
                del principal.login_history[:-limit]
            principal.last_login_at = entry.login_at
            principal.last_login_ip = entry.ip_address
            return True

    # -- superusers --------------------------------------------------------

    def create_superuser(self, superuser: Superuser) -> Superuser:
        with self._data_lock:
            if self.find_superuser(superuser.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = copy.deepcopy(superuser)
            stored.email = _email_key(stored.email)
            self.superusers[stored.id] = stored
            return copy.deepcopy(stored)

    def get_superuser(self, superuser_id: str) -> Optional[Superuser]:
        with self._data_lock:
            superuser = self.superusers.get(superuser_id)
            return copy.deepcopy(superuser) if superuser else None

    def find_superuser(self, email: str) -> Optional[Superuser]:
        key = _email_key(email)
        with self._data_lock:
            found = next((s for s in self.superusers.values() if s.email == key), None)
            return copy.deepcopy(found) if found else None

    def record_superuser_login(self, superuser_id: str, at: datetime) -> None:
        with self._data_lock:
            superuser = self.superusers.get(superuser_id)
            if superuser:
                superuser.last_login_at = at

    # -- seed data ---------------------------------------------------------

    def load_seed(self, path: str) -> int:
        """Load tenants and superusers from a JSON seed file.

        Returns the number of records created. Records that already exist are
        skipped so the same seed can be applied on every start.
        """
        data = json.loads(Path(path).read_text())
        created = 0
        for raw in data.get("tenants", []):
            tenant = tenant_from_dict(raw)
            if self.get_tenant(tenant.id):
                continue
            self.create_tenant(tenant)
            created += 1
        for raw in data.get("superusers", []):
            if self.find_superuser(raw["email"]):
                continue
            self.create_superuser(
                Superuser(
                    id=raw.get("id") or raw["email"],
                    email=raw["email"],
                    password_hash=raw["password_hash"],
                    name=raw.get("name", ""),
                    role=raw.get("role", "superadmin"),
                    is_active=raw.get("is_active", True),
                )
            )
            created += 1
        self.logger.info("seed_loaded", path=path, created=created)
        return created


def tenant_from_dict(raw: Dict[str, Any]) -> Tenant:
    """Build a Tenant from its JSON seed representation."""
    signing_raw = dict(raw.get("signing") or {})
    signing = SigningConfig(**signing_raw)
    providers: Dict[str, OAuthProviderConfig] = {}
    for name, cfg in (raw.get("oauth_providers") or {}).items():
        cfg = dict(cfg)
        rules = [OAuthRedirectRule(**rule) for rule in cfg.pop("redirect_rules", [])]
        providers[name] = OAuthProviderConfig(redirect_rules=rules, **cfg)
    redirection_rules = []
    for rule in raw.get("redirection_rules") or []:
        rule = dict(rule)
        urls = [RedirectionUrl(**u) for u in rule.pop("urls", [])]
        redirection_rules.append(RedirectionRule(urls=urls, **rule))
    return Tenant(
        id=raw["id"],
        name=raw.get("name", raw["id"]),
        api_key=raw["api_key"],
        is_active=raw.get("is_active", True),
        signing=signing,
        oauth_providers=providers,
        redirection_rules=redirection_rules,
        roles=[Role(**role) for role in raw.get("roles") or []],
        mfa_required=raw.get("mfa_required", False),
        password_policy=PasswordPolicy(**(raw.get("password_policy") or {})),
        support_email=raw.get("support_email"),
        notify_on_user_deletion=raw.get("notify_on_user_deletion", False),
    )


__all__ = ["MemoryStore", "tenant_from_dict"]
