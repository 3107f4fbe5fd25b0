from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Set, Tuple
from urllib.parse import urlencode

import httpx
import jwt

from tenantgate.config import Settings
from tenantgate.logging import get_logger, sanitize_error_message
from tenantgate.service.errors import (
    CrossTenantConflictError,
    MisconfiguredError,
    ServiceError,
    TenantInactiveError,
    TenantNotFoundError,
    UpstreamFailureError,
    ValidationError,
)
from tenantgate.service.login_history import LoginHistoryRecorder
from tenantgate.service.redirection import RedirectionResult, compute_redirection, normalize_url
from tenantgate.service.tenants import TenantResolver, signup_role
from tenantgate.service.tokens import IssuedToken, TokenService
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import OAuthProviderConfig, Principal, Tenant

logger = get_logger(__name__)

AUTH_FAILED_MESSAGE = "authentication failed"


@dataclass(frozen=True)
class ProviderInfo:
    name: str
    authorize_url: str
    token_url: str
    userinfo_url: Optional[str]
    scope: str
    client_id_pattern: re.Pattern
    authorize_params: Dict[str, str] = field(default_factory=dict)


# Microsoft URLs carry the directory (tenant) id; "common" unless configured
PROVIDERS: Dict[str, ProviderInfo] = {
    "google": ProviderInfo(
        name="google",
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        userinfo_url="https://www.googleapis.com/oauth2/v2/userinfo",
        scope="openid email profile",
        client_id_pattern=re.compile(r"^\d+-[a-z0-9]+\.apps\.googleusercontent\.com$"),
    ),
    "github": ProviderInfo(
        name="github",
        authorize_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        userinfo_url="https://api.github.com/user",
        scope="read:user user:email",
        client_id_pattern=re.compile(r"^[A-Za-z0-9.]{16,40}$"),
    ),
    "microsoft": ProviderInfo(
        name="microsoft",
        authorize_url="https://login.microsoftonline.com/{directory}/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/{directory}/oauth2/v2.0/token",
        userinfo_url="https://graph.microsoft.com/v1.0/me",
        scope="openid email profile User.Read",
        client_id_pattern=re.compile(
            r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
        ),
        authorize_params={"response_mode": "query"},
    ),
    "apple": ProviderInfo(
        name="apple",
        authorize_url="https://appleid.apple.com/auth/authorize",
        token_url="https://appleid.apple.com/auth/token",
        userinfo_url=None,
        scope="name email",
        client_id_pattern=re.compile(r"^[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)+$"),
        authorize_params={"response_mode": "form_post"},
    ),
}

GITHUB_EMAILS_URL = "https://api.github.com/user/emails"

_SCHEME_PREFIX = re.compile(r"^https?://", re.IGNORECASE)
_PROVIDER_ERROR = re.compile(r"^[a-z_]{1,64}$")


class FederationStore(Protocol):
    def find_principal(self, tenant_id: str, email: str) -> Optional[Principal]: ...

    def find_federated_principal(
        self, provider: str, provider_uid: str
    ) -> Optional[Principal]: ...

    def create_principal(self, principal: Principal) -> Principal: ...


@dataclass
class ResolvedCredentials:
    client_id: str
    client_secret: str
    source: str  # "tenant" or "default"


@dataclass
class ExternalProfile:
    provider: str
    provider_uid: str
    email: str
    first_name: str = ""
    last_name: str = ""
    picture: Optional[str] = None


@dataclass
class OAuthState:
    """Round-trip context carried in the provider ``state`` parameter."""

    organization_id: str
    role: str = "user"
    origin: str = ""
    test_mode: bool = False
    provider: str = ""

    def encode(self) -> str:
        return json.dumps(
            {
                "organizationId": self.organization_id,
                "role": self.role,
                "origin": self.origin,
                "testMode": self.test_mode,
                "provider": self.provider,
            },
            separators=(",", ":"),
        )

    @classmethod
    def decode(cls, raw: Optional[str]) -> Optional["OAuthState"]:
        """Parse a state; unknown keys are ignored and missing ones defaulted."""
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(data, dict) or not data.get("organizationId"):
            return None
        return cls(
            organization_id=str(data["organizationId"]),
            role=str(data.get("role") or "user"),
            origin=str(data.get("origin") or ""),
            test_mode=bool(data.get("testMode", False)),
            provider=str(data.get("provider") or ""),
        )


@dataclass
class FederatedLogin:
    principal: Principal
    token: IssuedToken
    redirection: RedirectionResult
    created: bool = False


def sanitize_client_id(raw: Optional[str]) -> str:
    """Strip whitespace, an accidental http(s):// prefix and a trailing slash."""
    if not raw:
        return ""
    value = _SCHEME_PREFIX.sub("", raw.strip())
    return value.rstrip("/")


def _origin_matches(pattern: Optional[str], origin: str) -> bool:
    if not pattern or not origin:
        return False
    rule = pattern.strip().rstrip("/").lower()
    request = origin.strip().rstrip("/").lower()
    return rule == request or rule in request or request in rule


def select_redirect_uri(config: OAuthProviderConfig, origin: Optional[str]) -> Optional[str]:
    """Pick the registered redirect URI for a request origin, or None if unconfigured."""
    origin = origin or ""
    rules = config.redirect_rules
    if rules:
        for rule in rules:
            if rule.redirect_uri and _origin_matches(rule.origin_pattern, origin):
                return rule.redirect_uri
        for rule in rules:
            if rule.is_default and rule.redirect_uri:
                return rule.redirect_uri
        for rule in rules:
            if rule.redirect_uri:
                return rule.redirect_uri
    uris = config.legacy_redirect_uris
    if uris:
        for index, legacy_origin in enumerate(config.legacy_origins):
            if index < len(uris) and uris[index] and _origin_matches(legacy_origin, origin):
                return uris[index]
        return next((uri for uri in uris if uri), None)
    return None


def origin_host(value: Optional[str]) -> str:
    """Host (and port) of an origin or URL, lowercased and without scheme."""
    return normalize_url(value).partition("/")[0]


def allowed_origin_hosts(tenant: Tenant, provider: str) -> Set[str]:
    hosts = {origin_host(rule.auth_page_url) for rule in tenant.redirection_rules}
    config = tenant.oauth_providers.get(provider)
    if config is not None:
        hosts.update(origin_host(rule.origin_pattern) for rule in config.redirect_rules)
        hosts.update(origin_host(origin) for origin in config.legacy_origins)
    hosts.discard("")
    return hosts


def _split_name(name: Optional[str]) -> Tuple[str, str]:
    if not name:
        return "", ""
    first, _, last = name.strip().partition(" ")
    return first, last.strip()


class OAuthFederationEngine:
    """One credential-resolution and code-exchange routine for every provider."""

    def __init__(
        self,
        store: FederationStore,
        settings: Settings,
        tokens: TokenService,
        resolver: TenantResolver,
        history: LoginHistoryRecorder,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.resolver = resolver
        self.history = history
        self.timeout = settings.oauth_http_timeout_seconds
        self._transport = transport
        self.logger = logger

    # -- configuration -----------------------------------------------------

    def provider(self, name: str) -> ProviderInfo:
        provider_info = PROVIDERS.get((name or "").lower())
        if provider_info is None:
            raise ValidationError(f"Unsupported OAuth provider: {name}")
        return provider_info

    def provider_config(self, tenant: Tenant, provider: str) -> OAuthProviderConfig:
        config = tenant.oauth_providers.get(provider)
        if config is None or not config.enabled:
            self.logger.warning("oauth_not_configured", tenant_id=tenant.id, provider=provider)
            raise MisconfiguredError(
                f"{provider.capitalize()} OAuth is not configured for this organization"
            )
        return config

    def resolve_credentials(self, tenant: Tenant, provider: str) -> ResolvedCredentials:
        """Tenant credentials when usable, else the process defaults.

        Deterministic for a given tenant configuration, so authorize and
        exchange always agree on the client id.
        """
        provider_info = self.provider(provider)
        config = self.provider_config(tenant, provider_info.name)
        client_id = sanitize_client_id(config.client_id)
        id_valid = bool(client_id and provider_info.client_id_pattern.match(client_id))
        if id_valid and config.client_secret:
            return ResolvedCredentials(client_id, config.client_secret, "tenant")

        default_id, default_secret = self.settings.default_oauth_credentials(provider_info.name)
        if not default_id or not default_secret:
            self.logger.error(
                "oauth_credentials_unusable",
                tenant_id=tenant.id,
                provider=provider_info.name,
                client_id_valid=id_valid,
                has_client_secret=bool(config.client_secret),
            )
            raise MisconfiguredError(
                f"{provider_info.name.capitalize()} OAuth credentials are not usable for this organization"
            )
        self.logger.warning(
            "oauth_tenant_credentials_fallback",
            tenant_id=tenant.id,
            provider=provider_info.name,
            client_id_valid=id_valid,
            has_client_secret=bool(config.client_secret),
        )
        return ResolvedCredentials(default_id, default_secret, "default")

    def callback_url(self, provider: str) -> str:
        return f"{self.settings.api_base_url.rstrip('/')}/v1/auth/{provider}/callback"

    def redirect_uri_for(self, tenant: Tenant, provider: str, origin: Optional[str]) -> str:
        config = self.provider_config(tenant, provider)
        return select_redirect_uri(config, origin) or self.callback_url(provider)

    def origin_allowed(self, tenant: Tenant, provider: str, origin: Optional[str]) -> bool:
        """Exact host match against the tenant's configured origins."""
        host = origin_host(origin)
        return bool(host) and host in allowed_origin_hosts(tenant, provider)

    def _endpoint(self, url: str, config: OAuthProviderConfig) -> str:
        return url.format(directory=config.directory_tenant or "common")

    def public_config(self, tenant: Tenant) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        for name in PROVIDERS:
            config = tenant.oauth_providers.get(name)
            if config is None or not config.enabled:
                result[name] = {"enabled": False, "client_id": None, "source": None}
                continue
            try:
                credentials = self.resolve_credentials(tenant, name)
            except MisconfiguredError:
                result[name] = {"enabled": False, "client_id": None, "source": None}
                continue
            result[name] = {
                "enabled": True,
                "client_id": credentials.client_id,
                "source": credentials.source,
            }
        return result

    # -- authorize ---------------------------------------------------------

    def authorize(
        self,
        tenant: Tenant,
        provider: str,
        desired_role: Optional[str] = None,
        origin: Optional[str] = None,
        *,
        test_mode: bool = False,
    ) -> str:
        provider_info = self.provider(provider)
        config = self.provider_config(tenant, provider_info.name)
        credentials = self.resolve_credentials(tenant, provider_info.name)
        if origin and not self.origin_allowed(tenant, provider_info.name, origin):
            self.logger.warning(
                "oauth_origin_rejected",
                tenant_id=tenant.id,
                provider=provider_info.name,
                origin=sanitize_error_message(origin),
            )
            raise ValidationError("Origin is not allowed for this organization")
        state = OAuthState(
            organization_id=tenant.id,
            role=desired_role or "user",
            origin=origin or "",
            test_mode=test_mode,
            provider=provider_info.name,
        )
        params = {
            "client_id": credentials.client_id,
            "redirect_uri": self.redirect_uri_for(tenant, provider_info.name, origin),
            "response_type": "code",
            "scope": provider_info.scope,
            "state": state.encode(),
            **provider_info.authorize_params,
        }
        self.logger.info(
            "oauth_authorize",
            tenant_id=tenant.id,
            provider=provider_info.name,
            credential_source=credentials.source,
        )
        return f"{self._endpoint(provider_info.authorize_url, config)}?{urlencode(params)}"

    # -- exchange ----------------------------------------------------------

    async def fetch_profile(
        self,
        tenant: Tenant,
        provider: str,
        code: str,
        origin: Optional[str],
        *,
        apple_user: Optional[str] = None,
    ) -> ExternalProfile:
        """Trade the code for an access token and read the external profile.

        Two sequential calls (GitHub adds a third for the email list), no
        retry; any failure is logged in full and surfaced generically.
        """
        provider_info = self.provider(provider)
        config = self.provider_config(tenant, provider_info.name)
        credentials = self.resolve_credentials(tenant, provider_info.name)
        redirect_uri = self.redirect_uri_for(tenant, provider_info.name, origin)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    self._endpoint(provider_info.token_url, config),
                    data={
                        "client_id": credentials.client_id,
                        "client_secret": credentials.client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                if not isinstance(token_result, dict):
                    raise ValueError("token response is not an object")
                if provider_info.name == "apple":
                    profile = self._apple_profile(token_result, apple_user)
                else:
                    access_token = token_result.get("access_token")
                    if not access_token:
                        raise ValueError(
                            f"no access token: {token_result.get('error', 'unknown')}"
                        )
                    profile = await self._fetch_userinfo(client, provider_info, access_token)
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                tenant_id=tenant.id,
                provider=provider_info.name,
                status_code=exc.response.status_code,
                body=sanitize_error_message(exc.response.text),
            )
            raise UpstreamFailureError(AUTH_FAILED_MESSAGE) from exc
        except httpx.HTTPError as exc:
            self.logger.error(
                "oauth_exchange_transport_error",
                tenant_id=tenant.id,
                provider=provider_info.name,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise UpstreamFailureError(AUTH_FAILED_MESSAGE) from exc
        except (ValueError, KeyError, jwt.PyJWTError) as exc:
            self.logger.error(
                "oauth_exchange_bad_response",
                tenant_id=tenant.id,
                provider=provider_info.name,
                error=sanitize_error_message(str(exc)),
            )
            raise UpstreamFailureError(AUTH_FAILED_MESSAGE) from exc

        if not profile.email or not profile.provider_uid:
            self.logger.error(
                "oauth_identity_incomplete",
                tenant_id=tenant.id,
                provider=provider_info.name,
                has_email=bool(profile.email),
            )
            raise UpstreamFailureError(AUTH_FAILED_MESSAGE)
        self.logger.info("oauth_exchange_success", tenant_id=tenant.id, provider=provider_info.name)
        return profile

    async def _fetch_userinfo(
        self, client: httpx.AsyncClient, provider_info: ProviderInfo, access_token: str
    ) -> ExternalProfile:
        headers = {"Authorization": f"Bearer {access_token}"}
        if provider_info.name == "github":
            headers["Accept"] = "application/vnd.github+json"
        response = await client.get(provider_info.userinfo_url, headers=headers)
        response.raise_for_status()
        userinfo = response.json()
        if not isinstance(userinfo, dict):
            raise ValueError("userinfo response is not an object")
        profile = self._parse_userinfo(provider_info.name, userinfo)
        if provider_info.name == "github" and not profile.email:
            emails_response = await client.get(GITHUB_EMAILS_URL, headers=headers)
            emails_response.raise_for_status()
            emails = emails_response.json()
            if isinstance(emails, list):
                profile.email = next(
                    (
                        e.get("email")
                        for e in emails
                        if isinstance(e, dict) and e.get("primary") and e.get("verified")
                    ),
                    "",
                ) or ""
        return profile

    def _parse_userinfo(self, provider: str, userinfo: dict) -> ExternalProfile:
        if provider == "google":
            return ExternalProfile(
                provider=provider,
                provider_uid=str(userinfo.get("id") or userinfo.get("sub") or ""),
                email=userinfo.get("email") or "",
                first_name=userinfo.get("given_name") or "",
                last_name=userinfo.get("family_name") or "",
                picture=userinfo.get("picture"),
            )
        if provider == "github":
            first, last = _split_name(userinfo.get("name") or userinfo.get("login"))
            return ExternalProfile(
                provider=provider,
                provider_uid=str(userinfo.get("id") or ""),
                email=userinfo.get("email") or "",
                first_name=first,
                last_name=last,
                picture=userinfo.get("avatar_url"),
            )
        if provider == "microsoft":
            return ExternalProfile(
                provider=provider,
                provider_uid=str(userinfo.get("id") or ""),
                email=userinfo.get("mail") or userinfo.get("userPrincipalName") or "",
                first_name=userinfo.get("givenName") or "",
                last_name=userinfo.get("surname") or "",
            )
        raise ValueError(f"no userinfo mapping for {provider}")

    def _apple_profile(self, token_result: dict, apple_user: Optional[str]) -> ExternalProfile:
        id_token = token_result.get("id_token")
        if not id_token:
            raise ValueError("no id_token in apple token response")
        # Received directly from Apple's token endpoint over TLS
        claims = jwt.decode(id_token, options={"verify_signature": False})
        first = last = ""
        if apple_user:
            # Apple only posts the user's name on the very first authorization
            try:
                user_data = json.loads(apple_user)
            except ValueError:
                self.logger.warning("oauth_apple_user_unparseable")
                user_data = {}
            name = user_data.get("name") if isinstance(user_data, dict) else None
            if isinstance(name, dict):
                first = name.get("firstName") or ""
                last = name.get("lastName") or ""
        return ExternalProfile(
            provider="apple",
            provider_uid=str(claims.get("sub") or ""),
            email=claims.get("email") or "",
            first_name=first,
            last_name=last,
        )

    # -- account linking ---------------------------------------------------

    def link_principal(
        self,
        tenant: Tenant,
        profile: ExternalProfile,
        requested_role: Optional[str] = None,
    ) -> Tuple[Principal, bool]:
        """Find the (email, tenant) principal or create a pre-verified one.

        An external identity already linked to a principal of another tenant
        is refused with CrossTenantConflictError.
        """
        bound = self.store.find_federated_principal(profile.provider, profile.provider_uid)
        if bound is not None:
            self._require_member(bound, tenant, profile)
        principal = self.store.find_principal(tenant.id, profile.email)
        if principal is not None:
            # Stores that do not scope the lookup by tenant
            self._require_member(principal, tenant, profile)
            return principal, False

        role = signup_role(tenant, requested_role)
        candidate = Principal.new(
            profile.email,
            tenant.id,
            role=role,
            first_name=profile.first_name,
            last_name=profile.last_name,
            is_verified=True,
            provider=profile.provider,
            profile_picture=profile.picture,
            attributes={"providerUid": profile.provider_uid},
        )
        try:
            created = self.store.create_principal(candidate)
        except ConstraintViolation:
            # Lost a race with a concurrent first login for the same email
            existing = self.store.find_principal(tenant.id, profile.email)
            if existing is None:
                raise
            return existing, False
        self.logger.info(
            "oauth_principal_created",
            tenant_id=tenant.id,
            principal_id=created.id,
            provider=profile.provider,
            role=role,
        )
        return created, True

    def _require_member(
        self, principal: Principal, tenant: Tenant, profile: ExternalProfile
    ) -> None:
        if principal.tenant_id == tenant.id:
            return
        self.logger.warning(
            "oauth_cross_tenant_identity",
            tenant_id=tenant.id,
            principal_tenant=principal.tenant_id,
            provider=profile.provider,
        )
        raise CrossTenantConflictError("User does not belong to this organization")

    async def exchange(
        self,
        tenant: Tenant,
        provider: str,
        code: str,
        origin: Optional[str] = None,
        *,
        requested_role: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        apple_user: Optional[str] = None,
    ) -> FederatedLogin:
        if not code:
            raise ValidationError("OAuth code is required")
        profile = await self.fetch_profile(
            tenant, provider, code, origin, apple_user=apple_user
        )
        principal, created = self.link_principal(tenant, profile, requested_role)
        await self.history.record(principal, ip_address, user_agent)
        issued = self.tokens.issue(principal, tenant)
        redirection = compute_redirection(
            tenant.redirection_rules,
            principal.role,
            origin or "",
            issued.token,
            fallback_url=self.settings.redirect_fallback_url,
        )
        return FederatedLogin(
            principal=principal, token=issued, redirection=redirection, created=created
        )

    # -- browser callback --------------------------------------------------

    @staticmethod
    def callback_redirect(origin: str, params: Dict[str, str]) -> str:
        base = (origin or "").rstrip("/")
        return f"{base}/oauth-callback?{urlencode(params)}"

    async def handle_callback(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        apple_user: Optional[str] = None,
    ) -> str:
        """Complete a provider redirect and return the URL to send the browser to.

        The tenant comes only from the decoded state, never from request headers.
        """
        decoded = OAuthState.decode(state)
        company = decoded.organization_id if decoded else "default"
        tenant: Optional[Tenant] = None
        if decoded is not None:
            try:
                tenant = self.resolver.resolve_id(decoded.organization_id)
            except (TenantNotFoundError, TenantInactiveError):
                tenant = None
        # Only a configured origin of the resolved tenant may receive the redirect
        origin_ok = tenant is not None and self.origin_allowed(tenant, provider, decoded.origin)
        origin = decoded.origin if origin_ok else ""

        def _fail(reason: str) -> str:
            return self.callback_redirect(origin, {"error": reason, "company": company})

        if error:
            self.logger.warning(
                "oauth_provider_error", provider=provider, error=sanitize_error_message(error)
            )
            return _fail(error if _PROVIDER_ERROR.match(error) else "authentication_failed")
        if not code or decoded is None:
            return _fail("missing_params")
        if decoded.provider and decoded.provider != provider:
            self.logger.warning(
                "oauth_state_provider_mismatch", provider=provider, state_provider=decoded.provider
            )
            return _fail("invalid_state")

        if tenant is None:
            return _fail("invalid_organization")
        if decoded.origin and not origin_ok:
            self.logger.warning(
                "oauth_origin_rejected",
                tenant_id=tenant.id,
                provider=provider,
                origin=sanitize_error_message(decoded.origin),
            )
            return _fail("invalid_origin")
        try:
            login = await self.exchange(
                tenant,
                provider,
                code,
                origin,
                requested_role=decoded.role,
                ip_address=ip_address,
                user_agent=user_agent,
                apple_user=apple_user,
            )
        except MisconfiguredError:
            return _fail("oauth_not_configured")
        except CrossTenantConflictError:
            return _fail("user_not_in_organization")
        except ServiceError as exc:
            self.logger.warning(
                "oauth_callback_failed",
                tenant_id=tenant.id,
                provider=provider,
                error_code=exc.error_code,
            )
            return _fail("authentication_failed")

        params = {
            "success": "true",
            "company": tenant.id,
            "oAuthProvider": provider,
            "redirectUri": login.redirection.url,
            "token": login.token.token,
        }
        if decoded.test_mode:
            params["testMode"] = "true"
        return self.callback_redirect(origin, params)
