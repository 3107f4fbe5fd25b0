from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Form, Header, HTTPException, Path, Query, Request
from fastapi.responses import RedirectResponse

from tenantgate.api.schemas import (
    CodeLoginRequest,
    DeletionConfirmRequest,
    DeletionRequest,
    EmailOnlyRequest,
    Envelope,
    LoginHistoryResponse,
    LoginRequest,
    LoginResponse,
    MFADisableRequest,
    MFAVerifyRequest,
    OAuthConfigResponse,
    OAuthExchangeRequest,
    OAuthProviderStatus,
    PasswordChangeRequest,
    PasswordResetConfirmRequest,
    PrincipalResponse,
    RoleResponse,
    SignupRequest,
    SuperuserLoginRequest,
)
from tenantgate.logging import get_logger
from tenantgate.service.auth import LoginOutcome
from tenantgate.service.runtime import check_rate_limit, get_runtime
from tenantgate.service.tokens import VerifiedToken
from tenantgate.storage.models import Principal, Superuser, Tenant

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    if not await check_rate_limit(runtime, key, limit, window_seconds):
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _auth_page_url(request: Request) -> str:
    """The page the user is signing in from: Origin, else Host."""
    return request.headers.get("origin") or request.headers.get("host") or ""


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


@dataclass
class PrincipalContext:
    tenant: Tenant
    principal: Principal
    token: VerifiedToken


async def get_tenant(
    x_api_key: Optional[str] = Header(None, alias="x-api-key"),
) -> Tenant:
    return get_runtime().tenants.resolve(x_api_key)


async def get_principal(
    tenant: Tenant = Depends(get_tenant),
    authorization: Optional[str] = Header(None),
) -> PrincipalContext:
    token = _extract_bearer(authorization)
    if token is None:
        raise _http_error("unauthorized", "bearer token required", status_code=401)
    principal, verified = get_runtime().auth.principal_from_token(tenant, token)
    return PrincipalContext(tenant=tenant, principal=principal, token=verified)


async def get_superuser(authorization: Optional[str] = Header(None)) -> Superuser:
    token = _extract_bearer(authorization)
    if token is None:
        raise _http_error("unauthorized", "bearer token required", status_code=401)
    return get_runtime().auth.superuser_from_token(token)


def _login_response(outcome: LoginOutcome) -> LoginResponse:
    if outcome.mfa_required:
        return LoginResponse(mfa_required=True)
    return LoginResponse(
        token=outcome.token.token,
        expires_at=outcome.token.expires_at,
        redirect_url=outcome.redirection.token_appended_url,
        redirect_match=outcome.redirection.match_type,
        user=PrincipalResponse.from_principal(outcome.principal),
    )


# -- password login and signup ----------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, tenant: Tenant = Depends(get_tenant)):
    """Password login; returns ``mfa_required`` instead of a token when a code was sent."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{tenant.id}:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
    )
    outcome = await runtime.auth.login(
        tenant,
        body.email,
        body.password,
        auth_page_url=_auth_page_url(request),
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_login_response(outcome))


@router.post("/auth/login/verify", response_model=Envelope, tags=["auth"])
async def verify_login_code(
    body: CodeLoginRequest, request: Request, tenant: Tenant = Depends(get_tenant)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:{tenant.id}:{_client_ip(request)}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    outcome = await runtime.auth.verify_mfa_login(
        tenant,
        body.email,
        body.code,
        auth_page_url=_auth_page_url(request),
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_login_response(outcome))


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, tenant: Tenant = Depends(get_tenant)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{tenant.id}:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
    )
    principal = await runtime.auth.signup(
        tenant,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
    )
    return Envelope(
        status="ok",
        data={"verification_required": True, "user": PrincipalResponse.from_principal(principal)},
    )


@router.post("/auth/verify-account", response_model=Envelope, tags=["auth"])
async def verify_account(
    body: CodeLoginRequest, request: Request, tenant: Tenant = Depends(get_tenant)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:{tenant.id}:{_client_ip(request)}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    principal = runtime.auth.verify_account(tenant, body.email, body.code)
    return Envelope(status="ok", data={"user": PrincipalResponse.from_principal(principal)})


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(
    body: EmailOnlyRequest, request: Request, tenant: Tenant = Depends(get_tenant)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:{tenant.id}:{_client_ip(request)}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    await runtime.auth.resend_verification(tenant, body.email)
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: EmailOnlyRequest, request: Request, tenant: Tenant = Depends(get_tenant)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:{tenant.id}:{_client_ip(request)}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    await runtime.auth.forgot_password(tenant, body.email)
    return Envelope(
        status="ok",
        data={"message": "If an account exists for this email, a reset code has been sent."},
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: PasswordResetConfirmRequest, request: Request, tenant: Tenant = Depends(get_tenant)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:{tenant.id}:{_client_ip(request)}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    runtime.auth.reset_password(tenant, body.email, body.code, body.new_password)
    return Envelope(status="ok", data={"reset": True})


# -- authenticated account ----------------------------------------------------


@router.get("/auth/me", response_model=Envelope, tags=["account"])
async def me(ctx: PrincipalContext = Depends(get_principal)):
    return Envelope(status="ok", data=PrincipalResponse.from_principal(ctx.principal))


@router.get("/auth/role", response_model=Envelope, tags=["account"])
async def my_role(ctx: PrincipalContext = Depends(get_principal)):
    role = ctx.tenant.role(ctx.principal.role)
    if role is None:
        data = RoleResponse(name=ctx.principal.role, slug=ctx.principal.role)
    else:
        data = RoleResponse(name=role.name, slug=role.slug, permissions=list(role.permissions))
    return Envelope(status="ok", data=data)


@router.get("/auth/recent-logins", response_model=Envelope, tags=["account"])
async def recent_logins(
    limit: Optional[int] = Query(None, ge=1, le=100),
    ctx: PrincipalContext = Depends(get_principal),
):
    entries = get_runtime().auth.recent_logins(ctx.principal, limit)
    return Envelope(
        status="ok", data={"items": [LoginHistoryResponse.from_entry(e) for e in entries]}
    )


@router.post("/auth/change-password", response_model=Envelope, tags=["account"])
async def change_password(
    body: PasswordChangeRequest, ctx: PrincipalContext = Depends(get_principal)
):
    get_runtime().auth.change_password(
        ctx.tenant, ctx.principal, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"changed": True})


@router.post("/auth/mfa/enable", response_model=Envelope, tags=["account"])
async def request_mfa_enable(ctx: PrincipalContext = Depends(get_principal)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:{ctx.tenant.id}:{ctx.principal.id}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    await runtime.auth.request_mfa_enable(ctx.tenant, ctx.principal)
    return Envelope(status="ok", data={"code_sent": True})


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["account"])
async def verify_mfa_enable(body: MFAVerifyRequest, ctx: PrincipalContext = Depends(get_principal)):
    principal = get_runtime().auth.enable_mfa(ctx.tenant, ctx.principal, body.code)
    return Envelope(status="ok", data={"mfa_enabled": principal.mfa_enabled})


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["account"])
async def disable_mfa(body: MFADisableRequest, ctx: PrincipalContext = Depends(get_principal)):
    principal = get_runtime().auth.disable_mfa(ctx.tenant, ctx.principal, body.password)
    return Envelope(status="ok", data={"mfa_enabled": principal.mfa_enabled})


# -- OAuth ----------------------------------------------------------------------


@router.get("/auth/oauth/config", response_model=Envelope, tags=["oauth"])
async def oauth_config(tenant: Tenant = Depends(get_tenant)):
    providers = get_runtime().oauth.public_config(tenant)
    return Envelope(
        status="ok",
        data=OAuthConfigResponse(
            providers={name: OAuthProviderStatus(**info) for name, info in providers.items()}
        ),
    )


@router.get("/auth/{provider}/authorize", tags=["oauth"])
async def oauth_authorize(
    request: Request,
    provider: str = Path(..., max_length=32),
    organization_id: str = Query(..., alias="organizationId", max_length=128),
    origin: Optional[str] = Query(None, max_length=2048),
    role: Optional[str] = Query(None, max_length=64),
    test_mode: bool = Query(False, alias="testMode"),
):
    """Redirect the browser to the provider's consent page."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"oauth:{_client_ip(request)}", runtime.settings.oauth_rate_limit_per_minute
    )
    tenant = runtime.tenants.resolve_id(organization_id)
    url = runtime.oauth.authorize(
        tenant,
        provider,
        role,
        origin or request.headers.get("origin"),
        test_mode=test_mode,
    )
    return RedirectResponse(url, status_code=302)


async def _finish_callback(
    request: Request,
    provider: str,
    code: Optional[str],
    state: Optional[str],
    error: Optional[str],
    apple_user: Optional[str] = None,
) -> RedirectResponse:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"oauth:{_client_ip(request)}", runtime.settings.oauth_rate_limit_per_minute
    )
    target = await runtime.oauth.handle_callback(
        provider.lower(),
        code,
        state,
        error,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        apple_user=apple_user,
    )
    return RedirectResponse(target, status_code=302)


@router.get("/auth/{provider}/callback", tags=["oauth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=4096),
    state: Optional[str] = Query(None, max_length=4096),
    error: Optional[str] = Query(None, max_length=256),
):
    return await _finish_callback(request, provider, code, state, error)


@router.post("/auth/{provider}/callback", tags=["oauth"])
async def oauth_callback_form_post(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Form(None),
    state: Optional[str] = Form(None),
    error: Optional[str] = Form(None),
    user: Optional[str] = Form(None),
):
    """Apple posts the callback as a form (``response_mode=form_post``)."""
    return await _finish_callback(request, provider, code, state, error, apple_user=user)


@router.post("/auth/oauth/{provider}/exchange", response_model=Envelope, tags=["oauth"])
async def oauth_exchange(
    body: OAuthExchangeRequest,
    request: Request,
    provider: str = Path(..., max_length=32),
    tenant: Tenant = Depends(get_tenant),
):
    """Client-side code exchange for SPAs that receive the code themselves."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"oauth:{_client_ip(request)}", runtime.settings.oauth_rate_limit_per_minute
    )
    result = await runtime.oauth.exchange(
        tenant,
        provider.lower(),
        body.code,
        body.origin or request.headers.get("origin"),
        requested_role=body.role,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        apple_user=body.user,
    )
    return Envelope(
        status="ok",
        data={
            "token": result.token.token,
            "redirect_url": result.redirection.token_appended_url,
            "created": result.created,
            "user": PrincipalResponse.from_principal(result.principal),
        },
    )


# -- account deletion --------------------------------------------------------------


@router.post("/account/deletion/request", response_model=Envelope, tags=["account"])
async def request_deletion(body: DeletionRequest, ctx: PrincipalContext = Depends(get_principal)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:{ctx.tenant.id}:{ctx.principal.id}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    status = await runtime.deletion.request(ctx.tenant, ctx.principal, body.reason)
    return Envelope(status="ok", data=status)


@router.post("/account/deletion/confirm", response_model=Envelope, tags=["account"])
async def confirm_deletion(
    body: DeletionConfirmRequest, ctx: PrincipalContext = Depends(get_principal)
):
    status = await get_runtime().deletion.confirm(ctx.tenant, ctx.principal, body.otp)
    return Envelope(status="ok", data=status)


@router.post("/account/deletion/cancel", response_model=Envelope, tags=["account"])
async def cancel_deletion(ctx: PrincipalContext = Depends(get_principal)):
    status = get_runtime().deletion.cancel(ctx.principal.id)
    return Envelope(status="ok", data=status)


@router.get("/account/deletion/status", response_model=Envelope, tags=["account"])
async def deletion_status(ctx: PrincipalContext = Depends(get_principal)):
    return Envelope(status="ok", data=get_runtime().deletion.status(ctx.principal))


# -- superuser ----------------------------------------------------------------------


@router.post("/superuser/login", response_model=Envelope, tags=["superuser"])
async def superuser_login(body: SuperuserLoginRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"superuser:{_client_ip(request)}", runtime.settings.login_rate_limit_per_minute
    )
    superuser, issued = runtime.auth.superuser_login(body.email, body.password)
    data: Dict[str, Any] = {
        "token": issued.token,
        "expires_at": issued.expires_at,
        "user": {"id": superuser.id, "email": superuser.email, "role": superuser.role},
    }
    return Envelope(status="ok", data=data)


@router.get("/superuser/me", response_model=Envelope, tags=["superuser"])
async def superuser_me(superuser: Superuser = Depends(get_superuser)):
    return Envelope(
        status="ok",
        data={
            "id": superuser.id,
            "email": superuser.email,
            "name": superuser.name,
            "role": superuser.role,
            "last_login_at": superuser.last_login_at,
        },
    )
