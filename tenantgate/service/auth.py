from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.email import EmailService
from tenantgate.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialError,
    InvalidTokenError,
    PrincipalNotFoundError,
    ServerError,
    ValidationError,
)
from tenantgate.service.login_history import LoginHistoryRecorder
from tenantgate.service.otp import OtpChallengeManager, OtpPurpose
from tenantgate.service.redirection import RedirectionResult, compute_redirection
from tenantgate.service.tenants import signup_role
from tenantgate.service.tokens import IssuedToken, TokenService, VerifiedToken
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.models import (
    LoginHistoryEntry,
    PasswordPolicy,
    Principal,
    Superuser,
    Tenant,
)

logger = get_logger(__name__)

INVALID_LOGIN_MESSAGE = "Invalid email or password"
_SPECIAL_CHARACTERS = re.compile(r'[!@#$%^&*(),.?":{}|<>]')


@dataclass
class LoginOutcome:
    principal: Principal
    mfa_required: bool = False
    token: Optional[IssuedToken] = None
    redirection: Optional[RedirectionResult] = None


def password_policy_violations(policy: PasswordPolicy, password: str) -> List[str]:
    problems = []
    if len(password or "") < policy.min_length:
        problems.append(f"Password must be at least {policy.min_length} characters long")
    if policy.require_uppercase and not re.search(r"[A-Z]", password or ""):
        problems.append("Password must contain at least one uppercase letter")
    if policy.require_lowercase and not re.search(r"[a-z]", password or ""):
        problems.append("Password must contain at least one lowercase letter")
    if policy.require_numbers and not re.search(r"\d", password or ""):
        problems.append("Password must contain at least one number")
    if policy.require_special and not _SPECIAL_CHARACTERS.search(password or ""):
        problems.append("Password must contain at least one special character")
    return problems


class AuthService:
    """Password, signup, MFA and superuser flows on top of the token and OTP services."""

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        tokens: TokenService,
        otp: OtpChallengeManager,
        email: EmailService,
        history: LoginHistoryRecorder,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.otp = otp
        self.email = email
        self.history = history
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- passwords ---------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def hash_password(self, password: str) -> str:
        return self._hash_password(password)[0]

    def verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash or not password:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def check_password_policy(self, tenant: Tenant, password: str) -> None:
        problems = password_policy_violations(tenant.password_policy, password)
        if problems:
            raise ValidationError(problems[0], detail={"violations": problems})

    # -- helpers -----------------------------------------------------------

    async def _send_code(self, tenant: Tenant, principal: Principal, purpose: OtpPurpose) -> bool:
        otc = self.otp.issue(principal, purpose)
        return await asyncio.to_thread(
            self.email.send_one_time_code,
            principal.email,
            otc.code,
            purpose.value,
            tenant_name=tenant.name,
            ttl_minutes=int(self.otp.ttl_for(purpose).total_seconds() // 60),
        )

    async def _complete_login(
        self,
        tenant: Tenant,
        principal: Principal,
        *,
        auth_page_url: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> LoginOutcome:
        await self.history.record(principal, ip_address, user_agent)
        issued = self.tokens.issue(principal, tenant)
        redirection = compute_redirection(
            tenant.redirection_rules,
            principal.role,
            auth_page_url or "",
            issued.token,
            fallback_url=self.settings.redirect_fallback_url,
        )
        # Notification is best effort; delivery failures are logged by the email service
        await asyncio.to_thread(
            self.email.send_login_notice,
            principal.email,
            tenant_name=tenant.name,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info("login_success", tenant_id=tenant.id, principal_id=principal.id)
        return LoginOutcome(principal=principal, token=issued, redirection=redirection)

    # -- login -------------------------------------------------------------

    async def login(
        self,
        tenant: Tenant,
        email: str,
        password: str,
        *,
        auth_page_url: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginOutcome:
        principal = self.store.find_principal(tenant.id, email or "")
        # Unknown email, federated-only account and wrong password look the same
        if principal is None or not self.verify_password(principal.password_hash, password):
            self.logger.info("login_failed", tenant_id=tenant.id)
            raise InvalidCredentialError(INVALID_LOGIN_MESSAGE)
        if not principal.is_verified:
            raise ForbiddenError("Please verify your email before logging in")

        if tenant.mfa_required or principal.mfa_enabled:
            if not await self._send_code(tenant, principal, OtpPurpose.LOGIN_MFA):
                raise ServerError("Could not send the verification code", status_code=503)
            self.logger.info("login_mfa_challenge", tenant_id=tenant.id, principal_id=principal.id)
            return LoginOutcome(principal=principal, mfa_required=True)

        return await self._complete_login(
            tenant,
            principal,
            auth_page_url=auth_page_url,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def verify_mfa_login(
        self,
        tenant: Tenant,
        email: str,
        code: str,
        *,
        auth_page_url: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginOutcome:
        principal = self.otp.verify(tenant.id, email, OtpPurpose.LOGIN_MFA, code)
        return await self._complete_login(
            tenant,
            principal,
            auth_page_url=auth_page_url,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # -- signup and verification -------------------------------------------

    async def signup(
        self,
        tenant: Tenant,
        email: str,
        password: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: Optional[str] = None,
    ) -> Principal:
        if self.store.find_principal(tenant.id, email):
            raise ConflictError("User with this email already exists")
        self.check_password_policy(tenant, password)
        candidate = Principal.new(
            email.strip(),
            tenant.id,
            role=signup_role(tenant, role),
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            password_hash=self.hash_password(password),
        )
        try:
            principal = self.store.create_principal(candidate)
        except ConstraintViolation as exc:
            raise ConflictError("User with this email already exists") from exc

        if not await self._send_code(tenant, principal, OtpPurpose.SIGNUP_VERIFY):
            # The account cannot be verified without the email
            self.store.delete_principal(principal.id)
            self.logger.error(
                "signup_rolled_back", tenant_id=tenant.id, principal_id=principal.id
            )
            raise ServerError(
                "Could not send the verification email. Please try again later.",
                status_code=503,
            )
        self.logger.info("signup_success", tenant_id=tenant.id, principal_id=principal.id)
        return principal

    def verify_account(self, tenant: Tenant, email: str, code: str) -> Principal:
        principal = self.otp.consume(
            tenant.id, email, OtpPurpose.SIGNUP_VERIFY, code, updates={"is_verified": True}
        )
        self.logger.info("account_verified", tenant_id=tenant.id, principal_id=principal.id)
        return principal

    async def resend_verification(self, tenant: Tenant, email: str) -> None:
        principal = self.store.find_principal(tenant.id, email or "")
        if principal is None or principal.is_verified:
            return
        if not await self._send_code(tenant, principal, OtpPurpose.SIGNUP_VERIFY):
            raise ServerError("Could not send the verification email", status_code=503)

    # -- password reset ----------------------------------------------------

    async def forgot_password(self, tenant: Tenant, email: str) -> None:
        """Always succeeds from the caller's point of view."""
        principal = self.store.find_principal(tenant.id, email or "")
        if principal is None:
            self.logger.info("password_reset_unknown_email", tenant_id=tenant.id)
            return
        if not await self._send_code(tenant, principal, OtpPurpose.PASSWORD_RESET):
            self.logger.warning(
                "password_reset_email_failed", tenant_id=tenant.id, principal_id=principal.id
            )

    def reset_password(self, tenant: Tenant, email: str, code: str, new_password: str) -> Principal:
        self.check_password_policy(tenant, new_password)
        principal = self.otp.consume(
            tenant.id,
            email,
            OtpPurpose.PASSWORD_RESET,
            code,
            updates={"password_hash": self.hash_password(new_password)},
        )
        self.logger.info("password_reset_completed", tenant_id=tenant.id, principal_id=principal.id)
        return principal

    def change_password(
        self, tenant: Tenant, principal: Principal, current_password: str, new_password: str
    ) -> None:
        if principal.password_hash is None:
            raise ValidationError("This account signs in with an external provider")
        if not self.verify_password(principal.password_hash, current_password):
            raise InvalidCredentialError("Current password is incorrect")
        self.check_password_policy(tenant, new_password)
        current_hash = principal.password_hash
        updated = self.store.update_principal(
            principal.id,
            {"password_hash": self.hash_password(new_password)},
            when=lambda p: p.password_hash == current_hash,
        )
        if updated is None:
            raise ConflictError("Password was changed concurrently; please retry")
        self.logger.info("password_changed", tenant_id=tenant.id, principal_id=principal.id)

    # -- MFA ---------------------------------------------------------------

    async def request_mfa_enable(self, tenant: Tenant, principal: Principal) -> None:
        if principal.mfa_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        if not await self._send_code(tenant, principal, OtpPurpose.MFA_ENABLE):
            raise ServerError("Could not send the verification code", status_code=503)

    def enable_mfa(self, tenant: Tenant, principal: Principal, code: str) -> Principal:
        updated = self.otp.consume(
            tenant.id, principal.email, OtpPurpose.MFA_ENABLE, code, updates={"mfa_enabled": True}
        )
        self.logger.info("mfa_enabled", tenant_id=tenant.id, principal_id=principal.id)
        return updated

    def disable_mfa(
        self, tenant: Tenant, principal: Principal, password: Optional[str] = None
    ) -> Principal:
        # Federated-only accounts have no password to confirm with
        if principal.password_hash is not None and not self.verify_password(
            principal.password_hash, password or ""
        ):
            raise InvalidCredentialError("Password is incorrect")
        updated = self.store.update_principal(principal.id, {"mfa_enabled": False})
        if updated is None:
            raise PrincipalNotFoundError("User not found")
        self.logger.info("mfa_disabled", tenant_id=tenant.id, principal_id=principal.id)
        return updated

    # -- reads -------------------------------------------------------------

    def recent_logins(self, principal: Principal, limit: Optional[int] = None) -> List[LoginHistoryEntry]:
        entries = list(reversed(principal.login_history))
        return entries[:limit] if limit else entries

    def principal_from_token(self, tenant: Tenant, token: Optional[str]) -> Tuple[Principal, VerifiedToken]:
        """Verify a tenant bearer token and load the principal it names."""
        verified = self.tokens.verify(token or "", expected_tenant_id=tenant.id)
        principal = None
        if verified.principal_id:
            principal = self.store.get_principal(verified.principal_id)
        elif verified.claims.get("email"):
            principal = self.store.find_principal(tenant.id, verified.claims["email"])
        else:
            raise InvalidTokenError(reason="malformed")
        if principal is None or principal.tenant_id != tenant.id:
            raise PrincipalNotFoundError("User not found")
        return principal, verified

    # -- superuser ---------------------------------------------------------

    def superuser_login(self, email: str, password: str) -> Tuple[Superuser, IssuedToken]:
        superuser = self.store.find_superuser(email or "")
        if (
            superuser is None
            or not superuser.is_active
            or not self.verify_password(superuser.password_hash, password)
        ):
            self.logger.warning("superuser_login_failed")
            raise InvalidCredentialError(INVALID_LOGIN_MESSAGE)
        self.store.record_superuser_login(superuser.id, self._now())
        issued = self.tokens.issue_superuser(superuser)
        self.logger.info("superuser_login_success", superuser_id=superuser.id)
        return superuser, issued

    def superuser_from_token(self, token: Optional[str]) -> Superuser:
        verified = self.tokens.verify(token or "")
        if not verified.is_superuser:
            raise InvalidTokenError(reason="tenant_mismatch")
        superuser = self.store.get_superuser(verified.principal_id or "")
        if superuser is None or not superuser.is_active:
            raise InvalidTokenError(reason="unknown_tenant")
        return superuser
