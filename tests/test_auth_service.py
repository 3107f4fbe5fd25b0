"""Unit tests for the password, signup, MFA and superuser flows.

Tests for:
- Password policy and argon2 hashing
- Signup with email verification and rollback
- Password login, MFA step-up and redirection
- Password reset and change
- Superuser login
"""

import jwt
import pytest

from tenantgate.service.auth import INVALID_LOGIN_MESSAGE, AuthService, password_policy_violations
from tenantgate.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialError,
    InvalidTokenError,
    ServerError,
    ValidationError,
)
from tenantgate.service.login_history import GeoLocator, LoginHistoryRecorder
from tenantgate.service.otp import OtpChallengeManager
from tenantgate.service.redirection import MATCH_FALLBACK, MATCH_SPECIFIC_ROLE_DEFAULT
from tenantgate.service.tokens import TokenService
from tenantgate.storage.models import (
    PasswordPolicy,
    Principal,
    RedirectionRule,
    RedirectionUrl,
    SigningConfig,
    Superuser,
)

LOGIN_PAGE = "https://login.acme.test"


@pytest.fixture
def auth(store, settings, mailbox):
    return AuthService(
        store,
        settings,
        TokenService(settings, store.get_tenant),
        OtpChallengeManager(store),
        mailbox,
        LoginHistoryRecorder(store, GeoLocator(None)),
    )


@pytest.fixture
def tenant(make_tenant):
    return make_tenant(
        "acme",
        redirection_rules=[
            RedirectionRule(
                auth_page_url=LOGIN_PAGE,
                role_slug="admin",
                urls=[RedirectionUrl("https://admin.acme.test/", True)],
            )
        ],
    )


@pytest.fixture
def verified_user(auth, store, tenant):
    return store.create_principal(
        Principal.new(
            "ada@acme.test",
            "acme",
            role="admin",
            first_name="Ada",
            is_verified=True,
            password_hash=auth.hash_password("correct horse"),
        )
    )


def _code(store, principal_id, purpose):
    return store.get_principal(principal_id).one_time_codes[purpose].code


class TestPasswordPolicy:
    """Tests for tenant password policies and hashing."""

    def test_violations_listed(self):
        policy = PasswordPolicy(
            min_length=10,
            require_uppercase=True,
            require_lowercase=True,
            require_numbers=True,
            require_special=True,
        )
        assert len(password_policy_violations(policy, "abc")) == 4
        assert password_policy_violations(policy, "Abcdefgh1!x") == []

    def test_default_policy_only_checks_length(self):
        assert password_policy_violations(PasswordPolicy(), "abcdef") == []
        assert password_policy_violations(PasswordPolicy(), "abc") != []

    def test_hashing_round_trip(self, auth):
        digest = auth.hash_password("s3cret")
        assert digest.startswith("$argon2id$")
        assert auth.verify_password(digest, "s3cret")
        assert not auth.verify_password(digest, "wrong")
        assert not auth.verify_password("not-a-hash", "s3cret")
        assert not auth.verify_password(None, "s3cret")


class TestSignup:
    """Tests for signup and account verification."""

    async def test_signup_creates_unverified_principal(self, auth, store, mailbox, tenant):
        principal = await auth.signup(
            tenant, "new@acme.test", "password1", first_name=" New ", role="editor"
        )
        assert principal.role == "editor"
        assert principal.first_name == "New"
        assert not principal.is_verified
        code = _code(store, principal.id, "signup_verify")
        assert code in mailbox.to("new@acme.test")[0]["text"]

        verified = auth.verify_account(tenant, "new@acme.test", code)
        assert verified.is_verified

    async def test_hidden_role_not_granted(self, auth, tenant):
        principal = await auth.signup(tenant, "sneaky@acme.test", "password1", role="admin")
        assert principal.role == "user"

    async def test_duplicate_email(self, auth, tenant, verified_user):
        with pytest.raises(ConflictError):
            await auth.signup(tenant, "ADA@acme.test", "password1")

    async def test_policy_enforced(self, auth, store, make_tenant):
        strict = make_tenant("strict", password_policy=PasswordPolicy(min_length=8, require_special=True))
        with pytest.raises(ValidationError) as excinfo:
            await auth.signup(strict, "x@strict.test", "short")
        assert len(excinfo.value.detail["violations"]) == 2
        assert store.find_principal("strict", "x@strict.test") is None

    async def test_email_failure_rolls_back(self, auth, store, mailbox, tenant):
        mailbox.fail = True
        with pytest.raises(ServerError) as excinfo:
            await auth.signup(tenant, "ghost@acme.test", "password1")
        assert excinfo.value.status_code == 503
        assert store.find_principal("acme", "ghost@acme.test") is None

    async def test_resend_verification(self, auth, store, mailbox, tenant):
        principal = await auth.signup(tenant, "new@acme.test", "password1")
        first = _code(store, principal.id, "signup_verify")
        await auth.resend_verification(tenant, "new@acme.test")
        assert len(mailbox.to("new@acme.test")) == 2
        second = _code(store, principal.id, "signup_verify")
        if first != second:
            with pytest.raises(InvalidCredentialError):
                auth.verify_account(tenant, "new@acme.test", first)
        assert auth.verify_account(tenant, "new@acme.test", second).is_verified


class TestLogin:
    async def test_success_issues_token_and_redirects(self, auth, store, mailbox, tenant, verified_user):
        outcome = await auth.login(
            tenant, "ada@acme.test", "correct horse", auth_page_url=LOGIN_PAGE, ip_address="10.0.0.1"
        )
        assert not outcome.mfa_required
        assert outcome.redirection.match_type == MATCH_SPECIFIC_ROLE_DEFAULT
        assert outcome.redirection.token_appended_url == (
            f"https://admin.acme.test/?token={outcome.token.token}"
        )
        assert auth.tokens.verify(outcome.token.token, expected_tenant_id="acme").principal_id == verified_user.id
        assert store.get_principal(verified_user.id).last_login_ip == "10.0.0.1"
        assert any("New sign-in" in m["subject"] for m in mailbox.to("ada@acme.test"))

    async def test_fallback_redirection(self, auth, tenant, verified_user):
        outcome = await auth.login(tenant, "ada@acme.test", "correct horse", auth_page_url="https://other.test")
        assert outcome.redirection.match_type == MATCH_FALLBACK
        assert outcome.redirection.url == "/profile"

    async def test_failures_are_indistinguishable(self, auth, tenant, verified_user):
        with pytest.raises(InvalidCredentialError) as wrong_password:
            await auth.login(tenant, "ada@acme.test", "wrong")
        with pytest.raises(InvalidCredentialError) as unknown:
            await auth.login(tenant, "nobody@acme.test", "correct horse")
        assert str(wrong_password.value) == str(unknown.value) == INVALID_LOGIN_MESSAGE

    async def test_other_tenant_cannot_login(self, auth, make_tenant, verified_user):
        beta = make_tenant("beta")
        with pytest.raises(InvalidCredentialError):
            await auth.login(beta, "ada@acme.test", "correct horse")

    async def test_federated_account_has_no_password(self, auth, store, tenant):
        store.create_principal(Principal.new("fed@acme.test", "acme", is_verified=True, provider="google"))
        with pytest.raises(InvalidCredentialError):
            await auth.login(tenant, "fed@acme.test", "")

    async def test_unverified_blocked(self, auth, store, tenant):
        store.create_principal(
            Principal.new("new@acme.test", "acme", password_hash=auth.hash_password("password1"))
        )
        with pytest.raises(ForbiddenError):
            await auth.login(tenant, "new@acme.test", "password1")


class TestMfaLogin:
    """Tests for the MFA step-up login."""

    async def test_tenant_requires_mfa(self, auth, store, make_tenant):
        tenant = make_tenant(
            "secure",
            mfa_required=True,
            signing=SigningConfig(
                algorithm="HS384",
                secret="secure-signing-secret-0123456789abcdef0123456789",
                payload_fields=["userId", "email", "role", "department"],
            ),
            redirection_rules=[
                RedirectionRule(
                    auth_page_url=LOGIN_PAGE,
                    role_slug="admin",
                    urls=[
                        RedirectionUrl("https://admin.secure.test/start", False),
                        RedirectionUrl("https://admin.secure.test/home", True),
                    ],
                ),
                RedirectionRule(
                    auth_page_url=LOGIN_PAGE,
                    role_slug="any",
                    urls=[RedirectionUrl("https://app.secure.test/", True)],
                ),
            ],
        )
        principal = store.create_principal(
            Principal.new(
                "sam@secure.test",
                "secure",
                role="admin",
                is_verified=True,
                password_hash=auth.hash_password("pw123456"),
                attributes={"department": "Security"},
            )
        )
        outcome = await auth.login(tenant, "sam@secure.test", "pw123456", auth_page_url=LOGIN_PAGE)
        assert outcome.mfa_required
        assert outcome.token is None

        code = _code(store, principal.id, "login_mfa")
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(InvalidCredentialError):
            await auth.verify_mfa_login(tenant, "sam@secure.test", wrong, auth_page_url=LOGIN_PAGE)
        completed = await auth.verify_mfa_login(
            tenant, "sam@secure.test", code, auth_page_url=f"{LOGIN_PAGE}/"
        )

        token = completed.token.token
        assert jwt.get_unverified_header(token)["alg"] == "HS384"
        verified = auth.tokens.verify(token, expected_tenant_id="secure")
        assert {k: v for k, v in verified.claims.items() if k not in {"exp", "iat"}} == {
            "userId": principal.id,
            "email": "sam@secure.test",
            "role": "admin",
            "department": "Security",
            "organizationId": "secure",
        }
        assert completed.redirection.match_type == MATCH_SPECIFIC_ROLE_DEFAULT
        assert completed.redirection.url == "https://admin.secure.test/home"
        assert completed.redirection.token_appended_url == f"https://admin.secure.test/home?token={token}"

        with pytest.raises(InvalidCredentialError):
            await auth.verify_mfa_login(tenant, "sam@secure.test", code)

    async def test_mfa_email_failure(self, auth, mailbox, store, make_tenant):
        tenant = make_tenant("secure", mfa_required=True)
        store.create_principal(
            Principal.new(
                "sam@secure.test", "secure", is_verified=True, password_hash=auth.hash_password("pw123456")
            )
        )
        mailbox.fail = True
        with pytest.raises(ServerError):
            await auth.login(tenant, "sam@secure.test", "pw123456")

    async def test_enable_and_disable_mfa(self, auth, store, tenant, verified_user):
        await auth.request_mfa_enable(tenant, verified_user)
        enabled = auth.enable_mfa(tenant, verified_user, _code(store, verified_user.id, "mfa_enable"))
        assert enabled.mfa_enabled
        with pytest.raises(ConflictError):
            await auth.request_mfa_enable(tenant, enabled)

        outcome = await auth.login(tenant, "ada@acme.test", "correct horse")
        assert outcome.mfa_required

        with pytest.raises(InvalidCredentialError):
            auth.disable_mfa(tenant, enabled, "wrong")
        assert not auth.disable_mfa(tenant, enabled, "correct horse").mfa_enabled


class TestPasswordReset:
    async def test_forgot_unknown_email_is_silent(self, auth, mailbox, tenant):
        await auth.forgot_password(tenant, "nobody@acme.test")
        assert mailbox.sent == []

    async def test_reset_flow(self, auth, store, tenant, verified_user):
        await auth.forgot_password(tenant, "ada@acme.test")
        code = _code(store, verified_user.id, "password_reset")
        auth.reset_password(tenant, "ada@acme.test", code, "brand new pass")
        outcome = await auth.login(tenant, "ada@acme.test", "brand new pass")
        assert outcome.token is not None
        with pytest.raises(InvalidCredentialError):
            auth.reset_password(tenant, "ada@acme.test", code, "another pass")

    async def test_change_password(self, auth, store, tenant, verified_user):
        with pytest.raises(InvalidCredentialError):
            auth.change_password(tenant, verified_user, "wrong", "new password")
        auth.change_password(tenant, verified_user, "correct horse", "new password")
        with pytest.raises(InvalidCredentialError):
            await auth.login(tenant, "ada@acme.test", "correct horse")
        assert (await auth.login(tenant, "ada@acme.test", "new password")).token is not None

    def test_change_password_races(self, auth, store, tenant, verified_user):
        store.update_principal(verified_user.id, {"password_hash": auth.hash_password("elsewhere")})
        with pytest.raises(ConflictError):
            auth.change_password(tenant, verified_user, "correct horse", "new password")


class TestHistoryAndTokens:
    async def test_recent_logins_newest_first_and_capped(self, auth, store, tenant, verified_user):
        for n in range(22):
            await auth.login(tenant, "ada@acme.test", "correct horse", ip_address=f"10.0.0.{n}")
        entries = auth.recent_logins(store.get_principal(verified_user.id))
        assert len(entries) == 20
        assert entries[0].ip_address == "10.0.0.21"
        assert entries[-1].ip_address == "10.0.0.2"
        assert len(auth.recent_logins(store.get_principal(verified_user.id), 5)) == 5

    async def test_principal_from_token(self, auth, make_tenant, tenant, verified_user):
        outcome = await auth.login(tenant, "ada@acme.test", "correct horse")
        principal, verified = auth.principal_from_token(tenant, outcome.token.token)
        assert principal.id == verified_user.id
        beta = make_tenant("beta")
        with pytest.raises(InvalidTokenError):
            auth.principal_from_token(beta, outcome.token.token)


class TestSuperuser:
    @pytest.fixture
    def root(self, auth, store):
        return store.create_superuser(
            Superuser(id="root", email="root@example.com", password_hash=auth.hash_password("root-pass"))
        )

    def test_login_and_resolve(self, auth, store, root):
        superuser, issued = auth.superuser_login("ROOT@example.com", "root-pass")
        assert superuser.id == "root"
        assert store.get_superuser("root").last_login_at is not None
        assert auth.superuser_from_token(issued.token).email == "root@example.com"

    def test_bad_password(self, auth, root):
        with pytest.raises(InvalidCredentialError):
            auth.superuser_login("root@example.com", "nope")

    async def test_tenant_token_is_not_superuser(self, auth, tenant, verified_user, root):
        outcome = await auth.login(tenant, "ada@acme.test", "correct horse")
        with pytest.raises(InvalidTokenError):
            auth.superuser_from_token(outcome.token.token)
