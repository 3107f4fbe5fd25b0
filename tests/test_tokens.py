"""Tests for per-tenant token issuance and two-phase verification."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from tenantgate.config import Settings
from tenantgate.service.errors import InvalidTokenError, MisconfiguredError
from tenantgate.service.tokens import TokenService, parse_expires_in
from tenantgate.storage.models import Principal, SigningConfig, Superuser


def _rsa_pem() -> tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def tokens(settings, store):
    return TokenService(settings, store.get_tenant)


@pytest.fixture
def ada(store, make_tenant):
    make_tenant("acme")
    return store.create_principal(
        Principal.new(
            "ada@example.com",
            "acme",
            first_name="Ada",
            last_name="Lovelace",
            role="admin",
            attributes={"department": "R&D"},
        )
    )


class TestParseExpiresIn:
    def test_units(self):
        assert parse_expires_in("30m") == timedelta(minutes=30)
        assert parse_expires_in("24h") == timedelta(hours=24)
        assert parse_expires_in("7d") == timedelta(days=7)
        assert parse_expires_in(45) == timedelta(seconds=45)
        assert parse_expires_in("90") == timedelta(seconds=90)

    def test_default_when_empty(self):
        assert parse_expires_in(None) == timedelta(hours=24)
        assert parse_expires_in("") == timedelta(hours=24)

    @pytest.mark.parametrize("value", ["abc", "0", "-5m", "10w"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_expires_in(value)


class TestClaimsProjection:
    def test_default_fields_plus_forced_tenant(self, tokens, store, ada):
        tenant = store.get_tenant("acme")
        claims = tokens.build_claims(ada, tenant)
        assert claims == {
            "userId": ada.id,
            "userName": "Ada Lovelace",
            "email": "ada@example.com",
            "organizationId": "acme",
        }

    def test_configured_fields_and_passthrough(self, tokens, store, make_tenant):
        tenant = make_tenant(
            "beta",
            signing=SigningConfig(
                secret="beta-signing-secret-0123456789abcdef",
                payload_fields=["userId", "userName", "role", "department", "missing"],
            ),
        )
        principal = store.create_principal(
            Principal.new("x@example.com", "beta", first_name="Solo", attributes={"department": "Ops"})
        )
        claims = tokens.build_claims(principal, tenant)
        assert claims["userName"] == "Solo"
        assert claims["department"] == "Ops"
        assert claims["organizationId"] == "beta"
        assert "missing" not in claims
        assert "email" not in claims

    def test_issued_token_carries_projection(self, tokens, store, ada):
        issued = tokens.issue(ada, store.get_tenant("acme"))
        verified = tokens.verify(issued.token)
        assert verified.tenant_id == "acme"
        assert verified.principal_id == ada.id
        assert verified.claims["userName"] == "Ada Lovelace"
        assert not verified.is_superuser


class TestTenantIsolation:
    def test_token_from_one_tenant_rejected_for_another(self, tokens, store, make_tenant, ada):
        make_tenant("beta")
        issued = tokens.issue(ada, store.get_tenant("acme"))
        with pytest.raises(InvalidTokenError) as excinfo:
            tokens.verify(issued.token, expected_tenant_id="beta")
        assert excinfo.value.reason == "tenant_mismatch"

    def test_claiming_other_tenant_fails_signature(self, tokens, store, make_tenant, ada):
        make_tenant("beta")
        acme_secret = store.get_tenant("acme").signing.secret
        forged = jwt.encode(
            {
                "userId": ada.id,
                "organizationId": "beta",
                "exp": datetime.now(timezone.utc) + timedelta(hours=1),
            },
            acme_secret,
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError) as excinfo:
            tokens.verify(forged)
        assert excinfo.value.reason == "signature"

    def test_tampered_payload_rejected(self, tokens, store, ada):
        issued = tokens.issue(ada, store.get_tenant("acme"))
        header, _, signature = issued.token.split(".")
        other = jwt.encode(
            {"userId": ada.id, "organizationId": "acme", "role": "owner", "exp": 9999999999},
            "attacker-chosen-secret-0123456789abcdef",
            algorithm="HS256",
        )
        tampered = ".".join([header, other.split(".")[1], signature])
        with pytest.raises(InvalidTokenError):
            tokens.verify(tampered)

    def test_unknown_tenant_rejected(self, tokens):
        token = jwt.encode(
            {"organizationId": "ghost", "exp": 9999999999},
            "ghost-secret-0123456789abcdef0123",
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError) as excinfo:
            tokens.verify(token)
        assert excinfo.value.reason == "unknown_tenant"

    def test_inactive_tenant_tokens_rejected(self, tokens, store, ada):
        issued = tokens.issue(ada, store.get_tenant("acme"))
        store.set_tenant_active("acme", False)
        with pytest.raises(InvalidTokenError):
            tokens.verify(issued.token)

    def test_algorithm_mismatch_rejected(self, tokens, store, make_tenant):
        tenant = make_tenant(
            "strict",
            signing=SigningConfig(algorithm="HS512", secret="strict-secret-0123456789abcdef0123456789"),
        )
        token = jwt.encode(
            {"organizationId": "strict", "exp": 9999999999},
            tenant.signing.secret,
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError):
            tokens.verify(token)

    @pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
    def test_malformed(self, tokens, token):
        with pytest.raises(InvalidTokenError) as excinfo:
            tokens.verify(token)
        assert excinfo.value.reason == "malformed"


class TestExpiry:
    def test_expired_token_flagged(self, tokens, store, ada):
        secret = store.get_tenant("acme").signing.secret
        token = jwt.encode(
            {"organizationId": "acme", "userId": ada.id, "exp": datetime.now(timezone.utc) - timedelta(seconds=5)},
            secret,
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError) as excinfo:
            tokens.verify(token)
        assert excinfo.value.expired is True
        assert excinfo.value.error_code == "invalid_token"

    def test_tenant_expiry_applied(self, tokens, store, make_tenant):
        tenant = make_tenant(
            "short",
            signing=SigningConfig(secret="short-secret-0123456789abcdef0123", expires_in="30m"),
        )
        principal = store.create_principal(Principal.new("s@example.com", "short"))
        issued = tokens.issue(principal, tenant)
        remaining = issued.expires_at - datetime.now(timezone.utc)
        assert timedelta(minutes=29) < remaining <= timedelta(minutes=30)

    def test_invalid_tenant_expiry_uses_default(self, tokens, store, make_tenant):
        tenant = make_tenant(
            "odd", signing=SigningConfig(secret="odd-secret-0123456789abcdef012345", expires_in="soon")
        )
        principal = store.create_principal(Principal.new("o@example.com", "odd"))
        issued = tokens.issue(principal, tenant)
        remaining = issued.expires_at - datetime.now(timezone.utc)
        assert timedelta(hours=23) < remaining <= timedelta(hours=24)

    def test_token_without_exp_rejected(self, tokens, store, ada):
        secret = store.get_tenant("acme").signing.secret
        token = jwt.encode({"organizationId": "acme", "userId": ada.id}, secret, algorithm="HS256")
        with pytest.raises(InvalidTokenError) as excinfo:
            tokens.verify(token)
        assert excinfo.value.expired is False


class TestDefaultSecretFallback:
    def test_tenant_without_secret_uses_default(self, tokens, store, make_tenant):
        tenant = make_tenant("bare", signing=SigningConfig(algorithm="HS256"))
        principal = store.create_principal(Principal.new("b@example.com", "bare"))
        issued = tokens.issue(principal, tenant)
        assert tokens.verify(issued.token).tenant_id == "bare"
        # Signed with the process default secret
        jwt.decode(issued.token, tokens.settings.jwt_secret, algorithms=["HS256"])

    def test_fallback_can_fail_closed(self, tmp_path, store, make_tenant):
        settings = Settings(
            data_dir=str(tmp_path),
            jwt_secret="default-signing-secret-for-tests-only-0123456789",
            superuser_jwt_secret="superuser-signing-secret-for-tests-only-987654",
            allow_default_signing_secret=False,
        )
        strict = TokenService(settings, store.get_tenant)
        tenant = make_tenant("bare", signing=SigningConfig(algorithm="HS256"))
        principal = store.create_principal(Principal.new("b@example.com", "bare"))
        with pytest.raises(MisconfiguredError):
            strict.issue(principal, tenant)


class TestRsaSigning:
    def test_rs256_with_derived_public_key(self, tokens, store, make_tenant):
        private_pem, _ = _rsa_pem()
        tenant = make_tenant("rsa", signing=SigningConfig(algorithm="RS256", secret=private_pem))
        principal = store.create_principal(Principal.new("r@example.com", "rsa"))
        issued = tokens.issue(principal, tenant)
        assert jwt.get_unverified_header(issued.token)["alg"] == "RS256"
        assert tokens.verify(issued.token).principal_id == principal.id

    def test_rs256_with_configured_public_key(self, tokens, store, make_tenant):
        private_pem, public_pem = _rsa_pem()
        tenant = make_tenant(
            "rsa",
            signing=SigningConfig(algorithm="RS256", secret=private_pem, public_key=public_pem),
        )
        principal = store.create_principal(Principal.new("r@example.com", "rsa"))
        issued = tokens.issue(principal, tenant)
        assert tokens.verify(issued.token).tenant_id == "rsa"

    def test_rs256_without_key_is_misconfigured(self, tokens, store, make_tenant):
        tenant = make_tenant("rsa", signing=SigningConfig(algorithm="RS256"))
        principal = store.create_principal(Principal.new("r@example.com", "rsa"))
        with pytest.raises(MisconfiguredError):
            tokens.issue(principal, tenant)


class TestSuperuserTokens:
    def test_superuser_token_uses_sentinel(self, tokens):
        superuser = Superuser(id="root", email="root@example.com", password_hash="x")
        issued = tokens.issue_superuser(superuser)
        verified = tokens.verify(issued.token)
        assert verified.is_superuser
        assert verified.claims["organizationId"] == "god"
        lifetime = issued.expires_at - datetime.now(timezone.utc)
        assert lifetime > timedelta(days=364)

    def test_superuser_token_rejected_for_tenant(self, tokens, make_tenant):
        make_tenant("acme")
        issued = tokens.issue_superuser(
            Superuser(id="root", email="root@example.com", password_hash="x")
        )
        with pytest.raises(InvalidTokenError):
            tokens.verify(issued.token, expected_tenant_id="acme")

    def test_sentinel_with_tenant_default_key_rejected(self, tokens):
        forged = jwt.encode(
            {"organizationId": "god", "userId": "root", "exp": 9999999999},
            tokens.settings.jwt_secret,
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError):
            tokens.verify(forged)
