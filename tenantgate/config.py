from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(data_dir: str, filename: str) -> str:
    """Read a persisted signing secret, generating and storing one if absent.

    Tokens must stay verifiable across restarts, so a generated secret is
    written atomically with 0600 permissions next to the other runtime data.
    """
    root = Path(data_dir)
    secret_path = root / filename
    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set it via environment or make DATA_DIR writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Process-wide configuration, injected into the services at startup."""

    data_dir: str = env_field("/srv/tenantgate", "DATA_DIR")
    seed_file: str | None = env_field(
        None, "SEED_FILE", description="JSON file with tenants and superusers loaded at startup"
    )
    api_base_url: str = env_field("http://localhost:8000", "API_BASE_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (no outbound geo lookups, resettable runtime)",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    superuser_jwt_secret: str | None = env_field(None, "SUPERUSER_JWT_SECRET")
    superuser_token_ttl_days: int = env_field(365, "SUPERUSER_TOKEN_TTL_DAYS")
    default_token_expires_in: str = env_field("24h", "DEFAULT_TOKEN_EXPIRES_IN")
    allow_default_signing_secret: bool = env_field(
        True,
        "ALLOW_DEFAULT_SIGNING_SECRET",
        description="Sign for tenants without a secret using JWT_SECRET; false fails closed",
    )

    # One-time codes and account lifecycle
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    deletion_otp_ttl_minutes: int = env_field(10, "DELETION_OTP_TTL_MINUTES")
    deletion_grace_days: int = env_field(15, "DELETION_GRACE_DAYS")
    login_history_limit: int = env_field(20, "LOGIN_HISTORY_LIMIT")
    redirect_fallback_url: str = env_field("/profile", "REDIRECT_FALLBACK_URL")

    # Default OAuth credentials used when a tenant's own are unusable
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oauth_apple_client_id: str | None = env_field(None, "OAUTH_APPLE_CLIENT_ID")
    oauth_apple_client_secret: str | None = env_field(None, "OAUTH_APPLE_CLIENT_SECRET")
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TenantGate", "EMAIL_FROM_NAME")

    geoip_lookup_url: str | None = env_field(
        None,
        "GEOIP_LOOKUP_URL",
        description="Lookup URL template with an {ip} placeholder, e.g. https://ipinfo.io/{ip}/json",
    )

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    otp_rate_limit_per_minute: int = env_field(5, "OTP_RATE_LIMIT_PER_MINUTE")
    oauth_rate_limit_per_minute: int = env_field(20, "OAUTH_RATE_LIMIT_PER_MINUTE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("oauth_http_timeout_seconds")
    @classmethod
    def _require_finite_timeout(cls, value: float) -> float:
        # Provider calls must always be bounded
        if value <= 0:
            raise ValueError("oauth_http_timeout_seconds must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        if not self.jwt_secret:
            self.jwt_secret = _load_or_create_secret(self.data_dir, ".jwt_secret")
        if not self.superuser_jwt_secret:
            self.superuser_jwt_secret = _load_or_create_secret(
                self.data_dir, ".superuser_jwt_secret"
            )
        if self.jwt_secret == self.superuser_jwt_secret:
            raise ValueError("SUPERUSER_JWT_SECRET must differ from JWT_SECRET")
        return self

    def default_oauth_credentials(self, provider: str) -> tuple[str | None, str | None]:
        """Process-wide fallback client id/secret for a provider."""
        return (
            getattr(self, f"oauth_{provider}_client_id", None),
            getattr(self, f"oauth_{provider}_client_secret", None),
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
