"""Configuration management for ssokeeper services.

This module provides centralized configuration using Pydantic Settings,
supporting environment-based configuration (dev, staging, production) for
session lifetimes, background refresh, credential persistence and the
OIDC token endpoint used to exchange refresh tokens.

All configuration is loaded from environment variables with the SSOKEEPER_
prefix. Nested settings use double underscore as delimiter
(e.g., SSOKEEPER_SESSION__MAX_SESSIONS_PER_USER).

Example:
    export SSOKEEPER_ENVIRONMENT=dev
    export SSOKEEPER_SESSION__DEFAULT_SESSION_DURATION=PT8H
    export SSOKEEPER_CREDENTIAL_STORE__PROVIDER=encrypted_file
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import timedelta
from enum import Enum
from functools import cached_property
from typing import Annotated, Any, Self

from pydantic import (
    Field,
    SecretStr,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Environment(str, Enum):
    """Deployment environment.

    Affects default behaviors and validation strictness.
    Production environment has additional constraints.
    """

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class CredentialStoreProvider(str, Enum):
    """Backend used to persist session credentials across restarts."""

    MEMORY = "memory"
    ENCRYPTED_FILE = "encrypted_file"
    EPHEMERAL = "ephemeral"


class SessionSettings(BaseSettings):
    """Session lifetime, refresh and binding policy.

    Durations accept seconds or ISO 8601 durations (e.g. ``PT30M``).
    ``sliding_expiration`` may be unset to disable sliding expiration.
    """

    model_config = SettingsConfigDict(
        env_prefix="SSOKEEPER_SESSION__",
        extra="ignore",
    )

    default_session_duration: timedelta = Field(
        default=timedelta(hours=8),
        description="Lifetime of a new or refreshed session",
    )
    max_session_duration: timedelta = Field(
        default=timedelta(days=7),
        description="Absolute ceiling measured from session creation",
    )
    sliding_expiration: timedelta | None = Field(
        default=timedelta(minutes=30),
        description="Window added on each validated activity (None disables)",
    )
    refresh_threshold: Annotated[float, Field(ge=0.0, le=1.0)] = Field(
        default=0.8,
        description="Fraction of session lifetime after which refresh is attempted",
    )
    refresh_check_interval: timedelta = Field(
        default=timedelta(minutes=1),
        description="Interval between refresh scheduler checks",
    )
    expiration_warning_time: timedelta = Field(
        default=timedelta(minutes=5),
        description="Time before expiry at which a SessionExpiring event is raised",
    )
    cleanup_interval: timedelta = Field(
        default=timedelta(minutes=5),
        description="Interval between expired-session sweeps",
    )
    enable_auto_refresh: bool = Field(
        default=True,
        description="Register sessions with a refresh token for background refresh",
    )
    persist_sessions: bool = Field(
        default=True,
        description="Mirror session state into the credential store",
    )
    max_sessions_per_user: Annotated[int, Field(ge=0)] = Field(
        default=5,
        description="Maximum concurrent sessions per user (0 = unlimited)",
    )
    revoke_oldest_on_max_reached: bool = Field(
        default=True,
        description="Evict the oldest session at the limit instead of rejecting the login",
    )
    enforce_device_binding: bool = Field(
        default=False,
        description="Reject validation from a different device id",
    )
    enforce_ip_binding: bool = Field(
        default=False,
        description="Reject validation from a different IP address",
    )
    max_refresh_retries: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Refresh attempts before a session is unregistered from auto-refresh",
    )
    base_retry_delay: timedelta = Field(
        default=timedelta(seconds=5),
        description="Base delay for refresh retry backoff",
    )
    use_exponential_backoff: bool = Field(
        default=True,
        description="Double the retry delay on each consecutive failure",
    )

    @field_validator(
        "default_session_duration",
        "max_session_duration",
        "refresh_check_interval",
        "cleanup_interval",
    )
    @classmethod
    def validate_positive(cls, v: timedelta) -> timedelta:
        """Ensure durations that drive timers are strictly positive."""
        if v <= timedelta(0):
            msg = "Duration must be positive"
            raise ValueError(msg)
        return v

    @field_validator("base_retry_delay", "expiration_warning_time")
    @classmethod
    def validate_non_negative(cls, v: timedelta) -> timedelta:
        """Ensure delays are not negative."""
        if v < timedelta(0):
            msg = "Duration cannot be negative"
            raise ValueError(msg)
        return v

    @field_validator("sliding_expiration")
    @classmethod
    def validate_sliding_window(cls, v: timedelta | None) -> timedelta | None:
        """A zero or negative sliding window would shorten sessions on use."""
        if v is not None and v <= timedelta(0):
            msg = "Sliding expiration must be positive (unset it to disable)"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_duration_ceiling(self) -> Self:
        """The absolute ceiling must cover at least one default lifetime."""
        if self.max_session_duration < self.default_session_duration:
            msg = (
                "max_session_duration must be greater than or equal to "
                "default_session_duration"
            )
            raise ValueError(msg)
        return self

    @property
    def sliding_enabled(self) -> bool:
        """Check if sliding expiration is configured."""
        return self.sliding_expiration is not None


class CredentialStoreSettings(BaseSettings):
    """Credential store settings.

    The encrypted file provider stores credentials in an AES-256-GCM
    encrypted JSON document; the passphrase is required for that provider.
    """

    model_config = SettingsConfigDict(
        env_prefix="SSOKEEPER_CREDENTIAL_STORE__",
        extra="ignore",
    )

    provider: CredentialStoreProvider = Field(
        default=CredentialStoreProvider.MEMORY,
        description="Credential store backend (memory, encrypted_file, ephemeral)",
    )
    file_path: str = Field(
        default="./.ssokeeper/credentials.enc",
        description="Path of the encrypted credential file",
    )
    passphrase: SecretStr | None = Field(
        default=None,
        description="Passphrase used to derive the file encryption key",
    )
    kdf_iterations: Annotated[int, Field(ge=10_000)] = Field(
        default=600_000,
        description="PBKDF2-HMAC-SHA256 iterations for key derivation",
    )


class OIDCSettings(BaseSettings):
    """OpenID Connect settings for refresh-token exchange.

    When enabled, session refreshes exchange the stored refresh token at the
    provider's token endpoint before extending the session.
    """

    model_config = SettingsConfigDict(
        env_prefix="SSOKEEPER_OIDC__",
        extra="ignore",
    )

    enabled: bool = Field(
        default=False,
        description="Exchange refresh tokens with the identity provider",
    )
    client_id: str = Field(
        default="",
        description="OIDC client identifier",
    )
    client_secret: SecretStr = Field(
        default=SecretStr(""),
        description="OIDC client secret",
    )
    token_endpoint: str = Field(
        default="",
        description="OAuth2 token endpoint used for the refresh_token grant",
    )
    scopes: list[str] = Field(
        default=["openid", "profile", "email", "offline_access"],
        description="Scopes requested when refreshing",
    )
    timeout: Annotated[int, Field(ge=1, le=120)] = Field(
        default=30,
        description="Token endpoint request timeout in seconds",
    )


class Settings(BaseSettings):
    """Main ssokeeper configuration container.

    Loads all configuration from environment variables with SSOKEEPER_ prefix.
    Nested settings use double underscore delimiter.

    Example environment variables:
        SSOKEEPER_ENVIRONMENT=production
        SSOKEEPER_SESSION__MAX_SESSIONS_PER_USER=3
        SSOKEEPER_CREDENTIAL_STORE__PROVIDER=encrypted_file
        SSOKEEPER_CREDENTIAL_STORE__PASSPHRASE=...
    """

    model_config = SettingsConfigDict(
        env_prefix="SSOKEEPER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_default=True,
    )

    environment: Environment = Field(
        default=Environment.DEV,
        description="Deployment environment (dev, staging, production)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode (never in production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    session: SessionSettings = Field(default_factory=SessionSettings)
    credential_store: CredentialStoreSettings = Field(default_factory=CredentialStoreSettings)
    oidc: OIDCSettings = Field(default_factory=OIDCSettings)

    app_name: str = Field(
        default="ssokeeper",
        description="Application name for logging",
    )
    app_version: str = Field(
        default="0.1.0",
        description="Application version",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and check the logging level name."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            msg = f"Log level must be one of: {', '.join(sorted(allowed))}"
            raise ValueError(msg)
        return v.upper()

    @model_validator(mode="after")
    def validate_production_constraints(self) -> Self:
        """Enforce production environment constraints."""
        if self.environment == Environment.PRODUCTION:
            if self.debug:
                msg = "Debug mode is not allowed in production environment"
                raise ValueError(msg)
            if self.credential_store.provider == CredentialStoreProvider.MEMORY:
                logger.warning(
                    "Credential store provider is 'memory' in production. "
                    "Sessions will not survive a restart."
                )
            if self.session.enforce_device_binding is False:
                logger.info("Device binding is disabled in production")
        return self

    @cached_property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEV

    @cached_property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    def get_policy_snapshot(self) -> dict[str, Any]:
        """Generate a snapshot of the session policy for logging.

        Returns:
            Non-secret policy values keyed by section.
        """
        session = self.session
        return {
            "environment": self.environment.value,
            "session": {
                "default_session_duration": session.default_session_duration.total_seconds(),
                "max_session_duration": session.max_session_duration.total_seconds(),
                "sliding_expiration": (
                    session.sliding_expiration.total_seconds()
                    if session.sliding_expiration is not None
                    else None
                ),
                "refresh_threshold": session.refresh_threshold,
                "max_sessions_per_user": session.max_sessions_per_user,
                "revoke_oldest_on_max_reached": session.revoke_oldest_on_max_reached,
                "enforce_device_binding": session.enforce_device_binding,
                "enforce_ip_binding": session.enforce_ip_binding,
                "max_refresh_retries": session.max_refresh_retries,
            },
            "credential_store": {
                "provider": self.credential_store.provider.value,
                "persist_sessions": session.persist_sessions,
            },
            "oidc": {
                "enabled": self.oidc.enabled,
                "scopes": self.oidc.scopes,
            },
            "app_version": self.app_version,
        }

    def get_policy_hash(self) -> str:
        """Compute a hash of the policy snapshot.

        Logged at startup so deployments can be compared by policy.

        Returns:
            SHA-256 hex digest of the policy snapshot.
        """
        snapshot = self.get_policy_snapshot()
        snapshot_json = json.dumps(snapshot, sort_keys=True)
        return hashlib.sha256(snapshot_json.encode()).hexdigest()


class ConfigValidationError(Exception):
    """Raised when configuration validation fails.

    get_settings() turns it into SystemExit(1) so the service never
    starts with an unusable credential store or OIDC client.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize with error details.

        Args:
            message: What is wrong with the configuration.
            field: Dotted path of the offending setting, if known.
        """
        self.message = message
        self.field = field
        super().__init__(message)


def validate_settings(settings: Settings) -> None:
    """Perform additional runtime validation of settings.

    Covers cross-section rules that the individual settings models cannot
    check on their own.

    Args:
        settings: Settings instance to validate.

    Raises:
        ConfigValidationError: If validation fails.
    """
    store = settings.credential_store
    if store.provider == CredentialStoreProvider.ENCRYPTED_FILE:
        if store.passphrase is None or not store.passphrase.get_secret_value():
            raise ConfigValidationError(
                "A passphrase is required for the encrypted file credential store. "
                "Set SSOKEEPER_CREDENTIAL_STORE__PASSPHRASE.",
                field="credential_store.passphrase",
            )
        if not store.file_path:
            raise ConfigValidationError(
                "Credential file path cannot be empty.",
                field="credential_store.file_path",
            )

    if settings.oidc.enabled:
        if not settings.oidc.client_id:
            raise ConfigValidationError(
                "OIDC client_id is required when OIDC is enabled.",
                field="oidc.client_id",
            )
        if not settings.oidc.token_endpoint:
            raise ConfigValidationError(
                "OIDC token_endpoint is required when OIDC is enabled.",
                field="oidc.token_endpoint",
            )

    logger.info(
        "Configuration validated. Policy hash: %s",
        settings.get_policy_hash(),
    )
