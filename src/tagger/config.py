"""Configuration management with validation.

Every setting is validated at load time so a misconfigured runbook fails
before it opens a single network connection.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum


class RunMode(str, Enum):
    """How a runbook treats the devices it selects."""

    WHAT_IF = "WhatIf"
    APPLY = "Apply"


class SecretSource(str, Enum):
    """Where the tenant/app/secret variables are looked up."""

    ENVIRONMENT = "environment"
    KEY_VAULT = "keyvault"


class LogFormat(str, Enum):
    """Log output renderings."""

    JSON = "json"
    TEXT = "text"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Tag-apply limits
MAX_TAG_BATCH_SIZE = 500  # AddOrRemoveTagForMultipleMachines hard limit
MAX_TAG_LENGTH = 200
RATE_LIMIT_COOLDOWN_SECONDS = 60
INTER_BATCH_DELAY_SECONDS = 0.5

# Inactivity thresholds
STALE_DEVICE_CUTOFF_DAYS = 365
DEFAULT_MAX_DAYS_INACTIVE = 99999

DEFAULT_HTTP_TIMEOUT_SECONDS = 60
MAX_HTTP_TIMEOUT_SECONDS = 600

# Endpoints
DEFAULT_AUTHORITY_HOST = "login.microsoftonline.com"
DEFAULT_DEFENDER_API_URL = "https://api.securitycenter.microsoft.com/api"
DEFAULT_GRAPH_API_URL = "https://graph.microsoft.com/v1.0"

VALID_HTTPS_URL_PATTERN = r"^https://[A-Za-z0-9.-]+(:\d+)?(/.*)?$"
VALID_AUTHORITY_HOST_PATTERN = r"^[A-Za-z0-9.-]+$"


@dataclass(frozen=True)
class SecretNames:
    """Names of the secret-store variables holding the app registration."""

    tenant_id: str = "DefenderTenantId"
    app_id: str = "DefenderAppId"
    app_secret: str = "DefenderAppSecret"

    def as_tuple(self) -> tuple[str, str, str]:
        return (self.tenant_id, self.app_id, self.app_secret)


@dataclass(frozen=True)
class Config:
    """Runbook configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Endpoints
    defender_api_url: str = DEFAULT_DEFENDER_API_URL
    graph_api_url: str = DEFAULT_GRAPH_API_URL
    authority_host: str = DEFAULT_AUTHORITY_HOST

    # Transport
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS

    # Tag submission pacing
    tag_batch_size: int = MAX_TAG_BATCH_SIZE
    rate_limit_cooldown_seconds: float = RATE_LIMIT_COOLDOWN_SECONDS
    inter_batch_delay_seconds: float = INTER_BATCH_DELAY_SECONDS

    # Secret store
    secret_source: SecretSource = SecretSource.ENVIRONMENT
    key_vault_url: str | None = None
    managed_identity_client_id: str | None = None
    secret_names: SecretNames = field(default_factory=SecretNames)

    log_format: LogFormat = LogFormat.JSON

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        for key, url in (
            ("DEFENDER_API_URL", self.defender_api_url),
            ("GRAPH_API_URL", self.graph_api_url),
        ):
            if not url:
                errors.append(f"{key} is required")
            elif not re.match(VALID_HTTPS_URL_PATTERN, url):
                errors.append(f"{key} must be an https URL: {url}")

        if not re.match(VALID_AUTHORITY_HOST_PATTERN, self.authority_host or ""):
            errors.append(f"AUTHORITY_HOST must be a bare host name: {self.authority_host}")

        if not (1 <= self.http_timeout_seconds <= MAX_HTTP_TIMEOUT_SECONDS):
            errors.append(f"HTTP_TIMEOUT must be between 1 and {MAX_HTTP_TIMEOUT_SECONDS} seconds")

        if not (1 <= self.tag_batch_size <= MAX_TAG_BATCH_SIZE):
            errors.append(f"TAG_BATCH_SIZE must be between 1 and {MAX_TAG_BATCH_SIZE}")

        if self.rate_limit_cooldown_seconds < 0:
            errors.append("RATE_LIMIT_COOLDOWN cannot be negative")

        if self.inter_batch_delay_seconds < 0:
            errors.append("INTER_BATCH_DELAY cannot be negative")

        if self.secret_source == SecretSource.KEY_VAULT:
            if not self.key_vault_url:
                errors.append("KEY_VAULT_URL is required when SECRET_SOURCE is keyvault")
            elif not re.match(VALID_HTTPS_URL_PATTERN, self.key_vault_url):
                errors.append(f"KEY_VAULT_URL must be an https URL: {self.key_vault_url}")

        for name in self.secret_names.as_tuple():
            if not name:
                errors.append("Secret variable names cannot be empty")
                break

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            DEFENDER_API_URL: Defender for Endpoint API base URL
            GRAPH_API_URL: Microsoft Graph base URL (used by stale removal)
            AUTHORITY_HOST: Entra ID authority host (default: login.microsoftonline.com)
            HTTP_TIMEOUT: Per-request timeout in seconds (default: 60)
            TAG_BATCH_SIZE: Machine IDs per tag call, at most 500 (default: 500)
            RATE_LIMIT_COOLDOWN: Seconds to wait after a 429 (default: 60)
            INTER_BATCH_DELAY: Seconds between API calls (default: 0.5)
            SECRET_SOURCE: environment or keyvault (default: environment)
            KEY_VAULT_URL: Vault URL, required if SECRET_SOURCE is keyvault
            MANAGED_IDENTITY_CLIENT_ID: User-assigned identity for Key Vault access
            TENANT_ID_SECRET_NAME: Variable holding the tenant ID
            APP_ID_SECRET_NAME: Variable holding the application ID
            APP_SECRET_SECRET_NAME: Variable holding the application secret
            LOG_FORMAT: json or text (default: json)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_enum(key: str, enum_cls: type[Enum], default: Enum) -> Enum:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return enum_cls(value.lower())
            except ValueError as e:
                valid = [m.value for m in enum_cls]
                raise ConfigurationError(f"{key} must be one of {valid}: {value}") from e

        defaults = SecretNames()

        return cls(
            defender_api_url=os.environ.get("DEFENDER_API_URL", DEFAULT_DEFENDER_API_URL),
            graph_api_url=os.environ.get("GRAPH_API_URL", DEFAULT_GRAPH_API_URL),
            authority_host=os.environ.get("AUTHORITY_HOST", DEFAULT_AUTHORITY_HOST),
            http_timeout_seconds=get_int("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS),
            tag_batch_size=get_int("TAG_BATCH_SIZE", MAX_TAG_BATCH_SIZE),
            rate_limit_cooldown_seconds=get_float(
                "RATE_LIMIT_COOLDOWN", RATE_LIMIT_COOLDOWN_SECONDS
            ),
            inter_batch_delay_seconds=get_float("INTER_BATCH_DELAY", INTER_BATCH_DELAY_SECONDS),
            secret_source=get_enum("SECRET_SOURCE", SecretSource, SecretSource.ENVIRONMENT),
            key_vault_url=os.environ.get("KEY_VAULT_URL"),
            managed_identity_client_id=os.environ.get("MANAGED_IDENTITY_CLIENT_ID") or None,
            secret_names=SecretNames(
                tenant_id=os.environ.get("TENANT_ID_SECRET_NAME", defaults.tenant_id),
                app_id=os.environ.get("APP_ID_SECRET_NAME", defaults.app_id),
                app_secret=os.environ.get("APP_SECRET_SECRET_NAME", defaults.app_secret),
            ),
            log_format=get_enum("LOG_FORMAT", LogFormat, LogFormat.JSON),
        )


def parse_subscription_list(raw: str | None) -> list[str]:
    """Split a comma-separated subscription list.

    Entries are trimmed and de-duplicated with first-seen order kept.
    Case is preserved; matching against devices is exact.

    Raises:
        ConfigurationError: If no subscription ID remains.
    """
    seen: set[str] = set()
    subscriptions: list[str] = []
    for part in (raw or "").split(","):
        value = part.strip()
        if value and value not in seen:
            seen.add(value)
            subscriptions.append(value)

    if not subscriptions:
        raise ConfigurationError("At least one subscription ID is required")
    return subscriptions


def validate_tag(tag: str | None) -> str:
    """Return the trimmed tag or raise ConfigurationError."""
    value = (tag or "").strip()
    if not value:
        raise ConfigurationError("Tag name is required")
    if len(value) > MAX_TAG_LENGTH:
        raise ConfigurationError(f"Tag name exceeds maximum length of {MAX_TAG_LENGTH}")
    return value
