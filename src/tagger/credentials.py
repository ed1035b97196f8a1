"""Credential resolution and OAuth2 client-credentials token exchange.

The app registration is read from a secret store and exchanged for a bearer
token scoped to a single API. Tokens live only for the current process run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from azure.core.exceptions import AzureError, ClientAuthenticationError
from azure.identity import ClientSecretCredential

from .config import DEFAULT_AUTHORITY_HOST, ConfigurationError, SecretNames
from .secret_store import SecretStore
from .security import log_security_audit_event, mask_identifier, register_secret

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when the token endpoint rejects the app registration."""

    pass


@dataclass(frozen=True)
class CredentialBundle:
    """Tenant, application and secret of an app registration."""

    tenant_id: str
    app_id: str
    app_secret: str = field(repr=False)

    def __post_init__(self) -> None:
        missing = [
            name
            for name, value in (
                ("tenant_id", self.tenant_id),
                ("app_id", self.app_id),
                ("app_secret", self.app_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Credential bundle is incomplete: {', '.join(missing)}")


@dataclass(frozen=True)
class BearerToken:
    """An access token and its advertised lifetime."""

    value: str = field(repr=False)
    expires_in: int
    acquired_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def expires_at(self) -> datetime:
        return self.acquired_at + timedelta(seconds=self.expires_in)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at

    @property
    def authorization_header(self) -> str:
        return f"Bearer {self.value}"


def api_scope(api_url: str) -> str:
    """Return the .default scope of the API hosting api_url.

    >>> api_scope("https://api.securitycenter.microsoft.com/api")
    'https://api.securitycenter.microsoft.com/.default'
    """
    scheme, _, rest = api_url.partition("://")
    host = rest.split("/", 1)[0]
    return f"{scheme}://{host}/.default"


def resolve_credentials(store: SecretStore, names: SecretNames) -> CredentialBundle:
    """Read the app registration from the secret store.

    Raises:
        ConfigurationError: If any variable is missing or empty. Only the
            variable names are reported, never values.
    """
    values: dict[str, str] = {}
    missing: list[str] = []
    for name in names.as_tuple():
        value = store.get_secret(name)
        if value is None or not value.strip():
            missing.append(name)
        else:
            values[name] = value.strip()

    if missing:
        raise ConfigurationError(
            f"Required secret variables are missing or empty: {', '.join(missing)}"
        )

    app_secret = values[names.app_secret]
    register_secret(app_secret)

    bundle = CredentialBundle(
        tenant_id=values[names.tenant_id],
        app_id=values[names.app_id],
        app_secret=app_secret,
    )
    logger.info(
        "Resolved app registration",
        extra={
            "tenant_id": mask_identifier(bundle.tenant_id),
            "app_id": mask_identifier(bundle.app_id),
        },
    )
    return bundle


def acquire_token(
    bundle: CredentialBundle,
    scope: str,
    authority_host: str = DEFAULT_AUTHORITY_HOST,
) -> BearerToken:
    """Exchange the app registration for a bearer token.

    Performs the client-credentials grant against
    https://{authority_host}/{tenant}/oauth2/v2.0/token. There is no retry:
    a rejected secret is not recoverable locally.

    Raises:
        ConfigurationError: If azure.identity rejects the tenant ID format.
        AuthenticationError: If the grant fails or yields no token.
    """
    try:
        credential = ClientSecretCredential(
            tenant_id=bundle.tenant_id,
            client_id=bundle.app_id,
            client_secret=bundle.app_secret,
            authority=authority_host,
        )
    except ValueError as e:
        raise ConfigurationError(f"Tenant ID from the secret store is not usable: {e}") from e

    try:
        access_token = credential.get_token(scope)
    except ClientAuthenticationError as e:
        log_security_audit_event(
            "auth", tenant_id=bundle.tenant_id, target=scope, action="token", result="denied"
        )
        raise AuthenticationError(f"Token request was rejected for scope {scope}: {e}") from e
    except AzureError as e:
        raise AuthenticationError(f"Token request failed for scope {scope}: {e}") from e
    finally:
        credential.close()

    if not access_token or not access_token.token:
        raise AuthenticationError(f"Token response for scope {scope} contained no access token")

    register_secret(access_token.token)
    expires_in = max(0, int(access_token.expires_on) - int(time.time()))

    log_security_audit_event(
        "auth", tenant_id=bundle.tenant_id, target=scope, action="token", result="success"
    )
    logger.info(
        "Acquired bearer token",
        extra={"scope": scope, "expires_in_seconds": expires_in},
    )
    return BearerToken(value=access_token.token, expires_in=expires_in)
