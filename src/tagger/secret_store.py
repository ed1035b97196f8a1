"""Named-variable secret stores.

The tenant ID, application ID and application secret are always read from a
store, never from command-line arguments.
"""

from __future__ import annotations

import logging
import os
from typing import Protocol

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import ManagedIdentityCredential
from azure.keyvault.secrets import SecretClient

from .config import Config, ConfigurationError, SecretSource
from .security import get_managed_identity_credential

logger = logging.getLogger(__name__)


class SecretStore(Protocol):
    """Lookup of named string variables."""

    def get_secret(self, name: str) -> str | None:
        """Return the variable value, or None when it does not exist."""
        ...

    def close(self) -> None:
        """Release any connection held by the store."""
        ...


class EnvironmentSecretStore:
    """Variables injected into the process environment by the host."""

    def __init__(self, environ: dict[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def get_secret(self, name: str) -> str | None:
        return self._environ.get(name)

    def close(self) -> None:
        pass


class KeyVaultSecretStore:
    """Variables stored as Azure Key Vault secrets.

    Access is authenticated with the host's managed identity. A client
    passed in by the caller is not closed by close().
    """

    def __init__(
        self,
        vault_url: str,
        client: SecretClient | None = None,
        *,
        managed_identity_client_id: str | None = None,
    ) -> None:
        self._vault_url = vault_url
        self._credential: ManagedIdentityCredential | None = None
        self._owns_client = client is None
        if client is None:
            self._credential = get_managed_identity_credential(managed_identity_client_id)
            client = SecretClient(vault_url=vault_url, credential=self._credential)
        self._client = client

    def get_secret(self, name: str) -> str | None:
        try:
            secret = self._client.get_secret(name)
        except ResourceNotFoundError:
            logger.warning(
                "Secret not found in Key Vault",
                extra={"secret_name": name, "vault_url": self._vault_url},
            )
            return None
        except AzureError as e:
            raise ConfigurationError(f"Unable to read secret '{name}' from Key Vault: {e}") from e
        return secret.value

    def close(self) -> None:
        if not self._owns_client:
            return
        try:
            self._client.close()
        finally:
            if self._credential is not None:
                self._credential.close()


def create_secret_store(config: Config) -> SecretStore:
    """Build the store selected by SECRET_SOURCE."""
    match config.secret_source:
        case SecretSource.KEY_VAULT:
            if config.key_vault_url is None:
                raise ConfigurationError("KEY_VAULT_URL is required when SECRET_SOURCE is keyvault")
            return KeyVaultSecretStore(
                config.key_vault_url,
                managed_identity_client_id=config.managed_identity_client_id,
            )
        case _:
            return EnvironmentSecretStore()
