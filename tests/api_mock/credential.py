"""Mock client-secret credential for token exchange tests.

Replaces azure.identity.ClientSecretCredential inside tagger.credentials
and returns fake tokens without contacting the authority.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest import mock

from azure.core.credentials import AccessToken
from azure.core.exceptions import ClientAuthenticationError

# Token validity duration
TOKEN_VALIDITY_SECONDS = 3599

# Characters azure.identity accepts in a tenant ID
VALID_TENANT_ID_PATTERN = r"^[A-Za-z0-9.-]+$"


class MockClientSecretCredential:
    """Mock implementation of ClientSecretCredential.

    Records constructor arguments and get_token calls for assertions.
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        context: MockTenantContext,
        **kwargs: Any,
    ) -> None:
        if not re.match(VALID_TENANT_ID_PATTERN, tenant_id or ""):
            raise ValueError(
                "Invalid tenant ID provided. You can locate your tenant ID by following the "
                "instructions listed here: "
                "https://learn.microsoft.com/partner-center/find-ids-and-domain-names"
            )
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.kwargs = kwargs
        self._context = context
        self.closed = False

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        """Return a mock token or raise ClientAuthenticationError."""
        self._context.token_requests.append({"scopes": scopes, "tenant_id": self.tenant_id})

        if self._context.fail_auth:
            raise ClientAuthenticationError(message="AADSTS7000215: Invalid client secret provided.")

        expires_on = datetime.now(UTC) + timedelta(seconds=TOKEN_VALIDITY_SECONDS)
        return AccessToken(self._context.token_value, int(expires_on.timestamp()))

    def close(self) -> None:
        self.closed = True


class MockTenantContext:
    """Context manager patching the token exchange in tagger.credentials.

    Usage:
        with MockTenantContext(fail_auth=True) as tenant:
            ...
            assert tenant.credential_count == 1
    """

    def __init__(self, *, fail_auth: bool = False, token_value: str = "mock-bearer-token") -> None:
        self.fail_auth = fail_auth
        self.token_value = token_value
        self.credentials: list[MockClientSecretCredential] = []
        self.token_requests: list[dict[str, Any]] = []
        self._patch: Any = None

    @property
    def credential_count(self) -> int:
        return len(self.credentials)

    def _factory(self, **kwargs: Any) -> MockClientSecretCredential:
        credential = MockClientSecretCredential(context=self, **kwargs)
        self.credentials.append(credential)
        return credential

    def __enter__(self) -> MockTenantContext:
        self._patch = mock.patch(
            "tagger.credentials.ClientSecretCredential", side_effect=self._factory
        )
        self._patch.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self._patch.stop()
