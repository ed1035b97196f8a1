"""Defender/Graph API mocks for integration testing.

This package provides in-memory stand-ins for the HTTP session, the OAuth
token exchange and the secret store, so runbooks can be exercised end to
end without network access.

Key Features:
- Paginated OData collections with chained @odata.nextLink
- Scripted status codes for tag and delete calls (429 injection)
- Call recording for "no network call happened" assertions
- Token endpoint simulation with failure injection

Usage:
    from api_mock import MockSession, MockTenantContext, make_machine

    session = MockSession()
    session.add_collection(MACHINES_URL, [make_machine("m1")])

    with MockTenantContext() as tenant:
        report = run_subscription_tagging(config, ["sub-a"], "AVD", store=store, session=session)

    assert session.call_count == 2
"""

from .credential import MockClientSecretCredential, MockTenantContext
from .devices import make_machine, make_managed_device
from .http import MockResponse, MockSession

__all__ = [
    "MockClientSecretCredential",
    "MockResponse",
    "MockSession",
    "MockTenantContext",
    "make_machine",
    "make_managed_device",
]
