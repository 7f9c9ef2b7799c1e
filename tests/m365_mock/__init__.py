"""Microsoft 365 mocks for integration testing.

In-memory stand-ins for everything the provisioner talks to:

- InMemoryDriver / MockTenantState: spy drivers for reconciler tests
- MockGraphSession: requests-compatible Graph and SharePoint REST tenant
- MockExchangeShell: Exchange Online cmdlet interpreter
- MockCredential: token source without Entra ID

Usage:
    from m365_mock import MockCredential, MockExchangeShell, MockGraphSession

    session = MockGraphSession()
    drivers = build_drivers(config, MockCredential(), session=session,
                            exchange_shell=MockExchangeShell(), sleep=lambda s: None)
"""

from .credential import MockCredential
from .drivers import InMemoryDriver, MockResource, MockTenantState, in_memory_drivers
from .exchange import MockExchangeShell
from .graph import FakeResponse, MockGraphSession, graph_error

__all__ = [
    "FakeResponse",
    "InMemoryDriver",
    "MockCredential",
    "MockExchangeShell",
    "MockGraphSession",
    "MockResource",
    "MockTenantState",
    "graph_error",
    "in_memory_drivers",
]
