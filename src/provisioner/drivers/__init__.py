"""Resource drivers, one per resource type."""

from __future__ import annotations

from typing import Any

import requests
from azure.core.credentials import TokenCredential

from ..config import Config
from ..models import ResourceType
from .base import (
    DriverError,
    DriverErrorKind,
    DuplicateResourceError,
    PermanentDriverError,
    ResourceDriver,
    ResourceNotFoundError,
    TransientDriverError,
)
from .directory import Group365Driver, SecurityGroupDriver, UserDriver
from .exchange import (
    DistributionGroupDriver,
    ExchangeShell,
    MailEnabledSecurityGroupDriver,
    PowerShellRunner,
)
from .rest import graph_client, sharepoint_client
from .sites import SiteDriver
from .teams import ChannelDriver, TeamDriver

__all__ = [
    "DriverError",
    "DriverErrorKind",
    "DuplicateResourceError",
    "PermanentDriverError",
    "ResourceDriver",
    "ResourceNotFoundError",
    "TransientDriverError",
    "build_drivers",
]


def build_drivers(
    config: Config,
    credential: TokenCredential,
    *,
    exchange_shell: ExchangeShell | None = None,
    session: requests.Session | None = None,
    **client_kwargs: Any,
) -> dict[ResourceType, ResourceDriver]:
    """Build the driver registry for every resource type.

    Args:
        config: Provisioner configuration (tenant, Exchange settings).
        credential: Token source for Graph and SharePoint.
        exchange_shell: Replacement for the pwsh runner (tests).
        session: Shared HTTP session (tests inject a fake).
        **client_kwargs: Passed to both REST clients (timeout, sleep).

    Returns:
        Mapping of resource type to driver.
    """
    graph = graph_client(credential, session=session, **client_kwargs)
    sharepoint = sharepoint_client(
        credential, config.sharepoint_tenant, session=session, **client_kwargs
    )
    shell = exchange_shell or PowerShellRunner(config.exchange)

    drivers: list[ResourceDriver] = [
        Group365Driver(graph),
        SecurityGroupDriver(graph),
        UserDriver(graph),
        TeamDriver(graph),
        ChannelDriver(graph),
        SiteDriver(sharepoint),
        DistributionGroupDriver(shell),
        MailEnabledSecurityGroupDriver(shell),
    ]
    return {driver.resource_type: driver for driver in drivers}
