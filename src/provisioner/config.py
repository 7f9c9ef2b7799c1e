"""Configuration management with validation.

All values are validated at construction time so a misconfigured run fails
before the first API call rather than halfway through a workbook.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum

from .models import ResourceType
from .poller import PollPolicy


class ReconciliationMode(str, Enum):
    """How the reconciler treats drift between the workbook and the tenant."""

    # Existence checks only, would-be changes are reported as planned
    OBSERVE = "observe"
    # Create and remove resources to converge on the desired state
    ENFORCE = "enforce"


class AuthMode(str, Enum):
    """Supported ways of obtaining an Entra ID token."""

    CLI = "cli"
    INTERACTIVE = "interactive"
    DEVICE_CODE = "device-code"
    MANAGED_IDENTITY = "managed-identity"
    DEFAULT = "default"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_POLL_MAX_ATTEMPTS = 5
MIN_POLL_MAX_ATTEMPTS = 1
MAX_POLL_MAX_ATTEMPTS = 100

DEFAULT_POLL_DELAY_SECONDS = 5.0
MAX_POLL_DELAY_SECONDS = 300.0

DEFAULT_MAX_WORKERS = 1
# Graph and Exchange throttle per tenant, keep the pool small
MAX_WORKERS = 8

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
MAX_REQUEST_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 2

DEFAULT_POWERSHELL_TIMEOUT_SECONDS = 300

MAX_INPUT_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB workbook

# Minimum poll policy per slow resource type. Team creation is asynchronous
# behind a 202, sites take minutes to leave the provisioning state.
POLL_POLICY_FLOORS: dict[ResourceType, PollPolicy] = {
    ResourceType.TEAM: PollPolicy(max_attempts=10, delay_seconds=10.0),
    ResourceType.CHANNEL: PollPolicy(max_attempts=6, delay_seconds=5.0),
    ResourceType.SITE: PollPolicy(max_attempts=30, delay_seconds=10.0),
}

# Input validation patterns
VALID_DOMAIN_PATTERN = r"^(?=.{3,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
VALID_TENANT_PATTERN = r"^[a-z0-9][a-z0-9-]{0,61}[a-z0-9]$"
VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_OWNER_PATTERN = r"^[A-Za-z0-9._'+-]+(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})?$"


@dataclass(frozen=True)
class ExchangeConfig:
    """Connection settings for Exchange Online PowerShell.

    Either app-only (app id + certificate thumbprint + organization) or
    delegated (admin UPN). When neither is set, Connect-ExchangeOnline falls
    back to its interactive prompt.
    """

    app_id: str | None = None
    certificate_thumbprint: str | None = None
    organization: str | None = None
    admin_upn: str | None = None
    shell: str = "pwsh"
    timeout_seconds: int = DEFAULT_POWERSHELL_TIMEOUT_SECONDS

    @property
    def app_only(self) -> bool:
        return bool(self.app_id and self.certificate_thumbprint and self.organization)


@dataclass(frozen=True)
class Config:
    """Provisioner configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    domain: str

    # Tenant identity
    default_owner: str | None = None
    tenant: str | None = None
    tenant_id: str | None = None
    auth_mode: AuthMode = AuthMode.CLI

    # Behavior
    mode: ReconciliationMode = ReconciliationMode.ENFORCE
    max_workers: int = DEFAULT_MAX_WORKERS

    # Eventual-consistency polling
    poll_max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS
    poll_delay_seconds: float = DEFAULT_POLL_DELAY_SECONDS

    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.domain:
            errors.append("M365LAB_DOMAIN is required")
        elif not re.match(VALID_DOMAIN_PATTERN, self.domain.lower()):
            errors.append(f"M365LAB_DOMAIN must be a DNS domain name: {self.domain}")

        if self.default_owner and not re.match(VALID_OWNER_PATTERN, self.default_owner):
            errors.append(
                f"M365LAB_DEFAULT_OWNER must be a user principal name or "
                f"local-part: {self.default_owner}"
            )

        if self.tenant is not None and not re.match(VALID_TENANT_PATTERN, self.tenant.lower()):
            errors.append(f"M365LAB_TENANT must be a SharePoint host prefix: {self.tenant}")

        if self.tenant_id and not re.match(VALID_GUID_PATTERN, self.tenant_id.lower()):
            errors.append(f"M365LAB_TENANT_ID must be a valid GUID: {self.tenant_id}")

        if not (MIN_POLL_MAX_ATTEMPTS <= self.poll_max_attempts <= MAX_POLL_MAX_ATTEMPTS):
            errors.append(
                f"POLL_MAX_ATTEMPTS must be between {MIN_POLL_MAX_ATTEMPTS} "
                f"and {MAX_POLL_MAX_ATTEMPTS}"
            )

        if not (0 <= self.poll_delay_seconds <= MAX_POLL_DELAY_SECONDS):
            errors.append(f"POLL_DELAY_SECONDS must be between 0 and {MAX_POLL_DELAY_SECONDS:g}")

        if not (1 <= self.max_workers <= MAX_WORKERS):
            errors.append(f"MAX_WORKERS must be between 1 and {MAX_WORKERS}")

        partial_app_only = any(
            (self.exchange.app_id, self.exchange.certificate_thumbprint)
        ) and not self.exchange.app_only
        if partial_app_only:
            errors.append(
                "EXCHANGE_APP_ID, EXCHANGE_CERTIFICATE_THUMBPRINT and "
                "EXCHANGE_ORGANIZATION must be set together"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def sharepoint_tenant(self) -> str:
        """SharePoint host prefix, e.g. ``contoso`` for contoso.sharepoint.com."""
        if self.tenant:
            return self.tenant.lower()
        return self.domain.lower().split(".")[0]

    @property
    def poll_policy(self) -> PollPolicy:
        return PollPolicy(
            max_attempts=self.poll_max_attempts,
            delay_seconds=self.poll_delay_seconds,
        )

    def poll_policy_for(self, resource_type: ResourceType) -> PollPolicy:
        """Get the poll policy for a resource type.

        The configured policy applies to every type, but never drops below
        the floor of the slow types in POLL_POLICY_FLOORS.
        """
        base = self.poll_policy
        floor = POLL_POLICY_FLOORS.get(resource_type)
        if floor is None:
            return base
        return PollPolicy(
            max_attempts=max(base.max_attempts, floor.max_attempts),
            delay_seconds=max(base.delay_seconds, floor.delay_seconds),
        )

    def poll_overrides(self) -> dict[ResourceType, PollPolicy]:
        """Per-type poll policies for the reconciler."""
        return {rt: self.poll_policy_for(rt) for rt in POLL_POLICY_FLOORS}

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            M365LAB_DOMAIN: Tenant mail domain (e.g. contoso.com)
            M365LAB_DEFAULT_OWNER: Owner used when a row leaves it blank
            M365LAB_TENANT: SharePoint host prefix (default: first domain label)
            M365LAB_TENANT_ID: Entra tenant id for interactive credentials
            M365LAB_AUTH_MODE: One of cli, interactive, device-code,
                managed-identity, default (default: cli)
            M365LAB_MODE: observe or enforce (default: enforce)
            POLL_MAX_ATTEMPTS: Verification attempts after create (default: 5)
            POLL_DELAY_SECONDS: Delay between attempts (default: 5)
            MAX_WORKERS: Intents processed in parallel (default: 1)

        Exchange Variables:
            EXCHANGE_APP_ID, EXCHANGE_CERTIFICATE_THUMBPRINT,
            EXCHANGE_ORGANIZATION: App-only connection
            EXCHANGE_ADMIN_UPN: Delegated connection

        Keyword overrides (e.g. from CLI options) win over the environment;
        None values are ignored.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None or value == "":
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

        values: dict[str, object] = {
            "domain": os.environ.get("M365LAB_DOMAIN", ""),
            "default_owner": os.environ.get("M365LAB_DEFAULT_OWNER") or None,
            "tenant": os.environ.get("M365LAB_TENANT") or None,
            "tenant_id": os.environ.get("M365LAB_TENANT_ID") or None,
            "auth_mode": get_enum("M365LAB_AUTH_MODE", AuthMode, AuthMode.CLI),
            "mode": get_enum("M365LAB_MODE", ReconciliationMode, ReconciliationMode.ENFORCE),
            "max_workers": get_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),
            "poll_max_attempts": get_int("POLL_MAX_ATTEMPTS", DEFAULT_POLL_MAX_ATTEMPTS),
            "poll_delay_seconds": get_float("POLL_DELAY_SECONDS", DEFAULT_POLL_DELAY_SECONDS),
            "exchange": ExchangeConfig(
                app_id=os.environ.get("EXCHANGE_APP_ID") or None,
                certificate_thumbprint=os.environ.get("EXCHANGE_CERTIFICATE_THUMBPRINT") or None,
                organization=os.environ.get("EXCHANGE_ORGANIZATION") or None,
                admin_upn=os.environ.get("EXCHANGE_ADMIN_UPN") or None,
            ),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)  # type: ignore[arg-type]
