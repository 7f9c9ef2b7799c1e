"""Exchange Online drivers: distribution groups and mail-enabled security groups.

Graph cannot create either kind, so these drivers run ExchangeOnlineManagement
cmdlets in a PowerShell subprocess. Each call opens its own session; the
cmdlet output comes back as compressed JSON on stdout and errors are
classified from stderr.

SECURITY: Every value interpolated into a script goes through ps_quote().
The certificate thumbprint is passed to Connect-ExchangeOnline and never
logged.
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any, Protocol

from ..config import ExchangeConfig
from ..models import RemoteHandle, ResourceIntent, ResourceType
from .base import (
    DriverError,
    DuplicateResourceError,
    PermanentDriverError,
    ResourceDriver,
    ResourceNotFoundError,
    TransientDriverError,
)

logger = logging.getLogger(__name__)

DUPLICATE_MARKERS = ("already exists", "is already being used", "already a member")
NOT_FOUND_MARKERS = ("couldn't be found", "couldn't find", "doesn't exist", "was not found")
TRANSIENT_MARKERS = ("server side error", "too many", "throttl", "timed out")

RECIPIENT_TYPES = {
    ResourceType.DISTRIBUTION: "MailUniversalDistributionGroup",
    ResourceType.MAIL_ENABLED_SECURITY: "MailUniversalSecurityGroup",
}


def ps_quote(value: str) -> str:
    """Single-quoted PowerShell string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def classify_error(message: str) -> DriverError:
    """Map PowerShell error text to a DriverError."""
    lowered = message.lower()
    if any(marker in lowered for marker in DUPLICATE_MARKERS):
        return DuplicateResourceError(message)
    if any(marker in lowered for marker in NOT_FOUND_MARKERS):
        return ResourceNotFoundError(message)
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return TransientDriverError(message)
    return PermanentDriverError(message)


class ExchangeShell(Protocol):
    """Anything that can run an Exchange Online script and return its JSON."""

    def run(self, script: str) -> Any: ...


class PowerShellRunner:
    """Runs Exchange Online scripts through pwsh."""

    def __init__(self, config: ExchangeConfig) -> None:
        self._config = config

    def _connect_command(self) -> str:
        cfg = self._config
        if cfg.app_only:
            return (
                "Connect-ExchangeOnline -ShowBanner:$false"
                f" -AppId {ps_quote(cfg.app_id or '')}"
                f" -CertificateThumbprint {ps_quote(cfg.certificate_thumbprint or '')}"
                f" -Organization {ps_quote(cfg.organization or '')}"
            )
        if cfg.admin_upn:
            return f"Connect-ExchangeOnline -ShowBanner:$false -UserPrincipalName {ps_quote(cfg.admin_upn)}"
        return "Connect-ExchangeOnline -ShowBanner:$false"

    def build_script(self, body: str) -> str:
        return "\n".join(
            [
                "$ErrorActionPreference = 'Stop'",
                "Import-Module ExchangeOnlineManagement",
                self._connect_command(),
                "try {",
                f"    $result = & {{ {body} }}",
                "    if ($null -ne $result) { $result | ConvertTo-Json -Depth 4 -Compress }",
                "} finally {",
                "    Disconnect-ExchangeOnline -Confirm:$false | Out-Null",
                "}",
            ]
        )

    def run(self, script: str) -> Any:
        """Run a script body and return its parsed JSON output.

        Returns:
            Parsed output, or None when the script produced nothing.

        Raises:
            DriverError: Classified from stderr on a non-zero exit; transient
                on timeout or when the shell cannot be started.
        """
        command = [self._config.shell, "-NoProfile", "-NonInteractive", "-Command", self.build_script(script)]
        logger.debug("Running Exchange script", extra={"script": script})
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self._config.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            raise TransientDriverError(
                f"Exchange command timed out after {self._config.timeout_seconds}s"
            ) from e
        except FileNotFoundError as e:
            raise PermanentDriverError(
                f"PowerShell executable '{self._config.shell}' not found"
            ) from e

        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or (
                f"exit code {result.returncode}"
            )
            raise classify_error(message)

        output = (result.stdout or "").strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise PermanentDriverError(f"Unexpected Exchange output: {output[:200]}") from e


class _DistributionGroupBase(ResourceDriver):
    """Exchange distribution-group cmdlets, keyed by group name."""

    supports_members = True
    group_type: str = "Distribution"

    def __init__(self, shell: ExchangeShell) -> None:
        self._shell = shell

    def _get(self, key: str) -> dict[str, Any] | None:
        script = (
            f"Get-DistributionGroup -Identity {ps_quote(key)} | "
            "Select-Object Name,DisplayName,PrimarySmtpAddress,RecipientTypeDetails,Guid"
        )
        try:
            data = self._shell.run(script)
        except ResourceNotFoundError:
            return None
        if isinstance(data, list):
            data = data[0] if data else None
        return data

    def exists(self, key: str) -> bool:
        group = self._get(key)
        if group is None:
            return False
        return group.get("RecipientTypeDetails") == RECIPIENT_TYPES[self.resource_type]

    def create(self, intent: ResourceIntent) -> RemoteHandle:
        parts = [
            "New-DistributionGroup",
            f"-Name {ps_quote(intent.key)}",
            f"-DisplayName {ps_quote(intent.attr('display_name', intent.key))}",
            f"-Type {self.group_type}",
        ]
        nickname = intent.attr("mail_nickname")
        if nickname:
            parts.append(f"-Alias {ps_quote(nickname)}")
        address = intent.attr("address")
        if address:
            parts.append(f"-PrimarySmtpAddress {ps_quote(address)}")
        owner = intent.attr("owner")
        if owner:
            parts.append(f"-ManagedBy {ps_quote(owner)}")
        description = intent.attr("description")
        if description:
            parts.append(f"-Notes {ps_quote(description)}")

        script = " ".join(parts) + " | Select-Object Name,Guid"
        data = self._shell.run(script) or {}
        guid = data.get("Guid") if isinstance(data, dict) else None
        return RemoteHandle(self.resource_type, intent.key, str(guid) if guid else None)

    def remove(self, key: str) -> None:
        self._shell.run(
            f"Remove-DistributionGroup -Identity {ps_quote(key)} "
            "-Confirm:$false -BypassSecurityGroupManagerCheck"
        )

    def add_member(self, target: RemoteHandle | str, member: str) -> None:
        self._shell.run(
            f"Add-DistributionGroupMember -Identity {ps_quote(self.target_key(target))} "
            f"-Member {ps_quote(member)} -BypassSecurityGroupManagerCheck"
        )


class DistributionGroupDriver(_DistributionGroupBase):
    resource_type = ResourceType.DISTRIBUTION
    group_type = "Distribution"


class MailEnabledSecurityGroupDriver(_DistributionGroupBase):
    resource_type = ResourceType.MAIL_ENABLED_SECURITY
    group_type = "Security"
