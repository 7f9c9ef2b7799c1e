"""Credential selection for Microsoft Graph and SharePoint.

The provisioner never stores secrets itself. Tokens come from one of the
azure-identity credential types below, chosen by AuthMode:

- cli: the signed-in Azure CLI account (az login), the default for labs
- interactive: browser sign-in
- device-code: sign-in from another device (headless shells)
- managed-identity: automation hosts with an assigned identity
- default: DefaultAzureCredential chain (environment, workload identity, ...)

SECURITY: Username/password (ROPC) environment variables are rejected. They
bypass MFA and are blocked by most tenant policies anyway.
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import (
    AzureCliCredential,
    DefaultAzureCredential,
    DeviceCodeCredential,
    InteractiveBrowserCredential,
    ManagedIdentityCredential,
)

from .config import AuthMode

logger = logging.getLogger(__name__)

# Environment variables that indicate password-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class CredentialPolicyError(Exception):
    """Raised when the environment asks for a forbidden authentication flow."""

    pass


def enforce_no_password_credentials() -> None:
    """Refuse to run when password-based credentials are configured.

    Raises:
        CredentialPolicyError: If any forbidden environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Password-based credential detected",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise CredentialPolicyError(
                f"{env_var} is set. Password-based sign-in is not supported; "
                "use az login, interactive, device-code or a managed identity."
            )


def _redact(value: str) -> str:
    return value[:8] + "..." if len(value) > 8 else value


def get_credential(
    mode: AuthMode,
    *,
    tenant_id: str | None = None,
    client_id: str | None = None,
) -> TokenCredential:
    """Build the credential for an auth mode.

    Args:
        mode: How to obtain tokens.
        tenant_id: Entra tenant to sign in to (interactive flows and CLI).
        client_id: Managed identity or public client application id.

    Returns:
        An azure-identity credential.

    Raises:
        CredentialPolicyError: If password credentials are configured.
    """
    enforce_no_password_credentials()

    log_extra = {
        "auth_mode": mode.value,
        "tenant_id": tenant_id,
        "client_id": _redact(client_id) if client_id else None,
    }

    match mode:
        case AuthMode.CLI:
            logger.info("Using Azure CLI credential", extra=log_extra)
            return AzureCliCredential(tenant_id=tenant_id)
        case AuthMode.INTERACTIVE:
            logger.info("Using interactive browser credential", extra=log_extra)
            kwargs = {"client_id": client_id} if client_id else {}
            return InteractiveBrowserCredential(tenant_id=tenant_id, **kwargs)
        case AuthMode.DEVICE_CODE:
            logger.info("Using device code credential", extra=log_extra)
            kwargs = {"client_id": client_id} if client_id else {}
            return DeviceCodeCredential(tenant_id=tenant_id, **kwargs)
        case AuthMode.MANAGED_IDENTITY:
            if client_id:
                logger.info("Using user-assigned managed identity", extra=log_extra)
                return ManagedIdentityCredential(client_id=client_id)
            logger.info("Using system-assigned managed identity", extra=log_extra)
            return ManagedIdentityCredential()
        case AuthMode.DEFAULT:
            logger.info("Using default Azure credential chain", extra=log_extra)
            return DefaultAzureCredential()

    raise ValueError(f"Unsupported auth mode: {mode}")
