"""Entra ID directory drivers: Microsoft 365 groups, security groups, users.

All three talk to Microsoft Graph v1.0. Groups are keyed by display name,
which Graph does not enforce as unique, so existence checks filter by
display name and then by group flavor (Unified vs. plain security).
"""

from __future__ import annotations

import logging
import secrets
import string
from abc import abstractmethod
from typing import Any
from urllib.parse import quote

from ..models import RemoteHandle, ResourceIntent, ResourceType
from .base import (
    DriverError,
    DuplicateResourceError,
    PermanentDriverError,
    ResourceDriver,
    ResourceNotFoundError,
)
from .rest import GRAPH_BASE_URL, RestClient, odata_quote

logger = logging.getLogger(__name__)

GROUP_SELECT = "id,displayName,groupTypes,mailEnabled,securityEnabled,resourceProvisioningOptions"

GENERATED_PASSWORD_LENGTH = 20


# =============================================================================
# Shared Graph lookups
# =============================================================================


def find_groups(client: RestClient, display_name: str) -> list[dict[str, Any]]:
    """Groups whose display name equals display_name exactly."""
    groups = client.list_values(
        "/groups",
        params={
            "$filter": f"displayName eq {odata_quote(display_name)}",
            "$select": GROUP_SELECT,
        },
    )
    # $filter eq is case-insensitive on displayName
    return [g for g in groups if g.get("displayName") == display_name]


def is_unified(group: dict[str, Any]) -> bool:
    return "Unified" in (group.get("groupTypes") or [])


def is_team(group: dict[str, Any]) -> bool:
    return "Team" in (group.get("resourceProvisioningOptions") or [])


def user_path(upn: str) -> str:
    return f"/users/{quote(upn, safe='@')}"


def resolve_user_id(client: RestClient, upn: str) -> str:
    """Object id of a user.

    Raises:
        PermanentDriverError: If the user does not exist.
    """
    user = client.get_optional(user_path(upn), params={"$select": "id"})
    if not user or not user.get("id"):
        raise PermanentDriverError(f"user '{upn}' not found")
    return str(user["id"])


def directory_object_ref(object_id: str) -> dict[str, str]:
    return {"@odata.id": f"{GRAPH_BASE_URL}/directoryObjects/{object_id}"}


# =============================================================================
# Groups
# =============================================================================


class _GraphGroupDriver(ResourceDriver):
    """Common behaviour of Graph-managed groups keyed by display name."""

    supports_members = True

    def __init__(self, client: RestClient) -> None:
        self._client = client

    @abstractmethod
    def _matches(self, group: dict[str, Any]) -> bool:
        """Whether a group returned by a display-name lookup is of this flavour."""

    @abstractmethod
    def _body(self, intent: ResourceIntent) -> dict[str, Any]:
        """POST /groups body for the intent."""

    def _find(self, display_name: str) -> dict[str, Any] | None:
        for group in find_groups(self._client, display_name):
            if self._matches(group):
                return group
        return None

    def exists(self, key: str) -> bool:
        return self._find(key) is not None

    def create(self, intent: ResourceIntent) -> RemoteHandle:
        # Graph accepts duplicate display names, so guard against them here
        if self._find(intent.key) is not None:
            raise DuplicateResourceError(f"{self.resource_type.value} '{intent.key}' already exists")

        body = self._body(intent)
        description = intent.attr("description")
        if description:
            body["description"] = description
        owner = intent.attr("owner")
        if owner:
            owner_id = resolve_user_id(self._client, owner)
            body["owners@odata.bind"] = [f"{GRAPH_BASE_URL}/users/{owner_id}"]

        group = self._client.post("/groups", body).json()
        logger.debug(
            "Group created",
            extra={"type": self.resource_type.value, "key": intent.key, "id": group.get("id")},
        )
        return RemoteHandle(self.resource_type, intent.key, group.get("id"))

    def remove(self, key: str) -> None:
        group = self._find(key)
        if group is None:
            raise ResourceNotFoundError(f"{self.resource_type.value} '{key}' not found")
        self._client.delete(f"/groups/{group['id']}")

    def add_member(self, target: RemoteHandle | str, member: str) -> None:
        group_id = target.id if isinstance(target, RemoteHandle) else None
        if not group_id:
            key = self.target_key(target)
            group = self._find(key)
            if group is None:
                raise ResourceNotFoundError(f"{self.resource_type.value} '{key}' not found")
            group_id = group["id"]

        user_id = resolve_user_id(self._client, member)
        # Graph answers 400 "... already exist" for existing members
        self._client.post(f"/groups/{group_id}/members/$ref", directory_object_ref(user_id))


class Group365Driver(_GraphGroupDriver):
    """Microsoft 365 (Unified) groups."""

    resource_type = ResourceType.GROUP365

    def _matches(self, group: dict[str, Any]) -> bool:
        return is_unified(group)

    def _body(self, intent: ResourceIntent) -> dict[str, Any]:
        return {
            "displayName": intent.key,
            "mailEnabled": True,
            "mailNickname": intent.attr("mail_nickname"),
            "securityEnabled": False,
            "groupTypes": ["Unified"],
            "visibility": intent.attr("visibility", "Private"),
        }


class SecurityGroupDriver(_GraphGroupDriver):
    """Security groups that are not mail-enabled."""

    resource_type = ResourceType.SECURITY

    def _matches(self, group: dict[str, Any]) -> bool:
        return (
            bool(group.get("securityEnabled"))
            and not group.get("mailEnabled")
            and not is_unified(group)
        )

    def _body(self, intent: ResourceIntent) -> dict[str, Any]:
        return {
            "displayName": intent.key,
            "mailEnabled": False,
            "mailNickname": intent.attr("mail_nickname"),
            "securityEnabled": True,
        }


# =============================================================================
# Users
# =============================================================================


def generate_password(length: int = GENERATED_PASSWORD_LENGTH) -> str:
    """Random password meeting the Entra ID complexity rules."""
    alphabet = string.ascii_letters + string.digits + "!#$%&*+-=?@^_"
    while True:
        password = "".join(secrets.choice(alphabet) for _ in range(length))
        if (
            any(c.islower() for c in password)
            and any(c.isupper() for c in password)
            and any(c.isdigit() for c in password)
            and any(not c.isalnum() for c in password)
        ):
            return password


class UserDriver(ResourceDriver):
    """Entra ID user accounts keyed by user principal name."""

    resource_type = ResourceType.USER

    def __init__(self, client: RestClient) -> None:
        self._client = client

    def exists(self, key: str) -> bool:
        return self._client.get_optional(user_path(key), params={"$select": "id"}) is not None

    def create(self, intent: ResourceIntent) -> RemoteHandle:
        password = intent.attr("password")
        body: dict[str, Any] = {
            "accountEnabled": True,
            "displayName": intent.attr("display_name", intent.key),
            "mailNickname": intent.attr("mail_nickname"),
            "userPrincipalName": intent.key,
            "passwordProfile": {
                "password": password or generate_password(),
                # Generated passwords are never shown, so force a reset
                "forceChangePasswordNextSignIn": not password,
            },
        }
        optional = {
            "givenName": "first_name",
            "surname": "last_name",
            "department": "department",
            "jobTitle": "job_title",
            "usageLocation": "usage_location",
        }
        for graph_field, attribute in optional.items():
            value = intent.attr(attribute)
            if value:
                body[graph_field] = value

        user = self._client.post("/users", body).json()
        user_id = user.get("id")

        manager = intent.attr("manager")
        if manager and user_id and manager.lower() != intent.key.lower():
            self._set_manager(user_id, intent.key, manager)

        return RemoteHandle(self.resource_type, intent.key, user_id)

    def _set_manager(self, user_id: str, upn: str, manager: str) -> None:
        try:
            manager_id = resolve_user_id(self._client, manager)
            self._client.put(
                f"/users/{user_id}/manager/$ref",
                {"@odata.id": f"{GRAPH_BASE_URL}/users/{manager_id}"},
            )
        except DriverError as e:
            # The account exists either way; a missing manager is not fatal
            logger.warning(
                "Failed to set manager",
                extra={"user": upn, "manager": manager, "error": e.message},
            )

    def remove(self, key: str) -> None:
        # 404 surfaces as ResourceNotFoundError from the client
        self._client.delete(user_path(key))
