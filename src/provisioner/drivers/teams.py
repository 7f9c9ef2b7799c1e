"""Microsoft Teams drivers: teams and their channels.

A team is a Microsoft 365 group with the "Team" provisioning option. Team
creation is asynchronous (202 Accepted); the reconciler's poller covers the
delay until the group shows up as a team.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from ..models import RemoteHandle, ResourceIntent, ResourceType
from .base import (
    DuplicateResourceError,
    PermanentDriverError,
    ResourceDriver,
    ResourceNotFoundError,
)
from .directory import find_groups, is_team, is_unified, resolve_user_id
from .rest import GRAPH_BASE_URL, RestClient, odata_quote

logger = logging.getLogger(__name__)

STANDARD_TEMPLATE = f"{GRAPH_BASE_URL}/teamsTemplates('standard')"
CONVERSATION_MEMBER_TYPE = "#microsoft.graph.aadUserConversationMember"

# Content-Location of an async team create: /teams('{id}')/operations('{op}')
TEAM_ID_PATTERN = re.compile(r"teams\('([^']+)'\)")

# Every team has it and it cannot be deleted
GENERAL_CHANNEL = "General"


def conversation_member(user_id: str, *, owner: bool = False) -> dict[str, Any]:
    return {
        "@odata.type": CONVERSATION_MEMBER_TYPE,
        "roles": ["owner"] if owner else [],
        "user@odata.bind": f"{GRAPH_BASE_URL}/users('{user_id}')",
    }


def find_team(client: RestClient, name: str) -> dict[str, Any] | None:
    for group in find_groups(client, name):
        if is_team(group):
            return group
    return None


class TeamDriver(ResourceDriver):
    """Teams keyed by display name."""

    resource_type = ResourceType.TEAM
    supports_members = True

    def __init__(self, client: RestClient) -> None:
        self._client = client

    def exists(self, key: str) -> bool:
        return find_team(self._client, key) is not None

    def create(self, intent: ResourceIntent) -> RemoteHandle:
        groups = find_groups(self._client, intent.key)
        if any(is_team(g) for g in groups):
            raise DuplicateResourceError(f"team '{intent.key}' already exists")

        unified = next((g for g in groups if is_unified(g)), None)
        if unified is not None:
            # Team-enable the existing Microsoft 365 group of the same name
            logger.info(
                "Enabling team on existing group",
                extra={"key": intent.key, "group_id": unified["id"]},
            )
            self._client.put(f"/groups/{unified['id']}/team", {})
            return RemoteHandle(self.resource_type, intent.key, unified["id"])

        owner = intent.attr("owner")
        if not owner:
            raise PermanentDriverError(f"team '{intent.key}' needs an owner")
        owner_id = resolve_user_id(self._client, owner)

        body: dict[str, Any] = {
            "template@odata.bind": STANDARD_TEMPLATE,
            "displayName": intent.key,
            "description": intent.attr("description", intent.key),
            "visibility": str(intent.attr("visibility", "Private")).lower(),
            "members": [conversation_member(owner_id, owner=True)],
        }
        response = self._client.post("/teams", body)
        location = response.headers.get("Content-Location") or response.headers.get("Location") or ""
        match = TEAM_ID_PATTERN.search(location)
        team_id = match.group(1) if match else None
        if team_id is None:
            logger.warning(
                "Team create returned no team id",
                extra={"key": intent.key, "location": location},
            )
        return RemoteHandle(self.resource_type, intent.key, team_id)

    def remove(self, key: str) -> None:
        team = find_team(self._client, key)
        if team is None:
            raise ResourceNotFoundError(f"team '{key}' not found")
        # Deleting the backing group removes the team
        self._client.delete(f"/groups/{team['id']}")

    def add_member(self, target: RemoteHandle | str, member: str) -> None:
        team_id = target.id if isinstance(target, RemoteHandle) else None
        if not team_id:
            key = self.target_key(target)
            team = find_team(self._client, key)
            if team is None:
                raise ResourceNotFoundError(f"team '{key}' not found")
            team_id = team["id"]
        user_id = resolve_user_id(self._client, member)
        self._client.post(f"/teams/{team_id}/members", conversation_member(user_id))


def split_channel_key(key: str) -> tuple[str, str]:
    """Split "Team/Channel" into its parts (team names may contain '/')."""
    team, sep, channel = key.rpartition("/")
    if not sep or not team or not channel:
        raise PermanentDriverError(f"channel key must be 'team/channel': {key}")
    return team, channel


class ChannelDriver(ResourceDriver):
    """Channels keyed by "team/channel"."""

    resource_type = ResourceType.CHANNEL
    supports_members = True

    def __init__(self, client: RestClient) -> None:
        self._client = client

    def _team_id(self, team_name: str) -> str | None:
        team = find_team(self._client, team_name)
        return team["id"] if team else None

    def _find(self, team_id: str, channel_name: str) -> dict[str, Any] | None:
        channels = self._client.list_values(
            f"/teams/{team_id}/channels",
            params={"$filter": f"displayName eq {odata_quote(channel_name)}"},
        )
        for channel in channels:
            if str(channel.get("displayName", "")).lower() == channel_name.lower():
                return channel
        return None

    def exists(self, key: str) -> bool:
        team_name, channel_name = split_channel_key(key)
        team_id = self._team_id(team_name)
        if team_id is None:
            return False
        return self._find(team_id, channel_name) is not None

    def create(self, intent: ResourceIntent) -> RemoteHandle:
        team_name, channel_name = split_channel_key(intent.key)
        team_id = self._team_id(team_name)
        if team_id is None:
            raise PermanentDriverError(f"parent team '{team_name}' not found")

        membership_type = intent.attr("membership_type", "standard")
        body: dict[str, Any] = {
            "displayName": channel_name,
            "membershipType": membership_type,
        }
        description = intent.attr("description")
        if description:
            body["description"] = description

        if membership_type == "private":
            owner = intent.attr("owner")
            if not owner:
                raise PermanentDriverError(f"private channel '{intent.key}' needs an owner")
            body["members"] = [conversation_member(resolve_user_id(self._client, owner), owner=True)]

        channel = self._client.post(f"/teams/{team_id}/channels", body).json()
        return RemoteHandle(self.resource_type, intent.key, channel.get("id"))

    def remove(self, key: str) -> None:
        team_name, channel_name = split_channel_key(key)
        if channel_name.lower() == GENERAL_CHANNEL.lower():
            raise PermanentDriverError(f"the {GENERAL_CHANNEL} channel of '{team_name}' cannot be removed")
        team_id = self._team_id(team_name)
        if team_id is None:
            raise ResourceNotFoundError(f"parent team '{team_name}' not found")
        channel = self._find(team_id, channel_name)
        if channel is None:
            raise ResourceNotFoundError(f"channel '{key}' not found")
        self._client.delete(f"/teams/{team_id}/channels/{channel['id']}")

    def add_member(self, target: RemoteHandle | str, member: str) -> None:
        """Add a member to a private channel.

        Standard channels inherit the team's membership; Graph rejects the
        call for them and the reconciler reports it as a warning.
        """
        key = self.target_key(target)
        team_name, channel_name = split_channel_key(key)
        team_id = self._team_id(team_name)
        if team_id is None:
            raise ResourceNotFoundError(f"parent team '{team_name}' not found")
        channel_id = target.id if isinstance(target, RemoteHandle) else None
        if not channel_id:
            channel = self._find(team_id, channel_name)
            if channel is None:
                raise ResourceNotFoundError(f"channel '{key}' not found")
            channel_id = channel["id"]
        user_id = resolve_user_id(self._client, member)
        self._client.post(
            f"/teams/{team_id}/channels/{channel_id}/members",
            conversation_member(user_id),
        )
