"""SharePoint site driver using the SPSiteManager REST endpoints.

Sites are keyed by their URL segment under /sites/. SPSiteManager reports a
provisioning status per URL; only a Ready site counts as existing, so a site
still provisioning keeps the reconciler's poller waiting.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any

from ..models import RemoteHandle, ResourceIntent, ResourceType
from .base import (
    DuplicateResourceError,
    PermanentDriverError,
    ResourceDriver,
    ResourceNotFoundError,
)
from .rest import RestClient

logger = logging.getLogger(__name__)

# English (United States)
DEFAULT_LCID = 1033

SITE_TEMPLATES = {
    "Communication": "SITEPAGEPUBLISHING#0",
    "Team": "STS#3",
}


class SiteStatus(IntEnum):
    """SPSiteManager SiteStatus values."""

    NOT_FOUND = 0
    PROVISIONING = 1
    READY = 2
    ERROR = 3


class SiteDriver(ResourceDriver):
    """SharePoint communication and team sites without a backing group."""

    resource_type = ResourceType.SITE

    def __init__(self, client: RestClient) -> None:
        self._client = client

    def site_url(self, key: str) -> str:
        return f"{self._client.base_url}/sites/{key}"

    def status(self, key: str) -> tuple[SiteStatus, str | None]:
        """Provisioning status and site id of the site at key."""
        url = self.site_url(key)
        data = self._client.get(
            "/_api/SPSiteManager/status",
            params={"url": "'" + url.replace("'", "''") + "'"},
        )
        try:
            status = SiteStatus(int(data.get("SiteStatus", SiteStatus.NOT_FOUND)))
        except ValueError:
            status = SiteStatus.ERROR
        return status, data.get("SiteId")

    def exists(self, key: str) -> bool:
        status, _ = self.status(key)
        return status == SiteStatus.READY

    def create(self, intent: ResourceIntent) -> RemoteHandle:
        status, site_id = self.status(intent.key)
        if status in (SiteStatus.PROVISIONING, SiteStatus.READY):
            raise DuplicateResourceError(f"site '{intent.key}' already exists ({status.name.lower()})")

        template = intent.attr("template", "Communication")
        request: dict[str, Any] = {
            "Title": intent.attr("title", intent.key),
            "Url": self.site_url(intent.key),
            "Lcid": DEFAULT_LCID,
            "Description": intent.attr("description", ""),
            "WebTemplate": SITE_TEMPLATES.get(template, SITE_TEMPLATES["Communication"]),
            "ShareByEmailEnabled": False,
        }
        owner = intent.attr("owner")
        if owner:
            request["Owner"] = owner

        data = self._client.post("/_api/SPSiteManager/create", {"request": request}).json()
        if int(data.get("SiteStatus", SiteStatus.NOT_FOUND)) == SiteStatus.ERROR:
            raise PermanentDriverError(f"site '{intent.key}' could not be provisioned")

        logger.debug(
            "Site creation requested",
            extra={"key": intent.key, "template": template, "status": data.get("SiteStatus")},
        )
        return RemoteHandle(self.resource_type, intent.key, data.get("SiteId") or site_id)

    def remove(self, key: str) -> None:
        status, site_id = self.status(key)
        if status == SiteStatus.NOT_FOUND or not site_id:
            raise ResourceNotFoundError(f"site '{key}' not found")
        self._client.post("/_api/SPSiteManager/delete", {"siteId": site_id})
