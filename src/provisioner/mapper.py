"""Row-to-resource mapping.

Turns raw spreadsheet rows (column name -> cell text) into immutable
ResourceIntent values. This is a pure transform over in-memory data: no
network calls, and the same rows with the same context always produce the
same intents.

Policies applied here:
- Type tags are resolved case-insensitively with common aliases
- Bare local-parts of addressable values get "@<domain>" appended
- A blank owner/manager falls back to the default owner
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .models import (
    MAIL_ENABLED_TYPES,
    DesiredState,
    RecordModel,
    ResourceIntent,
    ResourceType,
)

logger = logging.getLogger(__name__)

# Key under which loaders record where a row came from (e.g. "Groups!4")
SOURCE_FIELD = "_source"


class MapperError(Exception):
    """Base class for per-record mapping failures.

    A MapperError never aborts the batch: the offending record is skipped
    and the error is reported alongside the intents.
    """

    def __init__(self, message: str, source: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.source = source

    def __str__(self) -> str:
        if self.source:
            return f"{self.source}: {self.message}"
        return self.message


class UnknownTypeError(MapperError):
    """Raised when a row's type tag does not name a known resource type."""

    pass


class MissingRequiredFieldError(MapperError):
    """Raised when a row lacks a field its resource type needs."""

    pass


class InvalidFieldError(MapperError):
    """Raised when a cell holds a value outside its allowed set."""

    pass


# =============================================================================
# Type and column aliases
# =============================================================================

TYPE_ALIASES: dict[str, ResourceType] = {
    "group365": ResourceType.GROUP365,
    "groups": ResourceType.GROUP365,
    "m365groups": ResourceType.GROUP365,
    "microsoft365groups": ResourceType.GROUP365,
    "unifiedgroups": ResourceType.GROUP365,
    "m365": ResourceType.GROUP365,
    "m365group": ResourceType.GROUP365,
    "microsoft365": ResourceType.GROUP365,
    "microsoft365group": ResourceType.GROUP365,
    "o365": ResourceType.GROUP365,
    "unified": ResourceType.GROUP365,
    "distribution": ResourceType.DISTRIBUTION,
    "distributiongroup": ResourceType.DISTRIBUTION,
    "distributionlist": ResourceType.DISTRIBUTION,
    "distributiongroups": ResourceType.DISTRIBUTION,
    "distributionlists": ResourceType.DISTRIBUTION,
    "dl": ResourceType.DISTRIBUTION,
    "mailenabledsecurity": ResourceType.MAIL_ENABLED_SECURITY,
    "mailenabledsecuritygroup": ResourceType.MAIL_ENABLED_SECURITY,
    "mailenabledsecuritygroups": ResourceType.MAIL_ENABLED_SECURITY,
    "mesg": ResourceType.MAIL_ENABLED_SECURITY,
    "security": ResourceType.SECURITY,
    "securitygroup": ResourceType.SECURITY,
    "securitygroups": ResourceType.SECURITY,
    "team": ResourceType.TEAM,
    "teams": ResourceType.TEAM,
    "channel": ResourceType.CHANNEL,
    "channels": ResourceType.CHANNEL,
    "site": ResourceType.SITE,
    "sites": ResourceType.SITE,
    "sharepoint": ResourceType.SITE,
    "sharepointsite": ResourceType.SITE,
    "sharepointsites": ResourceType.SITE,
    "user": ResourceType.USER,
    "users": ResourceType.USER,
}

COLUMN_ALIASES: dict[str, str] = {
    "type": "type",
    "resourcetype": "type",
    "kind": "type",
    "grouptype": "type",
    "name": "name",
    "displayname": "name",
    "key": "name",
    "userprincipalname": "name",
    "upn": "name",
    "title": "name",
    "channel": "name",
    "channelname": "name",
    "state": "state",
    "ensure": "state",
    "action": "state",
    "alias": "alias",
    "mailnickname": "alias",
    "email": "alias",
    "mail": "alias",
    "primarysmtpaddress": "alias",
    "url": "alias",
    "description": "description",
    "notes": "description",
    "visibility": "visibility",
    "privacy": "visibility",
    "owner": "owner",
    "owners": "owner",
    "manager": "owner",
    "managedby": "owner",
    "members": "members",
    "member": "members",
    "team": "team",
    "teamname": "team",
    "parentteam": "team",
    "membershiptype": "membership_type",
    "channeltype": "membership_type",
    "template": "template",
    "sitetemplate": "template",
    "firstname": "first_name",
    "givenname": "first_name",
    "lastname": "last_name",
    "surname": "last_name",
    "department": "department",
    "jobtitle": "job_title",
    "usagelocation": "usage_location",
    "password": "password",
}


@dataclass(frozen=True)
class MappingContext:
    """Tenant-wide policy inputs for the mapper."""

    domain: str
    default_owner: str | None = None


@dataclass(frozen=True)
class MappingResult:
    """Intents built from a batch plus the records that were skipped."""

    intents: tuple[ResourceIntent, ...] = ()
    errors: tuple[MapperError, ...] = ()

    @property
    def skipped(self) -> int:
        return len(self.errors)


# =============================================================================
# Helpers
# =============================================================================


def _normalize_column(name: str) -> str:
    return re.sub(r"[\s_\-.]+", "", str(name)).lower()


def resolve_type(tag: str) -> ResourceType:
    """Resolve a type tag such as "M365" or "Teams" to a ResourceType.

    Raises:
        UnknownTypeError: If the tag is not recognized.
    """
    normalized = _normalize_column(tag)
    resource_type = TYPE_ALIASES.get(normalized)
    if resource_type is None:
        valid = [t.value for t in ResourceType]
        raise UnknownTypeError(f"Unknown resource type '{tag}'. Valid types: {valid}")
    return resource_type


def qualify(value: str, domain: str) -> str:
    """Append @domain to a bare local-part; leave full addresses untouched."""
    value = value.strip()
    if not value or "@" in value:
        return value
    return f"{value}@{domain}"


def slugify(value: str) -> str:
    """Mail nickname / URL segment from a display name ("Sales Team" -> "SalesTeam")."""
    return re.sub(r"[^A-Za-z0-9\-]", "", value)


def _canonical_fields(record: Mapping[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for column, value in record.items():
        if column == SOURCE_FIELD:
            continue
        canonical = COLUMN_ALIASES.get(_normalize_column(column))
        if canonical is None:
            continue
        # The first non-blank column wins when several alias the same field
        if canonical in fields and str(fields[canonical]).strip():
            continue
        fields[canonical] = value
    return fields


def _format_validation_error(e: ValidationError) -> tuple[bool, str]:
    """Summarize a pydantic error. Returns (is_missing_field, message)."""
    missing = False
    messages = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        if error["type"] in ("missing", "string_too_short"):
            missing = True
            messages.append(f"{loc} is required")
        else:
            messages.append(f"{loc}: {error['msg']}")
    return missing, "; ".join(messages)


# =============================================================================
# Mapping
# =============================================================================


def map_record(
    record: Mapping[str, Any],
    context: MappingContext,
    source: str = "",
) -> ResourceIntent:
    """Map one raw record to a ResourceIntent.

    Args:
        record: Column name -> cell value.
        context: Domain and default owner.
        source: Row reference for error messages.

    Returns:
        The intent for this row.

    Raises:
        UnknownTypeError: If the type tag is not recognized.
        MissingRequiredFieldError: If name (or team, for channels) is blank.
        InvalidFieldError: If a cell holds an invalid value.
    """
    source = source or str(record.get(SOURCE_FIELD, ""))
    fields = _canonical_fields(record)

    type_tag = str(fields.get("type") or "").strip()
    if not type_tag:
        raise MissingRequiredFieldError("type is required", source)
    try:
        resource_type = resolve_type(type_tag)
    except UnknownTypeError as e:
        raise UnknownTypeError(e.message, source) from e

    try:
        row = RecordModel.model_validate(fields)
    except ValidationError as e:
        missing, message = _format_validation_error(e)
        if missing:
            raise MissingRequiredFieldError(message, source) from e
        raise InvalidFieldError(message, source) from e

    domain = context.domain
    owner = row.owner or context.default_owner
    attributes: dict[str, Any] = {
        "display_name": row.name,
        "description": row.description or "",
        "members": tuple(qualify(m, domain) for m in row.members),
    }
    if owner:
        attributes["owner"] = qualify(owner, domain)

    match resource_type:
        case ResourceType.USER:
            key = qualify(row.name, domain)
            local_part = key.split("@", 1)[0]
            if row.first_name or row.last_name:
                display_name = " ".join(p for p in (row.first_name, row.last_name) if p)
            else:
                display_name = local_part
            attributes.update(
                {
                    "display_name": display_name,
                    "mail_nickname": local_part,
                    "first_name": row.first_name,
                    "last_name": row.last_name,
                    "department": row.department,
                    "job_title": row.job_title,
                    "usage_location": row.usage_location,
                    "password": row.password,
                }
            )
            # A user's owner column is their manager
            manager = attributes.pop("owner", None)
            if manager:
                attributes["manager"] = manager

        case ResourceType.CHANNEL:
            if not row.team:
                raise MissingRequiredFieldError("team is required for channels", source)
            if "/" in row.name:
                raise InvalidFieldError(
                    f"channel name cannot contain '/': {row.name}", source
                )
            key = f"{row.team}/{row.name}"
            attributes.update(
                {
                    "team": row.team,
                    "channel": row.name,
                    "membership_type": row.membership_type,
                }
            )

        case ResourceType.SITE:
            url_alias = row.alias or slugify(row.name)
            if not url_alias:
                raise InvalidFieldError(f"cannot derive a site URL from '{row.name}'", source)
            # Full URLs are reduced to their last path segment
            key = url_alias.rstrip("/").rsplit("/", 1)[-1]
            attributes.update({"title": row.name, "template": row.template})

        case _:
            key = row.name
            attributes["visibility"] = row.visibility
            nickname = row.alias.split("@", 1)[0] if row.alias else slugify(row.name)
            attributes["mail_nickname"] = nickname
            if resource_type in MAIL_ENABLED_TYPES:
                attributes["address"] = qualify(row.alias or nickname, domain)

    return ResourceIntent(
        type=resource_type,
        key=key,
        attributes=attributes,
        desired_state=row.state,
        source=source,
    )


def map_records(
    records: Iterable[Mapping[str, Any]],
    context: MappingContext,
) -> MappingResult:
    """Map a batch of raw records to intents.

    Records that fail to map are logged and skipped; they never abort the
    batch.

    Args:
        records: Raw rows, typically from records.load_records().
        context: Domain and default owner.

    Returns:
        MappingResult with intents in input order and the skipped records'
        errors.
    """
    intents: list[ResourceIntent] = []
    errors: list[MapperError] = []

    for index, record in enumerate(records, start=1):
        source = str(record.get(SOURCE_FIELD) or f"record {index}")
        try:
            intents.append(map_record(record, context, source))
        except MapperError as e:
            logger.warning(
                "Skipping record",
                extra={
                    "source": e.source,
                    "error_type": type(e).__name__,
                    "error": e.message,
                },
            )
            errors.append(e)

    logger.info(
        "Mapped records",
        extra={
            "intents": len(intents),
            "skipped": len(errors),
            "domain": context.domain,
        },
    )
    return MappingResult(intents=tuple(intents), errors=tuple(errors))


def teardown_intents(intents: Iterable[ResourceIntent]) -> list[ResourceIntent]:
    """Flip every intent to Absent, ordered so dependents go first.

    Channels before their teams, teams before plain groups and sites, users
    last (they may own the groups above).
    """
    order = {
        ResourceType.CHANNEL: 0,
        ResourceType.TEAM: 1,
        ResourceType.SITE: 2,
        ResourceType.GROUP365: 3,
        ResourceType.DISTRIBUTION: 3,
        ResourceType.MAIL_ENABLED_SECURITY: 3,
        ResourceType.SECURITY: 3,
        ResourceType.USER: 4,
    }
    absent = [intent.with_state(DesiredState.ABSENT) for intent in intents]
    # sorted() is stable: input order is kept within a tier
    return sorted(absent, key=lambda intent: order[intent.type])
