"""Data model for desired-state intents and reconciliation outcomes.

These models provide:
1. Type-safe parsing of spreadsheet rows (RecordModel, pydantic)
2. Immutable intents handed from the mapper to the reconciler
3. Per-intent outcomes and the aggregate RunResult returned to callers
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Enumerations
# =============================================================================


class ResourceType(str, Enum):
    """Kinds of tenant objects the provisioner manages."""

    GROUP365 = "Group365"
    DISTRIBUTION = "Distribution"
    MAIL_ENABLED_SECURITY = "MailEnabledSecurity"
    SECURITY = "Security"
    TEAM = "Team"
    CHANNEL = "Channel"
    SITE = "Site"
    USER = "User"


class DesiredState(str, Enum):
    """Whether a resource should exist after the run."""

    PRESENT = "Present"
    ABSENT = "Absent"


class OutcomeStatus(str, Enum):
    """Terminal status of one intent in one run."""

    CREATED = "Created"
    ALREADY_EXISTS = "AlreadyExists"
    REMOVED = "Removed"
    NOT_FOUND = "NotFound"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    # Observe mode: change detected but not applied
    PLANNED = "Planned"


# Resource types whose primary identity or mail address lives in the tenant domain
MAIL_ENABLED_TYPES: frozenset[ResourceType] = frozenset(
    {
        ResourceType.GROUP365,
        ResourceType.DISTRIBUTION,
        ResourceType.MAIL_ENABLED_SECURITY,
    }
)


# =============================================================================
# Intents
# =============================================================================


@dataclass(frozen=True)
class ResourceIntent:
    """Desired state of a single tenant resource.

    Built by the mapper from one input row and consumed exactly once per
    reconciliation pass. The attributes mapping is read-only.
    """

    type: ResourceType
    key: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    desired_state: DesiredState = DesiredState.PRESENT
    source: str = ""

    def __post_init__(self) -> None:
        if not self.key:
            raise ValueError("ResourceIntent key cannot be empty")
        if not isinstance(self.attributes, MappingProxyType):
            object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    def attr(self, name: str, default: Any = None) -> Any:
        """Get an attribute, treating empty strings as missing."""
        value = self.attributes.get(name, default)
        if value == "":
            return default
        return value

    @property
    def members(self) -> tuple[str, ...]:
        return tuple(self.attributes.get("members", ()))

    def with_state(self, state: DesiredState) -> ResourceIntent:
        """Copy of this intent with another desired state."""
        return replace(self, desired_state=state, attributes=dict(self.attributes))


@dataclass(frozen=True)
class RemoteHandle:
    """Opaque reference to a resource returned by a successful create."""

    resource_type: ResourceType
    key: str
    id: str | None = None


# =============================================================================
# Outcomes
# =============================================================================


@dataclass(frozen=True)
class Outcome:
    """Result of reconciling one intent."""

    key: str
    resource_type: ResourceType
    status: OutcomeStatus
    detail: str = ""
    error: str | None = None
    warnings: tuple[str, ...] = ()
    handle_id: str | None = None
    source: str = ""

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "type": self.resource_type.value,
            "status": self.status.value,
            "detail": self.detail,
            "error": self.error,
            "warnings": list(self.warnings),
            "handle_id": self.handle_id,
            "source": self.source,
        }


@dataclass(frozen=True)
class RunResult:
    """Ordered outcomes of a reconciliation run plus counts per status.

    Read-only after construction. Whether any Failed entry makes the run a
    failure is up to the caller.
    """

    outcomes: tuple[Outcome, ...] = ()
    counts: Mapping[OutcomeStatus, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.counts, MappingProxyType):
            object.__setattr__(self, "counts", MappingProxyType(dict(self.counts)))

    def __len__(self) -> int:
        return len(self.outcomes)

    def count(self, status: OutcomeStatus) -> int:
        return self.counts.get(status, 0)

    @property
    def statuses(self) -> list[OutcomeStatus]:
        return [o.status for o in self.outcomes]

    @property
    def failed(self) -> tuple[Outcome, ...]:
        return tuple(o for o in self.outcomes if o.status == OutcomeStatus.FAILED)

    @property
    def has_failures(self) -> bool:
        return self.count(OutcomeStatus.FAILED) > 0

    @property
    def cancelled(self) -> bool:
        return self.count(OutcomeStatus.CANCELLED) > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": len(self.outcomes),
            "counts": {status.value: self.count(status) for status in OutcomeStatus},
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


# =============================================================================
# Input rows
# =============================================================================


def _split_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = str(value).replace(",", ";").split(";")
    return [item.strip() for item in items if item and item.strip()]


class RecordModel(BaseModel):
    """A normalized spreadsheet row.

    Column names have already been mapped to canonical field names by the
    mapper. Only name is required for every type; the remaining fields are
    type specific and validated here so bad cells are reported per row.
    """

    model_config = {"extra": "ignore", "str_strip_whitespace": True}

    type: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1, max_length=256)]
    state: DesiredState = DesiredState.PRESENT
    alias: str | None = None
    description: str | None = None
    visibility: str = "Private"
    owner: str | None = None
    members: list[str] = Field(default_factory=list)
    team: str | None = None
    membership_type: str = "standard"
    template: str = "Communication"
    first_name: str | None = None
    last_name: str | None = None
    department: str | None = None
    job_title: str | None = None
    usage_location: str | None = None
    password: str | None = None

    @field_validator(
        "alias",
        "description",
        "owner",
        "team",
        "first_name",
        "last_name",
        "department",
        "job_title",
        "usage_location",
        "password",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("state", mode="before")
    @classmethod
    def parse_state(cls, v: Any) -> DesiredState:
        if v is None or str(v).strip() == "":
            return DesiredState.PRESENT
        text = str(v).strip().lower()
        if text in {"present", "create", "add", "yes", "true", "1"}:
            return DesiredState.PRESENT
        if text in {"absent", "remove", "delete", "no", "false", "0"}:
            return DesiredState.ABSENT
        raise ValueError(f"state must be Present or Absent, got '{v}'")

    @field_validator("visibility", mode="before")
    @classmethod
    def parse_visibility(cls, v: Any) -> str:
        if v is None or str(v).strip() == "":
            return "Private"
        text = str(v).strip().capitalize()
        if text not in {"Public", "Private"}:
            raise ValueError(f"visibility must be Public or Private, got '{v}'")
        return text

    @field_validator("membership_type", mode="before")
    @classmethod
    def parse_membership_type(cls, v: Any) -> str:
        if v is None or str(v).strip() == "":
            return "standard"
        text = str(v).strip().lower()
        if text not in {"standard", "private"}:
            raise ValueError(f"membership type must be Standard or Private, got '{v}'")
        return text

    @field_validator("template", mode="before")
    @classmethod
    def parse_template(cls, v: Any) -> str:
        if v is None or str(v).strip() == "":
            return "Communication"
        text = str(v).strip().capitalize()
        if text not in {"Communication", "Team"}:
            raise ValueError(f"site template must be Communication or Team, got '{v}'")
        return text

    @field_validator("members", mode="before")
    @classmethod
    def parse_members(cls, v: Any) -> list[str]:
        return _split_list(v)
