"""Resource driver contract and driver error taxonomy.

A driver is the only place that talks to a remote system. The reconciler
sees every resource type through the same four operations and decides what
to do from their results and from the kind of DriverError they raise.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

from ..models import RemoteHandle, ResourceIntent, ResourceType


class DriverErrorKind(str, Enum):
    """Classification of driver failures."""

    # Resource with the same key already exists remotely
    DUPLICATE = "Duplicate"
    # Target absent (e.g. on remove)
    NOT_FOUND = "NotFound"
    # Network or throttling, eligible for retry where explicitly wrapped
    TRANSIENT = "Transient"
    # Bad input or permissions, never retried
    PERMANENT = "Permanent"


class DriverError(Exception):
    """Base class for errors raised by resource drivers."""

    kind: DriverErrorKind = DriverErrorKind.PERMANENT

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class DuplicateResourceError(DriverError):
    """Raised by create() when the resource already exists."""

    kind = DriverErrorKind.DUPLICATE


class ResourceNotFoundError(DriverError):
    """Raised when the target resource does not exist."""

    kind = DriverErrorKind.NOT_FOUND


class TransientDriverError(DriverError):
    """Raised on network failures and throttling that outlived retries."""

    kind = DriverErrorKind.TRANSIENT


class PermanentDriverError(DriverError):
    """Raised on bad input, missing permissions and unsupported operations."""

    kind = DriverErrorKind.PERMANENT


class ResourceDriver(ABC):
    """Per-resource-type adapter.

    Drivers are stateless apart from the client handles they are
    constructed with; one instance serves a whole run and may be called
    from several worker threads.
    """

    resource_type: ResourceType
    # The reconciler verifies creation through the poller when True
    eventually_consistent: bool = True
    supports_members: bool = False

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check whether the resource exists. Must be side-effect-free."""

    @abstractmethod
    def create(self, intent: ResourceIntent) -> RemoteHandle:
        """Create the resource.

        Raises:
            DuplicateResourceError: If the remote system reports an existing
                resource with the same key.
            DriverError: On any other failure.
        """

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove the resource.

        Raises:
            ResourceNotFoundError: If the resource does not exist.
            DriverError: On any other failure.
        """

    def add_member(self, target: RemoteHandle | str, member: str) -> None:
        """Add a member (user principal name) to the resource.

        Args:
            target: Handle returned by create(), or the resource key.
            member: Member reference, normally a UPN.

        Raises:
            DuplicateResourceError: If the member is already present.
            DriverError: On any other failure.
        """
        raise PermanentDriverError(
            f"{self.resource_type.value} resources do not support members"
        )

    @staticmethod
    def target_key(target: RemoteHandle | str) -> str:
        return target.key if isinstance(target, RemoteHandle) else target

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.resource_type.value})"
