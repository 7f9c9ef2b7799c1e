"""Reconciliation engine.

Converges the tenant toward a list of desired-state intents:
1. Check existence through the intent type's driver
2. Create or remove when the observed state differs from the desired one
3. Verify eventually consistent creates through the poller
4. Add members to freshly created resources
5. Record exactly one Outcome per intent

State machine per intent:
    Pending -> Checked -> {Creating | Removing} -> {Verifying} -> {Done | Failed}

FAILURE ISOLATION: a driver error or unexpected exception while handling one
intent is converted into that intent's Failed outcome. The batch always runs
to completion (or cancellation) and the caller always gets a complete
RunResult.

KNOWN RACE: the existence check and the mutation are not atomic. Another
actor can create or remove the same resource in between; the driver's
Duplicate / NotFound errors are mapped to AlreadyExists / NotFound to soften
that, but it is best-effort, not transactional.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

from .config import MAX_WORKERS, ReconciliationMode
from .drivers.base import (
    DriverError,
    DuplicateResourceError,
    ResourceDriver,
    ResourceNotFoundError,
)
from .models import (
    DesiredState,
    Outcome,
    OutcomeStatus,
    RemoteHandle,
    ResourceIntent,
    ResourceType,
    RunResult,
)
from .poller import PollCancelled, PollPolicy, wait_until
from .reporting import aggregate

logger = logging.getLogger(__name__)

# Creation order. A tier only starts once the previous one has finished;
# removals walk the tiers backwards so dependents go first.
DEPENDENCY_TIERS: dict[ResourceType, int] = {
    ResourceType.USER: 0,
    ResourceType.GROUP365: 1,
    ResourceType.SECURITY: 1,
    ResourceType.DISTRIBUTION: 1,
    ResourceType.MAIL_ENABLED_SECURITY: 1,
    ResourceType.TEAM: 2,
    ResourceType.SITE: 2,
    ResourceType.CHANNEL: 3,
}
LAST_TIER = max(DEPENDENCY_TIERS.values())


def dependency_tier(intent: ResourceIntent) -> int:
    """Tier an intent runs in when the batch is processed by a worker pool."""
    tier = DEPENDENCY_TIERS[intent.type]
    if intent.desired_state == DesiredState.ABSENT:
        return LAST_TIER - tier
    return tier


def group_by_tier(batch: Sequence[ResourceIntent]) -> list[list[int]]:
    """Batch indices grouped by dependency tier, input order kept inside a tier."""
    tiers: dict[int, list[int]] = {}
    for index, intent in enumerate(batch):
        tiers.setdefault(dependency_tier(intent), []).append(index)
    return [tiers[tier] for tier in sorted(tiers)]


class Reconciler:
    """Drive a batch of intents to their desired state.

    The reconciler never talks to a remote system itself; it only calls the
    drivers it was given. It holds no state between runs.
    """

    def __init__(
        self,
        drivers: Mapping[ResourceType, ResourceDriver],
        *,
        poll_policy: PollPolicy | None = None,
        poll_overrides: Mapping[ResourceType, PollPolicy] | None = None,
        mode: ReconciliationMode = ReconciliationMode.ENFORCE,
        max_workers: int = 1,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            drivers: One driver per resource type. Types without a driver
                produce Failed outcomes.
            poll_policy: Default verification policy after create.
            poll_overrides: Per-type policies that replace the default.
            mode: ENFORCE applies changes, OBSERVE only reports them.
            max_workers: Intents processed concurrently (1 = sequential).
            cancel_event: Run-level cancel signal; created when omitted.
            sleep: Replacement pause function for polling (tests). By default
                pauses wait on the cancel signal.

        Raises:
            ValueError: If max_workers is out of range.
        """
        if not (1 <= max_workers <= MAX_WORKERS):
            raise ValueError(f"max_workers must be between 1 and {MAX_WORKERS}: {max_workers}")

        self._drivers = dict(drivers)
        self._poll_policy = poll_policy or PollPolicy()
        self._poll_overrides = dict(poll_overrides or {})
        self._mode = mode
        self._max_workers = max_workers
        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self._sleep = sleep

    @property
    def mode(self) -> ReconciliationMode:
        return self._mode

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Signal the run to stop.

        Intents not yet started are reported as Cancelled; an intent waiting
        in the poller is interrupted and reported as Cancelled too.
        """
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    def policy_for(self, resource_type: ResourceType) -> PollPolicy:
        return self._poll_overrides.get(resource_type, self._poll_policy)

    # =========================================================================
    # Batch entry point
    # =========================================================================

    def reconcile(self, intents: Iterable[ResourceIntent]) -> RunResult:
        """Reconcile a batch of intents.

        Args:
            intents: Desired-state intents. Processed in input order when
                sequential; a worker pool runs them tier by tier (see
                DEPENDENCY_TIERS) so a team exists before its channels.

        Returns:
            RunResult with exactly one outcome per intent, in input order.
        """
        batch = list(intents)
        start_time = datetime.now(UTC)

        logger.info(
            "Starting reconciliation",
            extra={
                "intent_count": len(batch),
                "mode": self._mode.value,
                "max_workers": self._max_workers,
            },
        )

        if self._max_workers == 1 or len(batch) <= 1:
            outcomes = [self._reconcile_guarded(intent) for intent in batch]
        else:
            outcomes = self._reconcile_in_tiers(batch)

        result = aggregate(outcomes)
        duration = (datetime.now(UTC) - start_time).total_seconds()

        logger.info(
            "Reconciliation finished",
            extra={
                "intent_count": len(batch),
                "duration_seconds": duration,
                **{f"count_{status.value}": result.count(status) for status in OutcomeStatus},
            },
        )
        return result

    def _reconcile_in_tiers(self, batch: list[ResourceIntent]) -> list[Outcome]:
        """Run the batch on the worker pool, one dependency tier at a time.

        Intents inside a tier are independent of each other and run
        concurrently. Outcomes are placed back at their input positions.
        """
        outcomes: list[Outcome | None] = [None] * len(batch)
        with ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix="reconcile",
        ) as pool:
            for indices in group_by_tier(batch):
                logger.debug(
                    "Starting dependency tier",
                    extra={"intent_count": len(indices), "first_key": batch[indices[0]].key},
                )
                tier_outcomes = pool.map(self._reconcile_guarded, [batch[i] for i in indices])
                for index, outcome in zip(indices, tier_outcomes, strict=True):
                    outcomes[index] = outcome
        return [outcome for outcome in outcomes if outcome is not None]

    def _reconcile_guarded(self, intent: ResourceIntent) -> Outcome:

        """Run one intent, honoring cancellation before it starts."""
        if self._cancel_event.is_set():
            return self._outcome(
                intent,
                OutcomeStatus.CANCELLED,
                "run cancelled before start",
            )
        return self.reconcile_one(intent)

    # =========================================================================
    # Per-intent state machine
    # =========================================================================

    def reconcile_one(self, intent: ResourceIntent) -> Outcome:
        """Drive a single intent to a terminal state.

        Never raises for driver or verification failures; they become a
        Failed (or Cancelled) outcome.
        """
        driver = self._drivers.get(intent.type)
        if driver is None:
            return self._outcome(
                intent,
                OutcomeStatus.FAILED,
                f"no driver registered for {intent.type.value}",
                error="missing driver",
            )

        try:
            # Pending -> Checked
            exists = bool(driver.exists(intent.key))

            match (intent.desired_state, exists):
                case (DesiredState.PRESENT, True):
                    return self._outcome(intent, OutcomeStatus.ALREADY_EXISTS, "already exists")
                case (DesiredState.PRESENT, False):
                    if self._mode == ReconciliationMode.OBSERVE:
                        return self._outcome(intent, OutcomeStatus.PLANNED, "would create")
                    return self._create(driver, intent)
                case (DesiredState.ABSENT, False):
                    return self._outcome(intent, OutcomeStatus.NOT_FOUND, "not found")
                case (DesiredState.ABSENT, True):
                    if self._mode == ReconciliationMode.OBSERVE:
                        return self._outcome(intent, OutcomeStatus.PLANNED, "would remove")
                    return self._remove(driver, intent)

        except PollCancelled as e:
            return self._outcome(intent, OutcomeStatus.CANCELLED, str(e))
        except DriverError as e:
            return self._failed(intent, e)
        except Exception as e:
            # Isolation boundary: any other defect fails this intent only
            logger.exception(
                "Unexpected error during reconciliation",
                extra={"key": intent.key, "type": intent.type.value},
            )
            return self._failed(intent, e)

        raise AssertionError(f"Unhandled desired state: {intent.desired_state}")

    def _create(self, driver: ResourceDriver, intent: ResourceIntent) -> Outcome:
        """Checked -> Creating -> {Verifying} -> Done | Failed."""
        try:
            handle = driver.create(intent)
        except DuplicateResourceError as e:
            logger.info(
                "Create reported duplicate, treating as existing",
                extra={"key": intent.key, "type": intent.type.value, "error": e.message},
            )
            return self._outcome(intent, OutcomeStatus.ALREADY_EXISTS, "already exists")

        logger.info(
            "Resource created",
            extra={"key": intent.key, "type": intent.type.value, "handle_id": handle.id},
        )

        if driver.eventually_consistent:
            policy = self.policy_for(intent.type)
            try:
                visible = wait_until(
                    lambda: driver.exists(intent.key),
                    policy,
                    cancel_event=self._cancel_event,
                    sleep=self._sleep,
                    description=f"{intent.type.value} '{intent.key}' to become visible",
                )
            except PollCancelled:
                return self._outcome(
                    intent,
                    OutcomeStatus.CANCELLED,
                    "cancelled while verifying",
                    handle_id=handle.id,
                )
            if not visible:
                # The create call succeeded, so the resource may still exist
                return self._outcome(
                    intent,
                    OutcomeStatus.FAILED,
                    f"not verified after {policy.max_attempts} attempts",
                    error="verification exhausted",
                    handle_id=handle.id,
                )

        warnings = self._add_members(driver, intent, handle)
        return self._outcome(
            intent,
            OutcomeStatus.CREATED,
            "created",
            warnings=warnings,
            handle_id=handle.id,
        )

    def _remove(self, driver: ResourceDriver, intent: ResourceIntent) -> Outcome:
        """Checked -> Removing -> Done | Failed."""
        try:
            driver.remove(intent.key)
        except ResourceNotFoundError:
            # Removed by someone else between the check and the call
            return self._outcome(intent, OutcomeStatus.NOT_FOUND, "not found")

        logger.info("Resource removed", extra={"key": intent.key, "type": intent.type.value})
        return self._outcome(intent, OutcomeStatus.REMOVED, "removed")

    def _add_members(
        self,
        driver: ResourceDriver,
        intent: ResourceIntent,
        handle: RemoteHandle,
    ) -> tuple[str, ...]:
        """Add the intent's members; problems become warnings, not failures."""
        members = intent.members
        if not members:
            return ()
        if not driver.supports_members:
            return (f"{intent.type.value} does not support members; {len(members)} ignored",)

        warnings: list[str] = []
        for member in members:
            try:
                driver.add_member(handle, member)
            except DuplicateResourceError:
                continue
            except DriverError as e:
                logger.warning(
                    "Failed to add member",
                    extra={"key": intent.key, "member": member, "error": e.message},
                )
                warnings.append(f"member {member}: {e.message}")
        return tuple(warnings)

    # =========================================================================
    # Outcome helpers
    # =========================================================================

    def _failed(self, intent: ResourceIntent, error: Exception) -> Outcome:
        message = error.message if isinstance(error, DriverError) else str(error)
        if isinstance(error, DriverError):
            error_label = f"{error.kind.value}: {message}"
        else:
            error_label = f"{type(error).__name__}: {message}"
        logger.error(
            "Intent failed",
            extra={
                "key": intent.key,
                "type": intent.type.value,
                "source": intent.source,
                "error": error_label,
            },
        )
        return self._outcome(intent, OutcomeStatus.FAILED, message, error=error_label)

    def _outcome(
        self,
        intent: ResourceIntent,
        status: OutcomeStatus,
        detail: str,
        *,
        error: str | None = None,
        warnings: tuple[str, ...] = (),
        handle_id: str | None = None,
    ) -> Outcome:
        return Outcome(
            key=intent.key,
            resource_type=intent.type,
            status=status,
            detail=detail,
            error=error,
            warnings=warnings,
            handle_id=handle_id,
            source=intent.source,
        )
