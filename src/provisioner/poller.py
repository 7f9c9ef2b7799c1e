"""Bounded retry-with-delay for eventually consistent reads.

Directory objects, Teams and SharePoint sites are not visible to reads the
moment the create call returns. The reconciler wraps the driver's existence
check in wait_until() after such a create instead of sprinkling sleeps and
retry counters through the drivers.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class PollCancelled(Exception):
    """Raised when the run-level cancel signal interrupts a poll."""

    pass


@dataclass(frozen=True)
class PollPolicy:
    """How often and how long to wait for a resource to become visible."""

    max_attempts: int = 5
    delay_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1: {self.max_attempts}")
        if self.delay_seconds < 0:
            raise ValueError(f"delay_seconds cannot be negative: {self.delay_seconds}")

    @property
    def max_wait_seconds(self) -> float:
        """Upper bound on time spent sleeping (no pause after the last attempt)."""
        return (self.max_attempts - 1) * self.delay_seconds


def wait_until(
    predicate: Callable[[], bool],
    policy: PollPolicy,
    *,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] | None = None,
    description: str = "condition",
) -> bool:
    """Call predicate until it returns True or the policy is exhausted.

    Exceptions raised by predicate are NOT caught: a predicate that throws is
    a hard failure (bad configuration, API error), which is different from
    "not visible yet" (predicate returns False).

    Args:
        predicate: Zero-argument check, typically a driver's exists(key).
        policy: Attempt count and delay between attempts.
        cancel_event: Optional run-level cancel signal, checked before every
            attempt. Pauses wait on the event so a long poll can be
            interrupted.
        sleep: Pause function that replaces the default pause (used by
            tests); the cancel signal is still checked after it returns.
        description: What is being waited for, for logging.

    Returns:
        True on the first truthy predicate result, False if exhausted.

    Raises:
        PollCancelled: If cancel_event is set before an attempt or during
            a pause.
    """
    for attempt in range(1, policy.max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise PollCancelled(f"Cancelled while waiting for {description}")

        if predicate():
            if attempt > 1:
                logger.info(
                    "Condition met after polling",
                    extra={"condition": description, "attempt": attempt},
                )
            return True

        if attempt == policy.max_attempts:
            break

        logger.debug(
            "Condition not met yet, waiting",
            extra={
                "condition": description,
                "attempt": attempt,
                "max_attempts": policy.max_attempts,
                "delay_seconds": policy.delay_seconds,
            },
        )

        if sleep is not None:
            sleep(policy.delay_seconds)
        elif cancel_event is not None:
            if cancel_event.wait(policy.delay_seconds):
                raise PollCancelled(f"Cancelled while waiting for {description}")
        else:
            time.sleep(policy.delay_seconds)

    logger.warning(
        "Condition not met, polling exhausted",
        extra={"condition": description, "max_attempts": policy.max_attempts},
    )
    return False
