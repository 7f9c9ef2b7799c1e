"""Programmatic entry point for the M365 lab provisioner.

Wires the pipeline together: load records -> map to intents -> reconcile
through the cloud drivers -> report. The CLI and the environment-driven
main() both go through provision().

Exit codes:
    0: every intent reached a non-failed terminal state
    1: at least one intent Failed or was Cancelled, or the input was unreadable
    2: configuration or credential policy error
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from types import FrameType
from typing import Any

from azure.core.credentials import TokenCredential

from .config import Config, ConfigurationError, ReconciliationMode
from .credentials import CredentialPolicyError, get_credential
from .drivers import ResourceDriver, build_drivers
from .mapper import MappingContext, MappingResult, map_records, teardown_intents
from .models import ResourceType, RunResult
from .reconciler import Reconciler
from .records import RecordLoadError, load_records
from .reporting import RunReport, RunReportLogger

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

# Standard LogRecord attributes, everything else is a structured extra
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines with structured extras appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_ATTRS and key != "asctime"
        ]
        if extras:
            line = f"{line} [{' '.join(extras)}]"
        return line


def setup_logging(fmt: str = "json", level: int = logging.INFO) -> None:
    """Configure structured logging.

    Logs go to stderr so stdout stays free for reports.

    Args:
        fmt: "json" (default) or "text".
        level: Root log level.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(TextFormatter() if fmt == "text" else JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Azure SDK and HTTP stack
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


# =============================================================================
# Pipeline
# =============================================================================


@dataclass(frozen=True)
class ProvisionResult:
    """Everything a caller needs to render and judge one run."""

    result: RunResult
    report: RunReport
    mapping: MappingResult

    @property
    def exit_code(self) -> int:
        if self.result.has_failures or self.result.cancelled:
            return EXIT_FAILED
        return EXIT_OK


def build_reconciler(
    config: Config,
    drivers: Mapping[ResourceType, ResourceDriver],
    *,
    mode: ReconciliationMode | None = None,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] | None = None,
) -> Reconciler:
    """Reconciler configured from Config."""
    return Reconciler(
        drivers,
        poll_policy=config.poll_policy,
        poll_overrides=config.poll_overrides(),
        mode=mode or config.mode,
        max_workers=config.max_workers,
        cancel_event=cancel_event,
        sleep=sleep,
    )


def map_input(
    config: Config,
    input_path: Path,
    *,
    sheets: Sequence[str] | None = None,
) -> MappingResult:
    """Load an input file and map its rows to intents.

    Raises:
        RecordLoadError: If the input cannot be read.
    """
    records = load_records(input_path, sheets=sheets)
    context = MappingContext(domain=config.domain, default_owner=config.default_owner)
    return map_records(records, context)


def provision(
    config: Config,
    input_path: Path,
    *,
    command: str = "apply",
    sheets: Sequence[str] | None = None,
    teardown: bool = False,
    mode: ReconciliationMode | None = None,
    credential: TokenCredential | None = None,
    drivers: Mapping[ResourceType, ResourceDriver] | None = None,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] | None = None,
) -> ProvisionResult:
    """Run the whole pipeline for one input file.

    Args:
        config: Validated configuration.
        input_path: Workbook, CSV or YAML manifest.
        command: Name recorded in the run report.
        sheets: Workbook sheets to read; all when None.
        teardown: Force every intent to Absent, dependents first.
        mode: Override of config.mode (plan uses OBSERVE).
        credential: Token source; built from config.auth_mode when None.
        drivers: Driver registry; built from config and credential when None.
        cancel_event: Run-level cancel signal.
        sleep: Pause function for polling (tests).

    Returns:
        ProvisionResult with outcomes, report metadata and mapper errors.

    Raises:
        RecordLoadError: If the input cannot be read.
        CredentialPolicyError: If password credentials are configured.
    """
    start_time = datetime.now(UTC)
    mapping = map_input(config, input_path, sheets=sheets)
    intents = teardown_intents(mapping.intents) if teardown else list(mapping.intents)

    if drivers is None:
        if credential is None:
            credential = get_credential(config.auth_mode, tenant_id=config.tenant_id)
        drivers = build_drivers(config, credential)

    reconciler = build_reconciler(
        config, drivers, mode=mode, cancel_event=cancel_event, sleep=sleep
    )
    result = reconciler.reconcile(intents)

    report = RunReport(
        domain=config.domain,
        mode=reconciler.mode.value,
        input_file=str(input_path),
        command=command,
        skipped_records=[str(e) for e in mapping.errors],
        duration_seconds=(datetime.now(UTC) - start_time).total_seconds(),
    )
    RunReportLogger().log_run(report, result)
    return ProvisionResult(result=result, report=report, mapping=mapping)


def install_cancel_handler(cancel_event: threading.Event) -> None:
    """Set cancel_event on SIGINT / SIGTERM so in-flight polls stop early."""

    def signal_handler(signum: int, frame: FrameType | None) -> None:
        logger.warning("Received signal, cancelling run", extra={"signal": signal.Signals(signum).name})
        cancel_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, signal_handler)


def main() -> int:
    """Run from environment variables.

    Reads the Config variables plus M365LAB_INPUT (input file path) and
    M365LAB_TEARDOWN (true to remove everything in the input).

    Returns:
        Exit code (see module docstring).
    """
    setup_logging(os.environ.get("LOG_FORMAT", "json"))

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR

    input_file = os.environ.get("M365LAB_INPUT", "")
    if not input_file:
        logger.error("Configuration error", extra={"error": "M365LAB_INPUT is required"})
        return EXIT_CONFIG_ERROR
    teardown = os.environ.get("M365LAB_TEARDOWN", "").lower() in ("1", "true", "yes")

    logger.info(
        "Starting M365 lab provisioner",
        extra={
            "domain": config.domain,
            "mode": config.mode.value,
            "input_file": input_file,
            "teardown": teardown,
        },
    )

    cancel_event = threading.Event()
    install_cancel_handler(cancel_event)

    try:
        outcome = provision(
            config,
            Path(input_file),
            command="teardown" if teardown else config.mode.value,
            teardown=teardown,
            cancel_event=cancel_event,
        )
    except RecordLoadError as e:
        logger.error("Input loading failed", extra={"error": str(e), "input_file": input_file})
        return EXIT_FAILED
    except CredentialPolicyError as e:
        logger.critical("Credential policy violation", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR
    except Exception as e:
        logger.exception("Provisioner failed unexpectedly", extra={"error": str(e)})
        return EXIT_FAILED

    return outcome.exit_code


def run() -> None:
    """Entry point for the environment-driven runner."""
    sys.exit(main())


if __name__ == "__main__":
    run()
