"""Outcome aggregation and run reporting.

aggregate() is the pure core: it turns per-intent outcomes into a RunResult.
Everything else in this module is presentation for callers: a structured
log sink for audit (one record per outcome plus a run summary), plus text
and JSON renderings used by the CLI.
"""

from __future__ import annotations

import json
import logging
import os
from collections import Counter
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .models import Outcome, OutcomeStatus, RunResult

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
PROVISIONER_VERSION = os.environ.get("PROVISIONER_VERSION", "dev")

# Column order for the text summary
SUMMARY_ORDER: tuple[OutcomeStatus, ...] = (
    OutcomeStatus.CREATED,
    OutcomeStatus.ALREADY_EXISTS,
    OutcomeStatus.REMOVED,
    OutcomeStatus.NOT_FOUND,
    OutcomeStatus.PLANNED,
    OutcomeStatus.FAILED,
    OutcomeStatus.CANCELLED,
)


def aggregate(outcomes: Iterable[Outcome]) -> RunResult:
    """Build a RunResult from outcomes.

    Pure function: preserves input order, counts every status (zero when
    absent), performs no I/O.
    """
    ordered = tuple(outcomes)
    tally = Counter(o.status for o in ordered)
    counts = {status: tally.get(status, 0) for status in OutcomeStatus}
    return RunResult(outcomes=ordered, counts=counts)


# =============================================================================
# Audit logging
# =============================================================================


@dataclass
class RunReport:
    """Provenance record for one run, for audit logs and JSON reports."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    provisioner_version: str = PROVISIONER_VERSION
    domain: str = ""
    mode: str = "enforce"
    input_file: str = ""
    command: str = ""
    skipped_records: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self, result: RunResult | None = None) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        if result is not None:
            data["result"] = result.to_dict()
        return data


class RunReportLogger:
    """Logs run outcomes as structured records.

    One record per outcome, then one summary record whose level reflects the
    run: ERROR when anything failed, WARNING when cancelled or records were
    skipped, INFO otherwise.
    """

    def log_outcome(self, report: RunReport, outcome: Outcome) -> None:
        level = logging.ERROR if outcome.failed else logging.INFO
        if outcome.status == OutcomeStatus.CANCELLED or outcome.warnings:
            level = max(level, logging.WARNING)
        logger.log(
            level,
            "Resource outcome",
            extra={
                "domain": report.domain,
                "key": outcome.key,
                "type": outcome.resource_type.value,
                "status": outcome.status.value,
                "detail": outcome.detail,
                "error": outcome.error,
                "warnings": list(outcome.warnings),
                "source": outcome.source,
            },
        )

    def log_run(self, report: RunReport, result: RunResult) -> None:
        for outcome in result.outcomes:
            self.log_outcome(report, outcome)

        log_level = logging.INFO
        if result.has_failures:
            log_level = logging.ERROR
        elif result.cancelled or report.skipped_records:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run summary",
            extra={
                "domain": report.domain,
                "mode": report.mode,
                "command": report.command,
                "input_file": report.input_file,
                "provisioner_version": report.provisioner_version,
                "duration_seconds": report.duration_seconds,
                "total": len(result),
                "skipped_records": len(report.skipped_records),
                **{status.value: result.count(status) for status in OutcomeStatus},
            },
        )


# =============================================================================
# Rendering
# =============================================================================


def render_text(result: RunResult, report: RunReport | None = None) -> str:
    """Render a human-readable table of outcomes plus a summary line."""
    lines: list[str] = []
    if result.outcomes:
        type_width = max(len(o.resource_type.value) for o in result.outcomes)
        key_width = min(max(len(o.key) for o in result.outcomes), 60)
        status_width = max(len(o.status.value) for o in result.outcomes)
        for outcome in result.outcomes:
            detail = outcome.detail
            if outcome.warnings:
                detail = f"{detail} ({len(outcome.warnings)} warning(s))"
            lines.append(
                f"{outcome.resource_type.value:<{type_width}}  "
                f"{outcome.key:<{key_width}}  "
                f"{outcome.status.value:<{status_width}}  {detail}"
            )
            for warning in outcome.warnings:
                lines.append(f"{'':<{type_width}}  {'':<{key_width}}  ! {warning}")
        lines.append("")

    if report is not None and report.skipped_records:
        lines.append(f"Skipped records ({len(report.skipped_records)}):")
        lines.extend(f"  - {entry}" for entry in report.skipped_records)
        lines.append("")

    summary = ", ".join(
        f"{status.value}={result.count(status)}"
        for status in SUMMARY_ORDER
        if result.count(status)
    )
    lines.append(f"Total {len(result)}: {summary or 'nothing to do'}")
    return "\n".join(lines)


def render_json(result: RunResult, report: RunReport | None = None) -> str:
    """Render the run as a JSON document."""
    if report is None:
        data = result.to_dict()
    else:
        data = report.to_dict(result)
    return json.dumps(data, indent=2)


def write_report(result: RunResult, path: Path, report: RunReport | None = None) -> None:
    """Write the JSON rendering of a run to path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_json(result, report) + "\n", encoding="utf-8")
    logger.info("Wrote run report to %s", path)
