"""Tests for outcome aggregation and run reporting."""

import json
import logging
from pathlib import Path

import pytest

from provisioner.models import Outcome, OutcomeStatus, ResourceType
from provisioner.reporting import (
    RunReport,
    RunReportLogger,
    aggregate,
    render_json,
    render_text,
    write_report,
)


def outcome(key: str, status: OutcomeStatus, **kwargs) -> Outcome:
    return Outcome(key=key, resource_type=ResourceType.GROUP365, status=status, **kwargs)


class TestAggregate:
    """Tests for aggregate()."""

    def test_preserves_order_and_counts(self) -> None:
        outcomes = [
            outcome("a", OutcomeStatus.CREATED),
            outcome("b", OutcomeStatus.FAILED, error="Permanent: nope"),
            outcome("c", OutcomeStatus.CREATED),
        ]

        result = aggregate(outcomes)

        assert [o.key for o in result.outcomes] == ["a", "b", "c"]
        assert result.count(OutcomeStatus.CREATED) == 2
        assert result.count(OutcomeStatus.FAILED) == 1
        assert result.count(OutcomeStatus.REMOVED) == 0
        assert result.has_failures
        assert [o.key for o in result.failed] == ["b"]

    def test_accepts_generator(self) -> None:
        result = aggregate(outcome(str(i), OutcomeStatus.NOT_FOUND) for i in range(3))
        assert len(result) == 3

    def test_result_is_read_only(self) -> None:
        result = aggregate([outcome("a", OutcomeStatus.CREATED)])
        with pytest.raises(TypeError):
            result.counts[OutcomeStatus.CREATED] = 5  # type: ignore[index]

    def test_to_dict(self) -> None:
        result = aggregate([outcome("a", OutcomeStatus.CREATED, handle_id="id-1")])

        data = result.to_dict()

        assert data["total"] == 1
        assert data["counts"]["Created"] == 1
        assert data["counts"]["Failed"] == 0
        assert data["outcomes"][0]["handle_id"] == "id-1"
        assert data["outcomes"][0]["type"] == "Group365"


class TestRendering:
    """Tests for text and JSON rendering."""

    def test_text_lists_outcomes_and_summary(self) -> None:
        result = aggregate(
            [
                outcome("Sales", OutcomeStatus.CREATED, detail="created"),
                outcome("Ops", OutcomeStatus.FAILED, detail="forbidden"),
            ]
        )

        text = render_text(result)

        assert "Sales" in text
        assert "forbidden" in text
        assert text.splitlines()[-1] == "Total 2: Created=1, Failed=1"

    def test_text_shows_warnings(self) -> None:
        result = aggregate(
            [outcome("Sales", OutcomeStatus.CREATED, detail="created", warnings=("member x: gone",))]
        )

        text = render_text(result)

        assert "created (1 warning(s))" in text
        assert "! member x: gone" in text

    def test_text_lists_skipped_records(self) -> None:
        report = RunReport(domain="contoso.com", skipped_records=["Users!3: type is required"])

        text = render_text(aggregate([]), report)

        assert "Skipped records (1):" in text
        assert "Users!3: type is required" in text
        assert text.endswith("Total 0: nothing to do")

    def test_json_includes_report_metadata(self) -> None:
        report = RunReport(domain="contoso.com", command="apply", input_file="lab.xlsx")
        result = aggregate([outcome("Sales", OutcomeStatus.CREATED)])

        data = json.loads(render_json(result, report))

        assert data["domain"] == "contoso.com"
        assert data["command"] == "apply"
        assert data["result"]["counts"]["Created"] == 1
        assert "timestamp" in data

    def test_write_report(self, tmp_path: Path) -> None:
        path = tmp_path / "reports" / "run.json"

        write_report(aggregate([outcome("Sales", OutcomeStatus.REMOVED)]), path)

        data = json.loads(path.read_text())
        assert data["counts"]["Removed"] == 1


class TestRunReportLogger:
    """Tests for structured audit logging."""

    def test_summary_level_error_on_failure(self, caplog: pytest.LogCaptureFixture) -> None:
        result = aggregate([outcome("Ops", OutcomeStatus.FAILED, error="Permanent: nope")])

        with caplog.at_level(logging.INFO, logger="provisioner.reporting"):
            RunReportLogger().log_run(RunReport(domain="contoso.com"), result)

        summary = [r for r in caplog.records if r.getMessage() == "Run summary"][0]
        assert summary.levelno == logging.ERROR
        assert summary.Failed == 1
        assert summary.total == 1

    def test_summary_level_warning_on_cancel(self, caplog: pytest.LogCaptureFixture) -> None:
        result = aggregate([outcome("Ops", OutcomeStatus.CANCELLED)])

        with caplog.at_level(logging.INFO, logger="provisioner.reporting"):
            RunReportLogger().log_run(RunReport(), result)

        summary = [r for r in caplog.records if r.getMessage() == "Run summary"][0]
        assert summary.levelno == logging.WARNING

    def test_one_record_per_outcome(self, caplog: pytest.LogCaptureFixture) -> None:
        result = aggregate(
            [outcome("a", OutcomeStatus.CREATED), outcome("b", OutcomeStatus.ALREADY_EXISTS)]
        )

        with caplog.at_level(logging.INFO, logger="provisioner.reporting"):
            RunReportLogger().log_run(RunReport(), result)

        per_outcome = [r for r in caplog.records if r.getMessage() == "Resource outcome"]
        assert [r.key for r in per_outcome] == ["a", "b"]
        assert [r.status for r in per_outcome] == ["Created", "AlreadyExists"]
        assert all(r.levelno == logging.INFO for r in per_outcome)
