"""Tests for the intent, outcome and input-row models."""

import pytest
from pydantic import ValidationError

from provisioner.models import (
    DesiredState,
    Outcome,
    OutcomeStatus,
    RecordModel,
    ResourceIntent,
    ResourceType,
    RunResult,
)


class TestRecordModel:
    """Tests for RecordModel row validation."""

    def test_minimal_row(self) -> None:
        row = RecordModel.model_validate({"type": "M365", "name": "Sales"})

        assert row.state == DesiredState.PRESENT
        assert row.visibility == "Private"
        assert row.members == []
        assert row.template == "Communication"

    def test_blank_cells_become_none(self) -> None:
        row = RecordModel.model_validate(
            {"type": "User", "name": "alice", "owner": "  ", "department": ""}
        )

        assert row.owner is None
        assert row.department is None

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("alice; bob", ["alice", "bob"]),
            ("alice,bob;", ["alice", "bob"]),
            (["alice", " bob "], ["alice", "bob"]),
            (None, []),
        ],
    )
    def test_members_are_split(self, value, expected) -> None:
        row = RecordModel.model_validate({"type": "M365", "name": "Sales", "members": value})
        assert row.members == expected

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("Absent", DesiredState.ABSENT),
            ("delete", DesiredState.ABSENT),
            ("", DesiredState.PRESENT),
            ("yes", DesiredState.PRESENT),
        ],
    )
    def test_state_parsing(self, value, expected) -> None:
        row = RecordModel.model_validate({"type": "M365", "name": "Sales", "state": value})
        assert row.state == expected

    def test_case_insensitive_choices(self) -> None:
        row = RecordModel.model_validate(
            {
                "type": "Channel",
                "name": "Board",
                "visibility": "public",
                "membership_type": "Private",
                "template": "team",
            }
        )

        assert row.visibility == "Public"
        assert row.membership_type == "private"
        assert row.template == "Team"

    @pytest.mark.parametrize(
        "field,value",
        [
            ("state", "maybe"),
            ("visibility", "hidden"),
            ("membership_type", "shared"),
            ("template", "wiki"),
        ],
    )
    def test_invalid_choices(self, field: str, value: str) -> None:
        with pytest.raises(ValidationError):
            RecordModel.model_validate({"type": "M365", "name": "Sales", field: value})

    def test_name_is_required(self) -> None:
        with pytest.raises(ValidationError):
            RecordModel.model_validate({"type": "M365", "name": "   "})


class TestResourceIntent:
    """Tests for ResourceIntent."""

    def test_empty_key_rejected(self) -> None:
        with pytest.raises(ValueError, match="key cannot be empty"):
            ResourceIntent(ResourceType.USER, "")

    def test_attributes_are_read_only(self) -> None:
        intent = ResourceIntent(ResourceType.USER, "alice@contoso.com", {"department": "Sales"})

        with pytest.raises(TypeError):
            intent.attributes["department"] = "Ops"  # type: ignore[index]

    def test_attr_treats_blank_as_missing(self) -> None:
        intent = ResourceIntent(ResourceType.GROUP365, "Sales", {"description": "", "visibility": "Public"})

        assert intent.attr("description", "fallback") == "fallback"
        assert intent.attr("visibility") == "Public"
        assert intent.attr("owner") is None

    def test_with_state(self) -> None:
        intent = ResourceIntent(ResourceType.GROUP365, "Sales", {"members": ("a@contoso.com",)})

        absent = intent.with_state(DesiredState.ABSENT)

        assert absent.desired_state == DesiredState.ABSENT
        assert absent.members == ("a@contoso.com",)
        assert intent.desired_state == DesiredState.PRESENT


class TestOutcomes:
    """Tests for Outcome and RunResult."""

    def test_outcome_to_dict(self) -> None:
        outcome = Outcome(
            key="Sales",
            resource_type=ResourceType.GROUP365,
            status=OutcomeStatus.CREATED,
            warnings=("member x: not found",),
        )

        data = outcome.to_dict()

        assert data["type"] == "Group365"
        assert data["status"] == "Created"
        assert data["warnings"] == ["member x: not found"]
        assert not outcome.failed

    def test_run_result_flags(self) -> None:
        result = RunResult(
            outcomes=(
                Outcome("a", ResourceType.USER, OutcomeStatus.CANCELLED),
            ),
            counts={OutcomeStatus.CANCELLED: 1},
        )

        assert result.cancelled
        assert not result.has_failures
        assert result.count(OutcomeStatus.CREATED) == 0
