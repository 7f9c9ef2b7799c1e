"""Tests for workbook, CSV and YAML input loading."""

from pathlib import Path
from unittest.mock import patch

import pandas as pd
import pytest

from provisioner.mapper import MappingContext, map_records
from provisioner.models import ResourceType
from provisioner.records import RecordLoadError, load_records


def write_workbook(path: Path, sheets: dict[str, list[dict[str, str]]]) -> Path:
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for name, rows in sheets.items():
            pd.DataFrame(rows).to_excel(writer, sheet_name=name, index=False)
    return path


class TestWorkbook:
    """Tests for Excel workbooks."""

    def test_sheet_name_is_type_when_no_type_column(self, tmp_path: Path) -> None:
        path = write_workbook(
            tmp_path / "lab.xlsx",
            {
                "Users": [{"Name": "alice"}, {"Name": "bob"}],
                "Teams": [{"Name": "Sales", "Owner": "alice"}],
            },
        )

        records = load_records(path)

        assert [r["Type"] for r in records] == ["Users", "Users", "Teams"]
        assert [r["_source"] for r in records] == ["Users!2", "Users!3", "Teams!2"]

    def test_type_column_wins_over_sheet_name(self, tmp_path: Path) -> None:
        path = write_workbook(
            tmp_path / "lab.xlsx",
            {"Groups": [{"Type": "Distribution", "Name": "All Staff"}]},
        )

        records = load_records(path)

        assert records[0]["Type"] == "Distribution"

    def test_blank_cells_and_rows(self, tmp_path: Path) -> None:
        path = write_workbook(
            tmp_path / "lab.xlsx",
            {
                "Users": [
                    {"Name": "alice", "Department": None},
                    {"Name": None, "Department": None},
                    {"Name": "carol", "Department": "Sales"},
                ]
            },
        )

        records = load_records(path)

        assert [r["Name"] for r in records] == ["alice", "carol"]
        assert records[0]["Department"] == ""
        # Excel row numbers survive skipped blank rows
        assert records[1]["_source"] == "Users!4"

    def test_na_like_text_is_kept(self, tmp_path: Path) -> None:
        path = write_workbook(
            tmp_path / "lab.xlsx",
            {"Groups": [{"Type": "Security", "Name": "NA", "Description": "N/A"}]},
        )

        records = load_records(path)

        assert records[0]["Name"] == "NA"
        assert records[0]["Description"] == "N/A"

    def test_sheet_names_map_to_group_types(self, tmp_path: Path) -> None:
        path = write_workbook(
            tmp_path / "lab.xlsx",
            {
                "Groups": [{"Name": "Sales"}],
                "SecurityGroups": [{"Name": "Auditors"}],
                "DistributionGroups": [{"Name": "All Staff"}],
                "M365Groups": [{"Name": "Marketing"}],
            },
        )

        result = map_records(load_records(path), MappingContext(domain="contoso.com"))

        assert result.skipped == 0
        assert [(i.type, i.key) for i in result.intents] == [
            (ResourceType.GROUP365, "Sales"),
            (ResourceType.SECURITY, "Auditors"),
            (ResourceType.DISTRIBUTION, "All Staff"),
            (ResourceType.GROUP365, "Marketing"),
        ]

    def test_selected_sheets_only(self, tmp_path: Path) -> None:
        path = write_workbook(
            tmp_path / "lab.xlsx",
            {"Users": [{"Name": "alice"}], "Sites": [{"Name": "HR"}]},
        )

        records = load_records(path, sheets=["Sites"])

        assert [r["Name"] for r in records] == ["HR"]

    def test_unknown_sheet(self, tmp_path: Path) -> None:
        path = write_workbook(tmp_path / "lab.xlsx", {"Users": [{"Name": "alice"}]})

        with pytest.raises(RecordLoadError, match="Failed to read workbook"):
            load_records(path, sheets=["Nope"])


class TestCsv:
    """Tests for CSV input."""

    def test_csv_rows(self, tmp_path: Path) -> None:
        path = tmp_path / "groups.csv"
        path.write_text("Type,Name,Members\nM365,Sales,alice;bob\nSecurity,Auditors,\n")

        records = load_records(path)

        assert records[0] == {
            "Type": "M365",
            "Name": "Sales",
            "Members": "alice;bob",
            "_source": "groups!2",
        }
        assert records[1]["Members"] == ""


class TestManifest:
    """Tests for YAML manifests."""

    def test_flat_manifest(self, tmp_path: Path) -> None:
        path = tmp_path / "lab.yaml"
        path.write_text(
            "resources:\n"
            "  - type: M365\n"
            "    name: Sales\n"
            "    members: [alice, bob]\n"
            "  - type: User\n"
            "    name: carol\n"
        )

        records = load_records(path)

        assert records[0]["members"] == "alice;bob"
        assert records[1]["_source"] == "lab.yaml#2"

    def test_kubernetes_style_manifest(self, tmp_path: Path) -> None:
        path = tmp_path / "lab.yml"
        path.write_text(
            "apiVersion: m365lab/v1\n"
            "kind: LabTenant\n"
            "spec:\n"
            "  resources:\n"
            "    - type: Site\n"
            "      name: HR Portal\n"
        )

        records = load_records(path)

        assert records == [{"type": "Site", "name": "HR Portal", "_source": "lab.yml#1"}]

    def test_missing_resources(self, tmp_path: Path) -> None:
        path = tmp_path / "lab.yaml"
        path.write_text("kind: nothing\n")

        with pytest.raises(RecordLoadError, match="'resources' list"):
            load_records(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "lab.yaml"
        path.write_text("resources: [unclosed\n")

        with pytest.raises(RecordLoadError, match="Invalid YAML"):
            load_records(path)

    def test_non_mapping_entry(self, tmp_path: Path) -> None:
        path = tmp_path / "lab.yaml"
        path.write_text("resources:\n  - just a string\n")

        with pytest.raises(RecordLoadError, match="must be a mapping"):
            load_records(path)


class TestLoadRecords:
    """Tests for format dispatch and guards."""

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(RecordLoadError, match="not found"):
            load_records(tmp_path / "missing.xlsx")

    def test_unsupported_format(self, tmp_path: Path) -> None:
        path = tmp_path / "lab.json"
        path.write_text("{}")

        with pytest.raises(RecordLoadError, match="Unsupported input format"):
            load_records(path)

    def test_file_too_large(self, tmp_path: Path) -> None:
        path = tmp_path / "lab.yaml"
        path.write_text("resources: []\n" + "#" * 200)

        with patch("provisioner.records.MAX_INPUT_FILE_SIZE_BYTES", 100):
            with pytest.raises(RecordLoadError, match="exceeds maximum size"):
                load_records(path)
