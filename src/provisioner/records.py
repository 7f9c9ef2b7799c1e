"""Desired-state input loading.

Reads rows from an Excel workbook, a CSV file or a YAML manifest and
returns them as plain dictionaries of column name -> cell text. The mapper
does all interpretation; loaders only normalize cells to strings.

SECURITY: File size is checked before reading. Input validation of the
cell contents happens in the mapper.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pandas as pd
import yaml

from .config import MAX_INPUT_FILE_SIZE_BYTES
from .mapper import SOURCE_FIELD

logger = logging.getLogger(__name__)

# One spreadsheet row: column name -> cell text
RawRecord = dict[str, str]

EXCEL_SUFFIXES = frozenset({".xlsx", ".xlsm", ".xls"})
CSV_SUFFIXES = frozenset({".csv"})
YAML_SUFFIXES = frozenset({".yaml", ".yml"})

# Header row is row 1 in Excel, data starts at row 2
EXCEL_FIRST_DATA_ROW = 2


class RecordLoadError(Exception):
    """Raised when an input file cannot be read."""

    pass


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    return str(value).strip()


def _frame_to_records(frame: pd.DataFrame, label: str, default_type: str | None) -> list[RawRecord]:
    records: list[RawRecord] = []
    columns = [str(c).strip() for c in frame.columns]
    has_type_column = any(c.replace(" ", "").lower() in ("type", "resourcetype") for c in columns)

    for offset, row in enumerate(frame.itertuples(index=False, name=None)):
        record: RawRecord = {
            column: _cell_text(value)
            for column, value in zip(columns, row, strict=False)
            if not column.lower().startswith("unnamed:")
        }
        if not any(record.values()):
            continue
        if not has_type_column and default_type:
            record["Type"] = default_type
        record[SOURCE_FIELD] = f"{label}!{offset + EXCEL_FIRST_DATA_ROW}"
        records.append(record)
    return records


def _check_size(path: Path) -> None:
    if not path.exists():
        raise RecordLoadError(f"Input file not found: {path}")
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise RecordLoadError(f"Failed to stat input file {path}: {e}") from e
    if file_size > MAX_INPUT_FILE_SIZE_BYTES:
        raise RecordLoadError(
            f"Input file exceeds maximum size of {MAX_INPUT_FILE_SIZE_BYTES} bytes: {path}"
        )


def load_workbook_records(path: Path, sheets: Sequence[str] | None = None) -> list[RawRecord]:
    """Load rows from an Excel workbook.

    Every sheet (or only the named ones) is read with string dtype. When a
    sheet has no Type column, the sheet name is used as the type tag, so a
    workbook laid out as Users / Groups / SecurityGroups / Teams / Sites
    sheets needs no extra column. A bare "Groups" sheet holds Microsoft 365
    groups.

    Args:
        path: Workbook path.
        sheets: Sheet names to read; all sheets when None.

    Returns:
        Rows in sheet order, then row order.

    Raises:
        RecordLoadError: If the workbook or a named sheet cannot be read.
    """
    _check_size(path)
    try:
        frames: dict[str, pd.DataFrame] = pd.read_excel(
            path,
            sheet_name=list(sheets) if sheets else None,
            dtype=str,
            keep_default_na=False,
            engine="openpyxl" if path.suffix.lower() != ".xls" else None,
        )
    except (ValueError, OSError, KeyError) as e:
        raise RecordLoadError(f"Failed to read workbook {path}: {e}") from e

    records: list[RawRecord] = []
    for sheet_name, frame in frames.items():
        sheet_records = _frame_to_records(frame, str(sheet_name), default_type=str(sheet_name))
        logger.debug(
            "Read sheet",
            extra={"sheet": sheet_name, "rows": len(sheet_records), "file": str(path)},
        )
        records.extend(sheet_records)
    return records


def load_csv_records(path: Path) -> list[RawRecord]:
    """Load rows from a CSV file with a header row."""
    _check_size(path)
    try:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
    except (ValueError, OSError, pd.errors.ParserError) as e:
        raise RecordLoadError(f"Failed to read CSV {path}: {e}") from e
    return _frame_to_records(frame, path.stem, default_type=None)


def load_manifest_records(path: Path) -> list[RawRecord]:
    """Load rows from a YAML manifest.

    Accepts a flat document with a ``resources`` list, or a Kubernetes-style
    wrapper with apiVersion / kind / spec.resources.
    """
    _check_size(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise RecordLoadError(f"Failed to read manifest {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise RecordLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise RecordLoadError(f"Manifest must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise RecordLoadError(f"Spec section must be a mapping: {path}")
    else:
        spec_data = raw_data

    resources = spec_data.get("resources")
    if not isinstance(resources, list):
        raise RecordLoadError(f"Manifest must contain a 'resources' list: {path}")

    records: list[RawRecord] = []
    for index, entry in enumerate(resources, start=1):
        if not isinstance(entry, dict):
            raise RecordLoadError(f"Resource #{index} in {path} must be a mapping")
        record: RawRecord = {}
        for column, value in entry.items():
            if isinstance(value, list):
                record[str(column)] = ";".join(_cell_text(v) for v in value)
            else:
                record[str(column)] = _cell_text(value)
        record[SOURCE_FIELD] = f"{path.name}#{index}"
        records.append(record)
    return records


def load_records(path: Path, *, sheets: Sequence[str] | None = None) -> list[RawRecord]:
    """Load desired-state rows from a workbook, CSV file or YAML manifest.

    Args:
        path: Input file; the format is chosen by suffix.
        sheets: Workbook sheets to read (ignored for other formats).

    Returns:
        Raw records, each carrying a "_source" row reference.

    Raises:
        RecordLoadError: If the file is missing, too large, unsupported or
            unreadable.
    """
    suffix = path.suffix.lower()
    if suffix in EXCEL_SUFFIXES:
        records = load_workbook_records(path, sheets)
    elif suffix in CSV_SUFFIXES:
        records = load_csv_records(path)
    elif suffix in YAML_SUFFIXES:
        records = load_manifest_records(path)
    else:
        supported = sorted(EXCEL_SUFFIXES | CSV_SUFFIXES | YAML_SUFFIXES)
        raise RecordLoadError(f"Unsupported input format '{suffix}'. Supported: {supported}")

    logger.info("Loaded %d records from %s", len(records), path)
    return records
