from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import yaml
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet

DEFAULT_MAPPING_PATH = Path(__file__).resolve().parents[1] / "config" / "export_columns.yaml"


def export_filename(base: str, now: datetime, extension: str = "csv") -> str:
    return f"{base}_{now.strftime('%Y-%m-%d_%H%M%S')}.{extension}"


def rows_to_csv(rows: Sequence[Mapping[str, Any]], exclude: Iterable[str] = ()) -> str:
    """Serialize records to CSV; the header is the union of keys in first-seen order."""
    excluded = set(exclude)
    headers: list[str] = []
    for row in rows:
        for key in row:
            if key not in excluded and key not in headers:
                headers.append(key)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if row.get(header) is None else row.get(header) for header in headers])
    return buffer.getvalue()


@dataclass
class ClaimExportService:
    """Export claims to CSV or to an xlsx workbook laid out by a YAML column mapping."""

    mapping_path: Path = DEFAULT_MAPPING_PATH

    def __post_init__(self) -> None:
        self.mapping = self._load_mapping(self.mapping_path)

    @staticmethod
    def _load_mapping(mapping_path: Path) -> dict[str, Any]:
        with Path(mapping_path).open("r", encoding="utf-8") as mapping_file:
            loaded = yaml.safe_load(mapping_file)

        if not isinstance(loaded, dict):
            msg = f"Mapping file must contain a dictionary at root: {mapping_path}"
            raise ValueError(msg)

        return loaded

    @property
    def sheet_name(self) -> str:
        return self.mapping["workbook"]["sheet_name"]

    def generate_csv(self, claims: Sequence[Mapping[str, Any]]) -> str:
        exclude = self.mapping.get("csv", {}).get("exclude", [])
        return rows_to_csv(claims, exclude=exclude)

    def generate_workbook(self, claims: Sequence[Mapping[str, Any]], output_path: Path | str) -> Path:
        workbook = Workbook()
        worksheet = workbook.active
        worksheet.title = self.sheet_name

        self._write_headers(worksheet)
        self._write_rows(worksheet, claims)

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(output_path)

        return output_path

    def _write_headers(self, sheet: Worksheet) -> None:
        header_row = int(self.mapping["workbook"]["header_row"])
        for column, spec in self.mapping["columns"].items():
            cell = sheet[f"{column}{header_row}"]
            cell.value = spec.get("header", spec["field"])
            cell.font = Font(bold=True)

    def _write_rows(self, sheet: Worksheet, claims: Sequence[Mapping[str, Any]]) -> None:
        start_row = int(self.mapping["workbook"]["start_row"])
        for offset, claim in enumerate(claims):
            row = start_row + offset
            for column, spec in self.mapping["columns"].items():
                value = claim.get(spec["field"])
                if spec.get("number") and value not in (None, ""):
                    try:
                        value = float(Decimal(str(value)))
                    except InvalidOperation:
                        pass
                sheet[f"{column}{row}"] = value


def read_cells(path: Path | str, cells: list[str], sheet_name: str) -> dict[str, Any]:
    """Read exact cell values from an exported workbook."""
    workbook = load_workbook(path, data_only=False)
    sheet = workbook[sheet_name]
    return {cell: sheet[cell].value for cell in cells}
