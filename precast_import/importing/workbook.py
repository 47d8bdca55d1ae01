"""Workbook loading for element-type imports.

Sheets are read with pandas as string matrices: every cell becomes a
stripped string and blank cells become ``""``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from precast_import.importing.ranges import SUMMARY_SHEET
from precast_import.importing.types import ValidationError

logger = logging.getLogger(__name__)

ELEMENT_TYPES_SHEET = "Element Types"


def _cell_to_str(value) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    return str(value).strip()


def frame_to_rows(frame: pd.DataFrame) -> list[list[str]]:
    """Convert a header-less DataFrame to a list of string rows."""
    return [[_cell_to_str(value) for value in row] for row in frame.itertuples(index=False)]


@dataclass
class Workbook:
    """In-memory string view of an import workbook."""

    sheets: dict[str, list[list[str]]]
    path: str = ""

    @classmethod
    def open(cls, file_path: str | Path) -> Workbook:
        """Read every sheet of an ``.xlsx`` file.

        Raises:
            ValidationError: If the file is missing or cannot be parsed
        """
        path = Path(file_path)
        if not path.exists():
            raise ValidationError(f"Import file not found: {path}")

        try:
            frames = pd.read_excel(
                path, sheet_name=None, header=None, dtype=str, engine="openpyxl"
            )
        except Exception as e:
            raise ValidationError(f"Error opening Excel file: {e}") from e

        sheets = {name: frame_to_rows(frame) for name, frame in frames.items()}
        logger.debug(f"Opened workbook {path} with sheets {list(sheets)}")
        return cls(sheets=sheets, path=str(path))

    @property
    def sheet_names(self) -> list[str]:
        return list(self.sheets)

    def sheet(self, name: str) -> list[list[str]] | None:
        return self.sheets.get(name)

    def element_type_rows(self) -> list[list[str]]:
        """Rows of the Element Types sheet.

        Raises:
            ValidationError: If the workbook has no sheets or lacks the sheet
        """
        if not self.sheets:
            raise ValidationError("No sheets found in Excel file")
        rows = self.sheets.get(ELEMENT_TYPES_SHEET)
        if rows is None:
            raise ValidationError(f"Sheet '{ELEMENT_TYPES_SHEET}' not found in Excel file")
        return rows

    def summary_rows(self) -> list[list[str]] | None:
        """Rows of the Summary sheet, or None when the sheet is absent."""
        return self.sheets.get(SUMMARY_SHEET)
