"""Row decoder for the Element Types sheet.

Sheet layout:
    row 1   main headers (merged across the columns of a group)
    row 2   sub headers, one per column
    row 3   sample row, ignored
    row 4+  data

Columns 0-9 hold the element type itself; the remaining columns are split
into drawing, hierarchy, stage and BOM sections by ``SectionRanges``.
Records are produced lazily, one per data row.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterator, Sequence

from precast_import.importing.lookups import ProjectCatalog
from precast_import.importing.types import (
    BomLine,
    DecodeIssue,
    DrawingSpec,
    ElementTypeRecord,
    HierarchyEntry,
    Section,
    SectionRanges,
    ValidationError,
)

logger = logging.getLogger(__name__)

HEADER_ROWS = 3
MIN_COLUMNS = 7
STAGE_TRUE_VALUES = frozenset({"yes", "1", "true", "y"})
VERSION_HEADERS = frozenset({"element type version", "version"})

# Base column positions
COL_ELEMENT_TYPE = 0
COL_NAME = 1
GEOMETRY_COLUMNS = {
    "height": 2,
    "length": 3,
    "thickness": 4,
    "mass": 5,
    "volume": 6,
    "area": 7,
    "width": 8,
}
COL_VERSION = 9

DRAWING_ID_MIN = 100_000_000
DRAWING_ID_MAX = 999_999_999


class RowParseError(ValueError):
    """A data row cannot be turned into an element type."""

    def __init__(self, message: str, column: int | None = None):
        self.column = column
        super().__init__(message)


def _cell(row: Sequence[str], column: int) -> str:
    if 0 <= column < len(row):
        return (row[column] or "").strip()
    return ""


def _parse_float(value: str, column: int, label: str) -> float:
    if value == "":
        return 0.0
    try:
        return float(value)
    except ValueError:
        raise RowParseError(f"{label} must be numeric, got {value!r}", column) from None


def _parse_quantity(value: str) -> int | None:
    """Integer quantity of a hierarchy cell, None when blank or not a whole number."""
    if value == "":
        return None
    try:
        return int(value)
    except ValueError:
        pass
    try:
        number = float(value)
    except ValueError:
        return None
    return int(number) if number.is_integer() else None


def _parse_bom_quantity(value: str) -> float | None:
    if value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


class RowDecoder:
    """Decode Element Types rows into ``ElementTypeRecord`` values.

    Unresolvable stage, drawing-type, hierarchy or BOM names either skip the
    whole row (``skip_unresolved_rows=True``) or just drop that entry with a
    warning.
    """

    def __init__(
        self,
        rows: Sequence[Sequence[str]],
        ranges: SectionRanges,
        catalog: ProjectCatalog,
        project_id: int,
        user_name: str = "",
        skip_unresolved_rows: bool = True,
        rng: random.Random | None = None,
    ):
        if len(rows) < HEADER_ROWS + 1:
            raise ValidationError(
                "Excel file must have at least 3 header rows (main header, "
                "sub header, sample data) and one data row"
            )

        self.main_headers = [(h or "").strip() for h in rows[0]]
        self.sub_headers = [(h or "").strip() for h in rows[1]]
        if len(self.main_headers) < MIN_COLUMNS or len(self.sub_headers) < MIN_COLUMNS:
            raise ValidationError(
                f"Excel file must have at least {MIN_COLUMNS} columns "
                "(Element Type, Element Type Name, Height, Length, Thickness, Mass, Volume)"
            )

        self.rows = rows
        self.ranges = ranges
        self.catalog = catalog
        self.project_id = project_id
        self.user_name = user_name
        self.skip_unresolved_rows = skip_unresolved_rows
        self.issues: list[DecodeIssue] = []
        self._rng = rng or random.Random()
        self._drawing_ids: set[int] = set()
        self._version_column = self._locate_version_column()

    # ------------------------------------------------------------------
    # Headers
    # ------------------------------------------------------------------

    def main_header(self, column: int, section: Section) -> str:
        """Nearest non-empty main header at or before ``column`` within its section."""
        floor = self.ranges.for_section(section).start
        for k in range(column, floor - 1, -1):
            if k < len(self.main_headers) and self.main_headers[k]:
                return self.main_headers[k]
        return ""

    def sub_header(self, column: int) -> str:
        return self.sub_headers[column] if column < len(self.sub_headers) else ""

    def combined_header(self, column: int, section: Section) -> str:
        main = self.main_header(column, section)
        sub = self.sub_header(column)
        if main and sub:
            return f"{main}_{sub}"
        return sub or main or f"Column_{column + 1}"

    def _locate_version_column(self) -> int:
        if not self.ranges.legacy:
            return COL_VERSION
        for column in range(len(self.sub_headers)):
            header = self.combined_header(column, Section.BASE).strip().lower()
            if header in VERSION_HEADERS or self.sub_header(column).lower() in VERSION_HEADERS:
                return column
        return COL_VERSION

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    @property
    def data_rows(self) -> Sequence[Sequence[str]]:
        return self.rows[HEADER_ROWS:]

    def count_data_rows(self) -> int:
        """Number of non-blank data rows."""
        return sum(1 for row in self.data_rows if any((cell or "").strip() for cell in row))

    def __iter__(self) -> Iterator[ElementTypeRecord]:
        for offset, row in enumerate(self.data_rows):
            row_number = HEADER_ROWS + offset + 1
            if not any((cell or "").strip() for cell in row):
                continue
            try:
                yield self.decode_row(row_number, row)
            except RowParseError as e:
                issue = DecodeIssue(row_number, str(e), column=e.column, skipped_row=True)
                self.issues.append(issue)
                logger.warning(f"Skipping {issue}")

    @property
    def errors(self) -> list[DecodeIssue]:
        return [issue for issue in self.issues if issue.skipped_row]

    @property
    def warnings(self) -> list[DecodeIssue]:
        return [issue for issue in self.issues if not issue.skipped_row]

    def decode_row(self, row_number: int, row: Sequence[str]) -> ElementTypeRecord:
        """Decode one data row.

        Raises:
            RowParseError: If the row must be skipped
        """
        element_type = _cell(row, COL_ELEMENT_TYPE)
        if not element_type:
            raise RowParseError("Element type is empty", COL_ELEMENT_TYPE)

        geometry = {
            name: _parse_float(_cell(row, column), column, name.capitalize())
            for name, column in GEOMETRY_COLUMNS.items()
        }

        record = ElementTypeRecord(
            row_number=row_number,
            element_type=element_type,
            element_type_name=_cell(row, COL_NAME),
            project_id=self.project_id,
            created_by=self.user_name,
            version=_cell(row, self._version_column),
            **geometry,
        )

        unresolved: list[DecodeIssue] = []
        record.stage_path = self._decode_stages(row_number, row, unresolved)
        record.drawings = self._decode_drawings(row_number, row, unresolved)
        record.hierarchy = self._decode_hierarchy(row_number, row, unresolved)
        record.bom = self._decode_bom(row_number, row, unresolved)

        if unresolved and self.skip_unresolved_rows:
            first = unresolved[0]
            raise RowParseError(first.message, first.column)
        for issue in unresolved:
            self.issues.append(issue)
            logger.warning(f"Ignoring {issue}")

        return record

    def _decode_stages(self, row_number, row, unresolved) -> list[int]:
        stage_ids = []
        for column in self.ranges.stages.columns():
            if _cell(row, column).lower() not in STAGE_TRUE_VALUES:
                continue

            # Summary layouts name stages by sub header, legacy ones by combined header
            combined = self.combined_header(column, Section.STAGES)
            sub = self.sub_header(column)
            candidates = (combined, sub) if self.ranges.legacy else (sub, combined)

            stage_id = None
            for name in candidates:
                if name:
                    stage_id = self.catalog.stage_id(name)
                    if stage_id is not None:
                        break
            if stage_id is None:
                unresolved.append(
                    DecodeIssue(row_number, f"Unknown stage {candidates[0]!r}", column)
                )
                continue
            stage_ids.append(stage_id)
        return stage_ids

    def _decode_drawings(self, row_number, row, unresolved) -> list[DrawingSpec]:
        drawings = []
        for column in self.ranges.drawing_types.columns():
            file = _cell(row, column)
            if not file:
                continue

            name = self.combined_header(column, Section.DRAWING_TYPES)
            drawing_type_id = self.catalog.drawing_type_id(name)
            if drawing_type_id is None:
                unresolved.append(
                    DecodeIssue(row_number, f"Unknown drawing type {name!r}", column)
                )
                continue

            drawings.append(
                DrawingSpec(
                    drawing_id=self._new_drawing_id(),
                    drawing_type_id=drawing_type_id,
                    drawing_type_name=name,
                    file=file,
                )
            )
        return drawings

    def _decode_hierarchy(self, row_number, row, unresolved) -> list[HierarchyEntry]:
        entries = []
        for column in self.ranges.hierarchy.columns():
            quantity = _parse_quantity(_cell(row, column))
            if quantity is None or quantity <= 0:
                continue

            main = self.main_header(column, Section.HIERARCHY)
            sub = self.sub_header(column)
            if not main and not sub:
                continue

            node = self.catalog.hierarchy.resolve(main, sub)
            if node is None:
                unresolved.append(
                    DecodeIssue(
                        row_number,
                        f"Could not find hierarchy for {main!r} / {sub!r} in precast",
                        column,
                    )
                )
                continue

            entries.append(
                HierarchyEntry(
                    hierarchy_id=node.id,
                    quantity=quantity,
                    naming_convention=node.naming_convention,
                    path=node.path,
                    parent_id=node.parent_id,
                )
            )
        return entries

    def _decode_bom(self, row_number, row, unresolved) -> list[BomLine]:
        lines = []
        for column in self.ranges.bom.columns():
            quantity = _parse_bom_quantity(_cell(row, column))
            if not quantity:
                continue

            name = self.combined_header(column, Section.BOM)
            product_id = self.catalog.bom_product_id(name)
            if product_id is None:
                unresolved.append(
                    DecodeIssue(row_number, f"Unknown BOM product {name!r}", column)
                )
                continue

            lines.append(BomLine(product_id=product_id, product_name=name, quantity=quantity))
        return lines

    def _new_drawing_id(self) -> int:
        while True:
            drawing_id = self._rng.randint(DRAWING_ID_MIN, DRAWING_ID_MAX)
            if drawing_id not in self._drawing_ids:
                self._drawing_ids.add(drawing_id)
                return drawing_id
