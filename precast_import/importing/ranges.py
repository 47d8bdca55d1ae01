"""Column range discovery for the Element Types sheet.

The Summary sheet lists one row per section as ``(label, count, range)``,
for example ``("Total Hierarchy", 2, "M1-N1")``. Ranges use Excel column
notation and are converted to zero-based, inclusive column indices.

When the Summary sheet omits the hierarchy section, its width is taken from
the project's ``precast`` row count and placed right after the drawing
types. When the Summary sheet is missing entirely, every section width is
derived from per-project reference counts (legacy layout).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from precast_import.importing.types import (
    ProjectCounts,
    RangeInfo,
    RangeParseError,
    Section,
    SectionRanges,
)

logger = logging.getLogger(__name__)

SUMMARY_SHEET = "Summary"
BASE_COLUMN_COUNT = 10

SUMMARY_LABELS: dict[str, Section] = {
    "base columns": Section.BASE,
    "total drawing types": Section.DRAWING_TYPES,
    "total hierarchy": Section.HIERARCHY,
    "total stages": Section.STAGES,
    "total bom types": Section.BOM,
}

DEFAULT_BASE_RANGE = RangeInfo(start=0, end=BASE_COLUMN_COUNT - 1, count=BASE_COLUMN_COUNT)


class CountsProvider(Protocol):
    async def project_counts(self) -> ProjectCounts: ...


def parse_column_index(ref: str) -> int:
    """Convert Excel column notation (``A``, ``AB``, ``L1``) to a 0-based index.

    Raises:
        RangeParseError: If the reference is empty or contains non-letters
    """
    letters = ref.strip().rstrip("0123456789").upper()
    if not letters:
        raise RangeParseError(f"Empty column reference: {ref!r}")

    index = 0
    for char in letters:
        if not "A" <= char <= "Z":
            raise RangeParseError(f"Invalid character {char!r} in column {ref!r}")
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def parse_range(text: str) -> tuple[int, int]:
    """Parse ``"L1-R1"`` (optionally prefixed with ``Range:``) into indices."""
    value = text.strip()
    if value.startswith("Range:"):
        value = value[len("Range:"):].strip()

    parts = value.split("-")
    if len(parts) != 2:
        raise RangeParseError(f"Invalid range format: {text!r}")

    start = parse_column_index(parts[0])
    end = parse_column_index(parts[1])
    if end < start:
        raise RangeParseError(f"Range ends before it starts: {text!r}")
    return start, end


def _parse_count(value: str) -> int | None:
    try:
        return int(float(value.strip()))
    except ValueError:
        return None


def parse_summary_rows(rows: Sequence[Sequence[str]]) -> dict[Section, RangeInfo]:
    """Map Summary sheet rows onto section ranges.

    Rows whose count cell is not numeric (headings, notes) are ignored, as
    are unknown labels.

    Raises:
        RangeParseError: If there are fewer than 2 rows, or a known section
            carries a malformed range
    """
    if len(rows) < 2:
        raise RangeParseError(
            "Summary sheet must have at least a header row and one data row"
        )

    parsed: dict[Section, RangeInfo] = {}
    for row in rows:
        if len(row) < 2:
            continue

        label = str(row[0]).strip()
        section = SUMMARY_LABELS.get(label.lower())
        if section is None:
            continue

        count = _parse_count(str(row[1]))
        if count is None:
            continue

        range_text = str(row[2]).strip() if len(row) > 2 else ""
        if range_text.startswith("Range:"):
            range_text = range_text[len("Range:"):].strip()

        if count <= 0 or range_text in ("", "0"):
            if count > 0:
                raise RangeParseError(f"Missing range for {label} (count {count})")
            parsed[section] = RangeInfo(start=0, end=0, count=0)
            continue

        try:
            start, end = parse_range(range_text)
        except RangeParseError as e:
            raise RangeParseError(f"{label}: {e}") from e
        parsed[section] = RangeInfo(start=start, end=end, count=count)

    return parsed


def build_section_ranges(
    parsed: dict[Section, RangeInfo], precast_count: int = 0
) -> SectionRanges:
    """Assemble SectionRanges from a parsed Summary, applying the hierarchy fallback."""
    base = parsed.get(Section.BASE, DEFAULT_BASE_RANGE)
    drawing_types = parsed.get(Section.DRAWING_TYPES, RangeInfo())
    hierarchy = parsed.get(Section.HIERARCHY, RangeInfo())

    if hierarchy.is_empty and precast_count > 0:
        anchor = drawing_types.end if not drawing_types.is_empty else base.end
        hierarchy = RangeInfo(
            start=anchor + 1, end=anchor + precast_count, count=precast_count
        )
        logger.info(
            f"Summary has no hierarchy section; using {precast_count} precast "
            f"locations at columns {hierarchy.start}-{hierarchy.end}"
        )

    return SectionRanges(
        base=base,
        drawing_types=drawing_types,
        hierarchy=hierarchy,
        stages=parsed.get(Section.STAGES, RangeInfo()),
        bom=parsed.get(Section.BOM, RangeInfo()),
    )


def legacy_section_ranges(counts: ProjectCounts) -> SectionRanges:
    """Derive section ranges without a Summary sheet.

    Layout: base columns 0-9, then stages, drawing types, hierarchy and BOM,
    each as wide as the project's row count in the matching reference table.
    """
    cursor = BASE_COLUMN_COUNT

    def take(width: int) -> RangeInfo:
        nonlocal cursor
        if width <= 0:
            return RangeInfo(start=cursor, end=cursor - 1, count=0)
        info = RangeInfo(start=cursor, end=cursor + width - 1, count=width)
        cursor += width
        return info

    stages = take(counts.stages)
    drawing_types = take(counts.drawing_types)
    hierarchy = take(counts.precast)
    bom = take(counts.bom_products)

    return SectionRanges(
        base=DEFAULT_BASE_RANGE,
        drawing_types=drawing_types,
        hierarchy=hierarchy,
        stages=stages,
        bom=bom,
        legacy=True,
    )


async def resolve_ranges(
    summary_rows: Sequence[Sequence[str]] | None, counts: CountsProvider
) -> SectionRanges:
    """Resolve section ranges from a Summary sheet or, when absent, DB counts.

    Args:
        summary_rows: Rows of the Summary sheet, or None if the sheet is absent
        counts: Source of per-project reference counts

    Raises:
        RangeParseError: If a present Summary sheet is malformed
    """
    if summary_rows is None:
        project_counts = await counts.project_counts()
        ranges = legacy_section_ranges(project_counts)
        logger.info(f"No Summary sheet; derived legacy layout from {project_counts}")
        return ranges

    parsed = parse_summary_rows(summary_rows)
    precast_count = 0
    if parsed.get(Section.HIERARCHY, RangeInfo()).is_empty:
        precast_count = (await counts.project_counts()).precast

    ranges = build_section_ranges(parsed, precast_count)
    logger.debug(
        f"Resolved ranges: base={ranges.base} drawings={ranges.drawing_types} "
        f"hierarchy={ranges.hierarchy} stages={ranges.stages} bom={ranges.bom}"
    )
    return ranges
