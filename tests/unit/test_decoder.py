"""Unit tests for the Element Types row decoder."""

from __future__ import annotations

import random

import pytest

from precast_import.importing.decoder import DRAWING_ID_MAX, DRAWING_ID_MIN, RowDecoder
from precast_import.importing.hierarchy import AliasTable, HierarchyResolver, PrecastNode
from precast_import.importing.lookups import NameIndex, ProjectCatalog
from precast_import.importing.types import RangeInfo, Section, SectionRanges, ValidationError
from tests.workbooks import LEGACY_MAIN, LEGACY_SUB, element_row, legacy_row, sheet_rows

RANGES = SectionRanges(
    base=RangeInfo(0, 9, 10),
    drawing_types=RangeInfo(10, 11, 2),
    hierarchy=RangeInfo(12, 13, 2),
    stages=RangeInfo(14, 15, 2),
    bom=RangeInfo(16, 17, 2),
)


def make_catalog(nodes=None) -> ProjectCatalog:
    nodes = nodes or [
        PrecastNode(id=1, path="tower_g6", naming_convention="T6"),
        PrecastNode(id=2, path="tower_g6.floor_1", naming_convention="T6-F1", parent_id=1),
        PrecastNode(id=3, path="tower_g6.floor_2", naming_convention="T6-F2", parent_id=1),
    ]
    return ProjectCatalog(
        project_id=7,
        stages=NameIndex([("Casting", 11), ("Curing", 12)]),
        drawing_types=NameIndex([("Drawings_GA", 21), ("Drawings_Shop", 22)]),
        bom_products=NameIndex([("BOM_Steel", 31), ("BOM_Cement", 32)]),
        hierarchy=HierarchyResolver(nodes, AliasTable()),
    )


def decoder_for(rows, **kwargs) -> RowDecoder:
    kwargs.setdefault("rng", random.Random(42))
    return RowDecoder(rows, RANGES, make_catalog(), project_id=7, user_name="alice", **kwargs)


class TestRowDecoder:
    """Decoding of the Summary layout."""

    def test_decodes_full_row(self):
        records = list(decoder_for(sheet_rows(element_row())))

        assert len(records) == 1
        record = records[0]
        assert record.row_number == 4
        assert record.element_type == "W1"
        assert record.element_type_name == "Wall Panel"
        assert record.created_by == "alice"
        assert record.height == 3.0
        assert record.mass == 2400.0
        assert record.density == pytest.approx(2400 / 3.6)
        assert record.version == "v1"

        assert [d.drawing_type_id for d in record.drawings] == [21, 22]
        assert [d.file for d in record.drawings] == ["ga.pdf", "shop.pdf"]
        assert all(DRAWING_ID_MIN <= d.drawing_id <= DRAWING_ID_MAX for d in record.drawings)

        assert [(h.hierarchy_id, h.quantity) for h in record.hierarchy] == [(2, 3), (3, 2)]
        assert record.total_elements == 5
        assert record.stage_path == [11]
        assert [(b.product_id, b.quantity) for b in record.bom] == [(31, 12.5)]

    def test_main_header_looks_back_within_section(self):
        decoder = decoder_for(sheet_rows(element_row()))

        assert decoder.main_header(13, Section.HIERARCHY) == "Tower_G6"
        assert decoder.combined_header(11, Section.DRAWING_TYPES) == "Drawings_Shop"

    def test_main_header_does_not_cross_sections(self):
        main = ["Drawings", "", "", "", "Stages", "", "BOM", ""]
        decoder = decoder_for(sheet_rows(element_row(), main=main))

        # Column 12 starts the hierarchy section, which has no main header
        assert decoder.main_header(12, Section.HIERARCHY) == ""

    def test_blank_rows_are_ignored(self):
        decoder = decoder_for(sheet_rows(element_row(), [""] * 18, element_row("W2")))

        assert decoder.count_data_rows() == 2
        assert [r.element_type for r in decoder] == ["W1", "W2"]

    def test_empty_element_type_skips_row(self):
        row = element_row(element_type="")
        decoder = decoder_for(sheet_rows(row, element_row("W2")))

        records = list(decoder)

        assert [r.element_type for r in records] == ["W2"]
        assert len(decoder.errors) == 1
        assert decoder.errors[0].row_number == 4

    def test_non_numeric_geometry_skips_row(self):
        row = element_row()
        row[2] = "tall"
        decoder = decoder_for(sheet_rows(row))

        assert list(decoder) == []
        assert "Height must be numeric" in decoder.errors[0].message

    def test_unresolved_hierarchy_skips_row_by_default(self):
        main = ["Drawings", "", "Tower_Z", "", "Stages", "", "BOM", ""]
        decoder = decoder_for(sheet_rows(element_row(), main=main))

        assert list(decoder) == []
        assert "Could not find hierarchy" in decoder.errors[0].message

    def test_unresolved_entry_dropped_when_configured(self):
        sub = ["GA", "Unknown", "Floor_1", "Floor_2", "Casting", "Curing", "Steel", "Cement"]
        decoder = decoder_for(sheet_rows(element_row(), sub=sub), skip_unresolved_rows=False)

        records = list(decoder)

        assert len(records) == 1
        assert [d.drawing_type_id for d in records[0].drawings] == [21]
        assert decoder.errors == []
        assert len(decoder.warnings) == 1

    def test_stage_flags(self):
        decoder = decoder_for(sheet_rows(element_row(stages=("Y", "TRUE"))))

        assert next(iter(decoder)).stage_path == [11, 12]

    def test_non_integer_quantity_ignored(self):
        decoder = decoder_for(sheet_rows(element_row(quantities=("2.5", "4.0"))))

        record = next(iter(decoder))

        assert [(h.hierarchy_id, h.quantity) for h in record.hierarchy] == [(3, 4)]

    def test_drawing_ids_unique_across_rows(self):
        rows = [element_row(f"W{i}") for i in range(50)]
        decoder = decoder_for(sheet_rows(*rows))

        ids = [d.drawing_id for record in decoder for d in record.drawings]

        assert len(ids) == 100
        assert len(set(ids)) == 100

    def test_zero_width_sections_give_bare_records(self):
        empty = RangeInfo()
        ranges = SectionRanges(
            base=RangeInfo(0, 9, 10), drawing_types=empty, hierarchy=empty, stages=empty, bom=empty
        )
        decoder = RowDecoder(sheet_rows(element_row()), ranges, make_catalog(), project_id=7)

        record = next(iter(decoder))

        assert record.drawings == []
        assert record.hierarchy == []
        assert record.stage_path == []
        assert record.bom == []

    def test_requires_data_row(self):
        with pytest.raises(ValidationError, match="header rows"):
            decoder_for(sheet_rows())

    def test_requires_minimum_columns(self):
        rows = [["A", "B", "C"], ["", "", ""], ["", "", ""], ["W1", "x", "1"]]

        with pytest.raises(ValidationError, match="at least 7 columns"):
            decoder_for(rows)


class TestLegacyLayout:
    """Decoding without a Summary sheet."""

    def test_stage_lookup_and_version_column(self):
        ranges = SectionRanges(
            base=RangeInfo(0, 9, 10),
            stages=RangeInfo(10, 11, 2),
            drawing_types=RangeInfo(12, 13, 2),
            hierarchy=RangeInfo(14, 16, 3),
            bom=RangeInfo(17, 18, 2),
            legacy=True,
        )
        row = legacy_row()
        row[9] = "v7"

        decoder = RowDecoder(
            sheet_rows(row, main=LEGACY_MAIN, sub=LEGACY_SUB), ranges, make_catalog(), project_id=7
        )
        record = next(iter(decoder))

        assert record.version == "v7"
        assert record.stage_path == [11]
        assert [d.drawing_type_id for d in record.drawings] == [21, 22]
        assert [(h.hierarchy_id, h.quantity) for h in record.hierarchy] == [(2, 3), (3, 2)]
        assert [b.product_id for b in record.bom] == [31]
