"""Integration tests for the precast-import CLI."""

from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from typer.testing import CliRunner

from precast_import.cli import app
from precast_import.db.models import (
    DrawingTypeModel,
    InvBomModel,
    PrecastModel,
    ProjectStageModel,
)
from tests.workbooks import SUMMARY_ROWS, element_row, write_workbook

runner = CliRunner()


@pytest.fixture
def initialized(tmp_path):
    """Database at DATABASE_URL with schema and project 7 reference data."""
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0, result.output

    engine = create_engine(f"sqlite:///{tmp_path / 'env.db'}")
    with Session(engine) as session:
        session.add_all(
            [
                ProjectStageModel(id=11, name="Casting", project_id=7),
                ProjectStageModel(id=12, name="Curing", project_id=7),
                DrawingTypeModel(drawing_type_id=21, drawing_type_name="Drawings_GA",
                                 project_id=7),
                DrawingTypeModel(drawing_type_id=22, drawing_type_name="Drawings_Shop",
                                 project_id=7),
                InvBomModel(id=31, name_id="BOM_Steel", project_id=7),
                InvBomModel(id=32, name_id="BOM_Cement", project_id=7),
                PrecastModel(id=1, project_id=7, path="tower_g6", naming_convention="T6"),
                PrecastModel(id=2, project_id=7, path="tower_g6.floor_1",
                             naming_convention="T6-F1", parent_id=1),
                PrecastModel(id=3, project_id=7, path="tower_g6.floor_2",
                             naming_convention="T6-F2", parent_id=1),
            ]
        )
        session.commit()
    engine.dispose()


def test_init_creates_schema(initialized):
    result = runner.invoke(app, ["jobs", "--project", "7"])

    assert result.exit_code == 0
    assert "No import jobs" in result.output


def test_status_of_unknown_job(initialized):
    result = runner.invoke(app, ["status", "999"])

    assert result.exit_code == 1
    assert "Job 999 not found" in result.output


def test_inline_import_then_rollback(initialized, tmp_path):
    path = write_workbook(tmp_path / "cli.xlsx", [element_row()], summary_rows=SUMMARY_ROWS)

    imported = runner.invoke(app, ["import", str(path), "--project", "7", "--user", "bob"])

    assert imported.exit_code == 0, imported.output
    assert "Job 1: completed" in imported.output

    status = runner.invoke(app, ["status", "1"])
    assert "bob" in status.output

    denied = runner.invoke(app, ["rollback", "--project", "7", "1"])
    assert denied.exit_code == 1
    assert "not enabled" in denied.output

    assert runner.invoke(app, ["enable-rollback", "1"]).exit_code == 0
    rolled_back = runner.invoke(app, ["rollback", "--project", "7", "1"])
    assert rolled_back.exit_code == 0, rolled_back.output
    assert "element_type" in rolled_back.output


def test_import_missing_file(initialized, tmp_path):
    result = runner.invoke(app, ["import", str(tmp_path / "none.xlsx"), "--project", "7"])

    assert result.exit_code == 1
    assert "File not found" in result.output
