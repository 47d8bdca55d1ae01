"""Pytest configuration and fixtures for precast import tests.

Provides a temp-file SQLite database, a seeded reference project and an
openpyxl workbook builder laid out like the real Element Types template.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from precast_import.config import ImportConfig, reset_config
from precast_import.db.models import (
    Base,
    DrawingTypeModel,
    InvBomModel,
    PrecastModel,
    ProjectStageModel,
)
from precast_import.jobs.manager import JobManager
from tests.workbooks import SUMMARY_ROWS, write_workbook

PROJECT_ID = 7


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch, tmp_path):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'env.db'}")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("IMPORTS_DIR", str(tmp_path / "imports"))
    reset_config()
    yield
    reset_config()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest_asyncio.fixture()
async def session_factory(db_url: str):
    """Session factory over a fresh temp-file database."""
    engine = create_async_engine(db_url, poolclass=NullPool, connect_args={"timeout": 30})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def import_config() -> ImportConfig:
    """Import settings with fast cadences for tests."""
    return ImportConfig(
        progress_interval=60.0,
        monitor_interval=0.01,
        force_cancel_grace=0.01,
        rollback_wait_timeout=10.0,
        shutdown_timeout=10.0,
    )


@pytest_asyncio.fixture()
async def manager(session_factory, import_config) -> JobManager:
    manager = JobManager(session_factory, config=import_config)
    yield manager
    manager.registry.begin_shutdown()
    await manager.graceful_shutdown(timeout=10)


async def seed_reference_data(factory, project_id: int = PROJECT_ID, precast=None) -> dict:
    """Insert stages, drawing types, BOM products and precast nodes."""
    precast = precast or [
        PrecastModel(id=1, project_id=project_id, name="Tower G6", path="tower_g6",
                     naming_convention="T6", parent_id=None),
        PrecastModel(id=2, project_id=project_id, name="Floor 1", path="tower_g6.floor_1",
                     naming_convention="T6-F1", parent_id=1),
        PrecastModel(id=3, project_id=project_id, name="Floor 2", path="tower_g6.floor_2",
                     naming_convention="T6-F2", parent_id=1),
    ]
    async with factory() as session:
        session.add_all(
            [
                ProjectStageModel(id=11, name="Casting", project_id=project_id, order=1),
                ProjectStageModel(id=12, name="Curing", project_id=project_id, order=2),
                DrawingTypeModel(
                    drawing_type_id=21, drawing_type_name="Drawings_GA", project_id=project_id
                ),
                DrawingTypeModel(
                    drawing_type_id=22, drawing_type_name="Drawings_Shop", project_id=project_id
                ),
                InvBomModel(id=31, name_id="BOM_Steel", project_id=project_id, unit="kg"),
                InvBomModel(id=32, name_id="BOM_Cement", project_id=project_id, unit="kg"),
                *precast,
            ]
        )
        await session.commit()
    return {"stages": [11, 12], "drawing_types": [21, 22], "bom": [31, 32], "precast": [1, 2, 3]}


@pytest_asyncio.fixture()
async def seeded(session_factory) -> dict:
    return await seed_reference_data(session_factory)


@pytest.fixture
def workbook_factory(tmp_path) -> Callable[..., Path]:
    """Build workbooks in the test's temp directory.

    Usage:
        path = workbook_factory([element_row()], summary_rows=SUMMARY_ROWS)
    """
    counter = {"n": 0}

    def _build(element_rows, name: str | None = None, **kwargs) -> Path:
        counter["n"] += 1
        filename = name or f"import_{counter['n']}.xlsx"
        kwargs.setdefault("summary_rows", SUMMARY_ROWS)
        return write_workbook(tmp_path / filename, element_rows, **kwargs)

    return _build


@pytest.fixture
def seed_project(session_factory):
    """Seed reference data with custom precast nodes.

    Usage:
        await seed_project(precast=[PrecastModel(...)])
    """

    async def _seed(**kwargs):
        return await seed_reference_data(session_factory, **kwargs)

    return _seed
