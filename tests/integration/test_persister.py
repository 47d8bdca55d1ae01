"""Integration tests for batch persistence of decoded element types."""

from __future__ import annotations

import random

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from precast_import.db.connection import session_scope
from precast_import.db.models import (
    DrawingModel,
    ElementModel,
    ElementTypeBomModel,
    ElementTypeModel,
    ElementTypePathModel,
    ElementTypeQuantityModel,
    HierarchyQuantityModel,
    PrecastModel,
)
from precast_import.importing.cancellation import CancellationGuard
from precast_import.importing.decoder import RowDecoder
from precast_import.importing.lookups import ProjectCatalog
from precast_import.importing.persister import BatchPersister, generate_element_id
from precast_import.importing.types import (
    ElementTypeRecord,
    HierarchyEntry,
    JobStatus,
    RangeInfo,
    SectionRanges,
)
from precast_import.jobs.registry import JobRegistry
from precast_import.jobs.store import JobStore
from tests.workbooks import SUMMARY_SUB, element_row, sheet_rows

RANGES = SectionRanges(
    base=RangeInfo(0, 9, 10),
    drawing_types=RangeInfo(10, 11, 2),
    hierarchy=RangeInfo(12, 13, 2),
    stages=RangeInfo(14, 15, 2),
    bom=RangeInfo(16, 17, 2),
)

def alias_precast() -> list[PrecastModel]:
    return [
        PrecastModel(id=1, project_id=7, name="Tower G6", path="tawor_g6",
                     naming_convention="TW6", parent_id=None),
        PrecastModel(id=2, project_id=7, name="Floor 1", path="tawor_g6.floor_1",
                     naming_convention="TW6-F1", parent_id=1),
        PrecastModel(id=3, project_id=7, name="Floor 2", path="tawor_g6.floor_2",
                     naming_convention="TW6-F2", parent_id=1),
    ]


async def count(factory, model) -> int:
    async with session_scope(factory) as session:
        return await session.scalar(select(func.count()).select_from(model))


@pytest_asyncio.fixture()
async def job_context(session_factory):
    registry = JobRegistry()
    store = JobStore(session_factory, registry)
    job = await store.create_job(7, None)
    token = registry.new_token()
    registry.register(job.id, token)
    guard = CancellationGuard(
        job.id, token, registry, status_reader=lambda: store.fetch_status(job.id)
    )
    persister = BatchPersister(session_factory, job.id, guard)
    return persister, registry, store, job.id


async def decode(session_factory, rows) -> list[ElementTypeRecord]:
    async with session_scope(session_factory) as session:
        catalog = await ProjectCatalog.load(session, 7)
    decoder = RowDecoder(
        rows, RANGES, catalog, project_id=7, user_name="alice", rng=random.Random(1)
    )
    return list(decoder)


def test_generate_element_id():
    assert generate_element_id("w1", "T6-F1", 7) == "W1/T6-F1/0007"


class TestBatchPersister:
    """Writes of one batch inside a single transaction."""

    @pytest.mark.asyncio
    async def test_alias_hierarchy_rows(self, session_factory, seed_project, job_context):
        await seed_project(precast=alias_precast())
        persister, _, _, job_id = job_context
        main = ["Drawings", "", "TOWER G6", "", "Stages", "", "BOM", ""]
        sub = list(SUMMARY_SUB)
        sub[2:4] = ["Floor-1", "Floor-2"]
        records = await decode(session_factory, sheet_rows(element_row(), main=main, sub=sub))

        result = await persister.persist_batch(0, records)

        assert result.committed
        assert result.persisted == 1
        assert result.elements_created == 5

        async with session_scope(session_factory) as session:
            element_type = await session.scalar(select(ElementTypeModel))
            assert element_type.job_id == job_id
            assert element_type.total_count_element == 5
            assert element_type.created_by == "alice"

            hierarchy = (
                await session.execute(
                    select(HierarchyQuantityModel).order_by(HierarchyQuantityModel.hierarchy_id)
                )
            ).scalars().all()
            assert [(h.hierarchy_id, h.quantity, h.naming_convention) for h in hierarchy] == [
                (2, 3, "TW6-F1"),
                (3, 2, "TW6-F2"),
            ]

            quantities = (
                await session.execute(
                    select(ElementTypeQuantityModel).order_by(ElementTypeQuantityModel.floor)
                )
            ).scalars().all()
            assert [(q.tower, q.floor, q.total_quantity, q.left_quantity) for q in quantities] == [
                (1, 2, 3, 3),
                (1, 3, 2, 2),
            ]

            element_ids = (
                await session.execute(select(ElementModel.element_id).order_by(ElementModel.id))
            ).scalars().all()
            assert element_ids == [
                "W1/TW6-F1/0001",
                "W1/TW6-F1/0002",
                "W1/TW6-F1/0003",
                "W1/TW6-F2/0004",
                "W1/TW6-F2/0005",
            ]

            path = await session.scalar(select(ElementTypePathModel))
            assert path.stage_path == [11]

        assert await count(session_factory, DrawingModel) == 2
        assert await count(session_factory, ElementTypeBomModel) == 1

    @pytest.mark.asyncio
    async def test_top_level_node_has_no_tower_floor_row(
        self, session_factory, seed_project, job_context
    ):
        await seed_project()
        persister, _, _, _ = job_context
        record = ElementTypeRecord(
            row_number=4,
            element_type="C1",
            element_type_name="Column",
            project_id=7,
            hierarchy=[HierarchyEntry(hierarchy_id=1, quantity=2, naming_convention="T6",
                                      path="tower_g6")],
        )

        result = await persister.persist_batch(0, [record])

        assert result.committed
        assert await count(session_factory, HierarchyQuantityModel) == 1
        assert await count(session_factory, ElementTypeQuantityModel) == 0
        assert await count(session_factory, ElementModel) == 2
        assert await count(session_factory, ElementTypePathModel) == 0

    @pytest.mark.asyncio
    async def test_missing_hierarchy_rolls_back_batch(
        self, session_factory, seed_project, job_context
    ):
        await seed_project()
        persister, _, _, _ = job_context
        good = ElementTypeRecord(row_number=4, element_type="A1", element_type_name="A",
                                 project_id=7)
        bad = ElementTypeRecord(
            row_number=5,
            element_type="B1",
            element_type_name="B",
            project_id=7,
            hierarchy=[HierarchyEntry(hierarchy_id=99, quantity=1, naming_convention="X",
                                      path="x")],
        )

        result = await persister.persist_batch(3, [good, bad])

        assert not result.committed
        assert result.persisted == 0
        assert result.errors and "Row 5" in result.errors[0]
        assert await count(session_factory, ElementTypeModel) == 0

    @pytest.mark.asyncio
    async def test_cancelled_token_writes_nothing(
        self, session_factory, seed_project, job_context
    ):
        await seed_project()
        persister, registry, _, job_id = job_context
        records = await decode(session_factory, sheet_rows(element_row()))
        registry.cancel(job_id)

        result = await persister.persist_batch(0, records)

        assert result.cancelled is not None
        assert result.cancelled.reason == "token"
        assert await count(session_factory, ElementTypeModel) == 0

    @pytest.mark.asyncio
    async def test_persisted_cancellation_is_observed(
        self, session_factory, seed_project, job_context
    ):
        await seed_project()
        persister, _, store, job_id = job_context
        records = await decode(session_factory, sheet_rows(element_row()))
        await store.force_update(job_id, JobStatus.CANCELLED, progress=0)

        result = await persister.persist_batch(0, records)

        assert result.cancelled.reason == "status"
        assert persister.guard.token.cancelled
        assert await count(session_factory, ElementModel) == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded_as_transaction_panic(
        self, session_factory, seed_project, job_context, monkeypatch
    ):
        await seed_project()
        persister, _, _, _ = job_context
        records = await decode(session_factory, sheet_rows(element_row()))

        async def explode(session, record):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(persister, "_persist_record", explode)

        result = await persister.persist_batch(2, records)

        assert not result.committed
        assert result.cancelled is None
        assert result.persisted == 0
        assert result.errors == ["Transaction panic: connection reset"]
        assert await count(session_factory, ElementTypeModel) == 0
