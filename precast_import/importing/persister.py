"""Batch persistence of decoded element types.

Each batch is written inside one transaction. For every element type the
rows are inserted in dependency order:

1. element_type
2. drawings
3. element_type_hierarchy_quantity (+ element_type_quantity for nodes with
   a distinct parent)
4. element rows, one per unit of hierarchy quantity
5. element_type_path
6. element_type_bom

The cancellation guard is consulted between every two operations, and the
persisted job status is polled once per element and at batch boundaries.
Any error or cancellation rolls the whole batch back.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

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
from precast_import.importing.types import (
    BatchResult,
    ElementTypeRecord,
    ImportCancelled,
)

logger = logging.getLogger(__name__)


class RowPersistError(Exception):
    """A record cannot be written; the batch will be rolled back."""


def generate_element_id(element_type: str, naming_convention: str, sequence: int) -> str:
    """Element id in the form ``ELEMENT_TYPE/<naming_convention>/0001``."""
    return f"{element_type.upper()}/{naming_convention}/{sequence:04d}"


class _RollbackBatch(Exception):
    pass


class BatchPersister:
    """Write batches of ``ElementTypeRecord`` values for one job.

    Args:
        session_factory: Factory for the batch transaction sessions
        job_id: Job that owns every row written (``element_type.job_id``)
        guard: Cancellation guard for the job
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        job_id: int,
        guard: CancellationGuard,
    ):
        self.session_factory = session_factory
        self.job_id = job_id
        self.guard = guard

    async def persist_batch(
        self, batch_index: int, records: Sequence[ElementTypeRecord]
    ) -> BatchResult:
        """Persist ``records`` atomically.

        Never raises: cancellation is reported through ``BatchResult.cancelled``
        and every other failure through ``BatchResult.errors``.
        """
        result = BatchResult(batch_index=batch_index, size=len(records))
        session: AsyncSession = self.session_factory()
        try:
            await self.guard.check(poll_status=True)
            async with session.begin():
                for record in records:
                    await self.guard.check(poll_status=True)
                    try:
                        result.elements_created += await self._persist_record(
                            session, record
                        )
                        result.persisted += 1
                    except RowPersistError as e:
                        result.errors.append(f"Row {record.row_number}: {e}")

                if result.errors:
                    raise _RollbackBatch()
                await self.guard.check(poll_status=True)
        except ImportCancelled as e:
            result.cancelled = e
            logger.info(f"Batch {batch_index} of job {self.job_id} rolled back: {e}")
        except _RollbackBatch:
            logger.warning(
                f"Batch {batch_index} of job {self.job_id} rolled back with "
                f"{len(result.errors)} errors"
            )
        except SQLAlchemyError as e:
            result.errors.append(f"Database error in batch {batch_index}: {e}")
            logger.error(f"Batch {batch_index} of job {self.job_id} failed: {e}")
        except Exception as e:
            result.errors.append(f"Transaction panic: {e}")
            logger.exception(f"Batch {batch_index} of job {self.job_id} panicked")
        finally:
            await session.close()

        if not result.committed:
            result.persisted = 0
            result.elements_created = 0
        return result

    async def _persist_record(self, session: AsyncSession, record: ElementTypeRecord) -> int:
        """Insert one element type and its dependents. Returns elements created."""
        guard = self.guard
        nodes = await self._load_precast_nodes(session, record)
        guard.check_fast()

        now = datetime.utcnow()
        element_type = ElementTypeModel(
            element_type=record.element_type,
            element_type_name=record.element_type_name,
            thickness=record.thickness,
            length=record.length,
            height=record.height,
            width=record.width,
            volume=record.volume,
            area=record.area,
            mass=record.mass,
            density=record.density,
            element_type_version=record.version,
            total_count_element=0,
            project_id=record.project_id,
            job_id=self.job_id,
            created_by=record.created_by,
            created_at=now,
            updated_at=now,
        )
        session.add(element_type)
        await session.flush()
        element_type_id = element_type.element_type_id
        guard.check_fast()

        for drawing in record.drawings:
            session.add(
                DrawingModel(
                    drawing_id=drawing.drawing_id,
                    element_type_id=element_type_id,
                    project_id=record.project_id,
                    drawing_type_id=drawing.drawing_type_id,
                    file=drawing.file,
                    current_version=drawing.current_version,
                    created_by=record.created_by,
                    updated_by=record.created_by,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.flush()
            guard.check_fast()

        for entry in record.hierarchy:
            node = nodes[entry.hierarchy_id]
            session.add(
                HierarchyQuantityModel(
                    element_type_id=element_type_id,
                    hierarchy_id=entry.hierarchy_id,
                    quantity=entry.quantity,
                    naming_convention=node.naming_convention or entry.naming_convention,
                    element_type_name=record.element_type_name,
                    element_type=record.element_type,
                    left_quantity=0,
                    project_id=record.project_id,
                )
            )
            # Self-referencing nodes are treated as top-level
            if node.parent_id is not None and node.parent_id != node.id:
                session.add(
                    ElementTypeQuantityModel(
                        element_type_id=element_type_id,
                        tower=node.parent_id,
                        floor=node.id,
                        total_quantity=entry.quantity,
                        left_quantity=entry.quantity,
                        element_type=record.element_type,
                        element_type_name=record.element_type_name,
                        project_id=record.project_id,
                        created_at=now,
                    )
                )
            await session.flush()
            guard.check_fast()

        sequence = 0
        for entry in record.hierarchy:
            naming_convention = nodes[entry.hierarchy_id].naming_convention or entry.naming_convention
            elements = []
            for _ in range(entry.quantity):
                sequence += 1
                elements.append(
                    ElementModel(
                        element_type_id=element_type_id,
                        element_id=generate_element_id(
                            record.element_type, naming_convention, sequence
                        ),
                        element_name=record.element_type_name,
                        project_id=record.project_id,
                        target_location=entry.hierarchy_id,
                        status="1",
                        created_by=record.created_by,
                        created_at=now,
                    )
                )
            session.add_all(elements)
            await session.flush()
            guard.check_fast()

        if sequence:
            await session.execute(
                update(ElementTypeModel)
                .where(ElementTypeModel.element_type_id == element_type_id)
                .values(total_count_element=sequence)
                .execution_options(synchronize_session=False)
            )
            guard.check_fast()

        if record.stage_path:
            session.add(
                ElementTypePathModel(
                    element_type_id=element_type_id, stage_path=list(record.stage_path)
                )
            )
            await session.flush()
            guard.check_fast()

        for line in record.bom:
            session.add(
                ElementTypeBomModel(
                    element_type_id=element_type_id,
                    project_id=record.project_id,
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit="",
                    rate=0.0,
                    created_by=record.created_by,
                    updated_by=record.created_by,
                    created_at=now,
                )
            )
            await session.flush()
            guard.check_fast()

        return sequence

    async def _load_precast_nodes(
        self, session: AsyncSession, record: ElementTypeRecord
    ) -> dict[int, PrecastModel]:
        """Fetch the precast rows referenced by ``record`` within its project.

        Raises:
            RowPersistError: If a hierarchy id does not exist in the project
        """
        ids = {entry.hierarchy_id for entry in record.hierarchy}
        if not ids:
            return {}

        result = await session.execute(
            select(PrecastModel).where(
                PrecastModel.id.in_(ids), PrecastModel.project_id == record.project_id
            )
        )
        nodes = {node.id: node for node in result.scalars()}
        missing = sorted(ids - nodes.keys())
        if missing:
            raise RowPersistError(
                f"Hierarchy id(s) {missing} not found in precast for project {record.project_id}"
            )
        return nodes
