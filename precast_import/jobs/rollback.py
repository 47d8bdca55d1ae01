"""Termination and rollback of import jobs.

``cancel_and_rollback`` works in two phases:

Phase A (synchronous): latch the terminated flag, halt the fleet, cancel
the job token and force the persisted status to ``cancelled``.

Phase B (background task): if the job has ``rollback_enabled``, wait for the
worker to stop, then in one transaction run the safety gates and delete
every row created under the job in dependency order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import Select, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from precast_import.config import ImportConfig
from precast_import.db.connection import session_scope
from precast_import.db.models import (
    ActivityModel,
    DrawingModel,
    DrawingRevisionModel,
    ElementModel,
    ElementTypeBomModel,
    ElementTypeModel,
    ElementTypePathModel,
    ElementTypeQuantityModel,
    ElementTypeRevisionModel,
    HierarchyQuantityModel,
    ImportJobModel,
    PrecastStockModel,
    TaskModel,
)
from precast_import.importing.types import (
    JobNotFoundError,
    JobStatus,
    RollbackDenied,
    RollbackError,
    RollbackNotEnabled,
    ValidationError,
)
from precast_import.jobs.registry import CancelOutcome, JobRegistry
from precast_import.jobs.store import JobStore

logger = logging.getLogger(__name__)

ACTIVE_WORK_STATUSES = ("in_progress", "started", "active")
TERMINATION_ERROR = "Job terminated by user"
ROLLBACK_NOTE = "Job terminated by user - all data rolled back"


@dataclass
class RollbackReport:
    """Rows removed by a successful rollback."""

    job_id: int
    project_id: int
    element_type_ids: list[int]
    deleted: dict[str, int] = field(default_factory=dict)

    @property
    def element_types_deleted(self) -> int:
        return self.deleted.get("element_type", 0)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "project_id": self.project_id,
            "message": (
                f"Successfully rolled back element type data for project ID "
                f"{self.project_id}, job ID {self.job_id}. "
                f"{self.element_types_deleted} element types and all related data "
                "have been removed."
            ),
            "deleted_records_summary": dict(self.deleted),
        }


@dataclass
class TerminationAccepted:
    """Response of phase A; phase B runs in the background."""

    job_id: int
    cancel_outcome: CancelOutcome
    rollback_scheduled: bool
    rollback_task: asyncio.Task | None = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "status": JobStatus.CANCELLED.value,
            "message": "Job termination accepted",
            "was_running": self.cancel_outcome == CancelOutcome.CANCELLED,
            "rollback_scheduled": self.rollback_scheduled,
        }


GATES = ("production", "activity", "task", "stockyard")


class RollbackEngine:
    """Force-stop jobs and remove the data they created."""

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: JobRegistry,
        store: JobStore,
        config: ImportConfig,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.store = store
        self.config = config
        self._inflight: dict[int, asyncio.Task] = {}
        self.last_errors: dict[int, str] = {}

    # ------------------------------------------------------------------
    # Phase A
    # ------------------------------------------------------------------

    async def force_stop(self, job_id: int) -> CancelOutcome:
        """Latch termination, cancel the token and force ``cancelled``.

        Raises:
            JobNotFoundError: If no job row exists
        """
        job = await self.store.require_job(job_id)

        self.registry.mark_terminated(job_id)
        if self.config.halt_fleet_on_cancel:
            self.registry.halt_fleet(f"job {job_id} terminated")
        outcome = self.registry.cancel(job_id, reason="terminated by user")
        self.registry.release_if_drained()

        if job.status == JobStatus.CANCELLED.value and not job.rollback_enabled:
            # Already stopped and rolled back (or never rollback-enabled); keep its note
            logger.info(f"Job {job_id} already cancelled; status left as is")
            return outcome

        await self.store.force_update(
            job_id, JobStatus.CANCELLED, progress=0, error=TERMINATION_ERROR
        )
        logger.info(
            f"Force-stopped job {job_id} (was {job.status}, registry: {outcome.value})"
        )
        return outcome

    async def cancel_and_rollback(self, job_id: int) -> TerminationAccepted:
        """Phase A now, phase B in the background when rollback is enabled."""
        outcome = await self.force_stop(job_id)

        job = await self.store.require_job(job_id)
        task = None
        if job.rollback_enabled or job_id in self._inflight:
            task = self.schedule_rollback(job_id)

        return TerminationAccepted(
            job_id=job_id,
            cancel_outcome=outcome,
            rollback_scheduled=task is not None,
            rollback_task=task,
        )

    # ------------------------------------------------------------------
    # Phase B
    # ------------------------------------------------------------------

    def schedule_rollback(self, job_id: int) -> asyncio.Task:
        """Start (or join) the single background rollback for ``job_id``."""
        task = self._inflight.get(job_id)
        if task is not None:
            return task

        task = asyncio.create_task(self._background_rollback(job_id))
        self._inflight[job_id] = task
        task.add_done_callback(lambda _: self._inflight.pop(job_id, None))
        return task

    async def _background_rollback(self, job_id: int) -> RollbackReport | None:
        stopped = await self.registry.wait_stopped(
            job_id, timeout=self.config.rollback_wait_timeout
        )
        if not stopped:
            logger.warning(f"Job {job_id} still registered after wait; rolling back anyway")
        try:
            return await self._rollback(job_id, project_id=None)
        except RollbackNotEnabled:
            logger.info(f"Rollback of job {job_id} already performed or disabled")
        except RollbackError as e:
            self.last_errors[job_id] = str(e)
            logger.warning(f"Rollback of job {job_id} not performed: {e}")
        except Exception as e:
            self.last_errors[job_id] = str(e)
            logger.exception(f"Rollback of job {job_id} failed")
        return None

    async def rollback(self, job_id: int, project_id: int | None = None) -> RollbackReport:
        """Run a gated rollback now; concurrent callers share one transaction.

        Raises:
            JobNotFoundError: If the job does not exist (or not in ``project_id``)
            RollbackNotEnabled: If rollback is disabled or already performed
            RollbackDenied: If a safety gate finds downstream activity
        """
        task = self._inflight.get(job_id)
        if task is None:
            task = asyncio.create_task(self._rollback(job_id, project_id))
            self._inflight[job_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(job_id, None))
        report = await asyncio.shield(task)
        if report is None:
            raise RollbackError(self.last_errors.get(job_id, "Rollback failed"))
        return report

    async def _rollback(self, job_id: int, project_id: int | None) -> RollbackReport:
        async with session_scope(self.session_factory) as session:
            job = await session.scalar(
                select(ImportJobModel).where(ImportJobModel.id == job_id).with_for_update()
            )
            if job is None:
                raise JobNotFoundError(job_id)
            if project_id is not None and job.project_id != project_id:
                raise ValidationError(f"Job {job_id} does not belong to project {project_id}")
            if not job.rollback_enabled:
                raise RollbackNotEnabled(job_id)

            result = await session.execute(
                select(ElementTypeModel.element_type_id).where(
                    ElementTypeModel.project_id == job.project_id,
                    ElementTypeModel.job_id == job_id,
                )
            )
            element_type_ids = list(result.scalars())

            report = RollbackReport(
                job_id=job_id, project_id=job.project_id, element_type_ids=element_type_ids
            )
            if element_type_ids:
                await self._check_gates(session, job_id, element_type_ids)
                report.deleted = await self._delete_all(
                    session, job_id, job.project_id, element_type_ids
                )
            else:
                logger.info(f"Job {job_id} has no element types to roll back")

            job.rollback_enabled = False
            job.error = ROLLBACK_NOTE
            job.updated_at = datetime.utcnow()

        self.last_errors.pop(job_id, None)
        logger.info(f"Rolled back job {job_id}: {report.deleted}")
        return report

    # ------------------------------------------------------------------
    # Gates and deletes
    # ------------------------------------------------------------------

    def _gate_query(self, gate: str, ids: list[int]) -> Select:
        if gate == "production":
            return select(func.count()).select_from(ElementModel).where(
                ElementModel.element_type_id.in_(ids), ElementModel.instage.is_(True)
            )
        if gate == "activity":
            return (
                select(func.count())
                .select_from(ActivityModel)
                .join(TaskModel, ActivityModel.task_id == TaskModel.task_id)
                .where(
                    TaskModel.element_type_id.in_(ids),
                    ActivityModel.status.in_(ACTIVE_WORK_STATUSES),
                )
            )
        if gate == "task":
            return select(func.count()).select_from(TaskModel).where(
                TaskModel.element_type_id.in_(ids),
                TaskModel.status.in_(ACTIVE_WORK_STATUSES),
            )
        if gate == "stockyard":
            return select(func.count()).select_from(PrecastStockModel).where(
                PrecastStockModel.element_type_id.in_(ids),
                PrecastStockModel.stockyard.is_(True),
            )
        raise ValueError(f"Unknown gate {gate!r}")

    async def _check_gates(self, session: AsyncSession, job_id: int, ids: list[int]) -> None:
        """Raise RollbackDenied on the first gate reporting active rows."""
        for gate in GATES:
            count = await session.scalar(self._gate_query(gate, ids)) or 0
            if count > 0:
                raise RollbackDenied(
                    job_id,
                    gate=gate,
                    count=count,
                    message=(
                        f"Rollback denied: {count} {gate} operations are in "
                        f"progress for job ID {job_id}. Cannot rollback element types "
                        f"while {gate} operations are active"
                    ),
                )

    async def _delete_all(
        self, session: AsyncSession, job_id: int, project_id: int, ids: list[int]
    ) -> dict[str, int]:
        drawing_ids = select(DrawingModel.drawing_id).where(
            DrawingModel.element_type_id.in_(ids)
        )
        steps = [
            (
                "drawings_revision",
                delete(DrawingRevisionModel).where(
                    DrawingRevisionModel.parent_drawing_id.in_(drawing_ids)
                ),
            ),
            ("drawings", delete(DrawingModel).where(DrawingModel.element_type_id.in_(ids))),
            (
                "element_type_quantity",
                delete(ElementTypeQuantityModel).where(
                    ElementTypeQuantityModel.element_type_id.in_(ids)
                ),
            ),
            (
                "element_type_hierarchy_quantity",
                delete(HierarchyQuantityModel).where(
                    HierarchyQuantityModel.element_type_id.in_(ids)
                ),
            ),
            (
                "element_type_path",
                delete(ElementTypePathModel).where(ElementTypePathModel.element_type_id.in_(ids)),
            ),
            (
                "element_type_bom",
                delete(ElementTypeBomModel).where(ElementTypeBomModel.element_type_id.in_(ids)),
            ),
            (
                "element_type_revision",
                delete(ElementTypeRevisionModel).where(
                    ElementTypeRevisionModel.element_type_id.in_(ids)
                ),
            ),
            ("element", delete(ElementModel).where(ElementModel.element_type_id.in_(ids))),
            (
                "element_type",
                delete(ElementTypeModel).where(
                    ElementTypeModel.project_id == project_id,
                    ElementTypeModel.job_id == job_id,
                ),
            ),
        ]

        deleted: dict[str, int] = {}
        for table, statement in steps:
            outcome = await session.execute(
                statement.execution_options(synchronize_session=False)
            )
            deleted[table] = outcome.rowcount
        return deleted
