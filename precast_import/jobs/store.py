"""Persistent access to ``import_jobs`` rows.

Two write paths exist:

- ``update_status`` is guarded. It never moves a job out of a terminal
  status, keeps ``progress`` non-decreasing, and while any termination flag
  is raised for the job it only accepts cancellation statuses.
- ``force_update`` is used by the control plane to record cancellation
  regardless of the job's current state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import case, select, update
from sqlalchemy.orm import sessionmaker

from precast_import.db.connection import session_scope
from precast_import.db.models import ImportJobModel
from precast_import.importing.types import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobNotFoundError,
    JobStatus,
)
from precast_import.jobs.registry import JobRegistry

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


class JobStore:
    """Import job rows, guarded by the in-memory registry flags."""

    def __init__(self, session_factory: sessionmaker, registry: JobRegistry):
        self.session_factory = session_factory
        self.registry = registry

    async def create_job(
        self,
        project_id: int,
        file_path: str | None,
        created_by: str = "",
        rollback_enabled: bool = False,
        job_type: str = "element_type_import",
    ) -> ImportJobModel:
        now = datetime.utcnow()
        job = ImportJobModel(
            project_id=project_id,
            job_type=job_type,
            status=JobStatus.PENDING.value,
            progress=0,
            total_items=0,
            processed_items=0,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            file_path=file_path,
            rollback_enabled=rollback_enabled,
        )
        async with session_scope(self.session_factory) as session:
            session.add(job)
            await session.flush()
        logger.info(f"Created import job {job.id} for project {project_id}")
        return job

    async def get_job(self, job_id: int) -> ImportJobModel | None:
        async with session_scope(self.session_factory) as session:
            return await session.get(ImportJobModel, job_id)

    async def require_job(self, job_id: int) -> ImportJobModel:
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def fetch_status(self, job_id: int) -> str | None:
        """Read the persisted status; this is the cancellation system of record."""
        async with session_scope(self.session_factory) as session:
            return await session.scalar(
                select(ImportJobModel.status).where(ImportJobModel.id == job_id)
            )

    def _write_blocked(self, job_id: int) -> bool:
        registry = self.registry
        return (
            registry.is_terminated(job_id)
            or registry.is_global_termination_set()
            or registry.is_creation_blocked()
            or registry.is_shutting_down()
        )

    async def update_status(
        self,
        job_id: int,
        status: JobStatus,
        progress: int | None = None,
        processed_items: int | None = None,
        error: str | None = None,
        result: str | None = None,
    ) -> bool:
        """Guarded status write.

        Returns:
            True if the row was updated, False if the write was refused
        """
        status = JobStatus(status)
        if self._write_blocked(job_id) and not status.is_cancellation:
            logger.debug(f"Refused {status.value} write for job {job_id}: termination flag set")
            return False

        now = datetime.utcnow()
        values: dict = {"status": status.value, "updated_at": now}
        if progress is not None:
            progress = max(0, min(100, progress))
            values["progress"] = case(
                (ImportJobModel.progress > progress, ImportJobModel.progress),
                else_=progress,
            )
        if processed_items is not None:
            values["processed_items"] = processed_items
        if error is not None:
            values["error"] = error
        if result is not None:
            values["result"] = result
        if status.is_terminal:
            values["completed_at"] = now

        async with session_scope(self.session_factory) as session:
            outcome = await session.execute(
                update(ImportJobModel)
                .where(
                    ImportJobModel.id == job_id,
                    ImportJobModel.status.not_in(_TERMINAL_VALUES),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        updated = outcome.rowcount > 0
        if updated:
            logger.debug(f"Job {job_id} -> {status.value} (progress={progress})")
        return updated

    async def update_progress(
        self, job_id: int, progress: int, processed_items: int
    ) -> bool:
        return await self.update_status(
            job_id, JobStatus.PROCESSING, progress=progress, processed_items=processed_items
        )

    async def force_update(
        self,
        job_id: int,
        status: JobStatus,
        progress: int,
        error: str | None = None,
        result: str | None = None,
    ) -> bool:
        """Unconditional status write for the control plane."""
        status = JobStatus(status)
        now = datetime.utcnow()
        values: dict = {"status": status.value, "progress": progress, "updated_at": now}
        if error is not None:
            values["error"] = error
        if result is not None:
            values["result"] = result
        values["completed_at"] = now if status.is_terminal else None

        async with session_scope(self.session_factory) as session:
            outcome = await session.execute(
                update(ImportJobModel)
                .where(ImportJobModel.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        logger.info(f"Forced job {job_id} -> {status.value}")
        return outcome.rowcount > 0

    async def update_total_items(self, job_id: int, total_items: int) -> None:
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(ImportJobModel)
                .where(ImportJobModel.id == job_id)
                .values(total_items=total_items, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )

    async def set_rollback_enabled(self, job_id: int, enabled: bool) -> None:
        """Raises JobNotFoundError if the job does not exist."""
        async with session_scope(self.session_factory) as session:
            outcome = await session.execute(
                update(ImportJobModel)
                .where(ImportJobModel.id == job_id)
                .values(rollback_enabled=enabled, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount == 0:
                raise JobNotFoundError(job_id)
        logger.info(f"Rollback {'enabled' if enabled else 'disabled'} for job {job_id}")

    async def list_by_project(self, project_id: int) -> list[ImportJobModel]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(ImportJobModel)
                .where(ImportJobModel.project_id == project_id)
                .order_by(ImportJobModel.created_at.desc(), ImportJobModel.id.desc())
            )
            return list(result.scalars())

    async def latest_active(
        self, project_id: int, window_minutes: int = 30
    ) -> ImportJobModel | None:
        """Most recent pending or processing job created within the window."""
        since = datetime.utcnow() - timedelta(minutes=window_minutes)
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(ImportJobModel)
                .where(
                    ImportJobModel.project_id == project_id,
                    ImportJobModel.status.in_([s.value for s in ACTIVE_STATUSES]),
                    ImportJobModel.created_at >= since,
                )
                .order_by(ImportJobModel.created_at.desc(), ImportJobModel.id.desc())
                .limit(1)
            )
            return result.scalars().first()
