"""Control surface for element-type import jobs.

``JobManager`` ties the registry, the persistent store, the runner and the
rollback engine together. Callers (web routes, CLI, arq worker) only talk
to this class.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import sessionmaker

from precast_import.config import AppConfig, ImportConfig
from precast_import.db.models import ImportJobModel
from precast_import.importing.hierarchy import AliasTable
from precast_import.importing.types import (
    ImportValidationError,
    JobCreationBlockedError,
    JobNotFoundError,
    JobStatus,
    ShutdownTimeoutError,
)
from precast_import.jobs.registry import CancelOutcome, JobRegistry
from precast_import.jobs.rollback import RollbackEngine, RollbackReport, TerminationAccepted
from precast_import.jobs.runner import ImportJobRunner, ImportOutcome, ImportRequest
from precast_import.jobs.store import JobStore

logger = logging.getLogger(__name__)

FORCE_CANCEL_ERROR = "Job force-cancelled by user"


def job_to_dict(job: ImportJobModel) -> dict[str, Any]:
    return {
        "id": job.id,
        "project_id": job.project_id,
        "job_type": job.job_type,
        "status": job.status,
        "progress": job.progress,
        "total_items": job.total_items,
        "processed_items": job.processed_items,
        "created_by": job.created_by,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "error": job.error,
        "result": job.result,
        "file_path": job.file_path,
        "rollback_enabled": job.rollback_enabled,
    }


class JobManager:
    """Start, observe, cancel and roll back import jobs.

    Args:
        session_factory: Async session factory shared by every component
        config: Import tuning (batch limits, cadences, rollback defaults)
        aliases: Hierarchy alias table
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        config: ImportConfig | None = None,
        aliases: AliasTable | None = None,
    ):
        self.config = config or ImportConfig()
        self.session_factory = session_factory
        self.aliases = aliases or AliasTable()
        self.registry = JobRegistry(halt_fleet_on_cancel=self.config.halt_fleet_on_cancel)
        self.store = JobStore(session_factory, self.registry)
        self.rollback_engine = RollbackEngine(
            session_factory, self.registry, self.store, self.config
        )
        self._tasks: dict[int, asyncio.Task] = {}

    @classmethod
    def from_config(cls, app_config: AppConfig, session_factory: sessionmaker) -> JobManager:
        aliases = AliasTable.from_yaml(app_config.hierarchy_aliases_path)
        return cls(session_factory, config=app_config.imports, aliases=aliases)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def validate_batch_settings(
        self, batch_size: int | None, concurrent_batches: int | None
    ) -> tuple[int, int]:
        """Apply defaults and bounds.

        Raises:
            ImportValidationError: If a value is outside its allowed range
        """
        cfg = self.config
        batch_size = cfg.default_batch_size if batch_size is None else batch_size
        concurrent_batches = (
            cfg.default_concurrent_batches if concurrent_batches is None else concurrent_batches
        )
        if not cfg.min_batch_size <= batch_size <= cfg.max_batch_size:
            raise ImportValidationError(
                f"batch_size must be between {cfg.min_batch_size} and {cfg.max_batch_size}"
            )
        if not cfg.min_concurrent_batches <= concurrent_batches <= cfg.max_concurrent_batches:
            raise ImportValidationError(
                "concurrent_batches must be between "
                f"{cfg.min_concurrent_batches} and {cfg.max_concurrent_batches}"
            )
        return batch_size, concurrent_batches

    async def create_job(
        self,
        project_id: int,
        file_path: str,
        user_name: str = "",
    ) -> ImportJobModel:
        if project_id <= 0:
            raise ImportValidationError("Invalid project ID")
        if self.registry.is_shutting_down():
            raise JobCreationBlockedError("Job manager is shutting down")
        if self.registry.is_creation_blocked():
            raise JobCreationBlockedError(
                "Job creation is blocked until cancelled jobs have stopped"
            )
        return await self.store.create_job(
            project_id,
            file_path,
            created_by=user_name,
            rollback_enabled=self.config.rollback_enabled_by_default,
        )

    async def start_import(
        self,
        project_id: int,
        file_path: str,
        batch_size: int | None = None,
        concurrent_batches: int | None = None,
        user_name: str = "",
    ) -> int:
        """Create a job and process it in a background task.

        Returns:
            The new job id
        """
        batch_size, concurrent_batches = self.validate_batch_settings(
            batch_size, concurrent_batches
        )
        job = await self.create_job(project_id, file_path, user_name)
        request = ImportRequest(
            job_id=job.id,
            project_id=project_id,
            file_path=file_path,
            batch_size=batch_size,
            concurrent_batches=concurrent_batches,
            user_name=user_name,
        )
        self.launch(request)
        return job.id

    def launch(self, request: ImportRequest) -> asyncio.Task:
        """Register the job and schedule its runner.

        Raises:
            JobCreationBlockedError: If the registry refuses the job
        """
        token = self.registry.new_token()
        if not self.registry.register(request.job_id, token):
            raise JobCreationBlockedError(f"Job {request.job_id} could not be registered")

        runner = self._make_runner(request, token)
        task = asyncio.create_task(runner.run(), name=f"import-job-{request.job_id}")
        self._tasks[request.job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(request.job_id, None))
        return task

    async def run_job(self, request: ImportRequest) -> ImportOutcome:
        """Launch a job and wait for its outcome (used by the arq worker)."""
        return await self.launch(request)

    def _make_runner(self, request: ImportRequest, token) -> ImportJobRunner:
        return ImportJobRunner(
            request,
            token,
            session_factory=self.session_factory,
            registry=self.registry,
            store=self.store,
            config=self.config,
            aliases=self.aliases,
        )

    async def wait_for(self, job_id: int, timeout: float | None = None) -> ImportOutcome | None:
        """Await the background task of ``job_id`` if it is still running."""
        task = self._tasks.get(job_id)
        if task is None:
            return None
        return await asyncio.wait_for(asyncio.shield(task), timeout)

    # ------------------------------------------------------------------
    # Observe
    # ------------------------------------------------------------------

    async def get_job_status(self, job_id: int) -> dict[str, Any]:
        """Job row plus in-memory state and timing.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        job = await self.store.require_job(job_id)
        data = job_to_dict(job)

        end = job.completed_at or datetime.utcnow()
        elapsed = (end - job.created_at).total_seconds() if job.created_at else None
        timing: dict[str, Any] = {
            "started_at": data["created_at"],
            "completed_at": data["completed_at"],
        }
        if job.completed_at:
            timing["total_time_seconds"] = elapsed
        else:
            timing["elapsed_seconds"] = elapsed

        data["is_running_in_memory"] = self.registry.is_running(job_id)
        data["timing"] = timing
        rollback_error = self.rollback_engine.last_errors.get(job_id)
        if rollback_error:
            data["rollback_error"] = rollback_error
        return data

    def list_running(self) -> dict[str, Any]:
        return self.registry.snapshot()

    async def list_jobs(self, project_id: int) -> list[dict[str, Any]]:
        return [job_to_dict(job) for job in await self.store.list_by_project(project_id)]

    async def get_pending_within(
        self, project_id: int, minutes: int | None = None
    ) -> dict[str, Any] | None:
        window = self.config.pending_window_minutes if minutes is None else minutes
        job = await self.store.latest_active(project_id, window)
        return job_to_dict(job) if job else None

    # ------------------------------------------------------------------
    # Cancel and roll back
    # ------------------------------------------------------------------

    async def force_cancel(self, job_id: int) -> CancelOutcome:
        """Cancel a job and force ``cancelled`` on its row.

        Retries once after the grace window if the job is still observed
        running. Idempotent.
        """
        await self.store.require_job(job_id)
        outcome = self.registry.cancel(job_id, reason="force-cancelled")
        if outcome == CancelOutcome.NOT_FOUND:
            self.registry.mark_terminated(job_id)

        await self.store.force_update(
            job_id, JobStatus.CANCELLED, progress=0, error=FORCE_CANCEL_ERROR
        )

        await asyncio.sleep(self.config.force_cancel_grace)
        if self.registry.is_registered(job_id):
            logger.warning(f"Job {job_id} still running after force cancel; retrying")
            self.registry.cancel(job_id, reason="force-cancelled retry")
            await self.store.force_update(
                job_id, JobStatus.CANCELLED, progress=0, error=FORCE_CANCEL_ERROR
            )
        return outcome

    async def enable_rollback(self, job_id: int) -> None:
        await self.store.set_rollback_enabled(job_id, True)

    async def cancel_and_rollback(self, job_id: int) -> TerminationAccepted:
        return await self.rollback_engine.cancel_and_rollback(job_id)

    async def rollback(self, job_id: int, project_id: int | None = None) -> RollbackReport:
        return await self.rollback_engine.rollback(job_id, project_id)

    def terminate_all(self) -> list[int]:
        return self.registry.terminate_all()

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def graceful_shutdown(self, timeout: float | None = None) -> None:
        """Cancel every job and wait for the workers to drain.

        Raises:
            ShutdownTimeoutError: If workers are still running after ``timeout``
        """
        timeout = self.config.shutdown_timeout if timeout is None else timeout
        self.registry.begin_shutdown()

        tasks = list(self._tasks.values())
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            raise ShutdownTimeoutError(
                f"{len(pending)} import jobs still running after {timeout}s"
            )
        logger.info("All import jobs stopped")


__all__ = ["JobManager", "JobNotFoundError", "job_to_dict"]
