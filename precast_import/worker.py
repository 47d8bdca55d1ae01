"""arq worker for element-type import jobs.

Run with ``arq precast_import.worker.WorkerSettings``. Jobs are created by the
API or CLI and handed over through ``precast_import.core.queue.enqueue_import``;
cancellation from another process reaches the worker through the persisted
job status, which the runner's termination monitor polls.
"""

from __future__ import annotations

from typing import Any

import structlog

from precast_import.config import get_config
from precast_import.core.logging import configure_logging
from precast_import.core.queue import get_redis_settings
from precast_import.db.connection import close_db, get_session_factory
from precast_import.importing.types import ShutdownTimeoutError
from precast_import.jobs.manager import JobManager
from precast_import.jobs.runner import ImportRequest

logger = structlog.get_logger()


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    configure_logging()
    ctx["manager"] = JobManager.from_config(get_config(), get_session_factory())
    logger.info("worker_started")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Drain running imports and close the database engine."""
    manager: JobManager = ctx["manager"]
    try:
        await manager.graceful_shutdown()
    except ShutdownTimeoutError as e:
        logger.warning("worker_shutdown_timeout", error=str(e))
    await close_db()
    logger.info("worker_stopped")


async def run_element_type_import(
    ctx: dict[str, Any],
    job_id: int,
    project_id: int,
    file_path: str,
    batch_size: int = 30,
    concurrent_batches: int = 15,
    user_name: str = "",
) -> dict[str, Any]:
    """Process an import job that already has a row in ``import_jobs``."""
    manager: JobManager = ctx["manager"]
    batch_size, concurrent_batches = manager.validate_batch_settings(
        batch_size, concurrent_batches
    )
    request = ImportRequest(
        job_id=job_id,
        project_id=project_id,
        file_path=file_path,
        batch_size=batch_size,
        concurrent_batches=concurrent_batches,
        user_name=user_name,
    )
    outcome = await manager.run_job(request)
    return {
        "job_id": job_id,
        "status": outcome.status.value,
        "success_count": outcome.success_count,
        "elements_created": outcome.elements_created,
        "errors": len(outcome.errors),
        "message": outcome.message,
    }


class WorkerSettings:
    functions = [run_element_type_import]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()
    # Imports can run for a long time on large workbooks
    job_timeout = 6 * 60 * 60
