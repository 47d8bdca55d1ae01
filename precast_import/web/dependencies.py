"""Shared dependencies for precast import web routes.

Usage:
    from fastapi import Depends
    from precast_import.web.dependencies import get_job_manager

    @router.get("/api/jobs/running")
    async def running(manager: JobManager = Depends(get_job_manager)):
        return manager.list_running()
"""

from __future__ import annotations

from precast_import.config import get_config
from precast_import.db.connection import get_session_factory
from precast_import.jobs.manager import JobManager

# Global singleton for the job manager
_manager: JobManager | None = None


def get_job_manager() -> JobManager:
    """Get the process-wide JobManager.

    The manager owns the in-memory job registry, so every route must share
    the same instance.
    """
    global _manager
    if _manager is None:
        _manager = JobManager.from_config(get_config(), get_session_factory())
    return _manager


def reset_job_manager() -> None:
    global _manager
    _manager = None
