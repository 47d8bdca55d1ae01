"""Element-type import job routes.

Routes:
- POST   /api/project/{project_id}/jobs/import          - Upload a workbook and start an import
- GET    /api/jobs/running                              - In-memory registry snapshot
- GET    /api/jobs/{job_id}                             - Job status with timing
- GET    /api/project/{project_id}/jobs                 - Jobs of a project, newest first
- GET    /api/jobs/pending-processing/{project_id}      - Latest active job within the window
- POST   /api/jobs/{job_id}/enable-rollback             - Allow rollback of a job's data
- DELETE /api/jobs/{job_id}/terminate                   - Cancel and (if enabled) roll back
- POST   /api/rollback/element_type/{project_id}/{job_id} - Gated rollback, synchronous
"""

from __future__ import annotations

import logging
from pathlib import Path
from uuid import uuid4

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse

from precast_import.config import get_config
from precast_import.importing.types import (
    JobCreationBlockedError,
    JobNotFoundError,
    RollbackDenied,
    RollbackError,
    ValidationError,
)
from precast_import.jobs.manager import JobManager
from precast_import.web.dependencies import get_job_manager
from precast_import.web.models import (
    ImportStartedResponse,
    JobStatusResponse,
    JobSummary,
    RollbackResponse,
    TerminationResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["jobs"])

ALLOWED_SUFFIXES = {".xlsx", ".xlsm", ".xls"}


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, JobNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, JobCreationBlockedError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (ValidationError, RollbackError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


async def _save_upload(file: UploadFile, project_id: int) -> Path:
    suffix = Path(file.filename or "").suffix.lower()
    if suffix not in ALLOWED_SUFFIXES:
        raise HTTPException(status_code=400, detail="Only Excel files are allowed")

    imports_dir = Path(get_config().imports.imports_dir) / str(project_id)
    imports_dir.mkdir(parents=True, exist_ok=True)
    target = imports_dir / f"{uuid4().hex}_{Path(file.filename).name}"
    with open(target, "wb") as f:
        f.write(await file.read())
    return target


# ============================================================================
# Import
# ============================================================================


@router.post("/api/project/{project_id}/jobs/import", response_model=ImportStartedResponse)
async def start_import(
    project_id: int,
    file: UploadFile = File(...),
    user_name: str = Form(""),
    batch_size: int | None = Form(None),
    concurrent_batches: int | None = Form(None),
    manager: JobManager = Depends(get_job_manager),
):
    """Store the uploaded workbook and start a background import job."""
    path = await _save_upload(file, project_id)
    try:
        job_id = await manager.start_import(
            project_id,
            str(path),
            batch_size=batch_size,
            concurrent_batches=concurrent_batches,
            user_name=user_name,
        )
    except (ValidationError, JobCreationBlockedError) as e:
        path.unlink(missing_ok=True)
        raise _http_error(e) from e

    logger.info(f"Started import job {job_id} for project {project_id}")
    return ImportStartedResponse(
        job_id=job_id,
        project_id=project_id,
        message="Import job started",
        file_path=str(path),
    )


# ============================================================================
# Status
# ============================================================================


@router.get("/api/jobs/running")
async def running_jobs(manager: JobManager = Depends(get_job_manager)):
    return manager.list_running()


@router.get("/api/jobs/pending-processing/{project_id}")
async def pending_processing(
    project_id: int,
    minutes: int | None = None,
    manager: JobManager = Depends(get_job_manager),
):
    """Most recent pending/processing job, or ``{"job": null}``."""
    job = await manager.get_pending_within(project_id, minutes)
    return {"project_id": project_id, "job": job}


@router.get("/api/jobs/{job_id}", response_model=JobStatusResponse)
async def job_status(job_id: int, manager: JobManager = Depends(get_job_manager)):
    try:
        return await manager.get_job_status(job_id)
    except JobNotFoundError as e:
        raise _http_error(e) from e


@router.get("/api/project/{project_id}/jobs", response_model=list[JobSummary])
async def project_jobs(project_id: int, manager: JobManager = Depends(get_job_manager)):
    return await manager.list_jobs(project_id)


# ============================================================================
# Cancellation & Rollback
# ============================================================================


@router.post("/api/jobs/{job_id}/enable-rollback")
async def enable_rollback(job_id: int, manager: JobManager = Depends(get_job_manager)):
    try:
        await manager.enable_rollback(job_id)
    except JobNotFoundError as e:
        raise _http_error(e) from e
    return {"job_id": job_id, "rollback_enabled": True}


@router.delete(
    "/api/jobs/{job_id}/terminate", response_model=TerminationResponse, status_code=202
)
async def terminate_job(job_id: int, manager: JobManager = Depends(get_job_manager)):
    """Stop the job now; data removal continues in the background."""
    try:
        accepted = await manager.cancel_and_rollback(job_id)
    except JobNotFoundError as e:
        raise _http_error(e) from e
    return accepted.to_dict()


@router.post(
    "/api/rollback/element_type/{project_id}/{job_id}", response_model=RollbackResponse
)
async def rollback_element_types(
    project_id: int, job_id: int, manager: JobManager = Depends(get_job_manager)
):
    try:
        report = await manager.rollback(job_id, project_id)
    except RollbackDenied as e:
        return JSONResponse(status_code=400, content=e.to_dict())
    except (JobNotFoundError, ValidationError, RollbackError) as e:
        raise _http_error(e) from e
    return report.to_dict()
