"""Pydantic response models for the import job API."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class ImportStartedResponse(BaseModel):
    """Used by: POST /api/project/{project_id}/jobs/import"""

    job_id: int
    project_id: int
    status: str = "pending"
    message: str
    file_path: str


class JobSummary(BaseModel):
    id: int
    project_id: int
    job_type: str
    status: str
    progress: int
    total_items: int
    processed_items: int
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    result: Optional[str] = None
    file_path: Optional[str] = None
    rollback_enabled: bool = False


class JobStatusResponse(JobSummary):
    """Used by: GET /api/jobs/{job_id}"""

    is_running_in_memory: bool
    timing: dict
    rollback_error: Optional[str] = None


class TerminationResponse(BaseModel):
    """Used by: DELETE /api/jobs/{job_id}/terminate"""

    job_id: int
    status: str
    message: str
    was_running: bool
    rollback_scheduled: bool


class RollbackResponse(BaseModel):
    """Used by: POST /api/rollback/element_type/{project_id}/{job_id}"""

    job_id: int
    project_id: int
    message: str
    deleted_records_summary: dict[str, int]
