"""Integration tests for the import job HTTP routes."""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from precast_import.db.models import (
    Base,
    DrawingTypeModel,
    ElementModel,
    InvBomModel,
    PrecastModel,
    ProjectStageModel,
)
from precast_import.jobs.manager import JobManager
from precast_import.web import dependencies
from precast_import.web.app import app
from tests.workbooks import SUMMARY_ROWS, element_row, write_workbook

PROJECT_ID = 7
XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@pytest.fixture
def sync_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'routes.db'}", connect_args={"timeout": 30}
    )
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        session.add_all(
            [
                ProjectStageModel(id=11, name="Casting", project_id=PROJECT_ID, order=1),
                ProjectStageModel(id=12, name="Curing", project_id=PROJECT_ID, order=2),
                DrawingTypeModel(drawing_type_id=21, drawing_type_name="Drawings_GA",
                                 project_id=PROJECT_ID),
                DrawingTypeModel(drawing_type_id=22, drawing_type_name="Drawings_Shop",
                                 project_id=PROJECT_ID),
                InvBomModel(id=31, name_id="BOM_Steel", project_id=PROJECT_ID),
                InvBomModel(id=32, name_id="BOM_Cement", project_id=PROJECT_ID),
                PrecastModel(id=1, project_id=PROJECT_ID, path="tower_g6",
                             naming_convention="T6"),
                PrecastModel(id=2, project_id=PROJECT_ID, path="tower_g6.floor_1",
                             naming_convention="T6-F1", parent_id=1),
                PrecastModel(id=3, project_id=PROJECT_ID, path="tower_g6.floor_2",
                             naming_convention="T6-F2", parent_id=1),
            ]
        )
        session.commit()
    yield engine
    engine.dispose()


@pytest.fixture
def client(sync_engine, tmp_path, import_config, monkeypatch):
    async_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'routes.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    factory = sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(dependencies, "_manager", JobManager(factory, config=import_config))

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def workbook_bytes(tmp_path) -> bytes:
    path = write_workbook(tmp_path / "upload.xlsx", [element_row()], summary_rows=SUMMARY_ROWS)
    return path.read_bytes()


def upload(client, workbook: bytes, project_id: int = PROJECT_ID, **form):
    return client.post(
        f"/api/project/{project_id}/jobs/import",
        files={"file": ("elements.xlsx", workbook, XLSX)},
        data={"user_name": "alice", **form},
    )


def wait_until_finished(client, job_id: int, timeout: float = 30.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/jobs/{job_id}").json()
        if body["status"] not in ("pending", "processing"):
            return body
        time.sleep(0.05)
    raise AssertionError(f"Job {job_id} did not finish within {timeout}s")


class TestImportRoutes:
    """Upload and status endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.headers["X-Request-ID"]

    def test_upload_runs_job(self, client, workbook_bytes, tmp_path):
        response = upload(client, workbook_bytes)

        assert response.status_code == 200
        data = response.json()
        assert data["project_id"] == PROJECT_ID
        assert data["file_path"].startswith(str(tmp_path / "imports" / str(PROJECT_ID)))

        job = wait_until_finished(client, data["job_id"])
        assert job["status"] == "completed"
        assert job["progress"] == 100
        assert job["created_by"] == "alice"
        assert job["is_running_in_memory"] is False

        jobs = client.get(f"/api/project/{PROJECT_ID}/jobs").json()
        assert [j["id"] for j in jobs] == [data["job_id"]]

    def test_rejects_non_excel_upload(self, client):
        response = client.post(
            f"/api/project/{PROJECT_ID}/jobs/import",
            files={"file": ("notes.txt", b"hello", "text/plain")},
        )

        assert response.status_code == 400
        assert "Excel" in response.json()["detail"]

    def test_rejects_batch_size_out_of_range(self, client, workbook_bytes):
        response = upload(client, workbook_bytes, batch_size="99")

        assert response.status_code == 400
        assert "batch_size" in response.json()["detail"]

    def test_unknown_job(self, client):
        assert client.get("/api/jobs/999").status_code == 404
        assert client.post("/api/jobs/999/enable-rollback").status_code == 404
        assert client.delete("/api/jobs/999/terminate").status_code == 404

    def test_running_and_pending(self, client):
        running = client.get("/api/jobs/running").json()
        pending = client.get(f"/api/jobs/pending-processing/{PROJECT_ID}").json()

        assert running["count"] == 0
        assert pending == {"project_id": PROJECT_ID, "job": None}


class TestRollbackRoutes:
    """Termination and rollback endpoints."""

    def test_terminate_and_rollback(self, client, workbook_bytes):
        job_id = upload(client, workbook_bytes).json()["job_id"]
        wait_until_finished(client, job_id)

        enabled = client.post(f"/api/jobs/{job_id}/enable-rollback")
        assert enabled.json() == {"job_id": job_id, "rollback_enabled": True}

        response = client.post(f"/api/rollback/element_type/{PROJECT_ID}/{job_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["deleted_records_summary"]["element_type"] == 1
        assert body["deleted_records_summary"]["element"] == 5

        again = client.post(f"/api/rollback/element_type/{PROJECT_ID}/{job_id}")
        assert again.status_code == 400
        assert "not enabled" in again.json()["detail"]

        terminated = client.delete(f"/api/jobs/{job_id}/terminate")
        assert terminated.status_code == 202
        assert terminated.json()["status"] == "cancelled"
        assert terminated.json()["rollback_scheduled"] is False
        assert client.get(f"/api/jobs/{job_id}").json()["status"] == "cancelled"

    def test_rollback_denied_body(self, client, workbook_bytes, sync_engine):
        job_id = upload(client, workbook_bytes).json()["job_id"]
        wait_until_finished(client, job_id)
        client.post(f"/api/jobs/{job_id}/enable-rollback")
        with Session(sync_engine) as session:
            session.execute(update(ElementModel).values(instage=True))
            session.commit()

        response = client.post(f"/api/rollback/element_type/{PROJECT_ID}/{job_id}")

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Rollback denied"
        assert body["type"] == "production"
        assert body["count"] == 5
        assert body["job_id"] == job_id

    def test_rollback_wrong_project(self, client, workbook_bytes):
        job_id = upload(client, workbook_bytes).json()["job_id"]
        wait_until_finished(client, job_id)
        client.post(f"/api/jobs/{job_id}/enable-rollback")

        response = client.post(f"/api/rollback/element_type/8/{job_id}")

        assert response.status_code == 400
