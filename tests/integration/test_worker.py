"""Integration tests for the arq import task."""

from __future__ import annotations

import pytest

from precast_import.importing.types import ImportValidationError
from precast_import.worker import WorkerSettings, run_element_type_import
from tests.workbooks import element_row


class TestRunElementTypeImport:
    @pytest.mark.asyncio
    async def test_processes_existing_job(self, manager, seeded, workbook_factory):
        path = workbook_factory([element_row()])
        job = await manager.create_job(7, str(path), user_name="worker")

        result = await run_element_type_import(
            {"manager": manager}, job.id, 7, str(path), batch_size=10, concurrent_batches=2
        )

        assert result["job_id"] == job.id
        assert result["status"] == "completed"
        assert result["elements_created"] == 5
        assert result["errors"] == 0
        assert (await manager.get_job_status(job.id))["status"] == "completed"

    @pytest.mark.asyncio
    async def test_rejects_bad_batch_settings(self, manager):
        with pytest.raises(ImportValidationError):
            await run_element_type_import({"manager": manager}, 1, 7, "x.xlsx", batch_size=0)

    def test_worker_settings(self):
        assert run_element_type_import in WorkerSettings.functions
        assert WorkerSettings.job_timeout == 6 * 60 * 60
