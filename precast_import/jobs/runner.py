"""Driver for a single element-type import job.

The runner opens the workbook, resolves section ranges, decodes rows and
persists them batch by batch. Two auxiliary tasks run alongside it: a
progress updater and a termination monitor that watches the in-memory
flags and the persisted status.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from itertools import islice

import structlog
from sqlalchemy.orm import sessionmaker

from precast_import.config import ImportConfig
from precast_import.core.logging import job_log_context
from precast_import.db.connection import session_scope
from precast_import.importing.cancellation import CancellationGuard, CancellationToken
from precast_import.importing.decoder import RowDecoder
from precast_import.importing.hierarchy import AliasTable
from precast_import.importing.lookups import ProjectCatalog
from precast_import.importing.persister import BatchPersister
from precast_import.importing.ranges import resolve_ranges
from precast_import.importing.types import (
    ElementTypeRecord,
    ImportCancelled,
    JobStatus,
    ValidationError,
)
from precast_import.importing.workbook import Workbook
from precast_import.jobs.registry import JobRegistry
from precast_import.jobs.store import JobStore

logger = structlog.get_logger(__name__)

MAX_STORED_ERRORS = 50
TERMINATED_ERROR = "Job terminated by user"


def batched(records: Iterable[ElementTypeRecord], size: int) -> Iterator[list[ElementTypeRecord]]:
    iterator = iter(records)
    while True:
        batch = list(islice(iterator, size))
        if not batch:
            return
        yield batch


@dataclass
class ImportRequest:
    """Parameters of one import job."""

    job_id: int
    project_id: int
    file_path: str
    batch_size: int = 30
    concurrent_batches: int = 15
    user_name: str = ""


@dataclass
class ImportOutcome:
    """Final accounting of a job run."""

    status: JobStatus
    total_items: int = 0
    processed_items: int = 0
    success_count: int = 0
    elements_created: int = 0
    batches_committed: int = 0
    errors: list[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    observed_by_persister: bool = False

    @property
    def message(self) -> str:
        return (
            f"Processed {self.success_count} elements successfully, "
            f"{len(self.errors)} errors occurred. "
            f"Total time: {self.elapsed_seconds:.2f}s"
        )


class ImportJobRunner:
    """Run one import job to a terminal status.

    The job must already be registered with ``registry`` under ``token``.
    """

    def __init__(
        self,
        request: ImportRequest,
        token: CancellationToken,
        session_factory: sessionmaker,
        registry: JobRegistry,
        store: JobStore,
        config: ImportConfig,
        aliases: AliasTable | None = None,
    ):
        self.request = request
        self.token = token
        self.session_factory = session_factory
        self.registry = registry
        self.store = store
        self.config = config
        self.aliases = aliases or AliasTable()

        self.guard = CancellationGuard(
            request.job_id,
            token,
            registry,
            status_reader=lambda: store.fetch_status(request.job_id),
        )
        self.total_items = 0
        self.processed_items = 0
        self.log = logger
        self._stop = asyncio.Event()

    @property
    def job_id(self) -> int:
        return self.request.job_id

    @property
    def progress(self) -> int:
        if self.total_items <= 0:
            return 0
        return min(99, self.processed_items * 100 // self.total_items)

    async def run(self) -> ImportOutcome:
        """Process the job; never raises."""
        with job_log_context(self.job_id, self.request.project_id):
            return await self._run_logged()

    async def _run_logged(self) -> ImportOutcome:
        started = time.monotonic()
        outcome = ImportOutcome(status=JobStatus.PROCESSING)
        try:
            await self._run(outcome)
        except ImportCancelled as e:
            if outcome.observed_by_persister:
                outcome.status = JobStatus.TERMINATED
            else:
                outcome.status = JobStatus.CANCELLED
            self.log.info("import_cancelled", reason=e.reason)
        except ValidationError as e:
            outcome.status = JobStatus.FAILED
            outcome.errors.append(str(e))
            self.log.warning("import_invalid", error=str(e))
        except Exception as e:
            outcome.status = JobStatus.FAILED
            outcome.errors.append(f"Unexpected error: {e}")
            self.log.exception("import_crashed")
        finally:
            outcome.elapsed_seconds = time.monotonic() - started
            try:
                await self._record_outcome(outcome)
            finally:
                self.registry.unregister(self.job_id)
        return outcome

    async def _record_outcome(self, outcome: ImportOutcome) -> None:
        """Write the terminal status, retrying once, then forcing it."""
        for attempt in range(2):
            try:
                await self._finish(outcome)
                return
            except Exception as e:
                self.log.warning("final_status_write_failed", attempt=attempt + 1, error=str(e))
                await asyncio.sleep(self.config.monitor_interval)

        if outcome.status.is_cancellation:
            progress, error = 0, TERMINATED_ERROR
        else:
            progress, error = 100, "; ".join(outcome.errors[:MAX_STORED_ERRORS]) or None
        try:
            current = await self.store.fetch_status(self.job_id)
            if current is not None and JobStatus(current).is_terminal:
                return
            await self.store.force_update(
                self.job_id, outcome.status, progress=progress, error=error,
                result=outcome.message,
            )
        except Exception:
            self.log.exception("final_status_lost", status=outcome.status.value)

    async def _run(self, outcome: ImportOutcome) -> None:
        request = self.request
        await self.guard.check(poll_status=True)

        await self.store.update_status(self.job_id, JobStatus.PROCESSING, progress=0)
        self.log.info("import_started", file_path=request.file_path)

        workbook = await asyncio.to_thread(Workbook.open, request.file_path)
        rows = workbook.element_type_rows()

        async with session_scope(self.session_factory) as session:
            catalog = await ProjectCatalog.load(session, request.project_id, self.aliases)
        ranges = await resolve_ranges(workbook.summary_rows(), catalog)
        self.guard.check_fast()

        decoder = RowDecoder(
            rows,
            ranges,
            catalog,
            request.project_id,
            user_name=request.user_name,
            skip_unresolved_rows=self.config.skip_unresolved_rows,
        )
        self.total_items = outcome.total_items = decoder.count_data_rows()
        await self.store.update_total_items(self.job_id, self.total_items)
        self.log.info(
            "import_decoding",
            total_items=self.total_items,
            legacy_layout=ranges.legacy,
            batch_size=request.batch_size,
        )

        persister = BatchPersister(self.session_factory, self.job_id, self.guard)
        aux_tasks = [
            asyncio.create_task(self._progress_loop()),
            asyncio.create_task(self._monitor_loop()),
        ]
        try:
            for index, batch in enumerate(batched(decoder, request.batch_size)):
                result = await persister.persist_batch(index, batch)
                outcome.processed_items += len(batch)
                self.processed_items = outcome.processed_items + len(decoder.errors)
                if result.cancelled is not None:
                    outcome.observed_by_persister = True
                    raise result.cancelled

                outcome.success_count += result.persisted
                outcome.elements_created += result.elements_created
                outcome.errors.extend(result.errors)
                if result.committed:
                    outcome.batches_committed += 1

                await self.store.update_progress(
                    self.job_id, self.progress, outcome.processed_items
                )
                self.guard.check_fast()
        finally:
            self._stop.set()
            await asyncio.gather(*aux_tasks, return_exceptions=True)

        outcome.errors.extend(str(issue) for issue in decoder.errors)
        outcome.processed_items = self.total_items
        if not outcome.errors:
            outcome.status = JobStatus.COMPLETED
        elif outcome.success_count == 0:
            outcome.status = JobStatus.FAILED
        else:
            outcome.status = JobStatus.COMPLETED_WITH_ERRORS

    async def _finish(self, outcome: ImportOutcome) -> None:
        """Write the terminal status (guarded; a prior terminal write wins)."""
        errors = outcome.errors[:MAX_STORED_ERRORS]
        error_text = "; ".join(errors) if errors else None

        if outcome.status.is_cancellation:
            await self.store.update_status(
                self.job_id,
                outcome.status,
                processed_items=outcome.processed_items,
                error=TERMINATED_ERROR,
                result=outcome.message,
            )
        else:
            await self.store.update_status(
                self.job_id,
                outcome.status,
                progress=100,
                processed_items=outcome.processed_items,
                error=error_text,
                result=outcome.message,
            )
        self.log.info(
            "import_finished",
            status=outcome.status.value,
            success_count=outcome.success_count,
            elements_created=outcome.elements_created,
            error_count=len(outcome.errors),
            elapsed_seconds=round(outcome.elapsed_seconds, 2),
        )

    async def _wait_stop(self, interval: float) -> bool:
        """Sleep ``interval`` seconds; True once the loops are told to stop."""
        try:
            await asyncio.wait_for(self._stop.wait(), interval)
        except asyncio.TimeoutError:
            pass
        return self._stop.is_set()

    async def _progress_loop(self) -> None:
        while not await self._wait_stop(self.config.progress_interval):
            try:
                await self.store.update_progress(
                    self.job_id, self.progress, self.processed_items
                )
            except Exception as e:
                self.log.warning("progress_update_failed", error=str(e))

    async def _monitor_loop(self) -> None:
        """Cancel the token and record ``cancelled`` once any signal is seen."""
        while not await self._wait_stop(self.config.monitor_interval):
            reason = self.guard.reason()
            if reason is None:
                try:
                    status = await self.store.fetch_status(self.job_id)
                except Exception as e:
                    self.log.warning("status_poll_failed", error=str(e))
                    continue
                if status in (JobStatus.CANCELLED.value, JobStatus.TERMINATED.value):
                    reason = f"status:{status}"
            if reason is None:
                continue

            self.token.cancel(reason)
            self.log.info("termination_observed", reason=reason)
            try:
                await self.store.update_status(
                    self.job_id,
                    JobStatus.CANCELLED,
                    processed_items=self.processed_items,
                    error="Job cancelled by user",
                )
            except Exception as e:
                self.log.warning("cancel_write_failed", error=str(e))
            return
