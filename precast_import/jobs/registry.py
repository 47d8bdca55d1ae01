"""In-memory registry of running import jobs.

One ``JobRuntimeState`` record per job, holding its status, timestamps and
cancellation token, guarded by a single lock. The fleet token is the parent
of every job token; cancelling it is the global termination signal.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from precast_import.importing.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class RuntimeStatus(str, Enum):
    RUNNING = "running"
    CANCELLED = "cancelled"


class CancelOutcome(str, Enum):
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    ALREADY_TERMINAL = "already_terminal"


@dataclass
class JobRuntimeState:
    """Runtime view of a registered job; exists only while registered."""

    job_id: int
    token: CancellationToken
    status: RuntimeStatus = RuntimeStatus.RUNNING
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: datetime | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class JobRegistry:
    """Registry of running jobs and process-wide termination flags.

    Args:
        halt_fleet_on_cancel: Whether cancelling one job also trips the
            fleet token and blocks job creation
    """

    def __init__(self, halt_fleet_on_cancel: bool = True):
        self.halt_fleet_on_cancel = halt_fleet_on_cancel
        self._lock = threading.RLock()
        self._jobs: dict[int, JobRuntimeState] = {}
        self._terminated: set[int] = set()
        self._fleet = CancellationToken()
        self._creation_blocked = False
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def new_token(self) -> CancellationToken:
        with self._lock:
            return self._fleet.child()

    def register(self, job_id: int, token: CancellationToken | None = None) -> bool:
        """Register a job as running.

        A fresh registration clears a previous terminated flag for the id and
        resets the fleet token and the creation block. During shutdown the
        token is cancelled immediately and the job is not registered.

        Returns:
            True if registered, False if rejected
        """
        token = token or CancellationToken()
        with self._lock:
            if self._shutting_down:
                token.cancel("shutdown")
                logger.info(f"Rejected registration of job {job_id}: shutting down")
                return False

            existing = self._jobs.get(job_id)
            if existing is not None and existing.status == RuntimeStatus.RUNNING:
                logger.warning(f"Job {job_id} is already running")
                return False

            if self._fleet.cancelled:
                self._fleet = CancellationToken()
            self._creation_blocked = False
            self._terminated.discard(job_id)

            token.attach(self._fleet)
            self._jobs[job_id] = JobRuntimeState(
                job_id=job_id, token=token, started_at=datetime.utcnow()
            )

        logger.debug(f"Registered job {job_id}")
        return True

    def unregister(self, job_id: int) -> None:
        """Drop the job; lift a fleet halt once no cancelled job is left."""
        with self._lock:
            state = self._jobs.pop(job_id, None)
            self._release_if_drained()
        if state is not None:
            state.completed_at = datetime.utcnow()
            logger.debug(f"Unregistered job {job_id}")

    def release_if_drained(self) -> bool:
        """Reset the fleet token and creation block if every cancelled job exited.

        Returns:
            True if job creation is allowed afterwards
        """
        with self._lock:
            self._release_if_drained()
            return not self._creation_blocked

    def _release_if_drained(self) -> None:
        if not (self._fleet.cancelled or self._creation_blocked):
            return
        if any(state.token.cancelled for state in self._jobs.values()):
            return
        self._fleet = CancellationToken()
        self._creation_blocked = False
        logger.info("Cancelled jobs drained; job creation unblocked")

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, job_id: int, reason: str = "cancelled") -> CancelOutcome:
        """Cancel a registered job.

        Latches the terminated flag and, with ``halt_fleet_on_cancel``, trips
        the fleet token and blocks job creation.
        """
        with self._lock:
            state = self._jobs.get(job_id)
            if state is None:
                return CancelOutcome.NOT_FOUND
            if state.status != RuntimeStatus.RUNNING:
                return CancelOutcome.ALREADY_TERMINAL

            state.token.cancel(reason)
            state.status = RuntimeStatus.CANCELLED
            state.cancelled_at = datetime.utcnow()
            self._terminated.add(job_id)
            if self.halt_fleet_on_cancel:
                self._fleet.cancel(f"job {job_id} cancelled")
                self._creation_blocked = True

        logger.info(f"Cancelled job {job_id} ({reason})")
        return CancelOutcome.CANCELLED

    def mark_terminated(self, job_id: int) -> None:
        with self._lock:
            self._terminated.add(job_id)

    def halt_fleet(self, reason: str = "halt") -> None:
        """Trip the global termination flag and block job creation."""
        with self._lock:
            self._fleet.cancel(reason)
            self._creation_blocked = True
        logger.info(f"Fleet halted ({reason})")

    def terminate_all(self) -> list[int]:
        """Cancel every running job and block new ones."""
        with self._lock:
            job_ids = [
                job_id
                for job_id, state in self._jobs.items()
                if state.status == RuntimeStatus.RUNNING
            ]
            for job_id in job_ids:
                state = self._jobs[job_id]
                state.token.cancel("terminate_all")
                state.status = RuntimeStatus.CANCELLED
                state.cancelled_at = datetime.utcnow()
                self._terminated.add(job_id)
            self._fleet.cancel("terminate_all")
            self._creation_blocked = True
        return job_ids

    def begin_shutdown(self) -> list[int]:
        """Refuse new registrations and cancel every running job."""
        with self._lock:
            self._shutting_down = True
            job_ids = list(self._jobs)
            for state in self._jobs.values():
                state.token.cancel("shutdown")
        logger.info(f"Shutting down; cancelled {len(job_ids)} running jobs")
        return job_ids

    def end_shutdown(self) -> None:
        with self._lock:
            self._shutting_down = False

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def get(self, job_id: int) -> JobRuntimeState | None:
        with self._lock:
            return self._jobs.get(job_id)

    def is_registered(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._jobs

    def is_running(self, job_id: int) -> bool:
        with self._lock:
            state = self._jobs.get(job_id)
            return (
                state is not None
                and state.status == RuntimeStatus.RUNNING
                and not state.token.cancelled
            )

    def is_terminated(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._terminated

    def is_global_termination_set(self) -> bool:
        with self._lock:
            return self._fleet.cancelled

    def is_creation_blocked(self) -> bool:
        with self._lock:
            return self._creation_blocked

    def is_shutting_down(self) -> bool:
        with self._lock:
            return self._shutting_down

    def running_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._jobs)

    def snapshot(self) -> dict:
        with self._lock:
            states = {job_id: state.to_dict() for job_id, state in self._jobs.items()}
            return {
                "running_jobs": sorted(states),
                "count": len(states),
                "shutting_down": self._shutting_down,
                "global_termination": self._fleet.cancelled,
                "creation_blocked": self._creation_blocked,
                "job_states": states,
            }

    async def wait_stopped(self, job_id: int, timeout: float, poll: float = 0.01) -> bool:
        """Wait until ``job_id`` is unregistered.

        Returns:
            True if the job stopped within ``timeout`` seconds
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.is_registered(job_id):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(poll)
        return True
