"""Cooperative cancellation for import jobs.

Every job gets a ``CancellationToken`` whose parent is the process-wide
fleet token. Cancelling the fleet token cancels every job token derived
from it. The ``CancellationGuard`` is polled by the persister between
database operations.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Awaitable, Callable
from typing import Protocol

from precast_import.importing.types import ImportCancelled, JobStatus

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe, one-shot cancellation flag with an optional parent."""

    def __init__(self, parent: CancellationToken | None = None):
        self._event = threading.Event()
        self._parent = parent
        self.reason: str | None = None

    @property
    def parent(self) -> CancellationToken | None:
        return self._parent

    def attach(self, parent: CancellationToken | None) -> None:
        """Re-parent the token (used when a job joins a fresh fleet)."""
        self._parent = parent

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the token. Returns False if it was already cancelled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def __repr__(self) -> str:
        return f"<CancellationToken(cancelled={self.cancelled}, reason={self.reason})>"


class RuntimeFlags(Protocol):
    """In-memory job observers consulted by the guard."""

    def is_terminated(self, job_id: int) -> bool: ...

    def is_global_termination_set(self) -> bool: ...

    def is_running(self, job_id: int) -> bool: ...


StatusReader = Callable[[], Awaitable["str | None"]]


class CancellationGuard:
    """Five-condition cancellation check for one job.

    The in-memory conditions (token, terminated flag, fleet flag, is-running)
    are cheap and checked on every call. The persisted status is the system
    of record and is only read when ``poll_status`` is requested.

    Args:
        job_id: Job being processed
        token: The job's cancellation token
        flags: Registry answering the in-memory observers
        status_reader: Coroutine function returning the persisted job status
    """

    def __init__(
        self,
        job_id: int,
        token: CancellationToken,
        flags: RuntimeFlags,
        status_reader: StatusReader | None = None,
    ):
        self.job_id = job_id
        self.token = token
        self.flags = flags
        self.status_reader = status_reader
        self.status_polls = 0

    def reason(self) -> str | None:
        """Name of the first in-memory signal that is set, or None."""
        if self.token.cancelled:
            return "token"
        if self.flags.is_terminated(self.job_id):
            return "terminated"
        if self.flags.is_global_termination_set():
            return "global"
        if not self.flags.is_running(self.job_id):
            return "not_running"
        return None

    def check_fast(self) -> None:
        """Raise ImportCancelled if any in-memory signal is set."""
        reason = self.reason()
        if reason is not None:
            raise ImportCancelled(self.job_id, reason)

    async def check(self, poll_status: bool = False) -> None:
        """Raise ImportCancelled if the job must stop.

        Args:
            poll_status: Also read the persisted job status
        """
        self.check_fast()
        if not poll_status or self.status_reader is None:
            return

        self.status_polls += 1
        status = await self.status_reader()
        if status in (JobStatus.CANCELLED.value, JobStatus.TERMINATED.value):
            self.token.cancel(f"status:{status}")
            raise ImportCancelled(self.job_id, "status")
        # A signal may have arrived while the SELECT was in flight
        self.check_fast()
