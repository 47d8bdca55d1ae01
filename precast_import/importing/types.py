"""Type definitions for element-type import operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class JobStatus(str, Enum):
    """Persistent status of an import job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_cancellation(self) -> bool:
        return self in CANCELLATION_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.COMPLETED_WITH_ERRORS,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
        JobStatus.TERMINATED,
    }
)
CANCELLATION_STATUSES = frozenset({JobStatus.CANCELLED, JobStatus.TERMINATED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


class Section(str, Enum):
    """Semantic column sections of the Element Types sheet."""

    BASE = "base"
    DRAWING_TYPES = "drawing_types"
    HIERARCHY = "hierarchy"
    STAGES = "stages"
    BOM = "bom"


@dataclass(frozen=True)
class RangeInfo:
    """Inclusive zero-based column range of one section."""

    start: int = 0
    end: int = 0
    count: int = 0

    @property
    def is_empty(self) -> bool:
        return self.count <= 0 or self.end < self.start

    def columns(self) -> range:
        """Column indices covered by this section (empty when count is 0)."""
        if self.is_empty:
            return range(0)
        return range(self.start, self.end + 1)

    def __contains__(self, column: object) -> bool:
        return isinstance(column, int) and column in self.columns()


@dataclass(frozen=True)
class SectionRanges:
    """Resolved column ranges for every section of a workbook."""

    base: RangeInfo
    drawing_types: RangeInfo
    hierarchy: RangeInfo
    stages: RangeInfo
    bom: RangeInfo
    legacy: bool = False  # derived from DB counts, no Summary sheet

    def for_section(self, section: Section) -> RangeInfo:
        return getattr(self, section.value)

    def section_of(self, column: int) -> Optional[Section]:
        """Return the section a column belongs to, or None."""
        for section in (
            Section.BASE,
            Section.DRAWING_TYPES,
            Section.HIERARCHY,
            Section.STAGES,
            Section.BOM,
        ):
            if column in self.for_section(section):
                return section
        return None


@dataclass(frozen=True)
class ProjectCounts:
    """Per-project counts of reference rows used to size legacy sections."""

    drawing_types: int = 0
    stages: int = 0
    precast: int = 0
    bom_products: int = 0


@dataclass
class DrawingSpec:
    """Drawing emitted for a non-empty cell of the drawings section."""

    drawing_id: int
    drawing_type_id: int
    drawing_type_name: str
    file: str
    current_version: str = "VR-1"


@dataclass
class HierarchyEntry:
    """Declared quantity of elements at one resolved precast location."""

    hierarchy_id: int
    quantity: int
    naming_convention: str
    path: str
    parent_id: Optional[int] = None


@dataclass
class BomLine:
    """Bill-of-materials product consumed by an element type."""

    product_id: int
    product_name: str
    quantity: float


@dataclass
class ElementTypeRecord:
    """Decoded row of the Element Types sheet.

    This is the canonical format the decoder produces and the persister
    consumes.
    """

    row_number: int  # 1-based sheet row, for error messages
    element_type: str
    element_type_name: str
    project_id: int
    created_by: str = ""

    # Geometry
    height: float = 0.0
    length: float = 0.0
    thickness: float = 0.0
    mass: float = 0.0
    volume: float = 0.0
    area: float = 0.0
    width: float = 0.0
    density: float = 0.0
    version: str = ""

    drawings: list[DrawingSpec] = field(default_factory=list)
    hierarchy: list[HierarchyEntry] = field(default_factory=list)
    stage_path: list[int] = field(default_factory=list)
    bom: list[BomLine] = field(default_factory=list)

    def __post_init__(self):
        """Derive density from mass and volume."""
        if not self.density and self.volume > 0:
            self.density = self.mass / self.volume

    @property
    def total_elements(self) -> int:
        """Number of element instances this row creates."""
        return sum(entry.quantity for entry in self.hierarchy)


@dataclass
class DecodeIssue:
    """Problem found while decoding a single row."""

    row_number: int
    message: str
    column: Optional[int] = None
    skipped_row: bool = False

    def __str__(self) -> str:
        where = f"row {self.row_number}"
        if self.column is not None:
            where += f", column {self.column + 1}"
        return f"{where}: {self.message}"


@dataclass
class BatchResult:
    """Outcome of persisting one batch inside a single transaction."""

    batch_index: int
    size: int
    persisted: int = 0
    elements_created: int = 0
    errors: list[str] = field(default_factory=list)
    cancelled: Optional["ImportCancelled"] = None

    @property
    def committed(self) -> bool:
        return self.cancelled is None and not self.errors


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ImportJobError(Exception):
    """Base class for import engine errors."""


class ValidationError(ImportJobError):
    """Invalid request or workbook; nothing was written."""


class RangeParseError(ValidationError):
    """Summary sheet or column range could not be parsed."""


class ImportValidationError(ValidationError):
    """Import request parameters are out of bounds."""


class ImportCancelled(ImportJobError):
    """Cancellation observed while processing a job.

    Distinct from per-row data errors; ``reason`` names the signal that
    tripped (token, terminated, global, not_running, status).
    """

    def __init__(self, job_id: int, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} cancelled ({reason})")


class JobNotFoundError(ImportJobError):
    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobCreationBlockedError(ImportJobError):
    """New jobs are refused while shutting down or after a fleet halt."""


class ShutdownTimeoutError(ImportJobError):
    """Workers did not drain before the shutdown timeout."""


class RollbackError(ImportJobError):
    """Rollback could not be performed."""


class RollbackNotEnabled(RollbackError):
    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(
            f"Rollback is not enabled for job {job_id}. "
            "Enable rollback first or it has already been performed."
        )


class RollbackDenied(RollbackError):
    """A safety gate found downstream activity on the job's element types."""

    def __init__(self, job_id: int, gate: str, count: int, message: str):
        self.job_id = job_id
        self.gate = gate
        self.count = count
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": "Rollback denied",
            "job_id": self.job_id,
            "type": self.gate,
            "count": self.count,
            "message": self.message,
        }
