"""SQLAlchemy async database models for precast element-type imports.

Maps to the shared project schema. Only ``import_jobs`` and the element-type
tables are written by the import engine; ``precast``, ``drawing_type``,
``project_stages``, ``inv_bom``, ``task``, ``activity`` and ``precast_stock``
are reference or downstream tables that are read for lookups and rollback
gates.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    false,
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Stage paths are int[] on PostgreSQL; JSON lists elsewhere (SQLite tests)
StagePathType = JSON().with_variant(ARRAY(Integer), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ImportJobModel(Base):
    """Background import job row.

    Status transitions are monotonic: pending -> processing -> terminal
    (completed, completed_with_errors, failed, cancelled, terminated).
    """

    __tablename__ = "import_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(
        String(64), nullable=False, default="element_type_import"
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    error: Mapped[str | None] = mapped_column(Text)
    result: Mapped[str | None] = mapped_column(Text)
    file_path: Mapped[str | None] = mapped_column(Text)
    rollback_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    __table_args__ = (Index("idx_import_jobs_project_created", "project_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<ImportJob(id={self.id}, project={self.project_id}, status={self.status})>"


class ElementTypeModel(Base):
    """Element type template created by an import job."""

    __tablename__ = "element_type"

    element_type_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    element_type: Mapped[str] = mapped_column(Text, nullable=False)
    element_type_name: Mapped[str | None] = mapped_column(Text)
    thickness: Mapped[float | None] = mapped_column(Float)
    length: Mapped[float | None] = mapped_column(Float)
    height: Mapped[float | None] = mapped_column(Float)
    width: Mapped[float | None] = mapped_column(Float)
    volume: Mapped[float | None] = mapped_column(Float)
    area: Mapped[float | None] = mapped_column(Float)
    mass: Mapped[float | None] = mapped_column(Float)
    density: Mapped[float | None] = mapped_column(Float)
    element_type_version: Mapped[str | None] = mapped_column(Text)
    total_count_element: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    job_id: Mapped[int | None] = mapped_column(Integer, index=True)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (Index("idx_element_type_project_job", "project_id", "job_id"),)


class DrawingModel(Base):
    """Drawing attached to an element type."""

    __tablename__ = "drawings"

    drawing_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    element_type_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("element_type.element_type_id"), nullable=False, index=True
    )
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    drawing_type_id: Mapped[int] = mapped_column(Integer, nullable=False)
    file: Mapped[str | None] = mapped_column(Text)
    current_version: Mapped[str] = mapped_column(String(32), nullable=False, default="VR-1")
    comments: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(Text)
    updated_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class DrawingRevisionModel(Base):
    """Revision of a drawing; removed before its parent drawing."""

    __tablename__ = "drawings_revision"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    parent_drawing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("drawings.drawing_id"), nullable=False, index=True
    )
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    version: Mapped[str | None] = mapped_column(String(32))
    file: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )


class HierarchyQuantityModel(Base):
    """Declared number of elements of a type at one precast location."""

    __tablename__ = "element_type_hierarchy_quantity"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    element_type_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("element_type.element_type_id"), nullable=False, index=True
    )
    hierarchy_id: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    naming_convention: Mapped[str | None] = mapped_column(Text)
    element_type_name: Mapped[str | None] = mapped_column(Text)
    element_type: Mapped[str | None] = mapped_column(Text)
    left_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)


class ElementTypeQuantityModel(Base):
    """Tower/floor quantity mapping for non-root precast locations."""

    __tablename__ = "element_type_quantity"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    element_type_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("element_type.element_type_id"), nullable=False, index=True
    )
    tower: Mapped[int] = mapped_column(Integer, nullable=False)
    floor: Mapped[int] = mapped_column(Integer, nullable=False)
    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    left_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    element_type: Mapped[str | None] = mapped_column(Text)
    element_type_name: Mapped[str | None] = mapped_column(Text)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )


class ElementModel(Base):
    """One physical instance of an element type."""

    __tablename__ = "element"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    element_type_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("element_type.element_type_id"), nullable=False, index=True
    )
    element_id: Mapped[str] = mapped_column(Text, nullable=False)
    element_name: Mapped[str | None] = mapped_column(Text)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    target_location: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="1")
    instage: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    disable: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )


class ElementTypePathModel(Base):
    """Ordered production stages for an element type."""

    __tablename__ = "element_type_path"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    element_type_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("element_type.element_type_id"), nullable=False, index=True
    )
    stage_path: Mapped[list[int]] = mapped_column(StagePathType, nullable=False)


class ElementTypeBomModel(Base):
    """Bill-of-materials line consumed per element type."""

    __tablename__ = "element_type_bom"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    element_type_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("element_type.element_type_id"), nullable=False, index=True
    )
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(Text, nullable=False, default="")
    rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_by: Mapped[str | None] = mapped_column(Text)
    updated_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )


class ElementTypeRevisionModel(Base):
    """Historic revision of an element type (written outside the importer)."""

    __tablename__ = "element_type_revision"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    element_type_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("element_type.element_type_id"), nullable=False, index=True
    )
    element_type_version: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )


# ---------------------------------------------------------------------------
# Reference tables (read-only for the import engine)
# ---------------------------------------------------------------------------


class PrecastModel(Base):
    """Node of the project's physical location tree (towers, floors, zones)."""

    __tablename__ = "precast"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(Text)
    path: Mapped[str] = mapped_column(Text, nullable=False)  # ltree on PostgreSQL
    naming_convention: Mapped[str | None] = mapped_column(Text)
    parent_id: Mapped[int | None] = mapped_column(Integer)

    __table_args__ = (Index("idx_precast_project_path", "project_id", "path"),)


class DrawingTypeModel(Base):
    __tablename__ = "drawing_type"

    drawing_type_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    drawing_type_name: Mapped[str] = mapped_column(Text, nullable=False)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)


class ProjectStageModel(Base):
    __tablename__ = "project_stages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    order: Mapped[int | None] = mapped_column(Integer)


class InvBomModel(Base):
    __tablename__ = "inv_bom"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name_id: Mapped[str] = mapped_column(Text, nullable=False)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    unit: Mapped[str | None] = mapped_column(Text)


class TaskModel(Base):
    __tablename__ = "task"

    task_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    element_type_id: Mapped[int | None] = mapped_column(Integer, index=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str | None] = mapped_column(String(32))


class ActivityModel(Base):
    __tablename__ = "activity"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(Integer, ForeignKey("task.task_id"), nullable=False)
    status: Mapped[str | None] = mapped_column(String(32))


class PrecastStockModel(Base):
    __tablename__ = "precast_stock"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    element_id: Mapped[int] = mapped_column(Integer, nullable=False)
    element_type_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    stockyard: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
