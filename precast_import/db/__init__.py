"""Database layer for precast imports with async SQLAlchemy."""

from precast_import.db.connection import get_session, init_db
from precast_import.db.models import (
    Base,
    DrawingModel,
    ElementModel,
    ElementTypeBomModel,
    ElementTypeModel,
    ElementTypePathModel,
    ElementTypeQuantityModel,
    HierarchyQuantityModel,
    ImportJobModel,
    PrecastModel,
)

__all__ = [
    "Base",
    "ImportJobModel",
    "ElementTypeModel",
    "DrawingModel",
    "HierarchyQuantityModel",
    "ElementTypeQuantityModel",
    "ElementModel",
    "ElementTypePathModel",
    "ElementTypeBomModel",
    "PrecastModel",
    "get_session",
    "init_db",
]
