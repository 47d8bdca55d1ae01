"""Project-scoped reference lookups used while decoding a workbook.

All reference rows for a project (stages, drawing types, BOM products,
precast locations) are read once when an import starts and answered from
memory afterwards.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from precast_import.db.models import (
    DrawingTypeModel,
    InvBomModel,
    PrecastModel,
    ProjectStageModel,
)
from precast_import.importing.hierarchy import AliasTable, HierarchyResolver, PrecastNode
from precast_import.importing.types import ProjectCounts

logger = logging.getLogger(__name__)


class NameIndex:
    """Name to id map; exact match first, then case-insensitive."""

    def __init__(self, pairs: Iterable[tuple[str, int]]):
        self._exact: dict[str, int] = {}
        self._folded: dict[str, int] = {}
        self._rows = 0
        for name, row_id in pairs:
            self._rows += 1
            name = (name or "").strip()
            if not name:
                continue
            self._exact.setdefault(name, row_id)
            self._folded.setdefault(name.casefold(), row_id)

    def __len__(self) -> int:
        return self._rows

    def get(self, name: str) -> int | None:
        name = name.strip()
        if name in self._exact:
            return self._exact[name]
        return self._folded.get(name.casefold())


class ProjectCatalog:
    """Reference data for one project."""

    def __init__(
        self,
        project_id: int,
        stages: NameIndex,
        drawing_types: NameIndex,
        bom_products: NameIndex,
        hierarchy: HierarchyResolver,
    ):
        self.project_id = project_id
        self.stages = stages
        self.drawing_types = drawing_types
        self.bom_products = bom_products
        self.hierarchy = hierarchy

    @classmethod
    async def load(
        cls,
        session: AsyncSession,
        project_id: int,
        aliases: AliasTable | None = None,
    ) -> ProjectCatalog:
        """Read every reference table for ``project_id``."""
        stages = await session.execute(
            select(ProjectStageModel.name, ProjectStageModel.id).where(
                ProjectStageModel.project_id == project_id
            )
        )
        drawing_types = await session.execute(
            select(DrawingTypeModel.drawing_type_name, DrawingTypeModel.drawing_type_id).where(
                DrawingTypeModel.project_id == project_id
            )
        )
        products = await session.execute(
            select(InvBomModel.name_id, InvBomModel.id).where(
                InvBomModel.project_id == project_id
            )
        )
        precast = await session.execute(
            select(PrecastModel).where(PrecastModel.project_id == project_id)
        )

        nodes = [
            PrecastNode(
                id=row.id,
                path=row.path,
                naming_convention=row.naming_convention or "",
                parent_id=row.parent_id,
            )
            for row in precast.scalars()
        ]

        catalog = cls(
            project_id=project_id,
            stages=NameIndex(stages.all()),
            drawing_types=NameIndex(drawing_types.all()),
            bom_products=NameIndex(products.all()),
            hierarchy=HierarchyResolver(nodes, aliases),
        )
        logger.debug(f"Loaded catalog for project {project_id}: {catalog.counts}")
        return catalog

    @property
    def counts(self) -> ProjectCounts:
        return ProjectCounts(
            drawing_types=len(self.drawing_types),
            stages=len(self.stages),
            precast=len(self.hierarchy),
            bom_products=len(self.bom_products),
        )

    async def project_counts(self) -> ProjectCounts:
        return self.counts

    def stage_id(self, name: str) -> int | None:
        return self.stages.get(name)

    def drawing_type_id(self, name: str) -> int | None:
        return self.drawing_types.get(name)

    def bom_product_id(self, name: str) -> int | None:
        return self.bom_products.get(name)
