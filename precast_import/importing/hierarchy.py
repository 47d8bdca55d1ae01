"""Hierarchy name resolution against the project's precast tree.

Spreadsheet headers such as ``TOWER G6`` / ``Floor-1`` are canonicalized to
ltree-style paths (``tower_g6.floor_1``) and matched against
``precast.path``. Legacy projects store some paths under alternative
prefixes (``tawor_g6``, ``km_g6``, ``kmfloor_1``); those alternatives come
from an alias table loaded from YAML at startup.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_ALIAS_GROUPS: tuple[tuple[str, ...], ...] = (
    ("tower_", "tawor_", "km_"),
    ("floor_", "kmfloor_"),
)


@dataclass(frozen=True)
class PrecastNode:
    """Stored precast location."""

    id: int
    path: str
    naming_convention: str
    parent_id: int | None = None

    @property
    def has_distinct_parent(self) -> bool:
        return self.parent_id is not None and self.parent_id != self.id


@dataclass(frozen=True)
class AliasTable:
    """Groups of interchangeable path-segment prefixes."""

    groups: tuple[tuple[str, ...], ...] = DEFAULT_ALIAS_GROUPS

    @classmethod
    def from_yaml(cls, path: Path) -> AliasTable:
        """Load alias groups from YAML.

        Expected shape::

            alias_groups:
              - [tower_, tawor_, km_]
              - [floor_, kmfloor_]

        Falls back to the built-in groups when the file does not exist.
        """
        if not path.exists():
            logger.warning(f"Hierarchy alias file not found at {path}; using defaults")
            return cls()

        with path.open() as f:
            data = yaml.safe_load(f) or {}

        groups = []
        for group in data.get("alias_groups", []):
            prefixes = tuple(str(p).strip().lower() for p in group if str(p).strip())
            if len(prefixes) > 1:
                groups.append(prefixes)
        return cls(groups=tuple(groups))

    def alternatives(self, segment: str) -> list[str]:
        """Return the segment rewritten with every alias of its prefix.

        The longest matching prefix wins so ``kmfloor_1`` is not mistaken
        for a ``km_`` segment.
        """
        matches = [
            (prefix, group)
            for group in self.groups
            for prefix in group
            if segment.lower().startswith(prefix)
        ]
        if not matches:
            return []

        prefix, group = max(matches, key=lambda m: len(m[0]))
        rest = segment[len(prefix):]
        return [alias + rest for alias in group if alias != prefix]


def sanitize_for_ltree(name: str) -> str:
    """Ltree labels cannot contain hyphens or spaces."""
    return name.replace("-", "_").replace(" ", "_")


def _clean_part(part: str) -> str:
    return part.strip().replace(" ", "_").replace("-", "_").lower()


def canonical_name(main_header: str, sub_header: str) -> str:
    """Build the canonical ltree path for a ``(main, sub)`` header pair.

    Returns an empty string when both headers are blank.
    """
    main = _clean_part(main_header)
    sub = _clean_part(sub_header)
    joined = ".".join(part for part in (main, sub) if part)
    return sanitize_for_ltree(joined)


def generate_variations(name: str, aliases: AliasTable) -> list[str]:
    """Candidate paths for ``name``, most specific first, without duplicates."""
    candidates = [name, name.upper(), name.title()]

    segment_options = []
    for segment in name.split("."):
        segment_options.append([segment, *aliases.alternatives(segment)])
    for combo in itertools.product(*segment_options):
        candidates.append(".".join(combo))

    seen: set[str] = set()
    unique = []
    for candidate in candidates:
        candidate = sanitize_for_ltree(candidate)
        if candidate and candidate not in seen:
            seen.add(candidate)
            unique.append(candidate)
    return unique


class HierarchyResolver:
    """Resolve header pairs to precast nodes of a single project.

    Resolution is memoized so the same header pair maps to the same node
    for the lifetime of an import.
    """

    def __init__(self, nodes: Iterable[PrecastNode], aliases: AliasTable | None = None):
        nodes = list(nodes)
        self.aliases = aliases or AliasTable()
        self._by_path: dict[str, PrecastNode] = {}
        for node in nodes:
            self._by_path.setdefault(node.path, node)
        self._by_id: dict[int, PrecastNode] = {node.id: node for node in nodes}
        self._cache: dict[str, PrecastNode | None] = {}

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, node_id: int) -> PrecastNode | None:
        return self._by_id.get(node_id)

    def resolve(self, main_header: str, sub_header: str) -> PrecastNode | None:
        """Find the precast node for a header pair.

        Tries the exact canonical path first, then each alias variation.
        """
        name = canonical_name(main_header, sub_header)
        if not name:
            return None

        if name in self._cache:
            return self._cache[name]

        node = self._by_path.get(name)
        if node is None:
            for candidate in generate_variations(name, self.aliases):
                node = self._by_path.get(candidate)
                if node is not None:
                    logger.debug(f"Hierarchy {name!r} matched variation {candidate!r}")
                    break

        if node is None:
            logger.debug(f"Hierarchy {name!r} not found in precast")
        self._cache[name] = node
        return node
