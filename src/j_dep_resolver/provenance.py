"""Per-coordinate provenance records kept next to cached artifacts."""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from j_dep_resolver.models import Dependency, Scope


logger = logging.getLogger(__name__)

PROVENANCE_FILE = "provenance.json"


class ProvenanceRecord(BaseModel):
    """Where a cached coordinate came from and what is known about it.

    `solutions` holds the transitive dependencies of the coordinate's POM
    per solution scope, with rings relative to the coordinate (ring 0 is a
    direct dependency of the POM). They are valid only while `last_solved`
    equals the POM's modification time in nanoseconds.
    """

    origin: str | None = None
    last_checked: datetime | None = None
    last_updated: datetime | None = None
    last_downloaded: datetime | None = None
    release: str | None = None
    latest: str | None = None
    revision: str | None = None
    last_solved: int | None = None
    solutions: dict[Scope, list[Dependency]] = Field(default_factory=dict)

    @property
    def is_refresh_required(self) -> bool:
        """True when the remote copy was updated after our last download."""
        if self.last_updated is None:
            return False
        if self.last_downloaded is None:
            return True
        return self.last_updated > self.last_downloaded

    def solution(self, scope: Scope, pom_mtime_ns: int, ring: int) -> list[Dependency] | None:
        """Return the cached solution rebased onto `ring`, or None if invalid.

        Args:
            scope: The solution scope.
            pom_mtime_ns: Current modification time of the owning POM.
            ring: Ring of the coordinate that owns this record.
        """
        if self.last_solved != pom_mtime_ns or scope not in self.solutions:
            return None
        rebased: list[Dependency] = []
        for dep in self.solutions[scope]:
            copy = dep.model_copy(deep=True)
            copy.ring += ring + 1
            rebased.append(copy)
        return rebased

    def store_solution(
        self, scope: Scope, dependencies: list[Dependency], pom_mtime_ns: int, ring: int
    ) -> None:
        """Cache `dependencies` (rings relative to `ring`) for `scope`.

        A POM change invalidates every other cached scope.
        """
        if self.last_solved != pom_mtime_ns:
            self.solutions.clear()
        relative: list[Dependency] = []
        for dep in dependencies:
            copy = dep.model_copy(deep=True)
            copy.ring -= ring + 1
            relative.append(copy)
        self.solutions[scope] = relative
        self.last_solved = pom_mtime_ns


class ProvenanceStore:
    """Reads and writes `provenance.json` in each cached version directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path(self, dependency: Dependency) -> Path:
        return (
            self.root
            / dependency.group_id.replace(".", "/")
            / dependency.artifact_id
            / (dependency.version or "")
            / PROVENANCE_FILE
        )

    def read(self, dependency: Dependency) -> ProvenanceRecord:
        """Return the record of `dependency`; an empty one if none is stored."""
        path = self.path(dependency)
        if not path.exists():
            return ProvenanceRecord()
        try:
            return ProvenanceRecord.model_validate_json(path.read_bytes())
        except (OSError, ValidationError) as exc:
            logger.warning("Discarding unreadable provenance %s: %s", path, exc)
            return ProvenanceRecord()

    def write(self, dependency: Dependency, record: ProvenanceRecord) -> Path:
        """Atomically replace the stored record of `dependency`."""
        path = self.path(dependency)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".provenance-", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(record.model_dump_json(indent=2, exclude_defaults=True))
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return path
