"""Local Maven2-layout artifact cache."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from j_dep_resolver.config import ARTIFACT_PATTERN, METADATA_PATTERN, SNAPSHOT_METADATA_PATTERN, format_path
from j_dep_resolver.metadata import Metadata, next_revision
from j_dep_resolver.models import GAV, POM, Dependency, Pom
from j_dep_resolver.parser import render_pom
from j_dep_resolver.policies import PurgePolicy
from j_dep_resolver.provenance import PROVENANCE_FILE, ProvenanceStore


logger = logging.getLogger(__name__)


def sha1_hex(content: bytes) -> str:
    return hashlib.sha1(content).hexdigest()


def md5_hex(content: bytes) -> str:
    return hashlib.md5(content).hexdigest()


def atomic_write(path: Path, content: bytes, mtime: datetime | None = None) -> Path:
    """Write `content` to `path` through a temporary file and `os.replace`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}-", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    if mtime is not None:
        stamp = mtime.timestamp()
        os.utime(path, (stamp, stamp))
    return path


class ArtifactCache:
    """Files under `{root}/{groupPath}/{artifactId}/{version}/`.

    Artifact-level maven-metadata.xml lives in the artifactId directory,
    snapshot metadata in the version directory. Snapshot artifacts are
    stored under their concrete revision.
    """

    def __init__(self, root: str | Path, store: ProvenanceStore | None = None) -> None:
        self.root = Path(root)
        self.store = store or ProvenanceStore(self.root)

    def artifact_path(self, dependency: Dependency, ext: str | None = None) -> Path:
        return self.root / format_path(ARTIFACT_PATTERN, dependency, ext)

    def checksum_path(self, dependency: Dependency, ext: str | None = None, algorithm: str = "sha1") -> Path:
        path = self.artifact_path(dependency, ext)
        return path.with_name(f"{path.name}.{algorithm}")

    def version_dir(self, dependency: Dependency) -> Path:
        return self.artifact_path(dependency, POM).parent

    def metadata_path(self, dependency: Dependency, snapshot: bool | None = None) -> Path:
        if snapshot is None:
            snapshot = dependency.is_snapshot
        pattern = SNAPSHOT_METADATA_PATTERN if snapshot else METADATA_PATTERN
        return self.root / format_path(pattern, dependency)

    def pom_mtime_ns(self, dependency: Dependency) -> int | None:
        path = self.artifact_path(dependency, POM)
        try:
            return path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def write_artifact(
        self,
        dependency: Dependency,
        ext: str | None,
        content: bytes,
        mtime: datetime | None = None,
    ) -> Path:
        return atomic_write(self.artifact_path(dependency, ext), content, mtime)

    def write_checksums(self, dependency: Dependency, ext: str | None, content: bytes) -> None:
        atomic_write(self.checksum_path(dependency, ext, "sha1"), sha1_hex(content).encode("ascii"))
        atomic_write(self.checksum_path(dependency, ext, "md5"), md5_hex(content).encode("ascii"))

    def read_metadata(self, dependency: Dependency, snapshot: bool | None = None) -> Metadata | None:
        path = self.metadata_path(dependency, snapshot)
        if not path.exists():
            return None
        return Metadata.from_xml(path.read_bytes())

    def write_metadata(self, dependency: Dependency, metadata: Metadata, snapshot: bool | None = None) -> Path:
        return atomic_write(self.metadata_path(dependency, snapshot), metadata.to_xml())

    def _coordinate_files(self, dependency: Dependency, revision: str) -> list[Path]:
        folder = self.version_dir(dependency)
        if not folder.is_dir():
            return []
        prefix = f"{dependency.artifact_id}-{revision}"
        return [
            f
            for f in folder.iterdir()
            if f.is_file()
            and f.name != PROVENANCE_FILE
            and f.name.startswith(prefix)
            and f.name[len(prefix):][:1] in (".", "-")
        ]

    def purge_artifacts(self, dependency: Dependency) -> list[Path]:
        """Delete every cached file of `dependency` except its provenance record."""
        removed = self._coordinate_files(dependency, dependency.revision or dependency.version or "")
        for path in removed:
            path.unlink(missing_ok=True)
            logger.debug("Purged %s", path)
        return removed

    def purge_snapshots(self, dependency: Dependency, policy: PurgePolicy) -> list[str]:
        """Remove snapshot revisions of `dependency` that `policy` does not retain.

        Returns:
            The purged revisions.
        """
        if not dependency.is_snapshot:
            return []
        metadata = self.read_metadata(dependency)
        if metadata is None:
            return []
        removed = metadata.purge_snapshots(policy)
        if not removed:
            return []
        for revision in removed:
            for path in self._coordinate_files(dependency, revision):
                path.unlink(missing_ok=True)
        self.write_metadata(dependency, metadata)
        logger.info("Purged %d old snapshot(s) of %s", len(removed), dependency.coordinates)
        return removed

    def install(
        self,
        dependency: Dependency,
        artifact: str | Path,
        pom: Pom | str | Path | None = None,
        policy: PurgePolicy | None = None,
        now: datetime | None = None,
    ) -> Dependency:
        """Publish a locally built artifact into the cache.

        Snapshots get the next revision of the cached snapshot metadata.
        Checksum sidecars, snapshot and artifact metadata and the provenance
        record are written, then old snapshots are purged.

        Args:
            dependency: Coordinates of the artifact.
            artifact: The built file.
            pom: POM model or file to publish alongside; a minimal POM is generated when absent.
            policy: Snapshot purge policy applied after the install.
            now: Install time.

        Returns:
            The installed coordinate, with its revision for snapshots.
        """
        now = now or datetime.now(timezone.utc)
        installed = dependency.model_copy(deep=True)
        if installed.is_snapshot:
            installed.revision = next_revision(installed.version or "", self.read_metadata(installed), now)

        content = Path(artifact).read_bytes()
        if installed.type != POM:
            self.write_artifact(installed, installed.type, content)
            self.write_checksums(installed, installed.type, content)

        if isinstance(pom, Pom):
            pom_content = render_pom(pom)
        elif pom is not None:
            pom_content = Path(pom).read_bytes()
        elif installed.type == POM:
            pom_content = content
        else:
            pom_content = render_pom(
                Pom(
                    project=GAV(
                        group_id=installed.group_id,
                        artifact_id=installed.artifact_id,
                        version=installed.version or "",
                    ),
                    packaging=installed.type,
                )
            )
        self.write_artifact(installed, POM, pom_content)
        self.write_checksums(installed, POM, pom_content)

        if installed.is_snapshot:
            snapshot_metadata = Metadata.for_snapshot(installed)
            cached = self.read_metadata(installed)
            if cached is not None:
                snapshot_metadata.merge(cached)
            self.write_metadata(installed, snapshot_metadata)

        artifact_metadata = Metadata.for_artifact(installed)
        cached = self.read_metadata(installed, snapshot=False)
        if cached is not None:
            artifact_metadata.merge(cached)
        self.write_metadata(installed, artifact_metadata, snapshot=False)

        record = self.store.read(installed)
        record.origin = self.root.resolve().as_uri()
        record.last_downloaded = now
        record.last_checked = now
        record.last_updated = now
        record.revision = installed.revision
        self.store.write(installed, record)

        if installed.is_snapshot and policy is not None:
            self.purge_snapshots(installed, policy)

        logger.info("Installed %s as %s", installed.coordinates, self.artifact_path(installed))
        return installed
