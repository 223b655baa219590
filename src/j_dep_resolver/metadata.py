"""maven-metadata.xml model and the service that keeps it current in the cache."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Sequence

from lxml import etree
from pydantic import BaseModel, ConfigDict, Field

from j_dep_resolver.exceptions import ConfigurationError, MetadataParseError, RepositoryTransportError
from j_dep_resolver.models import LATEST, RELEASE, SNAPSHOT, Dependency
from j_dep_resolver.policies import PurgePolicy
from j_dep_resolver.versions import ArtifactVersion

if TYPE_CHECKING:
    from j_dep_resolver.cache import ArtifactCache
    from j_dep_resolver.config import ResolverConfig
    from j_dep_resolver.provenance import ProvenanceStore
    from j_dep_resolver.repository import RepositoryClient


logger = logging.getLogger(__name__)

SNAPSHOT_TIMESTAMP = "%Y%m%d.%H%M%S"
VERSION_TIMESTAMP = "%Y%m%d%H%M%S"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _parse_timestamp(value: str, fmt: str) -> datetime | None:
    try:
        return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def next_revision(version: str, metadata: "Metadata | None", now: datetime | None = None) -> str:
    """Return the revision a new build of snapshot `version` gets.

    The build number follows the highest one in `metadata`.
    """
    now = now or datetime.now(timezone.utc)
    build_number = (metadata.last_build_number() if metadata is not None else 0) + 1
    timestamp = now.astimezone(timezone.utc).strftime(SNAPSHOT_TIMESTAMP)
    return version.replace(SNAPSHOT, f"{timestamp}-{build_number}")


def _text(node: etree._Element, xpath_expr: str) -> str | None:
    found = node.xpath(xpath_expr)
    if not found or not isinstance(found[0], etree._Element):
        return None
    return (found[0].text or "").strip() or None


class SnapshotEntry(BaseModel):
    """One deployed snapshot build: `timestamp` (yyyyMMdd.HHmmss) and build number."""

    model_config = ConfigDict(frozen=True)

    timestamp: str
    build_number: str

    @property
    def key(self) -> str:
        return f"{self.timestamp}-{self.build_number}"

    @property
    def deployed(self) -> datetime | None:
        return _parse_timestamp(self.timestamp, SNAPSHOT_TIMESTAMP)

    def revision(self, version: str) -> str:
        return version.replace(SNAPSHOT, self.key)


class Metadata(BaseModel):
    """Contents of a maven-metadata.xml file.

    Artifact-level metadata lists `versions` with `release`/`latest`
    pointers; snapshot metadata (in a version directory) lists the deployed
    `snapshots` of that version.
    """

    group_id: str | None = None
    artifact_id: str | None = None
    version: str | None = None
    latest: str | None = None
    release: str | None = None
    versions: list[str] = Field(default_factory=list)
    snapshots: list[SnapshotEntry] = Field(default_factory=list)
    last_updated: datetime = EPOCH

    @classmethod
    def from_xml(cls, content: bytes) -> "Metadata":
        """Parse maven-metadata.xml content.

        Both the legacy `<snapshot>` list and `<snapshotVersions>` entries are read.

        Raises:
            MetadataParseError: If the content is not well-formed metadata.
        """
        try:
            parser = etree.XMLParser(resolve_entities=False, no_network=True, recover=False)
            root = etree.fromstring(content, parser=parser)
        except etree.XMLSyntaxError as exc:
            raise MetadataParseError(f"Failed to parse maven-metadata.xml: {exc}") from exc
        if etree.QName(root).localname != "metadata":
            raise MetadataParseError(f"Unexpected root element <{etree.QName(root).localname}>")

        versioning = "./*[local-name()='versioning']"
        metadata = cls(
            group_id=_text(root, "./*[local-name()='groupId']"),
            artifact_id=_text(root, "./*[local-name()='artifactId']"),
            version=_text(root, "./*[local-name()='version']"),
            latest=_text(root, f"{versioning}/*[local-name()='latest']"),
            release=_text(root, f"{versioning}/*[local-name()='release']"),
        )
        for node in root.xpath(f"{versioning}/*[local-name()='versions']/*[local-name()='version']"):
            value = (node.text or "").strip()
            if value and value not in metadata.versions:
                metadata.versions.append(value)

        seen: set[SnapshotEntry] = set()
        for node in root.xpath(f"{versioning}/*[local-name()='snapshot']"):
            timestamp = _text(node, "./*[local-name()='timestamp']")
            build_number = _text(node, "./*[local-name()='buildNumber']")
            if timestamp and build_number:
                seen.add(SnapshotEntry(timestamp=timestamp, build_number=build_number))
        if metadata.version and metadata.version.endswith(SNAPSHOT):
            prefix = metadata.version[: -len(SNAPSHOT)]
            values = root.xpath(
                f"{versioning}/*[local-name()='snapshotVersions']"
                "/*[local-name()='snapshotVersion']/*[local-name()='value']"
            )
            for node in values:
                value = (node.text or "").strip()
                if not value.startswith(prefix) or value == metadata.version:
                    continue
                timestamp, _, build_number = value[len(prefix):].rpartition("-")
                if _parse_timestamp(timestamp, SNAPSHOT_TIMESTAMP) and build_number.isdigit():
                    seen.add(SnapshotEntry(timestamp=timestamp, build_number=build_number))
        metadata.snapshots = sorted(seen, key=lambda s: s.key)

        last_updated = _text(root, f"{versioning}/*[local-name()='lastUpdated']")
        if last_updated:
            parsed = _parse_timestamp(last_updated, VERSION_TIMESTAMP)
            if parsed is not None:
                metadata.last_updated = parsed
        return metadata

    @classmethod
    def for_snapshot(cls, dependency: Dependency) -> "Metadata":
        """Snapshot metadata describing the single revision of `dependency`."""
        metadata = cls(
            group_id=dependency.group_id,
            artifact_id=dependency.artifact_id,
            version=dependency.version,
        )
        if dependency.revision and dependency.version:
            prefix = dependency.version[: -len(SNAPSHOT)]
            timestamp, _, build_number = dependency.revision[len(prefix):].rpartition("-")
            metadata.snapshots.append(SnapshotEntry(timestamp=timestamp, build_number=build_number))
            metadata.last_updated = _parse_timestamp(timestamp, SNAPSHOT_TIMESTAMP) or datetime.now(timezone.utc)
        return metadata

    @classmethod
    def for_artifact(cls, dependency: Dependency) -> "Metadata":
        """Artifact metadata listing the version of `dependency`."""
        version = dependency.version or ""
        return cls(
            group_id=dependency.group_id,
            artifact_id=dependency.artifact_id,
            latest=version,
            release=None if dependency.is_snapshot else version,
            versions=[version],
            last_updated=datetime.now(timezone.utc),
        )

    @property
    def management_id(self) -> str:
        return f"{self.group_id}:{self.artifact_id}"

    def merge(self, old: "Metadata") -> "Metadata":
        """Merge `old` into this metadata and return self.

        Versions are unioned and sorted, `release` becomes the highest
        version without a qualifier and `latest` the highest overall.
        Snapshots are unioned and sorted by revision.
        """
        unique: dict[ArtifactVersion, str] = {}
        for value in [*self.versions, *old.versions]:
            unique.setdefault(ArtifactVersion(value), value)
        ordered = sorted(unique)
        self.versions = [unique[v] for v in ordered]
        releases = [v for v in ordered if not v.qualifier]
        if releases:
            self.release = unique[releases[-1]]
        if ordered:
            self.latest = unique[ordered[-1]]

        self.snapshots = sorted(set(self.snapshots) | set(old.snapshots), key=lambda s: s.key)
        if old.last_updated > self.last_updated:
            self.last_updated = old.last_updated
        self._pin_last_updated()
        return self

    def _pin_last_updated(self) -> None:
        if self.snapshots:
            deployed = self.snapshots[-1].deployed
            if deployed is not None:
                self.last_updated = deployed

    def last_build_number(self) -> int:
        numbers = [int(s.build_number) for s in self.snapshots if s.build_number.isdigit()]
        return max(numbers, default=0)

    def snapshot_revision(self) -> str | None:
        """Return the newest snapshot revision, or None without snapshots."""
        if not self.snapshots or not self.version:
            return None
        return self.snapshots[-1].revision(self.version)

    def add_snapshot(self, timestamp: str, build_number: int | str) -> str | None:
        entry = SnapshotEntry(timestamp=timestamp, build_number=str(build_number))
        if entry not in self.snapshots:
            self.snapshots.append(entry)
            self.snapshots.sort(key=lambda s: s.key)
        self._pin_last_updated()
        return entry.revision(self.version) if self.version else None

    def purge_snapshots(self, policy: PurgePolicy, now: datetime | None = None) -> list[str]:
        """Drop old snapshot entries according to `policy`.

        Returns:
            The revisions that were removed, oldest first.
        """
        removed: list[str] = []
        retention = max(policy.retention_count, 0)
        if len(self.snapshots) <= retention:
            return removed

        ordered = sorted(self.snapshots, key=lambda s: s.key)
        split = len(ordered) - retention
        kept = ordered[split:]
        candidates = ordered[:split]
        version = self.version or SNAPSHOT

        if policy.purge_after_days > 0:
            now = now or datetime.now(timezone.utc)
            threshold = (now - timedelta(days=policy.purge_after_days)).replace(
                hour=0, minute=0, second=0, microsecond=0
            )
            for snapshot in candidates:
                deployed = snapshot.deployed
                if deployed is None:
                    continue
                if deployed < threshold:
                    removed.append(snapshot.revision(version))
                else:
                    kept.append(snapshot)
        else:
            removed.extend(s.revision(version) for s in candidates)

        self.snapshots = sorted(kept, key=lambda s: s.key)
        return removed

    def to_xml(self) -> bytes:
        """Serialize as maven-metadata.xml.

        `lastUpdated` is set to now when unset, and to the newest snapshot
        timestamp when snapshots are present.
        """
        if self.last_updated == EPOCH:
            self.last_updated = datetime.now(timezone.utc)
        self._pin_last_updated()

        root = etree.Element("metadata")
        for tag, value in (
            ("groupId", self.group_id),
            ("artifactId", self.artifact_id),
            ("version", self.version),
        ):
            if value:
                etree.SubElement(root, tag).text = value

        versioning = etree.SubElement(root, "versioning")
        if self.latest:
            etree.SubElement(versioning, "latest").text = self.latest
        if self.release:
            etree.SubElement(versioning, "release").text = self.release
        for snapshot in self.snapshots:
            node = etree.SubElement(versioning, "snapshot")
            etree.SubElement(node, "timestamp").text = snapshot.timestamp
            etree.SubElement(node, "buildNumber").text = snapshot.build_number
        if self.versions:
            versions = etree.SubElement(versioning, "versions")
            for value in self.versions:
                etree.SubElement(versions, "version").text = value
        etree.SubElement(versioning, "lastUpdated").text = self.last_updated.astimezone(
            timezone.utc
        ).strftime(VERSION_TIMESTAMP)

        return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True)

    def __str__(self) -> str:
        return f"maven-metadata.xml ({self.management_id})"


class MetadataService:
    """Keeps cached maven-metadata.xml current and resolves meta-versions."""

    def __init__(self, config: ResolverConfig, cache: ArtifactCache, store: ProvenanceStore) -> None:
        self.config = config
        self.cache = cache
        self.store = store

    def read(self, dependency: Dependency) -> Metadata | None:
        return self.cache.read_metadata(dependency)

    def is_update_required(self, dependency: Dependency, now: datetime | None = None) -> bool:
        """Return True if the metadata of `dependency` must be downloaded again."""
        if self.config.update_metadata or not self.cache.metadata_path(dependency).exists():
            return True
        record = self.store.read(dependency)
        stale = self.config.update_policy.is_stale(record.last_checked, now)
        logger.debug(
            "%s maven-metadata.xml is %s according to %s update policy",
            dependency.management_id,
            "STALE" if stale else "CURRENT",
            self.config.update_policy,
        )
        return stale

    def refresh(self, dependency: Dependency, clients: Sequence[RepositoryClient]) -> Metadata | None:
        """Download metadata from the first repository that has it and merge it into the cache.

        The record's lastChecked is reset even when no repository answered.

        Raises:
            ConfigurationError: If every repository failed and at least one failure
                was a transport failure.
        """
        now = datetime.now(timezone.utc)
        downloaded: Metadata | None = None
        origin: str | None = None
        failures: list[RepositoryTransportError] = []
        for client in clients:
            try:
                downloaded = client.fetch_metadata(dependency)
            except RepositoryTransportError as exc:
                logger.warning("%s", exc)
                failures.append(exc)
                continue
            if downloaded is not None:
                origin = client.repository.base_url
                break

        merged: Metadata | None = None
        if downloaded is not None:
            cached = self.read(dependency)
            merged = downloaded.merge(cached) if cached is not None else downloaded
            if merged.group_id is None:
                merged.group_id = dependency.group_id
                merged.artifact_id = dependency.artifact_id
            self.cache.write_metadata(dependency, merged)
            self._record(dependency, merged, origin, now)
        elif failures:
            raise ConfigurationError(
                f"Unable to retrieve maven-metadata.xml for {dependency.management_id}: {failures[-1]}"
            )

        record = self.store.read(dependency)
        record.last_checked = now
        self.store.write(dependency, record)
        return merged

    def _record(self, dependency: Dependency, metadata: Metadata, origin: str | None, now: datetime) -> None:
        if dependency.is_snapshot:
            record = self.store.read(dependency)
            record.origin = origin
            record.last_checked = now
            record.last_updated = metadata.last_updated
            record.revision = metadata.snapshot_revision()
            self.store.write(dependency, record)
            return
        for pointer in (RELEASE, LATEST):
            pointer_dep = dependency.model_copy(update={"version": pointer})
            record = self.store.read(pointer_dep)
            record.origin = origin
            record.last_checked = now
            record.last_updated = now
            record.release = metadata.release
            record.latest = metadata.latest
            self.store.write(pointer_dep, record)

    def resolve_local(self, dependency: Dependency) -> Dependency:
        """Return a copy of `dependency` with its meta-version made concrete.

        RELEASE and LATEST become the recorded version; a SNAPSHOT gets the
        newest cached revision. Only cached data is consulted. Unresolvable
        dependencies are returned unchanged.
        """
        resolved = dependency.model_copy(deep=True)
        version = (dependency.version or "").upper()
        if version in (RELEASE, LATEST):
            record = self.store.read(dependency)
            target = record.release if version == RELEASE else record.latest
            if not target:
                metadata = self.read(dependency)
                if metadata is not None:
                    target = metadata.release if version == RELEASE else metadata.latest
            if target:
                logger.debug("Resolved %s to %s", dependency.coordinates, target)
                resolved.version = target
            else:
                logger.warning("Unable to resolve %s from cached metadata", dependency.coordinates)
        elif dependency.is_snapshot:
            metadata = self.read(dependency)
            revision = metadata.snapshot_revision() if metadata is not None else None
            if revision is None:
                revision = self.store.read(dependency).revision
            resolved.revision = revision
        return resolved

    def next_snapshot_revision(self, dependency: Dependency, now: datetime | None = None) -> str:
        """Return the revision for the next local build of a snapshot."""
        return next_revision(dependency.version or SNAPSHOT, self.read(dependency), now)
