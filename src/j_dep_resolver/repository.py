"""HTTP client for remote Maven2 repositories."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Callable, Sequence

import requests

from j_dep_resolver.cache import ArtifactCache, atomic_write, sha1_hex
from j_dep_resolver.config import Repository, ResolverConfig
from j_dep_resolver.exceptions import ArtifactNotFoundError, ChecksumMismatchError, RepositoryTransportError
from j_dep_resolver.metadata import Metadata
from j_dep_resolver.models import POM, Dependency
from j_dep_resolver.parser import read_packaging
from j_dep_resolver.provenance import ProvenanceStore


logger = logging.getLogger(__name__)


def _last_modified(response: requests.Response) -> datetime | None:
    value = response.headers.get("Last-Modified")
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RepositoryClient:
    """Downloads artifacts, checksums and metadata from one repository into the cache."""

    def __init__(
        self,
        repository: Repository,
        config: ResolverConfig,
        cache: ArtifactCache,
        store: ProvenanceStore | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.repository = repository
        self.config = config
        self.cache = cache
        self.store = store or cache.store
        self.session = session or requests.Session()
        self.proxy = config.proxy_for(repository)
        self._proxies = {"http": self.proxy.url, "https": self.proxy.url} if self.proxy else None
        self._auth = (repository.username, repository.password or "") if repository.username else None

    @property
    def id(self) -> str:
        return self.repository.id

    def __repr__(self) -> str:
        return f"RepositoryClient({self.repository.id!r}, {self.repository.url!r})"

    def _hint(self) -> str:
        if self.proxy is None:
            return "Do you need to specify a proxy?"
        return f"Failed to use proxy {self.proxy.host}:{self.proxy.port}"

    def _get(self, url: str) -> requests.Response | None:
        """GET `url`.

        Raises:
            ArtifactNotFoundError: On HTTP 400/404.
            RepositoryTransportError: On proxy failures and other HTTP errors.

        Returns:
            The response, or None if the server could not be reached.
        """
        logger.debug("GET %s", url)
        try:
            response = self.session.get(
                url,
                auth=self._auth,
                proxies=self._proxies,
                timeout=(self.repository.connect_timeout, self.repository.read_timeout),
            )
        except requests.exceptions.ProxyError as exc:
            raise RepositoryTransportError(f"{url}: {exc}. {self._hint()}") from exc
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            logger.warning("Unable to connect to %s: %s", self.repository.base_url, exc)
            return None
        except requests.exceptions.RequestException as exc:
            raise RepositoryTransportError(f"{url}: {exc}. {self._hint()}") from exc

        if response.status_code in (400, 404):
            raise ArtifactNotFoundError(url)
        if response.status_code >= 400:
            raise RepositoryTransportError(f"{url} returned HTTP {response.status_code}. {self._hint()}")
        return response

    def _download_sha1(self, url: str) -> str | None:
        url = url + ".sha1"
        try:
            response = self._get(url)
        except ArtifactNotFoundError:
            logger.debug("No checksum published at %s", url)
            return None
        if response is None:
            return None
        return response.content.decode("ascii", errors="ignore").strip()[:40].lower() or None

    def _expected_sha1(self, dependency: Dependency, ext: str, refresh: bool = False) -> str | None:
        sidecar = self.cache.checksum_path(dependency, ext, "sha1")
        if not refresh and sidecar.exists():
            return sidecar.read_text(encoding="ascii", errors="ignore").strip()[:40].lower() or None
        value = self._download_sha1(self.repository.artifact_url(dependency, ext))
        if value:
            atomic_write(sidecar, value.encode("ascii"))
        return value

    def _verify(
        self,
        url: str,
        content: bytes,
        expected_sha1: Callable[[bool], str | None],
        purge: Callable[[], object] | None = None,
    ) -> None:
        """Check `content` against its SHA-1, re-fetching the checksum once on mismatch.

        `expected_sha1(refresh)` supplies the published digest; the retry
        passes refresh=True so a stale cached sidecar is bypassed.
        """
        actual = sha1_hex(content)
        expected = expected_sha1(False)
        if expected is None or expected == actual:
            return
        logger.warning("SHA-1 mismatch for %s, checking again", url)
        time.sleep(self.config.checksum_retry_wait)
        expected = expected_sha1(True)
        if expected is None or expected == actual:
            return
        message = f"{url} SHA-1 checksum mismatch; calculated {actual}, expected {expected}"
        if self.config.enforce_checksums:
            if purge is not None:
                purge()
            raise ChecksumMismatchError(message)
        logger.warning(message)

    def fetch(self, dependency: Dependency, ext: str | None = None) -> Path | None:
        """Download one file of `dependency` into the cache.

        Args:
            dependency: The coordinate; snapshots must carry their revision.
            ext: File extension, defaults to the dependency type.

        Raises:
            RepositoryTransportError: If the repository cannot be used.
            ChecksumMismatchError: If the payload does not match its SHA-1 after one retry.

        Returns:
            The cached file, or None when the repository does not have it.
        """
        ext = ext or dependency.type
        url = self.repository.artifact_url(dependency, ext)
        try:
            response = self._get(url)
        except ArtifactNotFoundError:
            logger.debug("%s not found in %s", dependency.file_name(ext), self.repository.id)
            return None
        if response is None:
            return None

        content = response.content
        self._verify(
            url,
            content,
            lambda refresh: self._expected_sha1(dependency, ext, refresh),
            lambda: self.cache.purge_artifacts(dependency),
        )

        last_modified = _last_modified(response)
        path = self.cache.write_artifact(dependency, ext, content, last_modified)
        logger.info("Downloaded %s from %s", path.name, self.repository.id)

        now = datetime.now(timezone.utc)
        record = self.store.read(dependency)
        record.origin = self.repository.base_url
        if ext == POM:
            if read_packaging(path) == POM:
                record.last_downloaded = now
                record.last_checked = now
        else:
            record.last_downloaded = now
            record.last_checked = now
            if not dependency.is_snapshot and last_modified is not None:
                record.last_updated = last_modified
        self.store.write(dependency, record)
        return path

    def fetch_metadata(self, dependency: Dependency) -> Metadata | None:
        """Download and parse the maven-metadata.xml of `dependency`.

        Snapshot versions use the version-level metadata. Nothing is written
        to the cache.

        Raises:
            RepositoryTransportError: If the repository cannot be used.
            ChecksumMismatchError: If the file does not match its SHA-1 after one retry.
            MetadataParseError: If the downloaded file is not valid metadata.
        """
        url = self.repository.metadata_url(dependency)
        try:
            response = self._get(url)
        except ArtifactNotFoundError:
            logger.debug("No maven-metadata.xml for %s in %s", dependency.management_id, self.repository.id)
            return None
        if response is None:
            return None
        # metadata sidecars are never cached
        self._verify(url, response.content, lambda refresh: self._download_sha1(url))
        return Metadata.from_xml(response.content)

    def has_affinity(self, dependency: Dependency) -> bool:
        """True if this repository is declared as the home of `dependency`."""
        for pattern in self.repository.affinity:
            if pattern in (dependency.management_id, dependency.group_id):
                return True
            if dependency.group_id.startswith(pattern):
                return True
        return False

    def is_origin(self, origin: str | None) -> bool:
        if not origin:
            return False
        return origin == self.repository.id or origin.rstrip("/") == self.repository.base_url


def order_repositories(
    clients: Sequence[RepositoryClient], dependency: Dependency, origin: str | None = None
) -> list[RepositoryClient]:
    """Return `clients` with the preferred repository for `dependency` moved first.

    The first repository with affinity for the dependency, or that the
    dependency was originally downloaded from, is boosted. Everything else
    keeps its configured order.
    """
    ordered = list(clients)
    origin = origin or dependency.origin
    for index, client in enumerate(ordered):
        if client.has_affinity(dependency) or client.is_origin(origin):
            ordered.insert(0, ordered.pop(index))
            break
    return ordered
