"""Pytest configuration and fixtures for j-dep-resolver tests.

`FakeSession` stands in for `requests.Session` and serves an in-memory
Maven2 repository, recording every requested URL.
"""
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Callable

import pytest

from j_dep_resolver.cache import ArtifactCache
from j_dep_resolver.config import Repository, ResolverConfig
from j_dep_resolver.models import Dependency
from j_dep_resolver.solver import Build, Solver

BASE_URL = "https://repo.example.com/maven2"


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", headers: dict[str, str] | None = None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}


class FakeSession:
    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.headers: dict[str, dict[str, str]] = {}
        self.errors: dict[str, Exception] = {}
        self.status: dict[str, int] = {}
        self.requests: list[str] = []
        self.kwargs: list[dict] = []

    def get(self, url: str, **kwargs) -> FakeResponse:
        self.requests.append(url)
        self.kwargs.append(kwargs)
        if url in self.errors:
            raise self.errors[url]
        if url in self.status:
            return FakeResponse(self.status[url])
        if url in self.files:
            return FakeResponse(200, self.files[url], self.headers.get(url))
        return FakeResponse(404)

    def requested(self, suffix: str) -> list[str]:
        return [u for u in self.requests if u.endswith(suffix)]


class FakeRepository:
    """Publishes POMs, jars and metadata into a `FakeSession`."""

    def __init__(self, session: FakeSession, base_url: str = BASE_URL) -> None:
        self.session = session
        self.base_url = base_url

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def add(self, path: str, content: bytes | str, *, checksum: bool = True) -> str:
        data = content.encode("utf-8") if isinstance(content, str) else content
        url = self.url(path)
        self.session.files[url] = data
        if checksum:
            self.session.files[url + ".sha1"] = hashlib.sha1(data).hexdigest().encode("ascii")
        return url

    def publish(
        self,
        coordinates: str,
        dependencies: list[str] | None = None,
        *,
        packaging: str = "jar",
        parent: str | None = None,
        extra: str = "",
        revision: str | None = None,
        jar: bytes | None = None,
    ) -> None:
        """Publish `group:artifact:version` with a POM listing `dependencies`.

        Each dependency is `group:artifact:version[:scope][:optional]`.
        """
        group_id, artifact_id, version = coordinates.split(":")[:3]
        file_version = revision or version
        folder = f"{group_id.replace('.', '/')}/{artifact_id}/{version}"
        self.add(f"{folder}/{artifact_id}-{file_version}.pom", pom_xml(coordinates, dependencies, packaging=packaging, parent=parent, extra=extra))
        if packaging != "pom":
            self.add(f"{folder}/{artifact_id}-{file_version}.jar", jar or f"jar of {coordinates}".encode())


def pom_xml(
    coordinates: str,
    dependencies: list[str] | None = None,
    *,
    packaging: str = "jar",
    parent: str | None = None,
    extra: str = "",
) -> str:
    group_id, artifact_id, version = coordinates.split(":")[:3]
    parts = ['<?xml version="1.0" encoding="UTF-8"?>', '<project xmlns="http://maven.apache.org/POM/4.0.0">']
    parts.append("  <modelVersion>4.0.0</modelVersion>")
    if parent:
        pg, pa, pv = parent.split(":")
        parts.append(f"  <parent><groupId>{pg}</groupId><artifactId>{pa}</artifactId><version>{pv}</version></parent>")
    parts.append(f"  <groupId>{group_id}</groupId>")
    parts.append(f"  <artifactId>{artifact_id}</artifactId>")
    parts.append(f"  <version>{version}</version>")
    parts.append(f"  <packaging>{packaging}</packaging>")
    parts.append(extra)
    if dependencies:
        parts.append("  <dependencies>")
        for definition in dependencies:
            fields = definition.split(":")
            dg, da, dv = fields[:3]
            scope = fields[3] if len(fields) > 3 and fields[3] else None
            optional = len(fields) > 4 and fields[4] == "optional"
            parts.append("    <dependency>")
            parts.append(f"      <groupId>{dg}</groupId><artifactId>{da}</artifactId>")
            if dv:
                parts.append(f"      <version>{dv}</version>")
            if scope:
                parts.append(f"      <scope>{scope}</scope>")
            if optional:
                parts.append("      <optional>true</optional>")
            parts.append("    </dependency>")
        parts.append("  </dependencies>")
    parts.append("</project>")
    return "\n".join(parts) + "\n"


def _write(tmp_path: Path, name: str, content: str) -> Path:
    path = tmp_path / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's JDEP_* settings out of the tests."""
    import os

    for key in list(os.environ):
        if key.startswith("JDEP_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def remote(session: FakeSession) -> FakeRepository:
    return FakeRepository(session)


@pytest.fixture
def config(tmp_path: Path) -> ResolverConfig:
    return ResolverConfig(
        cache_root=tmp_path / "cache",
        repositories=[Repository(id="central", url=BASE_URL)],
        checksum_retry_wait=0,
    )


@pytest.fixture
def cache(config: ResolverConfig) -> ArtifactCache:
    return ArtifactCache(config.cache_root)


@pytest.fixture
def project(tmp_path: Path) -> Callable[..., Path]:
    """Write a project pom.xml and return its path."""

    def _project(dependencies: list[str], *, name: str = "pom.xml", coordinates: str = "com.acme:app:1.0.0", extra: str = "") -> Path:
        return _write(tmp_path / "project", name, pom_xml(coordinates, dependencies, extra=extra))

    return _project


@pytest.fixture
def make_solver(config: ResolverConfig, session: FakeSession) -> Callable[..., Solver]:
    def _make(pom_path: Path, **kwargs) -> Solver:
        return Solver(config, Build.from_pom_file(pom_path, **kwargs), session=session)

    return _make


def ids(solution: list[Dependency]) -> list[str]:
    return [d.coordinates for d in solution]
