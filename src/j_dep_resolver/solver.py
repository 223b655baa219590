"""Dependency graph solver.

Retrieves the POMs reachable from a build, computes a mediated dependency
list per scope and materializes the artifacts into the cache (and
optionally the build's dependency directory).
"""

from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

import networkx as nx
import requests

from j_dep_resolver.cache import ArtifactCache
from j_dep_resolver.config import ResolverConfig
from j_dep_resolver.exceptions import ArtifactNotFoundError, ConfigurationError, RepositoryTransportError
from j_dep_resolver.metadata import MetadataService
from j_dep_resolver.models import GAV, POM, RING_DIRECT, RING_PROJECT, Dependency, Pom, Scope
from j_dep_resolver.parser import parse_pom
from j_dep_resolver.provenance import ProvenanceStore
from j_dep_resolver.repository import RepositoryClient, order_repositories
from j_dep_resolver.versions import ArtifactVersion


logger = logging.getLogger(__name__)

SOLUTION_SCOPES = (Scope.COMPILE, Scope.RUNTIME, Scope.TEST, Scope.BUILD)


@dataclass(eq=False)
class Build:
    """A project to solve: its POM, where it came from and the builds it links."""

    pom: Pom
    descriptor: Path | None = None
    linked_builds: list[Build] = field(default_factory=list)
    dependency_directory: Path | None = None

    @classmethod
    def from_pom_file(
        cls,
        path: str | Path,
        linked_builds: Iterable[Build] = (),
        dependency_directory: str | Path | None = None,
    ) -> Build:
        descriptor = Path(path).resolve()
        return cls(
            pom=parse_pom(descriptor),
            descriptor=descriptor,
            linked_builds=list(linked_builds),
            dependency_directory=Path(dependency_directory) if dependency_directory else None,
        )

    @property
    def key(self) -> str:
        return str(self.descriptor) if self.descriptor else self.pom.coordinates


class Solver:
    """Solves and retrieves the dependencies of one `Build`."""

    def __init__(
        self,
        config: ResolverConfig,
        build: Build,
        *,
        session: requests.Session | None = None,
        cache: ArtifactCache | None = None,
        store: ProvenanceStore | None = None,
        clients: Sequence[RepositoryClient] | None = None,
    ) -> None:
        self.config = config
        self.build = build
        self.store = store or (cache.store if cache is not None else ProvenanceStore(config.cache_root))
        self.cache = cache or ArtifactCache(config.cache_root, self.store)
        if clients is None:
            clients = [
                RepositoryClient(repository, config, self.cache, self.store, session)
                for repository in config.repositories
            ]
        self.clients = list(clients)
        self.metadata = MetadataService(config, self.cache, self.store)
        self.linked_builds: list[Build] = []

        self._lock = threading.RLock()
        self._solutions: dict[Scope, list[Dependency]] = {}
        self._graphs: dict[Scope, nx.DiGraph] = {}
        self._classpaths: dict[Scope, list[Path]] = {}
        self._poms: dict[Path, tuple[int, Pom]] = {}
        self._reading: set[Path] = set()
        self._checked: set[str] = set()
        self._resolved: dict[str, tuple[str | None, str | None]] = {}
        self._registered_urls = {r.url.rstrip("/") for r in config.repositories}

    @property
    def pom(self) -> Pom:
        return self.build.pom

    # resolution pipeline

    def resolve(self, visited: dict[str, Build] | None = None) -> dict[Scope, list[Dependency]]:
        """Solve linked builds, retrieve POMs, import and assimilate, then retrieve artifacts.

        Args:
            visited: Builds already solved in this run, shared with linked builds.

        Returns:
            The solution of every solution scope.
        """
        with self._lock:
            visited = visited if visited is not None else {}
            visited.setdefault(self.build.key, self.build)
            self._reset()

            if self.build.descriptor is not None and self.pom.parent is not None:
                # read again now that parent POMs can be retrieved
                self.build.pom = parse_pom(
                    self.build.descriptor, resolve_parent=self._load_pom, resolve_import=self._load_pom
                )

            self._solve_linked_builds(visited)

            retrieved: set[str] = set()
            self.retrieve_poms(retrieved)
            if self._import_dependency_management():
                self.retrieve_poms(retrieved)
            if self._assimilate_dependencies():
                self.retrieve_poms(retrieved)

            materialized: set[Dependency] = set()
            for scope in SOLUTION_SCOPES:
                solution = self.solve(scope)
                logger.debug("%s: %d %s dependencies", self.pom.coordinates, len(solution), scope.value)
                for dep in solution:
                    if dep in materialized:
                        continue
                    materialized.add(dep)
                    path = self._retrieve_artifact(dep)
                    if path is None and dep.type != POM:
                        logger.error("Failed to resolve %s", dep.detailed_coordinates)
                        if self.config.fail_fast:
                            raise ArtifactNotFoundError(f"Failed to resolve {dep.coordinates}")
                    if scope is not Scope.BUILD:
                        self._copy_artifact(dep, path)
            return {scope: list(self._solutions[scope]) for scope in SOLUTION_SCOPES}

    def _reset(self) -> None:
        self._solutions.clear()
        self._graphs.clear()
        self._classpaths.clear()
        self._checked.clear()
        self._resolved.clear()

    def _solve_linked_builds(self, visited: dict[str, Build]) -> None:
        for linked in self.build.linked_builds:
            if linked.key in visited:
                logger.info("=> already solved module %s", linked.pom.coordinates)
                if linked is not self.build and linked not in self.linked_builds:
                    self.linked_builds.append(linked)
                continue
            logger.info("=> solving module %s", linked.pom.coordinates)
            visited[linked.key] = linked
            solver = Solver(self.config, linked, cache=self.cache, store=self.store, clients=self.clients)
            solver.resolve(visited)
            for build in [linked, *solver.linked_builds]:
                if build is not self.build and build not in self.linked_builds:
                    self.linked_builds.append(build)
            # linked module dependencies are direct dependencies of this build
            for dep in linked.pom.get_dependencies(Scope.COMPILE, RING_DIRECT):
                self.pom.add_dependency(dep, Scope.COMPILE)

    def _import_dependency_management(self) -> bool:
        references = [*self.pom.declared(Scope.IMPORT), *self.pom.imports]
        if not references:
            return False
        logger.debug("Importing dependency management into %s", self.pom.coordinates)
        for reference in references:
            imported = self._load_pom(reference)
            if imported is None:
                logger.warning("Unable to import dependency management from %s", reference.coordinates)
                continue
            self.pom.import_managed_dependencies(imported)
        return True

    def _assimilate_dependencies(self) -> bool:
        references = self.pom.declared(Scope.ASSIMILATE)
        if references:
            logger.debug("Assimilating dependencies into %s", self.pom.coordinates)
            collected: dict[Scope, list[Dependency]] = {}
            for reference in references:
                other = self._load_pom(reference)
                if other is None:
                    logger.warning("Unable to assimilate %s", reference.coordinates)
                    continue
                for scope in other.scopes:
                    collected.setdefault(scope, []).extend(other.declared(scope))
            for scope, deps in collected.items():
                for dep in deps:
                    self.pom.add_dependency(dep, scope)
        self.pom.remove_scope(Scope.ASSIMILATE)
        return bool(references)

    # POM retrieval

    def retrieve_poms(self, retrieved: set[str] | None = None) -> None:
        """Download every POM reachable from the build's declared dependencies."""
        with self._lock:
            roots = []
            for dep in self.pom.all_dependencies():
                copy = dep.model_copy(deep=True)
                copy.ring = RING_DIRECT
                roots.append(copy)
            self._retrieve_poms(roots, retrieved if retrieved is not None else set())

    def _retrieve_poms(self, roots: Iterable[Dependency], retrieved: set[str]) -> None:
        stack = list(reversed(list(roots)))
        while stack:
            dep = stack.pop()
            if not dep.is_maven_object:
                continue
            if not dep.version:
                logger.warning("Skipping %s: no version", dep.management_id)
                continue
            key = f"{dep.management_id}:{dep.version}"
            if key in retrieved:
                continue
            retrieved.add(key)

            pom = self._load_pom(dep)
            if pom is None or not dep.resolve_dependencies:
                continue
            children: list[Dependency] = []
            for scope, declared in self._declared_transitives(pom, dep):
                for child in declared.get_dependencies(scope, dep.ring + 1):
                    if dep.excludes(child):
                        continue
                    child.exclusions |= dep.exclusions
                    children.append(child)
            stack.extend(reversed(children))

    def _declared_transitives(self, pom: Pom, dep: Dependency) -> list[tuple[Scope, Pom]]:
        """Pair each scope with the model that declares `dep`'s dependencies in it."""
        pairs: list[tuple[Scope, Pom]] = []
        for scope in Scope:
            override = self.config.dependency_override(scope, dep.coordinates)
            if override is not None:
                pairs.append((scope, override))
            elif scope in pom.scopes:
                pairs.append((scope, pom))
        return pairs

    def _refresh_metadata(self, dependency: Dependency) -> None:
        key = f"{dependency.management_id}:{dependency.version}"
        if key in self._checked:
            return
        self._checked.add(key)
        if not self.metadata.is_update_required(dependency):
            return
        if not self.config.online:
            logger.debug("Offline, using cached maven-metadata.xml for %s", dependency.management_id)
            return
        origin = self.store.read(dependency).origin
        self.metadata.refresh(dependency, order_repositories(self.clients, dependency, origin))

    def _resolve(self, dependency: Dependency) -> Dependency:
        """Return `dependency` with RELEASE/LATEST/SNAPSHOT made concrete from the cache."""
        if not dependency.is_maven_object or not dependency.is_meta_version:
            return dependency
        key = f"{dependency.management_id}:{dependency.version}"
        if key not in self._resolved:
            local = self.metadata.resolve_local(dependency)
            self._resolved[key] = (local.version, local.revision)
        version, revision = self._resolved[key]
        return dependency.model_copy(update={"version": version, "revision": revision})

    def _retrieve_pom_file(self, dependency: Dependency) -> Path | None:
        if not dependency.is_maven_object or not dependency.version:
            return None
        pom_dep = dependency.pom_artifact()
        if pom_dep.is_meta_version:
            self._refresh_metadata(pom_dep)
        pom_dep = self._resolve(pom_dep)

        path = self.cache.artifact_path(pom_dep, POM)
        stale = pom_dep.is_snapshot and self.store.read(pom_dep).is_refresh_required
        if (not path.exists() or stale) and self.config.online:
            logger.debug("Locating POM for %s", pom_dep.coordinates)
            fetched = self._fetch_from_repositories(pom_dep, POM)
            if fetched is not None:
                path = fetched
        if not path.exists():
            logger.debug("No POM for %s", pom_dep.coordinates)
            return None

        origin = self.store.read(pom_dep).origin
        if origin and origin.rstrip("/") not in self._registered_urls and not origin.startswith("file:"):
            logger.warning(
                "%s was retrieved from %s which is not a configured repository",
                pom_dep.coordinates,
                origin,
            )
        return path

    def _fetch_from_repositories(self, dependency: Dependency, ext: str) -> Path | None:
        origin = self.store.read(dependency).origin
        failures: list[RepositoryTransportError] = []
        for client in order_repositories(self.clients, dependency, origin):
            try:
                path = client.fetch(dependency, ext)
            except RepositoryTransportError as exc:
                logger.warning("%s: %s", client.id, exc)
                failures.append(exc)
                continue
            if path is not None:
                return path
        if failures:
            raise ConfigurationError(
                f"Unable to retrieve {dependency.file_name(ext)} from any repository: {failures[-1]}"
            )
        return None

    def _load_pom(self, dependency: Dependency) -> Pom | None:
        """Retrieve (if needed) and read the POM of `dependency`."""
        path = self._retrieve_pom_file(dependency)
        if path is None:
            return None
        return self._read_pom(path, dependency.coordinates)

    def _read_pom(self, path: Path, label: str) -> Pom | None:
        mtime = path.stat().st_mtime_ns
        cached = self._poms.get(path)
        if cached is not None and cached[0] == mtime:
            return cached[1]
        if path in self._reading:
            logger.warning("Circular parent reference while reading %s", label)
            return None
        self._reading.add(path)
        try:
            pom = parse_pom(path, resolve_parent=self._load_pom, resolve_import=self._load_pom)
        except ConfigurationError as exc:
            raise ConfigurationError(f"Unable to read POM of {label}: {exc}") from exc
        finally:
            self._reading.discard(path)
        self._poms[path] = (mtime, pom)
        return pom

    # solving

    def solve(self, scope: Scope) -> list[Dependency]:
        """Return the mediated dependency list of `scope`, in discovery order."""
        with self._lock:
            if scope not in self._solutions:
                logger.debug("Solving %s dependency solution", scope.value)
                graph = nx.DiGraph()
                root = self.pom.coordinates
                graph.add_node(root, ring=RING_PROJECT)
                discovered = self._collect(scope, self.pom.get_dependencies(scope, RING_DIRECT), root, graph)
                self._solutions[scope] = _mediate(discovered)
                self._graphs[scope] = graph
            return list(self._solutions[scope])

    def _collect(
        self, scope: Scope, directs: list[Dependency], root: str, graph: nx.DiGraph
    ) -> list[Dependency]:
        """Depth-first, pre-order expansion of `directs` into a flat list with duplicates."""
        discovered: list[Dependency] = []
        stack: list[tuple[Dependency, tuple[str, ...], str]] = [(d, (), root) for d in reversed(directs)]
        while stack:
            dep, ancestors, parent = stack.pop()
            if dep.is_maven_object and not dep.version:
                logger.warning("Skipping %s: no version", dep.management_id)
                continue
            dep = self._resolve(dep)
            node = dep.coordinates
            graph.add_node(node, ring=min(dep.ring, graph.nodes[node]["ring"]) if node in graph else dep.ring)
            graph.add_edge(parent, node, scope=scope.value)
            if dep.mediation_id in ancestors:
                logger.debug("Dependency cycle at %s", dep.mediation_id)
                continue
            discovered.append(dep)

            path = (*ancestors, dep.mediation_id)
            children = []
            for child in self._transitives(scope, dep):
                if dep.excludes(child):
                    continue
                child.exclusions |= dep.exclusions
                children.append((child, path, node))
            stack.extend(reversed(children))
        return discovered

    def _transitives(self, scope: Scope, dep: Dependency) -> list[Dependency]:
        if not dep.resolve_dependencies or not dep.is_maven_object or not dep.version:
            return []
        pom_dep = dep.pom_artifact()
        mtime = self.cache.pom_mtime_ns(pom_dep)
        if mtime is None:
            return []

        override = self.config.dependency_override(scope, dep.coordinates)
        if override is not None:
            notice = logger.debug if scope is Scope.BUILD else logger.info
            notice("OVERRIDE: %s %s dependency %s", self.pom.coordinates, scope.value.upper(), dep.coordinates)
            return override.get_dependencies(scope, dep.ring + 1)

        # snapshot solutions are never cached
        use_cache = not dep.is_snapshot
        if use_cache:
            record = self.store.read(dep)
            cached = record.solution(scope, mtime, dep.ring)
            if cached is not None:
                logger.debug("=> reusing %s solution of %s", scope.value, dep.coordinates)
                return cached

        pom = self._read_pom(self.cache.artifact_path(pom_dep, POM), dep.coordinates)
        if pom is None:
            return []
        children = pom.get_dependencies(scope, dep.ring + 1)
        if use_cache:
            record = self.store.read(dep)
            record.store_solution(scope, children, mtime, dep.ring)
            self.store.write(dep, record)
        return children

    def graph(self, scope: Scope) -> nx.DiGraph:
        """Return the graph of edges discovered while solving `scope`."""
        with self._lock:
            self.solve(scope)
            return self._graphs[scope]

    def classpath(self, scope: Scope) -> list[Path]:
        """Return the files of the `scope` solution.

        A populated build dependency directory takes precedence over the cache.
        """
        with self._lock:
            if scope in self._classpaths:
                return list(self._classpaths[scope])
            directory = self.build.dependency_directory
            project_folder = directory if directory is not None and directory.is_dir() else None
            files: list[Path] = []
            for dep in self.solve(scope):
                if not dep.is_maven_object:
                    files.append(Path(dep.path or ""))
                    continue
                path = self.cache.artifact_path(dep)
                if project_folder is not None:
                    local = project_folder / _project_file_name(dep)
                    if local.exists():
                        path = local
                files.append(path)
            self._classpaths[scope] = files
            return list(files)

    def solve_dependencies(self, scope: Scope, *definitions: str | Dependency) -> list[Path]:
        """Resolve ad hoc dependencies outside the build and return their files."""
        with self._lock:
            pom = Pom(project=GAV(group_id="j-dep-resolver", artifact_id="adhoc", version="0"))
            for definition in definitions:
                dep = definition if isinstance(definition, Dependency) else Dependency.parse(definition)
                pom.add_dependency(dep, scope)
            directs = pom.get_dependencies(scope, RING_DIRECT)
            self._retrieve_poms([d.model_copy(deep=True) for d in directs], set())
            solution = _mediate(self._collect(scope, directs, pom.coordinates, nx.DiGraph()))
            files: list[Path] = []
            for dep in solution:
                path = self._retrieve_artifact(dep)
                if path is not None:
                    files.append(path)
            return files

    # artifacts

    def _purge_snapshots(self, dep: Dependency) -> None:
        if not dep.is_snapshot:
            return
        origin = self.store.read(dep).origin
        ordered = order_repositories(self.clients, dep, origin)
        repository = ordered[0].repository if ordered else None
        self.cache.purge_snapshots(dep, self.config.repository_purge_policy(repository))

    def _retrieve_artifact(self, dep: Dependency) -> Path | None:
        if not dep.is_maven_object:
            return Path(dep.path) if dep.path else None
        if not dep.version:
            return None
        if dep.type == POM:
            # POM dependencies have no other artifacts
            self._purge_snapshots(dep)
            path = self.cache.artifact_path(dep, POM)
            return path if path.exists() else None

        path = self.cache.artifact_path(dep)
        download = not path.exists()
        if not download and dep.is_snapshot:
            record = self.store.read(dep)
            download = record.is_refresh_required
            logger.debug("%s is %s according to %s", dep.coordinates, "STALE" if download else "CURRENT", record.origin)

        if download and self.config.online:
            fetched = self._fetch_from_repositories(dep, dep.type)
            if fetched is not None:
                path = fetched
                self._retrieve_companions(dep)

        self._purge_snapshots(dep)
        return path if path.exists() else None

    def _retrieve_companions(self, dep: Dependency) -> None:
        """Fetch the -sources and -javadoc artifacts of `dep` from its origin repository."""
        origin = self.store.read(dep).origin
        for client in order_repositories(self.clients, dep, origin):
            if not client.is_origin(origin):
                continue
            for companion in (dep.sources_artifact(), dep.javadoc_artifact()):
                try:
                    client.fetch(companion)
                except RepositoryTransportError as exc:
                    logger.debug("%s of %s not retrieved: %s", companion.classifier, dep.coordinates, exc)
            return

    def _copy_artifact(self, dep: Dependency, path: Path | None) -> None:
        directory = self.build.dependency_directory
        if directory is None or path is None or not path.exists() or not dep.is_maven_object:
            return
        target = directory / _project_file_name(dep)
        if dep.is_snapshot or not target.exists():
            logger.debug("Copying %s to %s", path.name, directory)
            directory.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, target)

        sources = dep.sources_artifact()
        source_path = self.cache.artifact_path(sources)
        source_target = directory / _project_file_name(sources)
        if source_path.exists() and (dep.is_snapshot or not source_target.exists()):
            shutil.copyfile(source_path, source_target)

        _remove_obsolete_artifacts(dep, directory)
        _remove_obsolete_artifacts(sources, directory)


def _mediate(discovered: list[Dependency]) -> list[Dependency]:
    """Keep one dependency per mediation id: the nearest ring, first registration on ties."""
    uniques: dict[str, Dependency] = {}
    for dep in discovered:
        registered = uniques.get(dep.mediation_id)
        if registered is None:
            uniques[dep.mediation_id] = dep
        elif registered.ring > dep.ring:
            logger.debug(
                "Conflict on %s: %s (ring %d) replaces %s (ring %d)",
                dep.mediation_id, dep.version, dep.ring, registered.version, registered.ring,
            )
            uniques[dep.mediation_id] = dep
        elif registered.version != dep.version:
            logger.debug(
                "Conflict on %s: keeping %s (ring %d) over %s (ring %d)",
                dep.mediation_id, registered.version, registered.ring, dep.version, dep.ring,
            )
    return list(uniques.values())


def _project_file_name(dep: Dependency) -> str:
    return dep.model_copy(update={"revision": None}).file_name()


def _remove_obsolete_artifacts(dep: Dependency, folder: Path) -> None:
    """Delete other versions of `dep` from a flat dependency folder.

    Files of related artifacts (e.g. `wicket-auth-roles` next to `wicket`)
    are kept.
    """
    if not folder.is_dir():
        return
    artifact = dep.artifact_id.lower()
    current = f"{artifact}-{(dep.version or '').lower()}"
    suffix = (f"-{dep.classifier}" if dep.classifier else "") + f".{dep.type}"
    suffix = suffix.lower()
    for file in folder.iterdir():
        name = file.name.lower()
        if not file.is_file() or not name.startswith(artifact) or name.startswith(current):
            continue
        if not name.endswith(suffix):
            continue
        middle = name[len(artifact): len(name) - len(suffix)]
        if not middle:
            continue
        if middle.startswith("-"):
            middle = middle[1:]
        head = middle.split("-")[0]
        version = ArtifactVersion(head)
        if version.qualifier is not None and version.qualifier.lower() == head:
            # a different artifact, not a different version
            continue
        logger.debug("Deleting obsolete artifact %s from %s", file.name, folder)
        file.unlink(missing_ok=True)
