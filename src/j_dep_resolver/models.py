"""Pydantic models for Maven coordinates, dependencies, scopes and POMs."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel, Field

from j_dep_resolver.exceptions import PomModelError


logger = logging.getLogger(__name__)

UNKNOWN_VERSION = "Unknown"
POM = "pom"
RING_PROJECT = 0
RING_DIRECT = 1
RELEASE = "RELEASE"
LATEST = "LATEST"
SNAPSHOT = "SNAPSHOT"


class Scope(str, Enum):
    """Dependency scopes, including the resolver's own non-Maven scopes."""

    COMPILE = "compile"
    PROVIDED = "provided"
    RUNTIME = "runtime"
    TEST = "test"
    SYSTEM = "system"
    IMPORT = "import"
    ASSIMILATE = "assimilate"
    SITE = "site"
    BUILD = "build"

    @classmethod
    def from_string(cls, value: str | None) -> Scope | None:
        """Return the scope named by `value` (case-insensitive), or None."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    def includes(self, dependency_scope: Scope | None) -> bool:
        """Return True if a dependency of `dependency_scope` belongs on this classpath."""
        if dependency_scope is None:
            return False
        if self is Scope.SITE:
            return False
        if self is Scope.BUILD:
            return dependency_scope is Scope.BUILD
        if dependency_scope in (Scope.IMPORT, Scope.ASSIMILATE):
            # references to other POMs, never artifacts on a classpath
            return False
        if dependency_scope in (Scope.COMPILE, Scope.SYSTEM):
            return True
        if self is Scope.COMPILE:
            return dependency_scope is Scope.PROVIDED
        if self is Scope.PROVIDED:
            return dependency_scope is Scope.PROVIDED
        if self is Scope.RUNTIME:
            return dependency_scope is Scope.RUNTIME
        if self is Scope.TEST:
            return dependency_scope not in (Scope.SITE, Scope.BUILD)
        return False

    def transitive(self, dependency_scope: Scope | None) -> Scope | None:
        """Return the scope a transitive dependency takes under this scope.

        Returns None when the transitive dependency does not propagate.
        """
        table: dict[Scope, dict[Scope, Scope]] = {
            Scope.COMPILE: {Scope.COMPILE: Scope.COMPILE, Scope.RUNTIME: Scope.RUNTIME},
            Scope.PROVIDED: {Scope.COMPILE: Scope.PROVIDED, Scope.RUNTIME: Scope.PROVIDED},
            Scope.RUNTIME: {Scope.COMPILE: Scope.RUNTIME, Scope.RUNTIME: Scope.RUNTIME},
            Scope.TEST: {Scope.COMPILE: Scope.TEST, Scope.RUNTIME: Scope.TEST},
            Scope.BUILD: {Scope.COMPILE: Scope.BUILD},
        }
        if dependency_scope is None:
            return None
        return table.get(self, {}).get(dependency_scope)

    @property
    def is_default(self) -> bool:
        return self is Scope.COMPILE

    @property
    def is_valid_source_scope(self) -> bool:
        return self in (Scope.COMPILE, Scope.TEST, Scope.SITE)

    @property
    def is_maven_scope(self) -> bool:
        return self not in (Scope.ASSIMILATE, Scope.SITE, Scope.BUILD)


class GAV(BaseModel):
    """Maven coordinates (GroupId, ArtifactId, Version)."""

    group_id: str = Field(..., min_length=1)
    artifact_id: str = Field(..., min_length=1)
    version: str = Field(default=UNKNOWN_VERSION, min_length=1)

    def compact(self) -> str:
        """Return a compact string representation.

        Returns:
            A string like `groupId:artifactId:version`.
        """
        return f"{self.group_id}:{self.artifact_id}:{self.version}"


class Dependency(BaseModel):
    """A Maven dependency, or a system dependency pointing at a local file.

    `ring` is the distance from the project: 0 for the project itself, 1 for
    direct dependencies, parent ring + 1 for transitives.
    """

    group_id: str = Field(..., min_length=1)
    artifact_id: str = Field(..., min_length=1)
    version: str | None = None
    classifier: str | None = None
    type: str = "jar"
    scope: Scope | None = None
    ring: int = 0
    optional: bool = False
    exclusions: set[str] = Field(default_factory=set)
    origin: str | None = None
    resolve_dependencies: bool = True
    revision: str | None = None
    path: str | None = None

    @classmethod
    def parse(cls, definition: str) -> Dependency:
        """Parse a compact dependency definition.

        Format: `group:artifact:version[:classifier[:type]][@ext] [optional] [-exclusion]...`

        Args:
            definition: The definition string. Surrounding quotes are ignored.

        Raises:
            PomModelError: If the group or artifact is missing.

        Returns:
            A new `Dependency`.
        """
        principals = definition.strip().split()
        if not principals:
            raise PomModelError("Empty dependency definition")

        coordinates = principals[0].strip("'\"")
        ext: str | None = None
        resolve_dependencies = True
        if "@" in coordinates:
            coordinates, _, ext = coordinates.partition("@")
            resolve_dependencies = False

        fields: list[str | None] = [f.strip() or None for f in coordinates.split(":")]
        fields += [None] * (5 - len(fields))
        group_id, artifact_id, version, classifier, type_ = fields[:5]
        if not group_id or not artifact_id:
            raise PomModelError(f"Invalid dependency definition: {definition}")

        exclusions: set[str] = set()
        options: set[str] = set()
        for option in principals[1:]:
            if option[0] in "-!":
                exclusions.add(option[1:])
            else:
                options.add(option.lower())

        return cls(
            group_id=group_id.replace("/", "."),
            artifact_id=artifact_id,
            version=version,
            classifier=classifier,
            type=type_ or ext or "jar",
            optional="optional" in options,
            exclusions=exclusions,
            resolve_dependencies=resolve_dependencies,
        )

    @property
    def mediation_id(self) -> str:
        base = f"{self.group_id}:{self.artifact_id}:{self.type}"
        return f"{base}:{self.classifier}" if self.classifier else base

    @property
    def management_id(self) -> str:
        return f"{self.group_id}:{self.artifact_id}"

    @property
    def coordinates(self) -> str:
        return f"{self.group_id}:{self.artifact_id}:{self.version}"

    @property
    def detailed_coordinates(self) -> str:
        return f"{self.coordinates}:{self.classifier or ''}:{self.type}"

    @property
    def is_maven_object(self) -> bool:
        return self.path is None

    @property
    def is_snapshot(self) -> bool:
        return bool(self.version) and "-SNAPSHOT" in self.version

    @property
    def is_meta_version(self) -> bool:
        if not self.version:
            return False
        return self.is_snapshot or self.version.upper() in (RELEASE, LATEST)

    def excludes(self, other: Dependency) -> bool:
        """Return True if `other` is excluded from this dependency's subtree."""
        patterns = self.exclusions
        if not patterns:
            return False
        return (
            other.mediation_id in patterns
            or other.management_id in patterns
            or other.group_id in patterns
            or "*:*" in patterns
            or "*" in patterns
        )

    def pom_artifact(self) -> Dependency:
        """Return the POM coordinate of this dependency (no classifier, type pom)."""
        return self.model_copy(update={"classifier": None, "type": POM, "exclusions": set()})

    def sources_artifact(self) -> Dependency:
        return self.model_copy(update={"classifier": "sources", "exclusions": set()})

    def javadoc_artifact(self) -> Dependency:
        return self.model_copy(update={"classifier": "javadoc", "exclusions": set()})

    def file_name(self, ext: str | None = None) -> str:
        """Return the Maven2 file name, e.g. `artifact-1.0-classifier.jar`.

        Snapshot files are named after their concrete revision when known.
        POM files carry no classifier.
        """
        ext = ext or self.type
        name = f"{self.artifact_id}-{self.revision or self.version}"
        if self.classifier and ext != POM:
            name += f"-{self.classifier}"
        return f"{name}.{ext}"

    def label(self) -> str:
        """Return a user-facing label for the dependency.

        Returns:
            A formatted string including coordinates and scope when present.
        """
        parts: list[str] = [self.coordinates]
        if self.classifier:
            parts[0] += f":{self.classifier}"
        if self.type not in ("jar", POM):
            parts[0] += f"@{self.type}"
        if self.scope:
            parts.append(f"(scope={self.scope.value})")
        if self.optional:
            parts.append("(optional)")
        return " ".join(parts)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Dependency):
            return NotImplemented
        return self.detailed_coordinates == other.detailed_coordinates

    def __hash__(self) -> int:
        return hash(self.detailed_coordinates)

    def __str__(self) -> str:
        return self.detailed_coordinates


class Pom(BaseModel):
    """A parsed Maven project model, or the in-memory model of a build."""

    project: GAV
    packaging: str = "jar"
    parent: GAV | None = None
    properties: dict[str, str] = Field(default_factory=dict)
    dependencies: dict[Scope, list[Dependency]] = Field(default_factory=dict)
    managed_versions: dict[str, str] = Field(default_factory=dict)
    managed_scopes: dict[str, Scope] = Field(default_factory=dict)
    imports: list[Dependency] = Field(default_factory=list)
    exclusions: set[str] = Field(default_factory=set)

    @property
    def management_id(self) -> str:
        return f"{self.project.group_id}:{self.project.artifact_id}"

    @property
    def coordinates(self) -> str:
        return self.project.compact()

    @property
    def is_pom(self) -> bool:
        return self.packaging.lower() == POM

    @property
    def scopes(self) -> list[Scope]:
        return list(self.dependencies)

    def as_dependency(self) -> Dependency:
        return Dependency(
            group_id=self.project.group_id,
            artifact_id=self.project.artifact_id,
            version=self.project.version,
            type=self.packaging or "jar",
        )

    def parent_dependency(self) -> Dependency | None:
        if self.parent is None:
            return None
        return Dependency(
            group_id=self.parent.group_id,
            artifact_id=self.parent.artifact_id,
            version=self.parent.version,
            type=POM,
        )

    def managed_version(self, dependency: Dependency) -> str | None:
        return self.managed_versions.get(dependency.management_id, dependency.version)

    def add_managed_dependency(self, dependency: Dependency, scope: Scope | None = None) -> None:
        if dependency.management_id == self.management_id:
            logger.warning("Ignoring circular managed dependency %s", dependency.management_id)
            return
        if dependency.version:
            self.managed_versions[dependency.management_id] = dependency.version
        if scope is not None:
            self.managed_scopes[dependency.management_id] = scope

    def has_dependency(self, dependency: Dependency) -> bool:
        mediation_id = dependency.mediation_id
        return any(
            dep.mediation_id == mediation_id for deps in self.dependencies.values() for dep in deps
        )

    def excludes(self, dependency: Dependency) -> bool:
        return (
            dependency.mediation_id in self.exclusions
            or dependency.management_id in self.exclusions
            or dependency.group_id in self.exclusions
        )

    def add_dependency(self, dependency: Dependency, scope: Scope | None = None) -> bool:
        """Declare a dependency in `scope`.

        A missing version is taken from the managed versions table and a
        missing scope from the managed scopes table (then compile). Circular
        references to this project, duplicates by mediation id and excluded
        coordinates are ignored.

        Returns:
            True if the dependency was added.
        """
        dep = dependency.model_copy(deep=True)
        if dep.is_maven_object:
            if not dep.version:
                dep.version = self.managed_version(dep)
            if not dep.type:
                dep.type = "jar"
            if dep.management_id == self.management_id:
                logger.warning("Ignoring circular dependency %s", dep.management_id)
                return False

        if self.has_dependency(dep) or self.excludes(dep):
            return False

        if scope is None:
            scope = dep.scope or self.managed_scopes.get(dep.management_id) or Scope.COMPILE
        dep.scope = scope
        self.dependencies.setdefault(scope, []).append(dep)
        return True

    def declared(self, scope: Scope) -> list[Dependency]:
        """Return the dependencies declared in exactly `scope`."""
        return list(self.dependencies.get(scope, []))

    def get_dependencies(self, scope: Scope, ring: int = RING_DIRECT) -> list[Dependency]:
        """Return copies of the dependencies that belong to the `scope` solution.

        Ring 1 uses the classpath inclusion rules directly. Deeper rings map
        each declared scope through the transitive-scope table first and
        skip optional dependencies.

        Args:
            scope: The solution scope being computed.
            ring: The ring assigned to every returned dependency.

        Returns:
            Unique dependencies in declaration order.
        """
        seen: set[Dependency] = set()
        result: list[Dependency] = []
        for dependency_scope, deps in self.dependencies.items():
            if ring <= RING_DIRECT:
                include = scope.includes(dependency_scope)
            else:
                include = scope.includes(scope.transitive(dependency_scope))
            if not include:
                continue
            for dep in deps:
                # a project's own optional dependencies are kept; only those of its dependencies are dropped
                if ring > RING_DIRECT and dep.optional:
                    continue
                if dep in seen:
                    continue
                seen.add(dep)
                copy = dep.model_copy(deep=True)
                copy.ring = ring
                result.append(copy)
        return result

    def all_dependencies(self) -> list[Dependency]:
        """Return every declared dependency once, across all scopes."""
        seen: set[Dependency] = set()
        result: list[Dependency] = []
        for deps in self.dependencies.values():
            for dep in deps:
                if dep not in seen:
                    seen.add(dep)
                    result.append(dep)
        return result

    def inherit(self, parent: Pom) -> None:
        """Inherit managed tables and properties from `parent` without overwriting."""
        _non_destructive_copy(parent.managed_versions, self.managed_versions)
        _non_destructive_copy(parent.managed_scopes, self.managed_scopes)
        _non_destructive_copy(parent.properties, self.properties)

    def import_managed_dependencies(self, other: Pom) -> None:
        """Merge the managed tables of `other` into this POM and fill missing versions."""
        _non_destructive_copy(other.managed_versions, self.managed_versions)
        _non_destructive_copy(other.managed_scopes, self.managed_scopes)
        for deps in self.dependencies.values():
            for dep in deps:
                if dep.is_maven_object and not dep.version:
                    dep.version = self.managed_versions.get(dep.management_id)

    def remove_scope(self, scope: Scope) -> None:
        self.dependencies.pop(scope, None)


def _non_destructive_copy(source: dict, destination: dict) -> None:
    for key, value in source.items():
        destination.setdefault(key, value)
