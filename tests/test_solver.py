from __future__ import annotations

import os
from pathlib import Path
from typing import Callable

import pytest

from conftest import FakeRepository, FakeSession, _write, ids, pom_xml
from j_dep_resolver.config import ResolverConfig
from j_dep_resolver.cache import ArtifactCache
from j_dep_resolver.exceptions import ArtifactNotFoundError, ConfigurationError
from j_dep_resolver.graph import build_solution_graph, dependency_paths, reverse_dependencies
from j_dep_resolver.models import Dependency, Scope
from j_dep_resolver.solver import Build, Solver

SNAPSHOT_METADATA = """<?xml version="1.0" encoding="UTF-8"?>
<metadata>
  <groupId>org.example</groupId>
  <artifactId>snap</artifactId>
  <version>1.0-SNAPSHOT</version>
  <versioning>
    <snapshot>
      <timestamp>20200115.101500</timestamp>
      <buildNumber>3</buildNumber>
    </snapshot>
    <lastUpdated>20200115101500</lastUpdated>
  </versioning>
</metadata>
"""


def test_tie_keeps_first_registration(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver]
) -> None:
    remote.publish("org.example:a:1.0", ["org.example:c:1.0"])
    remote.publish("org.example:b:1.0", ["org.example:c:2.0"])
    remote.publish("org.example:c:1.0")
    remote.publish("org.example:c:2.0")

    solver = make_solver(project(["org.example:a:1.0", "org.example:b:1.0"]))
    solution = solver.resolve()[Scope.COMPILE]

    assert ids(solution) == ["org.example:a:1.0", "org.example:c:1.0", "org.example:b:1.0"]
    assert [d.ring for d in solution] == [1, 2, 1]


def test_nearest_wins_and_keeps_position(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver]
) -> None:
    remote.publish("org.example:a:1.0", ["org.example:b:1.0"])
    remote.publish("org.example:b:1.0", ["org.example:c:1.0"])
    remote.publish("org.example:c:1.0")
    remote.publish("org.example:c:3.0")

    solver = make_solver(project(["org.example:a:1.0", "org.example:c:3.0"]))
    solution = solver.resolve()[Scope.COMPILE]

    assert ids(solution) == ["org.example:a:1.0", "org.example:b:1.0", "org.example:c:3.0"]
    assert solution[2].ring == 1


def test_scopes_and_artifacts(
    remote: FakeRepository,
    project: Callable[..., Path],
    make_solver: Callable[..., Solver],
    config: ResolverConfig,
    session: FakeSession,
) -> None:
    remote.publish("org.example:api:1.0", ["org.example:impl:1.0:runtime", "org.example:mock:1.0:test"])
    remote.publish("org.example:impl:1.0")
    remote.publish("org.example:junit:4.13")
    remote.publish("org.example:tool:1.0")

    solver = make_solver(
        project(["org.example:api:1.0", "org.example:junit:4.13:test", "org.example:tool:1.0:build"])
    )
    solutions = solver.resolve()

    assert ids(solutions[Scope.COMPILE]) == ["org.example:api:1.0"]
    assert ids(solutions[Scope.RUNTIME]) == ["org.example:api:1.0", "org.example:impl:1.0"]
    assert ids(solutions[Scope.TEST]) == ["org.example:api:1.0", "org.example:impl:1.0", "org.example:junit:4.13"]
    assert ids(solutions[Scope.BUILD]) == ["org.example:tool:1.0"]
    # test dependencies of dependencies are never retrieved
    assert not session.requested("mock-1.0.pom")

    classpath = solver.classpath(Scope.TEST)
    assert [p.name for p in classpath] == ["api-1.0.jar", "impl-1.0.jar", "junit-4.13.jar"]
    assert all(p.exists() and p.is_relative_to(config.cache_root) for p in classpath)


def test_exclusions_are_inherited(
    remote: FakeRepository, tmp_path: Path, make_solver: Callable[..., Solver], session: FakeSession
) -> None:
    remote.publish("org.example:a:1.0", ["org.example:b:1.0"])
    remote.publish("org.example:b:1.0", ["commons-logging:commons-logging:1.2", "org.example:d:1.0"])
    remote.publish("commons-logging:commons-logging:1.2")
    remote.publish("org.example:d:1.0")
    pom = """<project>
  <groupId>com.acme</groupId>
  <artifactId>app</artifactId>
  <version>1.0.0</version>
  <dependencies>
    <dependency>
      <groupId>org.example</groupId>
      <artifactId>a</artifactId>
      <version>1.0</version>
      <exclusions>
        <exclusion><groupId>commons-logging</groupId><artifactId>commons-logging</artifactId></exclusion>
      </exclusions>
    </dependency>
  </dependencies>
</project>
"""
    solver = make_solver(_write(tmp_path / "project", "pom.xml", pom))
    solution = solver.resolve()[Scope.COMPILE]

    assert ids(solution) == ["org.example:a:1.0", "org.example:b:1.0", "org.example:d:1.0"]
    assert not session.requested("commons-logging-1.2.pom")


def test_optional_only_on_direct_ring(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver]
) -> None:
    remote.publish("org.example:a:1.0", ["org.example:extra:1.0::optional"])
    remote.publish("org.example:extra:1.0")
    remote.publish("org.example:opt:1.0")

    solver = make_solver(project(["org.example:a:1.0", "org.example:opt:1.0::optional"]))

    assert ids(solver.resolve()[Scope.COMPILE]) == ["org.example:a:1.0", "org.example:opt:1.0"]


def test_cycles_terminate(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver]
) -> None:
    remote.publish("org.example:a:1.0", ["org.example:b:1.0"])
    remote.publish("org.example:b:1.0", ["org.example:a:1.0"])

    solver = make_solver(project(["org.example:a:1.0"]))

    assert ids(solver.resolve()[Scope.COMPILE]) == ["org.example:a:1.0", "org.example:b:1.0"]


def test_cached_solution_valid_while_pom_unchanged(
    remote: FakeRepository,
    project: Callable[..., Path],
    make_solver: Callable[..., Solver],
    config: ResolverConfig,
) -> None:
    remote.publish("org.example:a:1.0", ["org.example:b:1.0"])
    remote.publish("org.example:b:1.0")
    pom_path = project(["org.example:a:1.0"])
    first = make_solver(pom_path)
    first.resolve()

    a = Dependency.parse("org.example:a:1.0")
    record = first.store.read(a)
    assert record.last_solved == first.cache.pom_mtime_ns(a)
    assert [(d.coordinates, d.ring) for d in record.solutions[Scope.COMPILE]] == [("org.example:b:1.0", 0)]

    # a marker only the cached solution knows about
    marker = Dependency.parse("org.example:marker:9.9")
    marker.scope = Scope.COMPILE
    record.solutions[Scope.COMPILE].append(marker)
    first.store.write(a, record)

    reused = make_solver(pom_path).solve(Scope.COMPILE)
    assert ids(reused) == ["org.example:a:1.0", "org.example:b:1.0", "org.example:marker:9.9"]
    assert [d.ring for d in reused] == [1, 2, 2]

    pom_file = first.cache.artifact_path(a, "pom")
    stat = pom_file.stat()
    os.utime(pom_file, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))

    refreshed = make_solver(pom_path).solve(Scope.COMPILE)
    assert ids(refreshed) == ["org.example:a:1.0", "org.example:b:1.0"]
    assert first.store.read(a).last_solved == pom_file.stat().st_mtime_ns


def test_resolution_is_deterministic(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver]
) -> None:
    remote.publish("org.example:a:1.0", ["org.example:x:1.0", "org.example:y:1.0"])
    remote.publish("org.example:b:1.0", ["org.example:y:2.0", "org.example:z:1.0"])
    for coordinates in ("org.example:x:1.0", "org.example:y:1.0", "org.example:y:2.0", "org.example:z:1.0"):
        remote.publish(coordinates)
    pom_path = project(["org.example:a:1.0", "org.example:b:1.0"])

    first = ids(make_solver(pom_path).resolve()[Scope.COMPILE])
    second = ids(make_solver(pom_path).resolve()[Scope.COMPILE])

    assert first == second == [
        "org.example:a:1.0",
        "org.example:x:1.0",
        "org.example:y:1.0",
        "org.example:b:1.0",
        "org.example:z:1.0",
    ]


def test_cached_release_needs_no_network(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver], session: FakeSession
) -> None:
    remote.publish("org.example:a:1.0", ["org.example:b:1.0"])
    remote.publish("org.example:b:1.0")
    pom_path = project(["org.example:a:1.0"])
    make_solver(pom_path).resolve()
    session.requests.clear()

    make_solver(pom_path).resolve()

    assert session.requests == []


def test_parent_pom_supplies_versions(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver]
) -> None:
    management = """
  <dependencyManagement>
    <dependencies>
      <dependency><groupId>org.example</groupId><artifactId>b</artifactId><version>2.0</version></dependency>
    </dependencies>
  </dependencyManagement>"""
    remote.publish("org.example:parent:1.0", packaging="pom", extra=management)
    remote.publish("org.example:a:1.0", ["org.example:b:"], parent="org.example:parent:1.0")
    remote.publish("org.example:b:2.0")

    solver = make_solver(project(["org.example:a:1.0"]))

    assert ids(solver.resolve()[Scope.COMPILE]) == ["org.example:a:1.0", "org.example:b:2.0"]


def test_import_scope_fills_versions(
    remote: FakeRepository, tmp_path: Path, make_solver: Callable[..., Solver]
) -> None:
    management = """
  <dependencyManagement>
    <dependencies>
      <dependency><groupId>org.example</groupId><artifactId>lib</artifactId><version>1.5</version></dependency>
    </dependencies>
  </dependencyManagement>"""
    remote.publish("org.example:bom:1.0", packaging="pom", extra=management)
    remote.publish("org.example:lib:1.5")
    imports = """
  <dependencyManagement>
    <dependencies>
      <dependency>
        <groupId>org.example</groupId><artifactId>bom</artifactId><version>1.0</version>
        <type>pom</type><scope>import</scope>
      </dependency>
    </dependencies>
  </dependencyManagement>"""
    path = _write(tmp_path / "project", "pom.xml", pom_xml("com.acme:app:1.0", ["org.example:lib:"], extra=imports))

    solver = make_solver(path)

    assert ids(solver.resolve()[Scope.COMPILE]) == ["org.example:lib:1.5"]


def test_assimilate_scope_merges_declarations(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver]
) -> None:
    remote.publish(
        "org.example:platform:1.0",
        ["org.example:core:1.0", "org.example:junit:4.13:test"],
        packaging="pom",
    )
    remote.publish("org.example:core:1.0")
    remote.publish("org.example:junit:4.13")

    solver = make_solver(project(["org.example:platform:1.0:assimilate", "org.example:own:1.0"]))
    remote.publish("org.example:own:1.0")
    solutions = solver.resolve()

    assert Scope.ASSIMILATE not in solver.pom.scopes
    assert ids(solutions[Scope.COMPILE]) == ["org.example:own:1.0", "org.example:core:1.0"]
    assert ids(solutions[Scope.TEST]) == [
        "org.example:own:1.0",
        "org.example:core:1.0",
        "org.example:junit:4.13",
    ]


def test_linked_builds_terminate_on_cycles(
    remote: FakeRepository, tmp_path: Path, config: ResolverConfig, session: FakeSession
) -> None:
    remote.publish("org.example:a:1.0")
    remote.publish("org.example:b:1.0")
    x_path = _write(tmp_path / "x", "pom.xml", pom_xml("com.acme:x:1.0", ["org.example:a:1.0"]))
    y_path = _write(tmp_path / "y", "pom.xml", pom_xml("com.acme:y:1.0", ["org.example:b:1.0"]))
    y = Build.from_pom_file(y_path)
    x = Build.from_pom_file(x_path, linked_builds=[y])
    y.linked_builds.append(x)

    solver = Solver(config, x, session=session)
    solution = solver.resolve()[Scope.COMPILE]

    assert ids(solution) == ["org.example:a:1.0", "org.example:b:1.0"]
    assert solver.linked_builds == [y]


def test_snapshot_metadata_checked_once_per_day(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver], session: FakeSession
) -> None:
    remote.add("org/example/snap/1.0-SNAPSHOT/maven-metadata.xml", SNAPSHOT_METADATA, checksum=False)
    remote.publish("org.example:snap:1.0-SNAPSHOT", revision="1.0-20200115.101500-3")
    pom_path = project(["org.example:snap:1.0-SNAPSHOT"])

    solver = make_solver(pom_path)
    solution = solver.resolve()[Scope.COMPILE]

    assert [d.revision for d in solution] == ["1.0-20200115.101500-3"]
    assert len(session.requested("maven-metadata.xml")) == 1
    assert solver.classpath(Scope.COMPILE)[0].name == "snap-1.0-20200115.101500-3.jar"
    assert not solver.store.read(solution[0]).is_refresh_required

    session.requests.clear()
    make_solver(pom_path).resolve()
    assert session.requests == []


def test_system_dependencies_use_their_path(tmp_path: Path, make_solver: Callable[..., Solver]) -> None:
    tools = tmp_path / "tools.jar"
    tools.write_bytes(b"jar")
    pom = f"""<project>
  <groupId>com.acme</groupId><artifactId>app</artifactId><version>1.0</version>
  <dependencies>
    <dependency>
      <groupId>com.sun</groupId><artifactId>tools</artifactId><version>1.8</version>
      <scope>system</scope><systemPath>{tools}</systemPath>
    </dependency>
  </dependencies>
</project>
"""
    solver = make_solver(_write(tmp_path / "project", "pom.xml", pom))
    solver.resolve()

    assert solver.classpath(Scope.COMPILE) == [tools]


def test_dependency_directory_overrides_cache(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver], tmp_path: Path
) -> None:
    remote.publish("org.example:a:1.0")
    lib = tmp_path / "project" / "lib"
    lib.mkdir(parents=True)
    (lib / "a-0.9.jar").write_bytes(b"old")
    (lib / "a-extras-1.0.jar").write_bytes(b"related")

    solver = make_solver(project(["org.example:a:1.0"]), dependency_directory=lib)
    solver.resolve()

    assert solver.classpath(Scope.COMPILE) == [lib / "a-1.0.jar"]
    assert sorted(p.name for p in lib.iterdir()) == ["a-1.0.jar", "a-extras-1.0.jar"]


def test_transport_failure_is_fatal(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver], session: FakeSession
) -> None:
    session.status[remote.url("org/example/a/1.0/a-1.0.pom")] = 503

    solver = make_solver(project(["org.example:a:1.0"]))
    with pytest.raises(ConfigurationError):
        solver.resolve()


def test_missing_pom_is_not_fatal(project: Callable[..., Path], make_solver: Callable[..., Solver]) -> None:
    solver = make_solver(project(["org.example:ghost:1.0"]))

    assert ids(solver.resolve()[Scope.COMPILE]) == ["org.example:ghost:1.0"]
    assert solver.classpath(Scope.COMPILE)[0].exists() is False


def test_solve_dependencies(remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver]) -> None:
    remote.publish("org.example:a:1.0", ["org.example:b:1.0"])
    remote.publish("org.example:b:1.0")
    remote.publish("org.example:zip:1.0", ["org.example:b:1.0"], jar=b"zip")
    remote.add("org/example/zip/1.0/zip-1.0.zip", b"zip")

    solver = make_solver(project([]))
    files = solver.solve_dependencies(Scope.COMPILE, "org.example:a:1.0", "org.example:zip:1.0@zip")

    assert [f.name for f in files] == ["a-1.0.jar", "b-1.0.jar", "zip-1.0.zip"]


def test_graph_explains_dependencies(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver]
) -> None:
    remote.publish("org.example:a:1.0", ["org.example:c:1.0"])
    remote.publish("org.example:b:1.0", ["org.example:c:2.0"])
    remote.publish("org.example:c:1.0")
    remote.publish("org.example:c:2.0")

    solver = make_solver(project(["org.example:a:1.0", "org.example:b:1.0"]))
    solver.resolve()
    root = solver.pom.coordinates
    g = build_solution_graph(root, solver.solve(Scope.COMPILE), solver.graph(Scope.COMPILE))

    assert "org.example:c:2.0" not in g
    assert reverse_dependencies(g, "org.example:c") == ["org.example:a:1.0"]
    assert dependency_paths(g, root, "org.example:c:1.0") == [[root, "org.example:a:1.0", "org.example:c:1.0"]]
    assert g.nodes["org.example:c:1.0"]["ring"] == 2


def test_dependency_override_replaces_declared_dependencies(
    remote: FakeRepository,
    project: Callable[..., Path],
    make_solver: Callable[..., Solver],
    config: ResolverConfig,
    session: FakeSession,
) -> None:
    remote.publish("org.example:a:1.0", ["org.example:broken:1.0"])
    remote.publish("org.example:fixed:1.0", ["org.example:util:1.0"])
    remote.publish("org.example:util:1.0")
    config.add_dependency_override("org.example:a:1.0", ["org.example:fixed:1.0"])

    solver = make_solver(project(["org.example:a:1.0"]))
    solutions = solver.resolve()

    assert ids(solutions[Scope.COMPILE]) == ["org.example:a:1.0", "org.example:fixed:1.0", "org.example:util:1.0"]
    assert not session.requested("broken-1.0.pom")
    assert session.requested("util-1.0.jar")


def test_dependency_override_applies_to_its_scopes_only(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver], config: ResolverConfig
) -> None:
    remote.publish("org.example:a:1.0", ["org.example:b:1.0"])
    remote.publish("org.example:b:1.0")
    remote.publish("org.example:c:1.0")
    config.add_dependency_override("org.example:a:1.0", ["org.example:c:1.0"], scopes=[Scope.TEST])

    solutions = make_solver(project(["org.example:a:1.0"])).resolve()

    assert ids(solutions[Scope.COMPILE]) == ["org.example:a:1.0", "org.example:b:1.0"]
    assert ids(solutions[Scope.TEST]) == ["org.example:a:1.0", "org.example:c:1.0"]


def test_sources_and_javadoc_are_retrieved(
    remote: FakeRepository, project: Callable[..., Path], make_solver: Callable[..., Solver], cache: ArtifactCache
) -> None:
    remote.publish("org.example:a:1.0")
    remote.add("org/example/a/1.0/a-1.0-sources.jar", b"sources")
    remote.add("org/example/a/1.0/a-1.0-javadoc.jar", b"javadoc")

    make_solver(project(["org.example:a:1.0"])).resolve()

    dep = Dependency.parse("org.example:a:1.0")
    assert cache.artifact_path(dep.sources_artifact()).read_bytes() == b"sources"
    assert cache.artifact_path(dep.javadoc_artifact()).read_bytes() == b"javadoc"


def test_fail_fast_on_missing_artifact(
    project: Callable[..., Path], make_solver: Callable[..., Solver], config: ResolverConfig
) -> None:
    config.fail_fast = True
    solver = make_solver(project(["org.example:ghost:1.0"]))

    with pytest.raises(ArtifactNotFoundError, match="Failed to resolve org.example:ghost:1.0"):
        solver.resolve()
