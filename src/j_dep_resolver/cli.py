"""Typer CLI entry point for J-Dep Resolver."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from j_dep_resolver.cache import ArtifactCache
from j_dep_resolver.config import ResolverConfig
from j_dep_resolver.exceptions import JDepError
from j_dep_resolver.graph import build_solution_graph, dependency_paths, reverse_dependencies
from j_dep_resolver.models import GAV, Dependency, Pom, Scope
from j_dep_resolver.solver import SOLUTION_SCOPES, Build, Solver
from j_dep_resolver.visualize import build_solution_table, build_solution_tree

app = typer.Typer(add_completion=False, help="Resolve and retrieve Maven dependencies.")
console = Console()

PomArgument = Annotated[Path, typer.Argument(help="Path to the project's pom.xml file.")]
ScopeOption = Annotated[str, typer.Option("--scope", "-s", help="Solution scope.")]


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose)],
        force=True,
    )
    # requests/urllib3 connection chatter is only useful when debugging
    logging.getLogger("urllib3").setLevel(logging.DEBUG if verbose else logging.WARNING)


@app.callback()
def _main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging.")] = False,
) -> None:
    _configure_logging(verbose)


def _config(offline: bool = False) -> ResolverConfig:
    config = ResolverConfig.from_env()
    if offline:
        config.online = False
    config.validate()
    return config


def _scope(value: str) -> Scope:
    scope = Scope.from_string(value)
    if scope is None or scope not in SOLUTION_SCOPES:
        names = ", ".join(s.value for s in SOLUTION_SCOPES)
        raise typer.BadParameter(f"scope must be one of {names}")
    return scope


def _solver(
    pom: Path,
    *,
    linked: list[Path] | None = None,
    dependency_dir: Path | None = None,
    offline: bool = False,
) -> Solver:
    builds = [Build.from_pom_file(p) for p in linked or []]
    build = Build.from_pom_file(pom, linked_builds=builds, dependency_directory=dependency_dir)
    return Solver(_config(offline), build)


@app.command()
def resolve(
    pom: PomArgument,
    linked: Annotated[
        Optional[list[Path]],
        typer.Option("--linked", "-l", help="pom.xml of a linked module (repeatable)."),
    ] = None,
    dependency_dir: Annotated[
        Optional[Path],
        typer.Option("--dependency-dir", help="Copy resolved artifacts into this folder."),
    ] = None,
    offline: Annotated[bool, typer.Option("--offline", help="Use the local cache only.")] = False,
) -> None:
    """Solve every scope of a project and retrieve its artifacts."""
    try:
        solver = _solver(pom, linked=linked, dependency_dir=dependency_dir, offline=offline)
        solutions = solver.resolve()
        for scope, solution in solutions.items():
            if solution:
                console.print(build_solution_table(scope, solution))
            else:
                console.print(f"[dim]No {scope.value} dependencies[/dim]")
    except JDepError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1) from None


@app.command()
def classpath(
    pom: PomArgument,
    scope: ScopeOption = "compile",
    separator: Annotated[str, typer.Option("--separator", help="Path separator.")] = os.pathsep,
    offline: Annotated[bool, typer.Option("--offline", help="Use the local cache only.")] = False,
) -> None:
    """Print the classpath of SCOPE."""
    solution_scope = _scope(scope)
    try:
        solver = _solver(pom, offline=offline)
        solver.resolve()
        typer.echo(separator.join(str(p) for p in solver.classpath(solution_scope)))
    except JDepError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1) from None


@app.command()
def tree(
    pom: PomArgument,
    scope: ScopeOption = "compile",
    depth: Annotated[Optional[int], typer.Option("--depth", help="Maximum depth (default: all).")] = None,
    offline: Annotated[bool, typer.Option("--offline", help="Use the local cache only.")] = False,
) -> None:
    """Print the dependency tree of SCOPE."""
    solution_scope = _scope(scope)
    try:
        solver = _solver(pom, offline=offline)
        solver.resolve()
        root = solver.pom.coordinates
        g = build_solution_graph(root, solver.solve(solution_scope), solver.graph(solution_scope))
        console.print(build_solution_tree(root, g, depth=depth))
    except JDepError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1) from None


@app.command()
def why(
    pom: PomArgument,
    target: Annotated[str, typer.Argument(help="groupId:artifactId[:version] to explain.")],
    scope: ScopeOption = "compile",
    offline: Annotated[bool, typer.Option("--offline", help="Use the local cache only.")] = False,
) -> None:
    """Show which dependencies pull TARGET into SCOPE."""
    solution_scope = _scope(scope)
    try:
        solver = _solver(pom, offline=offline)
        solver.resolve()
        g = solver.graph(solution_scope)
        preds = reverse_dependencies(g, target)
        if not preds:
            console.print(f"[dim]{target} is not part of the {solution_scope.value} graph.[/dim]")
            return
        console.print(f"[bold]{target}[/bold] is required by:")
        for gav in preds:
            console.print(f"  {gav}")
        console.print()
        for path in dependency_paths(g, solver.pom.coordinates, target):
            console.print(" [dim]->[/dim] ".join(path))
    except JDepError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1) from None


@app.command()
def get(
    definitions: Annotated[
        list[str],
        typer.Argument(help="Dependencies as group:artifact:version[:classifier[:type]][@ext]."),
    ],
    scope: ScopeOption = "compile",
) -> None:
    """Retrieve ad hoc dependencies (with transitives) and print their files."""
    solution_scope = _scope(scope)
    try:
        build = Build(pom=Pom(project=GAV(group_id="j-dep-resolver", artifact_id="get", version="0")))
        solver = Solver(_config(), build)
        for path in solver.solve_dependencies(solution_scope, *definitions):
            typer.echo(str(path))
    except JDepError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1) from None


@app.command()
def install(
    artifact: Annotated[Path, typer.Argument(help="The built artifact file.")],
    coordinates: Annotated[
        str,
        typer.Option("--coordinates", "-c", help="group:artifact:version[:classifier[:type]]."),
    ],
    pom: Annotated[Optional[Path], typer.Option("--pom", help="pom.xml to publish with it.")] = None,
) -> None:
    """Install a locally built artifact into the cache."""
    try:
        if not artifact.is_file():
            console.print(f"[bold red]Error:[/bold red] Artifact not found: {artifact}")
            raise typer.Exit(code=1)
        config = _config(offline=True)
        dependency = Dependency.parse(coordinates)
        if not dependency.version:
            console.print("[bold red]Error:[/bold red] Coordinates need a version.")
            raise typer.Exit(code=1)
        cache = ArtifactCache(config.cache_root)
        installed = cache.install(dependency, artifact, pom, policy=config.purge_policy)
        console.print(f"[green]Installed[/green] {cache.artifact_path(installed)}")
    except JDepError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1) from None


def main() -> None:
    """Console-script entry point."""
    app()
