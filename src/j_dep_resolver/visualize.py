"""Rich rendering utilities for dependency solutions."""

from __future__ import annotations

import networkx as nx
from rich.table import Table
from rich.tree import Tree

from j_dep_resolver.graph import reachable_within
from j_dep_resolver.models import Dependency, Scope


def build_solution_tree(root: str, g: nx.DiGraph, *, depth: int | None = None) -> Tree:
    """Build a Rich Tree of a solved scope.

    Each dependency is expanded once; later occurrences are shown dimmed.

    Args:
        root: Node id of the project.
        g: Solution graph (A -> B means A depends on B).
        depth: Maximum depth to render, None for all.

    Returns:
        A Rich Tree object for rendering.
    """
    tree = Tree(f"[bold]{root}[/bold]")
    if root not in g or g.out_degree(root) == 0:
        tree.add("[dim]No dependencies found[/dim]")
        return tree

    allowed = reachable_within(g, root, depth)
    expanded: set[str] = {root}
    stack: list[tuple[str, Tree]] = [(child, tree) for child in reversed(sorted(g.successors(root)))]
    while stack:
        node, branch = stack.pop()
        if node not in allowed:
            continue
        if node in expanded:
            branch.add(f"[dim]{node} (see above)[/dim]")
            continue
        expanded.add(node)
        sub = branch.add(node)
        children = [c for c in g.successors(node) if c in allowed]
        stack.extend((child, sub) for child in reversed(sorted(children)))
    return tree


def build_solution_table(scope: Scope, solution: list[Dependency]) -> Table:
    """Build a Rich Table listing a scope's solution in order."""
    table = Table(title=f"{scope.value} dependencies")
    table.add_column("#", style="dim", width=6)
    table.add_column("Dependency")
    table.add_column("Ring", justify="right")
    table.add_column("Type")
    for i, dep in enumerate(solution, start=1):
        table.add_row(str(i), dep.label(), str(dep.ring), dep.type)
    return table
