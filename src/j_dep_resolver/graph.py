from __future__ import annotations

from collections.abc import Iterable

import networkx as nx

from j_dep_resolver.models import Dependency


def build_solution_graph(root: str, solution: Iterable[Dependency], edges: nx.DiGraph) -> nx.DiGraph:
    """Restrict a solver's discovery graph to the nodes that made it into `solution`.

    A -> B means A depends on B. Losing versions of mediated dependencies are dropped.
    """
    keep = {root, *(dep.coordinates for dep in solution)}
    g = nx.DiGraph()
    g.add_node(root, ring=0)
    for dep in solution:
        g.add_node(dep.coordinates, ring=dep.ring, scope=dep.scope.value if dep.scope else None)
    for u, v, data in edges.edges(data=True):
        if u in keep and v in keep:
            g.add_edge(u, v, **data)
    return g


def match_nodes(g: nx.DiGraph, target: str) -> list[str]:
    """Return graph nodes matching `groupId:artifactId` or `groupId:artifactId:version`."""
    if target in g:
        return [target]
    prefix = target.rstrip(":") + ":"
    return sorted(str(n) for n in g.nodes if str(n).startswith(prefix))


def reverse_dependencies(g: nx.DiGraph, target_gav: str) -> list[str]:
    """Return predecessors of target_gav (who depends on it)."""
    preds: set[str] = set()
    for node in match_nodes(g, target_gav):
        preds.update(str(p) for p in g.predecessors(node))
    return sorted(preds)


def dependency_paths(g: nx.DiGraph, root: str, target_gav: str, limit: int = 20) -> list[list[str]]:
    """Return up to `limit` simple paths from `root` to the nodes matching `target_gav`."""
    paths: list[list[str]] = []
    if root not in g:
        return paths
    for node in match_nodes(g, target_gav):
        for path in nx.all_simple_paths(g, root, node):
            paths.append([str(p) for p in path])
            if len(paths) >= limit:
                return paths
    return sorted(paths, key=len)


def reachable_within(g: nx.DiGraph, root: str, depth: int | None = None) -> set[str]:
    """Return `root` and the dependencies reachable from it in at most `depth` hops.

    A `depth` of None means no limit. An unknown root yields every node.
    """
    if not root or not g.has_node(root):
        return set(g.nodes)
    return {str(n) for n in nx.single_source_shortest_path_length(g, root, cutoff=depth)}
