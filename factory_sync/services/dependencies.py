"""
Dependency Graph Service - Import Ordering
Builds the workflow -> dependency graph of a bundle, detects cycles and
derives a deterministic import order (dependencies first).

Pure functions, no I/O.
"""
from typing import Dict, List, Set

from factory_sync.core.logging import catalog_logger as logger
from factory_sync.models.schemas import (
    BundledWorkflow,
    CircularDependencyResult,
    CycleBroken,
    DependencyEdge,
    DependencyGraph,
    DependencyNode,
    Level,
    LevelResult,
)

WHITE, GRAY, BLACK = 0, 1, 2


def build_adjacency(workflows: List[BundledWorkflow]) -> Dict[str, List[str]]:
    """
    Workflow name -> in-bundle dependency names, keyed in bundle order.
    Dependencies on names outside the bundle are left out.
    """
    names = {wf.name for wf in workflows}
    return {wf.name: [dep for dep in wf.dependencies if dep in names] for wf in workflows}


def external_dependencies(workflows: List[BundledWorkflow]) -> Dict[str, List[str]]:
    names = {wf.name for wf in workflows}
    external = {}
    for wf in workflows:
        missing = [dep for dep in wf.dependencies if dep not in names]
        if missing:
            external[wf.name] = missing
    return external


def _reaches_itself(start: str, graph: Dict[str, List[str]]) -> bool:
    stack = list(graph.get(start, []))
    seen: Set[str] = set()
    while stack:
        node = stack.pop()
        if node == start:
            return True
        if node in seen:
            continue
        seen.add(node)
        stack.extend(graph.get(node, []))
    return False


def find_cyclic_nodes(graph: Dict[str, List[str]]) -> Set[str]:
    """Every node that lies on some cycle (including self-dependencies)."""
    return {node for node in graph if _reaches_itself(node, graph)}


def detect_circular_dependencies(workflows: List[BundledWorkflow]) -> CircularDependencyResult:
    """
    Detect cycles and compute the import order.

    Iterative three-colour DFS from every root in bundle (filename) order.
    An edge into a GRAY node closes a cycle, which is read off the current
    DFS path. Post-order finish times give dependencies before dependents.
    When cycles exist, cyclic nodes are left out of ``dependency_order`` and
    listed in ``cyclic_nodes``; callers must not import in that case.
    """
    ordered = sorted(workflows, key=lambda wf: wf.filename)
    graph = build_adjacency(ordered)
    result = CircularDependencyResult(external_dependencies=external_dependencies(ordered))

    color = {name: WHITE for name in graph}
    post_order: List[str] = []

    for root in graph:
        if color[root] != WHITE:
            continue

        path = [root]
        stack = [(root, iter(graph[root]))]
        color[root] = GRAY

        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                if color[dep] == GRAY:
                    cycle = path[path.index(dep):]
                    result.cycles.append(list(cycle))
                elif color[dep] == WHITE:
                    color[dep] = GRAY
                    path.append(dep)
                    stack.append((dep, iter(graph[dep])))
                    advanced = True
                    break
            if not advanced:
                stack.pop()
                path.pop()
                color[node] = BLACK
                post_order.append(node)

    result.has_cycle = bool(result.cycles)
    if result.has_cycle:
        cyclic = find_cyclic_nodes(graph)
        result.cyclic_nodes = [name for name in graph if name in cyclic]
        result.dependency_order = [name for name in post_order if name not in cyclic]
        logger.error(
            "Circular dependencies detected: "
            + "; ".join(" -> ".join(c) for c in result.cycles)
        )
    else:
        result.dependency_order = post_order
        logger.info(f"No circular dependencies detected ({len(post_order)} workflows ordered)")

    return result


def compute_levels(workflows: List[BundledWorkflow]) -> Dict[str, LevelResult]:
    """
    Depth of every workflow in the dependency tree.

    ``level = 0`` without in-bundle dependencies, otherwise
    ``1 + max(level(dep))``. A dependency already on the current path counts
    as 0 so the walk terminates; any workflow that reaches a cycle gets a
    ``CycleBroken`` carrying that heuristic value instead of a real level.
    """
    graph = build_adjacency(sorted(workflows, key=lambda wf: wf.filename))
    cyclic = find_cyclic_nodes(graph)
    depths: Dict[str, int] = {}
    tainted: Dict[str, bool] = {}

    def depth(name: str, on_path: Set[str]) -> int:
        if name in depths:
            return depths[name]
        if name in on_path:
            return 0
        on_path.add(name)
        value = 0
        for dep in graph[name]:
            value = max(value, depth(dep, on_path) + 1)
        on_path.discard(name)
        depths[name] = value
        return value

    def reaches_cycle(name: str) -> bool:
        # cyclic nodes answer immediately, so the recursion only walks acyclic paths
        if name not in tainted:
            tainted[name] = name in cyclic or any(reaches_cycle(dep) for dep in graph[name])
        return tainted[name]

    levels: Dict[str, LevelResult] = {}
    for name in graph:
        value = depth(name, set())
        if reaches_cycle(name):
            levels[name] = CycleBroken(approximate=value)
        else:
            levels[name] = Level(value=value)

    return levels


def build_dependency_graph(workflows: List[BundledWorkflow]) -> DependencyGraph:
    """Nodes, edges, level groups and import order for visualisation."""
    cycle_result = detect_circular_dependencies(workflows)
    levels = compute_levels(workflows)
    graph = build_adjacency(workflows)

    nodes = [
        DependencyNode(
            id=wf.filename,
            name=wf.name,
            filename=wf.filename,
            level=levels[wf.name],
            node_count=wf.node_count,
            has_credentials=wf.has_credentials,
            webhook_paths=wf.webhook_paths,
        )
        for wf in workflows
    ]
    edges = [DependencyEdge(source=name, target=dep) for name, deps in graph.items() for dep in deps]

    groups: Dict[int, List[str]] = {}
    for name, level in levels.items():
        key = level.value if isinstance(level, Level) else level.approximate
        groups.setdefault(key, []).append(name)

    return DependencyGraph(
        nodes=nodes,
        edges=edges,
        levels=groups,
        import_order=cycle_result.dependency_order,
        has_cycles=cycle_result.has_cycle,
        cycles=cycle_result.cycles,
        cyclic_nodes=cycle_result.cyclic_nodes,
    )
