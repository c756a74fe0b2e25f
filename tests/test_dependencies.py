import random
import time

import pytest

from factory_sync.models.schemas import BundledWorkflow, CycleBroken, Level
from factory_sync.services.dependencies import (
    build_dependency_graph,
    compute_levels,
    detect_circular_dependencies,
)


def wf(name, *deps):
    return BundledWorkflow(filename=f"{name.lower()}.json", name=name, local_version="0" * 64, dependencies=list(deps))


def assert_dependencies_first(workflows, order):
    position = {name: i for i, name in enumerate(order)}
    for w in workflows:
        for dep in w.dependencies:
            if dep in position:
                assert position[dep] < position[w.name], f"{dep} must come before {w.name}"


def test_three_node_cycle_is_reported():
    result = detect_circular_dependencies([wf("A", "B"), wf("B", "C"), wf("C", "A")])

    assert result.has_cycle is True
    assert any(sorted(cycle) == ["A", "B", "C"] and len(cycle) == 3 for cycle in result.cycles)
    assert sorted(result.cyclic_nodes) == ["A", "B", "C"]
    assert result.dependency_order == []


def test_two_node_cycle():
    result = detect_circular_dependencies([wf("A", "B"), wf("B", "A")])

    assert result.has_cycle is True
    assert result.cycles[0] in (["A", "B"], ["B", "A"])


def test_self_dependency_is_a_cycle():
    result = detect_circular_dependencies([wf("A", "A"), wf("B")])

    assert result.has_cycle is True
    assert ["A"] in result.cycles
    assert result.cyclic_nodes == ["A"]
    assert result.dependency_order == ["B"]


def test_chain_orders_dependencies_first():
    result = detect_circular_dependencies([wf("A", "B"), wf("B", "C"), wf("C")])

    assert result.has_cycle is False
    assert result.dependency_order == ["C", "B", "A"]


def test_acyclic_graph_yields_topological_order():
    workflows = [
        wf("Orchestrator", "Scavenger", "Vision", "Architecture"),
        wf("Scavenger", "Perplexity"),
        wf("Vision", "Perplexity", "Decision"),
        wf("Architecture", "Decision", "Perplexity"),
        wf("Perplexity"),
        wf("Decision"),
        wf("Standalone"),
    ]

    result = detect_circular_dependencies(workflows)

    assert result.has_cycle is False
    assert sorted(result.dependency_order) == sorted(w.name for w in workflows)
    assert_dependencies_first(workflows, result.dependency_order)


def test_order_is_deterministic_regardless_of_input_order():
    workflows = [wf("A", "B", "D"), wf("B", "C"), wf("C"), wf("D", "C"), wf("E")]
    expected = detect_circular_dependencies(workflows).dependency_order

    for seed in range(5):
        shuffled = list(workflows)
        random.Random(seed).shuffle(shuffled)
        assert detect_circular_dependencies(shuffled).dependency_order == expected


def test_external_dependencies_are_excluded_and_reported():
    result = detect_circular_dependencies([wf("A", "B", "Not Bundled"), wf("B")])

    assert result.has_cycle is False
    assert result.dependency_order == ["B", "A"]
    assert result.external_dependencies == {"A": ["Not Bundled"]}


def test_acyclic_part_of_cyclic_bundle_still_ordered():
    result = detect_circular_dependencies([wf("A", "B"), wf("B", "A"), wf("C"), wf("D", "C")])

    assert result.has_cycle is True
    assert result.dependency_order == ["C", "D"]


def test_levels_for_chain():
    levels = compute_levels([wf("A", "B"), wf("B", "C"), wf("C")])

    assert levels == {"A": Level(value=2), "B": Level(value=1), "C": Level(value=0)}


def test_levels_on_layered_graph_ending_in_cycle_are_linear():
    layers = 150
    workflows = [wf("PA", "PB"), wf("PB", "PA")]
    for i in range(layers):
        below = [f"L{i + 1:03d}A", f"L{i + 1:03d}B"] if i + 1 < layers else ["PA", "PB"]
        workflows += [wf(f"L{i:03d}A", *below), wf(f"L{i:03d}B", *below)]

    started = time.perf_counter()
    levels = compute_levels(workflows)
    elapsed = time.perf_counter() - started

    assert elapsed < 2.0
    assert len(levels) == 2 * layers + 2
    assert all(isinstance(level, CycleBroken) for level in levels.values())
    assert levels["L000A"].approximate == layers + 2
    assert levels[f"L{layers - 1:03d}B"].approximate == 3


def test_levels_mark_cycle_reachers_as_cycle_broken():
    levels = compute_levels([wf("X", "Y"), wf("Y", "X"), wf("Z", "X"), wf("W")])

    assert isinstance(levels["X"], CycleBroken)
    assert isinstance(levels["Y"], CycleBroken)
    assert isinstance(levels["Z"], CycleBroken)
    assert levels["Z"].approximate == 3
    assert levels["W"] == Level(value=0)


@pytest.mark.parametrize("workflows,edges", [
    ([wf("A", "B"), wf("B")], {("A", "B")}),
    ([wf("A", "B", "C"), wf("B", "C"), wf("C")], {("A", "B"), ("A", "C"), ("B", "C")}),
])
def test_dependency_graph_edges(workflows, edges):
    graph = build_dependency_graph(workflows)

    assert {(e.source, e.target) for e in graph.edges} == edges
    assert graph.has_cycles is False
    assert graph.levels[0] == [w.name for w in workflows if not w.dependencies]


def test_dependency_graph_reports_cycles():
    graph = build_dependency_graph([wf("A", "B"), wf("B", "A")])

    assert graph.has_cycles is True
    assert sorted(graph.cyclic_nodes) == ["A", "B"]
    assert all(isinstance(node.level, CycleBroken) for node in graph.nodes)
