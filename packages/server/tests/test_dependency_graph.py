"""
Tests for the dependency graph and its acyclicity guard.
"""

from __future__ import annotations

import pytest

from app.core.dependency_graph import (
    CIRCULAR_DEPENDENCY,
    CROSS_PROJECT,
    DUPLICATE_DEPENDENCY,
    SELF_DEPENDENCY,
    DependencyGraph,
    DependencyGraphGuard,
    find_path,
    is_reachable,
)
from app.core.errors import Conflict, InvalidOperation, NotFound

P1 = "project-1"
P2 = "project-2"


def graph_of(*edges: tuple[str, str], tasks: dict[str, str] | None = None) -> DependencyGraph:
    names = {t for edge in edges for t in edge}
    rows = dict.fromkeys(names, P1)
    rows.update(tasks or {})
    return DependencyGraph.from_rows(rows.items(), edges)


def add(graph: DependencyGraph, from_id: str, to_id: str) -> None:
    """Check then apply, as the service does."""
    DependencyGraphGuard(graph).check_can_add(from_id, to_id)
    graph.add_edge(from_id, to_id)


# ---------------------------------------------------------------------------
# Reachability
# ---------------------------------------------------------------------------


class TestReachability:
    def test_direct_and_transitive(self):
        g = graph_of(("A", "B"), ("B", "C"))
        assert find_path(g, "A", "C") == ["A", "B", "C"]
        assert is_reachable(g, "A", "B")
        assert not is_reachable(g, "C", "A")

    def test_start_equals_target(self):
        g = graph_of(("A", "B"))
        assert find_path(g, "A", "A") == ["A"]

    def test_terminates_on_malformed_cyclic_graph(self):
        g = graph_of(("A", "B"), ("B", "A"), tasks={"Z": P1})
        assert not is_reachable(g, "A", "Z")

    def test_diamond_visits_shared_node_once(self):
        g = graph_of(("A", "B"), ("A", "C"), ("B", "D"), ("C", "D"))
        assert is_reachable(g, "A", "D")

    def test_deep_chain_without_recursion(self):
        depth = 20_000
        ids = [f"T{i}" for i in range(depth)]
        g = DependencyGraph.from_rows(((t, P1) for t in ids), zip(ids, ids[1:]))
        assert is_reachable(g, ids[0], ids[-1])
        with pytest.raises(InvalidOperation, match=CIRCULAR_DEPENDENCY):
            DependencyGraphGuard(g).check_can_add(ids[-1], ids[0])


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class TestGuard:
    def test_closing_a_cycle_is_rejected(self):
        g = graph_of(("A", "B"), ("B", "C"), tasks={"D": P1})
        with pytest.raises(InvalidOperation, match=CIRCULAR_DEPENDENCY):
            DependencyGraphGuard(g).check_can_add("C", "A")
        add(g, "C", "D")
        assert ("C", "D") in g.edges()

    @pytest.mark.parametrize("task_id", ["A", "missing"])
    def test_self_dependency_always_rejected(self, task_id):
        g = graph_of(("A", "B"))
        with pytest.raises(InvalidOperation, match=SELF_DEPENDENCY):
            DependencyGraphGuard(g).check_can_add(task_id, task_id)

    def test_rejection_is_repeatable_and_leaves_graph_untouched(self):
        g = graph_of(("A", "B"), ("B", "C"))
        before = sorted(g.edges())
        guard = DependencyGraphGuard(g)
        messages = []
        for _ in range(2):
            with pytest.raises(InvalidOperation) as exc:
                guard.check_can_add("C", "A")
            messages.append(exc.value.message)
        assert messages == [CIRCULAR_DEPENDENCY, CIRCULAR_DEPENDENCY]
        assert sorted(g.edges()) == before

    def test_cross_project_rejected(self):
        g = graph_of(tasks={"A": P1, "B": P2})
        with pytest.raises(InvalidOperation, match=CROSS_PROJECT):
            DependencyGraphGuard(g).check_can_add("A", "B")

    def test_missing_tasks(self):
        g = graph_of(tasks={"A": P1})
        guard = DependencyGraphGuard(g)
        with pytest.raises(NotFound):
            guard.check_can_add("A", "ghost")
        with pytest.raises(NotFound):
            guard.check_can_add("ghost", "A")

    def test_duplicate_edge_is_conflict(self):
        g = graph_of(("A", "B"))
        with pytest.raises(Conflict, match=DUPLICATE_DEPENDENCY):
            DependencyGraphGuard(g).check_can_add("A", "B")

    def test_precondition_order_self_before_missing(self):
        g = DependencyGraph()
        with pytest.raises(InvalidOperation, match=SELF_DEPENDENCY):
            DependencyGraphGuard(g).check_can_add("X", "X")

    def test_chain_scenario(self):
        # T2 depends on T1, T3 depends on T2.
        g = graph_of(tasks={"T1": P1, "T2": P1, "T3": P1})
        add(g, "T2", "T1")
        add(g, "T3", "T2")
        with pytest.raises(InvalidOperation, match=CIRCULAR_DEPENDENCY):
            DependencyGraphGuard(g).check_can_add("T1", "T3")

        assert g.remove_edge("T2", "T1")
        add(g, "T1", "T3")
        assert sorted(g.edges()) == [("T1", "T3"), ("T3", "T2")]

    def test_would_create_cycle(self):
        g = graph_of(("A", "B"))
        guard = DependencyGraphGuard(g)
        assert guard.would_create_cycle("B", "A")
        assert not guard.would_create_cycle("A", "B")


# ---------------------------------------------------------------------------
# Graph bookkeeping
# ---------------------------------------------------------------------------


class TestDependencyGraph:
    def test_both_directions_indexed(self):
        g = graph_of(("A", "B"), ("C", "B"))
        assert g.get_direct_dependencies("A") == {"B"}
        assert g.get_direct_dependents("B") == {"A", "C"}

    def test_remove_absent_edge(self):
        g = graph_of(("A", "B"))
        assert not g.remove_edge("B", "A")

    def test_remove_task_drops_its_edges(self):
        g = graph_of(("A", "B"), ("B", "C"))
        g.remove_task("B")
        assert "B" not in g
        assert g.edges() == []
        assert g.get_direct_dependents("C") == set()

    def test_returned_sets_are_copies(self):
        g = graph_of(("A", "B"))
        g.get_direct_dependencies("A").add("Z")
        assert g.get_direct_dependencies("A") == {"B"}
