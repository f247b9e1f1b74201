"""Tests for WorkItemGraph batch planning and plan metrics."""

from __future__ import annotations

import pytest

from spec_runner.errors import CircularDependencyError, ValidationError
from spec_runner.graph import WorkItemGraph, plan_signature

from tests.spec_runner.helpers import make_item


def batch_ids(graph: WorkItemGraph) -> list[list[str]]:
    return [batch.item_ids for batch in graph.generate_batches()]


class TestGenerateBatches:
    def test_diamond_plans_three_batches(self) -> None:
        items = [
            make_item("A"),
            make_item("B", dependencies=("A",)),
            make_item("C", dependencies=("A",)),
            make_item("D", dependencies=("B", "C")),
        ]
        graph = WorkItemGraph(items)

        batches = graph.generate_batches()

        assert [b.item_ids for b in batches] == [["A"], ["B", "C"], ["D"]]
        assert [b.batch_number for b in batches] == [1, 2, 3]
        assert [b.can_run_in_parallel for b in batches] == [False, True, False]
        assert all(b.dependencies_met for b in batches)

    def test_every_dependency_lands_in_an_earlier_batch(self) -> None:
        items = [
            make_item("E", dependencies=("C", "D")),
            make_item("A"),
            make_item("D", dependencies=("B",)),
            make_item("B", dependencies=("A",)),
            make_item("C", dependencies=("A",)),
        ]
        batches = WorkItemGraph(items).generate_batches()

        position = {item.id: b.batch_number for b in batches for item in b.items}
        assert sorted(position) == ["A", "B", "C", "D", "E"]
        for item in items:
            for dep in item.dependencies:
                assert position[dep] < position[item.id]

    def test_batch_sorted_by_descending_priority(self) -> None:
        items = [
            make_item("low", priority=2),
            make_item("high", priority=9),
            make_item("mid", priority=5),
        ]
        assert batch_ids(WorkItemGraph(items)) == [["high", "mid", "low"]]

    def test_priority_ties_keep_source_order(self) -> None:
        items = [make_item("x", priority=3), make_item("y", priority=3), make_item("z", priority=3)]
        assert batch_ids(WorkItemGraph(items)) == [["x", "y", "z"]]

    def test_single_item(self) -> None:
        batches = WorkItemGraph([make_item("only")]).generate_batches()
        assert len(batches) == 1
        assert not batches[0].can_run_in_parallel

    def test_empty_item_set(self) -> None:
        graph = WorkItemGraph([])
        assert graph.generate_batches() == []
        assert graph.find_critical_path() == []

    def test_satisfied_ids_count_as_placed(self) -> None:
        items = [make_item("B", dependencies=("A",)), make_item("C", dependencies=("B",))]
        graph = WorkItemGraph(items, satisfied={"A"})
        assert batch_ids(graph) == [["B"], ["C"]]


class TestCircularDependencies:
    def test_two_item_cycle_raises(self) -> None:
        items = [make_item("A", dependencies=("B",)), make_item("B", dependencies=("A",))]

        with pytest.raises(CircularDependencyError) as exc_info:
            WorkItemGraph(items).generate_batches()

        assert sorted(exc_info.value.remaining) == ["A", "B"]
        assert isinstance(exc_info.value, ValidationError)

    def test_cycle_behind_valid_prefix_returns_no_partial_plan(self) -> None:
        items = [
            make_item("root"),
            make_item("A", dependencies=("root", "B")),
            make_item("B", dependencies=("A",)),
        ]
        graph = WorkItemGraph(items)

        with pytest.raises(CircularDependencyError) as exc_info:
            graph.generate_batches()

        assert "root" not in exc_info.value.remaining

    def test_self_dependency_is_a_cycle(self) -> None:
        with pytest.raises(CircularDependencyError):
            WorkItemGraph([make_item("A", dependencies=("A",))]).generate_batches()


class TestCaching:
    def test_repeated_calls_return_equal_plans(self) -> None:
        graph = WorkItemGraph([make_item("A"), make_item("B", dependencies=("A",))])
        first = graph.generate_batches()
        second = graph.generate_batches()
        assert first == second
        assert first is not second

    def test_signature_changes_with_priority_dependencies_and_passes(self) -> None:
        base = [make_item("A"), make_item("B")]
        sig = plan_signature(base)

        assert plan_signature([make_item("A", priority=9), make_item("B")]) != sig
        assert plan_signature([make_item("A"), make_item("B", dependencies=("A",))]) != sig
        assert plan_signature([make_item("A", passes=True), make_item("B")]) != sig
        assert plan_signature([make_item("A"), make_item("B")]) == sig

    def test_same_count_different_content_is_not_served_from_cache(self) -> None:
        graph = WorkItemGraph([make_item("A", priority=1), make_item("B", priority=9)])
        assert batch_ids(graph) == [["B", "A"]]
        # Same number of items, different priorities: a new graph must replan.
        other = WorkItemGraph([make_item("A", priority=9), make_item("B", priority=1)])
        assert batch_ids(other) == [["A", "B"]]


class TestExecutionSummary:
    def test_chain_critical_path_deepest_first(self) -> None:
        items = [
            make_item("A"),
            make_item("B", dependencies=("A",)),
            make_item("C", dependencies=("B",)),
        ]
        summary = WorkItemGraph(items).get_execution_summary()

        assert summary.total_items == 3
        assert summary.max_parallel_items == 1
        assert summary.estimated_batches == 3
        assert summary.critical_path == ("C", "B", "A")

    def test_critical_path_follows_deepest_dependency(self) -> None:
        items = [
            make_item("A"),
            make_item("B", dependencies=("A",)),
            make_item("S"),
            make_item("D", dependencies=("S", "B")),
        ]
        summary = WorkItemGraph(items).get_execution_summary()

        assert summary.critical_path == ("D", "B", "A")
        assert summary.max_parallel_items == 2

    def test_critical_path_ties_resolve_to_first_in_source_order(self) -> None:
        items = [make_item("first"), make_item("second")]
        assert WorkItemGraph(items).find_critical_path() == ["first"]

    def test_deep_chain_does_not_hit_recursion_limit(self) -> None:
        items = [make_item("n0")]
        items += [make_item(f"n{i}", dependencies=(f"n{i - 1}",)) for i in range(1, 1500)]
        path = WorkItemGraph(items).find_critical_path()
        assert len(path) == 1500
        assert path[0] == "n1499"
        assert path[-1] == "n0"


class TestVisualize:
    def test_lists_items_and_summary(self) -> None:
        items = [make_item("A", title="Setup"), make_item("B", dependencies=("A",))]
        text = WorkItemGraph(items).visualize()

        assert "A: Setup (priority: 5)" in text
        assert "B: Item B (priority: 5) <- [A]" in text
        assert "Estimated batches: 2" in text
        assert "Critical path: [B -> A]" in text
