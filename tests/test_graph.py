from __future__ import annotations

import itertools
import random

import pytest

from vertebrae.graph import DependencyGraph
from vertebrae.models import (
    CycleError,
    DuplicateEdgeError,
    GraphInconsistencyError,
    Level,
    Relationship,
    SelfDependencyError,
    Status,
    Task,
)


def _tasks(*ids: str, status: Status = Status.TODO) -> dict[str, Task]:
    return {task_id: Task(id=task_id, title=task_id.upper(), level=Level.TASK, status=status) for task_id in ids}


def test_add_edge_indexes_both_directions() -> None:
    graph = DependencyGraph()
    edge = graph.add_edge("a", "b")
    assert edge == Relationship("a", "b")
    assert graph.direct_blockers("a") == ("b",)
    assert graph.direct_dependents("b") == ("a",)
    assert graph.has_edge("a", "b")
    assert not graph.has_edge("b", "a")
    assert len(graph) == 1


def test_self_dependency_rejected() -> None:
    graph = DependencyGraph()
    with pytest.raises(SelfDependencyError):
        graph.add_edge("a", "a")
    assert len(graph) == 0


def test_duplicate_edge_rejected() -> None:
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    with pytest.raises(DuplicateEdgeError) as excinfo:
        graph.add_edge("a", "b")
    assert excinfo.value.dependent_id == "a"
    assert excinfo.value.blocker_id == "b"
    assert len(graph) == 1


def test_cycle_rejected_with_closing_path() -> None:
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    graph.add_edge("b", "c")
    with pytest.raises(CycleError) as excinfo:
        graph.add_edge("c", "a")
    assert excinfo.value.cycle == ["c", "a", "b", "c"]
    assert "c -> a -> b -> c" in str(excinfo.value)
    assert not graph.has_edge("c", "a")


def test_two_node_cycle_rejected() -> None:
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    assert graph.would_create_cycle("b", "a")
    with pytest.raises(CycleError):
        graph.add_edge("b", "a")


def test_diamond_is_not_a_cycle() -> None:
    graph = DependencyGraph()
    graph.add_edge("top", "left")
    graph.add_edge("top", "right")
    graph.add_edge("left", "bottom")
    graph.add_edge("right", "bottom")
    assert not graph.has_cycle()
    assert graph.direct_dependents("bottom") == ("left", "right")


def test_random_edge_sequences_stay_acyclic() -> None:
    rng = random.Random(7)
    nodes = [f"n{i}" for i in range(8)]
    graph = DependencyGraph()
    for _ in range(200):
        dependent, blocker = rng.sample(nodes, 2)
        try:
            graph.add_edge(dependent, blocker)
        except (CycleError, DuplicateEdgeError):
            pass
        assert not graph.has_cycle()


def test_remove_edge_is_noop_when_absent() -> None:
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    assert graph.remove_edge("a", "b") is True
    assert graph.remove_edge("a", "b") is False
    assert graph.direct_blockers("a") == ()
    assert graph.direct_dependents("b") == ()


def test_remove_node_drops_incoming_and_outgoing_edges() -> None:
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    graph.add_edge("b", "c")
    graph.add_edge("d", "b")
    removed = graph.remove_node("b")
    assert set(removed) == {Relationship("a", "b"), Relationship("b", "c"), Relationship("d", "b")}
    assert graph.edges() == []


def test_find_path_returns_edges_in_order() -> None:
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    graph.add_edge("b", "c")
    graph.add_edge("c", "d")
    path = graph.find_path("a", "d")
    assert path == [Relationship("a", "b"), Relationship("b", "c"), Relationship("c", "d")]


def test_find_path_same_node_and_unreachable() -> None:
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    assert graph.find_path("a", "a") == []
    assert graph.find_path("b", "a") is None
    assert graph.find_path("a", "zzz") is None


def test_find_path_prefers_shortest_then_lowest_id() -> None:
    graph = DependencyGraph()
    graph.add_edge("start", "y")
    graph.add_edge("start", "x")
    graph.add_edge("x", "end")
    graph.add_edge("y", "end")
    graph.add_edge("start", "long")
    graph.add_edge("long", "mid")
    graph.add_edge("mid", "end")
    first = graph.find_path("start", "end")
    assert first == [Relationship("start", "x"), Relationship("x", "end")]
    assert graph.find_path("start", "end") == first


def test_find_path_agrees_with_reachability() -> None:
    graph = DependencyGraph()
    for dependent, blocker in [("a", "b"), ("b", "c"), ("d", "c"), ("e", "a"), ("c", "f")]:
        graph.add_edge(dependent, blocker)
    nodes = ["a", "b", "c", "d", "e", "f"]
    for source, target in itertools.permutations(nodes, 2):
        path = graph.find_path(source, target)
        assert (path is not None) == graph.is_reachable(source, target)
        for edge in path or []:
            assert graph.has_edge(edge.dependent_id, edge.blocker_id)


def test_blockers_of_builds_recursive_forest() -> None:
    tasks = _tasks("a", "b", "c", "d")
    tasks["c"].status = Status.DONE
    graph = DependencyGraph()
    graph.add_edge("a", "c")
    graph.add_edge("a", "b")
    graph.add_edge("b", "d")

    forest = graph.blockers_of("a", tasks)
    assert [node.id for node in forest] == ["b", "c"]
    assert [child.id for child in forest[0].children] == ["d"]
    assert forest[1].status is Status.DONE
    assert forest[1].children == []


def test_blockers_of_respects_max_depth() -> None:
    tasks = _tasks("a", "b", "c")
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    graph.add_edge("b", "c")
    forest = graph.blockers_of("a", tasks, max_depth=1)
    assert [node.id for node in forest] == ["b"]
    assert forest[0].children == []


def test_blockers_of_repeats_shared_blockers_per_branch() -> None:
    tasks = _tasks("top", "left", "right", "bottom")
    graph = DependencyGraph()
    graph.add_edge("top", "left")
    graph.add_edge("top", "right")
    graph.add_edge("left", "bottom")
    graph.add_edge("right", "bottom")
    forest = graph.blockers_of("top", tasks)
    assert [node.children[0].id for node in forest] == ["bottom", "bottom"]


def test_blockers_of_raises_on_corrupted_cycle() -> None:
    tasks = _tasks("a", "b")
    # The constructor trusts stored edges, so a loop can slip in.
    graph = DependencyGraph([Relationship("a", "b"), Relationship("b", "a")])
    assert graph.has_cycle()
    with pytest.raises(GraphInconsistencyError) as excinfo:
        graph.blockers_of("a", tasks)
    assert excinfo.value.path == ["a", "b", "a"]


def test_blockers_of_raises_on_unknown_task() -> None:
    graph = DependencyGraph([Relationship("a", "ghost")])
    with pytest.raises(GraphInconsistencyError):
        graph.blockers_of("a", _tasks("a"))


def test_incomplete_blockers_lists_not_done() -> None:
    tasks = _tasks("a", "b", "c")
    tasks["b"].status = Status.DONE
    tasks["c"].status = Status.REJECTED
    graph = DependencyGraph([Relationship("a", "b"), Relationship("a", "c")])
    assert graph.incomplete_blockers("a", tasks) == [("c", Status.REJECTED)]
