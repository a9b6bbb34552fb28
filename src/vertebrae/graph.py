"""Dependency graph over task ids: cycle prevention, blocker trees and paths."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .models import (
    CycleError,
    DuplicateEdgeError,
    GraphInconsistencyError,
    Level,
    Relationship,
    SelfDependencyError,
    Status,
    Task,
)


@dataclass(slots=True)
class BlockerNode:
    id: str
    title: str
    level: Level
    status: Status
    children: list[BlockerNode] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "level": self.level.value,
            "status": self.status.value,
            "children": [child.to_dict() for child in self.children],
        }


class DependencyGraph:
    """Directed "depends-on" edges, dependent -> blocker.

    The constructor trusts the edges it is given; `add_edge` is the only way
    to grow the graph while keeping it acyclic.
    """

    def __init__(self, edges: Iterable[Relationship] = ()) -> None:
        self._blockers: dict[str, set[str]] = {}
        self._dependents: dict[str, set[str]] = {}
        for edge in edges:
            self._insert(edge.dependent_id, edge.blocker_id)

    def _insert(self, dependent_id: str, blocker_id: str) -> None:
        self._blockers.setdefault(dependent_id, set()).add(blocker_id)
        self._dependents.setdefault(blocker_id, set()).add(dependent_id)

    def __len__(self) -> int:
        return sum(len(blockers) for blockers in self._blockers.values())

    def has_edge(self, dependent_id: str, blocker_id: str) -> bool:
        return blocker_id in self._blockers.get(dependent_id, ())

    def edges(self) -> list[Relationship]:
        return [
            Relationship(dependent_id, blocker_id)
            for dependent_id in sorted(self._blockers)
            for blocker_id in sorted(self._blockers[dependent_id])
        ]

    def direct_blockers(self, task_id: str) -> tuple[str, ...]:
        return tuple(sorted(self._blockers.get(task_id, ())))

    def direct_dependents(self, task_id: str) -> tuple[str, ...]:
        return tuple(sorted(self._dependents.get(task_id, ())))

    def add_edge(self, dependent_id: str, blocker_id: str) -> Relationship:
        if dependent_id == blocker_id:
            raise SelfDependencyError(dependent_id)
        if self.has_edge(dependent_id, blocker_id):
            raise DuplicateEdgeError(dependent_id, blocker_id)
        cycle = self.cycle_path(dependent_id, blocker_id)
        if cycle is not None:
            raise CycleError(dependent_id, blocker_id, cycle)
        self._insert(dependent_id, blocker_id)
        return Relationship(dependent_id, blocker_id)

    def remove_edge(self, dependent_id: str, blocker_id: str) -> bool:
        blockers = self._blockers.get(dependent_id)
        if not blockers or blocker_id not in blockers:
            return False
        blockers.discard(blocker_id)
        if not blockers:
            del self._blockers[dependent_id]
        dependents = self._dependents[blocker_id]
        dependents.discard(dependent_id)
        if not dependents:
            del self._dependents[blocker_id]
        return True

    def remove_node(self, task_id: str) -> list[Relationship]:
        removed = [Relationship(task_id, blocker_id) for blocker_id in self.direct_blockers(task_id)]
        removed += [Relationship(dependent_id, task_id) for dependent_id in self.direct_dependents(task_id)]
        for edge in removed:
            self.remove_edge(edge.dependent_id, edge.blocker_id)
        return removed

    def would_create_cycle(self, dependent_id: str, blocker_id: str) -> bool:
        return dependent_id == blocker_id or self.is_reachable(blocker_id, dependent_id)

    def cycle_path(self, dependent_id: str, blocker_id: str) -> list[str] | None:
        """Return the loop a new edge would close, or None."""
        path = self.find_path(blocker_id, dependent_id)
        if path is None:
            return None
        return [dependent_id, blocker_id, *(edge.blocker_id for edge in path)]

    def is_reachable(self, source_id: str, target_id: str) -> bool:
        return target_id in self._reachable_from(source_id)

    def _reachable_from(self, source_id: str) -> set[str]:
        seen: set[str] = set()
        queue = deque(self.direct_blockers(source_id))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.direct_blockers(current))
        return seen

    def has_cycle(self) -> bool:
        return any(node in self._reachable_from(node) for node in list(self._blockers))

    def find_path(self, from_id: str, to_id: str) -> list[Relationship] | None:
        """Breadth-first search along depends-on edges, neighbours in id order.

        Returns the edges from `from_id` to `to_id`, an empty list when both
        ids are equal, or None when `to_id` is unreachable.
        """
        if from_id == to_id:
            return []
        parents: dict[str, str] = {}
        visited = {from_id}
        queue = deque([from_id])
        while queue:
            current = queue.popleft()
            for blocker_id in self.direct_blockers(current):
                if blocker_id in visited:
                    continue
                visited.add(blocker_id)
                parents[blocker_id] = current
                if blocker_id == to_id:
                    return self._edges_back(parents, from_id, to_id)
                queue.append(blocker_id)
        return None

    @staticmethod
    def _edges_back(parents: dict[str, str], from_id: str, to_id: str) -> list[Relationship]:
        nodes = [to_id]
        while nodes[-1] != from_id:
            nodes.append(parents[nodes[-1]])
        nodes.reverse()
        return [Relationship(nodes[i], nodes[i + 1]) for i in range(len(nodes) - 1)]

    def incomplete_blockers(self, task_id: str, tasks: Mapping[str, Task]) -> list[tuple[str, Status]]:
        incomplete: list[tuple[str, Status]] = []
        for blocker_id in self.direct_blockers(task_id):
            blocker = tasks.get(blocker_id)
            if blocker is None:
                raise GraphInconsistencyError(
                    f"Dependency of {task_id} references unknown task {blocker_id}",
                    [task_id, blocker_id],
                )
            if blocker.status is not Status.DONE:
                incomplete.append((blocker_id, blocker.status))
        return incomplete

    def blockers_of(
        self,
        task_id: str,
        tasks: Mapping[str, Task],
        max_depth: int | None = None,
    ) -> list[BlockerNode]:
        """Expand the full blocker forest of `task_id`.

        Uses an explicit stack. Each frame carries the ids on its path, so a
        loop left behind by a corrupted store raises instead of spinning.
        """
        roots: list[BlockerNode] = []
        stack: list[tuple[str, list[BlockerNode], tuple[str, ...], int]] = [
            (blocker_id, roots, (task_id,), 1)
            for blocker_id in reversed(self.direct_blockers(task_id))
        ]
        while stack:
            node_id, siblings, path, depth = stack.pop()
            if node_id in path:
                cycle = [*path, node_id]
                raise GraphInconsistencyError(
                    f"Dependency cycle found while expanding blockers: {' -> '.join(cycle)}",
                    cycle,
                )
            task = tasks.get(node_id)
            if task is None:
                raise GraphInconsistencyError(
                    f"Dependency of {path[-1]} references unknown task {node_id}",
                    [*path, node_id],
                )
            node = BlockerNode(id=task.id, title=task.title, level=task.level, status=task.status)
            siblings.append(node)
            if max_depth is not None and depth >= max_depth:
                continue
            child_path = (*path, node_id)
            for child_id in reversed(self.direct_blockers(node_id)):
                stack.append((child_id, node.children, child_path, depth + 1))
        return roots
