"""Parent/child walks, level rules and the ready-work query."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Sequence

from .models import PARENT_LEVEL, Level, LevelOrderError, Status, Task, TaskValidationError

if TYPE_CHECKING:
    from .graph import DependencyGraph
    from .workflow import WorkflowDefinition


@dataclass(slots=True)
class ReadyResult:
    work: list[Task] = field(default_factory=list)
    triage: list[Task] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "work": [task.to_dict() for task in self.work],
            "triage": [task.to_dict() for task in self.triage],
        }


def validate_parent_level(level: Level, parent_level: Level | None) -> None:
    if parent_level is None:
        return
    if PARENT_LEVEL[level] is not parent_level:
        raise LevelOrderError(level, parent_level)


def children_index(tasks: Iterable[Task]) -> dict[str, list[Task]]:
    index: dict[str, list[Task]] = {}
    for task in tasks:
        if task.parent_id is not None:
            index.setdefault(task.parent_id, []).append(task)
    return index


def descendants(task_id: str, tasks: Mapping[str, Task]) -> list[Task]:
    """All tasks below `task_id`, depth first in insertion order."""
    index = children_index(tasks.values())
    found: list[Task] = []
    seen: set[str] = {task_id}
    stack = list(reversed(index.get(task_id, [])))
    while stack:
        current = stack.pop()
        if current.id in seen:
            raise TaskValidationError(f"Parent links loop through {current.id}")
        seen.add(current.id)
        found.append(current)
        stack.extend(reversed(index.get(current.id, [])))
    return found


def ancestors(task_id: str, tasks: Mapping[str, Task]) -> list[Task]:
    """Parent first, root last."""
    found: list[Task] = []
    seen = {task_id}
    current = tasks.get(task_id)
    while current is not None and current.parent_id is not None:
        parent = tasks.get(current.parent_id)
        if parent is None:
            break
        if parent.id in seen:
            raise TaskValidationError(f"Parent links loop through {parent.id}")
        seen.add(parent.id)
        found.append(parent)
        current = parent
    return found


def root_tasks(tasks: Sequence[Task]) -> list[Task]:
    ids = {task.id for task in tasks}
    return [task for task in tasks if task.parent_id is None or task.parent_id not in ids]


class _ReadyWalk:
    def __init__(
        self,
        tasks: Sequence[Task],
        graph: DependencyGraph,
        definition: WorkflowDefinition,
    ) -> None:
        self.by_id = {task.id: task for task in tasks}
        self.index = children_index(tasks)
        self.graph = graph
        self.definition = definition
        self._started: dict[str, bool] = {}

    def subtree_started(self, task: Task) -> bool:
        cached = self._started.get(task.id)
        if cached is None:
            cached = task.status in self.definition.started or any(
                self.subtree_started(child) for child in self.index.get(task.id, [])
            )
            self._started[task.id] = cached
        return cached

    def eligible(self, task: Task, entry: Status) -> bool:
        if task.status is not entry or self.definition.is_flagged(task):
            return False
        return not self.graph.incomplete_blockers(task.id, self.by_id)

    def entry_point(self, task: Task, entry: Status) -> Task | None:
        if not self.subtree_started(task):
            return task if self.eligible(task, entry) else None
        for child in self.index.get(task.id, []):
            hit = self.entry_point(child, entry)
            if hit is not None:
                return hit
        return None


def ready_items(
    tasks: Sequence[Task],
    graph: DependencyGraph,
    definition: WorkflowDefinition,
) -> ReadyResult:
    """One entry point per hierarchy tree for work and for triage.

    An untouched tree is offered at its root. Once anything inside a tree
    has started, the walk descends through started nodes and offers the
    first untouched child in insertion order.
    """
    walk = _ReadyWalk(tasks, graph, definition)
    result = ReadyResult()
    for root in root_tasks(tasks):
        hit = walk.entry_point(root, definition.work_entry)
        if hit is not None:
            result.work.append(hit)
        if definition.triage_entry is not None:
            hit = walk.entry_point(root, definition.triage_entry)
            if hit is not None:
                result.triage.append(hit)
    return result
