"""Read-only task filtering for list output."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from .models import Level, Priority, Status, Task, normalize_id, normalize_tags


TERMINAL_STATUSES = frozenset({Status.DONE, Status.REJECTED})


@dataclass(slots=True, frozen=True)
class TaskFilter:
    """Values inside one criterion are OR'ed; criteria are AND'ed."""

    statuses: frozenset[Status] = frozenset()
    levels: frozenset[Level] = frozenset()
    priorities: frozenset[Priority] = frozenset()
    tags: frozenset[str] = frozenset()
    exclude_tags: frozenset[str] = frozenset()
    untagged_only: bool = False
    include_terminal: bool = False
    root_only: bool = False
    parent_id: str | None = None
    search: str | None = None

    @classmethod
    def build(
        cls,
        *,
        statuses: Iterable[Status] | None = None,
        levels: Iterable[Level] | None = None,
        priorities: Iterable[Priority] | None = None,
        tags: Iterable[str] | None = None,
        exclude_tags: Iterable[str] | None = None,
        untagged_only: bool = False,
        include_terminal: bool = False,
        root_only: bool = False,
        parent_id: str | None = None,
        search: str | None = None,
    ) -> TaskFilter:
        search = search.strip() if search else None
        return cls(
            statuses=frozenset(statuses or ()),
            levels=frozenset(levels or ()),
            priorities=frozenset(priorities or ()),
            tags=frozenset(normalize_tags(tags)),
            exclude_tags=frozenset(normalize_tags(exclude_tags)),
            untagged_only=untagged_only,
            include_terminal=include_terminal,
            root_only=root_only,
            parent_id=normalize_id(parent_id) if parent_id else None,
            search=search or None,
        )

    def matches(self, task: Task) -> bool:
        if self.statuses:
            if task.status not in self.statuses:
                return False
        elif not self.include_terminal and task.status in TERMINAL_STATUSES:
            return False
        if self.levels and task.level not in self.levels:
            return False
        if self.priorities and task.priority not in self.priorities:
            return False
        task_tags = set(task.tags)
        if self.untagged_only and task_tags:
            return False
        if self.tags and not task_tags.intersection(self.tags):
            return False
        if self.exclude_tags and task_tags.intersection(self.exclude_tags):
            return False
        if self.root_only and task.parent_id is not None:
            return False
        if self.parent_id is not None and task.parent_id != self.parent_id:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = f"{task.title}\n{task.description or ''}".lower()
            if needle not in haystack:
                return False
        return True


def filter_tasks(tasks: Sequence[Task], task_filter: TaskFilter | None = None) -> list[Task]:
    task_filter = task_filter or TaskFilter()
    return [task for task in tasks if task_filter.matches(task)]
