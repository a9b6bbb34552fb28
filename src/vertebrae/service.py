"""Business logic for task lifecycle and dependency integrity."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import random
from typing import Any, Callable, Iterable

from .config import EngineConfig
from .filters import TaskFilter, filter_tasks
from .graph import BlockerNode, DependencyGraph
from .hierarchy import ReadyResult, descendants, ready_items, validate_parent_level
from .models import (
    TASK_ID_RE,
    CodeReference,
    Level,
    Priority,
    Relationship,
    Section,
    SectionType,
    Status,
    Task,
    TaskConflictError,
    TaskNotFoundError,
    TaskValidationError,
    normalize_id,
    normalize_tags,
    utcnow,
)
from .store import TaskStore
from .triage import TriageResult
from .workflow import StatusMachine, TransitionResult, WorkflowDefinition
from . import storage


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskDetails:
    task: Task
    display_status: Status
    parent: Task | None = None
    children: list[Task] = field(default_factory=list)
    blockers: list[Task] = field(default_factory=list)
    dependents: list[Task] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = self.task.to_dict()
        data["display_status"] = self.display_status.value
        data["parent"] = _brief(self.parent) if self.parent is not None else None
        data["children"] = [_brief(task) for task in self.children]
        data["blockers"] = [_brief(task) for task in self.blockers]
        data["dependents"] = [_brief(task) for task in self.dependents]
        return data


@dataclass(slots=True)
class DeleteResult:
    deleted: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    relationships: list[Relationship] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deleted": list(self.deleted),
            "orphaned": list(self.orphaned),
            "relationships": [edge.to_dict() for edge in self.relationships],
        }


def _brief(task: Task) -> dict[str, str]:
    return {
        "id": task.id,
        "title": task.title,
        "level": task.level.value,
        "status": task.status.value,
    }


class TaskService:
    """Single entry point for commands; each mutation runs in one store transaction."""

    def __init__(
        self,
        store: TaskStore,
        config: EngineConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.machine: StatusMachine = self.config.status_machine()
        self._rng = rng

    @classmethod
    def from_root(cls, root: Path, warn: Callable[[str], None] | None = None) -> TaskService:
        config = storage.load_engine_config(root, warn=warn)
        return cls(storage.FileTaskStore(root), config)

    @property
    def definition(self) -> WorkflowDefinition:
        return self.machine.definition

    def _tasks_by_id(self) -> dict[str, Task]:
        return {task.id: task for task in self.store.list_tasks()}

    def _graph(self) -> DependencyGraph:
        return DependencyGraph(self.store.list_relationships())

    def get_task(self, task_id: str) -> Task:
        return self.store.get_task(task_id)

    def _resolve_parent(self, parent_id: str | None, level: Level) -> Task | None:
        if not parent_id:
            validate_parent_level(level, None)
            return None
        parent = self.store.get_task(parent_id)
        validate_parent_level(level, parent.level)
        return parent

    @staticmethod
    def _clean_title(title: str) -> str:
        cleaned = title.strip()
        if not cleaned:
            raise TaskValidationError("title is required")
        return cleaned

    def _new_task_id(self, task_id: str | None) -> str:
        if task_id is None:
            existing = {task.id for task in self.store.list_tasks()}
            return storage.generate_task_id(existing, rng=self._rng)
        task_id = normalize_id(task_id)
        if not TASK_ID_RE.fullmatch(task_id):
            raise TaskValidationError(
                "task id must start with a letter or digit and contain only lowercase letters, "
                "digits, and hyphens"
            )
        if self.store.has_task(task_id):
            raise TaskConflictError(f"Task id already exists: {task_id}")
        return task_id

    def add_task(
        self,
        title: str,
        level: Level = Level.TASK,
        *,
        task_id: str | None = None,
        description: str | None = None,
        priority: Priority = Priority.MEDIUM,
        tags: Iterable[str] | None = None,
        parent_id: str | None = None,
        depends_on: Iterable[str] | None = None,
    ) -> Task:
        title = self._clean_title(title)
        with self.store.transaction():
            parent = self._resolve_parent(parent_id, level)
            now = utcnow()
            task = Task(
                id=self._new_task_id(task_id),
                title=title,
                level=level,
                status=self.definition.initial,
                priority=priority,
                description=description.strip() if description and description.strip() else None,
                tags=normalize_tags(tags),
                parent_id=parent.id if parent is not None else None,
                created_at=now,
                updated_at=now,
            )
            self.store.create_task(task)
            for blocker_id in depends_on or []:
                self.add_dependency(task.id, blocker_id)
        logger.info("Created %s %s: %s", level.value, task.id, title)
        return self.store.get_task(task.id)

    def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        priority: Priority | None = None,
        level: Level | None = None,
        tags: Iterable[str] | None = None,
        replace_tags: bool = False,
        remove_tags: Iterable[str] | None = None,
        parent_id: str | None = None,
        clear_parent: bool = False,
    ) -> Task:
        if parent_id and clear_parent:
            raise TaskConflictError("Use either a new parent or clear the parent, not both")
        with self.store.transaction():
            task = self.store.get_task(task_id)
            if title is not None:
                task.title = self._clean_title(title)
            if description is not None:
                task.description = description.strip() or None
            if priority is not None:
                task.priority = priority

            if replace_tags:
                task.tags = normalize_tags(tags)
            elif tags:
                task.tags = normalize_tags([*task.tags, *tags])
            if remove_tags:
                dropped = set(normalize_tags(remove_tags))
                task.tags = [tag for tag in task.tags if tag not in dropped]

            if level is not None or parent_id or clear_parent:
                self._move_in_hierarchy(task, level or task.level, parent_id, clear_parent)

            task.touch()
            self.store.update_task(task)
        logger.info("Updated %s", task.id)
        return self.store.get_task(task.id)

    def _move_in_hierarchy(
        self,
        task: Task,
        level: Level,
        parent_id: str | None,
        clear_parent: bool,
    ) -> None:
        tasks = self._tasks_by_id()
        if clear_parent:
            new_parent_id = None
        elif parent_id:
            new_parent_id = normalize_id(parent_id)
        else:
            new_parent_id = task.parent_id

        if new_parent_id is not None:
            if new_parent_id not in tasks:
                raise TaskNotFoundError(new_parent_id)
            if new_parent_id == task.id or new_parent_id in {
                child.id for child in descendants(task.id, tasks)
            }:
                raise TaskValidationError(f"Task {new_parent_id} is inside {task.id} and cannot become its parent")
            validate_parent_level(level, tasks[new_parent_id].level)
        else:
            validate_parent_level(level, None)

        for child_id in self.store.children_of(task.id):
            validate_parent_level(tasks[child_id].level, level)
        task.level = level
        task.parent_id = new_parent_id

    def delete_task(self, task_id: str, *, cascade: bool = False) -> DeleteResult:
        result = DeleteResult()
        with self.store.transaction():
            task = self.store.get_task(task_id)
            tasks = self._tasks_by_id()
            graph = self._graph()
            doomed = [task]
            if cascade:
                doomed += descendants(task.id, tasks)
            else:
                for child_id in self.store.children_of(task.id):
                    child = tasks[child_id]
                    child.parent_id = None
                    child.touch()
                    self.store.update_task(child)
                    result.orphaned.append(child_id)

            for victim in doomed:
                for edge in graph.remove_node(victim.id):
                    self.store.remove_relationship(edge)
                    result.relationships.append(edge)
            # Children before parents so no stored task points at a deleted one.
            for victim in reversed(doomed):
                self.store.delete_task(victim.id)
            result.deleted = [victim.id for victim in doomed]
        logger.info(
            "Deleted %s (%d tasks, %d relationships)",
            task.id,
            len(result.deleted),
            len(result.relationships),
        )
        return result

    def add_dependency(self, dependent_id: str, blocker_id: str) -> Relationship:
        with self.store.transaction():
            dependent = self.store.get_task(dependent_id)
            blocker = self.store.get_task(blocker_id)
            relationship = self._graph().add_edge(dependent.id, blocker.id)
            self.store.add_relationship(relationship)
        logger.info("%s now depends on %s", relationship.dependent_id, relationship.blocker_id)
        return relationship

    def remove_dependency(self, dependent_id: str, blocker_id: str) -> bool:
        with self.store.transaction():
            dependent = self.store.get_task(dependent_id)
            blocker = self.store.get_task(blocker_id)
            removed = self.store.remove_relationship(Relationship(dependent.id, blocker.id))
        if removed:
            logger.info("%s no longer depends on %s", dependent.id, blocker.id)
        return removed

    def blockers(self, task_id: str, max_depth: int | None = None) -> list[BlockerNode]:
        task = self.store.get_task(task_id)
        return self._graph().blockers_of(task.id, self._tasks_by_id(), max_depth=max_depth)

    def find_path(self, from_id: str, to_id: str) -> list[Relationship] | None:
        source = self.store.get_task(from_id)
        target = self.store.get_task(to_id)
        return self._graph().find_path(source.id, target.id)

    def transition(
        self,
        task_id: str,
        target: Status,
        *,
        reason: str | None = None,
        skip_validation: bool = False,
    ) -> TransitionResult:
        with self.store.transaction():
            task = self.store.get_task(task_id)
            result = self.machine.plan(
                task,
                target,
                self._tasks_by_id(),
                self._graph(),
                reason=reason,
                skip_validation=skip_validation,
            )
            if not result.changed:
                if result.reason and result.reason != task.rejection_reason:
                    task.rejection_reason = result.reason
                    task.touch()
                    self.store.update_task(task)
                return result

            now = utcnow()
            task.status = target
            if target is Status.IN_PROGRESS and task.started_at is None:
                task.started_at = now
            if self.definition.is_terminal(target):
                task.completed_at = now
            if target is Status.REJECTED:
                task.rejection_reason = result.reason
            task.updated_at = now
            self.store.update_task(task)
        logger.info("Moved %s from %s to %s", task.id, result.from_status.value, target.value)
        if result.newly_unblocked:
            logger.info("Unblocked by %s: %s", task.id, ", ".join(result.newly_unblocked))
        return result

    def triage(self, task_id: str, *, skip_validation: bool = False) -> TransitionResult:
        return self.transition(task_id, Status.TODO, skip_validation=skip_validation)

    def start(self, task_id: str) -> TransitionResult:
        return self.transition(task_id, Status.IN_PROGRESS)

    def submit(self, task_id: str) -> TransitionResult:
        return self.transition(task_id, Status.PENDING_REVIEW)

    def complete(self, task_id: str) -> TransitionResult:
        return self.transition(task_id, Status.DONE)

    def reject(self, task_id: str, reason: str | None) -> TransitionResult:
        return self.transition(task_id, Status.REJECTED, reason=reason)

    def block(self, task_id: str, reason: str | None = None) -> Task:
        with self.store.transaction():
            task = self.store.get_task(task_id)
            self.machine.block(task, reason)
            task.touch()
            self.store.update_task(task)
        logger.info("Flagged %s as blocked", task.id)
        return task

    def unblock(self, task_id: str) -> Task:
        with self.store.transaction():
            task = self.store.get_task(task_id)
            self.machine.unblock(task)
            task.touch()
            self.store.update_task(task)
        logger.info("Cleared blocked flag on %s", task.id)
        return task

    def set_review(self, task_id: str, needed: bool | None = None) -> Task:
        """Set the human-review flag, or toggle it when `needed` is None."""
        with self.store.transaction():
            task = self.store.get_task(task_id)
            task.needs_human_review = (not task.needs_human_review) if needed is None else needed
            task.touch()
            self.store.update_task(task)
        return task

    def validate(self, task_id: str) -> TriageResult:
        return self.machine.validator.validate(self.store.get_task(task_id))

    def ready(self) -> ReadyResult:
        return ready_items(self.store.list_tasks(), self._graph(), self.definition)

    def list_tasks(self, task_filter: TaskFilter | None = None) -> list[Task]:
        return filter_tasks(self.store.list_tasks(), task_filter)

    def display_statuses(self, tasks: Iterable[Task]) -> dict[str, Status]:
        by_id = self._tasks_by_id()
        graph = self._graph()
        return {task.id: self.machine.display_status(task, by_id, graph) for task in tasks}

    def show(self, task_id: str) -> TaskDetails:
        task = self.store.get_task(task_id)
        tasks = self._tasks_by_id()
        graph = self._graph()
        return TaskDetails(
            task=task,
            display_status=self.machine.display_status(task, tasks, graph),
            parent=tasks.get(task.parent_id) if task.parent_id else None,
            children=[tasks[child_id] for child_id in self.store.children_of(task.id)],
            blockers=[tasks[blocker_id] for blocker_id in graph.direct_blockers(task.id)],
            dependents=[tasks[dependent_id] for dependent_id in graph.direct_dependents(task.id)],
        )

    def add_section(self, task_id: str, section_type: SectionType, content: str) -> Section:
        section = self.store.add_section(task_id, section_type, content)
        logger.debug("Added %s #%d to %s", section_type.value, section.index, normalize_id(task_id))
        return section

    def remove_section(self, task_id: str, section_type: SectionType, index: int) -> Section:
        return self.store.remove_section(task_id, section_type, index)

    def complete_step(self, task_id: str, index: int) -> Section:
        with self.store.transaction():
            task = self.store.get_task(task_id)
            steps = task.sections_of(SectionType.STEP)
            if not steps:
                raise TaskValidationError(f"Task {task.id} has no steps")
            if index < 1 or index > len(steps):
                raise TaskValidationError(f"Step index {index} is out of range (1-{len(steps)})")
            step = steps[index - 1]
            if not step.done:
                step.done = True
                step.done_at = utcnow()
                task.touch()
                self.store.update_task(task)
        return step

    def add_reference(
        self,
        task_id: str,
        path: str,
        *,
        line_start: int | None = None,
        line_end: int | None = None,
        name: str | None = None,
        description: str | None = None,
    ) -> tuple[int, CodeReference]:
        path = path.strip()
        if not path:
            raise TaskValidationError("reference path is required")
        if line_start is not None and line_start < 1:
            raise TaskValidationError("line numbers start at 1")
        if line_end is not None:
            if line_start is None:
                raise TaskValidationError("an end line requires a start line")
            if line_end < line_start:
                raise TaskValidationError(f"end line {line_end} is before start line {line_start}")
        reference = CodeReference(
            path=path,
            line_start=line_start,
            line_end=line_end,
            name=name.strip() if name and name.strip() else None,
            description=description.strip() if description and description.strip() else None,
        )
        position = self.store.add_reference(task_id, reference)
        return position, reference

    def remove_reference(self, task_id: str, position: int) -> CodeReference:
        return self.store.remove_reference(task_id, position)
