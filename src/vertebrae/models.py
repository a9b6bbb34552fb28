"""Core task models, constants and errors."""

from __future__ import annotations

from dataclasses import dataclass, field
import datetime as dt
from enum import Enum
import re
from typing import Any, Iterable

TASK_ID_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


class _ValueEnum(str, Enum):
    def __str__(self) -> str:
        return self.value


class Level(_ValueEnum):
    EPIC = "epic"
    TICKET = "ticket"
    TASK = "task"
    SUBTASK = "subtask"


class Status(_ValueEnum):
    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    PENDING_REVIEW = "pending_review"
    DONE = "done"
    REJECTED = "rejected"
    # Display value only; never stored on a task.
    BLOCKED = "blocked"


class Priority(_ValueEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SectionType(_ValueEnum):
    GOAL = "goal"
    CONTEXT = "context"
    CURRENT_BEHAVIOR = "current_behavior"
    DESIRED_BEHAVIOR = "desired_behavior"
    STEP = "step"
    CONSTRAINT = "constraint"
    TESTING_CRITERION = "testing_criterion"
    ANTI_PATTERN = "anti_pattern"
    FAILURE_TEST = "failure_test"


LEVEL_ORDER = (Level.EPIC, Level.TICKET, Level.TASK, Level.SUBTASK)
PARENT_LEVEL = {
    Level.EPIC: None,
    Level.TICKET: Level.EPIC,
    Level.TASK: Level.TICKET,
    Level.SUBTASK: Level.TASK,
}
PRIORITY_SORT = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}
SINGLE_INSTANCE_SECTIONS = frozenset(
    {
        SectionType.GOAL,
        SectionType.CONTEXT,
        SectionType.CURRENT_BEHAVIOR,
        SectionType.DESIRED_BEHAVIOR,
    }
)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def normalize_id(task_id: str) -> str:
    return task_id.strip().lower()


def normalize_tags(tags: Iterable[str] | None) -> list[str]:
    if not tags:
        return []
    return sorted({tag.strip() for tag in tags if tag.strip()})


def _iso(value: dt.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class Section:
    type: SectionType
    content: str
    index: int = 0
    done: bool | None = None
    done_at: dt.datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "content": self.content,
            "index": self.index,
        }
        if self.type is SectionType.STEP:
            data["done"] = bool(self.done)
            data["done_at"] = _iso(self.done_at)
        return data


@dataclass(slots=True)
class CodeReference:
    path: str
    line_start: int | None = None
    line_end: int | None = None
    name: str | None = None
    description: str | None = None

    @property
    def location(self) -> str:
        if self.line_start is not None and self.line_end is not None:
            return f"{self.path}:L{self.line_start}-{self.line_end}"
        if self.line_start is not None:
            return f"{self.path}:L{self.line_start}"
        return self.path

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "line_start": self.line_start,
            "line_end": self.line_end,
            "name": self.name,
            "description": self.description,
        }


@dataclass(slots=True, frozen=True)
class Relationship:
    """Edge meaning `dependent_id` waits on `blocker_id`."""

    dependent_id: str
    blocker_id: str

    def to_dict(self) -> dict[str, str]:
        return {"dependent": self.dependent_id, "blocker": self.blocker_id}


@dataclass(slots=True)
class Task:
    id: str
    title: str
    level: Level
    status: Status
    priority: Priority = Priority.MEDIUM
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    parent_id: str | None = None
    rejection_reason: str | None = None
    blocked: bool = False
    blocked_reason: str | None = None
    needs_human_review: bool = False
    created_at: dt.datetime = field(default_factory=utcnow)
    updated_at: dt.datetime = field(default_factory=utcnow)
    started_at: dt.datetime | None = None
    completed_at: dt.datetime | None = None
    sections: list[Section] = field(default_factory=list)
    references: list[CodeReference] = field(default_factory=list)

    def sections_of(self, section_type: SectionType) -> list[Section]:
        return [section for section in self.sections if section.type is section_type]

    def section_count(self, section_type: SectionType) -> int:
        return len(self.sections_of(section_type))

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "level": self.level.value,
            "status": self.status.value,
            "priority": self.priority.value,
            "tags": list(self.tags),
            "parent_id": self.parent_id,
            "rejection_reason": self.rejection_reason,
            "blocked": self.blocked,
            "blocked_reason": self.blocked_reason,
            "needs_human_review": self.needs_human_review,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "sections": [section.to_dict() for section in self.sections],
            "references": [ref.to_dict() for ref in self.references],
        }


class TaskError(Exception):
    """Base error for task operations."""


class TaskValidationError(TaskError):
    """Raised when a field value or task shape is invalid."""


class LevelOrderError(TaskValidationError):
    """Raised when a parent/child pair breaks the level ordering."""

    def __init__(self, level: Level, parent_level: Level | None) -> None:
        self.level = level
        self.parent_level = parent_level
        expected = PARENT_LEVEL[level]
        got = parent_level.value if parent_level else "none"
        if expected is None:
            message = f"Level {level.value} cannot have a parent (got {got})"
        else:
            message = f"Level {level.value} requires a parent of level {expected.value}, not {got}"
        super().__init__(message)


class TaskNotFoundError(TaskError):
    """Raised when a task cannot be located."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class TaskConflictError(TaskError):
    """Raised for collisions and ambiguous actions."""


class GraphError(TaskError):
    """Base error for dependency graph violations."""


class SelfDependencyError(GraphError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} cannot depend on itself")


class DuplicateEdgeError(GraphError):
    def __init__(self, dependent_id: str, blocker_id: str) -> None:
        self.dependent_id = dependent_id
        self.blocker_id = blocker_id
        super().__init__(f"Dependency already exists: {dependent_id} -> {blocker_id}")


class CycleError(GraphError):
    def __init__(self, dependent_id: str, blocker_id: str, cycle: list[str]) -> None:
        self.dependent_id = dependent_id
        self.blocker_id = blocker_id
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class GraphInconsistencyError(GraphError):
    def __init__(self, message: str, path: list[str] | None = None) -> None:
        self.path = path or []
        super().__init__(message)


class TransitionError(TaskError):
    """Base error for rejected status transitions."""


class InvalidTransitionError(TransitionError):
    def __init__(
        self,
        task_id: str,
        from_status: Status,
        to_status: Status,
        allowed: Iterable[Status] = (),
        message: str | None = None,
    ) -> None:
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = tuple(allowed)
        if message is None:
            allowed_text = ", ".join(status.value for status in self.allowed) or "none"
            message = (
                f"Cannot move {task_id} from {from_status.value} to {to_status.value} "
                f"(allowed: {allowed_text})"
            )
        super().__init__(message)


class BlockedError(TransitionError):
    def __init__(
        self,
        task_id: str,
        blockers: list[tuple[str, Status]],
        flagged: bool = False,
    ) -> None:
        self.task_id = task_id
        self.blockers = blockers
        self.flagged = flagged
        if blockers:
            listed = ", ".join(f"{blocker_id} [{status.value}]" for blocker_id, status in blockers)
            message = f"Task {task_id} is blocked by incomplete dependencies: {listed}"
        else:
            message = f"Task {task_id} is flagged as blocked; unblock it first"
        super().__init__(message)


class MissingReasonError(TransitionError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Rejecting {task_id} requires a reason")


class IncompleteChildrenError(TransitionError):
    def __init__(self, task_id: str, children: list[tuple[str, Status]]) -> None:
        self.task_id = task_id
        self.children = children
        listed = ", ".join(f"{child_id} [{status.value}]" for child_id, status in children)
        super().__init__(f"Cannot complete {task_id}: incomplete children: {listed}")


class TriageValidationError(TransitionError):
    def __init__(self, result: Any) -> None:
        self.result = result
        failures = "; ".join(issue.message for issue in result.errors)
        super().__init__(f"Task {result.task_id} is not ready for triage: {failures}")


class StoreError(TaskError):
    """Base error for task store failures."""


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be read or written."""


class ConstraintViolationError(StoreError):
    """Raised when a store write would break a store-level constraint."""
