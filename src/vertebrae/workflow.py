"""Workflow definitions and the status state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .graph import DependencyGraph
from .hierarchy import descendants
from .models import (
    BlockedError,
    IncompleteChildrenError,
    InvalidTransitionError,
    MissingReasonError,
    Status,
    Task,
    TriageValidationError,
)
from .triage import TriageResult, TriageValidator


class Workflow(str, Enum):
    STANDARD = "standard"
    LEGACY = "legacy"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class WorkflowDefinition:
    workflow: Workflow
    states: tuple[Status, ...]
    transitions: Mapping[Status, frozenset[Status]]
    initial: Status
    work_entry: Status
    triage_entry: Status | None
    started: frozenset[Status]
    terminal: frozenset[Status]
    triage_gate: tuple[Status, Status] | None = None
    reason_required: frozenset[Status] = field(default_factory=frozenset)
    supports_block_flag: bool = False

    def allowed_from(self, status: Status) -> tuple[Status, ...]:
        targets = self.transitions.get(status, frozenset())
        return tuple(state for state in self.states if state in targets)

    def can_transition(self, from_status: Status, to_status: Status) -> bool:
        return to_status in self.transitions.get(from_status, frozenset())

    def is_terminal(self, status: Status) -> bool:
        return status in self.terminal

    def is_flagged(self, task: Task) -> bool:
        # a stale flag under a workflow without one has no effect
        return task.blocked and self.supports_block_flag


STANDARD_WORKFLOW = WorkflowDefinition(
    workflow=Workflow.STANDARD,
    states=(
        Status.BACKLOG,
        Status.TODO,
        Status.IN_PROGRESS,
        Status.PENDING_REVIEW,
        Status.DONE,
        Status.REJECTED,
    ),
    transitions={
        Status.BACKLOG: frozenset({Status.TODO}),
        Status.TODO: frozenset({Status.IN_PROGRESS, Status.REJECTED}),
        Status.IN_PROGRESS: frozenset({Status.PENDING_REVIEW, Status.REJECTED}),
        # pending_review -> in_progress sends work back for rework.
        Status.PENDING_REVIEW: frozenset({Status.IN_PROGRESS, Status.DONE, Status.REJECTED}),
    },
    initial=Status.BACKLOG,
    work_entry=Status.TODO,
    triage_entry=Status.BACKLOG,
    started=frozenset({Status.IN_PROGRESS, Status.PENDING_REVIEW, Status.DONE}),
    terminal=frozenset({Status.DONE, Status.REJECTED}),
    triage_gate=(Status.BACKLOG, Status.TODO),
    reason_required=frozenset({Status.REJECTED}),
)

LEGACY_WORKFLOW = WorkflowDefinition(
    workflow=Workflow.LEGACY,
    states=(Status.TODO, Status.IN_PROGRESS, Status.DONE),
    transitions={
        Status.TODO: frozenset({Status.IN_PROGRESS, Status.DONE}),
        Status.IN_PROGRESS: frozenset({Status.DONE}),
    },
    initial=Status.TODO,
    work_entry=Status.TODO,
    triage_entry=None,
    started=frozenset({Status.IN_PROGRESS, Status.DONE}),
    terminal=frozenset({Status.DONE}),
    supports_block_flag=True,
)

_DEFINITIONS = {
    Workflow.STANDARD: STANDARD_WORKFLOW,
    Workflow.LEGACY: LEGACY_WORKFLOW,
}


def definition_for(workflow: Workflow) -> WorkflowDefinition:
    return _DEFINITIONS[workflow]


@dataclass(slots=True)
class TransitionResult:
    task_id: str
    from_status: Status
    to_status: Status
    changed: bool
    newly_unblocked: list[str] = field(default_factory=list)
    validation: TriageResult | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "changed": self.changed,
            "newly_unblocked": list(self.newly_unblocked),
            "validation": self.validation.to_dict() if self.validation is not None else None,
            "reason": self.reason,
        }


class StatusMachine:
    """Checks transitions against a workflow definition.

    `plan` only inspects state; the service applies the returned result.
    """

    def __init__(
        self,
        definition: WorkflowDefinition = STANDARD_WORKFLOW,
        validator: TriageValidator | None = None,
    ) -> None:
        self.definition = definition
        self.validator = validator or TriageValidator()

    def plan(
        self,
        task: Task,
        target: Status,
        tasks: Mapping[str, Task],
        graph: DependencyGraph,
        reason: str | None = None,
        skip_validation: bool = False,
    ) -> TransitionResult:
        definition = self.definition
        reason = reason.strip() if reason else None
        if target not in definition.states:
            raise InvalidTransitionError(
                task.id,
                task.status,
                target,
                definition.allowed_from(task.status),
                message=f"Status {target.value} is not part of the {definition.workflow.value} workflow",
            )

        if target is task.status:
            return TransitionResult(
                task_id=task.id,
                from_status=task.status,
                to_status=target,
                changed=False,
                reason=reason if target in definition.reason_required else None,
            )

        if not definition.can_transition(task.status, target):
            raise InvalidTransitionError(task.id, task.status, target, definition.allowed_from(task.status))

        result = TransitionResult(task_id=task.id, from_status=task.status, to_status=target, changed=True)

        if target in definition.reason_required:
            if not reason:
                raise MissingReasonError(task.id)
            result.reason = reason

        if target is Status.IN_PROGRESS:
            blockers = graph.incomplete_blockers(task.id, tasks)
            flagged = definition.is_flagged(task)
            if blockers or flagged:
                raise BlockedError(task.id, blockers, flagged=flagged)

        if definition.triage_gate == (task.status, target) and not skip_validation:
            validation = self.validator.validate(task)
            if not validation.is_valid:
                raise TriageValidationError(validation)
            result.validation = validation

        if target is Status.DONE:
            incomplete = [
                (child.id, child.status)
                for child in descendants(task.id, tasks)
                if not definition.is_terminal(child.status)
            ]
            if incomplete:
                raise IncompleteChildrenError(task.id, incomplete)
            result.newly_unblocked = self.newly_unblocked(task.id, tasks, graph)

        return result

    def newly_unblocked(self, task_id: str, tasks: Mapping[str, Task], graph: DependencyGraph) -> list[str]:
        """Dependents whose blockers are all done once `task_id` is done."""
        unblocked: list[str] = []
        for dependent_id in graph.direct_dependents(task_id):
            dependent = tasks.get(dependent_id)
            if dependent is None or self.definition.is_terminal(dependent.status):
                continue
            others = [
                blocker_id
                for blocker_id, _status in graph.incomplete_blockers(dependent_id, tasks)
                if blocker_id != task_id
            ]
            if not others:
                unblocked.append(dependent_id)
        return unblocked

    def display_status(self, task: Task, tasks: Mapping[str, Task], graph: DependencyGraph) -> Status:
        if self.definition.is_flagged(task):
            return Status.BLOCKED
        entry_statuses = {self.definition.work_entry, self.definition.triage_entry}
        if task.status in entry_statuses and graph.incomplete_blockers(task.id, tasks):
            return Status.BLOCKED
        return task.status

    def _require_block_flag(self, task: Task, target: Status) -> None:
        if not self.definition.supports_block_flag:
            raise InvalidTransitionError(
                task.id,
                task.status,
                target,
                message=f"The {self.definition.workflow.value} workflow has no block flag",
            )

    def block(self, task: Task, reason: str | None = None) -> None:
        self._require_block_flag(task, Status.BLOCKED)
        if self.definition.is_terminal(task.status):
            raise InvalidTransitionError(task.id, task.status, Status.BLOCKED)
        task.blocked = True
        task.blocked_reason = reason.strip() if reason and reason.strip() else None

    def unblock(self, task: Task) -> None:
        self._require_block_flag(task, task.status)
        task.blocked = False
        task.blocked_reason = None
