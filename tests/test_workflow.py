from __future__ import annotations

import pytest

from vertebrae.graph import DependencyGraph
from vertebrae.models import (
    BlockedError,
    IncompleteChildrenError,
    InvalidTransitionError,
    Level,
    MissingReasonError,
    Section,
    SectionType,
    Status,
    Task,
    TriageValidationError,
)
from vertebrae.triage import TriageConfig, TriageValidator
from vertebrae.workflow import (
    LEGACY_WORKFLOW,
    STANDARD_WORKFLOW,
    StatusMachine,
    Workflow,
    definition_for,
)


def _task(task_id: str, status: Status, level: Level = Level.TASK, parent_id: str | None = None) -> Task:
    return Task(id=task_id, title=task_id.upper(), level=level, status=status, parent_id=parent_id)


def _index(*tasks: Task) -> dict[str, Task]:
    return {task.id: task for task in tasks}


def test_standard_transition_table() -> None:
    allowed = {status: set(STANDARD_WORKFLOW.allowed_from(status)) for status in STANDARD_WORKFLOW.states}
    assert allowed[Status.BACKLOG] == {Status.TODO}
    assert allowed[Status.TODO] == {Status.IN_PROGRESS, Status.REJECTED}
    assert allowed[Status.IN_PROGRESS] == {Status.PENDING_REVIEW, Status.REJECTED}
    assert allowed[Status.PENDING_REVIEW] == {Status.IN_PROGRESS, Status.DONE, Status.REJECTED}
    assert allowed[Status.DONE] == set()
    assert allowed[Status.REJECTED] == set()


def test_definition_for_returns_both_workflows() -> None:
    assert definition_for(Workflow.STANDARD) is STANDARD_WORKFLOW
    assert definition_for(Workflow.LEGACY) is LEGACY_WORKFLOW
    assert LEGACY_WORKFLOW.initial is Status.TODO


def test_dependency_scenario_blocks_then_unblocks() -> None:
    epic = _task("e", Status.IN_PROGRESS, Level.EPIC)
    ticket = _task("t", Status.IN_PROGRESS, Level.TICKET, parent_id="e")
    task_a = _task("a", Status.TODO, parent_id="t")
    task_b = _task("b", Status.PENDING_REVIEW, parent_id="t")
    tasks = _index(epic, ticket, task_a, task_b)
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    machine = StatusMachine()

    with pytest.raises(BlockedError) as excinfo:
        machine.plan(task_a, Status.IN_PROGRESS, tasks, graph)
    assert excinfo.value.blockers == [("b", Status.PENDING_REVIEW)]

    result = machine.plan(task_b, Status.DONE, tasks, graph)
    assert result.changed
    assert result.newly_unblocked == ["a"]
    task_b.status = Status.DONE

    assert machine.plan(task_a, Status.IN_PROGRESS, tasks, graph).changed


def test_plan_does_not_mutate_task() -> None:
    task = _task("a", Status.TODO)
    StatusMachine().plan(task, Status.IN_PROGRESS, _index(task), DependencyGraph())
    assert task.status is Status.TODO


def test_disallowed_transition_lists_allowed_targets() -> None:
    task = _task("a", Status.BACKLOG)
    with pytest.raises(InvalidTransitionError) as excinfo:
        StatusMachine().plan(task, Status.DONE, _index(task), DependencyGraph())
    assert excinfo.value.allowed == (Status.TODO,)


def test_terminal_states_have_no_exit() -> None:
    task = _task("a", Status.DONE)
    with pytest.raises(InvalidTransitionError):
        StatusMachine().plan(task, Status.IN_PROGRESS, _index(task), DependencyGraph())


def test_status_outside_workflow_rejected() -> None:
    task = _task("a", Status.TODO)
    machine = StatusMachine(LEGACY_WORKFLOW)
    with pytest.raises(InvalidTransitionError, match="not part of the legacy workflow"):
        machine.plan(task, Status.PENDING_REVIEW, _index(task), DependencyGraph())


def test_same_status_is_unchanged() -> None:
    task = _task("a", Status.TODO)
    result = StatusMachine().plan(task, Status.TODO, _index(task), DependencyGraph())
    assert not result.changed
    assert result.newly_unblocked == []


def test_reject_requires_reason() -> None:
    task = _task("a", Status.IN_PROGRESS)
    machine = StatusMachine()
    with pytest.raises(MissingReasonError):
        machine.plan(task, Status.REJECTED, _index(task), DependencyGraph(), reason="   ")
    result = machine.plan(task, Status.REJECTED, _index(task), DependencyGraph(), reason=" out of scope ")
    assert result.reason == "out of scope"


def test_done_requires_terminal_descendants() -> None:
    ticket = _task("t", Status.PENDING_REVIEW, Level.TICKET)
    child = _task("c", Status.IN_PROGRESS, parent_id="t")
    grandchild = _task("g", Status.TODO, Level.SUBTASK, parent_id="c")
    tasks = _index(ticket, child, grandchild)
    machine = StatusMachine()

    with pytest.raises(IncompleteChildrenError) as excinfo:
        machine.plan(ticket, Status.DONE, tasks, DependencyGraph())
    assert excinfo.value.children == [("c", Status.IN_PROGRESS), ("g", Status.TODO)]

    child.status = Status.DONE
    grandchild.status = Status.REJECTED
    assert machine.plan(ticket, Status.DONE, tasks, DependencyGraph()).changed


def test_rejected_blocker_keeps_dependent_blocked() -> None:
    dependent = _task("a", Status.TODO)
    blocker = _task("b", Status.REJECTED)
    tasks = _index(dependent, blocker)
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    with pytest.raises(BlockedError):
        StatusMachine().plan(dependent, Status.IN_PROGRESS, tasks, graph)


def test_newly_unblocked_skips_dependents_with_other_blockers() -> None:
    tasks = _index(
        _task("a", Status.TODO),
        _task("b", Status.PENDING_REVIEW),
        _task("c", Status.TODO),
        _task("d", Status.TODO),
        _task("x", Status.REJECTED),
    )
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    graph.add_edge("c", "b")
    graph.add_edge("c", "d")
    graph.add_edge("x", "b")
    assert StatusMachine().newly_unblocked("b", tasks, graph) == ["a"]


def test_triage_gate_blocks_incomplete_task() -> None:
    task = _task("a", Status.BACKLOG)
    machine = StatusMachine()
    with pytest.raises(TriageValidationError) as excinfo:
        machine.plan(task, Status.TODO, _index(task), DependencyGraph())
    assert not excinfo.value.result.is_valid

    result = machine.plan(task, Status.TODO, _index(task), DependencyGraph(), skip_validation=True)
    assert result.changed
    assert result.validation is None


def test_triage_gate_passes_with_warnings() -> None:
    task = _task("a", Status.BACKLOG)
    task.sections.append(Section(type=SectionType.STEP, content="do it", index=1))
    validator = TriageValidator(TriageConfig.from_counts(required={"step": 1}, recommended={"goal": 1}))
    result = StatusMachine(validator=validator).plan(task, Status.TODO, _index(task), DependencyGraph())
    assert result.validation is not None
    assert [issue.rule.label for issue in result.validation.warnings] == ["goal"]


def test_display_status_marks_blocked_entry_states() -> None:
    task_a = _task("a", Status.TODO)
    task_b = _task("b", Status.TODO)
    tasks = _index(task_a, task_b)
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    machine = StatusMachine()
    assert machine.display_status(task_a, tasks, graph) is Status.BLOCKED
    assert machine.display_status(task_b, tasks, graph) is Status.TODO

    task_a.status = Status.IN_PROGRESS
    assert machine.display_status(task_a, tasks, graph) is Status.IN_PROGRESS


def test_legacy_block_flag_prevents_start() -> None:
    task = _task("a", Status.TODO)
    machine = StatusMachine(LEGACY_WORKFLOW)
    machine.block(task, reason=" waiting on vendor ")
    assert task.blocked
    assert task.blocked_reason == "waiting on vendor"
    assert machine.display_status(task, _index(task), DependencyGraph()) is Status.BLOCKED

    with pytest.raises(BlockedError) as excinfo:
        machine.plan(task, Status.IN_PROGRESS, _index(task), DependencyGraph())
    assert excinfo.value.flagged

    machine.unblock(task)
    assert not task.blocked
    assert task.blocked_reason is None
    assert machine.plan(task, Status.IN_PROGRESS, _index(task), DependencyGraph()).changed


def test_legacy_allows_direct_completion() -> None:
    task = _task("a", Status.TODO)
    result = StatusMachine(LEGACY_WORKFLOW).plan(task, Status.DONE, _index(task), DependencyGraph())
    assert result.changed


def test_block_flag_unavailable_in_standard_workflow() -> None:
    task = _task("a", Status.TODO)
    with pytest.raises(InvalidTransitionError, match="no block flag"):
        StatusMachine().block(task)


def test_stale_block_flag_ignored_in_standard_workflow() -> None:
    task = _task("a", Status.TODO)
    task.blocked = True
    machine = StatusMachine()
    assert machine.display_status(task, _index(task), DependencyGraph()) is Status.TODO
    assert machine.plan(task, Status.IN_PROGRESS, _index(task), DependencyGraph()).changed
