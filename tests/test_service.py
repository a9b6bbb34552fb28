from __future__ import annotations

import random

import pytest

from vertebrae.config import EngineConfig
from vertebrae.filters import TaskFilter
from vertebrae.models import (
    BlockedError,
    CycleError,
    DuplicateEdgeError,
    IncompleteChildrenError,
    Level,
    LevelOrderError,
    Relationship,
    SectionType,
    Status,
    TaskConflictError,
    TaskNotFoundError,
    TaskValidationError,
    TriageValidationError,
)
from vertebrae.service import TaskService
from vertebrae.store import MemoryTaskStore
from vertebrae.workflow import Workflow


def _service(workflow: Workflow = Workflow.STANDARD) -> TaskService:
    return TaskService(MemoryTaskStore(), EngineConfig(workflow=workflow), rng=random.Random(0))


def _make_triage_ready(service: TaskService, task_id: str) -> None:
    for content in ("passes unit tests", "passes integration tests"):
        service.add_section(task_id, SectionType.TESTING_CRITERION, content)
    service.add_section(task_id, SectionType.STEP, "implement it")
    for content in ("no new dependencies", "keep the public API"):
        service.add_section(task_id, SectionType.CONSTRAINT, content)


def _hierarchy(service: TaskService) -> None:
    service.add_task("Epic", Level.EPIC, task_id="e")
    service.add_task("Ticket", Level.TICKET, task_id="t", parent_id="e")
    service.add_task("Task A", task_id="a", parent_id="t")
    service.add_task("Task B", task_id="b", parent_id="t")


def test_add_task_uses_initial_status_and_generated_id() -> None:
    service = _service()
    task = service.add_task("  Write the parser  ", tags=["b", "a", "a"])
    assert len(task.id) == 6
    assert task.title == "Write the parser"
    assert task.status is Status.BACKLOG
    assert task.tags == ["a", "b"]

    legacy = _service(Workflow.LEGACY)
    assert legacy.add_task("Old style").status is Status.TODO


def test_add_task_validates_id_title_and_parent_level() -> None:
    service = _service()
    service.add_task("Epic", Level.EPIC, task_id="e")
    with pytest.raises(TaskConflictError):
        service.add_task("Again", Level.EPIC, task_id="E")
    with pytest.raises(TaskValidationError):
        service.add_task("Bad id", task_id="-nope")
    with pytest.raises(TaskValidationError):
        service.add_task("   ")
    with pytest.raises(LevelOrderError):
        service.add_task("Skips a level", Level.TASK, parent_id="e")
    with pytest.raises(TaskNotFoundError):
        service.add_task("Lost", Level.TICKET, parent_id="ghost")


def test_add_task_with_dependencies_is_atomic() -> None:
    service = _service()
    service.add_task("Blocker", task_id="b")
    created = service.add_task("Dependent", task_id="d", depends_on=["b"])
    assert service.show(created.id).blockers[0].id == "b"

    with pytest.raises(TaskNotFoundError):
        service.add_task("Broken", task_id="x", depends_on=["b", "ghost"])
    assert not service.store.has_task("x")
    assert service.store.list_relationships() == [Relationship("d", "b")]


def test_dependency_scenario_end_to_end() -> None:
    service = _service()
    _hierarchy(service)
    service.add_dependency("a", "b")
    for task_id in ("a", "b"):
        _make_triage_ready(service, task_id)
        service.triage(task_id)

    with pytest.raises(BlockedError):
        service.start("a")
    assert service.get_task("a").status is Status.TODO

    service.start("b")
    service.submit("b")
    result = service.complete("b")
    assert result.newly_unblocked == ["a"]

    started = service.start("a")
    assert started.to_status is Status.IN_PROGRESS
    task = service.get_task("a")
    assert task.started_at is not None


def test_triage_gate_and_skip_validation() -> None:
    service = _service()
    service.add_task("Thin", task_id="thin")
    with pytest.raises(TriageValidationError):
        service.triage("thin")
    assert service.get_task("thin").status is Status.BACKLOG

    result = service.triage("thin", skip_validation=True)
    assert result.changed
    assert service.get_task("thin").status is Status.TODO


def test_complete_parent_requires_finished_children() -> None:
    service = _service(Workflow.LEGACY)
    _hierarchy(service)
    with pytest.raises(IncompleteChildrenError):
        service.complete("t")
    service.complete("a")
    service.complete("b")
    result = service.complete("t")
    assert result.changed
    assert service.get_task("t").completed_at is not None


def test_reject_records_reason_and_updates_it() -> None:
    service = _service()
    service.add_task("Idea", task_id="i")
    service.triage("i", skip_validation=True)
    service.reject("i", "duplicate of another task")
    task = service.get_task("i")
    assert task.status is Status.REJECTED
    assert task.rejection_reason == "duplicate of another task"
    assert task.completed_at is not None

    again = service.reject("i", "superseded")
    assert not again.changed
    assert service.get_task("i").rejection_reason == "superseded"


def test_cycle_and_duplicate_dependencies_leave_store_unchanged() -> None:
    service = _service()
    for task_id in ("a", "b", "c"):
        service.add_task(task_id.upper(), task_id=task_id)
    service.add_dependency("a", "b")
    service.add_dependency("b", "c")
    with pytest.raises(CycleError):
        service.add_dependency("c", "a")
    with pytest.raises(DuplicateEdgeError):
        service.add_dependency("A", "B")
    assert service.store.list_relationships() == [Relationship("a", "b"), Relationship("b", "c")]

    assert [edge.blocker_id for edge in service.find_path("a", "c")] == ["b", "c"]
    assert service.find_path("c", "a") is None
    assert service.remove_dependency("a", "b") is True
    assert service.remove_dependency("a", "b") is False


def test_cascade_delete_leaves_no_dangling_references() -> None:
    service = _service()
    _hierarchy(service)
    service.add_task("Outside", task_id="o")
    service.add_dependency("o", "a")
    service.add_dependency("b", "a")

    result = service.delete_task("t", cascade=True)
    assert result.deleted == ["t", "a", "b"]
    assert {edge for edge in result.relationships} == {Relationship("o", "a"), Relationship("b", "a")}
    remaining = {task.id for task in service.store.list_tasks()}
    assert remaining == {"e", "o"}
    assert service.store.list_relationships() == []
    assert service.store.children_of("e") == []


def test_plain_delete_orphans_children() -> None:
    service = _service()
    _hierarchy(service)
    result = service.delete_task("t")
    assert result.deleted == ["t"]
    assert result.orphaned == ["a", "b"]
    assert service.get_task("a").parent_id is None


def test_update_task_moves_within_hierarchy() -> None:
    service = _service()
    _hierarchy(service)
    service.add_task("Other ticket", Level.TICKET, task_id="t2", parent_id="e")
    moved = service.update_task("a", parent_id="t2", tags=["moved"], title="Task A2")
    assert moved.parent_id == "t2"
    assert moved.tags == ["moved"]
    assert moved.title == "Task A2"

    with pytest.raises(LevelOrderError):
        service.update_task("a", parent_id="e")
    with pytest.raises(TaskValidationError):
        service.update_task("e", level=Level.TICKET, parent_id="t")
    with pytest.raises(TaskConflictError):
        service.update_task("a", parent_id="t", clear_parent=True)

    cleared = service.update_task("a", clear_parent=True, tags=["x"], replace_tags=True)
    assert cleared.parent_id is None
    assert cleared.tags == ["x"]


def test_update_level_checks_existing_children() -> None:
    service = _service()
    _hierarchy(service)
    with pytest.raises(LevelOrderError):
        service.update_task("t", level=Level.TASK, clear_parent=True)
    assert service.get_task("t").level is Level.TICKET


def test_ready_and_blockers() -> None:
    service = _service()
    _hierarchy(service)
    service.add_dependency("a", "b")
    ready = service.ready()
    assert [task.id for task in ready.triage] == ["e"]
    assert ready.work == []

    forest = service.blockers("a")
    assert [node.id for node in forest] == ["b"]
    statuses = service.display_statuses(service.list_tasks())
    assert statuses["a"] is Status.BLOCKED
    assert statuses["b"] is Status.BACKLOG


def test_list_tasks_uses_filter() -> None:
    service = _service()
    _hierarchy(service)
    tasks = service.list_tasks(TaskFilter.build(levels=[Level.TASK]))
    assert [task.id for task in tasks] == ["a", "b"]


def test_show_collects_neighbours() -> None:
    service = _service()
    _hierarchy(service)
    service.add_dependency("a", "b")
    details = service.show("t")
    assert details.parent is not None and details.parent.id == "e"
    assert [child.id for child in details.children] == ["a", "b"]
    payload = service.show("b").to_dict()
    assert payload["dependents"][0]["id"] == "a"


def test_steps_and_references() -> None:
    service = _service()
    service.add_task("Work", task_id="w")
    service.add_section("w", SectionType.STEP, "first")
    service.add_section("w", SectionType.STEP, "second")
    step = service.complete_step("w", 2)
    assert step.done is True
    assert step.done_at is not None
    with pytest.raises(TaskValidationError):
        service.complete_step("w", 3)

    position, ref = service.add_reference("w", "src/app.py", line_start=5, line_end=9, name="entry")
    assert position == 1
    assert ref.location == "src/app.py:L5-9"
    with pytest.raises(TaskValidationError):
        service.add_reference("w", "src/app.py", line_start=9, line_end=5)
    with pytest.raises(TaskValidationError):
        service.add_reference("w", "src/app.py", line_end=5)
    assert service.remove_reference("w", 1).name == "entry"


def test_review_flag_toggles() -> None:
    service = _service()
    service.add_task("Review me", task_id="r")
    assert service.set_review("r").needs_human_review is True
    assert service.set_review("r").needs_human_review is False
    assert service.set_review("r", needed=True).needs_human_review is True
    assert service.set_review("r", needed=True).needs_human_review is True


def test_legacy_block_flag_round_trip() -> None:
    service = _service(Workflow.LEGACY)
    service.add_task("Flag me", task_id="f")
    service.block("f", "waiting")
    with pytest.raises(BlockedError):
        service.start("f")
    service.unblock("f")
    assert service.start("f").changed
