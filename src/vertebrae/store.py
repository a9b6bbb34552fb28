"""Task store interface and the in-memory implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
import copy
import logging
from typing import ContextManager, Iterator

from .models import (
    SINGLE_INSTANCE_SECTIONS,
    CodeReference,
    ConstraintViolationError,
    Relationship,
    Section,
    SectionType,
    Task,
    TaskNotFoundError,
    TaskValidationError,
    normalize_id,
)


logger = logging.getLogger(__name__)


class TaskStore(ABC):
    """CRUD surface the service layer builds on.

    Reads return copies; callers write changes back through `update_task`.
    """

    @abstractmethod
    def transaction(self) -> ContextManager[None]: ...

    @abstractmethod
    def create_task(self, task: Task) -> Task: ...

    @abstractmethod
    def get_task(self, task_id: str) -> Task: ...

    @abstractmethod
    def has_task(self, task_id: str) -> bool: ...

    @abstractmethod
    def update_task(self, task: Task) -> Task: ...

    @abstractmethod
    def delete_task(self, task_id: str) -> Task: ...

    @abstractmethod
    def list_tasks(self) -> list[Task]: ...

    @abstractmethod
    def children_of(self, parent_id: str) -> list[str]: ...

    @abstractmethod
    def add_relationship(self, relationship: Relationship) -> Relationship: ...

    @abstractmethod
    def remove_relationship(self, relationship: Relationship) -> bool: ...

    @abstractmethod
    def list_relationships(self) -> list[Relationship]: ...

    @abstractmethod
    def add_section(self, task_id: str, section_type: SectionType, content: str) -> Section: ...

    @abstractmethod
    def remove_section(self, task_id: str, section_type: SectionType, index: int) -> Section: ...

    @abstractmethod
    def list_sections(self, task_id: str, section_type: SectionType | None = None) -> list[Section]: ...

    @abstractmethod
    def add_reference(self, task_id: str, reference: CodeReference) -> int: ...

    @abstractmethod
    def remove_reference(self, task_id: str, position: int) -> CodeReference: ...

    @abstractmethod
    def list_references(self, task_id: str) -> list[CodeReference]: ...


class MemoryTaskStore(TaskStore):
    """Dict-backed store; tasks keep creation order.

    `transaction()` snapshots the whole state on the outermost entry and
    restores it if the block raises. Subclasses persist in `_commit`.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._relationships: dict[Relationship, None] = {}
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return
        snapshot = copy.deepcopy((self._tasks, self._relationships))
        self._depth = 1
        try:
            yield
            self._commit()
        except BaseException:
            self._tasks, self._relationships = snapshot
            logger.debug("Rolled back store transaction")
            raise
        finally:
            self._depth = 0

    def _commit(self) -> None:
        """Hook run after the outermost transaction succeeds."""

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(normalize_id(task_id))
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def create_task(self, task: Task) -> Task:
        with self.transaction():
            if task.id in self._tasks:
                raise ConstraintViolationError(f"Task id already exists: {task.id}")
            if task.parent_id is not None and task.parent_id not in self._tasks:
                raise ConstraintViolationError(f"Parent task does not exist: {task.parent_id}")
            self._tasks[task.id] = copy.deepcopy(task)
        return copy.deepcopy(task)

    def get_task(self, task_id: str) -> Task:
        return copy.deepcopy(self._require(task_id))

    def has_task(self, task_id: str) -> bool:
        return normalize_id(task_id) in self._tasks

    def update_task(self, task: Task) -> Task:
        with self.transaction():
            self._require(task.id)
            if task.parent_id is not None:
                if task.parent_id not in self._tasks:
                    raise ConstraintViolationError(f"Parent task does not exist: {task.parent_id}")
                if task.parent_id == task.id:
                    raise ConstraintViolationError(f"Task {task.id} cannot be its own parent")
            self._tasks[task.id] = copy.deepcopy(task)
        return copy.deepcopy(task)

    def delete_task(self, task_id: str) -> Task:
        with self.transaction():
            task = self._require(task_id)
            children = self.children_of(task.id)
            if children:
                raise ConstraintViolationError(
                    f"Task {task.id} still has children: {', '.join(children)}"
                )
            touching = [
                edge
                for edge in self._relationships
                if task.id in (edge.dependent_id, edge.blocker_id)
            ]
            if touching:
                raise ConstraintViolationError(f"Task {task.id} still has dependencies")
            del self._tasks[task.id]
        return task

    def list_tasks(self) -> list[Task]:
        return [copy.deepcopy(task) for task in self._tasks.values()]

    def children_of(self, parent_id: str) -> list[str]:
        parent_id = normalize_id(parent_id)
        return [task.id for task in self._tasks.values() if task.parent_id == parent_id]

    def add_relationship(self, relationship: Relationship) -> Relationship:
        with self.transaction():
            self._require(relationship.dependent_id)
            self._require(relationship.blocker_id)
            if relationship in self._relationships:
                raise ConstraintViolationError(
                    f"Relationship already stored: {relationship.dependent_id} -> {relationship.blocker_id}"
                )
            self._relationships[relationship] = None
        return relationship

    def remove_relationship(self, relationship: Relationship) -> bool:
        with self.transaction():
            if relationship not in self._relationships:
                return False
            del self._relationships[relationship]
        return True

    def list_relationships(self) -> list[Relationship]:
        return list(self._relationships)

    def add_section(self, task_id: str, section_type: SectionType, content: str) -> Section:
        content = content.strip()
        if not content:
            raise TaskValidationError("Section content cannot be empty")
        with self.transaction():
            task = self._require(task_id)
            if section_type in SINGLE_INSTANCE_SECTIONS:
                task.sections = [section for section in task.sections if section.type is not section_type]
            section = Section(
                type=section_type,
                content=content,
                index=task.section_count(section_type) + 1,
                done=False if section_type is SectionType.STEP else None,
            )
            task.sections.append(section)
            task.touch()
        return copy.deepcopy(section)

    def remove_section(self, task_id: str, section_type: SectionType, index: int) -> Section:
        with self.transaction():
            task = self._require(task_id)
            matching = task.sections_of(section_type)
            if index < 1 or index > len(matching):
                raise TaskValidationError(
                    f"No {section_type.value} section #{index} on {task.id} "
                    f"({len(matching)} present)"
                )
            removed = matching[index - 1]
            task.sections.remove(removed)
            for position, section in enumerate(task.sections_of(section_type), start=1):
                section.index = position
            task.touch()
        return copy.deepcopy(removed)

    def list_sections(self, task_id: str, section_type: SectionType | None = None) -> list[Section]:
        task = self._require(task_id)
        sections = task.sections if section_type is None else task.sections_of(section_type)
        return copy.deepcopy(sections)

    def add_reference(self, task_id: str, reference: CodeReference) -> int:
        with self.transaction():
            task = self._require(task_id)
            task.references.append(copy.deepcopy(reference))
            task.touch()
            position = len(task.references)
        return position

    def remove_reference(self, task_id: str, position: int) -> CodeReference:
        with self.transaction():
            task = self._require(task_id)
            if position < 1 or position > len(task.references):
                raise TaskValidationError(
                    f"No code reference #{position} on {task.id} ({len(task.references)} present)"
                )
            removed = task.references.pop(position - 1)
            task.touch()
        return removed

    def list_references(self, task_id: str) -> list[CodeReference]:
        return copy.deepcopy(self._require(task_id).references)
