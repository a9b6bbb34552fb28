"""Filesystem layout, config IO and the YAML-backed task store."""

from __future__ import annotations

import datetime as dt
import logging
import os
from pathlib import Path
import random
import string
from typing import Any, Callable, Container

import yaml

from .config import EngineConfig, resolve_engine_config
from .graph import DependencyGraph
from .models import (
    CodeReference,
    ConstraintViolationError,
    Level,
    Priority,
    Relationship,
    Section,
    SectionType,
    Status,
    StoreUnavailableError,
    Task,
    normalize_id,
    normalize_tags,
)
from .store import MemoryTaskStore
from .triage import DEFAULT_RECOMMENDED, DEFAULT_REQUIRED
from .workflow import Workflow


logger = logging.getLogger(__name__)

ROOT_DIR_NAME = ".vtb"
STORE_VERSION = 1
TASK_ID_ALPHABET = string.ascii_lowercase + string.digits
TASK_ID_LENGTH = 6


def find_repo_root(start: Path) -> Path | None:
    start = start.resolve()
    for candidate in [start, *start.parents]:
        git_dir = candidate / ".git"
        if git_dir.exists():
            return candidate
    return None


def discover_roots(start: Path) -> list[Path]:
    start = start.resolve()
    roots: list[Path] = []
    for candidate in [start, *start.parents]:
        root_dir = candidate / ROOT_DIR_NAME
        if root_dir.is_dir():
            roots.append(root_dir)
    return roots


def choose_root(start: Path) -> tuple[Path | None, bool]:
    roots = discover_roots(start)
    if not roots:
        return None, False
    return roots[0], len(roots) > 1


def default_init_root(start: Path) -> Path:
    repo_root = find_repo_root(start)
    base = repo_root if repo_root is not None else start.resolve()
    return base / ROOT_DIR_NAME


def ensure_layout(root: Path) -> None:
    root.mkdir(parents=True, exist_ok=True)


def config_path(root: Path) -> Path:
    return root / "config.yaml"


def tasks_path(root: Path) -> Path:
    return root / "tasks.yaml"


def default_config(workflow: Workflow = Workflow.STANDARD) -> dict[str, Any]:
    return {
        "settings": {
            "workflow": workflow.value,
            "triage": {
                "required": dict(DEFAULT_REQUIRED),
                "recommended": dict(DEFAULT_RECOMMENDED),
            },
        }
    }


def write_default_config_if_missing(root: Path, workflow: Workflow = Workflow.STANDARD) -> bool:
    path = config_path(root)
    if path.exists():
        return False
    payload = yaml.safe_dump(
        default_config(workflow),
        sort_keys=False,
        default_flow_style=False,
    )
    path.write_text(payload, encoding="utf-8")
    return True


def read_config(root: Path, warn: Callable[[str], None] | None = None) -> dict[str, Any]:
    path = config_path(root)
    if not path.exists():
        return {}
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError):
        if warn is not None:
            warn(f"Unable to parse config at {path}. Falling back to defaults.")
        return {}
    if not isinstance(payload, dict):
        if warn is not None:
            warn(f"Invalid config format at {path}. Falling back to defaults.")
        return {}
    return payload


def load_engine_config(root: Path, warn: Callable[[str], None] | None = None) -> EngineConfig:
    data = read_config(root, warn=warn)
    return resolve_engine_config(data, source=config_path(root), warn=warn)


def generate_task_id(existing: Container[str], rng: random.Random | None = None) -> str:
    rng = rng or random.Random()
    while True:
        candidate = "".join(rng.choices(TASK_ID_ALPHABET, k=TASK_ID_LENGTH))
        if candidate not in existing:
            return candidate


def _parse_datetime(value: Any) -> dt.datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    else:
        parsed = dt.datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def section_from_dict(data: dict[str, Any]) -> Section:
    section_type = SectionType(data["type"])
    done = data.get("done")
    if section_type is SectionType.STEP:
        done = bool(done)
    else:
        done = None
    return Section(
        type=section_type,
        content=str(data["content"]),
        index=int(data.get("index", 0)),
        done=done,
        done_at=_parse_datetime(data.get("done_at")),
    )


def reference_from_dict(data: dict[str, Any]) -> CodeReference:
    return CodeReference(
        path=str(data["path"]),
        line_start=_optional_int(data.get("line_start")),
        line_end=_optional_int(data.get("line_end")),
        name=data.get("name"),
        description=data.get("description"),
    )


def task_from_dict(data: dict[str, Any]) -> Task:
    raw_status = str(data["status"])
    blocked = bool(data.get("blocked", False))
    # Older stores kept "blocked" as a status instead of a flag.
    if raw_status == Status.BLOCKED.value:
        raw_status = Status.TODO.value
        blocked = True
    created_at = _parse_datetime(data.get("created_at"))
    updated_at = _parse_datetime(data.get("updated_at"))
    task = Task(
        id=normalize_id(str(data["id"])),
        title=str(data["title"]),
        level=Level(data["level"]),
        status=Status(raw_status),
        priority=Priority(data.get("priority") or Priority.MEDIUM.value),
        description=data.get("description"),
        tags=normalize_tags(data.get("tags") or []),
        parent_id=normalize_id(str(data["parent_id"])) if data.get("parent_id") else None,
        rejection_reason=data.get("rejection_reason"),
        blocked=blocked,
        blocked_reason=data.get("blocked_reason"),
        needs_human_review=bool(data.get("needs_human_review", False)),
        started_at=_parse_datetime(data.get("started_at")),
        completed_at=_parse_datetime(data.get("completed_at")),
        sections=[section_from_dict(item) for item in data.get("sections") or []],
        references=[reference_from_dict(item) for item in data.get("references") or []],
    )
    if created_at is not None:
        task.created_at = created_at
    if updated_at is not None:
        task.updated_at = updated_at
    return task


class FileTaskStore(MemoryTaskStore):
    """Memory store that loads from and commits to `<root>/tasks.yaml`."""

    def __init__(self, root: Path) -> None:
        super().__init__()
        self.root = root.resolve()
        self.path = tasks_path(self.root)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            payload = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise StoreUnavailableError(f"Unable to read task store at {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise StoreUnavailableError(f"Invalid task store format at {self.path}")
        version = payload.get("version", STORE_VERSION)
        if version != STORE_VERSION:
            raise StoreUnavailableError(f"Unsupported task store version {version} at {self.path}")

        try:
            tasks = [task_from_dict(item) for item in payload.get("tasks") or []]
            relationships = [
                Relationship(normalize_id(str(item["dependent"])), normalize_id(str(item["blocker"])))
                for item in payload.get("relationships") or []
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreUnavailableError(f"Invalid task record in {self.path}: {exc}") from exc

        by_id: dict[str, Task] = {}
        for task in tasks:
            if task.id in by_id:
                raise ConstraintViolationError(f"Duplicate task id in {self.path}: {task.id}")
            by_id[task.id] = task
        for task in tasks:
            if task.parent_id is not None and task.parent_id not in by_id:
                raise ConstraintViolationError(f"Task {task.id} has unknown parent {task.parent_id}")
        for edge in relationships:
            for task_id in (edge.dependent_id, edge.blocker_id):
                if task_id not in by_id:
                    raise ConstraintViolationError(f"Relationship references unknown task {task_id}")
        if DependencyGraph(relationships).has_cycle():
            raise ConstraintViolationError(f"Dependency cycle stored in {self.path}")

        self._tasks = by_id
        self._relationships = dict.fromkeys(relationships)
        logger.debug("Loaded %d tasks and %d relationships from %s", len(by_id), len(relationships), self.path)

    def _commit(self) -> None:
        payload = {
            "version": STORE_VERSION,
            "tasks": [task.to_dict() for task in self._tasks.values()],
            "relationships": [edge.to_dict() for edge in self._relationships],
        }
        text = yaml.safe_dump(payload, sort_keys=False, default_flow_style=False, allow_unicode=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(text, encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StoreUnavailableError(f"Unable to write task store at {self.path}: {exc}") from exc
        logger.debug("Wrote %d tasks to %s", len(self._tasks), self.path)
