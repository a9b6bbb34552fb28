"""Renderers for list, detail, graph and transition output."""

from __future__ import annotations

import json
from typing import Any, Iterable

from .graph import BlockerNode
from .hierarchy import ReadyResult
from .models import Relationship, SectionType, Status, Task
from .service import DeleteResult, TaskDetails
from .triage import TriageResult
from .workflow import TransitionResult


DEFAULT_LIST_COLUMNS: list[dict[str, int | str]] = [
    {"name": "id", "width": 8},
    {"name": "level", "width": 8},
    {"name": "status", "width": 14},
    {"name": "priority", "width": 8},
    {"name": "title", "width": 40},
    {"name": "tags", "width": 20},
]

SECTION_LABELS = {
    SectionType.GOAL: "Goal",
    SectionType.CONTEXT: "Context",
    SectionType.CURRENT_BEHAVIOR: "Current behavior",
    SectionType.DESIRED_BEHAVIOR: "Desired behavior",
    SectionType.STEP: "Steps",
    SectionType.CONSTRAINT: "Constraints",
    SectionType.TESTING_CRITERION: "Testing criteria",
    SectionType.ANTI_PATTERN: "Anti-patterns",
    SectionType.FAILURE_TEST: "Failure tests",
}

TRANSITION_VERBS = {
    Status.TODO: "Triaged",
    Status.IN_PROGRESS: "Started",
    Status.PENDING_REVIEW: "Submitted for review",
    Status.DONE: "Completed",
    Status.REJECTED: "Rejected",
}


def _column_name(column: dict[str, int | str]) -> str:
    return str(column["name"])


def _column_width(column: dict[str, int | str]) -> int:
    return int(column["width"])


def _priority_style(priority: str) -> str:
    return {
        "critical": "bold red",
        "high": "bold yellow",
        "medium": "cyan",
        "low": "dim",
    }.get(priority, "white")


def _status_style(status: str) -> str:
    return {
        "backlog": "dim",
        "todo": "magenta",
        "in_progress": "cyan",
        "pending_review": "blue",
        "done": "green",
        "rejected": "red",
        "blocked": "yellow",
    }.get(status, "white")


def _truncate(value: str, width: int) -> str:
    if width <= 0:
        return ""
    if len(value) <= width:
        return value
    if width == 1:
        return "…"
    return f"{value[: width - 1]}…"


def _task_list_row(task: Task, status: Status) -> dict[str, str]:
    return {
        "id": task.id,
        "level": task.level.value,
        "status": status.value,
        "priority": task.priority.value,
        "title": task.title,
        "tags": ", ".join(task.tags) if task.tags else "-",
        "parent": task.parent_id or "-",
    }


def _json(payload: Any) -> str:
    return json.dumps(payload, indent=2)


def render_task_list_plain(
    tasks: Iterable[Task],
    statuses: dict[str, Status],
    columns: list[dict[str, int | str]] = DEFAULT_LIST_COLUMNS,
) -> str:
    rows = [_task_list_row(task, statuses.get(task.id, task.status)) for task in tasks]
    if not rows:
        return "No tasks found."

    headers = [_column_name(column) for column in columns]
    widths = {name: _column_width(column) for name, column in zip(headers, columns)}

    lines = []
    lines.append("  ".join(_truncate(name, widths[name]).ljust(widths[name]) for name in headers).rstrip())
    lines.append("  ".join("-" * widths[name] for name in headers))
    for row in rows:
        rendered = [_truncate(row[name], widths[name]).ljust(widths[name]) for name in headers]
        lines.append("  ".join(rendered).rstrip())
    return "\n".join(lines)


def render_task_list_rich(
    tasks: Iterable[Task],
    statuses: dict[str, Status],
    columns: list[dict[str, int | str]] = DEFAULT_LIST_COLUMNS,
):
    from rich import box
    from rich.table import Table
    from rich.text import Text

    task_list = list(tasks)
    if not task_list:
        return "No tasks found."

    table = Table(
        box=box.SIMPLE_HEAVY,
        show_header=True,
        header_style="bold white",
        pad_edge=False,
    )
    for column in columns:
        name = _column_name(column)
        table.add_column(
            name,
            style="dim" if name == "id" else ("bold" if name == "title" else ""),
            min_width=min(_column_width(column), 12),
            max_width=_column_width(column),
            overflow="ellipsis",
            no_wrap=True,
        )

    for task in task_list:
        row = _task_list_row(task, statuses.get(task.id, task.status))
        rendered: list[str | Text] = []
        for column in columns:
            name = _column_name(column)
            value = row[name]
            if name == "status":
                rendered.append(Text(value, style=_status_style(value)))
            elif name == "priority":
                rendered.append(Text(value, style=_priority_style(value)))
            else:
                rendered.append(value)
        table.add_row(*rendered)
    return table


def render_task_list_json(tasks: Iterable[Task], statuses: dict[str, Status]) -> str:
    payload = []
    for task in tasks:
        item = task.to_dict()
        item["display_status"] = statuses.get(task.id, task.status).value
        payload.append(item)
    return _json(payload)


def _inline_tasks(tasks: list[Task]) -> str:
    if not tasks:
        return "-"
    return ", ".join(f"{task.title} ({task.id}) [{task.status.value}]" for task in tasks)


def _section_lines(task: Task) -> list[str]:
    lines: list[str] = []
    for section_type in SectionType:
        sections = task.sections_of(section_type)
        if not sections:
            continue
        lines.append("")
        lines.append(f"{SECTION_LABELS[section_type]}:")
        for section in sections:
            if section_type is SectionType.STEP:
                mark = "x" if section.done else " "
                lines.append(f"  {section.index}. [{mark}] {section.content}")
            elif len(sections) > 1:
                lines.append(f"  {section.index}. {section.content}")
            else:
                lines.append(f"  {section.content}")
    return lines


def _reference_lines(task: Task) -> list[str]:
    if not task.references:
        return []
    lines = ["", "References:"]
    for position, ref in enumerate(task.references, start=1):
        label = f"  {position}. {ref.location}"
        if ref.name:
            label += f" ({ref.name})"
        if ref.description:
            label += f" - {ref.description}"
        lines.append(label)
    return lines


def _detail_header_lines(details: TaskDetails) -> list[str]:
    task = details.task
    tags = ", ".join(task.tags) if task.tags else "-"
    lines = [
        f"level: {task.level.value}    priority: {task.priority.value}    tags: {tags}",
        f"parent: {_inline_tasks([details.parent]) if details.parent else '-'}",
        f"children: {_inline_tasks(details.children)}",
        f"depends_on: {_inline_tasks(details.blockers)}",
        f"blocks: {_inline_tasks(details.dependents)}",
        (
            f"created: {task.created_at:%Y-%m-%d %H:%M}    "
            f"started: {f'{task.started_at:%Y-%m-%d %H:%M}' if task.started_at else '-'}    "
            f"completed: {f'{task.completed_at:%Y-%m-%d %H:%M}' if task.completed_at else '-'}"
        ),
    ]
    if task.needs_human_review:
        lines.append("needs human review: yes")
    if task.rejection_reason:
        lines.append(f"rejection reason: {task.rejection_reason}")
    if task.blocked_reason:
        lines.append(f"blocked reason: {task.blocked_reason}")
    return lines


def render_task_detail_plain(details: TaskDetails) -> str:
    task = details.task
    lines = [
        f"{task.title} ({task.id})",
        f"[{details.display_status.value}]",
        *_detail_header_lines(details),
    ]
    if task.description:
        lines.extend(["", task.description.rstrip()])
    lines.extend(_section_lines(task))
    lines.extend(_reference_lines(task))
    return "\n".join(lines)


def render_task_detail_rich(details: TaskDetails):
    from rich.console import Group
    from rich.text import Text

    task = details.task
    status = details.display_status.value

    title = Text()
    title.append(task.title, style="bold")
    title.append(f" ({task.id})", style="dim")

    chips = Text()
    chips.append(f"[{status}]", style=_status_style(status))
    chips.append(" ")
    chips.append(f"[{task.priority.value}]", style=_priority_style(task.priority.value))
    chips.append(" ")
    chips.append(f"[{task.level.value}]")

    body: list[Text] = [Text(line) for line in _detail_header_lines(details)]
    if task.description:
        body.extend([Text(""), Text(task.description.rstrip())])
    for line in [*_section_lines(task), *_reference_lines(task)]:
        if line.endswith(":") and not line.startswith(" "):
            body.append(Text(line, style="bold"))
        else:
            body.append(Text(line))
    return Group(title, chips, *body)


def render_task_detail_json(details: TaskDetails) -> str:
    return _json(details.to_dict())


def render_created_plain(task: Task) -> str:
    return f"Created {task.level.value}: {task.title} ({task.id}) [{task.status.value}]"


def render_delete_plain(result: DeleteResult) -> str:
    lines = [f"Deleted: {', '.join(result.deleted)}"]
    if result.orphaned:
        lines.append(f"Orphaned children: {', '.join(result.orphaned)}")
    if result.relationships:
        lines.append(f"Removed {len(result.relationships)} dependencies")
    return "\n".join(lines)


def render_delete_json(result: DeleteResult) -> str:
    return _json(result.to_dict())


def _node_label(node: BlockerNode) -> str:
    return f"{node.id} [{node.status.value}] {node.title}"


def render_blocker_tree_plain(task: Task, nodes: list[BlockerNode]) -> str:
    if not nodes:
        return f"{task.id} has no blockers."
    lines = [f"Blockers of {task.id}:"]
    # (node, prefix, is_last)
    stack = [(node, "", index == len(nodes) - 1) for index, node in reversed(list(enumerate(nodes)))]
    while stack:
        node, prefix, is_last = stack.pop()
        lines.append(f"{prefix}{'└── ' if is_last else '├── '}{_node_label(node)}")
        child_prefix = prefix + ("    " if is_last else "│   ")
        children = node.children
        for index in range(len(children) - 1, -1, -1):
            stack.append((children[index], child_prefix, index == len(children) - 1))
    return "\n".join(lines)


def render_blocker_tree_rich(task: Task, nodes: list[BlockerNode]):
    from rich.text import Text
    from rich.tree import Tree

    if not nodes:
        return f"{task.id} has no blockers."
    tree = Tree(Text(f"Blockers of {task.id}", style="bold"))
    stack = [(tree, node) for node in reversed(nodes)]
    while stack:
        parent, node = stack.pop()
        label = Text()
        label.append(node.id, style="dim")
        label.append(" ")
        label.append(f"[{node.status.value}]", style=_status_style(node.status.value))
        label.append(f" {node.title}")
        branch = parent.add(label)
        stack.extend((branch, child) for child in reversed(node.children))
    return tree


def render_blocker_tree_json(task: Task, nodes: list[BlockerNode]) -> str:
    return _json({"task_id": task.id, "blockers": [node.to_dict() for node in nodes]})


def render_path_plain(from_id: str, to_id: str, edges: list[Relationship] | None) -> str:
    if edges is None:
        return f"No dependency path from {from_id} to {to_id}."
    if not edges:
        return f"{from_id} is {to_id}."
    chain = [edges[0].dependent_id, *(edge.blocker_id for edge in edges)]
    return f"Path ({len(edges)} hops): {' -> '.join(chain)}"


def render_path_json(from_id: str, to_id: str, edges: list[Relationship] | None) -> str:
    return _json(
        {
            "from": from_id,
            "to": to_id,
            "found": edges is not None,
            "edges": [edge.to_dict() for edge in edges or []],
        }
    )


def _issue_lines(result: TriageResult) -> list[str]:
    lines: list[str] = []
    for issue in result.errors:
        lines.append(f"  error: {issue.message}")
    for issue in result.warnings:
        lines.append(f"  warning: {issue.message}")
    return lines


def render_validation_plain(result: TriageResult) -> str:
    if not result.issues:
        return f"Task {result.task_id} is ready for triage."
    if result.is_valid:
        header = f"Task {result.task_id} is ready for triage, with warnings:"
    else:
        header = f"Task {result.task_id} is not ready for triage:"
    return "\n".join([header, *_issue_lines(result)])


def render_validation_json(result: TriageResult) -> str:
    return _json(result.to_dict())


def render_transition_plain(result: TransitionResult) -> str:
    if not result.changed:
        line = f"Task {result.task_id} is already {result.to_status.value}"
        if result.reason:
            line += f" (reason updated: {result.reason})"
        return line
    verb = TRANSITION_VERBS.get(result.to_status, f"Moved to {result.to_status.value}")
    lines = [f"{verb}: {result.task_id} ({result.from_status.value} -> {result.to_status.value})"]
    if result.reason:
        lines.append(f"Reason: {result.reason}")
    if result.validation is not None and result.validation.warnings:
        lines.append("Triage warnings:")
        lines.extend(_issue_lines(result.validation))
    if result.newly_unblocked:
        lines.append(f"Unblocked: {', '.join(result.newly_unblocked)}")
    return "\n".join(lines)


def render_transition_json(result: TransitionResult) -> str:
    return _json(result.to_dict())


def _ready_lines(title: str, tasks: list[Task]) -> list[str]:
    lines = [f"{title} ({len(tasks)}):"]
    if not tasks:
        lines.append("  -")
    for task in tasks:
        lines.append(f"  {task.id}  [{task.level.value}] [{task.priority.value}] {task.title}")
    return lines


def render_ready_plain(result: ReadyResult, *, include_triage: bool = True) -> str:
    lines = _ready_lines("Ready to work", result.work)
    if include_triage:
        lines.append("")
        lines.extend(_ready_lines("Ready to triage", result.triage))
    return "\n".join(lines)


def render_ready_rich(result: ReadyResult, *, include_triage: bool = True):
    from rich import box
    from rich.console import Group
    from rich.table import Table
    from rich.text import Text

    sections = [("Ready to work", result.work)]
    if include_triage:
        sections.append(("Ready to triage", result.triage))

    renderables = []
    for title, tasks in sections:
        renderables.append(Text(f"{title} ({len(tasks)})", style="bold"))
        if not tasks:
            renderables.append(Text("  -", style="dim"))
            continue
        table = Table(box=box.SIMPLE_HEAVY, show_header=True, header_style="bold white", pad_edge=False)
        table.add_column("id", style="dim", no_wrap=True)
        table.add_column("level")
        table.add_column("priority")
        table.add_column("title", style="bold")
        for task in tasks:
            table.add_row(
                task.id,
                task.level.value,
                Text(task.priority.value, style=_priority_style(task.priority.value)),
                task.title,
            )
        renderables.append(table)
    return Group(*renderables)


def render_ready_json(result: ReadyResult) -> str:
    return _json(result.to_dict())
