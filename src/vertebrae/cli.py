"""CLI entrypoint for vertebrae."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
import re
import sys
from typing import Annotated

import click
import typer

from . import render, storage
from .filters import TaskFilter
from .logging_setup import setup_logging
from .models import (
    DuplicateEdgeError,
    Level,
    Priority,
    SectionType,
    Status,
    TaskError,
    TaskValidationError,
)
from .service import TaskService
from .workflow import TransitionResult, Workflow

# "blocked" is derived for display and can never be stored or targeted.
StoredStatus = Enum(
    "StoredStatus",
    {status.name: status.value for status in Status if status is not Status.BLOCKED},
    type=str,
)

RootOption = Annotated[Path | None, typer.Option("--root", help="Explicit .vtb path")]
JsonOption = Annotated[bool, typer.Option("--json", help="Emit JSON")]
TaskIdArgument = Annotated[str, typer.Argument(help="Task id (case-insensitive)")]

FILE_REF_RE = re.compile(r"^(?P<path>.+):L(?P<start>\d+)(?:-(?P<end>\d+))?$")

app = typer.Typer(
    help="Hierarchical task tracker with dependencies and a triage gate",
    no_args_is_help=True,
)


@app.callback()
def root_callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log debug output to stderr")] = False,
    log_file: Annotated[
        Path | None, typer.Option("--log-file", help="Also write debug logs to this file")
    ] = None,
) -> None:
    """Hierarchical task tracker with dependencies and a triage gate."""
    setup_logging(verbose=verbose, log_file=log_file)


def _can_render_rich_output() -> bool:
    return sys.stdout.isatty()


def _print_rich(renderable) -> None:
    from rich.console import Console

    Console().print(renderable)


def _echo_root_notice(root: Path, multiple_found: bool) -> None:
    typer.echo(f"Using vtb root: {root}", err=True)
    if multiple_found:
        typer.echo("Warning: multiple .vtb roots found; using nearest ancestor.", err=True)


def _warn(message: str) -> None:
    typer.echo(f"Warning: {message}", err=True)


def _resolve_existing_root(root_option: Path | None) -> Path:
    if root_option is not None:
        root = root_option.resolve()
        if not root.exists():
            raise typer.BadParameter(f"vtb root not found: {root}")
        return root

    root, multiple = storage.choose_root(Path.cwd())
    if root is None:
        raise TaskValidationError(
            "No .vtb root found from current directory upward. Run 'vtb init' first."
        )
    _echo_root_notice(root, multiple)
    return root


def _resolve_init_root(root_option: Path | None) -> Path:
    if root_option is not None:
        return root_option.resolve()

    root, multiple = storage.choose_root(Path.cwd())
    if root is not None:
        _echo_root_notice(root, multiple)
        return root

    default_root = storage.default_init_root(Path.cwd())
    typer.echo(f"No .vtb found. Initializing at: {default_root}", err=True)
    return default_root


def _service(root_option: Path | None = None) -> TaskService:
    return TaskService.from_root(_resolve_existing_root(root_option), warn=_warn)


def _run_and_handle(fn) -> None:
    try:
        fn()
    except TaskError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def parse_file_ref(spec: str) -> tuple[str, int | None, int | None]:
    """Split `path`, `path:L10` or `path:L10-20` into path and line numbers."""
    spec = spec.strip()
    if not spec:
        raise TaskValidationError("file reference is required")
    match = FILE_REF_RE.match(spec)
    if match is None:
        if re.search(r":L[^/\\]*$", spec):
            raise TaskValidationError(
                f"Invalid file reference '{spec}'. Use path, path:L10, or path:L10-20"
            )
        return spec, None, None
    start = int(match.group("start"))
    end = int(match.group("end")) if match.group("end") else None
    return match.group("path"), start, end


def _echo_transition(result: TransitionResult, as_json: bool) -> None:
    if as_json:
        typer.echo(render.render_transition_json(result))
    else:
        typer.echo(render.render_transition_plain(result))


@app.command("init")
def init_cmd(
    workflow: Annotated[Workflow, typer.Option("--workflow", help="Status workflow to use")] = Workflow.STANDARD,
    root: RootOption = None,
) -> None:
    """Initialize a .vtb root with a default config."""

    def _inner() -> None:
        vtb_root = _resolve_init_root(root)
        storage.ensure_layout(vtb_root)
        cfg_path = storage.config_path(vtb_root)
        typer.echo(f"Initialized vtb root: {vtb_root}")
        if storage.write_default_config_if_missing(vtb_root, workflow=workflow):
            typer.echo(f"Created config: {cfg_path} (workflow={workflow.value})")
        else:
            typer.echo(f"Using existing config: {cfg_path}")

    _run_and_handle(_inner)


@app.command("add")
def add_cmd(
    title: Annotated[str, typer.Argument(help="Task title")],
    level: Annotated[Level, typer.Option("--level", "-l")] = Level.TASK,
    description: Annotated[str | None, typer.Option("--description", "-d")] = None,
    priority: Annotated[Priority, typer.Option("--priority", "-p")] = Priority.MEDIUM,
    tag: Annotated[list[str], typer.Option("--tag", "-t", help="Can be repeated")] = [],
    parent: Annotated[str | None, typer.Option("--parent", help="Parent task id")] = None,
    depends_on: Annotated[list[str], typer.Option("--depends-on", help="Blocker task id; can be repeated")] = [],
    task_id: Annotated[str | None, typer.Option("--id", help="Explicit task id")] = None,
    as_json: JsonOption = False,
    root: RootOption = None,
) -> None:
    """Create a task."""

    def _inner() -> None:
        svc = _service(root)
        task = svc.add_task(
            title,
            level,
            task_id=task_id,
            description=description,
            priority=priority,
            tags=tag,
            parent_id=parent,
            depends_on=depends_on,
        )
        if as_json:
            typer.echo(render.render_task_detail_json(svc.show(task.id)))
        else:
            typer.echo(render.render_created_plain(task))

    _run_and_handle(_inner)


@app.command("list")
def list_cmd(
    status: Annotated[list[StoredStatus], typer.Option("--status", "-s", help="Can be repeated")] = [],
    level: Annotated[list[Level], typer.Option("--level", "-l", help="Can be repeated")] = [],
    priority: Annotated[list[Priority], typer.Option("--priority", "-p", help="Can be repeated")] = [],
    tag: Annotated[list[str], typer.Option("--tag", "-t", help="Can be repeated")] = [],
    exclude_tag: Annotated[list[str], typer.Option("--exclude-tag", help="Can be repeated")] = [],
    untagged: Annotated[bool, typer.Option("--untagged")] = False,
    include_all: Annotated[bool, typer.Option("--all", "-a", help="Include done and rejected tasks")] = False,
    root_only: Annotated[bool, typer.Option("--root-only", help="Only tasks without a parent")] = False,
    children_of: Annotated[str | None, typer.Option("--children-of", help="Only children of this task")] = None,
    search: Annotated[str | None, typer.Option("--search", help="Match title or description")] = None,
    as_json: JsonOption = False,
    root: RootOption = None,
) -> None:
    """List tasks in creation order (done and rejected hidden by default)."""

    def _inner() -> None:
        svc = _service(root)
        if children_of:
            svc.get_task(children_of)
        task_filter = TaskFilter.build(
            statuses=[Status(item.value) for item in status],
            levels=level,
            priorities=priority,
            tags=tag,
            exclude_tags=exclude_tag,
            untagged_only=untagged,
            include_terminal=include_all,
            root_only=root_only,
            parent_id=children_of,
            search=search,
        )
        tasks = svc.list_tasks(task_filter)
        statuses = svc.display_statuses(tasks)
        if as_json:
            typer.echo(render.render_task_list_json(tasks, statuses))
        elif _can_render_rich_output():
            _print_rich(render.render_task_list_rich(tasks, statuses))
        else:
            typer.echo(render.render_task_list_plain(tasks, statuses))

    _run_and_handle(_inner)


@app.command("show")
def show_cmd(
    task_id: TaskIdArgument,
    as_json: JsonOption = False,
    root: RootOption = None,
) -> None:
    """Show a detailed view of one task."""

    def _inner() -> None:
        details = _service(root).show(task_id)
        if as_json:
            typer.echo(render.render_task_detail_json(details))
        elif _can_render_rich_output():
            _print_rich(render.render_task_detail_rich(details))
        else:
            typer.echo(render.render_task_detail_plain(details))

    _run_and_handle(_inner)


@app.command("update")
def update_cmd(
    task_id: TaskIdArgument,
    title: Annotated[str | None, typer.Option("--title")] = None,
    description: Annotated[str | None, typer.Option("--description", "-d")] = None,
    priority: Annotated[Priority | None, typer.Option("--priority", "-p")] = None,
    level: Annotated[Level | None, typer.Option("--level", "-l")] = None,
    tag: Annotated[list[str], typer.Option("--tag", "-t")] = [],
    replace_tags: Annotated[bool, typer.Option("--replace-tags")] = False,
    remove_tag: Annotated[list[str], typer.Option("--remove-tag")] = [],
    parent: Annotated[str | None, typer.Option("--parent")] = None,
    clear_parent: Annotated[bool, typer.Option("--clear-parent")] = False,
    root: RootOption = None,
) -> None:
    """Update task fields, tags or position in the hierarchy."""

    def _inner() -> None:
        has_edit_flags = any(
            [
                title is not None,
                description is not None,
                priority is not None,
                level is not None,
                bool(tag),
                replace_tags,
                bool(remove_tag),
                parent is not None,
                clear_parent,
            ]
        )
        if not has_edit_flags:
            raise TaskValidationError("Nothing to update; pass at least one option")
        task = _service(root).update_task(
            task_id,
            title=title,
            description=description,
            priority=priority,
            level=level,
            tags=tag,
            replace_tags=replace_tags,
            remove_tags=remove_tag,
            parent_id=parent,
            clear_parent=clear_parent,
        )
        typer.echo(f"Updated: {task.title} ({task.id})")

    _run_and_handle(_inner)


@app.command("delete")
def delete_cmd(
    task_id: TaskIdArgument,
    cascade: Annotated[bool, typer.Option("--cascade", help="Also delete every descendant")] = False,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip the confirmation prompt")] = False,
    as_json: JsonOption = False,
    root: RootOption = None,
) -> None:
    """Delete a task; children are orphaned unless --cascade is given."""

    def _inner() -> None:
        svc = _service(root)
        task = svc.get_task(task_id)
        if cascade and not yes:
            try:
                confirmed = typer.confirm(f"Delete {task.id} and all of its descendants?", default=False)
            except (click.Abort, EOFError, KeyboardInterrupt):
                confirmed = False
            if not confirmed:
                typer.echo("Canceled.")
                raise typer.Exit(code=1)
        result = svc.delete_task(task.id, cascade=cascade)
        if as_json:
            typer.echo(render.render_delete_json(result))
        else:
            typer.echo(render.render_delete_plain(result))

    _run_and_handle(_inner)


@app.command("depend")
def depend_cmd(
    task_id: TaskIdArgument,
    blocker_id: Annotated[str, typer.Argument(help="Task that must be done first")],
    root: RootOption = None,
) -> None:
    """Make a task depend on a blocker."""

    def _inner() -> None:
        try:
            edge = _service(root).add_dependency(task_id, blocker_id)
        except DuplicateEdgeError as exc:
            typer.echo(f"Dependency already exists: {exc.dependent_id} -> {exc.blocker_id}")
            return
        typer.echo(f"Added dependency: {edge.dependent_id} depends on {edge.blocker_id}")

    _run_and_handle(_inner)


@app.command("undepend")
def undepend_cmd(
    task_id: TaskIdArgument,
    blocker_id: Annotated[str, typer.Argument(help="Blocker to remove")],
    root: RootOption = None,
) -> None:
    """Remove a dependency."""

    def _inner() -> None:
        removed = _service(root).remove_dependency(task_id, blocker_id)
        dependent, blocker = task_id.lower(), blocker_id.lower()
        if removed:
            typer.echo(f"Removed dependency: {dependent} no longer depends on {blocker}")
        else:
            typer.echo(f"No dependency from {dependent} to {blocker}")

    _run_and_handle(_inner)


@app.command("blockers")
def blockers_cmd(
    task_id: TaskIdArgument,
    depth: Annotated[int | None, typer.Option("--depth", min=1, help="Limit tree depth")] = None,
    as_json: JsonOption = False,
    root: RootOption = None,
) -> None:
    """Show the full tree of tasks blocking a task."""

    def _inner() -> None:
        svc = _service(root)
        task = svc.get_task(task_id)
        nodes = svc.blockers(task.id, max_depth=depth)
        if as_json:
            typer.echo(render.render_blocker_tree_json(task, nodes))
        elif _can_render_rich_output():
            _print_rich(render.render_blocker_tree_rich(task, nodes))
        else:
            typer.echo(render.render_blocker_tree_plain(task, nodes))

    _run_and_handle(_inner)


@app.command("path")
def path_cmd(
    from_id: Annotated[str, typer.Argument(help="Dependent task id")],
    to_id: Annotated[str, typer.Argument(help="Blocker task id")],
    as_json: JsonOption = False,
    root: RootOption = None,
) -> None:
    """Find the dependency chain from one task to another."""

    def _inner() -> None:
        edges = _service(root).find_path(from_id, to_id)
        source, target = from_id.lower(), to_id.lower()
        if as_json:
            typer.echo(render.render_path_json(source, target, edges))
        else:
            typer.echo(render.render_path_plain(source, target, edges))

    _run_and_handle(_inner)


@app.command("transition-to")
def transition_to_cmd(
    task_id: TaskIdArgument,
    target: Annotated[StoredStatus, typer.Argument(help="Target status")],
    reason: Annotated[str | None, typer.Option("--reason", "-r")] = None,
    skip_validation: Annotated[
        bool,
        typer.Option("--skip-validation", help="Bypass triage checks when moving to todo"),
    ] = False,
    as_json: JsonOption = False,
    root: RootOption = None,
) -> None:
    """Move a task to any status the workflow allows."""

    def _inner() -> None:
        result = _service(root).transition(
            task_id,
            Status(target.value),
            reason=reason,
            skip_validation=skip_validation,
        )
        _echo_transition(result, as_json)

    _run_and_handle(_inner)


@app.command("triage")
def triage_cmd(
    task_id: TaskIdArgument,
    skip_validation: Annotated[bool, typer.Option("--skip-validation")] = False,
    as_json: JsonOption = False,
    root: RootOption = None,
) -> None:
    """Move a task from backlog to todo after the triage checks."""

    def _inner() -> None:
        _echo_transition(_service(root).triage(task_id, skip_validation=skip_validation), as_json)

    _run_and_handle(_inner)


@app.command("start")
def start_cmd(task_id: TaskIdArgument, as_json: JsonOption = False, root: RootOption = None) -> None:
    """Start work on a task whose blockers are done."""

    def _inner() -> None:
        _echo_transition(_service(root).start(task_id), as_json)

    _run_and_handle(_inner)


@app.command("submit")
def submit_cmd(task_id: TaskIdArgument, as_json: JsonOption = False, root: RootOption = None) -> None:
    """Submit an in-progress task for review."""

    def _inner() -> None:
        _echo_transition(_service(root).submit(task_id), as_json)

    _run_and_handle(_inner)


@app.command("done")
def done_cmd(task_id: TaskIdArgument, as_json: JsonOption = False, root: RootOption = None) -> None:
    """Mark a task done and report the tasks it unblocks."""

    def _inner() -> None:
        _echo_transition(_service(root).complete(task_id), as_json)

    _run_and_handle(_inner)


@app.command("reject")
def reject_cmd(
    task_id: TaskIdArgument,
    reason: Annotated[str | None, typer.Option("--reason", "-r")] = None,
    as_json: JsonOption = False,
    root: RootOption = None,
) -> None:
    """Reject a task with a reason."""

    def _inner() -> None:
        _echo_transition(_service(root).reject(task_id, reason), as_json)

    _run_and_handle(_inner)


@app.command("block")
def block_cmd(
    task_id: TaskIdArgument,
    reason: Annotated[str | None, typer.Option("--reason", "-r")] = None,
    root: RootOption = None,
) -> None:
    """Flag a task as blocked (legacy workflow)."""

    def _inner() -> None:
        task = _service(root).block(task_id, reason)
        typer.echo(f"Blocked: {task.id}" + (f" ({task.blocked_reason})" if task.blocked_reason else ""))

    _run_and_handle(_inner)


@app.command("unblock")
def unblock_cmd(task_id: TaskIdArgument, root: RootOption = None) -> None:
    """Clear the blocked flag (legacy workflow)."""

    def _inner() -> None:
        task = _service(root).unblock(task_id)
        typer.echo(f"Unblocked: {task.id}")

    _run_and_handle(_inner)


@app.command("review")
def review_cmd(
    task_id: TaskIdArgument,
    set_flag: Annotated[bool, typer.Option("--set", help="Set the flag instead of toggling")] = False,
    clear_flag: Annotated[bool, typer.Option("--clear", help="Clear the flag instead of toggling")] = False,
    root: RootOption = None,
) -> None:
    """Flag a task as needing human review."""

    def _inner() -> None:
        if set_flag and clear_flag:
            raise TaskValidationError("Use either --set or --clear, not both")
        needed = True if set_flag else (False if clear_flag else None)
        task = _service(root).set_review(task_id, needed)
        action = "marked as needing review" if task.needs_human_review else "marked as not needing review"
        typer.echo(f"Task {task.id} {action}")

    _run_and_handle(_inner)


@app.command("validate")
def validate_cmd(task_id: TaskIdArgument, as_json: JsonOption = False, root: RootOption = None) -> None:
    """Check a task against the triage section rules without moving it."""

    def _inner() -> None:
        result = _service(root).validate(task_id)
        if as_json:
            typer.echo(render.render_validation_json(result))
        else:
            typer.echo(render.render_validation_plain(result))
        if not result.is_valid:
            raise typer.Exit(code=1)

    _run_and_handle(_inner)


@app.command("ready")
def ready_cmd(as_json: JsonOption = False, root: RootOption = None) -> None:
    """Show the next unblocked entry point of each hierarchy tree."""

    def _inner() -> None:
        svc = _service(root)
        result = svc.ready()
        include_triage = svc.definition.triage_entry is not None
        if as_json:
            typer.echo(render.render_ready_json(result))
        elif _can_render_rich_output():
            _print_rich(render.render_ready_rich(result, include_triage=include_triage))
        else:
            typer.echo(render.render_ready_plain(result, include_triage=include_triage))

    _run_and_handle(_inner)


@app.command("section")
def section_cmd(
    task_id: TaskIdArgument,
    section_type: Annotated[SectionType, typer.Argument(help="Section type")],
    content: Annotated[str, typer.Argument(help="Section content")],
    root: RootOption = None,
) -> None:
    """Add a section (goal, context and behaviors replace the existing one)."""

    def _inner() -> None:
        section = _service(root).add_section(task_id, section_type, content)
        typer.echo(f"Added {section.type.value} #{section.index} to {task_id.lower()}")

    _run_and_handle(_inner)


@app.command("unsection")
def unsection_cmd(
    task_id: TaskIdArgument,
    section_type: Annotated[SectionType, typer.Argument(help="Section type")],
    index: Annotated[int, typer.Argument(help="1-based index within the type", min=1)] = 1,
    root: RootOption = None,
) -> None:
    """Remove a section by type and 1-based index."""

    def _inner() -> None:
        section = _service(root).remove_section(task_id, section_type, index)
        typer.echo(f"Removed {section.type.value} #{index} from {task_id.lower()}: {section.content}")

    _run_and_handle(_inner)


@app.command("step-done")
def step_done_cmd(
    task_id: TaskIdArgument,
    index: Annotated[int, typer.Argument(help="1-based step number")],
    root: RootOption = None,
) -> None:
    """Mark a step as done."""

    def _inner() -> None:
        step = _service(root).complete_step(task_id, index)
        typer.echo(f"Marked step {step.index} as done in {task_id.lower()}: {step.content}")

    _run_and_handle(_inner)


@app.command("ref")
def ref_cmd(
    task_id: TaskIdArgument,
    file_spec: Annotated[str, typer.Argument(help="path, path:L10 or path:L10-20")],
    name: Annotated[str | None, typer.Option("--name")] = None,
    description: Annotated[str | None, typer.Option("--description", "--desc")] = None,
    root: RootOption = None,
) -> None:
    """Attach a code reference to a task."""

    def _inner() -> None:
        path, line_start, line_end = parse_file_ref(file_spec)
        position, ref = _service(root).add_reference(
            task_id,
            path,
            line_start=line_start,
            line_end=line_end,
            name=name,
            description=description,
        )
        typer.echo(f"Added reference #{position} to {task_id.lower()}: {ref.location}")
        if not Path(path).exists():
            _warn(f"File does not exist: {path}")

    _run_and_handle(_inner)


@app.command("unref")
def unref_cmd(
    task_id: TaskIdArgument,
    position: Annotated[int, typer.Argument(help="1-based reference number", min=1)],
    root: RootOption = None,
) -> None:
    """Remove a code reference by position."""

    def _inner() -> None:
        ref = _service(root).remove_reference(task_id, position)
        typer.echo(f"Removed reference #{position} from {task_id.lower()}: {ref.location}")

    _run_and_handle(_inner)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
