from __future__ import annotations

import argparse
import sys
from datetime import datetime
from typing import Any

import click
import typer
from rich.console import Console

from . import __version__
from .cli_shared import (
    TASKBOARD_ENDPOINT,
    TASKBOARD_ID_TOKEN,
    GlobalOpts,
    OpError,
    StaleTaskConflict,
    UsageError,
    _print_json,
    _taskboard_request,
    resolve_global_opts,
)

STATUSES = ("Todo", "In Progress", "Done")
PRIORITIES = ("Low", "Medium", "High")

app = typer.Typer(
    name="taskboard",
    help="Work with the live taskboard from a terminal.",
    no_args_is_help=True,
    add_completion=False,
)

_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"taskboard {__version__}")
        raise typer.Exit(code=0)


def _cell(value: Any) -> str:
    text = str(value or "").strip()
    if not text:
        return "-"
    return text


def _short_timestamp(value: Any) -> str:
    raw = str(value or "").strip()
    if not raw:
        return "-"
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return raw
    return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _assignee(task: dict[str, Any]) -> str:
    assigned = task.get("assignedTo")
    if isinstance(assigned, dict):
        return _cell(assigned.get("username") or assigned.get("id"))
    return "-"


def _print_table(*, headers: list[str], rows: list[list[str]], empty_message: str) -> None:
    if not rows:
        sys.stdout.write(f"{empty_message}\n")
        return
    widths: list[int] = [len(h) for h in headers]
    for row in rows:
        for i, val in enumerate(row):
            widths[i] = max(widths[i], len(val))
    header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    divider_line = "  ".join("-" * widths[i] for i in range(len(headers)))
    sys.stdout.write(header_line.rstrip() + "\n")
    sys.stdout.write(divider_line + "\n")
    for row in rows:
        sys.stdout.write("  ".join(row[i].ljust(widths[i]) for i in range(len(headers))).rstrip() + "\n")


def _print_task_line(verb: str, task: dict[str, Any]) -> None:
    sys.stdout.write(
        f'{verb} task {_cell(task.get("id"))} "{_cell(task.get("title"))}" '
        f"status={_cell(task.get('status'))} priority={_cell(task.get('priority'))} "
        f"assignee={_assignee(task)}\n"
    )


def _wants_json(args: argparse.Namespace) -> bool:
    return bool(getattr(args, "json_output", False))


def _choice(value: str | None, allowed: tuple[str, ...], name: str) -> str | None:
    if value is None:
        return None
    for option in allowed:
        if value.strip().lower() == option.lower():
            return option
    raise UsageError(f"invalid {name}: {value!r} (expected one of: {', '.join(allowed)})")


def _find_task(g: GlobalOpts, task_id: str) -> dict[str, Any]:
    out = _taskboard_request(method="GET", g=g, path="/tasks")
    for item in out.get("items") or []:
        if isinstance(item, dict) and str(item.get("id") or "") == task_id:
            return item
    raise OpError(f"task not found: {task_id}")


def cmd_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _taskboard_request(method="GET", g=g, path="/tasks")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    items = [i for i in (out.get("items") or []) if isinstance(i, dict)]
    status_filter = _choice(args.status, STATUSES, "status")
    if status_filter:
        items = [i for i in items if i.get("status") == status_filter]
    rows = [
        [
            _cell(i.get("id")),
            _cell(i.get("status")),
            _cell(i.get("priority")),
            _assignee(i),
            _short_timestamp(i.get("lastModifiedAt")),
            _cell(i.get("title")),
        ]
        for i in items
    ]
    _print_table(
        headers=["id", "status", "priority", "assignee", "updated", "title"],
        rows=rows,
        empty_message="No tasks.",
    )
    return 0


def cmd_add(args: argparse.Namespace, g: GlobalOpts) -> int:
    title = str(args.title or "").strip()
    if not title:
        raise UsageError("task title is required")
    body: dict[str, Any] = {"title": title}
    if args.description:
        body["description"] = args.description
    status = _choice(args.status, STATUSES, "status")
    if status:
        body["status"] = status
    priority = _choice(args.priority, PRIORITIES, "priority")
    if priority:
        body["priority"] = priority
    if args.assign_to:
        body["assignedTo"] = args.assign_to
    out = _taskboard_request(method="POST", g=g, path="/tasks", body_obj=body)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    _print_task_line("created", out)
    return 0


def cmd_update(args: argparse.Namespace, g: GlobalOpts) -> int:
    current = _find_task(g, args.task_id)
    assigned = current.get("assignedTo")
    body: dict[str, Any] = {
        "title": current.get("title"),
        "description": current.get("description") or "",
        "status": current.get("status"),
        "priority": current.get("priority"),
        "assignedTo": assigned.get("id") if isinstance(assigned, dict) else None,
        # Watermark for the server-side stale check.
        "lastModifiedAt": current.get("lastModifiedAt"),
    }
    if args.title is not None:
        body["title"] = args.title
    if args.description is not None:
        body["description"] = args.description
    status = _choice(args.status, STATUSES, "status")
    if status:
        body["status"] = status
    priority = _choice(args.priority, PRIORITIES, "priority")
    if priority:
        body["priority"] = priority
    if args.unassign:
        body["assignedTo"] = None
    elif args.assign_to:
        body["assignedTo"] = args.assign_to

    out = _taskboard_request(method="PUT", g=g, path=f"/tasks/{args.task_id}", body_obj=body)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    _print_task_line("updated", out)
    return 0


def cmd_move(args: argparse.Namespace, g: GlobalOpts) -> int:
    status = _choice(args.status, STATUSES, "status")
    body: dict[str, Any] = {"newStatus": status}
    if args.watermark:
        body["lastModifiedAt"] = args.watermark
    out = _taskboard_request(method="PUT", g=g, path=f"/tasks/{args.task_id}/drag-drop", body_obj=body)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    _print_task_line("moved", out)
    return 0


def cmd_smart_assign(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _taskboard_request(method="POST", g=g, path=f"/tasks/{args.task_id}/smart-assign")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    _print_task_line("assigned", out)
    return 0


def cmd_delete(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _taskboard_request(method="DELETE", g=g, path=f"/tasks/{args.task_id}")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    sys.stdout.write(f"deleted task {args.task_id}\n")
    return 0


def cmd_actions(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _taskboard_request(method="GET", g=g, path="/actions")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    rows = [
        [
            _short_timestamp(i.get("timestamp")),
            _cell(i.get("username")),
            _cell(i.get("type")),
            _cell(i.get("details")),
        ]
        for i in (out.get("items") or [])
        if isinstance(i, dict)
    ]
    _print_table(
        headers=["when", "who", "type", "details"],
        rows=rows,
        empty_message="No activity yet.",
    )
    return 0


def _print_conflict(e: StaleTaskConflict) -> None:
    _rich_error(f"{e} (last modified by {e.last_modified_by})")
    server = e.server_version
    _ERROR_CONSOLE.print(
        f"server version: title={_cell(server.get('title'))} status={_cell(server.get('status'))} "
        f"priority={_cell(server.get('priority'))} assignee={_assignee(server)} "
        f"lastModifiedAt={_cell(server.get('lastModifiedAt'))}"
    )


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    obj = ctx.obj if isinstance(ctx.obj, dict) else {}
    args = argparse.Namespace(json_output=bool(obj.get("json_output")), **kwargs)
    try:
        g = resolve_global_opts(
            endpoint=obj.get("endpoint"),
            id_token=obj.get("id_token"),
            pretty=bool(obj.get("pretty")),
        )
        code = int(func(args, g))
    except UsageError as e:
        _rich_error(str(e))
        raise typer.Exit(code=2)
    except StaleTaskConflict as e:
        _print_conflict(e)
        raise typer.Exit(code=3)
    except OpError as e:
        _rich_error(str(e))
        raise typer.Exit(code=1)

    if code:
        raise typer.Exit(code=code)


@app.callback()
def app_callback(
    ctx: typer.Context,
    endpoint: str | None = typer.Option(
        None,
        "--endpoint",
        help=f"REST API base URL (env: {TASKBOARD_ENDPOINT})",
    ),
    id_token: str | None = typer.Option(
        None,
        "--id-token",
        help=f"Cognito ID token (env: {TASKBOARD_ID_TOKEN})",
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit raw JSON API responses"),
    pretty: bool = typer.Option(False, "--pretty", help="Indent JSON output"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    ctx.obj = {
        "endpoint": endpoint,
        "id_token": id_token,
        "json_output": json_output,
        "pretty": pretty,
    }


@app.command("list", help="List all tasks on the board.")
def list_tasks(
    ctx: typer.Context,
    status: str | None = typer.Option(None, "--status", help="Only show one column: Todo|In Progress|Done"),
) -> None:
    _invoke(ctx, cmd_list, status=status)


@app.command("add", help="Create a task.")
def add_task(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Unique task title"),
    description: str | None = typer.Option(None, "--description", "-d", help="Free-text description"),
    status: str | None = typer.Option(None, "--status", help="Todo|In Progress|Done (default Todo)"),
    priority: str | None = typer.Option(None, "--priority", help="Low|Medium|High (default Medium)"),
    assign_to: str | None = typer.Option(None, "--assign-to", help="User id to assign"),
) -> None:
    _invoke(
        ctx,
        cmd_add,
        title=title,
        description=description,
        status=status,
        priority=priority,
        assign_to=assign_to,
    )


@app.command("update", help="Edit a task; unspecified fields keep their current values.")
def update_task(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
    title: str | None = typer.Option(None, "--title", help="New title"),
    description: str | None = typer.Option(None, "--description", "-d", help="New description"),
    status: str | None = typer.Option(None, "--status", help="Todo|In Progress|Done"),
    priority: str | None = typer.Option(None, "--priority", help="Low|Medium|High"),
    assign_to: str | None = typer.Option(None, "--assign-to", help="User id to assign"),
    unassign: bool = typer.Option(False, "--unassign", help="Clear the assignee"),
) -> None:
    _invoke(
        ctx,
        cmd_update,
        task_id=task_id,
        title=title,
        description=description,
        status=status,
        priority=priority,
        assign_to=assign_to,
        unassign=unassign,
    )


@app.command("move", help="Move a task to another column.")
def move_task(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
    status: str = typer.Argument(..., help="Todo|In Progress|Done"),
    watermark: str | None = typer.Option(
        None,
        "--if-unmodified-since",
        help="Reject the move if the task changed after this lastModifiedAt",
    ),
) -> None:
    _invoke(ctx, cmd_move, task_id=task_id, status=status, watermark=watermark)


@app.command("smart-assign", help="Assign a task to the user with the fewest active tasks.")
def smart_assign(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
) -> None:
    _invoke(ctx, cmd_smart_assign, task_id=task_id)


@app.command("delete", help="Delete a task.")
def delete_task(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
) -> None:
    _invoke(ctx, cmd_delete, task_id=task_id)


@app.command("actions", help="Show the 20 most recent board actions.")
def actions(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_actions)


def main(argv: list[str] | None = None) -> int:
    try:
        result = app(args=argv, prog_name="taskboard", standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        _rich_error(e.format_message())
        return int(e.exit_code)
    except Exception as e:
        # Typer releases that bundle their own click raise a parallel exception hierarchy.
        exit_code = getattr(e, "exit_code", None)
        format_message = getattr(e, "format_message", None)
        if not isinstance(exit_code, int) or not callable(format_message):
            raise
        _rich_error(format_message())
        return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
