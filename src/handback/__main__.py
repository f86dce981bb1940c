"""handback CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from handback.config import CONFIG_DIRNAME, CONFIG_FILENAME, DEFAULT_CONFIG, load_config_or_default
from handback.errors import (
    AmbiguousTaskError,
    HandbackError,
    InvalidSessionRefError,
    InvalidTransitionError,
    MissingSessionError,
    TaskNotFoundError,
    TaskStateError,
    UnsupportedToolError,
)
from handback.models import (
    AgentTool,
    AuthorType,
    Column,
    ResumeMode,
    ResumeRequest,
    SessionStatus,
    TriggerAction,
    short_id,
)
from handback.service import ResumeService
from handback.store import TaskStore

logger = logging.getLogger(__name__)

DB_FILENAME = "handback.db"

# ── Exit codes ───────────────────────────────────────────────────────────────

EXIT_SUCCESS = 0
EXIT_GENERAL = 1
EXIT_INVALID_ARGS = 2
EXIT_NOT_FOUND = 3
EXIT_AMBIGUOUS = 4
EXIT_VALIDATION = 5

_STATUS_ICONS = {
    SessionStatus.ACTIVE: "[ACTIVE]",
    SessionStatus.PAUSED: "[PAUSED]",
    SessionStatus.COMPLETED: "[DONE]",
    SessionStatus.ABANDONED: "[OLD]",
}


class CommandError(Exception):
    """A command failed with a specific exit code."""

    def __init__(self, code: int, message: str, data: dict | None = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(message)


# ── Output ───────────────────────────────────────────────────────────────────


def _emit(args, payload: dict, text: str) -> None:
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


def _report_error(args, err: CommandError) -> int:
    if args.json:
        body: dict = {"code": err.code, "message": err.message}
        if err.data:
            body["data"] = err.data
        print(json.dumps({"error": body}, default=str), file=sys.stderr)
    else:
        print(f"Error: {err.message}", file=sys.stderr)
        for match in (err.data or {}).get("matches", []):
            print(f"  [{short_id(match['id'])}] {match['title']}", file=sys.stderr)
    return err.code


def _truncate_middle(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    head = (limit - 3) // 2
    tail = limit - 3 - head
    return text[:head] + "..." + text[-tail:]


def _indent(text: str, prefix: str = "  ") -> str:
    return "\n".join(prefix + line if line else line for line in text.splitlines())


def _to_command_error(exc: Exception) -> CommandError:
    """Map a domain error onto the CLI's exit code contract."""
    if isinstance(exc, AmbiguousTaskError):
        matches = [{"id": t.id, "title": t.title} for t in exc.matches]
        return CommandError(
            EXIT_AMBIGUOUS,
            f"ambiguous task reference: '{exc.reference}' matches {len(exc.matches)} tasks:",
            {"reference": exc.reference, "matches": matches},
        )
    if isinstance(exc, TaskNotFoundError):
        return CommandError(EXIT_NOT_FOUND, str(exc))
    if isinstance(exc, MissingSessionError):
        return CommandError(
            EXIT_VALIDATION,
            f"{exc}\n\nTo resume, first link a session:\n"
            f"  handback session link {exc.display_id} --tool <tool> --ref <session-id>",
        )
    if isinstance(
        exc,
        (
            TaskStateError,
            InvalidSessionRefError,
            InvalidTransitionError,
            UnsupportedToolError,
            ValueError,
        ),
    ):
        return CommandError(EXIT_VALIDATION, str(exc))
    return CommandError(EXIT_GENERAL, str(exc))


# ── Commands ─────────────────────────────────────────────────────────────────


def _init_project(root: Path) -> None:
    """Scaffold a .handback/ directory with default configuration."""
    config_dir = root / CONFIG_DIRNAME
    config_path = config_dir / CONFIG_FILENAME
    if config_path.exists():
        raise CommandError(
            EXIT_GENERAL,
            f"{config_path} already exists. Remove it first if you want to re-initialize.",
        )
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG.format(project_name=root.resolve().name))

    print(f"Initialized handback project at {config_dir}")
    print()
    print("Next steps:")
    print(f"  1. Review {config_path}")
    print("  2. Create a board: handback board add <name> <PREFIX>")


async def _board_add(args, service: ResumeService) -> None:
    mode = ResumeMode(args.resume_mode) if args.resume_mode else service.config.agent.resume_mode
    board = await service.store.create_board(args.name, args.prefix, mode)
    _emit(
        args,
        board.model_dump(mode="json"),
        f"Created board {board.name} ({board.prefix}, resume_mode={board.resume_mode.value})",
    )


async def _board_set_resume_mode(args, service: ResumeService) -> None:
    board = await service.store.get_board_by_prefix(args.prefix)
    if board is None:
        raise CommandError(EXIT_NOT_FOUND, f"no board with prefix: {args.prefix}")
    previous = board.resume_mode
    board.resume_mode = ResumeMode(args.mode)
    await service.store.update_board(board)
    _emit(
        args,
        board.model_dump(mode="json"),
        f"Board {board.prefix} resume_mode: {previous.value} -> {board.resume_mode.value}",
    )


async def _add_task(args, service: ResumeService) -> None:
    board_id = None
    if args.board:
        board = await service.store.get_board_by_prefix(args.board)
        if board is None:
            raise CommandError(EXIT_NOT_FOUND, f"no board with prefix: {args.board}")
        board_id = board.id
    task = await service.store.create_task(
        args.title,
        board_id,
        description=args.description,
        priority=args.priority,
        column=Column(args.column),
    )
    display_id = await service.display_id_for(task)
    _emit(
        args,
        {**task.model_dump(mode="json"), "display_id": display_id},
        f"Created task {display_id}: {task.title}",
    )


async def _comment(args, service: ResumeService) -> None:
    task = await service.resolver.must_resolve(args.task)
    author_type = AuthorType.AGENT if args.agent else AuthorType.HUMAN
    author_id = args.author or (
        service.config.agent.default_agent if args.agent else service.config.agent.default_author
    )
    comment = await service.store.create_comment(task.id, args.text, author_type, author_id)

    display_id = await service.display_id_for(task)
    decision = service.decisions.get(comment.id)
    payload = {**comment.model_dump(mode="json"), "display_id": display_id}
    lines = [f"Comment added to {display_id}"]

    if decision is not None:
        payload["trigger"] = decision.model_dump(mode="json")
        if decision.action == TriggerAction.SURFACE and task.id in service.surfaced:
            surfaced = service.surfaced[task.id]
            payload["resume_command"] = surfaced.command
            lines += ["", "Agent mentioned. Resume command:", "", f"  {surfaced.command}"]
        elif decision.action == TriggerAction.EXECUTE:
            lines += ["", f"Agent mentioned. Resumed session for {display_id}."]
    _emit(args, payload, "\n".join(lines))


async def _comments(args, service: ResumeService) -> None:
    task = await service.resolver.must_resolve(args.task)
    display_id = await service.display_id_for(task)
    comments = await service.store.list_comments(task.id, limit=args.limit)
    if args.json:
        _emit(args, {"task_id": task.id, "display_id": display_id,
                     "comments": [c.model_dump(mode="json") for c in comments]}, "")
        return
    if not comments:
        print(f"No comments on {display_id}")
        return
    print(f"Comments on {display_id} ({len(comments)}):\n")
    for c in comments:
        author = f"{c.author_id} ({c.author_type.value})" if c.author_id else c.author_type.value
        print(f"[{author} @ {c.created.strftime('%Y-%m-%d %H:%M')}]")
        print(_indent(c.content))
        print()


async def _block(args, service: ResumeService) -> None:
    task, comment = await service.block(args.task, args.question, args.agent)
    display_id = await service.display_id_for(task)
    _emit(
        args,
        {
            "success": True,
            "task_id": task.id,
            "display_id": display_id,
            "column": task.column.value,
            "comment_id": comment.id,
            "message": f"Task {display_id} blocked, awaiting human input",
        },
        f"Task {display_id} blocked. Awaiting human input.\nQuestion: {args.question[:100]}",
    )


async def _session_link(args, service: ResumeService) -> None:
    task = await service.resolver.must_resolve(args.task)
    record = await service.sessions.link(
        task,
        args.tool,
        args.ref,
        args.ref_type,
        args.working_dir,
        actor=args.actor,
    )
    display_id = await service.display_id_for(task)
    _emit(
        args,
        {"task_id": task.id, "display_id": display_id, "session": record.model_dump(mode="json")},
        f"Session linked to {display_id}\n"
        f"  Tool: {record.tool.value}\n"
        f"  Ref:  {_truncate_middle(record.external_ref, 40)}",
    )


async def _session_show(args, service: ResumeService) -> None:
    task = await service.resolver.must_resolve(args.task)
    display_id = await service.display_id_for(task)
    session = task.agent_session
    if session is None:
        _emit(args, {"task_id": task.id, "display_id": display_id, "session": None},
              f"No session linked to {display_id}")
        return
    _emit(
        args,
        {"task_id": task.id, "display_id": display_id, "session": session.model_dump(mode="json")},
        f"Session for {display_id}:\n\n"
        f"  Tool:        {session.tool.value}\n"
        f"  Reference:   {session.ref}\n"
        f"  Type:        {session.ref_type.value}\n"
        f"  Working Dir: {session.working_dir}\n"
        f"  Linked:      {session.linked_at.strftime('%Y-%m-%d %H:%M UTC')}\n"
        + (
            f"\n  Tip: Run 'handback resume {display_id}' to resume this session"
            if task.column == Column.NEED_INPUT
            else ""
        ),
    )


async def _session_history(args, service: ResumeService) -> None:
    task = await service.resolver.must_resolve(args.task)
    display_id = await service.display_id_for(task)
    records = await service.sessions.history(task)
    if args.json:
        _emit(args, {"task_id": task.id, "display_id": display_id,
                     "sessions": [r.model_dump(mode="json") for r in records]}, "")
        return
    if not records:
        print(f"No session history for {display_id}")
        return
    print(f"Session history for {display_id} ({len(records)} sessions):\n")
    for i, r in enumerate(records, 1):
        print(f"{i}. {_STATUS_ICONS[r.status]} {r.tool.value} ({r.status.value})")
        print(f"   Ref: {_truncate_middle(r.external_ref, 50)}")
        print(f"   Started: {r.created.strftime('%Y-%m-%d %H:%M UTC')}")
        if r.ended_at is not None:
            print(f"   Ended: {r.ended_at.strftime('%Y-%m-%d %H:%M UTC')}")
        print()


async def _session_unlink(args, service: ResumeService) -> None:
    task = await service.resolver.must_resolve(args.task)
    display_id = await service.display_id_for(task)
    if task.agent_session is None:
        raise CommandError(EXIT_VALIDATION, f"no session linked to {display_id}")
    await service.sessions.unlink(task, args.status)
    _emit(
        args,
        {"task_id": task.id, "display_id": display_id, "status": args.status},
        f"Session unlinked from {display_id} (marked as {args.status})",
    )


async def _resume(args, service: ResumeService) -> int:
    request = ResumeRequest(
        task_ref=args.task,
        exec=args.exec,
        dry_run=args.dry_run,
        minimal=args.minimal,
        prompt=args.prompt,
    )
    task, result = await service.prepare_resume(request)
    display_id = result.display_id

    if args.json:
        _emit(args, {**result.model_dump(mode="json"), "prompt_length": len(result.prompt)}, "")
        return EXIT_SUCCESS

    if request.exec:
        if request.dry_run:
            print(f"Would execute in {result.working_dir}:\n")
            print(f"  {result.command}\n")
            print(f"Prompt ({len(result.prompt)} chars):\n{_indent(result.prompt)}")
            return EXIT_SUCCESS

        print(f"Resuming session for {display_id}...")
        print(f"Tool: {result.tool.value}")
        print(f"Working directory: {result.working_dir}\n")
        sys.stdout.flush()
        returncode = await service.execute(task, result, interactive=True)
        return EXIT_SUCCESS if not returncode else EXIT_GENERAL

    print(f"Resume command for {display_id}:\n")
    print(f"  {result.command}\n")
    print(f"Working directory: {result.working_dir}")
    print(f"Prompt length: {len(result.prompt)} characters\n")
    print("To execute directly, run:")
    print(f"  handback resume {display_id} --exec")
    return EXIT_SUCCESS


async def _resolve(args, service: ResumeService) -> None:
    task = await service.resolver.must_resolve(args.task)
    display_id = await service.display_id_for(task)
    _emit(
        args,
        {**task.model_dump(mode="json"), "display_id": display_id},
        f"{display_id}  [{short_id(task.id)}]  {task.title}  ({task.column.value})",
    )


_HANDLERS = {
    ("board", "add"): _board_add,
    ("board", "set-resume-mode"): _board_set_resume_mode,
    ("add", None): _add_task,
    ("comment", None): _comment,
    ("comments", None): _comments,
    ("block", None): _block,
    ("session", "link"): _session_link,
    ("session", "show"): _session_show,
    ("session", "history"): _session_history,
    ("session", "unlink"): _session_unlink,
    ("resume", None): _resume,
    ("resolve", None): _resolve,
}


async def _run_command(args, root: Path) -> int:
    config = load_config_or_default(root / CONFIG_DIRNAME)
    data_dir = config.resolve_data_dir(root)
    data_dir.mkdir(parents=True, exist_ok=True)

    store = TaskStore(str(data_dir / DB_FILENAME), default_resume_mode=config.agent.resume_mode)
    await store.initialize()
    try:
        service = ResumeService(store, config, foreground=True)
        service.attach()
        handler = _HANDLERS[(args.command, getattr(args, "action", None))]
        code = await handler(args, service)
        return code or EXIT_SUCCESS
    finally:
        await store.close()


# ── Argument parsing ─────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="handback",
        description="handback: hand blocked kanban tasks back to the coding agent that raised them",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Project root holding .handback/ (default: current directory)",
    )
    parser.add_argument("--json", action="store_true", help="Emit JSON output")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # handback init
    subparsers.add_parser("init", help="Initialize a handback project")

    # handback board ...
    board_parser = subparsers.add_parser("board", help="Manage boards")
    board_sub = board_parser.add_subparsers(dest="action", required=True)
    board_add = board_sub.add_parser("add", help="Create a board")
    board_add.add_argument("name")
    board_add.add_argument("prefix", help="Display ID prefix, e.g. WRK")
    board_add.add_argument("--resume-mode", choices=[m.value for m in ResumeMode])
    board_mode = board_sub.add_parser("set-resume-mode", help="Change a board's resume mode")
    board_mode.add_argument("prefix")
    board_mode.add_argument("mode", choices=[m.value for m in ResumeMode])

    # handback add
    add_parser = subparsers.add_parser("add", help="Create a task")
    add_parser.add_argument("title")
    add_parser.add_argument("--board", help="Board prefix")
    add_parser.add_argument("--description", default="")
    add_parser.add_argument("--priority", default="medium")
    add_parser.add_argument(
        "--column", default=Column.TODO.value, choices=[c.value for c in Column]
    )

    # handback comment / comments
    comment_parser = subparsers.add_parser("comment", help="Add a comment to a task")
    comment_parser.add_argument("task", help="Task reference (ID, display ID or title)")
    comment_parser.add_argument("text")
    comment_parser.add_argument("--author", help="Author identifier")
    comment_parser.add_argument("--agent", action="store_true", help="Post as an agent")

    comments_parser = subparsers.add_parser("comments", help="List a task's comments")
    comments_parser.add_argument("task")
    comments_parser.add_argument("--limit", type=int, default=None)

    # handback block
    block_parser = subparsers.add_parser("block", help="Block a task on a question for a human")
    block_parser.add_argument("task")
    block_parser.add_argument("question")
    block_parser.add_argument("--agent", default=None, help="Agent identifier")

    # handback session ...
    session_parser = subparsers.add_parser("session", help="Manage linked agent sessions")
    session_sub = session_parser.add_subparsers(dest="action", required=True)
    link = session_sub.add_parser("link", help="Link an agent session to a task")
    link.add_argument("task")
    link.add_argument("--tool", required=True, choices=[t.value for t in AgentTool])
    link.add_argument("--ref", required=True, help="The tool's session ID or session file path")
    link.add_argument("--ref-type", choices=["uuid", "path"], default=None)
    link.add_argument("--working-dir", default=None, help="Default: current directory")
    link.add_argument("--actor", default="agent")
    show = session_sub.add_parser("show", help="Show the linked session")
    show.add_argument("task")
    history = session_sub.add_parser("history", help="Show every session linked to a task")
    history.add_argument("task")
    unlink = session_sub.add_parser("unlink", help="Unlink the current session")
    unlink.add_argument("task")
    unlink.add_argument(
        "--status",
        default=SessionStatus.ABANDONED.value,
        choices=[SessionStatus.ABANDONED.value, SessionStatus.COMPLETED.value, SessionStatus.PAUSED.value],
    )

    # handback resume
    resume_parser = subparsers.add_parser("resume", help="Resume a blocked task's agent session")
    resume_parser.add_argument("task")
    resume_parser.add_argument("-e", "--exec", action="store_true", help="Execute the resume command")
    resume_parser.add_argument(
        "--dry-run", action="store_true", help="Show command without executing (use with --exec)"
    )
    resume_parser.add_argument("-m", "--minimal", action="store_true", help="Use the minimal prompt")
    resume_parser.add_argument("-p", "--prompt", default=None, help="Custom prompt override")

    # handback resolve
    resolve_parser = subparsers.add_parser("resolve", help="Resolve a task reference")
    resolve_parser.add_argument("task")

    return parser


def run(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_INVALID_ARGS

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root = (args.root or Path(os.getcwd())).resolve()
    try:
        if args.command == "init":
            _init_project(root)
            return EXIT_SUCCESS
        return asyncio.run(_run_command(args, root))
    except CommandError as err:
        return _report_error(args, err)
    except (HandbackError, ValueError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        return _report_error(args, _to_command_error(exc))


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
