"""Context prompts injected into a resumed agent session.

Both builders are pure: the same task, display ID and comment list always
produce byte-identical output. Timestamps are rendered absolute (UTC) for
that reason.
"""

from __future__ import annotations

from datetime import datetime, timezone

from handback.models import Comment, Task

DEFAULT_DESCRIPTION_LIMIT = 500
DEFAULT_MINIMAL_COMMENTS = 3
DEFAULT_MINIMAL_COMMENT_CHARS = 200

_INSTRUCTIONS = (
    "Continue working on the task based on the human's response above. "
    "The conversation context should help you understand what was discussed. "
    "If you need more clarification, you can block the task again with a new question.\n"
)


def format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def format_author(comment: Comment) -> str:
    """``alice (human)`` when the author is named, else just ``human``."""
    if comment.author_id:
        return f"{comment.author_id} ({comment.author_type.value})"
    return comment.author_type.value


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def build_context_prompt(
    task: Task,
    display_id: str,
    comments: list[Comment],
    *,
    description_limit: int = DEFAULT_DESCRIPTION_LIMIT,
) -> str:
    """Full context: task metadata followed by the whole thread, oldest first."""
    lines: list[str] = [
        "## Task Context",
        "",
        f"**Task**: {display_id} - {task.title}",
        f"**Status**: {task.column.value}",
        f"**Priority**: {task.priority}",
    ]
    if task.description:
        lines.append("**Description**:")
        lines.append(_truncate(task.description, description_limit))
    lines += ["", "## Conversation Thread", ""]

    if not comments:
        lines += ["_No comments yet_", ""]
    for comment in comments:
        lines.append(
            f"[{format_author(comment)} @ {format_timestamp(comment.created)}]: {comment.content}"
        )
        lines.append("")

    lines += ["## Instructions", ""]
    return "\n".join(lines) + "\n" + _INSTRUCTIONS


def build_minimal_prompt(
    task: Task,
    display_id: str,
    comments: list[Comment],
    *,
    max_comments: int = DEFAULT_MINIMAL_COMMENTS,
    max_chars: int = DEFAULT_MINIMAL_COMMENT_CHARS,
) -> str:
    """Token-saving variant: title plus the last few comments, each truncated."""
    lines = [f"Task {display_id}: {task.title}", "", "Recent comments:"]
    if not comments:
        lines.append("_No comments yet_")
    for comment in comments[-max_comments:]:
        lines.append(f"- {format_author(comment)}: {_truncate(comment.content, max_chars)}")
    lines += ["", "Continue based on the above context."]
    return "\n".join(lines) + "\n"
