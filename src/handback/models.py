"""Core data models for handback."""

from __future__ import annotations

import enum
import re
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator

from handback.errors import UnsupportedToolError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Task history actions that hand a blocked task back to its agent
RESUME_ACTIONS = ("resumed", "auto_resumed")


# ── Enumerations ─────────────────────────────────────────────────────────────


class Column(str, enum.Enum):
    """Kanban columns a task can sit in."""

    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    NEED_INPUT = "need_input"
    REVIEW = "review"
    DONE = "done"


class ResumeMode(str, enum.Enum):
    """Board policy for what a hand-back mention is allowed to do.

    - manual: a resume command is only ever surfaced, never executed
    - command: mentions never act; only an explicit resume request does
    - auto: a qualifying mention resumes the session end-to-end
    """

    MANUAL = "manual"
    COMMAND = "command"
    AUTO = "auto"


class AgentTool(str, enum.Enum):
    """Coding-agent backends whose sessions can be resumed."""

    OPENCODE = "opencode"
    CLAUDE_CODE = "claude-code"
    CODEX = "codex"


class RefType(str, enum.Enum):
    """How an external session reference is interpreted."""

    UUID = "uuid"
    PATH = "path"


class SessionStatus(str, enum.Enum):
    """Session history record lifecycle states."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class AuthorType(str, enum.Enum):
    HUMAN = "human"
    AGENT = "agent"


# ── Records ──────────────────────────────────────────────────────────────────


class AgentSession(BaseModel):
    """Live session pointer stored directly on a task."""

    tool: AgentTool
    ref: str = Field(description="The tool's own session identifier")
    ref_type: RefType = RefType.UUID
    working_dir: str = Field(description="Absolute path the tool process must run from")
    linked_at: datetime = Field(default_factory=utcnow)

    @field_validator("tool", mode="before")
    @classmethod
    def _known_tool(cls, v: object) -> AgentTool:
        try:
            return AgentTool(v)
        except ValueError:
            raise UnsupportedToolError(str(v), [t.value for t in AgentTool]) from None


class Board(BaseModel):
    id: str
    name: str
    prefix: str = Field(description="Upper-case prefix used for display IDs, e.g. 'WRK'")
    resume_mode: ResumeMode = ResumeMode.COMMAND
    created: datetime = Field(default_factory=utcnow)


class Task(BaseModel):
    """A kanban task (only the fields the session lifecycle needs)."""

    id: str
    board: str | None = None
    seq: int = 0
    title: str
    description: str = ""
    priority: str = "medium"
    column: Column = Column.BACKLOG
    agent_session: AgentSession | None = None
    history: list[dict] = Field(default_factory=list)
    created: datetime = Field(default_factory=utcnow)
    updated: datetime = Field(default_factory=utcnow)

    def display_id(self, board: Board | None = None) -> str:
        """Board-prefixed identifier (``WRK-123``), or the short ID without a board."""
        if board is not None and self.seq > 0:
            return f"{board.prefix}-{self.seq}"
        return short_id(self.id)

    def add_history(
        self,
        action: str,
        actor: str,
        changes: dict | None = None,
        metadata: dict | None = None,
    ) -> None:
        entry: dict = {
            "timestamp": utcnow().isoformat(),
            "action": action,
            "actor": actor,
        }
        if changes:
            entry["changes"] = changes
        if metadata:
            entry["metadata"] = metadata
        self.history.append(entry)

    @property
    def resumed_since_block(self) -> bool:
        """Whether a resume was recorded after the most recent ``blocked`` entry.

        A ``resume_failed`` entry releases the earlier resume.
        """
        for entry in reversed(self.history):
            action = entry.get("action")
            if action in ("blocked", "resume_failed"):
                return False
            if action in RESUME_ACTIONS:
                return True
        return False


class Comment(BaseModel):
    """An immutable entry in a task's conversation thread."""

    id: str
    task: str
    content: str
    author_type: AuthorType = AuthorType.HUMAN
    author_id: str | None = None
    metadata: dict = Field(default_factory=dict)
    created: datetime = Field(default_factory=utcnow)

    @property
    def mentions(self) -> list[str]:
        """Mentions recorded at creation time, or scanned from the content."""
        stored = self.metadata.get("mentions")
        if isinstance(stored, list):
            return [m for m in stored if isinstance(m, str)]
        return extract_mentions(self.content)


class SessionRecord(BaseModel):
    """One linking episode between a task and an external tool session."""

    id: str
    task: str
    tool: AgentTool
    external_ref: str
    ref_type: RefType = RefType.UUID
    working_dir: str
    status: SessionStatus = SessionStatus.ACTIVE
    created: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status in (SessionStatus.ACTIVE, SessionStatus.PAUSED)


# ── Resolution ───────────────────────────────────────────────────────────────


class Resolution(BaseModel):
    """Outcome of resolving a free-text task reference."""

    task: Task | None = None
    matches: list[Task] = Field(default_factory=list)

    @property
    def is_ambiguous(self) -> bool:
        return len(self.matches) > 1

    @property
    def is_not_found(self) -> bool:
        return self.task is None and not self.matches


# ── Mention trigger ──────────────────────────────────────────────────────────


class TriggerAction(str, enum.Enum):
    NOOP = "noop"
    SURFACE = "surface"
    EXECUTE = "execute"


class TriggerReason(str, enum.Enum):
    NO_MENTION = "no_mention"
    NOT_HUMAN = "not_human"
    TASK_NOT_BLOCKED = "task_not_blocked"
    NO_SESSION = "no_session"
    NO_BOARD = "no_board"
    MODE_MANUAL = "mode_manual"
    MODE_COMMAND = "mode_command"
    MODE_AUTO = "mode_auto"


class TriggerDecision(BaseModel):
    action: TriggerAction
    reason: TriggerReason
    task_id: str | None = None
    comment_id: str | None = None

    @property
    def is_noop(self) -> bool:
        return self.action == TriggerAction.NOOP


# ── Resume request / result ──────────────────────────────────────────────────


class ResumeRequest(BaseModel):
    """Explicit, human-initiated resume of a task's agent session."""

    task_ref: str
    exec: bool = Field(default=False, description="Execute instead of returning command text")
    dry_run: bool = False
    minimal: bool = False
    prompt: str | None = Field(default=None, description="Custom prompt overriding the built one")


class ResumeResult(BaseModel):
    command: str
    prompt: str
    tool: AgentTool
    session_ref: str
    working_dir: str
    args: list[str] = Field(default_factory=list)
    task_id: str | None = None
    display_id: str | None = None


# ── Events ───────────────────────────────────────────────────────────────────


class CommentCreated(BaseModel):
    """Published once a new comment has been committed to the store."""

    comment: Comment
    timestamp: datetime = Field(default_factory=utcnow)


# ── Helpers ──────────────────────────────────────────────────────────────────

# The reserved hand-back token.
AGENT_MENTION = "@agent"

_MENTION_RE = re.compile(r"@(\w+)")


def extract_mentions(text: str) -> list[str]:
    """Return the ``@word`` tokens in ``text``, deduplicated, in first-seen order.

    Matching is case-sensitive and ignores surrounding punctuation, so
    ``"(@agent)"`` and ``"ping @agent."`` both yield ``["@agent"]``.
    """
    if not text:
        return []
    seen: set[str] = set()
    mentions: list[str] = []
    for match in _MENTION_RE.finditer(text):
        mention = f"@{match.group(1)}"
        if mention not in seen:
            seen.add(mention)
            mentions.append(mention)
    return mentions


def determine_ref_type(ref: str) -> RefType:
    """Guess whether a session reference is a filesystem path or an opaque ID."""
    if ref.startswith(("/", ".")) or "/" in ref or "\\" in ref:
        return RefType.PATH
    return RefType.UUID


def short_id(task_id: str) -> str:
    return task_id[:8]
