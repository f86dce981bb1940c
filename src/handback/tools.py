"""Per-tool resume strategies.

Each supported coding-agent backend is one ToolStrategy subclass that knows
how to turn a session reference and a prompt into the argv that re-attaches
the tool to that session. Adding a backend means adding an AgentTool member,
a strategy class and a TOOL_STRATEGIES entry; the other strategies are
untouched.
"""

from __future__ import annotations

import logging
import re
import shlex
from abc import ABC, abstractmethod
from pathlib import PurePath
from typing import TYPE_CHECKING, ClassVar

from handback.errors import InvalidSessionRefError, UnsupportedToolError
from handback.models import AgentTool, RefType

if TYPE_CHECKING:
    from handback.config import HandbackConfig

logger = logging.getLogger(__name__)

MIN_SESSION_REF_LENGTH = 8

_UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)

# Placeholder for the prompt inside a ToolStrategy.template
PROMPT = object()


def shell_quote(s: str) -> str:
    """Wrap ``s`` in single quotes, escaping embedded single quotes as ``'\\''``."""
    return "'" + s.replace("'", "'\\''") + "'"


class ToolStrategy(ABC):
    """How one backend resumes an existing session."""

    tool: ClassVar[AgentTool]
    default_executable: ClassVar[str]

    def __init__(self, executable: str | None = None):
        self.executable = executable or self.default_executable

    def session_id(self, session_ref: str, ref_type: RefType) -> str:
        """The identifier the tool's CLI expects for ``session_ref``."""
        return session_ref

    @abstractmethod
    def template(self, session_id: str) -> list[str | object]:
        """argv with PROMPT standing in for the prompt text."""

    def argv(self, session_ref: str, ref_type: RefType, prompt: str) -> list[str]:
        template = self.template(self.session_id(session_ref, ref_type))
        return [prompt if part is PROMPT else str(part) for part in template]

    def command(self, session_ref: str, ref_type: RefType, prompt: str) -> str:
        """Shell-ready rendering of argv; the prompt is always single-quoted."""
        template = self.template(self.session_id(session_ref, ref_type))
        return " ".join(
            shell_quote(prompt) if part is PROMPT else shlex.quote(str(part)) for part in template
        )


class ClaudeCodeTool(ToolStrategy):
    """``claude --resume <session-id> '<prompt>'``"""

    tool = AgentTool.CLAUDE_CODE
    default_executable = "claude"

    def template(self, session_id: str) -> list[str | object]:
        return [self.executable, "--resume", session_id, PROMPT]


class OpenCodeTool(ToolStrategy):
    """``opencode run '<prompt>' --session <session-id>``

    OpenCode keeps each session in ``<session-id>.json``, so a path reference
    resolves to the file stem.
    """

    tool = AgentTool.OPENCODE
    default_executable = "opencode"

    def session_id(self, session_ref: str, ref_type: RefType) -> str:
        if ref_type == RefType.PATH:
            return PurePath(session_ref).stem
        return session_ref

    def template(self, session_id: str) -> list[str | object]:
        return [self.executable, "run", PROMPT, "--session", session_id]


class CodexTool(ToolStrategy):
    """``codex exec resume <session-id> '<prompt>'``

    Codex rollout files are named ``rollout-<timestamp>-<uuid>.jsonl``; a path
    reference is looked up by the UUID embedded in the filename, falling back
    to the path itself when none is present.
    """

    tool = AgentTool.CODEX
    default_executable = "codex"

    def session_id(self, session_ref: str, ref_type: RefType) -> str:
        if ref_type == RefType.PATH:
            match = _UUID_RE.search(PurePath(session_ref).name)
            if match:
                return match.group(0)
            logger.warning("No session UUID in codex rollout path %s, passing path", session_ref)
        return session_ref

    def template(self, session_id: str) -> list[str | object]:
        return [self.executable, "exec", "resume", session_id, PROMPT]


TOOL_STRATEGIES: dict[AgentTool, type[ToolStrategy]] = {
    AgentTool.CLAUDE_CODE: ClaudeCodeTool,
    AgentTool.OPENCODE: OpenCodeTool,
    AgentTool.CODEX: CodexTool,
}

_unhandled = set(AgentTool) - set(TOOL_STRATEGIES)
if _unhandled:
    raise RuntimeError(f"No resume strategy for tools: {sorted(t.value for t in _unhandled)}")


def parse_tool(value: str | AgentTool) -> AgentTool:
    """Coerce a tool name, raising UnsupportedToolError for unknown names."""
    try:
        return AgentTool(value)
    except ValueError:
        raise UnsupportedToolError(str(value), [t.value for t in AgentTool]) from None


def strategy_for(tool: str | AgentTool, config: HandbackConfig | None = None) -> ToolStrategy:
    tool = parse_tool(tool)
    executable = config.executable_for(tool) if config is not None else None
    return TOOL_STRATEGIES[tool](executable)


def validate_session_ref(tool: str | AgentTool, ref: str) -> None:
    """Reject empty or implausibly short session references."""
    tool = parse_tool(tool)
    if not ref:
        raise InvalidSessionRefError(tool.value, ref, "session reference is empty")
    if len(ref) < MIN_SESSION_REF_LENGTH:
        raise InvalidSessionRefError(
            tool.value,
            ref,
            f"session reference seems too short: {ref!r} "
            f"(minimum {MIN_SESSION_REF_LENGTH} characters)",
        )
