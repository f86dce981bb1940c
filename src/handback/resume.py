"""Resume Builder: context prompt plus tool-specific resume command."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from handback.errors import MissingSessionError
from handback.models import Comment, ResumeResult, Task
from handback.prompt import build_context_prompt, build_minimal_prompt
from handback.tools import strategy_for, validate_session_ref

if TYPE_CHECKING:
    from handback.config import HandbackConfig

logger = logging.getLogger(__name__)


class ResumeBuilder:
    """Assembles everything needed to re-attach a task's agent session.

    ``build`` performs no I/O; callers fetch the task's comments (oldest
    first) and hand them in.
    """

    def __init__(self, config: HandbackConfig | None = None):
        self.config = config

    def build_prompt(
        self,
        task: Task,
        display_id: str,
        comments: list[Comment],
        *,
        minimal: bool = False,
    ) -> str:
        prompt_cfg = self.config.prompt if self.config is not None else None
        if minimal:
            if prompt_cfg is None:
                return build_minimal_prompt(task, display_id, comments)
            return build_minimal_prompt(
                task,
                display_id,
                comments,
                max_comments=prompt_cfg.minimal_comments,
                max_chars=prompt_cfg.minimal_comment_chars,
            )
        if prompt_cfg is None:
            return build_context_prompt(task, display_id, comments)
        return build_context_prompt(
            task, display_id, comments, description_limit=prompt_cfg.description_limit
        )

    def build(
        self,
        task: Task,
        display_id: str,
        comments: list[Comment],
        *,
        minimal: bool = False,
        custom_prompt: str | None = None,
    ) -> ResumeResult:
        """Build prompt and command for ``task``.

        Raises:
            MissingSessionError: the task has no linked agent session.
            UnsupportedToolError: the session names a tool with no strategy.
            InvalidSessionRefError: the session reference is empty or too short.
        """
        session = task.agent_session
        if session is None:
            raise MissingSessionError(task.id, display_id)

        strategy = strategy_for(session.tool, self.config)
        validate_session_ref(session.tool, session.ref)

        prompt = custom_prompt or self.build_prompt(task, display_id, comments, minimal=minimal)
        command = strategy.command(session.ref, session.ref_type, prompt)
        logger.debug(
            "Built %s resume for %s (%d comments, prompt=%d chars)",
            session.tool.value,
            display_id,
            len(comments),
            len(prompt),
        )
        return ResumeResult(
            command=command,
            prompt=prompt,
            tool=session.tool,
            session_ref=session.ref,
            working_dir=session.working_dir,
            args=strategy.argv(session.ref, session.ref_type, prompt),
            task_id=task.id,
            display_id=display_id,
        )
