"""Mention Trigger: decides whether a new comment hands a task back to its agent.

Auto hand-back is considered only when ALL of these hold:

1. The comment is from a human
2. The comment mentions ``@agent``
3. The task is in ``need_input``
4. The task has a linked agent session
5. The board's resume_mode permits it (manual → surface, auto → execute)

Evaluation reads state but never writes; re-evaluating the same comment
against unchanged task/board state yields the same decision.
"""

from __future__ import annotations

import logging

from handback.models import (
    AGENT_MENTION,
    AuthorType,
    Column,
    Comment,
    ResumeMode,
    TriggerAction,
    TriggerDecision,
    TriggerReason,
)
from handback.store import TaskStore

logger = logging.getLogger(__name__)

_MODE_DECISIONS: dict[ResumeMode, tuple[TriggerAction, TriggerReason]] = {
    ResumeMode.MANUAL: (TriggerAction.SURFACE, TriggerReason.MODE_MANUAL),
    ResumeMode.COMMAND: (TriggerAction.NOOP, TriggerReason.MODE_COMMAND),
    ResumeMode.AUTO: (TriggerAction.EXECUTE, TriggerReason.MODE_AUTO),
}


def has_agent_mention(comment: Comment) -> bool:
    return AGENT_MENTION in comment.mentions


class MentionTrigger:
    def __init__(self, store: TaskStore):
        self.store = store

    async def evaluate(self, comment: Comment) -> TriggerDecision:
        def decide(action: TriggerAction, reason: TriggerReason) -> TriggerDecision:
            return TriggerDecision(
                action=action, reason=reason, task_id=comment.task, comment_id=comment.id
            )

        if comment.author_type != AuthorType.HUMAN:
            return decide(TriggerAction.NOOP, TriggerReason.NOT_HUMAN)

        if not has_agent_mention(comment):
            return decide(TriggerAction.NOOP, TriggerReason.NO_MENTION)

        task = await self.store.get_task(comment.task)
        if task is None:
            raise LookupError(f"comment {comment.id} references missing task {comment.task}")

        if task.column != Column.NEED_INPUT:
            return decide(TriggerAction.NOOP, TriggerReason.TASK_NOT_BLOCKED)

        if task.agent_session is None:
            logger.info(
                "Comment %s mentions %s but task %s has no linked session",
                comment.id,
                AGENT_MENTION,
                task.id,
            )
            return decide(TriggerAction.NOOP, TriggerReason.NO_SESSION)

        board = await self.store.get_board(task.board) if task.board else None
        if board is None:
            return decide(TriggerAction.NOOP, TriggerReason.NO_BOARD)

        action, reason = _MODE_DECISIONS[board.resume_mode]
        logger.debug(
            "Mention trigger for task %s: %s (resume_mode=%s)",
            task.id,
            action.value,
            board.resume_mode.value,
        )
        return decide(action, reason)
