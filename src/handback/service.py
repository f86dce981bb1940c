"""Resume Service: wires resolution, sessions, the mention trigger and the runner.

Two ways a blocked task gets handed back to its agent:

- a human asks for it explicitly (``request_resume``, the CLI ``resume`` command)
- a human comment mentioning ``@agent`` on a board whose resume_mode allows it
  (``handle_comment_created``, fed by the comment event router)

Trigger evaluation and the action that follows are serialized per task, so
two near-simultaneous mentions never launch two agent processes. Across
processes sharing one database, a mention-driven launch first claims the
resume in the store; a task already resumed since its last block only gets
its resume command surfaced.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict

from handback.config import HandbackConfig
from handback.errors import MissingSessionError, TaskStateError, ToolLaunchError
from handback.event_router import CommentEventRouter
from handback.models import (
    AuthorType,
    Column,
    Comment,
    CommentCreated,
    ResumeRequest,
    ResumeResult,
    Task,
    TriggerAction,
    TriggerDecision,
)
from handback.resolver import TaskResolver
from handback.resume import ResumeBuilder
from handback.runner import ResumeRunner
from handback.sessions import SessionRegistry
from handback.store import TaskStore
from handback.trigger import MentionTrigger

logger = logging.getLogger(__name__)


class ResumeService:
    def __init__(
        self,
        store: TaskStore,
        config: HandbackConfig | None = None,
        runner: ResumeRunner | None = None,
        router: CommentEventRouter | None = None,
        *,
        foreground: bool = False,
    ):
        self.store = store
        self.config = config or HandbackConfig()
        self.runner = runner or ResumeRunner()
        self.router = router or CommentEventRouter(
            queue_size=self.config.events.queue_size,
            seen_limit=self.config.events.seen_limit,
        )
        # Run mention-triggered resumes attached to the caller's terminal (CLI use)
        self.foreground = foreground

        self.resolver = TaskResolver(store)
        self.sessions = SessionRegistry(store)
        self.trigger = MentionTrigger(store)
        self.builder = ResumeBuilder(self.config)

        # task_id → resume command surfaced by a manual-mode mention
        self.surfaced: OrderedDict[str, ResumeResult] = OrderedDict()
        # comment_id → decision the mention trigger reached for it
        self.decisions: OrderedDict[str, TriggerDecision] = OrderedDict()
        self._memory_limit = self.config.events.seen_limit

        # task_id → (lock, number of handlers holding or waiting on it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}
        self._attached = False

    def attach(self) -> None:
        """Route newly committed comments through the mention trigger."""
        if self._attached:
            return
        self.store.on_comment_created(self._publish_comment)
        self.router.on(self.handle_comment_created)
        self._attached = True

    async def _publish_comment(self, comment: Comment) -> None:
        await self.router.publish(CommentCreated(comment=comment))

    @contextlib.asynccontextmanager
    async def _task_lock(self, task_id: str):
        """Hold the per-task lock; the entry is dropped once nobody needs it."""
        lock, users = self._locks.get(task_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[task_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[task_id]
            if users == 1:
                del self._locks[task_id]
            else:
                self._locks[task_id] = (lock, users - 1)

    def _remember(self, mapping: OrderedDict, key: str, value) -> None:
        mapping[key] = value
        mapping.move_to_end(key)
        while len(mapping) > self._memory_limit:
            mapping.popitem(last=False)

    # ── Helpers ──────────────────────────────────────────────────────────

    async def display_id_for(self, task: Task) -> str:
        board = await self.store.get_board(task.board) if task.board else None
        return task.display_id(board)

    async def fetch_comments(self, task: Task) -> list[Comment]:
        """The task's thread, oldest first."""
        return await self.store.list_comments(task.id, limit=self.config.prompt.comment_limit)

    async def _build(self, task: Task, *, minimal: bool = False, prompt: str | None = None) -> ResumeResult:
        display_id = await self.display_id_for(task)
        comments = await self.fetch_comments(task)
        return self.builder.build(task, display_id, comments, minimal=minimal, custom_prompt=prompt)

    # ── Explicit resume ──────────────────────────────────────────────────

    async def prepare_resume(self, request: ResumeRequest) -> tuple[Task, ResumeResult]:
        """Resolve and validate the task, then build its resume command.

        Raises:
            TaskNotFoundError / AmbiguousTaskError: the reference did not resolve.
            TaskStateError: the task is not waiting in need_input.
            MissingSessionError: no agent session is linked.
        """
        task = await self.resolver.must_resolve(request.task_ref)
        display_id = await self.display_id_for(task)

        if task.column != Column.NEED_INPUT:
            raise TaskStateError(
                task.id,
                task.column.value,
                f"task {display_id} is not in need_input state (current: {task.column.value})",
            )
        if task.agent_session is None:
            raise MissingSessionError(task.id, display_id)

        result = await self._build(task, minimal=request.minimal, prompt=request.prompt)
        return task, result

    async def execute(
        self,
        task: Task,
        result: ResumeResult,
        *,
        interactive: bool = False,
        action: str = "resumed",
        actor: str = "user",
        metadata: dict | None = None,
    ) -> int | None:
        """Record the hand-back in task and session history, then launch the tool."""
        task.add_history(
            action,
            actor,
            metadata={"tool": result.tool.value, "session_ref": result.session_ref, **(metadata or {})},
        )
        await self.store.update_task(task)
        return await self._launch(task, result, interactive=interactive)

    async def _launch(self, task: Task, result: ResumeResult, *, interactive: bool) -> int | None:
        await self.sessions.mark_resumed(task)
        self.surfaced.pop(task.id, None)

        logger.info("Resuming %s session for %s", result.tool.value, result.display_id)
        try:
            return await self.runner.run(result, interactive=interactive)
        except ToolLaunchError as exc:
            # No process started; a later hand-back must be able to claim the task again
            task.add_history(
                "resume_failed",
                "system",
                metadata={"tool": result.tool.value, "executable": exc.executable, "error": str(exc.cause)},
            )
            await self.store.update_task(task)
            await self.sessions.pause(task)
            logger.warning("Resume of %s failed to launch: %s", result.display_id, exc)
            raise

    async def request_resume(self, request: ResumeRequest, *, interactive: bool = False) -> ResumeResult:
        """Build the resume for ``request.task_ref`` and, with ``exec``, run it.

        ``dry_run`` builds everything but records and runs nothing.
        """
        task, result = await self.prepare_resume(request)
        if request.exec and not request.dry_run:
            await self.execute(task, result, interactive=interactive)
        return result

    # ── Mention-driven resume ────────────────────────────────────────────

    async def handle_comment_created(self, event: CommentCreated) -> TriggerDecision:
        comment = event.comment
        async with self._task_lock(comment.task):
            decision = await self.trigger.evaluate(comment)
            self._remember(self.decisions, comment.id, decision)
            if decision.is_noop:
                logger.debug(
                    "No hand-back for comment %s: %s", comment.id, decision.reason.value
                )
                return decision

            task = await self.store.get_task(comment.task)
            if task is None:
                raise LookupError(f"task {comment.task} disappeared during trigger evaluation")

            if decision.action == TriggerAction.EXECUTE:
                claimed = None
                if self.runner.is_running(task.id):
                    logger.info(
                        "Resume already in flight for task %s; surfacing instead of executing",
                        task.id,
                    )
                else:
                    claimed = await self.store.claim_resume(
                        task.id,
                        "auto_resumed",
                        "system",
                        metadata={
                            "tool": task.agent_session.tool.value,
                            "session_ref": task.agent_session.ref,
                            "comment_id": comment.id,
                        },
                    )
                    if claimed is None:
                        logger.info(
                            "Task %s already resumed since it was blocked; surfacing instead of executing",
                            task.id,
                        )
                if claimed is None:
                    decision = decision.model_copy(update={"action": TriggerAction.SURFACE})
                    self._remember(self.decisions, comment.id, decision)
                else:
                    task = claimed

            result = await self._build(task)

            if decision.action == TriggerAction.SURFACE:
                self._remember(self.surfaced, task.id, result)
                logger.info("Resume available for %s: %s", result.display_id, result.command)
                return decision

            await self._launch(task, result, interactive=self.foreground)
            return decision

    # ── Blocking ─────────────────────────────────────────────────────────

    async def block(self, task_ref: str, question: str, agent_name: str | None = None) -> tuple[Task, Comment]:
        """Move a task to need_input and post the agent's question as a comment."""
        question = question.strip()
        if not question:
            raise ValueError("question cannot be empty")
        agent_name = agent_name or self.config.agent.default_agent

        task = await self.resolver.must_resolve(task_ref)
        if task.column == Column.NEED_INPUT:
            raise TaskStateError(
                task.id,
                task.column.value,
                f"task {await self.display_id_for(task)} is already blocked (in need_input)",
            )
        if task.column == Column.DONE:
            raise TaskStateError(task.id, task.column.value, "cannot block a completed task")

        previous = task.column
        task.column = Column.NEED_INPUT
        task.add_history(
            "blocked",
            agent_name,
            changes={"column": {"from": previous.value, "to": Column.NEED_INPUT.value}},
            metadata={"reason": question},
        )
        await self.store.update_task(task)

        comment = await self.store.create_comment(
            task.id,
            question,
            author_type=AuthorType.AGENT,
            author_id=agent_name,
            metadata={"action": "block_question"},
        )
        await self.sessions.pause(task)
        logger.info("Task %s blocked by %s", task.id, agent_name)
        return task, comment
