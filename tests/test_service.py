"""Tests for resume orchestration: explicit resumes, mention hand-back, blocking."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from handback.config import HandbackConfig
from handback.errors import (
    AmbiguousTaskError,
    MissingSessionError,
    TaskNotFoundError,
    TaskStateError,
    ToolLaunchError,
)
from handback.models import (
    AuthorType,
    Column,
    CommentCreated,
    ResumeMode,
    ResumeRequest,
    SessionStatus,
    TriggerAction,
    TriggerReason,
)
from handback.runner import ResumeRunner
from handback.service import ResumeService
from handback.store import TaskStore

SESSION = "550e8400-e29b-41d4-a716-446655440000"


class FakeRunner:
    """Records launches; a task counts as running once launched."""

    def __init__(self):
        self.launched: list = []

    def is_running(self, task_id: str) -> bool:
        return any(r.task_id == task_id for r, _ in self.launched)

    async def run(self, result, interactive: bool = False):
        # Yield so concurrent handlers get a chance to interleave
        await asyncio.sleep(0)
        self.launched.append((result, interactive))
        return 0 if interactive else None


@pytest_asyncio.fixture
async def store(tmp_path):
    s = TaskStore(str(tmp_path / "test_service.db"))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def service(store, runner):
    svc = ResumeService(store, HandbackConfig(), runner=runner)
    svc.attach()
    return svc


async def _blocked_task(service, mode=ResumeMode.COMMAND, *, title="Implement auth", link=True):
    board = await service.store.get_board_by_prefix("WRK")
    if board is None:
        board = await service.store.create_board("Work", "WRK", mode)
    task = await service.store.create_task(title, board.id, column=Column.IN_PROGRESS)
    if link:
        await service.sessions.link(task, "claude-code", SESSION, working_dir="/repo")
    await service.block(task.id, "JWT or sessions?", "claude")
    return await service.store.get_task(task.id)


class TestRequestResume:
    async def test_returns_command_without_running(self, service, runner):
        task = await _blocked_task(service)
        result = await service.request_resume(ResumeRequest(task_ref="WRK-1"))

        assert result.display_id == "WRK-1"
        assert result.command.startswith(f"claude --resume {SESSION} '")
        assert "JWT or sessions?" in result.prompt
        assert runner.launched == []
        fetched = await service.store.get_task(task.id)
        assert fetched.history[-1]["action"] == "blocked"

    async def test_resolves_by_title(self, service):
        await _blocked_task(service)
        result = await service.request_resume(ResumeRequest(task_ref="implement AUTH"))
        assert result.display_id == "WRK-1"

    async def test_exec_runs_and_records(self, service, runner):
        task = await _blocked_task(service)
        await service.request_resume(ResumeRequest(task_ref="WRK-1", exec=True), interactive=True)

        assert len(runner.launched) == 1
        assert runner.launched[0][1] is True

        fetched = await service.store.get_task(task.id)
        assert fetched.history[-1]["action"] == "resumed"
        # Column is left alone; only session history moves
        assert fetched.column == Column.NEED_INPUT
        record = await service.store.latest_open_session_record(task.id)
        assert record.status == SessionStatus.ACTIVE

    async def test_dry_run_records_nothing(self, service, runner):
        task = await _blocked_task(service)
        await service.request_resume(ResumeRequest(task_ref="WRK-1", exec=True, dry_run=True))
        assert runner.launched == []
        record = await service.store.latest_open_session_record(task.id)
        assert record.status == SessionStatus.PAUSED

    async def test_requires_need_input(self, service):
        board = await service.store.create_board("Work", "WRK")
        task = await service.store.create_task("x", board.id, column=Column.IN_PROGRESS)
        await service.sessions.link(task, "claude-code", SESSION, working_dir="/repo")
        with pytest.raises(TaskStateError, match="not in need_input state"):
            await service.request_resume(ResumeRequest(task_ref="WRK-1"))

    async def test_requires_session(self, service):
        await _blocked_task(service, link=False)
        with pytest.raises(MissingSessionError) as exc_info:
            await service.request_resume(ResumeRequest(task_ref="WRK-1"))
        assert exc_info.value.display_id == "WRK-1"

    async def test_not_found(self, service):
        with pytest.raises(TaskNotFoundError):
            await service.request_resume(ResumeRequest(task_ref="nothing"))

    async def test_ambiguous(self, service):
        await _blocked_task(service, title="Fix login bug")
        await _blocked_task(service, title="Fix login crash")
        with pytest.raises(AmbiguousTaskError):
            await service.request_resume(ResumeRequest(task_ref="login"))

    async def test_custom_prompt_and_minimal(self, service):
        await _blocked_task(service)
        result = await service.request_resume(ResumeRequest(task_ref="WRK-1", minimal=True))
        assert result.prompt.startswith("Task WRK-1: Implement auth")
        result = await service.request_resume(ResumeRequest(task_ref="WRK-1", prompt="go"))
        assert result.prompt == "go"


class TestMentionHandBack:
    async def test_auto_mode_executes(self, service, runner):
        task = await _blocked_task(service, ResumeMode.AUTO)
        comment = await service.store.create_comment(task.id, "@agent use JWT", author_id="alice")

        decision = service.decisions[comment.id]
        assert decision.action == TriggerAction.EXECUTE
        assert len(runner.launched) == 1
        result, interactive = runner.launched[0]
        assert interactive is False
        assert "[alice (human) @" in result.prompt

        fetched = await service.store.get_task(task.id)
        assert fetched.history[-1]["action"] == "auto_resumed"
        assert fetched.history[-1]["metadata"]["comment_id"] == comment.id
        assert fetched.column == Column.NEED_INPUT
        record = await service.store.latest_open_session_record(task.id)
        assert record.status == SessionStatus.ACTIVE

    async def test_manual_mode_surfaces(self, service, runner):
        task = await _blocked_task(service, ResumeMode.MANUAL)
        comment = await service.store.create_comment(task.id, "@agent use JWT")

        assert service.decisions[comment.id].action == TriggerAction.SURFACE
        assert runner.launched == []
        assert service.surfaced[task.id].command.startswith("claude --resume")
        record = await service.store.latest_open_session_record(task.id)
        assert record.status == SessionStatus.PAUSED

    async def test_command_mode_does_nothing(self, service, runner):
        task = await _blocked_task(service, ResumeMode.COMMAND)
        comment = await service.store.create_comment(task.id, "@agent use JWT")
        assert service.decisions[comment.id].reason == TriggerReason.MODE_COMMAND
        assert runner.launched == []
        assert task.id not in service.surfaced

    async def test_comment_without_mention(self, service, runner):
        task = await _blocked_task(service, ResumeMode.AUTO)
        comment = await service.store.create_comment(task.id, "use JWT")
        assert service.decisions[comment.id].reason == TriggerReason.NO_MENTION
        assert runner.launched == []

    async def test_block_question_does_not_trigger(self, service, runner):
        task = await _blocked_task(service, ResumeMode.AUTO)
        comments = await service.store.list_comments(task.id)
        assert service.decisions[comments[0].id].reason == TriggerReason.NOT_HUMAN
        assert runner.launched == []

    async def test_in_flight_resume_downgrades_to_surface(self, service, runner):
        task = await _blocked_task(service, ResumeMode.AUTO)
        first = await service.store.create_comment(task.id, "@agent use JWT")
        second = await service.store.create_comment(task.id, "@agent also add refresh tokens")

        assert service.decisions[first.id].action == TriggerAction.EXECUTE
        assert service.decisions[second.id].action == TriggerAction.SURFACE
        assert len(runner.launched) == 1
        assert task.id in service.surfaced

    async def test_concurrent_mentions_launch_once(self, service, runner):
        task = await _blocked_task(service, ResumeMode.AUTO)
        await asyncio.gather(
            service.store.create_comment(task.id, "@agent one"),
            service.store.create_comment(task.id, "@agent two"),
            service.store.create_comment(task.id, "@agent three"),
        )
        assert len(runner.launched) == 1

    async def test_duplicate_event_evaluated_once(self, service, runner):
        task = await _blocked_task(service, ResumeMode.AUTO)
        comment = await service.store.create_comment(task.id, "@agent use JWT")
        assert await service.router.publish(CommentCreated(comment=comment)) is False
        assert len(runner.launched) == 1

    async def test_attach_is_idempotent(self, service, runner):
        service.attach()
        task = await _blocked_task(service, ResumeMode.AUTO)
        await service.store.create_comment(task.id, "@agent go")
        assert service.router.handler_count == 1
        assert len(runner.launched) == 1

    async def test_runner_failure_is_isolated(self, store):
        runner = MagicMock(spec=ResumeRunner)
        runner.is_running.return_value = False
        runner.run = AsyncMock(side_effect=RuntimeError("spawn failed"))
        svc = ResumeService(store, runner=runner)
        svc.attach()

        task = await _blocked_task(svc, ResumeMode.AUTO)
        comment = await store.create_comment(task.id, "@agent go")
        assert await store.get_comment(comment.id) is not None
        runner.run.assert_awaited_once()


class TestSharedDatabase:
    """Two services on one database file, as separate CLI invocations are."""

    @pytest_asyncio.fixture
    async def other(self, tmp_path):
        s = TaskStore(str(tmp_path / "test_service.db"))
        await s.initialize()
        svc = ResumeService(s, HandbackConfig(), runner=FakeRunner())
        svc.attach()
        yield svc
        await s.close()

    async def test_second_mention_does_not_launch_again(self, service, runner, other):
        task = await _blocked_task(service, ResumeMode.AUTO)

        first = await service.store.create_comment(task.id, "@agent use JWT")
        second = await other.store.create_comment(task.id, "@agent also refresh tokens")

        assert service.decisions[first.id].action == TriggerAction.EXECUTE
        assert other.decisions[second.id].action == TriggerAction.SURFACE
        assert len(runner.launched) == 1
        assert other.runner.launched == []
        assert other.surfaced[task.id].command.startswith(f"claude --resume {SESSION}")

        history = (await other.store.get_task(task.id)).history
        assert [h["action"] for h in history].count("auto_resumed") == 1

    async def test_reblocked_task_can_be_resumed_again(self, service, runner, other):
        task = await _blocked_task(service, ResumeMode.AUTO)
        await service.store.create_comment(task.id, "@agent use JWT")

        task = await other.store.get_task(task.id)
        task.column = Column.IN_PROGRESS
        await other.store.update_task(task)
        await other.block(task.id, "Which issuer?", "claude")

        comment = await other.store.create_comment(task.id, "@agent use our IdP")
        assert other.decisions[comment.id].action == TriggerAction.EXECUTE
        assert len(other.runner.launched) == 1


class TestLaunchFailure:
    async def test_failed_launch_is_recorded_and_released(self, store):
        runner = MagicMock(spec=ResumeRunner)
        runner.is_running.return_value = False
        runner.run = AsyncMock(
            side_effect=ToolLaunchError("claude-code", "claude", FileNotFoundError("claude"))
        )
        svc = ResumeService(store, runner=runner)
        svc.attach()

        task = await _blocked_task(svc, ResumeMode.AUTO)
        await store.create_comment(task.id, "@agent go")

        fetched = await store.get_task(task.id)
        assert [h["action"] for h in fetched.history][-2:] == ["auto_resumed", "resume_failed"]
        assert fetched.history[-1]["metadata"]["executable"] == "claude"
        record = await store.latest_open_session_record(task.id)
        assert record.status == SessionStatus.PAUSED

        # The next mention may try again
        comment = await store.create_comment(task.id, "@agent go again")
        assert svc.decisions[comment.id].action == TriggerAction.EXECUTE
        assert runner.run.await_count == 2

    async def test_explicit_exec_failure_propagates(self, store):
        runner = MagicMock(spec=ResumeRunner)
        runner.run = AsyncMock(
            side_effect=ToolLaunchError("claude-code", "claude", FileNotFoundError("claude"))
        )
        svc = ResumeService(store, runner=runner)
        task = await _blocked_task(svc)

        with pytest.raises(ToolLaunchError):
            await svc.request_resume(ResumeRequest(task_ref="WRK-1", exec=True), interactive=True)

        fetched = await store.get_task(task.id)
        assert fetched.history[-1]["action"] == "resume_failed"
        record = await store.latest_open_session_record(task.id)
        assert record.status == SessionStatus.PAUSED


class TestPromptComments:
    async def test_comment_limit_keeps_latest_answer(self, store, runner):
        config = HandbackConfig.model_validate({"prompt": {"comment_limit": 2}})
        svc = ResumeService(store, config, runner=runner)
        svc.attach()
        task = await _blocked_task(svc)
        await store.create_comment(task.id, "old chatter")
        await store.create_comment(task.id, "use JWT with refresh tokens")

        result = await svc.request_resume(ResumeRequest(task_ref="WRK-1"))
        assert "use JWT with refresh tokens" in result.prompt
        assert "old chatter" in result.prompt
        assert "JWT or sessions?" not in result.prompt


class TestMemoryBounds:
    async def test_decisions_are_capped(self, store, runner):
        config = HandbackConfig.model_validate({"events": {"seen_limit": 2}})
        svc = ResumeService(store, config, runner=runner)
        svc.attach()
        task = await store.create_task("x")
        comments = [await store.create_comment(task.id, f"note {i}") for i in range(4)]

        assert list(svc.decisions) == [comments[2].id, comments[3].id]
        assert not svc.router.has_seen(comments[0].id)

    async def test_task_locks_are_released(self, service):
        task = await _blocked_task(service, ResumeMode.AUTO)
        await asyncio.gather(
            service.store.create_comment(task.id, "@agent one"),
            service.store.create_comment(task.id, "@agent two"),
        )
        assert service._locks == {}


class TestBlock:
    async def test_block_moves_to_need_input(self, service):
        board = await service.store.create_board("Work", "WRK")
        task = await service.store.create_task("x", board.id, column=Column.IN_PROGRESS)
        await service.sessions.link(task, "claude-code", SESSION, working_dir="/repo")

        blocked, comment = await service.block("WRK-1", "  JWT or sessions?  ", "claude")

        assert blocked.column == Column.NEED_INPUT
        assert blocked.history[-1]["action"] == "blocked"
        assert blocked.history[-1]["changes"]["column"] == {"from": "in_progress", "to": "need_input"}
        assert comment.author_type == AuthorType.AGENT
        assert comment.author_id == "claude"
        assert comment.content == "JWT or sessions?"
        assert comment.metadata["action"] == "block_question"
        record = await service.store.latest_open_session_record(task.id)
        assert record.status == SessionStatus.PAUSED

    async def test_default_agent_name(self, service):
        task = await service.store.create_task("x", column=Column.TODO)
        _, comment = await service.block(task.id, "question?")
        assert comment.author_id == "agent"

    async def test_already_blocked(self, service):
        task = await _blocked_task(service)
        with pytest.raises(TaskStateError, match="already blocked"):
            await service.block(task.id, "again?")

    async def test_done_task(self, service):
        task = await service.store.create_task("x", column=Column.DONE)
        with pytest.raises(TaskStateError, match="completed"):
            await service.block(task.id, "why?")

    async def test_empty_question(self, service):
        task = await service.store.create_task("x")
        with pytest.raises(ValueError, match="empty"):
            await service.block(task.id, "   ")
