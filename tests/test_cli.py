"""Tests for the handback CLI."""

import json

import pytest

from handback.__main__ import (
    EXIT_AMBIGUOUS,
    EXIT_GENERAL,
    EXIT_INVALID_ARGS,
    EXIT_NOT_FOUND,
    EXIT_SUCCESS,
    EXIT_VALIDATION,
    run,
)

SESSION = "550e8400-e29b-41d4-a716-446655440000"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("HANDBACK_DATA_DIR", raising=False)
    monkeypatch.delenv("HANDBACK_RESUME_MODE", raising=False)


@pytest.fixture
def cli(tmp_path, capsys):
    """Run the CLI against a project rooted at tmp_path; returns (code, out, err)."""

    def _run(*argv: str):
        code = run(["--root", str(tmp_path), *argv])
        captured = capsys.readouterr()
        return code, captured.out, captured.err

    return _run


@pytest.fixture
def blocked_task(cli, tmp_path):
    """A WRK-1 task with a linked claude-code session, blocked on a question."""

    def _make(mode: str = "command"):
        assert cli("board", "add", "Work", "WRK", "--resume-mode", mode)[0] == EXIT_SUCCESS
        assert cli("add", "Implement auth", "--board", "WRK", "--column", "in_progress")[0] == EXIT_SUCCESS
        code, out, _ = cli(
            "session", "link", "WRK-1", "--tool", "claude-code", "--ref", SESSION,
            "--working-dir", str(tmp_path),
        )
        assert code == EXIT_SUCCESS
        assert "Session linked to WRK-1" in out
        code, out, _ = cli("block", "WRK-1", "JWT or sessions?", "--agent", "claude")
        assert code == EXIT_SUCCESS
        assert "Task WRK-1 blocked" in out

    return _make


class TestInit:
    def test_init_writes_config(self, cli, tmp_path):
        code, out, _ = cli("init")
        assert code == EXIT_SUCCESS
        assert (tmp_path / ".handback" / "config.yaml").exists()
        assert "Initialized handback project" in out

    def test_init_twice_fails(self, cli):
        cli("init")
        code, _, err = cli("init")
        assert code == EXIT_GENERAL
        assert "already exists" in err


class TestResolve:
    def test_display_id(self, cli):
        cli("board", "add", "Work", "WRK")
        cli("add", "Fix login bug", "--board", "WRK")
        code, out, _ = cli("resolve", "WRK-1")
        assert code == EXIT_SUCCESS
        assert "WRK-1" in out
        assert "Fix login bug" in out

    def test_not_found(self, cli):
        code, _, err = cli("resolve", "nope")
        assert code == EXIT_NOT_FOUND
        assert "no task found matching: nope" in err

    def test_ambiguous_lists_candidates(self, cli):
        cli("add", "Fix login bug")
        cli("add", "Fix login crash")
        code, _, err = cli("resolve", "login")
        assert code == EXIT_AMBIGUOUS
        assert "ambiguous task reference: 'login'" in err
        candidates = [line for line in err.splitlines() if line.startswith("  [")]
        assert len(candidates) == 2
        assert any(line.endswith("] Fix login bug") for line in candidates)

    def test_json_error(self, cli):
        code, _, err = cli("--json", "resolve", "nope")
        assert code == EXIT_NOT_FOUND
        payload = json.loads(err.strip().splitlines()[-1])
        assert payload["error"]["code"] == EXIT_NOT_FOUND


class TestResume:
    def test_prints_command(self, cli, blocked_task):
        blocked_task()
        code, out, _ = cli("resume", "WRK-1")
        assert code == EXIT_SUCCESS
        assert "Resume command for WRK-1:" in out
        assert f"claude --resume {SESSION} '## Task Context" in out
        assert "handback resume WRK-1 --exec" in out

    def test_json(self, cli, blocked_task):
        blocked_task()
        code, out, _ = cli("--json", "resume", "WRK-1", "--minimal")
        assert code == EXIT_SUCCESS
        payload = json.loads(out)
        assert payload["display_id"] == "WRK-1"
        assert payload["tool"] == "claude-code"
        assert payload["prompt_length"] == len(payload["prompt"])
        assert payload["prompt"].startswith("Task WRK-1: Implement auth")

    def test_dry_run(self, cli, blocked_task, tmp_path):
        blocked_task()
        code, out, _ = cli("resume", "WRK-1", "--exec", "--dry-run", "--prompt", "go on")
        assert code == EXIT_SUCCESS
        assert f"Would execute in {tmp_path}" in out
        assert f"claude --resume {SESSION} 'go on'" in out

    def test_not_blocked(self, cli):
        cli("board", "add", "Work", "WRK")
        cli("add", "Implement auth", "--board", "WRK")
        code, _, err = cli("resume", "WRK-1")
        assert code == EXIT_VALIDATION
        assert "not in need_input state" in err

    def test_without_session(self, cli):
        cli("add", "Implement auth", "--column", "in_progress")
        cli("block", "Implement auth", "question?")
        code, _, err = cli("resume", "Implement auth")
        assert code == EXIT_VALIDATION
        assert "no agent session linked" in err
        assert "handback session link" in err


class TestComments:
    def test_manual_mode_mention_surfaces_command(self, cli, blocked_task):
        blocked_task("manual")
        code, out, _ = cli("comment", "WRK-1", "@agent use JWT", "--author", "alice")
        assert code == EXIT_SUCCESS
        assert "Comment added to WRK-1" in out
        assert "Resume command:" in out
        assert f"claude --resume {SESSION}" in out

    def test_command_mode_mention_is_quiet(self, cli, blocked_task):
        blocked_task("command")
        code, out, _ = cli("comment", "WRK-1", "@agent use JWT")
        assert code == EXIT_SUCCESS
        assert "Resume command:" not in out

    def test_auto_mode_resumes_once_across_invocations(self, cli, blocked_task, tmp_path):
        cli("init")
        config_path = tmp_path / ".handback" / "config.yaml"
        config_path.write_text(
            config_path.read_text().replace("executable: claude", 'executable: "true"')
        )
        blocked_task("auto")

        code, out, _ = cli("comment", "WRK-1", "@agent use JWT")
        assert code == EXIT_SUCCESS
        assert "Resumed session for WRK-1" in out

        code, out, _ = cli("comment", "WRK-1", "@agent also add refresh tokens")
        assert code == EXIT_SUCCESS
        assert "Resumed session" not in out
        assert "Resume command:" in out
        assert f"true --resume {SESSION}" in out

    def test_list_comments(self, cli, blocked_task):
        blocked_task()
        cli("comment", "WRK-1", "use JWT", "--author", "alice")
        code, out, _ = cli("comments", "WRK-1")
        assert code == EXIT_SUCCESS
        assert "Comments on WRK-1 (2)" in out
        assert out.index("JWT or sessions?") < out.index("use JWT")
        assert "[claude (agent) @" in out


class TestSessionCommands:
    def test_show(self, cli, blocked_task):
        blocked_task()
        code, out, _ = cli("session", "show", "WRK-1")
        assert code == EXIT_SUCCESS
        assert f"Reference:   {SESSION}" in out
        assert "handback resume WRK-1" in out

    def test_history_and_unlink(self, cli, blocked_task):
        blocked_task()
        code, out, _ = cli("session", "history", "WRK-1")
        assert code == EXIT_SUCCESS
        assert "1. [PAUSED] claude-code (paused)" in out

        code, out, _ = cli("session", "unlink", "WRK-1", "--status", "completed")
        assert code == EXIT_SUCCESS
        assert "marked as completed" in out

        code, out, _ = cli("session", "history", "WRK-1")
        assert "[DONE] claude-code (completed)" in out
        assert "Ended:" in out

        code, out, _ = cli("session", "show", "WRK-1")
        assert "No session linked to WRK-1" in out

    def test_link_short_ref(self, cli):
        cli("add", "Implement auth")
        code, _, err = cli("session", "link", "Implement auth", "--tool", "codex", "--ref", "abc")
        assert code == EXIT_VALIDATION
        assert "too short" in err


class TestBoards:
    def test_set_resume_mode(self, cli):
        cli("board", "add", "Work", "WRK")
        code, out, _ = cli("board", "set-resume-mode", "wrk", "auto")
        assert code == EXIT_SUCCESS
        assert "command -> auto" in out

    def test_unknown_board(self, cli):
        code, _, err = cli("board", "set-resume-mode", "NOPE", "auto")
        assert code == EXIT_NOT_FOUND

    def test_duplicate_prefix(self, cli):
        cli("board", "add", "Work", "WRK")
        code, _, err = cli("board", "add", "Other", "WRK")
        assert code == EXIT_VALIDATION
        assert "already in use" in err


class TestArguments:
    def test_no_command(self, cli):
        code, out, _ = cli()
        assert code == EXIT_INVALID_ARGS
        assert "usage:" in out

    def test_invalid_choice(self, cli):
        with pytest.raises(SystemExit) as exc_info:
            cli("board", "add", "Work", "WRK", "--resume-mode", "sometimes")
        assert exc_info.value.code == EXIT_INVALID_ARGS
