"""Resume Runner: launches the agent tool for a built ``ResumeResult``."""

from __future__ import annotations

import asyncio
import logging

from handback.errors import ToolLaunchError
from handback.models import ResumeResult

logger = logging.getLogger(__name__)


class ResumeRunner:
    """Spawns resume commands and tracks the ones still running.

    Interactive runs inherit the caller's stdio and are awaited to completion.
    Background runs discard output; a watcher task logs how the process ended.
    """

    def __init__(self):
        # task_id → watcher of the most recent background process
        self._watchers: dict[str, asyncio.Task] = {}

    def is_running(self, task_id: str) -> bool:
        watcher = self._watchers.get(task_id)
        return watcher is not None and not watcher.done()

    async def run(self, result: ResumeResult, interactive: bool = False) -> int | None:
        """Start ``result.args`` in ``result.working_dir``.

        Returns the exit code for interactive runs, ``None`` for background runs.

        Raises:
            ToolLaunchError: the executable or working directory is unusable.
        """
        if not result.args:
            raise ValueError("resume result has no command arguments")

        stdio = None if interactive else asyncio.subprocess.DEVNULL
        try:
            proc = await asyncio.create_subprocess_exec(
                *result.args,
                cwd=result.working_dir or None,
                stdin=stdio,
                stdout=stdio,
                stderr=stdio,
                start_new_session=not interactive,
            )
        except OSError as e:
            raise ToolLaunchError(result.tool.value, result.args[0], e) from e

        label = result.display_id or result.task_id or result.session_ref
        logger.info(
            "Started %s (pid=%s) for %s in %s",
            result.tool.value,
            proc.pid,
            label,
            result.working_dir,
        )

        if interactive:
            returncode = await proc.wait()
            self._log_exit(result, label, returncode)
            return returncode

        key = result.task_id or result.session_ref
        self._watchers[key] = asyncio.create_task(
            self._watch(proc, result, label), name=f"resume-{key}"
        )
        return None

    async def wait_all(self) -> None:
        """Wait for every background process that is still running."""
        pending = [w for w in self._watchers.values() if not w.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _watch(self, proc: asyncio.subprocess.Process, result: ResumeResult, label: str) -> None:
        try:
            returncode = await proc.wait()
        except asyncio.CancelledError:
            logger.info("Stopped watching %s (pid=%s); process left running", label, proc.pid)
            raise
        self._log_exit(result, label, returncode)

    @staticmethod
    def _log_exit(result: ResumeResult, label: str, returncode: int) -> None:
        if returncode == 0:
            logger.info("Resumed %s session for %s completed", result.tool.value, label)
        else:
            logger.warning(
                "Resumed %s session for %s failed (exit %d)", result.tool.value, label, returncode
            )
