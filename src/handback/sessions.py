"""Session Registry: which external agent session is attached to a task.

Two independent pieces of state are kept per task:

- the live pointer (``Task.agent_session``), at most one, overwritten on relink
- the session history (``sessions`` table), append-only, one record per link

Every mutation is a single-record write. Losing atomicity between the pointer
and the history only risks a stale history status, never data loss.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone

from handback.errors import InvalidTransitionError, MissingSessionError
from handback.models import (
    AgentSession,
    AgentTool,
    RefType,
    SessionRecord,
    SessionStatus,
    Task,
    determine_ref_type,
)
from handback.store import TaskStore
from handback.tools import parse_tool, validate_session_ref

logger = logging.getLogger(__name__)


# ── Status state machine ─────────────────────────────────────────────────────

# Key: current status, Value: statuses it may move to
VALID_STATUS_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.ACTIVE: {
        SessionStatus.PAUSED,
        SessionStatus.COMPLETED,
        SessionStatus.ABANDONED,
    },
    SessionStatus.PAUSED: {
        SessionStatus.ACTIVE,
        SessionStatus.COMPLETED,
        SessionStatus.ABANDONED,
    },
    SessionStatus.COMPLETED: set(),  # Terminal
    SessionStatus.ABANDONED: set(),  # Terminal
}

TERMINAL_STATUSES = {SessionStatus.COMPLETED, SessionStatus.ABANDONED}

# Reasons a caller may give for unlinking a session
UNLINK_STATUSES = {SessionStatus.PAUSED, SessionStatus.COMPLETED, SessionStatus.ABANDONED}


def validate_transition(record: SessionRecord, new_status: SessionStatus) -> None:
    allowed = VALID_STATUS_TRANSITIONS.get(record.status, set())
    if new_status not in allowed:
        raise InvalidTransitionError(record.status.value, new_status.value, record.id)


class SessionRegistry:
    def __init__(self, store: TaskStore):
        self.store = store

    # ── Live pointer ─────────────────────────────────────────────────────

    def current(self, task: Task) -> AgentSession | None:
        return task.agent_session

    async def link(
        self,
        task: Task,
        tool: str | AgentTool,
        external_ref: str,
        ref_type: str | RefType | None = None,
        working_dir: str | None = None,
        *,
        actor: str = "agent",
    ) -> SessionRecord:
        """Attach a session to ``task``, replacing any existing pointer.

        An ``active`` record left over from a previous link is paused first so
        it stays visible in history. Returns the new history record.
        """
        tool = parse_tool(tool)
        validate_session_ref(tool, external_ref)
        ref_type = RefType(ref_type) if ref_type else determine_ref_type(external_ref)
        working_dir = os.path.abspath(working_dir or os.getcwd())

        prior = await self.store.latest_open_session_record(task.id)
        if prior is not None and prior.status == SessionStatus.ACTIVE:
            await self.transition(prior, SessionStatus.PAUSED)
            logger.info(
                "Paused prior session %s (%s) on task %s before relink",
                prior.external_ref,
                prior.tool.value,
                task.id,
            )

        task.agent_session = AgentSession(
            tool=tool,
            ref=external_ref,
            ref_type=ref_type,
            working_dir=working_dir,
        )
        task.add_history(
            "session_linked",
            actor,
            metadata={"tool": tool.value, "session_ref": external_ref},
        )
        await self.store.update_task(task)

        record = await self.record_history(task, tool, external_ref, ref_type, working_dir)
        logger.info(
            "Linked %s session %s to task %s (ref_type=%s, dir=%s)",
            tool.value,
            external_ref,
            task.id,
            ref_type.value,
            working_dir,
        )
        return record

    async def unlink(
        self,
        task: Task,
        status: str | SessionStatus = SessionStatus.ABANDONED,
        *,
        actor: str = "user",
    ) -> SessionRecord | None:
        """Clear the live pointer and close out its history record.

        History is never deleted; the most recent open record for the pointer
        moves to ``status`` (paused, completed or abandoned).
        """
        status = SessionStatus(status)
        if status not in UNLINK_STATUSES:
            raise ValueError(
                f"invalid unlink status {status.value!r}: must be one of "
                f"{sorted(s.value for s in UNLINK_STATUSES)}"
            )

        session = task.agent_session
        if session is None:
            raise MissingSessionError(task.id)

        record = await self.store.latest_open_session_record(task.id, session.ref)
        if record is not None and record.status != status:
            await self.transition(record, status)
        elif record is None:
            logger.warning("No open history record for session %s on task %s", session.ref, task.id)

        task.agent_session = None
        task.add_history(
            "session_unlinked",
            actor,
            metadata={
                "tool": session.tool.value,
                "session_ref": session.ref,
                "final_status": status.value,
            },
        )
        await self.store.update_task(task)
        logger.info("Unlinked session %s from task %s (%s)", session.ref, task.id, status.value)
        return record

    # ── History ──────────────────────────────────────────────────────────

    async def record_history(
        self,
        task: Task,
        tool: AgentTool,
        external_ref: str,
        ref_type: RefType,
        working_dir: str,
    ) -> SessionRecord:
        """Append an ``active`` history record for a linking episode."""
        return await self.store.create_session_record(
            task.id, tool, external_ref, ref_type, working_dir, SessionStatus.ACTIVE
        )

    async def history(self, task: Task) -> list[SessionRecord]:
        """All session records for ``task``, most recent first."""
        records = await self.store.list_session_records(task.id)
        return list(reversed(records))

    async def transition(self, record: SessionRecord, new_status: SessionStatus) -> SessionRecord:
        validate_transition(record, new_status)
        record.status = new_status
        if new_status in TERMINAL_STATUSES:
            record.ended_at = datetime.now(timezone.utc)
        await self.store.update_session_record(record)
        return record

    async def pause(self, task: Task) -> SessionRecord | None:
        """Pause the open record behind the live pointer (task went to need_input)."""
        session = task.agent_session
        if session is None:
            return None
        record = await self.store.latest_open_session_record(task.id, session.ref)
        if record is None or record.status != SessionStatus.ACTIVE:
            return record
        return await self.transition(record, SessionStatus.PAUSED)

    async def mark_resumed(self, task: Task) -> SessionRecord:
        """Record that the live session has been handed back to its agent.

        A paused record becomes active again. If history has no open record
        for the pointer, a fresh active record is appended.
        """
        session = task.agent_session
        if session is None:
            raise MissingSessionError(task.id)

        record = await self.store.latest_open_session_record(task.id, session.ref)
        if record is None:
            logger.warning(
                "No open history record for session %s on task %s; recording a new one",
                session.ref,
                task.id,
            )
            return await self.record_history(
                task, session.tool, session.ref, session.ref_type, session.working_dir
            )
        if record.status == SessionStatus.PAUSED:
            await self.transition(record, SessionStatus.ACTIVE)
        return record
