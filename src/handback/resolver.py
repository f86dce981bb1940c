"""Task reference resolution.

Turns a human-typed reference into zero, one or many tasks. Rules are tried
in order and resolution stops at the first rule that yields a candidate:

1. Exact identity: primary key, or a board display ID such as ``WRK-12``
2. Identity prefix (must be unique)
3. Case-insensitive title substring (must be unique)

Resolution is read-only and takes no locks; callers re-resolve rather than
cache results.
"""

from __future__ import annotations

import logging
import re

from handback.errors import AmbiguousTaskError, TaskNotFoundError
from handback.models import Resolution, Task
from handback.store import TaskStore

logger = logging.getLogger(__name__)

_DISPLAY_ID_RE = re.compile(r"^([A-Za-z0-9]{1,10})-(\d+)$")


class TaskResolver:
    def __init__(self, store: TaskStore):
        self.store = store

    async def resolve(self, reference: str) -> Resolution:
        if not reference.strip():
            return Resolution()

        # 1. Exact identity
        task = await self.store.get_task(reference)
        if task is not None:
            return Resolution(task=task)

        match = _DISPLAY_ID_RE.match(reference)
        if match:
            task = await self.store.get_task_by_display_id(match.group(1), int(match.group(2)))
            if task is not None:
                return Resolution(task=task)

        # 2. Identity prefix
        tasks = await self.store.find_tasks_by_id_prefix(reference)
        if len(tasks) == 1:
            return Resolution(task=tasks[0])
        if len(tasks) > 1:
            logger.debug("Reference %r is an ambiguous ID prefix (%d tasks)", reference, len(tasks))
            return Resolution(matches=tasks)

        # 3. Title substring
        tasks = await self.store.find_tasks_by_title(reference)
        if not tasks:
            return Resolution()
        if len(tasks) == 1:
            return Resolution(task=tasks[0])
        logger.debug("Reference %r matches %d task titles", reference, len(tasks))
        return Resolution(matches=tasks)

    async def must_resolve(self, reference: str) -> Task:
        """Resolve to exactly one task.

        Raises:
            TaskNotFoundError: no rule produced a candidate.
            AmbiguousTaskError: more than one candidate survived.
        """
        resolution = await self.resolve(reference)
        if resolution.is_ambiguous:
            raise AmbiguousTaskError(reference, resolution.matches)
        if resolution.task is None:
            raise TaskNotFoundError(reference)
        return resolution.task
