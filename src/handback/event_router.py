"""Comment Event Router: delivers ``CommentCreated`` events to subscribers.

Two delivery paths share the same dispatch:

- ``publish`` dispatches inline and returns once every handler has run
  (used by the CLI, where the process exits right after)
- ``enqueue`` plus the consumer loop started by ``start`` (used by
  long-running embedders)

Events are deduplicated by comment ID so a replayed notification never
evaluates the same comment twice. Only the most recent ``seen_limit`` IDs
are remembered.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Awaitable, Callable

from handback.models import CommentCreated

logger = logging.getLogger(__name__)

CommentHandler = Callable[[CommentCreated], Awaitable[None]]


class CommentEventRouter:
    """Async fan-out of comment creation events to registered handlers."""

    def __init__(self, queue_size: int = 1000, seen_limit: int = 10_000):
        self.event_queue: asyncio.Queue[CommentCreated] = asyncio.Queue(maxsize=queue_size)
        self._handlers: list[CommentHandler] = []
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._seen_limit = seen_limit

        self._running = False
        self._task: asyncio.Task | None = None

    def on(self, handler: CommentHandler) -> None:
        """Register an event handler."""
        self._handlers.append(handler)

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    def has_seen(self, comment_id: str) -> bool:
        return comment_id in self._seen

    async def publish(self, event: CommentCreated) -> bool:
        """Dispatch ``event`` now. Returns False if it was a duplicate."""
        comment_id = event.comment.id
        if comment_id in self._seen:
            logger.debug("Duplicate comment event filtered: %s", comment_id)
            return False
        self._seen[comment_id] = None
        if len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)
        await self._dispatch(event)
        return True

    async def enqueue(self, event: CommentCreated) -> None:
        """Queue ``event`` for the consumer loop (blocks while the queue is full)."""
        await self.event_queue.put(event)

    async def start(self) -> None:
        """Start the event consumer loop."""
        self._running = True
        self._task = asyncio.create_task(self._consumer_loop(), name="comment-event-router")
        logger.info("Comment event router started")

    async def stop(self) -> None:
        """Stop the event consumer loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Comment event router stopped")

    async def _consumer_loop(self) -> None:
        """Main consumer loop: dequeue and publish events."""
        while self._running:
            try:
                event = await asyncio.wait_for(self.event_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                await self.publish(event)
            except Exception:
                logger.exception("Error routing comment event %s", event.comment.id)
            finally:
                self.event_queue.task_done()

    async def _dispatch(self, event: CommentCreated) -> None:
        logger.debug(
            "Dispatching comment %s on task %s to %d handler(s)",
            event.comment.id,
            event.comment.task,
            len(self._handlers),
        )
        for handler in self._handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception("Handler error for comment %s", event.comment.id)
