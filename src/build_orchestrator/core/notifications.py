"""Routing agent annotations and reminders to the chat sink."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from build_orchestrator.db.models import CLARIFY, FAILED, PROGRESS, SUCCESS, Notification, Project

logger = logging.getLogger(__name__)

Sink = Callable[[str], Awaitable[None]]

REPLY_TOOL = "build_reply"


def project_label(project: Project | None, project_id: str) -> str:
    return f'"{project.name}" ({project_id})' if project else project_id


def format_notification(project: Project | None, project_id: str, notification: Notification) -> str:
    """Render one annotation as an outbound chat message."""
    label = project_label(project, project_id)
    if notification.status == CLARIFY:
        body = (
            f"needs input: {notification.content}\n"
            f'Use the {REPLY_TOOL} tool with project_id="{project_id}" to respond.'
        )
    elif notification.status == PROGRESS:
        phase = f" [{notification.phase}]" if notification.phase else ""
        body = f"progress{phase}: {notification.content}"
    elif notification.status == SUCCESS:
        body = f"completed successfully: {notification.content}"
    elif notification.status == FAILED:
        body = f"failed: {notification.content}"
    else:
        body = f"{notification.status}: {notification.content}"
    return f"<system>BUILDER {label} {body}</system>"


def format_reminder(waiting: list[Project]) -> str:
    """Render the batched reminder for projects waiting on a reply."""
    lines = []
    for p in waiting:
        summary = p.last_notification.content[:100] if p.last_notification else ""
        lines.append(f'- "{p.name}" ({p.id}): {summary or "awaiting response"}')
    return (
        f"<system>REMINDER: {len(waiting)} builder project(s) waiting for input:\n"
        + "\n".join(lines)
        + f"\nUse the {REPLY_TOOL} tool to respond.</system>"
    )


class LogSink:
    """Fallback sink used when no chat integration is configured."""

    async def __call__(self, text: str):
        logger.info("Notification: %s", text)


class NotificationRouter:
    """Serialises outbound messages so each project's updates keep stream order.

    Messages are queued synchronously by ``publish`` and sent one at a time by
    a single worker task. Sink failures are logged and dropped.
    """

    def __init__(self, sink: Sink):
        self.sink = sink
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    def start(self):
        if self._worker and not self._worker.done():
            return
        self._worker = asyncio.create_task(self._run())

    async def close(self):
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    def publish(self, project: Project | None, project_id: str, notification: Notification):
        self._queue.put_nowait(format_notification(project, project_id, notification))

    def remind(self, waiting: list[Project]):
        if waiting:
            self._queue.put_nowait(format_reminder(waiting))

    async def join(self):
        """Wait until everything queued so far has been handed to the sink."""
        await self._queue.join()

    async def _run(self):
        while True:
            text = await self._queue.get()
            try:
                await self.sink(text)
            except Exception:
                logger.exception("Failed to forward notification")
            finally:
                self._queue.task_done()
