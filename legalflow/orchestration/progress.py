from __future__ import annotations

import asyncio
import json
import secrets
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal

from ..core.logging import get_logger
from ..queue.manager import TaskQueueManager
from ..queue.store import AgentTask

logger = get_logger(name=__name__)

StreamEventType = Literal["taskId", "progress", "sources", "message", "error", "messageEnd"]

NDJSON_MEDIA_TYPE = "application/x-ndjson"
MESSAGE_ID_BYTES = 7


def new_message_id() -> str:
    return secrets.token_hex(MESSAGE_ID_BYTES)


def word_chunks(text: str) -> list[str]:
    """Split text word by word; joining the chunks gives the text back."""
    words = text.split(" ")
    return [words[0], *(f" {word}" for word in words[1:])] if text else []


def progress_label(task: AgentTask) -> str:
    return task.current_step or f"Progress: {task.progress}%"


@dataclass(slots=True)
class StreamEvent:
    type: StreamEventType
    message_id: str
    data: Any = None

    def to_payload(self) -> dict[str, Any]:
        if self.type == "messageEnd":
            return {"type": self.type, "messageId": self.message_id}
        return {"type": self.type, "data": self.data, "messageId": self.message_id}

    def to_line(self) -> str:
        return json.dumps(self.to_payload(), default=str) + "\n"


class ProgressChannel:
    """Turns task queue notifications for one plan into stream events.

    Every event of a stream shares a single ``messageId``.
    """

    def __init__(self, tasks: TaskQueueManager, *, message_id: str | None = None, word_delay_seconds: float = 0.0) -> None:
        self._tasks = tasks
        self.message_id = message_id or new_message_id()
        self._word_delay = word_delay_seconds

    def event(self, event_type: StreamEventType, data: Any = None) -> StreamEvent:
        return StreamEvent(type=event_type, message_id=self.message_id, data=data)

    async def follow(self, plan_id: str, job: asyncio.Future[Any]) -> AsyncIterator[StreamEvent]:
        """Yield a ``progress`` event per observed change until ``job`` finishes."""
        last_seen: dict[str, tuple[int, str | None]] = {}
        async with self._tasks.plan_updates(plan_id) as inbox:
            while not job.done():
                getter = asyncio.ensure_future(inbox.get())
                await asyncio.wait({getter, job}, return_when=asyncio.FIRST_COMPLETED)
                if getter.done():
                    event = self._progress_event(getter.result(), last_seen)
                    if event is not None:
                        yield event
                else:
                    getter.cancel()
            while not inbox.empty():
                event = self._progress_event(inbox.get_nowait(), last_seen)
                if event is not None:
                    yield event

    async def result(self, text: str, sources: list[dict[str, Any]]) -> AsyncIterator[StreamEvent]:
        if sources:
            yield self.event("sources", sources)
        for chunk in word_chunks(text):
            yield self.event("message", chunk)
            if self._word_delay:
                await asyncio.sleep(self._word_delay)
        yield self.event("messageEnd")

    async def failure(self, message: str) -> AsyncIterator[StreamEvent]:
        yield self.event("error", message)
        yield self.event("messageEnd")

    def _progress_event(self, task: AgentTask, last_seen: dict[str, tuple[int, str | None]]) -> StreamEvent | None:
        marker = (task.progress, task.current_step)
        if task.progress <= 0 or last_seen.get(task.id) == marker:
            return None
        last_seen[task.id] = marker
        return self.event("progress", progress_label(task))
