"""In-process fan-out of audit report fragments to SSE subscribers.

The engine is consumed once by the session runner; every viewer of a session
subscribes here. A late subscriber first receives the fragments already
published, then follows live output until the single terminal event.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Set

from config import settings

logger = logging.getLogger(__name__)

RelayEventKind = Literal["content", "complete", "error"]

_SSE_EVENT_NAMES = {"content": "content", "complete": "complete", "error": "error"}


@dataclass(frozen=True)
class RelayEvent:
    kind: RelayEventKind
    data: Dict[str, Any]

    @property
    def is_terminal(self) -> bool:
        return self.kind != "content"

    def to_sse(self) -> str:
        return f"event: {_SSE_EVENT_NAMES[self.kind]}\ndata: {json.dumps(self.data)}\n\n"


@dataclass
class _Channel:
    history: List[RelayEvent] = field(default_factory=list)
    subscribers: Set[asyncio.Queue] = field(default_factory=set)
    closed_at: Optional[float] = None

    @property
    def closed(self) -> bool:
        return self.closed_at is not None


class StreamRelay:
    def __init__(self, retention_seconds: Optional[int] = None) -> None:
        self.retention_seconds = (
            int(settings.STREAM_RETENTION_SECONDS) if retention_seconds is None else int(retention_seconds)
        )
        self._channels: Dict[str, _Channel] = {}

    def open(self, session_id: str) -> None:
        self._channels.setdefault(session_id, _Channel())

    def has_channel(self, session_id: str) -> bool:
        return session_id in self._channels

    def _publish(self, session_id: str, event: RelayEvent) -> bool:
        channel = self._channels.setdefault(session_id, _Channel())
        if channel.closed:
            return False
        channel.history.append(event)
        if event.is_terminal:
            channel.closed_at = time.monotonic()
        for queue in list(channel.subscribers):
            queue.put_nowait(event)
        return True

    def publish_fragment(self, session_id: str, text: str) -> None:
        if text:
            self._publish(session_id, RelayEvent(kind="content", data={"body": text}))

    def complete(self, session_id: str, **extra: Any) -> bool:
        return self._publish(session_id, RelayEvent(kind="complete", data={"status": "completed", **extra}))

    def fail(self, session_id: str, message: str, **extra: Any) -> bool:
        return self._publish(session_id, RelayEvent(kind="error", data={"message": message, **extra}))

    async def subscribe(self, session_id: str) -> AsyncIterator[RelayEvent]:
        channel = self._channels.get(session_id)
        if channel is None:
            return
        queue: asyncio.Queue = asyncio.Queue()
        replay = list(channel.history)
        if not channel.closed:
            channel.subscribers.add(queue)
        try:
            for event in replay:
                yield event
                if event.is_terminal:
                    return
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            channel.subscribers.discard(queue)

    def discard(self, session_id: str) -> None:
        self._channels.pop(session_id, None)

    def prune(self, now: Optional[float] = None) -> int:
        """Drop closed channels older than the retention window."""
        now = time.monotonic() if now is None else now
        stale = [
            session_id
            for session_id, channel in self._channels.items()
            if channel.closed and not channel.subscribers and now - channel.closed_at >= self.retention_seconds
        ]
        for session_id in stale:
            del self._channels[session_id]
        if stale:
            logger.debug("Pruned %s closed stream channels", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._channels)
