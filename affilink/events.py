"""
Structured event log for the orchestrator, broadcast to SSE subscribers and
optionally forwarded to the remote log sink.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict
from enum import Enum


class EventType(str, Enum):
    STEP = "step"
    STATE_CHANGE = "state_change"
    COMMAND = "command"
    RESULT = "result"
    DEBUG = "debug"
    WARNING = "warning"
    ERROR = "error"


# Level reported to the log sink for each event type
EVENT_LEVELS = {
    EventType.DEBUG: "DEBUG",
    EventType.WARNING: "WARN",
    EventType.ERROR: "ERROR",
}


@dataclass
class Event:
    ts: str
    type: EventType
    step: str
    url: str = ""
    sender: str = "Background"
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def level(self) -> str:
        return EVENT_LEVELS.get(self.type, "INFO")

    @property
    def message(self) -> str:
        return str(self.details.get("message") or self.step)

    def to_json(self) -> str:
        data = asdict(self)
        data["type"] = self.type.value
        data["level"] = self.level
        return json.dumps(data, default=str)

    def to_log_line(self) -> str:
        return self.to_json()


class EventBroker:
    """Manages SSE subscriptions and event broadcasting."""

    def __init__(self, max_history: int = 100):
        self._subscribers: List[asyncio.Queue] = []
        self._history: List[Event] = []
        self._max_history = max_history
        self._lock = asyncio.Lock()
        self._log_sink = None
        self._start_time: datetime = datetime.now(timezone.utc)

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self._start_time).total_seconds()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def set_log_sink(self, sink) -> None:
        """Forward every published event to a sink exposing send(message, level, sender)."""
        self._log_sink = sink

    def create_event(
        self,
        event_type: EventType,
        step: str,
        url: str = "",
        details: Dict[str, Any] = None,
        sender: str = "Background"
    ) -> Event:
        return Event(
            ts=datetime.now(timezone.utc).isoformat(),
            type=event_type,
            step=step,
            url=url,
            sender=sender,
            details=details or {}
        )

    async def publish(self, event: Event) -> None:
        """Publish an event to all subscribers and log it."""
        # Log to stdout as structured JSON
        print(event.to_log_line(), flush=True)

        if self._log_sink is not None:
            self._log_sink.send(event.message, event.level, event.sender)

        async with self._lock:
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]

            dead_subscribers = []
            for queue in self._subscribers:
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    dead_subscribers.append(queue)

            for queue in dead_subscribers:
                self._subscribers.remove(queue)

    async def subscribe(self) -> AsyncGenerator[Event, None]:
        """Subscribe to events. Returns an async generator."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=100)

        async with self._lock:
            self._subscribers.append(queue)

        try:
            while True:
                event = await queue.get()
                yield event
        finally:
            async with self._lock:
                if queue in self._subscribers:
                    self._subscribers.remove(queue)

    async def get_history(self, limit: int = 50, event_type: Optional[EventType] = None) -> List[Event]:
        """Get recent event history, optionally filtered by type."""
        async with self._lock:
            events = self._history
            if event_type is not None:
                events = [e for e in events if e.type == event_type]
            return events[-limit:]


# Global event broker instance
event_broker = EventBroker()
