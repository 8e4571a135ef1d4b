"""
Self-healing Server-Sent Events client for the command stream.
"""

import asyncio
import os
from enum import IntEnum
from typing import Awaitable, Callable, List, Optional, Set

import httpx

from affilink.commands import Command, ConnectedCommand, parse_command
from affilink.events import event_broker, EventType


STREAM_RECONNECT_DELAY_SECONDS = float(os.getenv("STREAM_RECONNECT_DELAY_SECONDS", "5.0"))
STREAM_LIVENESS_INTERVAL_SECONDS = float(os.getenv("STREAM_LIVENESS_INTERVAL_SECONDS", "30.0"))


class ConnectionState(IntEnum):
    """Connection states, numbered like EventSource.readyState."""
    CONNECTING = 0
    OPEN = 1
    CLOSED = 2


CommandHandler = Callable[[Command], Awaitable[None]]


class StreamClient:
    """
    Keeps a single connection to the command stream alive.

    A closed connection is retried after a fixed delay. A periodic liveness
    check also reconnects if the connection is closed and no retry is pending,
    which covers transports that drop without signalling it.
    """

    def __init__(
        self,
        url: str,
        on_command: CommandHandler,
        client: Optional[httpx.AsyncClient] = None,
        reconnect_delay: float = STREAM_RECONNECT_DELAY_SECONDS,
        liveness_interval: float = STREAM_LIVENESS_INTERVAL_SECONDS
    ):
        self.url = url
        self.on_command = on_command
        self.reconnect_delay = reconnect_delay
        self.liveness_interval = liveness_interval
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
        self._owns_client = client is None
        self._state = ConnectionState.CLOSED
        self._connection_task: Optional[asyncio.Task] = None
        self._liveness_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._command_tasks: Set[asyncio.Task] = set()
        self._connect_count = 0
        self._is_running = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connect_count(self) -> int:
        """Number of connection attempts made so far."""
        return self._connect_count

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def start(self) -> None:
        """Open the connection and start the liveness check."""
        self._is_running = True
        self.connect()
        if self._liveness_task is None or self._liveness_task.done():
            self._liveness_task = asyncio.create_task(self._liveness_loop())

    def connect(self) -> bool:
        """Open a connection unless one is already live. Returns True if a new one was started."""
        if self._state != ConnectionState.CLOSED:
            return False

        # Discard the stale connection before creating a new one
        if self._connection_task is not None and not self._connection_task.done():
            self._connection_task.cancel()

        self._cancel_reconnect()
        self._state = ConnectionState.CONNECTING
        self._connect_count += 1
        self._connection_task = asyncio.create_task(self._consume())
        return True

    def check_liveness(self) -> bool:
        """Reconnect if closed with no retry pending. Returns True if a reconnect was forced."""
        if not self._is_running:
            return False
        if self._state == ConnectionState.CLOSED and self._reconnect_handle is None:
            return self.connect()
        return False

    async def _liveness_loop(self) -> None:
        while self._is_running:
            await asyncio.sleep(self.liveness_interval)
            if self.check_liveness():
                await event_broker.publish(
                    event_broker.create_event(
                        EventType.WARNING,
                        "stream_liveness_reconnect",
                        url=self.url,
                        details={"message": "Connection lost, reconnecting..."}
                    )
                )

    def _schedule_reconnect(self) -> None:
        if not self._is_running or self._reconnect_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.reconnect_delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._is_running:
            self.connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    async def _consume(self) -> None:
        """Read the stream until it closes, then schedule a reconnect."""
        try:
            async with self._client.stream(
                "GET",
                self.url,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"}
            ) as response:
                response.raise_for_status()
                self._state = ConnectionState.OPEN
                await event_broker.publish(
                    event_broker.create_event(
                        EventType.STEP,
                        "stream_connected",
                        url=self.url,
                        details={"message": "Connected to Affiliate Server SSE stream."}
                    )
                )

                data_lines: List[str] = []
                event_name = ""
                async for line in response.aiter_lines():
                    if not line:
                        await self._dispatch_frame(event_name, data_lines)
                        data_lines = []
                        event_name = ""
                        continue
                    if line.startswith(":"):
                        continue
                    field, _, value = line.partition(":")
                    if value.startswith(" "):
                        value = value[1:]
                    if field == "data":
                        data_lines.append(value)
                    elif field == "event":
                        event_name = value

                await self._dispatch_frame(event_name, data_lines)

            await event_broker.publish(
                event_broker.create_event(
                    EventType.WARNING,
                    "stream_closed",
                    url=self.url,
                    details={"message": f"Connection closed. Retrying in {self.reconnect_delay:g}s..."}
                )
            )
        except asyncio.CancelledError:
            if self._is_current():
                self._state = ConnectionState.CLOSED
            raise
        except Exception as e:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.ERROR,
                    "stream_error",
                    url=self.url,
                    details={
                        "message": f"Stream error, retrying in {self.reconnect_delay:g}s: {e}",
                        "error": str(e)
                    }
                )
            )

        if self._is_current():
            self._state = ConnectionState.CLOSED
            self._schedule_reconnect()

    def _is_current(self) -> bool:
        """Check if the running task is the live connection rather than a discarded one."""
        return asyncio.current_task() is self._connection_task

    async def _dispatch_frame(self, event_name: str, data_lines: List[str]) -> None:
        """Handle one complete SSE frame. Only unnamed or "message" frames carry commands."""
        if not data_lines:
            return
        if event_name not in ("", "message"):
            await event_broker.publish(
                event_broker.create_event(
                    EventType.DEBUG,
                    "stream_event_skipped",
                    url=self.url,
                    details={"message": f"Skipping '{event_name}' event", "event": event_name}
                )
            )
            return
        await self._handle_data("\n".join(data_lines))

    async def _handle_data(self, data: str) -> None:
        """Decode one event payload and dispatch it."""
        command = parse_command(data)
        if command is None:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.WARNING,
                    "stream_message_dropped",
                    url=self.url,
                    details={"message": "Error parsing SSE message", "data": data[:500]}
                )
            )
            return

        if isinstance(command, ConnectedCommand):
            await event_broker.publish(
                event_broker.create_event(
                    EventType.STEP,
                    "stream_handshake",
                    details={"message": "Handshake successful."}
                )
            )
            return

        await event_broker.publish(
            event_broker.create_event(
                EventType.COMMAND,
                command.type,
                url=command.url,
                details={"request_id": command.request_id, "user_id": command.user_id}
            )
        )
        # Commands run in their own task so a slow workflow never stalls the stream
        task = asyncio.create_task(self._run_command(command))
        self._command_tasks.add(task)
        task.add_done_callback(self._command_tasks.discard)

    async def _run_command(self, command: Command) -> None:
        try:
            await self.on_command(command)
        except Exception as e:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.ERROR,
                    "command_error",
                    details={"message": f"Command handling failed: {e}", "error": str(e)}
                )
            )

    async def stop(self) -> None:
        """Close the connection and stop all background tasks."""
        self._is_running = False
        self._cancel_reconnect()

        tasks = [t for t in (self._connection_task, self._liveness_task) if t is not None]
        tasks.extend(self._command_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._connection_task = None
        self._liveness_task = None
        self._state = ConnectionState.CLOSED

        if self._owns_client:
            await self._client.aclose()
