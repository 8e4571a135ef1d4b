"""
Routes agent messages and page load observations into workflow transitions.

Signals from both channels go through one queue and are applied one at a time,
so transitions for a session never interleave. Transitions only update session
state; page navigation and result reporting run in the background so one slow
session never holds up the others.
"""

import asyncio
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from affilink.events import event_broker, EventType
from affilink.workflow import AffiliateWorkflow, AgentAction


REAP_INTERVAL_SECONDS = float(os.getenv("REAP_INTERVAL_SECONDS", "5.0"))


@dataclass
class Signal:
    """An inbound signal for a surface."""
    handle: Optional[int]
    message: Dict[str, Any] = field(default_factory=dict)
    navigated_url: Optional[str] = None

    @property
    def is_navigation(self) -> bool:
        return self.navigated_url is not None


class MessageRouter:
    """Serializes inbound signals and dispatches them by action."""

    def __init__(self, workflow: AffiliateWorkflow, reap_interval: float = REAP_INTERVAL_SECONDS):
        self.workflow = workflow
        self.reap_interval = reap_interval
        self._queue: asyncio.Queue = asyncio.Queue()
        self._is_running = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit_message(self, handle: Optional[int], message: Dict[str, Any]) -> None:
        """Queue a message sent by the automation agent on a surface."""
        self._queue.put_nowait(Signal(handle=handle, message=message or {}))

    def submit_navigation(self, handle: int, url: str) -> None:
        """Queue a page load observation."""
        self._queue.put_nowait(Signal(handle=handle, navigated_url=url or ""))

    async def dispatch(self, signal: Signal) -> None:
        """Apply a single signal."""
        if signal.is_navigation:
            await self.workflow.on_navigation_completed(signal.handle, signal.navigated_url)
            return

        message = signal.message
        action = message.get("action")

        # Debug logs never touch session state
        if action == AgentAction.DEBUG_LOG.value:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.DEBUG,
                    "agent_debug",
                    sender=f"CS-{signal.handle}",
                    details={"message": str(message.get("message", ""))}
                )
            )
            return

        if signal.handle is None:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.WARNING,
                    "signal_without_surface",
                    details={"message": f"Dropping {action} message without a surface", "action": action}
                )
            )
            return

        if action == AgentAction.DETAILS_SCRAPED.value:
            await self.workflow.on_details_scraped(signal.handle, message.get("data"))
        elif action == AgentAction.LINK_GENERATED.value:
            await self.workflow.on_link_generated(signal.handle, message.get("link"))
        else:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.WARNING,
                    "unknown_signal",
                    details={"message": f"Unknown action {action!r} from Tab {signal.handle}", "action": action}
                )
            )

    async def drain(self) -> None:
        """Dispatch every queued signal and wait for the work it started."""
        while not self._queue.empty():
            await self._dispatch_safely(self._queue.get_nowait())
        await self.workflow.drain()

    async def _dispatch_safely(self, signal: Signal) -> None:
        try:
            await self.dispatch(signal)
        except Exception as e:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.ERROR,
                    "router_error",
                    details={"message": f"Signal handling failed: {e}", "surface": signal.handle, "error": str(e)}
                )
            )

    async def start(self) -> None:
        """Process signals until stopped, reaping expired sessions while idle."""
        self._is_running = True

        await event_broker.publish(
            event_broker.create_event(
                EventType.STEP,
                "router_started",
                details={"message": "Message router started", "reap_interval": self.reap_interval}
            )
        )

        loop = asyncio.get_running_loop()
        next_reap = loop.time() + self.reap_interval

        while self._is_running:
            try:
                signal = await asyncio.wait_for(
                    self._queue.get(),
                    timeout=max(0.0, next_reap - loop.time())
                )
                await self._dispatch_safely(signal)
            except asyncio.TimeoutError:
                pass

            if loop.time() >= next_reap:
                next_reap = loop.time() + self.reap_interval
                await self._reap_safely()

    async def _reap_safely(self) -> None:
        try:
            await self.workflow.reap_expired()
        except Exception as e:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.ERROR,
                    "reap_error",
                    details={"message": f"Session reaping failed: {e}", "error": str(e)}
                )
            )

    def stop(self) -> None:
        """Stop the router loop."""
        self._is_running = False
