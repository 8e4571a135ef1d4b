"""
Outbound HTTP sinks: the result endpoint and the remote log endpoint.

Both are best-effort. Failures are logged (results) or ignored (logs) and are
never raised to the caller.
"""

import asyncio
from typing import Any, Dict, Optional, Set

import httpx
from pydantic import BaseModel, ConfigDict, Field

from affilink.events import event_broker, EventType
from affilink.sessions import Session


class ResultPayload(BaseModel):
    """Completed affiliate link, as posted to the result endpoint."""
    model_config = ConfigDict(populate_by_name=True)

    link: str
    data: Optional[Dict[str, Any]] = None
    request_id: Any = Field(default=None, alias="requestId")
    sub_id: Optional[str] = Field(default=None, alias="subId")
    original_url: str = Field(alias="originalUrl")
    user_id: Any = Field(default=None, alias="userId")

    @classmethod
    def from_session(cls, session: Session, link: str) -> "ResultPayload":
        return cls(
            link=link,
            data=session.product_data,
            request_id=session.request_id,
            sub_id=session.sub_id,
            original_url=session.product_url,
            user_id=session.user_id,
        )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class ResultReporter:
    """Transmits completed results. One attempt, no retry."""

    def __init__(self, result_url: str, client: httpx.AsyncClient):
        self.result_url = result_url
        self._client = client

    async def report(self, payload: ResultPayload) -> bool:
        """POST the payload. Returns False if transmission failed."""
        try:
            response = await self._client.post(self.result_url, json=payload.to_wire())
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.ERROR,
                    "result_send_failed",
                    url=payload.original_url,
                    details={
                        "message": f"Failed to send result to server: {e}",
                        "request_id": payload.request_id,
                        "error": str(e)
                    }
                )
            )
            return False

        # Response body is informational only
        try:
            body = response.json()
        except ValueError:
            body = None

        await event_broker.publish(
            event_broker.create_event(
                EventType.RESULT,
                "result_sent",
                url=payload.original_url,
                details={
                    "message": "Result sent to server successfully.",
                    "request_id": payload.request_id,
                    "response": body
                }
            )
        )
        return True


class RemoteLogSink:
    """Fire-and-forget forwarding of log lines to the server."""

    def __init__(self, log_url: str, client: httpx.AsyncClient):
        self.log_url = log_url
        self._client = client
        self._pending: Set[asyncio.Task] = set()

    def send(self, message: str, level: str = "INFO", sender: str = "Background") -> None:
        """Schedule a POST without waiting for it. Does nothing outside a running loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._post({"message": message, "level": level, "sender": sender}))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post(self, body: Dict[str, Any]) -> None:
        try:
            await self._client.post(self.log_url, json=body)
        except (httpx.HTTPError, httpx.InvalidURL):
            pass

    async def drain(self) -> None:
        """Wait for in-flight log posts to finish."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
