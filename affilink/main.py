"""
Main application: FastAPI server + orchestrator for affiliate link generation.
"""

import asyncio
import os
from datetime import datetime, timezone
from typing import Any, Optional, Set
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sse_starlette.sse import EventSourceResponse

from affilink.agent import AffiliateAgent
from affilink.browser import BrowserManager
from affilink.commands import Command, OpenUrlCommand
from affilink.events import event_broker, EventType
from affilink.reporter import RemoteLogSink, ResultReporter
from affilink.router import MessageRouter
from affilink.sessions import SessionStore
from affilink.stream_client import StreamClient
from affilink.url_resolver import UrlResolver
from affilink.workflow import AffiliateWorkflow


# Configuration from environment
SERVER_BASE_URL = os.getenv("SERVER_BASE_URL", "http://localhost:5001/api/extension").rstrip("/")
STREAM_URL = os.getenv("STREAM_URL", f"{SERVER_BASE_URL}/stream")
RESULT_URL = os.getenv("RESULT_URL", f"{SERVER_BASE_URL}/result")
# Empty string disables remote logging
LOG_SINK_URL = os.getenv("LOG_SINK_URL", f"{SERVER_BASE_URL}/log")
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15.0"))
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))


class Orchestrator:
    """Wires the stream client, workflow, router and browser together."""

    def __init__(self, http_client: httpx.AsyncClient, browser: BrowserManager):
        self.http_client = http_client
        self.browser = browser
        self.store = SessionStore()
        self.workflow = AffiliateWorkflow(
            store=self.store,
            resolver=UrlResolver(http_client),
            host=browser,
            reporter=ResultReporter(RESULT_URL, http_client),
        )
        self.router = MessageRouter(self.workflow)
        self.agent = AffiliateAgent(emit=self.router.submit_message)
        self.browser.bind(on_navigation=self.router.submit_navigation, agent=self.agent)
        # The stream gets its own client: it holds one connection open indefinitely
        self.stream_client = StreamClient(STREAM_URL, on_command=self.handle_command)
        self._router_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro) -> None:
        """Run a coroutine in the background, keeping a reference until done."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_command(self, command: Command) -> None:
        if isinstance(command, OpenUrlCommand):
            await self.workflow.start(command.url, command.request_id, command.user_id)

    async def start(self) -> None:
        await self.browser.initialize()
        self._router_task = asyncio.create_task(self.router.start())
        self.stream_client.start()

    async def stop(self) -> None:
        await self.stream_client.stop()
        self.router.stop()
        if self._router_task:
            self._router_task.cancel()
            await asyncio.gather(self._router_task, return_exceptions=True)
        await self.workflow.cancel_pending()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.browser.shutdown()


http_client: Optional[httpx.AsyncClient] = None
orchestrator: Optional[Orchestrator] = None
log_sink: Optional[RemoteLogSink] = None


class OpenUrlRequest(BaseModel):
    """Request model for a manual open_url trigger."""
    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(min_length=1)
    request_id: Any = Field(default=None, alias="requestId")
    user_id: Any = Field(default=None, alias="userId")


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str
    stream_state: str
    timestamp: str


class StatusResponse(BaseModel):
    """Response model for status endpoint."""
    stream_state: str
    stream_url: str
    connect_count: int
    active_sessions: int
    pending_signals: int
    open_surfaces: int
    event_subscribers: int
    uptime_seconds: float


async def startup():
    """Application startup."""
    global http_client, orchestrator, log_sink

    http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    if LOG_SINK_URL:
        log_sink = RemoteLogSink(LOG_SINK_URL, http_client)
        event_broker.set_log_sink(log_sink)

    await event_broker.publish(
        event_broker.create_event(
            EventType.STEP,
            "application_startup",
            details={
                "message": "Starting affiliate link orchestrator",
                "stream_url": STREAM_URL,
                "result_url": RESULT_URL,
                "log_sink_url": LOG_SINK_URL
            }
        )
    )

    orchestrator = Orchestrator(http_client, BrowserManager())
    await orchestrator.start()


async def shutdown():
    """Graceful shutdown."""
    await event_broker.publish(
        event_broker.create_event(
            EventType.STEP,
            "application_shutdown",
            details={"message": "Graceful shutdown initiated"}
        )
    )

    if orchestrator:
        await orchestrator.stop()

    event_broker.set_log_sink(None)
    if log_sink:
        await log_sink.drain()
    if http_client:
        await http_client.aclose()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager."""
    await startup()
    yield
    await shutdown()


app = FastAPI(
    title="Affilink",
    description="Orchestrates affiliate link generation from a server command stream",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_orchestrator() -> Orchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    running = orchestrator is not None and orchestrator.browser.is_running
    return HealthResponse(
        status="healthy" if running else "initializing",
        stream_state=orchestrator.stream_client.state.name.lower() if orchestrator else "closed",
        timestamp=datetime.now(timezone.utc).isoformat()
    )


@app.get("/status", response_model=StatusResponse)
async def get_status():
    """Get current orchestrator status."""
    orch = _require_orchestrator()
    return StatusResponse(
        stream_state=orch.stream_client.state.name.lower(),
        stream_url=orch.stream_client.url,
        connect_count=orch.stream_client.connect_count,
        active_sessions=len(orch.store),
        pending_signals=orch.router.pending,
        open_surfaces=orch.browser.surface_count,
        event_subscribers=event_broker.subscriber_count,
        uptime_seconds=event_broker.uptime_seconds
    )


@app.get("/sessions")
async def list_sessions():
    """List in-flight sessions."""
    orch = _require_orchestrator()
    return [session.summary() for session in orch.store.all()]


@app.get("/events")
async def events_stream():
    """SSE stream of structured JSON events."""
    async def event_generator():
        async for event in event_broker.subscribe():
            yield {
                "event": event.type.value,
                "data": event.to_json()
            }

    return EventSourceResponse(event_generator())


@app.get("/history")
async def get_event_history(limit: int = 50):
    """Get recent event history."""
    events = await event_broker.get_history(limit)
    return [
        {
            "ts": e.ts,
            "type": e.type.value,
            "level": e.level,
            "sender": e.sender,
            "step": e.step,
            "url": e.url,
            "details": e.details
        }
        for e in events
    ]


@app.post("/actions/open")
async def trigger_open_url(request: OpenUrlRequest):
    """Manually start a workflow, as if an open_url command had arrived."""
    orch = _require_orchestrator()
    if not orch.browser.is_running:
        raise HTTPException(status_code=503, detail="Browser not initialized")

    request_id = request.request_id or f"manual-{datetime.now(timezone.utc).timestamp()}"
    orch.spawn(orch.workflow.start(request.url, request_id, request.user_id))

    return JSONResponse(
        content={"status": "queued", "url": request.url, "requestId": request_id},
        status_code=202
    )


def run():
    """Run the API server with the orchestrator attached."""
    uvicorn.run(app, host=API_HOST, port=API_PORT, log_level="info", access_log=True)


if __name__ == "__main__":
    run()
