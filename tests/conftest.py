from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Tuple

import httpx
import pytest

from affilink.reporter import ResultPayload
from affilink.router import MessageRouter
from affilink.sessions import SessionStore
from affilink.url_resolver import UrlResolver
from affilink.workflow import AffiliateWorkflow


class FakeSurfaceHost:
    """Records surface operations instead of driving a browser."""

    def __init__(self, first_handle: int = 100) -> None:
        self.opened: List[int] = []
        self.navigations: List[Tuple[int, str]] = []
        self.commands: List[Tuple[int, Dict[str, Any]]] = []
        self.closed: List[int] = []
        self.fail_open = False
        self._next = first_handle

    async def open_surface(self) -> int:
        if self.fail_open:
            raise RuntimeError("Browser not initialized")
        handle = self._next
        self._next += 1
        self.opened.append(handle)
        return handle

    async def navigate(self, handle: int, url: str) -> None:
        self.navigations.append((handle, url))

    async def send_command(self, handle: int, command: Dict[str, Any]) -> None:
        self.commands.append((handle, command))

    async def close_surface(self, handle: int) -> None:
        self.closed.append(handle)


class FakeReporter:
    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.payloads: List[ResultPayload] = []

    async def report(self, payload: ResultPayload) -> bool:
        self.payloads.append(payload)
        return self.succeed


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> SessionStore:
    return SessionStore(clock=clock)


@pytest.fixture
def host() -> FakeSurfaceHost:
    return FakeSurfaceHost()


@pytest.fixture
def reporter() -> FakeReporter:
    return FakeReporter()


@pytest.fixture
def resolver() -> UrlResolver:
    return UrlResolver(httpx.AsyncClient(transport=httpx.MockTransport(_no_network)))


@pytest.fixture
def workflow(store, resolver, host, reporter) -> AffiliateWorkflow:
    return AffiliateWorkflow(
        store=store,
        resolver=resolver,
        host=host,
        reporter=reporter,
        product_offer_url="https://aff.example/offer/product_offer/{item_id}",
        custom_link_url="https://aff.example/offer/custom_link",
        session_ttl=300,
    )


@pytest.fixture
def router(workflow) -> MessageRouter:
    return MessageRouter(workflow, reap_interval=0.05)


@pytest.fixture
def wait_until() -> Callable:
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait
