"""
Playwright browser lifecycle and automation surfaces (one page per session).
"""

import asyncio
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set

from playwright.async_api import async_playwright, BrowserContext, Page, Playwright, Error as PlaywrightError

from affilink.events import event_broker, EventType


PROFILE_DIR = Path(os.getenv("PROFILE_DIR", "/data/profile"))
HEADLESS = os.getenv("HEADLESS", "false").lower() == "true"
TIMEOUT_MS_PAGE_LOAD = int(os.getenv("TIMEOUT_MS_PAGE_LOAD", "30000"))

NavigationCallback = Callable[[int, str], None]


class BrowserManager:
    """
    Manages the Playwright browser and the pages used as automation surfaces.

    Each surface is a page identified by an integer handle. Page loads are
    reported to the navigation callback and to the automation agent; commands
    for a surface are handed to the agent.
    """

    def __init__(self, profile_dir: Path = PROFILE_DIR, headless: bool = HEADLESS):
        self.profile_dir = profile_dir
        self.headless = headless
        self._playwright: Optional[Playwright] = None
        self._context: Optional[BrowserContext] = None
        self._pages: Dict[int, Page] = {}
        self._next_handle = 1
        self._on_navigation: Optional[NavigationCallback] = None
        self._agent = None
        self._tasks: Set[asyncio.Task] = set()
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def surface_count(self) -> int:
        return len(self._pages)

    def bind(self, on_navigation: NavigationCallback, agent) -> None:
        """Attach the navigation observer and the automation agent."""
        self._on_navigation = on_navigation
        self._agent = agent

    async def initialize(self) -> None:
        """Initialize Playwright and browser with persistent context."""
        await event_broker.publish(
            event_broker.create_event(
                EventType.STEP,
                "browser_init",
                details={"message": "Initializing Playwright browser"}
            )
        )

        self.profile_dir.mkdir(parents=True, exist_ok=True)

        self._playwright = await async_playwright().start()

        # Persistent profile keeps the affiliate site login between runs
        self._context = await self._playwright.chromium.launch_persistent_context(
            user_data_dir=str(self.profile_dir),
            headless=self.headless,
            args=[
                "--no-sandbox",
                "--disable-setuid-sandbox",
                "--disable-dev-shm-usage",
                "--disable-blink-features=AutomationControlled",
                "--no-first-run",
                "--no-default-browser-check",
            ],
            viewport={"width": 1440, "height": 900},
        )

        await self._context.add_init_script("""
            Object.defineProperty(navigator, 'webdriver', {
                get: () => undefined
            });
        """)

        self._is_running = True

        await event_broker.publish(
            event_broker.create_event(
                EventType.STEP,
                "browser_ready",
                details={"message": "Browser initialized successfully"}
            )
        )

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _handle_load(self, handle: int, page: Page) -> None:
        """Page 'load' listener: the surface finished navigating."""
        if handle not in self._pages:
            return
        if self._on_navigation is not None:
            self._on_navigation(handle, page.url)
        if self._agent is not None:
            self._spawn(self._agent.on_page_loaded(handle, page))

    def _handle_close(self, handle: int) -> None:
        self._pages.pop(handle, None)

    async def open_surface(self) -> int:
        """Open a blank page and return its handle."""
        if self._context is None:
            raise RuntimeError("Browser not initialized")

        page = await self._context.new_page()
        handle = self._next_handle
        self._next_handle += 1
        self._pages[handle] = page

        page.on("load", lambda p: self._handle_load(handle, p))
        page.on("close", lambda _p: self._handle_close(handle))
        return handle

    def get_page(self, handle: int) -> Optional[Page]:
        page = self._pages.get(handle)
        if page is None or page.is_closed():
            return None
        return page

    async def navigate(self, handle: int, url: str) -> None:
        """Start navigating a surface. Failures are logged, not raised."""
        page = self.get_page(handle)
        if page is None:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.ERROR,
                    "surface_missing",
                    url=url,
                    details={"message": f"Tab {handle} is not open", "surface": handle}
                )
            )
            return

        try:
            await page.goto(url, wait_until="commit", timeout=TIMEOUT_MS_PAGE_LOAD)
        except PlaywrightError as e:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.ERROR,
                    "surface_navigate_error",
                    url=url,
                    details={"message": f"Navigation failed for Tab {handle}: {e}", "surface": handle, "error": str(e)}
                )
            )

    async def send_command(self, handle: int, command: Dict[str, Any]) -> None:
        """Deliver a command to the agent running on a surface."""
        page = self.get_page(handle)
        if page is None or self._agent is None:
            await event_broker.publish(
                event_broker.create_event(
                    EventType.WARNING,
                    "command_undeliverable",
                    details={"message": f"Cannot deliver {command.get('action')} to Tab {handle}", "surface": handle}
                )
            )
            return
        self._spawn(self._agent.on_command(handle, page, command))

    async def close_surface(self, handle: int) -> None:
        """Close a surface page if still open."""
        page = self._pages.pop(handle, None)
        if page is None or page.is_closed():
            return
        try:
            await page.close()
        except PlaywrightError:
            pass

    async def shutdown(self) -> None:
        """Gracefully shutdown browser and Playwright."""
        self._is_running = False

        await event_broker.publish(
            event_broker.create_event(
                EventType.STEP,
                "browser_shutdown",
                details={"message": "Shutting down browser"}
            )
        )

        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._context:
            try:
                await self._context.close()
            except Exception:
                pass
            self._context = None

        if self._playwright:
            try:
                await self._playwright.stop()
            except Exception:
                pass
            self._playwright = None

        self._pages = {}
