"""
Affiliate link workflow state machine.

Flow per session (one browser page each):
1. Resolve URL → open page at the product offer (or custom link) page
2. Agent scrapes details → navigate to the custom link page
3. Custom link page loaded → command the agent to generate the link
4. Agent returns the link → report result, evict session, close page

Steps 2-4 are driven by asynchronous signals: agent messages and page load
observations. Neither channel is ordered relative to the other, so every
transition checks the session it finds instead of assuming one.
"""

import asyncio
import os
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set

from affilink.events import event_broker, EventType
from affilink.reporter import ResultPayload, ResultReporter
from affilink.sessions import Session, SessionState, SessionStore, SESSION_TTL_SECONDS
from affilink.url_resolver import ResolvedUrl, UrlResolver


AFFILIATE_BASE_URL = os.getenv("AFFILIATE_BASE_URL", "https://affiliate.shopee.vn").rstrip("/")
PRODUCT_OFFER_URL = AFFILIATE_BASE_URL + "/offer/product_offer/{item_id}"
CUSTOM_LINK_URL = AFFILIATE_BASE_URL + "/offer/custom_link"
CUSTOM_LINK_MARKER = "/offer/custom_link"
PRODUCT_OFFER_MARKER = "/offer/product_offer/"


class AgentAction(str, Enum):
    """Actions exchanged with the page automation agent."""
    DETAILS_SCRAPED = "DETAILS_SCRAPED"
    LINK_GENERATED = "LINK_GENERATED"
    DEBUG_LOG = "DEBUG_LOG"
    EXECUTE_CUSTOM_LINK_FLOW = "EXECUTE_CUSTOM_LINK_FLOW"


class SurfaceHost(Protocol):
    """Host of automation surfaces (browser pages)."""

    async def open_surface(self) -> int: ...

    async def navigate(self, handle: int, url: str) -> None: ...

    async def send_command(self, handle: int, command: Dict[str, Any]) -> None: ...

    async def close_surface(self, handle: int) -> None: ...


class AffiliateWorkflow:
    """Drives sessions from an open_url command to a reported result."""

    def __init__(
        self,
        store: SessionStore,
        resolver: UrlResolver,
        host: SurfaceHost,
        reporter: ResultReporter,
        product_offer_url: str = PRODUCT_OFFER_URL,
        custom_link_url: str = CUSTOM_LINK_URL,
        session_ttl: float = SESSION_TTL_SECONDS
    ):
        self.store = store
        self.resolver = resolver
        self.host = host
        self.reporter = reporter
        self.product_offer_url = product_offer_url
        self.custom_link_url = custom_link_url
        self.session_ttl = session_ttl
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def _spawn(self, coro) -> None:
        """Run surface or reporting I/O in the background so signal handling never waits on it."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for background navigations and reports to finish."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def cancel_pending(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def target_url(self, resolved: ResolvedUrl) -> str:
        """Product offer page when an item ID is known, custom link page otherwise."""
        if resolved.item_id:
            return self.product_offer_url.format(item_id=resolved.item_id)
        return self.custom_link_url

    async def _log(self, event_type: EventType, step: str, message: str, url: str = "", **details) -> None:
        await event_broker.publish(
            event_broker.create_event(event_type, step, url=url, details={"message": message, **details})
        )

    async def _orphan(self, handle: int, action: AgentAction) -> None:
        await self._log(
            EventType.ERROR,
            "orphan_signal",
            f"No context found for Tab {handle}",
            surface=handle,
            action=action.value
        )

    async def start(self, url: str, request_id: Any = None, user_id: Any = None) -> Optional[Session]:
        """
        Resolve a URL and open a surface for it.

        Returns the created session, or None if the workflow could not start.
        Never raises.
        """
        await self._log(
            EventType.STATE_CHANGE,
            SessionState.RESOLVING.value,
            f"Resolving URL: {url} (ReqID: {request_id}, User: {user_id})",
            url=url,
            request_id=request_id,
            user_id=user_id
        )

        try:
            resolved = await self.resolver.resolve(url)
            target_url = self.target_url(resolved)

            if resolved.is_direct_link:
                await self._log(
                    EventType.STEP,
                    "item_id_missing",
                    "Could not extract Item ID. Skipping scraping, going to Custom Link.",
                    url=resolved.url
                )
            else:
                await self._log(
                    EventType.STEP,
                    "item_id_extracted",
                    f"Extracted Item ID: {resolved.item_id}",
                    url=resolved.url,
                    item_id=resolved.item_id
                )

            handle = await self.host.open_surface()

            session = Session(
                surface_handle=handle,
                request_id=request_id,
                user_id=user_id,
                product_url=resolved.url,
                is_direct_link=resolved.is_direct_link,
            )
            if session.is_direct_link:
                session.ensure_sub_id()
            self.store.set(handle, session)

            await self._log(
                EventType.STATE_CHANGE,
                SessionState.SURFACE_OPENED.value,
                f"Mapped Tab {handle} to Request {request_id}",
                url=target_url,
                surface=handle,
                request_id=request_id,
                is_direct_link=session.is_direct_link
            )

            # The session exists before the page starts loading, so no agent
            # signal can arrive for an unknown surface
            await self.host.navigate(handle, target_url)
            return session

        except Exception as e:
            await self._log(
                EventType.ERROR,
                "resolve_error",
                f"Fatal resolve error: {e}",
                url=url,
                request_id=request_id,
                error=str(e)
            )
            return None

    async def on_details_scraped(self, handle: int, data: Optional[Dict[str, Any]]) -> None:
        """Store scraped product data and move the surface to the custom link page."""
        session = self.store.get(handle)
        if session is None:
            await self._orphan(handle, AgentAction.DETAILS_SCRAPED)
            return

        if session.state != SessionState.SURFACE_OPENED:
            await self._log(
                EventType.WARNING,
                "details_scraped_ignored",
                f"Ignoring repeated details for Tab {handle} in state {session.state.value}",
                surface=handle
            )
            return

        session.product_data = data or {}
        session.ensure_sub_id()
        session.state = SessionState.SCRAPED

        await self._log(
            EventType.STATE_CHANGE,
            "details_scraped",
            f"Step 1 Complete: Details Scraped for Tab {handle}",
            url=session.product_url,
            surface=handle,
            product_data=session.product_data
        )
        await self._log(
            EventType.STEP,
            "navigate_custom_link",
            f"Navigating Tab {handle} to Custom Link Page...",
            url=self.custom_link_url,
            surface=handle
        )
        self._spawn(self._navigate(handle, self.custom_link_url))

    async def _navigate(self, handle: int, url: str) -> None:
        try:
            await self.host.navigate(handle, url)
        except Exception as e:
            await self._log(
                EventType.ERROR,
                "navigate_error",
                f"Navigation failed for Tab {handle}: {e}",
                url=url,
                surface=handle,
                error=str(e)
            )

    async def on_navigation_completed(self, handle: int, url: str) -> None:
        """React to a page load; only the custom link page advances the workflow."""
        if not url or CUSTOM_LINK_MARKER not in url:
            return

        session = self.store.get(handle)
        if session is None:
            return

        session.ensure_sub_id()
        session.state = SessionState.LINK_PAGE_LOADED

        await self._log(
            EventType.STATE_CHANGE,
            "custom_link_loaded",
            f"Custom Link Page Loaded for Tab {handle}. Executing Flow...",
            url=url,
            surface=handle
        )
        await self.host.send_command(handle, {
            "action": AgentAction.EXECUTE_CUSTOM_LINK_FLOW.value,
            "url": session.product_url,
            "subId": session.sub_id,
        })

    async def on_link_generated(self, handle: int, link: Optional[str]) -> bool:
        """
        Retire the session and report the generated link in the background.

        Returns True if a session was retired and its report scheduled.
        """
        if not link:
            return False

        session = self.store.get(handle)
        if session is None:
            await self._orphan(handle, AgentAction.LINK_GENERATED)
            return False

        session.state = SessionState.LINK_GENERATED
        await self._log(
            EventType.STATE_CHANGE,
            "link_generated",
            f"Step 2 Complete: Link Generated for Tab {handle}",
            url=session.product_url,
            surface=handle,
            link=link
        )

        payload = ResultPayload.from_session(session, link)
        # Retire before any I/O so no later signal can reach this session
        self.store.delete(handle)
        session.state = SessionState.REPORTED

        self._spawn(self._report_and_close(handle, payload))
        return True

    async def _report_and_close(self, handle: int, payload: ResultPayload) -> None:
        try:
            await self.reporter.report(payload)
        except Exception as e:
            await self._log(
                EventType.ERROR,
                "result_send_failed",
                f"Error sending result: {e}",
                url=payload.original_url,
                request_id=payload.request_id,
                error=str(e)
            )
        finally:
            await self.host.close_surface(handle)

    async def abandon(self, handle: int, reason: str) -> None:
        """Evict a session that can no longer complete and close its surface."""
        session = self.store.delete(handle)
        if session is None:
            return
        session.state = SessionState.ABANDONED
        await self._log(
            EventType.WARNING,
            "session_abandoned",
            f"Abandoned Tab {handle}: {reason}",
            url=session.product_url,
            surface=handle,
            request_id=session.request_id
        )
        await self.host.close_surface(handle)

    async def reap_expired(self) -> List[int]:
        """Abandon sessions older than the session TTL."""
        handles = self.store.expired(self.session_ttl)
        for handle in handles:
            await self.abandon(handle, f"no result within {self.session_ttl:.0f}s")
        return handles
