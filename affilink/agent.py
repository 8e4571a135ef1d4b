"""
Page automation agent for the affiliate dashboard.

Runs against a surface page and talks to the orchestrator only through
messages: DETAILS_SCRAPED, LINK_GENERATED and DEBUG_LOG out,
EXECUTE_CUSTOM_LINK_FLOW in.
"""

import asyncio
import os
from typing import Any, Callable, Dict, Optional

from playwright.async_api import Page, Error as PlaywrightError, TimeoutError as PlaywrightTimeout

from affilink.workflow import AgentAction, CUSTOM_LINK_MARKER, PRODUCT_OFFER_MARKER


TIMEOUT_MS_ELEMENT_VISIBLE = int(os.getenv("TIMEOUT_MS_ELEMENT_VISIBLE", "10000"))
TIMEOUT_MS_SELECTOR_CHECK = int(os.getenv("TIMEOUT_MS_SELECTOR_CHECK", "500"))
TIMEOUT_SECONDS_LINK_RESULT = float(os.getenv("TIMEOUT_SECONDS_LINK_RESULT", "15"))
WAIT_SECONDS_RENDER = float(os.getenv("WAIT_SECONDS_RENDER", "1.5"))
WAIT_SECONDS_FORM_UPDATE = float(os.getenv("WAIT_SECONDS_FORM_UPDATE", "1.0"))

MessageEmitter = Callable[[Optional[int], Dict[str, Any]], None]


class AffiliateAgent:
    """Scrapes product offer pages and fills the custom link form."""

    # Selectors for the affiliate dashboard (may need updates as the site changes)
    SELECTORS = {
        "name": ".name",
        "sold": ".ItemCardSold__wrap span",
        "image": "img.offer-img",
        "price": ".price",
        "cashback": "td.comm-table-total-text.ant-table-row-cell-break-word",
        "link_input": "textarea.ant-input",
        "sub_id_input": "input#customLink_sub_id1",
        "generate_button": ".ant-btn-primary",
        "result_input": ".ant-modal-root .ant-input",
    }

    GENERATE_BUTTON_LABELS = ("Lấy link", "Get Link", "Generate")

    def __init__(self, emit: MessageEmitter):
        self._emit = emit

    def debug(self, handle: Optional[int], message: str) -> None:
        self._emit(handle, {"action": AgentAction.DEBUG_LOG.value, "message": message})

    async def on_page_loaded(self, handle: int, page: Page) -> None:
        """Entry point on every page load; only product offer pages need work."""
        if PRODUCT_OFFER_MARKER in page.url:
            await asyncio.sleep(WAIT_SECONDS_RENDER)
            await self.scrape_details(handle, page)
        elif CUSTOM_LINK_MARKER in page.url:
            self.debug(handle, "Ready for Custom Link Flow")

    async def on_command(self, handle: int, page: Page, command: Dict[str, Any]) -> None:
        if command.get("action") == AgentAction.EXECUTE_CUSTOM_LINK_FLOW.value:
            await self.generate_link(handle, page, command.get("url", ""), command.get("subId", ""))

    async def _text(self, page: Page, key: str) -> Optional[str]:
        try:
            locator = page.locator(self.SELECTORS[key]).first
            if await locator.count() == 0:
                return None
            return await locator.inner_text(timeout=TIMEOUT_MS_SELECTOR_CHECK)
        except PlaywrightError:
            return None

    async def scrape_details(self, handle: int, page: Page) -> Dict[str, Any]:
        """Scrape product details and signal them back."""
        self.debug(handle, "Detected Product Page. Scraping details...")

        try:
            await page.wait_for_selector(self.SELECTORS["name"], timeout=TIMEOUT_MS_ELEMENT_VISIBLE)
        except PlaywrightTimeout:
            self.debug(handle, "Could not find .name, maybe not fully loaded?")

        product_data: Dict[str, Any] = {}
        for key in ("name", "sold", "price", "cashback"):
            value = await self._text(page, key)
            if value:
                product_data[key] = value

        try:
            image = page.locator(self.SELECTORS["image"]).first
            if await image.count() > 0:
                src = await image.get_attribute("src", timeout=TIMEOUT_MS_SELECTOR_CHECK)
                if src:
                    product_data["image"] = src
        except PlaywrightError:
            pass

        self.debug(handle, f"Scraped Details: {product_data}")
        self._emit(handle, {"action": AgentAction.DETAILS_SCRAPED.value, "data": product_data})
        return product_data

    async def _find_generate_button(self, page: Page):
        buttons = page.locator(self.SELECTORS["generate_button"])
        count = await buttons.count()
        for i in range(count):
            button = buttons.nth(i)
            label = await button.inner_text(timeout=TIMEOUT_MS_SELECTOR_CHECK)
            if any(text in label for text in self.GENERATE_BUTTON_LABELS):
                return button
        if count > 0:
            return buttons.first
        return None

    async def _wait_for_value(self, page: Page, selector: str, timeout: float) -> Optional[str]:
        """Poll an input until it holds a non-empty value."""
        loop = asyncio.get_running_loop()
        end_time = loop.time() + timeout

        while loop.time() < end_time:
            try:
                locator = page.locator(selector).first
                if await locator.count() > 0:
                    value = await locator.input_value(timeout=TIMEOUT_MS_SELECTOR_CHECK)
                    if value and value.strip():
                        return value.strip()
            except PlaywrightError:
                pass
            await asyncio.sleep(0.5)
        return None

    async def generate_link(self, handle: int, page: Page, url: str, sub_id: str) -> Optional[str]:
        """Fill the custom link form and signal the generated link."""
        self.debug(handle, f"Handling Custom Link Page. URL: {url}, SubID: {sub_id}")

        try:
            link_input = page.locator(self.SELECTORS["link_input"]).first
            await link_input.wait_for(timeout=TIMEOUT_MS_ELEMENT_VISIBLE)
            await link_input.fill(url)
            self.debug(handle, "Found textarea.")

            sub_id_input = page.locator(self.SELECTORS["sub_id_input"]).first
            await sub_id_input.wait_for(timeout=TIMEOUT_MS_ELEMENT_VISIBLE)
            await sub_id_input.fill(sub_id)
            self.debug(handle, "Found SubID input.")

            await asyncio.sleep(WAIT_SECONDS_FORM_UPDATE)

            button = await self._find_generate_button(page)
            if button is None:
                raise RuntimeError("Generate button not found")
            self.debug(handle, "Clicking Generate button...")
            await button.click()

            self.debug(handle, "Waiting for result modal...")
            link = await self._wait_for_value(page, self.SELECTORS["result_input"], TIMEOUT_SECONDS_LINK_RESULT)
        except (PlaywrightError, RuntimeError) as e:
            self.debug(handle, f"Error in Custom Link flow: {e}")
            return None

        if not link:
            self.debug(handle, "Failed to generate link (timeout).")
            return None

        self.debug(handle, f"Generated Link: {link}")
        self._emit(handle, {"action": AgentAction.LINK_GENERATED.value, "link": link})
        return link
