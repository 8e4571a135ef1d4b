from __future__ import annotations

from typing import Dict, List, Optional

import pytest

import affilink.agent as agent_module
from affilink.agent import AffiliateAgent
from playwright.async_api import TimeoutError as PlaywrightTimeout


class FakeElement:
    def __init__(self, text: str = "", attrs: Optional[Dict[str, str]] = None, value: str = "") -> None:
        self.text = text
        self.attrs = attrs or {}
        self.value = value
        self.clicked = False


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str, index: int = 0) -> None:
        self.page = page
        self.selector = selector
        self.index = index

    def _elements(self) -> List[FakeElement]:
        return self.page.elements.get(self.selector, [])

    def _element(self) -> FakeElement:
        elements = self._elements()
        if self.index >= len(elements):
            raise PlaywrightTimeout(f"{self.selector} not found")
        return elements[self.index]

    @property
    def first(self) -> "FakeLocator":
        return FakeLocator(self.page, self.selector, 0)

    def nth(self, index: int) -> "FakeLocator":
        return FakeLocator(self.page, self.selector, index)

    async def count(self) -> int:
        return len(self._elements())

    async def inner_text(self, timeout: int = 0) -> str:
        return self._element().text

    async def get_attribute(self, name: str, timeout: int = 0) -> Optional[str]:
        return self._element().attrs.get(name)

    async def input_value(self, timeout: int = 0) -> str:
        return self._element().value

    async def wait_for(self, timeout: int = 0) -> None:
        self._element()

    async def fill(self, value: str) -> None:
        self._element().value = value

    async def click(self) -> None:
        element = self._element()
        element.clicked = True
        if self.page.on_click is not None:
            self.page.on_click(element)


class FakePage:
    def __init__(self, url: str, elements: Dict[str, List[FakeElement]]) -> None:
        self.url = url
        self.elements = elements
        self.on_click = None

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    async def wait_for_selector(self, selector: str, timeout: int = 0) -> None:
        if not self.elements.get(selector):
            raise PlaywrightTimeout(f"{selector} not found")


@pytest.fixture
def emitted():
    return []


@pytest.fixture
def agent(emitted, monkeypatch) -> AffiliateAgent:
    monkeypatch.setattr(agent_module, "WAIT_SECONDS_RENDER", 0)
    monkeypatch.setattr(agent_module, "WAIT_SECONDS_FORM_UPDATE", 0)
    monkeypatch.setattr(agent_module, "TIMEOUT_SECONDS_LINK_RESULT", 0.2)
    return AffiliateAgent(emit=lambda handle, message: emitted.append((handle, message)))


def _actions(emitted, action: str):
    return [message for _, message in emitted if message["action"] == action]


@pytest.mark.asyncio
async def test_product_page_is_scraped(agent, emitted) -> None:
    page = FakePage(
        "https://affiliate.shopee.vn/offer/product_offer/999",
        {
            ".name": [FakeElement("Kettle")],
            ".price": [FakeElement("₫199.000")],
            ".ItemCardSold__wrap span": [FakeElement("1,2k sold")],
            "img.offer-img": [FakeElement(attrs={"src": "https://cf.shopee.vn/file/img"})],
        },
    )

    await agent.on_page_loaded(7, page)

    scraped = _actions(emitted, "DETAILS_SCRAPED")
    assert scraped == [{
        "action": "DETAILS_SCRAPED",
        "data": {
            "name": "Kettle",
            "sold": "1,2k sold",
            "price": "₫199.000",
            "image": "https://cf.shopee.vn/file/img",
        },
    }]
    assert all(handle == 7 for handle, _ in emitted)


@pytest.mark.asyncio
async def test_scrape_still_reports_when_page_is_empty(agent, emitted) -> None:
    page = FakePage("https://affiliate.shopee.vn/offer/product_offer/1", {})
    await agent.on_page_loaded(1, page)

    assert _actions(emitted, "DETAILS_SCRAPED")[0]["data"] == {}
    assert any("Could not find .name" in m["message"] for m in _actions(emitted, "DEBUG_LOG"))


@pytest.mark.asyncio
async def test_custom_link_page_waits_for_command(agent, emitted) -> None:
    page = FakePage("https://affiliate.shopee.vn/offer/custom_link", {})
    await agent.on_page_loaded(2, page)

    assert _actions(emitted, "DETAILS_SCRAPED") == []
    assert _actions(emitted, "DEBUG_LOG")[-1]["message"] == "Ready for Custom Link Flow"


def _custom_link_page() -> FakePage:
    result = FakeElement()
    page = FakePage(
        "https://affiliate.shopee.vn/offer/custom_link",
        {
            "textarea.ant-input": [FakeElement()],
            "input#customLink_sub_id1": [FakeElement()],
            ".ant-btn-primary": [FakeElement("Search"), FakeElement("Get Link")],
            ".ant-modal-root .ant-input": [result],
        },
    )

    def on_click(element: FakeElement) -> None:
        if element.text == "Get Link":
            result.value = "https://s.shopee.vn/abc"

    page.on_click = on_click
    return page


@pytest.mark.asyncio
async def test_custom_link_flow_generates_link(agent, emitted) -> None:
    page = _custom_link_page()

    await agent.on_command(4, page, {
        "action": "EXECUTE_CUSTOM_LINK_FLOW",
        "url": "https://x/product/1/999",
        "subId": "sub123",
    })

    assert page.elements["textarea.ant-input"][0].value == "https://x/product/1/999"
    assert page.elements["input#customLink_sub_id1"][0].value == "sub123"
    assert not page.elements[".ant-btn-primary"][0].clicked
    assert _actions(emitted, "LINK_GENERATED") == [{"action": "LINK_GENERATED", "link": "https://s.shopee.vn/abc"}]


@pytest.mark.asyncio
async def test_custom_link_flow_times_out_without_signal(agent, emitted) -> None:
    page = _custom_link_page()
    page.on_click = None

    link = await agent.generate_link(4, page, "https://x/product/1/999", "sub123")

    assert link is None
    assert _actions(emitted, "LINK_GENERATED") == []
    assert _actions(emitted, "DEBUG_LOG")[-1]["message"] == "Failed to generate link (timeout)."


@pytest.mark.asyncio
async def test_custom_link_flow_reports_missing_form(agent, emitted) -> None:
    page = FakePage("https://affiliate.shopee.vn/offer/custom_link", {})

    assert await agent.generate_link(4, page, "https://x", "s") is None
    assert _actions(emitted, "LINK_GENERATED") == []
    assert "Error in Custom Link flow" in _actions(emitted, "DEBUG_LOG")[-1]["message"]


@pytest.mark.asyncio
async def test_unknown_command_is_ignored(agent, emitted) -> None:
    await agent.on_command(4, _custom_link_page(), {"action": "SOMETHING"})
    assert emitted == []
