from __future__ import annotations

import pytest

from affilink.events import EventType, event_broker
from affilink.sessions import SessionState

PRODUCT_URL = "https://x/product/1/999"
OFFER_URL = "https://aff.example/offer/product_offer/999"
CUSTOM_LINK_URL = "https://aff.example/offer/custom_link"


@pytest.mark.asyncio
async def test_product_url_end_to_end(workflow, store, host, reporter) -> None:
    session = await workflow.start(PRODUCT_URL, "r1", "u1")
    assert session is not None
    handle = session.surface_handle

    assert host.navigations == [(handle, OFFER_URL)]
    assert store.get(handle) is session
    assert session.sub_id is None
    assert not session.is_direct_link

    await workflow.on_details_scraped(handle, {"name": "A"})
    await workflow.drain()
    assert host.navigations[-1] == (handle, CUSTOM_LINK_URL)
    assert session.state == SessionState.SCRAPED
    sub_id = session.sub_id
    assert sub_id

    await workflow.on_navigation_completed(handle, CUSTOM_LINK_URL)
    assert host.commands == [
        (handle, {"action": "EXECUTE_CUSTOM_LINK_FLOW", "url": PRODUCT_URL, "subId": sub_id})
    ]

    assert await workflow.on_link_generated(handle, "L") is True
    await workflow.drain()

    assert len(reporter.payloads) == 1
    wire = reporter.payloads[0].to_wire()
    assert wire == {
        "link": "L",
        "data": {"name": "A"},
        "requestId": "r1",
        "subId": sub_id,
        "originalUrl": PRODUCT_URL,
        "userId": "u1",
    }
    assert not store.has(handle)
    assert host.closed == [handle]
    assert session.state == SessionState.REPORTED


@pytest.mark.asyncio
async def test_direct_link_skips_scraping(workflow, store, host, reporter) -> None:
    session = await workflow.start("https://shopee.vn/m/flash-sale", "r2", "u2")
    handle = session.surface_handle

    assert session.is_direct_link
    assert session.sub_id
    sub_id = session.sub_id
    assert host.navigations == [(handle, CUSTOM_LINK_URL)]

    await workflow.on_navigation_completed(handle, CUSTOM_LINK_URL + "?lang=vi")
    assert host.commands[0][1]["subId"] == sub_id
    assert host.commands[0][1]["url"] == "https://shopee.vn/m/flash-sale"

    await workflow.on_link_generated(handle, "https://s.shopee.vn/abc")
    await workflow.drain()
    wire = reporter.payloads[0].to_wire()
    assert wire["data"] is None
    assert wire["subId"] == sub_id
    assert not store.has(handle)


@pytest.mark.asyncio
async def test_sub_id_stable_across_redundant_signals(workflow, host) -> None:
    session = await workflow.start(PRODUCT_URL, "r1", "u1")
    handle = session.surface_handle

    await workflow.on_details_scraped(handle, {"name": "A"})
    sub_id = session.sub_id

    await workflow.on_details_scraped(handle, {"name": "B"})
    await workflow.on_navigation_completed(handle, CUSTOM_LINK_URL)
    await workflow.on_navigation_completed(handle, CUSTOM_LINK_URL)

    assert session.sub_id == sub_id
    assert session.product_data == {"name": "A"}
    # Redundant page loads re-issue the command with the same sub ID
    assert [command["subId"] for _, command in host.commands] == [sub_id, sub_id]
    await workflow.drain()
    # The repeated scrape did not navigate again
    assert host.navigations.count((handle, CUSTOM_LINK_URL)) == 1


@pytest.mark.asyncio
async def test_navigation_to_other_pages_is_ignored(workflow, host) -> None:
    session = await workflow.start(PRODUCT_URL, "r1", "u1")
    await workflow.on_navigation_completed(session.surface_handle, OFFER_URL)
    await workflow.on_navigation_completed(session.surface_handle, "")

    assert host.commands == []
    assert session.state == SessionState.SURFACE_OPENED


@pytest.mark.asyncio
async def test_navigation_for_unknown_surface_is_ignored(workflow, host) -> None:
    await workflow.on_navigation_completed(555, CUSTOM_LINK_URL)
    assert host.commands == []


@pytest.mark.asyncio
async def test_orphan_link_generated_changes_nothing(workflow, store, host, reporter) -> None:
    session = await workflow.start(PRODUCT_URL, "r1", "u1")

    assert await workflow.on_link_generated(999, "L") is False

    assert reporter.payloads == []
    assert host.closed == []
    assert store.get(session.surface_handle) is session
    assert session.state == SessionState.SURFACE_OPENED


@pytest.mark.asyncio
async def test_orphan_details_scraped_creates_nothing(workflow, store, host) -> None:
    await workflow.on_details_scraped(999, {"name": "A"})
    assert not store.has(999)
    assert host.navigations == []


@pytest.mark.asyncio
async def test_empty_link_is_ignored(workflow, store, reporter) -> None:
    session = await workflow.start(PRODUCT_URL, "r1", "u1")
    assert await workflow.on_link_generated(session.surface_handle, "") is False
    assert reporter.payloads == []
    assert store.has(session.surface_handle)


@pytest.mark.asyncio
async def test_report_failure_still_retires_session(workflow, store, host, reporter) -> None:
    reporter.succeed = False
    session = await workflow.start(PRODUCT_URL, "r1", "u1")
    handle = session.surface_handle

    assert await workflow.on_link_generated(handle, "L") is True
    assert not store.has(handle)
    await workflow.drain()
    assert host.closed == [handle]

    # A late duplicate is an orphan now
    assert await workflow.on_link_generated(handle, "L") is False
    await workflow.drain()
    assert len(reporter.payloads) == 1


@pytest.mark.asyncio
async def test_start_failure_leaves_no_session(workflow, store, host) -> None:
    host.fail_open = True
    assert await workflow.start(PRODUCT_URL, "r1", "u1") is None
    assert len(store) == 0
    assert host.navigations == []


@pytest.mark.asyncio
async def test_each_request_gets_its_own_surface(workflow, store) -> None:
    first = await workflow.start(PRODUCT_URL, "r1", "u1")
    second = await workflow.start(PRODUCT_URL, "r2", "u2")

    assert first.surface_handle != second.surface_handle
    assert len(store) == 2


@pytest.mark.asyncio
async def test_reap_expired_abandons_old_sessions(workflow, store, host, clock) -> None:
    old = await workflow.start(PRODUCT_URL, "r1", "u1")
    clock.now += 200
    fresh = await workflow.start(PRODUCT_URL, "r2", "u2")
    clock.now += 150

    reaped = await workflow.reap_expired()

    assert reaped == [old.surface_handle]
    assert old.state == SessionState.ABANDONED
    assert not store.has(old.surface_handle)
    assert store.has(fresh.surface_handle)
    assert host.closed == [old.surface_handle]


@pytest.mark.asyncio
async def test_reporter_crash_still_closes_surface(workflow, store, host, reporter) -> None:
    session = await workflow.start(PRODUCT_URL, "r1", "u1")

    async def broken_report(payload):
        raise RuntimeError("socket closed")

    reporter.report = broken_report

    assert await workflow.on_link_generated(session.surface_handle, "L") is True
    await workflow.drain()

    assert host.closed == [session.surface_handle]
    assert workflow.pending_tasks == 0


@pytest.mark.asyncio
async def test_start_logs_each_state_change(workflow) -> None:
    session = await workflow.start(PRODUCT_URL, "r9", "u9")

    steps = [e.step for e in await event_broker.get_history(20, event_type=EventType.STATE_CHANGE)]
    assert steps[-2:] == [SessionState.RESOLVING.value, SessionState.SURFACE_OPENED.value]
    assert session.state == SessionState.SURFACE_OPENED
