"""
Tests for the Playwright page probe (no browser required)
"""

import pytest
from playwright.async_api import Error as PlaywrightError

from webpilot.errors import ActionNotFoundError, ProbeError, SurfaceGoneError
from webpilot.models import NextAction
from webpilot.tools.page_probe import (
    RESTRICTED_NOTICE,
    PlaywrightPageProbe,
    hash_content,
    is_restricted_url,
    navigation_url,
)


class DummyPage:
    def __init__(self, url="https://example.com/", result=None, error=None):
        self.url = url
        self.result = result
        self.error = error
        self.closed = False
        self.handlers = {}
        self.scripts = []

    def on(self, event, handler):
        self.handlers[event] = handler

    def is_closed(self):
        return self.closed

    async def evaluate(self, script, args=None):
        self.scripts.append((script, args))
        if self.error:
            raise self.error
        return self.result


def test_restricted_urls():
    assert is_restricted_url("chrome://settings")
    assert is_restricted_url("about:blank")
    assert is_restricted_url("")
    assert not is_restricted_url("https://example.com")


def test_navigation_url_prefers_url_like_field():
    assert navigation_url(NextAction(kind="navigate", target="search box", value="https://a.com")) == "https://a.com"
    assert navigation_url(NextAction(kind="navigate", target="www.b.com")) == "https://www.b.com"


@pytest.mark.asyncio
async def test_snapshot_hash_tracks_page_content():
    page = DummyPage(
        result={
            "url": "https://example.com/",
            "title": "Example",
            "text": "Hello",
            "dom_tree": '<button ai-id="1">Go</button>',
            "elements": [{"ai_id": "1", "tag": "button", "role": "button", "label": "Go"}],
        }
    )
    probe = PlaywrightPageProbe()
    sid = probe.register(page)

    snapshot = await probe.get_snapshot(sid)

    assert sid == "tab-1"
    assert snapshot.title == "Example"
    assert snapshot.content_hash == hash_content("https://example.com/", '<button ai-id="1">Go</button>', "Hello")
    assert await probe.content_hash(sid) == snapshot.content_hash


@pytest.mark.asyncio
async def test_restricted_page_is_not_evaluated():
    page = DummyPage(url="chrome://newtab/")
    probe = PlaywrightPageProbe()
    snapshot = await probe.get_snapshot(probe.register(page))
    assert snapshot.restricted is True
    assert snapshot.text == RESTRICTED_NOTICE
    assert page.scripts == []


@pytest.mark.asyncio
async def test_click_missing_element_raises_not_found():
    probe = PlaywrightPageProbe()
    sid = probe.register(DummyPage(result={"found": False}))
    with pytest.raises(ActionNotFoundError):
        await probe.click(sid, "ai-404")


@pytest.mark.asyncio
async def test_click_reports_links():
    probe = PlaywrightPageProbe()
    sid = probe.register(DummyPage(result={"found": True, "is_link": True}))
    outcome = await probe.perform(sid, NextAction(kind="click", target="ai-3"))
    assert outcome == {"is_link": True}


@pytest.mark.asyncio
async def test_evaluate_errors_map_to_probe_errors():
    probe = PlaywrightPageProbe()
    page = DummyPage(error=PlaywrightError("Execution context was destroyed"))
    sid = probe.register(page)
    with pytest.raises(ProbeError):
        await probe.get_snapshot(sid)

    page.closed = True
    with pytest.raises(SurfaceGoneError):
        await probe.get_snapshot(sid)


@pytest.mark.asyncio
async def test_stability_wait_failure_is_not_fatal():
    probe = PlaywrightPageProbe()
    sid = probe.register(DummyPage(error=PlaywrightError("navigation")))
    assert await probe.wait_for_stability(sid, 0.5, 2.0) is False


@pytest.mark.asyncio
async def test_unknown_kind_rejected_by_perform():
    probe = PlaywrightPageProbe()
    sid = probe.register(DummyPage())
    with pytest.raises(ProbeError):
        await probe.perform(sid, NextAction(kind="hover", target="x"))


def test_page_events_are_emitted():
    events = []
    probe = PlaywrightPageProbe()
    probe.subscribe(events.append)
    page = DummyPage(url="https://example.com/next")
    sid = probe.register(page)

    page.handlers["load"](page)
    page.handlers["close"](page)

    assert [(e.kind, e.surface_id) for e in events] == [("page_loaded", sid), ("surface_closed", sid)]
    assert events[0].payload["url"] == "https://example.com/next"
    with pytest.raises(SurfaceGoneError):
        probe.get_page(sid)
