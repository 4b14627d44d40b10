from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from unsubscriber.services.ai import AIDirective, AIError, SimpleDirective
from unsubscriber.services.browser import AutomationError, SessionStartError
from unsubscriber.services.unsubscribe import UnsubscribeEngine, UnsubscribeTarget


URL = "https://lists.example.com/unsubscribe?u=1"

FORM_PAGE = """
<html><body>
  <h1>Unsubscribe</h1>
  <form id="unsub-form" method="post">
    <input type="email" name="email">
    <input type="checkbox" id="all">
    <button type="submit">Confirm</button>
  </form>
</body></html>
"""


class FakeSession:
    def __init__(self, text="Your preferences have been updated.", fail_on=None):
        self.text = text
        self.fail_on = fail_on
        self.calls = []

    async def navigate_to(self, url, timeout_ms=None):
        if self.fail_on == "navigate":
            raise AutomationError(f"Could not load {url}", reason="navigation_failed")
        self.calls.append(("navigate", url))

    async def fill_field(self, selector, value):
        self.calls.append(("fill", selector, value))

    async def select_option(self, selector, value):
        self.calls.append(("select", selector, value))

    async def toggle_checkbox(self, selector, checked=True):
        self.calls.append(("check", selector, checked))

    async def submit_form(self, form_selector="form", submit_selector=None):
        self.calls.append(("submit", form_selector, submit_selector))

    async def click(self, selector):
        if self.fail_on == "click":
            raise AutomationError(f"Could not click {selector}", reason="click_failed")
        self.calls.append(("click", selector))

    async def settle(self, seconds=None):
        self.calls.append(("settle",))

    async def page_text(self):
        return self.text

    async def screenshot(self, label="debug"):
        self.calls.append(("screenshot", label))
        return None


def opener_for(session):
    @asynccontextmanager
    async def opener():
        yield session
    return opener


def failing_opener():
    @asynccontextmanager
    async def opener():
        raise SessionStartError("chromium missing")
        yield
    return opener


def make_ai(directive=None, simple=None):
    ai = MagicMock()
    ai.resolve_directive = AsyncMock(
        return_value=directive or AIDirective(strategy="unknown", reason="nothing found")
    )
    ai.resolve_simple = AsyncMock(
        return_value=simple or SimpleDirective(method="unknown", reason="nothing found")
    )
    return ai


def make_engine(handler, ai=None, opener=None):
    return UnsubscribeEngine(
        ai_service=ai or make_ai(),
        session_opener=opener or failing_opener(),
        transport=httpx.MockTransport(handler),
    )


def html_page(body, status=200):
    def handler(request):
        return httpx.Response(status, text=body, headers={"content-type": "text/html"})
    return handler


@pytest.mark.asyncio
@pytest.mark.parametrize("status,reason", [
    (500, "server_error"),
    (503, "server_error"),
    (404, "client_error"),
    (410, "client_error"),
])
async def test_error_statuses_fail_without_ai(status, reason):
    ai = make_ai()
    engine = make_engine(html_page("error", status=status), ai=ai)

    outcome = await engine.attempt(UnsubscribeTarget(url=URL, source_message_id=1))

    assert outcome.success is False
    assert outcome.method == reason
    ai.resolve_directive.assert_not_awaited()
    ai.resolve_simple.assert_not_awaited()


@pytest.mark.asyncio
async def test_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    outcome = await make_engine(handler).attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is False
    assert outcome.method == "network_error"


@pytest.mark.asyncio
async def test_terminal_redirect_counts_as_success():
    def handler(request):
        return httpx.Response(304)

    outcome = await make_engine(handler).attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is True
    assert outcome.method == "redirect"


@pytest.mark.asyncio
async def test_redirect_is_followed_to_confirmation_page():
    def handler(request):
        if request.url.path == "/unsubscribe":
            return httpx.Response(302, headers={"location": "https://lists.example.com/done"})
        return httpx.Response(200, text="<p>You have been unsubscribed.</p>")

    outcome = await make_engine(handler).attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is True
    assert outcome.method == "one_click"


@pytest.mark.asyncio
async def test_one_click_confirmation_skips_ai():
    ai = make_ai()
    engine = make_engine(html_page("<p>Thanks, you're unsubscribed!</p>"), ai=ai)

    outcome = await engine.attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is True
    assert outcome.method == "one_click"
    ai.resolve_directive.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("payload,method", [
    ({"success": True}, "api_json"),
    ({"status": "ok"}, "api_json"),
    ({"message": "You were removed"}, "api_json"),
    ({"status": "pending"}, "api_json_uncertain"),
    ({"id": 42}, "api_json_uncertain"),
    ([1, 2, 3], "api_json_uncertain"),
])
async def test_json_responses(payload, method):
    def handler(request):
        return httpx.Response(200, json=payload)

    outcome = await make_engine(handler).attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is True
    assert outcome.method == method


@pytest.mark.asyncio
async def test_invalid_json_falls_through_to_page_analysis():
    ai = make_ai()
    engine = make_engine(html_page("{not json"), ai=ai)

    outcome = await engine.attempt(UnsubscribeTarget(url=URL))

    ai.resolve_directive.assert_awaited_once()
    ai.resolve_simple.assert_awaited_once()
    assert outcome.success is False
    assert outcome.method == "method_unknown"
    assert outcome.detail == "unknown_strategy; method_unknown"


@pytest.mark.asyncio
async def test_unknown_strategy_does_not_open_browser():
    opened = []

    @asynccontextmanager
    async def opener():
        opened.append(True)
        yield FakeSession()

    engine = make_engine(html_page(FORM_PAGE), opener=opener)
    outcome = await engine.attempt(UnsubscribeTarget(url=URL))

    assert opened == []
    assert outcome.method == "method_unknown"


@pytest.mark.asyncio
async def test_form_submit_directive_drives_browser():
    directive = AIDirective(
        strategy="form_submit",
        form_index=0,
        fields=[{"selector": "input[name='email'][type='email']", "value": "user@example.com"}],
        selects=[{"selector": "select[name='reason']", "value": "other"}],
        checkboxes=[{"selector": "#all", "checked": True}],
        submit_selector="button[type='submit']",
        confidence="high",
    )
    ai = make_ai(directive=directive)
    session = FakeSession(text="Your preferences have been updated.")
    engine = make_engine(html_page(FORM_PAGE), ai=ai, opener=opener_for(session))

    outcome = await engine.attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is True
    assert outcome.method == "browser_automation_confirmed"
    assert session.calls == [
        ("navigate", URL),
        ("fill", "input[name='email'][type='email']", "user@example.com"),
        ("select", "select[name='reason']", "other"),
        ("check", "#all", True),
        ("submit", "#unsub-form", "button[type='submit']"),
        ("settle",),
    ]
    ai.resolve_simple.assert_not_awaited()

    page = ai.resolve_directive.call_args.args[0]
    assert page["forms"][0]["index"] == 0


@pytest.mark.asyncio
async def test_button_click_without_confirmation():
    directive = AIDirective(strategy="button_click", submit_selector="#unsub")
    session = FakeSession(text="Thanks!")
    engine = make_engine(html_page(FORM_PAGE), ai=make_ai(directive=directive), opener=opener_for(session))

    outcome = await engine.attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is True
    assert outcome.method == "browser_automation"
    assert ("click", "#unsub") in session.calls


@pytest.mark.asyncio
async def test_automation_failure_falls_back_to_legacy_post():
    directive = AIDirective(strategy="link_click", link_selector="#optout")
    simple = SimpleDirective(method="form_submit", form_data={"email": "user@example.com", "all": 1})
    session = FakeSession(fail_on="click")
    posted = []

    def handler(request):
        if request.method == "POST":
            posted.append(request.content)
            return httpx.Response(200, text="You have been removed from all lists")
        return httpx.Response(200, text=FORM_PAGE)

    engine = make_engine(handler, ai=make_ai(directive=directive, simple=simple), opener=opener_for(session))
    outcome = await engine.attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is True
    assert outcome.method == "form_submit_confirmed"
    assert ("screenshot", "unsubscribe_click_failed") in session.calls
    assert posted == [b"email=user%40example.com&all=1"]


@pytest.mark.asyncio
async def test_legacy_post_without_confirmation():
    simple = SimpleDirective(method="form_submit", form_data={"email": "user@example.com"})

    def handler(request):
        if request.method == "POST":
            return httpx.Response(201, text="ok")
        return httpx.Response(200, text=FORM_PAGE)

    outcome = await make_engine(handler, ai=make_ai(simple=simple)).attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is True
    assert outcome.method == "form_submit"


@pytest.mark.asyncio
async def test_legacy_post_error_status():
    simple = SimpleDirective(method="form_submit", form_data={"email": "user@example.com"})

    def handler(request):
        if request.method == "POST":
            return httpx.Response(500, text="oops")
        return httpx.Response(200, text=FORM_PAGE)

    outcome = await make_engine(handler, ai=make_ai(simple=simple)).attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is False
    assert outcome.method == "form_submit_failed"


@pytest.mark.asyncio
async def test_session_start_failure_then_button_click_requires_browser():
    directive = AIDirective(strategy="button_click", submit_selector="#unsub")
    simple = SimpleDirective(method="button_click", selector="#unsub")
    engine = make_engine(
        html_page(FORM_PAGE),
        ai=make_ai(directive=directive, simple=simple),
        opener=failing_opener(),
    )

    outcome = await engine.attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is False
    assert outcome.method == "requires_browser"
    assert outcome.detail == "session_start_failed; requires_browser"


@pytest.mark.asyncio
async def test_ai_failures():
    ai = MagicMock()
    ai.resolve_directive = AsyncMock(side_effect=AIError("timeout"))
    ai.resolve_simple = AsyncMock(side_effect=AIError("timeout"))
    engine = make_engine(html_page(FORM_PAGE), ai=ai)

    outcome = await engine.attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is False
    assert outcome.method == "ai_analysis_failed"
    assert outcome.detail == "ai_analysis_failed; ai_analysis_failed"


@pytest.mark.asyncio
async def test_unexpected_legacy_response():
    simple = SimpleDirective(method="form_submit", form_data=None)
    engine = make_engine(html_page(FORM_PAGE), ai=make_ai(simple=simple))

    outcome = await engine.attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is False
    assert outcome.method == "unexpected_response"


@pytest.mark.asyncio
async def test_empty_page_reports_parse_failure():
    ai = make_ai()
    engine = make_engine(html_page("   "), ai=ai)

    outcome = await engine.attempt(UnsubscribeTarget(url=URL))

    ai.resolve_directive.assert_not_awaited()
    assert outcome.success is False
    assert outcome.detail == "form_parse_failed; method_unknown"


@pytest.mark.asyncio
async def test_browser_failure_reason_outranks_generic_legacy_failure():
    directive = AIDirective(strategy="button_click", submit_selector="#unsub")
    ai = make_ai(directive=directive)
    ai.resolve_simple = AsyncMock(side_effect=AIError("timeout"))
    session = FakeSession(fail_on="navigate")
    engine = make_engine(html_page(FORM_PAGE), ai=ai, opener=opener_for(session))

    outcome = await engine.attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is False
    assert outcome.method == "navigation_failed"
    assert outcome.detail == "navigation_failed; ai_analysis_failed"


@pytest.mark.asyncio
async def test_form_with_non_identifier_id_is_selected_by_attribute():
    page = FORM_PAGE.replace('id="unsub-form"', 'id="1form"')
    directive = AIDirective(strategy="form_submit", form_index=0, submit_selector="button[type='submit']")
    session = FakeSession()
    engine = make_engine(html_page(page), ai=make_ai(directive=directive), opener=opener_for(session))

    outcome = await engine.attempt(UnsubscribeTarget(url=URL))

    assert outcome.success is True
    assert ("submit", "form[id='1form']", "button[type='submit']") in session.calls
