"""
Unsubscribe strategy engine.

Given an unsubscribe URL, walks an ordered fallback chain until one stage
reaches a conclusive result:

1. plain GET (redirects, server/client errors)
2. JSON API responses
3. one-click pages that already confirm the unsubscribe
4. AI-directed browser automation
5. legacy AI form POST

Every stage returns a StageResult; only the final outcome leaves the engine.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

import httpx

from unsubscriber.config import get_settings
from unsubscriber.services import page_analyzer
from unsubscriber.services.ai import AIService, AIError, AIDirective
from unsubscriber.services.browser import (
    InteractiveSession,
    SessionError,
    SessionStartError,
    AutomationError,
    open_session,
    with_session,
)
from unsubscriber.services.page_analyzer import PageAnalysis, PageParseError
from unsubscriber.services.success import looks_like_success

logger = logging.getLogger(__name__)

JSON_SUCCESS_KEYS = ["success", "status", "result", "message", "unsubscribed"]
JSON_SUCCESS_VALUES = ["success", "ok", "unsubscribed"]

# Browser failures that say more than a generic legacy-stage failure
AUTOMATION_REASONS = {
    "session_start_failed",
    "navigation_failed",
    "fill_failed",
    "select_failed",
    "checkbox_failed",
    "click_failed",
    "submit_failed",
}
GENERIC_LEGACY_REASONS = {"ai_analysis_failed", "method_unknown", "unexpected_response"}


@dataclass
class UnsubscribeTarget:
    url: str
    source_message_id: Optional[int] = None


@dataclass
class UnsubscribeOutcome:
    success: bool
    method: str
    detail: str = ""

    @classmethod
    def succeeded(cls, method: str, detail: str = "") -> "UnsubscribeOutcome":
        return cls(success=True, method=method, detail=detail)

    @classmethod
    def failed(cls, reason: str, detail: str = "") -> "UnsubscribeOutcome":
        return cls(success=False, method=reason, detail=detail or reason)


@dataclass
class StageResult:
    """Tagged result of one stage: success, fallthrough or failure."""

    kind: str
    tag: str
    detail: str = ""
    response: Optional[httpx.Response] = field(default=None, repr=False)

    SUCCESS = "success"
    FALLTHROUGH = "fallthrough"
    FAILURE = "failure"

    @classmethod
    def success(cls, method: str, detail: str = "") -> "StageResult":
        return cls(cls.SUCCESS, method, detail)

    @classmethod
    def fallthrough(cls, reason: str, detail: str = "", response=None) -> "StageResult":
        return cls(cls.FALLTHROUGH, reason, detail, response)

    @classmethod
    def failure(cls, reason: str, detail: str = "") -> "StageResult":
        return cls(cls.FAILURE, reason, detail)

    @property
    def is_success(self) -> bool:
        return self.kind == self.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.kind == self.FAILURE

    def to_outcome(self) -> UnsubscribeOutcome:
        if self.is_success:
            return UnsubscribeOutcome.succeeded(self.tag, self.detail)
        return UnsubscribeOutcome.failed(self.tag, self.detail)


class UnsubscribeEngine:
    def __init__(
        self,
        ai_service: Optional[AIService] = None,
        session_opener=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = get_settings()
        self._ai_service = ai_service
        self.session_opener = session_opener or open_session
        self.transport = transport

    @property
    def ai_service(self) -> AIService:
        if self._ai_service is None:
            self._ai_service = AIService()
        return self._ai_service

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.settings.http_timeout,
            headers={"User-Agent": self.settings.user_agent},
            transport=self.transport,
        )

    async def attempt(self, target: UnsubscribeTarget) -> UnsubscribeOutcome:
        """Run the fallback chain for one target and return a definitive outcome."""
        logger.info("Attempting unsubscribe for message %s: %s", target.source_message_id, target.url)

        async with self._client() as client:
            fetched = await self._fetch(client, target.url)
            if fetched.kind != StageResult.FALLTHROUGH:
                return self._finish(target, fetched)

            response = fetched.response
            body = response.text or ""

            api_result = self._check_json(response, body)
            if api_result.is_success:
                return self._finish(target, api_result)

            if looks_like_success(body):
                return self._finish(target, StageResult.success("one_click", "Confirmation found on landing page"))

            reasons = []

            interactive = await self._interactive_stage(target, body)
            if interactive.is_success:
                return self._finish(target, interactive)
            reasons.append(interactive.tag)

            legacy = await self._legacy_form_stage(client, target, body)
            if legacy.is_success:
                return self._finish(target, legacy)
            reasons.append(legacy.tag)

        reason = _most_specific(interactive.tag, legacy.tag)
        return self._finish(target, StageResult.failure(reason, "; ".join(reasons)))

    def _finish(self, target: UnsubscribeTarget, result: StageResult) -> UnsubscribeOutcome:
        outcome = result.to_outcome()
        if outcome.success:
            logger.info("Unsubscribe succeeded for %s via %s", target.url, outcome.method)
        else:
            logger.warning("Unsubscribe failed for %s: %s (%s)", target.url, outcome.method, outcome.detail)
        return outcome

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> StageResult:
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            logger.error("Request to %s failed: %s", url, e)
            return StageResult.failure("network_error", f"{type(e).__name__}: {e}")

        status = response.status_code
        if 300 <= status < 400:
            # Visiting the link was enough for the list server to act
            return StageResult.success("redirect", f"HTTP {status}")
        if status >= 500:
            return StageResult.failure("server_error", f"HTTP {status}")
        if status >= 400:
            return StageResult.failure("client_error", f"HTTP {status}")
        if status < 200:
            return StageResult.failure("unexpected_response", f"HTTP {status}")

        return StageResult.fallthrough("fetched", f"HTTP {status}", response=response)

    def _check_json(self, response: httpx.Response, body: str) -> StageResult:
        content_type = response.headers.get("content-type", "").lower()
        stripped = body.strip()
        if "json" not in content_type and not stripped.startswith(("{", "[")):
            return StageResult.fallthrough("not_json")

        try:
            data = json.loads(stripped)
        except ValueError:
            # Mislabelled or truncated: treat the body as a page
            logger.debug("Body looked like JSON but did not parse")
            return StageResult.fallthrough("invalid_json")

        if isinstance(data, dict) and any(_is_affirmative(data.get(key)) for key in JSON_SUCCESS_KEYS):
            return StageResult.success("api_json", "API reported success")

        logger.info("JSON response received but success unclear: %s", stripped[:200])
        return StageResult.success("api_json_uncertain", "API returned 200 without an explicit success field")

    async def _interactive_stage(self, target: UnsubscribeTarget, html: str) -> StageResult:
        try:
            analysis = page_analyzer.analyze(html)
        except PageParseError as e:
            return StageResult.fallthrough("form_parse_failed", str(e))

        try:
            directive = await self.ai_service.resolve_directive(page_analyzer.simplify(analysis))
        except AIError as e:
            logger.warning("AI page analysis failed: %s", e)
            return StageResult.fallthrough("ai_analysis_failed", str(e))

        if directive.strategy == "unknown":
            logger.info("AI could not determine an unsubscribe path: %s", directive.reason)
            return StageResult.fallthrough("unknown_strategy", directive.reason or "")

        async def drive(session: InteractiveSession) -> StageResult:
            return await self._drive_session(session, target.url, directive, analysis)

        try:
            return await with_session(drive, opener=self.session_opener)
        except SessionStartError as e:
            return StageResult.fallthrough("session_start_failed", str(e))
        except SessionError as e:
            return StageResult.fallthrough(e.reason, str(e))

    async def _drive_session(
        self,
        session: InteractiveSession,
        url: str,
        directive: AIDirective,
        analysis: PageAnalysis,
    ) -> StageResult:
        await session.navigate_to(url, self.settings.page_load_timeout_ms)

        try:
            await self._dispatch(session, directive, analysis)
        except AutomationError as e:
            logger.warning("Browser automation failed at %s: %s", e.reason, e)
            await session.screenshot(f"unsubscribe_{e.reason}")
            raise

        if looks_like_success(await session.page_text()):
            return StageResult.success("browser_automation_confirmed", f"{directive.strategy} confirmed")
        return StageResult.success("browser_automation", f"{directive.strategy} completed without confirmation")

    async def _dispatch(self, session: InteractiveSession, directive: AIDirective, analysis: PageAnalysis) -> None:
        if directive.strategy == "form_submit":
            for item in directive.fields:
                await session.fill_field(item.selector, item.value)
            for item in directive.selects:
                await session.select_option(item.selector, item.value)
            for item in directive.checkboxes:
                await session.toggle_checkbox(item.selector, item.checked)
            await session.submit_form(_form_selector(directive, analysis), directive.submit_selector)
        elif directive.strategy == "button_click":
            await session.click(directive.submit_selector or "button")
        elif directive.strategy == "link_click":
            await session.click(directive.link_selector or "a")
        else:
            raise AutomationError(f"Unsupported strategy {directive.strategy}", reason="unknown_strategy")

        await session.settle()

    async def _legacy_form_stage(self, client: httpx.AsyncClient, target: UnsubscribeTarget, html: str) -> StageResult:
        try:
            directive = await self.ai_service.resolve_simple(html)
        except AIError as e:
            logger.warning("Legacy AI analysis failed: %s", e)
            return StageResult.failure("ai_analysis_failed", str(e))

        if directive.method == "button_click":
            logger.info("Page requires a button click, which plain HTTP cannot do")
            return StageResult.failure("requires_browser")
        if directive.method == "unknown":
            return StageResult.failure("method_unknown", directive.reason or "")
        if directive.method != "form_submit" or not isinstance(directive.form_data, dict):
            logger.warning("Unexpected AI response format: %s", directive)
            return StageResult.failure("unexpected_response", directive.method)

        form_data = {
            str(key): "" if value is None else str(value)
            for key, value in directive.form_data.items()
        }
        logger.info("Attempting form submission with fields: %s", sorted(form_data))
        try:
            response = await client.post(target.url, data=form_data)
        except httpx.HTTPError as e:
            logger.error("Form submission error: %s", e)
            return StageResult.failure("form_submit_failed", str(e))

        if not 200 <= response.status_code < 300:
            logger.warning("Form submission returned status: %s", response.status_code)
            return StageResult.failure("form_submit_failed", f"HTTP {response.status_code}")

        if looks_like_success(response.text):
            return StageResult.success("form_submit_confirmed", f"HTTP {response.status_code}")
        return StageResult.success("form_submit", f"HTTP {response.status_code}")


def _is_affirmative(value) -> bool:
    if value is True:
        return True
    if isinstance(value, str):
        if value in JSON_SUCCESS_VALUES:
            return True
        return bool(re.search(r"success|unsubscribe|removed", value, re.IGNORECASE))
    return False


def _form_selector(directive: AIDirective, analysis: PageAnalysis) -> str:
    index = directive.form_index
    if index is None or not 0 <= index < len(analysis.forms):
        return "form"
    form = analysis.forms[index]
    if form.id:
        return page_analyzer.id_selector(form.id, "form")
    return f"form >> nth={index}"



def _most_specific(interactive_reason: str, legacy_reason: str) -> str:
    if interactive_reason in AUTOMATION_REASONS and legacy_reason in GENERIC_LEGACY_REASONS:
        return interactive_reason
    return legacy_reason
