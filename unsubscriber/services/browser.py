"""
Scoped headless-browser sessions for unsubscribe pages that need real
interaction (clicks, form fills, JavaScript-driven submits).

Browser sessions are memory heavy, so every session goes through a global
SessionLimiter; by default at most one session runs at a time.
"""
import asyncio
import logging
import os
import re
import time
from contextlib import asynccontextmanager
from typing import Optional

from playwright.async_api import async_playwright, Page

from unsubscriber.config import get_settings

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Raised when work inside a browser session fails."""

    reason = "session_failed"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message or reason or self.reason)
        if reason:
            self.reason = reason


class SessionStartError(SessionError):
    reason = "session_start_failed"


class AutomationError(SessionError):
    """A single browser operation (navigate, fill, click, submit) failed."""

    reason = "automation_failed"


class SessionLimiter:
    """Counting semaphore for browser sessions, with in-flight bookkeeping."""

    def __init__(self, max_sessions: int):
        self.max_sessions = max_sessions
        self.in_flight = 0
        self.peak = 0
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._loop = None

    def _get_semaphore(self) -> asyncio.Semaphore:
        # asyncio primitives are bound to one event loop
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_sessions)
            self._loop = loop
        return self._semaphore

    @asynccontextmanager
    async def slot(self):
        semaphore = self._get_semaphore()
        async with semaphore:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            try:
                yield
            finally:
                self.in_flight -= 1

    def get_stats(self) -> dict:
        return {
            "in_flight": self.in_flight,
            "peak": self.peak,
            "max_sessions": self.max_sessions,
        }


# Per process; the API runs as a single uvicorn worker
session_limiter = SessionLimiter(get_settings().max_browser_sessions)


class InteractiveSession:
    """Adapter over a single Playwright page."""

    def __init__(self, page: Page, settle_seconds: Optional[float] = None):
        settings = get_settings()
        self.page = page
        self.settle_seconds = (
            settings.page_settle_seconds if settle_seconds is None else settle_seconds
        )
        self.screenshot_dir = settings.screenshot_dir

    async def navigate_to(self, url: str, timeout_ms: Optional[int] = None) -> "InteractiveSession":
        timeout_ms = timeout_ms or get_settings().page_load_timeout_ms
        try:
            await self.page.goto(url, timeout=timeout_ms)
        except Exception as e:
            logger.error("Navigation failed for %s: %s", url, e)
            raise AutomationError(str(e), reason="navigation_failed") from e

        try:
            await self.page.wait_for_load_state("load", timeout=timeout_ms)
        except Exception as e:
            # The document is usable even if late resources never finish
            logger.warning("Page load wait failed for %s: %s", url, e)

        await asyncio.sleep(self.settle_seconds)
        logger.info("Navigated to %s", url)
        return self

    async def page_text(self) -> str:
        try:
            return await self.page.inner_text("body")
        except Exception as e:
            logger.warning("Failed to read page text: %s", e)
            return ""

    async def page_html(self) -> str:
        try:
            return await self.page.content()
        except Exception as e:
            logger.warning("Failed to read page source: %s", e)
            return ""

    async def fill_field(self, selector: str, value: str) -> None:
        """Fill a field by CSS selector, falling back to name, id and placeholder."""
        logger.debug("Filling field %s", selector)
        if await self._try_fill(selector, value):
            return

        bare = _bare_token(selector)
        fallbacks = [
            f"[name='{bare}']",
            f"#{bare}",
            f"[placeholder='{bare}']",
        ]
        for candidate in fallbacks:
            if await self._try_fill(candidate, value):
                logger.debug("Filled %s via fallback %s", selector, candidate)
                return

        raise AutomationError(f"Could not fill {selector}", reason="fill_failed")

    async def select_option(self, selector: str, value: str) -> None:
        # Setting .value alone does not notify frameworks listening for change
        script = """([selector, value]) => {
            const el = document.querySelector(selector);
            if (!el) return false;
            el.value = value;
            el.dispatchEvent(new Event('change', { bubbles: true }));
            return true;
        }"""
        await self._set_with_change_event(script, selector, value, "select_failed")

    async def toggle_checkbox(self, selector: str, checked: bool = True) -> None:
        script = """([selector, checked]) => {
            const el = document.querySelector(selector);
            if (!el) return false;
            el.checked = checked;
            el.dispatchEvent(new Event('change', { bubbles: true }));
            return true;
        }"""
        await self._set_with_change_event(script, selector, bool(checked), "checkbox_failed")

    async def click(self, selector: str) -> None:
        """Click an element: native click, then by link text, then DOM .click()."""
        logger.debug("Clicking %s", selector)
        try:
            await self.page.click(selector, timeout=5000)
            return
        except Exception as e:
            logger.warning("Failed to click %s: %s", selector, e)

        try:
            await self.page.get_by_role("link", name=selector).first.click(timeout=3000)
            return
        except Exception:
            logger.debug("No link with text %r", selector)

        try:
            clicked = await self.page.evaluate(
                """(selector) => {
                    const el = document.querySelector(selector);
                    if (!el) return false;
                    el.click();
                    return true;
                }""",
                selector,
            )
        except Exception as e:
            raise AutomationError(str(e), reason="click_failed") from e
        if not clicked:
            logger.error("All click strategies failed for %s", selector)
            raise AutomationError(f"Could not click {selector}", reason="click_failed")

    async def submit_form(self, form_selector: str = "form", submit_selector: Optional[str] = None) -> None:
        """
        Click a submit control inside the form, else call form.submit().

        `form_selector` is a Playwright selector, e.g. "#signup" or
        "form >> nth=1".
        """
        candidates = [
            f"{form_selector} >> button[type='submit']",
            f"{form_selector} >> input[type='submit']",
            f"{form_selector} >> button:not([type='button'])",
        ]
        if submit_selector:
            candidates.insert(0, submit_selector)

        for candidate in candidates:
            try:
                await self.page.click(candidate, timeout=3000)
                logger.debug("Submitted via %s", candidate)
                return
            except Exception:
                continue

        logger.info("No clickable submit control in %s, submitting natively", form_selector)
        try:
            await self.page.locator(form_selector).first.evaluate("(form) => form.submit()")
        except Exception as e:
            logger.error("Failed to submit form %s: %s", form_selector, e)
            raise AutomationError(str(e), reason="submit_failed") from e

    async def settle(self, seconds: Optional[float] = None) -> None:
        """Give navigation or XHR triggered by a submit time to finish."""
        await asyncio.sleep(get_settings().submit_settle_seconds if seconds is None else seconds)

    async def screenshot(self, label: str = "debug") -> Optional[str]:
        """Best-effort diagnostic screenshot; returns the path or None."""
        try:
            os.makedirs(self.screenshot_dir, exist_ok=True)
            safe_label = re.sub(r"[^A-Za-z0-9_-]+", "_", label)
            path = os.path.join(self.screenshot_dir, f"{safe_label}_{int(time.time())}.png")
            await self.page.screenshot(path=path, full_page=True)
            logger.info("Screenshot saved: %s", path)
            return path
        except Exception as e:
            logger.warning("Failed to take screenshot: %s", e)
            return None

    async def _try_fill(self, selector: str, value: str) -> bool:
        try:
            await self.page.fill(selector, value, timeout=3000)
            return True
        except Exception:
            return False

    async def _set_with_change_event(self, script: str, selector: str, value, reason: str) -> None:
        try:
            found = await self.page.evaluate(script, [selector, value])
        except Exception as e:
            logger.warning("Failed to set %s: %s", selector, e)
            raise AutomationError(str(e), reason=reason) from e
        if not found:
            raise AutomationError(f"No element matches {selector}", reason=reason)


def _bare_token(selector: str) -> str:
    """Reduce a selector like "input[name='email']" or "#email" to "email"."""
    match = re.search(r"\[(?:name|id|placeholder)=['\"]?([^'\"\]]+)['\"]?\]", selector)
    if match:
        return match.group(1)
    return selector.lstrip("#").strip()


@asynccontextmanager
async def open_session(limiter: Optional[SessionLimiter] = None):
    """
    Yield an InteractiveSession backed by a fresh headless Chromium.

    The browser is always torn down and the limiter slot released, whatever
    happens inside the block.
    """
    settings = get_settings()
    limiter = limiter or session_limiter

    async with limiter.slot():
        playwright = None
        browser = None
        try:
            playwright = await async_playwright().start()
            browser = await playwright.chromium.launch(
                headless=settings.browser_headless,
                args=["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"],
            )
            context = await browser.new_context(user_agent=settings.user_agent)
            page = await context.new_page()
            page.set_default_timeout(5000)
        except Exception as e:
            logger.error("Failed to start browser session: %s", e)
            await _teardown(browser, playwright)
            raise SessionStartError(str(e)) from e

        logger.info("Browser session started (in flight: %d)", limiter.in_flight)
        try:
            yield InteractiveSession(page)
        finally:
            await _teardown(browser, playwright)
            logger.info("Browser session ended")


async def _teardown(browser, playwright) -> None:
    if browser is not None:
        try:
            await browser.close()
        except Exception as e:
            logger.warning("Error closing browser: %s", e)
    if playwright is not None:
        try:
            await playwright.stop()
        except Exception as e:
            logger.warning("Error stopping playwright: %s", e)


async def with_session(work, opener=None):
    """
    Run `await work(session)` inside a scoped browser session.

    Raises SessionStartError if the browser cannot start and SessionError if
    the work fails; teardown happens on every path.
    """
    opener = opener or open_session
    async with opener() as session:
        try:
            return await work(session)
        except SessionError:
            raise
        except Exception as e:
            logger.error("Error in browser session: %s", e)
            raise SessionError(str(e)) from e
