"""Remote page client for a Chrome instance started with --remote-debugging-port.

Target discovery goes through the DevTools HTTP endpoint (/json/list).
Script evaluation attaches to one tab with Playwright's connect_over_cdp and
issues Runtime.evaluate on a CDP session for that page, so the same
page-side expressions work whether they return a value or a Promise.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import requests
from playwright.async_api import Error as PlaywrightError

from council_config import BrowserConfig
from council_errors import ConnectivityError, ExtractionError
from council_models import Tab

logger = logging.getLogger(__name__)


def list_tabs(browser: BrowserConfig) -> list[Tab]:
    """Enumerate current targets. Raises ConnectivityError if Chrome is unreachable."""
    url = f"{browser.http_endpoint}/json/list"
    try:
        r = requests.get(url, timeout=browser.list_timeout_seconds)
    except requests.RequestException as e:
        raise ConnectivityError(
            f"Cannot reach Chrome at {browser.http_endpoint}. "
            f"Start it with --remote-debugging-port={browser.cdp_port}. Error: {e}"
        ) from e

    if r.status_code != 200:
        raise ConnectivityError(f"HTTP {r.status_code} from {url}: {r.text[:200]}")

    try:
        data = r.json()
    except ValueError as e:
        raise ConnectivityError(f"Unreadable target list from {url}: {e}") from e
    if not isinstance(data, list):
        raise ConnectivityError(f"Unexpected target list from {url}: {type(data).__name__}")

    tabs = [Tab.model_validate(t) for t in data if isinstance(t, dict) and t.get("id")]
    logger.debug("Listed %d targets (%d pages)", len(tabs), sum(t.is_page for t in tabs))
    return tabs


def check_health(browser: BrowserConfig) -> dict:
    """Connectivity check for status displays. Never raises."""
    try:
        tabs = list_tabs(browser)
    except ConnectivityError as e:
        return {"connected": False, "error": str(e)}
    return {"connected": True, "tab_count": len(tabs)}


class PageSession:
    """One CDP session bound to one tab.

    close() is idempotent; use open_session() so it runs on every exit path.
    """

    def __init__(self, tab: Tab, browser: BrowserConfig) -> None:
        self.tab = tab
        self.browser_config = browser
        self._playwright = None
        self._browser = None
        self._cdp = None
        self._closed = False

    async def connect(self) -> None:
        from playwright.async_api import async_playwright

        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.connect_over_cdp(
                self.browser_config.http_endpoint,
                timeout=self.browser_config.connect_timeout_seconds * 1000,
            )
            page = await self._find_page()
            if page is None:
                raise ExtractionError(f"Tab {self.tab.id} ({self.tab.url[:80]}) is no longer open")
            self._cdp = await page.context.new_cdp_session(page)
        except PlaywrightError as e:
            raise ExtractionError(f"Cannot attach to tab {self.tab.url[:80]}: {e}") from e

    async def _find_page(self):
        pages = [p for ctx in self._browser.contexts for p in ctx.pages]
        same_url = [p for p in pages if p.url == self.tab.url]
        if len(same_url) == 1:
            return same_url[0]

        # Several tabs share the URL (or it changed since listing): match on target id.
        for page in same_url or pages:
            cdp = await page.context.new_cdp_session(page)
            try:
                info = await cdp.send("Target.getTargetInfo")
            finally:
                await cdp.detach()
            if info.get("targetInfo", {}).get("targetId") == self.tab.id:
                return page
        return None

    async def evaluate(
        self,
        script: str,
        return_by_value: bool = True,
        await_promise: bool = False,
    ) -> Any:
        """Evaluate an expression in the page and return its value.

        Raises ExtractionError if the script throws, the tab is gone or the
        round trip exceeds eval_timeout_seconds.
        """
        if self._cdp is None or self._closed:
            raise ExtractionError("Session is not connected")

        params = {
            "expression": script,
            "returnByValue": return_by_value,
            "awaitPromise": await_promise,
        }
        try:
            reply = await asyncio.wait_for(
                self._cdp.send("Runtime.evaluate", params),
                timeout=self.browser_config.eval_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ExtractionError(
                f"Runtime.evaluate timed out after {self.browser_config.eval_timeout_seconds}s"
            ) from e
        except PlaywrightError as e:
            raise ExtractionError(f"Runtime.evaluate failed: {e}") from e

        details = reply.get("exceptionDetails")
        if details:
            exc = details.get("exception") or {}
            message = exc.get("description") or details.get("text") or "script threw"
            raise ExtractionError(f"Page script threw: {message[:300]}")
        return (reply.get("result") or {}).get("value")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Disconnecting from a connect_over_cdp browser leaves Chrome and its tabs running.
        for label, closer in (
            ("cdp session", self._cdp.detach if self._cdp else None),
            ("browser connection", self._browser.close if self._browser else None),
            ("playwright", self._playwright.stop if self._playwright else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                logger.debug("Ignoring error closing %s for %s: %s", label, self.tab.id, e)
        self._cdp = None
        self._browser = None
        self._playwright = None


@asynccontextmanager
async def open_session(tab: Tab, browser: BrowserConfig) -> AsyncIterator[PageSession]:
    """Default session factory: connect, yield, always close."""
    session = PageSession(tab, browser)
    try:
        await session.connect()
        yield session
    finally:
        await session.close()


async def read_title(session: PageSession) -> Optional[str]:
    value = await session.evaluate("document.title || ''")
    return value if isinstance(value, str) else None
