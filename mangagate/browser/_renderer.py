"""Patchright-based implementation of the interactive rendering surface.

One persistent Chrome page renders every request, one at a time. GET
requests navigate the page; POST requests first navigate to the target
origin (so the origin's cookies and clearance apply) and then run
``fetch()`` inside the page.

Headful by default: headless Chrome is challenged far more often.
"""

import asyncio
import logging
import random
from urllib.parse import urlparse

from mangagate._challenge import is_challenge_body
from mangagate._credentials import CLEARANCE_COOKIE, Credential
from mangagate.browser._cloudflare import wait_for_cloudflare

logger = logging.getLogger("mangagate")

# Realistic viewport sizes (width, height) weighted toward common resolutions
_VIEWPORTS = [
    (1920, 1080),
    (1366, 768),
    (1536, 864),
    (1440, 900),
    (1280, 720),
]

_POST_SCRIPT = """
async ([url, body, headers]) => {
    const response = await fetch(url, {
        method: "POST",
        headers: headers,
        body: body,
        credentials: "include",
    });
    return await response.text();
}
"""


def _origin(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return ""
    return f"{parsed.scheme}://{parsed.netloc}"


class BrowserRenderer:
    """Renders pages in a real Chrome via patchright.

    Attach to a SolverGateway with ``attach()``. Call ``detach()`` before
    ``close()`` when the gateway outlives the renderer.
    """

    def __init__(
        self,
        headless: bool = False,
        user_agent: str | None = None,
        clearance_cookie: str = CLEARANCE_COOKIE,
    ):
        self._headless = headless
        self._user_agent = user_agent
        self._clearance_cookie = clearance_cookie
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._lock = asyncio.Lock()

    async def _ensure_page(self):
        if self._page is not None and not self._page.is_closed():
            return self._page

        if self._browser is None or not self._browser.is_connected():
            await self._close_browser()
            try:
                from patchright.async_api import async_playwright
            except ImportError:
                raise ImportError(
                    "patchright is required for browser rendering. "
                    "Install with: pip install mangagate[browser]"
                ) from None

            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                channel="chrome",
                headless=self._headless,
                args=["--disable-blink-features=AutomationControlled"],
            )
            logger.info("Browser launched (headless=%s)", self._headless)

        viewport = random.choice(_VIEWPORTS)
        context_kwargs = {
            "viewport": {"width": viewport[0], "height": viewport[1]},
        }
        if self._user_agent:
            context_kwargs["user_agent"] = self._user_agent
        self._context = await self._browser.new_context(**context_kwargs)
        self._page = await self._context.new_page()
        return self._page

    async def _close_browser(self) -> None:
        for closer in (self._context, self._browser):
            if closer is None:
                continue
            try:
                await closer.close()
            except Exception:
                logger.debug("Browser close failed", exc_info=True)
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception:
                logger.debug("Playwright stop failed", exc_info=True)
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    async def _navigate(self, page, url: str, timeout_ms: int) -> None:
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except Exception:
            logger.debug("Browser navigation timeout/error", exc_info=True)

        html = await page.content()
        if is_challenge_body(html):
            logger.info("Challenge page at %s, waiting for clearance", url)
            await wait_for_cloudflare(page, timeout_ms, self._clearance_cookie)

        try:
            await page.wait_for_load_state("networkidle", timeout=5000)
        except Exception:
            pass

    async def render(self, url: str, timeout_ms: int) -> str:
        """Navigate to ``url`` and return the settled page HTML."""
        async with self._lock:
            page = await self._ensure_page()
            logger.debug("Browser rendering %s", url[:80])
            await self._navigate(page, url, timeout_ms)
            return await page.content()

    async def render_post(
        self,
        url: str,
        body: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_ms: int = 30_000,
    ) -> str:
        """POST from inside the page so origin cookies are sent."""
        async with self._lock:
            page = await self._ensure_page()
            target = _origin(url)
            if _origin(page.url) != target:
                logger.debug("Navigating to %s before POST", target)
                await self._navigate(page, f"{target}/", timeout_ms)
            post_headers = {"X-Requested-With": "XMLHttpRequest"}
            post_headers.update(headers or {})
            logger.debug("Browser POST %s", url[:80])
            return await page.evaluate(
                _POST_SCRIPT, [url, body or "", post_headers]
            )

    async def cookies(self, url: str) -> list[Credential]:
        """Cookies the browser holds for ``url``."""
        if self._context is None:
            return []
        raw = await self._context.cookies(url)
        return [Credential.from_browser_cookie(c) for c in raw]

    def attach(self, gateway, invalidate_session=None) -> None:
        gateway.register_renderer(self.render, self.render_post, invalidate_session)

    def detach(self, gateway) -> None:
        gateway.unregister_renderer()

    async def close(self) -> None:
        async with self._lock:
            await self._close_browser()
            logger.debug("BrowserRenderer closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()
