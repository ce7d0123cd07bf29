"""Headless browser collaborator for screenshots and rendered-DOM extraction."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from playwright.async_api import Browser, Page, async_playwright

from price_tracker.ingest.domains import fallback_currency_for_domain

logger = logging.getLogger(__name__)

# Launch args that work inside containers
CONTAINER_SAFE_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
]


@dataclass
class RenderedScreenshot:
    """Full-page screenshot of a rendered product page."""

    image_bytes: bytes
    http_status: Optional[int]
    page_title: Optional[str]
    final_url: Optional[str]


def locale_cookies(domain: Optional[str]) -> list[dict]:
    """Currency preference cookie for a marketplace, if it has one."""
    currency = fallback_currency_for_domain(domain)
    if not domain or not currency:
        return []
    return [{
        "name": "i18n-prefs",
        "value": currency,
        "domain": f".{domain}",
        "path": "/",
        "secure": True,
    }]


class HeadlessBrowser:
    """Lazily launched Chromium shared by the vision and DOM-fallback stages."""

    def __init__(self, user_agent: Optional[str] = None, headless: bool = True):
        self.user_agent = user_agent
        self.headless = headless
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._init_lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        async with self._init_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            if self._browser is None or not self._browser.is_connected():
                logger.info("Launching headless Chromium")
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    chromium_sandbox=False,
                    args=CONTAINER_SAFE_ARGS,
                )
            return self._browser

    @asynccontextmanager
    async def open_page(self, cookies: Optional[list[dict]] = None) -> AsyncIterator[Page]:
        """Yield a page in a fresh context; the context is closed on exit."""
        browser = await self._ensure_browser()
        context_options = {"user_agent": self.user_agent} if self.user_agent else {}
        context = await browser.new_context(**context_options)
        try:
            if cookies:
                try:
                    await context.add_cookies(cookies)
                except Exception as e:
                    logger.warning(f"Could not set locale cookies: {e}")
            page = await context.new_page()
            yield page
        finally:
            await context.close()

    async def render_and_screenshot(
        self,
        url: str,
        cookies: Optional[list[dict]] = None,
        timeout_ms: int = 30000,
        settle_ms: int = 2500,
    ) -> RenderedScreenshot:
        """Navigate to url and capture a full-page PNG."""
        async with self.open_page(cookies) as page:
            response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            await page.wait_for_timeout(settle_ms)
            image_bytes = await page.screenshot(type="png", full_page=True)
            try:
                page_title = await page.title()
            except Exception:
                page_title = None
            return RenderedScreenshot(
                image_bytes=image_bytes,
                http_status=response.status if response else None,
                page_title=page_title,
                final_url=page.url,
            )

    async def close(self):
        """Close browser and stop Playwright."""
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
