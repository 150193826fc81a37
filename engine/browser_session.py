"""Isolated Playwright browser sessions for test runs.

Every run owns exactly one :class:`BrowserSession`: a dedicated browser
process with a single context and page.  Sessions are never shared between
runs.  Video recording, when enabled, is finalised by Playwright when the
context closes, so :meth:`BrowserSession.video_url` is only meaningful after
:meth:`BrowserSession.close`.
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Optional, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from .config import RunConfig

log = logging.getLogger(__name__)


async def capture_screenshot(page: Page) -> str:
    """Viewport PNG screenshot encoded as base64 text."""

    image = await page.screenshot(type="png")
    return base64.b64encode(image).decode("ascii")


class BrowserSession:
    def __init__(
        self,
        page: Page,
        *,
        context: Optional[BrowserContext] = None,
        browser: Optional[Browser] = None,
        playwright: Optional[Playwright] = None,
    ) -> None:
        self.page = page
        self.context = context
        self.browser = browser
        self.playwright = playwright
        self._closed = False
        self._video_path: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Release every Playwright object; safe to call more than once."""

        if self._closed:
            return
        self._closed = True
        video = getattr(self.page, "video", None)
        try:
            if self.context is not None:
                await self.context.close()
        except Exception as exc:
            log.debug("Failed to close browser context: %s", exc)
        if video is not None:
            try:
                self._video_path = str(await video.path())
            except Exception as exc:
                log.debug("Video unavailable after context close: %s", exc)
        try:
            if self.browser is not None:
                await self.browser.close()
        except Exception as exc:
            log.debug("Failed to close browser: %s", exc)
        try:
            if self.playwright is not None:
                await self.playwright.stop()
        except Exception as exc:
            log.debug("Failed to stop Playwright: %s", exc)
        self.context = None
        self.browser = None
        self.playwright = None

    async def video_url(self) -> Optional[str]:
        """Location of the recorded video, once the session is closed."""

        if not self._closed:
            return None
        return self._video_path


class SessionProvider(Protocol):
    async def open(self, *, headless: bool = True) -> BrowserSession:
        ...


class PlaywrightSessionProvider:
    """Launch a fresh Chromium per run, sized to a single page."""

    def __init__(self, config: Optional[RunConfig] = None) -> None:
        self.config = config or RunConfig()

    async def open(self, *, headless: bool = True) -> BrowserSession:
        playwright = await async_playwright().start()
        browser: Optional[Browser] = None
        try:
            browser = await playwright.chromium.launch(headless=headless)
            context_options = {
                "viewport": {
                    "width": self.config.viewport_width,
                    "height": self.config.viewport_height,
                },
            }
            if self.config.record_video:
                video_dir = Path(self.config.video_dir)
                video_dir.mkdir(parents=True, exist_ok=True)
                context_options["record_video_dir"] = str(video_dir)
                context_options["record_video_size"] = dict(context_options["viewport"])
            context = await browser.new_context(**context_options)
            context.set_default_navigation_timeout(self.config.navigation_timeout_ms)
            page = await context.new_page()
        except Exception:
            log.exception("Browser initialisation failed")
            if browser is not None:
                try:
                    await browser.close()
                except Exception as exc:
                    log.debug("Failed to close browser after init error: %s", exc)
            await playwright.stop()
            raise
        log.info("Launched %s browser session", "headless" if headless else "headed")
        return BrowserSession(page, context=context, browser=browser, playwright=playwright)
