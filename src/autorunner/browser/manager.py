"""
Browser Manager - one shared browser process, one isolated context per loop index.

Each loop index gets its own BrowserContext and Page through ``session()``;
the context is closed when the loop index finishes, however it finishes.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from playwright.async_api import async_playwright, Browser, Page, Playwright

logger = structlog.get_logger()


class BrowserLauncher:
    """Starts Chromium lazily and hands out per-loop-index sessions."""

    def __init__(
        self,
        headless: bool = True,
        viewport_width: int = 1280,
        viewport_height: int = 720,
        default_timeout_ms: Optional[float] = 30000,
    ):
        """
        Initialize browser launcher.

        Args:
            headless: Run browser in headless mode
            viewport_width: Browser viewport width
            viewport_height: Browser viewport height
            default_timeout_ms: Default Playwright timeout for page operations
        """
        self.headless = headless
        self.viewport = {"width": viewport_width, "height": viewport_height}
        self.default_timeout_ms = default_timeout_ms

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser

            logger.info("browser_initializing", headless=self.headless)

            if self._playwright is None:
                self._playwright = await async_playwright().start()

            # Launch flags suited to containers and CI
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=[
                    "--disable-dev-shm-usage",  # Overcome limited /dev/shm in Docker
                    "--no-sandbox",
                    "--disable-setuid-sandbox",
                    "--disable-extensions",
                    "--disable-background-networking",
                    "--no-first-run",
                    "--mute-audio",
                    f"--window-size={self.viewport['width']},{self.viewport['height']}",
                ],
            )
            logger.info("browser_initialized")
            return self._browser

    @asynccontextmanager
    async def session(self, loop_index: int = 0) -> AsyncIterator[Page]:
        """Yield a fresh page in its own browser context."""
        browser = await self._ensure_browser()
        context = await browser.new_context(
            viewport=self.viewport,
            ignore_https_errors=True,
            locale="en-US",
        )
        try:
            page = await context.new_page()
            if self.default_timeout_ms is not None:
                page.set_default_timeout(self.default_timeout_ms)
            logger.debug("browser_session_opened", loop_index=loop_index)
            yield page
        finally:
            try:
                await context.close()
            except Exception as e:
                logger.error("browser_session_close_error", loop_index=loop_index, error=str(e))
            logger.debug("browser_session_closed", loop_index=loop_index)

    async def shutdown(self) -> None:
        """Gracefully shutdown browser."""
        async with self._lock:
            logger.info("browser_shutting_down")
            try:
                if self._browser:
                    await self._browser.close()
                if self._playwright:
                    await self._playwright.stop()
            except Exception as e:
                logger.error("browser_shutdown_error", error=str(e))
            finally:
                self._browser = None
                self._playwright = None
            logger.info("browser_shutdown_complete")
