# worker/browser.py
from __future__ import annotations
import asyncio
import logging
import sys
from typing import Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from core.errors import EngineDisconnected

logger = logging.getLogger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--font-render-hinting=medium",
]

def _needs_browser_install(exc: Exception) -> bool:
    message = str(exc).lower()
    return (
        "playwright install" in message
        or "executable doesn't exist" in message
        or "looks like playwright" in message
    )

async def install_chromium() -> None:
    logger.info("Installing Playwright chromium browser")
    proc = await asyncio.create_subprocess_exec(
        sys.executable, "-m", "playwright", "install", "chromium",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        logger.error("Playwright chromium installation failed: %s", (stderr or stdout).decode(errors="replace").strip())
        raise EngineDisconnected("Unable to install chromium for Playwright")

class Surface:
    """One job's isolated rendering context on the shared browser."""

    def __init__(self, context: BrowserContext, width: int, height: int):
        self.context = context
        self.width = width
        self.height = height
        self._closed = False

    async def new_page(self) -> Page:
        return await self.context.new_page()

    async def close(self) -> None:
        # the shared browser stays up; only this job's context goes away
        if self._closed:
            return
        self._closed = True
        try:
            await self.context.close()
        except PlaywrightError as e:
            logger.debug("Context already gone: %s", e)

    async def __aenter__(self) -> "Surface":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

class SurfacePool:
    """
    Owns the single shared Chromium instance. It is launched on first use and
    relaunched transparently after a disconnect; each acquire_surface() call
    gets its own BrowserContext (cookies, storage, viewport).
    """

    def __init__(self, headless: bool = True):
        self.headless = headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()
        self._install_attempted = False

    @property
    def connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    def _on_disconnected(self, browser: Browser) -> None:
        logger.warning("Browser disconnected unexpectedly")
        if self._browser is browser:
            self._browser = None

    async def _launch(self) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        while True:
            try:
                browser = await self._playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
                break
            except PlaywrightError as e:
                if not self._install_attempted and _needs_browser_install(e):
                    self._install_attempted = True
                    await install_chromium()
                    continue
                raise EngineDisconnected(f"Unable to start chromium renderer: {e}") from e
        browser.on("disconnected", self._on_disconnected)
        return browser

    async def get_browser(self) -> Browser:
        async with self._lock:
            if not self.connected:
                logger.info("Launching Chromium browser")
                self._browser = await self._launch()
            return self._browser

    async def acquire_surface(self, width: int, height: int, device_scale_factor: float = 1.0) -> Surface:
        browser = await self.get_browser()
        try:
            context = await browser.new_context(
                viewport={"width": width, "height": height},
                device_scale_factor=device_scale_factor,
            )
        except PlaywrightError as e:
            raise EngineDisconnected(f"Unable to open a rendering context: {e}") from e
        return Surface(context, width, height)

    async def shutdown(self) -> None:
        async with self._lock:
            if self._browser is not None:
                try:
                    await self._browser.close()
                except PlaywrightError as e:
                    logger.warning("Error closing browser: %s", e)
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
