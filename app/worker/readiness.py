# worker/readiness.py
from __future__ import annotations
import logging
from dataclasses import dataclass

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class ReadinessTimeouts:
    load_ms: int = 30_000
    network_idle_ms: int = 10_000
    fonts_ms: int = 5_000
    ready_marker_ms: int = 1_000
    settle_ms: int = 200

DEFAULT_TIMEOUTS = ReadinessTimeouts()

async def wait_for_slide_ready(page: Page, timeouts: ReadinessTimeouts = DEFAULT_TIMEOUTS) -> None:
    """
    Waits until the page is stable enough to capture. Every step is bounded;
    only the load event is mandatory, the rest give up silently.
    """
    # 1) stylesheets, images
    await page.wait_for_load_state("load", timeout=timeouts.load_ms)

    # 2) some decks keep connections open forever
    try:
        await page.wait_for_load_state("networkidle", timeout=timeouts.network_idle_ms)
    except PlaywrightTimeoutError:
        logger.debug("networkidle timeout, continuing with capture")

    # 3) web fonts
    try:
        await page.wait_for_function(
            "() => !document.fonts || document.fonts.ready.then(() => true)",
            timeout=timeouts.fonts_ms,
        )
    except PlaywrightTimeoutError:
        logger.debug("Font loading timeout, continuing with capture")

    # 4) optional author marker
    try:
        await page.wait_for_selector("[data-ready]", state="attached", timeout=timeouts.ready_marker_ms)
    except PlaywrightTimeoutError:
        pass

    # 5) CSS transitions
    await page.wait_for_timeout(timeouts.settle_ms)
