# worker/capture.py
from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from core.errors import EngineDisconnected, LayoutMismatch, RenderTimeout, SlideCaptureError
from worker.browser import SurfacePool
from worker.cancel import CancelToken
from worker.detector import MAX_CONTENT_HEIGHT, SLIDE_SELECTOR, PageMetrics, SlideLayout, SlideSegmentation, segment
from worker.postprocess import postprocess_png
from worker.readiness import DEFAULT_TIMEOUTS, ReadinessTimeouts, wait_for_slide_ready
from worker.static_route import document_url, mount_directory

logger = logging.getLogger(__name__)

SLIDE_TIMEOUT_MS = 30_000
RESOLUTION_SCALE = {"hd": 1.0, "4k": 2.0}
CAPTURE_ATTRIBUTE = "data-capture-slide"

DISCONNECT_HINTS = (
    "target closed",
    "has been closed",
    "browser closed",
    "connection closed",
    "disconnected",
)

COUNT_SLIDES_JS = "(selector) => document.querySelectorAll(selector).length"

ISOLATE_SLIDE_JS = """
({ selector, index, vw, vh }) => {
  const slides = document.querySelectorAll(selector);
  document.body.style.margin = '0';
  document.body.style.padding = '0';
  document.body.style.overflow = 'hidden';
  document.documentElement.style.overflow = 'hidden';
  slides.forEach((slide, si) => {
    if (si === index) {
      slide.style.display = 'block';
      slide.style.position = 'fixed';
      slide.style.top = '0';
      slide.style.left = '0';
      slide.style.width = `${vw}px`;
      slide.style.height = `${vh}px`;
      slide.style.overflow = 'hidden';
      slide.style.zIndex = '9999';
    } else {
      slide.style.display = 'none';
    }
  });
  window.scrollTo(0, 0);
}
"""

# Children of body, or of a single tall wrapper around them.
MEASURE_PAGE_JS = """
() => {
  const skip = ['SCRIPT', 'STYLE', 'LINK', 'META', 'TEMPLATE', 'NOSCRIPT'];
  const visible = (el) => {
    if (skip.includes(el.tagName)) return false;
    const cs = getComputedStyle(el);
    if (cs.display === 'none' || cs.visibility === 'hidden') return false;
    const r = el.getBoundingClientRect();
    return r.width > 0 && r.height > 0;
  };
  let container = document.body;
  for (let depth = 0; depth < 3; depth++) {
    const kids = Array.from(container.children).filter(visible);
    if (kids.length !== 1 || kids[0].getBoundingClientRect().height <= window.innerHeight * 1.5) break;
    container = kids[0];
  }
  window.__captureContainer = container;
  const isBreak = (v) => ['always', 'page', 'left', 'right'].includes(v);
  const children = [];
  Array.from(container.children).forEach((el, index) => {
    if (!visible(el)) return;
    const r = el.getBoundingClientRect();
    const cs = getComputedStyle(el);
    children.push({
      index,
      top: r.top + window.scrollY,
      width: r.width,
      height: r.height,
      pageBreak: isBreak(cs.breakAfter) || isBreak(cs.breakBefore)
        || isBreak(cs.pageBreakAfter) || isBreak(cs.pageBreakBefore),
    });
  });
  const doc = document.documentElement;
  return {
    width: Math.max(doc.scrollWidth, document.body.scrollWidth),
    height: Math.max(doc.scrollHeight, document.body.scrollHeight),
    children,
  };
}
"""

TAG_SLIDES_JS = """
({ indices, attribute }) => {
  const container = window.__captureContainer || document.body;
  const kids = Array.from(container.children);
  let tagged = 0;
  indices.forEach((index, n) => {
    const el = kids[index];
    if (!el) return;
    el.setAttribute(attribute, String(n + 1));
    tagged++;
  });
  return tagged;
}
"""

class ProgressObserver(Protocol):
    def publish(self, current: int, total: int) -> None: ...

def slide_filename(number: int, total: int = 0) -> str:
    """Zero-padded so names sort in capture order (at least three digits)."""
    width = max(3, len(str(total)))
    return f"slide-{number:0{width}d}.png"

def _is_disconnect(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(hint in message for hint in DISCONNECT_HINTS)

def fallback_offsets(content_height: float, slide_height: int) -> List[int]:
    content_height = min(content_height, MAX_CONTENT_HEIGHT)
    count = max(1, round(content_height / slide_height))
    return [i * slide_height for i in range(count)]

class CaptureOrchestrator:
    """Drives one isolated rendering surface through navigation, readiness and per-slide screenshots."""

    def __init__(
        self,
        pool: SurfacePool,
        timeouts: ReadinessTimeouts = DEFAULT_TIMEOUTS,
        call_timeout_ms: int = SLIDE_TIMEOUT_MS,
    ):
        self.pool = pool
        self.timeouts = timeouts
        self.call_timeout_ms = call_timeout_ms

    async def capture(
        self,
        layout: SlideLayout,
        root_dir: Path,
        output_dir: Path,
        cancel: CancelToken,
        progress: ProgressObserver,
        device_scale_factor: float = 1.0,
    ) -> List[Path]:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        cancel.raise_if_cancelled()

        surface = await self.pool.acquire_surface(layout.slide_width, layout.slide_height, device_scale_factor)
        try:
            async with surface:
                base_url = await mount_directory(surface.context, root_dir)
                page = await surface.new_page()
                page.set_default_timeout(self.call_timeout_ms)

                if layout.mode == "A":
                    return await self._capture_sections(page, layout, base_url, output_dir, cancel, progress)
                if layout.is_single_document:
                    return await self._capture_long_document(page, layout, base_url, output_dir, cancel, progress)
                return await self._capture_documents(page, layout, base_url, output_dir, cancel, progress)
        except PlaywrightTimeoutError as e:
            raise RenderTimeout(f"Rendering timed out: {e}") from e
        except PlaywrightError as e:
            if _is_disconnect(e) or not self.pool.connected:
                raise EngineDisconnected(f"Rendering engine disconnected: {e}") from e
            raise SlideCaptureError(f"Rendering failed: {e}", code="RENDER_FAILED") from e

    # --- steps ---
    async def _open(self, page: Page, url: str) -> None:
        logger.debug("Navigating to %s", url)
        await page.goto(url, wait_until="load", timeout=self.call_timeout_ms)
        await wait_for_slide_ready(page, self.timeouts)

    async def _write(self, raw: bytes, output_dir: Path, number: int, total: int) -> Path:
        return await asyncio.to_thread(postprocess_png, raw, output_dir / slide_filename(number, total))

    # --- Mode A: one document, marked sections ---
    async def _capture_sections(self, page, layout, base_url, output_dir, cancel, progress) -> List[Path]:
        width, height = layout.slide_width, layout.slide_height
        await page.set_viewport_size({"width": width, "height": height})
        await self._open(page, document_url(base_url, layout.entry_file))

        total = await page.evaluate(COUNT_SLIDES_JS, SLIDE_SELECTOR)
        if total == 0:
            raise LayoutMismatch("No slide sections found in the page")
        if total != layout.slide_count:
            logger.warning("Live slide count %d differs from detected %d, using live count", total, layout.slide_count)
        logger.info("Mode A: capturing %d slide sections", total)

        paths: List[Path] = []
        for i in range(total):
            cancel.raise_if_cancelled()
            await page.evaluate(
                ISOLATE_SLIDE_JS,
                {"selector": SLIDE_SELECTOR, "index": i, "vw": width, "vh": height},
            )
            await wait_for_slide_ready(page, self.timeouts)
            raw = await page.screenshot(type="png", clip={"x": 0, "y": 0, "width": width, "height": height})
            paths.append(await self._write(raw, output_dir, i + 1, total))
            logger.debug("Captured slide %d/%d", i + 1, total)
            progress.publish(i + 1, total)
        return paths

    # --- Mode B: one document per slide ---
    async def _capture_documents(self, page, layout, base_url, output_dir, cancel, progress) -> List[Path]:
        width, height = layout.slide_width, layout.slide_height
        total = len(layout.documents)
        logger.info("Mode B: capturing %d documents", total)

        paths: List[Path] = []
        for i, doc in enumerate(layout.documents):
            cancel.raise_if_cancelled()
            await self._open(page, document_url(base_url, doc))
            raw = await page.screenshot(type="png", clip={"x": 0, "y": 0, "width": width, "height": height})
            paths.append(await self._write(raw, output_dir, i + 1, total))
            logger.debug("Captured slide %d/%d (%s)", i + 1, total, doc)
            progress.publish(i + 1, total)
        return paths

    # --- Mode B: one long document ---
    async def _capture_long_document(self, page, layout, base_url, output_dir, cancel, progress) -> List[Path]:
        await self._open(page, document_url(base_url, layout.entry_file))

        payload = await page.evaluate(MEASURE_PAGE_JS)
        declared = (layout.slide_width, layout.slide_height) if layout.declared else None
        metrics = PageMetrics.from_payload(payload, declared_size=declared)
        seg = segment(metrics)

        if seg.element_indices:
            tagged = await page.evaluate(
                TAG_SLIDES_JS, {"indices": list(seg.element_indices), "attribute": CAPTURE_ATTRIBUTE}
            )
            if tagged == len(seg.element_indices):
                return await self._capture_tagged(page, tagged, output_dir, cancel, progress)
            logger.warning("Tagged %d of %d slide elements, falling back to clipping", tagged, len(seg.element_indices))
            offsets: Sequence[int] = fallback_offsets(metrics.content_height, seg.slide_height)
        else:
            offsets = seg.offsets

        return await self._capture_offsets(page, seg, offsets, metrics, output_dir, cancel, progress)

    async def _capture_tagged(self, page, total, output_dir, cancel, progress) -> List[Path]:
        logger.info("Long document: capturing %d tagged elements", total)
        paths: List[Path] = []
        for n in range(1, total + 1):
            cancel.raise_if_cancelled()
            element = page.locator(f'[{CAPTURE_ATTRIBUTE}="{n}"]')
            await element.scroll_into_view_if_needed()
            raw = await element.screenshot(type="png", animations="disabled")
            paths.append(await self._write(raw, output_dir, n, total))
            progress.publish(n, total)
        return paths

    async def _capture_offsets(
        self,
        page: Page,
        seg: SlideSegmentation,
        offsets: Sequence[int],
        metrics: PageMetrics,
        output_dir: Path,
        cancel: CancelToken,
        progress: ProgressObserver,
    ) -> List[Path]:
        total = len(offsets)
        logger.info("Long document: clipping %d slides of %dx%d (%s)", total, seg.slide_width, seg.slide_height, seg.strategy)
        paths: List[Path] = []
        for n, offset in enumerate(offsets, start=1):
            cancel.raise_if_cancelled()
            await page.evaluate("(y) => window.scrollTo(0, y)", offset)
            await page.wait_for_timeout(self.timeouts.settle_ms)
            height = _clip_height(seg.slide_height, offset, metrics.content_height)
            raw = await page.screenshot(
                type="png",
                full_page=True,
                clip={"x": 0, "y": offset, "width": seg.slide_width, "height": height},
            )
            paths.append(await self._write(raw, output_dir, n, total))
            progress.publish(n, total)
        return paths

def _clip_height(slide_height: int, offset: int, content_height: Optional[float]) -> int:
    if content_height:
        content_height = min(content_height, MAX_CONTENT_HEIGHT)
    if not content_height or offset + slide_height <= content_height:
        return slide_height
    return max(1, int(content_height) - offset)
