import asyncio
from pathlib import Path

import pytest
from PIL import Image
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from conftest import png_bytes
from core.errors import Cancelled, EngineDisconnected, LayoutMismatch, RenderTimeout, SlideCaptureError
from worker import capture as capture_mod
from worker.browser import Surface
from worker.cancel import CancelToken
from worker.capture import CaptureOrchestrator, fallback_offsets, slide_filename
from worker.detector import SlideLayout
from worker.readiness import ReadinessTimeouts
from worker.static_route import document_url, resolve_request

FAST = ReadinessTimeouts(settle_ms=0)


class FakeLocator:
    def __init__(self, page, selector):
        self.page = page
        self.selector = selector

    async def scroll_into_view_if_needed(self):
        pass

    async def screenshot(self, **kwargs):
        self.page.shots.append(("element", self.selector))
        return png_bytes(32, 18)


class FakePage:
    def __init__(self, markers=3, metrics=None, hang_on_goto=False, goto_error=None):
        self.markers = markers
        self.metrics = metrics or {"width": 1920, "height": 1080, "children": []}
        self.hang_on_goto = hang_on_goto
        self.goto_error = goto_error
        self.visited = []
        self.isolated = []
        self.shots = []
        self.viewport = None

    def set_default_timeout(self, ms):
        self.default_timeout = ms

    async def set_viewport_size(self, size):
        self.viewport = size

    async def goto(self, url, **kwargs):
        if self.hang_on_goto:
            raise PlaywrightTimeoutError("Timeout 30000ms exceeded")
        if self.goto_error is not None:
            raise self.goto_error
        self.visited.append(url)

    async def wait_for_load_state(self, state, timeout=None):
        pass

    async def wait_for_function(self, expression, timeout=None):
        pass

    async def wait_for_selector(self, selector, **kwargs):
        raise PlaywrightTimeoutError("no data-ready marker")

    async def wait_for_timeout(self, ms):
        pass

    async def evaluate(self, script, arg=None):
        if script == capture_mod.COUNT_SLIDES_JS:
            return self.markers
        if script == capture_mod.ISOLATE_SLIDE_JS:
            self.isolated.append(arg["index"])
            return None
        if script == capture_mod.MEASURE_PAGE_JS:
            return self.metrics
        if script == capture_mod.TAG_SLIDES_JS:
            return len(arg["indices"])
        return None

    async def screenshot(self, **kwargs):
        clip = kwargs.get("clip")
        self.shots.append(("clip", clip["y"], clip["height"]))
        return png_bytes(int(clip["width"]) // 10, int(clip["height"]) // 10)

    def locator(self, selector):
        return FakeLocator(self, selector)


class FakeContext:
    def __init__(self, page):
        self.page = page
        self.routes = []
        self.closed = False

    async def route(self, pattern, handler):
        self.routes.append(pattern)

    async def new_page(self):
        return self.page

    async def close(self):
        self.closed = True


class FakePool:
    connected = True

    def __init__(self, page):
        self.context = FakeContext(page)
        self.acquired = []

    async def acquire_surface(self, width, height, device_scale_factor=1.0):
        self.acquired.append((width, height, device_scale_factor))
        return Surface(self.context, width, height)


class Recorder:
    def __init__(self):
        self.events = []

    def publish(self, current, total):
        self.events.append((current, total))


def run_capture(page, layout, tmp_path, cancel=None, scale=1.0):
    pool = FakePool(page)
    progress = Recorder()
    orchestrator = CaptureOrchestrator(pool, timeouts=FAST)
    paths = asyncio.run(orchestrator.capture(
        layout, tmp_path / "root", tmp_path / "out", cancel or CancelToken(), progress, scale,
    ))
    return pool, progress, paths


def test_mode_a_writes_one_image_per_marker(tmp_path: Path):
    page = FakePage(markers=4)
    layout = SlideLayout("A", ("index.html",), 1280, 720, 4)

    pool, progress, paths = run_capture(page, layout, tmp_path, scale=2.0)

    assert [p.name for p in paths] == [slide_filename(n) for n in range(1, 5)]
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["slide-001.png", "slide-002.png", "slide-003.png", "slide-004.png"]
    assert page.isolated == [0, 1, 2, 3]
    assert page.viewport == {"width": 1280, "height": 720}
    assert page.visited == ["http://slides.local/index.html"]
    assert progress.events == [(1, 4), (2, 4), (3, 4), (4, 4)]
    assert pool.acquired == [(1280, 720, 2.0)]
    assert pool.context.closed
    with Image.open(paths[0]) as img:
        assert img.format == "PNG"


def test_mode_a_uses_live_marker_count(tmp_path: Path):
    page = FakePage(markers=2)
    layout = SlideLayout("A", ("index.html",), 1920, 1080, 5)
    _, progress, paths = run_capture(page, layout, tmp_path)
    assert len(paths) == 2
    assert progress.events[-1] == (2, 2)


def test_mode_a_without_markers_is_a_layout_mismatch(tmp_path: Path):
    page = FakePage(markers=0)
    layout = SlideLayout("A", ("index.html",), 1920, 1080, 3)
    with pytest.raises(LayoutMismatch):
        run_capture(page, layout, tmp_path)


def test_mode_b_captures_each_document_in_order(tmp_path: Path):
    page = FakePage()
    layout = SlideLayout("B", ("slide 1.html", "slide-2.html", "nested/slide-10.html"), 1920, 1080, 3)
    _, progress, paths = run_capture(page, layout, tmp_path)

    assert page.visited == [
        "http://slides.local/slide%201.html",
        "http://slides.local/slide-2.html",
        "http://slides.local/nested/slide-10.html",
    ]
    assert [p.name for p in paths] == ["slide-001.png", "slide-002.png", "slide-003.png"]
    assert progress.events == [(1, 3), (2, 3), (3, 3)]


def test_cancellation_stops_before_remaining_slides(tmp_path: Path):
    cancel = CancelToken()

    class CancelAfterFirst(Recorder):
        def publish(self, current, total):
            super().publish(current, total)
            cancel.cancel("Job timed out")

    page = FakePage(markers=5)
    layout = SlideLayout("A", ("index.html",), 1920, 1080, 5)
    pool = FakePool(page)
    progress = CancelAfterFirst()
    orchestrator = CaptureOrchestrator(pool, timeouts=FAST)

    with pytest.raises(Cancelled):
        asyncio.run(orchestrator.capture(layout, tmp_path, tmp_path / "out", cancel, progress))

    assert progress.events == [(1, 5)]
    assert [p.name for p in (tmp_path / "out").iterdir()] == ["slide-001.png"]
    assert pool.context.closed


def test_already_cancelled_token_never_opens_a_surface(tmp_path: Path):
    cancel = CancelToken()
    cancel.cancel()
    pool = FakePool(FakePage())
    with pytest.raises(Cancelled):
        asyncio.run(CaptureOrchestrator(pool, timeouts=FAST).capture(
            SlideLayout("B", ("a.html",), 1920, 1080, 1), tmp_path, tmp_path / "out", cancel, Recorder(),
        ))
    assert pool.acquired == []


def test_playwright_timeout_becomes_render_timeout(tmp_path: Path):
    page = FakePage(hang_on_goto=True)
    layout = SlideLayout("B", ("a.html", "b.html"), 1920, 1080, 2)
    pool = FakePool(page)
    with pytest.raises(RenderTimeout):
        asyncio.run(CaptureOrchestrator(pool, timeouts=FAST).capture(
            layout, tmp_path, tmp_path / "out", CancelToken(), Recorder(),
        ))
    assert pool.context.closed


def test_long_document_with_uniform_children_captures_elements(tmp_path: Path):
    metrics = {
        "width": 1280,
        "height": 2160,
        "children": [{"index": i, "top": i * 720, "width": 1280, "height": 720} for i in range(3)],
    }
    page = FakePage(metrics=metrics)
    layout = SlideLayout("B", ("index.html",), 1920, 1080, 1)
    _, progress, paths = run_capture(page, layout, tmp_path)

    assert len(paths) == 3
    assert page.shots == [
        ("element", '[data-capture-slide="1"]'),
        ("element", '[data-capture-slide="2"]'),
        ("element", '[data-capture-slide="3"]'),
    ]
    assert progress.events[-1] == (3, 3)


def test_long_document_without_boundaries_is_clipped_by_aspect_ratio(tmp_path: Path):
    page = FakePage(metrics={"width": 1920, "height": 2160, "children": []})
    layout = SlideLayout("B", ("index.html",), 1920, 1080, 1)
    _, progress, paths = run_capture(page, layout, tmp_path)

    assert [p.name for p in paths] == ["slide-001.png", "slide-002.png"]
    assert page.shots == [("clip", 0, 1080), ("clip", 1080, 1080)]
    assert progress.events == [(1, 2), (2, 2)]


def test_fallback_offsets_and_urls(tmp_path: Path):
    assert fallback_offsets(2100, 1080) == [0, 1080]
    assert fallback_offsets(100, 1080) == [0]
    assert document_url("http://slides.local/", "a b/c.html") == "http://slides.local/a%20b/c.html"

    root = tmp_path / "site"
    (root / "css").mkdir(parents=True)
    (root / "index.html").write_text("<html></html>")
    (root / "css" / "a.css").write_text("body{}")
    (tmp_path / "secret.txt").write_text("nope")
    root = root.resolve()
    assert resolve_request(root, "http://slides.local/") == root / "index.html"
    assert resolve_request(root, "http://slides.local/css/a.css") == root / "css" / "a.css"
    assert resolve_request(root, "http://slides.local/%2E%2E/secret.txt") is None
    assert resolve_request(root, "http://slides.local/missing.png") is None


def test_closed_target_becomes_engine_disconnected(tmp_path: Path):
    page = FakePage(goto_error=PlaywrightError("Target page, context or browser has been closed"))
    pool = FakePool(page)
    with pytest.raises(EngineDisconnected):
        asyncio.run(CaptureOrchestrator(pool, timeouts=FAST).capture(
            SlideLayout("B", ("a.html", "b.html"), 1920, 1080, 2), tmp_path, tmp_path / "out", CancelToken(), Recorder(),
        ))
    assert pool.context.closed


def test_lost_engine_is_disconnected_even_without_a_hint(tmp_path: Path):
    page = FakePage(goto_error=PlaywrightError("net::ERR_ABORTED"))
    pool = FakePool(page)
    pool.connected = False
    with pytest.raises(EngineDisconnected):
        asyncio.run(CaptureOrchestrator(pool, timeouts=FAST).capture(
            SlideLayout("B", ("a.html",), 1920, 1080, 1), tmp_path, tmp_path / "out", CancelToken(), Recorder(),
        ))


def test_other_engine_errors_are_render_failures(tmp_path: Path):
    page = FakePage(goto_error=PlaywrightError("net::ERR_ABORTED"))
    with pytest.raises(SlideCaptureError) as excinfo:
        run_capture(page, SlideLayout("B", ("a.html",), 1920, 1080, 1), tmp_path)
    assert excinfo.value.code == "RENDER_FAILED"
    assert not isinstance(excinfo.value, EngineDisconnected)


def test_slide_names_widen_for_large_decks():
    assert slide_filename(7) == "slide-007.png"
    assert slide_filename(7, 999) == "slide-007.png"
    assert slide_filename(7, 1200) == "slide-0007.png"


def test_fallback_clipping_is_bounded_by_the_height_cap():
    offsets = fallback_offsets(10_000_000, 1080)
    assert len(offsets) == round(capture_mod.MAX_CONTENT_HEIGHT / 1080)
    assert offsets[-1] < capture_mod.MAX_CONTENT_HEIGHT
    assert capture_mod._clip_height(1080, 99_900, 10_000_000) == 100
    assert capture_mod._clip_height(1080, 0, 2160) == 1080


def test_unresolvable_request_paths_are_not_found(tmp_path: Path):
    root = tmp_path / "site"
    root.mkdir()
    (root / "index.html").write_text("<html></html>")
    root = root.resolve()
    assert resolve_request(root, "http://slides.local/img%00.png") is None
    assert resolve_request(root, "http://slides.local/" + "a" * 5000 + ".png") is None
