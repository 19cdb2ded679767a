# worker/detector.py
"""
Slide layout detection.

Two halves:

- `detect(root_dir)` looks at the extracted files only (no browser): it picks
  the documents to render, decides between Mode A (one document with marked
  slide sections) and Mode B (one document per slide), and reads any page
  size the stylesheets declare.
- `segment(metrics)` runs the in-browser heuristics for a single long
  document. The capture stage measures the page into `PageMetrics`; the
  strategies below are pure functions over that snapshot, tried in order,
  first match wins.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import cssutils
from bs4 import BeautifulSoup

from core.errors import NoDocuments

logger = logging.getLogger(__name__)
cssutils.log.setLevel(logging.CRITICAL)

HTML_SUFFIXES = (".html", ".htm")
SKIP_DIRS = {"node_modules"}
SLIDE_SELECTOR = "section.slide, div.slide, [data-slide]"
SLIDE_CSS_SELECTORS = {".slide", "section.slide", "div.slide", "[data-slide]"}
PAGE_CSS_SELECTORS = {"body", "html"}

MIN_WIDTH, MAX_WIDTH = 320, 8192
MIN_HEIGHT, MAX_HEIGHT = 200, 8192
MAX_CONTENT_HEIGHT = 100_000
DEFAULT_SIZE = (1920, 1080)

SIZE_TOLERANCE_PX = 4
MIN_UNIFORM_HEIGHT = 200
RATIO_TOLERANCE_PX = 8
ASPECT_RATIOS: List[Tuple[str, float]] = [("16:9", 16 / 9), ("4:3", 4 / 3), ("16:10", 16 / 10)]

UNIT_TO_PX = {"px": 1.0, "in": 96.0, "cm": 96.0 / 2.54, "mm": 96.0 / 25.4, "pt": 96.0 / 72.0}
_LENGTH_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(px|in|cm|mm|pt)?\s*$", re.I)

# --------------------------------------------------------------------------- #
# Types
# --------------------------------------------------------------------------- #

@dataclass(frozen=True)
class SlideLayout:
    mode: str  # "A" or "B"
    documents: Tuple[str, ...]  # posix paths relative to the content root
    slide_width: int
    slide_height: int
    slide_count: int
    declared: bool = False

    @property
    def entry_file(self) -> str:
        return self.documents[0]

    @property
    def is_single_document(self) -> bool:
        return self.mode == "B" and len(self.documents) == 1

@dataclass(frozen=True)
class ChildBox:
    index: int
    top: float
    width: float
    height: float
    page_break: bool = False

@dataclass(frozen=True)
class PageMetrics:
    content_width: float
    content_height: float
    children: Tuple[ChildBox, ...] = ()
    declared_size: Optional[Tuple[int, int]] = None

    @classmethod
    def from_payload(cls, payload: dict, declared_size: Optional[Tuple[int, int]] = None) -> "PageMetrics":
        children = tuple(
            ChildBox(
                index=int(c["index"]),
                top=float(c.get("top", 0)),
                width=float(c.get("width", 0)),
                height=float(c.get("height", 0)),
                page_break=bool(c.get("pageBreak", False)),
            )
            for c in payload.get("children", [])
        )
        return cls(
            content_width=float(payload.get("width", 0)),
            content_height=float(payload.get("height", 0)),
            children=children,
            declared_size=declared_size,
        )

@dataclass(frozen=True)
class SlideSegmentation:
    strategy: str
    slide_width: int
    slide_height: int
    element_indices: Tuple[int, ...] = ()
    offsets: Tuple[int, ...] = ()

    @property
    def slide_count(self) -> int:
        return len(self.element_indices) or len(self.offsets)

Strategy = Callable[[PageMetrics], Optional[SlideSegmentation]]

# --------------------------------------------------------------------------- #
# Dimension helpers
# --------------------------------------------------------------------------- #

def _clamp(value: float, lo: int, hi: int) -> int:
    return int(min(max(round(value), lo), hi))

def clamp_size(width: float, height: float) -> Tuple[int, int]:
    return _clamp(width, MIN_WIDTH, MAX_WIDTH), _clamp(height, MIN_HEIGHT, MAX_HEIGHT)

def _close(a: float, b: float, tol: float = SIZE_TOLERANCE_PX) -> bool:
    return abs(a - b) <= tol

def parse_length(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    m = _LENGTH_RE.match(value)
    if not m:
        return None
    number = float(m.group(1))
    unit = (m.group(2) or "px").lower()
    px = number * UNIT_TO_PX[unit]
    return px if px > 0 else None

def parse_page_size(value: Optional[str]) -> Optional[Tuple[float, float]]:
    """`size: 1280px 720px` -> (1280, 720). Keywords like `A4` or `landscape` are ignored."""
    if not value:
        return None
    parts = value.split()
    if len(parts) != 2:
        return None
    w, h = parse_length(parts[0]), parse_length(parts[1])
    if w is None or h is None:
        return None
    return w, h

# --------------------------------------------------------------------------- #
# Segmentation strategies (pure)
# --------------------------------------------------------------------------- #

def declared_page_size(m: PageMetrics) -> Optional[SlideSegmentation]:
    if not m.declared_size:
        return None
    w, h = clamp_size(*m.declared_size)

    same = [c for c in m.children if _close(c.width, w) and _close(c.height, h)]
    boundaries = [c for c in same if c.page_break]
    chosen = boundaries or same
    if chosen:
        return SlideSegmentation(
            "declared_page_size", w, h, element_indices=tuple(c.index for c in chosen)
        )

    count = max(1, round(m.content_height / h))
    return SlideSegmentation("declared_page_size", w, h, offsets=tuple(i * h for i in range(count)))

def uniform_children(m: PageMetrics) -> Optional[SlideSegmentation]:
    visible = [c for c in m.children if c.width > 0 and c.height > 0]
    if len(visible) < 2:
        return None
    first = visible[0].height
    if any(not _close(c.height, first) for c in visible):
        return None
    if first <= MIN_UNIFORM_HEIGHT:
        return None
    width = max(c.width for c in visible) or m.content_width
    w, h = clamp_size(width, first)
    return SlideSegmentation("uniform_children", w, h, element_indices=tuple(c.index for c in visible))

def aspect_ratio(m: PageMetrics) -> Optional[SlideSegmentation]:
    width = _clamp(m.content_width, MIN_WIDTH, MAX_WIDTH)
    total = m.content_height
    best: Optional[Tuple[float, str, float, int]] = None

    for name, ratio in ASPECT_RATIOS:
        slide_h = width / ratio
        count = round(total / slide_h)
        if count <= 1:
            continue
        remainder = abs(total - count * slide_h)
        if remainder > RATIO_TOLERANCE_PX * count:
            continue
        if best is None or remainder < best[0]:
            best = (remainder, name, slide_h, count)

    if best is None:
        return None
    _, name, slide_h, count = best
    logger.debug("Aspect ratio %s matched: %d slides of %.1fpx", name, count, slide_h)
    return SlideSegmentation(
        "aspect_ratio",
        width,
        _clamp(slide_h, MIN_HEIGHT, MAX_HEIGHT),
        offsets=tuple(int(round(i * slide_h)) for i in range(count)),
    )

def single_slide(m: PageMetrics) -> Optional[SlideSegmentation]:
    w, h = clamp_size(m.content_width, m.content_height)
    return SlideSegmentation("single_slide", w, h, offsets=(0,))

STRATEGIES: Tuple[Strategy, ...] = (declared_page_size, uniform_children, aspect_ratio, single_slide)

def segment(metrics: PageMetrics, strategies: Sequence[Strategy] = STRATEGIES) -> SlideSegmentation:
    metrics = replace(metrics, content_height=min(metrics.content_height, MAX_CONTENT_HEIGHT))
    for strategy in strategies:
        result = strategy(metrics)
        if result is not None and result.slide_count > 0:
            logger.info("Segmentation: %s -> %d slides (%dx%d)",
                        result.strategy, result.slide_count, result.slide_width, result.slide_height)
            return result
    return single_slide(metrics)

# --------------------------------------------------------------------------- #
# Static document analysis
# --------------------------------------------------------------------------- #

def natural_key(path: str) -> List[object]:
    """slide-2 sorts before slide-10."""
    return [int(tok) if tok.isdigit() else tok.casefold() for tok in re.split(r"(\d+)", path)]

def find_documents(root_dir: Path) -> List[str]:
    root_dir = Path(root_dir)
    found: List[str] = []
    for path in root_dir.rglob("*"):
        rel = path.relative_to(root_dir)
        if any(part.startswith(".") or part in SKIP_DIRS for part in rel.parts[:-1]):
            continue
        if path.is_file() and path.name.lower().endswith(HTML_SUFFIXES):
            found.append(rel.as_posix())
    return sorted(found, key=natural_key)

def _read_soup(path: Path) -> BeautifulSoup:
    return BeautifulSoup(path.read_text(encoding="utf-8", errors="replace"), "html.parser")

def count_slide_markers(soup: BeautifulSoup) -> int:
    return len(soup.select(SLIDE_SELECTOR))

def _stylesheets(soup: BeautifulSoup, doc_path: Path, root_dir: Path) -> List[str]:
    sheets = [tag.get_text() for tag in soup.find_all("style")]
    root = Path(root_dir).resolve()
    for link in soup.find_all("link"):
        rel = [r.lower() for r in (link.get("rel") or [])]
        href = (link.get("href") or "").split("?")[0].split("#")[0]
        if "stylesheet" not in rel or not href or re.match(r"^[a-z]+:|^//", href, re.I):
            continue
        css_path = (doc_path.parent / href).resolve()
        if not css_path.is_relative_to(root) or not css_path.is_file():
            continue
        sheets.append(css_path.read_text(encoding="utf-8", errors="replace"))
    return sheets

def _style_size(style) -> Optional[Tuple[float, float]]:
    w = parse_length(style.getPropertyValue("width"))
    h = parse_length(style.getPropertyValue("height"))
    if w is None or h is None:
        return None
    return w, h

def declared_size(soup: BeautifulSoup, doc_path: Path, root_dir: Path) -> Optional[Tuple[int, int]]:
    """
    Fixed slide size declared by the document's stylesheets, in priority order:
    @page size, a fixed width+height on the slide selector, then on body/html,
    then inline style on the first slide element.
    """
    page_size = slide_size = body_size = None

    for css_text in _stylesheets(soup, doc_path, root_dir):
        try:
            sheet = cssutils.parseString(css_text)
        except Exception as e:
            logger.debug("Unparseable stylesheet in %s: %s", doc_path, e)
            continue
        for rule in sheet:
            if rule.type == rule.PAGE_RULE and page_size is None:
                page_size = parse_page_size(rule.style.getPropertyValue("size"))
            elif rule.type == rule.STYLE_RULE:
                selectors = {s.strip() for s in rule.selectorText.split(",")}
                if slide_size is None and selectors & SLIDE_CSS_SELECTORS:
                    slide_size = _style_size(rule.style)
                elif body_size is None and selectors & PAGE_CSS_SELECTORS:
                    body_size = _style_size(rule.style)

    inline_size = None
    first = soup.select_one(SLIDE_SELECTOR)
    if first is not None and first.get("style"):
        inline_size = _style_size(cssutils.parseStyle(first["style"]))

    size = page_size or slide_size or body_size or inline_size
    if size is None:
        return None
    return clamp_size(*size)

def _index_document(root_dir: Path, documents: List[str]) -> Optional[str]:
    if len(documents) == 1:
        return documents[0]
    indexes = [d for d in documents if Path(d).name.lower() in ("index.html", "index.htm")]
    if not indexes:
        return None
    # the shallowest index wins
    return min(indexes, key=lambda d: (d.count("/"), natural_key(d)))

def detect(root_dir: Path) -> SlideLayout:
    root_dir = Path(root_dir)
    documents = find_documents(root_dir)
    if not documents:
        raise NoDocuments("No HTML files found in the project")

    index = _index_document(root_dir, documents)
    if index is not None:
        soup = _read_soup(root_dir / index)
        markers = count_slide_markers(soup)
        if markers >= 2:
            size = declared_size(soup, root_dir / index, root_dir)
            w, h = size or DEFAULT_SIZE
            logger.info("Detected Mode A: %s with %d slide sections (%dx%d)", index, markers, w, h)
            return SlideLayout("A", (index,), w, h, markers, declared=size is not None)

    first = documents[0]
    size = declared_size(_read_soup(root_dir / first), root_dir / first, root_dir)
    w, h = size or DEFAULT_SIZE
    logger.info("Detected Mode B: %d documents (%dx%d)", len(documents), w, h)
    return SlideLayout("B", tuple(documents), w, h, len(documents), declared=size is not None)
