# worker/static_route.py
from __future__ import annotations
import asyncio
import logging
import mimetypes
from pathlib import Path
from urllib.parse import quote, unquote, urlsplit

from playwright.async_api import BrowserContext, Route

logger = logging.getLogger(__name__)

CONTENT_ORIGIN = "http://slides.local"

mimetypes.add_type("font/woff2", ".woff2")
mimetypes.add_type("font/woff", ".woff")
mimetypes.add_type("font/ttf", ".ttf")
mimetypes.add_type("font/otf", ".otf")
mimetypes.add_type("image/svg+xml", ".svg")
mimetypes.add_type("image/webp", ".webp")
mimetypes.add_type("text/javascript", ".mjs")

def document_url(base_url: str, relative_path: str) -> str:
    return base_url.rstrip("/") + "/" + quote(relative_path)

def resolve_request(root: Path, url: str) -> Path | None:
    """Maps a request URL onto a file below root, or None (-> 404)."""
    rel = unquote(urlsplit(url).path).lstrip("/")
    try:
        target = (root / rel).resolve() if rel else root
        if target.is_dir():
            target = target / "index.html"
        if target != root and not target.is_relative_to(root):
            return None
        return target if target.is_file() else None
    except (ValueError, OSError) as e:
        logger.debug("Unresolvable request path %r: %s", rel, e)
        return None

async def mount_directory(context: BrowserContext, root_dir: Path) -> str:
    """
    Serves root_dir to this context at CONTENT_ORIGIN and returns the base URL.
    Only the job's own context sees the files; nothing listens on a port.
    """
    root = Path(root_dir).resolve()

    async def handle(route: Route) -> None:
        target = resolve_request(root, route.request.url)
        if target is None:
            logger.debug("404 %s", route.request.url)
            await route.fulfill(status=404, body="Not found", content_type="text/plain")
            return
        body = await asyncio.to_thread(target.read_bytes)
        content_type = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
        await route.fulfill(status=200, body=body, content_type=content_type)

    await context.route(f"{CONTENT_ORIGIN}/**", handle)
    logger.debug("Mounted %s at %s", root, CONTENT_ORIGIN)
    return CONTENT_ORIGIN + "/"
