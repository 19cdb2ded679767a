import io
import os
import tempfile
import zipfile

import pytest
from PIL import Image

# Set default env vars for tests before any app imports
os.environ.setdefault("WORK_ROOT", tempfile.mkdtemp(prefix="slidecapture-tests-"))
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("MAX_CONCURRENT_JOBS", "2")


def make_zip(files: dict) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


def png_bytes(width: int = 64, height: int = 36, color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def sections_html(count: int, style: str = "") -> str:
    sections = "".join(f'<section class="slide"><h1>Slide {i}</h1></section>' for i in range(1, count + 1))
    return f"<!DOCTYPE html><html><head><style>{style}</style></head><body>{sections}</body></html>"


@pytest.fixture()
def deck_zip():
    return make_zip({"deck/index.html": sections_html(3), "deck/style.css": "body{margin:0}"})
