# worker/postprocess.py
from __future__ import annotations
import io
import logging
from pathlib import Path

from PIL import Image

from core.errors import PostProcessError

logger = logging.getLogger(__name__)

# screenshots are our own output: up to 8192px per side at 2x scale
Image.MAX_IMAGE_PIXELS = (8192 * 2) * (8192 * 2)

PNG_COMPRESS_LEVEL = 6

def postprocess_png(raw: bytes, output_path: Path) -> Path:
    """Re-encodes a raw screenshot as a lossless PNG with standard compression."""
    try:
        with Image.open(io.BytesIO(raw)) as img:
            img.load()
            img.save(output_path, format="PNG", compress_level=PNG_COMPRESS_LEVEL)
            width, height = img.size
    except (OSError, Image.DecompressionBombError) as e:
        raise PostProcessError(f"Could not encode {Path(output_path).name}: {e}") from e

    logger.debug("Post-processed %s (%dx%d, %d bytes)", output_path, width, height, Path(output_path).stat().st_size)
    return Path(output_path)
