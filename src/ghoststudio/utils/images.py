#!/usr/bin/env python3
"""
images.py – Image payload helpers
=================================

- Load request images from bytes, paths, http(s) URLs or data URIs
- Sniff MIME type with Pillow
- Measure rendered images for gate metadata (size, background color/purity)

Dependencies: pillow numpy requests
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from pathlib import Path
from typing import Any, Dict, Tuple, Union

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

from ..errors import ErrorCode, GhostPipelineError

logger = logging.getLogger("ghoststudio.images")

ImageSource = Union[bytes, bytearray, str, Path]

FETCH_TIMEOUT_S = 30
BORDER_FRACTION = 0.04


def sniff_mime(data: bytes) -> str:
    """Return the MIME type Pillow detects, raising on non-images."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError) as e:
        raise GhostPipelineError(f"Payload is not a readable image: {e}", ErrorCode.STAGE_FAILED, cause=e) from e
    return Image.MIME.get(fmt or "", "application/octet-stream")


def extension_for(mime_type: str) -> str:
    return {
        "image/png": ".png",
        "image/jpeg": ".jpg",
        "image/webp": ".webp",
        "image/gif": ".gif",
    }.get(mime_type, ".bin")


def _decode_data_uri(uri: str) -> bytes:
    payload = uri.split(",", 1)[-1]
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise GhostPipelineError("Invalid base64 data URI", ErrorCode.MISSING_FLATLAY, cause=e) from e


def load_image_source(source: ImageSource) -> Tuple[bytes, str]:
    """
    Read an image from any supported source form.
    Returns: (bytes, mime_type)
    """
    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
    elif isinstance(source, Path) or (isinstance(source, str) and not source.startswith(("http://", "https://", "data:"))):
        path = Path(source)
        if not path.is_file():
            raise GhostPipelineError(f"Image not found: {path}", ErrorCode.MISSING_FLATLAY)
        data = path.read_bytes()
    elif source.startswith("data:"):
        data = _decode_data_uri(source)
    else:
        logger.info(f"🔗 Fetching image: {source[:60]}...")
        try:
            resp = requests.get(source, timeout=FETCH_TIMEOUT_S)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise GhostPipelineError(f"Could not fetch image: {e}", ErrorCode.MISSING_FLATLAY, cause=e) from e
        data = resp.content

    if not data:
        raise GhostPipelineError("Image payload is empty", ErrorCode.MISSING_FLATLAY)
    return data, sniff_mime(data)


def image_to_bytes(image: Image.Image, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


def composite_on_white(image: Image.Image) -> Image.Image:
    """Flatten an RGBA cut-out onto pure white."""
    if image.mode != "RGBA":
        return image.convert("RGB")
    canvas = Image.new("RGB", image.size, (255, 255, 255))
    canvas.paste(image, mask=image.split()[3])
    return canvas


def _to_hex(rgb: np.ndarray) -> str:
    r, g, b = (int(round(float(c))) for c in rgb[:3])
    return f"#{r:02X}{g:02X}{b:02X}"


def measure_render_metadata(image_bytes: bytes) -> Dict[str, Any]:
    """
    Measure what the render gate needs from pixels alone.

    The background is sampled on a thin border ring (the garment is centred),
    purity is 1.0 for perfect white and falls off with mean distance from white.
    """
    with Image.open(io.BytesIO(image_bytes)) as img:
        rgb = np.asarray(img.convert("RGB"), dtype=np.float32)

    h, w = rgb.shape[:2]
    band = max(1, int(min(h, w) * BORDER_FRACTION))
    ring = np.concatenate([
        rgb[:band].reshape(-1, 3),
        rgb[-band:].reshape(-1, 3),
        rgb[:, :band].reshape(-1, 3),
        rgb[:, -band:].reshape(-1, 3),
    ])

    median = np.median(ring, axis=0)
    distances = np.linalg.norm(ring - np.array([255.0, 255.0, 255.0]), axis=1)
    purity = max(0.0, 1.0 - float(np.mean(distances)) / 50.0)

    return {
        "width": int(w),
        "height": int(h),
        "background_hex": _to_hex(median),
        "background_purity": round(purity, 4),
    }
