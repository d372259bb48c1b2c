#!/usr/bin/env python3
"""
background.py – Background Removal collaborator (local matting)
===============================================================

Cuts the garment out with rembg and flattens it onto pure white, storing the
result as a new blob under the session. The source blob is never modified.

Dependencies: rembg (optional extra ``ghoststudio[matting]``), pillow
"""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Optional

from PIL import Image

from ..errors import ErrorCode, GhostPipelineError
from ..utils.images import composite_on_white, image_to_bytes
from .blob_store import BlobStore

# Optional heavy dependency
try:
    from rembg import new_session as rembg_session
    from rembg import remove as rembg_remove
    HAVE_REMBG = True
except ImportError:
    HAVE_REMBG = False

logger = logging.getLogger("ghoststudio.background")


class RembgBackgroundRemover:
    """Background Removal Service backed by a local rembg session."""

    def __init__(self, store: BlobStore, model: str = "u2net"):
        self.store = store
        self.model = model
        self._session = None
        self.ready = HAVE_REMBG
        if not HAVE_REMBG:
            logger.warning("rembg not installed; background removal unavailable (pip install ghoststudio[matting])")

    def _cutout(self, data: bytes) -> bytes:
        if self._session is None:
            self._session = rembg_session(self.model)
        out = rembg_remove(
            data,
            session=self._session,
            alpha_matting=True,
            alpha_matting_foreground_threshold=240,
            alpha_matting_background_threshold=10,
            alpha_matting_erode_size=10,
            post_process_mask=True,
        )
        # rembg returns PNG RGBA bytes for bytes input
        with Image.open(io.BytesIO(out)) as cut:
            flat = composite_on_white(cut.convert("RGBA"))
        return image_to_bytes(flat, "PNG")

    async def remove(self, image_ref: str, session_id: str) -> str:
        if not self.ready:
            raise GhostPipelineError("rembg backend not available", ErrorCode.CLIENT_MISCONFIGURED)
        data = await asyncio.to_thread(self.store.get, image_ref)
        logger.info(f"✂️ [{session_id}] Removing background ({len(data) / 1024:.1f} KB, model={self.model})")
        cleaned = await asyncio.to_thread(self._cutout, data)
        return await asyncio.to_thread(self.store.put, cleaned, session_id, "cleaned", "image/png")


def create_background_remover(store: BlobStore, enabled: bool = True, model: str = "u2net") -> Optional[RembgBackgroundRemover]:
    if not enabled:
        return None
    return RembgBackgroundRemover(store, model=model)
