"""
Utility modules for ghoststudio.
"""

from .images import (
    composite_on_white,
    extension_for,
    image_to_bytes,
    load_image_source,
    measure_render_metadata,
    sniff_mime,
)

__all__ = [
    "composite_on_white",
    "extension_for",
    "image_to_bytes",
    "load_image_source",
    "measure_render_metadata",
    "sniff_mime",
]
