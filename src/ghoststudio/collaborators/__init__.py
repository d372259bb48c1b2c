"""
External collaborators
======================

- base: protocols + RenderResult
- blob_store: session-keyed, content-addressed image store
- background: local rembg background removal
- gemini: analysis / enrichment / refinement / rendering on google-genai
"""

from .base import (
    BackgroundRemover,
    ConsolidationRefiner,
    EnrichmentAnalyzer,
    ImageGenerator,
    RenderResult,
    VisionAnalyzer,
    is_ready,
)
from .blob_store import BlobStore, InMemoryBlobStore, LocalBlobStore, S3BlobStore, create_blob_store

__all__ = [
    "BackgroundRemover",
    "BlobStore",
    "ConsolidationRefiner",
    "EnrichmentAnalyzer",
    "ImageGenerator",
    "InMemoryBlobStore",
    "LocalBlobStore",
    "RenderResult",
    "S3BlobStore",
    "VisionAnalyzer",
    "create_blob_store",
    "is_ready",
]
