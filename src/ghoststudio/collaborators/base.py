"""
Collaborator contracts consumed by the orchestrator.

Concrete adapters (Gemini, rembg) live beside this module; tests plug in
fakes that satisfy the same protocols.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from ..consolidation.schema import (
    AnalysisDocument,
    ControlBlock,
    EnrichmentDocument,
    FactsRecord,
)
from ..errors import ErrorCode, GhostPipelineError

ImageRef = str


@dataclass
class RenderResult:
    """Rendered image plus whatever the render collaborator reports about it."""
    image_bytes: bytes
    mime_type: str = "image/png"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Any) -> "RenderResult":
        """Accept a RenderResult or an ``{imageBytes|image_bytes, mimeType|mime_type, metadata}`` mapping."""
        if isinstance(value, cls):
            result = value
        elif isinstance(value, Mapping):
            metadata = value.get("metadata") or {}
            if not isinstance(metadata, Mapping):
                raise GhostPipelineError("Render metadata is not a mapping", ErrorCode.STAGE_FAILED)
            result = cls(
                image_bytes=value.get("image_bytes", value.get("imageBytes")),
                mime_type=value.get("mime_type", value.get("mimeType")) or "image/png",
                metadata=dict(metadata),
            )
        else:
            raise GhostPipelineError(
                f"Render collaborator returned {type(value).__name__}, expected image bytes and metadata",
                ErrorCode.STAGE_FAILED,
            )
        if not isinstance(result.image_bytes, (bytes, bytearray)) or not result.image_bytes:
            raise GhostPipelineError("Render collaborator returned no image bytes", ErrorCode.STAGE_FAILED)
        return result


@runtime_checkable
class BackgroundRemover(Protocol):
    async def remove(self, image_ref: ImageRef, session_id: str) -> ImageRef: ...


@runtime_checkable
class VisionAnalyzer(Protocol):
    async def analyze(
        self, image_ref: ImageRef, session_id: str, on_model_ref: Optional[ImageRef] = None
    ) -> AnalysisDocument: ...


@runtime_checkable
class EnrichmentAnalyzer(Protocol):
    async def enrich(
        self, image_ref: ImageRef, session_id: str, analysis: AnalysisDocument
    ) -> EnrichmentDocument: ...


@runtime_checkable
class ConsolidationRefiner(Protocol):
    async def merge(
        self, analysis: AnalysisDocument, enrichment: Optional[EnrichmentDocument]
    ) -> Mapping[str, Any]: ...


@runtime_checkable
class ImageGenerator(Protocol):
    async def render(
        self,
        image_ref: ImageRef,
        facts: FactsRecord,
        control: ControlBlock,
        instruction: str,
        on_model_ref: Optional[ImageRef] = None,
    ) -> RenderResult: ...


def is_ready(collaborator: Any) -> bool:
    """Adapters expose ``ready``; plain fakes without it count as ready."""
    if collaborator is None:
        return False
    return bool(getattr(collaborator, "ready", True))
