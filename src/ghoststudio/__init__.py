"""
Ghoststudio Ghost-Mannequin Pipeline
====================================

Turns a flat-lay garment photo (plus an optional on-model reference) into a
ghost-mannequin product image under explicit time budgets and fallbacks.

Core Pipeline:
1. Background removal (optional, rembg)
2. Structural analysis (labels, hollows, details)
3. Color / fabric enrichment (optional)
4. Consolidation into FactsRecord + ControlBlock
5. Rendering
6. Render gate QA loop (bounded re-renders)

Version: 1.0.0
"""

__version__ = "1.0.0"

from .config import PipelineConfig
from .errors import ErrorCode, GhostPipelineError
from .orchestrator import PipelineOrchestrator, PipelineRequest, PipelineResult, PipelineState
from .session import Session

__all__ = [
    "ErrorCode",
    "GhostPipelineError",
    "PipelineConfig",
    "PipelineOrchestrator",
    "PipelineRequest",
    "PipelineResult",
    "PipelineState",
    "Session",
]
