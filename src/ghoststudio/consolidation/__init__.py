"""
Consolidation
=============

- schema: tolerant input documents, strict FactsRecord / ControlBlock
- normalize: field-level repair helpers
- engine: fallback merge, refinement overlay, control block derivation
"""

from .engine import ConsolidationEngine, consolidate, derive_control_block
from .schema import (
    NEUTRAL_GRAY,
    AnalysisDocument,
    Conflict,
    ConsolidationResult,
    ControlBlock,
    EnrichmentDocument,
    FactsRecord,
)

__all__ = [
    "NEUTRAL_GRAY",
    "AnalysisDocument",
    "Conflict",
    "ConsolidationEngine",
    "ConsolidationResult",
    "ControlBlock",
    "EnrichmentDocument",
    "FactsRecord",
    "consolidate",
    "derive_control_block",
]
