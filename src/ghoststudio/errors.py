"""
errors.py – Error taxonomy for the ghost-mannequin pipeline
===========================================================

Every terminal result names the failing stage and one of these stable codes.
Raw collaborator exceptions are wrapped, never surfaced.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    STAGE_TIMEOUT = "STAGE_TIMEOUT"
    STAGE_FAILED = "STAGE_FAILED"
    # internal signal from the stage executor, never placed in a PipelineResult
    STAGE_FAILED_FALLBACK_REQUESTED = "STAGE_FAILED_FALLBACK_REQUESTED"
    CONSOLIDATION_SCHEMA_INVALID = "CONSOLIDATION_SCHEMA_INVALID"
    RENDER_QA_EXHAUSTED = "RENDER_QA_EXHAUSTED"
    CLIENT_MISCONFIGURED = "CLIENT_MISCONFIGURED"
    MISSING_FLATLAY = "MISSING_FLATLAY"
    PIPELINE_CANCELLED = "PIPELINE_CANCELLED"


class GhostPipelineError(Exception):
    """Pipeline error carrying a stable code and the stage it originated in."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.STAGE_FAILED,
        stage: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = ErrorCode(code)
        self.stage = stage
        self.cause = cause

    def with_stage(self, stage: str) -> "GhostPipelineError":
        """Return a copy tagged with ``stage`` (keeps the original if already tagged)."""
        if self.stage:
            return self
        return GhostPipelineError(self.message, self.code, stage, self.cause)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "code": self.code.value,
            "message": self.message,
        }

    def __repr__(self) -> str:
        return f"GhostPipelineError(code={self.code.value}, stage={self.stage!r}, message={self.message!r})"
