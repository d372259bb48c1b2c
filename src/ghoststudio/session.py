"""
session.py – Per-run session record
===================================

A Session correlates every stage call and blob upload of one pipeline run.
It is mutated only by the orchestrator, one append per stage, and is never
persisted: a retried run gets a fresh Session.
"""

from __future__ import annotations

import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import GhostPipelineError


def new_session_id() -> str:
    """Session ids look like ``ghost_<utc timestamp>_<hex8>``."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"ghost_{stamp}_{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class StageRecord:
    """Outcome of one stage attempt as seen by the session."""
    stage: str
    status: str
    duration_ms: int
    attempts: int = 1
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "stage": self.stage,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "attempts": self.attempts,
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class Session:
    id: str = field(default_factory=new_session_id)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stage_results: "OrderedDict[str, StageRecord]" = field(default_factory=OrderedDict)
    _t0: float = field(default_factory=time.monotonic, repr=False)

    def record(
        self,
        stage: str,
        status: str,
        duration_ms: int,
        attempts: int = 1,
        error: Optional[GhostPipelineError] = None,
    ) -> str:
        """
        Append one stage result and return the key it was stored under.

        Stages that run more than once (re-renders) are keyed ``Stage#2``,
        ``Stage#3``...; existing entries are never overwritten.
        """
        key = stage
        n = 1
        while key in self.stage_results:
            n += 1
            key = f"{stage}#{n}"
        self.stage_results[key] = StageRecord(
            stage=stage,
            status=status,
            duration_ms=int(duration_ms),
            attempts=attempts,
            error=error.to_dict() if error is not None else None,
        )
        return key

    def stage_timings(self) -> Dict[str, int]:
        return {key: rec.duration_ms for key, rec in self.stage_results.items()}

    def total_duration_ms(self) -> int:
        """Sum of recorded stage durations (observability only)."""
        return sum(rec.duration_ms for rec in self.stage_results.values())

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._t0) * 1000)
