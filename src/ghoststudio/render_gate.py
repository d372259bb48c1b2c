#!/usr/bin/env python3
"""
render_gate.py – Post-render structural QA
==========================================

Checks the metadata a render collaborator reports against the ControlBlock.
No pixel-level judgement happens here; the collaborator (or the local measurement)
supplies the numbers and the gate only compares them.

Checks:
- Background reported and within tolerance of pure white
- Every keep-list label reported at or above the legibility floor
- No banned element detected
- Resolution at or above the minimum (when one is given)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .collaborators.base import RenderResult
from .consolidation.normalize import is_hex
from .consolidation.schema import ControlBlock

logger = logging.getLogger("ghoststudio.render_gate")


@dataclass
class GateVerdict:
    passed: bool
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"passed": self.passed, "reasons": list(self.reasons)}


def _fmt(value: float) -> str:
    return f"{round(float(value), 2):g}"


def _lookup_legibility(scores: Mapping[str, Any], text: str) -> Optional[float]:
    if text in scores:
        value = scores[text]
    else:
        folded = {str(k).casefold(): v for k, v in scores.items()}
        value = folded.get(text.casefold())
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


class RenderGate:
    def __init__(self, background_tolerance: int = 12, min_resolution_px: Optional[int] = None):
        self.background_tolerance = background_tolerance
        self.min_resolution_px = min_resolution_px

    def evaluate(
        self,
        render_result: RenderResult,
        control_block: ControlBlock,
        min_resolution_px: Optional[int] = None,
    ) -> GateVerdict:
        meta = render_result.metadata or {}
        reasons: List[str] = []

        if "pure_white_background" in control_block.must:
            reasons.extend(self._check_background(meta.get("background_hex")))

        scores = meta.get("label_legibility")
        for text in control_block.label_keep_list:
            score = _lookup_legibility(scores, text) if isinstance(scores, Mapping) else None
            if score is None:
                reasons.append(f"label '{text}' legibility not reported")
            elif score < control_block.label_legibility_min:
                reasons.append(
                    f"label '{text}' legibility {_fmt(score)} < {_fmt(control_block.label_legibility_min)}"
                )

        detected = meta.get("detected_elements") or []
        banned = {item.casefold() for item in control_block.ban}
        for element in detected:
            if str(element).casefold() in banned:
                reasons.append(f"banned element present: {element}")

        minimum = min_resolution_px if min_resolution_px is not None else self.min_resolution_px
        if minimum:
            width, height = meta.get("width"), meta.get("height")
            if not isinstance(width, int) or not isinstance(height, int):
                reasons.append("image size not reported")
            elif max(width, height) < minimum:
                reasons.append(f"resolution {width}x{height} below {minimum}px")

        verdict = GateVerdict(passed=not reasons, reasons=reasons)
        if verdict.passed:
            logger.info("🟢 Render passed QA gate")
        else:
            logger.info(f"🟡 Render failed QA gate: {'; '.join(reasons)}")
        return verdict

    def _check_background(self, background_hex: Any) -> List[str]:
        if not is_hex(background_hex):
            return ["background color not reported"]
        rgb = [int(background_hex[i:i + 2], 16) for i in (1, 3, 5)]
        worst = max(255 - c for c in rgb)
        if worst > self.background_tolerance:
            return [f"background {background_hex.upper()} is not pure white"]
        return []
