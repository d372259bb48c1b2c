#!/usr/bin/env python3
"""
prompting.py – Render instruction weaver
========================================

Turn a FactsRecord + ControlBlock into a sectioned render instruction.

Sections:
1. Task line (image only, labels and hollows first)
2. Non-negotiable facts (observed values only; defaulted colors are not asserted)
3. Mandatory style guide (white background, framing margin, shadow style)
4. Required properties (ControlBlock.must)
5. Label preservation (exact text, bbox hints, legibility floor)
6. Hollow regions and critical details
7. Forbidden elements and edits (ControlBlock.ban + safety)
8. Corrections from a failed render gate (re-render attempts only)

Dependencies: PyYAML
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from .consolidation.schema import ControlBlock, FactsRecord

logger = logging.getLogger("ghoststudio.prompting")

TASK_LINE = (
    "Create a commercial ghost-mannequin product image of the garment in the first image, "
    "following the facts and constraints below. Return IMAGE ONLY. "
    "Prioritize label preservation and interior hollows if present."
)

MUST_PHRASES = {
    "pure_white_background": "Pure white (#FFFFFF) seamless background",
    "ghost_mannequin_effect": "Ghost-mannequin effect: worn, three-dimensional volume with no visible body or support",
    "interior_hollows_visible": "Interior hollows visible with realistic depth at every listed opening",
    "preserve_brand_label": "Brand label preserved in place with its exact text legible",
}

DEFAULT_FORBIDDEN_EDITS = [
    "DO NOT invent or add features not present in the original garment",
    "DO NOT relocate, restyle or re-letter labels",
    "DO NOT alter the garment colors",
    "DO NOT add patterns, prints or graphics not in the original",
    "DO NOT change closures, pockets, neckline or sleeve length",
    "DO NOT modify garment proportions or silhouette",
]


class InstructionWeaver:
    """Builds the render instruction text handed to the image generation service."""

    def __init__(self, style_config_path: Optional[Path] = None):
        if style_config_path and Path(style_config_path).exists():
            with open(style_config_path, "r") as f:
                self.style_config = yaml.safe_load(f) or {}
            logger.info(f"InstructionWeaver style loaded from {style_config_path}")
        else:
            self.style_config = self._default_style_config()

    def weave(
        self,
        facts: FactsRecord,
        control: ControlBlock,
        corrections: Sequence[str] = (),
    ) -> str:
        sections = [
            TASK_LINE,
            self._build_facts_section(facts),
            self._build_style_guide_section(facts),
            self._build_must_section(control),
        ]
        labels = self._build_label_section(control)
        if labels:
            sections.append(labels)
        structure = self._build_structure_section(facts)
        if structure:
            sections.append(structure)
        sections.append(self._build_forbidden_section(control))
        if corrections:
            sections.append(self._build_corrections_section(corrections))
        return "\n\n".join(sections)

    def _build_facts_section(self, facts: FactsRecord) -> str:
        rows: List[str] = []
        for key, title in (
            ("category_generic", "GARMENT_CATEGORY"),
            ("silhouette", "SILHOUETTE"),
            ("material", "MATERIAL"),
            ("weave_knit", "CONSTRUCTION"),
            ("transparency", "TRANSPARENCY"),
            ("surface_sheen", "SURFACE_SHEEN"),
            ("pattern", "PATTERN"),
            ("print_scale", "PRINT_SCALE"),
            ("edge_finish", "EDGE_FINISH"),
        ):
            if not facts.was_defaulted(key):
                rows.append(f"{title}: {getattr(facts, key)}")
        if not facts.was_defaulted("drape_stiffness"):
            rows.append(f"DRAPE_STIFFNESS: {facts.drape_stiffness:.2f} (0 fluid .. 1 rigid)")

        palette = facts.palette
        if facts.was_defaulted("palette.dominant_hex"):
            rows.append("PRIMARY_COLOR: match the source image exactly")
        else:
            rows.append(f"PRIMARY_COLOR: {palette.dominant_hex}")
        if not facts.was_defaulted("palette.accent_hex"):
            rows.append(f"ACCENT_COLOR: {palette.accent_hex}")
        if palette.pattern_hexes:
            rows.append(f"PATTERN_COLORS: {', '.join(palette.pattern_hexes)}")
        if facts.special_handling:
            rows.append(f"SPECIAL_HANDLING: {facts.special_handling}")
        return "NON-NEGOTIABLE FACTS:\n" + "\n".join(f"- {row}" for row in rows)

    def _build_style_guide_section(self, facts: FactsRecord) -> str:
        style = self.style_config.get("style_guide", {})
        return f"""MANDATORY STYLE GUIDE:
- BACKGROUND: {style.get('background', 'pure white (#FFFFFF), seamless')}
- LIGHTING: {style.get('lighting', 'high-key, even, diffused studio lighting')}
- COLOR_SPACE: {style.get('color_space', 'sRGB')}
- VIEW: {facts.view}
- FRAMING_MARGIN: {facts.framing_margin_pct:g}% on every side, garment centered
- SHADOW: {facts.shadow_style}, contact only
- RESOLUTION: at least {facts.qa_targets.min_resolution_px}px on the long edge"""

    def _build_must_section(self, control: ControlBlock) -> str:
        rows = [MUST_PHRASES.get(item, item.replace("_", " ")) for item in control.must]
        return "REQUIRED:\n" + "\n".join(f"- {row}" for row in rows)

    def _build_label_section(self, control: ControlBlock) -> str:
        if not control.label_keep_list:
            return ""
        rows = [f'"{text}" (exact text, unchanged position)' for text in control.label_keep_list]
        for bbox in control.label_bbox_hard_hints:
            rows.append("keep label region " + ", ".join(f"{v:.3f}" for v in bbox) + " (normalized x1,y1,x2,y2)")
        rows.append(f"minimum legibility {control.label_legibility_min:.2f}")
        return "LABELS TO PRESERVE:\n" + "\n".join(f"- {row}" for row in rows)

    def _build_structure_section(self, facts: FactsRecord) -> str:
        rows: List[str] = []
        for region in facts.hollow_regions:
            if not region.keep_hollow:
                continue
            row = f"HOLLOW {region.region_type.upper()}: show interior depth"
            if region.inner_description:
                row += f" ({region.inner_description})"
            rows.append(row)
        for surface in facts.interior_analysis:
            if surface.color_hex or surface.material_description:
                desc = ", ".join(x for x in (surface.material_description, surface.color_hex) if x)
                rows.append(f"INTERIOR {surface.surface_type.upper()}: {desc}")
        for detail in facts.preserve_details:
            if detail.priority in ("critical", "important"):
                where = f" at {detail.location}" if detail.location else ""
                rows.append(f"PRESERVE {detail.priority.upper()}: {detail.element}{where}")
        for feature in facts.construction_details:
            if feature.critical_for_structure:
                rule = f" ({feature.silhouette_rule})" if feature.silhouette_rule else ""
                rows.append(f"STRUCTURE: {feature.feature}{rule}")
        if facts.structural_asymmetry.expected:
            regions = ", ".join(facts.structural_asymmetry.regions) or "as in source"
            rows.append(f"ASYMMETRY EXPECTED: {regions} (do not symmetrize)")
        if not rows:
            return ""
        return "GARMENT STRUCTURE:\n" + "\n".join(f"- {row}" for row in rows)

    def _build_forbidden_section(self, control: ControlBlock) -> str:
        rows = [f"NO {item.replace('_', ' ').upper()}" for item in control.ban]
        rows.extend(self.style_config.get("forbidden_edits", []))
        rows.extend(DEFAULT_FORBIDDEN_EDITS)
        return "FORBIDDEN:\n" + "\n".join(f"- {row}" for row in rows)

    def _build_corrections_section(self, corrections: Sequence[str]) -> str:
        return (
            "CORRECTIONS REQUIRED (previous render failed QA):\n"
            + "\n".join(f"- {reason}" for reason in corrections)
        )

    def _default_style_config(self) -> Dict[str, Any]:
        """Default style configuration when no config file is provided."""
        return {
            "style_guide": {
                "background": "pure white (#FFFFFF), seamless",
                "lighting": "high-key, even, diffused studio lighting",
                "color_space": "sRGB",
            },
            "forbidden_edits": [],
        }
