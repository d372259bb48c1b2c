#!/usr/bin/env python3
"""
engine.py – Consolidation Engine
================================

Merge the analysis and enrichment documents into one FactsRecord + ControlBlock.

- Fallback merge: deterministic, local, zero remote calls
- Optional refinement: one bounded remote "repair/merge" call whose output is
  laid over the fallback merge, then re-checked against the source documents
- Analysis owns labels / preserve details / hollows / interior / construction
- Enrichment owns colors (the specialised color pass wins ties)
- Every required field is observed or explicitly defaulted, and defaults are
  listed in FactsRecord.defaulted_fields
- Validation failure after defaulting is a hard CONSOLIDATION_SCHEMA_INVALID

Dependencies: pydantic
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from pydantic import ValidationError

from ..errors import ErrorCode, GhostPipelineError
from ..session import Session
from ..stages.executor import FAIL_FAST, RetryPolicy, run_stage
from .normalize import (
    SHEEN_SYNONYMS,
    TRANSPARENCY_SYNONYMS,
    WEAVE_SYNONYMS,
    clamp,
    coerce_hex,
    drape_from_quality,
    normalize_asymmetry,
    normalize_labels,
    normalize_safety,
    pick_enum,
    text_or_none,
    valid_hexes,
)
from .schema import (
    NEUTRAL_GRAY,
    AnalysisDocument,
    Conflict,
    ConsolidationResult,
    ControlBlock,
    EnrichmentDocument,
    FactsRecord,
    QATargets,
)

logger = logging.getLogger("ghoststudio.consolidation")

STAGE_NAME = "Consolidation"
REFINEMENT_STAGE_NAME = "ConsolidationRefinement"

FACT_DEFAULTS: Dict[str, Any] = {
    "category_generic": "unknown",
    "silhouette": "generic_silhouette",
    "material": "unspecified_material",
    "weave_knit": "unknown",
    "drape_stiffness": 0.4,
    "transparency": "opaque",
    "surface_sheen": "matte",
    "pattern": "unknown",
    "print_scale": "unknown",
    "edge_finish": "unknown",
    "view": "front",
    "framing_margin_pct": 6.0,
    "shadow_style": "soft",
}

# lists copied verbatim from the analysis document
ANALYSIS_OWNED = (
    "labels_found",
    "preserve_details",
    "hollow_regions",
    "interior_analysis",
    "construction_details",
)

MUST_BASELINE = ("pure_white_background", "ghost_mannequin_effect")
BAN_BASELINE = ("mannequins", "humans", "props", "reflections", "long_shadows")
DEFAULT_LABEL_LEGIBILITY_MIN = 0.8

DocLike = Union[Mapping[str, Any], AnalysisDocument, EnrichmentDocument, None]

# ---------------------------------------------------------------------------
# Input coercion
# ---------------------------------------------------------------------------

def _coerce_analysis(analysis: DocLike) -> AnalysisDocument:
    if analysis is None:
        raise GhostPipelineError(
            "Analysis document is missing; nothing to consolidate",
            ErrorCode.CONSOLIDATION_SCHEMA_INVALID,
            stage=STAGE_NAME,
        )
    if isinstance(analysis, AnalysisDocument):
        return analysis
    if not isinstance(analysis, Mapping):
        raise GhostPipelineError(
            f"Analysis document must be a mapping, got {type(analysis).__name__}",
            ErrorCode.CONSOLIDATION_SCHEMA_INVALID,
            stage=STAGE_NAME,
        )
    try:
        return AnalysisDocument.model_validate(dict(analysis))
    except ValidationError as e:
        raise GhostPipelineError(
            f"Analysis document is structurally unusable: {e.error_count()} error(s)",
            ErrorCode.CONSOLIDATION_SCHEMA_INVALID,
            stage=STAGE_NAME,
            cause=e,
        ) from e


def _coerce_enrichment(enrichment: DocLike) -> Optional[EnrichmentDocument]:
    if enrichment is None or isinstance(enrichment, EnrichmentDocument):
        return enrichment
    if not isinstance(enrichment, Mapping):
        logger.warning(f"Ignoring enrichment of type {type(enrichment).__name__}")
        return None
    try:
        return EnrichmentDocument.model_validate(dict(enrichment))
    except ValidationError as e:
        # enrichment refines, it never gates
        logger.warning(f"Ignoring malformed enrichment document ({e.error_count()} error(s))")
        return None


# ---------------------------------------------------------------------------
# Fallback merge
# ---------------------------------------------------------------------------

def _first(*values: Any) -> Any:
    for v in values:
        if v is not None and v != "":
            return v
    return None


def _fallback_merge(
    analysis: AnalysisDocument,
    enrichment: Optional[EnrichmentDocument],
    original: Mapping[str, Any],
) -> Tuple[Dict[str, Any], Set[str]]:
    defaulted: Set[str] = set()

    cp = enrichment.color_precision if enrichment else None
    fb = enrichment.fabric_behavior if enrichment else None
    cpr = enrichment.construction_precision if enrichment else None
    rg = enrichment.rendering_guidance if enrichment else None

    observed: Dict[str, Any] = {
        "category_generic": text_or_none(_first(original.get("category_generic"), original.get("category"))),
        "silhouette": text_or_none(original.get("silhouette")),
        "material": text_or_none(original.get("material")),
        "weave_knit": pick_enum(original.get("weave_knit"), WEAVE_SYNONYMS),
        "drape_stiffness": _first(
            drape_from_quality(fb.drape_quality) if fb else None,
            clamp(original.get("drape_stiffness"), 0.0, 1.0),
        ),
        "transparency": _first(
            pick_enum(fb.transparency_level, TRANSPARENCY_SYNONYMS) if fb else None,
            pick_enum(original.get("transparency"), TRANSPARENCY_SYNONYMS),
        ),
        "surface_sheen": _first(
            pick_enum(fb.surface_sheen, SHEEN_SYNONYMS) if fb else None,
            pick_enum(original.get("surface_sheen"), SHEEN_SYNONYMS),
        ),
        "pattern": _first(
            text_or_none(cp.pattern_direction) if cp else None,
            text_or_none(original.get("pattern")),
        ),
        "print_scale": _first(
            text_or_none(cp.pattern_repeat_size) if cp else None,
            text_or_none(original.get("print_scale")),
        ),
        "edge_finish": _first(
            text_or_none(cpr.edge_finishing) if cpr else None,
            text_or_none(original.get("edge_finish")),
        ),
        "view": text_or_none(original.get("view")),
        "framing_margin_pct": clamp(original.get("framing_margin_pct"), 2.0, 12.0),
        "shadow_style": _first(
            text_or_none(rg.shadow_behavior) if rg else None,
            text_or_none(original.get("shadow_style")),
        ),
    }

    merged: Dict[str, Any] = {}
    for key, default in FACT_DEFAULTS.items():
        value = observed.get(key)
        if value is None:
            defaulted.add(key)
            value = default
        merged[key] = value

    dominant = coerce_hex(cp.primary_hex) if cp else None
    accent = coerce_hex(cp.secondary_hex) if cp else None
    if dominant is None:
        defaulted.add("palette.dominant_hex")
    if accent is None:
        defaulted.add("palette.accent_hex")
    merged["palette"] = {
        "dominant_hex": dominant or NEUTRAL_GRAY,
        "accent_hex": accent or NEUTRAL_GRAY,
        "trim_hex": None,
        "pattern_hexes": valid_hexes(getattr(cp, "pattern_hexes", None)) if cp else [],
    }

    labels = normalize_labels(analysis.labels_found)
    merged["labels_found"] = labels
    merged["label_visibility"] = "required" if labels else "optional"
    for key in ANALYSIS_OWNED[1:]:
        merged[key] = list(getattr(analysis, key))

    # present when enrichment provides them, never fabricated
    merged["fabric_behavior"] = fb
    merged["construction_precision"] = cpr
    merged["rendering_guidance"] = rg

    if "safety" not in original:
        defaulted.add("safety")
    merged["safety"] = normalize_safety(original.get("safety"))

    asymmetry = normalize_asymmetry(original.get("structural_asymmetry"))
    if asymmetry is None:
        defaulted.add("structural_asymmetry")
        asymmetry = {"expected": False, "regions": []}
    merged["structural_asymmetry"] = asymmetry

    targets = original.get("qa_targets")
    if isinstance(targets, Mapping):
        known = {k: v for k, v in targets.items() if k in QATargets.model_fields}
        merged["qa_targets"] = {**QATargets().model_dump(), **known}
    else:
        defaulted.add("qa_targets")
        merged["qa_targets"] = QATargets().model_dump()

    merged["special_handling"] = text_or_none(analysis.special_handling)
    return merged, defaulted


# ---------------------------------------------------------------------------
# Refinement overlay
# ---------------------------------------------------------------------------

def _color_confidence(enrichment: Optional[EnrichmentDocument]) -> float:
    cb = enrichment.confidence_breakdown if enrichment else None
    value = clamp(cb.color_confidence, 0.0, 1.0) if cb else None
    return 0.9 if value is None else value


def _model_conflicts(raw: Any) -> List[Conflict]:
    out: List[Conflict] = []
    if not isinstance(raw, list):
        return out
    for item in raw:
        try:
            out.append(Conflict.model_validate(item))
        except ValidationError:
            logger.debug(f"Dropping malformed conflict entry: {item!r}")
    return out


def _refined_scalar(key: str, value: Any) -> Any:
    if value is None or value == "":
        return None
    if key == "transparency":
        return pick_enum(value, TRANSPARENCY_SYNONYMS)
    if key == "surface_sheen":
        return pick_enum(value, SHEEN_SYNONYMS)
    if key == "weave_knit":
        return pick_enum(value, WEAVE_SYNONYMS)
    if key == "drape_stiffness":
        return clamp(value, 0.0, 1.0)
    if key == "framing_margin_pct":
        return clamp(value, 2.0, 12.0)
    return text_or_none(value)


def _apply_refinement(
    base: Dict[str, Any],
    defaulted: Set[str],
    refined: Mapping[str, Any],
    analysis: AnalysisDocument,
    enrichment: Optional[EnrichmentDocument],
) -> Tuple[Dict[str, Any], Set[str], List[Conflict]]:
    """
    Lay the refinement output over the fallback merge, then re-impose the
    source-of-truth rules. ``json_a``/``json_b`` in recorded conflicts are the
    refinement proposal and the source value, in that order for colors and
    reversed for analysis-owned lists.
    """
    conflicts = _model_conflicts(refined.get("conflicts_found"))
    # some refinement outputs wrap the record
    if isinstance(refined.get("facts"), Mapping):
        refined = refined["facts"]

    candidate = dict(base)
    remaining = set(defaulted)

    for key in FACT_DEFAULTS:
        value = _refined_scalar(key, refined.get(key))
        if value is None:
            continue
        candidate[key] = value
        remaining.discard(key)

    safety = refined.get("safety")
    if safety:
        candidate["safety"] = normalize_safety(safety)
        remaining.discard("safety")
    asymmetry = normalize_asymmetry(refined.get("structural_asymmetry"))
    if asymmetry is not None:
        candidate["structural_asymmetry"] = asymmetry
        remaining.discard("structural_asymmetry")
    targets = refined.get("qa_targets")
    if isinstance(targets, Mapping) and targets:
        known = {k: v for k, v in targets.items() if k in QATargets.model_fields}
        candidate["qa_targets"] = {**candidate["qa_targets"], **known}
        remaining.discard("qa_targets")

    palette = dict(candidate["palette"])
    refined_palette = refined.get("palette") if isinstance(refined.get("palette"), Mapping) else {}
    cp = enrichment.color_precision if enrichment else None
    for field, source_value in (
        ("dominant_hex", coerce_hex(cp.primary_hex) if cp else None),
        ("accent_hex", coerce_hex(cp.secondary_hex) if cp else None),
    ):
        proposal = refined_palette.get(field)
        if source_value is not None:
            if proposal is not None and proposal != source_value:
                conflicts.append(Conflict(
                    field=f"palette.{field}",
                    json_a=proposal,
                    json_b=source_value,
                    resolution=source_value,
                    source_of_truth="json_b",
                    confidence=_color_confidence(enrichment),
                ))
            palette[field] = source_value
        elif coerce_hex(proposal) is not None:
            palette[field] = proposal
            remaining.discard(f"palette.{field}")
    if coerce_hex(refined_palette.get("trim_hex")) is not None:
        palette["trim_hex"] = refined_palette["trim_hex"]
    if not palette["pattern_hexes"]:
        palette["pattern_hexes"] = valid_hexes(refined_palette.get("pattern_hexes"))
    candidate["palette"] = palette

    # analysis stays ground truth for text and structure
    for key in ANALYSIS_OWNED:
        proposal = refined.get(key)
        if not isinstance(proposal, list):
            continue
        if key == "labels_found":
            kept = [label["text"] for label in base["labels_found"]]
            offered = [item.get("text") for item in proposal if isinstance(item, Mapping)]
            if offered != kept:
                conflicts.append(Conflict(
                    field="labels_found.text",
                    json_a=kept,
                    json_b=offered,
                    resolution=kept,
                    source_of_truth="json_a",
                    confidence=1.0,
                ))
        elif len(proposal) != len(getattr(analysis, key)):
            conflicts.append(Conflict(
                field=f"{key}.count",
                json_a=len(getattr(analysis, key)),
                json_b=len(proposal),
                resolution=len(getattr(analysis, key)),
                source_of_truth="json_a",
                confidence=1.0,
            ))

    return candidate, remaining, conflicts


# ---------------------------------------------------------------------------
# Validation + control block
# ---------------------------------------------------------------------------

def _validate(merged: Dict[str, Any], defaulted: Set[str]) -> FactsRecord:
    payload = dict(merged)
    payload["defaulted_fields"] = sorted(defaulted)
    return FactsRecord.model_validate(payload)


def derive_control_block(facts: FactsRecord) -> ControlBlock:
    """Fixed baseline plus label and hollow rules derived from the facts."""
    critical = [label for label in facts.labels_found if label.is_critical]

    must = list(MUST_BASELINE)
    if facts.hollow_regions:
        must.append("interior_hollows_visible")
    if critical:
        must.append("preserve_brand_label")

    ban = list(BAN_BASELINE)
    for item in facts.safety.must_not:
        token = item.strip().lower().replace(" ", "_")
        if token and token not in ban and token not in must:
            ban.append(token)

    keep: List[str] = []
    hints = []
    for label in critical:
        if label.text in keep:
            continue
        keep.append(label.text)
        if label.bbox_norm is not None:
            hints.append(label.bbox_norm)

    threshold = DEFAULT_LABEL_LEGIBILITY_MIN
    if critical and all(label.legibility < threshold for label in critical):
        # lowered to what the source can support, never raised
        threshold = math.floor(min(label.legibility for label in critical) * 100) / 100

    return ControlBlock(
        must=must,
        ban=ban,
        label_keep_list=keep,
        label_bbox_hard_hints=hints,
        label_legibility_min=threshold,
    )


def consolidate(
    analysis: DocLike,
    enrichment: DocLike = None,
    original_facts: Optional[Mapping[str, Any]] = None,
    refined: Optional[Mapping[str, Any]] = None,
) -> ConsolidationResult:
    """
    Pure consolidation: identical inputs give identical outputs.

    ``refined`` is the (already obtained) refinement output, if any. When it
    cannot be reconciled into a valid record the fallback merge is used.
    Raises GhostPipelineError(CONSOLIDATION_SCHEMA_INVALID) when no valid
    record can be produced.
    """
    doc = _coerce_analysis(analysis)
    enrich = _coerce_enrichment(enrichment)
    original = original_facts if isinstance(original_facts, Mapping) else {}

    merged, defaulted = _fallback_merge(doc, enrich, original)

    if isinstance(refined, Mapping) and refined:
        try:
            candidate, cand_defaulted, conflicts = _apply_refinement(
                merged, defaulted, refined, doc, enrich
            )
            facts = _validate(candidate, cand_defaulted)
            return ConsolidationResult(
                facts=facts,
                control=derive_control_block(facts),
                conflicts=conflicts,
                source="refinement",
            )
        except (ValidationError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Refinement output rejected, using fallback merge: {e}")

    try:
        facts = _validate(merged, defaulted)
        control = derive_control_block(facts)
    except ValidationError as e:
        raise GhostPipelineError(
            f"Consolidated facts failed schema validation: {e.error_count()} error(s)",
            ErrorCode.CONSOLIDATION_SCHEMA_INVALID,
            stage=STAGE_NAME,
            cause=e,
        ) from e

    if defaulted:
        logger.debug(f"Defaulted fields: {sorted(defaulted)}")
    return ConsolidationResult(facts=facts, control=control, conflicts=[], source="fallback")


# ---------------------------------------------------------------------------
# Engine (refinement attempt + fallback)
# ---------------------------------------------------------------------------

class ConsolidationEngine:
    """
    Runs the optional refinement call under the stage executor, then the pure
    ``consolidate``. A failed, timed-out or absent refinement never aborts the
    pipeline; it just means the fallback merge is used.
    """

    def __init__(
        self,
        refiner: Optional[Any] = None,
        timeout_ms: int = 45_000,
        policy: RetryPolicy = FAIL_FAST,
        refinement_enabled: bool = True,
    ):
        self.refiner = refiner
        self.timeout_ms = timeout_ms
        self.policy = policy
        self.refinement_enabled = refinement_enabled

    async def run(
        self,
        analysis: AnalysisDocument,
        enrichment: Optional[EnrichmentDocument] = None,
        original_facts: Optional[Mapping[str, Any]] = None,
        session: Optional[Session] = None,
    ) -> ConsolidationResult:
        refined: Optional[Mapping[str, Any]] = None

        if self.refiner is not None and self.refinement_enabled:
            outcome = await run_stage(
                REFINEMENT_STAGE_NAME,
                lambda: self.refiner.merge(analysis, enrichment),
                self.timeout_ms,
                self.policy,
                session,
            )
            if outcome.ok and isinstance(outcome.value, Mapping):
                refined = outcome.value
            elif outcome.ok:
                logger.warning("Refinement returned a non-object payload; using fallback merge")
            else:
                logger.info("🛟 Refinement unavailable, using zero-cost fallback merge")

        result = consolidate(analysis, enrichment, original_facts, refined=refined)
        logger.info(
            f"🧩 Consolidated facts via {result.source}: labels={len(result.facts.labels_found)} "
            f"keep={len(result.control.label_keep_list)} defaulted={len(result.facts.defaulted_fields)} "
            f"conflicts={len(result.conflicts)}"
        )
        return result
