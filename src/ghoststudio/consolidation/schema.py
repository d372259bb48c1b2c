"""
schema.py – Typed records for consolidation
===========================================

Input documents (AnalysisDocument, EnrichmentDocument) are tolerant: the
collaborators are language models and their output is loosely structured, so
unknown keys are kept and most fields are optional.

Output records (FactsRecord, ControlBlock) are strict: every field is present
and valid, unknown keys are rejected, and the models are frozen.

Dependencies: pydantic>=2
"""

from __future__ import annotations

from dataclasses import dataclass, field as dc_field
from typing import Annotated, Any, List, Literal, Optional, Tuple

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

HEX_PATTERN = r"^#[0-9A-Fa-f]{6}$"
NEUTRAL_GRAY = "#808080"

HexColor = Annotated[str, Field(pattern=HEX_PATTERN)]
Unit = Annotated[float, Field(ge=0.0, le=1.0)]
BBox = Tuple[float, float, float, float]

DETAIL_PRIORITIES = ("critical", "important", "nice_to_have")
LABEL_PRIORITIES = ("critical", "high", "normal", "low")


class _Loose(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


# ---------------------------------------------------------------------------
# Analysis document (vision analysis collaborator)
# ---------------------------------------------------------------------------

class DocumentMeta(_Loose):
    schema_version: Optional[str] = None
    session_id: Optional[str] = None
    base_analysis_ref: Optional[str] = None


class AnalysisLabel(_Loose):
    text: Optional[str] = Field(default=None, validation_alias=AliasChoices("text", "ocr_text"))
    type: str = "other"
    location: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("location", "location_hint", "region_hint")
    )
    bbox_norm: Optional[List[float]] = None
    ocr_conf: Optional[float] = Field(default=None, validation_alias=AliasChoices("ocr_conf", "legibility"))
    readable: bool = True
    visible: bool = True
    preserve: bool = True
    priority: Optional[str] = None


class PreserveDetail(_Loose):
    element: str
    priority: str = "important"
    location: Optional[str] = None
    region_bbox_norm: Optional[List[float]] = None
    notes: Optional[str] = None
    material_notes: Optional[str] = None

    @field_validator("priority", mode="before")
    @classmethod
    def _known_priority(cls, v: Any) -> str:
        if isinstance(v, str):
            v = v.strip().lower().replace("-", "_").replace(" ", "_")
            if v == "nicetohave":
                v = "nice_to_have"
        return v if v in DETAIL_PRIORITIES else "important"


class HollowRegion(_Loose):
    region_type: str = "other"
    keep_hollow: bool = True
    inner_visible: bool = False
    inner_description: Optional[str] = None
    edge_sampling_notes: Optional[str] = None


class InteriorSurface(_Loose):
    surface_type: str = "other"
    priority: Optional[str] = None
    location: Optional[str] = None
    pattern_description: Optional[str] = None
    material_description: Optional[str] = None
    color_hex: Optional[str] = None
    construction_notes: Optional[str] = None
    edge_definition: Optional[str] = None


class ConstructionDetail(_Loose):
    feature: str
    silhouette_rule: Optional[str] = None
    critical_for_structure: bool = False


class AnalysisDocument(_Loose):
    meta: DocumentMeta = Field(default_factory=DocumentMeta)
    labels_found: List[AnalysisLabel] = Field(default_factory=list)
    preserve_details: List[PreserveDetail] = Field(default_factory=list)
    hollow_regions: List[HollowRegion] = Field(default_factory=list)
    interior_analysis: List[InteriorSurface] = Field(default_factory=list)
    construction_details: List[ConstructionDetail] = Field(default_factory=list)
    special_handling: Optional[str] = None

    @field_validator(
        "labels_found",
        "preserve_details",
        "hollow_regions",
        "interior_analysis",
        "construction_details",
        mode="before",
    )
    @classmethod
    def _null_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v


# ---------------------------------------------------------------------------
# Enrichment document (second, independent analysis pass)
# ---------------------------------------------------------------------------

class ColorPrecision(_Loose):
    # hex fields stay raw here; validity is decided during consolidation
    primary_hex: Optional[str] = None
    secondary_hex: Optional[str] = None
    color_temperature: Optional[str] = None
    saturation_level: Optional[str] = None
    pattern_direction: Optional[str] = None
    pattern_repeat_size: Optional[str] = None


class FabricBehavior(_Loose):
    drape_quality: Optional[str] = None
    surface_sheen: Optional[str] = None
    texture_depth: Optional[str] = None
    wrinkle_tendency: Optional[str] = None
    transparency_level: Optional[str] = None
    stretch: Optional[str] = None


class ConstructionPrecision(_Loose):
    seam_visibility: Optional[str] = None
    edge_finishing: Optional[str] = None
    stitching_contrast: Optional[str] = None
    hardware_finish: Optional[str] = None
    closure_visibility: Optional[str] = None


class RenderingGuidance(_Loose):
    lighting_preference: Optional[str] = None
    shadow_behavior: Optional[str] = None
    texture_emphasis: Optional[str] = None
    color_fidelity_priority: Optional[str] = None
    detail_sharpness: Optional[str] = None


class ConfidenceBreakdown(_Loose):
    color_confidence: Optional[float] = None
    fabric_confidence: Optional[float] = None
    construction_confidence: Optional[float] = None
    overall_confidence: Optional[float] = None


class EnrichmentDocument(_Loose):
    meta: DocumentMeta = Field(default_factory=DocumentMeta)
    color_precision: Optional[ColorPrecision] = None
    fabric_behavior: Optional[FabricBehavior] = None
    construction_precision: Optional[ConstructionPrecision] = None
    rendering_guidance: Optional[RenderingGuidance] = None
    market_intelligence: Optional[dict] = None
    confidence_breakdown: Optional[ConfidenceBreakdown] = None


# ---------------------------------------------------------------------------
# Canonical output records
# ---------------------------------------------------------------------------

class Palette(_Strict):
    dominant_hex: HexColor
    accent_hex: HexColor
    trim_hex: Optional[HexColor] = None
    pattern_hexes: List[HexColor] = Field(default_factory=list)


class LabelFound(_Strict):
    text: Annotated[str, Field(min_length=1, max_length=80)]
    type: str
    location_hint: Optional[str] = None
    bbox_norm: Optional[BBox] = None
    visible: bool = True
    legibility: Unit = 1.0
    preserve: bool = True
    priority: Literal["critical", "high", "normal", "low"] = "high"

    @property
    def is_critical(self) -> bool:
        return self.preserve and self.priority == "critical"


class Safety(_Strict):
    must_not: List[str] = Field(default_factory=list)


class StructuralAsymmetry(_Strict):
    expected: bool = False
    regions: List[str] = Field(default_factory=list)


class QATargets(_Strict):
    delta_e_max: float = 3.0
    edge_halo_max_pct: float = 1.0
    symmetry_tolerance_pct: float = 3.0
    min_resolution_px: int = 2000


class FactsRecord(_Strict):
    category_generic: str
    silhouette: str
    material: str
    weave_knit: Literal["woven", "knit", "nonwoven", "unknown"]
    drape_stiffness: Unit
    transparency: Literal["opaque", "semi_sheer", "sheer"]
    surface_sheen: Literal["matte", "subtle_sheen", "glossy"]
    pattern: str
    print_scale: str
    edge_finish: str
    view: str
    framing_margin_pct: Annotated[float, Field(ge=2.0, le=12.0)]
    shadow_style: str
    palette: Palette
    labels_found: List[LabelFound]
    label_visibility: Literal["required", "optional"]
    preserve_details: List[PreserveDetail]
    hollow_regions: List[HollowRegion]
    interior_analysis: List[InteriorSurface]
    construction_details: List[ConstructionDetail]
    fabric_behavior: Optional[FabricBehavior] = None
    construction_precision: Optional[ConstructionPrecision] = None
    rendering_guidance: Optional[RenderingGuidance] = None
    safety: Safety
    structural_asymmetry: StructuralAsymmetry
    qa_targets: QATargets
    special_handling: Optional[str] = None
    # dotted paths of fields filled by a default instead of an observation
    defaulted_fields: List[str] = Field(default_factory=list)

    def was_defaulted(self, path: str) -> bool:
        return path in self.defaulted_fields

    def preserved_label_texts(self) -> List[str]:
        return [label.text for label in self.labels_found if label.preserve]


class ControlBlock(_Strict):
    must: List[str]
    ban: List[str]
    label_keep_list: List[str] = Field(default_factory=list)
    label_bbox_hard_hints: List[BBox] = Field(default_factory=list)
    label_legibility_min: Unit = 0.8

    @model_validator(mode="after")
    def _must_and_ban_disjoint(self) -> "ControlBlock":
        overlap = set(self.must) & set(self.ban)
        if overlap:
            raise ValueError(f"must and ban overlap: {sorted(overlap)}")
        return self


class Conflict(_Strict):
    field: str
    json_a: Any = None
    json_b: Any = None
    resolution: Any = None
    source_of_truth: Literal["visual", "json_a", "json_b"]
    confidence: Unit = 0.5


@dataclass(frozen=True)
class ConsolidationResult:
    facts: FactsRecord
    control: ControlBlock
    conflicts: List[Conflict] = dc_field(default_factory=list)
    source: str = "fallback"  # refinement | fallback
