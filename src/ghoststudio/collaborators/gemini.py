#!/usr/bin/env python3
"""
gemini.py – Gemini collaborators (analysis, enrichment, refinement, rendering)
==============================================================================

Adapters that satisfy the collaborator protocols with the google-genai SDK.

- Analysis: flat-lay (+ optional on-model) -> AnalysisDocument (JSON mode)
- Enrichment: second, independent color/fabric/construction pass
- Refinement: text-only merge of both documents into a partial facts record
- Rendering: source image + instruction -> ghost-mannequin image (streamed),
  measured locally for background/size and optionally inspected for label
  legibility and banned elements; each fallback render model becomes one
  extra renderer route

Adapters never retry or time out on their own; the stage executor owns that.

Dependencies: google-genai pydantic pillow numpy
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from google import genai
from google.genai import types
from pydantic import ValidationError

from ..config import GeminiSettings, gemini_api_key
from ..consolidation.schema import (
    AnalysisDocument,
    ControlBlock,
    EnrichmentDocument,
    FactsRecord,
)
from ..errors import ErrorCode, GhostPipelineError
from ..utils.images import measure_render_metadata
from .base import RenderResult
from .blob_store import BlobStore

logger = logging.getLogger("ghoststudio.gemini")

ANALYSIS_SCHEMA_VERSION = "4.1"
ENRICHMENT_SCHEMA_VERSION = "4.3"

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

ANALYSIS_PROMPT = """You are a garment analyst preparing a ghost-mannequin product render.
Analyze the FLAT-LAY image (ground truth for colors, labels and construction).
Return ONLY a JSON object with these keys:
- labels_found: [{type: brand|size|care|composition|origin|price|security_tag|rfid|other,
  location, bbox_norm: [x1,y1,x2,y2] normalized 0..1, text (exact, as printed), ocr_conf 0..1,
  readable, visible, preserve (true unless a price/security tag), priority: critical|high|normal|low}]
- preserve_details: [{element, priority: critical|important|nice_to_have, location, region_bbox_norm, notes, material_notes}]
- hollow_regions: [{region_type: neckline|sleeves|front_opening|armholes|other, keep_hollow, inner_visible, inner_description, edge_sampling_notes}]
- interior_analysis: [{surface_type, priority, location, pattern_description, material_description, color_hex, construction_notes, edge_definition}]
- construction_details: [{feature, silhouette_rule, critical_for_structure}]
- special_handling: string or null
Never invent label text. Mark the main brand label priority "critical"."""

ON_MODEL_NOTE = "The second image shows the garment worn. Use it ONLY for proportions and fit; ignore its colors and materials."

ENRICHMENT_PROMPT = """You are a color and fabric specialist. Study the garment image and return ONLY a JSON object:
- color_precision: {primary_hex "#RRGGBB", secondary_hex "#RRGGBB" or null, pattern_hexes [..], color_temperature,
  saturation_level, pattern_direction, pattern_repeat_size}
- fabric_behavior: {drape_quality: crisp|structured|flowing|fluid|soft, surface_sheen: matte|subtle_sheen|glossy,
  texture_depth, wrinkle_tendency, transparency_level: opaque|semi_sheer|sheer, stretch}
- construction_precision: {seam_visibility, edge_finishing, stitching_contrast, hardware_finish, closure_visibility}
- rendering_guidance: {lighting_preference, shadow_behavior, texture_emphasis, color_fidelity_priority, detail_sharpness}
- market_intelligence: {price_tier, style_longevity, care_complexity, target_season}
- confidence_breakdown: {color_confidence, fabric_confidence, construction_confidence, overall_confidence} each 0..1
Base structural context from the first analysis pass:
{context}"""

REFINEMENT_PROMPT = """Merge two garment analyses into one facts record for a ghost-mannequin render.
Resolve conflicts; prefer the enrichment document for colors and the analysis document for labels and structure.
Return ONLY a JSON object with keys:
category_generic, silhouette, material, weave_knit (woven|knit|nonwoven|unknown), drape_stiffness (0..1),
transparency (opaque|semi_sheer|sheer), surface_sheen (matte|subtle_sheen|glossy), pattern, print_scale,
edge_finish, view, framing_margin_pct (2..12), shadow_style,
palette {dominant_hex, accent_hex, trim_hex, pattern_hexes}, safety {must_not: []},
structural_asymmetry {expected, regions}, conflicts_found [{field, json_a, json_b, resolution,
source_of_truth: visual|json_a|json_b, confidence}].
ANALYSIS (json_a):
{analysis}
ENRICHMENT (json_b):
{enrichment}"""

INSPECTION_PROMPT = """Inspect this rendered product image. Return ONLY a JSON object:
- label_legibility: object mapping each of these exact label texts to how legible it is in the image (0..1, 0 if absent): {labels}
- detected_elements: list of any of these that are visible: {banned}"""


def extract_json(text: Optional[str]) -> Dict[str, Any]:
    """Parse a JSON object from a ```json fence, a bare object, or the first {...} block."""
    if not text:
        raise GhostPipelineError("Model returned an empty response", ErrorCode.STAGE_FAILED)
    fence = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    candidates = [fence.group(1)] if fence else []
    candidates.append(text.strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])
    for candidate in candidates:
        try:
            obj = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    raise GhostPipelineError("Model response did not contain a JSON object", ErrorCode.STAGE_FAILED)


# ---------------------------------------------------------------------------
# Client wrapper
# ---------------------------------------------------------------------------

class GeminiClient:
    """Thin async wrapper over google-genai shared by all Gemini adapters."""

    def __init__(self, api_key: Optional[str] = None, client: Optional[Any] = None):
        if client is None:
            api_key = api_key or gemini_api_key()
            if not api_key:
                raise GhostPipelineError(
                    "No GEMINI_API_KEY or GOOGLE_API_KEY found in the environment",
                    ErrorCode.CLIENT_MISCONFIGURED,
                )
            client = genai.Client(api_key=api_key)
        self.client = client
        self.ready = True

    @staticmethod
    def image_part(data: bytes, mime_type: str) -> types.Part:
        return types.Part.from_bytes(data=data, mime_type=mime_type)

    async def generate_json(
        self,
        model: str,
        parts: List[types.Part],
        temperature: float = 0.0,
        top_p: float = 0.2,
    ) -> Dict[str, Any]:
        config = types.GenerateContentConfig(
            temperature=temperature,
            top_p=top_p,
            response_mime_type="application/json",
        )
        response = await self.client.aio.models.generate_content(
            model=model,
            contents=[types.Content(role="user", parts=parts)],
            config=config,
        )
        return extract_json(getattr(response, "text", None))

    async def generate_image(
        self,
        model: str,
        parts: List[types.Part],
        temperature: float = 0.2,
    ) -> Tuple[bytes, str]:
        config = types.GenerateContentConfig(
            response_modalities=["IMAGE", "TEXT"],
            temperature=temperature,
        )
        stream = await self.client.aio.models.generate_content_stream(
            model=model,
            contents=[types.Content(role="user", parts=parts)],
            config=config,
        )
        async for chunk in stream:
            if (
                chunk.candidates is None
                or chunk.candidates[0].content is None
                or chunk.candidates[0].content.parts is None
            ):
                continue
            for part in chunk.candidates[0].content.parts:
                inline = getattr(part, "inline_data", None)
                if inline is not None and inline.data:
                    mime_type = inline.mime_type or "image/png"
                    if "image" in mime_type.lower():
                        return inline.data, mime_type
                elif getattr(part, "text", None):
                    logger.debug(f"Gemini text response: {part.text[:100]}...")
        raise GhostPipelineError("Render model returned no image", ErrorCode.STAGE_FAILED)


async def image_part_from_store(gemini: GeminiClient, store: BlobStore, ref: str) -> types.Part:
    # store reads may hit disk or S3; keep them off the event loop so stage deadlines still fire
    data = await asyncio.to_thread(store.get, ref)
    return gemini.image_part(data, store.mime_type(ref))


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class GeminiAnalyzer:
    """Vision Analysis Service."""

    def __init__(self, gemini: GeminiClient, store: BlobStore, settings: Optional[GeminiSettings] = None):
        self.gemini = gemini
        self.store = store
        self.settings = settings or GeminiSettings()
        self.ready = gemini.ready

    async def analyze(self, image_ref: str, session_id: str, on_model_ref: Optional[str] = None) -> AnalysisDocument:
        parts = [await image_part_from_store(self.gemini, self.store, image_ref)]
        prompt = ANALYSIS_PROMPT
        if on_model_ref:
            parts.append(await image_part_from_store(self.gemini, self.store, on_model_ref))
            prompt = f"{prompt}\n{ON_MODEL_NOTE}"
        parts.append(types.Part.from_text(text=prompt))

        raw = await self.gemini.generate_json(
            self.settings.analysis_model, parts, temperature=self.settings.analysis_temperature
        )
        raw["meta"] = {
            **(raw.get("meta") if isinstance(raw.get("meta"), dict) else {}),
            "schema_version": ANALYSIS_SCHEMA_VERSION,
            "session_id": session_id,
        }
        try:
            doc = AnalysisDocument.model_validate(raw)
        except ValidationError as e:
            raise GhostPipelineError(
                f"Analysis response failed validation: {e.error_count()} error(s)", ErrorCode.STAGE_FAILED, cause=e
            ) from e
        logger.info(
            f"🔍 [{session_id}] Analysis: labels={len(doc.labels_found)} "
            f"preserve={len(doc.preserve_details)} hollows={len(doc.hollow_regions)}"
        )
        return doc


class GeminiEnricher:
    """Enrichment Analysis Service."""

    def __init__(self, gemini: GeminiClient, store: BlobStore, settings: Optional[GeminiSettings] = None):
        self.gemini = gemini
        self.store = store
        self.settings = settings or GeminiSettings()
        self.ready = gemini.ready

    @staticmethod
    def _context(analysis: AnalysisDocument) -> str:
        summary = {
            "labels": [label.text for label in analysis.labels_found if label.text],
            "hollow_regions": [region.region_type for region in analysis.hollow_regions],
            "construction": [detail.feature for detail in analysis.construction_details],
        }
        return json.dumps(summary, ensure_ascii=False)

    async def enrich(self, image_ref: str, session_id: str, analysis: AnalysisDocument) -> EnrichmentDocument:
        prompt = ENRICHMENT_PROMPT.replace("{context}", self._context(analysis))
        parts = [
            await image_part_from_store(self.gemini, self.store, image_ref),
            types.Part.from_text(text=prompt),
        ]
        raw = await self.gemini.generate_json(
            self.settings.enrichment_model, parts, temperature=self.settings.analysis_temperature
        )
        raw["meta"] = {
            **(raw.get("meta") if isinstance(raw.get("meta"), dict) else {}),
            "schema_version": ENRICHMENT_SCHEMA_VERSION,
            "session_id": session_id,
            "base_analysis_ref": analysis.meta.session_id,
        }
        try:
            doc = EnrichmentDocument.model_validate(raw)
        except ValidationError as e:
            raise GhostPipelineError(
                f"Enrichment response failed validation: {e.error_count()} error(s)", ErrorCode.STAGE_FAILED, cause=e
            ) from e
        primary = doc.color_precision.primary_hex if doc.color_precision else None
        logger.info(f"🎨 [{session_id}] Enrichment: primary_hex={primary}")
        return doc


class GeminiConsolidator:
    """Consolidation Refinement Service (text only)."""

    def __init__(self, gemini: GeminiClient, settings: Optional[GeminiSettings] = None):
        self.gemini = gemini
        self.settings = settings or GeminiSettings()
        self.ready = gemini.ready

    async def merge(self, analysis: AnalysisDocument, enrichment: Optional[EnrichmentDocument]) -> Mapping[str, Any]:
        prompt = (
            REFINEMENT_PROMPT
            .replace("{analysis}", analysis.model_dump_json(exclude_none=True))
            .replace("{enrichment}", enrichment.model_dump_json(exclude_none=True) if enrichment else "null")
        )
        return await self.gemini.generate_json(
            self.settings.consolidation_model,
            [types.Part.from_text(text=prompt)],
            temperature=0.0,
            top_p=0.2,
        )


class GeminiRenderer:
    """Image Generation Service: ghost-mannequin edit of the cleaned flat-lay."""

    def __init__(
        self,
        gemini: GeminiClient,
        store: BlobStore,
        settings: Optional[GeminiSettings] = None,
        inspect_renders: bool = True,
    ):
        self.gemini = gemini
        self.store = store
        self.settings = settings or GeminiSettings()
        self.inspect_renders = inspect_renders
        self.ready = gemini.ready

    async def render(
        self,
        image_ref: str,
        facts: FactsRecord,
        control: ControlBlock,
        instruction: str,
        on_model_ref: Optional[str] = None,
    ) -> RenderResult:
        parts = [await image_part_from_store(self.gemini, self.store, image_ref)]
        if on_model_ref:
            parts.append(await image_part_from_store(self.gemini, self.store, on_model_ref))
        parts.append(types.Part.from_text(text=instruction))
        parts.append(types.Part.from_text(text="FACTS_JSON:\n" + facts.model_dump_json(exclude_none=True)))
        parts.append(types.Part.from_text(text="CONTROL_JSON:\n" + control.model_dump_json()))

        data, mime_type = await self.gemini.generate_image(
            self.settings.render_model, parts, temperature=self.settings.render_temperature
        )
        metadata = await asyncio.to_thread(measure_render_metadata, data)
        if self.inspect_renders:
            metadata.update(await self._inspect(data, mime_type, control))
        logger.info(
            f"🖼️ Render received: {metadata['width']}x{metadata['height']} background={metadata['background_hex']}"
        )
        return RenderResult(image_bytes=data, mime_type=mime_type, metadata=metadata)

    async def _inspect(self, data: bytes, mime_type: str, control: ControlBlock) -> Dict[str, Any]:
        prompt = (
            INSPECTION_PROMPT
            .replace("{labels}", json.dumps(control.label_keep_list, ensure_ascii=False))
            .replace("{banned}", json.dumps(control.ban))
        )
        try:
            raw = await self.gemini.generate_json(
                self.settings.inspection_model,
                [self.gemini.image_part(data, mime_type), types.Part.from_text(text=prompt)],
            )
        except Exception as e:
            # the gate reports the missing fields as reasons
            logger.warning(f"Render inspection failed: {e}")
            return {}

        out: Dict[str, Any] = {}
        legibility = raw.get("label_legibility")
        if isinstance(legibility, dict):
            out["label_legibility"] = {
                str(k): float(v) for k, v in legibility.items() if isinstance(v, (int, float))
            }
        detected = raw.get("detected_elements")
        if isinstance(detected, list):
            out["detected_elements"] = [str(x) for x in detected]
        return out


def create_gemini_collaborators(
    store: BlobStore,
    settings: Optional[GeminiSettings] = None,
    inspect_renders: bool = True,
    api_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the Gemini adapters over one shared client, plus one renderer per fallback render model."""
    settings = settings or GeminiSettings()
    gemini = GeminiClient(api_key=api_key)
    fallbacks = [
        GeminiRenderer(gemini, store, replace(settings, render_model=model), inspect_renders=inspect_renders)
        for model in settings.render_fallback_models
        if model != settings.render_model
    ]
    return {
        "analyzer": GeminiAnalyzer(gemini, store, settings),
        "enricher": GeminiEnricher(gemini, store, settings),
        "refiner": GeminiConsolidator(gemini, settings),
        "renderer": GeminiRenderer(gemini, store, settings, inspect_renders=inspect_renders),
        "fallback_renderers": fallbacks,
    }
