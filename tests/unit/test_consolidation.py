"""
Unit tests for the Consolidation Engine.
"""

import asyncio
import copy

import pytest
from pydantic import ValidationError

from conftest import FakeRefiner
from ghoststudio.consolidation import (
    NEUTRAL_GRAY,
    ConsolidationEngine,
    consolidate,
    derive_control_block,
)
from ghoststudio.consolidation.schema import ControlBlock
from ghoststudio.errors import ErrorCode, GhostPipelineError
from ghoststudio.session import Session


def _label(text, priority="critical", ocr_conf=0.95, preserve=True, **extra):
    return {"text": text, "type": "brand", "priority": priority, "ocr_conf": ocr_conf, "preserve": preserve, **extra}


class TestFallbackMerge:
    """Test the deterministic, local merge path."""

    def test_brand_label_scenario(self, sample_analysis, sample_enrichment):
        """Critical EAT label and enrichment primary color flow through."""
        result = consolidate(sample_analysis, sample_enrichment)

        assert result.source == "fallback"
        assert result.facts.labels_found[0].text == "EAT"
        assert result.facts.palette.dominant_hex == "#2E5BBA"
        assert result.control.label_keep_list == ["EAT"]
        assert "preserve_brand_label" in result.control.must

    def test_malformed_hex_falls_back_to_sentinel(self, sample_analysis, sample_enrichment):
        """A non-hex primary color becomes the neutral gray sentinel without raising."""
        sample_enrichment["color_precision"]["primary_hex"] = "blue"

        result = consolidate(sample_analysis, sample_enrichment)

        assert result.facts.palette.dominant_hex == NEUTRAL_GRAY
        assert result.facts.was_defaulted("palette.dominant_hex")

    def test_no_enrichment(self, sample_analysis):
        """Without enrichment the palette is the sentinel and analysis lists are kept verbatim."""
        result = consolidate(sample_analysis, None)
        facts = result.facts

        assert facts.palette.dominant_hex == NEUTRAL_GRAY
        assert facts.palette.accent_hex == NEUTRAL_GRAY
        assert facts.palette.pattern_hexes == []
        assert [l.text for l in facts.labels_found] == ["EAT", "Machine wash cold"]
        assert [d.element for d in facts.preserve_details] == ["chest pocket"]
        assert facts.preserve_details[0].location == "left chest"
        assert [h.region_type for h in facts.hollow_regions] == ["neckline"]
        assert facts.fabric_behavior is None
        assert facts.construction_precision is None
        assert facts.transparency == "opaque"
        assert facts.was_defaulted("transparency")

    def test_enrichment_fields(self, sample_analysis, sample_enrichment):
        facts = consolidate(sample_analysis, sample_enrichment).facts

        assert facts.palette.accent_hex == "#F2F2F2"
        assert facts.palette.pattern_hexes == ["#2E5BBA", "#FFFFFF"]
        assert facts.drape_stiffness == pytest.approx(0.6)
        assert facts.edge_finish == "double-needle hem"
        assert facts.shadow_style == "soft contact"
        assert facts.pattern == "solid"
        assert facts.fabric_behavior.drape_quality == "structured"
        assert not facts.was_defaulted("palette.dominant_hex")
        assert not facts.was_defaulted("transparency")
        assert facts.was_defaulted("material")

    def test_defaults_fill_required_fields(self):
        """An analysis with nothing in it still yields a complete record."""
        facts = consolidate({}, None).facts

        assert facts.category_generic == "unknown"
        assert facts.view == "front"
        assert facts.framing_margin_pct == 6.0
        assert facts.label_visibility == "optional"
        assert facts.qa_targets.min_resolution_px == 2000
        assert facts.safety.must_not == []
        assert facts.defaulted_fields == sorted(facts.defaulted_fields)

    def test_original_facts_fill_structure_only(self, sample_analysis):
        """Original facts never supply colors or labels."""
        original = {
            "category": "t-shirt",
            "material": "cotton jersey",
            "weave_knit": "jersey",
            "framing_margin_pct": 40,
            "palette": {"dominant_hex": "#FF0000"},
            "labels_found": [{"text": "FAKE"}],
        }

        facts = consolidate(sample_analysis, None, original).facts

        assert facts.category_generic == "t-shirt"
        assert facts.material == "cotton jersey"
        assert facts.weave_knit == "knit"
        assert facts.framing_margin_pct == 12.0
        assert facts.palette.dominant_hex == NEUTRAL_GRAY
        assert "FAKE" not in [l.text for l in facts.labels_found]

    def test_label_text_trimmed_never_rewritten(self):
        analysis = {
            "labels_found": [
                _label("  EAT  "),
                _label(""),
                {"type": "size"},
                _label("X" * 120, priority="low"),
            ]
        }

        labels = consolidate(analysis).facts.labels_found

        assert [l.text for l in labels] == ["EAT", "X" * 80]
        assert labels[1].priority == "low"

    def test_label_defaults(self):
        labels = consolidate({"labels_found": [{"text": "M", "type": "size"}]}).facts.labels_found

        assert labels[0].priority == "high"
        assert labels[0].legibility == 1.0
        assert labels[0].preserve is True

    def test_idempotent(self, sample_analysis, sample_enrichment):
        """Identical inputs give byte-identical outputs."""
        first = consolidate(copy.deepcopy(sample_analysis), copy.deepcopy(sample_enrichment))
        second = consolidate(copy.deepcopy(sample_analysis), copy.deepcopy(sample_enrichment))

        assert first.facts.model_dump_json() == second.facts.model_dump_json()
        assert first.control.model_dump_json() == second.control.model_dump_json()

    def test_malformed_enrichment_is_ignored(self, sample_analysis):
        result = consolidate(sample_analysis, {"color_precision": "not an object"})
        assert result.facts.palette.dominant_hex == NEUTRAL_GRAY


class TestSchemaInvalid:
    """Only structurally unusable input is a hard failure."""

    def test_missing_analysis(self):
        with pytest.raises(GhostPipelineError) as exc:
            consolidate(None)
        assert exc.value.code is ErrorCode.CONSOLIDATION_SCHEMA_INVALID

    def test_unusable_analysis(self):
        with pytest.raises(GhostPipelineError) as exc:
            consolidate({"labels_found": "EAT"})
        assert exc.value.code is ErrorCode.CONSOLIDATION_SCHEMA_INVALID

    def test_non_mapping_analysis(self):
        with pytest.raises(GhostPipelineError) as exc:
            consolidate(["labels"])
        assert exc.value.code is ErrorCode.CONSOLIDATION_SCHEMA_INVALID


class TestControlBlock:
    """Test control block derivation."""

    def test_baseline(self):
        control = consolidate({}).control

        assert control.must == ["pure_white_background", "ghost_mannequin_effect"]
        assert control.ban == ["mannequins", "humans", "props", "reflections", "long_shadows"]
        assert control.label_keep_list == []
        assert control.label_legibility_min == 0.8

    def test_hollows_and_hints(self, sample_analysis):
        control = consolidate(sample_analysis).control

        assert "interior_hollows_visible" in control.must
        assert control.label_bbox_hard_hints == [(0.45, 0.05, 0.55, 0.1)]

    def test_non_critical_labels_not_kept(self):
        analysis = {"labels_found": [_label("EAT", priority="high"), _label("LOGO", preserve=False)]}
        control = consolidate(analysis).control

        assert control.label_keep_list == []
        assert "preserve_brand_label" not in control.must

    def test_legibility_lowered_when_all_critical_below(self):
        analysis = {"labels_found": [_label("EAT", ocr_conf=0.657), _label("CO", ocr_conf=0.7)]}
        assert consolidate(analysis).control.label_legibility_min == 0.65

    def test_legibility_not_lowered_when_one_critical_readable(self):
        analysis = {"labels_found": [_label("EAT", ocr_conf=0.5), _label("CO", ocr_conf=0.9)]}
        assert consolidate(analysis).control.label_legibility_min == 0.8

    def test_keep_list_subset_of_preserved_labels(self, sample_analysis, sample_enrichment):
        """No invented or dropped critical labels, whatever the merge path."""
        refined = {"labels_found": [{"text": "INVENTED", "priority": "critical"}]}
        for result in (
            consolidate(sample_analysis),
            consolidate(sample_analysis, sample_enrichment),
            consolidate(sample_analysis, sample_enrichment, refined=refined),
        ):
            preserved = set(result.facts.preserved_label_texts())
            assert set(result.control.label_keep_list) <= preserved
            assert "INVENTED" not in result.control.label_keep_list

    def test_safety_extends_ban(self, sample_analysis):
        original = {"safety": {"must_not": ["added logos", "humans"]}}
        control = consolidate(sample_analysis, None, original).control

        assert control.ban.count("humans") == 1
        assert "added_logos" in control.ban
        assert not set(control.must) & set(control.ban)

    def test_must_not_never_bans_a_required_token(self, sample_analysis):
        """A must_not entry that names a required property stays out of ban."""
        original = {"safety": {"must_not": ["ghost mannequin effect", "Pure White Background", "watermarks"]}}
        control = consolidate(sample_analysis, None, original).control

        assert "ghost_mannequin_effect" in control.must
        assert "ghost_mannequin_effect" not in control.ban
        assert "pure_white_background" not in control.ban
        assert "watermarks" in control.ban

    def test_control_block_rejects_overlap(self):
        with pytest.raises(ValidationError, match="must and ban overlap"):
            ControlBlock(must=["x"], ban=["x"])

    def test_derive_is_pure(self, sample_analysis):
        facts = consolidate(sample_analysis).facts
        assert derive_control_block(facts) == derive_control_block(facts)


class TestRefinement:
    """Test the refinement overlay."""

    def test_enrichment_color_wins_and_conflict_recorded(self, sample_analysis, sample_enrichment):
        refined = {
            "palette": {"dominant_hex": "#112233"},
            "material": "cotton twill",
            "labels_found": [{"text": "EAT!"}],
        }

        result = consolidate(sample_analysis, sample_enrichment, refined=refined)

        assert result.source == "refinement"
        assert result.facts.palette.dominant_hex == "#2E5BBA"
        assert result.facts.material == "cotton twill"
        assert not result.facts.was_defaulted("material")
        assert [l.text for l in result.facts.labels_found] == ["EAT", "Machine wash cold"]

        by_field = {c.field: c for c in result.conflicts}
        color = by_field["palette.dominant_hex"]
        assert (color.json_a, color.json_b, color.resolution) == ("#112233", "#2E5BBA", "#2E5BBA")
        assert color.source_of_truth == "json_b"
        assert color.confidence == pytest.approx(0.92)
        assert by_field["labels_found.text"].source_of_truth == "json_a"

    def test_refined_color_used_without_enrichment(self, sample_analysis):
        refined = {"palette": {"dominant_hex": "#ABCDEF", "accent_hex": "nope"}}

        facts = consolidate(sample_analysis, None, refined=refined).facts

        assert facts.palette.dominant_hex == "#ABCDEF"
        assert not facts.was_defaulted("palette.dominant_hex")
        assert facts.palette.accent_hex == NEUTRAL_GRAY
        assert facts.was_defaulted("palette.accent_hex")

    def test_invalid_refinement_uses_fallback(self, sample_analysis, sample_enrichment):
        refined = {"qa_targets": {"min_resolution_px": "huge"}}

        result = consolidate(sample_analysis, sample_enrichment, refined=refined)

        assert result.source == "fallback"
        assert result.facts.qa_targets.min_resolution_px == 2000

    def test_model_reported_conflicts_kept(self, sample_analysis):
        refined = {
            "conflicts_found": [
                {"field": "material", "json_a": "wool", "json_b": "cotton", "resolution": "cotton",
                 "source_of_truth": "visual", "confidence": 0.7},
                {"field": "broken"},
            ]
        }

        result = consolidate(sample_analysis, None, refined=refined)

        assert [c.field for c in result.conflicts] == ["material"]


class TestConsolidationEngine:
    """Test the engine wrapper around the refinement call."""

    def test_refiner_failure_absorbed(self, sample_analysis, sample_enrichment):
        session = Session()
        engine = ConsolidationEngine(refiner=FakeRefiner(error=RuntimeError("quota")), timeout_ms=500)

        result = asyncio.run(engine.run(sample_analysis, sample_enrichment, None, session))

        assert result.source == "fallback"
        assert result.facts.palette.dominant_hex == "#2E5BBA"
        assert session.stage_results["ConsolidationRefinement"].status == "failed"

    def test_refiner_output_applied(self, sample_analysis, sample_enrichment):
        refiner = FakeRefiner(payload={"silhouette": "boxy"})
        engine = ConsolidationEngine(refiner=refiner, timeout_ms=500)

        result = asyncio.run(engine.run(sample_analysis, sample_enrichment))

        assert refiner.calls == 1
        assert result.source == "refinement"
        assert result.facts.silhouette == "boxy"

    def test_refinement_disabled(self, sample_analysis):
        refiner = FakeRefiner(payload={"silhouette": "boxy"})
        engine = ConsolidationEngine(refiner=refiner, refinement_enabled=False)

        result = asyncio.run(engine.run(sample_analysis))

        assert refiner.calls == 0
        assert result.source == "fallback"
