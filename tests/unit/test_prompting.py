"""
Unit tests for the render instruction weaver.
"""

import yaml

from ghoststudio.consolidation import consolidate
from ghoststudio.prompting import InstructionWeaver


class TestInstructionWeaver:
    """Test weave() sections."""

    def test_sections(self, sample_analysis, sample_enrichment):
        result = consolidate(sample_analysis, sample_enrichment)

        text = InstructionWeaver().weave(result.facts, result.control)

        assert text.startswith("Create a commercial ghost-mannequin product image")
        assert "PRIMARY_COLOR: #2E5BBA" in text
        assert "ACCENT_COLOR: #F2F2F2" in text
        assert '"EAT" (exact text, unchanged position)' in text
        assert "minimum legibility 0.80" in text
        assert "HOLLOW NECKLINE: show interior depth (navy interior)" in text
        assert "PRESERVE CRITICAL: chest pocket at left chest" in text
        assert "STRUCTURE: collar (stand upright)" in text
        assert "- NO HUMANS" in text
        assert "CORRECTIONS REQUIRED" not in text

    def test_defaulted_facts_not_asserted(self, sample_analysis):
        result = consolidate(sample_analysis, None)

        text = InstructionWeaver().weave(result.facts, result.control)

        assert "PRIMARY_COLOR: match the source image exactly" in text
        assert "#808080" not in text
        assert "MATERIAL:" not in text
        assert "TRANSPARENCY:" not in text

    def test_corrections_appended(self, sample_analysis):
        result = consolidate(sample_analysis)
        reasons = ["label 'EAT' legibility 0.62 < 0.8", "background #DDDDDD is not pure white"]

        text = InstructionWeaver().weave(result.facts, result.control, reasons)

        assert text.endswith(
            "CORRECTIONS REQUIRED (previous render failed QA):\n"
            "- label 'EAT' legibility 0.62 < 0.8\n"
            "- background #DDDDDD is not pure white"
        )

    def test_no_label_section_without_keep_list(self):
        result = consolidate({})
        text = InstructionWeaver().weave(result.facts, result.control)

        assert "LABELS TO PRESERVE" not in text
        assert "GARMENT STRUCTURE" not in text

    def test_style_config_file(self, temp_dir, sample_analysis):
        path = temp_dir / "style.yaml"
        path.write_text(yaml.safe_dump({
            "style_guide": {"lighting": "soft north light"},
            "forbidden_edits": ["DO NOT add hangers"],
        }))
        result = consolidate(sample_analysis)

        text = InstructionWeaver(path).weave(result.facts, result.control)

        assert "- LIGHTING: soft north light" in text
        assert "- DO NOT add hangers" in text
