"""
Unit tests for the ghoststudio CLI (orchestrator wiring mocked).
"""

import json
from unittest.mock import patch

from conftest import FakeAnalyzer, FakeEnricher, FakeRenderer
from ghoststudio import cli
from ghoststudio.collaborators.blob_store import InMemoryBlobStore
from ghoststudio.orchestrator import PipelineOrchestrator


def _fake_orchestrator(analysis, enrichment, config=None, analyzer=None):
    return PipelineOrchestrator(
        analyzer=analyzer or FakeAnalyzer(analysis),
        renderer=FakeRenderer(),
        store=InMemoryBlobStore(),
        enricher=FakeEnricher(enrichment),
        config=config,
    )


class TestCli:
    """Test run / batch / health commands."""

    def test_run_writes_outputs(self, temp_dir, sample_image, sample_analysis, sample_enrichment):
        flatlay = temp_dir / "shirt.png"
        sample_image.save(flatlay)
        out = temp_dir / "out"

        with patch.object(cli.PipelineOrchestrator, "from_config",
                          side_effect=lambda config: _fake_orchestrator(sample_analysis, sample_enrichment, config)):
            code = cli.main(["run", "--flatlay", str(flatlay), "--out", str(out), "--already-clean"])

        assert code == 0
        assert (out / "rendered.png").exists()
        facts = json.loads((out / "facts.json").read_text())
        assert facts["palette"]["dominant_hex"] == "#2E5BBA"
        control = json.loads((out / "control_block.json").read_text())
        assert control["label_keep_list"] == ["EAT"]
        result = json.loads((out / "pipeline_result.json").read_text())
        assert result["status"] == "completed"

    def test_run_failure_exit_code(self, temp_dir, sample_image, sample_analysis, sample_enrichment):
        flatlay = temp_dir / "shirt.png"
        sample_image.save(flatlay)
        out = temp_dir / "out"
        failing = FakeAnalyzer(error=RuntimeError("down"))

        with patch.object(cli.PipelineOrchestrator, "from_config",
                          side_effect=lambda config: _fake_orchestrator(
                              sample_analysis, sample_enrichment, config, analyzer=failing)):
            code = cli.main(["run", "--flatlay", str(flatlay), "--out", str(out)])

        assert code == 1
        result = json.loads((out / "pipeline_result.json").read_text())
        assert result["error"]["stage"] == "Analysis"
        assert not (out / "facts.json").exists()

    def test_batch(self, temp_dir, sample_image, sample_analysis, sample_enrichment):
        inputs = temp_dir / "in"
        inputs.mkdir()
        for name in ("a.png", "b.jpg"):
            sample_image.save(inputs / name)
        (inputs / "notes.txt").write_text("skip me")
        out = temp_dir / "out"

        with patch.object(cli.PipelineOrchestrator, "from_config",
                          side_effect=lambda config: _fake_orchestrator(sample_analysis, sample_enrichment, config)):
            code = cli.main(["batch", "--input-dir", str(inputs), "--out", str(out), "--no-qa"])

        assert code == 0
        assert (out / "a" / "pipeline_result.json").exists()
        assert (out / "b" / "rendered.png").exists()
        assert not (out / "notes").exists()

    def test_health(self, capsys, sample_analysis, sample_enrichment):
        with patch.object(cli.PipelineOrchestrator, "from_config",
                          side_effect=lambda config: _fake_orchestrator(sample_analysis, sample_enrichment, config)):
            code = cli.main(["health"])

        assert code == 0
        assert '"healthy": true' in capsys.readouterr().out

    def test_bad_config_reported(self, temp_dir, capsys):
        config = temp_dir / "bad.yaml"
        config.write_text("qa:\n  mode: strict\n")

        code = cli.main(["health", "--config", str(config)])

        assert code == 1
        assert "CLIENT_MISCONFIGURED" in capsys.readouterr().out

    def test_log_level_flag_parsed(self):
        args = cli.build_parser().parse_args(["health", "--log-level", "WARNING"])

        assert args.log_level == "WARNING"
        assert args.func is cli.cmd_health
