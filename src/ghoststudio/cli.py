#!/usr/bin/env python3
"""
CLI entry point for the ghost-mannequin pipeline.

    ghoststudio run --flatlay shirt.jpg --out output/
    ghoststudio batch --input-dir flatlays/ --out output/
    ghoststudio health
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import PipelineConfig, log_level_from_env
from .errors import GhostPipelineError
from .orchestrator import PipelineOrchestrator, PipelineRequest, PipelineResult
from .utils.images import extension_for

logger = logging.getLogger("ghoststudio.cli")

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp"}


def _setup_logging(verbose: bool = False, level_name: Optional[str] = None) -> None:
    level_name = (level_name or log_level_from_env()).upper()
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level_name, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _load_config(args: argparse.Namespace) -> PipelineConfig:
    config = PipelineConfig.from_yaml(args.config) if args.config else PipelineConfig()
    if getattr(args, "allow_expensive_retries", False):
        config = config.with_overrides(allow_expensive_retries=True)
    return config


def _request_options(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "already_clean": args.already_clean,
        "enable_qa": False if args.no_qa else None,
        "qa_mode": args.qa_mode,
    }


def _write_json(path: Path, payload: Any) -> None:
    with open(path, "w") as f:
        json.dump(payload, f, indent=2)


def save_result(result: PipelineResult, orchestrator: PipelineOrchestrator, out_dir: Path) -> None:
    """Write the rendered image, facts, control block and full result to ``out_dir``."""
    out_dir.mkdir(parents=True, exist_ok=True)
    if result.rendered_image_ref:
        ext = extension_for(orchestrator.store.mime_type(result.rendered_image_ref))
        (out_dir / f"rendered{ext}").write_bytes(orchestrator.store.get(result.rendered_image_ref))
    if result.facts_record is not None:
        _write_json(out_dir / "facts.json", result.facts_record.model_dump(mode="json"))
    if result.control_block is not None:
        _write_json(out_dir / "control_block.json", result.control_block.model_dump(mode="json"))
    _write_json(out_dir / "pipeline_result.json", result.to_dict())


def _print_summary(result: PipelineResult) -> None:
    if result.ok:
        print(f"✅ {result.session_id} completed in {result.total_duration_ms}ms")
        if result.qa.get("code"):
            print(f"   QA: {result.qa['code']} after {result.qa.get('attempts')} attempt(s)")
    else:
        error = result.error or {}
        print(f"❌ {result.session_id} failed at {error.get('stage')}: {error.get('code')} - {error.get('message')}")
    for warning in result.warnings:
        print(f"   ⚠️ {warning}")


# -----------------------------
# Commands
# -----------------------------

def cmd_run(args: argparse.Namespace) -> int:
    orchestrator = PipelineOrchestrator.from_config(_load_config(args))
    request = PipelineRequest(
        flatlay=Path(args.flatlay),
        on_model=Path(args.on_model) if args.on_model else None,
        label=Path(args.flatlay).name,
        **_request_options(args),
    )
    result = asyncio.run(orchestrator.run(request))
    save_result(result, orchestrator, Path(args.out))
    _print_summary(result)
    return 0 if result.ok else 1


def cmd_batch(args: argparse.Namespace) -> int:
    input_dir = Path(args.input_dir)
    images: List[Path] = sorted(p for p in input_dir.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
    if not images:
        print(f"No images found in {input_dir}")
        return 1

    orchestrator = PipelineOrchestrator.from_config(_load_config(args))
    options = _request_options(args)
    requests = [PipelineRequest(flatlay=p, label=p.name, **options) for p in images]
    results = asyncio.run(orchestrator.process_batch(requests, concurrency=args.concurrency))

    out_root = Path(args.out)
    for image, result in zip(images, results):
        save_result(result, orchestrator, out_root / image.stem)
        _print_summary(result)

    failed = sum(1 for r in results if not r.ok)
    print(f"\n📦 {len(results) - failed}/{len(results)} completed")
    return 0 if failed == 0 else 1


def cmd_health(args: argparse.Namespace) -> int:
    orchestrator = PipelineOrchestrator.from_config(_load_config(args))
    report = orchestrator.health_check()
    print(json.dumps(report, indent=2))
    return 0 if report["healthy"] else 1


# -----------------------------
# Parser
# -----------------------------

def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="Pipeline config YAML")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Log level (default: GHOSTSTUDIO_LOG_LEVEL or INFO)")


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--out", default="./ghoststudio_output", help="Output directory")
    parser.add_argument("--already-clean", action="store_true", help="Skip background removal")
    parser.add_argument("--qa-mode", choices=["advisory", "mandatory"], help="Render gate mode")
    parser.add_argument("--no-qa", action="store_true", help="Disable the render gate loop")
    parser.add_argument(
        "--allow-expensive-retries", action="store_true", help="Allow extra remote calls on stage failure"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ghoststudio",
        description="Ghost-mannequin product image pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Single garment
    ghoststudio run --flatlay shirt.jpg --out output/

    # With an on-model reference and mandatory QA
    ghoststudio run --flatlay shirt.jpg --on-model worn.jpg --qa-mode mandatory

    # Every image in a directory
    ghoststudio batch --input-dir flatlays/ --out output/
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Process one flat-lay image")
    run.add_argument("--flatlay", required=True, help="Flat-lay image path")
    run.add_argument("--on-model", help="Optional on-model reference image")
    _add_common(run)
    _add_run_options(run)
    run.set_defaults(func=cmd_run)

    batch = sub.add_parser("batch", help="Process every image in a directory")
    batch.add_argument("--input-dir", required=True, help="Directory of flat-lay images")
    batch.add_argument("--concurrency", type=int, default=None, help="Concurrent sessions")
    _add_common(batch)
    _add_run_options(batch)
    batch.set_defaults(func=cmd_batch)

    health = sub.add_parser("health", help="Report collaborator readiness")
    _add_common(health)
    health.set_defaults(func=cmd_health)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose, args.log_level)
    try:
        return args.func(args)
    except GhostPipelineError as e:
        logger.error(f"{e.code.value}: {e.message}")
        print(f"❌ {e.code.value}: {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
