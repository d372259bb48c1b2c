#!/usr/bin/env python3
"""
config.py – Pipeline configuration
==================================

Dataclass configuration for the orchestrator and its collaborators.

- Per-stage timeout budgets (background removal short, rendering longest)
- Explicit retry policy per stage; expensive retries are opt-in
- Render-gate QA loop settings (advisory vs mandatory)
- Gemini model selection and blob storage backend
- YAML loading (validated against schemas/config.schema.json)

Dependencies: PyYAML jsonschema
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from jsonschema import Draft202012Validator, validate
from jsonschema.exceptions import ValidationError

from .errors import ErrorCode, GhostPipelineError
from .stages.executor import RetryPolicy

logger = logging.getLogger("ghoststudio.config")

SCHEMA_PATH = Path(__file__).parent / "schemas" / "config.schema.json"

STAGE_KEYS = (
    "background_removal",
    "analysis",
    "enrichment",
    "consolidation",
    "rendering",
    "qa",
)

QA_MODES = ("advisory", "mandatory")

# ---------------------------------------------------------------------------
# Config sections
# ---------------------------------------------------------------------------

@dataclass
class StageSettings:
    """Deadline and retry budget for one remote stage."""
    timeout_ms: int
    max_retries: int = 0


def _default_stages() -> Dict[str, StageSettings]:
    return {
        "background_removal": StageSettings(timeout_ms=30_000),
        "analysis": StageSettings(timeout_ms=90_000),
        "enrichment": StageSettings(timeout_ms=120_000),
        "consolidation": StageSettings(timeout_ms=45_000),
        "rendering": StageSettings(timeout_ms=180_000, max_retries=1),
        "qa": StageSettings(timeout_ms=60_000),
    }


@dataclass
class CostControl:
    allow_expensive_retries: bool = False
    retry_backoff_ms: int = 500
    refinement_enabled: bool = True


@dataclass
class QASettings:
    """Render gate loop settings."""
    enabled: bool = True
    max_extra_renders: int = 2
    mode: str = "advisory"  # advisory | mandatory
    inspect_renders: bool = True
    background_tolerance: int = 12
    enforce_min_resolution: bool = False

    @property
    def mandatory(self) -> bool:
        return self.mode == "mandatory"


@dataclass
class GeminiSettings:
    analysis_model: str = "gemini-2.5-flash-lite-preview-09-2025"
    enrichment_model: str = "gemini-2.5-flash-lite-preview-09-2025"
    consolidation_model: str = "gemini-2.5-flash-lite-preview-09-2025"
    render_model: str = "gemini-2.5-flash-image-preview"
    # tried in order when the primary render model fails
    render_fallback_models: List[str] = field(default_factory=list)
    inspection_model: str = "gemini-2.5-flash-lite-preview-09-2025"
    analysis_temperature: float = 0.1
    render_temperature: float = 0.2


@dataclass
class StorageSettings:
    backend: str = "local"  # memory | local | s3
    root: str = "./ghoststudio_blobs"
    bucket: str = ""
    prefix: str = "ghoststudio/"
    region: str = "us-east-1"


@dataclass
class BackgroundRemovalSettings:
    enabled: bool = True
    model: str = "u2net"


@dataclass
class PipelineConfig:
    stages: Dict[str, StageSettings] = field(default_factory=_default_stages)
    cost_control: CostControl = field(default_factory=CostControl)
    qa: QASettings = field(default_factory=QASettings)
    gemini: GeminiSettings = field(default_factory=GeminiSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    background_removal: BackgroundRemovalSettings = field(default_factory=BackgroundRemovalSettings)
    style_config: Optional[str] = None
    batch_concurrency: int = 3

    def stage(self, key: str) -> StageSettings:
        try:
            return self.stages[key]
        except KeyError:
            raise GhostPipelineError(
                f"No stage settings for '{key}'", ErrorCode.CLIENT_MISCONFIGURED
            ) from None

    def policy_for(self, key: str) -> RetryPolicy:
        """Build the explicit retry policy handed to the stage executor."""
        settings = self.stage(key)
        return RetryPolicy(
            max_retries=settings.max_retries,
            allow_expensive_retry=self.cost_control.allow_expensive_retries,
            backoff_ms=self.cost_control.retry_backoff_ms,
        )

    def with_overrides(
        self,
        allow_expensive_retries: Optional[bool] = None,
        qa_enabled: Optional[bool] = None,
        qa_mode: Optional[str] = None,
    ) -> "PipelineConfig":
        """Return a copy with CLI/request level overrides applied."""
        if qa_mode is not None and qa_mode not in QA_MODES:
            raise GhostPipelineError(f"Unknown qa_mode {qa_mode!r}", ErrorCode.CLIENT_MISCONFIGURED)
        cfg = replace(self)
        if allow_expensive_retries is not None:
            cfg.cost_control = replace(self.cost_control, allow_expensive_retries=allow_expensive_retries)
        if qa_enabled is not None or qa_mode is not None:
            cfg.qa = replace(
                self.qa,
                enabled=self.qa.enabled if qa_enabled is None else qa_enabled,
                mode=self.qa.mode if qa_mode is None else qa_mode,
            )
        return cfg

    # -----------------------------
    # Loading
    # -----------------------------
    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "PipelineConfig":
        raw = raw or {}
        validate_config(raw)

        stages = _default_stages()
        for key, values in (raw.get("stages") or {}).items():
            base = stages[key]
            stages[key] = StageSettings(
                timeout_ms=int(values.get("timeout_ms", base.timeout_ms)),
                max_retries=int(values.get("max_retries", base.max_retries)),
            )

        return cls(
            stages=stages,
            cost_control=CostControl(**(raw.get("cost_control") or {})),
            qa=QASettings(**(raw.get("qa") or {})),
            gemini=GeminiSettings(**(raw.get("gemini") or {})),
            storage=StorageSettings(**(raw.get("storage") or {})),
            background_removal=BackgroundRemovalSettings(**(raw.get("background_removal") or {})),
            style_config=raw.get("style_config"),
            batch_concurrency=int(raw.get("batch_concurrency", 3)),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PipelineConfig":
        path = Path(path)
        if not path.exists():
            raise GhostPipelineError(f"Config file not found: {path}", ErrorCode.CLIENT_MISCONFIGURED)
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise GhostPipelineError(
                f"Config file {path} must contain a mapping", ErrorCode.CLIENT_MISCONFIGURED
            )
        logger.info(f"Loaded pipeline config from {path}")
        return cls.from_dict(raw)


def validate_config(raw: Dict[str, Any]) -> None:
    with open(SCHEMA_PATH, "r") as f:
        schema = json.load(f)
    try:
        validate(instance=raw, schema=schema, cls=Draft202012Validator)
    except ValidationError as e:
        raise GhostPipelineError(
            f"Config validation error: {e.message} at {list(e.path)}",
            ErrorCode.CLIENT_MISCONFIGURED,
            cause=e,
        ) from e


def gemini_api_key() -> Optional[str]:
    return os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")


def log_level_from_env(default: str = "INFO") -> str:
    return os.getenv("GHOSTSTUDIO_LOG_LEVEL", default).upper()
