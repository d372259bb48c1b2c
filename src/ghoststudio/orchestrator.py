#!/usr/bin/env python3
"""
orchestrator.py – Pipeline Orchestrator
=======================================

Drives one Session through the stage sequence:

    Init → BackgroundRemoval → Analysis → Enrichment → Consolidation
         → Rendering ⇄ QAGate (bounded) → Done | Failed

- Optional stages (background removal, enrichment, refinement) absorb failures
  into warnings and fall back; mandatory stages (analysis, rendering) end the
  run immediately with the stage name and a stable error code
- Cancellation is checked between stages only; an in-flight call runs to
  completion or its own timeout
- The QA loop is an explicit counter-bounded loop; RENDER_QA_EXHAUSTED is a
  flagged success in advisory mode and a failure in mandatory mode
- Rendering tries the primary route, then each fallback route in order while
  the stage executor asks for a fallback; exhausting every route is fatal
- A run never raises: every failure becomes a result naming the stage and a
  stable error code
- Sessions share no mutable state, so many can run concurrently (process_batch)

Dependencies: asyncio (stdlib), see collaborators for remote stacks
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .collaborators.background import create_background_remover
from .collaborators.base import RenderResult, is_ready
from .collaborators.blob_store import BlobStore, create_blob_store
from .collaborators.gemini import create_gemini_collaborators
from .config import QA_MODES, PipelineConfig
from .consolidation.engine import ConsolidationEngine
from .consolidation.schema import (
    AnalysisDocument,
    Conflict,
    ControlBlock,
    EnrichmentDocument,
    FactsRecord,
)
from .errors import ErrorCode, GhostPipelineError
from .prompting import InstructionWeaver
from .render_gate import GateVerdict, RenderGate
from .session import Session
from .stages.executor import StageOutcome, run_stage
from .utils.images import ImageSource, load_image_source

logger = logging.getLogger("ghoststudio.orchestrator")


class PipelineState(str, Enum):
    INIT = "Init"
    BACKGROUND_REMOVAL = "BackgroundRemoval"
    ANALYSIS = "Analysis"
    ENRICHMENT = "Enrichment"
    CONSOLIDATION = "Consolidation"
    RENDERING = "Rendering"
    QA_GATE = "QAGate"
    DONE = "Done"
    FAILED = "Failed"


# ---------------------------------------------------------------------------
# Request / Result
# ---------------------------------------------------------------------------

@dataclass
class PipelineRequest:
    flatlay: Optional[ImageSource]
    on_model: Optional[ImageSource] = None
    already_clean: bool = False
    original_facts: Optional[Dict[str, Any]] = None
    enable_qa: Optional[bool] = None
    qa_mode: Optional[str] = None
    label: Optional[str] = None


@dataclass
class PipelineResult:
    session_id: str
    status: str  # completed | failed
    stage_timings: Dict[str, int] = field(default_factory=dict)
    total_duration_ms: int = 0
    cleaned_image_ref: Optional[str] = None
    rendered_image_ref: Optional[str] = None
    facts_record: Optional[FactsRecord] = None
    control_block: Optional[ControlBlock] = None
    error: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)
    qa: Dict[str, Any] = field(default_factory=dict)
    consolidation_source: Optional[str] = None
    conflicts: List[Conflict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "cleaned_image_ref": self.cleaned_image_ref,
            "rendered_image_ref": self.rendered_image_ref,
            "facts_record": self.facts_record.model_dump(mode="json") if self.facts_record else None,
            "control_block": self.control_block.model_dump(mode="json") if self.control_block else None,
            "stage_timings": dict(self.stage_timings),
            "total_duration_ms": self.total_duration_ms,
            "error": self.error,
            "warnings": list(self.warnings),
            "qa": dict(self.qa),
            "consolidation_source": self.consolidation_source,
            "conflicts": [c.model_dump(mode="json") for c in self.conflicts],
        }


def _as_document(model: Any, value: Any, stage: str) -> Any:
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as e:
        raise GhostPipelineError(
            f"{stage} returned an unusable document: {e.error_count()} error(s)",
            ErrorCode.STAGE_FAILED,
            cause=e,
        ) from e


@dataclass
class _Run:
    """Per-run working state; never shared between sessions."""
    session: Session
    config: PipelineConfig
    state: PipelineState = PipelineState.INIT
    warnings: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class PipelineOrchestrator:
    def __init__(
        self,
        analyzer: Any,
        renderer: Any,
        store: BlobStore,
        enricher: Any = None,
        refiner: Any = None,
        background_remover: Any = None,
        config: Optional[PipelineConfig] = None,
        weaver: Optional[InstructionWeaver] = None,
        gate: Optional[RenderGate] = None,
        fallback_renderers: Sequence[Any] = (),
    ):
        self.config = config or PipelineConfig()
        self.analyzer = analyzer
        self.renderer = renderer
        # tried in order when the primary route asks for a fallback
        self.fallback_renderers = [r for r in fallback_renderers if r is not None]
        self.enricher = enricher
        self.refiner = refiner
        self.background_remover = background_remover
        self.store = store
        self.weaver = weaver or InstructionWeaver(
            Path(self.config.style_config) if self.config.style_config else None
        )
        self.gate = gate or RenderGate(background_tolerance=self.config.qa.background_tolerance)
        self.consolidation = ConsolidationEngine(
            refiner=refiner,
            timeout_ms=self.config.stage("consolidation").timeout_ms,
            policy=self.config.policy_for("consolidation"),
            refinement_enabled=self.config.cost_control.refinement_enabled,
        )

    @classmethod
    def from_config(cls, config: Optional[PipelineConfig] = None, api_key: Optional[str] = None) -> "PipelineOrchestrator":
        """Wire the Gemini, rembg and blob store collaborators from configuration."""
        config = config or PipelineConfig()
        store = create_blob_store(config.storage)
        gemini = create_gemini_collaborators(
            store, config.gemini, inspect_renders=config.qa.inspect_renders, api_key=api_key
        )
        remover = create_background_remover(
            store, enabled=config.background_removal.enabled, model=config.background_removal.model
        )
        return cls(
            analyzer=gemini["analyzer"],
            renderer=gemini["renderer"],
            fallback_renderers=gemini["fallback_renderers"],
            enricher=gemini["enricher"],
            refiner=gemini["refiner"],
            background_remover=remover,
            store=store,
            config=config,
        )

    # -----------------------------
    # Public API
    # -----------------------------
    async def run(
        self,
        request: PipelineRequest,
        cancel_event: Optional[asyncio.Event] = None,
        session: Optional[Session] = None,
    ) -> PipelineResult:
        run = _Run(session=session or Session(), config=self.config)
        sid = run.session.id
        logger.info(f"🚀 [{sid}] Pipeline started{f' for {request.label}' if request.label else ''}")

        try:
            flatlay_ref, on_model_ref = await self._init(run, request)

            self._enter(run, PipelineState.BACKGROUND_REMOVAL, cancel_event)
            image_ref, cleaned_ref = await self._background_removal(run, request, flatlay_ref)

            self._enter(run, PipelineState.ANALYSIS, cancel_event)
            analysis = await self._analysis(run, image_ref, on_model_ref)

            self._enter(run, PipelineState.ENRICHMENT, cancel_event)
            enrichment = await self._enrichment(run, image_ref, analysis)

            self._enter(run, PipelineState.CONSOLIDATION, cancel_event)
            consolidated = await self._consolidation(run, analysis, enrichment, request.original_facts)
            facts, control = consolidated.facts, consolidated.control

            rendered_ref, qa = await self._render_with_gate(run, image_ref, on_model_ref, facts, control, cancel_event)

        except GhostPipelineError as e:
            return self._failed(run, e.with_stage(run.state.value))
        except Exception as e:
            logger.exception(f"💥 [{sid}] Unexpected error during {run.state.value}")
            return self._failed(run, GhostPipelineError(
                f"{run.state.value} failed: {type(e).__name__}: {e}",
                ErrorCode.STAGE_FAILED,
                stage=run.state.value,
                cause=e,
            ))

        run.state = PipelineState.DONE
        total = run.session.total_duration_ms()
        logger.info(f"✅ [{sid}] Pipeline completed in {total}ms (warnings={len(run.warnings)})")
        return PipelineResult(
            session_id=sid,
            status="completed",
            stage_timings=run.session.stage_timings(),
            total_duration_ms=total,
            cleaned_image_ref=cleaned_ref,
            rendered_image_ref=rendered_ref,
            facts_record=facts,
            control_block=control,
            warnings=run.warnings,
            qa=qa,
            consolidation_source=consolidated.source,
            conflicts=list(consolidated.conflicts),
        )

    async def process_batch(
        self,
        requests: Sequence[PipelineRequest],
        concurrency: Optional[int] = None,
    ) -> List[PipelineResult]:
        """Run independent sessions concurrently; results keep input order."""
        width = max(1, concurrency or self.config.batch_concurrency)
        limit = asyncio.Semaphore(width)

        async def _one(request: PipelineRequest) -> PipelineResult:
            async with limit:
                return await self.run(request)

        logger.info(f"📦 Batch of {len(requests)} request(s), concurrency={width}")
        results = await asyncio.gather(*(_one(r) for r in requests))
        done = sum(1 for r in results if r.ok)
        logger.info(f"📦 Batch finished: {done}/{len(results)} completed")
        return list(results)

    def health_check(self) -> Dict[str, Any]:
        def _state(collaborator: Any) -> str:
            if collaborator is None:
                return "not_configured"
            return "ready" if is_ready(collaborator) else "unavailable"

        components = {
            "analyzer": _state(self.analyzer),
            "enricher": _state(self.enricher),
            "refiner": _state(self.refiner),
            "renderer": _state(self.renderer),
            "fallback_renderers": [_state(r) for r in self.fallback_renderers],
            "background_remover": _state(self.background_remover),
            "blob_store": type(self.store).__name__,
        }
        healthy = components["analyzer"] == "ready" and components["renderer"] == "ready"
        return {"healthy": healthy, "components": components}

    # -----------------------------
    # Stages
    # -----------------------------
    def _enter(self, run: _Run, state: PipelineState, cancel_event: Optional[asyncio.Event]) -> None:
        run.state = state
        if cancel_event is not None and cancel_event.is_set():
            raise GhostPipelineError(
                f"Pipeline cancelled before {state.value}", ErrorCode.PIPELINE_CANCELLED, stage=state.value
            )

    def _absorb(self, run: _Run, outcome: StageOutcome) -> None:
        message = f"{outcome.stage} {outcome.status.value}: {outcome.error.message if outcome.error else 'unknown error'}"
        run.warnings.append(message)
        logger.warning(f"🛟 [{run.session.id}] {message}; continuing with fallback")

    @staticmethod
    def _terminal(outcome: StageOutcome) -> GhostPipelineError:
        error = outcome.error or GhostPipelineError(f"{outcome.stage} failed", ErrorCode.STAGE_FAILED)
        return error.with_stage(outcome.stage)

    @staticmethod
    def _failed(run: _Run, error: GhostPipelineError) -> PipelineResult:
        run.state = PipelineState.FAILED
        logger.error(f"❌ [{run.session.id}] Pipeline failed at {error.stage}: {error.code.value}: {error.message}")
        return PipelineResult(
            session_id=run.session.id,
            status="failed",
            stage_timings=run.session.stage_timings(),
            total_duration_ms=run.session.total_duration_ms(),
            error=error.to_dict(),
            warnings=run.warnings,
        )

    async def _put(self, run: _Run, data: bytes, name: str, mime_type: Optional[str]) -> str:
        """Store a blob off the event loop; backend errors become STAGE_FAILED at the current stage."""
        try:
            return await asyncio.to_thread(self.store.put, data, run.session.id, name, mime_type)
        except GhostPipelineError as e:
            raise e.with_stage(run.state.value)
        except Exception as e:
            raise GhostPipelineError(
                f"Blob store write failed for '{name}': {type(e).__name__}: {e}",
                ErrorCode.STAGE_FAILED,
                stage=run.state.value,
                cause=e,
            ) from e

    async def _init(self, run: _Run, request: PipelineRequest) -> Tuple[str, Optional[str]]:
        t0 = time.monotonic()
        error: Optional[GhostPipelineError] = None
        try:
            if request.qa_mode is not None and request.qa_mode not in QA_MODES:
                raise GhostPipelineError(
                    f"Unknown qa_mode {request.qa_mode!r}; expected one of {', '.join(QA_MODES)}",
                    ErrorCode.CLIENT_MISCONFIGURED,
                    stage=PipelineState.INIT.value,
                )
            run.config = self.config.with_overrides(qa_enabled=request.enable_qa, qa_mode=request.qa_mode)

            missing = [name for name, c in (("analyzer", self.analyzer), ("renderer", self.renderer)) if not is_ready(c)]
            if missing:
                raise GhostPipelineError(
                    f"Required collaborator(s) not configured: {', '.join(missing)}",
                    ErrorCode.CLIENT_MISCONFIGURED,
                    stage=PipelineState.INIT.value,
                )
            if request.flatlay is None or (isinstance(request.flatlay, (bytes, bytearray, str)) and not request.flatlay):
                raise GhostPipelineError(
                    "Flat-lay image is required", ErrorCode.MISSING_FLATLAY, stage=PipelineState.INIT.value
                )
            try:
                data, mime = await asyncio.to_thread(load_image_source, request.flatlay)
            except GhostPipelineError as e:
                raise GhostPipelineError(
                    f"Flat-lay image is missing or unreadable: {e.message}",
                    ErrorCode.MISSING_FLATLAY,
                    stage=PipelineState.INIT.value,
                    cause=e,
                ) from e
            flatlay_ref = await self._put(run, data, "flatlay", mime)

            on_model_ref = None
            if request.on_model is not None:
                try:
                    om_data, om_mime = await asyncio.to_thread(load_image_source, request.on_model)
                    on_model_ref = await self._put(run, om_data, "on_model", om_mime)
                except GhostPipelineError as e:
                    run.warnings.append(f"on-model image ignored: {e.message}")
                    logger.warning(f"[{run.session.id}] On-model image ignored: {e.message}")
        except GhostPipelineError as e:
            error = e
            raise
        except Exception as e:
            error = GhostPipelineError(
                f"Init failed: {type(e).__name__}: {e}", ErrorCode.STAGE_FAILED, stage=PipelineState.INIT.value, cause=e
            )
            raise error from e
        finally:
            run.session.record(
                PipelineState.INIT.value,
                "success" if error is None else "failed",
                int((time.monotonic() - t0) * 1000),
                error=error,
            )
        return flatlay_ref, on_model_ref

    async def _background_removal(
        self, run: _Run, request: PipelineRequest, flatlay_ref: str
    ) -> Tuple[str, Optional[str]]:
        sid = run.session.id
        if request.already_clean:
            logger.info(f"[{sid}] Flat-lay already clean; skipping background removal")
            return flatlay_ref, flatlay_ref
        remover = self.background_remover
        if remover is None or not is_ready(remover):
            run.warnings.append("BackgroundRemoval skipped: no background remover available")
            logger.warning(f"[{sid}] No background remover available; using the flat-lay as-is")
            return flatlay_ref, None

        settings = run.config.stage("background_removal")
        outcome = await run_stage(
            PipelineState.BACKGROUND_REMOVAL.value,
            lambda: remover.remove(flatlay_ref, sid),
            settings.timeout_ms,
            run.config.policy_for("background_removal"),
            run.session,
        )
        if outcome.ok:
            return outcome.value, outcome.value
        self._absorb(run, outcome)
        return flatlay_ref, None

    async def _analysis(self, run: _Run, image_ref: str, on_model_ref: Optional[str]) -> AnalysisDocument:
        sid = run.session.id

        async def _analyze() -> AnalysisDocument:
            return _as_document(AnalysisDocument, await self.analyzer.analyze(image_ref, sid, on_model_ref), "Analysis")

        outcome = await run_stage(
            PipelineState.ANALYSIS.value,
            _analyze,
            run.config.stage("analysis").timeout_ms,
            run.config.policy_for("analysis"),
            run.session,
        )
        if not outcome.ok:
            # no safe default exists for labels / preserve details / hollows
            raise self._terminal(outcome)
        return outcome.value

    async def _enrichment(
        self, run: _Run, image_ref: str, analysis: AnalysisDocument
    ) -> Optional[EnrichmentDocument]:
        enricher = self.enricher
        if enricher is None or not is_ready(enricher):
            run.warnings.append("Enrichment skipped: no enrichment service configured")
            return None
        enrichment_session = f"{run.session.id}_enrichment"

        async def _enrich() -> Optional[EnrichmentDocument]:
            value = await enricher.enrich(image_ref, enrichment_session, analysis)
            return None if value is None else _as_document(EnrichmentDocument, value, "Enrichment")

        outcome = await run_stage(
            PipelineState.ENRICHMENT.value,
            _enrich,
            run.config.stage("enrichment").timeout_ms,
            run.config.policy_for("enrichment"),
            run.session,
        )
        if not outcome.ok:
            # enrichment refines, it never gates
            self._absorb(run, outcome)
            return None
        return outcome.value

    async def _consolidation(
        self,
        run: _Run,
        analysis: AnalysisDocument,
        enrichment: Optional[EnrichmentDocument],
        original_facts: Optional[Dict[str, Any]],
    ):
        t0 = time.monotonic()
        try:
            result = await self.consolidation.run(analysis, enrichment, original_facts, run.session)
        except GhostPipelineError as e:
            run.session.record(
                PipelineState.CONSOLIDATION.value, "failed", int((time.monotonic() - t0) * 1000), error=e
            )
            raise e.with_stage(PipelineState.CONSOLIDATION.value)
        run.session.record(PipelineState.CONSOLIDATION.value, "success", int((time.monotonic() - t0) * 1000))
        if result.source == "fallback" and self.refiner is not None and run.config.cost_control.refinement_enabled:
            run.warnings.append("Consolidation used the local fallback merge")
        return result

    async def _render_with_gate(
        self,
        run: _Run,
        image_ref: str,
        on_model_ref: Optional[str],
        facts: FactsRecord,
        control: ControlBlock,
        cancel_event: Optional[asyncio.Event],
    ) -> Tuple[str, Dict[str, Any]]:
        sid = run.session.id
        qa_cfg = run.config.qa
        max_attempts = 1 + (qa_cfg.max_extra_renders if qa_cfg.enabled else 0)
        min_resolution = facts.qa_targets.min_resolution_px if qa_cfg.enforce_min_resolution else None

        attempt = 0
        corrections: List[str] = []
        all_reasons: List[str] = []
        verdict: Optional[GateVerdict] = None
        rendered_ref = ""

        while attempt < max_attempts:
            attempt += 1
            self._enter(run, PipelineState.RENDERING, cancel_event)
            instruction = self.weaver.weave(facts, control, corrections)
            render = await self._render_routes(run, image_ref, on_model_ref, facts, control, instruction)
            rendered_ref = await self._put(run, render.image_bytes, f"render{attempt}", render.mime_type)

            if not qa_cfg.enabled:
                break

            self._enter(run, PipelineState.QA_GATE, cancel_event)
            verdict = await self._evaluate(run, render, control, min_resolution)
            if verdict.passed:
                break
            all_reasons.extend(verdict.reasons)
            corrections = verdict.reasons
            if attempt < max_attempts:
                logger.info(f"🔁 [{sid}] Re-render {attempt + 1}/{max_attempts} with {len(corrections)} correction(s)")

        qa: Dict[str, Any] = {
            "enabled": qa_cfg.enabled,
            "mode": qa_cfg.mode,
            "attempts": attempt,
            "passed": verdict.passed if verdict is not None else None,
            "reasons": all_reasons,
            "code": None,
        }
        if qa_cfg.enabled and verdict is not None and not verdict.passed:
            qa["code"] = ErrorCode.RENDER_QA_EXHAUSTED.value
            message = f"Render failed QA after {attempt} attempt(s): {'; '.join(verdict.reasons)}"
            if qa_cfg.mandatory:
                raise GhostPipelineError(message, ErrorCode.RENDER_QA_EXHAUSTED, stage=PipelineState.QA_GATE.value)
            run.warnings.append(message)
            logger.warning(f"🟡 [{sid}] {message} (advisory, returning best effort)")
        return rendered_ref, qa

    async def _render_routes(
        self,
        run: _Run,
        image_ref: str,
        on_model_ref: Optional[str],
        facts: FactsRecord,
        control: ControlBlock,
        instruction: str,
    ) -> RenderResult:
        """Try the primary renderer, then each fallback route while the executor asks for a fallback."""
        routes = [self.renderer, *self.fallback_renderers]
        outcome: Optional[StageOutcome] = None
        for index, renderer in enumerate(routes):
            async def _render(renderer=renderer) -> RenderResult:
                return RenderResult.coerce(await renderer.render(image_ref, facts, control, instruction, on_model_ref))

            outcome = await run_stage(
                PipelineState.RENDERING.value,
                _render,
                run.config.stage("rendering").timeout_ms,
                run.config.policy_for("rendering"),
                run.session,
            )
            if outcome.ok:
                if index:
                    run.warnings.append(f"Rendering used fallback route {index}")
                return outcome.value
            if not outcome.fallback_requested or index == len(routes) - 1:
                break
            logger.warning(
                f"🔀 [{run.session.id}] Render route {index} failed ({outcome.error.code.value}); "
                f"falling back to route {index + 1}"
            )
        raise self._terminal(outcome)

    async def _evaluate(
        self,
        run: _Run,
        render: RenderResult,
        control: ControlBlock,
        min_resolution: Optional[int],
    ) -> GateVerdict:
        async def _gate() -> GateVerdict:
            return self.gate.evaluate(render, control, min_resolution_px=min_resolution)

        outcome = await run_stage(
            PipelineState.QA_GATE.value,
            _gate,
            run.config.stage("qa").timeout_ms,
            run.config.policy_for("qa"),
            run.session,
        )
        if outcome.ok:
            return outcome.value
        return GateVerdict(passed=False, reasons=[f"QA gate error: {outcome.error.message if outcome.error else 'unknown'}"])
