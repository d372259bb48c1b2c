#!/usr/bin/env python3
"""
executor.py – Stage Executor
============================

Runs one external-collaborator call under a deadline, classifies the outcome
and applies the retry/fallback policy.

- Deadline per call via asyncio.wait_for; a timed-out call is abandoned locally
  (the remote side may still finish, its result is discarded)
- Default policy is fail-fast-to-fallback: no extra remote calls unless the
  policy explicitly allows expensive retries
- Retries (when allowed) are driven by tenacity with exponential backoff
- Exactly one Session.stage_results entry per run_stage call

Dependencies: tenacity
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import ErrorCode, GhostPipelineError
from ..session import Session

logger = logging.getLogger("ghoststudio.executor")

StageCall = Callable[[], Awaitable[Any]]


class StageStatus(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one stage call. Cost behaviour lives here, not in globals."""
    max_retries: int = 0
    allow_expensive_retry: bool = False
    backoff_ms: int = 0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_ms < 0:
            raise ValueError("backoff_ms must be >= 0")

    @property
    def attempts_allowed(self) -> int:
        if not self.allow_expensive_retry:
            return 1
        return 1 + self.max_retries


FAIL_FAST = RetryPolicy()


@dataclass
class StageOutcome:
    stage: str
    status: StageStatus
    duration_ms: int
    attempts: int = 1
    value: Any = None
    error: Optional[GhostPipelineError] = None
    signal: Optional[ErrorCode] = None

    @property
    def ok(self) -> bool:
        return self.status is StageStatus.SUCCESS

    @property
    def fallback_requested(self) -> bool:
        return self.signal is ErrorCode.STAGE_FAILED_FALLBACK_REQUESTED


# -----------------------------
# Classification
# -----------------------------

def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, GhostPipelineError):
        return exc.code is not ErrorCode.CLIENT_MISCONFIGURED
    return isinstance(exc, Exception)


def _classify(name: str, exc: BaseException, timeout_ms: int) -> GhostPipelineError:
    if isinstance(exc, asyncio.TimeoutError):
        return GhostPipelineError(
            f"{name} did not complete within {timeout_ms}ms",
            ErrorCode.STAGE_TIMEOUT,
            stage=name,
            cause=exc,
        )
    if isinstance(exc, GhostPipelineError):
        code = exc.code
        if code not in (ErrorCode.CLIENT_MISCONFIGURED, ErrorCode.STAGE_TIMEOUT):
            code = ErrorCode.STAGE_FAILED
        return GhostPipelineError(exc.message, code, stage=name, cause=exc.cause or exc)
    return GhostPipelineError(
        f"{name} failed: {type(exc).__name__}: {exc}",
        ErrorCode.STAGE_FAILED,
        stage=name,
        cause=exc,
    )


# -----------------------------
# run_stage
# -----------------------------

async def run_stage(
    name: str,
    call: StageCall,
    timeout_ms: int,
    policy: RetryPolicy = FAIL_FAST,
    session: Optional[Session] = None,
) -> StageOutcome:
    """
    Invoke ``call`` (a zero-argument coroutine factory) under ``timeout_ms``.

    Never raises for collaborator failures: the outcome carries a classified
    error, and ``fallback_requested`` tells the caller to substitute a local
    fallback instead of spending more remote calls.
    """
    if timeout_ms <= 0:
        raise ValueError("timeout_ms must be > 0")

    sid = session.id if session else "-"
    t0 = time.monotonic()
    attempts = 0
    value: Any = None
    error: Optional[GhostPipelineError] = None

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.attempts_allowed),
        wait=wait_exponential(multiplier=policy.backoff_ms / 1000.0, max=30),
        retry=retry_if_exception(_is_retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                if attempts > 1:
                    logger.info(f"🔁 [{sid}] {name} retry {attempts}/{policy.attempts_allowed}")
                value = await asyncio.wait_for(call(), timeout=timeout_ms / 1000.0)
    except Exception as exc:
        error = _classify(name, exc, timeout_ms)

    duration_ms = int((time.monotonic() - t0) * 1000)

    if error is None:
        status = StageStatus.SUCCESS
        signal = None
        logger.info(f"✅ [{sid}] {name} succeeded in {duration_ms}ms (attempts={attempts})")
    else:
        status = StageStatus.TIMEOUT if error.code is ErrorCode.STAGE_TIMEOUT else StageStatus.FAILED
        signal = None
        if error.code is not ErrorCode.CLIENT_MISCONFIGURED:
            signal = ErrorCode.STAGE_FAILED_FALLBACK_REQUESTED
        logger.warning(
            f"⚠️ [{sid}] {name} {status.value} after {duration_ms}ms "
            f"(attempts={attempts}, code={error.code.value}): {error.message}"
        )

    if session is not None:
        session.record(name, status.value, duration_ms, attempts=attempts, error=error)

    return StageOutcome(
        stage=name,
        status=status,
        duration_ms=duration_ms,
        attempts=attempts,
        value=value if error is None else None,
        error=error,
        signal=signal,
    )
