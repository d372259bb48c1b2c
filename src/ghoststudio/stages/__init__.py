"""
Stage execution
===============

- executor: deadline + retry/fallback wrapper around one collaborator call
"""

from .executor import FAIL_FAST, RetryPolicy, StageOutcome, StageStatus, run_stage

__all__ = [
    "FAIL_FAST",
    "RetryPolicy",
    "StageOutcome",
    "StageStatus",
    "run_stage",
]
