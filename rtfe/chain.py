"""
Evaluator Chain – Concurrent Multi-Evaluator Scoring
=====================================================
Runs every enabled :class:`Evaluator` concurrently for one utterance and
merges their outputs into a single :class:`QualityScores`.

Failure isolation
-----------------
Each evaluator runs under its own time budget.  An evaluator that raises,
times out or returns a malformed result is dropped from the aggregate and
the remaining weights are re-normalized.  If nothing survives, the chain
returns :meth:`QualityScores.fallback` with a degraded breakdown.

Runtime changes
---------------
``add`` / ``remove`` / ``set_order`` replace the evaluator list instead of
mutating it, so an evaluation that is already running keeps the snapshot
it started with.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from rtfe.config import EvaluatorWeights
from rtfe.evaluators.base import Evaluator, EvaluatorKind
from rtfe.evaluators.registry import WEIGHT_FIELDS
from rtfe.schemas import (
    DIMENSIONS,
    EvaluationContext,
    EvaluationResult,
    HealthReport,
    QualityBreakdown,
    QualityScores,
    clamp,
)

logger = logging.getLogger(__name__)

#: Evaluator kinds consulted (in order) for each quality dimension.
DIMENSION_SOURCES: dict[str, tuple[EvaluatorKind, ...]] = {
    "performance": (EvaluatorKind.PERFORMANCE, EvaluatorKind.SEVEN_DIMENSION),
    "psychological": (EvaluatorKind.PARTICIPANT_ALIGNMENT, EvaluatorKind.SEVEN_DIMENSION),
    "content_quality": (EvaluatorKind.SEVEN_DIMENSION, EvaluatorKind.PERFORMANCE),
    "participant_alignment": (EvaluatorKind.PARTICIPANT_ALIGNMENT,),
}


@dataclass
class _Outcome:
    evaluator: Evaluator
    result: EvaluationResult | None = None
    error: str | None = None
    elapsed: float = 0.0


@dataclass
class ChainRun:
    """Summary of the most recent chain evaluation."""

    participant_id: str
    scores: QualityScores
    evaluator_names: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    execution_time: float = 0.0
    timestamp: float = field(default_factory=time.time)


class EvaluatorChain:
    """Ordered, configurable set of evaluators.

    Parameters
    ----------
    evaluators : Sequence[Evaluator], optional
        Initial evaluators, in evaluation order.
    evaluator_timeout : float
        Seconds each evaluator may take before it is treated as failed.
    """

    def __init__(
        self,
        evaluators: Sequence[Evaluator] | None = None,
        evaluator_timeout: float = 5.0,
    ) -> None:
        self._evaluators: tuple[Evaluator, ...] = ()
        self._timeout = evaluator_timeout
        self._run_count = 0
        self._failure_count = 0
        self._fallback_count = 0
        self._last_run: ChainRun | None = None
        for ev in evaluators or ():
            self.add(ev)

    # ------------------------------------------------------------------ #
    #  Evaluation
    # ------------------------------------------------------------------ #

    async def evaluate(self, ctx: EvaluationContext) -> QualityScores:
        """Score *ctx* with every enabled evaluator."""
        return await self._evaluate(ctx, self._evaluators)

    async def evaluate_with(self, ctx: EvaluationContext, names: Iterable[str]) -> QualityScores:
        """Score *ctx* with only the named evaluators (order as registered)."""
        wanted = set(names)
        return await self._evaluate(ctx, tuple(e for e in self._evaluators if e.name in wanted))

    async def _evaluate(
        self, ctx: EvaluationContext, evaluators: tuple[Evaluator, ...]
    ) -> QualityScores:
        t0 = time.perf_counter()
        self._run_count += 1
        active = [e for e in evaluators if e.enabled]

        if not active:
            logger.warning("No enabled evaluators for %s; using fallback scores", ctx.participant_id)
            self._fallback_count += 1
            scores = QualityScores.fallback("no enabled evaluators")
            self._remember(ctx, scores, [], {}, t0)
            return scores

        outcomes = await asyncio.gather(*(self._run_one(e, ctx) for e in active))
        errors = {o.evaluator.name: o.error for o in outcomes if o.error is not None}
        survivors = [o for o in outcomes if o.result is not None]
        self._failure_count += len(errors)

        if not survivors:
            logger.warning(
                "All %d evaluators failed for %s; using fallback scores",
                len(active), ctx.participant_id,
            )
            self._fallback_count += 1
            scores = QualityScores.fallback("all evaluators failed")
            scores.breakdown.errors.update(errors)
            self._remember(ctx, scores, [], errors, t0)
            return scores

        scores = self._merge(survivors, errors)
        self._remember(ctx, scores, [o.evaluator.name for o in survivors], errors, t0)
        return scores

    async def _run_one(self, evaluator: Evaluator, ctx: EvaluationContext) -> _Outcome:
        t0 = time.perf_counter()
        try:
            result = await asyncio.wait_for(evaluator.evaluate(ctx), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Evaluator %s timed out after %.1fs", evaluator.name, self._timeout)
            return _Outcome(evaluator, error="timeout", elapsed=time.perf_counter() - t0)
        except Exception as exc:
            logger.warning("Evaluator %s failed: %s", evaluator.name, exc, exc_info=True)
            return _Outcome(evaluator, error=f"{type(exc).__name__}: {exc}", elapsed=time.perf_counter() - t0)

        problem = _malformed(result)
        if problem is not None:
            logger.warning("Evaluator %s returned a malformed result: %s", evaluator.name, problem)
            return _Outcome(evaluator, error=problem, elapsed=time.perf_counter() - t0)
        return _Outcome(evaluator, result=result, elapsed=time.perf_counter() - t0)

    def _merge(self, survivors: list[_Outcome], errors: dict[str, str]) -> QualityScores:
        raw = [o.evaluator.weight for o in survivors]
        total = sum(raw)
        if total <= 0:
            norm = [1.0 / len(survivors)] * len(survivors)
        else:
            norm = [w / total for w in raw]

        overall = clamp(sum(w * clamp(o.result.score) for w, o in zip(norm, survivors)))

        dims = {dim: self._dimension(dim, survivors, overall) for dim in DIMENSIONS}

        breakdown = QualityBreakdown(
            dimension_scores={o.evaluator.name: clamp(o.result.score) for o in survivors},
            evaluator_weights={o.evaluator.name: w for w, o in zip(norm, survivors)},
            errors=dict(errors),
            degraded=bool(errors),
        )
        for o in survivors:
            breakdown.specific_improvements.extend(
                s for s in o.result.suggestions if s not in breakdown.specific_improvements
            )
        for dim, value in dims.items():
            label = dim.replace("_", " ")
            if value >= 0.8:
                breakdown.strengths.append(f"Strong {label} ({value:.2f})")
            elif value < 0.7:
                breakdown.weaknesses.append(f"Weak {label} ({value:.2f})")

        return QualityScores(overall_score=overall, breakdown=breakdown, **dims)

    @staticmethod
    def _dimension(dim: str, survivors: list[_Outcome], overall: float) -> float:
        by_kind: dict[EvaluatorKind, _Outcome] = {}
        for o in survivors:
            by_kind.setdefault(o.evaluator.kind, o)

        for kind in DIMENSION_SOURCES[dim]:
            o = by_kind.get(kind)
            if o is None:
                continue
            value = o.result.breakdown.get(dim, o.result.score)
            if _finite(value):
                return clamp(value)

        for o in survivors:
            value = o.result.breakdown.get(dim)
            if _finite(value):
                return clamp(value)
        return overall

    def _remember(
        self,
        ctx: EvaluationContext,
        scores: QualityScores,
        names: list[str],
        errors: dict[str, str],
        t0: float,
    ) -> None:
        self._last_run = ChainRun(
            participant_id=ctx.participant_id,
            scores=scores,
            evaluator_names=names,
            errors=errors,
            execution_time=time.perf_counter() - t0,
        )

    # ------------------------------------------------------------------ #
    #  Runtime configuration (copy-on-write)
    # ------------------------------------------------------------------ #

    @property
    def evaluators(self) -> tuple[Evaluator, ...]:
        return self._evaluators

    def get(self, name: str) -> Evaluator | None:
        return next((e for e in self._evaluators if e.name == name), None)

    def add(self, evaluator: Evaluator) -> bool:
        """Append *evaluator*. Returns ``False`` if the name is taken."""
        if self.get(evaluator.name) is not None:
            logger.warning("Evaluator %s already registered", evaluator.name)
            return False
        self._evaluators = (*self._evaluators, evaluator)
        logger.debug("Evaluator added: %r", evaluator)
        return True

    def remove(self, name: str) -> bool:
        remaining = tuple(e for e in self._evaluators if e.name != name)
        if len(remaining) == len(self._evaluators):
            return False
        self._evaluators = remaining
        return True

    def set_order(self, names: Sequence[str]) -> bool:
        """Reorder evaluators; *names* must be a permutation of the current names."""
        current = {e.name: e for e in self._evaluators}
        if len(names) != len(current) or set(names) != set(current):
            logger.warning("Invalid evaluator order %s", list(names))
            return False
        self._evaluators = tuple(current[n] for n in names)
        return True

    def configure(
        self,
        name: str,
        *,
        weight: float | None = None,
        enabled: bool | None = None,
        thresholds: dict[str, float] | None = None,
    ) -> bool:
        """Update one evaluator's settings. Returns ``False`` if *name* is unknown."""
        evaluator = self.get(name)
        if evaluator is None:
            logger.warning("Cannot configure unknown evaluator %s", name)
            return False
        evaluator.configure(weight=weight, enabled=enabled, thresholds=thresholds)
        return True

    def update_weights(self, weights: EvaluatorWeights) -> None:
        """Apply configured weights to the built-in evaluators present."""
        for evaluator in self._evaluators:
            field_name = WEIGHT_FIELDS.get(evaluator.kind)
            if field_name is not None:
                evaluator.configure(weight=getattr(weights, field_name))

    # ------------------------------------------------------------------ #
    #  Diagnostics
    # ------------------------------------------------------------------ #

    def statistics(self) -> dict[str, Any]:
        enabled = [e for e in self._evaluators if e.enabled]
        return {
            "evaluator_count": len(self._evaluators),
            "enabled_count": len(enabled),
            "total_weight": sum(e.weight for e in enabled),
            "order": [e.name for e in self._evaluators],
            "runs": self._run_count,
            "evaluator_failures": self._failure_count,
            "fallbacks": self._fallback_count,
            "last_execution_time": self._last_run.execution_time if self._last_run else None,
        }

    @property
    def last_run(self) -> ChainRun | None:
        return self._last_run

    def health_check(self) -> HealthReport:
        report = HealthReport()
        enabled = [e for e in self._evaluators if e.enabled]
        if not self._evaluators:
            report.issues.append("No evaluators registered")
        elif not enabled:
            report.issues.append("All evaluators are disabled")
        total = sum(e.weight for e in enabled)
        if enabled and abs(total - 1.0) > 0.1:
            report.warnings.append(f"Enabled evaluator weights sum to {total:.2f}")
        report.healthy = not report.issues
        return report


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def _malformed(result: Any) -> str | None:
    """Describe what is wrong with an evaluator's return value, or ``None``."""
    if not isinstance(result, EvaluationResult):
        return f"expected EvaluationResult, got {type(result).__name__}"
    if not _finite(result.score):
        return "non-finite score"
    if not isinstance(result.breakdown, Mapping):
        return "breakdown is not a mapping"
    if isinstance(result.suggestions, (str, bytes)) or not isinstance(result.suggestions, Iterable):
        return "suggestions is not a list"
    return None
