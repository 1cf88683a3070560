"""
Feedback Coordinator – The Evaluation Loop
==========================================
The :class:`FeedbackCoordinator` owns every component of the engine and
exposes a single ``await coordinator.evaluate_statement(ctx)`` entry point.

Pipeline
--------
1. **Evaluate** – :class:`EvaluatorChain` runs every enabled evaluator
   concurrently and merges their scores.
2. **Record** – the scores are appended to the speaker's
   :class:`HistoryStore` log.
3. **Optimize** – :class:`GraphWeightOptimizer` refines the latent
   participant graph and proposes new weights, which are written back to
   the history store.
4. **Aggregate** – :class:`FeedbackAggregator` builds the structured
   feedback and the adaptive prompt for the speaker's next turn.
5. **Notify** – lifecycle events go out on the :class:`EventBus`.

Failure policy
--------------
No exception escapes :meth:`FeedbackCoordinator.evaluate_statement`.
Each stage degrades to its canonical fallback; a failure outside the
stages produces :meth:`FeedbackResult.fallback` and a ``system_error``
event.  Only :meth:`FeedbackCoordinator.initialize` raises, when no
evaluator is registered.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import Counter, defaultdict
from enum import Enum
from typing import Any, Mapping, Sequence

from pydantic import ValidationError

from rtfe.aggregator import FeedbackAggregator
from rtfe.archive import EvaluationArchive
from rtfe.chain import EvaluatorChain
from rtfe.config import FeedbackConfiguration
from rtfe.evaluators import Evaluator, EvaluatorFactory
from rtfe.history import HistoryStore
from rtfe.observer import Event, EventBus, EventPriority, EventType, LoggingObserver
from rtfe.optimizer import GraphWeightOptimizer
from rtfe.schemas import (
    AdaptivePromptParams,
    DiscussionPhase,
    EvaluationContext,
    EvaluationRecord,
    FeedbackResult,
    HealthReport,
    HealthStatus,
    OptimizationResult,
    ParticipantInfo,
    QualityScores,
    SystemMetrics,
    WeightAdjustment,
    clamp_weight,
)

logger = logging.getLogger(__name__)

LATENCY_ALPHA = 0.1


class CoordinatorState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    EVALUATING = "evaluating"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class FeedbackCoordinator:
    """Facade over the evaluation → history → optimization → feedback loop.

    Parameters
    ----------
    config : FeedbackConfiguration, optional
        Engine configuration (defaults to :class:`FeedbackConfiguration`).
    evaluators : Sequence[Evaluator], optional
        Evaluators to register.  If ``None`` and *register_default_evaluators*
        is true, the built-in evaluators are created from the configured
        weights during :meth:`initialize`.
    register_default_evaluators : bool
        Create the built-in evaluators when none are given.
    history : HistoryStore, optional
        Pre-built history store (a fresh one is created otherwise).
    optimizer : GraphWeightOptimizer, optional
        Pre-built optimizer (a fresh one is created otherwise).
    archive : EvaluationArchive, optional
        External store; when given, every result is archived and
        :meth:`initialize` replays earlier evaluations into the history.
    enable_logging_observer : bool
        Attach a :class:`LoggingObserver` to the event bus (default ``False``).
    evaluator_timeout : float
        Per-evaluator time budget in seconds.
    """

    def __init__(
        self,
        config: FeedbackConfiguration | None = None,
        evaluators: Sequence[Evaluator] | None = None,
        register_default_evaluators: bool = True,
        history: HistoryStore | None = None,
        optimizer: GraphWeightOptimizer | None = None,
        archive: EvaluationArchive | None = None,
        enable_logging_observer: bool = False,
        evaluator_timeout: float = 5.0,
    ) -> None:
        self._config = config or FeedbackConfiguration()
        self._bus = EventBus()
        self._chain = EvaluatorChain(evaluators, evaluator_timeout=evaluator_timeout)
        self._register_defaults = register_default_evaluators and evaluators is None
        self._history = history or HistoryStore(window=self._config.adaptive_settings.history_window_size)
        self._optimizer = optimizer or GraphWeightOptimizer(
            strategy=self._config.optimization_strategy,
            learning_rate=self._config.adaptive_settings.learning_rate,
        )
        self._aggregator = FeedbackAggregator(self._history, self._config)
        self._archive = archive
        self._enable_logging_observer = enable_logging_observer

        self._state = CoordinatorState.UNINITIALIZED
        self._phase = DiscussionPhase.INITIAL
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._in_flight = 0
        self._active: set[str] = set()

        # Running statistics
        self._evaluation_count = 0
        self._error_count = 0
        self._fallback_count = 0
        self._avg_latency_ms = 0.0
        self._alerts: Counter[str] = Counter()
        self._last_optimization_at: float | None = None

    # ------------------------------------------------------------------ #
    #  Lifecycle
    # ------------------------------------------------------------------ #

    async def initialize(self) -> None:
        """Wire listeners and evaluators and run the start-up health check.

        Raises
        ------
        RuntimeError
            If no evaluator is registered.
        """
        if self._state in (CoordinatorState.READY, CoordinatorState.EVALUATING):
            logger.warning("FeedbackCoordinator already initialized")
            return
        if self._state is CoordinatorState.STOPPED:
            raise RuntimeError("FeedbackCoordinator has been shut down")

        self._state = CoordinatorState.INITIALIZING

        if self._register_defaults and not self._chain.evaluators:
            for evaluator in EvaluatorFactory.create_defaults(self._config.evaluator_weights):
                self._chain.add(evaluator)

        if not self._chain.evaluators:
            self._state = CoordinatorState.UNINITIALIZED
            self._bus.emit_sync(
                EventType.SYSTEM_ERROR,
                {"stage": "initialize", "error": "no evaluators registered"},
                source="coordinator",
                priority=EventPriority.CRITICAL,
            )
            raise RuntimeError(
                "No evaluators registered.  Either:\n"
                "  • Pass evaluators=[...] to FeedbackCoordinator\n"
                "  • Leave register_default_evaluators=True"
            )

        self._register_listeners()

        for warning in self._config.validation_warnings() + self._chain.health_check().warnings:
            logger.warning("Start-up check: %s", warning)

        if self._archive is not None:
            try:
                await self._archive.restore_into(self._history)
            except Exception:
                logger.warning("Could not restore archived history", exc_info=True)

        self._state = CoordinatorState.READY
        await self._bus.emit(
            EventType.SYSTEM_STARTED,
            {"evaluators": [e.name for e in self._chain.evaluators]},
            message="Feedback engine ready",
            source="coordinator",
        )
        logger.info("Feedback engine ready with %d evaluators", len(self._chain.evaluators))

    async def shutdown(self) -> None:
        if self._state is CoordinatorState.STOPPED:
            return
        self._state = CoordinatorState.SHUTTING_DOWN
        for pid in sorted(self._active):
            await self._bus.emit(
                EventType.AGENT_DEACTIVATED, {"participant_id": pid}, source="coordinator"
            )
        self._active.clear()
        self._bus.close()
        self._state = CoordinatorState.STOPPED
        logger.info(
            "Feedback engine stopped after %d evaluations (%d errors)",
            self._evaluation_count, self._error_count,
        )

    def _register_listeners(self) -> None:
        if self._enable_logging_observer:
            self._bus.subscribe_all(LoggingObserver())
        self._bus.on(EventType.EVALUATION_COMPLETED, self._check_quality_threshold, priority=10)
        self._bus.on(EventType.QUALITY_THRESHOLD_CROSSED, self._record_alert, priority=20)
        self._bus.on(EventType.OPTIMIZATION_COMPLETED, self._record_optimization, priority=5)
        self._bus.on(EventType.SYSTEM_ERROR, self._log_system_error, priority=100)

    # ------------------------------------------------------------------ #
    #  Default listeners
    # ------------------------------------------------------------------ #

    def _check_quality_threshold(self, event: Event) -> None:
        score = event.payload.get("overall_score")
        if score is None:
            return
        qt = self._config.quality_thresholds
        if score >= qt.overall_minimum:
            return
        severity = "critical" if score < qt.intervention_threshold else "warning"
        self._bus.emit_sync(
            EventType.QUALITY_THRESHOLD_CROSSED,
            {
                "participant_id": event.payload.get("participant_id"),
                "overall_score": score,
                "threshold": qt.overall_minimum,
                "severity": severity,
            },
            message=f"Quality {score:.2f} below {qt.overall_minimum:.2f}",
            source="coordinator",
            priority=EventPriority.CRITICAL if severity == "critical" else EventPriority.HIGH,
        )

    def _record_alert(self, event: Event) -> None:
        pid = event.payload.get("participant_id") or "unknown"
        self._alerts[pid] += 1
        logger.warning(
            "Quality alert (%s) for %s: %.2f",
            event.payload.get("severity"), pid, event.payload.get("overall_score", float("nan")),
        )

    def _record_optimization(self, event: Event) -> None:
        self._last_optimization_at = event.metadata.timestamp

    def _log_system_error(self, event: Event) -> None:
        logger.error("System error in %s: %s", event.payload.get("stage"), event.payload.get("error"))

    # ------------------------------------------------------------------ #
    #  Evaluation
    # ------------------------------------------------------------------ #

    async def evaluate_statement(self, ctx: EvaluationContext) -> FeedbackResult:
        """Run the full loop for one utterance.  Never raises."""
        t0 = time.perf_counter()
        if self._state not in (CoordinatorState.READY, CoordinatorState.EVALUATING):
            logger.error("evaluate_statement called while %s", self._state.value)
            self._error_count += 1
            self._bus.emit_sync(
                EventType.SYSTEM_ERROR,
                {"stage": "evaluate_statement", "error": f"state {self._state.value}"},
                source="coordinator",
            )
            return self._fallback(ctx, f"engine not ready ({self._state.value})", t0)

        self._in_flight += 1
        self._state = CoordinatorState.EVALUATING
        try:
            async with self._locks[ctx.participant_id]:
                result = await self._run_pipeline(ctx, t0)
        except Exception as exc:
            logger.exception("Evaluation pipeline failed for %s", ctx.participant_id)
            self._error_count += 1
            self._bus.emit_sync(
                EventType.SYSTEM_ERROR,
                {"stage": "evaluate_statement", "participant_id": ctx.participant_id, "error": str(exc)},
                source="coordinator",
                priority=EventPriority.CRITICAL,
            )
            result = self._fallback(ctx, str(exc), t0)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0 and self._state is CoordinatorState.EVALUATING:
                self._state = CoordinatorState.READY
        return result

    async def _run_pipeline(self, ctx: EvaluationContext, t0: float) -> FeedbackResult:
        pid = ctx.participant_id
        if pid not in self._active:
            self._active.add(pid)
            await self._bus.emit(
                EventType.AGENT_ACTIVATED,
                {"participant_id": pid, "phase": ctx.phase.value},
                source="coordinator",
                priority=EventPriority.LOW,
            )

        # Snapshot the speaker's history into the context the evaluators see.
        if not ctx.recent_scores and self._history.recent_scores(pid):
            ctx = EvaluationContext(
                utterance=ctx.utterance,
                topic=ctx.topic,
                participant_id=pid,
                phase=ctx.phase,
                turn_number=ctx.turn_number,
                current_weight=ctx.current_weight,
                recent_scores=self._history.recent_scores(pid),
                participant_weights=ctx.participant_weights or self._history.weights(),
            )

        scores = await self._chain.evaluate(ctx)

        self._history.record(
            pid,
            EvaluationRecord(
                utterance=ctx.utterance,
                scores=scores,
                turn_number=ctx.turn_number,
                topic=ctx.topic,
                phase=ctx.phase,
            ),
        )

        optimization = await self._optimize(scores, ctx)

        feedback = await self._aggregator.aggregate(scores, optimization, ctx)
        self._history.attach_feedback(pid, feedback)

        weight = self._history.get_weight(pid)
        adaptive_prompt = await self.generate_adaptive_prompt(
            AdaptivePromptParams(
                participant_id=pid, topic=ctx.topic, phase=ctx.phase, current_weight=weight
            )
        )

        recommendations = list(dict.fromkeys([*optimization.recommendations, *feedback.improvements]))
        elapsed = time.perf_counter() - t0
        result = FeedbackResult(
            participant_id=pid,
            scores=scores,
            feedback=feedback,
            optimization=optimization,
            adaptive_prompt=adaptive_prompt,
            next_guidance=feedback.analysis.next_turn_guidance,
            recommendations=recommendations,
            confidence=self._confidence(scores, optimization),
            quality_contribution=scores.overall_score * weight,
            execution_time=elapsed,
            is_fallback=scores.breakdown.degraded and not scores.breakdown.dimension_scores,
        )

        self._update_stats(elapsed)
        await self._bus.emit(
            EventType.FEEDBACK_GENERATED,
            {"participant_id": pid, "improvements": feedback.improvements},
            source="aggregator",
            priority=EventPriority.LOW,
        )
        await self._bus.emit(
            EventType.EVALUATION_COMPLETED,
            {
                "participant_id": pid,
                "overall_score": scores.overall_score,
                "degraded": scores.breakdown.degraded,
                "turn_number": ctx.turn_number,
                "execution_time": elapsed,
            },
            message=f"{pid} scored {scores.overall_score:.2f}",
            source="coordinator",
        )

        if self._archive is not None:
            try:
                await self._archive.save_evaluation(ctx, result)
            except Exception:
                logger.warning("Failed to archive evaluation for %s", pid, exc_info=True)

        return result

    async def _optimize(self, scores: QualityScores, ctx: EvaluationContext) -> OptimizationResult:
        if not self._config.enable_realtime_optimization:
            return OptimizationResult(
                recommendations=[],
                system_efficiency=self._optimizer.get_efficiency(),
            )

        participants = self._history.get_participant_info()
        await self._bus.emit(
            EventType.OPTIMIZATION_STARTED,
            {"participants": len(participants)},
            source="optimizer",
            priority=EventPriority.LOW,
        )
        optimization = await self._optimizer.optimize(scores, participants, phase=ctx.phase)

        # All weights land before the first await.
        changes: list[tuple[str, float, WeightAdjustment]] = []
        for pid, adj in optimization.weight_adjustments.items():
            previous = self._history.get_weight(pid)
            self._history.set_weight(pid, adj.adjusted_weight)
            if abs(adj.adjusted_weight - previous) > 0.05:
                changes.append((pid, previous, adj))

        for pid, previous, adj in changes:
            await self._bus.emit(
                EventType.WEIGHT_ADJUSTED,
                {"participant_id": pid, "from": previous, "to": adj.adjusted_weight, "reason": adj.reason},
                source="optimizer",
                priority=EventPriority.LOW,
            )

        await self._bus.emit(
            EventType.OPTIMIZATION_COMPLETED,
            {
                "efficiency": optimization.system_efficiency,
                "iterations": optimization.convergence.iterations,
                "converged": optimization.convergence.converged,
                "is_fallback": optimization.is_fallback,
            },
            source="optimizer",
        )
        return optimization

    @staticmethod
    def _confidence(scores: QualityScores, optimization: OptimizationResult) -> float:
        value = 0.8
        if scores.breakdown.degraded:
            value -= 0.2
        if optimization.is_fallback:
            value -= 0.1
        elif optimization.weight_adjustments:
            value = (value + max(a.confidence for a in optimization.weight_adjustments.values())) / 2
        return value

    def _fallback(self, ctx: EvaluationContext, reason: str, t0: float) -> FeedbackResult:
        self._fallback_count += 1
        return FeedbackResult.fallback(ctx, reason=reason, execution_time=time.perf_counter() - t0)

    def _update_stats(self, elapsed: float) -> None:
        self._evaluation_count += 1
        latency_ms = elapsed * 1000
        if self._evaluation_count == 1:
            self._avg_latency_ms = latency_ms
        else:
            self._avg_latency_ms = (1 - LATENCY_ALPHA) * self._avg_latency_ms + LATENCY_ALPHA * latency_ms

    async def generate_adaptive_prompt(self, params: AdaptivePromptParams) -> str:
        """Guidance text for a participant's next turn, from history and feedback."""
        return self._aggregator.generate_adaptive_prompt(params)

    # ------------------------------------------------------------------ #
    #  Configuration
    # ------------------------------------------------------------------ #

    async def update_configuration(self, update: Mapping[str, Any]) -> bool:
        """Deep-merge *update* into the configuration and propagate it.

        Returns ``False`` (configuration unchanged) if the update is invalid.
        """
        try:
            new_config = self._config.merged(update)
        except ValidationError as exc:
            logger.warning("Rejected configuration update: %s", exc.errors())
            await self._bus.emit(
                EventType.SYSTEM_ERROR,
                {"stage": "update_configuration", "error": str(exc)},
                source="coordinator",
                priority=EventPriority.HIGH,
            )
            return False

        changed = self._config.diff(new_config)
        self._config = new_config
        self._history.update_settings(new_config.adaptive_settings)
        self._chain.update_weights(new_config.evaluator_weights)
        self._optimizer.update_settings(
            strategy=new_config.optimization_strategy,
            learning_rate=new_config.adaptive_settings.learning_rate,
        )
        self._aggregator.update_configuration(new_config)

        await self._bus.emit(
            EventType.CONFIGURATION_UPDATED,
            {"changed": changed},
            source="coordinator",
        )
        return True

    def configure_evaluator(self, name: str, **settings: Any) -> bool:
        return self._chain.configure(name, **settings)

    # ------------------------------------------------------------------ #
    #  Introspection
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> FeedbackConfiguration:
        return self._config

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def event_bus(self) -> EventBus:
        """Expose the bus so callers can subscribe to engine events."""
        return self._bus

    @property
    def chain(self) -> EvaluatorChain:
        return self._chain

    @property
    def history(self) -> HistoryStore:
        return self._history

    @property
    def optimizer(self) -> GraphWeightOptimizer:
        return self._optimizer

    @property
    def is_evaluating(self) -> bool:
        return self._in_flight > 0

    @property
    def phase(self) -> DiscussionPhase:
        return self._phase

    def set_phase(self, phase: DiscussionPhase | str) -> None:
        self._phase = DiscussionPhase(phase)
        logger.info("Discussion phase: %s", self._phase.value)

    @property
    def active_participants(self) -> list[str]:
        return sorted(self._active)

    def get_participant_info(self) -> list[ParticipantInfo]:
        return self._history.get_participant_info()

    def get_statement_history(self, participant_id: str, limit: int = 10) -> list[EvaluationRecord]:
        return self._history.get_statement_history(participant_id, limit)

    def participant_weights(self) -> dict[str, float]:
        return {pid: clamp_weight(w) for pid, w in self._history.weights().items()}

    def health_check(self) -> dict[str, HealthReport]:
        bus_report = HealthReport(healthy=not self._bus.closed)
        if self._bus.closed:
            bus_report.issues.append("Event bus closed")
        stats = self._bus.statistics()
        if stats["dropped_events"]:
            bus_report.warnings.append(f"{stats['dropped_events']} events dropped")
        return {
            "evaluator_chain": self._chain.health_check(),
            "optimizer": self._optimizer.health_check(),
            "history": self._history.health_check(),
            "event_bus": bus_report,
        }

    def get_metrics(self) -> SystemMetrics:
        component_health = self.health_check()
        return SystemMetrics(
            evaluation_count=self._evaluation_count,
            average_quality=self._history.get_system_metrics().average_quality,
            optimization_efficiency=self._optimizer.get_efficiency(),
            participant_balance=self._participant_balance(),
            average_latency_ms=self._avg_latency_ms,
            error_count=self._error_count,
            alert_count=sum(self._alerts.values()),
            health=self._health_status(component_health),
            component_health=component_health,
            event_stats=self._bus.statistics(),
        )

    def _participant_balance(self) -> float:
        """Normalized entropy of participation counts (1.0 = perfectly even)."""
        counts = [i.participation_count for i in self._history.get_participant_info() if i.participation_count]
        if not counts:
            return 0.0
        if len(counts) == 1:
            return 1.0
        total = sum(counts)
        entropy = -sum((c / total) * math.log(c / total) for c in counts)
        return entropy / math.log(len(counts))

    def _health_status(self, component_health: dict[str, HealthReport]) -> HealthStatus:
        if any(not r.healthy for r in component_health.values()):
            return HealthStatus.CRITICAL
        total = self._evaluation_count + self._error_count
        error_rate = self._error_count / total if total else 0.0
        target_ms = self._config.performance_target.response_time_ms
        if error_rate > 0.1 or self._avg_latency_ms > target_ms:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY
