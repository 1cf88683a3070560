"""
RTFE Data Schemas
=================
Typed dataclasses that carry data between every stage of the
evaluation → history → optimization → feedback loop.

Each payload kind that has a failure path owns exactly one ``fallback()``
constructor, so every component degrades to the same well-formed value.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

#: Quality dimensions reported on every :class:`QualityScores`.
DIMENSIONS: tuple[str, ...] = (
    "performance",
    "psychological",
    "content_quality",
    "participant_alignment",
)

#: Score used on every dimension when nothing better is available.
FALLBACK_SCORE = 0.7

MIN_WEIGHT = 0.1
MAX_WEIGHT = 3.0


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp *value* into ``[low, high]``; non-finite values map to *low*."""
    if value is None or not math.isfinite(value):
        return low
    return max(low, min(high, float(value)))


def clamp_weight(value: float) -> float:
    """Clamp a participant weight into the legal ``[0.1, 3.0]`` range."""
    if value is None or not math.isfinite(value):
        return 1.0
    return max(MIN_WEIGHT, min(MAX_WEIGHT, float(value)))


class DiscussionPhase(Enum):
    """Phase of the discussion the utterance was produced in."""

    INITIAL = "initial"
    INTERACTION = "interaction"
    SYNTHESIS = "synthesis"
    CONSENSUS = "consensus"


class Trend(Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


# ──────────────────────────────────────────────────────────────────────
#  Evaluation
# ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EvaluationContext:
    """Everything an evaluator may look at for one utterance.

    Attributes:
        utterance:          The generated text being evaluated.
        topic:              Discussion topic.
        participant_id:     Id of the speaking participant.
        phase:              Current :class:`DiscussionPhase` (its string value is accepted).
        turn_number:        Monotonic turn counter supplied by the caller.
        current_weight:     Speaker weight at the time of the utterance.
        recent_scores:      Snapshot of the speaker's recent overall scores.
        participant_weights: Snapshot of every participant's current weight.
    """

    utterance: str
    topic: str
    participant_id: str
    phase: DiscussionPhase = DiscussionPhase.INITIAL
    turn_number: int = 0
    current_weight: float = 1.0
    recent_scores: tuple[float, ...] = ()
    participant_weights: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "phase", DiscussionPhase(self.phase))
        object.__setattr__(self, "recent_scores", tuple(self.recent_scores))
        object.__setattr__(
            self,
            "participant_weights",
            MappingProxyType(dict(self.participant_weights)),
        )


@dataclass
class EvaluationResult:
    """Output of a single evaluator for a single utterance."""

    score: float
    confidence: float = 0.8
    breakdown: dict[str, float] = field(default_factory=dict)
    feedback: str = ""
    suggestions: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class QualityBreakdown:
    """Diagnostic detail attached to a :class:`QualityScores`.

    Attributes:
        strengths:             Human-readable strengths found by evaluators.
        weaknesses:            Human-readable weaknesses.
        specific_improvements: Suggestions collected from evaluators.
        dimension_scores:      Evaluator name → that evaluator's overall score.
        evaluator_weights:     Evaluator name → normalized weight actually used.
        errors:                Evaluator name → failure message.
        degraded:              ``True`` when the scores are partly or wholly
                               a fallback rather than real evaluator output.
    """

    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    specific_improvements: list[str] = field(default_factory=list)
    dimension_scores: dict[str, float] = field(default_factory=dict)
    evaluator_weights: dict[str, float] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    degraded: bool = False


@dataclass
class QualityScores:
    """Merged score vector for one utterance. Every value lies in ``[0, 1]``."""

    performance: float
    psychological: float
    content_quality: float
    participant_alignment: float
    overall_score: float
    breakdown: QualityBreakdown = field(default_factory=QualityBreakdown)

    def __post_init__(self) -> None:
        for name in (*DIMENSIONS, "overall_score"):
            setattr(self, name, clamp(getattr(self, name)))

    def dimensions(self) -> dict[str, float]:
        """Return a mapping of dimension name → score."""
        return {name: getattr(self, name) for name in DIMENSIONS}

    @classmethod
    def fallback(cls, reason: str = "no evaluator produced a score") -> QualityScores:
        return cls(
            performance=FALLBACK_SCORE,
            psychological=FALLBACK_SCORE,
            content_quality=FALLBACK_SCORE,
            participant_alignment=FALLBACK_SCORE,
            overall_score=FALLBACK_SCORE,
            breakdown=QualityBreakdown(
                weaknesses=[f"Evaluation degraded: {reason}"],
                errors={"chain": reason},
                degraded=True,
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.dimensions(),
            "overall_score": self.overall_score,
            "degraded": self.breakdown.degraded,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> QualityScores:
        return cls(
            performance=data.get("performance", FALLBACK_SCORE),
            psychological=data.get("psychological", FALLBACK_SCORE),
            content_quality=data.get("content_quality", FALLBACK_SCORE),
            participant_alignment=data.get("participant_alignment", FALLBACK_SCORE),
            overall_score=data.get("overall_score", FALLBACK_SCORE),
            breakdown=QualityBreakdown(degraded=bool(data.get("degraded", False))),
        )


# ──────────────────────────────────────────────────────────────────────
#  Optimization
# ──────────────────────────────────────────────────────────────────────

@dataclass
class WeightAdjustment:
    """Proposed new weight for one participant.

    ``adjusted_weight`` is clamped to ``[0.1, 3.0]`` and ``confidence`` to
    ``[0, 1]`` whenever an instance is built.
    """

    current_weight: float
    adjusted_weight: float
    reason: str = ""
    cognitive_factor: float = 1.0
    participation_factor: float = 1.0
    quality_factor: float = 1.0
    graph_position_factor: float = 1.0
    confidence: float = 0.5

    def __post_init__(self) -> None:
        self.current_weight = clamp_weight(self.current_weight)
        self.adjusted_weight = clamp_weight(self.adjusted_weight)
        self.confidence = clamp(self.confidence)


@dataclass
class GraphOptimization:
    """Snapshot of the latent graph after one optimization pass."""

    description: str
    efficiency: float
    cohesion: float
    adaptation_speed: float
    edge_count: int = 0
    cluster_sizes: dict[int, int] = field(default_factory=dict)


@dataclass
class ConvergenceInfo:
    iterations: int = 0
    final_error: float = 0.0
    converged: bool = False
    trace: list[float] = field(default_factory=list)


@dataclass
class OptimizationResult:
    """Output of :meth:`GraphWeightOptimizer.optimize`."""

    recommendations: list[str] = field(default_factory=list)
    weight_adjustments: dict[str, WeightAdjustment] = field(default_factory=dict)
    graph_optimizations: list[GraphOptimization] = field(default_factory=list)
    quality_improvement: float = 0.0
    system_efficiency: float = 0.0
    convergence: ConvergenceInfo = field(default_factory=ConvergenceInfo)
    execution_time: float = 0.0
    is_fallback: bool = False

    @classmethod
    def fallback(cls, execution_time: float = 0.0) -> OptimizationResult:
        return cls(
            recommendations=["Baseline optimisation applied after an optimizer failure"],
            quality_improvement=0.02,
            system_efficiency=0.7,
            convergence=ConvergenceInfo(iterations=0, final_error=0.1, converged=False),
            execution_time=execution_time,
            is_fallback=True,
        )


@dataclass
class LatentGraphStructure:
    """Read-only copy of the optimizer's latent interaction graph."""

    embeddings: dict[str, list[float]] = field(default_factory=dict)
    edges: dict[tuple[str, str], float] = field(default_factory=dict)
    clusters: dict[str, int] = field(default_factory=dict)


# ──────────────────────────────────────────────────────────────────────
#  History
# ──────────────────────────────────────────────────────────────────────

@dataclass
class EvaluationRecord:
    """One entry in a participant's learning history."""

    utterance: str
    scores: QualityScores
    turn_number: int = 0
    topic: str = ""
    phase: DiscussionPhase = DiscussionPhase.INITIAL
    feedback: DetailedFeedback | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ParticipantStats:
    """Derived statistics over one participant's history."""

    participant_id: str
    total_records: int = 0
    average: float = 0.0
    best: float = 0.0
    worst: float = 0.0
    recent_average: float = 0.0
    trend: Trend = Trend.STABLE
    consistency: float = 0.8
    improvement_rate: float = 0.0
    learning_progress: float = 0.0
    strong_dimensions: list[str] = field(default_factory=list)
    weak_dimensions: list[str] = field(default_factory=list)
    participation_frequency: float = 0.0


@dataclass
class ParticipantInfo:
    participant_id: str
    current_weight: float = 1.0
    participation_count: int = 0
    average_quality: float = 0.0
    consistency: float = 0.8
    trend: Trend = Trend.STABLE
    last_activity: float | None = None


@dataclass
class RecentFeedback:
    timestamp: float
    overall_score: float
    improvement_areas: list[str] = field(default_factory=list)


@dataclass
class SystemHistoryMetrics:
    total_evaluations: int = 0
    average_quality: float = 0.8
    quality_distribution: dict[str, int] = field(default_factory=dict)
    quality_stability: float = 1.0


# ──────────────────────────────────────────────────────────────────────
#  Feedback
# ──────────────────────────────────────────────────────────────────────

@dataclass
class AlignmentAnalysis:
    """Expected vs. demonstrated participant traits."""

    score: float = FALLBACK_SCORE
    expected: list[str] = field(default_factory=list)
    demonstrated: list[str] = field(default_factory=list)
    gaps: list[str] = field(default_factory=list)
    recommended_focus: list[str] = field(default_factory=list)


@dataclass
class ProgressTracking:
    trend: Trend = Trend.STABLE
    consistency: float = 0.8
    recommended_focus: list[str] = field(default_factory=list)
    milestones: list[str] = field(default_factory=list)


@dataclass
class DetailedAnalysis:
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    specific_improvements: list[str] = field(default_factory=list)
    next_turn_guidance: str = ""
    quality_trend: Trend = Trend.STABLE


@dataclass
class SevenDimensionEvaluation:
    performance: float = FALLBACK_SCORE
    psychological: float = FALLBACK_SCORE
    external_alignment: float = FALLBACK_SCORE
    internal_consistency: float = FALLBACK_SCORE
    social_decision_making: float = FALLBACK_SCORE
    content_quality: float = FALLBACK_SCORE
    ethics: float = FALLBACK_SCORE
    overall: float = FALLBACK_SCORE


@dataclass
class DetailedFeedback:
    """Structured feedback produced by :class:`FeedbackAggregator`."""

    overall_score: float
    feedback: str
    improvements: list[str] = field(default_factory=list)
    analysis: DetailedAnalysis = field(default_factory=DetailedAnalysis)
    alignment: AlignmentAnalysis = field(default_factory=AlignmentAnalysis)
    progress: ProgressTracking = field(default_factory=ProgressTracking)
    dimensions: SevenDimensionEvaluation = field(default_factory=SevenDimensionEvaluation)
    is_fallback: bool = False

    @classmethod
    def fallback(cls) -> DetailedFeedback:
        return cls(
            overall_score=FALLBACK_SCORE,
            feedback="Evaluation completed with limited detail.",
            improvements=["Keep contributing to the discussion"],
            analysis=DetailedAnalysis(
                strengths=["Participated in the discussion"],
                weaknesses=["Detailed analysis unavailable"],
                specific_improvements=["Provide more concrete examples"],
                next_turn_guidance="Continue sharing your perspective on the topic.",
            ),
            is_fallback=True,
        )


@dataclass
class AdaptivePromptParams:
    participant_id: str
    topic: str
    phase: DiscussionPhase = DiscussionPhase.INITIAL
    current_weight: float = 1.0
    recent_feedback: list[RecentFeedback] | None = None
    progress_trend: Trend | None = None

    def __post_init__(self) -> None:
        self.phase = DiscussionPhase(self.phase)


@dataclass
class FeedbackResult:
    """Response of :meth:`FeedbackCoordinator.evaluate_statement`."""

    participant_id: str
    scores: QualityScores
    feedback: DetailedFeedback
    optimization: OptimizationResult
    adaptive_prompt: str = ""
    next_guidance: str = ""
    recommendations: list[str] = field(default_factory=list)
    confidence: float = 0.5
    quality_contribution: float = 0.0
    timestamp: float = field(default_factory=time.time)
    execution_time: float = 0.0
    is_fallback: bool = False

    def __post_init__(self) -> None:
        self.quality_contribution = max(0.0, clamp(self.quality_contribution, 0.0, MAX_WEIGHT))
        self.confidence = clamp(self.confidence)

    @classmethod
    def fallback(
        cls,
        ctx: EvaluationContext,
        reason: str = "evaluation pipeline failed",
        execution_time: float = 0.0,
    ) -> FeedbackResult:
        return cls(
            participant_id=ctx.participant_id,
            scores=QualityScores.fallback(reason),
            feedback=DetailedFeedback.fallback(),
            optimization=OptimizationResult.fallback(),
            adaptive_prompt=(
                f"As {ctx.participant_id}, share your perspective on \"{ctx.topic}\"."
            ),
            next_guidance="Continue the discussion from your own point of view.",
            recommendations=["Evaluation system fallback was used"],
            confidence=0.3,
            quality_contribution=FALLBACK_SCORE * clamp_weight(ctx.current_weight),
            execution_time=execution_time,
            is_fallback=True,
        )


# ──────────────────────────────────────────────────────────────────────
#  Observability
# ──────────────────────────────────────────────────────────────────────

class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class HealthReport:
    healthy: bool = True
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class SystemMetrics:
    evaluation_count: int = 0
    average_quality: float = 0.0
    optimization_efficiency: float = 0.0
    participant_balance: float = 0.0
    average_latency_ms: float = 0.0
    error_count: int = 0
    alert_count: int = 0
    health: HealthStatus = HealthStatus.HEALTHY
    component_health: dict[str, HealthReport] = field(default_factory=dict)
    event_stats: dict[str, Any] = field(default_factory=dict)
