"""
Feedback Aggregator – Structured Feedback & Adaptive Prompts
============================================================
Turns raw quality scores, the optimizer's output and the learning history
into a :class:`DetailedFeedback` for the speaker, and builds the adaptive
prompt text a caller feeds into the next generation call.

Both public entry points catch their own failures: :meth:`aggregate`
returns :meth:`DetailedFeedback.fallback`, and
:meth:`generate_adaptive_prompt` returns a minimal generic prompt.
"""

from __future__ import annotations

import logging

from rtfe.config import FeedbackConfiguration
from rtfe.evaluators.base import contains_any, keyword_ratio, keywords_of
from rtfe.history import HistoryStore
from rtfe.participants import NEGATIVE_KEYWORDS, detect_traits, profile_for
from rtfe.schemas import (
    AdaptivePromptParams,
    AlignmentAnalysis,
    DetailedAnalysis,
    DetailedFeedback,
    DiscussionPhase,
    EvaluationContext,
    OptimizationResult,
    ParticipantStats,
    ProgressTracking,
    QualityScores,
    RecentFeedback,
    SevenDimensionEvaluation,
    Trend,
)

logger = logging.getLogger(__name__)

MAX_IMPROVEMENTS = 5
STRONG_SCORE = 0.8
WEAK_SCORE = 0.7
IMPROVE_BELOW = 0.75

_BANDS: tuple[tuple[float, str], ...] = (
    (0.9, "{pid} made an excellent contribution: well-argued and clearly in character."),
    (0.8, "{pid} made a good contribution with a clear point of view."),
    (0.7, "{pid} made a satisfactory contribution; there is room for more depth."),
    (0.6, "{pid}'s contribution needs improvement in focus and detail."),
    (0.0, "{pid}'s contribution fell well short; rework the argument and its support."),
)

_DIMENSION_TEXT: dict[str, tuple[str, str, str]] = {
    # dimension: (strength, weakness, improvement)
    "performance": (
        "Clear, well-sized contribution",
        "Contribution lacks substance or focus",
        "State the main point first and support it with one reason",
    ),
    "psychological": (
        "Reasoning style fits the participant's profile",
        "Reasoning style drifts from the participant's profile",
        "Lean on the participant's characteristic way of thinking",
    ),
    "content_quality": (
        "Well-structured content with supporting detail",
        "Content is thin or poorly structured",
        "Add a concrete example or piece of evidence",
    ),
    "participant_alignment": (
        "Strong alignment with expected traits",
        "Weak alignment with expected traits",
        "Show the traits expected of this participant more clearly",
    ),
}

_PHASE_INSTRUCTIONS: dict[DiscussionPhase, str] = {
    DiscussionPhase.INITIAL: "Open with your own perspective and the reasoning behind it.",
    DiscussionPhase.INTERACTION: "Respond to the points others have raised and build on them.",
    DiscussionPhase.SYNTHESIS: "Connect the strongest ideas so far into a coherent position.",
    DiscussionPhase.CONSENSUS: "Work toward a conclusion the whole group can accept.",
}

_SOCIAL_KEYWORDS = ("agree", "together", "consensus", "we ", "everyone", "perspective")


class FeedbackAggregator:
    """Builds structured feedback from scores, optimization and history.

    Parameters
    ----------
    history : HistoryStore
        Source of per-participant progress statistics.
    config : FeedbackConfiguration, optional
        Used for the quality thresholds that drive improvement hints.
    """

    def __init__(self, history: HistoryStore, config: FeedbackConfiguration | None = None) -> None:
        self._history = history
        self._config = config or FeedbackConfiguration()

    def update_configuration(self, config: FeedbackConfiguration) -> None:
        self._config = config

    # ------------------------------------------------------------------ #
    #  Aggregation
    # ------------------------------------------------------------------ #

    async def aggregate(
        self,
        scores: QualityScores,
        optimization: OptimizationResult,
        ctx: EvaluationContext,
    ) -> DetailedFeedback:
        try:
            return self._aggregate(scores, optimization, ctx)
        except Exception:
            logger.exception("Feedback aggregation failed for %s", ctx.participant_id)
            return DetailedFeedback.fallback()

    def _aggregate(
        self,
        scores: QualityScores,
        optimization: OptimizationResult,
        ctx: EvaluationContext,
    ) -> DetailedFeedback:
        stats = self._history.get_stats(ctx.participant_id)
        dims = scores.dimensions()

        strengths = [_DIMENSION_TEXT[d][0] for d, v in dims.items() if v >= STRONG_SCORE]
        weaknesses = [_DIMENSION_TEXT[d][1] for d, v in dims.items() if v < WEAK_SCORE]
        specific = [_DIMENSION_TEXT[d][2] for d, v in dims.items() if v < IMPROVE_BELOW]

        alignment = self.analyze_alignment(ctx)
        progress = self._progress(stats, scores, ctx)
        guidance = self._next_turn_guidance(dims, ctx)

        adjustment = optimization.weight_adjustments.get(ctx.participant_id)
        if adjustment is not None and adjustment.adjusted_weight < 0.8:
            specific.append("Contribute more actively; your perspective is under-represented")

        return DetailedFeedback(
            overall_score=scores.overall_score,
            feedback=self.score_feedback(scores.overall_score, ctx.participant_id),
            improvements=self._improvements(scores, alignment, weaknesses),
            analysis=DetailedAnalysis(
                strengths=strengths,
                weaknesses=weaknesses,
                specific_improvements=specific,
                next_turn_guidance=guidance,
                quality_trend=stats.trend,
            ),
            alignment=alignment,
            progress=progress,
            dimensions=self.seven_dimension_evaluation(ctx, scores),
        )

    @staticmethod
    def score_feedback(score: float, participant_id: str) -> str:
        for floor, template in _BANDS:
            if score >= floor:
                return template.format(pid=participant_id)
        return _BANDS[-1][1].format(pid=participant_id)

    @staticmethod
    def analyze_alignment(ctx: EvaluationContext) -> AlignmentAnalysis:
        """Compare expected trait keywords with the traits detected in the utterance."""
        profile = profile_for(ctx.participant_id)
        expected = list(profile.expected_traits)
        demonstrated = detect_traits(ctx.utterance)

        if not expected:
            score = 0.8
        else:
            matched = set(expected) & set(demonstrated)
            bonus = 0.1 * max(0, len(demonstrated) - len(expected))
            score = min(1.0, len(matched) / len(expected) + bonus)

        gaps = [t for t in expected if t not in demonstrated]
        return AlignmentAnalysis(
            score=score,
            expected=expected,
            demonstrated=demonstrated,
            gaps=gaps,
            recommended_focus=[f"Show more {t} thinking" for t in gaps][:2] or list(profile.strategies[:1]),
        )

    def _progress(
        self, stats: ParticipantStats, scores: QualityScores, ctx: EvaluationContext
    ) -> ProgressTracking:
        milestones: list[str] = []
        if stats.total_records > 1 and scores.overall_score >= stats.best:
            milestones.append("New personal best score")
        if stats.total_records in (10, 25, 50):
            milestones.append(f"{stats.total_records} evaluated contributions")
        if stats.trend is Trend.IMPROVING and stats.consistency >= 0.8:
            milestones.append("Steady improvement")

        focus = [d.replace("_", " ") for d in stats.weak_dimensions]
        if not focus:
            focus = list(profile_for(ctx.participant_id).strategies[:1])
        return ProgressTracking(
            trend=stats.trend,
            consistency=stats.consistency,
            recommended_focus=focus,
            milestones=milestones,
        )

    @staticmethod
    def _next_turn_guidance(dims: dict[str, float], ctx: EvaluationContext) -> str:
        lowest = min(dims, key=dims.get)
        profile = profile_for(ctx.participant_id)
        hint = _DIMENSION_TEXT[lowest][2]
        if lowest == "participant_alignment" and profile.strategies:
            hint = profile.strategies[0]
        return f"Next turn, focus on {lowest.replace('_', ' ')}: {hint}."

    def _improvements(
        self,
        scores: QualityScores,
        alignment: AlignmentAnalysis,
        weaknesses: list[str],
    ) -> list[str]:
        qt = self._config.quality_thresholds
        items: list[str] = []
        if scores.performance < qt.performance:
            items.append(_DIMENSION_TEXT["performance"][2])
        if scores.content_quality < qt.content_quality:
            items.append(_DIMENSION_TEXT["content_quality"][2])
        if alignment.score < qt.participant_alignment:
            items.extend(alignment.recommended_focus)
        items.extend(scores.breakdown.specific_improvements)
        items.extend(f"Address: {w.lower()}" for w in weaknesses)
        return list(dict.fromkeys(items))[:MAX_IMPROVEMENTS]

    @staticmethod
    def seven_dimension_evaluation(ctx: EvaluationContext, scores: QualityScores) -> SevenDimensionEvaluation:
        text = ctx.utterance
        topic_words = keywords_of(ctx.topic)
        n = len(text.strip())
        ev = SevenDimensionEvaluation(
            performance=scores.performance,
            psychological=scores.psychological,
            external_alignment=min(1.0, 0.6 + keyword_ratio(text, topic_words, neutral=0.5) * 0.4),
            internal_consistency=0.85 if n > 100 else 0.75 if n > 50 else 0.6,
            social_decision_making=0.7 + keyword_ratio(text, _SOCIAL_KEYWORDS, neutral=0.0) * 0.3,
            content_quality=scores.content_quality,
            ethics=0.4 if contains_any(text, NEGATIVE_KEYWORDS) else 0.9,
        )
        ev.overall = (
            ev.performance * 0.15 + ev.psychological * 0.15 + ev.external_alignment * 0.15
            + ev.internal_consistency * 0.15 + ev.social_decision_making * 0.1
            + ev.content_quality * 0.2 + ev.ethics * 0.1
        )
        return ev

    # ------------------------------------------------------------------ #
    #  Adaptive prompts
    # ------------------------------------------------------------------ #

    def generate_adaptive_prompt(self, params: AdaptivePromptParams) -> str:
        """Build guidance text for the participant's next turn."""
        try:
            return self._adaptive_prompt(params)
        except Exception:
            logger.exception("Adaptive prompt generation failed for %s", params.participant_id)
            return f"As {params.participant_id}, share your perspective on \"{params.topic}\"."

    def _adaptive_prompt(self, params: AdaptivePromptParams) -> str:
        recent: list[RecentFeedback] = (
            params.recent_feedback
            if params.recent_feedback is not None
            else self._history.get_recent_feedback(params.participant_id)
        )
        trend = params.progress_trend or self._history.get_stats(params.participant_id).trend

        lines = [
            f"You are {params.participant_id}, discussing \"{params.topic}\".",
            _PHASE_INSTRUCTIONS[params.phase],
        ]

        areas: list[str] = []
        for fb in recent:
            if fb.overall_score < 0.8:
                areas.extend(a for a in fb.improvement_areas if a not in areas)
        if areas:
            lines.append("Based on earlier feedback, pay attention to: " + "; ".join(areas[:2]) + ".")

        if trend is Trend.IMPROVING:
            lines.append("Your recent contributions are improving; keep the same approach.")
        elif trend is Trend.DECLINING:
            lines.append("Your recent contributions have slipped; return to concrete, focused points.")

        if params.current_weight > 1.2:
            lines.append("Your perspective carries extra weight right now: take the lead on this point.")
        elif params.current_weight < 0.8:
            lines.append("Build on what others have said and add one distinctive insight.")

        return "\n".join(lines)

    def next_step_guidance(self, participant_id: str) -> str:
        """Short guidance based on the participant's accumulated history."""
        stats = self._history.get_stats(participant_id)
        profile = profile_for(participant_id)
        if stats.total_records == 0:
            return f"{participant_id}: introduce your perspective clearly."
        if stats.weak_dimensions:
            weak = stats.weak_dimensions[0]
            return f"{participant_id}: {_DIMENSION_TEXT[weak][2]}."
        if stats.trend is Trend.DECLINING:
            return f"{participant_id}: revisit your strongest earlier arguments and sharpen them."
        return f"{participant_id}: {profile.strategies[0]}."
