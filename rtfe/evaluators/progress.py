"""
Progress Tracking Evaluator
===========================
Rates the speaker's trajectory from the snapshot of recent overall scores
carried by the context.  Without history it returns a neutral score with
low confidence.
"""

from __future__ import annotations

import numpy as np

from rtfe.evaluators.base import Evaluator, EvaluatorKind
from rtfe.evaluators.registry import register
from rtfe.schemas import EvaluationContext, EvaluationResult, clamp

NEUTRAL_SCORE = 0.75


@register(EvaluatorKind.PROGRESS_TRACKING)
class ProgressTrackingEvaluator(Evaluator):

    async def evaluate(self, ctx: EvaluationContext) -> EvaluationResult:
        scores = np.asarray(ctx.recent_scores[-10:], dtype=float)
        if scores.size == 0:
            return EvaluationResult(
                score=NEUTRAL_SCORE,
                confidence=0.3,
                breakdown={"consistency": 0.8, "momentum": 0.5},
                feedback="No history yet",
            )

        consistency = clamp(1.0 - float(np.std(scores)) * 2)
        slope = float(np.polyfit(np.arange(scores.size), scores, 1)[0]) if scores.size >= 2 else 0.0
        momentum = clamp(0.5 + slope * 5)
        score = clamp(float(scores.mean()) * 0.6 + consistency * 0.2 + momentum * 0.2)

        suggestions = []
        if momentum < 0.4:
            suggestions.append("Recent contributions are slipping; revisit earlier feedback")
        if consistency < 0.6:
            suggestions.append("Aim for a steadier level of detail across turns")

        return EvaluationResult(
            score=score,
            confidence=min(0.9, 0.4 + 0.05 * scores.size),
            breakdown={"consistency": consistency, "momentum": momentum},
            feedback=f"Progress score {score:.2f} over {scores.size} turns",
            suggestions=suggestions,
        )
