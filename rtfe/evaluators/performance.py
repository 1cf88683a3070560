"""
Performance Evaluator
=====================
Scores how well an utterance works as a discussion contribution: length,
relevance to the topic and basic structure.
"""

from __future__ import annotations

from rtfe.evaluators.base import (
    Evaluator,
    EvaluatorKind,
    keyword_ratio,
    keywords_of,
    length_score,
    structure_score,
)
from rtfe.evaluators.registry import register
from rtfe.schemas import EvaluationContext, EvaluationResult


@register(EvaluatorKind.PERFORMANCE)
class PerformanceEvaluator(Evaluator):
    """Weighted mix of length (40%), topic relevance (40%) and structure (20%)."""

    async def evaluate(self, ctx: EvaluationContext) -> EvaluationResult:
        basic = length_score(ctx.utterance)
        relevance = keyword_ratio(ctx.utterance, keywords_of(ctx.topic))
        structure = structure_score(ctx.utterance)
        score = basic * 0.4 + relevance * 0.4 + structure * 0.2

        suggestions: list[str] = []
        if relevance < 0.5:
            suggestions.append("Refer more directly to the discussion topic")
        if basic < 0.7:
            suggestions.append("Develop the point with a little more detail")
        if structure < 0.7:
            suggestions.append("Break the argument into clear sentences")

        return EvaluationResult(
            score=score,
            confidence=0.8,
            breakdown={
                "performance": score,
                "content_quality": (basic + structure) / 2,
                "relevance": relevance,
                "structure": structure,
            },
            feedback=f"Performance score {score:.2f}",
            suggestions=suggestions,
        )
