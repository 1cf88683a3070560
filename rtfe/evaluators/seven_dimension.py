"""
Seven-Dimension Evaluator
=========================
Scores an utterance on seven fixed axes and combines them with fixed
weights: performance, psychological realism, external alignment (topic),
internal consistency, social decision-making, content quality and ethics.
"""

from __future__ import annotations

from rtfe.evaluators.base import (
    Evaluator,
    EvaluatorKind,
    contains_any,
    keyword_ratio,
    keywords_of,
    length_score,
    structure_score,
)
from rtfe.evaluators.registry import register
from rtfe.participants import NEGATIVE_KEYWORDS
from rtfe.schemas import EvaluationContext, EvaluationResult

DIMENSION_WEIGHTS: dict[str, float] = {
    "performance": 0.15,
    "psychological": 0.15,
    "external_alignment": 0.15,
    "internal_consistency": 0.15,
    "social_decision_making": 0.10,
    "content_quality": 0.20,
    "ethics": 0.10,
}

SOCIAL_KEYWORDS = ("agree", "together", "consensus", "everyone", "cooperate", "decide")
DETAIL_MARKERS = ("for example", "because", "such as", "specifically", "data", "evidence")


@register(EvaluatorKind.SEVEN_DIMENSION)
class SevenDimensionEvaluator(Evaluator):

    async def evaluate(self, ctx: EvaluationContext) -> EvaluationResult:
        text = ctx.utterance
        basic = length_score(text)
        structure = structure_score(text)
        detail = 0.1 if contains_any(text, DETAIL_MARKERS) else 0.0

        dims = {
            "performance": basic,
            "psychological": basic * 0.8 + 0.2,
            "external_alignment": keyword_ratio(text, keywords_of(ctx.topic)),
            "internal_consistency": 0.8 if len(text.strip()) > 20 else 0.5,
            "social_decision_making": 0.5 + keyword_ratio(text, SOCIAL_KEYWORDS, neutral=0.0) * 0.5,
            "content_quality": min(1.0, (basic + structure) / 2 + detail),
            "ethics": 0.3 if contains_any(text, NEGATIVE_KEYWORDS) else 0.9,
        }
        score = sum(dims[k] * w for k, w in DIMENSION_WEIGHTS.items())

        suggestions = [
            f"Improve {name.replace('_', ' ')}"
            for name, value in sorted(dims.items(), key=lambda kv: kv[1])
            if value < 0.6
        ][:3]

        return EvaluationResult(
            score=score,
            confidence=0.85,
            breakdown=dims,
            feedback=f"Seven-dimension score {score:.2f}",
            suggestions=suggestions,
        )
