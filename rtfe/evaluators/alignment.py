"""
Participant Alignment Evaluator
===============================
Checks whether an utterance sounds like the participant who produced it:
the trait vocabulary of its temperament group plus, for four-letter type
ids, cues for each preference letter.
"""

from __future__ import annotations

from rtfe.evaluators.base import Evaluator, EvaluatorKind, contains_any, keyword_ratio
from rtfe.evaluators.registry import register
from rtfe.participants import TRAIT_KEYWORDS, profile_for
from rtfe.schemas import EvaluationContext, EvaluationResult

_LETTER_CUES: dict[str, tuple[str, ...]] = {
    "E": ("we ", "let's", "everyone", "together", "discuss"),
    "I": ("i think", "on reflection", "considering", "in my view", "carefully"),
    "N": ("future", "possibility", "pattern", "vision", "imagine"),
    "S": ("for example", "currently", "in practice", "experience", "specifically"),
    "T": ("logic", "because", "therefore", "efficient", "analysis"),
    "F": ("feel", "people", "values", "care", "harmony"),
    "J": ("plan", "decide", "schedule", "structure", "conclusion"),
    "P": ("flexible", "options", "adapt", "explore", "open"),
}


def characteristic_score(participant_id: str, text: str) -> float:
    """Share of the id's preference letters whose cues appear in *text*."""
    pid = participant_id.upper()
    letters = [c for c in pid if c in _LETTER_CUES]
    if len(pid) != 4 or len(letters) != 4:
        return 0.5
    hits = sum(1 for c in letters if contains_any(text, _LETTER_CUES[c]))
    return 0.3 + 0.7 * hits / len(letters)


@register(EvaluatorKind.PARTICIPANT_ALIGNMENT)
class ParticipantAlignmentEvaluator(Evaluator):
    """0.6 × trait vocabulary ratio + 0.4 × preference-letter cues."""

    async def evaluate(self, ctx: EvaluationContext) -> EvaluationResult:
        profile = profile_for(ctx.participant_id)
        vocab = [w for trait in profile.expected_traits for w in TRAIT_KEYWORDS[trait]]
        vocab_score = keyword_ratio(ctx.utterance, vocab)
        letters = characteristic_score(ctx.participant_id, ctx.utterance)
        score = vocab_score * 0.6 + letters * 0.4

        suggestions: list[str] = []
        if score < 0.7:
            suggestions.extend(profile.strategies[:1])

        return EvaluationResult(
            score=score,
            confidence=0.75 if profile.is_known else 0.4,
            breakdown={
                "participant_alignment": score,
                "psychological": letters,
                "trait_vocabulary": vocab_score,
            },
            feedback=f"Alignment with {profile.group} profile: {score:.2f}",
            suggestions=suggestions,
            metadata={"group": profile.group},
        )
