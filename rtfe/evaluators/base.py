"""
Evaluator – Strategy Interface (Abstract Base)
===============================================
Every quality evaluator implements this interface so the chain can treat
them interchangeably.  Evaluators are stateless per call: everything they
may look at arrives in the immutable :class:`EvaluationContext`.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Iterable

from rtfe.schemas import EvaluationContext, EvaluationResult


class EvaluatorKind(Enum):
    SEVEN_DIMENSION = "seven-dimension"
    PERFORMANCE = "performance"
    PARTICIPANT_ALIGNMENT = "participant-alignment"
    PROGRESS_TRACKING = "progress-tracking"
    CUSTOM = "custom"


_WORD_RE = re.compile(r"[\w'-]+", re.UNICODE)
_SENTENCE_RE = re.compile(r"[.!?。！？]+")


class Evaluator(ABC):
    """Abstract async utterance scorer.

    Subclasses implement :meth:`evaluate`.  The chain reads ``name``,
    ``weight`` and ``enabled`` between calls and never mutates an evaluator
    while it is running.

    Attributes
    ----------
    kind : EvaluatorKind
        Set by the ``@register`` decorator for built-in evaluators.
    name : str
        Key used by the chain; defaults to the kind's value.
    weight : float
        Relative contribution to the overall score.
    enabled : bool
        Disabled evaluators are skipped by the chain.
    """

    kind: EvaluatorKind = EvaluatorKind.CUSTOM

    def __init__(
        self,
        weight: float = 1.0,
        enabled: bool = True,
        name: str | None = None,
        thresholds: dict[str, float] | None = None,
    ) -> None:
        self.name = name or self.kind.value
        self.weight = max(0.0, float(weight))
        self.enabled = enabled
        self.thresholds: dict[str, float] = dict(thresholds or {})

    @abstractmethod
    async def evaluate(self, ctx: EvaluationContext) -> EvaluationResult:
        """Score one utterance."""
        ...

    def configure(
        self,
        weight: float | None = None,
        enabled: bool | None = None,
        thresholds: dict[str, float] | None = None,
    ) -> None:
        if weight is not None:
            self.weight = max(0.0, float(weight))
        if enabled is not None:
            self.enabled = enabled
        if thresholds:
            self.thresholds.update(thresholds)

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "weight": self.weight,
            "enabled": self.enabled,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} weight={self.weight}>"


# ------------------------------------------------------------------ #
#  Shared text heuristics
# ------------------------------------------------------------------ #

def length_score(text: str) -> float:
    """Score an utterance by length alone (0.1 for empty, at most 0.95)."""
    stripped = text.strip()
    if not stripped:
        return 0.1
    n = len(stripped)
    if 50 <= n <= 300:
        score = 0.9
    elif 30 <= n <= 500:
        score = 0.7
    else:
        score = 0.5
    return min(0.95, score)


def keywords_of(text: str, min_length: int = 3) -> list[str]:
    return [w.lower() for w in _WORD_RE.findall(text) if len(w) >= min_length]


def keyword_ratio(text: str, keywords: Iterable[str], neutral: float = 0.5) -> float:
    """Fraction of *keywords* present in *text*; half of them counts as full.

    Returns *neutral* when there are no keywords to look for.
    """
    words = list(dict.fromkeys(k.lower() for k in keywords if k))
    if not words:
        return neutral
    lowered = text.lower()
    matches = sum(1 for w in words if w in lowered)
    return min(1.0, matches / max(1.0, len(words) * 0.5))


def structure_score(text: str) -> float:
    score = 0.5
    if re.search(r"[.!?,;:。、！？]", text):
        score += 0.2
    if "\n" in text.strip():
        score += 0.1
    sentences = [s for s in _SENTENCE_RE.split(text) if s.strip()]
    if sentences:
        avg = sum(len(s) for s in sentences) / len(sentences)
        if avg < 100:
            score += 0.2
    return min(1.0, score)


def contains_any(text: str, needles: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(n in lowered for n in needles)
