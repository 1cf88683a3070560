"""
Shared fixtures for the RTFE test suite.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any

import pytest

from rtfe.evaluators import Evaluator, EvaluatorKind
from rtfe.history import HistoryStore
from rtfe.observer import EventBus
from rtfe.schemas import (
    DiscussionPhase,
    EvaluationContext,
    EvaluationRecord,
    EvaluationResult,
    QualityScores,
)


# ---------------------------------------------------------------------------
# Mock evaluators – deterministic, no text heuristics
# ---------------------------------------------------------------------------

class StaticEvaluator(Evaluator):
    """Returns a fixed score (and optional breakdown) after an optional delay."""

    def __init__(
        self,
        score: float = 0.8,
        breakdown: dict[str, float] | None = None,
        name: str = "static",
        weight: float = 1.0,
        kind: EvaluatorKind = EvaluatorKind.CUSTOM,
        latency: float = 0.0,
    ) -> None:
        self.kind = kind
        super().__init__(weight=weight, name=name)
        self._score = score
        self._breakdown = dict(breakdown or {})
        self._latency = latency
        self.call_count = 0

    async def evaluate(self, ctx: EvaluationContext) -> EvaluationResult:
        self.call_count += 1
        if self._latency:
            await asyncio.sleep(self._latency)
        return EvaluationResult(score=self._score, breakdown=dict(self._breakdown))


class FailingEvaluator(Evaluator):
    """Always raises."""

    def __init__(self, name: str = "failing", weight: float = 1.0) -> None:
        super().__init__(weight=weight, name=name)
        self.call_count = 0

    async def evaluate(self, ctx: EvaluationContext) -> EvaluationResult:
        self.call_count += 1
        raise RuntimeError("evaluator exploded")


class NaNEvaluator(Evaluator):
    async def evaluate(self, ctx: EvaluationContext) -> EvaluationResult:
        return EvaluationResult(score=float("nan"))


class MalformedEvaluator(Evaluator):
    """Returns whatever object it was given instead of a well-formed result."""

    def __init__(self, payload: Any, name: str = "malformed", weight: float = 1.0) -> None:
        super().__init__(weight=weight, name=name)
        self._payload = payload

    async def evaluate(self, ctx: EvaluationContext) -> EvaluationResult:
        return self._payload


class ConcurrencyProbe(Evaluator):
    """Tracks how many evaluations overlap, overall and per participant."""

    def __init__(self, latency: float = 0.02, name: str = "probe") -> None:
        super().__init__(weight=1.0, name=name)
        self._latency = latency
        self.active = 0
        self.max_active = 0
        self.per_participant: dict[str, int] = defaultdict(int)
        self.max_per_participant: dict[str, int] = defaultdict(int)

    async def evaluate(self, ctx: EvaluationContext) -> EvaluationResult:
        pid = ctx.participant_id
        self.active += 1
        self.per_participant[pid] += 1
        self.max_active = max(self.max_active, self.active)
        self.max_per_participant[pid] = max(self.max_per_participant[pid], self.per_participant[pid])
        try:
            await asyncio.sleep(self._latency)
        finally:
            self.active -= 1
            self.per_participant[pid] -= 1
        return EvaluationResult(score=0.8)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_context(
    participant_id: str = "INTJ",
    utterance: str = (
        "Our long-term strategy should follow the evidence. "
        "For example, the pilot data shows a clear benefit."
    ),
    topic: str = "remote work policy",
    phase: DiscussionPhase = DiscussionPhase.INITIAL,
    **kwargs: Any,
) -> EvaluationContext:
    return EvaluationContext(
        utterance=utterance,
        topic=topic,
        participant_id=participant_id,
        phase=phase,
        **kwargs,
    )


def make_scores(overall: float = 0.75, **dims: float) -> QualityScores:
    values = {
        "performance": overall,
        "psychological": overall,
        "content_quality": overall,
        "participant_alignment": overall,
    }
    values.update(dims)
    return QualityScores(overall_score=overall, **values)


def make_record(overall: float = 0.75, **dims: float) -> EvaluationRecord:
    return EvaluationRecord(utterance="text", scores=make_scores(overall, **dims))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def history_store() -> HistoryStore:
    return HistoryStore()


@pytest.fixture
def sample_context() -> EvaluationContext:
    return make_context()


@pytest.fixture
def roster() -> list[str]:
    """Four participants, one from each temperament group."""
    return ["INTJ", "ENFP", "ISTJ", "ESTP"]
