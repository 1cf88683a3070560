"""
Tests for the evaluation archive (SQLite persistence and history replay)
and for concurrent evaluation through the coordinator.

Run with:  pytest tests/test_features.py -v
"""
from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path

import pytest

from rtfe.archive import EvaluationArchive
from rtfe.coordinator import CoordinatorState, FeedbackCoordinator
from rtfe.history import HistoryStore
from rtfe.observer import EventType
from rtfe.schemas import (
    DetailedFeedback,
    DiscussionPhase,
    FeedbackResult,
    OptimizationResult,
    WeightAdjustment,
)

from tests.conftest import ConcurrencyProbe, StaticEvaluator, make_context, make_scores


def _result(
    participant_id: str,
    overall: float,
    timestamp: float,
    adjusted: float | None = None,
    is_fallback: bool = False,
) -> FeedbackResult:
    adjustments = {}
    if adjusted is not None:
        adjustments[participant_id] = WeightAdjustment(
            current_weight=1.0, adjusted_weight=adjusted, reason="balanced", confidence=0.7
        )
    return FeedbackResult(
        participant_id=participant_id,
        scores=make_scores(overall),
        feedback=DetailedFeedback(overall_score=overall, feedback="ok", improvements=["Be concrete"]),
        optimization=OptimizationResult(weight_adjustments=adjustments),
        next_guidance="Next turn, focus on performance.",
        timestamp=timestamp,
        is_fallback=is_fallback,
    )


# =====================================================================
# Evaluation archive
# =====================================================================


class TestEvaluationArchive:
    @pytest.fixture
    def archive(self):
        """Create an archive backed by a temp file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield EvaluationArchive(db_path=Path(tmpdir) / "test_archive.db")

    @pytest.mark.asyncio
    async def test_save_and_list(self, archive):
        ctx = make_context(turn_number=3)
        eval_id = await archive.save_evaluation(ctx, _result("INTJ", 0.82, 1.0))
        assert len(eval_id) == 12

        rows = await archive.list_evaluations()
        assert len(rows) == 1
        assert rows[0]["id"] == eval_id
        assert rows[0]["participant_id"] == "INTJ"
        assert rows[0]["turn_number"] == 3
        assert rows[0]["overall_score"] == pytest.approx(0.82)

    @pytest.mark.asyncio
    async def test_get_evaluation_detail(self, archive):
        eval_id = await archive.save_evaluation(make_context(), _result("INTJ", 0.8, 1.0, adjusted=1.2))
        detail = await archive.get_evaluation(eval_id)

        assert detail is not None
        assert detail["is_fallback"] is False
        assert detail["scores"]["overall_score"] == pytest.approx(0.8)
        assert detail["feedback"]["improvements"] == ["Be concrete"]
        assert len(detail["weight_adjustments"]) == 1
        assert detail["weight_adjustments"][0]["adjusted_weight"] == pytest.approx(1.2)

    @pytest.mark.asyncio
    async def test_get_missing(self, archive):
        assert await archive.get_evaluation("nonexistent") is None

    @pytest.mark.asyncio
    async def test_newest_first_and_filter(self, archive):
        await archive.save_evaluation(make_context(participant_id="INTJ"), _result("INTJ", 0.6, 1.0))
        await archive.save_evaluation(make_context(participant_id="ENFP"), _result("ENFP", 0.7, 2.0))
        await archive.save_evaluation(make_context(participant_id="INTJ"), _result("INTJ", 0.8, 3.0))

        rows = await archive.list_evaluations()
        assert [r["overall_score"] for r in rows] == pytest.approx([0.8, 0.7, 0.6])
        only_intj = await archive.list_evaluations(participant_id="INTJ")
        assert len(only_intj) == 2
        page = await archive.list_evaluations(limit=1, offset=1)
        assert page[0]["participant_id"] == "ENFP"

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, archive):
        eval_id = await archive.save_evaluation(make_context(), _result("INTJ", 0.8, 1.0, adjusted=1.1))
        await archive.save_evaluation(make_context(), _result("INTJ", 0.7, 2.0))

        assert await archive.delete_evaluation(eval_id) is True
        assert await archive.delete_evaluation(eval_id) is False
        assert await archive.count_evaluations() == 1
        assert await archive.clear_all() == 1
        assert await archive.count_evaluations() == 0

    @pytest.mark.asyncio
    async def test_restore_into_history(self, archive):
        ctx = make_context(phase=DiscussionPhase.SYNTHESIS)
        await archive.save_evaluation(ctx, _result("INTJ", 0.6, 1.0, adjusted=1.1))
        await archive.save_evaluation(ctx, _result("INTJ", 0.8, 2.0, adjusted=1.3))
        await archive.save_evaluation(
            make_context(participant_id="ENFP"), _result("ENFP", 0.7, 3.0, is_fallback=True)
        )

        history = HistoryStore()
        replayed = await archive.restore_into(history)

        assert replayed == 2
        assert [r.scores.overall_score for r in history.records("INTJ")] == pytest.approx([0.6, 0.8])
        assert history.records("INTJ")[0].phase is DiscussionPhase.SYNTHESIS
        assert history.records("ENFP") == []
        assert history.get_weight("INTJ") == pytest.approx(1.3)

    @pytest.mark.asyncio
    async def test_restore_respects_limit(self, archive):
        for i in range(5):
            await archive.save_evaluation(make_context(), _result("INTJ", 0.5 + i * 0.1, float(i)))
        history = HistoryStore()
        assert await archive.restore_into(history, limit_per_participant=2) == 2
        assert [r.scores.overall_score for r in history.records("INTJ")] == pytest.approx([0.8, 0.9])


class TestCoordinatorArchive:
    @pytest.mark.asyncio
    async def test_results_are_archived_and_restored(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            archive = EvaluationArchive(db_path=Path(tmpdir) / "test.db")

            first = FeedbackCoordinator(evaluators=[StaticEvaluator(0.85)], archive=archive)
            await first.initialize()
            await first.evaluate_statement(make_context(turn_number=0))
            await first.evaluate_statement(make_context(turn_number=1))
            await first.shutdown()
            assert await archive.count_evaluations() == 2

            second = FeedbackCoordinator(evaluators=[StaticEvaluator(0.85)], archive=archive)
            await second.initialize()
            records = second.get_statement_history("INTJ")
            assert [r.turn_number for r in records] == [0, 1]
            assert second.participant_weights()["INTJ"] == pytest.approx(
                first.participant_weights()["INTJ"]
            )


# =====================================================================
# Concurrency
# =====================================================================


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_participant_is_serialized(self):
        probe = ConcurrencyProbe(latency=0.02)
        coord = FeedbackCoordinator(evaluators=[probe])
        await coord.initialize()

        await asyncio.gather(*(
            coord.evaluate_statement(make_context(turn_number=i)) for i in range(3)
        ))

        assert probe.max_per_participant["INTJ"] == 1
        assert [r.turn_number for r in coord.get_statement_history("INTJ")] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_different_participants_overlap(self, roster):
        probe = ConcurrencyProbe(latency=0.05)
        coord = FeedbackCoordinator(evaluators=[probe])
        await coord.initialize()

        results = await asyncio.gather(*(
            coord.evaluate_statement(make_context(participant_id=pid)) for pid in roster
        ))

        assert probe.max_active >= 2
        assert all(not r.is_fallback for r in results)
        assert coord.history.total_evaluations == len(roster)

    @pytest.mark.asyncio
    async def test_state_while_evaluating(self):
        coord = FeedbackCoordinator(evaluators=[StaticEvaluator(0.8, latency=0.05)])
        await coord.initialize()

        task = asyncio.create_task(coord.evaluate_statement(make_context()))
        await asyncio.sleep(0.01)
        assert coord.is_evaluating
        assert coord.state is CoordinatorState.EVALUATING

        await task
        assert not coord.is_evaluating
        assert coord.state is CoordinatorState.READY

    @pytest.mark.asyncio
    async def test_async_listener_sees_every_evaluation(self):
        coord = FeedbackCoordinator(evaluators=[StaticEvaluator(0.8)])
        await coord.initialize()
        seen: list[str] = []

        async def slow_listener(event):
            await asyncio.sleep(0.01)
            seen.append(event.payload["participant_id"])

        coord.event_bus.on(EventType.EVALUATION_COMPLETED, slow_listener)
        await asyncio.gather(
            coord.evaluate_statement(make_context(participant_id="INTJ")),
            coord.evaluate_statement(make_context(participant_id="ENFP")),
        )
        await asyncio.sleep(0.05)
        assert sorted(seen) == ["ENFP", "INTJ"]
