"""
Unit tests for RTFE core components.
Run with:  pytest tests/test_unit.py -v
"""
from __future__ import annotations

import asyncio
import json
import math

import pytest
from pydantic import ValidationError

from rtfe.config import FeedbackConfiguration, OptimizationStrategy, deep_merge
from rtfe.evaluators import (
    EvaluatorFactory,
    EvaluatorKind,
    PerformanceEvaluator,
    ProgressTrackingEvaluator,
    SevenDimensionEvaluator,
)
from rtfe.evaluators.base import keyword_ratio, length_score, structure_score
from rtfe.history import HistoryStore, consistency_of, slope
from rtfe.observer import Event, EventBus, EventPriority, EventType
from rtfe.participants import (
    GROUPS,
    cognitive_weight,
    compatibility,
    detect_traits,
    group_of,
    profile_for,
)
from rtfe.schemas import (
    AdaptivePromptParams,
    DiscussionPhase,
    FeedbackResult,
    OptimizationResult,
    QualityScores,
    Trend,
    WeightAdjustment,
)
from tests.conftest import make_context, make_record

# =====================================================================
# Schema tests
# =====================================================================


class TestEvaluationContext:
    def test_frozen(self):
        ctx = make_context()
        with pytest.raises(AttributeError):
            ctx.utterance = "changed"  # type: ignore[misc]

    def test_weight_snapshot_is_read_only(self):
        weights = {"INTJ": 1.2}
        ctx = make_context(participant_weights=weights)
        weights["INTJ"] = 2.0
        assert ctx.participant_weights["INTJ"] == 1.2
        with pytest.raises(TypeError):
            ctx.participant_weights["ENFP"] = 1.0  # type: ignore[index]

    def test_phase_string_coerced_to_enum(self):
        assert make_context(phase="synthesis").phase is DiscussionPhase.SYNTHESIS
        params = AdaptivePromptParams(participant_id="INTJ", topic="AI", phase="consensus")
        assert params.phase is DiscussionPhase.CONSENSUS
        with pytest.raises(ValueError):
            make_context(phase="brainstorm")

    def test_recent_scores_coerced_to_tuple(self):
        ctx = make_context(recent_scores=[0.5, 0.6])
        assert ctx.recent_scores == (0.5, 0.6)


class TestQualityScores:
    def test_values_clamped(self):
        s = QualityScores(
            performance=1.5,
            psychological=-0.2,
            content_quality=float("nan"),
            participant_alignment=0.5,
            overall_score=2.0,
        )
        assert s.performance == 1.0
        assert s.psychological == 0.0
        assert s.content_quality == 0.0
        assert s.participant_alignment == 0.5
        assert s.overall_score == 1.0

    def test_fallback(self):
        s = QualityScores.fallback("boom")
        assert set(s.dimensions().values()) == {0.7}
        assert s.overall_score == 0.7
        assert s.breakdown.degraded is True
        assert s.breakdown.errors["chain"] == "boom"

    def test_dict_round_trip(self):
        s = QualityScores(0.9, 0.8, 0.7, 0.6, 0.75)
        restored = QualityScores.from_dict(json.loads(json.dumps(s.to_dict())))
        assert restored.dimensions() == s.dimensions()
        assert restored.overall_score == s.overall_score


class TestWeightAdjustment:
    @pytest.mark.parametrize(
        "raw, expected",
        [(10.0, 3.0), (0.0, 0.1), (-4.0, 0.1), (float("nan"), 1.0), (1.4, 1.4)],
    )
    def test_adjusted_weight_clamped(self, raw, expected):
        adj = WeightAdjustment(current_weight=1.0, adjusted_weight=raw, confidence=5.0)
        assert adj.adjusted_weight == pytest.approx(expected)
        assert adj.confidence == 1.0


class TestFallbacks:
    def test_optimization_fallback(self):
        r = OptimizationResult.fallback()
        assert r.is_fallback
        assert r.weight_adjustments == {}
        assert r.quality_improvement == pytest.approx(0.02)
        assert r.convergence.converged is False
        assert r.convergence.iterations == 0

    def test_feedback_result_fallback(self):
        ctx = make_context(participant_id="ENFP", topic="T")
        r = FeedbackResult.fallback(ctx)
        assert r.is_fallback
        assert r.participant_id == "ENFP"
        assert r.quality_contribution >= 0
        assert r.feedback.is_fallback
        assert "T" in r.adaptive_prompt


# =====================================================================
# Configuration tests
# =====================================================================


class TestConfiguration:
    def test_defaults_have_no_warnings(self):
        cfg = FeedbackConfiguration()
        assert cfg.evaluator_weights.total() == pytest.approx(1.0)
        assert cfg.validation_warnings() == []
        assert cfg.optimization_strategy is OptimizationStrategy.BALANCED

    def test_deep_partial_merge_keeps_siblings(self):
        cfg = FeedbackConfiguration().merged({"quality_thresholds": {"overall_minimum": 0.7}})
        assert cfg.quality_thresholds.overall_minimum == 0.7
        assert cfg.quality_thresholds.performance == 0.8
        assert cfg.adaptive_settings.learning_rate == 0.1

    def test_round_trip_update_is_idempotent(self):
        base = FeedbackConfiguration()
        update = {
            "quality_thresholds": {"overall_minimum": 0.7},
            "optimization_strategy": "diversity-focused",
            "adaptive_settings": {"history_window_size": 12},
        }
        restored = json.loads(json.dumps(update))
        once = base.merged(restored)
        twice = once.merged(restored)
        assert once == twice
        assert once.to_dict() == base.merged(update).to_dict()

    def test_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            FeedbackConfiguration().merged({"quality_thresholds": {"performance": 1.5}})

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            FeedbackConfiguration().merged({"evaluator_weights": {"telepathy": 0.2}})

    def test_weight_sum_warning(self):
        cfg = FeedbackConfiguration().merged({"evaluator_weights": {"performance": 0.9}})
        assert any("sum" in w for w in cfg.validation_warnings())

    def test_presets(self):
        assert FeedbackConfiguration.preset("high-quality").optimization_strategy is OptimizationStrategy.QUALITY_FOCUSED
        assert FeedbackConfiguration.preset("balanced") == FeedbackConfiguration()
        with pytest.raises(KeyError):
            FeedbackConfiguration.preset("chaotic")

    def test_diff(self):
        base = FeedbackConfiguration()
        other = base.merged({"enable_realtime_optimization": False, "adaptive_settings": {"learning_rate": 0.2}})
        assert base.diff(other) == ["adaptive_settings.learning_rate", "enable_realtime_optimization"]

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("RTFE_OPTIMIZATION_STRATEGY", "efficiency-focused")
        monkeypatch.setenv("RTFE_REALTIME_OPTIMIZATION", "false")
        cfg = FeedbackConfiguration.from_env()
        assert cfg.optimization_strategy is OptimizationStrategy.EFFICIENCY_FOCUSED
        assert cfg.enable_realtime_optimization is False

    def test_deep_merge_does_not_mutate_inputs(self):
        base = {"a": {"b": 1, "c": 2}}
        update = {"a": {"b": 5}}
        merged = deep_merge(base, update)
        assert merged == {"a": {"b": 5, "c": 2}}
        assert base == {"a": {"b": 1, "c": 2}}


# =====================================================================
# Participant profile tests
# =====================================================================


class TestParticipants:
    @pytest.mark.parametrize(
        "pid, group", [("INTJ", "NT"), ("ENFP", "NF"), ("ISTJ", "SJ"), ("ESTP", "SP")]
    )
    def test_groups(self, pid, group):
        assert group_of(pid) == group
        assert profile_for(pid).cluster == GROUPS.index(group)

    def test_unknown_id_is_deterministic(self):
        assert group_of("moderator") == group_of("moderator")
        assert group_of("moderator") in GROUPS
        assert not profile_for("moderator").is_known

    def test_compatibility(self):
        assert compatibility("INTJ", "ENTP") == 0.8
        assert compatibility("ISTJ", "ESFP") == 0.3
        assert compatibility("INTJ", "somebody") == 0.5

    def test_cognitive_weight(self):
        # Ni dominant (1.3) and Te auxiliary (1.0) in the initial phase
        assert cognitive_weight("INTJ", DiscussionPhase.INITIAL) == pytest.approx(1.21)
        assert cognitive_weight("guest", DiscussionPhase.INITIAL) == 1.0

    def test_detect_traits(self):
        traits = detect_traits("We should plan a long-term strategy together")
        assert "strategic" in traits
        assert "cooperative" in traits


# =====================================================================
# EventBus tests
# =====================================================================


class TestEventBus:
    @pytest.mark.asyncio
    async def test_emit_reaches_listener(self, event_bus):
        captured: list[Event] = []
        event_bus.on(EventType.EVALUATION_COMPLETED, captured.append)
        await event_bus.emit(EventType.EVALUATION_COMPLETED, {"overall_score": 0.8}, source="test")
        assert len(captured) == 1
        assert captured[0].payload["overall_score"] == 0.8
        assert captured[0].metadata.source == "test"

    @pytest.mark.asyncio
    async def test_once_listener_fires_exactly_once(self, event_bus):
        calls: list[Event] = []
        event_bus.once(EventType.SYSTEM_STARTED, calls.append)
        await event_bus.emit(EventType.SYSTEM_STARTED)
        await event_bus.emit(EventType.SYSTEM_STARTED)
        assert len(calls) == 1
        assert not event_bus.has_listeners(EventType.SYSTEM_STARTED)

    @pytest.mark.asyncio
    async def test_priority_order(self, event_bus):
        order: list[int] = []
        event_bus.on(EventType.WEIGHT_ADJUSTED, lambda e: order.append(1), priority=1)
        event_bus.on(EventType.WEIGHT_ADJUSTED, lambda e: order.append(10), priority=10)
        event_bus.on(EventType.WEIGHT_ADJUSTED, lambda e: order.append(5), priority=5)
        await event_bus.emit(EventType.WEIGHT_ADJUSTED)
        assert order == [10, 5, 1]

    @pytest.mark.asyncio
    async def test_filter(self, event_bus):
        captured: list[Event] = []
        event_bus.on(
            EventType.AGENT_ACTIVATED,
            captured.append,
            filter=lambda e: e.payload.get("participant_id") == "INTJ",
        )
        await event_bus.emit(EventType.AGENT_ACTIVATED, {"participant_id": "ENFP"})
        await event_bus.emit(EventType.AGENT_ACTIVATED, {"participant_id": "INTJ"})
        assert [e.payload["participant_id"] for e in captured] == ["INTJ"]

    @pytest.mark.asyncio
    async def test_listener_failure_is_isolated(self, event_bus):
        captured: list[Event] = []

        def bad(_e):
            raise ValueError("sync boom")

        async def bad_async(_e):
            raise ValueError("async boom")

        event_bus.on(EventType.SYSTEM_ERROR, bad, priority=3)
        event_bus.on(EventType.SYSTEM_ERROR, bad_async, priority=2)
        event_bus.on(EventType.SYSTEM_ERROR, captured.append, priority=1)
        await event_bus.emit(EventType.SYSTEM_ERROR)
        assert len(captured) == 1

    @pytest.mark.asyncio
    async def test_off(self, event_bus):
        captured: list[Event] = []
        lid = event_bus.on(EventType.CONSISTENCY_ALERT, captured.append)
        assert event_bus.off(EventType.CONSISTENCY_ALERT, lid) is True
        assert event_bus.off(EventType.CONSISTENCY_ALERT, lid) is False
        await event_bus.emit(EventType.CONSISTENCY_ALERT)
        assert captured == []

    def test_emit_sync_delivers_immediately(self, event_bus):
        captured: list[Event] = []
        event_bus.on(EventType.QUALITY_THRESHOLD_CROSSED, captured.append)
        event_bus.emit_sync(EventType.QUALITY_THRESHOLD_CROSSED, {"overall_score": 0.4})
        assert len(captured) == 1

    def test_subscribe_all_with_observer(self, event_bus):
        class Collector:
            def __init__(self):
                self.events: list[Event] = []

            def on_event(self, event: Event) -> None:
                self.events.append(event)

        collector = Collector()
        event_bus.subscribe_all(collector)
        for et in EventType:
            event_bus.emit_sync(et)
        assert len(collector.events) == len(EventType)

    @pytest.mark.asyncio
    async def test_history_newest_first_and_filtered(self, event_bus):
        await event_bus.emit(EventType.AGENT_ACTIVATED, {"n": 1})
        await event_bus.emit(EventType.SYSTEM_STARTED, {"n": 2}, source="other")
        await event_bus.emit(EventType.AGENT_ACTIVATED, {"n": 3})
        assert [e.payload["n"] for e in event_bus.history()] == [3, 2, 1]
        assert [e.payload["n"] for e in event_bus.history(EventType.AGENT_ACTIVATED)] == [3, 1]
        assert [e.payload["n"] for e in event_bus.history(source="other")] == [2]
        assert len(event_bus.history(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        bus = EventBus(max_history=5)
        for i in range(8):
            await bus.emit(EventType.FEEDBACK_GENERATED, {"i": i})
        assert len(bus.history()) == 5
        assert bus.history()[0].payload["i"] == 7

    @pytest.mark.asyncio
    async def test_queue_drops_oldest_when_full(self):
        bus = EventBus(max_queue=3)
        started: list[int] = []

        async def burst(_e):
            for i in range(5):
                await bus.emit(EventType.SYSTEM_STARTED, {"i": i})

        bus.on(EventType.CONSISTENCY_ALERT, burst)
        bus.on(EventType.SYSTEM_STARTED, lambda e: started.append(e.payload["i"]))
        await bus.emit(EventType.CONSISTENCY_ALERT)
        assert started == [2, 3, 4]
        assert bus.statistics()["dropped_events"] == 2

    @pytest.mark.asyncio
    async def test_queued_events_dispatched_by_priority(self):
        bus = EventBus()
        seen: list[str] = []

        async def enqueue(_e):
            await bus.emit(EventType.AGENT_DEACTIVATED, priority=EventPriority.LOW)
            await bus.emit(EventType.SYSTEM_ERROR, priority=EventPriority.CRITICAL)

        bus.on(EventType.CONSISTENCY_ALERT, enqueue)
        bus.on(EventType.AGENT_DEACTIVATED, lambda e: seen.append("low"))
        bus.on(EventType.SYSTEM_ERROR, lambda e: seen.append("critical"))
        await bus.emit(EventType.CONSISTENCY_ALERT)
        assert seen == ["critical", "low"]

    @pytest.mark.asyncio
    async def test_one_event_fully_dispatched_before_next(self, event_bus):
        order: list[tuple[str, int]] = []

        async def slow(e):
            order.append(("start", e.payload["n"]))
            await asyncio.sleep(0.01)
            order.append(("end", e.payload["n"]))

        event_bus.on(EventType.EVALUATION_COMPLETED, slow)
        await asyncio.gather(
            event_bus.emit(EventType.EVALUATION_COMPLETED, {"n": 1}),
            event_bus.emit(EventType.EVALUATION_COMPLETED, {"n": 2}),
        )
        assert order == [("start", 1), ("end", 1), ("start", 2), ("end", 2)]

    @pytest.mark.asyncio
    async def test_close(self, event_bus):
        captured: list[Event] = []
        event_bus.on(EventType.SYSTEM_STARTED, captured.append)
        event_bus.close()
        await event_bus.emit(EventType.SYSTEM_STARTED)
        assert captured == []
        assert event_bus.closed
        assert event_bus.listener_count() == 0


# =====================================================================
# HistoryStore tests
# =====================================================================


class TestHistoryStore:
    def test_retention_cap(self):
        store = HistoryStore(max_records=10)
        for i in range(16):
            store.record("INTJ", make_record(0.5 + i * 0.01))
            assert len(store.records("INTJ")) <= 10
        # 11th insert truncated to the most recent 5, then 5 more were added
        assert len(store.records("INTJ")) == 10
        assert store.records("INTJ")[0].scores.overall_score == pytest.approx(0.56)
        assert store.records("INTJ")[-1].scores.overall_score == pytest.approx(0.65)

    @pytest.mark.parametrize(
        "scores, trend",
        [
            ([0.5, 0.6, 0.7], Trend.IMPROVING),
            ([0.8, 0.7, 0.6], Trend.DECLINING),
            ([0.7, 0.7, 0.71], Trend.STABLE),
            ([0.2, 0.9], Trend.STABLE),
        ],
    )
    def test_trend(self, history_store, scores, trend):
        for s in scores:
            history_store.record("ENFP", make_record(s))
        assert history_store.get_stats("ENFP").trend is trend

    def test_consistency(self):
        assert consistency_of([0.7, 0.7, 0.7]) == pytest.approx(1.0)
        assert consistency_of([0.7]) == 0.8
        assert consistency_of([0.2, 0.9, 0.2, 0.9]) == pytest.approx(0.3)
        assert consistency_of([0.0, 1.0, 0.0, 1.0]) == 0.0

    def test_slope(self):
        assert slope([1.0]) == 0.0
        assert slope([0.0, 0.5, 1.0]) == pytest.approx(0.5)

    def test_strength_and_weakness_patterns(self, history_store):
        for _ in range(4):
            history_store.record(
                "ISTJ", make_record(0.75, performance=0.9, content_quality=0.5)
            )
        stats = history_store.get_stats("ISTJ")
        assert stats.strong_dimensions == ["performance"]
        assert stats.weak_dimensions == ["content_quality"]

    def test_rare_patterns_filtered(self, history_store):
        history_store.record("ISTJ", make_record(0.75, psychological=0.95))
        for _ in range(9):
            history_store.record("ISTJ", make_record(0.75))
        assert history_store.get_stats("ISTJ").strong_dimensions == []

    def test_stats_summary(self, history_store):
        for s in (0.6, 0.8, 0.7):
            history_store.record("INTJ", make_record(s))
        history_store.record("ENFP", make_record(0.9))
        stats = history_store.get_stats("INTJ")
        assert stats.total_records == 3
        assert stats.average == pytest.approx(0.7)
        assert stats.best == 0.8
        assert stats.worst == 0.6
        assert stats.participation_frequency == pytest.approx(0.75)

    def test_unknown_participant_stats(self, history_store):
        stats = history_store.get_stats("nobody")
        assert stats.total_records == 0
        assert stats.trend is Trend.STABLE

    def test_participant_info_and_weights(self, history_store):
        history_store.record("INTJ", make_record(0.8))
        history_store.set_weight("INTJ", 10.0)
        history_store.register_participant("ENFP")
        info = {i.participant_id: i for i in history_store.get_participant_info()}
        assert info["INTJ"].participation_count == 1
        assert info["INTJ"].current_weight == 3.0
        assert info["ENFP"].participation_count == 0

    def test_attach_feedback(self, history_store):
        from rtfe.schemas import DetailedFeedback

        assert history_store.attach_feedback("INTJ", DetailedFeedback.fallback()) is False
        history_store.record("INTJ", make_record(0.8))
        assert history_store.attach_feedback("INTJ", DetailedFeedback.fallback()) is True
        assert history_store.records("INTJ")[-1].feedback.is_fallback

    def test_recent_feedback_limited(self, history_store):
        for _ in range(8):
            history_store.record("INTJ", make_record(0.6))
        recent = history_store.get_recent_feedback("INTJ")
        assert len(recent) == 5
        assert all(r.overall_score == 0.6 for r in recent)

    def test_system_metrics(self, history_store):
        assert history_store.get_system_metrics().average_quality == 0.8
        for s in (0.95, 0.85, 0.5):
            history_store.record("ESTP", make_record(s))
        m = history_store.get_system_metrics()
        assert m.total_evaluations == 3
        assert m.quality_distribution == {
            "excellent": 1, "good": 1, "satisfactory": 0, "needs_improvement": 1,
        }


# =====================================================================
# Evaluator tests
# =====================================================================


class TestTextHeuristics:
    def test_length_score(self):
        assert length_score("") == 0.1
        assert length_score("short") == 0.5
        assert length_score("x" * 60) == 0.9
        assert length_score("x" * 40) == 0.7
        assert length_score("x" * 1000) == 0.5

    def test_keyword_ratio(self):
        assert keyword_ratio("anything", []) == 0.5
        assert keyword_ratio("solar and wind", ["solar", "wind", "coal", "gas"]) == 1.0
        assert keyword_ratio("solar only", ["solar", "wind", "coal", "gas"]) == 0.5

    def test_structure_score(self):
        assert structure_score("no punctuation here") == pytest.approx(0.7)
        assert structure_score("One. Two.\nThree.") == pytest.approx(1.0)


class TestEvaluators:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", list(EvaluatorKind)[:4])
    @pytest.mark.parametrize(
        "utterance",
        ["", "ok", "I hate this idea.", "We should plan together. " * 40],
    )
    async def test_scores_in_unit_interval(self, kind, utterance):
        evaluator = EvaluatorFactory.create(kind)
        result = await evaluator.evaluate(make_context(utterance=utterance, recent_scores=(0.6, 0.7)))
        assert 0.0 <= result.score <= 1.0
        assert all(0.0 <= v <= 1.0 for v in result.breakdown.values())

    @pytest.mark.asyncio
    async def test_performance_score(self):
        ctx = make_context(
            utterance="Renewable energy is key. We need investment in solar and wind power.",
            topic="renewable energy policy",
        )
        result = await PerformanceEvaluator().evaluate(ctx)
        # length 0.9 * 0.4 + relevance 1.0 * 0.4 + structure 0.9 * 0.2
        assert result.score == pytest.approx(0.94)

    @pytest.mark.asyncio
    async def test_ethics_penalty(self):
        result = await SevenDimensionEvaluator().evaluate(
            make_context(utterance="I hate everyone who disagrees with this plan.")
        )
        assert result.breakdown["ethics"] == 0.3

    @pytest.mark.asyncio
    async def test_progress_without_history_is_neutral(self):
        result = await ProgressTrackingEvaluator().evaluate(make_context())
        assert result.score == 0.75
        assert result.confidence == 0.3

    @pytest.mark.asyncio
    async def test_progress_rewards_improvement(self):
        ev = ProgressTrackingEvaluator()
        rising = await ev.evaluate(make_context(recent_scores=(0.5, 0.6, 0.7, 0.8)))
        falling = await ev.evaluate(make_context(recent_scores=(0.8, 0.7, 0.6, 0.5)))
        assert rising.breakdown["momentum"] > falling.breakdown["momentum"]
        assert not math.isnan(rising.score)


class TestEvaluatorFactory:
    def test_create(self):
        ev = EvaluatorFactory.create("performance", weight=0.3)
        assert isinstance(ev, PerformanceEvaluator)
        assert ev.weight == 0.3
        assert ev.name == "performance"

    def test_unknown_kind(self):
        with pytest.raises(KeyError):
            EvaluatorFactory.create("telepathy")
        with pytest.raises(KeyError):
            EvaluatorFactory.create(EvaluatorKind.CUSTOM)

    def test_defaults_follow_config_weights(self):
        evaluators = EvaluatorFactory.create_defaults(FeedbackConfiguration().evaluator_weights)
        weights = {e.name: e.weight for e in evaluators}
        assert weights == {
            "seven-dimension": 0.4,
            "performance": 0.3,
            "participant-alignment": 0.25,
            "progress-tracking": 0.05,
        }
