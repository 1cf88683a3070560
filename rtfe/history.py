"""
Learning History – Per-Participant Evaluation Log
=================================================
Keeps an append-only evaluation log per participant with a hard memory
bound, and derives the statistics later stages consume: trend,
consistency, strength/weakness patterns and participation frequency.

All methods are synchronous and never await, so within one event loop a
call is atomic.  The coordinator additionally serializes evaluations of
the same participant.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field

import numpy as np

from rtfe.config import AdaptiveSettings
from rtfe.schemas import (
    DIMENSIONS,
    DetailedFeedback,
    EvaluationRecord,
    HealthReport,
    ParticipantInfo,
    ParticipantStats,
    RecentFeedback,
    SystemHistoryMetrics,
    Trend,
    clamp_weight,
)

logger = logging.getLogger(__name__)

MAX_RECORDS = 100
TREND_POINTS = 3
TREND_THRESHOLD = 0.05
LEARNING_THRESHOLD = 0.02
PATTERN_THRESHOLD = 0.3
STRONG_SCORE = 0.8
WEAK_SCORE = 0.7
DEFAULT_CONSISTENCY = 0.8


@dataclass
class _ParticipantLog:
    records: list[EvaluationRecord] = field(default_factory=list)
    weight: float = 1.0
    # Overall-score trend values, one per record, bounded like the records.
    trend_scores: list[float] = field(default_factory=list)
    last_updated: float | None = None


def slope(values: list[float] | np.ndarray) -> float:
    """Least-squares slope of *values* against their index (0 below 2 points)."""
    y = np.asarray(values, dtype=float)
    if y.size < 2:
        return 0.0
    return float(np.polyfit(np.arange(y.size), y, 1)[0])


def consistency_of(values: list[float]) -> float:
    """``max(0, 1 - 2σ)``, or the default when fewer than 3 values exist."""
    if len(values) < 3:
        return DEFAULT_CONSISTENCY
    return max(0.0, 1.0 - float(np.std(values)) * 2)


class HistoryStore:
    """In-memory learning history.

    Parameters
    ----------
    max_records : int
        Hard cap per participant.  When exceeded the log is truncated to its
        most recent half.
    window : int
        Number of recent records used for consistency and recent averages.
    pattern_threshold : float
        Minimum frequency for a dimension to be reported as a strength or
        weakness.
    """

    def __init__(
        self,
        max_records: int = MAX_RECORDS,
        window: int = 20,
        pattern_threshold: float = PATTERN_THRESHOLD,
    ) -> None:
        if max_records < 2:
            raise ValueError("max_records must be at least 2")
        self._max_records = max_records
        self._window = window
        self._pattern_threshold = pattern_threshold
        self._logs: dict[str, _ParticipantLog] = {}
        self._global_count = 0
        self._global_scores: list[float] = []

    # ------------------------------------------------------------------ #
    #  Write
    # ------------------------------------------------------------------ #

    def register_participant(self, participant_id: str, weight: float = 1.0) -> None:
        log = self._logs.setdefault(participant_id, _ParticipantLog())
        log.weight = clamp_weight(weight)

    def record(self, participant_id: str, record: EvaluationRecord) -> None:
        """Append *record* to the participant's log, enforcing the cap."""
        log = self._logs.setdefault(participant_id, _ParticipantLog())
        log.records.append(record)
        log.trend_scores.append(record.scores.overall_score)
        log.last_updated = record.timestamp

        if len(log.records) > self._max_records:
            keep = self._max_records // 2
            log.records = log.records[-keep:]
            log.trend_scores = log.trend_scores[-keep:]
            logger.debug("Truncated history of %s to %d records", participant_id, keep)

        self._global_count += 1
        self._global_scores.append(record.scores.overall_score)
        if len(self._global_scores) > self._max_records * 10:
            self._global_scores = self._global_scores[-self._max_records * 5:]

    def attach_feedback(self, participant_id: str, feedback: DetailedFeedback) -> bool:
        """Attach *feedback* to the participant's latest record."""
        log = self._logs.get(participant_id)
        if not log or not log.records:
            return False
        log.records[-1].feedback = feedback
        return True

    def set_weight(self, participant_id: str, weight: float) -> None:
        log = self._logs.setdefault(participant_id, _ParticipantLog())
        log.weight = clamp_weight(weight)

    def update_settings(self, settings: AdaptiveSettings) -> None:
        self._window = settings.history_window_size
        logger.debug("History window set to %d", self._window)

    def clear(self) -> None:
        self._logs.clear()
        self._global_count = 0
        self._global_scores.clear()

    # ------------------------------------------------------------------ #
    #  Read
    # ------------------------------------------------------------------ #

    @property
    def participants(self) -> list[str]:
        return list(self._logs)

    @property
    def total_evaluations(self) -> int:
        return self._global_count

    def get_weight(self, participant_id: str) -> float:
        log = self._logs.get(participant_id)
        return log.weight if log else 1.0

    def weights(self) -> dict[str, float]:
        return {pid: log.weight for pid, log in self._logs.items()}

    def records(self, participant_id: str) -> list[EvaluationRecord]:
        log = self._logs.get(participant_id)
        return list(log.records) if log else []

    def recent_scores(self, participant_id: str, limit: int | None = None) -> tuple[float, ...]:
        log = self._logs.get(participant_id)
        if not log:
            return ()
        n = limit or self._window
        return tuple(log.trend_scores[-n:])

    def get_stats(self, participant_id: str) -> ParticipantStats:
        log = self._logs.get(participant_id)
        if not log or not log.records:
            return ParticipantStats(participant_id=participant_id)

        scores = [r.scores.overall_score for r in log.records]
        recent = scores[-self._window:]
        strong, weak = self._patterns(log.records)
        return ParticipantStats(
            participant_id=participant_id,
            total_records=len(scores),
            average=float(np.mean(scores)),
            best=max(scores),
            worst=min(scores),
            recent_average=float(np.mean(scores[-5:])),
            trend=self._trend(scores),
            consistency=consistency_of(recent),
            improvement_rate=self._improvement_rate(scores),
            learning_progress=slope(log.trend_scores) if len(log.trend_scores) >= 5 else 0.0,
            strong_dimensions=strong,
            weak_dimensions=weak,
            participation_frequency=len(log.records) / self._global_count if self._global_count else 0.0,
        )

    @staticmethod
    def _trend(scores: list[float]) -> Trend:
        if len(scores) < TREND_POINTS:
            return Trend.STABLE
        s = slope(scores[-TREND_POINTS:])
        if s > TREND_THRESHOLD:
            return Trend.IMPROVING
        if s < -TREND_THRESHOLD:
            return Trend.DECLINING
        return Trend.STABLE

    @staticmethod
    def _improvement_rate(scores: list[float]) -> float:
        if len(scores) < 2:
            return 0.0
        recent = scores[-5:]
        earlier = scores[-10:-5]
        if not earlier:
            return 0.0
        return float(np.mean(recent) - np.mean(earlier))

    def _patterns(self, records: list[EvaluationRecord]) -> tuple[list[str], list[str]]:
        strong: Counter[str] = Counter()
        weak: Counter[str] = Counter()
        for r in records:
            for dim, value in r.scores.dimensions().items():
                if value >= STRONG_SCORE:
                    strong[dim] += 1
                elif value < WEAK_SCORE:
                    weak[dim] += 1

        def top(counter: Counter[str]) -> list[str]:
            total = len(records)
            frequent = [
                (dim, n / total) for dim, n in counter.items()
                if n / total >= self._pattern_threshold
            ]
            frequent.sort(key=lambda kv: (-kv[1], DIMENSIONS.index(kv[0])))
            return [dim for dim, _ in frequent[:3]]

        return top(strong), top(weak)

    def learning_trend(self, participant_id: str) -> Trend:
        """Longer-horizon trend from the slope over every retained score."""
        log = self._logs.get(participant_id)
        if not log or len(log.trend_scores) < 5:
            return Trend.STABLE
        s = slope(log.trend_scores)
        if s > LEARNING_THRESHOLD:
            return Trend.IMPROVING
        if s < -LEARNING_THRESHOLD:
            return Trend.DECLINING
        return Trend.STABLE

    def get_participant_info(self) -> list[ParticipantInfo]:
        infos: list[ParticipantInfo] = []
        for pid, log in self._logs.items():
            stats = self.get_stats(pid)
            infos.append(
                ParticipantInfo(
                    participant_id=pid,
                    current_weight=log.weight,
                    participation_count=len(log.records),
                    average_quality=stats.recent_average,
                    consistency=stats.consistency,
                    trend=stats.trend,
                    last_activity=log.last_updated,
                )
            )
        return infos

    def get_statement_history(self, participant_id: str, limit: int = 10) -> list[EvaluationRecord]:
        """Most recent records for a participant, newest last."""
        return self.records(participant_id)[-limit:]

    def get_recent_feedback(self, participant_id: str, limit: int = 5) -> list[RecentFeedback]:
        recent: list[RecentFeedback] = []
        for r in self.records(participant_id)[-limit:]:
            areas = list(r.feedback.analysis.weaknesses) if r.feedback else list(r.scores.breakdown.weaknesses)
            recent.append(
                RecentFeedback(
                    timestamp=r.timestamp,
                    overall_score=r.scores.overall_score,
                    improvement_areas=areas,
                )
            )
        return recent

    def get_system_metrics(self) -> SystemHistoryMetrics:
        if not self._global_scores:
            return SystemHistoryMetrics()
        scores = np.asarray(self._global_scores, dtype=float)
        distribution = {
            "excellent": int(np.sum(scores >= 0.9)),
            "good": int(np.sum((scores >= 0.8) & (scores < 0.9))),
            "satisfactory": int(np.sum((scores >= 0.7) & (scores < 0.8))),
            "needs_improvement": int(np.sum(scores < 0.7)),
        }
        return SystemHistoryMetrics(
            total_evaluations=self._global_count,
            average_quality=float(scores.mean()),
            quality_distribution=distribution,
            quality_stability=max(0.0, 1.0 - float(scores.std()) * 2),
        )

    def health_check(self) -> HealthReport:
        report = HealthReport()
        oversized = [pid for pid, log in self._logs.items() if len(log.records) > self._max_records]
        if oversized:
            report.issues.append(f"Retention cap exceeded for {oversized}")
        stale = [
            pid for pid, log in self._logs.items()
            if log.last_updated is not None and time.time() - log.last_updated > 3600
        ]
        if stale:
            report.warnings.append(f"No activity for over an hour: {stale}")
        report.healthy = not report.issues
        return report
