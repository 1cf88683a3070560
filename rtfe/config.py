"""
Feedback Configuration
======================
Validated configuration for the feedback engine.

The configuration is a tree of pydantic models so that updates coming from
outside the engine (CLI flags, environment variables, partial dicts sent by
an embedding application) are validated at the boundary.  Updates are
applied as a *deep-partial merge*: only the keys present in the update
change, and the merged tree is re-validated as a whole.
"""

from __future__ import annotations

import copy
import logging
import os
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class OptimizationStrategy(str, Enum):
    QUALITY_FOCUSED = "quality-focused"
    DIVERSITY_FOCUSED = "diversity-focused"
    EFFICIENCY_FOCUSED = "efficiency-focused"
    BALANCED = "balanced"
    CUSTOM = "custom"


class FeedbackFrequency(str, Enum):
    EVERY_TURN = "every-turn"
    EVERY_PHASE = "every-phase"
    ON_DEMAND = "on-demand"


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class QualityThresholds(_Section):
    performance: float = Field(0.8, ge=0.0, le=1.0)
    psychological: float = Field(0.8, ge=0.0, le=1.0)
    content_quality: float = Field(0.8, ge=0.0, le=1.0)
    participant_alignment: float = Field(0.75, ge=0.0, le=1.0)
    overall_minimum: float = Field(0.78, ge=0.0, le=1.0)
    intervention_threshold: float = Field(0.65, ge=0.0, le=1.0)


class EvaluatorWeights(_Section):
    seven_dimension: float = Field(0.4, ge=0.0)
    performance: float = Field(0.3, ge=0.0)
    participant_alignment: float = Field(0.25, ge=0.0)
    progress_tracking: float = Field(0.05, ge=0.0)

    def total(self) -> float:
        return sum(self.model_dump().values())


class PerformanceTarget(_Section):
    response_time_ms: float = Field(2000.0, gt=0.0)
    accuracy: float = Field(0.85, ge=0.0, le=1.0)
    throughput: float = Field(80.0, ge=0.0)
    memory_mb: float = Field(512.0, gt=0.0)


class AdaptiveSettings(_Section):
    learning_rate: float = Field(0.1, gt=0.0, le=1.0)
    adaptation_sensitivity: float = Field(1.0, ge=0.0)
    history_window_size: int = Field(20, ge=3, le=100)
    feedback_frequency: FeedbackFrequency = FeedbackFrequency.EVERY_TURN


class FeedbackConfiguration(_Section):
    """Complete engine configuration.

    Usage::

        cfg = FeedbackConfiguration()
        cfg = cfg.merged({"quality_thresholds": {"overall_minimum": 0.7}})
    """

    quality_thresholds: QualityThresholds = Field(default_factory=QualityThresholds)
    evaluator_weights: EvaluatorWeights = Field(default_factory=EvaluatorWeights)
    optimization_strategy: OptimizationStrategy = OptimizationStrategy.BALANCED
    enable_realtime_optimization: bool = True
    performance_target: PerformanceTarget = Field(default_factory=PerformanceTarget)
    adaptive_settings: AdaptiveSettings = Field(default_factory=AdaptiveSettings)

    # ------------------------------------------------------------------ #
    #  Merge & compare
    # ------------------------------------------------------------------ #

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible nested dict (enums as their string values)."""
        return self.model_dump(mode="json")

    def merged(self, update: Mapping[str, Any]) -> FeedbackConfiguration:
        """Return a new configuration with *update* deep-merged in.

        Raises
        ------
        pydantic.ValidationError
            If the update introduces unknown keys or out-of-range values.
        """
        return FeedbackConfiguration.model_validate(deep_merge(self.to_dict(), update))

    def diff(self, other: FeedbackConfiguration) -> list[str]:
        """Return the dotted paths whose values differ from *other*."""
        return _diff_paths(self.to_dict(), other.to_dict())

    def validation_warnings(self) -> list[str]:
        warnings: list[str] = []
        total = self.evaluator_weights.total()
        if abs(total - 1.0) > 0.01:
            warnings.append(f"Evaluator weights sum to {total:.3f}, not 1.0")
        qt = self.quality_thresholds
        if qt.intervention_threshold > qt.overall_minimum:
            warnings.append(
                "intervention_threshold is above overall_minimum; "
                "critical alerts will fire before warnings"
            )
        return warnings

    # ------------------------------------------------------------------ #
    #  Construction helpers
    # ------------------------------------------------------------------ #

    @classmethod
    def preset(cls, name: str) -> FeedbackConfiguration:
        """Build one of the named presets (``high-quality``, ``diversity``,
        ``efficiency``, ``balanced``).

        Raises
        ------
        KeyError
            If *name* is not a known preset.
        """
        if name not in _PRESETS:
            raise KeyError(f"Unknown preset '{name}'. Available: {sorted(_PRESETS)}")
        return cls().merged(_PRESETS[name])

    @classmethod
    def from_env(cls, base: FeedbackConfiguration | None = None) -> FeedbackConfiguration:
        """Apply ``RTFE_*`` environment overrides on top of *base*."""
        update: dict[str, Any] = {}
        strategy = os.getenv("RTFE_OPTIMIZATION_STRATEGY")
        if strategy:
            update["optimization_strategy"] = strategy
        realtime = os.getenv("RTFE_REALTIME_OPTIMIZATION")
        if realtime:
            update["enable_realtime_optimization"] = realtime.strip().lower() in {"1", "true", "yes", "on"}
        learning_rate = os.getenv("RTFE_LEARNING_RATE")
        if learning_rate:
            update["adaptive_settings"] = {"learning_rate": float(learning_rate)}
        cfg = (base or cls()).merged(update)
        for warning in cfg.validation_warnings():
            logger.warning("Configuration: %s", warning)
        return cfg


_PRESETS: dict[str, dict[str, Any]] = {
    "high-quality": {
        "quality_thresholds": {
            "performance": 0.85,
            "psychological": 0.85,
            "content_quality": 0.85,
            "participant_alignment": 0.8,
            "overall_minimum": 0.83,
            "intervention_threshold": 0.7,
        },
        "evaluator_weights": {
            "seven_dimension": 0.5,
            "performance": 0.25,
            "participant_alignment": 0.2,
            "progress_tracking": 0.05,
        },
        "optimization_strategy": "quality-focused",
        "adaptive_settings": {"learning_rate": 0.05, "adaptation_sensitivity": 1.2},
    },
    "diversity": {
        "evaluator_weights": {
            "seven_dimension": 0.3,
            "performance": 0.2,
            "participant_alignment": 0.4,
            "progress_tracking": 0.1,
        },
        "optimization_strategy": "diversity-focused",
        "adaptive_settings": {"learning_rate": 0.15, "adaptation_sensitivity": 1.5},
    },
    "efficiency": {
        "performance_target": {"response_time_ms": 1000},
        "evaluator_weights": {
            "seven_dimension": 0.3,
            "performance": 0.5,
            "participant_alignment": 0.15,
            "progress_tracking": 0.05,
        },
        "optimization_strategy": "efficiency-focused",
        "adaptive_settings": {"history_window_size": 10, "feedback_frequency": "every-phase"},
    },
    "balanced": {},
}


def deep_merge(base: Mapping[str, Any], update: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge *update* into a copy of *base*.

    Nested mappings are merged key by key; any other value in *update*
    replaces the one in *base*.
    """
    merged = copy.deepcopy(dict(base))
    for key, value in update.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _diff_paths(a: Mapping[str, Any], b: Mapping[str, Any], prefix: str = "") -> list[str]:
    paths: list[str] = []
    for key in sorted(set(a) | set(b)):
        path = f"{prefix}{key}"
        va, vb = a.get(key), b.get(key)
        if isinstance(va, Mapping) and isinstance(vb, Mapping):
            paths.extend(_diff_paths(va, vb, prefix=f"{path}."))
        elif va != vb:
            paths.append(path)
    return paths
