"""Pluggable quality evaluators – import concrete classes to trigger registration."""

from rtfe.evaluators.base import Evaluator, EvaluatorKind
from rtfe.evaluators.registry import EvaluatorFactory, register

# Import concrete evaluators so their @register decorators execute.
from rtfe.evaluators.alignment import ParticipantAlignmentEvaluator  # noqa: F401
from rtfe.evaluators.performance import PerformanceEvaluator  # noqa: F401
from rtfe.evaluators.progress import ProgressTrackingEvaluator  # noqa: F401
from rtfe.evaluators.seven_dimension import SevenDimensionEvaluator  # noqa: F401

__all__ = [
    "Evaluator",
    "EvaluatorKind",
    "EvaluatorFactory",
    "register",
    "ParticipantAlignmentEvaluator",
    "PerformanceEvaluator",
    "ProgressTrackingEvaluator",
    "SevenDimensionEvaluator",
]
