"""
RTFE — Realtime Feedback Engine
===============================
Evaluates utterances from simulated discussion participants, learns
per-participant trends, optimizes participant weights over a latent
interaction graph and feeds structured guidance into the next turn.
"""

from rtfe.config import FeedbackConfiguration, OptimizationStrategy
from rtfe.coordinator import CoordinatorState, FeedbackCoordinator
from rtfe.observer import Event, EventBus, EventPriority, EventType
from rtfe.schemas import (
    AdaptivePromptParams,
    DetailedFeedback,
    DiscussionPhase,
    EvaluationContext,
    FeedbackResult,
    OptimizationResult,
    QualityScores,
)

__all__ = [
    "AdaptivePromptParams",
    "CoordinatorState",
    "DetailedFeedback",
    "DiscussionPhase",
    "EvaluationContext",
    "Event",
    "EventBus",
    "EventPriority",
    "EventType",
    "FeedbackConfiguration",
    "FeedbackCoordinator",
    "FeedbackResult",
    "OptimizationResult",
    "OptimizationStrategy",
    "QualityScores",
]
__version__ = "0.1.0"
