"""
Evaluator Registry – Registration & Creation
=============================================
Each built-in evaluator self-registers with ``@register(EvaluatorKind.X)``.
The coordinator calls ``EvaluatorFactory.create_defaults(weights)``
without importing the concrete classes.
"""

from __future__ import annotations

import logging
from typing import Any, Type

from rtfe.config import EvaluatorWeights
from rtfe.evaluators.base import Evaluator, EvaluatorKind

logger = logging.getLogger(__name__)

_REGISTRY: dict[EvaluatorKind, Type[Evaluator]] = {}

#: Config field carrying the weight of each built-in kind.
WEIGHT_FIELDS: dict[EvaluatorKind, str] = {
    EvaluatorKind.SEVEN_DIMENSION: "seven_dimension",
    EvaluatorKind.PERFORMANCE: "performance",
    EvaluatorKind.PARTICIPANT_ALIGNMENT: "participant_alignment",
    EvaluatorKind.PROGRESS_TRACKING: "progress_tracking",
}


def register(kind: EvaluatorKind):
    """Class decorator that registers an :class:`Evaluator` subclass."""

    def decorator(cls: Type[Evaluator]):
        cls.kind = kind
        _REGISTRY[kind] = cls
        return cls

    return decorator


class EvaluatorFactory:
    """Factory for constructing built-in evaluators by kind."""

    @staticmethod
    def available_kinds() -> list[EvaluatorKind]:
        return list(_REGISTRY.keys())

    @staticmethod
    def create(kind: EvaluatorKind | str, **kwargs: Any) -> Evaluator:
        """Instantiate a registered evaluator.

        Raises
        ------
        KeyError
            If *kind* has no registered implementation.
        """
        try:
            kind = EvaluatorKind(kind)
        except ValueError:
            raise KeyError(f"Unknown evaluator kind '{kind}'") from None
        if kind not in _REGISTRY:
            raise KeyError(
                f"No evaluator registered for '{kind.value}'. "
                f"Available: {[k.value for k in _REGISTRY]}"
            )
        return _REGISTRY[kind](**kwargs)

    @staticmethod
    def create_defaults(weights: EvaluatorWeights | None = None) -> list[Evaluator]:
        """Create every built-in evaluator weighted from *weights*."""
        weights = weights or EvaluatorWeights()
        evaluators: list[Evaluator] = []
        for kind, field_name in WEIGHT_FIELDS.items():
            if kind not in _REGISTRY:
                continue
            evaluators.append(_REGISTRY[kind](weight=getattr(weights, field_name)))
        logger.debug("Default evaluators: %s", [e.name for e in evaluators])
        return evaluators
