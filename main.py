"""
RTFE — Realtime Feedback Engine
===============================
CLI demo.  Evaluates a scripted discussion turn by turn and prints the
feedback for each utterance.  Run with::

    python main.py --topic "remote work" "INTJ=Our strategy should follow the evidence."
    python main.py --script discussion.json --preset high-quality

A script file is a JSON list of ``{"participant": ..., "text": ...}``
objects (an optional ``"phase"`` key switches the discussion phase).

Environment variables (all optional):
    RTFE_OPTIMIZATION_STRATEGY   balanced | quality-focused | ...
    RTFE_REALTIME_OPTIMIZATION   true / false
    RTFE_LEARNING_RATE           optimizer EMA step size
    RTFE_ARCHIVE_DB              SQLite path used with --archive
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import textwrap
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()  # Load .env file if present

from pydantic import ValidationError

from rtfe.archive import EvaluationArchive
from rtfe.config import FeedbackConfiguration, OptimizationStrategy
from rtfe.coordinator import FeedbackCoordinator
from rtfe.schemas import DiscussionPhase, EvaluationContext, FeedbackResult


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="RTFE: Realtime Feedback Engine demo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python main.py --topic "AI policy" "INTJ=We need a long-term plan." "ENFP=Imagine the possibilities."
              python main.py --phase interaction --strategy diversity-focused "ISTJ=For example, last year..."
              python main.py --script discussion.json --archive
        """),
    )
    parser.add_argument(
        "turns",
        nargs="*",
        metavar="PARTICIPANT=TEXT",
        help="Utterances to evaluate, in order.",
    )
    parser.add_argument(
        "--script",
        type=Path,
        default=None,
        help="JSON file with a list of {participant, text[, phase]} turns.",
    )
    parser.add_argument(
        "--topic",
        type=str,
        default="the proposal under discussion",
        help="Discussion topic.",
    )
    parser.add_argument(
        "--phase",
        choices=[p.value for p in DiscussionPhase],
        default=DiscussionPhase.INITIAL.value,
        help="Starting discussion phase (default: initial).",
    )
    parser.add_argument(
        "--preset",
        choices=["high-quality", "diversity", "efficiency", "balanced"],
        default=None,
        help="Start from a named configuration preset.",
    )
    parser.add_argument(
        "--strategy",
        choices=[s.value for s in OptimizationStrategy],
        default=None,
        help="Override the optimization strategy.",
    )
    parser.add_argument(
        "--archive",
        action="store_true",
        help="Store every evaluation in the SQLite archive (RTFE_ARCHIVE_DB).",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable DEBUG logging.",
    )
    return parser.parse_args()


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_turns(args: argparse.Namespace) -> list[dict[str, str]]:
    turns: list[dict[str, str]] = []
    if args.script:
        data = json.loads(args.script.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError(f"{args.script} must contain a JSON list of turns")
        for item in data:
            turns.append({
                "participant": str(item["participant"]),
                "text": str(item["text"]),
                **({"phase": str(item["phase"])} if "phase" in item else {}),
            })
    for raw in args.turns:
        participant, sep, text = raw.partition("=")
        if not sep or not participant.strip():
            raise ValueError(f"Expected PARTICIPANT=TEXT, got {raw!r}")
        turns.append({"participant": participant.strip(), "text": text.strip()})
    return turns


def _build_config(args: argparse.Namespace) -> FeedbackConfiguration:
    base = FeedbackConfiguration.preset(args.preset) if args.preset else None
    config = FeedbackConfiguration.from_env(base)
    if args.strategy:
        config = config.merged({"optimization_strategy": args.strategy})
    return config


def _print_result(turn: int, text: str, result: FeedbackResult) -> None:
    sep = "=" * 72
    s = result.scores
    print(f"\n{sep}")
    print(f"  Turn {turn}: {result.participant_id}")
    print(sep)
    print(f"  \"{textwrap.shorten(text, width=66)}\"")
    print(f"\n  Overall          : {s.overall_score:.3f}{'  (fallback)' if result.is_fallback else ''}")
    print(f"  Performance      : {s.performance:.3f}")
    print(f"  Psychological    : {s.psychological:.3f}")
    print(f"  Content quality  : {s.content_quality:.3f}")
    print(f"  Alignment        : {s.participant_alignment:.3f}")
    print(f"  Confidence       : {result.confidence:.2f}")
    print(f"  Contribution     : {result.quality_contribution:.3f}")
    print(f"\n  {result.feedback.feedback}")
    for item in result.feedback.improvements:
        print(f"    • {item}")
    print(f"\n  {result.next_guidance}")
    print(sep)


async def _main() -> None:
    args = _parse_args()
    _configure_logging(args.verbose)

    try:
        turns = _load_turns(args)
        config = _build_config(args)
    except (OSError, ValueError, KeyError, ValidationError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)

    if not turns:
        print("ERROR: No turns given. Pass PARTICIPANT=TEXT arguments or --script.", file=sys.stderr)
        sys.exit(1)

    coordinator = FeedbackCoordinator(
        config=config,
        archive=EvaluationArchive() if args.archive else None,
    )
    await coordinator.initialize()
    coordinator.set_phase(args.phase)

    print(f"Topic: {args.topic}")
    print(f"Strategy: {config.optimization_strategy.value}\n")

    for turn, item in enumerate(turns, start=1):
        if "phase" in item:
            coordinator.set_phase(item["phase"])
        ctx = EvaluationContext(
            utterance=item["text"],
            topic=args.topic,
            participant_id=item["participant"],
            phase=coordinator.phase,
            turn_number=turn,
            current_weight=coordinator.participant_weights().get(item["participant"], 1.0),
        )
        result = await coordinator.evaluate_statement(ctx)
        _print_result(turn, item["text"], result)

    print("\nFinal weights:")
    for pid, weight in sorted(coordinator.participant_weights().items()):
        print(f"  {pid:<8} {weight:.3f}")
    metrics = coordinator.get_metrics()
    print(
        f"\nEvaluations: {metrics.evaluation_count}  "
        f"avg quality: {metrics.average_quality:.3f}  "
        f"balance: {metrics.participant_balance:.2f}  "
        f"health: {metrics.health.value}"
    )
    await coordinator.shutdown()


if __name__ == "__main__":
    asyncio.run(_main())
