"""
Participant Profiles
====================
Static lookup tables describing the 16 personality-type participants the
engine is usually run with: cognitive functions, temperament groups, the
group compatibility prior and the trait vocabularies used by the
alignment heuristics.

Participant ids are plain strings.  Ids outside the 16 known types still
work everywhere: they get a neutral profile, a deterministic temperament
group and a 0.5 compatibility prior.
"""

from __future__ import annotations

import zlib
from dataclasses import dataclass, field

from rtfe.schemas import DiscussionPhase

PARTICIPANT_TYPES: tuple[str, ...] = (
    "INTJ", "INTP", "ENTJ", "ENTP",
    "INFJ", "INFP", "ENFJ", "ENFP",
    "ISTJ", "ISFJ", "ESTJ", "ESFJ",
    "ISTP", "ISFP", "ESTP", "ESFP",
)

#: Temperament groups; the index doubles as the latent-graph cluster id.
GROUPS: tuple[str, ...] = ("NT", "NF", "SJ", "SP")

COGNITIVE_FUNCTIONS: dict[str, tuple[str, str]] = {
    "INTJ": ("Ni", "Te"), "INTP": ("Ti", "Ne"), "ENTJ": ("Te", "Ni"), "ENTP": ("Ne", "Ti"),
    "INFJ": ("Ni", "Fe"), "INFP": ("Fi", "Ne"), "ENFJ": ("Fe", "Ni"), "ENFP": ("Ne", "Fi"),
    "ISTJ": ("Si", "Te"), "ISFJ": ("Si", "Fe"), "ESTJ": ("Te", "Si"), "ESFJ": ("Fe", "Si"),
    "ISTP": ("Ti", "Se"), "ISFP": ("Fi", "Se"), "ESTP": ("Se", "Ti"), "ESFP": ("Se", "Fi"),
}

#: 4-element feature vector per cognitive function, used to seed embeddings.
FUNCTION_FEATURES: dict[str, tuple[float, float, float, float]] = {
    "Ni": (1, 0, 1, 0),
    "Ne": (1, 0, 0, 1),
    "Si": (0, 1, 1, 0),
    "Se": (0, 1, 0, 1),
    "Ti": (1, 1, 0, 0),
    "Te": (1, 1, 1, 1),
    "Fi": (0, 0, 1, 0),
    "Fe": (0, 0, 1, 1),
}

#: Per-phase multiplier for each cognitive function.
PHASE_FUNCTION_WEIGHTS: dict[DiscussionPhase, dict[str, float]] = {
    DiscussionPhase.INITIAL: {
        "Ni": 1.3, "Ne": 1.2, "Si": 0.9, "Se": 0.8,
        "Ti": 1.1, "Te": 1.0, "Fi": 0.9, "Fe": 1.0,
    },
    DiscussionPhase.INTERACTION: {
        "Ni": 1.0, "Ne": 1.3, "Si": 1.0, "Se": 1.2,
        "Ti": 1.1, "Te": 1.2, "Fi": 1.1, "Fe": 1.3,
    },
    DiscussionPhase.SYNTHESIS: {
        "Ni": 1.4, "Ne": 1.1, "Si": 1.2, "Se": 0.9,
        "Ti": 1.3, "Te": 1.2, "Fi": 1.0, "Fe": 1.1,
    },
    DiscussionPhase.CONSENSUS: {
        "Ni": 1.1, "Ne": 1.0, "Si": 1.3, "Se": 1.0,
        "Ti": 1.0, "Te": 1.1, "Fi": 1.2, "Fe": 1.4,
    },
}

GROUP_COMPATIBILITY: dict[str, dict[str, float]] = {
    "NT": {"NT": 0.8, "NF": 0.6, "SJ": 0.5, "SP": 0.7},
    "NF": {"NT": 0.6, "NF": 0.9, "SJ": 0.4, "SP": 0.5},
    "SJ": {"NT": 0.5, "NF": 0.4, "SJ": 0.8, "SP": 0.3},
    "SP": {"NT": 0.7, "NF": 0.5, "SJ": 0.3, "SP": 0.8},
}

DEFAULT_COMPATIBILITY = 0.5

#: Trait category → words that signal it in an utterance.
TRAIT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "strategic": ("strategy", "strategic", "long-term", "vision", "roadmap", "plan"),
    "logical": ("logic", "logical", "analysis", "analyze", "because", "therefore", "evidence"),
    "creative": ("idea", "imagine", "possibility", "possibilities", "innovative", "new approach"),
    "concrete": ("for example", "specifically", "in practice", "concrete", "step", "data"),
    "cooperative": ("together", "we ", "everyone", "agree", "collaborate", "team"),
    "empathetic": ("feel", "values", "care", "people", "harmony", "understand"),
}

#: Traits each temperament group is expected to show.
GROUP_TRAITS: dict[str, tuple[str, ...]] = {
    "NT": ("strategic", "logical"),
    "NF": ("creative", "empathetic"),
    "SJ": ("concrete", "cooperative"),
    "SP": ("concrete", "creative"),
}

GROUP_STRATEGIES: dict[str, tuple[str, ...]] = {
    "NT": (
        "Tie the long-term vision to concrete next steps",
        "Acknowledge the human impact of the proposal",
    ),
    "NF": (
        "Back value statements with specific examples",
        "Connect ideals to practical constraints",
    ),
    "SJ": (
        "Consider alternatives beyond established practice",
        "Relate procedures to the bigger picture",
    ),
    "SP": (
        "Link immediate tactics to longer-term goals",
        "Structure the argument before reacting",
    ),
}

NEGATIVE_KEYWORDS: tuple[str, ...] = (
    "discriminat", "violence", "violent", "hate", "exclude them", "stupid", "worthless",
)


@dataclass(frozen=True)
class ParticipantProfile:
    participant_id: str
    group: str
    dominant: str | None = None
    auxiliary: str | None = None
    expected_traits: tuple[str, ...] = field(default_factory=tuple)
    strategies: tuple[str, ...] = field(default_factory=tuple)

    @property
    def cluster(self) -> int:
        return GROUPS.index(self.group)

    @property
    def is_known(self) -> bool:
        return self.dominant is not None


def group_of(participant_id: str) -> str:
    """Return the temperament group (``NT``/``NF``/``SJ``/``SP``) of an id.

    Unknown ids are assigned a group from a stable hash so that repeated
    runs produce the same graph.
    """
    pid = participant_id.upper()
    if pid in COGNITIVE_FUNCTIONS:
        if pid[1] == "N":
            return "NT" if pid[2] == "T" else "NF"
        return "SJ" if pid[3] == "J" else "SP"
    return GROUPS[zlib.crc32(participant_id.encode("utf-8")) % len(GROUPS)]


def profile_for(participant_id: str) -> ParticipantProfile:
    group = group_of(participant_id)
    dominant, auxiliary = COGNITIVE_FUNCTIONS.get(participant_id.upper(), (None, None))
    return ParticipantProfile(
        participant_id=participant_id,
        group=group,
        dominant=dominant,
        auxiliary=auxiliary,
        expected_traits=GROUP_TRAITS[group] if dominant else (),
        strategies=GROUP_STRATEGIES[group],
    )


def compatibility(a: str, b: str) -> float:
    """Static compatibility prior between two participants."""
    pa, pb = a.upper(), b.upper()
    if pa not in COGNITIVE_FUNCTIONS or pb not in COGNITIVE_FUNCTIONS:
        return DEFAULT_COMPATIBILITY
    return GROUP_COMPATIBILITY[group_of(pa)][group_of(pb)]


def cognitive_weight(participant_id: str, phase: DiscussionPhase) -> float:
    """Phase-dependent weight from the dominant (70%) and auxiliary (30%) functions."""
    profile = profile_for(participant_id)
    if not profile.is_known:
        return 1.0
    table = PHASE_FUNCTION_WEIGHTS[phase]
    return table[profile.dominant] * 0.7 + table[profile.auxiliary] * 0.3


def detect_traits(text: str) -> list[str]:
    """Return the trait categories whose keywords occur in *text*."""
    lowered = f" {text.lower()} "
    return [
        trait
        for trait, words in TRAIT_KEYWORDS.items()
        if any(word in lowered for word in words)
    ]
