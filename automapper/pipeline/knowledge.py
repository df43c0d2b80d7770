# automapper/pipeline/knowledge.py
"""
Frequency tables used for zone choice.

``ExpertKnowledgeBase`` is the hand-authored stand-in for a trained model.
``ZoneTables`` indexes either source by the context each lookup needs, so
the per-note strategies only do dictionary reads plus one
:func:`weighted_select`.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Hashable, List, Mapping, Optional, Tuple, TypeVar

from .models import NUM_ZONES, TrainedModel

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


def weighted_select(table: Mapping[K, float], rng: random.Random) -> Optional[K]:
    """
    Pick one key with probability proportional to its frequency.

    Draws ``r ~ U(0, total)`` and subtracts frequencies in iteration order
    until ``r <= 0``.  Returns None for an empty or zero-mass table; if
    floating-point residue leaves ``r`` positive after the last key, the
    first key is returned.
    """
    if not table:
        return None
    total = float(sum(table.values()))
    if total <= 0.0:
        return None
    r = rng.random() * total
    for key, freq in table.items():
        r -= float(freq)
        if r <= 0.0:
            return key
    return next(iter(table))


# ------------------------------------------------------------
# Key parsing (trained tables are keyed by strings)
# ------------------------------------------------------------

def parse_pattern(text: str) -> Tuple[int, ...]:
    return tuple(int(z) for z in text.split(","))


def format_pattern(zones) -> str:
    return ",".join(str(int(z)) for z in zones)


def parse_transition(key: str) -> Optional[Tuple[int, int]]:
    """``"a->b"`` -> (a, b)."""
    try:
        a, b = key.split("->", 1)
        return int(a), int(b)
    except ValueError:
        return None


def parse_energy_key(key: str) -> Optional[Tuple[int, int]]:
    """``"E{bucket}:Z{zone}"`` -> (bucket, zone)."""
    if not key.startswith("E") or ":Z" not in key:
        return None
    try:
        bucket, zone = key[1:].split(":Z", 1)
        return int(bucket), int(zone)
    except ValueError:
        return None


def energy_bucket(level: float) -> int:
    return int(max(0, min(10, int(level * 10))))


# ------------------------------------------------------------
# Expert knowledge base
# ------------------------------------------------------------

def _expert_transitions() -> Dict[str, int]:
    table: Dict[str, int] = {}
    for z in range(NUM_ZONES):
        table[f"{z}->{(z + 1) % NUM_ZONES}"] = 85
        table[f"{z}->{(z + 5) % NUM_ZONES}"] = 80
        table[f"{z}->{(z + 3) % NUM_ZONES}"] = 45
        table[f"{z}->{(z + 2) % NUM_ZONES}"] = 35
    return table


def _expert_patterns() -> Dict[str, int]:
    table: Dict[str, int] = {}
    for z in range(NUM_ZONES):  # clockwise runs
        table[format_pattern([z, (z + 1) % 6, (z + 2) % 6])] = 50
    for p in ("0,5,4", "1,0,5", "2,1,0"):  # counter-clockwise
        table[p] = 45
    for p in ("0,3,0", "1,4,1", "2,5,2"):  # alternating
        table[p] = 40
    for p in ("0,2,4", "1,3,5"):  # triangles
        table[p] = 35
    for p in ("0,3,1", "1,4,2", "2,5,3"):  # crosses
        table[p] = 30
    return table


def _expert_energy_zones() -> Dict[str, int]:
    rows = {
        0: {0: 20, 1: 20, 2: 15},
        1: {0: 20, 1: 20, 5: 15},
        2: {1: 20, 2: 20, 0: 15},
        3: {2: 20, 3: 20, 1: 15},
        4: {0: 15, 1: 15, 3: 15, 4: 10},
        5: {1: 15, 2: 15, 4: 15, 5: 10},
        6: {2: 15, 3: 15, 5: 15, 0: 10},
    }
    for bucket in range(7, 11):
        rows[bucket] = {z: 12 for z in range(NUM_ZONES)}
    return {f"E{b}:Z{z}": f for b, zones in rows.items() for z, f in zones.items()}


@dataclass(frozen=True)
class ExpertKnowledgeBase:
    transitions: Dict[str, int] = field(default_factory=_expert_transitions)
    patterns: Dict[str, int] = field(default_factory=_expert_patterns)
    energy_zones: Dict[str, int] = field(default_factory=_expert_energy_zones)
    circular_flows: List[List[int]] = field(
        default_factory=lambda: [
            [0, 1, 2, 3, 4, 5],
            [5, 4, 3, 2, 1, 0],
            [0, 2, 4, 1, 3, 5],
            [0, 3, 1, 4, 2, 5],
        ]
    )
    bursts: List[List[int]] = field(
        default_factory=lambda: [[0, 2, 4], [1, 3, 5], [0, 1, 2], [3, 4, 5]]
    )
    triangles: List[List[int]] = field(default_factory=lambda: [[0, 2, 4], [1, 3, 5]])


EXPERT_KNOWLEDGE = ExpertKnowledgeBase()


# ------------------------------------------------------------
# Lookup index
# ------------------------------------------------------------

@dataclass(frozen=True)
class ZoneTables:
    """Context-indexed view over a model's frequency tables."""
    source: str
    transitions: Dict[int, Dict[int, float]]                # last zone -> next zone
    energy_zones: Dict[int, Dict[int, float]]               # bucket -> zone
    continuations: Dict[str, Dict[int, float]]              # recent 3-gram -> next zone
    context_next: Dict[int, Dict[int, float]] = field(default_factory=dict)
    contexts: FrozenSet[str] = frozenset()

    @classmethod
    def from_model(cls, model: TrainedModel) -> "ZoneTables":
        transitions: Dict[int, Dict[int, float]] = {}
        for key, freq in model.zone_transitions.items():
            parsed = parse_transition(key)
            if parsed is None or freq <= 0:
                continue
            a, b = parsed
            transitions.setdefault(a, {})[b] = float(freq)

        energy: Dict[int, Dict[int, float]] = {}
        for key, freq in model.energy_based_zones.items():
            parsed = parse_energy_key(key)
            if parsed is None:
                continue
            bucket, zone = parsed
            energy.setdefault(bucket, {})[zone] = float(freq)

        # "a,b,c=>d,e,f": after a,b,c comes d
        continuations: Dict[str, Dict[int, float]] = {}
        for key, freq in model.pattern_transitions.items():
            head, sep, tail = key.partition("=>")
            if not sep or not tail:
                continue
            try:
                first = parse_pattern(tail)[0]
            except ValueError:
                continue
            row = continuations.setdefault(head, {})
            row[first] = row.get(first, 0.0) + float(freq)

        # "p:a,b,c": zone p was followed by a
        context_next: Dict[int, Dict[int, float]] = {}
        for key, freq in model.contextual_patterns.items():
            prev, sep, pattern = key.partition(":")
            if not sep:
                continue
            try:
                p = int(prev)
                first = parse_pattern(pattern)[0]
            except ValueError:
                continue
            row = context_next.setdefault(p, {})
            row[first] = row.get(first, 0.0) + float(freq)

        return cls(
            source="trained",
            transitions=transitions,
            energy_zones=energy,
            continuations=continuations,
            context_next=context_next,
            contexts=frozenset(model.contextual_patterns.keys()),
        )

    @classmethod
    def from_expert(cls, kb: Optional[ExpertKnowledgeBase] = None) -> "ZoneTables":
        kb = kb or EXPERT_KNOWLEDGE
        transitions: Dict[int, Dict[int, float]] = {}
        for key, freq in kb.transitions.items():
            parsed = parse_transition(key)
            if parsed is not None:
                transitions.setdefault(parsed[0], {})[parsed[1]] = float(freq)

        energy: Dict[int, Dict[int, float]] = {}
        for key, freq in kb.energy_zones.items():
            parsed = parse_energy_key(key)
            if parsed is not None:
                energy.setdefault(parsed[0], {})[parsed[1]] = float(freq)

        # A known 3-gram continues with any known pattern that starts with its last two zones
        continuations: Dict[str, Dict[int, float]] = {}
        parsed_patterns = [(parse_pattern(p), float(f)) for p, f in kb.patterns.items()]
        for zones, _ in parsed_patterns:
            row: Dict[int, float] = {}
            for other, freq in parsed_patterns:
                if other[:2] == zones[1:]:
                    row[other[2]] = freq
            if row:
                continuations[format_pattern(zones)] = row

        return cls(
            source="expert",
            transitions=transitions,
            energy_zones=energy,
            continuations=continuations,
        )
