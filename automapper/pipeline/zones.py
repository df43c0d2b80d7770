# automapper/pipeline/zones.py
"""
Zone assignment.

Each accepted note time gets a zone from the first strategy in a fixed
priority list that both applies to the current context and returns a
value:

    trained model -> expert knowledge -> maimai flow -> audio features

A strategy that finds nothing returns None and the next one is tried.
The audio-feature strategy always answers, so every time gets a zone.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .config import GenerationOptions, PipelineConfig, ZoneConfig
from .detectors import band_ratios
from .knowledge import ZoneTables, energy_bucket, format_pattern, weighted_select
from .models import NUM_ZONES, FeatureBundle, Note, NoteType, TrainedModel, signed_step

logger = logging.getLogger(__name__)


@dataclass
class ZoneContext:
    time: float
    history: List[Note]          # most recent placed notes, oldest first
    difficulty: int
    energy_level: float          # 0..1, local energy relative to twice the mean
    options: GenerationOptions
    features: FeatureBundle

    @property
    def last_zone(self) -> int:
        return self.history[-1].zone

    def recent(self, n: int) -> List[int]:
        return [note.zone for note in self.history[-n:]]


# ------------------------------------------------------------
# Shared helpers
# ------------------------------------------------------------

def detect_flow(zones: Sequence[int]) -> bool:
    """True when every step between consecutive zones turns the same way."""
    if len(zones) < 3:
        return False
    diffs = [signed_step(a, b) for a, b in zip(zones, zones[1:])]
    return all(d > 0 for d in diffs) or all(d < 0 for d in diffs)


def continue_flow(zones: Sequence[int], rng: random.Random, continue_chance: float = 0.85) -> int:
    last = zones[-1]
    diff = signed_step(zones[-2], last)
    if rng.random() < continue_chance:
        return (last + diff) % NUM_ZONES
    # Occasionally double the step to break the flow
    return (last + diff * 2) % NUM_ZONES


def adjacent_zone(zone: int, rng: random.Random) -> int:
    return rng.choice([(zone + 1) % NUM_ZONES, (zone + 5) % NUM_ZONES])


def pattern_zone(history: Sequence[Note], difficulty: int, rng: random.Random) -> int:
    """Repeat the last zone or jump, jumping more often at higher difficulty."""
    if not history:
        return rng.randrange(NUM_ZONES)
    last = history[-1].zone
    variety = difficulty / 5.0
    if rng.random() < 0.3 + variety * 0.4:
        new_zone = rng.randrange(NUM_ZONES)
        while new_zone == last and rng.random() < 0.7:
            new_zone = rng.randrange(NUM_ZONES)
        return new_zone
    return last


def apply_variation(zone: int, history: Sequence[Note], difficulty: int, rng: random.Random) -> int:
    """Keep a repeated zone with probability 0.3 + 0.1 * difficulty, else step to a neighbour."""
    if not history:
        return zone
    if zone == history[-1].zone:
        if rng.random() < 0.3 + difficulty * 0.1:
            return zone
        return adjacent_zone(zone, rng)
    return zone


# ------------------------------------------------------------
# Strategies
# ------------------------------------------------------------

class ZoneStrategy:
    name = "base"

    def applies(self, ctx: ZoneContext, rng: random.Random) -> bool:
        return True

    def choose(self, ctx: ZoneContext, rng: random.Random) -> Optional[int]:
        raise NotImplementedError


class TrainedModelStrategy(ZoneStrategy):
    """Lookups against a trained model; None when the model has nothing to say."""
    name = "trained"

    def __init__(self, tables: Optional[ZoneTables], config: Optional[ZoneConfig] = None):
        self.tables = tables
        self.config = config or ZoneConfig()

    def applies(self, ctx: ZoneContext, rng: random.Random) -> bool:
        return (
            self.tables is not None
            and bool(self.tables.transitions)
            and ctx.options.use_trained_model
            and len(ctx.history) > 0
        )

    def choose(self, ctx: ZoneContext, rng: random.Random) -> Optional[int]:
        t = self.tables
        last = ctx.last_zone

        # Contextual pattern: which zone usually follows ``last``
        if len(ctx.history) >= 3 and t.contexts:
            key = f"{last}:{format_pattern(ctx.recent(3))}"
            if key in t.contexts:
                zone = weighted_select(t.context_next.get(last, {}), rng)
                if zone is not None:
                    return zone

        zones = t.energy_zones.get(energy_bucket(ctx.energy_level))
        if zones and rng.random() < self.config.energy_bucket_chance:
            zone = weighted_select(zones, rng)
            if zone is not None:
                return zone

        if len(ctx.history) >= 3:
            zones = t.continuations.get(format_pattern(ctx.recent(3)))
            if zones and rng.random() < self.config.pattern_transition_chance:
                zone = weighted_select(zones, rng)
                if zone is not None:
                    return zone

        return weighted_select(t.transitions.get(last, {}), rng)


class ExpertStrategy(ZoneStrategy):
    """Built-in knowledge base; always produces a zone."""
    name = "expert"

    def __init__(self, tables: Optional[ZoneTables] = None, config: Optional[ZoneConfig] = None):
        self.tables = tables or ZoneTables.from_expert()
        self.config = config or ZoneConfig()

    def applies(self, ctx: ZoneContext, rng: random.Random) -> bool:
        return ctx.options.use_trained_model and len(ctx.history) > 0

    def choose(self, ctx: ZoneContext, rng: random.Random) -> Optional[int]:
        t = self.tables
        last = ctx.last_zone

        if len(ctx.history) >= 3:
            zones = t.continuations.get(format_pattern(ctx.recent(3)))
            if zones and rng.random() < self.config.expert_pattern_chance:
                zone = weighted_select(zones, rng)
                if zone is not None:
                    return zone

        zones = t.energy_zones.get(energy_bucket(ctx.energy_level))
        if zones and rng.random() < self.config.expert_energy_chance:
            zone = weighted_select(zones, rng)
            if zone is not None:
                return zone

        zone = weighted_select(t.transitions.get(last, {}), rng)
        if zone is not None:
            return zone

        # Prefer circular flow over an unrelated jump
        return adjacent_zone(last, rng)


class MaimaiStrategy(ZoneStrategy):
    name = "maimai"

    def __init__(self, config: Optional[ZoneConfig] = None):
        self.config = config or ZoneConfig()

    def applies(self, ctx: ZoneContext, rng: random.Random) -> bool:
        return (
            ctx.options.maimai_style
            and len(ctx.history) >= 2
            and rng.random() < ctx.options.maimai_intensity
        )

    def choose(self, ctx: ZoneContext, rng: random.Random) -> Optional[int]:
        cfg = self.config
        last = ctx.last_zone
        recent = ctx.recent(min(len(ctx.history), cfg.flow_window))

        if detect_flow(recent):
            return continue_flow(recent, rng, cfg.flow_continue_chance)

        if rng.random() < cfg.symmetry_chance:
            return (last + 3) % NUM_ZONES

        if rng.random() < cfg.circular_step_chance:
            return adjacent_zone(last, rng)

        avoid = set(recent[-2:])
        new_zone = rng.randrange(NUM_ZONES)
        while new_zone in avoid and rng.random() < cfg.avoid_repeat_chance:
            new_zone = rng.randrange(NUM_ZONES)
        return new_zone


class AudioFeatureStrategy(ZoneStrategy):
    """Bias zones by the coarse band balance at the note time."""
    name = "audio"

    def choose(self, ctx: ZoneContext, rng: random.Random) -> Optional[int]:
        spectral = ctx.features.spectral
        bands = spectral.bands_at(ctx.time) if spectral is not None else None
        ratios = band_ratios(bands) if bands is not None else None
        if ratios is None:
            return pattern_zone(ctx.history, ctx.difficulty, rng)

        low, mid, high = ratios
        r = rng.random()
        if low > mid and low > high:
            zone = 0 if r < 0.4 else 1 if r < 0.7 else 2 if r < 0.85 else 3
        elif high > low and high > mid:
            zone = 5 if r < 0.4 else 4 if r < 0.7 else 3 if r < 0.85 else 2
        else:
            zone = (
                2 if r < 0.3 else 3 if r < 0.6 else 1 if r < 0.75
                else 4 if r < 0.9 else 0 if r < 0.95 else 5
            )
        return apply_variation(zone, ctx.history, ctx.difficulty, rng)


def build_strategies(
    model: Optional[TrainedModel],
    config: Optional[PipelineConfig] = None,
) -> List[ZoneStrategy]:
    cfg = config or PipelineConfig()
    tables = ZoneTables.from_model(model) if model is not None else None
    return [
        TrainedModelStrategy(tables, cfg.zones),
        ExpertStrategy(config=cfg.zones),
        MaimaiStrategy(cfg.zones),
        AudioFeatureStrategy(),
    ]


def choose_zone(
    ctx: ZoneContext,
    strategies: Sequence[ZoneStrategy],
    rng: random.Random,
) -> Tuple[int, str]:
    if not ctx.history:
        return rng.randrange(NUM_ZONES), "random"
    for strategy in strategies:
        if not strategy.applies(ctx, rng):
            continue
        zone = strategy.choose(ctx, rng)
        if zone is not None:
            return int(zone) % NUM_ZONES, strategy.name
    return pattern_zone(ctx.history, ctx.difficulty, rng), "pattern"


def assign_zones(
    times: Sequence[float],
    features: FeatureBundle,
    options: GenerationOptions,
    model: Optional[TrainedModel] = None,
    config: Optional[PipelineConfig] = None,
    rng: Optional[random.Random] = None,
    strategies: Optional[Sequence[ZoneStrategy]] = None,
) -> Tuple[List[Note], Dict[str, int]]:
    """Assign a zone to every note time; returns the notes and strategy usage counts."""
    cfg = config or PipelineConfig()
    rng = rng or random.Random()
    strategies = list(strategies) if strategies is not None else build_strategies(model, cfg)

    avg = features.avg_energy
    history_size = cfg.zones.history_size
    notes: List[Note] = []
    usage: Dict[str, int] = {}

    for t in times:
        energy = features.energy_at(t)
        level = min(1.0, energy / (avg * 2.0)) if avg > 0 else 0.0
        ctx = ZoneContext(
            time=t,
            history=notes[-history_size:],
            difficulty=options.difficulty,
            energy_level=level,
            options=options,
            features=features,
        )
        zone, source = choose_zone(ctx, strategies, rng)
        usage[source] = usage.get(source, 0) + 1
        notes.append(Note(time=float(round(t)), zone=zone, type=NoteType.REGULAR))

    logger.info(f"Zone assignment: {len(notes)} notes, strategies={usage}")
    return notes, usage
