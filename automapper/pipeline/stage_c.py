"""
Stage C: Candidate Selection

Merges onsets and the beat grid into weighted candidate times, then
walks them in order deciding which ones become notes.
"""

from __future__ import annotations

import logging
import math
import random
from typing import Any, Dict, List, Optional, Sequence

from .config import FilterConfig, PipelineConfig
from .models import Candidate, FeatureBundle, Onset

logger = logging.getLogger(__name__)


def _round_ms(t: float) -> int:
    # Half-up rounding so 0.5 ms ties do not depend on parity
    return int(math.floor(float(t) + 0.5))


def smart_combine(
    onsets: Sequence[Onset],
    beats: Sequence[float],
    features: FeatureBundle,
    offset: float = 0.0,
    config: Optional[FilterConfig] = None,
) -> List[Candidate]:
    """
    Onsets become candidates weighted by local energy x onset-type weight.
    Beat-grid points only fill millisecond slots no onset already took,
    at a reduced weight.
    """
    cfg = config or FilterConfig()
    combined: Dict[int, float] = {}

    for onset in onsets:
        energy = features.energy_at(onset.time)
        mult = cfg.onset_type_weights.get(onset.type.value, 1.0)
        combined[_round_ms(onset.time + offset)] = energy * mult

    for beat in beats:
        key = _round_ms(beat + offset)
        if key not in combined:
            combined[key] = features.energy_at(beat) * cfg.beat_weight

    return [Candidate(time=float(t), weight=w) for t, w in sorted(combined.items())]


def density_floor(features: FeatureBundle, difficulty: int, config: PipelineConfig) -> int:
    """Minimum number of accepted candidates for this track and difficulty."""
    base = float(config.structure.base_notes_per_sec.get(int(difficulty), 4.0))
    seconds = features.duration_ms / 1000.0
    floor_count = int(math.floor(seconds * base * config.filter.density_floor_ratio))
    return max(int(features.plan.target_notes), floor_count)


def smart_filter_with_structure(
    candidates: Sequence[Candidate],
    difficulty: int,
    min_interval: float,
    features: FeatureBundle,
    config: Optional[PipelineConfig] = None,
    rng: Optional[random.Random] = None,
    stats: Optional[Dict[str, Any]] = None,
) -> List[float]:
    """
    Probabilistic accept pass followed by a deterministic backfill.

    Accept pass, per candidate in time order:
      1. dynamic interval gate (difficulty, energy, section, local density);
      2. spam guard over the last second;
      3. acceptance draw.
    Backfill: when fewer than the density floor were accepted, the
    highest-weight rejected candidates are added back.
    """
    cfg = config or PipelineConfig()
    fcfg = cfg.filter
    rng = rng or random.Random()
    d = int(difficulty)

    avg_energy = features.avg_energy
    max_energy = features.energy.max if features.energy is not None else 0.0
    target_rate = features.plan.base_notes_per_sec

    accepted: List[float] = []
    accepted_set = set()
    last_time = -float(min_interval)
    density_window: List[float] = []
    spam_window: List[float] = []
    max_per_sec = int(fcfg.max_notes_per_second.get(d, 8))
    base_rate = float(fcfg.base_accept_rate.get(d, 0.80))

    rejected_by_gap = 0
    rejected_by_spam = 0
    rejected_by_draw = 0

    for cand in candidates:
        t = cand.time
        norm_energy = cand.weight / max_energy if max_energy > 0 else 0.0
        energy_factor = cand.weight / avg_energy if avg_energy > 0 else 0.0
        section_mult = features.plan.multiplier_at(t)

        density_window = [x for x in density_window if t - x < fcfg.density_window_ms]
        recent_density = len(density_window) / (fcfg.density_window_ms / 1000.0)
        density_mod = 1.0
        if recent_density > target_rate * fcfg.dense_ratio:
            density_mod = fcfg.dense_factor
        elif recent_density < target_rate * fcfg.sparse_ratio:
            density_mod = fcfg.sparse_factor

        energy_mult = 1.5 - norm_energy * 0.5
        difficulty_mult = 2.0 - d * 0.2
        dynamic_interval = (
            min_interval * difficulty_mult * energy_mult * (1.0 / section_mult) * (1.0 / density_mod)
        )
        if t - last_time < dynamic_interval:
            rejected_by_gap += 1
            continue

        spam_window = [x for x in spam_window if t - x < fcfg.spam_window_ms]
        if len(spam_window) >= max_per_sec and norm_energy < fcfg.spam_energy_override:
            rejected_by_spam += 1
            continue

        if d >= fcfg.aggressive_difficulty:
            place = rng.random() < fcfg.aggressive_accept_rate or norm_energy > fcfg.aggressive_energy
        else:
            chance = min(
                fcfg.max_accept_chance,
                base_rate * section_mult * density_mod
                + norm_energy * fcfg.energy_boost
                + energy_factor * fcfg.weight_boost,
            )
            place = rng.random() < chance

        if not place:
            rejected_by_draw += 1
            continue

        accepted.append(t)
        accepted_set.add(t)
        spam_window.append(t)
        density_window.append(t)
        last_time = t

    accepted_first_pass = len(accepted)
    target = min(density_floor(features, d, cfg), len(candidates))
    if len(accepted) < target:
        remaining = sorted(
            (c for c in candidates if c.time not in accepted_set),
            key=lambda c: (-c.weight, c.time),
        )
        accepted.extend(c.time for c in remaining[: target - len(accepted)])
        accepted.sort()

    if stats is not None:
        stats.update({
            "candidates": len(candidates),
            "accepted_first_pass": accepted_first_pass,
            "backfilled": len(accepted) - accepted_first_pass,
            "target": target,
            "rejected_by_gap": rejected_by_gap,
            "rejected_by_spam": rejected_by_spam,
            "rejected_by_draw": rejected_by_draw,
        })
    return accepted


def select_note_times(
    features: FeatureBundle,
    difficulty: int,
    min_interval: float,
    offset: float = 0.0,
    config: Optional[PipelineConfig] = None,
    rng: Optional[random.Random] = None,
    diagnostics: Optional[Dict[str, Any]] = None,
) -> List[float]:
    """Stage C entry point: combine then filter."""
    cfg = config or PipelineConfig()
    candidates = smart_combine(features.onsets, features.beats, features, offset, cfg.filter)
    stats: Dict[str, Any] = {}
    times = smart_filter_with_structure(
        candidates, difficulty, min_interval, features, cfg, rng=rng, stats=stats
    )
    if diagnostics is not None:
        diagnostics["filter"] = stats
        diagnostics["counts"] = dict(
            diagnostics.get("counts", {}), candidates=len(candidates), filtered=len(times)
        )
    logger.info(
        f"Stage C: {len(candidates)} candidates -> {len(times)} note times "
        f"({stats.get('backfilled', 0)} backfilled, target {stats.get('target', 0)})"
    )
    return times
