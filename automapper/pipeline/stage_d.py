"""
Stage D: Post-Processing

Ordered passes over the zoned note list:

1. chord injection
2. linear-to-circular adaptation (models trained on lane-based formats)
3. style enhancement (bursts, even flows, symmetry, smoothing, climax)
4. playability enforcement

Notes that share a timestamp form one "hit" (a chord).  The style and
playability passes work on these hits so a chord is spaced, moved and
deleted as a unit.
"""

from __future__ import annotations

import bisect
import logging
import math
import random
from dataclasses import replace
from typing import Any, Dict, List, Optional

import numpy as np

from .config import (
    ChordConfig,
    GenerationOptions,
    PipelineConfig,
    PlayabilityConfig,
    StyleConfig,
)
from .knowledge import EXPERT_KNOWLEDGE, ExpertKnowledgeBase
from .models import (
    NUM_ZONES,
    FeatureBundle,
    Note,
    NoteType,
    TrainedModel,
)
from .zones import detect_flow

logger = logging.getLogger(__name__)


def group_by_time(notes: List[Note]) -> List[List[Note]]:
    """Sort notes and bucket those sharing a timestamp; regular notes lead each bucket."""
    ordered = sorted(notes, key=lambda n: (n.time, n.type != NoteType.REGULAR))
    groups: List[List[Note]] = []
    for n in ordered:
        if groups and groups[-1][0].time == n.time:
            groups[-1].append(n)
        else:
            groups.append([n])
    return groups


def _flatten(groups: List[List[Note]]) -> List[Note]:
    return [n for g in groups for n in g]


def _set_group_time(group: List[Note], time_ms: float) -> None:
    for n in group:
        n.time = time_ms


# ------------------------------------------------------------
# 1. Chords
# ------------------------------------------------------------

def _chord_zones(
    zone: int,
    chord_roll: float,
    strong_hit: bool,
    difficulty: int,
    cfg: ChordConfig,
    rng: random.Random,
    kb: ExpertKnowledgeBase,
) -> List[int]:
    opposite = [(zone + 3) % NUM_ZONES]

    if strong_hit and difficulty >= cfg.triangle_min_difficulty:
        if chord_roll < cfg.opposite_cutoff:
            return opposite
        if chord_roll < cfg.adjacent_cutoff:
            return [(zone + rng.choice([1, 5])) % NUM_ZONES]
        triangle = next((t for t in kb.triangles if zone in t), kb.triangles[0])
        return [z for z in triangle if z != zone]

    if chord_roll < cfg.opposite_cutoff or strong_hit:
        return opposite
    if chord_roll < cfg.adjacent_cutoff and difficulty >= cfg.adjacent_min_difficulty:
        return [(zone + rng.choice([1, 5])) % NUM_ZONES]
    return []


def inject_chords(
    notes: List[Note],
    difficulty: int,
    features: FeatureBundle,
    config: Optional[ChordConfig] = None,
    rng: Optional[random.Random] = None,
    kb: Optional[ExpertKnowledgeBase] = None,
) -> List[Note]:
    """
    Add simultaneous notes at musically emphasised, well-separated hits.

    ``notes`` must be time-sorted regular notes; it is extended in place
    and re-sorted.  Returns the added chord notes.
    """
    cfg = config or ChordConfig()
    rng = rng or random.Random()
    kb = kb or EXPERT_KNOWLEDGE
    if len(notes) < cfg.min_notes:
        return []

    avg = features.avg_energy
    base = float(cfg.base_chance.get(int(difficulty), 0.08))
    added: List[Note] = []

    for i in range(1, len(notes) - 1):
        note = notes[i]
        since_prev = note.time - notes[i - 1].time
        to_next = notes[i + 1].time - note.time
        if since_prev < cfg.min_clearance_ms or to_next < cfg.min_clearance_ms:
            continue
        if any(abs(c.time - note.time) < cfg.dedupe_window_ms for c in added):
            continue

        energy = features.energy_at(note.time)
        rel_energy = energy / avg if avg > 0 else 0.0
        phrase = features.phrase_at(note.time)

        chance = base
        if phrase is not None:
            span = phrase.end - phrase.start
            if span > 0 and (note.time - phrase.start) / span > cfg.phrase_end_progress:
                chance += cfg.phrase_end_boost
        if rel_energy > cfg.strong_energy_ratio:
            chance += cfg.strong_boost
        elif rel_energy > cfg.medium_energy_ratio:
            chance += cfg.medium_boost
        if phrase is not None:
            chance += cfg.phrase_type_boost.get(phrase.type.value, 0.0)
        if since_prev > cfg.isolation_gap_ms or to_next > cfg.isolation_gap_ms:
            chance += cfg.isolation_boost
        chance = min(cfg.max_chance, max(0.0, chance))

        if rng.random() > chance:
            continue

        roll = rng.random()
        strong = rel_energy > cfg.strong_energy_ratio
        for z in _chord_zones(note.zone, roll, strong, difficulty, cfg, rng, kb):
            added.append(Note(time=note.time, zone=z, type=NoteType.CHORD))

    notes.extend(added)
    notes.sort(key=lambda n: (n.time, n.type != NoteType.REGULAR))
    return added


# ------------------------------------------------------------
# 2. Linear -> circular
# ------------------------------------------------------------

def adapt_linear_to_circular(notes: List[Note]) -> int:
    """
    Rewrite lane-game idioms into circular flow, in place.

    Zigzags ``[a, b, a, b]`` become a clockwise run from ``a``; monotonic
    staircases with a step larger than 2 become unit steps in the same
    direction.  Only regular notes are considered.  Returns the number of
    rewritten windows.
    """
    seq = [n for n in notes if n.type == NoteType.REGULAR]
    rewritten = 0
    for i in range(len(seq) - 3):
        window = seq[i:i + 4]
        zones = [n.zone for n in window]

        if zones[0] == zones[2] and zones[1] == zones[3] and zones[0] != zones[1]:
            start = zones[0]
            for j, n in enumerate(window):
                n.zone = (start + j) % NUM_ZONES
            rewritten += 1
            zones = [n.zone for n in window]

        diffs = [b - a for a, b in zip(zones, zones[1:])]
        rising = all(d > 0 for d in diffs)
        falling = all(d < 0 for d in diffs)
        if (rising or falling) and max(abs(d) for d in diffs) > 2:
            step = 1 if rising else -1
            for j in range(1, 4):
                window[j].zone = (window[j - 1].zone + step) % NUM_ZONES
            rewritten += 1
    return rewritten


# ------------------------------------------------------------
# 3. Style
# ------------------------------------------------------------

def add_bursts(
    notes: List[Note],
    difficulty: int,
    config: Optional[StyleConfig] = None,
    rng: Optional[random.Random] = None,
    kb: Optional[ExpertKnowledgeBase] = None,
) -> int:
    """Insert short burst runs after dense hits that are followed by a gap."""
    cfg = config or StyleConfig()
    rng = rng or random.Random()
    kb = kb or EXPERT_KNOWLEDGE
    groups = group_by_time(notes)

    candidates = []
    for i in range(1, len(groups) - 1):
        interval = groups[i][0].time - groups[i - 1][0].time
        next_interval = groups[i + 1][0].time - groups[i][0].time
        if interval < cfg.burst_dense_gap_ms and next_interval > cfg.burst_open_gap_ms:
            candidates.append((1.0 / interval, i))

    candidates.sort(key=lambda c: -c[0])
    count = min(len(candidates), int(math.floor(len(notes) * cfg.burst_fraction)))

    expert_level = difficulty >= 4
    size = 3 if expert_level else 2
    step = cfg.burst_interval_ms["expert" if expert_level else "standard"]

    added = 0
    for _, i in candidates[:count]:
        pattern = rng.choice(kb.bursts)
        anchor = groups[i][0].time
        for b in range(min(size, len(pattern))):
            notes.append(Note(time=anchor + cfg.burst_lead_ms + b * step, zone=pattern[b]))
            added += 1
    return added


def enhance_flows(notes: List[Note]) -> int:
    """Evenly re-time every four-hit window whose zones rotate one way."""
    groups = group_by_time(notes)
    changed = 0
    for i in range(len(groups) - 3):
        window = groups[i:i + 4]
        if not detect_flow([g[0].zone for g in window]):
            continue
        t0 = window[0][0].time
        step = (window[3][0].time - t0) / 3.0
        for j in (1, 2):
            _set_group_time(window[j], t0 + step * j)
        changed += 1
    return changed


def add_symmetry(
    notes: List[Note],
    config: Optional[StyleConfig] = None,
    rng: Optional[random.Random] = None,
) -> int:
    """Occasionally answer a hit with its opposite zone inside a wide gap."""
    cfg = config or StyleConfig()
    rng = rng or random.Random()
    groups = group_by_time(notes)
    added = 0
    for a, b in zip(groups, groups[1:]):
        gap = b[0].time - a[0].time
        if gap > cfg.symmetry_gap_ms and rng.random() < cfg.symmetry_chance:
            notes.append(Note(time=a[0].time + cfg.symmetry_offset_ms, zone=(a[0].zone + 3) % NUM_ZONES))
            added += 1
    return added


def smooth_transitions(
    notes: List[Note],
    config: Optional[StyleConfig] = None,
    rng: Optional[random.Random] = None,
) -> int:
    """
    Break back-to-back wide jumps by pulling the middle hit next to its predecessor.

    Jump width is the plain index difference, so 0 -> 4 counts as wide even
    though it is two steps around the ring.
    """
    cfg = config or StyleConfig()
    rng = rng or random.Random()
    heads = [g[0] for g in group_by_time(notes)]
    smoothed = 0
    for i in range(2, len(heads)):
        d1 = abs(heads[i - 1].zone - heads[i - 2].zone)
        d2 = abs(heads[i].zone - heads[i - 1].zone)
        if d1 >= cfg.smoothing_jump and d2 >= cfg.smoothing_jump and rng.random() < cfg.smoothing_chance:
            heads[i - 1].zone = (heads[i - 2].zone + rng.choice([1, 5])) % NUM_ZONES
            smoothed += 1
    return smoothed


def enhance_climax(
    notes: List[Note],
    difficulty: int,
    config: Optional[StyleConfig] = None,
    rng: Optional[random.Random] = None,
    kb: Optional[ExpertKnowledgeBase] = None,
) -> Optional[float]:
    """Overlay a clockwise run on the densest window. Returns the climax start time."""
    cfg = config or StyleConfig()
    rng = rng or random.Random()
    kb = kb or EXPERT_KNOWLEDGE
    groups = group_by_time(notes)
    size = cfg.climax_window
    if len(groups) < cfg.climax_min_notes or difficulty < cfg.climax_min_difficulty:
        return None

    best_i, best_density = 0, 0.0
    for i in range(len(groups) - size + 1):
        span = groups[i + size - 1][0].time - groups[i][0].time
        if span <= 0:
            continue
        density = size / (span / 1000.0)
        if density > best_density:
            best_density, best_i = density, i

    flow = kb.circular_flows[0]
    for j in range(min(size, len(flow))):
        if rng.random() < cfg.climax_chance:
            groups[best_i + j][0].zone = flow[j]
    return groups[best_i][0].time


def enhance_style(
    notes: List[Note],
    difficulty: int,
    intensity: float,
    config: Optional[StyleConfig] = None,
    rng: Optional[random.Random] = None,
    kb: Optional[ExpertKnowledgeBase] = None,
) -> Dict[str, Any]:
    """Run the five style passes in order, in place. Returns per-pass counts."""
    cfg = config or StyleConfig()
    rng = rng or random.Random()
    stats: Dict[str, Any] = {"bursts": 0, "flows": 0, "symmetry": 0, "smoothed": 0}

    if intensity > cfg.burst_min_intensity and difficulty >= cfg.burst_min_difficulty:
        stats["bursts"] = add_bursts(notes, difficulty, cfg, rng, kb)
    stats["flows"] = enhance_flows(notes)
    if intensity > cfg.symmetry_min_intensity:
        stats["symmetry"] = add_symmetry(notes, cfg, rng)
    stats["smoothed"] = smooth_transitions(notes, cfg, rng)
    stats["climax_start"] = enhance_climax(notes, difficulty, cfg, rng, kb)

    notes.sort(key=lambda n: (n.time, n.type != NoteType.REGULAR))
    return stats


# ------------------------------------------------------------
# 4. Playability
# ------------------------------------------------------------

def _quantize(t: float, grid: float) -> float:
    return math.floor(t / grid + 0.5) * grid


def enforce_playability(
    notes: List[Note],
    difficulty: int,
    bpm: float = 120.0,
    config: Optional[PlayabilityConfig] = None,
    rng: Optional[random.Random] = None,
) -> List[Note]:
    """
    Fixed-order cleanup, returning a new time-sorted list.

    (i) minimum gap between hits; (ii) collapse 150 ms triples;
    (iii) break triple zone repeats; (iv) 1/16 quantisation;
    (v) notes-per-second cap; (vi) drop (time, zone) duplicates.
    Steps (ii), (iv) and (v) only run for the easier difficulties.
    """
    cfg = config or PlayabilityConfig()
    rng = rng or random.Random()
    d = int(difficulty)
    min_gap = float(cfg.min_gap_ms.get(d, 140.0))
    easy = d <= cfg.max_easy_difficulty

    groups = group_by_time(notes)

    # (i) minimum spacing
    kept: List[List[Note]] = []
    for g in groups:
        if kept and g[0].time - kept[-1][0].time < min_gap:
            continue
        kept.append(g)
    groups = kept

    # (ii) rapid-fire triples
    if easy:
        i = len(groups) - 1
        while i >= 2:
            gap1 = groups[i][0].time - groups[i - 1][0].time
            gap2 = groups[i - 1][0].time - groups[i - 2][0].time
            if gap1 < cfg.spam_gap_ms and gap2 < cfg.spam_gap_ms:
                del groups[i - 1]
                i = min(i - 1, len(groups) - 1)
                continue
            i -= 1

    # (iii) same zone three times running
    for i in range(2, len(groups)):
        a, b, c = groups[i - 2][0], groups[i - 1][0], groups[i][0]
        if a.zone == b.zone == c.zone:
            b.zone = (b.zone + rng.choice([1, 5])) % NUM_ZONES

    # (iv) quantise to the beat grid unless it would crowd another hit
    if easy and bpm and bpm > 0 and groups:
        grid = 60000.0 / float(bpm) / float(cfg.grid_subdivisions)
        times = np.asarray([g[0].time for g in groups], dtype=np.float64)
        for idx, g in enumerate(groups):
            q = _quantize(times[idx], grid)
            if q == times[idx]:
                continue
            dist = np.abs(times - q)
            dist[idx] = np.inf
            if np.any(dist < min_gap):
                continue
            _set_group_time(g, q)
            times[idx] = q
        groups.sort(key=lambda g: g[0].time)

    # (v) density cap over a sliding one-second window
    if easy:
        cap = int(cfg.max_notes_per_second.get(d, 9))
        times_list = [g[0].time for g in groups]
        for i in range(len(groups) - 1, -1, -1):
            end = bisect.bisect_left(times_list, times_list[i] + 1000.0)
            if end - i > cap:
                del groups[i]
                del times_list[i]

    # (vi) exact duplicates
    out: List[Note] = []
    seen = set()
    for n in _flatten(groups):
        key = (n.time, n.zone)
        if key in seen:
            continue
        seen.add(key)
        out.append(n)

    out.sort(key=lambda n: (n.time, n.type != NoteType.REGULAR, n.zone))
    return out


# ------------------------------------------------------------
# Stage D entry point
# ------------------------------------------------------------

def post_process(
    notes: List[Note],
    features: FeatureBundle,
    options: GenerationOptions,
    model: Optional[TrainedModel] = None,
    config: Optional[PipelineConfig] = None,
    rng: Optional[random.Random] = None,
    diagnostics: Optional[Dict[str, Any]] = None,
    pipeline_logger: Optional[Any] = None,
) -> List[Note]:
    cfg = config or PipelineConfig()
    rng = rng or random.Random()
    diag = diagnostics if diagnostics is not None else {}
    counts = diag.setdefault("counts", {})
    d = options.difficulty

    def _skip(stage: str, err: Exception) -> None:
        if not cfg.tolerate_stage_errors:
            raise err
        logger.warning(f"Stage D {stage} failed, skipping: {err}")
        diag.setdefault("fallbacks", []).append(f"{stage}: {err}")
        if pipeline_logger:
            pipeline_logger.record_fallback("stage_d", f"{stage}: {err}")

    notes = sorted(notes, key=lambda n: n.time)
    counts["notes_before_chords"] = len(notes)

    working = [replace(n) for n in notes]
    try:
        added = inject_chords(working, d, features, cfg.stage_d.chords, rng)
        notes = working
        counts["chords_added"] = len(added)
    except Exception as e:
        _skip("chords", e)
    counts["notes_after_chords"] = len(notes)

    if (
        model is not None
        and options.use_trained_model
        and model.source_format.lower() in cfg.stage_d.linear_formats
    ):
        working = [replace(n) for n in notes]
        try:
            diag["linear_windows_rewritten"] = adapt_linear_to_circular(working)
            notes = working
        except Exception as e:
            _skip("linear_to_circular", e)

    if options.maimai_style and not options.use_trained_model:
        working = [replace(n) for n in notes]
        try:
            diag["style"] = enhance_style(
                working, d, options.maimai_intensity, cfg.stage_d.style, rng
            )
            notes = working
        except Exception as e:
            _skip("style", e)
    counts["notes_after_style"] = len(notes)

    notes = enforce_playability([replace(n) for n in notes], d, options.bpm, cfg.stage_d.playability, rng)
    counts["notes_after_playability"] = len(notes)
    logger.info(
        f"Stage D: {counts['notes_before_chords']} -> {counts['notes_after_chords']} (chords) "
        f"-> {len(notes)} playable notes"
    )
    return notes
