# automapper/pipeline/structure.py
"""Structural analysis: phrases, song sections and the note-count plan."""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence

import numpy as np

from .config import StructureConfig
from .models import (
    EnergyEnvelope,
    NotePlan,
    Onset,
    OnsetType,
    Phrase,
    PhraseType,
    Section,
    SectionPlan,
    SectionType,
    SongStructure,
)

logger = logging.getLogger(__name__)


def classify_phrase(
    phrase: Phrase,
    energy: Optional[EnergyEnvelope],
    config: Optional[StructureConfig] = None,
) -> PhraseType:
    cfg = config or StructureConfig()
    thr = cfg.phrase_thresholds
    onsets = phrase.onsets
    if not onsets:
        return PhraseType.NORMAL

    # Single-onset phrases have zero span; clamp to the minimum phrase length
    duration_ms = max(phrase.end - phrase.start, cfg.min_phrase_ms)
    density = len(onsets) / (duration_ms / 1000.0)

    avg_energy = 0.0
    if energy is not None:
        m = energy.mean_between(phrase.start, phrase.end, inclusive_end=True)
        avg_energy = m if m is not None else 0.0

    strong_ratio = sum(1 for o in onsets if o.type == OnsetType.STRONG) / len(onsets)

    if density > thr["stream_density"] and avg_energy > thr["stream_energy"]:
        return PhraseType.STREAM
    if density > thr["burst_density"] and strong_ratio > thr["burst_strong_ratio"]:
        return PhraseType.BURST
    if strong_ratio > thr["accent_strong_ratio"] and density < thr["accent_max_density"]:
        return PhraseType.ACCENT
    if density < thr["sparse_density"]:
        return PhraseType.SPARSE
    if any(o.type == OnsetType.SUSTAINED for o in onsets):
        return PhraseType.FLOWING
    return PhraseType.NORMAL


def group_into_phrases(
    onsets: Sequence[Onset],
    energy: Optional[EnergyEnvelope] = None,
    config: Optional[StructureConfig] = None,
) -> List[Phrase]:
    """Cluster onsets into phrases split on silence gaps or a maximum length."""
    cfg = config or StructureConfig()
    if not onsets:
        return []

    phrases: List[Phrase] = []
    current: List[Onset] = [onsets[0]]

    def _close(group: List[Onset]) -> None:
        phrase = Phrase(start=group[0].time, end=group[-1].time, onsets=list(group))
        phrase.type = classify_phrase(phrase, energy, cfg)
        phrases.append(phrase)

    for prev, onset in zip(onsets, onsets[1:]):
        gap = onset.time - prev.time
        length = onset.time - current[0].time
        if gap > cfg.phrase_gap_ms or length > cfg.max_phrase_ms:
            _close(current)
            current = [onset]
        else:
            current.append(onset)

    _close(current)
    return phrases


def analyze_song_structure(
    energy: Optional[EnergyEnvelope],
    onsets: Sequence[Onset],
    duration_ms: float,
    config: Optional[StructureConfig] = None,
) -> SongStructure:
    """Cut the track into fixed segments and label each one.

    Labels are decided by position and by segment energy relative to the
    mean over all segments.
    """
    cfg = config or StructureConfig()
    if duration_ms <= 0:
        return SongStructure(sections=[], duration_ms=0.0, avg_energy=0.0)

    onset_times = np.asarray([o.time for o in onsets], dtype=np.float64)
    seg = float(cfg.segment_ms)

    sections: List[Section] = []
    for start in np.arange(0.0, float(duration_ms), seg):
        start = float(start)
        end = min(start + seg, float(duration_ms))
        seg_energy = None
        if energy is not None:
            seg_energy = energy.mean_between(start, start + seg)
        count = int(np.sum((onset_times >= start) & (onset_times < start + seg))) if onset_times.size else 0
        seconds = max((end - start) / 1000.0, 1e-3)
        sections.append(Section(
            start=start,
            end=end,
            energy=seg_energy if seg_energy is not None else 0.0,
            onset_density=count / seconds,
        ))

    avg = float(np.mean([s.energy for s in sections])) if sections else 0.0

    for s in sections:
        if s.start < duration_ms * cfg.intro_fraction and s.energy < avg * cfg.intro_energy_ratio:
            s.type = SectionType.INTRO
        elif s.start > duration_ms * cfg.outro_fraction:
            s.type = SectionType.OUTRO
        elif s.energy > avg * cfg.chorus_energy_ratio:
            s.type = SectionType.CHORUS
        elif s.energy > avg * cfg.bridge_energy_ratio and s.onset_density < cfg.bridge_max_onset_density:
            s.type = SectionType.BRIDGE
        else:
            s.type = SectionType.VERSE

    logger.debug(
        "analyze_song_structure: %s",
        ", ".join(f"{s.type.value}@{s.start / 1000.0:.0f}s" for s in sections),
    )
    return SongStructure(sections=sections, duration_ms=float(duration_ms), avg_energy=avg)


def plan_note_distribution(
    structure: SongStructure,
    difficulty: int,
    config: Optional[StructureConfig] = None,
) -> NotePlan:
    """Target note count per section from difficulty and section type."""
    cfg = config or StructureConfig()
    base = float(cfg.base_notes_per_sec.get(int(difficulty), 4.0))

    plans: List[SectionPlan] = []
    for s in structure.sections:
        mult = float(cfg.section_density.get(s.type.value, 1.0))
        seconds = (s.end - s.start) / 1000.0
        plans.append(SectionPlan(
            start=s.start,
            end=s.end,
            type=s.type,
            target_notes=int(math.floor(seconds * base * mult)),
            density_multiplier=mult,
        ))

    return NotePlan(
        target_notes=sum(p.target_notes for p in plans),
        sections=plans,
        base_notes_per_sec=base,
    )
