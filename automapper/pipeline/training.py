"""
Model Trainer

Folds a corpus of charts into the frequency tables of a
:class:`TrainedModel`.  Training is a pure function of the corpus: no
randomness, no reliance on the previous model.  Charts with fewer than
``MIN_CHART_NOTES`` notes are skipped.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Union

from .converters import convert_from_format
from .knowledge import format_pattern
from .models import NUM_ZONES, Chart, Note, TimingStats, TrainedModel, circular_distance

logger = logging.getLogger(__name__)

MIN_CHART_NOTES = 10
DENSITY_WINDOW_MS = 5000.0
LONG_PATTERN_LENGTHS = range(4, 9)
BUILDUP_RATIO = 1.3
BREAKDOWN_RATIO = 0.7

ChartLike = Union[Chart, Dict[str, Any], str, bytes]


def _coerce_chart(item: ChartLike, source_format: str) -> Optional[Chart]:
    fmt = (source_format or "dsx").lower()
    if fmt != "dsx":
        if isinstance(item, Chart):
            return item
        converted = convert_from_format(item, fmt)
        if converted is not None:
            return converted
        # Already-native charts may be mixed into a foreign corpus
        if isinstance(item, dict) and item.get("notes"):
            return _coerce_chart(item, "dsx")
        return None

    if isinstance(item, Chart):
        return item
    if isinstance(item, dict):
        try:
            return Chart.from_dict(item)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Skipping malformed chart: {e}")
    return None


class _Accumulator:
    """Raw counts and sample lists, collapsed into a TrainedModel by ``build``."""

    def __init__(self) -> None:
        self.zone_transitions: Counter = Counter()
        self.pattern_frequency: Counter = Counter()
        self.contextual_patterns: Counter = Counter()
        self.energy_based_zones: Counter = Counter()
        self.long_patterns: Counter = Counter()
        self.pattern_transitions: Counter = Counter()
        self.zone_proximity: Counter = Counter()
        self.zone_symmetry: Counter = Counter()
        self.rhythm_patterns: Counter = Counter()
        self.intervals_by_transition: Dict[str, List[float]] = {}
        self.timing_patterns: List[float] = []
        self.density_curves: List[List[float]] = []
        self.buildup_patterns: List[List[int]] = []
        self.breakdown_patterns: List[List[int]] = []
        self.difficulty: Dict[int, Dict[str, Any]] = {}
        self.complexity: Dict[int, Dict[str, float]] = {}
        self.charts_by_difficulty: Counter = Counter()

    # --------------------------------------------------------
    def add(self, chart: Chart) -> None:
        notes = sorted(chart.notes, key=lambda n: n.time)
        zones = [int(n.zone) % NUM_ZONES for n in notes]
        times = [float(n.time) for n in notes]
        intervals = [b - a for a, b in zip(times, times[1:])]
        bpm = float(chart.bpm) if chart.bpm and chart.bpm > 0 else 120.0
        beat_ms = 60000.0 / bpm

        # Bigrams, their timing and their circular relationships
        for (a, b), interval in zip(zip(zones, zones[1:]), intervals):
            key = f"{a}->{b}"
            self.zone_transitions[key] += 1
            self.intervals_by_transition.setdefault(key, []).append(interval)
            self.zone_proximity[f"dist{circular_distance(a, b)}"] += 1
            if (a + 3) % NUM_ZONES == b:
                self.zone_symmetry[f"{min(a, b)}-{max(a, b)}"] += 1

        for interval in intervals:
            self.timing_patterns.append(interval)
            # Quarter-beat quantised rhythm motif
            self.rhythm_patterns[round(interval / beat_ms * 4.0) / 4.0] += 1

        # 3-grams with the preceding zone as context
        for i in range(len(zones) - 2):
            pattern = format_pattern(zones[i:i + 3])
            self.pattern_frequency[pattern] += 1
            if i > 0:
                self.contextual_patterns[f"{zones[i - 1]}:{pattern}"] += 1

        for length in LONG_PATTERN_LENGTHS:
            for i in range(len(zones) - length + 1):
                self.long_patterns[f"L{length}:{format_pattern(zones[i:i + length])}"] += 1

        for i in range(len(zones) - 5):
            head = format_pattern(zones[i:i + 3])
            tail = format_pattern(zones[i + 3:i + 6])
            self.pattern_transitions[f"{head}=>{tail}"] += 1

        duration = times[-1] if times and times[-1] > 0 else 1000.0
        self._add_density(notes, duration)
        self._add_difficulty(chart, notes, zones, intervals, duration)

    def _add_density(self, notes: List[Note], duration: float) -> None:
        window_secs = DENSITY_WINDOW_MS / 1000.0
        curve: List[float] = []
        windows: List[List[Note]] = []
        n_windows = int(math.ceil(duration / DENSITY_WINDOW_MS))
        for w in range(n_windows):
            start = w * DENSITY_WINDOW_MS
            in_window = [n for n in notes if start <= n.time < start + DENSITY_WINDOW_MS]
            density = len(in_window) / window_secs
            curve.append(density)
            windows.append(in_window)
            if in_window:
                level = int(math.floor(density * 2))
                for n in in_window:
                    self.energy_based_zones[f"E{level}:Z{n.zone}"] += 1
        self.density_curves.append(curve)

        for i in range(1, len(curve)):
            previous = [n.zone for n in windows[i - 1]]
            if curve[i] > curve[i - 1] * BUILDUP_RATIO and len(previous) >= 3:
                self.buildup_patterns.append(previous)
            if curve[i] < curve[i - 1] * BREAKDOWN_RATIO and len(previous) >= 2:
                self.breakdown_patterns.append(previous)

    def _add_difficulty(
        self,
        chart: Chart,
        notes: List[Note],
        zones: List[int],
        intervals: List[float],
        duration: float,
    ) -> None:
        d = int(chart.difficulty or 3)
        stats = self.difficulty.setdefault(d, {
            "avgInterval": 0.0,
            "avgDensity": 0.0,
            "minInterval": math.inf,
            "maxInterval": 0.0,
            "count": 0,
            "zoneVariety": set(),
            "patternComplexity": 0.0,
        })
        stats["minInterval"] = min(stats["minInterval"], min(intervals))
        stats["maxInterval"] = max(stats["maxInterval"], max(intervals))
        stats["zoneVariety"].update(zones)
        stats["avgInterval"] += sum(intervals) / len(intervals)
        stats["avgDensity"] += len(notes) / (duration / 1000.0)
        stats["patternComplexity"] += len(set(zones)) / float(NUM_ZONES)
        stats["count"] += 1

        changes = sum(1 for a, b in zip(zones, zones[1:]) if a != b)
        metrics = self.complexity.setdefault(d, {"avgZoneChanges": 0.0})
        metrics["avgZoneChanges"] += changes / len(zones)
        self.charts_by_difficulty[d] += 1

    # --------------------------------------------------------
    def build(self, source_format: str, used: int, skipped: int) -> TrainedModel:
        difficulty_scaling: Dict[int, Dict[str, float]] = {}
        for d, stats in sorted(self.difficulty.items()):
            count = stats["count"]
            difficulty_scaling[d] = {
                "avgInterval": stats["avgInterval"] / count,
                "avgDensity": stats["avgDensity"] / count,
                "minInterval": float(stats["minInterval"]),
                "maxInterval": float(stats["maxInterval"]),
                "count": count,
                "zoneVariety": len(stats["zoneVariety"]),
                "patternComplexity": stats["patternComplexity"] / count,
            }

        complexity = {
            d: {"avgZoneChanges": m["avgZoneChanges"] / self.charts_by_difficulty[d]}
            for d, m in sorted(self.complexity.items())
        }

        timing_variance = {
            key: TimingStats.from_intervals(values)
            for key, values in self.intervals_by_transition.items()
        }

        return TrainedModel(
            zone_transitions=dict(self.zone_transitions),
            pattern_frequency=dict(self.pattern_frequency),
            contextual_patterns=dict(self.contextual_patterns),
            energy_based_zones=dict(self.energy_based_zones),
            long_patterns=dict(self.long_patterns),
            pattern_transitions=dict(self.pattern_transitions),
            zone_proximity=dict(self.zone_proximity),
            zone_symmetry=dict(self.zone_symmetry),
            rhythm_patterns=dict(self.rhythm_patterns),
            timing_variance=timing_variance,
            timing_patterns=list(self.timing_patterns),
            density_curves=self.density_curves,
            buildup_patterns=self.buildup_patterns,
            breakdown_patterns=self.breakdown_patterns,
            difficulty_scaling=difficulty_scaling,
            complexity_metrics=complexity,
            source_format=source_format,
            charts_used=used,
            charts_skipped=skipped,
        )


def train_from_charts(charts: Iterable[ChartLike], source_format: str = "dsx") -> TrainedModel:
    """
    Build a new TrainedModel from ``charts``.

    ``source_format`` other than ``"dsx"`` routes every entry through the
    matching converter first.  Charts that fail conversion or have too
    few notes are counted in ``charts_skipped``.
    """
    fmt = (source_format or "dsx").lower()
    acc = _Accumulator()
    used = 0
    skipped = 0

    for item in charts:
        chart = _coerce_chart(item, fmt)
        if chart is None or len(chart.notes) < MIN_CHART_NOTES:
            skipped += 1
            continue
        acc.add(chart)
        used += 1

    model = acc.build(fmt, used, skipped)
    top = sorted(model.zone_transitions.items(), key=lambda kv: -kv[1])[:5]
    logger.info(
        f"Trained on {used} charts ({skipped} skipped, format={fmt}): "
        f"{len(model.zone_transitions)} transitions, {len(model.pattern_frequency)} patterns, "
        f"top transitions={top}"
    )
    return model
