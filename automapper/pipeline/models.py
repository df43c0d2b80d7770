# automapper/pipeline/models.py
"""Dataclasses and enums shared by the generation stages.

Times are milliseconds throughout; zones are integers in ``range(6)``
arranged clockwise around a circle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Tuple
from enum import Enum
import math
import numpy as np


NUM_ZONES = 6


class NoteType(str, Enum):
    REGULAR = "regular"
    CHORD = "chord"          # extra note sharing a timestamp with a regular note


class OnsetType(str, Enum):
    STRONG = "strong"
    MEDIUM = "medium"
    SUSTAINED = "sustained"
    WEAK = "weak"


class PhraseType(str, Enum):
    STREAM = "stream"
    BURST = "burst"
    ACCENT = "accent"
    SPARSE = "sparse"
    FLOWING = "flowing"
    NORMAL = "normal"


class SectionType(str, Enum):
    INTRO = "intro"
    VERSE = "verse"
    CHORUS = "chorus"
    BRIDGE = "bridge"
    OUTRO = "outro"


def circular_distance(a: int, b: int) -> int:
    """Shortest number of steps between two zones around the circle."""
    d = abs(int(a) - int(b)) % NUM_ZONES
    return min(d, NUM_ZONES - d)


def signed_step(a: int, b: int) -> int:
    """Signed shortest step from zone ``a`` to zone ``b``, wrapped to [-3, 3]."""
    diff = int(b) - int(a)
    if diff > 3:
        diff -= NUM_ZONES
    if diff < -3:
        diff += NUM_ZONES
    return diff


@dataclass
class Note:
    time: float                             # ms
    zone: int                               # 0..5
    type: NoteType = NoteType.REGULAR

    def to_dict(self) -> Dict[str, Any]:
        return {"time": float(self.time), "zone": int(self.zone), "type": self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Note":
        if not isinstance(data, dict):
            raise ValueError(f"note must be an object, got {type(data).__name__}")
        raw_type = data.get("type") or NoteType.REGULAR.value
        try:
            note_type = NoteType(raw_type)
        except ValueError:
            note_type = NoteType.REGULAR
        return cls(time=float(data["time"]), zone=int(data["zone"]) % NUM_ZONES, type=note_type)


@dataclass(frozen=True)
class Onset:
    time: float                             # ms, refined to the attack start
    strength: float                         # window energy / trailing average
    type: OnsetType = OnsetType.WEAK


@dataclass
class Candidate:
    time: float                             # ms, rounded, offset applied
    weight: float


@dataclass
class AudioInput:
    samples: np.ndarray                     # mono float32
    sample_rate: int
    path: Optional[str] = None
    original_sr: Optional[int] = None
    n_channels: int = 1
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_sec(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return float(len(self.samples)) / float(self.sample_rate)

    @property
    def duration_ms(self) -> float:
        return self.duration_sec * 1000.0


class EnergyEnvelope:
    """RMS energy sampled on a regular time grid with nearest-time lookup."""

    def __init__(self, times: np.ndarray, values: np.ndarray):
        self.times = np.asarray(times, dtype=np.float64).reshape(-1)
        self.values = np.asarray(values, dtype=np.float64).reshape(-1)
        if self.times.shape != self.values.shape:
            raise ValueError("energy times and values must have the same length")

    def __len__(self) -> int:
        return int(self.times.size)

    @property
    def mean(self) -> float:
        return float(np.mean(self.values)) if self.values.size else 0.0

    @property
    def max(self) -> float:
        return float(np.max(self.values)) if self.values.size else 0.0

    def nearest_index(self, time_ms: float) -> int:
        idx = int(np.searchsorted(self.times, time_ms))
        if idx <= 0:
            return 0
        if idx >= self.times.size:
            return int(self.times.size - 1)
        before = self.times[idx - 1]
        after = self.times[idx]
        return idx if (after - time_ms) < (time_ms - before) else idx - 1

    def at(self, time_ms: float, default: float = 0.5) -> float:
        if self.times.size == 0:
            return default
        return float(self.values[self.nearest_index(time_ms)])

    def mean_between(self, start_ms: float, end_ms: float, inclusive_end: bool = False) -> Optional[float]:
        """Mean energy of samples in [start, end) (or [start, end]); None when empty."""
        if inclusive_end:
            mask = (self.times >= start_ms) & (self.times <= end_ms)
        else:
            mask = (self.times >= start_ms) & (self.times < end_ms)
        if not np.any(mask):
            return None
        return float(np.mean(self.values[mask]))


class SpectralFrames(EnergyEnvelope):
    """Low / mid / high band amplitudes per frame.

    ``values`` holds the frame total so the nearest-time lookup of
    :class:`EnergyEnvelope` is reused.
    """

    def __init__(self, times: np.ndarray, low: np.ndarray, mid: np.ndarray, high: np.ndarray):
        self.low = np.asarray(low, dtype=np.float64).reshape(-1)
        self.mid = np.asarray(mid, dtype=np.float64).reshape(-1)
        self.high = np.asarray(high, dtype=np.float64).reshape(-1)
        super().__init__(times, self.low + self.mid + self.high)

    def bands_at(self, time_ms: float) -> Optional[Tuple[float, float, float]]:
        if self.times.size == 0:
            return None
        i = self.nearest_index(time_ms)
        return float(self.low[i]), float(self.mid[i]), float(self.high[i])


@dataclass
class Phrase:
    start: float
    end: float
    onsets: List[Onset] = field(default_factory=list)
    type: PhraseType = PhraseType.NORMAL

    def contains(self, time_ms: float) -> bool:
        return self.start <= time_ms <= self.end


@dataclass
class Section:
    start: float
    end: float
    type: SectionType = SectionType.VERSE
    energy: float = 0.0
    onset_density: float = 0.0              # onsets per second


@dataclass
class SongStructure:
    sections: List[Section] = field(default_factory=list)
    duration_ms: float = 0.0
    avg_energy: float = 0.0

    def section_at(self, time_ms: float) -> Optional[Section]:
        for s in self.sections:
            if s.start <= time_ms < s.end:
                return s
        return None


@dataclass
class SectionPlan:
    start: float
    end: float
    type: SectionType
    target_notes: int
    density_multiplier: float


@dataclass
class NotePlan:
    target_notes: int = 0
    sections: List[SectionPlan] = field(default_factory=list)
    base_notes_per_sec: float = 4.0

    def multiplier_at(self, time_ms: float) -> float:
        for s in self.sections:
            if s.start <= time_ms < s.end:
                return s.density_multiplier
        return 1.0


@dataclass
class FeatureBundle:
    """Everything Stage B derives from the signal."""
    duration_ms: float
    onsets: List[Onset] = field(default_factory=list)
    beats: List[float] = field(default_factory=list)
    spectral: Optional[SpectralFrames] = None
    energy: Optional[EnergyEnvelope] = None
    phrases: List[Phrase] = field(default_factory=list)
    structure: SongStructure = field(default_factory=SongStructure)
    plan: NotePlan = field(default_factory=NotePlan)

    @property
    def avg_energy(self) -> float:
        return self.energy.mean if self.energy is not None else 0.0

    def energy_at(self, time_ms: float) -> float:
        if self.energy is None:
            return 0.5
        return self.energy.at(time_ms)

    def phrase_at(self, time_ms: float) -> Optional[Phrase]:
        for p in self.phrases:
            if p.contains(time_ms):
                return p
        return None


# ------------------------------------------------------------
# Charts and trained models
# ------------------------------------------------------------

@dataclass
class Chart:
    notes: List[Note] = field(default_factory=list)
    difficulty: int = 3
    bpm: float = 120.0
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chart":
        """Accept ``{notes: [{time, zone}], meta: {difficulty, bpm}}``."""
        meta = dict(data.get("meta") or {})
        bpm = meta.get("bpm", 120.0)
        if isinstance(bpm, dict):
            bpm = bpm.get("init", 120.0)
        notes = [Note.from_dict(n) for n in (data.get("notes") or [])]
        return cls(
            notes=notes,
            difficulty=int(meta.get("difficulty") or 3),
            bpm=float(bpm or 120.0),
            meta=meta,
        )

    def to_dict(self) -> Dict[str, Any]:
        meta = dict(self.meta)
        meta.update({"difficulty": self.difficulty, "bpm": self.bpm})
        return {"notes": [n.to_dict() for n in self.notes], "meta": meta}


@dataclass(frozen=True)
class TimingStats:
    avg: float
    variance: float
    std_dev: float

    @classmethod
    def from_intervals(cls, intervals: List[float]) -> "TimingStats":
        arr = np.asarray(intervals, dtype=np.float64)
        avg = float(np.mean(arr))
        variance = float(np.mean((arr - avg) ** 2))
        return cls(avg=avg, variance=variance, std_dev=math.sqrt(variance))

    def to_dict(self) -> Dict[str, float]:
        return {"avg": self.avg, "variance": self.variance, "stdDev": self.std_dev}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimingStats":
        return cls(
            avg=float(data.get("avg", 0.0)),
            variance=float(data.get("variance", 0.0)),
            std_dev=float(data.get("stdDev", data.get("std_dev", 0.0))),
        )


# Serialized field name -> attribute name.  The JSON layout keeps the
# camelCase keys of exported model files so they stay portable.
_COUNT_TABLES = {
    "zoneTransitions": "zone_transitions",
    "patternFrequency": "pattern_frequency",
    "contextualPatterns": "contextual_patterns",
    "energyBasedZones": "energy_based_zones",
    "longPatterns": "long_patterns",
    "patternTransitions": "pattern_transitions",
    "zoneProximity": "zone_proximity",
    "zoneSymmetry": "zone_symmetry",
    "rhythmPatterns": "rhythm_patterns",
}


@dataclass
class TrainedModel:
    """Frequency tables learned from a chart corpus.

    Built once by :func:`automapper.pipeline.training.train_from_charts`
    and treated as read-only afterwards; retraining produces a new
    instance rather than mutating this one.
    """
    zone_transitions: Dict[str, int] = field(default_factory=dict)        # "a->b"
    pattern_frequency: Dict[str, int] = field(default_factory=dict)       # "a,b,c"
    contextual_patterns: Dict[str, int] = field(default_factory=dict)     # "p:a,b,c"
    energy_based_zones: Dict[str, int] = field(default_factory=dict)      # "E{n}:Z{z}"
    long_patterns: Dict[str, int] = field(default_factory=dict)           # "L{n}:a,b,..."
    pattern_transitions: Dict[str, int] = field(default_factory=dict)     # "a,b,c=>d,e,f"
    zone_proximity: Dict[str, int] = field(default_factory=dict)          # "dist{d}"
    zone_symmetry: Dict[str, int] = field(default_factory=dict)           # "lo-hi"
    rhythm_patterns: Dict[float, int] = field(default_factory=dict)       # beats, 1/4 steps
    timing_variance: Dict[str, TimingStats] = field(default_factory=dict)
    timing_patterns: List[float] = field(default_factory=list)
    density_curves: List[List[float]] = field(default_factory=list)
    buildup_patterns: List[List[int]] = field(default_factory=list)
    breakdown_patterns: List[List[int]] = field(default_factory=list)
    difficulty_scaling: Dict[int, Dict[str, float]] = field(default_factory=dict)
    complexity_metrics: Dict[int, Dict[str, float]] = field(default_factory=dict)
    source_format: str = "dsx"
    charts_used: int = 0
    charts_skipped: int = 0

    @property
    def has_transitions(self) -> bool:
        return bool(self.zone_transitions)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, attr in _COUNT_TABLES.items():
            table = getattr(self, attr)
            out[key] = {_format_key(k): v for k, v in table.items()}
        out["timingVariance"] = {k: v.to_dict() for k, v in self.timing_variance.items()}
        out["timingPatterns"] = list(self.timing_patterns)
        out["densityCurves"] = [list(c) for c in self.density_curves]
        out["buildupPatterns"] = [list(p) for p in self.buildup_patterns]
        out["breakdownPatterns"] = [list(p) for p in self.breakdown_patterns]
        out["difficultyScaling"] = {str(k): dict(v) for k, v in self.difficulty_scaling.items()}
        out["complexityMetrics"] = {str(k): dict(v) for k, v in self.complexity_metrics.items()}
        out["sourceFormat"] = self.source_format
        out["chartsUsed"] = self.charts_used
        out["chartsSkipped"] = self.charts_skipped
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainedModel":
        kwargs: Dict[str, Any] = {}
        for key, attr in _COUNT_TABLES.items():
            table = dict(data.get(key) or {})
            if attr == "rhythm_patterns":
                kwargs[attr] = {float(k): v for k, v in table.items()}
            else:
                kwargs[attr] = {str(k): v for k, v in table.items()}
        kwargs["timing_variance"] = {
            str(k): TimingStats.from_dict(v) for k, v in (data.get("timingVariance") or {}).items()
        }
        kwargs["timing_patterns"] = [float(x) for x in data.get("timingPatterns") or []]
        kwargs["density_curves"] = [[float(x) for x in c] for c in data.get("densityCurves") or []]
        kwargs["buildup_patterns"] = [[int(z) for z in p] for p in data.get("buildupPatterns") or []]
        kwargs["breakdown_patterns"] = [[int(z) for z in p] for p in data.get("breakdownPatterns") or []]
        kwargs["difficulty_scaling"] = {
            int(k): dict(v) for k, v in (data.get("difficultyScaling") or {}).items()
        }
        kwargs["complexity_metrics"] = {
            int(k): dict(v) for k, v in (data.get("complexityMetrics") or {}).items()
        }
        kwargs["source_format"] = str(data.get("sourceFormat") or "dsx")
        kwargs["charts_used"] = int(data.get("chartsUsed") or 0)
        kwargs["charts_skipped"] = int(data.get("chartsSkipped") or 0)
        return cls(**kwargs)


def _format_key(key: Any) -> str:
    if isinstance(key, float):
        return repr(key)
    return str(key)


@dataclass
class GenerationResult:
    notes: List[Note] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notes": [n.to_dict() for n in self.notes],
            "diagnostics": self.diagnostics,
        }

    def __len__(self) -> int:
        return len(self.notes)


__all__ = [
    "NUM_ZONES",
    "NoteType",
    "OnsetType",
    "PhraseType",
    "SectionType",
    "circular_distance",
    "signed_step",
    "Note",
    "Onset",
    "Candidate",
    "AudioInput",
    "EnergyEnvelope",
    "SpectralFrames",
    "Phrase",
    "Section",
    "SongStructure",
    "SectionPlan",
    "NotePlan",
    "FeatureBundle",
    "Chart",
    "TimingStats",
    "TrainedModel",
    "GenerationResult",
]
