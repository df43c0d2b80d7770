from typing import Dict, List, Optional
from dataclasses import dataclass, field


# ------------------------------------------------------------
# Stage A Config (Audio decoding / conditioning)
# ------------------------------------------------------------

@dataclass
class StageAConfig:
    # None keeps the file's native rate (onset windows are defined in ms)
    target_sample_rate: Optional[int] = None
    channel_handling: str = "mono_sum"  # "mono_sum", "left_only", "right_only"
    dc_offset_removal: bool = True

    # Shorter buffers cannot fill a single energy window
    min_duration_sec: float = 0.1


# ------------------------------------------------------------
# Feature extractor config (onsets / beats / spectral / energy)
# ------------------------------------------------------------

@dataclass
class FeatureConfig:
    onset_window_ms: float = 20.0
    onset_hop_divisor: int = 4
    onset_history: int = 8
    onset_threshold: float = 1.35
    onset_min_average: float = 0.01
    onset_min_spacing_ms: float = 40.0

    # Attack / sustain split, as fractions of the onset window
    attack_fraction: float = 0.1
    sustain_fraction: float = 0.5
    onset_classification: Dict[str, float] = field(
        default_factory=lambda: {
            "strong_strength": 2.0,
            "strong_attack_ratio": 1.5,
            "medium_strength": 1.6,
            "sustained_ratio": 1.2,
            # refined onset = first sample reaching this fraction of the window peak
            "refine_peak_fraction": 0.5,
        }
    )

    spectral_window: int = 2048
    spectral_hop: int = 1024

    energy_window_ms: float = 50.0


# ------------------------------------------------------------
# Structure config (phrases / sections / note plan)
# ------------------------------------------------------------

@dataclass
class StructureConfig:
    phrase_gap_ms: float = 800.0
    max_phrase_ms: float = 4000.0
    min_phrase_ms: float = 300.0

    phrase_thresholds: Dict[str, float] = field(
        default_factory=lambda: {
            "stream_density": 8.0,
            "stream_energy": 0.5,
            "burst_density": 5.0,
            "burst_strong_ratio": 0.6,
            "accent_strong_ratio": 0.7,
            "accent_max_density": 4.0,
            "sparse_density": 2.0,
        }
    )

    segment_ms: float = 10000.0
    intro_fraction: float = 0.2
    outro_fraction: float = 0.8
    intro_energy_ratio: float = 0.8
    chorus_energy_ratio: float = 1.3
    bridge_energy_ratio: float = 0.9
    bridge_max_onset_density: float = 3.0

    # Difficulty 1..5 -> notes per second
    base_notes_per_sec: Dict[int, float] = field(
        default_factory=lambda: {1: 1.5, 2: 2.5, 3: 4.0, 4: 6.0, 5: 8.5}
    )
    section_density: Dict[str, float] = field(
        default_factory=lambda: {
            "intro": 0.6,
            "verse": 0.9,
            "chorus": 1.3,
            "bridge": 0.8,
            "outro": 0.7,
        }
    )


# ------------------------------------------------------------
# Stage C Config (candidate combine + structure-aware filter)
# ------------------------------------------------------------

@dataclass
class FilterConfig:
    onset_type_weights: Dict[str, float] = field(
        default_factory=lambda: {"strong": 1.5, "medium": 1.0, "sustained": 0.7, "weak": 0.4}
    )
    beat_weight: float = 0.3

    density_window_ms: float = 2000.0
    dense_ratio: float = 1.3
    sparse_ratio: float = 0.7
    dense_factor: float = 0.6
    sparse_factor: float = 1.4

    spam_window_ms: float = 1000.0
    max_notes_per_second: Dict[int, int] = field(
        default_factory=lambda: {1: 4, 2: 6, 3: 8, 4: 10, 5: 12}
    )
    spam_energy_override: float = 0.8

    base_accept_rate: Dict[int, float] = field(
        default_factory=lambda: {1: 0.35, 2: 0.55, 3: 0.80, 4: 0.95, 5: 0.98}
    )
    energy_boost: float = 0.4
    weight_boost: float = 0.3
    max_accept_chance: float = 0.99

    # Difficulties at or above this accept at 95% or on any meaningful energy
    aggressive_difficulty: int = 4
    aggressive_accept_rate: float = 0.95
    aggressive_energy: float = 0.3

    density_floor_ratio: float = 0.99


# ------------------------------------------------------------
# Zone assignment config
# ------------------------------------------------------------

@dataclass
class ZoneConfig:
    history_size: int = 6

    # Trained model lookups
    energy_bucket_chance: float = 0.4
    pattern_transition_chance: float = 0.5

    # Expert knowledge base lookups
    expert_pattern_chance: float = 0.6
    expert_energy_chance: float = 0.5

    # maimai-style path
    flow_window: int = 4
    flow_continue_chance: float = 0.85
    symmetry_chance: float = 0.3
    circular_step_chance: float = 0.4
    avoid_repeat_chance: float = 0.8


# ------------------------------------------------------------
# Stage D Config (post-processing)
# ------------------------------------------------------------

@dataclass
class ChordConfig:
    min_notes: int = 10
    min_clearance_ms: float = 300.0
    dedupe_window_ms: float = 50.0
    base_chance: Dict[int, float] = field(
        default_factory=lambda: {1: 0.02, 2: 0.05, 3: 0.08, 4: 0.12, 5: 0.15}
    )
    phrase_end_progress: float = 0.8
    phrase_end_boost: float = 0.4
    strong_energy_ratio: float = 1.5
    strong_boost: float = 0.3
    medium_energy_ratio: float = 1.2
    medium_boost: float = 0.15
    phrase_type_boost: Dict[str, float] = field(
        default_factory=lambda: {"accent": 0.25, "burst": 0.15, "stream": -0.1, "sparse": 0.1}
    )
    isolation_gap_ms: float = 600.0
    isolation_boost: float = 0.2
    max_chance: float = 0.9

    opposite_cutoff: float = 0.4
    adjacent_cutoff: float = 0.7
    adjacent_min_difficulty: int = 3
    triangle_min_difficulty: int = 4


@dataclass
class StyleConfig:
    burst_min_intensity: float = 0.5
    burst_min_difficulty: int = 3
    burst_dense_gap_ms: float = 200.0
    burst_open_gap_ms: float = 400.0
    burst_fraction: float = 0.1
    burst_lead_ms: float = 150.0
    burst_interval_ms: Dict[str, float] = field(
        default_factory=lambda: {"expert": 70.0, "standard": 90.0}
    )

    symmetry_min_intensity: float = 0.3
    symmetry_gap_ms: float = 300.0
    symmetry_chance: float = 0.1
    symmetry_offset_ms: float = 50.0  # after the earlier hit

    smoothing_jump: int = 3
    smoothing_chance: float = 0.4

    climax_window: int = 10
    climax_min_notes: int = 20
    climax_min_difficulty: int = 3
    climax_chance: float = 0.6


@dataclass
class PlayabilityConfig:
    min_gap_ms: Dict[int, float] = field(
        default_factory=lambda: {1: 250.0, 2: 200.0, 3: 140.0, 4: 100.0, 5: 80.0}
    )
    spam_gap_ms: float = 150.0
    max_easy_difficulty: int = 3
    max_notes_per_second: Dict[int, int] = field(
        default_factory=lambda: {1: 4, 2: 6, 3: 9}
    )
    # 4 subdivisions per beat = 1/16 notes in 4/4
    grid_subdivisions: int = 4


@dataclass
class StageDConfig:
    chords: ChordConfig = field(default_factory=ChordConfig)
    style: StyleConfig = field(default_factory=StyleConfig)
    playability: PlayabilityConfig = field(default_factory=PlayabilityConfig)
    linear_formats: List[str] = field(
        default_factory=lambda: ["osu", "osumania", "stepmania", "sm", "bms", "bme"]
    )


# ------------------------------------------------------------
# Caller options (per generation run)
# ------------------------------------------------------------

@dataclass
class GenerationOptions:
    difficulty: int = 2
    bpm: float = 120.0
    offset: float = 0.0                     # ms, added to every candidate time
    min_note_interval: float = 150.0        # ms, base interval of the filter
    use_trained_model: bool = True
    maimai_style: bool = True
    maimai_intensity: float = 0.7           # 0..1

    def normalized(self) -> "GenerationOptions":
        """Clamp out-of-range values instead of rejecting them."""
        bpm = float(self.bpm) if self.bpm and float(self.bpm) > 0 else 120.0
        return GenerationOptions(
            difficulty=int(min(5, max(1, int(self.difficulty)))),
            bpm=bpm,
            offset=float(self.offset or 0.0),
            min_note_interval=max(0.0, float(self.min_note_interval)),
            use_trained_model=bool(self.use_trained_model),
            maimai_style=bool(self.maimai_style),
            maimai_intensity=float(min(1.0, max(0.0, float(self.maimai_intensity)))),
        )


# ------------------------------------------------------------
# Pipeline Config
# ------------------------------------------------------------

@dataclass
class PipelineConfig:
    seed: Optional[int] = None  # deterministic runs when set
    deterministic: bool = False  # seed with 0 even without an explicit seed
    stage_a: StageAConfig = field(default_factory=StageAConfig)
    features: FeatureConfig = field(default_factory=FeatureConfig)
    structure: StructureConfig = field(default_factory=StructureConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    zones: ZoneConfig = field(default_factory=ZoneConfig)
    stage_d: StageDConfig = field(default_factory=StageDConfig)

    # Skip (rather than fail) optional stages that raise
    tolerate_stage_errors: bool = True
