"""Hand-built FeatureBundles for stage tests that do not need real audio."""
import numpy as np

from automapper.pipeline.config import StructureConfig
from automapper.pipeline.models import EnergyEnvelope, FeatureBundle, Onset, OnsetType, SpectralFrames
from automapper.pipeline.structure import analyze_song_structure, group_into_phrases, plan_note_distribution


def make_features(
    duration_ms: float,
    onset_times=(),
    beats=(),
    energy_level: float = 0.5,
    difficulty: int = 3,
    onset_type: OnsetType = OnsetType.STRONG,
    bands=None,
) -> FeatureBundle:
    """Flat energy envelope, optional constant band profile, plan for ``difficulty``."""
    onsets = [Onset(time=float(t), strength=3.0, type=onset_type) for t in onset_times]
    times = np.arange(0.0, float(duration_ms), 25.0)
    energy = EnergyEnvelope(times, np.full(times.size, float(energy_level)))
    spectral = None
    if bands is not None:
        low, mid, high = bands
        n = times.size
        spectral = SpectralFrames(times, np.full(n, low), np.full(n, mid), np.full(n, high))

    cfg = StructureConfig()
    structure = analyze_song_structure(energy, onsets, duration_ms, cfg)
    return FeatureBundle(
        duration_ms=float(duration_ms),
        onsets=onsets,
        beats=[float(b) for b in beats],
        spectral=spectral,
        energy=energy,
        phrases=group_into_phrases(onsets, energy, cfg),
        structure=structure,
        plan=plan_note_distribution(structure, difficulty, cfg),
    )
