# automapper/pipeline/detectors.py
"""
Feature extractors.

Pure functions over the mono sample buffer: onsets, a uniform beat grid,
a coarse three-band amplitude profile and an RMS energy envelope.  None
of them keep state between calls.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np

from .config import FeatureConfig
from .models import EnergyEnvelope, Onset, OnsetType, SpectralFrames

logger = logging.getLogger(__name__)


def _frame_audio(y: np.ndarray, frame_length: int, hop_length: int) -> np.ndarray:
    """Strided [n_frames, frame_length] view without padding.

    Returns an empty array when ``y`` cannot fill one frame.
    """
    y = np.ascontiguousarray(np.asarray(y, dtype=np.float32).reshape(-1))
    frame_length = int(frame_length)
    hop_length = max(1, int(hop_length))
    if frame_length <= 0 or len(y) < frame_length:
        return np.zeros((0, max(frame_length, 0)), dtype=np.float32)

    n_frames = 1 + (len(y) - frame_length) // hop_length
    frames = np.lib.stride_tricks.as_strided(
        y,
        shape=(n_frames, frame_length),
        strides=(y.strides[0] * hop_length, y.strides[0]),
        writeable=False,
    )
    return frames


def _frame_rms(frames: np.ndarray) -> np.ndarray:
    if frames.size == 0:
        return np.zeros(0, dtype=np.float64)
    f = frames.astype(np.float64)
    return np.sqrt(np.mean(f * f, axis=1))


def refine_onset_sample(y: np.ndarray, start: int, length: int, peak_fraction: float = 0.5) -> int:
    """Refine a window start to the first sample reaching ``peak_fraction`` of the window peak."""
    seg = np.abs(y[start:start + length])
    if seg.size == 0:
        return start
    peak = float(np.max(seg))
    if peak <= 0.0:
        return start
    hits = np.flatnonzero(seg >= peak * peak_fraction)
    return start + int(hits[0]) if hits.size else start


def classify_onset(
    y: np.ndarray,
    position: int,
    window_size: int,
    strength: float,
    config: Optional[FeatureConfig] = None,
) -> OnsetType:
    """Classify an onset by attack sharpness against sustain level.

    Attack is the mean absolute amplitude over the first ``attack_fraction``
    of the window starting at ``position``; sustain is the mean over the
    following ``sustain_fraction``.
    """
    cfg = config or FeatureConfig()
    thr = cfg.onset_classification

    attack_len = max(1, int(window_size * cfg.attack_fraction))
    sustain_len = max(1, int(window_size * cfg.sustain_fraction))

    attack = np.abs(y[position:position + attack_len])
    attack_level = float(np.sum(attack)) / attack_len

    sustain = np.abs(y[position + attack_len:position + attack_len + sustain_len])
    # Samples past the end of the buffer count as silence
    sustain_level = float(np.sum(sustain)) / sustain_len

    if strength > thr["strong_strength"] and attack_level > sustain_level * thr["strong_attack_ratio"]:
        return OnsetType.STRONG
    if strength > thr["medium_strength"] and attack_level > sustain_level:
        return OnsetType.MEDIUM
    if sustain_level > attack_level * thr["sustained_ratio"]:
        return OnsetType.SUSTAINED
    return OnsetType.WEAK


def detect_onsets(y: np.ndarray, sr: int, config: Optional[FeatureConfig] = None) -> List[Onset]:
    """
    Energy-flux onset detector.

    RMS over ~20 ms windows (hop = window / onset_hop_divisor), compared to
    the mean of the trailing ``onset_history`` windows (current included).
    A window is an onset when ``rms > threshold * avg`` and ``avg`` is above
    the floor, and it is at least ``onset_min_spacing_ms`` after the
    previous onset.
    """
    cfg = config or FeatureConfig()
    y = np.asarray(y, dtype=np.float32).reshape(-1)
    window = int(sr * cfg.onset_window_ms / 1000.0)
    hop = max(1, window // max(1, int(cfg.onset_hop_divisor)))
    history = max(1, int(cfg.onset_history))

    frames = _frame_audio(y, window, hop)
    rms = _frame_rms(frames)
    if rms.size < history:
        return []

    # avg[k] = mean(rms[k - history + 1 .. k]) for k >= history - 1
    avg = np.convolve(rms, np.ones(history) / history, mode="valid")
    cur = rms[history - 1:]
    hits = np.flatnonzero((cur > avg * cfg.onset_threshold) & (avg > cfg.onset_min_average))

    onsets: List[Onset] = []
    last_time = -np.inf
    peak_fraction = float(cfg.onset_classification.get("refine_peak_fraction", 0.5))
    for h in hits:
        k = int(h) + history - 1
        start = k * hop
        refined = refine_onset_sample(y, start, window, peak_fraction)
        time_ms = refined * 1000.0 / sr
        if time_ms - last_time <= cfg.onset_min_spacing_ms:
            continue
        strength = float(cur[h] / avg[h])
        onset_type = classify_onset(y, refined, window, strength, cfg)
        onsets.append(Onset(time=time_ms, strength=strength, type=onset_type))
        last_time = time_ms

    logger.debug(f"detect_onsets: {len(onsets)} onsets from {rms.size} windows")
    return onsets


def detect_beats(bpm: float, duration_ms: float) -> List[float]:
    """Uniform beat grid at 60000 / bpm ms spacing over [0, duration)."""
    if bpm is None or bpm <= 0 or duration_ms <= 0:
        return []
    interval = 60000.0 / float(bpm)
    return [float(t) for t in np.arange(0.0, float(duration_ms), interval)]


def analyze_spectral(y: np.ndarray, sr: int, config: Optional[FeatureConfig] = None) -> SpectralFrames:
    """
    Crude low/mid/high proxy: each window is split into three equal runs of
    samples and the mean absolute amplitude of each run is reported.
    """
    cfg = config or FeatureConfig()
    window = int(cfg.spectral_window)
    frames = _frame_audio(y, window, int(cfg.spectral_hop))
    times = np.arange(frames.shape[0], dtype=np.float64) * cfg.spectral_hop * 1000.0 / sr
    if frames.shape[0] == 0:
        empty = np.zeros(0, dtype=np.float64)
        return SpectralFrames(empty, empty, empty, empty)

    third = window // 3
    mag = np.abs(frames.astype(np.float64))
    low = np.sum(mag[:, :third], axis=1) / third
    mid = np.sum(mag[:, third:2 * third], axis=1) / third
    high = np.sum(mag[:, 2 * third:], axis=1) / third
    return SpectralFrames(times, low, mid, high)


def analyze_energy(y: np.ndarray, sr: int, config: Optional[FeatureConfig] = None) -> EnergyEnvelope:
    """RMS over ~50 ms windows with 50% overlap."""
    cfg = config or FeatureConfig()
    window = int(sr * cfg.energy_window_ms / 1000.0)
    hop = max(1, window // 2)
    frames = _frame_audio(y, window, hop)
    rms = _frame_rms(frames)
    times = np.arange(rms.size, dtype=np.float64) * hop * 1000.0 / sr
    return EnergyEnvelope(times, rms)


def band_ratios(bands: Tuple[float, float, float]) -> Optional[Tuple[float, float, float]]:
    low, mid, high = bands
    total = low + mid + high
    if total <= 0.0:
        return None
    return low / total, mid / total, high / total
