"""
Stage B: Feature Extraction & Structure

Runs the four extractors over the conditioned signal, then groups
onsets into phrases, labels song sections and plans the note distribution.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from .config import PipelineConfig
from .detectors import analyze_energy, analyze_spectral, detect_beats, detect_onsets
from .models import AudioInput, FeatureBundle
from .structure import analyze_song_structure, group_into_phrases, plan_note_distribution

logger = logging.getLogger(__name__)


def extract_features(
    audio: AudioInput,
    bpm: float,
    difficulty: int,
    config: Optional[PipelineConfig] = None,
    pipeline_logger: Optional[Any] = None,
    diagnostics: Optional[Dict[str, Any]] = None,
) -> FeatureBundle:
    cfg = config or PipelineConfig()
    diag = diagnostics if diagnostics is not None else {}
    y = audio.samples
    sr = audio.sample_rate
    duration_ms = audio.duration_ms

    t0 = time.perf_counter()
    onsets = detect_onsets(y, sr, cfg.features)
    beats = detect_beats(bpm, duration_ms)
    spectral = analyze_spectral(y, sr, cfg.features)
    energy = analyze_energy(y, sr, cfg.features)
    if pipeline_logger:
        pipeline_logger.record_timing(
            "stage_b_features",
            time.perf_counter() - t0,
            {"onsets": len(onsets), "beats": len(beats), "energy_frames": len(energy)},
        )

    phrases = []
    try:
        phrases = group_into_phrases(onsets, energy, cfg.structure)
    except Exception as e:
        if not cfg.tolerate_stage_errors:
            raise
        logger.warning(f"Phrase grouping failed, continuing without phrases: {e}")
        diag.setdefault("fallbacks", []).append(f"phrases: {e}")
        if pipeline_logger:
            pipeline_logger.record_fallback("stage_b", f"phrases: {e}")

    structure = analyze_song_structure(energy, onsets, duration_ms, cfg.structure)
    plan = plan_note_distribution(structure, difficulty, cfg.structure)

    diag["counts"] = dict(diag.get("counts", {}), onsets=len(onsets), beats=len(beats), phrases=len(phrases))
    diag["sections"] = [s.type.value for s in structure.sections]
    diag["plan_target_notes"] = plan.target_notes
    logger.info(
        f"Stage B: {len(onsets)} onsets, {len(beats)} beats, {len(phrases)} phrases, "
        f"{len(structure.sections)} sections, plan={plan.target_notes} notes"
    )

    return FeatureBundle(
        duration_ms=duration_ms,
        onsets=onsets,
        beats=beats,
        spectral=spectral,
        energy=energy,
        phrases=phrases,
        structure=structure,
        plan=plan,
    )
