from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import numpy as np

from ..errors import AudioInputError, AutoMapperError, GenerationCancelled
from .config import GenerationOptions, PipelineConfig
from .determinism import make_rng
from .instrumentation import PipelineLogger
from .models import AudioInput, GenerationResult, TrainedModel
from .stage_a import load_and_preprocess, prepare_signal
from .stage_b import extract_features
from .stage_c import select_note_times
from .stage_d import post_process
from .store import ModelRepository, export_model, import_model
from .training import ChartLike, train_from_charts
from .validation import validate_chart
from .zones import assign_zones

logger = logging.getLogger(__name__)

AudioSource = Union[AudioInput, Tuple[np.ndarray, int]]


class CancellationToken:
    """Checked between stages; cancelling mid-stage takes effect at the next boundary."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, stage: str) -> None:
        if self._event.is_set():
            raise GenerationCancelled(f"generation cancelled before {stage}")


def _empty_result(diagnostics: Dict[str, Any], error: str) -> GenerationResult:
    diagnostics["error"] = error
    diagnostics.setdefault("counts", {})["final"] = 0
    return GenerationResult(notes=[], diagnostics=diagnostics)


def _as_audio_input(audio: AudioSource, config: PipelineConfig) -> AudioInput:
    if isinstance(audio, AudioInput):
        return audio
    try:
        samples, sample_rate = audio
    except (TypeError, ValueError) as e:
        raise AudioInputError(f"expected AudioInput or (samples, sample_rate), got {type(audio).__name__}") from e
    return prepare_signal(samples, sample_rate, config)


def generate_chart(
    audio: AudioSource,
    options: Optional[GenerationOptions] = None,
    model: Optional[TrainedModel] = None,
    config: Optional[PipelineConfig] = None,
    cancel_token: Optional[CancellationToken] = None,
    pipeline_logger: Optional[PipelineLogger] = None,
) -> GenerationResult:
    """
    Generate a chart from a decoded buffer.

    Malformed audio yields an empty result with ``diagnostics["error"]``.
    Only :class:`GenerationCancelled` escapes.
    """
    cfg = config or PipelineConfig()
    opts = (options or GenerationOptions()).normalized()
    rng = make_rng(cfg)
    if not opts.use_trained_model:
        model_source = "none"
    elif model is not None and model.has_transitions:
        model_source = "trained"
    else:
        model_source = "expert"
    diag: Dict[str, Any] = {
        "options": asdict(opts),
        "model": model_source,
        "timings": {},
        "counts": {},
    }
    if pipeline_logger:
        pipeline_logger.emit_config("automap", cfg, {"options": asdict(opts)})

    def _check(stage: str) -> None:
        if cancel_token is not None:
            cancel_token.check(stage)

    def _timed(stage: str, t0: float) -> None:
        elapsed = time.perf_counter() - t0
        diag["timings"][stage] = elapsed
        if pipeline_logger:
            pipeline_logger.record_timing(stage, elapsed)

    try:
        _check("stage_a")
        t0 = time.perf_counter()
        signal = _as_audio_input(audio, cfg)
        _timed("stage_a", t0)

        _check("stage_b")
        t0 = time.perf_counter()
        features = extract_features(signal, opts.bpm, opts.difficulty, cfg, pipeline_logger, diag)
        _timed("stage_b", t0)

        _check("stage_c")
        t0 = time.perf_counter()
        times = select_note_times(
            features, opts.difficulty, opts.min_note_interval, opts.offset, cfg, rng, diag
        )
        _timed("stage_c", t0)

        _check("zones")
        t0 = time.perf_counter()
        notes, usage = assign_zones(times, features, opts, model, cfg, rng)
        diag["strategy_usage"] = usage
        _timed("zones", t0)

        _check("stage_d")
        t0 = time.perf_counter()
        notes = post_process(notes, features, opts, model, cfg, rng, diag, pipeline_logger)
        _timed("stage_d", t0)
    except GenerationCancelled:
        logger.info("Generation cancelled")
        if pipeline_logger:
            pipeline_logger.log_event("pipeline", "cancelled")
        raise
    except AudioInputError as e:
        logger.warning(f"Rejected audio input: {e}")
        if pipeline_logger:
            pipeline_logger.log_event("stage_a", "rejected", {"error": str(e)})
        return _empty_result(diag, str(e))
    except Exception as e:
        if not cfg.tolerate_stage_errors:
            raise
        logger.exception(f"Generation failed: {e}")
        if pipeline_logger:
            pipeline_logger.record_fallback("pipeline", f"generation failed: {e}")
        return _empty_result(diag, str(e))

    diag["counts"]["final"] = len(notes)
    diag["validation"] = validate_chart(notes, opts.difficulty, cfg, pipeline_logger=pipeline_logger)
    if pipeline_logger:
        pipeline_logger.record_counts("pipeline", diag["counts"])
        pipeline_logger.log_event("pipeline", "complete", {"notes": len(notes), "strategy_usage": diag.get("strategy_usage", {})})
    return GenerationResult(notes=notes, diagnostics=diag)


async def generate_chart_from_file(
    audio_path: Union[str, Path],
    options: Optional[GenerationOptions] = None,
    model: Optional[TrainedModel] = None,
    config: Optional[PipelineConfig] = None,
    cancel_token: Optional[CancellationToken] = None,
    pipeline_logger: Optional[PipelineLogger] = None,
    start_offset: float = 0.0,
    max_duration: Optional[float] = None,
) -> GenerationResult:
    """Decode ``audio_path`` in a worker thread, then run the (non-suspending) stages."""
    cfg = config or PipelineConfig()
    try:
        signal = await asyncio.to_thread(
            load_and_preprocess, str(audio_path), cfg, None, start_offset, max_duration
        )
    except AudioInputError as e:
        logger.warning(f"Could not decode {audio_path}: {e}")
        return _empty_result({"counts": {}}, str(e))
    return generate_chart(signal, options, model, cfg, cancel_token, pipeline_logger)


class AutoMapper:
    """
    Owns the current trained model and exposes the public operations.

    ``train``/``load_model``/``import_model`` build a new model and swap
    the reference; a generation run keeps the model it started with.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        repository: Optional[ModelRepository] = None,
        model: Optional[TrainedModel] = None,
    ):
        self.config = config or PipelineConfig()
        self.repository = repository or ModelRepository()
        self._model = model

    @property
    def model(self) -> Optional[TrainedModel]:
        return self._model

    @property
    def model_loaded(self) -> bool:
        return self._model is not None

    def train(self, charts: Iterable[ChartLike], source_format: str = "dsx") -> TrainedModel:
        model = train_from_charts(charts, source_format)
        self._model = model
        return model

    async def save_model(self) -> bool:
        if self._model is None:
            logger.warning("No trained model to save")
            return False
        return await self.repository.save(self._model)

    async def load_model(self) -> Optional[TrainedModel]:
        model = await self.repository.load()
        if model is not None:
            self._model = model
        return model

    def export_model(self, path: Union[str, Path]) -> Path:
        if self._model is None:
            raise AutoMapperError("no trained model to export")
        return export_model(self._model, path)

    def import_model(self, path: Union[str, Path]) -> TrainedModel:
        model = import_model(path)
        self._model = model
        return model

    def generate(
        self,
        audio: AudioSource,
        options: Optional[GenerationOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        pipeline_logger: Optional[PipelineLogger] = None,
    ) -> GenerationResult:
        return generate_chart(audio, options, self._model, self.config, cancel_token, pipeline_logger)

    async def generate_from_file(
        self,
        audio_path: Union[str, Path],
        options: Optional[GenerationOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        pipeline_logger: Optional[PipelineLogger] = None,
        start_offset: float = 0.0,
        max_duration: Optional[float] = None,
    ) -> GenerationResult:
        return await generate_chart_from_file(
            audio_path,
            options,
            self._model,
            self.config,
            cancel_token,
            pipeline_logger,
            start_offset=start_offset,
            max_duration=max_duration,
        )

    def quick_map(self, audio: AudioSource, difficulty: int = 2, bpm: float = 120.0) -> GenerationResult:
        options = GenerationOptions(difficulty=difficulty, bpm=bpm, offset=0.0, min_note_interval=150.0)
        return self.generate(audio, options)
