"""
Stage A: Load & Condition

Decodes an audio file (or accepts an already-decoded buffer) and reduces
it to the mono float32 signal every feature extractor reads.
"""

from __future__ import annotations
from typing import Optional, Tuple, Union, Any
import warnings
import logging

import numpy as np
import scipy.io.wavfile
import scipy.signal

from .models import AudioInput
from .config import PipelineConfig, StageAConfig
from ..errors import AudioInputError

logger = logging.getLogger(__name__)

# Optional dependency
try:
    import librosa
except ImportError:
    librosa = None


def _remove_dc_offset(y: np.ndarray) -> np.ndarray:
    if y.size == 0:
        return y
    return (y - float(np.mean(y))).astype(np.float32)


def _to_float(audio: np.ndarray) -> np.ndarray:
    # Convert int PCM to float -1..1
    if audio.dtype == np.int16:
        return audio.astype(np.float32) / 32768.0
    if audio.dtype == np.int32:
        return audio.astype(np.float32) / 2147483648.0
    if audio.dtype == np.uint8:
        return (audio.astype(np.float32) - 128.0) / 128.0
    return audio.astype(np.float32)


def _load_audio_fallback(path: str, target_sr: Optional[int]) -> Tuple[np.ndarray, int]:
    """Fallback loader using scipy if librosa is missing or fails.

    Returns audio shaped [channels, samples] (or 1-D for mono files).
    """
    try:
        sr, audio = scipy.io.wavfile.read(path)
    except (OSError, ValueError) as e:
        raise AudioInputError(f"could not decode {path}: {e}") from e

    audio = _to_float(np.asarray(audio))
    if audio.ndim > 1:
        # wavfile returns [samples, channels]
        audio = audio.T

    if target_sr and sr != target_sr and audio.shape[-1] > 0:
        num_samples = int(audio.shape[-1] * float(target_sr) / sr)
        audio = scipy.signal.resample(audio, num_samples, axis=-1).astype(np.float32)
        sr = target_sr

    return audio, int(sr)


def _downmix(audio: np.ndarray, policy: str) -> np.ndarray:
    if audio.ndim == 1:
        return audio.astype(np.float32)
    if policy == "left_only":
        return audio[0].astype(np.float32)
    if policy == "right_only" and audio.shape[0] > 1:
        return audio[1].astype(np.float32)
    return np.mean(audio, axis=0).astype(np.float32)


def prepare_signal(
    samples: Any,
    sample_rate: int,
    config: Optional[Union[PipelineConfig, StageAConfig]] = None,
    path: Optional[str] = None,
) -> AudioInput:
    """Condition an already-decoded buffer.

    Accepts mono ``[samples]`` or multi-channel ``[channels, samples]``
    arrays.  Raises :class:`AudioInputError` for empty or too-short input.
    """
    a_conf = _stage_a_conf(config)

    if samples is None:
        raise AudioInputError("audio buffer is missing")
    if sample_rate is None or int(sample_rate) <= 0:
        raise AudioInputError(f"invalid sample rate {sample_rate!r}")

    audio = np.asarray(samples)
    if audio.ndim > 2:
        raise AudioInputError(f"expected 1-D or 2-D audio, got shape {audio.shape}")
    audio = _to_float(audio)
    n_channels = 1 if audio.ndim == 1 else int(audio.shape[0])

    mono = _downmix(audio, a_conf.channel_handling)
    if mono.size == 0:
        raise AudioInputError("Audio too short (empty)")

    if not np.all(np.isfinite(mono)):
        logger.warning("Non-finite samples found; replacing with zeros")
        mono = np.nan_to_num(mono, nan=0.0, posinf=0.0, neginf=0.0).astype(np.float32)

    duration = float(mono.size) / float(sample_rate)
    if duration < float(a_conf.min_duration_sec):
        raise AudioInputError(
            f"Audio too short ({duration:.3f}s < {a_conf.min_duration_sec:.3f}s)"
        )

    if a_conf.dc_offset_removal:
        mono = _remove_dc_offset(mono)

    return AudioInput(
        samples=mono,
        sample_rate=int(sample_rate),
        path=path,
        original_sr=int(sample_rate),
        n_channels=n_channels,
        diagnostics={"channel_handling": a_conf.channel_handling},
    )


def load_and_preprocess(
    audio_path: str,
    config: Optional[Union[PipelineConfig, StageAConfig]] = None,
    target_sr: Optional[int] = None,
    start_offset: float = 0.0,
    max_duration: Optional[float] = None,
) -> AudioInput:
    """
    Stage A main entry point.

    1. Load audio (native rate unless a target rate is configured).
    2. Crop to ``start_offset`` / ``max_duration`` (seconds).
    3. Downmix to mono and remove DC offset.
    """
    a_conf = _stage_a_conf(config)
    target_sr = target_sr or a_conf.target_sample_rate

    audio: Optional[np.ndarray] = None
    sr = 0
    loader = "librosa"
    if librosa is not None:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                audio, sr = librosa.load(
                    audio_path,
                    sr=target_sr,
                    mono=False,  # keep channels; downmix is policy-driven
                    offset=max(0.0, float(start_offset or 0.0)),
                    duration=max_duration,
                )
        except Exception as e:
            logger.warning(f"librosa failed to load {audio_path}: {e}; trying scipy")
            audio = None

    if audio is None:
        loader = "scipy"
        audio, sr = _load_audio_fallback(audio_path, target_sr)
        if start_offset or max_duration:
            offset_samples = int(max(0.0, float(start_offset or 0.0)) * sr)
            end = int(offset_samples + (max_duration * sr if max_duration else audio.shape[-1]))
            audio = audio[..., offset_samples:end]

    if audio.shape[-1] == 0:
        raise AudioInputError("Audio too short (empty)")

    out = prepare_signal(audio, sr, config=a_conf, path=audio_path)
    out.original_sr = int(sr)
    out.diagnostics["loader"] = loader
    logger.info(
        f"Stage A: loaded {audio_path} via {loader} "
        f"({out.duration_sec:.2f}s @ {out.sample_rate} Hz, {out.n_channels} ch)"
    )
    return out


def _stage_a_conf(config: Optional[Union[PipelineConfig, StageAConfig]]) -> StageAConfig:
    if config is None:
        return StageAConfig()
    if isinstance(config, StageAConfig):
        return config
    return config.stage_a
