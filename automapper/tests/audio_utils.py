import numpy as np


def generate_sine_wave(freq_hz: float, duration_sec: float, sr: int = 22050, amplitude: float = 1.0) -> np.ndarray:
    """Generates a pure sine wave."""
    t = np.linspace(0, duration_sec, int(duration_sec * sr), endpoint=False)
    audio = amplitude * np.sin(2 * np.pi * freq_hz * t)
    return audio.astype(np.float32)


def generate_silence(duration_sec: float, sr: int = 22050) -> np.ndarray:
    """Generates silence."""
    return np.zeros(int(duration_sec * sr), dtype=np.float32)


def generate_click(sr: int = 22050, freq_hz: float = 1000.0, amplitude: float = 0.9, decay_sec: float = 0.002) -> np.ndarray:
    """A single exponentially decaying sine burst (~20 ms long)."""
    t = np.arange(int(0.02 * sr)) / sr
    return (amplitude * np.exp(-t / decay_sec) * np.sin(2 * np.pi * freq_hz * t)).astype(np.float32)


def generate_click_train(click_times_sec, duration_sec: float, sr: int = 22050, **click_kwargs) -> np.ndarray:
    """Silence with a click starting at each of ``click_times_sec``."""
    audio = generate_silence(duration_sec, sr)
    click = generate_click(sr, **click_kwargs)
    for t in click_times_sec:
        start = int(round(t * sr))
        end = min(len(audio), start + len(click))
        if start < len(audio):
            audio[start:end] += click[:end - start]
    return audio


def regular_click_times(duration_sec: float, interval_sec: float, first_sec: float) -> list:
    """Click start times every ``interval_sec`` from ``first_sec`` up to ``duration_sec``."""
    times = []
    t = first_sec
    while t < duration_sec - 0.05:
        times.append(round(t, 6))
        t += interval_sec
    return times
