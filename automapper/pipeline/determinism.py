from __future__ import annotations

import random
from typing import Optional

import numpy as np

from .config import PipelineConfig


def apply_determinism(config: PipelineConfig) -> None:
    """
    Seed the global Python and NumPy generators when the config asks for it.

    Stages never draw from the global ``random`` module directly; they take
    the generator returned by :func:`make_rng`.  Global seeding only covers
    third-party code that reaches for the module-level state.
    """
    if config.seed is None and not getattr(config, "deterministic", False):
        return

    seed_value = config.seed if config.seed is not None else 0
    random.seed(seed_value)
    np.random.seed(seed_value)


def make_rng(config: Optional[PipelineConfig] = None, seed: Optional[int] = None) -> random.Random:
    """Return the random source passed through every stochastic stage."""
    if seed is None and config is not None:
        if config.seed is not None:
            seed = config.seed
        elif getattr(config, "deterministic", False):
            seed = 0
    if config is not None:
        apply_determinism(config)
    return random.Random(seed)
