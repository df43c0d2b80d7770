"""Rhythm-game chart generation from audio for a six-zone circular layout."""

from .pipeline import AutoMapper, GenerationOptions, PipelineConfig, generate_chart

__version__ = "0.1.0"

__all__ = ["AutoMapper", "GenerationOptions", "PipelineConfig", "generate_chart", "__version__"]
