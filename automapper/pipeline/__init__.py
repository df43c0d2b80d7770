"""Chart generation pipeline.

Stage A decodes audio, Stage B extracts features and structure, Stage C
selects note times, zone assignment places them on the circle and
Stage D post-processes the result.  ``automap`` ties the stages together.
"""

from __future__ import annotations

from .automap import AutoMapper, CancellationToken, generate_chart, generate_chart_from_file
from .config import GenerationOptions, PipelineConfig
from .converters import convert_from_format
from .models import Chart, GenerationResult, Note, NoteType, TrainedModel
from .store import DirectoryStore, MemoryStore, ModelRepository
from .training import train_from_charts

__all__ = [
    "AutoMapper",
    "CancellationToken",
    "generate_chart",
    "generate_chart_from_file",
    "GenerationOptions",
    "PipelineConfig",
    "convert_from_format",
    "Chart",
    "GenerationResult",
    "Note",
    "NoteType",
    "TrainedModel",
    "DirectoryStore",
    "MemoryStore",
    "ModelRepository",
    "train_from_charts",
]
