"""Exception types raised by the chart generator.

Most failures inside the generation run are recovered locally (a stage is
skipped, a lookup falls through to the next strategy).  The classes below
mark the few places where the caller has to decide what happens next.
"""
from __future__ import annotations


class AutoMapperError(Exception):
    """Base class for all generator errors."""


class AudioInputError(AutoMapperError, ValueError):
    """Audio is missing, undecodable, empty or too short to analyse."""


class ChartFormatError(AutoMapperError, ValueError):
    """A chart (native or foreign format) could not be parsed."""


class GenerationCancelled(AutoMapperError):
    """Raised between stages when the caller cancelled the run."""


class StoreError(AutoMapperError):
    """A key-value store rejected a read or write."""


class QuotaExceededError(StoreError):
    """The blob does not fit in the store's remaining capacity."""


class StoreUnavailableError(StoreError):
    """The store cannot be reached or opened."""
