"""Per-run diagnostics written next to generated charts.

A run directory holds ``events.jsonl`` (one line per event), ``timing.json``
(seconds per stage) and ``summary.json`` (note counts, zone-strategy usage
and the fallbacks taken).  Writes are best-effort: a full disk or an
unwritable directory is logged and ignored so chart generation carries on.
"""
from __future__ import annotations

import importlib.util
import json
import logging
import os
import time
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)

STACK_MODULES = ["numpy", "scipy", "librosa", "soundfile"]


def json_default(o: Any) -> Any:
    if isinstance(o, np.floating):
        return float(o)
    if isinstance(o, np.integer):
        return int(o)
    if isinstance(o, np.ndarray):
        return o.tolist()
    if is_dataclass(o) and not isinstance(o, type):
        return asdict(o)
    if isinstance(o, Enum):
        return o.value
    return str(o)


def module_availability(modules: Optional[List[str]] = None) -> Dict[str, bool]:
    """Which of ``modules`` can be imported (without importing them)."""
    found: Dict[str, bool] = {}
    for name in modules or STACK_MODULES:
        try:
            found[name] = importlib.util.find_spec(name) is not None
        except (ImportError, ValueError):
            found[name] = False
    return found


class PipelineLogger:
    """Collects events, stage timings and note counts for one generation run."""

    def __init__(self, base_dir: str = "results", run_name: Optional[str] = None):
        self.base_dir = base_dir
        self.run_name = run_name or time.strftime("automap_%Y%m%d_%H%M%S")
        self.run_dir = os.path.join(self.base_dir, self.run_name)
        os.makedirs(self.run_dir, exist_ok=True)
        self.events_path = os.path.join(self.run_dir, "events.jsonl")

        self._timing: Dict[str, float] = {}
        self._counts: Dict[str, Any] = {}
        self._fallbacks: List[Dict[str, str]] = []
        self._started = time.perf_counter()
        self.log_event("pipeline", "start", {"modules": module_availability()})

    # --------------------------------------------------------
    def log_event(self, stage: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        entry: Dict[str, Any] = {"stage": stage, "event": event, "timestamp": time.time()}
        entry.update(payload or {})
        try:
            line = json.dumps(entry, default=json_default)
        except (TypeError, ValueError):
            line = json.dumps({k: str(v) for k, v in entry.items()})
        try:
            with open(self.events_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.debug(f"event write failed: {e}")

    def record_timing(self, stage: str, duration_s: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        self._timing[stage] = float(duration_s)
        self.log_event(stage, "timing", dict(metadata or {}, duration_s=float(duration_s)))

    def record_counts(self, stage: str, counts: Dict[str, Any]) -> None:
        self._counts.update(counts)
        self.log_event(stage, "counts", {"counts": dict(counts)})

    def record_fallback(self, stage: str, reason: str) -> None:
        """A stage or strategy was skipped; generation continued without it."""
        self._fallbacks.append({"stage": stage, "reason": reason})
        self.log_event(stage, "fallback", {"reason": reason})

    def emit_config(self, stage: str, config_obj: Any, extras: Optional[Dict[str, Any]] = None) -> None:
        config = asdict(config_obj) if is_dataclass(config_obj) and not isinstance(config_obj, type) else str(config_obj)
        self.log_event(stage, "config", dict(extras or {}, config=config))

    # --------------------------------------------------------
    @property
    def timing(self) -> Dict[str, float]:
        return dict(self._timing)

    @property
    def counts(self) -> Dict[str, Any]:
        return dict(self._counts)

    @property
    def fallbacks(self) -> List[Dict[str, str]]:
        return list(self._fallbacks)

    def write_json(self, filename: str, obj: Any) -> None:
        path = os.path.join(self.run_dir, filename)
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(obj, f, ensure_ascii=False, indent=2, default=json_default)
        except (OSError, TypeError, ValueError) as e:
            self.log_event("logger", "artifact_write_failed", {"filename": filename, "error": str(e)})

    def finalize(self, extra: Optional[Dict[str, Any]] = None) -> None:
        self._timing.setdefault("total", float(time.perf_counter() - self._started))
        self.write_json("timing.json", self._timing)
        summary: Dict[str, Any] = {
            "run": self.run_name,
            "counts": self._counts,
            "fallbacks": self._fallbacks,
        }
        summary.update(extra or {})
        self.write_json("summary.json", summary)
