"""Output invariant checks for generated charts."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence
import logging

from .config import PipelineConfig
from .models import NUM_ZONES, Note

logger = logging.getLogger(__name__)


_DEF_TOL = 1e-6


def validate_chart(
    notes: Sequence[Note],
    difficulty: int,
    config: Optional[PipelineConfig] = None,
    strict: bool = False,
    pipeline_logger: Optional[Any] = None,
) -> Dict[str, Any]:
    """Validate the final note list.

    Args:
        notes: Output of Stage D.
        difficulty: Difficulty the chart was generated for (selects the gap table entry).
        config: PipelineConfig.
        strict: If True, raise AssertionError on failure.
        pipeline_logger: Optional PipelineLogger to record violations.

    Returns:
        {"status": "pass"} or {"status": "fail", "violations": ["..."]}
    """
    cfg = config or PipelineConfig()
    violations: List[str] = []

    try:
        _validate_order(notes, violations)
        _validate_zones(notes, violations)
        _validate_duplicates(notes, violations)
        min_gap = float(cfg.stage_d.playability.min_gap_ms.get(int(difficulty), 0.0))
        _validate_spacing(notes, min_gap, violations)
    except (AttributeError, TypeError, ValueError) as e:
        violations.append(f"Validation exception: {str(e)}")

    result: Dict[str, Any] = {
        "status": "fail" if violations else "pass",
    }
    if violations:
        result["violations"] = violations
        if pipeline_logger:
            pipeline_logger.log_event("contract", "violation", {"violations": violations})
        logger.warning(f"Contract violations: {violations}")

        if strict:
            raise AssertionError(f"Chart Contract Violation: {'; '.join(violations)}")

    return result


def _validate_order(notes: Sequence[Note], violations: List[str]) -> None:
    for i in range(1, len(notes)):
        if notes[i].time < notes[i - 1].time:
            violations.append(f"Notes not sorted at index {i} ({notes[i - 1].time} > {notes[i].time})")
            return


def _validate_zones(notes: Sequence[Note], violations: List[str]) -> None:
    bad = [n for n in notes if not (0 <= int(n.zone) < NUM_ZONES) or int(n.zone) != n.zone]
    if bad:
        violations.append(f"{len(bad)} notes with illegal zones, first: {bad[0].zone}")


def _validate_duplicates(notes: Sequence[Note], violations: List[str]) -> None:
    seen = set()
    for n in notes:
        key = (n.time, n.zone)
        if key in seen:
            violations.append(f"Duplicate note at time={n.time} zone={n.zone}")
            return
        seen.add(key)


def _validate_spacing(notes: Sequence[Note], min_gap: float, violations: List[str]) -> None:
    # Notes sharing a timestamp are one hit (chord) and exempt from the gap
    times = sorted({float(n.time) for n in notes})
    for a, b in zip(times, times[1:]):
        if b - a < min_gap - _DEF_TOL:
            violations.append(f"Gap {b - a:.1f}ms at {a:.1f}ms is below the {min_gap:.0f}ms minimum")
            return
