"""
Foreign chart adapters.

Each adapter takes the serialized chart (text for osu!/StepMania/BMS,
JSON text or an already-parsed dict for maimai/CHUNITHM) and returns a
native :class:`Chart`, or None when the data is not a compatible chart.
Adapters never raise on malformed input.
"""

from __future__ import annotations

import json
import logging
import math
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ..errors import ChartFormatError
from .models import NUM_ZONES, Chart, Note

logger = logging.getLogger(__name__)

ChartSource = Union[str, bytes, Dict[str, Any]]

# osu!mania key count -> zone per column
_OSU_COLUMN_ZONES = {
    4: [0, 2, 3, 5],
    6: [0, 1, 2, 3, 4, 5],
    7: [5, 0, 1, 2, 3, 4, 5],
}

_BMS_NOTE_LINE = re.compile(r"#(\d{3})(\d{2}):(.+)")
_SM_BPM = re.compile(r"=([\d.]+)")


def _as_text(data: ChartSource) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    if isinstance(data, str):
        return data
    raise TypeError(f"expected chart text, got {type(data).__name__}")


def _as_json(data: ChartSource) -> Dict[str, Any]:
    if isinstance(data, dict):
        return data
    parsed = json.loads(_as_text(data))
    if not isinstance(parsed, dict):
        raise ValueError("chart JSON must be an object")
    return parsed


def _header_value(line: str, key: str) -> Optional[str]:
    """``"Key: value"`` / ``"Key : value"`` -> ``"value"``."""
    if f"{key}:" not in line and f"{key} :" not in line:
        return None
    value = line.split(":", 1)[1].strip()
    return value or None


# ------------------------------------------------------------
# osu!mania
# ------------------------------------------------------------

def osu_column_to_zone(column: int, key_count: int) -> int:
    mapping = _OSU_COLUMN_ZONES.get(key_count)
    if mapping is not None:
        return mapping[column] if 0 <= column < len(mapping) else 0
    if key_count <= 0:
        return 0
    return int(min(NUM_ZONES - 1, max(0, math.floor(column / key_count * NUM_ZONES))))


def convert_osu_mania(data: ChartSource) -> Optional[Chart]:
    try:
        text = _as_text(data)
    except (TypeError, UnicodeError):
        return None

    notes: List[Note] = []
    key_count = 4
    mode = -1
    difficulty = 3
    in_hit_objects = False

    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("[") and line.endswith("]"):
            in_hit_objects = line == "[HitObjects]"
            continue

        if not in_hit_objects:
            try:
                value = _header_value(line, "CircleSize")
                if value is not None:
                    key_count = int(float(value))
                    continue
                value = _header_value(line, "OverallDifficulty")
                if value is not None:
                    od = float(value)
                    difficulty = int(min(5, max(1, math.ceil(od / 2.0))))
                    continue
                value = _header_value(line, "Mode")
                if value is not None:
                    mode = int(value)
            except ValueError:
                logger.debug(f"osu!: ignoring unparsable header line {line!r}")
            continue

        if not line:
            continue
        parts = line.split(",")
        if len(parts) < 4:
            continue
        try:
            x = int(float(parts[0]))
            t = int(float(parts[2]))
        except ValueError:
            continue
        column = int(math.floor(x / 512.0 * key_count)) if key_count > 0 else 0
        notes.append(Note(time=float(t), zone=osu_column_to_zone(column, key_count)))

    if mode == -1 and notes and key_count in _OSU_COLUMN_ZONES:
        mode = 3
    if mode != 3:
        logger.debug(f"osu!: not a mania chart (mode={mode}, keys={key_count}, notes={len(notes)})")
        return None

    return Chart(notes=notes, difficulty=difficulty, bpm=120.0, meta={"keyCount": key_count})


# ------------------------------------------------------------
# StepMania
# ------------------------------------------------------------

def convert_stepmania(data: ChartSource) -> Optional[Chart]:
    try:
        text = _as_text(data)
    except (TypeError, UnicodeError):
        return None

    notes: List[Note] = []
    bpm = 120.0
    beat_ms = 500.0
    in_notes = False
    current = 0.0

    for raw in text.splitlines():
        line = raw.strip()
        if "#BPMS:" in line:
            match = _SM_BPM.search(line)
            if match:
                try:
                    value = float(match.group(1))
                except ValueError:
                    value = 0.0
                if value > 0:
                    bpm = value
                    beat_ms = 60000.0 / bpm

        if "#NOTES:" in line:
            in_notes = True
            current = 0.0
            continue

        # measure separators and comments carry no rows
        if in_notes and line and ":" not in line and ";" not in line and not line.startswith((",", "//")):
            for i, ch in enumerate(line[:NUM_ZONES]):
                # 1 = tap, 2 = hold head, 4 = roll head
                if ch in "124":
                    notes.append(Note(time=float(round(current)), zone=i))
            current += beat_ms / 4.0

        if ";" in line:
            in_notes = False

    return Chart(notes=notes, difficulty=3, bpm=bpm)


# ------------------------------------------------------------
# BMS
# ------------------------------------------------------------

def convert_bms(data: ChartSource) -> Optional[Chart]:
    try:
        text = _as_text(data)
    except (TypeError, UnicodeError):
        return None

    notes: List[Note] = []
    bpm = 130.0

    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("#BPM "):
            try:
                value = float(line.split()[1])
            except (IndexError, ValueError):
                value = 0.0
            if value > 0:
                bpm = value
            continue

        match = _BMS_NOTE_LINE.match(line)
        if not match:
            continue
        measure = int(match.group(1))
        channel = int(match.group(2))
        body = match.group(3).strip()
        if not 11 <= channel <= 19:
            continue

        measure_ms = 60000.0 / bpm * 4.0
        slots = len(body) // 2
        for i in range(slots):
            if body[i * 2:i * 2 + 2] == "00":
                continue
            t = measure * measure_ms + i * measure_ms / slots
            notes.append(Note(time=float(round(t)), zone=(channel - 11) % NUM_ZONES))

    notes.sort(key=lambda n: n.time)
    return Chart(notes=notes, difficulty=3, bpm=bpm)


# ------------------------------------------------------------
# maimai / CHUNITHM (JSON)
# ------------------------------------------------------------

def _field(raw: Dict[str, Any], key: str, fallback: str) -> Any:
    """``raw[key]`` when present (zero included), else ``raw[fallback]``."""
    return raw[key] if raw.get(key) is not None else raw[fallback]


def _json_notes(
    data: ChartSource,
    position: Callable[[Dict[str, Any]], float],
    timing: Callable[[Dict[str, Any]], float],
    lanes: int,
) -> List[Note]:
    parsed = _as_json(data)
    notes: List[Note] = []
    for raw in parsed.get("notes") or []:
        zone = int(math.floor(float(position(raw)) / lanes * NUM_ZONES))
        notes.append(Note(time=float(timing(raw)), zone=min(NUM_ZONES - 1, max(0, zone))))
    return notes


def convert_maimai(data: ChartSource) -> Optional[Chart]:
    """maimai: 8 buttons around the ring -> 6 zones."""
    try:
        parsed = _as_json(data)
        notes = _json_notes(
            parsed,
            position=lambda n: n["position"],
            timing=lambda n: _field(n, "time", "timing"),
            lanes=8,
        )
        return Chart(
            notes=notes,
            difficulty=int(parsed.get("difficulty") or 3),
            bpm=float(parsed.get("bpm") or 120.0),
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.debug(f"maimai: rejected chart: {e}")
        return None


def convert_chunithm(data: ChartSource) -> Optional[Chart]:
    """CHUNITHM: 16 lanes -> 6 zones; measure-only notes are placed at 1 s per measure."""
    try:
        parsed = _as_json(data)
        notes = _json_notes(
            parsed,
            position=lambda n: _field(n, "lane", "position"),
            timing=lambda n: n["time"] if n.get("time") is not None else n["measure"] * 1000.0,
            lanes=16,
        )
        return Chart(
            notes=notes,
            difficulty=int(parsed.get("level") or 3),
            bpm=float(parsed.get("bpm") or 120.0),
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.debug(f"CHUNITHM: rejected chart: {e}")
        return None


CONVERTERS: Dict[str, Callable[[ChartSource], Optional[Chart]]] = {
    "osu": convert_osu_mania,
    "osumania": convert_osu_mania,
    "stepmania": convert_stepmania,
    "sm": convert_stepmania,
    "bms": convert_bms,
    "bme": convert_bms,
    "maimai": convert_maimai,
    "chunithm": convert_chunithm,
}


def read_chart_file(path: Union[str, Path], fmt: str = "dsx") -> ChartSource:
    """
    Read a chart file for training.

    Native (``dsx``) charts are parsed as JSON; foreign formats are returned
    as text for their converter.  Raises :class:`ChartFormatError` when the
    file cannot be read or a native chart is not a JSON object.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise ChartFormatError(f"cannot read chart {path}: {e}") from e
    if (fmt or "dsx").lower() != "dsx":
        return text
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ChartFormatError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ChartFormatError(f"{path}: chart JSON must be an object")
    return data


def convert_from_format(data: ChartSource, fmt: str) -> Optional[Chart]:
    """Dispatch on the format tag; unknown formats return None."""
    converter = CONVERTERS.get((fmt or "").lower())
    if converter is None:
        logger.warning(f"No chart converter for format {fmt!r}")
        return None
    try:
        return converter(data)
    except Exception as e:
        logger.warning(f"{fmt} converter failed: {e}")
        return None
