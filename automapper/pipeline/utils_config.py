# automapper/pipeline/utils_config.py
from __future__ import annotations
from typing import Any, Dict, Iterable, Mapping


def parse_override_value(raw: str) -> Any:
    """Interpret a CLI override value as bool / int / float, else keep the string."""
    text = str(raw).strip()
    lowered = text.lower()
    if lowered in {"true", "yes", "on"}:
        return True
    if lowered in {"false", "no", "off"}:
        return False
    if lowered in {"none", "null"}:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def parse_overrides(items: Iterable[str]) -> Dict[str, Any]:
    """Turn ``["filter.beat_weight=0.5", ...]`` into a dotted-path mapping."""
    out: Dict[str, Any] = {}
    for item in items or []:
        if "=" not in item:
            raise ValueError(f"override must look like key=value, got {item!r}")
        key, value = item.split("=", 1)
        out[key.strip()] = parse_override_value(value)
    return out


def apply_dotted_overrides(target: Any, overrides: Mapping[str, Any]) -> None:
    """
    Apply dotted-path overrides into nested dataclasses/objects/dicts.

    Dict containers keyed by difficulty (``filter.base_accept_rate.3``)
    accept the integer form of the key when that key already exists.
    Unknown attributes on dataclasses raise ``AttributeError`` so typos
    in override paths are not silently ignored.
    """
    for path, value in (overrides or {}).items():
        parts = str(path).split(".")
        cur = target
        for i, part in enumerate(parts):
            last = (i == len(parts) - 1)

            if isinstance(cur, dict):
                key: Any = part
                if part not in cur:
                    try:
                        if int(part) in cur:
                            key = int(part)
                    except ValueError:
                        pass
                if last:
                    cur[key] = value
                    break
                nxt = cur.get(key, None)
                if nxt is None:
                    nxt = {}
                    cur[key] = nxt
                cur = nxt
                continue

            if not hasattr(cur, part):
                raise AttributeError(f"Unknown config key {path!r} (no field {part!r})")

            if last:
                setattr(cur, part, value)
                break

            cur = getattr(cur, part)
