"""
Field-level repair helpers used by the consolidation engine.

All functions are pure and never raise on malformed collaborator values;
they return None (or an empty container) and let the engine apply defaults.
"""

from __future__ import annotations

import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .schema import LABEL_PRIORITIES, AnalysisLabel

HEX_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
MAX_LABEL_CHARS = 80

TRANSPARENCY_SYNONYMS = {
    "opaque": "opaque",
    "none": "opaque",
    "semi_sheer": "semi_sheer",
    "semi_transparent": "semi_sheer",
    "translucent": "semi_sheer",
    "sheer": "sheer",
    "transparent": "sheer",
}

SHEEN_SYNONYMS = {
    "matte": "matte",
    "flat": "matte",
    "subtle_sheen": "subtle_sheen",
    "subtle": "subtle_sheen",
    "soft_sheen": "subtle_sheen",
    "low_sheen": "subtle_sheen",
    "satin": "subtle_sheen",
    "glossy": "glossy",
    "shiny": "glossy",
    "high_gloss": "glossy",
    "metallic": "glossy",
}

WEAVE_SYNONYMS = {
    "woven": "woven",
    "knit": "knit",
    "knitted": "knit",
    "jersey": "knit",
    "nonwoven": "nonwoven",
    "non_woven": "nonwoven",
    "unknown": "unknown",
}

DRAPE_STIFFNESS = {
    "crisp": 0.7,
    "structured": 0.6,
    "stiff": 0.7,
    "flowing": 0.2,
    "fluid": 0.15,
    "soft": 0.3,
}


def is_hex(value: Any) -> bool:
    return isinstance(value, str) and bool(HEX_RE.match(value))


def coerce_hex(value: Any) -> Optional[str]:
    """Return ``value`` unchanged if it is a 6-digit hex color, else None."""
    return value if is_hex(value) else None


def valid_hexes(values: Any) -> List[str]:
    if not isinstance(values, (list, tuple)):
        return []
    out: List[str] = []
    for v in values:
        if is_hex(v) and v not in out:
            out.append(v)
    return out


def clamp(value: Any, lo: float, hi: float) -> Optional[float]:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(f):
        return None
    return max(lo, min(hi, f))


def _token(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    t = value.strip().lower().replace("-", "_").replace(" ", "_")
    return t or None


def pick_enum(value: Any, synonyms: Mapping[str, str]) -> Optional[str]:
    t = _token(value)
    if t is None:
        return None
    return synonyms.get(t)


def drape_from_quality(quality: Any) -> Optional[float]:
    t = _token(quality)
    return DRAPE_STIFFNESS.get(t) if t else None


def text_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def split_regions(value: Any) -> List[str]:
    """Accept a list or a comma-separated string of region names."""
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        return []
    out: List[str] = []
    for item in items:
        s = text_or_none(item)
        if s and s not in out:
            out.append(s)
    return out


def normalize_safety(raw: Any) -> Dict[str, List[str]]:
    """Safety arrives as a list, an object with ``must_not``, or nothing."""
    if isinstance(raw, Mapping):
        raw = raw.get("must_not")
    return {"must_not": split_regions(raw)}


def normalize_asymmetry(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, Mapping):
        return None
    return {
        "expected": bool(raw.get("expected", False)),
        "regions": split_regions(raw.get("regions")),
    }


def _bbox(raw: Any) -> Optional[Tuple[float, float, float, float]]:
    if not isinstance(raw, (list, tuple)) or len(raw) != 4:
        return None
    try:
        x1, y1, x2, y2 = (float(v) for v in raw)
    except (TypeError, ValueError):
        return None
    return (x1, y1, x2, y2)


def normalize_labels(labels: Sequence[AnalysisLabel]) -> List[Dict[str, Any]]:
    """
    Shape analysis labels into LabelFound dicts.

    Text is only trimmed and truncated, never rewritten. Labels without text
    are dropped since there is nothing to preserve.
    """
    out: List[Dict[str, Any]] = []
    for label in labels:
        text = (label.text or "").strip()[:MAX_LABEL_CHARS]
        if not text:
            continue
        legibility = clamp(label.ocr_conf, 0.0, 1.0)
        priority = _token(label.priority)
        out.append({
            "text": text,
            "type": text_or_none(label.type) or "other",
            "location_hint": text_or_none(label.location),
            "bbox_norm": _bbox(label.bbox_norm),
            "visible": bool(label.visible),
            "legibility": 1.0 if legibility is None else legibility,
            "preserve": bool(label.preserve),
            "priority": priority if priority in LABEL_PRIORITIES else "high",
        })
    return out
