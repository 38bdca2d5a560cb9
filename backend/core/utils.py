"""
Shared utility helpers.

Pure functions: no I/O, no side effects.
"""

from __future__ import annotations

import math
import re
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd


# ---------------------------------------------------------------------------
# Value parsing
# ---------------------------------------------------------------------------

_NUMBER_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")


def parse_number(val) -> Optional[float]:
    """Return *val* as a finite float, or None if it is not a number.

    Text is accepted only when the whole trimmed token is a plain decimal or
    scientific literal ("1,000", "$5" or "inf" are not numbers here).
    """
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, (int, float, np.integer, np.floating)):
        num = float(val)
        return num if math.isfinite(num) else None
    text = str(val).strip()
    if not text or not _NUMBER_RE.match(text):
        return None
    try:
        num = float(text)
    except ValueError:
        return None
    return num if math.isfinite(num) else None


def numeric_series(values: Iterable) -> pd.Series:
    """Coerce raw cell values to a float Series; unparseable cells become NaN."""
    parsed = [parse_number(v) for v in values]
    return pd.Series([np.nan if v is None else v for v in parsed], dtype="float64")


def value_text(val) -> str:
    """Text form of a cell, used for category keys, filters and labels."""
    if val is None:
        return ""
    if isinstance(val, float):
        if val.is_integer():
            return str(int(val))
        return repr(val)
    return str(val)


def format_value(val) -> str:
    """Short display form: non-integral numbers to 2 decimals."""
    if isinstance(val, float) and not val.is_integer():
        return f"{val:.2f}"
    return value_text(val) if val is not None else "null"


# ---------------------------------------------------------------------------
# Column resolution
# ---------------------------------------------------------------------------

def resolve_col(name: Optional[str], columns: Sequence[str]) -> Optional[str]:
    """Resolve a column name case-insensitively; tolerate spacing/underscore diffs."""
    if not name:
        return None
    if name in columns:
        return name
    lower_map = {c.lower(): c for c in columns}
    key = name.lower()
    if key in lower_map:
        return lower_map[key]

    def norm(s: str) -> str:
        return re.sub(r"[\s\-]+", "", s.lower())

    target = norm(name)
    for c in columns:
        if norm(c) == target:
            return c
    return None


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------

def normalize_value(value, lo: float, hi: float, new_lo: float = 0.0, new_hi: float = 1.0) -> float:
    """Linearly map *value* from [lo, hi] to [new_lo, new_hi].

    Unparseable values map to 0; a degenerate range maps to the midpoint.
    """
    num = parse_number(value)
    if num is None:
        return 0.0
    if lo == hi:
        return (new_lo + new_hi) / 2.0
    return (num - lo) / (hi - lo) * (new_hi - new_lo) + new_lo


def pct(n: int, d: int) -> float:
    """Percentage with 2-decimal rounding; zero-safe."""
    return 0.0 if d <= 0 else round(100.0 * n / d, 2)


def integer_cbrt_ceil(n: int) -> int:
    """Smallest g with g**3 >= n (exact, no float rounding surprises)."""
    if n <= 0:
        return 0
    g = max(1, int(round(n ** (1.0 / 3.0))))
    while g ** 3 < n:
        g += 1
    while g > 1 and (g - 1) ** 3 >= n:
        g -= 1
    return g


# ---------------------------------------------------------------------------
# Colors
# ---------------------------------------------------------------------------

def _hue_to_rgb(p: float, q: float, t: float) -> float:
    if t < 0:
        t += 1
    if t > 1:
        t -= 1
    if t < 1 / 6:
        return p + (q - p) * 6 * t
    if t < 1 / 2:
        return q
    if t < 2 / 3:
        return p + (q - p) * (2 / 3 - t) * 6
    return p


def hsl_to_hex(h: float, s: float, l: float) -> str:
    """Convert HSL (all components in 0-1) to a lowercase #rrggbb string."""
    h = h % 1.0
    if s == 0:
        r = g = b = l
    else:
        q = l * (1 + s) if l < 0.5 else l + s - l * s
        p = 2 * l - q
        r = _hue_to_rgb(p, q, h + 1 / 3)
        g = _hue_to_rgb(p, q, h)
        b = _hue_to_rgb(p, q, h - 1 / 3)
    return "#" + "".join(f"{int(round(c * 255)):02x}" for c in (r, g, b))
