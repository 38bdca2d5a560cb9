"""
Dataset ingestion.

Parses raw CSV / JSON text into typed records, infers a numeric/categorical
schema, caches full-dataset statistics, and guarantees an embeddable 3D space
by deriving synthetic coordinate columns when fewer than three numeric
columns exist.
"""

from __future__ import annotations

import io
import json
import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from core.dataset import Dataset
from core.models import ColumnKind, ColumnSchema, Record, Schema, Value
from core.utils import parse_number
from engine.stats import compute_statistics

logger = logging.getLogger("uvicorn.error")

SCHEMA_SAMPLE_ROWS = 100
MIN_NUMERIC_COLUMNS = 3

INDEX_COLUMN = "_index"
DERIVED_Y_COLUMN = "_derived_y"
DERIVED_Z_COLUMN = "_derived_z"

# Half-widths of the optional uniform jitter on derived columns
DERIVED_Y_JITTER = 10.0
DERIVED_Z_JITTER = 7.5

SUPPORTED_FORMATS = ("csv", "json")


class ParseError(ValueError):
    """Raised when raw input cannot be turned into a dataset."""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _type_cell(raw: Any) -> Value:
    """Dynamically type one CSV cell: number, text, or null."""
    if raw is None or (isinstance(raw, float) and math.isnan(raw)):
        return None
    text = str(raw).strip()
    if not text:
        return None
    num = parse_number(text)
    return num if num is not None else text


def parse_csv(text: str) -> Tuple[List[str], List[Record]]:
    """Header row + typed records. Blank lines are skipped."""
    try:
        df = pd.read_csv(
            io.StringIO(text),
            header=None,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
        )
    except pd.errors.EmptyDataError as e:
        raise ParseError("CSV input has no header row") from e
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise ParseError(f"CSV parsing failed: {e}") from e

    if df.empty:
        raise ParseError("CSV input has no header row")

    header = [str(h).strip() if isinstance(h, str) else "" for h in df.iloc[0].tolist()]
    keep = [i for i, h in enumerate(header) if h]
    if not keep:
        raise ParseError("No valid column headers found in CSV")
    columns = _dedupe([header[i] for i in keep])

    records: List[Record] = []
    for row in df.iloc[1:].itertuples(index=False, name=None):
        record = {col: _type_cell(row[i]) for col, i in zip(columns, keep)}
        if all(v is None for v in record.values()):
            continue
        records.append(record)

    if not records:
        raise ParseError("CSV input has a header but no records")
    return columns, records


def _json_value(value: Any, column: str) -> Value:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return parse_number(value)
    if isinstance(value, str):
        return value
    raise ParseError(f"not an array of objects: column '{column}' holds a nested value")


def parse_json(text: str) -> Tuple[List[str], List[Record]]:
    """Array of flat objects -> (columns in first-seen order, records)."""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON: {e.msg} (line {e.lineno}, column {e.colno})") from e

    if not isinstance(parsed, list) or not parsed or not all(isinstance(o, dict) for o in parsed):
        raise ParseError("not an array of objects")

    columns: List[str] = []
    seen = set()
    for obj in parsed:
        for key in obj.keys():
            if key not in seen:
                seen.add(key)
                columns.append(key)

    records = [{col: _json_value(obj.get(col), col) for col in columns} for obj in parsed]
    return columns, records


def _dedupe(names: Sequence[str]) -> List[str]:
    out: List[str] = []
    counts: Dict[str, int] = {}
    for n in names:
        if n in counts:
            counts[n] += 1
            out.append(f"{n}_{counts[n]}")
        else:
            counts[n] = 1
            out.append(n)
    return out


# ---------------------------------------------------------------------------
# Schema inference
# ---------------------------------------------------------------------------

def infer_column_kind(values: Sequence[Value], sample_rows: int = SCHEMA_SAMPLE_ROWS) -> ColumnKind:
    """Numeric iff every non-null value among the first *sample_rows* parses."""
    sample = [v for v in values[:sample_rows] if v is not None]
    if not sample:
        return ColumnKind.categorical
    if all(parse_number(v) is not None for v in sample):
        return ColumnKind.numeric
    return ColumnKind.categorical


def infer_schema(columns: Sequence[str], records: Sequence[Record]) -> Schema:
    cols: List[ColumnSchema] = []
    for name in columns:
        values = [r.get(name) for r in records]
        if all(v is None for v in values[:SCHEMA_SAMPLE_ROWS]):
            logger.warning("Column %r has no values in sample, classified as categorical", name)
        cols.append(ColumnSchema(name=name, kind=infer_column_kind(values)))
    return Schema(columns=cols)


# ---------------------------------------------------------------------------
# Synthetic coordinate derivation
# ---------------------------------------------------------------------------

def _num_or_zero(value: Value) -> float:
    num = parse_number(value)
    return num if num is not None else 0.0


def _free_name(base: str, taken: set) -> str:
    """*base*, or *base*_2, *base*_3, ... if a non-numeric column holds it."""
    if base not in taken:
        return base
    i = 2
    while f"{base}_{i}" in taken:
        i += 1
    return f"{base}_{i}"


def derive_coordinates(
    records: Sequence[Record],
    schema: Schema,
    *,
    jitter: bool = False,
    seed: Optional[int] = None,
) -> Tuple[List[Record], Schema]:
    """Add `_index`, `_derived_y`, `_derived_z` until three numeric columns exist.

    A derivation is skipped when its name is already a numeric column; a
    text column with that name keeps its data and the derived column gets a
    suffixed name instead. Without *jitter* the derived values are exact
    linear functions of existing columns; with it, uniform noise drawn from a
    generator seeded by *seed* is added so coincident rows spread out.
    """
    numeric = list(schema.numeric_columns)
    if len(numeric) >= MIN_NUMERIC_COLUMNS:
        return list(records), schema

    logger.warning(
        "Only %d numeric column(s) found, deriving synthetic coordinates", len(numeric)
    )
    rng = np.random.default_rng(seed) if jitter else None
    rows: List[Record] = [dict(r) for r in records]
    cols = list(schema.columns)
    taken = set(schema.names)
    n = len(rows)

    def noise(half_width: float) -> np.ndarray:
        if rng is None:
            return np.zeros(n)
        return rng.uniform(-half_width, half_width, size=n)

    def add(base: str, values) -> None:
        name = _free_name(base, taken)
        if name != base:
            logger.warning("Column %r is not numeric, deriving %s instead", base, name)
        for row, value in zip(rows, values):
            row[name] = float(value)
        cols.append(ColumnSchema(name=name, kind=ColumnKind.numeric, derived=True))
        taken.add(name)
        numeric.append(name)

    if INDEX_COLUMN not in numeric:
        add(INDEX_COLUMN, range(n))

    if len(numeric) < MIN_NUMERIC_COLUMNS and DERIVED_Y_COLUMN not in numeric:
        x_col = numeric[0]
        logger.info("Deriving %s from %s", DERIVED_Y_COLUMN, x_col)
        jit = noise(DERIVED_Y_JITTER)
        add(DERIVED_Y_COLUMN, [_num_or_zero(row.get(x_col)) * 0.8 + jit[i] for i, row in enumerate(rows)])

    if len(numeric) < MIN_NUMERIC_COLUMNS and DERIVED_Z_COLUMN not in numeric:
        a_col, b_col = numeric[0], numeric[1]
        logger.info("Deriving %s from %s and %s", DERIVED_Z_COLUMN, a_col, b_col)
        jit = noise(DERIVED_Z_JITTER)
        add(
            DERIVED_Z_COLUMN,
            [
                (_num_or_zero(row.get(a_col)) + _num_or_zero(row.get(b_col))) * 0.5 + jit[i]
                for i, row in enumerate(rows)
            ],
        )

    return rows, Schema(columns=cols)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def normalize_format(fmt: str) -> str:
    key = (fmt or "").strip().lower().lstrip(".")
    if key not in SUPPORTED_FORMATS:
        raise ParseError(f"Unsupported format: {fmt!r}. Please use CSV or JSON.")
    return key


def ingest(
    raw_text: str,
    fmt: str,
    *,
    name: str = "dataset",
    derive_jitter: bool = False,
    seed: Optional[int] = None,
) -> Dataset:
    """
    Build an immutable Dataset from raw text.

    Raises ParseError on empty or malformed input; a shortage of numeric
    columns is handled by synthetic derivation, never raised.
    """
    source_format = normalize_format(fmt)
    if raw_text is None or not raw_text.strip():
        raise ParseError("Input is empty")

    if source_format == "csv":
        columns, records = parse_csv(raw_text)
    else:
        columns, records = parse_json(raw_text)

    schema = infer_schema(columns, records)
    rows, schema = derive_coordinates(records, schema, jitter=derive_jitter, seed=seed)
    stats = compute_statistics(rows, schema)

    logger.info(
        "Ingested %s: %d rows, numeric=%s, categorical=%s",
        name, len(rows), schema.numeric_columns, schema.categorical_columns,
    )
    return Dataset(
        name=name,
        source_format=source_format,
        records=tuple(rows),
        schema=schema,
        stats=stats,
    )
