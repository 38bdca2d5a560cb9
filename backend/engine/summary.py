"""
Dataset summary: the info-panel view of an ingested dataset.
"""

from __future__ import annotations

from typing import List

from core.dataset import Dataset
from core.models import CategoricalStats, DatasetSummary, NumericStats
from core.utils import pct


def _findings(dataset: Dataset) -> List[str]:
    findings: List[str] = []
    schema = dataset.schema
    findings.append(
        f"{dataset.row_count:,} rows across {len(schema.columns)} columns "
        f"({len(schema.numeric_columns)} numeric, {len(schema.categorical_columns)} categorical)."
    )

    derived = [c.name for c in schema.columns if c.derived]
    if derived:
        findings.append(
            "Fewer than three numeric columns; derived synthetic coordinates: "
            + ", ".join(derived) + "."
        )

    sparse = []
    for name, stats in dataset.stats.items():
        if isinstance(stats, NumericStats):
            missing = dataset.row_count - stats.count
        else:
            missing = dataset.row_count - sum(stats.categories.values())
        share = pct(missing, dataset.row_count)
        if share >= 5.0:
            sparse.append((name, share))
    if sparse:
        top = sorted(sparse, key=lambda x: x[1], reverse=True)[:5]
        findings.append(
            "Columns with notable missingness: "
            + ", ".join(f"{n} ({s:.1f}%)" for n, s in top) + "."
        )

    uniform = [
        name for name, stats in dataset.stats.items()
        if isinstance(stats, NumericStats) and stats.count and stats.min == stats.max
    ]
    if uniform:
        findings.append("Constant numeric columns: " + ", ".join(uniform) + ".")

    high_card = [
        name for name, stats in dataset.stats.items()
        if isinstance(stats, CategoricalStats) and stats.unique_count > 50
    ]
    if high_card:
        findings.append("High-cardinality categorical columns: " + ", ".join(high_card) + ".")
    return findings


def summarize_dataset(dataset: Dataset) -> DatasetSummary:
    """Row/column counts, column kinds, cached statistics and findings."""
    schema = dataset.schema
    return DatasetSummary(
        name=dataset.name,
        source_format=dataset.source_format,
        row_count=dataset.row_count,
        columns=schema.names,
        numeric_columns=schema.numeric_columns,
        categorical_columns=schema.categorical_columns,
        derived_columns=[c.name for c in schema.columns if c.derived],
        stats=dict(dataset.stats),
        headline=f"Data summary: {dataset.name}",
        findings=_findings(dataset),
    )
