"""
Immutable ingested dataset: records + inferred schema + cached statistics.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .models import ColumnStats, Record, Schema


@dataclass(frozen=True, eq=False)
class Dataset:
    name: str
    source_format: str
    records: Tuple[Record, ...]
    schema: Schema
    stats: Dict[str, ColumnStats] = field(default_factory=dict)

    @property
    def row_count(self) -> int:
        return len(self.records)

    @property
    def columns(self) -> List[str]:
        return self.schema.names

    def indexed_records(self) -> List[Tuple[int, Record]]:
        return list(enumerate(self.records))
