"""
Core Pydantic models for the point cloud engine.

All domain types live here so every module shares the same vocabulary.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


# A cell is a tagged scalar: Number (float), Text (str) or Null (None).
Value = Union[float, str, None]
Record = Dict[str, Value]


# ---------------------------------------------------------------------------
# Schema & statistics
# ---------------------------------------------------------------------------

class ColumnKind(str, Enum):
    numeric = "numeric"
    categorical = "categorical"


class ColumnSchema(BaseModel):
    name: str
    kind: ColumnKind
    derived: bool = False                 # synthetic coordinate column


class Schema(BaseModel):
    columns: List[ColumnSchema] = Field(default_factory=list)

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def numeric_columns(self) -> List[str]:
        return [c.name for c in self.columns if c.kind == ColumnKind.numeric]

    @property
    def categorical_columns(self) -> List[str]:
        return [c.name for c in self.columns if c.kind == ColumnKind.categorical]

    def kind_of(self, name: str) -> Optional[ColumnKind]:
        for c in self.columns:
            if c.name == name:
                return c.kind
        return None


class NumericStats(BaseModel):
    kind: Literal["numeric"] = "numeric"
    min: float
    max: float
    mean: float
    count: int


class CategoricalStats(BaseModel):
    kind: Literal["categorical"] = "categorical"
    categories: Dict[str, int] = Field(default_factory=dict)
    unique_count: int = 0


ColumnStats = Union[NumericStats, CategoricalStats]


# ---------------------------------------------------------------------------
# Color maps
# ---------------------------------------------------------------------------

class NumericColorMap(BaseModel):
    kind: Literal["numeric"] = "numeric"
    column: str
    min: float
    max: float
    is_uniform: bool = False


class CategoricalColorMap(BaseModel):
    kind: Literal["categorical"] = "categorical"
    column: str
    colors: Dict[str, str] = Field(default_factory=dict)


ColorMap = Union[NumericColorMap, CategoricalColorMap]


# ---------------------------------------------------------------------------
# Points & layouts
# ---------------------------------------------------------------------------

class LayoutKind(str, Enum):
    scatter = "scatter"
    grid = "grid"
    kmeans = "kmeans"


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


class Point(BaseModel):
    id: str
    index: int                            # row index in the full dataset
    position: Position
    color: str
    label: str = ""
    cluster: Optional[int] = None         # only set by the k-means layout
    original_record: Dict[str, Any] = Field(default_factory=dict)


class LayoutOptions(BaseModel):
    x_column: Optional[str] = None
    y_column: Optional[str] = None
    z_column: Optional[str] = None
    color_column: Optional[str] = None
    filter_column: Optional[str] = None
    filter_value: Optional[str] = None
    clusters: int = 3
    max_iterations: int = Field(default=50, ge=1, le=1000)
    seed: Optional[int] = None


class LayoutResult(BaseModel):
    kind: LayoutKind
    points: List[Point] = Field(default_factory=list)
    x_column: Optional[str] = None
    y_column: Optional[str] = None
    z_column: Optional[str] = None
    color_column: Optional[str] = None
    color_map: Optional[ColorMap] = None
    clusters: Optional[int] = None        # effective K after clamping
    iterations: Optional[int] = None
    converged: Optional[bool] = None


# ---------------------------------------------------------------------------
# Analysis results
# ---------------------------------------------------------------------------

class OutlierResult(BaseModel):
    outlier_ids: List[str] = Field(default_factory=list)
    non_outlier_ids: List[str] = Field(default_factory=list)
    mean_distance: float = 0.0
    std_distance: float = 0.0
    threshold_distance: Optional[float] = None


class PointPair(BaseModel):
    point1_index: int
    point2_index: int
    point1_id: Optional[str] = None
    point2_id: Optional[str] = None
    correlation: float


class CorrelationResult(BaseModel):
    column1: str
    column2: str
    coefficient: Optional[float] = None
    threshold: float
    pairs: List[PointPair] = Field(default_factory=list)


class PointLink(BaseModel):
    source_id: str
    target_id: str
    distance: float


class DatasetSummary(BaseModel):
    name: str
    source_format: str
    row_count: int
    columns: List[str]
    numeric_columns: List[str]
    categorical_columns: List[str]
    derived_columns: List[str] = Field(default_factory=list)
    stats: Dict[str, ColumnStats] = Field(default_factory=dict)
    headline: str = ""
    findings: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class LayoutRequest(BaseModel):
    kind: str = LayoutKind.scatter.value  # unknown kinds fall back to scatter
    options: LayoutOptions = Field(default_factory=LayoutOptions)


class OutlierRequest(BaseModel):
    layout: LayoutRequest = Field(default_factory=LayoutRequest)
    threshold: float = 1.5


class CorrelationRequest(BaseModel):
    column1: str
    column2: str
    threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    layout: Optional[LayoutRequest] = None


class ConnectionRequest(BaseModel):
    layout: LayoutRequest = Field(default_factory=LayoutRequest)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    running = "running"
    complete = "complete"
    cancelled = "cancelled"
    failed = "failed"


class JobRecord(BaseModel):
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    dataset: str
    action: str
    status: JobStatus = JobStatus.running
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str = Field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")
