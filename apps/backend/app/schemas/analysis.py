from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

_wire = ConfigDict(populate_by_name=True, extra="ignore")

Operator = Literal["equals", "not_equals", "contains", "starts_with"]


# -----------------------------------------------------------------------------
# Funnels
# -----------------------------------------------------------------------------
class FunnelStep(BaseModel):
    model_config = _wire

    order: Optional[int] = None
    name: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1, alias="eventType")
    event_name: Optional[str] = Field(default=None, alias="eventName")
    page_url: Optional[str] = Field(default=None, alias="pageURL")
    element_selector: Optional[str] = Field(default=None, alias="elementSelector")


class TimeWindow(BaseModel):
    value: int = Field(..., ge=1)
    unit: Literal["minutes", "hours", "days"] = "days"


class FunnelCreate(BaseModel):
    model_config = _wire

    name: Optional[str] = None
    description: Optional[str] = None
    project_id: Optional[str] = Field(default=None, alias="projectId")
    steps: List[FunnelStep] = Field(default_factory=list)
    time_window: Optional[TimeWindow] = Field(default=None, alias="timeWindow")
    is_active: bool = Field(default=True, alias="isActive")


class FunnelUpdate(BaseModel):
    model_config = _wire

    name: Optional[str] = None
    description: Optional[str] = None
    steps: Optional[List[FunnelStep]] = None
    time_window: Optional[TimeWindow] = Field(default=None, alias="timeWindow")
    is_active: Optional[bool] = Field(default=None, alias="isActive")


class StepResult(BaseModel):
    model_config = _wire

    step_name: str = Field(..., alias="stepName")
    order: int
    users: int
    conversion_rate: float = Field(..., alias="conversionRate")
    dropoff_rate: float = Field(..., alias="dropoffRate")
    # seconds; None for the last step or when nobody advanced
    avg_time_to_next: Optional[int] = Field(default=None, alias="avgTimeToNext")


class FunnelAnalysis(BaseModel):
    model_config = _wire

    funnel_id: str = Field(..., alias="funnelId")
    funnel_name: str = Field(..., alias="funnelName")
    date_range: str = Field(..., alias="dateRange")

    steps: List[StepResult]
    total_entered: int = Field(..., alias="totalEntered")
    completed: int
    overall_conversion: float = Field(..., alias="overallConversion")

    filters_applied: bool = Field(..., alias="filtersApplied")
    filters: Dict[str, str] = Field(default_factory=dict)
    baseline_steps: Optional[List[StepResult]] = Field(default=None, alias="baselineSteps")
    baseline_rate: float = Field(..., alias="baselineRate")
    filtered_rate: float = Field(..., alias="filteredRate")
    conversion_lift_pct: float = Field(..., alias="conversionLiftPct")


# -----------------------------------------------------------------------------
# Cohorts
# -----------------------------------------------------------------------------
class CohortCondition(BaseModel):
    field: str = Field(..., min_length=1)
    operator: Operator
    value: Any = None


class PropertyCondition(BaseModel):
    key: str = Field(..., min_length=1)
    operator: Operator
    value: Any = None


class StructuredConditionsIn(BaseModel):
    properties: List[PropertyCondition] = Field(default_factory=list)
    # event conditions are stored but not evaluated
    events: List[Dict[str, Any]] = Field(default_factory=list)


Conditions = Union[List[CohortCondition], StructuredConditionsIn]


class CohortCreate(BaseModel):
    model_config = _wire

    name: Optional[str] = None
    description: Optional[str] = None
    project_id: Optional[str] = Field(default=None, alias="projectId")
    conditions: Optional[Conditions] = None


class CohortUpdate(BaseModel):
    model_config = _wire

    name: Optional[str] = None
    description: Optional[str] = None
    conditions: Optional[Conditions] = None


class RetentionPoint(BaseModel):
    week: str
    retention: float
    users: int


class BehaviorMetric(BaseModel):
    metric: str
    value: float


class CohortAnalysis(BaseModel):
    model_config = _wire

    cohort_id: str = Field(..., alias="cohortId")
    cohort_name: str = Field(..., alias="cohortName")
    date_range: str = Field(..., alias="dateRange")
    user_count: int = Field(..., alias="userCount")
    retention: List[RetentionPoint]
    behavior: List[BehaviorMetric]


# -----------------------------------------------------------------------------
# Heatmaps
# -----------------------------------------------------------------------------
class HeatmapCell(BaseModel):
    # top-left corner of the grid cell, in page pixels
    x: int
    y: int
    value: int


class HeatmapAnalysis(BaseModel):
    model_config = _wire

    page_url: str = Field(..., alias="pageURL")
    event_type: str = Field(..., alias="eventType")
    date_range: str = Field(..., alias="dateRange")
    device: Optional[str] = None
    grid_size: int = Field(..., alias="gridSize")
    points: List[HeatmapCell]
    total_interactions: int = Field(..., alias="totalInteractions")
    unique_users: int = Field(..., alias="uniqueUsers")
    max_value: int = Field(..., alias="maxValue")


class HeatmapSample(BaseModel):
    x: float
    y: float
    timestamp: datetime


# -----------------------------------------------------------------------------
# Recordings
# -----------------------------------------------------------------------------
class RecordingStart(BaseModel):
    model_config = _wire

    project_id: Optional[str] = Field(default=None, alias="projectId")
    recording_id: Optional[str] = Field(default=None, alias="recordingId")


class RecordingStop(BaseModel):
    model_config = _wire

    project_id: Optional[str] = Field(default=None, alias="projectId")
