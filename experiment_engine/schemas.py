"""
Pydantic schemas for request validation and response serialization.

Organized by domain:
- Variant schemas
- Experiment schemas
- Assignment schemas
- Tracking (event) schemas
- Analysis schemas
"""

import math
from pydantic import AliasChoices, BaseModel, Field, ConfigDict, field_serializer
from typing import Optional, List, Dict, Any
from datetime import datetime

from experiment_engine.models import ExperimentStatus, ExperimentType, ResultType


class VariantBase(BaseModel):
    """Base variant properties."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, description="Human-readable description")
    is_control: bool = Field(False, description="Exactly one variant per experiment is the control")
    configuration: Optional[Dict[str, Any]] = Field(
        None, description="Opaque key/value payload interpreted by the calling feature"
    )


class VariantCreate(VariantBase):
    """Schema for creating a variant."""
    pass


class VariantUpdate(BaseModel):
    """Partial update of a single variant."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    is_control: Optional[bool] = None
    configuration: Optional[Dict[str, Any]] = None


class VariantResponse(VariantBase):
    """Schema for variant in responses."""
    id: str
    experiment_id: str
    position: int
    impressions: int
    conversions: int
    conversion_rate: float
    confidence_level: Optional[float] = None
    improvement_rate: Optional[float] = None
    is_winner: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ExperimentBase(BaseModel):
    """Base experiment properties."""
    name: str = Field(..., min_length=1, max_length=255, description="Experiment name")
    description: Optional[str] = Field(None, description="Experiment description")
    hypothesis: Optional[str] = None
    type: ExperimentType = Field(ExperimentType.FEATURE_FLAG, description="Feature the experiment configures")
    audience_percentage: Optional[float] = Field(
        None,
        ge=0,
        le=100,
        description="Share of new subjects eligible for treatment; the rest see control. Null means 100."
    )
    target_audience: Optional[Dict[str, Any]] = None
    primary_metric: Optional[str] = None
    secondary_metrics: Optional[List[str]] = None


class ExperimentCreate(ExperimentBase):
    """Schema for creating an experiment with variants."""
    variants: List[VariantCreate] = Field(..., description="Variants, exactly one marked as control")


class ExperimentUpdate(BaseModel):
    """
    Schema for updating an experiment.

    When variants is present the whole variant list is replaced.
    """
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    hypothesis: Optional[str] = None
    type: Optional[ExperimentType] = None
    audience_percentage: Optional[float] = Field(None, ge=0, le=100)
    target_audience: Optional[Dict[str, Any]] = None
    primary_metric: Optional[str] = None
    secondary_metrics: Optional[List[str]] = None
    variants: Optional[List[VariantCreate]] = None


class ExperimentResponse(ExperimentBase):
    """Schema for experiment in responses."""
    id: str
    status: ExperimentStatus
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    has_winner: bool
    winning_variant_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    variants: List[VariantResponse] = []

    model_config = ConfigDict(from_attributes=True)


class ExperimentListResponse(BaseModel):
    """Schema for listing experiments."""
    experiments: List[ExperimentResponse]
    total: int


class AssignmentResponse(BaseModel):
    """A subject's durable variant assignment."""
    id: str
    experiment_id: str
    variant_id: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    has_impression: bool
    has_interaction: bool
    has_conversion: bool
    assigned_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VariantConfiguration(BaseModel):
    """What a feature needs to render the subject's variant."""
    variant_id: str
    configuration: Dict[str, Any] = {}
    assignment_id: str


class ImpressionTrack(BaseModel):
    assignment_id: str


class InteractionTrack(BaseModel):
    assignment_id: str
    context: Optional[str] = Field(None, max_length=255)
    metadata: Optional[Dict[str, Any]] = None


class ConversionTrack(InteractionTrack):
    value: Optional[float] = Field(None, description="Revenue attributed to the conversion")


class CustomEventTrack(InteractionTrack):
    event_type: str = Field(..., min_length=1, max_length=255)
    value: Optional[float] = None


class EventResponse(BaseModel):
    """Schema for a recorded event."""
    id: str
    variant_id: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    result_type: ResultType
    value: Optional[float] = None
    context: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(
        None, validation_alias=AliasChoices("event_metadata", "metadata")
    )
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class TrackingResponse(BaseModel):
    recorded: int
    events: List[EventResponse]


class VariantResults(BaseModel):
    """Raw performance of a single variant."""
    variant_id: str
    variant_name: str
    is_control: bool
    impressions: int
    clicks: int
    conversions: int
    click_through_rate: float
    conversion_rate: float
    total_revenue: float
    average_revenue: float
    is_winner: bool
    improvement_rate: Optional[float] = Field(
        None, description="Relative lift over control; None for the control itself"
    )


class ExperimentResults(BaseModel):
    experiment_id: str
    experiment_name: str
    status: ExperimentStatus
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    variants: List[VariantResults]


class SignificanceRow(BaseModel):
    """z-test outcome of one variant against control."""
    variant_id: str
    variant_name: str
    is_control: bool
    impressions: int
    conversions: int
    conversion_rate: float
    improvement: float
    z_score: float
    p_value: float
    confidence_level: float
    significant: bool
    is_winner: bool


class StatisticalSignificance(BaseModel):
    experiment_id: str
    experiment_name: str
    results: List[SignificanceRow] = Field(description="Control first, then treatments")


class TimeToCompletion(BaseModel):
    experiment_id: str
    experiment_name: str
    current_total_impressions: int
    required_sample_size_per_variant: Optional[int] = None
    total_required_sample_size: Optional[int] = None
    remaining_impressions: Optional[int] = None
    days_remaining: Optional[float] = Field(description="inf when the target cannot be reached; null in JSON")
    estimated_completion_date: Optional[datetime] = None

    @field_serializer("days_remaining", when_used="json")
    def serialize_days_remaining(self, days_remaining: Optional[float]) -> Optional[float]:
        # JSON has no infinity
        if days_remaining is not None and math.isinf(days_remaining):
            return None
        return days_remaining


class PeriodMetrics(BaseModel):
    period: str
    impressions: int
    conversions: int
    conversion_rate: float


class VariantMetricsOverTime(BaseModel):
    variant_id: str
    variant_name: str
    is_control: bool
    metrics_over_time: List[PeriodMetrics]


class MetricsOverTime(BaseModel):
    experiment_id: str
    experiment_name: str
    interval: str
    variant_metrics: List[VariantMetricsOverTime]


class SampleSizeResponse(BaseModel):
    baseline_conversion_rate: float
    minimum_detectable_effect: float
    significance_level: float
    power: float
    required_sample_size: int = Field(description="Subjects needed per variant")
