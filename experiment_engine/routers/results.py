"""
Experiment results and analytics endpoints.

All figures are recomputed from the event log on each request.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from experiment_engine.auth import verify_token
from experiment_engine.database import get_db
from experiment_engine.schemas import (
    ExperimentResults,
    MetricsOverTime,
    SampleSizeResponse,
    StatisticalSignificance,
    TimeToCompletion,
)
from experiment_engine.services.analysis_service import AnalysisService

router = APIRouter(
    prefix="/experiments",
    tags=["results"],
    dependencies=[Depends(verify_token)]
)

analysis_router = APIRouter(
    prefix="/analysis",
    tags=["results"],
    dependencies=[Depends(verify_token)]
)


@router.get("/{experiment_id}/results", response_model=ExperimentResults)
async def get_experiment_results(
    experiment_id: str,
    db: Session = Depends(get_db)
):
    """
    Per-variant impressions, clicks, conversions and revenue, with lift over
    control for each treatment.
    """
    return AnalysisService(db).get_experiment_results(experiment_id)


@router.get("/{experiment_id}/significance", response_model=StatisticalSignificance)
async def get_statistical_significance(
    experiment_id: str,
    db: Session = Depends(get_db)
):
    """
    Two-proportion z-test of every treatment against control.

    A treatment is significant at 95% confidence or above. The control row
    is listed first.
    """
    return AnalysisService(db).calculate_statistical_significance(experiment_id)


@router.get("/{experiment_id}/completion-estimate", response_model=TimeToCompletion)
async def get_completion_estimate(
    experiment_id: str,
    daily_traffic: float = Query(..., description="Expected impressions per day across all variants"),
    db: Session = Depends(get_db)
):
    """Days until the experiment can detect a 10% lift over control."""
    return AnalysisService(db).estimate_time_to_completion(experiment_id, daily_traffic)


@router.get("/{experiment_id}/metrics", response_model=MetricsOverTime)
async def get_metrics_over_time(
    experiment_id: str,
    interval: str = Query("day", description="Bucket size: 'day', 'week' or 'month'"),
    db: Session = Depends(get_db)
):
    """Impressions, conversions and conversion rate per variant per period."""
    return AnalysisService(db).get_metrics_over_time(experiment_id, interval)


@analysis_router.get("/sample-size", response_model=SampleSizeResponse)
async def get_required_sample_size(
    baseline: float = Query(..., gt=0, lt=1, description="Baseline conversion rate"),
    mde: float = Query(..., description="Minimum detectable effect, relative to baseline"),
    significance_level: float = Query(0.05, gt=0, lt=1),
    power: float = Query(0.8, gt=0, lt=1),
    db: Session = Depends(get_db)
):
    """Subjects needed per variant to detect a relative lift of `mde`."""
    required = AnalysisService(db).calculate_required_sample_size(
        baseline, mde, significance_level, power
    )
    return SampleSizeResponse(
        baseline_conversion_rate=baseline,
        minimum_detectable_effect=mde,
        significance_level=significance_level,
        power=power,
        required_sample_size=required,
    )
