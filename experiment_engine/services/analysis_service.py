"""
Statistical analysis of experiments.

Invoked out-of-band for reporting, never on the assignment path. All numbers
are derived from the result log at query time; the counters cached on
Variant rows are refreshed here and never read back as input.

Failures (unknown experiment, missing control) are logged and propagate.
"""

import logging
import math
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from experiment_engine.config import settings
from experiment_engine.errors import NotFoundError, ValidationError
from experiment_engine.models import Experiment, ResultType, Variant
from experiment_engine.repositories.experiment_repo import ExperimentRepository
from experiment_engine.repositories.result_repo import ResultRepository
from experiment_engine.schemas import (
    ExperimentResults,
    MetricsOverTime,
    PeriodMetrics,
    SignificanceRow,
    StatisticalSignificance,
    TimeToCompletion,
    VariantMetricsOverTime,
    VariantResults,
)
from experiment_engine.services import statistics

logger = logging.getLogger(__name__)

# Lift the completion estimate is powered for
COMPLETION_MINIMUM_DETECTABLE_EFFECT = 0.1


class AnalysisService:
    def __init__(
        self,
        db: Session,
        experiment_repo: Optional[ExperimentRepository] = None,
        result_repo: Optional[ResultRepository] = None,
    ):
        self.experiment_repo = experiment_repo or ExperimentRepository(db)
        self.result_repo = result_repo or ResultRepository(db)

    def _get_experiment(self, experiment_id: str) -> Experiment:
        experiment = self.experiment_repo.get_with_variants(experiment_id)
        if not experiment:
            raise NotFoundError(f"Experiment with ID {experiment_id} not found")
        return experiment

    def _get_control(self, experiment: Experiment) -> Variant:
        control = experiment.control_variant
        if not control:
            raise ValidationError("No control variant found for experiment")
        return control

    def _counts(self, variant: Variant) -> tuple[int, int]:
        """(impressions, conversions) of a variant, straight from the log."""
        return (
            self.result_repo.count(variant.id, ResultType.IMPRESSION),
            self.result_repo.count(variant.id, ResultType.CONVERSION),
        )

    def get_experiment_results(self, experiment_id: str) -> ExperimentResults:
        """
        Per-variant impressions, clicks, conversions, revenue and lift over
        control. Refreshes the cached counters on each variant.
        """
        try:
            experiment = self._get_experiment(experiment_id)

            variant_results = []
            for variant in experiment.variants:
                impressions, conversions = self._counts(variant)
                clicks = self.result_repo.count(variant.id, ResultType.CLICK)
                total_revenue = self.result_repo.sum_values(variant.id, ResultType.REVENUE)

                conversion_rate = statistics.conversion_rate(conversions, impressions)

                variant.impressions = impressions
                variant.conversions = conversions
                variant.conversion_rate = conversion_rate

                variant_results.append(VariantResults(
                    variant_id=variant.id,
                    variant_name=variant.name,
                    is_control=variant.is_control,
                    impressions=impressions,
                    clicks=clicks,
                    conversions=conversions,
                    click_through_rate=clicks / impressions if impressions > 0 else 0.0,
                    conversion_rate=conversion_rate,
                    total_revenue=total_revenue,
                    average_revenue=total_revenue / conversions if conversions > 0 else 0.0,
                    is_winner=variant.is_winner,
                ))

            self.experiment_repo.save(experiment)

            control = next((r for r in variant_results if r.is_control), None)
            if control:
                for result in variant_results:
                    if not result.is_control:
                        result.improvement_rate = statistics.relative_improvement(
                            control.conversion_rate, result.conversion_rate
                        )

            return ExperimentResults(
                experiment_id=experiment.id,
                experiment_name=experiment.name,
                status=experiment.status,
                start_date=experiment.start_date,
                end_date=experiment.end_date,
                variants=variant_results,
            )
        except Exception as e:
            logger.error(f"Failed to get experiment results: {e}")
            raise

    def calculate_statistical_significance(self, experiment_id: str) -> StatisticalSignificance:
        """
        Two-proportion z-test of every treatment against control.

        The control row comes first and, by convention, reports no
        improvement, z=0, p=1 and confidence 0. Confidence level and
        improvement are cached on each treatment variant.
        """
        try:
            experiment = self._get_experiment(experiment_id)
            control = self._get_control(experiment)

            control_impressions, control_conversions = self._counts(control)
            control_rate = statistics.conversion_rate(control_conversions, control_impressions)

            rows = [SignificanceRow(
                variant_id=control.id,
                variant_name=control.name,
                is_control=True,
                impressions=control_impressions,
                conversions=control_conversions,
                conversion_rate=control_rate,
                improvement=0.0,
                z_score=0.0,
                p_value=1.0,
                confidence_level=0.0,
                significant=False,
                is_winner=control.is_winner,
            )]

            for variant in experiment.variants:
                if variant.is_control:
                    continue

                impressions, conversions = self._counts(variant)
                rate = statistics.conversion_rate(conversions, impressions)
                improvement = statistics.relative_improvement(control_rate, rate)
                test = statistics.two_proportion_z_test(
                    control_conversions, control_impressions, conversions, impressions
                )

                variant.confidence_level = test.confidence_level
                variant.improvement_rate = improvement

                rows.append(SignificanceRow(
                    variant_id=variant.id,
                    variant_name=variant.name,
                    is_control=False,
                    impressions=impressions,
                    conversions=conversions,
                    conversion_rate=rate,
                    improvement=improvement,
                    z_score=test.z_score,
                    p_value=test.p_value,
                    confidence_level=test.confidence_level,
                    significant=test.significant,
                    is_winner=variant.is_winner,
                ))

            self.experiment_repo.save(experiment)

            return StatisticalSignificance(
                experiment_id=experiment.id,
                experiment_name=experiment.name,
                results=rows,
            )
        except Exception as e:
            logger.error(f"Failed to calculate statistical significance: {e}")
            raise

    def calculate_required_sample_size(
        self,
        baseline_conversion_rate: float,
        minimum_detectable_effect: float,
        significance_level: float = 0.05,
        power: float = 0.8,
        exact_quantiles: Optional[bool] = None,
    ) -> int:
        if exact_quantiles is None:
            exact_quantiles = settings.sample_size_exact_quantiles
        try:
            return statistics.required_sample_size(
                baseline_conversion_rate,
                minimum_detectable_effect,
                significance_level,
                power,
                exact_quantiles=exact_quantiles,
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e

    def estimate_time_to_completion(self, experiment_id: str, daily_traffic: float) -> TimeToCompletion:
        """
        Days of traffic still needed to reach the sample size for a 10% lift
        at the current control conversion rate.

        days_remaining is inf when daily_traffic is not positive, or when the
        control has not converted yet (no sample size exists for a zero rate).
        """
        try:
            experiment = self._get_experiment(experiment_id)
            control = self._get_control(experiment)

            control_impressions, control_conversions = self._counts(control)
            current_rate = statistics.conversion_rate(control_conversions, control_impressions)

            current_total = sum(
                self.result_repo.count(variant.id, ResultType.IMPRESSION)
                for variant in experiment.variants
            )

            try:
                per_variant = self.calculate_required_sample_size(
                    current_rate, COMPLETION_MINIMUM_DETECTABLE_EFFECT
                )
            except ValidationError:
                logger.warning(
                    f"Sample size undefined for experiment {experiment_id} at conversion rate {current_rate}"
                )
                return TimeToCompletion(
                    experiment_id=experiment.id,
                    experiment_name=experiment.name,
                    current_total_impressions=current_total,
                    days_remaining=math.inf,
                )

            total_required = per_variant * len(experiment.variants)
            remaining = max(0, total_required - current_total)

            if daily_traffic > 0:
                days_remaining = math.ceil(remaining / daily_traffic)
                completion_date = datetime.utcnow() + timedelta(days=days_remaining)
            else:
                days_remaining = math.inf
                completion_date = None

            return TimeToCompletion(
                experiment_id=experiment.id,
                experiment_name=experiment.name,
                current_total_impressions=current_total,
                required_sample_size_per_variant=per_variant,
                total_required_sample_size=total_required,
                remaining_impressions=remaining,
                days_remaining=days_remaining,
                estimated_completion_date=completion_date,
            )
        except Exception as e:
            logger.error(f"Failed to estimate time to completion: {e}")
            raise

    def get_metrics_over_time(self, experiment_id: str, interval: str = "day") -> MetricsOverTime:
        """Impressions, conversions and conversion rate per variant per period."""
        try:
            if interval not in statistics.INTERVALS:
                raise ValidationError(
                    f"Unknown interval '{interval}', expected one of {', '.join(statistics.INTERVALS)}"
                )

            experiment = self._get_experiment(experiment_id)

            variant_metrics = []
            for variant in experiment.variants:
                impressions = Counter(
                    statistics.period_label(ts, interval)
                    for ts in self.result_repo.timestamps(variant.id, ResultType.IMPRESSION)
                )
                conversions = Counter(
                    statistics.period_label(ts, interval)
                    for ts in self.result_repo.timestamps(variant.id, ResultType.CONVERSION)
                )

                periods = sorted(set(impressions) | set(conversions))
                variant_metrics.append(VariantMetricsOverTime(
                    variant_id=variant.id,
                    variant_name=variant.name,
                    is_control=variant.is_control,
                    metrics_over_time=[
                        PeriodMetrics(
                            period=period,
                            impressions=impressions[period],
                            conversions=conversions[period],
                            conversion_rate=statistics.conversion_rate(
                                conversions[period], impressions[period]
                            ),
                        )
                        for period in periods
                    ],
                ))

            return MetricsOverTime(
                experiment_id=experiment.id,
                experiment_name=experiment.name,
                interval=interval,
                variant_metrics=variant_metrics,
            )
        except Exception as e:
            logger.error(f"Failed to get metrics over time: {e}")
            raise
