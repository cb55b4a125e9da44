from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from experiment_engine.models import ExperimentResult, ResultType


class ResultRepository:
    """Append-only access to the experiment result (event) log."""

    def __init__(self, db: Session):
        self.db = db

    def record(self, *results: ExperimentResult) -> list[ExperimentResult]:
        """
        Appends events in a single commit, together with any pending change
        already in the session (assignment flags).
        """
        try:
            self.db.add_all(results)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        for result in results:
            self.db.refresh(result)
        return list(results)

    def count(self, variant_id: str, result_type: ResultType) -> int:
        stmt = select(func.count(ExperimentResult.id)).where(
            ExperimentResult.variant_id == variant_id,
            ExperimentResult.result_type == result_type,
        )
        return self.db.scalar(stmt) or 0

    def sum_values(self, variant_id: str, result_type: ResultType) -> float:
        stmt = select(func.coalesce(func.sum(ExperimentResult.value), 0.0)).where(
            ExperimentResult.variant_id == variant_id,
            ExperimentResult.result_type == result_type,
        )
        return float(self.db.scalar(stmt) or 0.0)

    def timestamps(self, variant_id: str, result_type: ResultType) -> list[datetime]:
        """Event times of one type for one variant, used for period bucketing."""
        stmt = select(ExperimentResult.timestamp).where(
            ExperimentResult.variant_id == variant_id,
            ExperimentResult.result_type == result_type,
        )
        return list(self.db.scalars(stmt).all())
