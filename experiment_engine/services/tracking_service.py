"""
Event recorder.

Every call appends at least one row to the result log. Assignment flags
(has_impression, has_interaction, has_conversion) answer "did this subject
ever ...", the log answers "how many times, with what value"; the two are
maintained independently.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from experiment_engine.errors import NotFoundError, TrackingError
from experiment_engine.models import Assignment, ExperimentResult, ResultType
from experiment_engine.repositories.assignment_repo import AssignmentRepository
from experiment_engine.repositories.result_repo import ResultRepository

logger = logging.getLogger(__name__)


class TrackingService:
    def __init__(
        self,
        db: Session,
        assignment_repo: Optional[AssignmentRepository] = None,
        result_repo: Optional[ResultRepository] = None,
    ):
        self.assignment_repo = assignment_repo or AssignmentRepository(db)
        self.result_repo = result_repo or ResultRepository(db)

    def _get_assignment(self, assignment_id: str) -> Assignment:
        assignment = self.assignment_repo.get(assignment_id)
        if not assignment:
            raise NotFoundError(f"Assignment with ID {assignment_id} not found")
        return assignment

    def _result(self, assignment: Assignment, result_type: ResultType, **fields) -> ExperimentResult:
        return ExperimentResult(
            variant_id=assignment.variant_id,
            user_id=assignment.user_id,
            session_id=assignment.session_id,
            result_type=result_type,
            **fields,
        )

    def _record(self, action: str, *results: ExperimentResult) -> list[ExperimentResult]:
        try:
            return self.result_repo.record(*results)
        except SQLAlchemyError as e:
            logger.error(f"Failed to track {action}: {e}")
            raise TrackingError(f"Failed to record {action} event") from e

    def track_impression(self, assignment_id: str) -> list[ExperimentResult]:
        assignment = self._get_assignment(assignment_id)

        if not assignment.has_impression:
            assignment.has_impression = True

        return self._record("impression", self._result(assignment, ResultType.IMPRESSION))

    def track_interaction(
        self,
        assignment_id: str,
        context: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> list[ExperimentResult]:
        """Records a click on the variant."""
        assignment = self._get_assignment(assignment_id)

        if not assignment.has_interaction:
            assignment.has_interaction = True

        return self._record(
            "interaction",
            self._result(assignment, ResultType.CLICK, context=context, event_metadata=metadata),
        )

    def track_conversion(
        self,
        assignment_id: str,
        value: Optional[float] = None,
        context: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> list[ExperimentResult]:
        """
        Records a conversion. A value additionally records a revenue event so
        revenue can be summed without touching conversion counts.
        """
        assignment = self._get_assignment(assignment_id)

        if not assignment.has_conversion:
            assignment.has_conversion = True

        results = [
            self._result(assignment, ResultType.CONVERSION, context=context, event_metadata=metadata)
        ]
        if value is not None:
            results.append(self._result(
                assignment,
                ResultType.REVENUE,
                value=value,
                context=context,
                event_metadata=metadata,
            ))

        return self._record("conversion", *results)

    def track_custom_event(
        self,
        assignment_id: str,
        event_type: str,
        value: Optional[float] = None,
        context: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> list[ExperimentResult]:
        """
        Custom events share a single result type; the caller's event_type is
        kept in context and metadata to tell them apart.
        """
        assignment = self._get_assignment(assignment_id)

        event_metadata = {**(metadata or {}), "eventType": event_type, "customContext": context}

        return self._record(
            "custom event",
            self._result(
                assignment,
                ResultType.CUSTOM,
                value=value,
                context=event_type,
                event_metadata=event_metadata,
            ),
        )
