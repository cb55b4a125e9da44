"""
Assignment engine.

Binds subjects (a user id, a session id, or both) to experiment variants.

**Stability Guarantee**: once a subject has an assignment for an experiment,
every later call returns that same row. Concurrent first contact is settled by
the database unique constraints: the losing insert rolls back and re-reads the
winner, so no subject ever sees two variants.
"""

import logging
import random
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from experiment_engine.errors import (
    ConflictError,
    NotFoundError,
    TrackingError,
    ValidationError,
)
from experiment_engine.models import (
    Assignment,
    Experiment,
    ExperimentStatus,
    ExperimentType,
    Variant,
)
from experiment_engine.repositories.assignment_repo import AssignmentRepository
from experiment_engine.repositories.experiment_repo import ExperimentRepository
from experiment_engine.services.tracking_service import TrackingService

logger = logging.getLogger(__name__)


def require_subject(user_id: Optional[str], session_id: Optional[str]) -> None:
    if not user_id and not session_id:
        raise ValidationError("Either userId or sessionId must be provided")


class AssignmentService:
    def __init__(
        self,
        db: Session,
        experiment_repo: Optional[ExperimentRepository] = None,
        assignment_repo: Optional[AssignmentRepository] = None,
        tracking_service: Optional[TrackingService] = None,
        rng: Optional[random.Random] = None,
    ):
        self.experiment_repo = experiment_repo or ExperimentRepository(db)
        self.assignment_repo = assignment_repo or AssignmentRepository(db)
        self.tracking_service = tracking_service or TrackingService(
            db, assignment_repo=self.assignment_repo
        )
        self.rng = rng or random.Random()

    def _find_existing(
        self, experiment_id: str, user_id: Optional[str], session_id: Optional[str]
    ) -> Optional[Assignment]:
        if user_id:
            return self.assignment_repo.find_by_user(experiment_id, user_id)
        return self.assignment_repo.find_by_session(experiment_id, session_id)

    def _select_variant(self, experiment: Experiment) -> Variant:
        """
        Picks a variant for a new subject.

        Subjects outside the audience percentage always get control, never a
        random treatment, so the excluded population looks like control.
        Everyone else is spread uniformly over all variants, control included.
        """
        variants = experiment.variants
        if not variants:
            raise ValidationError(f"Experiment {experiment.id} has no variants configured")

        draw = self.rng.random() * 100
        if experiment.audience_percentage is not None and draw > experiment.audience_percentage:
            control = experiment.control_variant
            if not control:
                raise ValidationError("No control variant found for experiment")
            return control

        return variants[self.rng.randrange(len(variants))]

    def get_or_create_assignment(
        self,
        experiment_id: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Assignment:
        """
        Returns the subject's assignment, creating it on first contact.

        Repeat calls are side-effect free. Only running experiments accept
        subjects.
        """
        try:
            require_subject(user_id, session_id)

            experiment = self.experiment_repo.get_with_variants(experiment_id)
            if not experiment:
                raise NotFoundError(f"Experiment with ID {experiment_id} not found")

            if experiment.status != ExperimentStatus.RUNNING:
                raise ValidationError(
                    f"Experiment is not running (status: {experiment.status.value})"
                )

            existing = self._find_existing(experiment_id, user_id, session_id)
            if existing:
                return existing

            variant = self._select_variant(experiment)

            try:
                return self.assignment_repo.create(
                    experiment_id=experiment_id,
                    variant_id=variant.id,
                    user_id=user_id,
                    session_id=session_id,
                )
            except ConflictError:
                # Race condition - another request created the assignment
                winner = None
                if user_id:
                    winner = self.assignment_repo.find_by_user(experiment_id, user_id)
                if not winner and session_id:
                    winner = self.assignment_repo.find_by_session(experiment_id, session_id)
                if not winner:
                    raise
                logger.info(
                    f"Assignment race on experiment {experiment_id} resolved to variant {winner.variant_id}"
                )
                return winner

        except Exception as e:
            logger.error(f"Failed to get or create assignment: {e}")
            raise

    def get_active_experiments(self, experiment_type: str) -> list[Experiment]:
        """Running experiments of a type. Unknown types yield no experiments."""
        try:
            type_enum = ExperimentType(experiment_type)
        except ValueError:
            logger.warning(f"Invalid experiment type provided: {experiment_type}")
            return []

        return self.experiment_repo.list_running(type_enum)

    def get_variant_configuration(
        self,
        experiment_type: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Dict[str, Dict[str, Any]]]:
        """
        Resolves the subject's variant in every running experiment of a type
        and records an impression for each.

        Returns {experiment_id: {variant_id, configuration, assignment_id}},
        or None when there is nothing to serve. Never raises: experimentation
        must not break the feature asking for its configuration.
        """
        try:
            require_subject(user_id, session_id)

            active_experiments = self.get_active_experiments(experiment_type)
            if not active_experiments:
                return None

            configurations = {}
            for experiment in active_experiments:
                assignment = self.get_or_create_assignment(experiment.id, user_id, session_id)

                variant = next(
                    (v for v in experiment.variants if v.id == assignment.variant_id), None
                )
                if not variant:
                    raise NotFoundError(f"Variant with ID {assignment.variant_id} not found")

                self._track_impression_quietly(assignment.id)

                configurations[experiment.id] = {
                    "variant_id": variant.id,
                    "configuration": variant.configuration or {},
                    "assignment_id": assignment.id,
                }

            return configurations

        except Exception as e:
            logger.error(f"Failed to get variant configuration: {e}")
            return None

    def _track_impression_quietly(self, assignment_id: str) -> None:
        try:
            self.tracking_service.track_impression(assignment_id)
        except (NotFoundError, TrackingError) as e:
            logger.error(f"Failed to track impression: {e}")

    def get_user_assignments(
        self, user_id: Optional[str] = None, session_id: Optional[str] = None
    ) -> list[Assignment]:
        require_subject(user_id, session_id)
        return self.assignment_repo.list_for_subject(user_id=user_id, session_id=session_id)
