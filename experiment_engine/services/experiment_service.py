"""
Experiment registry: definitions, variants and the lifecycle state machine.

Status transitions:
- draft -> running (starts the experiment)
- running -> paused (temporarily stops new assignments)
- paused -> running (resumes)
- running/paused -> completed (ends the experiment)
- anything but running -> archived
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from experiment_engine.errors import InvalidTransitionError, NotFoundError, ValidationError
from experiment_engine.models import Experiment, ExperimentStatus, Variant
from experiment_engine.repositories.experiment_repo import ExperimentRepository
from experiment_engine.schemas import ExperimentCreate, ExperimentUpdate, VariantCreate, VariantUpdate

logger = logging.getLogger(__name__)


# Target status -> statuses it may be entered from
VALID_TRANSITIONS = {
    ExperimentStatus.RUNNING: {ExperimentStatus.DRAFT, ExperimentStatus.PAUSED},
    ExperimentStatus.PAUSED: {ExperimentStatus.RUNNING},
    ExperimentStatus.COMPLETED: {ExperimentStatus.RUNNING, ExperimentStatus.PAUSED},
    ExperimentStatus.ARCHIVED: {
        ExperimentStatus.DRAFT,
        ExperimentStatus.PAUSED,
        ExperimentStatus.COMPLETED,
        ExperimentStatus.ARCHIVED,
    },
}


# Experiment columns a patch may change but not clear
REQUIRED_FIELDS = ("name", "type")


def validate_control_variant(variants: list[VariantCreate]) -> None:
    """Exactly one variant must be the control."""
    if not variants:
        raise ValidationError("An experiment needs at least one variant")

    controls = sum(1 for v in variants if v.is_control)
    if controls == 0:
        raise ValidationError("At least one variant must be marked as control")
    if controls > 1:
        raise ValidationError("Only one variant can be marked as control")


class ExperimentService:
    def __init__(self, db: Session, experiment_repo: Optional[ExperimentRepository] = None):
        self.experiment_repo = experiment_repo or ExperimentRepository(db)

    def create_experiment(self, experiment_data: ExperimentCreate) -> Experiment:
        validate_control_variant(experiment_data.variants)

        experiment = self.experiment_repo.create(experiment_data)
        logger.info(f"Created experiment {experiment.id} with {len(experiment.variants)} variants")
        return experiment

    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> list[Experiment]:
        return self.experiment_repo.list_all(status)

    def get_experiment(self, experiment_id: str) -> Experiment:
        experiment = self.experiment_repo.get_with_variants(experiment_id)
        if not experiment:
            raise NotFoundError(f"Experiment with ID {experiment_id} not found")
        return experiment

    def update_experiment(self, experiment_id: str, update_data: ExperimentUpdate) -> Experiment:
        """
        Merges the scalar fields present in the patch. A variant list, when
        given, replaces every existing variant (and drops their assignments
        and events); there is no partial variant patch here.
        """
        experiment = self.get_experiment(experiment_id)

        fields = update_data.model_dump(exclude_unset=True, exclude={"variants"})
        cleared = [field for field in REQUIRED_FIELDS if field in fields and fields[field] is None]
        if cleared:
            raise ValidationError(f"Field(s) cannot be null: {', '.join(cleared)}")

        new_variants = update_data.variants if "variants" in update_data.model_fields_set else None
        if new_variants is not None:
            validate_control_variant(new_variants)

        try:
            for field, value in fields.items():
                setattr(experiment, field, value)

            if new_variants is not None:
                self.experiment_repo.replace_variants(experiment, new_variants)
                if experiment.has_winner:
                    experiment.has_winner = False
                    experiment.winning_variant_id = None

            return self.experiment_repo.save(experiment)
        except Exception as e:
            logger.error(f"Failed to update experiment: {e}")
            raise

    def update_variant(self, variant_id: str, update_data: VariantUpdate) -> Variant:
        variant = self.experiment_repo.get_variant(variant_id)
        if not variant:
            raise NotFoundError(f"Variant with ID {variant_id} not found")

        fields = update_data.model_dump(exclude_unset=True)
        if "name" in fields and fields["name"] is None:
            raise ValidationError("Field(s) cannot be null: name")
        if "is_control" in fields and fields["is_control"] != variant.is_control:
            raise ValidationError(
                "Control cannot be changed on a single variant; replace the variant list instead"
            )

        for field, value in fields.items():
            setattr(variant, field, value)
        return self.experiment_repo.save_variant(variant)

    def remove_experiment(self, experiment_id: str) -> None:
        experiment = self.get_experiment(experiment_id)
        try:
            self.experiment_repo.remove(experiment)
        except Exception as e:
            logger.error(f"Failed to remove experiment: {e}")
            raise
        logger.info(f"Removed experiment {experiment_id}")

    def _transition(self, experiment_id: str, new_status: ExperimentStatus) -> Experiment:
        experiment = self.get_experiment(experiment_id)
        current_status = experiment.status

        if current_status not in VALID_TRANSITIONS[new_status]:
            if new_status == current_status == ExperimentStatus.RUNNING:
                detail = "Experiment is already running"
            elif new_status == ExperimentStatus.ARCHIVED:
                detail = "Cannot archive a running experiment"
            else:
                detail = (
                    f"Invalid status transition from {current_status.value} to {new_status.value}"
                )
            logger.warning(f"Rejected transition for experiment {experiment_id}: {detail}")
            raise InvalidTransitionError(detail)

        experiment.status = new_status

        # Track lifecycle timestamps
        if new_status == ExperimentStatus.RUNNING:
            experiment.start_date = datetime.utcnow()
        elif new_status == ExperimentStatus.COMPLETED:
            experiment.end_date = datetime.utcnow()

        experiment = self.experiment_repo.save(experiment)
        logger.info(f"Experiment {experiment_id}: {current_status.value} -> {new_status.value}")
        return experiment

    def start_experiment(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.RUNNING)

    def pause_experiment(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.PAUSED)

    def complete_experiment(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.COMPLETED)

    def archive_experiment(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.ARCHIVED)

    def declare_winner(self, experiment_id: str, variant_id: str) -> Experiment:
        """Marks a variant as the winner. The experiment status is left alone."""
        experiment = self.get_experiment(experiment_id)

        winner = next((v for v in experiment.variants if v.id == variant_id), None)
        if not winner:
            raise ValidationError(
                f"Variant with ID {variant_id} does not belong to this experiment"
            )

        for variant in experiment.variants:
            variant.is_winner = variant.id == variant_id
        experiment.has_winner = True
        experiment.winning_variant_id = variant_id

        return self.experiment_repo.save(experiment)
