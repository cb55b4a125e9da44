from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, selectinload

from experiment_engine.models import (
    Assignment,
    Experiment,
    ExperimentResult,
    ExperimentStatus,
    ExperimentType,
    Variant,
)
from experiment_engine.schemas import ExperimentCreate, VariantCreate


class ExperimentRepository:
    """Persistence for experiments and the variants they own."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, experiment_data: ExperimentCreate) -> Experiment:
        """
        Creates an experiment and its variants in one transaction.

        The experiment is flushed first so every variant can be bound to the
        generated experiment id.
        """
        experiment = Experiment(
            **experiment_data.model_dump(exclude={"variants"}),
            status=ExperimentStatus.DRAFT,
        )
        self.db.add(experiment)
        self.db.flush()

        self._add_variants(experiment.id, experiment_data.variants)

        self.db.commit()
        self.db.refresh(experiment)
        return experiment

    def _add_variants(self, experiment_id: str, variants: Iterable[VariantCreate]) -> None:
        for position, variant_data in enumerate(variants):
            self.db.add(Variant(
                experiment_id=experiment_id,
                position=position,
                **variant_data.model_dump(),
            ))

    def get_with_variants(self, experiment_id: str) -> Optional[Experiment]:
        """
        Fetches a single experiment and eagerly loads its variants, avoiding
        an extra query per variant later on.
        """
        stmt = (
            select(Experiment)
            .where(Experiment.id == experiment_id)
            .options(selectinload(Experiment.variants))
        )
        return self.db.scalars(stmt).one_or_none()

    def list_all(self, status: Optional[ExperimentStatus] = None) -> list[Experiment]:
        stmt = select(Experiment).options(selectinload(Experiment.variants))
        if status is not None:
            stmt = stmt.where(Experiment.status == status)
        stmt = stmt.order_by(Experiment.created_at.desc())
        return list(self.db.scalars(stmt).all())

    def list_running(self, experiment_type: ExperimentType) -> list[Experiment]:
        stmt = (
            select(Experiment)
            .where(
                Experiment.status == ExperimentStatus.RUNNING,
                Experiment.type == experiment_type,
            )
            .options(selectinload(Experiment.variants))
        )
        return list(self.db.scalars(stmt).all())

    def save(self, experiment: Experiment) -> Experiment:
        self.db.commit()
        self.db.refresh(experiment)
        return experiment

    def replace_variants(self, experiment: Experiment, variants: list[VariantCreate]) -> None:
        """
        Drops every variant of the experiment, together with the assignments
        and events bound to them, and inserts the supplied list.

        Commits nothing; the caller's save() does.
        """
        self._purge_children(experiment.id)
        self.db.expire(experiment, ["variants", "assignments"])
        self._add_variants(experiment.id, variants)
        self.db.flush()

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        return self.db.get(Variant, variant_id)

    def save_variant(self, variant: Variant) -> Variant:
        self.db.commit()
        self.db.refresh(variant)
        return variant

    def remove(self, experiment: Experiment) -> None:
        """
        Deletes in foreign-key order: assignments, events, variants, then the
        experiment itself.
        """
        experiment_id = experiment.id
        self._purge_children(experiment_id)
        self.db.execute(delete(Experiment).where(Experiment.id == experiment_id))
        self.db.commit()

    def _purge_children(self, experiment_id: str) -> None:
        variant_ids = list(self.db.scalars(
            select(Variant.id).where(Variant.experiment_id == experiment_id)
        ))
        self.db.execute(delete(Assignment).where(Assignment.experiment_id == experiment_id))
        self.db.execute(delete(ExperimentResult).where(ExperimentResult.variant_id.in_(variant_ids)))
        self.db.execute(delete(Variant).where(Variant.experiment_id == experiment_id))
