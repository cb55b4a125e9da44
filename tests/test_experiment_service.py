"""Tests for the experiment registry and its lifecycle state machine."""
import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conftest import add_results, search_experiment
from experiment_engine.errors import InvalidTransitionError, NotFoundError, ValidationError
from experiment_engine.models import Assignment, ExperimentResult, ExperimentStatus, ResultType, Variant
from experiment_engine.schemas import ExperimentUpdate, VariantCreate, VariantUpdate
from experiment_engine.services.assignment_service import AssignmentService
from experiment_engine.services.experiment_service import ExperimentService


def test_create_experiment_starts_as_draft(db: Session):
    experiment = ExperimentService(db).create_experiment(search_experiment())

    assert experiment.status == ExperimentStatus.DRAFT
    assert experiment.has_winner is False
    assert [v.name for v in experiment.variants] == ["control", "learned"]
    assert [v.position for v in experiment.variants] == [0, 1]
    assert experiment.control_variant.name == "control"


@pytest.mark.parametrize("variants", [
    [],
    [VariantCreate(name="a"), VariantCreate(name="b")],
    [VariantCreate(name="a", is_control=True), VariantCreate(name="b", is_control=True)],
])
def test_create_experiment_requires_exactly_one_control(db: Session, variants):
    with pytest.raises(ValidationError):
        ExperimentService(db).create_experiment(search_experiment(variants=variants))


def test_get_unknown_experiment(db: Session):
    with pytest.raises(NotFoundError):
        ExperimentService(db).get_experiment("does-not-exist")


def test_list_experiments_filters_by_status(db: Session, running_experiment):
    service = ExperimentService(db)
    service.create_experiment(search_experiment(name="Checkout button colour"))

    assert len(service.list_experiments()) == 2
    running = service.list_experiments(ExperimentStatus.RUNNING)
    assert [e.id for e in running] == [running_experiment.id]


def test_start_sets_start_date(db: Session, draft_experiment):
    experiment = ExperimentService(db).start_experiment(draft_experiment.id)

    assert experiment.status == ExperimentStatus.RUNNING
    assert experiment.start_date is not None
    assert experiment.end_date is None


def test_start_twice_is_rejected(db: Session, running_experiment):
    with pytest.raises(InvalidTransitionError, match="already running"):
        ExperimentService(db).start_experiment(running_experiment.id)


def test_pause_resume_complete(db: Session, running_experiment):
    service = ExperimentService(db)

    assert service.pause_experiment(running_experiment.id).status == ExperimentStatus.PAUSED
    assert service.start_experiment(running_experiment.id).status == ExperimentStatus.RUNNING

    completed = service.complete_experiment(running_experiment.id)
    assert completed.status == ExperimentStatus.COMPLETED
    assert completed.end_date is not None


def test_completed_experiment_cannot_restart(db: Session, running_experiment):
    service = ExperimentService(db)
    service.complete_experiment(running_experiment.id)

    with pytest.raises(InvalidTransitionError):
        service.start_experiment(running_experiment.id)


def test_draft_cannot_be_paused_or_completed(db: Session, draft_experiment):
    service = ExperimentService(db)

    with pytest.raises(InvalidTransitionError):
        service.pause_experiment(draft_experiment.id)
    with pytest.raises(InvalidTransitionError):
        service.complete_experiment(draft_experiment.id)


def test_running_experiment_cannot_be_archived(db: Session, running_experiment):
    with pytest.raises(InvalidTransitionError, match="Cannot archive a running experiment"):
        ExperimentService(db).archive_experiment(running_experiment.id)


def test_archive_from_draft_and_completed(db: Session, running_experiment):
    service = ExperimentService(db)
    other = service.create_experiment(search_experiment(name="Homepage hero"))

    assert service.archive_experiment(other.id).status == ExperimentStatus.ARCHIVED
    service.complete_experiment(running_experiment.id)
    assert service.archive_experiment(running_experiment.id).status == ExperimentStatus.ARCHIVED


def test_declare_winner(db: Session, running_experiment):
    treatment = running_experiment.variants[1]

    experiment = ExperimentService(db).declare_winner(running_experiment.id, treatment.id)

    assert experiment.has_winner is True
    assert experiment.winning_variant_id == treatment.id
    assert experiment.status == ExperimentStatus.RUNNING
    assert [v.is_winner for v in experiment.variants] == [False, True]


def test_declare_winner_moves_the_flag(db: Session, running_experiment):
    service = ExperimentService(db)
    control, treatment = running_experiment.variants

    service.declare_winner(running_experiment.id, treatment.id)
    experiment = service.declare_winner(running_experiment.id, control.id)

    assert experiment.winning_variant_id == control.id
    assert [v.is_winner for v in experiment.variants] == [True, False]


def test_declare_winner_rejects_foreign_variant(db: Session, running_experiment):
    service = ExperimentService(db)
    other = service.create_experiment(search_experiment(name="Other"))

    with pytest.raises(ValidationError):
        service.declare_winner(running_experiment.id, other.variants[0].id)


def test_update_scalar_fields_keeps_variants(db: Session, draft_experiment):
    variant_ids = [v.id for v in draft_experiment.variants]

    experiment = ExperimentService(db).update_experiment(
        draft_experiment.id,
        ExperimentUpdate(name="Search ranking v3", audience_percentage=25),
    )

    assert experiment.name == "Search ranking v3"
    assert experiment.audience_percentage == 25
    assert experiment.description == "Learned ranker against BM25"
    assert [v.id for v in experiment.variants] == variant_ids


@pytest.mark.parametrize("field", ["name", "type"])
def test_update_rejects_clearing_required_field(db: Session, draft_experiment, field):
    with pytest.raises(ValidationError):
        ExperimentService(db).update_experiment(draft_experiment.id, ExperimentUpdate(**{field: None}))

    experiment = ExperimentService(db).get_experiment(draft_experiment.id)
    assert experiment.name == draft_experiment.name
    assert experiment.type is not None


def test_replacing_variants_purges_assignments_and_events(db: Session, running_experiment):
    assignment_id = AssignmentService(db).get_or_create_assignment(running_experiment.id, user_id="u-1").id
    add_results(db, running_experiment.variants[0], ResultType.IMPRESSION, 3)
    old_ids = {v.id for v in running_experiment.variants}

    experiment = ExperimentService(db).update_experiment(
        running_experiment.id,
        ExperimentUpdate(variants=[
            VariantCreate(name="baseline", is_control=True),
            VariantCreate(name="semantic"),
            VariantCreate(name="hybrid"),
        ]),
    )

    assert [v.name for v in experiment.variants] == ["baseline", "semantic", "hybrid"]
    assert not old_ids & {v.id for v in experiment.variants}
    assert db.get(Assignment, assignment_id) is None
    assert db.scalar(select(func.count(ExperimentResult.id))) == 0


def test_replacing_variants_validates_control(db: Session, draft_experiment):
    with pytest.raises(ValidationError):
        ExperimentService(db).update_experiment(
            draft_experiment.id,
            ExperimentUpdate(variants=[VariantCreate(name="a"), VariantCreate(name="b")]),
        )


def test_update_variant(db: Session, draft_experiment):
    treatment = draft_experiment.variants[1]

    variant = ExperimentService(db).update_variant(
        treatment.id, VariantUpdate(configuration={"ranker": "learned-v2"})
    )

    assert variant.configuration == {"ranker": "learned-v2"}
    assert variant.name == "learned"


def test_update_variant_cannot_change_control(db: Session, draft_experiment):
    with pytest.raises(ValidationError):
        ExperimentService(db).update_variant(
            draft_experiment.variants[1].id, VariantUpdate(is_control=True)
        )


def test_update_variant_rejects_null_name(db: Session, draft_experiment):
    variant = draft_experiment.variants[1]

    with pytest.raises(ValidationError):
        ExperimentService(db).update_variant(variant.id, VariantUpdate(name=None))

    assert db.get(Variant, variant.id).name == variant.name


def test_update_unknown_variant(db: Session):
    with pytest.raises(NotFoundError):
        ExperimentService(db).update_variant("missing", VariantUpdate(name="x"))


def test_remove_experiment(db: Session, running_experiment):
    AssignmentService(db).get_or_create_assignment(running_experiment.id, session_id="s-1")
    service = ExperimentService(db)

    service.remove_experiment(running_experiment.id)

    with pytest.raises(NotFoundError):
        service.get_experiment(running_experiment.id)
    assert db.scalar(select(func.count(Assignment.id))) == 0
