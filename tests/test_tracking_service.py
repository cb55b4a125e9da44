"""Tests for event recording."""
import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from experiment_engine.errors import NotFoundError, TrackingError
from experiment_engine.models import ResultType
from experiment_engine.repositories.result_repo import ResultRepository
from experiment_engine.services.assignment_service import AssignmentService
from experiment_engine.services.tracking_service import TrackingService


class BrokenResultRepository(ResultRepository):
    def record(self, *results):
        raise OperationalError("INSERT INTO experiment_results", {}, Exception("database is locked"))


@pytest.fixture
def assignment(db: Session, running_experiment):
    return AssignmentService(db).get_or_create_assignment(
        running_experiment.id, user_id="u-1", session_id="s-1"
    )


def test_track_impression(db: Session, assignment):
    events = TrackingService(db).track_impression(assignment.id)

    assert len(events) == 1
    event = events[0]
    assert event.result_type == ResultType.IMPRESSION
    assert event.variant_id == assignment.variant_id
    assert event.user_id == "u-1"
    assert event.session_id == "s-1"
    assert event.timestamp is not None
    assert assignment.has_impression is True


def test_track_interaction_records_click(db: Session, assignment):
    events = TrackingService(db).track_interaction(
        assignment.id, context="search_results", metadata={"position": 3}
    )

    assert events[0].result_type == ResultType.CLICK
    assert events[0].context == "search_results"
    assert events[0].event_metadata == {"position": 3}
    assert assignment.has_interaction is True
    assert assignment.has_conversion is False


def test_every_conversion_is_logged(db: Session, assignment):
    """Test that the flag is set once but each conversion is its own row."""
    service = TrackingService(db)

    service.track_conversion(assignment.id)
    service.track_conversion(assignment.id)

    assert assignment.has_conversion is True
    assert ResultRepository(db).count(assignment.variant_id, ResultType.CONVERSION) == 2


def test_conversion_with_value_records_revenue(db: Session, assignment):
    events = TrackingService(db).track_conversion(assignment.id, value=49.99, context="checkout")

    assert [e.result_type for e in events] == [ResultType.CONVERSION, ResultType.REVENUE]
    assert events[0].value is None
    assert events[1].value == pytest.approx(49.99)
    assert ResultRepository(db).sum_values(assignment.variant_id, ResultType.REVENUE) == pytest.approx(49.99)


def test_conversion_with_zero_value_still_records_revenue(db: Session, assignment):
    events = TrackingService(db).track_conversion(assignment.id, value=0.0)

    assert len(events) == 2


def test_custom_event(db: Session, assignment):
    events = TrackingService(db).track_custom_event(
        assignment.id,
        event_type="add_to_wishlist",
        value=2,
        context="product_page",
        metadata={"sku": "A-100"},
    )

    event = events[0]
    assert event.result_type == ResultType.CUSTOM
    assert event.context == "add_to_wishlist"
    assert event.value == 2
    assert event.event_metadata == {
        "sku": "A-100",
        "eventType": "add_to_wishlist",
        "customContext": "product_page",
    }
    assert not (assignment.has_impression or assignment.has_interaction or assignment.has_conversion)


def test_unknown_assignment(db: Session):
    service = TrackingService(db)

    with pytest.raises(NotFoundError):
        service.track_impression("missing")
    with pytest.raises(NotFoundError):
        service.track_conversion("missing", value=10)


def test_storage_failure_raises_tracking_error(db: Session, assignment):
    service = TrackingService(db, result_repo=BrokenResultRepository(db))

    with pytest.raises(TrackingError):
        service.track_impression(assignment.id)
