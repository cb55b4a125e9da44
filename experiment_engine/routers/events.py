"""
Event recording endpoints.

Every event is attached to an assignment, which carries the variant and the
subject identity; the caller only supplies the assignment id.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from experiment_engine.auth import verify_token
from experiment_engine.database import get_db
from experiment_engine.schemas import (
    ConversionTrack,
    CustomEventTrack,
    EventResponse,
    ImpressionTrack,
    InteractionTrack,
    TrackingResponse,
)
from experiment_engine.services.tracking_service import TrackingService

router = APIRouter(
    prefix="/events",
    tags=["events"],
    dependencies=[Depends(verify_token)]
)


def _tracked(results) -> TrackingResponse:
    return TrackingResponse(
        recorded=len(results),
        events=[EventResponse.model_validate(result) for result in results]
    )


@router.post("/impression", response_model=TrackingResponse, status_code=status.HTTP_201_CREATED)
async def track_impression(
    event_data: ImpressionTrack,
    db: Session = Depends(get_db)
):
    """Record that the subject was shown its variant."""
    return _tracked(TrackingService(db).track_impression(event_data.assignment_id))


@router.post("/interaction", response_model=TrackingResponse, status_code=status.HTTP_201_CREATED)
async def track_interaction(
    event_data: InteractionTrack,
    db: Session = Depends(get_db)
):
    """Record a click on the variant."""
    return _tracked(TrackingService(db).track_interaction(
        event_data.assignment_id,
        context=event_data.context,
        metadata=event_data.metadata
    ))


@router.post("/conversion", response_model=TrackingResponse, status_code=status.HTTP_201_CREATED)
async def track_conversion(
    event_data: ConversionTrack,
    db: Session = Depends(get_db)
):
    """
    Record a conversion.

    When `value` is given, a revenue event is recorded alongside it, so the
    response then carries two events.
    """
    return _tracked(TrackingService(db).track_conversion(
        event_data.assignment_id,
        value=event_data.value,
        context=event_data.context,
        metadata=event_data.metadata
    ))


@router.post("/custom", response_model=TrackingResponse, status_code=status.HTTP_201_CREATED)
async def track_custom_event(
    event_data: CustomEventTrack,
    db: Session = Depends(get_db)
):
    """Record a caller-defined event type."""
    return _tracked(TrackingService(db).track_custom_event(
        event_data.assignment_id,
        event_type=event_data.event_type,
        value=event_data.value,
        context=event_data.context,
        metadata=event_data.metadata
    ))
