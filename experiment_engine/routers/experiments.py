"""
Experiment registry endpoints.

Reads are open to any authenticated caller; every mutation requires the
admin role.
"""

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session
from typing import Optional

from experiment_engine.auth import require_admin, verify_token
from experiment_engine.database import get_db
from experiment_engine.models import ExperimentStatus
from experiment_engine.schemas import (
    ExperimentCreate,
    ExperimentListResponse,
    ExperimentResponse,
    ExperimentUpdate,
    VariantResponse,
    VariantUpdate,
)
from experiment_engine.services.experiment_service import ExperimentService

router = APIRouter(
    prefix="/experiments",
    tags=["experiments"],
    dependencies=[Depends(verify_token)]
)


@router.post(
    "",
    response_model=ExperimentResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)]
)
async def create_experiment(
    experiment_data: ExperimentCreate,
    db: Session = Depends(get_db)
):
    """
    Create a new experiment in draft status.

    Requirements:
    - At least one variant
    - Exactly one variant marked as control
    """
    return ExperimentService(db).create_experiment(experiment_data)


@router.get("", response_model=ExperimentListResponse)
async def list_experiments(
    status_filter: Optional[ExperimentStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db)
):
    """List experiments, newest first, optionally filtered by status."""
    experiments = ExperimentService(db).list_experiments(status_filter)
    return ExperimentListResponse(
        experiments=[ExperimentResponse.model_validate(e) for e in experiments],
        total=len(experiments)
    )


@router.patch(
    "/variants/{variant_id}",
    response_model=VariantResponse,
    dependencies=[Depends(require_admin)]
)
async def update_variant(
    variant_id: str,
    update_data: VariantUpdate,
    db: Session = Depends(get_db)
):
    """Update a single variant's name, description or configuration."""
    return ExperimentService(db).update_variant(variant_id, update_data)


@router.get("/{experiment_id}", response_model=ExperimentResponse)
async def get_experiment(
    experiment_id: str,
    db: Session = Depends(get_db)
):
    """Get a specific experiment with its variants."""
    return ExperimentService(db).get_experiment(experiment_id)


@router.patch(
    "/{experiment_id}",
    response_model=ExperimentResponse,
    dependencies=[Depends(require_admin)]
)
async def update_experiment(
    experiment_id: str,
    update_data: ExperimentUpdate,
    db: Session = Depends(get_db)
):
    """
    Update an experiment.

    Status is not patchable here; use the lifecycle endpoints. Supplying
    `variants` replaces the whole variant list and discards the assignments
    and events of the old variants.
    """
    return ExperimentService(db).update_experiment(experiment_id, update_data)


@router.delete(
    "/{experiment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)]
)
async def delete_experiment(
    experiment_id: str,
    db: Session = Depends(get_db)
):
    """
    Delete an experiment.

    Warning: This will cascade delete all variants, assignments and events.
    """
    ExperimentService(db).remove_experiment(experiment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{experiment_id}/start",
    response_model=ExperimentResponse,
    dependencies=[Depends(require_admin)]
)
async def start_experiment(experiment_id: str, db: Session = Depends(get_db)):
    """draft/paused -> running"""
    return ExperimentService(db).start_experiment(experiment_id)


@router.post(
    "/{experiment_id}/pause",
    response_model=ExperimentResponse,
    dependencies=[Depends(require_admin)]
)
async def pause_experiment(experiment_id: str, db: Session = Depends(get_db)):
    """running -> paused"""
    return ExperimentService(db).pause_experiment(experiment_id)


@router.post(
    "/{experiment_id}/complete",
    response_model=ExperimentResponse,
    dependencies=[Depends(require_admin)]
)
async def complete_experiment(experiment_id: str, db: Session = Depends(get_db)):
    """running/paused -> completed"""
    return ExperimentService(db).complete_experiment(experiment_id)


@router.post(
    "/{experiment_id}/archive",
    response_model=ExperimentResponse,
    dependencies=[Depends(require_admin)]
)
async def archive_experiment(experiment_id: str, db: Session = Depends(get_db)):
    """Any status except running -> archived"""
    return ExperimentService(db).archive_experiment(experiment_id)


@router.post(
    "/{experiment_id}/winner/{variant_id}",
    response_model=ExperimentResponse,
    dependencies=[Depends(require_admin)]
)
async def declare_winner(
    experiment_id: str,
    variant_id: str,
    db: Session = Depends(get_db)
):
    """Mark a variant as the winner without changing the experiment status."""
    return ExperimentService(db).declare_winner(experiment_id, variant_id)
