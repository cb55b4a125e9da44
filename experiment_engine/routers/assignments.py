"""
Subject assignment endpoints.

A subject is identified by `user_id`, `session_id`, or both, passed as query
parameters. At least one is required.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Dict, List, Optional

from experiment_engine.auth import verify_token
from experiment_engine.database import get_db
from experiment_engine.schemas import AssignmentResponse, VariantConfiguration
from experiment_engine.services.assignment_service import AssignmentService

router = APIRouter(
    prefix="/assignments",
    tags=["assignments"],
    dependencies=[Depends(verify_token)]
)


@router.get(
    "/configuration/{experiment_type}",
    response_model=Optional[Dict[str, VariantConfiguration]]
)
async def get_variant_configuration(
    experiment_type: str,
    user_id: Optional[str] = Query(None, max_length=255),
    session_id: Optional[str] = Query(None, max_length=255),
    db: Session = Depends(get_db)
):
    """
    Variant configuration for every running experiment of a type, keyed by
    experiment id. An impression is recorded for each.

    Returns null when nothing applies or anything goes wrong: callers fall
    back to their default behaviour.
    """
    return AssignmentService(db).get_variant_configuration(experiment_type, user_id, session_id)


@router.post("/{experiment_id}", response_model=AssignmentResponse)
async def get_or_create_assignment(
    experiment_id: str,
    user_id: Optional[str] = Query(None, max_length=255),
    session_id: Optional[str] = Query(None, max_length=255),
    db: Session = Depends(get_db)
):
    """
    Get the subject's variant assignment for an experiment.

    **Stability Guarantee**: Once a subject receives a variant, all subsequent
    calls return the same assignment.

    Behavior:
    - Subject already assigned: returns the existing assignment
    - Not assigned and experiment RUNNING: creates the assignment
    - Experiment not RUNNING: 400
    """
    return AssignmentService(db).get_or_create_assignment(experiment_id, user_id, session_id)


@router.get("", response_model=List[AssignmentResponse])
async def get_user_assignments(
    user_id: Optional[str] = Query(None, max_length=255),
    session_id: Optional[str] = Query(None, max_length=255),
    db: Session = Depends(get_db)
):
    """Every assignment of the subject across experiments."""
    return AssignmentService(db).get_user_assignments(user_id, session_id)
