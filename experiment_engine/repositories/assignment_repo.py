from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from experiment_engine.errors import ConflictError
from experiment_engine.models import Assignment


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, assignment_id: str) -> Optional[Assignment]:
        return self.db.get(Assignment, assignment_id)

    def find_by_user(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        """Retrieves the assignment of a user in a specific experiment."""
        stmt = select(Assignment).where(
            Assignment.experiment_id == experiment_id,
            Assignment.user_id == user_id,
        )
        return self.db.scalars(stmt).one_or_none()

    def find_by_session(self, experiment_id: str, session_id: str) -> Optional[Assignment]:
        """Retrieves the assignment of an anonymous session in a specific experiment."""
        stmt = select(Assignment).where(
            Assignment.experiment_id == experiment_id,
            Assignment.session_id == session_id,
        )
        return self.db.scalars(stmt).one_or_none()

    def list_for_subject(
        self, user_id: Optional[str] = None, session_id: Optional[str] = None
    ) -> list[Assignment]:
        stmt = select(Assignment).options(
            selectinload(Assignment.experiment), selectinload(Assignment.variant)
        )
        if user_id:
            stmt = stmt.where(Assignment.user_id == user_id)
        else:
            stmt = stmt.where(Assignment.session_id == session_id)
        return list(self.db.scalars(stmt.order_by(Assignment.assigned_at)).all())

    def create(
        self,
        experiment_id: str,
        variant_id: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Assignment:
        """
        Inserts a new assignment.

        Raises ConflictError when a concurrent request already bound this
        subject; the transaction is rolled back so the caller can re-read.
        """
        assignment = Assignment(
            experiment_id=experiment_id,
            variant_id=variant_id,
            user_id=user_id,
            session_id=session_id,
        )
        try:
            self.db.add(assignment)
            self.db.commit()
            self.db.refresh(assignment)
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(
                f"Assignment already exists for experiment {experiment_id}"
            ) from e

        return assignment
