"""
SQLAlchemy ORM models for the experimentation engine.

Schema Design Decisions:
- Experiments own their Variants (ordered by position, cascade delete)
- Assignments carry two unique constraints, (experiment_id, user_id) and
  (experiment_id, session_id), so a subject can be bound to at most one variant
  per experiment even under concurrent first contact
- Results are an append-only event log keyed by variant; every aggregate is
  computed from it at query time
- Variant counters (impressions, conversion_rate, confidence_level...) are
  caches written by the analysis service only
"""

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, Text, ForeignKey,
    UniqueConstraint, Index, JSON, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from datetime import datetime
import enum
import uuid

from experiment_engine.database import Base


def generate_id() -> str:
    return str(uuid.uuid4())


class ExperimentStatus(str, enum.Enum):
    """Lifecycle states for experiments."""
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class ExperimentType(str, enum.Enum):
    """Which storefront feature an experiment configures."""
    SEARCH_ALGORITHM = "search_algorithm"
    UI_COMPONENT = "ui_component"
    PERSONALIZATION = "personalization"
    RECOMMENDATION = "recommendation"
    PRICING = "pricing"
    CONTENT = "content"
    FEATURE_FLAG = "feature_flag"


class ResultType(str, enum.Enum):
    """Kinds of events in the result log."""
    IMPRESSION = "impression"
    CLICK = "click"
    CONVERSION = "conversion"
    REVENUE = "revenue"
    ENGAGEMENT = "engagement"
    CUSTOM = "custom"


class Experiment(Base):
    """
    An A/B test with one control variant and any number of treatments.

    Status controls whether new assignments can be made; only running
    experiments accept new subjects.
    """
    __tablename__ = "experiments"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    hypothesis = Column(Text, nullable=True)

    type = Column(SQLEnum(ExperimentType), nullable=False, default=ExperimentType.FEATURE_FLAG)
    status = Column(SQLEnum(ExperimentStatus), default=ExperimentStatus.DRAFT, nullable=False)

    # None means the whole audience participates
    audience_percentage = Column(Float, nullable=True)
    target_audience = Column(JSON, nullable=True)

    primary_metric = Column(String(255), nullable=True)
    secondary_metrics = Column(JSON, nullable=True)

    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)

    has_winner = Column(Boolean, default=False, nullable=False)
    winning_variant_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    variants = relationship(
        "Variant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="Variant.position",
    )
    assignments = relationship("Assignment", back_populates="experiment", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_experiments_status_type", "status", "type"),
    )

    @property
    def control_variant(self):
        return next((v for v in self.variants if v.is_control), None)


class Variant(Base):
    """One arm of an experiment. Exactly one variant per experiment is the control."""
    __tablename__ = "variants"

    id = Column(String(36), primary_key=True, default=generate_id)
    experiment_id = Column(String(36), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    position = Column(Integer, nullable=False, default=0)

    is_control = Column(Boolean, default=False, nullable=False)

    # Opaque to the engine, interpreted by the calling feature
    configuration = Column(JSON, nullable=True)

    impressions = Column(Integer, default=0, nullable=False)
    conversions = Column(Integer, default=0, nullable=False)
    conversion_rate = Column(Float, default=0.0, nullable=False)
    confidence_level = Column(Float, nullable=True)
    improvement_rate = Column(Float, nullable=True)
    is_winner = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    experiment = relationship("Experiment", back_populates="variants")
    assignments = relationship("Assignment", back_populates="variant", cascade="all, delete-orphan")
    results = relationship("ExperimentResult", back_populates="variant", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_variants_experiment_id", "experiment_id"),
    )


class Assignment(Base):
    """
    Durable binding of one subject (user or session) to one variant.

    Key properties:
    - Unique per (experiment, user) and per (experiment, session); NULLs do
      not collide, so session-only and user-only subjects coexist
    - The variant never changes once written
    - has_* flags are one-way: set on first observation, never cleared
    """
    __tablename__ = "assignments"

    id = Column(String(36), primary_key=True, default=generate_id)
    experiment_id = Column(String(36), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(String(36), ForeignKey("variants.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(255), nullable=True)
    session_id = Column(String(255), nullable=True)

    has_impression = Column(Boolean, default=False, nullable=False)
    has_interaction = Column(Boolean, default=False, nullable=False)
    has_conversion = Column(Boolean, default=False, nullable=False)

    assigned_at = Column(DateTime, default=func.now(), nullable=False)

    experiment = relationship("Experiment", back_populates="assignments")
    variant = relationship("Variant", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("experiment_id", "user_id", name="uq_assignment_user_experiment"),
        UniqueConstraint("experiment_id", "session_id", name="uq_assignment_session_experiment"),
        Index("ix_assignments_user_id", "user_id"),
        Index("ix_assignments_session_id", "session_id"),
        Index("ix_assignments_variant_id", "variant_id"),
    )


class ExperimentResult(Base):
    """
    One immutable event in the result log.

    Revenue is its own stream (result_type=revenue with a value) so it can be
    summed independently of conversion counts.
    """
    __tablename__ = "experiment_results"

    id = Column(String(36), primary_key=True, default=generate_id)
    variant_id = Column(String(36), ForeignKey("variants.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(255), nullable=True)
    session_id = Column(String(255), nullable=True)

    result_type = Column(SQLEnum(ResultType), nullable=False)
    value = Column(Float, nullable=True)
    context = Column(String(255), nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)

    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    variant = relationship("Variant", back_populates="results")

    __table_args__ = (
        Index("ix_results_variant_type", "variant_id", "result_type"),
        Index("ix_results_timestamp", "timestamp"),
    )
