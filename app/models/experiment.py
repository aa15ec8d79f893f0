import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExperimentStatus(str, enum.Enum):
    """Status of an experiment lifecycle."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Arm(str, enum.Enum):
    """One of the two arms of an experiment."""

    CONTROL = "control"
    VARIANT = "variant"


class Experiment(Base):
    """
    Represents an A/B experiment running on a site.

    Holds both content payloads, the traffic split used for bucketing,
    the per-arm visitor/conversion counters and, once completed,
    the declared winner with its statistics.
    """

    __tablename__ = "experiments"

    id = Column(String, primary_key=True)
    site_id = Column(String, nullable=False, index=True)

    # Experiment definition
    name = Column(String, nullable=False)
    test_type = Column(String, nullable=False, default="content")
    control_content = Column(Text, nullable=False)
    variant_content = Column(Text, nullable=False)

    # {"control": 50, "variant": 50}
    traffic_split = Column(JSON, nullable=False)

    # Timeline
    start_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    end_date = Column(DateTime(timezone=True))

    status = Column(SQLEnum(ExperimentStatus), nullable=False, default=ExperimentStatus.ACTIVE)

    # Outcome, only written on completion
    winner_variant = Column(SQLEnum(Arm))
    confidence_level = Column(Float)
    statistical_significance = Column(Float)  # p-value
    improvement_percentage = Column(Float)

    # Aggregated counters
    control_visitors = Column(Integer, nullable=False, default=0)
    variant_visitors = Column(Integer, nullable=False, default=0)
    control_conversions = Column(Integer, nullable=False, default=0)
    variant_conversions = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    assignments = relationship(
        "VisitorAssignment", back_populates="experiment", cascade="all, delete-orphan"
    )
    results = relationship(
        "ExperimentResult", back_populates="experiment", cascade="all, delete-orphan"
    )

    def content_for(self, arm: Arm) -> str:
        return self.control_content if arm == Arm.CONTROL else self.variant_content


class VisitorAssignment(Base):
    """
    Durable mapping of a visitor to an experiment arm.

    Created at most once per (experiment, visitor); the unique constraint
    is what makes concurrent assignment of the same visitor idempotent.
    """

    __tablename__ = "visitor_assignments"
    __table_args__ = (
        UniqueConstraint("experiment_id", "visitor_id", name="uq_assignment_experiment_visitor"),
    )

    id = Column(String, primary_key=True)
    experiment_id = Column(String, ForeignKey("experiments.id"), nullable=False)
    visitor_id = Column(String, nullable=False)
    variant = Column(SQLEnum(Arm), nullable=False)
    assigned_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    experiment = relationship("Experiment", back_populates="assignments")


class ExperimentResult(Base):
    """One observed outcome for a visitor session. Append-only."""

    __tablename__ = "experiment_results"

    id = Column(String, primary_key=True)
    experiment_id = Column(String, ForeignKey("experiments.id"), nullable=False, index=True)
    visitor_id = Column(String, nullable=False)
    session_id = Column(String)
    variant = Column(SQLEnum(Arm), nullable=False)
    converted = Column(Boolean, nullable=False, default=False)
    conversion_value = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    experiment = relationship("Experiment", back_populates="results")


class AppliedOptimization(Base):
    """Winning variant content promoted to the site's default."""

    __tablename__ = "applied_optimizations"

    id = Column(String, primary_key=True)
    site_id = Column(String, nullable=False, index=True)
    experiment_id = Column(String, ForeignKey("experiments.id"), nullable=False)
    optimization_type = Column(String, nullable=False)
    original_content = Column(Text, nullable=False)
    optimized_content = Column(Text, nullable=False)
    improvement_percentage = Column(Float, nullable=False, default=0.0)
    status = Column(String, nullable=False, default="active")
    applied_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
