"""SQLAlchemy models for experiments, feature flags, user cohorts and events.

Rows reference each other by plain id columns only, no ORM relationships.
"""
import enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Float, Boolean, DateTime, Text,
    ForeignKey, Index, UniqueConstraint, Enum,
)
from sqlalchemy.sql import func
from abplatform.database import Base


class ExperimentStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    READY = "READY"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"
    CANCELLED = "CANCELLED"


class FlagStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"
    DEPRECATED = "DEPRECATED"


class CohortType(str, enum.Enum):
    CONTROL = "CONTROL"
    TREATMENT = "TREATMENT"
    EXCLUDED = "EXCLUDED"


class AssignmentMethod(str, enum.Enum):
    HASH_BASED = "HASH_BASED"
    RANDOM = "RANDOM"
    MANUAL = "MANUAL"
    ATTRIBUTE_BASED = "ATTRIBUTE_BASED"
    PERCENTAGE_BASED = "PERCENTAGE_BASED"


class EventType(str, enum.Enum):
    FLAG_EXPOSURE = "FLAG_EXPOSURE"
    FLAG_ENABLED = "FLAG_ENABLED"
    FLAG_DISABLED = "FLAG_DISABLED"
    FLAG_TOGGLED = "FLAG_TOGGLED"
    EXPERIMENT_EXPOSURE = "EXPERIMENT_EXPOSURE"
    EXPERIMENT_ASSIGNMENT = "EXPERIMENT_ASSIGNMENT"
    CONVERSION = "CONVERSION"
    PAGE_VIEW = "PAGE_VIEW"
    CLICK = "CLICK"
    ERROR = "ERROR"


class Experiment(Base):
    """Experiment model - an A/B test with one control and one test variant"""
    __tablename__ = "experiments"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    hypothesis = Column(Text, nullable=True)
    status = Column(Enum(ExperimentStatus, native_enum=False, length=20),
                    nullable=False, default=ExperimentStatus.DRAFT)
    traffic_percentage = Column(Integer, nullable=False, default=50)  # 1-100
    control_variant_name = Column(String, nullable=False, default="control")
    test_variant_name = Column(String, nullable=False, default="test")
    environment = Column(String, nullable=False, default="development")
    success_metric = Column(String, nullable=True)
    expected_improvement = Column(Float, nullable=True)
    confidence_level = Column(Float, nullable=True, default=95.0)
    minimum_sample_size = Column(Integer, nullable=True)
    # Only ever bumped with an UPDATE ... SET n = n + 1 (see store.increment_sample_size)
    current_sample_size = Column(Integer, nullable=False, default=0)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_experiments_status', 'status'),
        Index('idx_experiments_environment', 'environment'),
    )

    def __repr__(self):
        return f"<Experiment id={self.id} name={self.name!r} status={self.status}>"


class FeatureFlag(Base):
    """Feature flag model - a gate with a gradual rollout percentage"""
    __tablename__ = "feature_flags"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    enabled = Column(Boolean, nullable=False, default=False)
    status = Column(Enum(FlagStatus, native_enum=False, length=20),
                    nullable=False, default=FlagStatus.INACTIVE)
    environment = Column(String, nullable=False, default="development")
    rollout_percentage = Column(Integer, nullable=True, default=0)  # 0-100
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Same flag name may exist once per environment
    __table_args__ = (
        UniqueConstraint('name', 'environment', name='uq_feature_flags_name_environment'),
        Index('idx_feature_flags_environment', 'environment'),
    )

    def is_active(self) -> bool:
        return bool(self.enabled) and self.status == FlagStatus.ACTIVE

    def __repr__(self):
        return f"<FeatureFlag id={self.id} name={self.name!r} env={self.environment!r}>"


class UserCohort(Base):
    """User cohort model - the sticky decision for one user in one experiment"""
    __tablename__ = "user_cohorts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False)
    session_id = Column(String(255), nullable=True)
    cohort_type = Column(Enum(CohortType, native_enum=False, length=20), nullable=False)
    variant_name = Column(String, nullable=False)
    assignment_method = Column(Enum(AssignmentMethod, native_enum=False, length=20),
                               nullable=False, default=AssignmentMethod.HASH_BASED)
    assignment_hash = Column(BigInteger, nullable=True)
    environment = Column(String, nullable=True)
    assigned_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    first_exposure_at = Column(DateTime(timezone=True), nullable=True)
    last_exposure_at = Column(DateTime(timezone=True), nullable=True)
    exposure_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    # Unique constraint ensures idempotency - one row per user per experiment.
    # insert_assignment_if_absent relies on it to settle concurrent first calls.
    __table_args__ = (
        Index('idx_user_cohorts_user_experiment', 'user_id', 'experiment_id', unique=True),
        Index('idx_user_cohorts_experiment_id', 'experiment_id'),
    )

    def __repr__(self):
        return (f"<UserCohort user_id={self.user_id!r} experiment_id={self.experiment_id} "
                f"cohort={self.cohort_type} variant={self.variant_name!r}>")


class Event(Base):
    """Event model - append-only facts (exposures, assignments, conversions...)"""
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(Enum(EventType, native_enum=False, length=40), nullable=False)
    user_id = Column(String(255), nullable=True, index=True)
    session_id = Column(String(255), nullable=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=True)
    flag_id = Column(Integer, ForeignKey("feature_flags.id"), nullable=True)
    variant_name = Column(String, nullable=True)
    value = Column(Float, nullable=True)
    properties = Column(Text, nullable=True)  # JSON string for flexible properties
    environment = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_events_type_timestamp', 'event_type', 'timestamp'),
        Index('idx_events_experiment_timestamp', 'experiment_id', 'timestamp'),
        Index('idx_events_flag_timestamp', 'flag_id', 'timestamp'),
    )
